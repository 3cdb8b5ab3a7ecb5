"""
Work timer.

The timer stores when it started rather than counting ticks, so a timer
restored from its serialized state reports the right elapsed time. Stopping
it turns the elapsed time into a time log payload.
"""

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional

from invoicing.errors import ValidationError
from state_machine.models import TimeLogCreate, TimerState, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = Decimal("3600")
HOURS_PRECISION = Decimal("0.01")


def format_elapsed(total_seconds: int) -> str:
    """Render seconds as HH:MM:SS."""
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class WorkTimer:
    """Start/pause/stop timer bound to one task at a time."""

    def __init__(
        self,
        state: Optional[TimerState] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state = state or TimerState()
        self._clock = clock

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def task_id(self) -> Optional[str]:
        return self.state.task_id

    def elapsed_seconds(self) -> int:
        """Accumulated seconds plus the current run, if any."""
        elapsed = self.state.seconds
        if self.state.is_running and self.state.start_time:
            run = (self._clock() - self.state.start_time).total_seconds()
            elapsed += max(int(run), 0)
        return elapsed

    def format_elapsed(self) -> str:
        return format_elapsed(self.elapsed_seconds())

    def start(self, task_id: Optional[str] = None) -> TimerState:
        """
        Start or resume the timer.

        Raises:
            ValidationError: No task selected, already running, or switching
                task while paused time is pending.
        """
        task_id = task_id or self.state.task_id
        if not task_id:
            raise ValidationError("Please select a task first", fields=["task_id"])
        if self.state.is_running:
            raise ValidationError("Timer is already running", task_id=self.state.task_id)
        if self.state.seconds and self.state.task_id and task_id != self.state.task_id:
            raise ValidationError(
                "Stop the timer before switching tasks",
                task_id=self.state.task_id,
            )

        self.state = self.state.model_copy(
            update={"task_id": task_id, "is_running": True, "start_time": self._clock()}
        )
        logger.debug(f"Timer started for task {task_id}")
        return self.state

    def pause(self) -> TimerState:
        """Pause the timer, keeping the elapsed seconds."""
        if not self.state.is_running:
            raise ValidationError("Timer is not running")

        self.state = self.state.model_copy(
            update={
                "seconds": self.elapsed_seconds(),
                "is_running": False,
                "start_time": None,
            }
        )
        logger.debug(f"Timer paused at {self.state.seconds}s")
        return self.state

    def pending_log(self, today: Optional[date] = None) -> Optional[TimeLogCreate]:
        """
        Time log payload for the tracked time, leaving the timer untouched.

        Returns:
            None when there is nothing to log (no task, or under the 0.01
            hour resolution).
        """
        seconds = self.elapsed_seconds()
        task_id = self.state.task_id

        hours = (Decimal(seconds) / SECONDS_PER_HOUR).quantize(HOURS_PRECISION, rounding=ROUND_HALF_UP)
        if not task_id or hours <= 0:
            logger.debug(f"Timer has nothing to log ({seconds}s)")
            return None

        log_date = today or self._clock().date()
        return TimeLogCreate(
            task_id=task_id,
            hours=hours,
            logged_on=log_date,
            description=f"Time tracked on {log_date.isoformat()}",
        )

    def stop(self, today: Optional[date] = None) -> Optional[TimeLogCreate]:
        """Stop and reset the timer, returning its pending time log payload."""
        payload = self.pending_log(today)
        self.reset()
        return payload

    def reset(self) -> None:
        self.state = TimerState()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the timer state (camelCase)."""
        return self.state.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(
        cls,
        data: Optional[dict[str, Any]],
        clock: Callable[[], datetime] = utcnow,
    ) -> "WorkTimer":
        """Restore a timer; elapsed time is recomputed from start_time."""
        return cls(TimerState.model_validate(data or {}), clock=clock)
