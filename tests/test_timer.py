"""Tests for the work timer."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from invoicing.errors import ValidationError
from tracking import WorkTimer, format_elapsed


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer(clock):
    return WorkTimer(clock=clock)


class TestFormatElapsed:
    @pytest.mark.parametrize(
        "seconds,expected",
        [(0, "00:00:00"), (59, "00:00:59"), (3661, "01:01:01"), (36000, "10:00:00")],
    )
    def test_format(self, seconds, expected) -> None:
        assert format_elapsed(seconds) == expected


class TestWorkTimer:
    """Test start/pause/stop behaviour."""

    def test_start_requires_task(self, timer) -> None:
        with pytest.raises(ValidationError, match="select a task"):
            timer.start()

    def test_elapsed_while_running(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(125)

        assert timer.is_running
        assert timer.elapsed_seconds() == 125
        assert timer.format_elapsed() == "00:02:05"

    def test_start_twice(self, timer) -> None:
        timer.start("task-1")
        with pytest.raises(ValidationError, match="already running"):
            timer.start("task-1")

    def test_pause_and_resume_accumulates(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(600)
        timer.pause()
        clock.advance(3600)

        assert timer.elapsed_seconds() == 600

        timer.start()
        clock.advance(300)
        assert timer.elapsed_seconds() == 900
        assert timer.task_id == "task-1"

    def test_pause_when_idle(self, timer) -> None:
        with pytest.raises(ValidationError, match="not running"):
            timer.pause()

    def test_cannot_switch_task_with_paused_time(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(60)
        timer.pause()

        with pytest.raises(ValidationError, match="switching tasks"):
            timer.start("task-2")

    def test_stop_produces_time_log(self, timer, clock) -> None:
        """90 minutes -> 1.5h on today's date."""
        timer.start("task-1")
        clock.advance(5400)

        log = timer.stop()

        assert log.task_id == "task-1"
        assert log.hours == Decimal("1.50")
        assert log.logged_on == date(2024, 3, 1)
        assert log.description == "Time tracked on 2024-03-01"
        assert not timer.is_running
        assert timer.elapsed_seconds() == 0

    def test_pending_log_keeps_timer(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(3600)

        log = timer.pending_log()

        assert log.hours == Decimal("1.00")
        assert timer.is_running
        assert timer.elapsed_seconds() == 3600
        assert timer.task_id == "task-1"

    def test_stop_rounds_to_hundredths(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(1000)

        assert timer.stop(today=date(2024, 4, 2)).hours == Decimal("0.28")

    def test_stop_with_nothing_to_log(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(10)

        assert timer.stop() is None
        assert timer.task_id is None

    def test_round_trip_keeps_running_time(self, timer, clock) -> None:
        timer.start("task-1")
        clock.advance(30)

        data = timer.to_dict()
        restored = WorkTimer.from_dict(data, clock=clock)
        clock.advance(30)

        assert data["taskId"] == "task-1"
        assert data["isRunning"] is True
        assert restored.elapsed_seconds() == 60

    def test_from_empty_dict(self, clock) -> None:
        restored = WorkTimer.from_dict(None, clock=clock)
        assert not restored.is_running
        assert restored.elapsed_seconds() == 0
