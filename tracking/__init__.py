"""Time tracking."""

from tracking.timer import TimerState, WorkTimer, format_elapsed

__all__ = ["TimerState", "WorkTimer", "format_elapsed"]
