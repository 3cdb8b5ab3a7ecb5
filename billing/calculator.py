"""
Invoice total computation.

Totals are derived from time logs that are not yet billed, using each
task's current rate. The functions here are pure: they read the collections
they are given and hold no state.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Union

from billing.index import BilledTaskIndex
from state_machine.models import Task, TimeLog

ZERO = Decimal("0")


@dataclass(frozen=True)
class BillingResult:
    """Hours and amount for a task selection."""

    total_hours: Decimal
    total_amount: Decimal
    included_logs: list[TimeLog] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-friendly dictionary."""
        return {
            "totalHours": str(self.total_hours),
            "totalAmount": str(self.total_amount),
            "includedLogIds": [log.id for log in self.included_logs],
        }


def unbilled_logs(
    time_logs: Iterable[TimeLog],
    billed_task_ids: Union[Iterable[str], BilledTaskIndex],
) -> list[TimeLog]:
    """Return logs whose task is not referenced by any invoice."""
    if isinstance(billed_task_ids, BilledTaskIndex):
        index = billed_task_ids
        return [log for log in time_logs if not index.is_billed(log.task_id)]

    billed = set(billed_task_ids)
    return [log for log in time_logs if log.task_id not in billed]


def calculate_invoice(
    task_ids: Iterable[str],
    tasks: Union[Iterable[Task], Mapping[str, Task]],
    time_logs: Iterable[TimeLog],
    billed_task_ids: Union[Iterable[str], BilledTaskIndex],
) -> BillingResult:
    """
    Compute totals for a task selection.

    Args:
        task_ids: Selected task ids.
        tasks: Current tasks (iterable or id -> task mapping).
        time_logs: Current time logs.
        billed_task_ids: Task ids already on an invoice, or the billed index.

    Returns:
        BillingResult over the unbilled logs of the selected tasks. A selected
        task without unbilled logs contributes nothing.
    """
    selection = set(task_ids)
    if isinstance(tasks, Mapping):
        by_id = dict(tasks)
    else:
        by_id = {task.id: task for task in tasks}

    total_hours = ZERO
    total_amount = ZERO
    included: list[TimeLog] = []

    for log in unbilled_logs(time_logs, billed_task_ids):
        if log.task_id not in selection:
            continue
        task = by_id.get(log.task_id)
        if task is None:
            continue
        total_hours += log.hours
        total_amount += log.hours * task.rate
        included.append(log)

    return BillingResult(
        total_hours=total_hours,
        total_amount=total_amount,
        included_logs=included,
    )


def tasks_with_unbilled_time(
    tasks: Iterable[Task],
    time_logs: Iterable[TimeLog],
    billed_task_ids: Union[Iterable[str], BilledTaskIndex],
) -> list[Task]:
    """Tasks that currently have billable hours, in the given order."""
    open_task_ids = {log.task_id for log in unbilled_logs(time_logs, billed_task_ids)}
    return [task for task in tasks if task.id in open_task_ids]
