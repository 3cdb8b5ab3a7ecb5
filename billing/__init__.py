"""Billing calculator and billed-task index."""

from billing.calculator import (
    BillingResult,
    calculate_invoice,
    tasks_with_unbilled_time,
    unbilled_logs,
)
from billing.index import BilledTaskIndex

__all__ = [
    "BilledTaskIndex",
    "BillingResult",
    "calculate_invoice",
    "tasks_with_unbilled_time",
    "unbilled_logs",
]
