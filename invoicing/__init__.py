"""Invoice lifecycle: errors, events, engine, approval session and dispatch.

Import the engine, approval session and dispatcher from their modules;
this package only re-exports the leaf modules to keep ``database`` free of
import cycles.
"""

from invoicing.errors import (
    ApprovalConflict,
    InvoicingError,
    NotFound,
    StateConflict,
    UpstreamFailure,
    ValidationError,
)
from invoicing.events import EventBus, InvoiceEvent, InvoiceEventType

__all__ = [
    "ApprovalConflict",
    "EventBus",
    "InvoiceEvent",
    "InvoiceEventType",
    "InvoicingError",
    "NotFound",
    "StateConflict",
    "UpstreamFailure",
    "ValidationError",
]
