"""
Per-user session context.

A context is opened when the owner signs in: it loads their collections,
restores their work timer, builds the invoice engine (and with it the
billed-task index) and keeps the cached collections in step with the store
through change notifications.

Closing it (sign-out) clears the in-memory session state. The timer is
persisted on every start, pause and stop, so the next sign-in (or a server
restart) picks it up again.
"""

import logging
import threading
from typing import Any, Callable, Optional

from billing.calculator import tasks_with_unbilled_time, unbilled_logs
from database.base import ChangeAction, EntityStore, StoreChange
from invoicing.approval import ApprovalSession
from invoicing.engine import InvoiceLifecycleEngine, InvoiceLockRegistry
from invoicing.errors import NotFound
from invoicing.events import EventBus
from state_machine.models import FreelancerProfile, Invoice, Task, TimeLog, TimerState
from tracking.timer import WorkTimer

logger = logging.getLogger(__name__)


def _newest_first(items: Any) -> list[Any]:
    return sorted(items, key=lambda item: item.created_at, reverse=True)


class SessionContext:
    """One signed-in owner: store, engine, cached collections, timer."""

    def __init__(
        self,
        store: EntityStore,
        event_bus: Optional[EventBus] = None,
        locks: Optional[InvoiceLockRegistry] = None,
        origin: str = "http://localhost:5173",
        token_bytes: int = 16,
    ):
        self.store = store
        self.owner_id = store.owner_id
        self._event_bus = event_bus
        self._locks = locks
        self._origin = origin
        self._token_bytes = token_bytes

        self.engine: Optional[InvoiceLifecycleEngine] = None
        self.timer = WorkTimer()
        self.clickup_token: Optional[str] = None

        self.profile: Optional[FreelancerProfile] = None
        self.tasks: dict[str, Task] = {}
        self.time_logs: dict[str, TimeLog] = {}
        self.invoices: dict[str, Invoice] = {}

        # Store notifications arrive from request worker threads.
        self._cache_lock = threading.RLock()
        self._timer_lock = threading.Lock()
        self._stale = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self) -> "SessionContext":
        """Load the owner's collections and start tracking changes."""
        if self.is_open:
            return self

        with self._cache_lock:
            self._reload()

        state = self.store.get_timer_state()
        self.timer = WorkTimer(state) if state else WorkTimer()

        self.engine = InvoiceLifecycleEngine(
            self.store,
            event_bus=self._event_bus,
            locks=self._locks,
            origin=self._origin,
            token_bytes=self._token_bytes,
        )
        self._unsubscribe = self.store.subscribe(self._on_change)

        logger.info(
            f"Session opened for {self.owner_id}: {len(self.tasks)} task(s), "
            f"{len(self.time_logs)} log(s), {len(self.invoices)} invoice(s), "
            f"timer {'running' if self.timer.is_running else 'idle'}"
        )
        return self

    def close(self) -> None:
        """Sign out: drop cached data, the in-memory timer and the ClickUp token."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self.engine:
            self.engine.close()
            self.engine = None

        with self._cache_lock:
            self.profile = None
            self.tasks = {}
            self.time_logs = {}
            self.invoices = {}
            self._stale = False
        self.timer = WorkTimer()
        self.clickup_token = None
        logger.info(f"Session closed for {self.owner_id}")

    def require_engine(self) -> InvoiceLifecycleEngine:
        if self.engine is None:
            self.open()
        return self.engine

    def approval_session(self) -> ApprovalSession:
        return ApprovalSession(self.require_engine())

    # ------------------------------------------------------------------
    # Work timer
    # ------------------------------------------------------------------

    def start_timer(self, task_id: Optional[str] = None) -> TimerState:
        """
        Start or resume the timer and persist it.

        Raises:
            NotFound: The task does not exist.
            ValidationError: See WorkTimer.start.
        """
        if task_id and self.store.get_task(task_id) is None:
            raise NotFound(f"Task '{task_id}' not found", task_id=task_id)

        with self._timer_lock:
            previous = self.timer.state
            self.timer.start(task_id)
            self._save_timer(previous)
            return self.timer.state

    def pause_timer(self) -> TimerState:
        with self._timer_lock:
            previous = self.timer.state
            self.timer.pause()
            self._save_timer(previous)
            return self.timer.state

    def stop_timer(self) -> Optional[TimeLog]:
        """
        Log the tracked time, then reset the timer.

        If the time log cannot be written the timer keeps its time, so the
        stop can be retried.
        """
        with self._timer_lock:
            payload = self.timer.pending_log()
            time_log = self.store.create_time_log(payload) if payload else None

            self.timer.reset()
            try:
                self.store.save_timer_state(self.timer.state)
            except Exception as e:
                # The log is written; keeping the old time would log it twice.
                logger.error(f"Timer for {self.owner_id} stopped but not saved: {e}")
                raise
            return time_log

    def reset_timer(self) -> None:
        """Discard the tracked time without logging it."""
        with self._timer_lock:
            previous = self.timer.state
            self.timer.reset()
            self._save_timer(previous)

    def _save_timer(self, previous: TimerState) -> None:
        try:
            self.store.save_timer_state(self.timer.state)
        except Exception:
            self.timer.state = previous
            raise

    # ------------------------------------------------------------------
    # Cached views
    # ------------------------------------------------------------------

    def list_tasks(self) -> list[Task]:
        with self._cache_lock:
            self._ensure_fresh()
            return _newest_first(list(self.tasks.values()))

    def list_time_logs(
        self,
        task_id: Optional[str] = None,
        unbilled: bool = False,
    ) -> list[TimeLog]:
        with self._cache_lock:
            self._ensure_fresh()
            logs = [
                log for log in self.time_logs.values()
                if task_id is None or log.task_id == task_id
            ]
        if unbilled:
            logs = unbilled_logs(logs, self.require_engine().billed_index)
        return _newest_first(logs)

    def list_invoices(self, status: Optional[str] = None) -> list[Invoice]:
        with self._cache_lock:
            self._ensure_fresh()
            invoices = [
                invoice for invoice in self.invoices.values()
                if status is None or invoice.status == status
            ]
        return _newest_first(invoices)

    def billable_tasks(self) -> list[Task]:
        """Tasks that still have unbilled time."""
        with self._cache_lock:
            self._ensure_fresh()
            tasks = list(self.tasks.values())
            logs = list(self.time_logs.values())
        return tasks_with_unbilled_time(
            _newest_first(tasks),
            logs,
            self.require_engine().billed_index,
        )

    def counts(self) -> dict[str, Any]:
        with self._cache_lock:
            self._ensure_fresh()
            return {
                "ownerId": self.owner_id,
                "hasProfile": self.profile is not None,
                "tasks": len(self.tasks),
                "timeLogs": len(self.time_logs),
                "invoices": len(self.invoices),
            }

    # ------------------------------------------------------------------
    # Cache refresh
    # ------------------------------------------------------------------

    def _reload(self) -> None:
        self.profile = self.store.get_profile()
        self.tasks = {task.id: task for task in self.store.list_tasks()}
        self.time_logs = {log.id: log for log in self.store.list_time_logs()}
        self.invoices = {invoice.id: invoice for invoice in self.store.list_invoices()}
        self._stale = False

    def _ensure_fresh(self) -> None:
        if self._stale:
            logger.info(f"Reloading cached collections for {self.owner_id}")
            self._reload()

    def _on_change(self, change: StoreChange) -> None:
        with self._cache_lock:
            try:
                self._apply_change(change)
            except Exception as e:
                # Next read reloads everything from the store.
                self._stale = True
                logger.error(
                    f"Cache refresh failed for {change.entity} {change.entity_id}: {e}"
                )

        if (
            change.entity == "task"
            and change.action == ChangeAction.DELETED
            and self.timer.task_id == change.entity_id
        ):
            logger.info(f"Timer task {change.entity_id} deleted, resetting timer")
            self.reset_timer()

    def _apply_change(self, change: StoreChange) -> None:
        deleted = change.action == ChangeAction.DELETED

        if change.entity == "task":
            if deleted:
                self.tasks.pop(change.entity_id, None)
                # Logs went with the task.
                for log_id in [
                    log.id for log in self.time_logs.values()
                    if log.task_id == change.entity_id
                ]:
                    del self.time_logs[log_id]
            else:
                self._refresh(self.tasks, change.entity_id, self.store.get_task)

        elif change.entity == "time_log":
            if deleted:
                self.time_logs.pop(change.entity_id, None)
            else:
                self._refresh(self.time_logs, change.entity_id, self.store.get_time_log)

        elif change.entity == "invoice":
            if deleted:
                self.invoices.pop(change.entity_id, None)
            else:
                self._refresh(self.invoices, change.entity_id, self.store.get_invoice)

        elif change.entity == "profile":
            self.profile = None if deleted else self.store.get_profile()

    @staticmethod
    def _refresh(cache: dict[str, Any], entity_id: str, load: Callable[[str], Any]) -> None:
        item = load(entity_id)
        if item is None:
            cache.pop(entity_id, None)
        else:
            cache[entity_id] = item
