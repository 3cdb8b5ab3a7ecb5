"""Database-backed entity store implementation."""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database.base import BaseEntityStore, ChangeAction
from database.models import (
    InvoiceHistoryModel,
    InvoiceModel,
    ProfileModel,
    TaskModel,
    TimeLogModel,
    TimerModel,
)
from database.session import session_scope
from invoicing.errors import NotFound, StateConflict, UpstreamFailure, ValidationError
from state_machine.models import (
    FreelancerProfile,
    Invoice,
    InvoiceCreate,
    Task,
    TaskCreate,
    TaskUpdate,
    TimeLog,
    TimeLogCreate,
    TimeLogUpdate,
    TimerState,
    utcnow,
)

logger = logging.getLogger(__name__)

INVOICE_COLUMNS = (
    "task_ids",
    "total_hours",
    "total_amount",
    "status",
    "client_name",
    "client_email",
    "description",
    "notes",
    "approval_link",
    "approved_at",
    "client_signature",
    "client_comments",
    "payment_method",
    "payment_instructions",
)

PROFILE_COLUMNS = tuple(FreelancerProfile.model_fields)


@contextmanager
def _transaction() -> Generator[Session, None, None]:
    """Session scope that reports database failures as UpstreamFailure."""
    try:
        with session_scope() as session:
            yield session
    except IntegrityError as e:
        logger.warning(f"Integrity error: {e.orig}")
        raise ValidationError(f"Constraint violated: {e.orig}") from e
    except SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        raise UpstreamFailure(f"Database operation failed: {e}", service="database") from e


def owner_of_invoice(invoice_id: str) -> Optional[str]:
    """
    Find which owner an invoice belongs to.

    Used by the public approval path, where the caller is the client
    rather than the owner.
    """
    with _transaction() as session:
        row = session.get(InvoiceModel, invoice_id)
        return row.owner_id if row else None


# ============================================================================
# Row <-> model mapping
# ============================================================================


def _task_from_row(row: TaskModel) -> Task:
    return Task(
        id=row.id,
        name=row.name,
        rate=row.rate,
        status=row.status,
        description=row.description,
        created_at=row.created_at,
    )


def _time_log_from_row(row: TimeLogModel) -> TimeLog:
    return TimeLog(
        id=row.id,
        task_id=row.task_id,
        hours=row.hours,
        logged_on=row.date,
        description=row.description,
        created_at=row.created_at,
    )


def _invoice_from_row(row: InvoiceModel) -> Invoice:
    return Invoice(
        id=row.id,
        created_at=row.created_at,
        **{name: getattr(row, name) for name in INVOICE_COLUMNS},
    )


def _invoice_values(invoice: Invoice) -> dict[str, Any]:
    values = invoice.model_dump(include=set(INVOICE_COLUMNS))
    values["status"] = invoice.status.value
    values["payment_method"] = invoice.payment_method.value if invoice.payment_method else None
    values["task_ids"] = list(invoice.task_ids)
    return values


def _profile_from_row(row: ProfileModel) -> FreelancerProfile:
    return FreelancerProfile(**{name: getattr(row, name) for name in PROFILE_COLUMNS})


def _profile_values(profile: FreelancerProfile) -> dict[str, Any]:
    values = profile.model_dump()
    values["business_type"] = profile.business_type.value
    return values


class DatabaseEntityStore(BaseEntityStore):
    """
    Production entity store using SQLAlchemy.

    Every query is scoped to ``owner_id``. Each operation runs in its own
    transaction, so a failure leaves nothing half-written.
    """

    # Tasks

    def list_tasks(self) -> list[Task]:
        with _transaction() as session:
            rows = (
                session.query(TaskModel)
                .filter(TaskModel.owner_id == self.owner_id)
                .order_by(TaskModel.created_at.desc())
                .all()
            )
            return [_task_from_row(row) for row in rows]

    def get_task(self, task_id: str) -> Optional[Task]:
        with _transaction() as session:
            row = self._task_row(session, task_id)
            return _task_from_row(row) if row else None

    def create_task(self, data: TaskCreate) -> Task:
        with _transaction() as session:
            row = TaskModel(
                id=str(uuid4()),
                owner_id=self.owner_id,
                name=data.name,
                rate=data.rate,
                status=data.status.value,
                description=data.description,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            task = _task_from_row(row)

        self._emit("task", ChangeAction.CREATED, task.id)
        return task

    def update_task(self, task_id: str, data: TaskUpdate) -> Task:
        with _transaction() as session:
            row = self._require_task_row(session, task_id)
            for name, value in data.model_dump(exclude_unset=True).items():
                setattr(row, name, value.value if name == "status" and value else value)
            session.flush()
            task = _task_from_row(row)

        self._emit("task", ChangeAction.UPDATED, task_id)
        return task

    def delete_task(self, task_id: str) -> int:
        """Delete a task and its time logs in one transaction."""
        with _transaction() as session:
            row = self._require_task_row(session, task_id)
            removed = (
                session.query(TimeLogModel)
                .filter(
                    TimeLogModel.owner_id == self.owner_id,
                    TimeLogModel.task_id == task_id,
                )
                .delete(synchronize_session=False)
            )
            session.delete(row)

        logger.info(f"Deleted task {task_id} and {removed} time log(s)")
        self._emit("task", ChangeAction.DELETED, task_id)
        return removed

    def _task_row(self, session: Session, task_id: str) -> Optional[TaskModel]:
        return (
            session.query(TaskModel)
            .filter(TaskModel.id == task_id, TaskModel.owner_id == self.owner_id)
            .first()
        )

    def _require_task_row(self, session: Session, task_id: str) -> TaskModel:
        row = self._task_row(session, task_id)
        if row is None:
            raise NotFound(f"Task '{task_id}' not found", task_id=task_id)
        return row

    # Time logs

    def list_time_logs(self, task_id: Optional[str] = None) -> list[TimeLog]:
        with _transaction() as session:
            query = session.query(TimeLogModel).filter(TimeLogModel.owner_id == self.owner_id)
            if task_id:
                query = query.filter(TimeLogModel.task_id == task_id)
            rows = query.order_by(TimeLogModel.created_at.desc()).all()
            return [_time_log_from_row(row) for row in rows]

    def get_time_log(self, log_id: str) -> Optional[TimeLog]:
        with _transaction() as session:
            row = self._time_log_row(session, log_id)
            return _time_log_from_row(row) if row else None

    def create_time_log(self, data: TimeLogCreate) -> TimeLog:
        with _transaction() as session:
            self._require_task_row(session, data.task_id)
            row = TimeLogModel(
                id=str(uuid4()),
                owner_id=self.owner_id,
                task_id=data.task_id,
                hours=data.hours,
                date=data.logged_on,
                description=data.description,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            log = _time_log_from_row(row)

        self._emit("time_log", ChangeAction.CREATED, log.id)
        return log

    def update_time_log(self, log_id: str, data: TimeLogUpdate) -> TimeLog:
        with _transaction() as session:
            row = self._time_log_row(session, log_id)
            if row is None:
                raise NotFound(f"Time log '{log_id}' not found", log_id=log_id)

            changes = data.model_dump(exclude_unset=True)
            if "task_id" in changes:
                self._require_task_row(session, changes["task_id"])
            if "logged_on" in changes:
                changes["date"] = changes.pop("logged_on")
            for name, value in changes.items():
                setattr(row, name, value)
            session.flush()
            log = _time_log_from_row(row)

        self._emit("time_log", ChangeAction.UPDATED, log_id)
        return log

    def delete_time_log(self, log_id: str) -> None:
        with _transaction() as session:
            row = self._time_log_row(session, log_id)
            if row is None:
                raise NotFound(f"Time log '{log_id}' not found", log_id=log_id)
            session.delete(row)

        self._emit("time_log", ChangeAction.DELETED, log_id)

    def _time_log_row(self, session: Session, log_id: str) -> Optional[TimeLogModel]:
        return (
            session.query(TimeLogModel)
            .filter(TimeLogModel.id == log_id, TimeLogModel.owner_id == self.owner_id)
            .first()
        )

    # Invoices

    def list_invoices(self, status: Optional[str] = None) -> list[Invoice]:
        with _transaction() as session:
            query = session.query(InvoiceModel).filter(InvoiceModel.owner_id == self.owner_id)
            if status:
                query = query.filter(InvoiceModel.status == str(getattr(status, "value", status)))
            rows = query.order_by(InvoiceModel.created_at.desc()).all()
            return [_invoice_from_row(row) for row in rows]

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with _transaction() as session:
            row = self._invoice_row(session, invoice_id)
            return _invoice_from_row(row) if row else None

    def create_invoice(self, data: InvoiceCreate, total_hours: Any, total_amount: Any) -> Invoice:
        if not data.task_ids:
            raise ValidationError("An invoice needs at least one task", fields=["task_ids"])

        invoice = Invoice(
            id=str(uuid4()),
            created_at=utcnow(),
            total_hours=total_hours,
            total_amount=total_amount,
            **data.model_dump(),
        )
        with _transaction() as session:
            session.add(
                InvoiceModel(
                    id=invoice.id,
                    owner_id=self.owner_id,
                    created_at=invoice.created_at,
                    **_invoice_values(invoice),
                )
            )
            session.flush()
            session.add(
                InvoiceHistoryModel(
                    invoice_id=invoice.id,
                    previous_state=None,
                    new_state=invoice.status.value,
                    trigger="create",
                    triggered_by="owner",
                )
            )

        self._emit("invoice", ChangeAction.CREATED, invoice.id)
        return invoice

    def update_invoice(
        self,
        invoice_id: str,
        changes: dict[str, Any],
        expected_status: Optional[str] = None,
        trigger: Optional[str] = None,
        triggered_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Invoice:
        """
        Apply field changes to an invoice.

        Args:
            invoice_id: The invoice identifier.
            changes: Field name -> new value.
            expected_status: When given, the write only happens if the stored
                status still equals it (compare-and-swap).
            trigger: Name of the transition; when the status changes, a
                history record is written in the same transaction.
            triggered_by: Actor recorded with the transition.
            reason: Optional reason recorded with the transition.

        Raises:
            NotFound: Unknown invoice.
            StateConflict: Stored status differs from expected_status.
            ValidationError: Change breaks the snapshot or decision rules.
        """
        with _transaction() as session:
            row = self._invoice_row(session, invoice_id)
            if row is None:
                raise NotFound(f"Invoice '{invoice_id}' not found", invoice_id=invoice_id)

            current = _invoice_from_row(row)
            expected = getattr(expected_status, "value", expected_status)
            if expected is not None and row.status != expected:
                raise self._status_conflict(current, expected, trigger)

            self._check_invoice_changes(current, changes)
            updated = Invoice.model_validate({**current.model_dump(), **changes})
            values = {
                name: value
                for name, value in _invoice_values(updated).items()
                if name in changes
            }
            values["updated_at"] = utcnow()

            query = session.query(InvoiceModel).filter(
                InvoiceModel.id == invoice_id,
                InvoiceModel.owner_id == self.owner_id,
            )
            if expected is not None:
                query = query.filter(InvoiceModel.status == expected)
            if query.update(values, synchronize_session=False) == 0:
                # Another writer moved the invoice between our read and write.
                session.expire_all()
                fresh = self._invoice_row(session, invoice_id)
                raise self._status_conflict(
                    _invoice_from_row(fresh) if fresh else current, expected, trigger
                )

            if trigger and updated.status != current.status:
                session.add(
                    InvoiceHistoryModel(
                        invoice_id=invoice_id,
                        previous_state=current.status.value,
                        new_state=updated.status.value,
                        trigger=trigger,
                        triggered_by=triggered_by,
                        reason=reason,
                    )
                )

        self._emit("invoice", ChangeAction.UPDATED, invoice_id)
        return updated

    @staticmethod
    def _status_conflict(
        current: Invoice, expected: Optional[str], action: Optional[str] = None
    ) -> StateConflict:
        return StateConflict(
            f"Invoice '{current.id}' is '{current.status.value}', expected '{expected}'",
            current_state=current.status.value,
            attempted_action=action or "update",
            invoice_id=current.id,
            invoice=current,
        )

    def delete_invoice(self, invoice_id: str) -> None:
        with _transaction() as session:
            row = self._invoice_row(session, invoice_id)
            if row is None:
                raise NotFound(f"Invoice '{invoice_id}' not found", invoice_id=invoice_id)
            session.delete(row)

        self._emit("invoice", ChangeAction.DELETED, invoice_id)

    def _invoice_row(self, session: Session, invoice_id: str) -> Optional[InvoiceModel]:
        return (
            session.query(InvoiceModel)
            .filter(InvoiceModel.id == invoice_id, InvoiceModel.owner_id == self.owner_id)
            .first()
        )

    def get_history(self, invoice_id: str) -> list[dict[str, Any]]:
        with _transaction() as session:
            records = (
                session.query(InvoiceHistoryModel)
                .join(InvoiceModel)
                .filter(
                    InvoiceHistoryModel.invoice_id == invoice_id,
                    InvoiceModel.owner_id == self.owner_id,
                )
                .order_by(InvoiceHistoryModel.id)
                .all()
            )
            return [
                self._history_entry(
                    record.previous_state,
                    record.new_state,
                    record.trigger,
                    record.triggered_by,
                    record.reason,
                    timestamp=record.created_at,
                )
                for record in records
            ]

    # Profile

    def get_profile(self) -> Optional[FreelancerProfile]:
        with _transaction() as session:
            row = session.get(ProfileModel, self.owner_id)
            return _profile_from_row(row) if row else None

    def create_profile(self, profile: FreelancerProfile) -> FreelancerProfile:
        with _transaction() as session:
            if session.get(ProfileModel, self.owner_id) is not None:
                raise ValidationError("Profile already exists", owner_id=self.owner_id)
            session.add(ProfileModel(owner_id=self.owner_id, **_profile_values(profile)))

        self._emit("profile", ChangeAction.CREATED, self.owner_id)
        return profile

    def update_profile(self, changes: dict[str, Any]) -> FreelancerProfile:
        with _transaction() as session:
            row = session.get(ProfileModel, self.owner_id)
            if row is None:
                raise NotFound("Profile not found", owner_id=self.owner_id)
            profile = FreelancerProfile.model_validate({**_profile_from_row(row).model_dump(), **changes})
            for name, value in _profile_values(profile).items():
                setattr(row, name, value)

        self._emit("profile", ChangeAction.UPDATED, self.owner_id)
        return profile

    def delete_profile(self) -> None:
        with _transaction() as session:
            row = session.get(ProfileModel, self.owner_id)
            if row is None:
                raise NotFound("Profile not found", owner_id=self.owner_id)
            session.delete(row)

        self._emit("profile", ChangeAction.DELETED, self.owner_id)

    # Timer

    def get_timer_state(self) -> Optional[TimerState]:
        with _transaction() as session:
            row = session.get(TimerModel, self.owner_id)
            if row is None:
                return None
            return TimerState(
                task_id=row.task_id,
                is_running=row.is_running,
                start_time=row.start_time,
                seconds=row.seconds,
            )

    def save_timer_state(self, state: TimerState) -> None:
        with _transaction() as session:
            row = session.get(TimerModel, self.owner_id)
            if row is None:
                row = TimerModel(owner_id=self.owner_id)
                session.add(row)
            row.task_id = state.task_id
            row.is_running = state.is_running
            row.start_time = state.start_time
            row.seconds = state.seconds
        logger.debug(f"Timer saved for {self.owner_id}: running={state.is_running}")
