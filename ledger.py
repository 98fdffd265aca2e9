"""
Expense ledger: owner-scoped CRUD, search, filtering and reporting.

Every query is filtered by the authenticated owner's id, so an id that
belongs to someone else is indistinguishable from an id that does not
exist. Changes that affect recurrence are published on the event bus
inside the open transaction; the scheduler's job-table write therefore
commits or rolls back together with the expense row.
"""

from concurrent import futures
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from concurrency import KeyedLock, bounded_call
from database import Expense, User, as_naive_utc, commit_or_fail, utcnow
from errors import NotFound, StorageFailure, ValidationError
from events import EXPENSE_REMOVED, RECURRENCE_CHANGED, EventBus
from logs import get_logger
from schemas import ExpenseCreate, ExpenseFilter
from storage import LocalBlobStore

logger = get_logger(__name__)

MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024

REPORT_HEADER = "Title,Amount,Category,Date,Tags,Note,Currency"

# Fields a partial update may touch; None means "leave as is" for these
_REQUIRED_FIELDS = ("title", "amount", "category", "date", "currency", "recurring")
_NULLABLE_FIELDS = ("note", "next_occurrence", "tags")


class Attachment(NamedTuple):
    filename: str
    data: bytes


@dataclass(frozen=True)
class ExpenseSnapshot:
    """Immutable copy of an expense's field values at one instant."""

    id: int
    user_id: int
    title: str
    amount: Decimal
    category: str
    tags: Tuple[str, ...]
    note: Optional[str]
    currency: str

    @classmethod
    def of(cls, expense: Expense) -> "ExpenseSnapshot":
        return cls(
            id=expense.id,
            user_id=expense.user_id,
            title=expense.title,
            amount=expense.amount,
            category=expense.category,
            tags=tuple(expense.tags or ()),
            note=expense.note,
            currency=expense.currency,
        )

    def to_clone(self, date: datetime, next_occurrence: datetime) -> Expense:
        # Attachments stay with the template so one blob has one owner record
        return Expense(
            user_id=self.user_id,
            title=self.title,
            amount=self.amount,
            category=self.category,
            date=date,
            tags=list(self.tags),
            note=self.note,
            attachment=None,
            currency=self.currency,
            recurring=True,
            next_occurrence=next_occurrence,
            template_id=self.id,
        )


def parse_tags(raw: Optional[str]) -> List[str]:
    """Split a comma-delimited string into trimmed, de-duplicated tags."""
    tags = []
    if not raw:
        return tags
    for part in raw.split(","):
        tag = part.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def format_timestamp(value: datetime) -> str:
    value = as_naive_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + ".%03dZ" % (value.microsecond // 1000)


def render_report(expenses: List[Expense]) -> bytes:
    lines = [REPORT_HEADER]
    for expense in expenses:
        lines.append(
            ",".join(
                [
                    _quote(expense.title),
                    format(Decimal(expense.amount), "f"),
                    _quote(expense.category),
                    format_timestamp(expense.date),
                    _quote("|".join(expense.tags or [])),
                    _quote(expense.note) if expense.note else "",
                    _quote(expense.currency),
                ]
            )
        )
    return ("\n".join(lines) + "\n").encode("utf-8")


class ExpenseLedger:
    def __init__(
        self,
        db: Session,
        bus: EventBus,
        blobs: LocalBlobStore,
        locks: KeyedLock,
        blob_timeout: float = 5.0,
        max_attachment_bytes: int = MAX_ATTACHMENT_BYTES,
    ):
        self.db = db
        self.bus = bus
        self.blobs = blobs
        self.locks = locks
        self.blob_timeout = blob_timeout
        self.max_attachment_bytes = max_attachment_bytes

    def _owned(self, owner_id: int):
        return (
            self.db.query(Expense)
            .filter(Expense.user_id == owner_id)
            .populate_existing()
        )

    def get(self, owner_id: int, expense_id: int) -> Expense:
        expense = self._owned(owner_id).filter(Expense.id == expense_id).first()
        if expense is None:
            raise NotFound()
        return expense

    def list(self, owner_id: int) -> List[Expense]:
        return self._owned(owner_id).order_by(Expense.id).all()

    def create(
        self,
        owner_id: int,
        fields: ExpenseCreate,
        attachment: Optional[Attachment] = None,
    ) -> Expense:
        owner = self.db.get(User, owner_id)
        if owner is None:
            raise NotFound("User not found")
        if fields.recurring and fields.next_occurrence is None:
            raise ValidationError("next_occurrence is required for recurring expenses")
        if attachment is not None and len(attachment.data) > self.max_attachment_bytes:
            raise ValidationError("Attachment exceeds the upload size limit")

        key = self._store_blob(attachment) if attachment is not None else None
        expense = Expense(
            user_id=owner_id,
            title=fields.title,
            amount=fields.amount,
            category=fields.category,
            date=as_naive_utc(fields.date) if fields.date else utcnow(),
            tags=parse_tags(fields.tags),
            note=fields.note,
            attachment=key,
            currency=(fields.currency or owner.currency).upper(),
            recurring=fields.recurring,
            next_occurrence=(
                as_naive_utc(fields.next_occurrence) if fields.recurring else None
            ),
        )
        try:
            self.db.add(expense)
            self.db.flush()
            if expense.recurring:
                self.bus.publish(
                    RECURRENCE_CHANGED, {"session": self.db, "expense": expense}
                )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._release_blob(key)
            raise StorageFailure() from exc

        logger.info(
            "expense_created",
            expense_id=expense.id,
            user_id=owner_id,
            recurring=expense.recurring,
        )
        return expense

    def update(self, owner_id: int, expense_id: int, fields: Dict) -> Expense:
        with self.locks.hold(expense_id):
            expense = self.get(owner_id, expense_id)

            changes = {}
            for name in _REQUIRED_FIELDS:
                if fields.get(name) is not None:
                    changes[name] = fields[name]
            for name in _NULLABLE_FIELDS:
                if name in fields:
                    changes[name] = fields[name]

            if "tags" in changes:
                changes["tags"] = parse_tags(changes["tags"])
            if "currency" in changes:
                changes["currency"] = changes["currency"].upper()
            if "date" in changes:
                changes["date"] = as_naive_utc(changes["date"])

            recurring = changes.pop("recurring", expense.recurring)
            next_occurrence = changes.pop("next_occurrence", expense.next_occurrence)
            if next_occurrence is not None:
                next_occurrence = as_naive_utc(next_occurrence)
            if recurring and next_occurrence is None:
                raise ValidationError(
                    "next_occurrence is required for recurring expenses"
                )
            if not recurring:
                next_occurrence = None

            schedule_changed = (recurring, next_occurrence) != (
                expense.recurring,
                expense.next_occurrence,
            )
            for name, value in changes.items():
                setattr(expense, name, value)
            expense.recurring = recurring
            expense.next_occurrence = next_occurrence

            if schedule_changed:
                self.bus.publish(
                    RECURRENCE_CHANGED, {"session": self.db, "expense": expense}
                )
            commit_or_fail(self.db)

        logger.info(
            "expense_updated",
            expense_id=expense_id,
            user_id=owner_id,
            schedule_changed=schedule_changed,
        )
        return expense

    def delete(self, owner_id: int, expense_id: int) -> None:
        with self.locks.hold(expense_id):
            expense = self.get(owner_id, expense_id)
            key = expense.attachment
            self.bus.publish(
                EXPENSE_REMOVED, {"session": self.db, "expense_id": expense_id}
            )
            self.db.delete(expense)
            commit_or_fail(self.db)

        logger.info("expense_deleted", expense_id=expense_id, user_id=owner_id)
        self._release_blob(key)

    def search(self, owner_id: int, text: str) -> List[Expense]:
        text = text or ""
        return (
            self._owned(owner_id)
            .filter(
                or_(
                    Expense.title.icontains(text, autoescape=True),
                    Expense.note.icontains(text, autoescape=True),
                )
            )
            .order_by(Expense.id)
            .all()
        )

    def filter(self, owner_id: int, criteria: ExpenseFilter) -> List[Expense]:
        query = self._owned(owner_id)
        if criteria.start_date:
            query = query.filter(
                Expense.date >= datetime.combine(criteria.start_date, time.min)
            )
        if criteria.end_date:
            # Inclusive: everything before the start of the following day
            query = query.filter(
                Expense.date
                < datetime.combine(criteria.end_date + timedelta(days=1), time.min)
            )
        if criteria.category:
            query = query.filter(Expense.category == criteria.category)
        return query.order_by(Expense.id).all()

    def report(self, owner_id: int) -> bytes:
        return render_report(self.list(owner_id))

    def forecast(self, owner_id: int) -> Dict[str, Decimal]:
        amounts = [Decimal(expense.amount) for expense in self.list(owner_id)]
        if not amounts:
            return {"average": Decimal("0")}
        return {"average": sum(amounts) / len(amounts)}

    def attachment_path(self, owner_id: int, expense_id: int) -> str:
        expense = self.get(owner_id, expense_id)
        if not expense.attachment or not self.blobs.exists(expense.attachment):
            raise NotFound("Attachment not found")
        return self.blobs.path(expense.attachment)

    def _store_blob(self, attachment: Attachment) -> str:
        try:
            return bounded_call(
                self.blobs.put,
                self.blob_timeout,
                attachment.filename,
                attachment.data,
                on_late_result=self._discard_late_blob,
            )
        except (OSError, futures.TimeoutError) as exc:
            raise StorageFailure("Could not store attachment") from exc

    def _discard_late_blob(self, key: str) -> None:
        # The write finished after create() gave up on it; nothing refers to it
        try:
            self.blobs.delete(key)
        except (OSError, ValueError):
            logger.warning("attachment_release_failed", key=key, exc_info=True)
        else:
            logger.info("late_attachment_discarded", key=key)

    def _release_blob(self, key: Optional[str]) -> None:
        if not key:
            return
        try:
            bounded_call(self.blobs.delete, self.blob_timeout, key)
        except (OSError, ValueError, futures.TimeoutError):
            logger.warning("attachment_release_failed", key=key, exc_info=True)
