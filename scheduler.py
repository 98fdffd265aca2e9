"""
Recurrence scheduler.

Each recurring expense (the template) owns at most one row in the
scheduled_jobs table and at most one APScheduler timer, both keyed by the
expense id. The table is the source of truth: a timer only ever asks
fire() to handle an (expense_id, fires_at) pair, and fire() does nothing
unless the row still points at that instant. That makes cancelled,
superseded and already-handled timers harmless, and lets recover() replay
overdue instants after a restart without firing any of them twice.

Job rows are written inside the caller's transaction (see schedule() and
cancel()); timers are armed or removed only once that transaction commits.
"""

from datetime import datetime
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session, sessionmaker

from concurrency import KeyedLock, bounded_call
from database import Expense, ScheduledJob, User, commit_or_fail, utcnow
from events import EXPENSE_REMOVED, RECURRENCE_CHANGED, Event, EventBus
from ledger import ExpenseSnapshot
from logs import get_logger
from notifier import Notifier
from recurrence import advance_one_month

logger = get_logger(__name__)

_PENDING = "pending_timer_actions"
_HOOKED = "timer_actions_hooked"


def timer_id(expense_id: int) -> str:
    return f"expense-{expense_id}"


def make_timer() -> BackgroundScheduler:
    return BackgroundScheduler(timezone="UTC")


class RecurrenceScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Notifier,
        locks: KeyedLock,
        clock: Callable[[], datetime] = utcnow,
        timer: Optional[BackgroundScheduler] = None,
        notification_timeout: float = 5.0,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.locks = locks
        self.clock = clock
        self.timer = timer
        self.notification_timeout = notification_timeout

    def bind(self, bus: EventBus) -> None:
        bus.subscribe(RECURRENCE_CHANGED, self._on_recurrence_changed)
        bus.subscribe(EXPENSE_REMOVED, self._on_expense_removed)

    def _on_recurrence_changed(self, event: Event, payload: dict) -> None:
        session, expense = payload["session"], payload["expense"]
        if expense.recurring and expense.next_occurrence is not None:
            self.schedule(
                session, expense.id, expense.user_id, expense.next_occurrence
            )
        else:
            self.cancel(session, expense.id)

    def _on_expense_removed(self, event: Event, payload: dict) -> None:
        self.cancel(payload["session"], payload["expense_id"])

    # Job table

    def schedule(
        self, session: Session, expense_id: int, owner_id: int, fires_at: datetime
    ) -> None:
        """Point the template's single job at `fires_at`, replacing any prior one."""
        job = session.get(ScheduledJob, expense_id, populate_existing=True)
        if job is None:
            session.add(
                ScheduledJob(expense_id=expense_id, user_id=owner_id, fires_at=fires_at)
            )
        else:
            job.user_id = owner_id
            job.fires_at = fires_at

        def committed():
            logger.info(
                "job_scheduled", expense_id=expense_id, fires_at=fires_at.isoformat()
            )
            self._arm(expense_id, fires_at)

        self._on_commit(session, committed)

    def cancel(self, session: Session, expense_id: int) -> None:
        job = session.get(ScheduledJob, expense_id, populate_existing=True)
        if job is not None:
            session.delete(job)

        def committed():
            if job is not None:
                logger.info("job_cancelled", expense_id=expense_id)
            self._disarm(expense_id)

        self._on_commit(session, committed)

    def _on_commit(self, session: Session, action: Callable[[], None]) -> None:
        """Run `action` once the session's current transaction commits.

        A rollback discards it.
        """
        if not session.info.get(_HOOKED):
            sa_event.listen(session, "after_commit", self._run_pending)
            sa_event.listen(session, "after_transaction_end", self._drop_pending)
            session.info[_HOOKED] = True
        session.info.setdefault(_PENDING, []).append(action)

    @staticmethod
    def _run_pending(session: Session) -> None:
        for action in session.info.pop(_PENDING, []):
            action()

    @staticmethod
    def _drop_pending(session: Session, transaction) -> None:
        # Only the outermost transaction; flushes end nested ones
        if transaction.parent is None:
            session.info.pop(_PENDING, None)

    # Timers

    def _arm(self, expense_id: int, fires_at: datetime) -> None:
        if self.timer is None:
            return
        self.timer.add_job(
            self.fire,
            "date",
            run_date=fires_at,
            args=[expense_id, fires_at],
            id=timer_id(expense_id),
            replace_existing=True,
            misfire_grace_time=None,
        )

    def _disarm(self, expense_id: int) -> None:
        if self.timer is None:
            return
        try:
            self.timer.remove_job(timer_id(expense_id))
        except JobLookupError:
            pass

    # Firing

    def fire(self, expense_id: int, fires_at: datetime) -> Optional[Expense]:
        """Materialize one occurrence. Returns the clone, or None if skipped."""
        with self.locks.hold(expense_id):
            db = self.session_factory()
            try:
                result = self._materialize(db, expense_id, fires_at)
            finally:
                db.close()
            if result is None:
                return None
            clone, owner, next_at = result
            self._arm(expense_id, next_at)

        logger.info(
            "job_fired",
            expense_id=expense_id,
            clone_id=clone.id,
            fires_at=fires_at.isoformat(),
            next_occurrence=next_at.isoformat(),
        )
        self._notify(owner, clone)
        return clone

    def _materialize(self, db: Session, expense_id: int, fires_at: datetime):
        job = db.get(ScheduledJob, expense_id)
        if job is None or job.fires_at != fires_at:
            logger.info("job_skipped", expense_id=expense_id, fires_at=fires_at.isoformat())
            return None

        template = db.get(Expense, expense_id)
        if template is None or not template.recurring:
            db.delete(job)
            commit_or_fail(db)
            logger.info("job_dropped", expense_id=expense_id)
            return None

        snapshot = ExpenseSnapshot.of(template)
        next_at = advance_one_month(fires_at)
        clone = snapshot.to_clone(date=self.clock(), next_occurrence=next_at)
        db.add(clone)

        swapped = (
            db.query(Expense)
            .filter(Expense.id == expense_id, Expense.next_occurrence == fires_at)
            .update({Expense.next_occurrence: next_at}, synchronize_session=False)
        )
        if not swapped:
            db.rollback()
            logger.warning(
                "template_out_of_sync", expense_id=expense_id, fires_at=fires_at.isoformat()
            )
            return None

        job.fires_at = next_at
        commit_or_fail(db)
        owner = db.get(User, snapshot.user_id)
        return clone, owner, next_at

    def _notify(self, owner: Optional[User], clone: Expense) -> None:
        if owner is None:
            return
        try:
            bounded_call(
                self.notifier.notify, self.notification_timeout, owner, clone
            )
        except Exception:
            logger.exception(
                "notification_failed", expense_id=clone.id, user_id=owner.id
            )

    def run_due(self) -> int:
        """Fire every job whose instant has passed, including chained ones."""
        handled = set()
        fired = 0
        while True:
            db = self.session_factory()
            try:
                due = [
                    (job.expense_id, job.fires_at)
                    for job in db.query(ScheduledJob)
                    .filter(ScheduledJob.fires_at <= self.clock())
                    .order_by(ScheduledJob.fires_at, ScheduledJob.expense_id)
                    .all()
                ]
            finally:
                db.close()

            due = [item for item in due if item not in handled]
            if not due:
                return fired
            for expense_id, fires_at in due:
                handled.add((expense_id, fires_at))
                if self.fire(expense_id, fires_at) is not None:
                    fired += 1

    def recover(self) -> int:
        fired = self.run_due()
        db = self.session_factory()
        try:
            pending = [(job.expense_id, job.fires_at) for job in db.query(ScheduledJob).all()]
        finally:
            db.close()
        for expense_id, fires_at in pending:
            self._arm(expense_id, fires_at)
        logger.info("scheduler_recovered", fired=fired, pending=len(pending))
        return fired

    def start(self) -> None:
        self.recover()
        if self.timer is not None and not self.timer.running:
            self.timer.start()

    def shutdown(self) -> None:
        if self.timer is not None and self.timer.running:
            self.timer.shutdown(wait=False)
