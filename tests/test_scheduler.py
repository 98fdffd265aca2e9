import threading
import time
from datetime import datetime
from decimal import Decimal

import pytest

from database import Expense, ScheduledJob
from ledger import Attachment
from notifier import Notifier
from recurrence import advance_one_month
from scheduler import RecurrenceScheduler
from schemas import ExpenseCreate


def make_recurring(ledger, owner, next_occurrence, **overrides):
    fields = {
        "title": "Gym",
        "amount": Decimal("40.00"),
        "category": "Health",
        "tags": "fitness",
        "recurring": True,
        "next_occurrence": next_occurrence,
    }
    fields.update(overrides)
    return ledger.create(owner.id, ExpenseCreate(**fields))


def clones_of(session_factory, template_id):
    db = session_factory()
    try:
        return (
            db.query(Expense)
            .filter(Expense.template_id == template_id)
            .order_by(Expense.id)
            .all()
        )
    finally:
        db.close()


def job_for(session_factory, expense_id):
    db = session_factory()
    try:
        return db.get(ScheduledJob, expense_id)
    finally:
        db.close()


class TestAdvanceOneMonth:
    def test_plain_month(self):
        assert advance_one_month(datetime(2024, 3, 15, 8, 30)) == datetime(2024, 4, 15, 8, 30)

    def test_clamps_and_carries_clamped_day(self):
        first = advance_one_month(datetime(2024, 1, 31))
        assert first == datetime(2024, 2, 29)
        assert advance_one_month(first) == datetime(2024, 3, 29)

    def test_year_rollover(self):
        assert advance_one_month(datetime(2023, 12, 31)) == datetime(2024, 1, 31)


class TestFire:
    def test_clone_chain_with_leap_year_clamp(
        self, ledger, alice, scheduler, clock, session_factory, timer
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 31))

        clock.set(datetime(2024, 1, 31, 0, 0, 5))
        assert scheduler.run_due() == 1
        clock.set(datetime(2024, 2, 29, 0, 0, 5))
        assert scheduler.run_due() == 1

        first, second = clones_of(session_factory, template.id)
        assert first.next_occurrence == datetime(2024, 2, 29)
        assert second.next_occurrence == datetime(2024, 3, 29)
        assert job_for(session_factory, template.id).fires_at == datetime(2024, 3, 29)
        assert timer.jobs[f"expense-{template.id}"][0] == datetime(2024, 3, 29)

    def test_clone_copies_template_values(
        self, ledger, alice, scheduler, clock, session_factory
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10), note="monthly")
        clock.set(datetime(2024, 1, 10, 6, 0))
        clone = scheduler.fire(template.id, datetime(2024, 1, 10))

        assert clone.id != template.id
        assert clone.user_id == alice.id
        assert clone.title == "Gym"
        assert clone.amount == Decimal("40.00")
        assert clone.tags == ["fitness"]
        assert clone.note == "monthly"
        assert clone.currency == "USD"
        assert clone.date == datetime(2024, 1, 10, 6, 0)
        assert clone.template_id == template.id

        db = session_factory()
        try:
            stored = db.get(Expense, template.id)
            assert stored.date != clone.date
            assert stored.next_occurrence == datetime(2024, 2, 10)
        finally:
            db.close()

    def test_clone_does_not_share_attachment(
        self, ledger, alice, scheduler, clock
    ):
        template = ledger.create(
            alice.id,
            ExpenseCreate(
                title="Lease",
                amount=Decimal("900.00"),
                category="Rent",
                recurring=True,
                next_occurrence=datetime(2024, 1, 5),
            ),
            attachment=Attachment("lease.pdf", b"pdf"),
        )
        clock.set(datetime(2024, 1, 5))
        clone = scheduler.fire(template.id, datetime(2024, 1, 5))
        assert template.attachment
        assert clone.attachment is None

    def test_fires_exactly_once_per_instant(
        self, ledger, alice, scheduler, clock, session_factory
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        clock.set(datetime(2024, 1, 10, 12, 0))
        assert scheduler.run_due() == 1
        assert scheduler.run_due() == 0
        assert scheduler.fire(template.id, datetime(2024, 1, 10)) is None
        assert len(clones_of(session_factory, template.id)) == 1

    def test_not_due_yet(self, ledger, alice, scheduler, clock, session_factory):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        clock.set(datetime(2024, 1, 9, 23, 59))
        assert scheduler.run_due() == 0
        assert clones_of(session_factory, template.id) == []

    def test_missed_months_all_fire(
        self, ledger, alice, scheduler, clock, session_factory
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 31))
        clock.set(datetime(2024, 3, 30))
        assert scheduler.run_due() == 3
        assert [c.next_occurrence for c in clones_of(session_factory, template.id)] == [
            datetime(2024, 2, 29),
            datetime(2024, 3, 29),
            datetime(2024, 4, 29),
        ]

    def test_notifies_owner(self, ledger, alice, scheduler, clock, notifier):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        clock.set(datetime(2024, 1, 10))
        clone = scheduler.fire(template.id, datetime(2024, 1, 10))
        assert notifier.sent == [(alice.id, clone.id, "Gym")]

    def test_notification_failure_keeps_materialization(
        self, ledger, alice, scheduler, clock, notifier, session_factory
    ):
        notifier.fail = True
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        clock.set(datetime(2024, 1, 10))
        clone = scheduler.fire(template.id, datetime(2024, 1, 10))

        assert clone is not None
        assert len(clones_of(session_factory, template.id)) == 1
        assert job_for(session_factory, template.id).fires_at == datetime(2024, 2, 10)


class TestReschedule:
    def test_update_supersedes_old_instant(
        self, ledger, alice, scheduler, clock, session_factory, timer
    ):
        template = make_recurring(ledger, alice, datetime(2024, 2, 10))
        ledger.update(alice.id, template.id, {"next_occurrence": datetime(2024, 3, 10)})

        assert timer.jobs[f"expense-{template.id}"][0] == datetime(2024, 3, 10)
        clock.set(datetime(2024, 2, 15))
        assert scheduler.run_due() == 0
        # A timer for the old instant that was already in flight does nothing
        assert scheduler.fire(template.id, datetime(2024, 2, 10)) is None
        assert clones_of(session_factory, template.id) == []

        clock.set(datetime(2024, 3, 10))
        assert scheduler.run_due() == 1

    def test_update_other_fields_keeps_schedule(
        self, ledger, alice, scheduler, clock, session_factory
    ):
        template = make_recurring(ledger, alice, datetime(2024, 2, 10))
        ledger.update(alice.id, template.id, {"title": "Climbing gym"})
        clock.set(datetime(2024, 2, 10))
        clone = scheduler.fire(template.id, datetime(2024, 2, 10))
        assert clone.title == "Climbing gym"

    def test_delete_cancels_pending_job(
        self, ledger, alice, scheduler, clock, session_factory, timer
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        ledger.delete(alice.id, template.id)

        assert f"expense-{template.id}" not in timer.jobs
        assert job_for(session_factory, template.id) is None
        clock.set(datetime(2024, 6, 1))
        assert scheduler.run_due() == 0
        assert scheduler.fire(template.id, datetime(2024, 1, 10)) is None
        assert clones_of(session_factory, template.id) == []

    def test_rolled_back_schedule_leaves_nothing(self, scheduler, db, timer, alice):
        scheduler.schedule(db, 999, alice.id, datetime(2024, 5, 1))
        db.rollback()
        assert timer.jobs == {}
        assert db.get(ScheduledJob, 999) is None

    def test_rolled_back_schedule_is_not_armed_by_a_later_commit(
        self, scheduler, db, timer, alice
    ):
        scheduler.schedule(db, 999, alice.id, datetime(2024, 5, 1))
        db.rollback()
        db.commit()
        assert timer.jobs == {}

    def test_cancel_without_job_is_noop(self, scheduler, db, timer):
        scheduler.cancel(db, 12345)
        db.commit()
        assert timer.jobs == {}


class TestRecovery:
    def test_restart_fires_overdue_once(
        self, ledger, alice, session_factory, notifier, locks, clock, timer
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        clock.set(datetime(2024, 1, 20))

        restarted = RecurrenceScheduler(
            session_factory, notifier=notifier, locks=locks, clock=clock, timer=timer
        )
        assert restarted.recover() == 1
        assert timer.jobs[f"expense-{template.id}"][0] == datetime(2024, 2, 10)

        again = RecurrenceScheduler(
            session_factory, notifier=notifier, locks=locks, clock=clock, timer=timer
        )
        assert again.recover() == 0
        assert len(clones_of(session_factory, template.id)) == 1

    def test_recover_arms_future_jobs(
        self, ledger, alice, session_factory, notifier, locks, clock
    ):
        from tests.conftest import FakeTimer

        template = make_recurring(ledger, alice, datetime(2024, 5, 1))
        fresh_timer = FakeTimer()
        restarted = RecurrenceScheduler(
            session_factory,
            notifier=notifier,
            locks=locks,
            clock=clock,
            timer=fresh_timer,
        )
        assert restarted.recover() == 0
        assert fresh_timer.jobs == {
            f"expense-{template.id}": (datetime(2024, 5, 1), (template.id, datetime(2024, 5, 1)))
        }

    def test_job_for_no_longer_recurring_template_is_dropped(
        self, ledger, alice, scheduler, clock, session_factory, db
    ):
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        # Simulate a row left behind by an older process
        db.query(Expense).filter(Expense.id == template.id).update(
            {Expense.recurring: False, Expense.next_occurrence: None}
        )
        db.commit()

        clock.set(datetime(2024, 1, 11))
        assert scheduler.run_due() == 0
        assert job_for(session_factory, template.id) is None


class SlowNotifier(Notifier):
    def __init__(self, delay):
        self.delay = delay
        self.sent = []

    def notify(self, user, expense):
        time.sleep(self.delay)
        self.sent.append(expense.id)


class TestConcurrency:
    def test_update_and_fire_are_serialized_per_expense(
        self, ledger, alice, scheduler, locks, clock, timer, session_factory
    ):
        template = make_recurring(ledger, alice, datetime(2024, 2, 10))
        owner_id, template_id = alice.id, template.id
        moved_to = datetime(2024, 4, 10)
        clock.set(datetime(2024, 2, 10))
        errors = []

        def run(fn, *args):
            try:
                fn(*args)
            except Exception as exc:
                errors.append(exc)

        workers = [
            threading.Thread(
                target=run,
                args=(ledger.update, owner_id, template_id, {"next_occurrence": moved_to}),
            ),
            threading.Thread(
                target=run, args=(scheduler.fire, template_id, datetime(2024, 2, 10))
            ),
        ]
        with locks.hold(template_id):
            for worker in workers:
                worker.start()
            time.sleep(0.2)
            assert all(worker.is_alive() for worker in workers)
            assert clones_of(session_factory, template_id) == []
        for worker in workers:
            worker.join(timeout=5)

        assert errors == []
        # Whichever ran first, the job row, the template and the timer agree
        assert job_for(session_factory, template_id).fires_at == moved_to
        db = session_factory()
        try:
            assert db.get(Expense, template_id).next_occurrence == moved_to
        finally:
            db.close()
        assert timer.jobs[f"expense-{template_id}"][0] == moved_to
        assert len(clones_of(session_factory, template_id)) <= 1
        assert len(locks) == 0

    def test_slow_notification_does_not_hold_up_or_undo_fire(
        self, ledger, alice, locks, clock, timer, session_factory
    ):
        slow = RecurrenceScheduler(
            session_factory,
            notifier=SlowNotifier(0.5),
            locks=locks,
            clock=clock,
            timer=timer,
            notification_timeout=0.05,
        )
        template = make_recurring(ledger, alice, datetime(2024, 1, 10))
        clock.set(datetime(2024, 1, 10))

        started = time.monotonic()
        clone = slow.fire(template.id, datetime(2024, 1, 10))
        assert time.monotonic() - started < 0.4

        assert clone is not None
        assert [c.id for c in clones_of(session_factory, template.id)] == [clone.id]
        assert job_for(session_factory, template.id).fires_at == datetime(2024, 2, 10)
        assert timer.jobs[f"expense-{template.id}"][0] == datetime(2024, 2, 10)
