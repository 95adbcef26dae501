from __future__ import annotations

import unittest
from datetime import date, timedelta
from unittest.mock import patch

from queue_fixtures import at, build_branch, memory_database
from queuematic.errors import Conflict, Forbidden, NotFound
from queuematic.models import Ticket, TicketStatus
from queuematic.services.queue_engine import QueueEngine


class CompleteTicketTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = memory_database()
        self.branch, (self.c1, self.c2), (self.alice, self.bob), self.admin = build_branch(self.session_factory)
        self.queue = QueueEngine(self.session_factory, retry_backoff_seconds=0)
        self.queue.start_session(self.c1.id, self.alice)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_completion_records_rounded_service_duration(self) -> None:
        called_at = at(2024, 6, 3, 10)
        with patch('queuematic.clock.now', return_value=called_at):
            self.queue.issue_ticket(self.branch.id)
            called = self.queue.call_next(self.c1.id, self.alice).ticket
        with patch('queuematic.clock.now', return_value=called_at + timedelta(seconds=95.4)):
            done = self.queue.complete_ticket(called.id, self.alice)

        self.assertEqual(done.status, TicketStatus.COMPLETED)
        self.assertEqual(done.service_duration_seconds, 95)
        self.assertEqual(done.completed_at, called_at + timedelta(seconds=95.4))

    def test_serving_ticket_can_be_completed(self) -> None:
        self.queue.issue_ticket(self.branch.id)
        called = self.queue.call_next(self.c1.id, self.alice).ticket
        self.queue.start_serving(called.id, self.alice)
        self.assertEqual(self.queue.complete_ticket(called.id, self.alice).status, TicketStatus.COMPLETED)

    def test_completed_ticket_cannot_be_completed_again(self) -> None:
        self.queue.issue_ticket(self.branch.id)
        called = self.queue.call_next(self.c1.id, self.alice).ticket
        self.queue.complete_ticket(called.id, self.alice)

        with self.assertRaises(Conflict):
            self.queue.complete_ticket(called.id, self.alice)

    def test_other_clerk_cannot_complete(self) -> None:
        self.queue.issue_ticket(self.branch.id)
        called = self.queue.call_next(self.c1.id, self.alice).ticket
        with self.assertRaises(Forbidden):
            self.queue.complete_ticket(called.id, self.bob)

    def test_waiting_ticket_cannot_be_completed(self) -> None:
        waiting = self.queue.issue_ticket(self.branch.id)
        with self.assertRaises(Conflict):
            self.queue.complete_ticket(waiting.id, self.alice)

    def test_unknown_ticket_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.queue.complete_ticket(12345, self.alice)


class CancelTicketTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = memory_database()
        self.branch, (self.c1, _), (self.alice, _), self.admin = build_branch(self.session_factory)
        self.queue = QueueEngine(self.session_factory, retry_backoff_seconds=0)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_admin_cancels_waiting_ticket(self) -> None:
        waiting = self.queue.issue_ticket(self.branch.id)
        cancelled = self.queue.cancel_ticket(waiting.id, self.admin)
        self.assertEqual(cancelled.status, TicketStatus.CANCELLED)
        self.assertIsNotNone(cancelled.cancelled_at)

    def test_clerk_cannot_cancel(self) -> None:
        waiting = self.queue.issue_ticket(self.branch.id)
        with self.assertRaises(Forbidden):
            self.queue.cancel_ticket(waiting.id, self.alice)

    def test_called_ticket_cannot_be_cancelled(self) -> None:
        self.queue.issue_ticket(self.branch.id)
        self.queue.start_session(self.c1.id, self.alice)
        called = self.queue.call_next(self.c1.id, self.alice).ticket
        with self.assertRaises(Conflict):
            self.queue.cancel_ticket(called.id, self.admin)

    def test_cancelled_ticket_stays_cancelled(self) -> None:
        waiting = self.queue.issue_ticket(self.branch.id)
        self.queue.cancel_ticket(waiting.id, self.admin)
        with self.assertRaises(Conflict):
            self.queue.cancel_ticket(waiting.id, self.admin)

        self.queue.start_session(self.c1.id, self.alice)
        self.assertTrue(self.queue.call_next(self.c1.id, self.alice).none_waiting)

    def test_stale_waiting_tickets_from_earlier_days_are_cancelled(self) -> None:
        yesterday = at(2024, 6, 2, 16)
        today = at(2024, 6, 3, 9)
        with patch('queuematic.clock.now', return_value=yesterday):
            stale = self.queue.issue_ticket(self.branch.id)
        with patch('queuematic.clock.now', return_value=today):
            fresh = self.queue.issue_ticket(self.branch.id)
            cancelled = self.queue.cancel_stale_waiting_tickets()

        self.assertEqual(cancelled, 1)
        with self.session_factory() as db:
            self.assertEqual(db.get(Ticket, stale.id).status, TicketStatus.CANCELLED)
            self.assertEqual(db.get(Ticket, fresh.id).status, TicketStatus.WAITING)

    def test_stale_cleanup_respects_explicit_cutoff(self) -> None:
        with patch('queuematic.clock.now', return_value=at(2024, 6, 1, 12)):
            self.queue.issue_ticket(self.branch.id)
        self.assertEqual(self.queue.cancel_stale_waiting_tickets(date(2024, 6, 1)), 0)
        self.assertEqual(self.queue.cancel_stale_waiting_tickets(date(2024, 6, 2)), 1)


if __name__ == '__main__':
    unittest.main()
