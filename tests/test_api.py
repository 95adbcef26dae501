from __future__ import annotations

import unittest

from fastapi.testclient import TestClient

from queue_fixtures import add_branch, add_counter, add_user, memory_database
from queuematic.main import create_app
from queuematic.models import PrincipalRole
from queuematic.security.passwords import hash_password

PASSWORD = 'correct horse battery'


class QueueApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.password_hash = hash_password(PASSWORD)

    def setUp(self) -> None:
        self.engine, self.session_factory = memory_database()
        with self.session_factory() as db:
            self.branch = add_branch(db, 'Main')
            self.closed_branch = add_branch(db, 'Closed', active=False)
            self.c1 = add_counter(db, self.branch, 1)
            self.c2 = add_counter(db, self.branch, 2)
            add_user(db, 'alice', branch=self.branch, password_hash=self.password_hash)
            add_user(db, 'bob', branch=self.branch, password_hash=self.password_hash)
            add_user(db, 'admin', role=PrincipalRole.ADMIN, password_hash=self.password_hash)
            db.commit()
        self.app = create_app(self.session_factory)
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.client.close()
        self.engine.dispose()

    def _login(self, username: str) -> dict:
        response = self.client.post('/login', json={'username': username, 'password': PASSWORD})
        self.assertEqual(response.status_code, 200, response.text)
        self.client.cookies.clear()
        return {'Authorization': f"Bearer {response.json()['token']}"}

    def test_full_service_cycle(self) -> None:
        alice = self._login('alice')

        opened = self.client.post('/counters/sessions', json={'counter_id': self.c1.id}, headers=alice)
        self.assertEqual(opened.status_code, 201, opened.text)

        issued = self.client.post('/queue/tickets', json={'branch_id': self.branch.id})
        self.assertEqual(issued.status_code, 201)
        self.assertEqual(issued.json()['number'], 1)
        self.assertEqual(issued.json()['status'], 'WAITING')

        called = self.client.post('/queue/call-next', json={'counter_id': self.c1.id}, headers=alice)
        self.assertEqual(called.status_code, 200)
        ticket = called.json()['ticket']
        self.assertEqual(ticket['number'], 1)
        self.assertEqual(ticket['counter_number'], 1)
        self.assertFalse(called.json()['none_waiting'])

        again = self.client.post('/queue/call-next', json={'counter_id': self.c1.id}, headers=alice)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()['error'], 'conflict')

        done = self.client.post(f"/queue/tickets/{ticket['id']}/complete", headers=alice)
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.json()['status'], 'COMPLETED')

        empty = self.client.post('/queue/call-next', json={'counter_id': self.c1.id}, headers=alice)
        self.assertEqual(empty.status_code, 200)
        self.assertEqual(empty.json(), {'ticket': None, 'none_waiting': True})

        status = self.client.get(f'/queue/status/{self.branch.id}')
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json()['completed_today'], 1)
        self.assertEqual(status.json()['active_counters'], 1)
        self.assertEqual(status.headers['cache-control'], 'no-store')

        history = self.client.get(f"/queue/history/{opened.json()['principal_id']}", headers=alice)
        self.assertEqual(history.json()['total_completed'], 1)

    def test_clerk_endpoints_require_login(self) -> None:
        response = self.client.post('/queue/call-next', json={'counter_id': self.c1.id})
        self.assertEqual(response.status_code, 401)

    def test_issue_at_closed_branch_is_unavailable(self) -> None:
        response = self.client.post('/queue/tickets', json={'branch_id': self.closed_branch.id})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'unavailable')

    def test_unknown_branch_status_is_not_found(self) -> None:
        response = self.client.get('/queue/status/9999')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'not_found', 'detail': 'Branch not found'})

    def test_invalid_branch_id_is_rejected(self) -> None:
        response = self.client.post('/queue/tickets', json={'branch_id': 0})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid')
        self.assertIn('branch_id', response.json()['detail'])

    def test_missing_identifier_uses_error_envelope(self) -> None:
        response = self.client.post('/queue/tickets', json={})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'invalid', 'detail': 'branch_id: Field required'})

        response = self.client.get('/queue/status/not-a-number')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid')

    def test_occupied_counter_conflict(self) -> None:
        alice = self._login('alice')
        bob = self._login('bob')
        self.client.post('/counters/sessions', json={'counter_id': self.c1.id}, headers=alice)

        response = self.client.post('/counters/sessions', json={'counter_id': self.c1.id}, headers=bob)
        self.assertEqual(response.status_code, 409)

        available = self.client.get(f'/counters/available/{self.branch.id}', headers=bob)
        self.assertEqual([row['number'] for row in available.json()], [2])

        board = self.client.get(f'/counters/branch/{self.branch.id}', headers=bob)
        self.assertEqual(board.json()[0]['occupant']['username'], 'alice')

    def test_logout_releases_idle_counter(self) -> None:
        alice = self._login('alice')
        self.client.post('/counters/sessions', json={'counter_id': self.c2.id}, headers=alice)

        response = self.client.post('/logout', headers=alice)
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()['released_session_id'])
        self.assertEqual(self.client.get('/me', headers=alice).status_code, 401)

        alice = self._login('alice')
        self.assertIsNone(self.client.get('/counters/my-session', headers=alice).json())
        last_used = self.client.get('/counters/last-used', headers=alice).json()
        self.assertEqual(last_used['counter_number'], 2)

    def test_login_rejects_bad_password_and_rate_limits(self) -> None:
        for _ in range(5):
            response = self.client.post('/login', json={'username': 'alice', 'password': 'wrong'})
            self.assertEqual(response.status_code, 401)
        blocked = self.client.post('/login', json={'username': 'alice', 'password': PASSWORD})
        self.assertEqual(blocked.status_code, 429)
        self.assertIn('retry-after', blocked.headers)

    def test_management_requires_admin(self) -> None:
        alice = self._login('alice')
        response = self.client.post('/management/counters', json={'branch_id': self.branch.id, 'number': 3}, headers=alice)
        self.assertEqual(response.status_code, 403)

    def test_admin_cannot_deactivate_counter_in_use(self) -> None:
        alice = self._login('alice')
        admin = self._login('admin')
        self.client.post('/counters/sessions', json={'counter_id': self.c1.id}, headers=alice)

        blocked = self.client.patch(f'/management/counters/{self.c1.id}', json={'active': False}, headers=admin)
        self.assertEqual(blocked.status_code, 409)

        created = self.client.post('/management/counters', json={'branch_id': self.branch.id, 'number': 3}, headers=admin)
        self.assertEqual(created.status_code, 201)
        duplicate = self.client.post('/management/counters', json={'branch_id': self.branch.id, 'number': 3}, headers=admin)
        self.assertEqual(duplicate.status_code, 409)

        retired = self.client.patch(f'/management/counters/{self.c2.id}', json={'active': False}, headers=admin)
        self.assertEqual(retired.status_code, 200)
        self.assertFalse(retired.json()['active'])

    def test_admin_force_terminates_busy_session(self) -> None:
        alice = self._login('alice')
        admin = self._login('admin')
        session = self.client.post('/counters/sessions', json={'counter_id': self.c1.id}, headers=alice).json()
        self.client.post('/queue/tickets', json={'branch_id': self.branch.id})
        self.client.post('/queue/call-next', json={'counter_id': self.c1.id}, headers=alice)

        refused = self.client.post(f"/management/sessions/{session['id']}/terminate", json={}, headers=admin)
        self.assertEqual(refused.status_code, 409)

        forced = self.client.post(
            f"/management/sessions/{session['id']}/terminate",
            json={'force': True},
            headers=admin,
        )
        self.assertEqual(forced.status_code, 200)
        self.assertEqual(forced.json()['end_reason'], 'FORCED')

    def test_display_board_renders(self) -> None:
        self.client.post('/queue/tickets', json={'branch_id': self.branch.id})
        response = self.client.get(f'/display/{self.branch.id}')
        self.assertEqual(response.status_code, 200)
        self.assertIn('Main', response.text)
        self.assertIn('#1', response.text)
        self.assertEqual(response.headers['x-robots-tag'], 'noindex, nofollow, noarchive')
        self.assertIn("script-src 'none'", response.headers['content-security-policy'])

    def test_admin_reads_ticket_audit_trail(self) -> None:
        alice = self._login('alice')
        admin = self._login('admin')
        self.client.post('/counters/sessions', json={'counter_id': self.c1.id}, headers=alice)
        self.client.post('/queue/tickets', json={'branch_id': self.branch.id})
        ticket = self.client.post('/queue/call-next', json={'counter_id': self.c1.id}, headers=alice).json()['ticket']
        self.client.post(f"/queue/tickets/{ticket['id']}/complete", headers=alice)

        denied = self.client.get('/management/audit', headers=alice)
        self.assertEqual(denied.status_code, 403)

        trail = self.client.get('/management/audit', params={'ticket_id': ticket['id']}, headers=admin)
        self.assertEqual(trail.status_code, 200)
        self.assertEqual([entry['action'] for entry in trail.json()], ['TICKET_COMPLETED', 'TICKET_CALLED'])
        self.assertEqual(trail.json()[1]['metadata']['number'], 1)

    def test_deactivating_user_signs_them_out(self) -> None:
        alice = self._login('alice')
        admin = self._login('admin')
        alice_id = self.client.get('/me', headers=alice).json()['user']['id']

        response = self.client.patch(f'/management/users/{alice_id}', json={'active': False}, headers=admin)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['active'])
        self.assertEqual(self.client.get('/me', headers=alice).status_code, 401)

        relogin = self.client.post('/login', json={'username': 'alice', 'password': PASSWORD})
        self.assertEqual(relogin.status_code, 401)


if __name__ == '__main__':
    unittest.main()
