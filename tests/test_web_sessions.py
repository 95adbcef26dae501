from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from queue_fixtures import add_branch, add_user, at, memory_database
from queuematic.auth import Role
from queuematic.models import WebSession
from queuematic.security.sessions import (
    create_web_session,
    load_principal_from_token,
    purge_web_sessions,
    revoke_principal_sessions,
    revoke_web_session,
)

NOON = at(2024, 6, 3, 12)


class WebSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = memory_database()
        self.clock = patch('queuematic.clock.now', return_value=NOON)
        self.now = self.clock.start()
        with self.session_factory() as db:
            branch = add_branch(db, 'Main')
            self.user_id = add_user(db, 'alice', branch=branch).id
            db.commit()

    def tearDown(self) -> None:
        self.clock.stop()
        self.engine.dispose()

    def _issue(self) -> str:
        with self.session_factory() as db:
            token = create_web_session(db, self.user_id, ip='10.0.0.5', user_agent='kiosk')
            db.commit()
        return token

    def _load(self, token: str):
        with self.session_factory() as db:
            principal = load_principal_from_token(db, token)
            db.commit()
        return principal

    def test_token_resolves_to_principal_and_is_not_stored_raw(self) -> None:
        token = self._issue()

        principal = self._load(token)
        self.assertEqual(principal.id, self.user_id)
        self.assertEqual(principal.role, Role.CLERK)

        with self.session_factory() as db:
            stored = db.execute(select(WebSession.token_digest)).scalar_one()
        self.assertNotEqual(stored, token)
        self.assertEqual(len(stored), 64)

    def test_unknown_or_missing_token_is_anonymous(self) -> None:
        self.assertIsNone(self._load('not-a-token'))
        self.assertIsNone(self._load(None))

    def test_activity_slides_expiry_forward(self) -> None:
        token = self._issue()

        self.now.return_value = NOON + timedelta(hours=23)
        self.assertIsNotNone(self._load(token))
        self.now.return_value = NOON + timedelta(hours=46)
        self.assertIsNotNone(self._load(token))
        self.now.return_value = NOON + timedelta(hours=80)
        self.assertIsNone(self._load(token))

    def test_revoked_token_stops_working(self) -> None:
        token = self._issue()
        with self.session_factory() as db:
            self.assertTrue(revoke_web_session(db, token))
            self.assertFalse(revoke_web_session(db, token))
            db.commit()
        self.assertIsNone(self._load(token))

    def test_revoke_everywhere_and_purge(self) -> None:
        first, second = self._issue(), self._issue()
        with self.session_factory() as db:
            self.assertEqual(revoke_principal_sessions(db, self.user_id), 2)
            db.commit()
        self.assertIsNone(self._load(first))
        self.assertIsNone(self._load(second))

        with self.session_factory() as db:
            self.assertEqual(purge_web_sessions(db, before=NOON), 0)
            self.assertEqual(purge_web_sessions(db, before=NOON + timedelta(minutes=1)), 2)
            db.commit()


if __name__ == '__main__':
    unittest.main()
