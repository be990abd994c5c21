import unittest
from datetime import timedelta

from core.db import DB
from core.models.auth_session import AuthSession
from core.models.base import utc_now
from core.session_service import start_login
from jobs.session_sweep import run_once


class SessionSweepJobTestCase(unittest.TestCase):
    def setUp(self):
        self.session = DB.get_session()

    def tearDown(self):
        self.session.close()

    def test_run_once_deletes_expired_sessions(self):
        start_login(self.session, "a@x.com", now=utc_now() - timedelta(hours=2))
        fresh = start_login(self.session, "a@x.com")

        self.assertEqual(run_once(), 1)
        self.session.expire_all()
        self.assertEqual([x.session_id for x in self.session.query(AuthSession).all()], [fresh.session_id])
        self.assertEqual(run_once(), 0)


if __name__ == "__main__":
    unittest.main()
