import threading
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from core.config import cfg
from core.db import DB
from core.exceptions import QuotaBusyError
from core.models.base import utc_now
from core.models.usage_daily import UsageDaily
from core.quota_service import (
    ReserveStatus,
    check_and_reserve,
    get_plan_limit,
    get_plan_limits,
    peek,
    usage_day,
)


class QuotaLedgerTestCase(unittest.TestCase):
    def setUp(self):
        self.session = DB.get_session()
        self.user_id = f"u_{uuid.uuid4().hex[:8]}"
        self.day = "2026-03-01"

    def tearDown(self):
        self.session.close()

    def _seed(self, count: int):
        now = utc_now()
        self.session.add(UsageDaily(user_id=self.user_id, date=self.day, count=count, created_at=now, updated_at=now))
        self.session.commit()

    def _stored(self) -> int:
        self.session.expire_all()
        row = self.session.get(UsageDaily, (self.user_id, self.day))
        return int(row.count) if row else 0

    def test_plan_limits(self):
        self.assertEqual(get_plan_limit("free"), 20)
        self.assertEqual(get_plan_limit("pro"), 1000)
        self.assertEqual(get_plan_limit("pro-plus"), 5000)
        self.assertGreaterEqual(get_plan_limit("enterprise"), 999999)
        # 未知套餐回落到 free
        self.assertEqual(get_plan_limit("platinum"), 20)
        self.assertEqual(get_plan_limit(""), 20)

    def test_configured_limits_override_defaults(self):
        cfg.set("quota.limits", {"free": 3})
        limits = get_plan_limits()
        self.assertEqual(limits["free"], 3)
        self.assertEqual(limits["pro"], 1000)

    def test_first_reservation_creates_row(self):
        result = check_and_reserve(self.session, self.user_id, "free", day=self.day)
        self.assertEqual(result.status, ReserveStatus.ALLOWED)
        self.assertEqual(result.used, 0)
        self.assertEqual(result.limit, 20)
        self.assertEqual(self._stored(), 1)

    def test_boundary_at_free_limit(self):
        self._seed(19)

        twentieth = check_and_reserve(self.session, self.user_id, "free", day=self.day)
        self.assertEqual(twentieth.status, ReserveStatus.ALLOWED)
        self.assertEqual((twentieth.used, twentieth.limit), (19, 20))
        self.assertEqual(self._stored(), 20)

        denied = check_and_reserve(self.session, self.user_id, "free", day=self.day)
        self.assertEqual(denied.status, ReserveStatus.DENIED)
        self.assertEqual((denied.used, denied.limit), (20, 20))
        self.assertEqual(self._stored(), 20)

    def test_unknown_plan_uses_free_ceiling(self):
        self._seed(20)
        result = check_and_reserve(self.session, self.user_id, "legacy-gold", day=self.day)
        self.assertFalse(result.allowed)
        self.assertEqual(result.plan, "free")
        self.assertEqual(self._stored(), 20)

    def test_days_are_counted_separately(self):
        self._seed(20)
        result = check_and_reserve(self.session, self.user_id, "free", day="2026-03-02")
        self.assertTrue(result.allowed)
        self.assertEqual(result.used, 0)
        self.assertEqual(self._stored(), 20)

    def test_peek_has_no_side_effects(self):
        self._seed(7)
        snapshot = peek(self.session, self.user_id, "free", day=self.day)
        self.assertEqual((snapshot.used, snapshot.limit, snapshot.remaining), (7, 20, 13))
        self.assertEqual(self._stored(), 7)

        empty = peek(self.session, "nobody", "pro", day=self.day)
        self.assertEqual((empty.used, empty.limit, empty.remaining), (0, 1000, 1000))
        self.assertIsNone(self.session.get(UsageDaily, ("nobody", self.day)))

    def test_concurrent_reservations_never_exceed_limit(self):
        limit, workers = 5, 12
        outcomes = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(workers)

        def reserve():
            session = DB.get_session()
            try:
                barrier.wait()
                result = check_and_reserve(session, self.user_id, "free", day=self.day, limits={"free": limit})
                with lock:
                    outcomes.append(result.status)
            except Exception as e:
                with lock:
                    errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=reserve) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        self.assertEqual(errors, [])
        self.assertEqual(outcomes.count(ReserveStatus.ALLOWED), limit)
        self.assertEqual(outcomes.count(ReserveStatus.DENIED), workers - limit)
        self.assertEqual(self._stored(), limit)

    def test_contention_retries_then_reports_busy(self):
        busy = OperationalError("INSERT", {}, Exception("database is locked"))
        with patch("core.quota_service._upsert_increment", side_effect=busy) as upsert_mock:
            with self.assertRaises(QuotaBusyError) as ctx:
                check_and_reserve(self.session, self.user_id, "free", day=self.day, max_attempts=3)
        self.assertEqual(upsert_mock.call_count, 3)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(self._stored(), 0)

    def test_contention_recovers_within_attempts(self):
        from core import quota_service

        real = quota_service._upsert_increment
        busy = OperationalError("INSERT", {}, Exception("database is locked"))
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise busy
            return real(*args, **kwargs)

        with patch("core.quota_service._upsert_increment", side_effect=flaky):
            result = check_and_reserve(self.session, self.user_id, "free", day=self.day)
        self.assertTrue(result.allowed)
        self.assertEqual(self._stored(), 1)

    def test_usage_day_uses_reference_timezone(self):
        moment = datetime(2026, 3, 1, 23, 30)
        self.assertEqual(usage_day(moment), "2026-03-01")
        self.assertEqual(usage_day(moment, tz=timezone(timedelta(hours=8))), "2026-03-02")
        aware = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)
        self.assertEqual(usage_day(aware), "2026-03-01")


if __name__ == "__main__":
    unittest.main()
