from __future__ import annotations

import json
import os
import tempfile
import unittest

from bazaar_flipper.risk_engine import RiskEngine
from tests.helpers import make_config, quiet_logger

# 2024-03-10 15:00:00 UTC
NOW = 1710082800.0
NEXT_MIDNIGHT = 1710115200.0


class RiskEngineTests(unittest.TestCase):
    def _risk(self, **sections) -> RiskEngine:
        return RiskEngine(make_config(**sections), quiet_logger(), now=lambda: NOW)

    def test_usage_never_exceeds_the_ceiling(self) -> None:
        risk = self._risk()
        risk.record_usage(RiskEngine.DAILY_LIMIT - 10)
        self.assertFalse(risk.is_at_limit())
        counted = risk.record_usage(1_000)
        self.assertEqual(counted, 10)
        self.assertEqual(risk.quota.used_amount, RiskEngine.DAILY_LIMIT)
        self.assertTrue(risk.is_at_limit())
        self.assertEqual(risk.record_usage(5), 0)
        self.assertEqual(risk.quota.used_amount, RiskEngine.DAILY_LIMIT)

    def test_coop_failsafe_keeps_headroom(self) -> None:
        risk = self._risk(failsafe={"coop_failsafe": True}, general={"max_usage": 1_000_000})
        self.assertEqual(risk.true_limit(), RiskEngine.DAILY_LIMIT - 5_000_000)
        risk.record_usage(RiskEngine.DAILY_LIMIT - 5_000_000)
        self.assertTrue(risk.is_at_limit())

    def test_limit_signal_clamps_usage(self) -> None:
        risk = self._risk()
        risk.record_usage(1_000)
        risk.on_limit_signal()
        self.assertEqual(risk.quota.used_amount, RiskEngine.DAILY_LIMIT)
        self.assertTrue(risk.sent_notification)

    def test_day_boundary_resets_usage(self) -> None:
        risk = self._risk()
        risk.quota.used_amount = 5_000_000
        risk.quota.reset_timestamp = NOW - 1
        self.assertTrue(risk.refresh_day())
        self.assertEqual(risk.quota.used_amount, 0)
        self.assertEqual(risk.quota.reset_timestamp, NEXT_MIDNIGHT)
        self.assertFalse(risk.refresh_day())

    def test_consecutive_failures(self) -> None:
        risk = self._risk()
        self.assertFalse(risk.record_execution_result(False, 3))
        self.assertFalse(risk.record_execution_result(False, 3))
        self.assertTrue(risk.record_execution_result(False, 3))
        self.assertEqual(risk.consecutive_fails, 0)
        risk.record_execution_result(False, 3)
        risk.record_execution_result(True, 3)
        self.assertEqual(risk.consecutive_fails, 0)


class QuotaPersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_save_and_load_use_millisecond_reset_time(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "limits", "main.json")
            risk = RiskEngine(make_config(), quiet_logger(), quota_path=path, now=lambda: NOW)
            risk.record_usage(123_456)
            risk.quota.reset_timestamp = NEXT_MIDNIGHT
            await risk.save()

            with open(path) as f:
                data = json.load(f)
            self.assertEqual(data, {"usedDailyLimit": 123_456, "limitResetTime": int(NEXT_MIDNIGHT * 1000)})

            loaded = await RiskEngine(make_config(), quiet_logger(), quota_path=path).load()
            self.assertEqual(loaded.quota.used_amount, 123_456)
            self.assertEqual(loaded.quota.reset_timestamp, NEXT_MIDNIGHT)

    async def test_corrupt_file_is_rewritten(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "main.json")
            with open(path, "w") as f:
                f.write("{not json")
            risk = await RiskEngine(make_config(), quiet_logger(), quota_path=path).load()
            self.assertEqual(risk.quota.used_amount, 0)
            with open(path) as f:
                self.assertEqual(json.load(f)["usedDailyLimit"], 0)


if __name__ == "__main__":
    unittest.main()
