# bazaar_flipper/risk_engine.py
import json
import logging
import os
import time
from typing import Callable, Optional

import aiofiles

from .models import DailyQuota
from .schedule import next_utc_midnight


class RiskEngine:
    """
    Guards the bazaar's hard daily limit and counts consecutive failures.

    `used_amount` only grows within a day and is clamped to DAILY_LIMIT;
    once the usable limit is reached nothing may spend again until the
    next UTC midnight.
    """
    DAILY_LIMIT = 15_000_000_000

    def __init__(
        self,
        config: dict,
        logger: logging.Logger,
        quota_path: Optional[str] = None,
        now: Callable[[], float] = time.time,
    ):
        self.cfg = config
        self.logger = logger
        self.quota_path = quota_path
        self._now = now
        self.quota = DailyQuota()
        self.consecutive_fails = 0
        self.kill_switch = False
        self.sent_notification = False

    # --- LIMIT ---

    def true_limit(self) -> float:
        """The ceiling we allow ourselves; co-op accounts keep headroom for the other members."""
        reserve = 0.0
        if self.cfg['failsafe'].get('coop_failsafe'):
            reserve = self.cfg['general']['max_usage'] * 5
        return self.DAILY_LIMIT - reserve

    def remaining_limit(self) -> float:
        return self.true_limit() - self.quota.used_amount

    def is_at_limit(self) -> bool:
        return self.remaining_limit() <= 0

    def refresh_day(self) -> bool:
        """Resets usage when the stored reset time has passed. Returns True on a new day."""
        now = self._now()
        if self.quota.reset_timestamp <= now:
            self.logger.info("New day, resetting used daily limit back to zero")
            self.quota.reset_timestamp = next_utc_midnight(now)
            self.quota.used_amount = 0.0
            self.sent_notification = False
            return True
        return False

    def record_usage(self, amount: float) -> float:
        """Adds spent or sold value. Returns the amount actually counted."""
        if amount <= 0:
            return 0.0
        before = self.quota.used_amount
        self.quota.used_amount = min(self.DAILY_LIMIT, before + amount)
        self._check_limit()
        return self.quota.used_amount - before

    def on_limit_signal(self):
        """The game told us the limit is reached; that beats our own arithmetic."""
        self.logger.debug("Daily limit reached (reported by the bazaar)")
        self.quota.used_amount = self.DAILY_LIMIT
        self._check_limit()

    def _check_limit(self):
        if self.quota.used_amount >= self.true_limit() and not self.sent_notification:
            self.sent_notification = True
            self.logger.critical("⛔ DAILY LIMIT REACHED: no further bazaar transactions until the reset.")

    # --- FAILURES ---

    def record_execution_result(self, success: bool, max_fails: int) -> bool:
        """
        Tracks consecutive failures. Returns True when `max_fails` is reached;
        the counter is cleared so the caller can recover and start over.
        """
        if success:
            self.consecutive_fails = 0
            return False
        self.consecutive_fails += 1
        if self.consecutive_fails >= max_fails:
            self.logger.critical(f"⛔ {self.consecutive_fails} consecutive failures.")
            self.consecutive_fails = 0
            return True
        return False

    # --- PERSISTENCE ---

    async def load(self):
        if not self.quota_path or not os.path.exists(self.quota_path):
            return self
        try:
            async with aiofiles.open(self.quota_path, mode="r") as f:
                data = json.loads(await f.read())
            self.quota = DailyQuota.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            self.logger.error(f"Error loading limits from {self.quota_path}: {e}")
            await self.save()
        return self

    async def save(self):
        if not self.quota_path:
            return self
        try:
            directory = os.path.dirname(self.quota_path)
            if directory and not os.path.exists(directory):
                os.makedirs(directory, exist_ok=True)
            async with aiofiles.open(self.quota_path, mode="w") as f:
                await f.write(json.dumps(self.quota.to_dict(), indent="\t"))
        except OSError as e:
            self.logger.error(f"Error saving limits to {self.quota_path}: {e}")
        return self
