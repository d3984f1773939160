"""Notification job handler: formats health warnings and fans them out."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Sequence

from ..interfaces.notifier import Notifier
from ..jobs.payloads import NotificationPayload

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Sends each ``(type, position)`` alert at most once per ``dedupe_seconds``.

    Delivery problems are logged and reported as ``False``; nothing is
    raised into the job pipeline.
    """

    def __init__(
        self,
        notifiers: Sequence[Notifier],
        dedupe_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._notifiers = list(notifiers)
        self._dedupe_seconds = dedupe_seconds
        self._clock = clock
        self._last_sent: dict[tuple[str, str], float] = {}

    @staticmethod
    def _format_wallet(address: str) -> str:
        if len(address) > 16:
            return f"{address[:10]}...{address[-6:]}"
        return address

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    def _build_message(self, payload: NotificationPayload) -> tuple[str, str]:
        if payload.type == "health-warning":
            return (
                "⚠️ WARNING: Liquidation Risk",
                f"⚠️ WARNING — Health Factor {payload.health_factor:.2f}\n"
                f"\n"
                f"Position: {payload.position_id}\n"
                f"Wallet: {self._format_wallet(payload.user_address)}\n"
                f"\n"
                f"Add collateral or repay debt before the health factor drops below 1.0.\n"
                f"\n"
                f"{self._now_str()} UTC",
            )
        return (
            f"lendwatch: {payload.type}",
            f"{payload.type} — position {payload.position_id}\n"
            f"Health Factor: {payload.health_factor:.2f}\n"
            f"Wallet: {self._format_wallet(payload.user_address)}\n"
            f"\n"
            f"{self._now_str()} UTC",
        )

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, sent in self._last_sent.items()
            if now - sent >= self._dedupe_seconds
        ]
        for key in expired:
            del self._last_sent[key]

    async def dispatch(self, payload: NotificationPayload) -> bool:
        key = (payload.type, payload.position_id)
        now = self._clock()
        self._prune(now)
        last = self._last_sent.get(key)
        if last is not None and now - last < self._dedupe_seconds:
            logger.debug("Suppressed duplicate %s for %s", payload.type, payload.position_id)
            return False
        if not self._notifiers:
            logger.info(
                "No notifiers configured; %s for %s (HF %.2f) not sent",
                payload.type,
                payload.position_id,
                payload.health_factor,
            )
            return False

        subject, message = self._build_message(payload)
        delivered = False
        for notifier in self._notifiers:
            try:
                delivered = await notifier.send_alert(message, subject=subject) or delivered
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

        if delivered:
            self._last_sent[key] = now
        else:
            logger.warning("No notifier delivered %s for %s", payload.type, payload.position_id)
        return delivered

    async def handle(self, payload: NotificationPayload) -> bool:
        return await self.dispatch(payload)
