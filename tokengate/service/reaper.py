"""Background hygiene for grants and refresh secrets.

Periodically deactivates grants whose expiry has passed and deletes refresh
secrets that expired longer ago than the retention window. Expiry is still
enforced at read time; the reaper only keeps the active indexes and the
secret table small.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from tokengate.logging import get_logger
from tokengate.service.tokens import TokenStore

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
DEFAULT_RETENTION_DAYS = 30
MAX_BACKOFF_SECONDS = 300


class GrantReaper:
    def __init__(
        self,
        tokens: TokenStore,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self.tokens = tokens
        self.interval = interval
        self.retention_days = retention_days
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("grant_reaper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("grant_reaper_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("grant_reaper_stopped")

    async def run_once(self) -> dict:
        result = await asyncio.to_thread(self.tokens.reap, self.retention_days)
        if result["grants_expired"] or result["refresh_secrets_purged"]:
            logger.info("grant_reaper_pass", **result)
        return result

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "grant_reaper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "grant_reaper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
