"""
Write-behind persistence.

The engine swaps in new state synchronously and hands the serialized
snapshot to this writer, which saves it in a background task. Only the
latest snapshot matters: a snapshot submitted while a save is in flight
replaces any older one still waiting. Failed saves are retried with
backoff; a snapshot that still cannot be written is kept and retried on the
next submit or flush, and the learner sees a single warning rather than an
error.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from pharmalingo.common.config import PersistenceConfig
from pharmalingo.common.error_handling import PersistenceFailure, log_error, retry
from pharmalingo.common.logger import app_logger, for_user
from pharmalingo.progress.repository import ProgressStore

logger = app_logger.getChild("progress.writer")

WarningCallback = Callable[[PersistenceFailure], None]


class WriteBehindWriter:
    """Serializes saves for one learner, latest snapshot wins"""

    def __init__(
        self,
        store: ProgressStore,
        user_id: str,
        config: Optional[PersistenceConfig] = None,
        on_warning: Optional[WarningCallback] = None
    ):
        """
        Args:
            store: Persisted store
            user_id: Learner whose snapshots are written
            config: Retry and warning policy
            on_warning: Called once when saves keep failing
        """
        self.store = store
        self.user_id = user_id
        self.config = config or PersistenceConfig()
        self.on_warning = on_warning
        self.log = for_user(logger, user_id)

        self._pending: Optional[Dict[str, Any]] = None
        self._unsaved: Optional[Dict[str, Any]] = None
        self._task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0
        self._warned = False
        self.saves = 0

        self._save = retry(
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            backoff_factor=self.config.backoff_factor,
            retry_exceptions=(PersistenceFailure,),
        )(self._save_once)

    @property
    def has_unsaved(self) -> bool:
        return self._pending is not None or self._unsaved is not None

    async def _save_once(self, data: Dict[str, Any]) -> None:
        await self.store.save(self.user_id, data)

    def submit(self, data: Dict[str, Any]) -> None:
        """Queue a snapshot; must be called from the running event loop"""
        self._pending = data
        self._unsaved = None
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending is not None:
            data, self._pending = self._pending, None
            try:
                await self._save(data)
            except PersistenceFailure as e:
                if self._pending is None:
                    self._unsaved = data
                self._record_failure(e)
            else:
                self.saves += 1
                self._consecutive_failures = 0
                self._warned = False

    def _record_failure(self, error: PersistenceFailure) -> None:
        self._consecutive_failures += 1
        log_error(error, context={"user_id": self.user_id, "failures": self._consecutive_failures})
        if self._consecutive_failures >= self.config.warn_after_failures and not self._warned:
            self._warned = True
            self.log.warning("Progress could not be saved; changes are kept in memory and will be retried")
            if self.on_warning:
                self.on_warning(error)

    async def flush(self) -> bool:
        """
        Wait for queued snapshots to be written, retrying a previously failed one.

        Returns:
            True if nothing is left unsaved
        """
        if self._unsaved is not None and self._pending is None:
            self.submit(self._unsaved)
        if self._task is not None:
            await self._task
        return not self.has_unsaved
