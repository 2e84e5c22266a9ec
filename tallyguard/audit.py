"""Fire-and-forget recording of access decisions."""

from __future__ import annotations

import asyncio
import logging
from typing import Set

from .models import AccessContext, Decision, PermissionCheckRecord
from .store.repository import AccessStore

logger = logging.getLogger(__name__)


class AuditSink:
    """Writes a :class:`PermissionCheckRecord` for every decision.

    ``record`` schedules the write on the running loop and returns
    immediately.  Write failures are logged and dropped; they never reach
    the caller of ``evaluate``.
    """

    def __init__(self, store: AccessStore, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled
        self._pending: Set[asyncio.Task] = set()

    def record(self, ctx: AccessContext, decision: Decision) -> None:
        if not self.enabled:
            return
        record = PermissionCheckRecord.from_decision(ctx, decision)
        task = asyncio.create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: PermissionCheckRecord) -> None:
        try:
            await self.store.record_check(record)
        except Exception as exc:
            logger.warning(
                f"Failed to log permission check for user={record.user_id}: {exc}"
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self.pending:
            await asyncio.gather(*list(self._pending))
