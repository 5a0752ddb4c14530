# tixgate/offline/sync.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import httpx

from .. import config
from ..helpers import now_ts
from .queue import OfflineScan, ScanQueue, SCAN_TYPES

logger = logging.getLogger(__name__)

SYNCED = "synced"
CONFLICT = "conflict"
FAILED = "failed"


@dataclass
class SyncStats:
    attempted: int = 0
    synced: int = 0
    conflicts: int = 0
    failed: int = 0
    cleaned: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScanSyncer:
    """
    Replays queued scans against the server's check-in endpoint, one at a
    time. The server decides; the device only records what it was told.
    """

    def __init__(
        self,
        queue: ScanQueue,
        http: httpx.AsyncClient,
        staff_id: str,
        *,
        max_attempts: Optional[int] = None,
        retention_seconds: Optional[int] = None,
        checkin_path: str = "/api/checkin",
    ) -> None:
        self.queue = queue
        self.http = http
        self.staff_id = staff_id
        self.max_attempts = (
            config.OFFLINE_MAX_SYNC_ATTEMPTS
            if max_attempts is None else max_attempts
        )
        self.retention_seconds = (
            config.OFFLINE_RETENTION_SECONDS
            if retention_seconds is None else retention_seconds
        )
        self.checkin_path = checkin_path
        self.online = False
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    async def sync_one(self, scan: OfflineScan) -> str:
        """Returns synced | conflict | failed."""
        if scan.scan_type not in SCAN_TYPES:
            await self.queue.mark_failed(
                scan.id, f"unsupported scan type {scan.scan_type!r}"
            )
            return FAILED

        body = {
            "qr_token": scan.qr_data,
            "staff_id": self.staff_id,
            "business_id": scan.business_id,
            "scanned_at": scan.scanned_at,
            "scan_type": scan.scan_type,
            "source": "offline",
        }
        try:
            resp = await self.http.post(self.checkin_path, json=body)
        except httpx.HTTPError as exc:
            attempts = await self.queue.mark_failed(
                scan.id, f"network error: {exc!r}"
            )
            logger.info(
                "offline scan %s not synced (attempt %d): %r",
                scan.id, attempts, exc,
            )
            return FAILED

        if resp.status_code >= 500 or resp.status_code == 429:
            await self.queue.mark_failed(
                scan.id, f"server error: HTTP {resp.status_code}"
            )
            return FAILED

        try:
            result = resp.json()
        except ValueError:
            await self.queue.mark_failed(
                scan.id, f"unreadable response: HTTP {resp.status_code}"
            )
            return FAILED

        if resp.status_code < 300 and result.get("success"):
            await self.queue.mark_synced(scan.id, result)
            return SYNCED

        reason = (
            result.get("error")
            or result.get("detail")
            or f"HTTP {resp.status_code}"
        )
        if not isinstance(reason, str):
            reason = str(reason)
        await self.queue.mark_conflict(scan.id, reason, result)
        logger.warning(
            "offline scan %s of %s conflicted on sync: %s",
            scan.id, scan.qr_data, reason,
        )
        return CONFLICT

    async def sync_pending(self) -> Optional[SyncStats]:
        """
        Replay every pending record in scan order. Returns None when a sync
        is already running.
        """
        if self._lock.locked():
            return None
        async with self._lock:
            stats = SyncStats()
            for scan in await self.queue.pending(self.max_attempts):
                stats.attempted += 1
                outcome = await self.sync_one(scan)
                if outcome == SYNCED:
                    stats.synced += 1
                elif outcome == CONFLICT:
                    stats.conflicts += 1
                else:
                    stats.failed += 1
            stats.cleaned = await self.queue.clean_old(
                retention_seconds=self.retention_seconds, now=now_ts()
            )
        if stats.attempted:
            logger.info("offline sync: %s", stats.as_dict())
        return stats

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """
        Record connectivity. Going from offline to online starts a sync in
        the background and returns its task.
        """
        came_back = online and not self.online
        self.online = online
        if not came_back:
            return None
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.get_running_loop().create_task(
            self.sync_pending()
        )
        return self._task
