from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import anyio

from .errors import TransportError
from .ledger import UploadLedger
from .models import ensure_utc, utcnow
from .object_store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    completed_at: Optional[datetime] = None
    expired: List[str] = field(default_factory=list)
    deleted_objects: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    def mark_complete(self, completed_at: datetime) -> None:
        self.completed_at = completed_at

    def summary(self) -> Dict[str, int]:
        return {
            "expired": len(self.expired),
            "deleted_objects": self.deleted_objects,
            "failures": len(self.failures),
        }


class ExpirySweeper:
    """
    Expires grants whose write window has passed and removes their staged bytes.

    A grant is marked ``expired`` before its object is deleted, so a promotion
    can never start on bytes that are about to disappear. Promoted and claimed
    grants are never touched. Running the sweep twice finds nothing new.
    """

    def __init__(
        self,
        ledger: UploadLedger,
        store: ObjectStore,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 500,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.clock = clock
        self.batch_size = batch_size

    def sweep_expired(self, before: Optional[datetime] = None) -> SweepReport:
        cutoff = ensure_utc(before or self.clock())
        report = SweepReport(started_at=ensure_utc(self.clock()))
        candidates = self.ledger.expired_candidates(cutoff, limit=self.batch_size)
        logger.debug("Found %s grants expired by %s", len(candidates), cutoff.isoformat())

        for grant in candidates:
            if not self.ledger.mark_expired(grant.upload_id, cutoff):
                # Promoted, claimed or swept concurrently.
                continue
            report.expired.append(grant.upload_id)
            try:
                if self.store.delete(grant.staging_key):
                    report.deleted_objects += 1
            except TransportError as exc:
                logger.warning("Failed deleting staged object %s: %s", grant.staging_key, exc)
                report.failures[grant.upload_id] = exc.detail

        report.mark_complete(ensure_utc(self.clock()))
        if report.expired:
            logger.info("Sweep expired %s grants: %s", len(report.expired), report.summary())
        return report

    async def run(self, stop_event: asyncio.Event, interval_seconds: float) -> None:
        """Sweep on a fixed interval until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await anyio.to_thread.run_sync(self.sweep_expired)
            except Exception:
                logger.exception("Expiry sweep failed")
            with anyio.move_on_after(interval_seconds):
                await stop_event.wait()
