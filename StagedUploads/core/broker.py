from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import unquote_plus

from sqlalchemy.engine import Engine

from .config import Settings
from .credentials import CredentialSigner
from .delivery import PublicReferenceMapper
from .errors import Forbidden, InvalidCredential, UploadError
from .ledger import UploadLedger
from .models import GrantConstraints, GrantStatus, IssuedGrant, PromotionResult, UploadGrant, utcnow
from .object_store import InMemoryObjectStore, MinioObjectStore, ObjectStore
from .policy import UploadPolicy
from .promotion import PromotionService
from .ratelimit import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore
from .storage import create_db_engine, create_session_factory, init_db
from .sweeper import ExpirySweeper, SweepReport

logger = logging.getLogger(__name__)


class UploadBroker:
    """Caller-facing operations over the ledger, staging store and promotion service."""

    def __init__(
        self,
        ledger: UploadLedger,
        store: ObjectStore,
        promotion: PromotionService,
        sweeper: ExpirySweeper,
        staging_bucket: Optional[str] = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.promotion = promotion
        self.sweeper = sweeper
        self.staging_bucket = staging_bucket

    def issue_grant(
        self,
        owner_id: str,
        file_name: str,
        content_type: str,
        size_bytes: int,
        constraints: Optional[GrantConstraints] = None,
    ) -> IssuedGrant:
        grant = self.ledger.issue_grant(owner_id, file_name, content_type, size_bytes, constraints)
        credential = self.store.issue_write_credential(
            grant.staging_key, grant.declared_content_type, grant.declared_size_bytes, grant.expires_at
        )
        return IssuedGrant(grant=grant, credential=credential)

    def lookup(self, upload_id: str, owner_id: str) -> Optional[UploadGrant]:
        return self.ledger.lookup(upload_id, owner_id)

    def confirm_upload(self, upload_id: str, owner_id: str) -> UploadGrant:
        """Caller-side completion signal."""
        grant = self.ledger.lookup(upload_id, owner_id)
        if grant is None:
            raise Forbidden(f"upload {upload_id} is not available to {owner_id}")
        return self.ledger.mark_uploaded(upload_id)

    def receive_upload(self, staging_key: str, data: bytes, content_type: str, token: str) -> UploadGrant:
        """Relay upload for stores that do not accept direct client writes."""
        grant = self.ledger.find_by_staging_key(staging_key)
        if grant is None or grant.status != GrantStatus.ISSUED:
            raise InvalidCredential("no open grant for this staging location")
        self.store.put(staging_key, data, content_type, token)
        return self.ledger.mark_uploaded(grant.upload_id)

    def handle_storage_events(self, payload: Dict[str, Any]) -> List[str]:
        """Mark grants uploaded from S3/MinIO ``ObjectCreated`` notifications."""
        completed: List[str] = []
        for record in _event_records(payload):
            if not str(record.get("eventName", "")).startswith("s3:ObjectCreated"):
                continue
            s3 = record.get("s3") or {}
            bucket = (s3.get("bucket") or {}).get("name")
            if self.staging_bucket and bucket and bucket != self.staging_bucket:
                continue
            key = unquote_plus((s3.get("object") or {}).get("key", ""))
            grant = self.ledger.find_by_staging_key(key)
            if grant is None:
                logger.warning("Storage event for unknown staging key %s", key)
                continue
            try:
                self.ledger.mark_uploaded(grant.upload_id)
            except UploadError as exc:
                logger.warning("Ignoring storage event for %s: %s", grant.upload_id, exc.detail)
                continue
            completed.append(grant.upload_id)
        return completed

    def promote(self, upload_id: str, owner_id: str, destination: str, idempotent: bool = True) -> PromotionResult:
        return self.promotion.promote(upload_id, owner_id, destination, idempotent=idempotent)

    def sweep(self, before: Optional[datetime] = None) -> SweepReport:
        return self.sweeper.sweep_expired(before)


def _event_records(payload: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    records = payload.get("Records")
    if isinstance(records, list):
        return [record for record in records if isinstance(record, dict)]
    return []


def build_counter_store(settings: Settings) -> CounterStore:
    if settings.RATE_LIMIT_BACKEND == "redis":
        return RedisCounterStore.from_url(settings.REDIS_URL)
    return InMemoryCounterStore()


def build_object_store(settings: Settings, clock: Callable[[], datetime] = utcnow) -> ObjectStore:
    if settings.STORAGE_BACKEND == "minio":
        store = MinioObjectStore.from_settings(settings, clock=clock)
        store.ensure_buckets()
        return store
    signer = CredentialSigner(settings.CREDENTIAL_SECRET)
    return InMemoryObjectStore(signer, public_base_url=settings.PUBLIC_BASE_URL, clock=clock)


def build_broker(
    settings: Settings,
    engine: Optional[Engine] = None,
    store: Optional[ObjectStore] = None,
    counters: Optional[CounterStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> UploadBroker:
    engine = engine or create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = create_session_factory(engine)

    policy = UploadPolicy.from_settings(settings)
    limiter = RateLimiter(
        counters or build_counter_store(settings),
        limit=settings.RATE_LIMIT,
        window_seconds=settings.RATE_WINDOW_SECONDS,
    )
    store = store or build_object_store(settings, clock=clock)
    ledger = UploadLedger(session_factory, policy, limiter, clock=clock)
    promotion = PromotionService(
        ledger,
        store,
        PublicReferenceMapper(settings.CDN_BASE_URL),
        policy,
        clock=clock,
    )
    sweeper = ExpirySweeper(ledger, store, clock=clock)
    staging_bucket = settings.STAGING_BUCKET if settings.STORAGE_BACKEND == "minio" else None
    return UploadBroker(ledger, store, promotion, sweeper, staging_bucket=staging_bucket)
