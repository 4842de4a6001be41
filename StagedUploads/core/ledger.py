from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from urllib.parse import quote

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .errors import GrantExpired, InvalidTransition, RateLimited
from .models import (
    GrantConstraints,
    GrantStatus,
    PermanentObject,
    UploadGrant,
    can_transition,
    ensure_utc,
    utcnow,
)
from .policy import UploadPolicy
from .ratelimit import RateLimiter
from .storage import DestinationReservationRecord, GrantRecord, PermanentObjectRecord

logger = logging.getLogger(__name__)

# A claim older than this belongs to a promotion that died mid-copy.
DEFAULT_CLAIM_TTL = timedelta(minutes=5)


def derive_staging_key(owner_id: str, upload_id: str) -> str:
    return f"{quote(owner_id, safe='')}/{upload_id}"


def _to_grant(record: GrantRecord) -> UploadGrant:
    return UploadGrant(
        upload_id=record.upload_id,
        owner_id=record.owner_id,
        declared_file_name=record.declared_file_name,
        declared_content_type=record.declared_content_type,
        declared_size_bytes=record.declared_size_bytes,
        staging_key=record.staging_key,
        issued_at=ensure_utc(record.issued_at),
        expires_at=ensure_utc(record.expires_at),
        status=record.status,
        role=record.role,
        uploaded_at=ensure_utc(record.uploaded_at) if record.uploaded_at else None,
        rejection_reason=record.rejection_reason,
    )


def _to_permanent_object(record: PermanentObjectRecord) -> PermanentObject:
    return PermanentObject(
        destination_key=record.destination_key,
        source_upload_id=record.source_upload_id,
        promoted_at=ensure_utc(record.promoted_at),
        public_reference=record.public_reference,
        size_bytes=record.size_bytes,
        content_type=record.content_type,
    )


class UploadLedger:
    """
    Durable record of upload grants.

    Every status change is a conditional ``UPDATE`` on the expected current
    status, so concurrent promotions and the expiry sweep cannot overwrite
    each other.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: UploadPolicy,
        rate_limiter: RateLimiter,
        clock: Callable[[], datetime] = utcnow,
        claim_ttl: timedelta = DEFAULT_CLAIM_TTL,
    ) -> None:
        self.session_factory = session_factory
        self.policy = policy
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.claim_ttl = claim_ttl

    def _session(self) -> Session:
        return self.session_factory()

    def issue_grant(
        self,
        owner_id: str,
        declared_file_name: str,
        declared_content_type: str,
        declared_size_bytes: int,
        constraints: Optional[GrantConstraints] = None,
    ) -> UploadGrant:
        constraints = constraints or GrantConstraints()
        if not owner_id:
            raise ValueError("owner_id is required")
        self.policy.check(constraints.role, declared_content_type, declared_size_bytes)
        if not self.rate_limiter.allow(owner_id):
            raise RateLimited(f"owner {owner_id} exceeded {self.rate_limiter.limit} grants per {self.rate_limiter.window_seconds}s")

        now = ensure_utc(self.clock())
        upload_id = uuid.uuid4().hex
        record = GrantRecord(
            upload_id=upload_id,
            owner_id=owner_id,
            role=constraints.role,
            declared_file_name=declared_file_name,
            declared_content_type=declared_content_type,
            declared_size_bytes=declared_size_bytes,
            staging_key=derive_staging_key(owner_id, upload_id),
            issued_at=now,
            expires_at=now + self.policy.grant_ttl,
            status=GrantStatus.ISSUED,
        )
        with self._session() as session:
            session.add(record)
            session.commit()
            grant = _to_grant(record)
        logger.info("Issued grant %s to %s for %s (%s bytes)", upload_id, owner_id, declared_file_name, declared_size_bytes)
        return grant

    def get(self, upload_id: str) -> Optional[UploadGrant]:
        with self._session() as session:
            record = session.get(GrantRecord, upload_id)
            return _to_grant(record) if record else None

    def lookup(self, upload_id: str, owner_id: str) -> Optional[UploadGrant]:
        """Unknown ids and grants owned by someone else both come back as ``None``."""
        grant = self.get(upload_id)
        if grant is None or grant.owner_id != owner_id:
            return None
        return grant

    def find_by_staging_key(self, staging_key: str) -> Optional[UploadGrant]:
        with self._session() as session:
            record = session.scalars(select(GrantRecord).where(GrantRecord.staging_key == staging_key)).first()
            return _to_grant(record) if record else None

    def mark_uploaded(self, upload_id: str) -> UploadGrant:
        now = ensure_utc(self.clock())
        with self._session() as session:
            result = session.execute(
                update(GrantRecord)
                .where(
                    GrantRecord.upload_id == upload_id,
                    GrantRecord.status == GrantStatus.ISSUED,
                    GrantRecord.expires_at > now,
                )
                .values(status=GrantStatus.UPLOADED, uploaded_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            updated = result.rowcount == 1

        grant = self.get(upload_id)
        if grant is None:
            raise KeyError(f"grant {upload_id} not found")
        if updated:
            logger.info("Grant %s marked uploaded", upload_id)
            return grant
        if grant.status == GrantStatus.UPLOADED:
            return grant
        if can_transition(grant.status, GrantStatus.UPLOADED):
            raise GrantExpired(f"grant {upload_id} expired at {grant.expires_at.isoformat()}")
        raise InvalidTransition(f"grant {upload_id} is already {grant.status.value}")

    def _claim_free(self, now: datetime):
        return or_(GrantRecord.claim_token.is_(None), GrantRecord.claimed_at < now - self.claim_ttl)

    def claim(self, upload_id: str, token: str) -> bool:
        """Reserve an uploaded grant for one in-flight promotion."""
        now = ensure_utc(self.clock())
        with self._session() as session:
            result = session.execute(
                update(GrantRecord)
                .where(
                    GrantRecord.upload_id == upload_id,
                    GrantRecord.status == GrantStatus.UPLOADED,
                    self._claim_free(now),
                )
                .values(claim_token=token, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def release_claim(self, upload_id: str, token: str) -> None:
        with self._session() as session:
            session.execute(
                update(GrantRecord)
                .where(GrantRecord.upload_id == upload_id, GrantRecord.claim_token == token)
                .values(claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def destination_owner(self, destination_key: str) -> Optional[str]:
        with self._session() as session:
            record = session.get(DestinationReservationRecord, destination_key)
            return record.upload_id if record else None

    def reserve_destination(self, destination_key: str, upload_id: str) -> Optional[str]:
        """
        Take ownership of ``destination_key`` for ``upload_id``.

        Returns the upload that owns the key afterwards. A reservation outlives
        a failed copy, so a retry of the same upload finds its own key again.
        """
        with self._session() as session:
            session.add(
                DestinationReservationRecord(
                    destination_key=destination_key,
                    upload_id=upload_id,
                    reserved_at=ensure_utc(self.clock()),
                )
            )
            try:
                session.commit()
                return upload_id
            except IntegrityError:
                session.rollback()
            record = session.get(DestinationReservationRecord, destination_key)
            return record.upload_id if record else None

    def release_destination(self, destination_key: str, upload_id: str) -> None:
        with self._session() as session:
            session.execute(
                delete(DestinationReservationRecord).where(
                    DestinationReservationRecord.destination_key == destination_key,
                    DestinationReservationRecord.upload_id == upload_id,
                )
            )
            session.commit()

    def _release_unused_destinations(self, session: Session, upload_id: str, keep: Optional[str] = None) -> None:
        statement = delete(DestinationReservationRecord).where(DestinationReservationRecord.upload_id == upload_id)
        if keep is not None:
            statement = statement.where(DestinationReservationRecord.destination_key != keep)
        session.execute(statement)

    def complete_promotion(self, upload_id: str, token: str, permanent_object: PermanentObject) -> bool:
        """Record the permanent object and move ``uploaded -> promoted`` in one transaction."""
        with self._session() as session:
            result = session.execute(
                update(GrantRecord)
                .where(
                    GrantRecord.upload_id == upload_id,
                    GrantRecord.status == GrantStatus.UPLOADED,
                    GrantRecord.claim_token == token,
                )
                .values(status=GrantStatus.PROMOTED, claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.add(
                PermanentObjectRecord(
                    destination_key=permanent_object.destination_key,
                    source_upload_id=permanent_object.source_upload_id,
                    promoted_at=permanent_object.promoted_at,
                    public_reference=permanent_object.public_reference,
                    size_bytes=permanent_object.size_bytes,
                    content_type=permanent_object.content_type,
                )
            )
            self._release_unused_destinations(session, upload_id, keep=permanent_object.destination_key)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("Permanent object for %s already recorded", upload_id)
                return False
        return True

    def reject(self, upload_id: str, reason: str, token: Optional[str] = None) -> bool:
        conditions = [GrantRecord.upload_id == upload_id, GrantRecord.status == GrantStatus.UPLOADED]
        if token is not None:
            conditions.append(GrantRecord.claim_token == token)
        with self._session() as session:
            result = session.execute(
                update(GrantRecord)
                .where(*conditions)
                .values(status=GrantStatus.REJECTED, rejection_reason=reason, claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            rejected = result.rowcount == 1
        if rejected:
            logger.info("Grant %s rejected: %s", upload_id, reason)
        return rejected

    def get_permanent_object(self, upload_id: str) -> Optional[PermanentObject]:
        with self._session() as session:
            record = session.scalars(
                select(PermanentObjectRecord).where(PermanentObjectRecord.source_upload_id == upload_id)
            ).first()
            return _to_permanent_object(record) if record else None

    def _sweepable(self, before: datetime):
        return and_(
            GrantRecord.status.in_([GrantStatus.ISSUED, GrantStatus.UPLOADED]),
            GrantRecord.expires_at <= before,
            self._claim_free(before),
        )

    def expired_candidates(self, before: datetime, limit: int = 500) -> List[UploadGrant]:
        before = ensure_utc(before)
        with self._session() as session:
            records = session.scalars(
                select(GrantRecord)
                .where(self._sweepable(before))
                .order_by(GrantRecord.expires_at.asc())
                .limit(limit)
            ).all()
            return [_to_grant(record) for record in records]

    def mark_expired(self, upload_id: str, before: datetime) -> bool:
        before = ensure_utc(before)
        with self._session() as session:
            result = session.execute(
                update(GrantRecord)
                .where(GrantRecord.upload_id == upload_id, self._sweepable(before))
                .values(status=GrantStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount == 1
            if expired:
                self._release_unused_destinations(session, upload_id)
            session.commit()
            return expired

    def count_by_status(self) -> dict:
        counts = {status.value: 0 for status in GrantStatus}
        with self._session() as session:
            for status in session.scalars(select(GrantRecord.status)).all():
                counts[status.value] += 1
        return counts

