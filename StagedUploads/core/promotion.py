from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator

from .delivery import PublicReferenceMapper, resolve_destination_key
from .errors import (
    TERMINAL_REJECTIONS,
    AlreadyPromoted,
    Conflict,
    CopyFailed,
    DestinationConflict,
    Forbidden,
    NotFound,
    NotReady,
    PreconditionFailed,
    PromotionInProgress,
    SizeMismatch,
    SourceMissing,
    TransportError,
    TypeMismatch,
)
from .ledger import UploadLedger
from .models import GrantStatus, PermanentObject, PromotionResult, UploadGrant, utcnow
from .object_store import ObjectStore
from .policy import UploadPolicy
from .validator import PREFIX_LENGTH, Verdict, sniff, validate

logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class PromotionService:
    """
    Validates a staged upload and copies it into permanent storage.

    Checks run in a fixed order and stop at the first failure: ownership,
    grant status, presence of the staged bytes, magic-byte validation. The
    copy is the last step, so no permanent object exists unless every check
    passed.
    """

    def __init__(
        self,
        ledger: UploadLedger,
        store: ObjectStore,
        references: PublicReferenceMapper,
        policy: UploadPolicy,
        clock: Callable[[], datetime] = utcnow,
        cleanup_staging: bool = True,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.references = references
        self.policy = policy
        self.clock = clock
        self.cleanup_staging = cleanup_staging
        self._locks = _KeyedLocks()

    def promote(self, upload_id: str, owner_id: str, destination: str, idempotent: bool = True) -> PromotionResult:
        with self._locks.hold(upload_id):
            return self._promote(upload_id, owner_id, destination, idempotent)

    def _promote(self, upload_id: str, owner_id: str, destination: str, idempotent: bool) -> PromotionResult:
        grant = self.ledger.lookup(upload_id, owner_id)
        if grant is None:
            raise Forbidden(f"upload {upload_id} is not available to {owner_id}")

        replay = self._check_status(grant, idempotent)
        if replay is not None:
            return replay

        destination_key = resolve_destination_key(destination, grant.declared_file_name)

        try:
            staged = self.store.head(grant.staging_key)
        except NotFound as exc:
            raise SourceMissing(f"staged object for {upload_id} is gone") from exc
        size = staged.size
        if size > grant.declared_size_bytes:
            self.ledger.reject(upload_id, SizeMismatch.reason)
            raise SizeMismatch(f"staged object is {size} bytes, {grant.declared_size_bytes} were declared")

        prefix = b""
        if size > 0:
            try:
                prefix = self.store.read_prefix(grant.staging_key, PREFIX_LENGTH)
            except NotFound as exc:
                raise SourceMissing(f"staged object for {upload_id} is gone") from exc
        verdict = validate(prefix, grant.declared_content_type)
        if verdict == Verdict.MISMATCH or (verdict == Verdict.UNKNOWN and not self.policy.allow_unrecognized_types):
            self.ledger.reject(upload_id, TypeMismatch.reason)
            detected = sniff(prefix) or "unrecognized content"
            raise TypeMismatch(f"declared {grant.declared_content_type} but content looks like {detected}")

        token = uuid.uuid4().hex
        if not self.ledger.claim(upload_id, token):
            return self._after_lost_claim(upload_id, idempotent)

        committed = False
        try:
            # An earlier attempt of this upload may have left bytes at the key.
            resumed = self.ledger.destination_owner(destination_key) == upload_id
            if not resumed and self.ledger.reserve_destination(destination_key, upload_id) != upload_id:
                raise DestinationConflict(f"{destination_key} is already occupied")
            self._copy(grant, destination_key, staged.etag, overwrite=resumed)

            permanent_object = PermanentObject(
                destination_key=destination_key,
                source_upload_id=upload_id,
                promoted_at=self.clock(),
                public_reference=self.references.reference_for(destination_key),
                size_bytes=size,
                content_type=grant.declared_content_type,
            )
            committed = self.ledger.complete_promotion(upload_id, token, permanent_object)
        finally:
            if not committed:
                self.ledger.release_claim(upload_id, token)

        if not committed:
            return self._after_lost_claim(upload_id, idempotent)

        logger.info("Promoted %s to %s", upload_id, destination_key)
        self._discard_staged(grant)
        return PromotionResult(permanent_object=permanent_object)

    def _copy(self, grant: UploadGrant, destination_key: str, etag: str, overwrite: bool) -> None:
        upload_id = grant.upload_id
        try:
            self.store.copy_to(
                grant.staging_key,
                destination_key,
                overwrite=overwrite,
                expected_etag=etag or None,
            )
        except NotFound as exc:
            self._release_fresh_destination(destination_key, upload_id, overwrite)
            raise SourceMissing(f"staged object for {upload_id} is gone") from exc
        except PreconditionFailed as exc:
            self._release_fresh_destination(destination_key, upload_id, overwrite)
            raise SourceMissing(f"staged object for {upload_id} changed after validation") from exc
        except Conflict as exc:
            self._release_fresh_destination(destination_key, upload_id, overwrite)
            raise DestinationConflict(f"{destination_key} is already occupied") from exc
        except TransportError as exc:
            # The copy may have landed; the kept reservation lets a retry overwrite it.
            raise CopyFailed(f"copy of {upload_id} to {destination_key} failed: {exc.detail}") from exc

    def _release_fresh_destination(self, destination_key: str, upload_id: str, resumed: bool) -> None:
        if not resumed:
            self.ledger.release_destination(destination_key, upload_id)

    def _check_status(self, grant: UploadGrant, idempotent: bool) -> PromotionResult | None:
        if grant.status == GrantStatus.PROMOTED:
            return self._replay(grant.upload_id, idempotent)
        if grant.status == GrantStatus.ISSUED:
            raise NotReady(f"upload {grant.upload_id} has not been completed yet")
        if grant.status == GrantStatus.EXPIRED:
            raise SourceMissing(f"grant {grant.upload_id} expired and its staged object was removed")
        if grant.status == GrantStatus.REJECTED:
            error = TERMINAL_REJECTIONS.get(grant.rejection_reason or "", TypeMismatch)
            raise error(f"upload {grant.upload_id} was rejected earlier")
        if grant.is_expired(self.clock()):
            raise SourceMissing(f"grant {grant.upload_id} expired at {grant.expires_at.isoformat()}")
        return None

    def _replay(self, upload_id: str, idempotent: bool) -> PromotionResult:
        permanent_object = self.ledger.get_permanent_object(upload_id)
        if permanent_object is None:
            raise PromotionInProgress(f"promotion of {upload_id} is still being recorded")
        if not idempotent:
            raise AlreadyPromoted(permanent_object)
        return PromotionResult(permanent_object=permanent_object, already_promoted=True)

    def _after_lost_claim(self, upload_id: str, idempotent: bool) -> PromotionResult:
        grant = self.ledger.get(upload_id)
        if grant is not None and grant.status != GrantStatus.UPLOADED:
            replay = self._check_status(grant, idempotent)
            if replay is not None:
                return replay
        raise PromotionInProgress(f"another promotion of {upload_id} is in flight")

    def _discard_staged(self, grant: UploadGrant) -> None:
        if not self.cleanup_staging:
            return
        try:
            self.store.delete(grant.staging_key)
        except TransportError as exc:
            # Promotion is committed; a leftover staged copy is harmless.
            logger.warning("Could not remove staged object %s: %s", grant.staging_key, exc)
