from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
import urllib3
from minio import Minio
from minio.commonconfig import CopySource
from minio.error import S3Error

from .config import Settings
from .credentials import CredentialSigner
from .errors import Conflict, InvalidCredential, NotFound, PreconditionFailed, QuotaExceeded, TransportError
from .models import WriteCredential, ensure_utc, utcnow
from .policy import normalize_content_type

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "NoSuchBucket", "ResourceNotFound"}


@dataclass(frozen=True)
class ObjectInfo:
    size: int
    etag: str


class ObjectStore(ABC):
    """
    Staging and permanent object storage.

    Staged objects are write-once and are only written through a scoped write
    credential; ``copy_to`` moves bytes from the staging area into permanent
    storage.
    """

    # True when uploads go through the broker's relay endpoint instead of
    # straight to the storage backend.
    relay_uploads: bool = False

    @abstractmethod
    def issue_write_credential(
        self, staging_key: str, content_type: str, max_bytes: int, expires_at: datetime
    ) -> WriteCredential:
        raise NotImplementedError

    @abstractmethod
    def put(self, staging_key: str, data: bytes, content_type: str, credential: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def head(self, staging_key: str) -> ObjectInfo:
        """Size and etag of a staged object; raises ``NotFound``."""
        raise NotImplementedError

    @abstractmethod
    def read_prefix(self, staging_key: str, length: int) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def copy_to(
        self,
        staging_key: str,
        destination_key: str,
        overwrite: bool = False,
        expected_etag: Optional[str] = None,
    ) -> None:
        """
        Raises ``NotFound`` for a missing source, ``Conflict`` for an occupied
        destination and ``PreconditionFailed`` when the source etag is no longer
        ``expected_etag``.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, staging_key: str) -> bool:
        raise NotImplementedError


@dataclass
class _StoredObject:
    data: bytes
    content_type: str

    @property
    def etag(self) -> str:
        return hashlib.md5(self.data).hexdigest()


class InMemoryObjectStore(ObjectStore):
    """Process-local store; uploads are redeemed through the broker relay."""

    relay_uploads = True

    def __init__(
        self,
        signer: CredentialSigner,
        public_base_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.signer = signer
        self.public_base_url = public_base_url.rstrip("/")
        self.clock = clock
        self._staging: Dict[str, _StoredObject] = {}
        self._permanent: Dict[str, _StoredObject] = {}
        self._lock = threading.Lock()

    def issue_write_credential(
        self, staging_key: str, content_type: str, max_bytes: int, expires_at: datetime
    ) -> WriteCredential:
        token = self.signer.issue(staging_key, content_type, max_bytes, expires_at)
        url = f"{self.public_base_url}/staging/{quote(staging_key, safe='/')}?{urlencode({'token': token})}"
        return WriteCredential(url=url, expires_at=expires_at, headers={"Content-Type": content_type})

    def put(self, staging_key: str, data: bytes, content_type: str, credential: str) -> None:
        claims = self.signer.verify(credential, staging_key, self.clock())
        if content_type and normalize_content_type(content_type) != normalize_content_type(claims.content_type):
            raise InvalidCredential("content type differs from the one the credential was issued for")
        if len(data) > claims.max_bytes:
            raise QuotaExceeded(f"upload of {len(data)} bytes exceeds the granted {claims.max_bytes}")
        with self._lock:
            if staging_key in self._staging:
                raise InvalidCredential("write credential already used")
            self._staging[staging_key] = _StoredObject(data=bytes(data), content_type=claims.content_type)

    def head(self, staging_key: str) -> ObjectInfo:
        with self._lock:
            obj = self._staging.get(staging_key)
        if obj is None:
            raise NotFound(staging_key)
        return ObjectInfo(size=len(obj.data), etag=obj.etag)

    def read_prefix(self, staging_key: str, length: int) -> bytes:
        with self._lock:
            obj = self._staging.get(staging_key)
        if obj is None:
            raise NotFound(staging_key)
        return obj.data[:length]

    def copy_to(
        self,
        staging_key: str,
        destination_key: str,
        overwrite: bool = False,
        expected_etag: Optional[str] = None,
    ) -> None:
        with self._lock:
            obj = self._staging.get(staging_key)
            if obj is None:
                raise NotFound(staging_key)
            if expected_etag is not None and obj.etag != expected_etag:
                raise PreconditionFailed(staging_key)
            if not overwrite and destination_key in self._permanent:
                raise Conflict(destination_key)
            self._permanent[destination_key] = _StoredObject(data=obj.data, content_type=obj.content_type)

    def delete(self, staging_key: str) -> bool:
        with self._lock:
            return self._staging.pop(staging_key, None) is not None

    def get_permanent(self, destination_key: str) -> Optional[bytes]:
        with self._lock:
            obj = self._permanent.get(destination_key)
        return obj.data if obj else None


class MinioObjectStore(ObjectStore):
    """
    S3-compatible backend; clients upload straight to MinIO with presigned URLs.

    A presigned URL stays valid until it expires, so a staged object can be
    rewritten after validation; ``copy_to`` pins the validated etag.
    """

    relay_uploads = False

    def __init__(
        self,
        client: Minio,
        staging_bucket: str,
        permanent_bucket: str,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.staging_bucket = staging_bucket
        self.permanent_bucket = permanent_bucket
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utcnow) -> "MinioObjectStore":
        timeout = settings.STORAGE_TIMEOUT_SECONDS
        http_client = urllib3.PoolManager(
            timeout=urllib3.Timeout(connect=timeout, read=timeout),
            retries=urllib3.Retry(total=2, backoff_factor=0.2, status_forcelist=[500, 502, 503, 504]),
        )
        client = Minio(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_SECURE,
            http_client=http_client,
        )
        return cls(client, settings.STAGING_BUCKET, settings.PERMANENT_BUCKET, timeout, clock)

    def ensure_buckets(self) -> None:
        for bucket in (self.staging_bucket, self.permanent_bucket):
            try:
                if not self.client.bucket_exists(bucket):
                    self.client.make_bucket(bucket)
            except (S3Error, urllib3.exceptions.HTTPError) as exc:
                raise TransportError(f"bucket setup failed for {bucket}: {exc}") from exc

    def _translate(self, exc: Exception, key: str) -> Exception:
        if isinstance(exc, S3Error) and exc.code in _MISSING_CODES:
            return NotFound(key)
        logger.warning("Storage call failed for %s: %s", key, exc)
        return TransportError(f"storage call failed for {key}: {exc}")

    def issue_write_credential(
        self, staging_key: str, content_type: str, max_bytes: int, expires_at: datetime
    ) -> WriteCredential:
        ttl = max(ensure_utc(expires_at) - self.clock(), timedelta(seconds=1))
        try:
            url = self.client.presigned_put_object(self.staging_bucket, staging_key, expires=ttl)
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            raise self._translate(exc, staging_key) from exc
        return WriteCredential(url=url, expires_at=expires_at, headers={"Content-Type": content_type})

    def put(self, staging_key: str, data: bytes, content_type: str, credential: str) -> None:
        # The credential is the presigned URL itself.
        try:
            resp = httpx.put(
                credential,
                content=data,
                headers={"Content-Type": content_type},
                timeout=self.timeout_seconds,
            )
        except httpx.RequestError as exc:
            raise TransportError(f"upload of {staging_key} failed: {exc}") from exc
        if resp.status_code == 403:
            raise InvalidCredential("storage rejected the write credential")
        if not resp.is_success:
            raise TransportError(f"upload of {staging_key} failed with status {resp.status_code}")

    def head(self, staging_key: str) -> ObjectInfo:
        try:
            stat = self.client.stat_object(self.staging_bucket, staging_key)
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            raise self._translate(exc, staging_key) from exc
        return ObjectInfo(size=int(stat.size or 0), etag=stat.etag or "")

    def read_prefix(self, staging_key: str, length: int) -> bytes:
        response = None
        try:
            response = self.client.get_object(self.staging_bucket, staging_key, offset=0, length=length)
            return response.read()
        except S3Error as exc:
            # A ranged read of an empty object is answered with 416.
            if exc.code == "InvalidRange":
                return b""
            raise self._translate(exc, staging_key) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise self._translate(exc, staging_key) from exc
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def copy_to(
        self,
        staging_key: str,
        destination_key: str,
        overwrite: bool = False,
        expected_etag: Optional[str] = None,
    ) -> None:
        if not overwrite and self._permanent_exists(destination_key):
            raise Conflict(destination_key)
        try:
            self.client.copy_object(
                self.permanent_bucket,
                destination_key,
                CopySource(self.staging_bucket, staging_key, match_etag=expected_etag or None),
            )
        except S3Error as exc:
            if exc.code == "PreconditionFailed":
                raise PreconditionFailed(staging_key) from exc
            raise self._translate(exc, staging_key) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise self._translate(exc, staging_key) from exc

    def _permanent_exists(self, destination_key: str) -> bool:
        try:
            self.client.stat_object(self.permanent_bucket, destination_key)
            return True
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return False
            raise self._translate(exc, destination_key) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise self._translate(exc, destination_key) from exc

    def delete(self, staging_key: str) -> bool:
        try:
            self.client.remove_object(self.staging_bucket, staging_key)
        except (S3Error, urllib3.exceptions.HTTPError) as exc:
            error = self._translate(exc, staging_key)
            if isinstance(error, NotFound):
                return False
            raise error from exc
        return True
