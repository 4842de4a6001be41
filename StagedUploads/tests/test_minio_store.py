from __future__ import annotations

import hashlib
from datetime import timedelta
from types import SimpleNamespace

import pytest
import urllib3
from minio.error import S3Error

from StagedUploads.core.broker import build_broker
from StagedUploads.core.errors import (
    Conflict,
    CopyFailed,
    NotFound,
    PreconditionFailed,
    SourceMissing,
    TransportError,
    TypeMismatch,
)
from StagedUploads.core.models import GrantStatus
from StagedUploads.core.object_store import MinioObjectStore, ObjectInfo
from StagedUploads.core.ratelimit import InMemoryCounterStore
from StagedUploads.core.storage import create_db_engine

from .helpers import EXE_BYTES, JPEG_BYTES, issue_photo


def s3_error(code):
    return S3Error(
        response=None,
        code=code,
        message=f"{code} raised by the fake",
        resource="/",
        request_id="req-1",
        host_id="host-1",
    )


class FakeResponse:
    def __init__(self, data):
        self.data = data
        self.closed = False
        self.released = False

    def read(self):
        return self.data

    def close(self):
        self.closed = True

    def release_conn(self):
        self.released = True


class FakeMinio:
    """Keeps buckets in dicts and answers the subset of calls the store makes."""

    def __init__(self, buckets=("staging", "permanent")):
        self.buckets = {name: {} for name in buckets}
        self.failures = {}
        self.presigned = []
        self.responses = []
        self.before_copy = None
        self.fail_after_copy = 0

    def _maybe_fail(self, method):
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _objects(self, bucket):
        if bucket not in self.buckets:
            raise s3_error("NoSuchBucket")
        return self.buckets[bucket]

    def bucket_exists(self, bucket):
        self._maybe_fail("bucket_exists")
        return bucket in self.buckets

    def make_bucket(self, bucket):
        self.buckets[bucket] = {}

    def presigned_put_object(self, bucket, key, expires):
        self._maybe_fail("presigned_put_object")
        self.presigned.append((bucket, key, expires))
        return f"https://minio.test/{bucket}/{key}?X-Amz-Signature=abc"

    def stat_object(self, bucket, key):
        self._maybe_fail("stat_object")
        objects = self._objects(bucket)
        if key not in objects:
            raise s3_error("NoSuchKey")
        data = objects[key]
        return SimpleNamespace(size=len(data), etag=hashlib.md5(data).hexdigest())

    def get_object(self, bucket, key, offset=0, length=0):
        self._maybe_fail("get_object")
        objects = self._objects(bucket)
        if key not in objects:
            raise s3_error("NoSuchKey")
        data = objects[key]
        if length and not data:
            raise s3_error("InvalidRange")
        response = FakeResponse(data[offset : offset + length] if length else data[offset:])
        self.responses.append(response)
        return response

    def copy_object(self, bucket, key, source):
        self._maybe_fail("copy_object")
        if self.before_copy is not None:
            self.before_copy(source)
        objects = self._objects(source.bucket_name)
        if source.object_name not in objects:
            raise s3_error("NoSuchKey")
        data = objects[source.object_name]
        if source.match_etag is not None and hashlib.md5(data).hexdigest() != source.match_etag:
            raise s3_error("PreconditionFailed")
        self._objects(bucket)[key] = data
        if self.fail_after_copy:
            self.fail_after_copy -= 1
            raise urllib3.exceptions.ReadTimeoutError(None, f"/{bucket}/{key}", "read timed out")

    def remove_object(self, bucket, key):
        self._maybe_fail("remove_object")
        objects = self._objects(bucket)
        if key not in objects:
            raise s3_error("NoSuchKey")
        del objects[key]


@pytest.fixture()
def fake():
    return FakeMinio()


@pytest.fixture()
def minio_store(fake, clock):
    return MinioObjectStore(fake, "staging", "permanent", clock=clock)


def test_ensure_buckets_creates_missing_ones():
    client = FakeMinio(buckets=("staging",))
    MinioObjectStore(client, "staging", "permanent").ensure_buckets()
    assert set(client.buckets) == {"staging", "permanent"}


def test_bucket_setup_failure_is_a_transport_error(fake, minio_store):
    fake.failures["bucket_exists"] = urllib3.exceptions.HTTPError("connection refused")
    with pytest.raises(TransportError):
        minio_store.ensure_buckets()


def test_write_credential_is_a_presigned_put(fake, minio_store, clock):
    expires_at = clock.now + timedelta(seconds=90)

    credential = minio_store.issue_write_credential("admin123/abc", "image/jpeg", 2048, expires_at)

    assert credential.url.startswith("https://minio.test/staging/admin123/abc?")
    assert credential.headers == {"Content-Type": "image/jpeg"}
    assert credential.expires_at == expires_at
    assert fake.presigned == [("staging", "admin123/abc", timedelta(seconds=90))]


def test_expired_credential_window_is_clamped(fake, minio_store, clock):
    minio_store.issue_write_credential("admin123/abc", "image/jpeg", 2048, clock.now - timedelta(seconds=5))
    assert fake.presigned[0][2] == timedelta(seconds=1)


def test_head_reports_size_and_etag(fake, minio_store):
    fake.buckets["staging"]["k"] = JPEG_BYTES
    assert minio_store.head("k") == ObjectInfo(size=len(JPEG_BYTES), etag=hashlib.md5(JPEG_BYTES).hexdigest())


def test_missing_objects_and_buckets_are_not_found(fake, minio_store):
    with pytest.raises(NotFound):
        minio_store.head("absent")

    del fake.buckets["staging"]
    with pytest.raises(NotFound):
        minio_store.head("absent")


@pytest.mark.parametrize(
    "error",
    [s3_error("AccessDenied"), urllib3.exceptions.HTTPError("connection reset")],
    ids=["access-denied", "http-error"],
)
def test_other_failures_are_transport_errors(fake, minio_store, error):
    fake.buckets["staging"]["k"] = JPEG_BYTES
    fake.failures["stat_object"] = error
    fake.failures["get_object"] = error

    with pytest.raises(TransportError):
        minio_store.head("k")
    with pytest.raises(TransportError):
        minio_store.read_prefix("k", 16)


def test_read_prefix_is_a_ranged_read(fake, minio_store):
    fake.buckets["staging"]["k"] = JPEG_BYTES

    assert minio_store.read_prefix("k", 16) == JPEG_BYTES[:16]
    assert fake.responses[0].closed and fake.responses[0].released


def test_read_prefix_of_empty_object(fake, minio_store):
    fake.buckets["staging"]["empty"] = b""
    assert minio_store.read_prefix("empty", 16) == b""


def test_copy_refuses_occupied_destination(fake, minio_store):
    fake.buckets["staging"]["k"] = JPEG_BYTES
    fake.buckets["permanent"]["notices/photo.jpg"] = b"older"

    with pytest.raises(Conflict):
        minio_store.copy_to("k", "notices/photo.jpg")
    assert fake.buckets["permanent"]["notices/photo.jpg"] == b"older"

    minio_store.copy_to("k", "notices/photo.jpg", overwrite=True)
    assert fake.buckets["permanent"]["notices/photo.jpg"] == JPEG_BYTES


def test_copy_pins_the_source_etag(fake, minio_store):
    fake.buckets["staging"]["k"] = JPEG_BYTES
    etag = minio_store.head("k").etag
    fake.buckets["staging"]["k"] = EXE_BYTES

    with pytest.raises(PreconditionFailed):
        minio_store.copy_to("k", "notices/photo.jpg", expected_etag=etag)
    assert "notices/photo.jpg" not in fake.buckets["permanent"]


def test_copy_of_missing_source_is_not_found(minio_store):
    with pytest.raises(NotFound):
        minio_store.copy_to("absent", "notices/photo.jpg")


def test_delete_reports_whether_anything_was_removed(fake, minio_store):
    fake.buckets["staging"]["k"] = JPEG_BYTES

    assert minio_store.delete("k") is True
    assert minio_store.delete("k") is False

    fake.failures["remove_object"] = s3_error("AccessDenied")
    with pytest.raises(TransportError):
        minio_store.delete("k")


@pytest.fixture()
def minio_broker(settings, minio_store, clock):
    engine = create_db_engine(settings.DATABASE_URL)
    instance = build_broker(settings, engine=engine, store=minio_store, counters=InMemoryCounterStore(), clock=clock)
    yield instance
    engine.dispose()


def direct_upload(broker, fake, data, **overrides):
    """Stands in for a client PUT to the presigned URL, then confirms it."""
    grant = issue_photo(broker, **overrides).grant
    fake.buckets["staging"][grant.staging_key] = data
    broker.confirm_upload(grant.upload_id, grant.owner_id)
    return grant


def test_promotion_through_minio(fake, minio_broker):
    grant = direct_upload(minio_broker, fake, JPEG_BYTES)

    result = minio_broker.promote(grant.upload_id, "admin123", "notices/notice-9999/")

    assert result.permanent_object.size_bytes == len(JPEG_BYTES)
    assert fake.buckets["permanent"]["notices/notice-9999/photo.jpg"] == JPEG_BYTES
    assert grant.staging_key not in fake.buckets["staging"]


def test_rewrite_after_validation_is_not_promoted(fake, minio_broker):
    grant = direct_upload(minio_broker, fake, JPEG_BYTES)

    def rewrite(source):
        fake.buckets["staging"][source.object_name] = EXE_BYTES

    fake.before_copy = rewrite

    with pytest.raises(SourceMissing):
        minio_broker.promote(grant.upload_id, "admin123", "notices/notice-9999/")
    assert "notices/notice-9999/photo.jpg" not in fake.buckets["permanent"]
    assert minio_broker.ledger.get(grant.upload_id).status == GrantStatus.UPLOADED

    fake.before_copy = None
    with pytest.raises(TypeMismatch):
        minio_broker.promote(grant.upload_id, "admin123", "notices/notice-9999/")


def test_empty_upload_is_rejected_not_retried(fake, minio_broker):
    grant = direct_upload(minio_broker, fake, b"")

    with pytest.raises(TypeMismatch):
        minio_broker.promote(grant.upload_id, "admin123", "notices/notice-9999/")
    assert minio_broker.ledger.get(grant.upload_id).status == GrantStatus.REJECTED


def test_retry_succeeds_after_copy_landed_but_timed_out(fake, minio_broker):
    grant = direct_upload(minio_broker, fake, JPEG_BYTES)
    fake.fail_after_copy = 1

    with pytest.raises(CopyFailed) as excinfo:
        minio_broker.promote(grant.upload_id, "admin123", "notices/notice-9999/")
    assert excinfo.value.retryable
    assert fake.buckets["permanent"]["notices/notice-9999/photo.jpg"] == JPEG_BYTES

    result = minio_broker.promote(grant.upload_id, "admin123", "notices/notice-9999/")
    assert result.permanent_object.destination_key == "notices/notice-9999/photo.jpg"
    assert minio_broker.ledger.get(grant.upload_id).status == GrantStatus.PROMOTED
