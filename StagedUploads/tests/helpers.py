from __future__ import annotations

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlsplit

from StagedUploads.core.broker import UploadBroker
from StagedUploads.core.models import IssuedGrant

JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01" + b"\x00" * 2048
EXE_BYTES = b"MZ\x90\x00\x03\x00\x00\x00" + b"\x00" * 2048
ADMIN_KEY = "test-admin-key"
MEMBER_KEY = "test-member-key"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def token_from(issued: IssuedGrant) -> str:
    return parse_qs(urlsplit(issued.credential.url).query)["token"][0]


def upload(broker: UploadBroker, issued: IssuedGrant, data: bytes) -> None:
    broker.receive_upload(issued.grant.staging_key, data, issued.grant.declared_content_type, token_from(issued))


def issue_photo(broker: UploadBroker, owner_id: str = "admin123", **overrides) -> IssuedGrant:
    params = {
        "file_name": "photo.jpg",
        "content_type": "image/jpeg",
        "size_bytes": 1_048_576,
    }
    params.update(overrides)
    return broker.issue_grant(owner_id, **params)
