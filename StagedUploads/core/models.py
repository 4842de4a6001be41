from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


class GrantStatus(str, enum.Enum):
    ISSUED = "issued"
    UPLOADED = "uploaded"
    PROMOTED = "promoted"
    EXPIRED = "expired"
    REJECTED = "rejected"


# Allowed forward moves; nothing ever returns to an earlier status.
GRANT_TRANSITIONS = {
    GrantStatus.ISSUED: {GrantStatus.UPLOADED, GrantStatus.EXPIRED},
    GrantStatus.UPLOADED: {GrantStatus.PROMOTED, GrantStatus.EXPIRED, GrantStatus.REJECTED},
    GrantStatus.PROMOTED: set(),
    GrantStatus.EXPIRED: set(),
    GrantStatus.REJECTED: set(),
}


def can_transition(current: GrantStatus, target: GrantStatus) -> bool:
    return target in GRANT_TRANSITIONS[current]


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GrantConstraints:
    role: str = "member"


@dataclass
class UploadGrant:
    upload_id: str
    owner_id: str
    declared_file_name: str
    declared_content_type: str
    declared_size_bytes: int
    staging_key: str
    issued_at: datetime
    expires_at: datetime
    status: GrantStatus = GrantStatus.ISSUED
    role: str = "member"
    uploaded_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(now) >= ensure_utc(self.expires_at)

    def to_dict(self) -> Dict[str, object]:
        return {
            "upload_id": self.upload_id,
            "owner_id": self.owner_id,
            "declared_file_name": self.declared_file_name,
            "declared_content_type": self.declared_content_type,
            "declared_size_bytes": self.declared_size_bytes,
            "staging_key": self.staging_key,
            "issued_at": ensure_utc(self.issued_at).isoformat(),
            "expires_at": ensure_utc(self.expires_at).isoformat(),
            "status": self.status.value,
            "uploaded_at": ensure_utc(self.uploaded_at).isoformat() if self.uploaded_at else None,
            "rejection_reason": self.rejection_reason,
        }


@dataclass(frozen=True)
class PermanentObject:
    destination_key: str
    source_upload_id: str
    promoted_at: datetime
    public_reference: str
    size_bytes: int = 0
    content_type: str = "application/octet-stream"

    def to_dict(self) -> Dict[str, object]:
        return {
            "destination_key": self.destination_key,
            "source_upload_id": self.source_upload_id,
            "promoted_at": ensure_utc(self.promoted_at).isoformat(),
            "public_reference": self.public_reference,
            "size_bytes": self.size_bytes,
            "content_type": self.content_type,
        }


@dataclass(frozen=True)
class WriteCredential:
    url: str
    expires_at: datetime
    method: str = "PUT"
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "url": self.url,
            "method": self.method,
            "headers": dict(self.headers),
            "expires_at": ensure_utc(self.expires_at).isoformat(),
        }


@dataclass(frozen=True)
class IssuedGrant:
    grant: UploadGrant
    credential: WriteCredential


@dataclass(frozen=True)
class PromotionResult:
    permanent_object: PermanentObject
    already_promoted: bool = False
