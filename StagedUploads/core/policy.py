from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet

from .config import Settings
from .errors import ContentTypeNotAllowed, QuotaExceeded


def normalize_content_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


@dataclass(frozen=True)
class UploadPolicy:
    """Limits applied when a grant is issued and when it is promoted."""

    max_size_by_role: Dict[str, int]
    allowed_content_types: FrozenSet[str]
    grant_ttl: timedelta = timedelta(minutes=15)
    allow_unrecognized_types: bool = True
    default_role: str = "member"
    _normalized_types: FrozenSet[str] = field(init=False, repr=False, default=frozenset())

    def __post_init__(self) -> None:
        normalized = frozenset(normalize_content_type(ct) for ct in self.allowed_content_types)
        object.__setattr__(self, "_normalized_types", normalized)

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadPolicy":
        return cls(
            max_size_by_role=dict(settings.ROLE_SIZE_CEILINGS),
            allowed_content_types=frozenset(settings.ALLOWED_CONTENT_TYPES),
            grant_ttl=timedelta(seconds=settings.GRANT_TTL_SECONDS),
            allow_unrecognized_types=settings.ALLOW_UNRECOGNIZED_TYPES,
        )

    def ceiling_for(self, role: str) -> int:
        if role in self.max_size_by_role:
            return self.max_size_by_role[role]
        return self.max_size_by_role.get(self.default_role, 0)

    def check(self, role: str, content_type: str, size_bytes: int) -> None:
        if size_bytes <= 0:
            raise QuotaExceeded("declared size must be positive")
        ceiling = self.ceiling_for(role)
        if size_bytes > ceiling:
            raise QuotaExceeded(f"declared size {size_bytes} exceeds the {ceiling} byte limit for role {role!r}")
        if normalize_content_type(content_type) not in self._normalized_types:
            raise ContentTypeNotAllowed(f"content type {content_type!r} is not accepted")

