from __future__ import annotations

import posixpath
import re
from urllib.parse import quote

from .errors import InvalidDestination

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class PublicReferenceMapper:
    """Stable ``destination_key -> public URL`` mapping for the delivery layer (CDN)."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def reference_for(self, destination_key: str) -> str:
        return f"{self.base_url}/{quote(destination_key, safe='/')}"


def safe_file_name(declared_file_name: str) -> str:
    name = posixpath.basename(declared_file_name.replace("\\", "/")).strip()
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "upload"


def resolve_destination_key(destination: str, declared_file_name: str) -> str:
    """
    A destination ending in ``/`` is a prefix and receives the declared file
    name; anything else is used as the exact object key.
    """
    if not destination or destination.startswith("/") or "\\" in destination:
        raise InvalidDestination(f"invalid destination {destination!r}")
    parts = destination.split("/")
    if any(part in (".", "..") for part in parts):
        raise InvalidDestination(f"invalid destination {destination!r}")
    if destination.endswith("/"):
        if any(not part for part in parts[:-1]):
            raise InvalidDestination(f"invalid destination {destination!r}")
        return destination + safe_file_name(declared_file_name)
    if any(not part for part in parts):
        raise InvalidDestination(f"invalid destination {destination!r}")
    return destination
