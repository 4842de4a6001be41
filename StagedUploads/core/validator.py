"""
Magic-byte verification of staged content against its declared type.

Only the first ``PREFIX_LENGTH`` bytes of an object are inspected. A declared
type without a registered signature yields ``Verdict.UNKNOWN``; whether that
passes promotion is decided by ``UploadPolicy.allow_unrecognized_types``.
"""

from __future__ import annotations

import enum
from typing import Dict, Tuple

from .policy import normalize_content_type

PREFIX_LENGTH = 16


class Verdict(str, enum.Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    UNKNOWN = "unknown"


# (offset, bytes) pairs; all pairs of one signature must match.
Signature = Tuple[Tuple[int, bytes], ...]

SIGNATURES: Dict[str, Tuple[Signature, ...]] = {
    "image/jpeg": (((0, b"\xff\xd8\xff"),),),
    "image/png": (((0, b"\x89PNG\r\n\x1a\n"),),),
    "image/gif": (((0, b"GIF87a"),), ((0, b"GIF89a"),)),
    "image/webp": (((0, b"RIFF"), (8, b"WEBP")),),
    "image/bmp": (((0, b"BM"),),),
    "image/tiff": (((0, b"II*\x00"),), ((0, b"MM\x00*"),)),
    "application/pdf": (((0, b"%PDF-"),),),
    "application/zip": (((0, b"PK\x03\x04"),), ((0, b"PK\x05\x06"),)),
    "video/mp4": (((4, b"ftyp"),),),
    "video/quicktime": (((4, b"ftypqt"),), ((4, b"moov"),)),
}

ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "application/x-pdf": "application/pdf",
    "application/x-zip-compressed": "application/zip",
}


def _matches(prefix: bytes, signature: Signature) -> bool:
    return all(prefix[offset : offset + len(magic)] == magic for offset, magic in signature)


def validate(first_bytes: bytes, declared_content_type: str) -> Verdict:
    content_type = normalize_content_type(declared_content_type)
    content_type = ALIASES.get(content_type, content_type)
    candidates = SIGNATURES.get(content_type)
    if not candidates:
        return Verdict.UNKNOWN
    prefix = first_bytes[:PREFIX_LENGTH]
    if any(_matches(prefix, signature) for signature in candidates):
        return Verdict.MATCH
    return Verdict.MISMATCH


def sniff(first_bytes: bytes) -> str | None:
    """Best guess of the real content type, used for rejection messages."""
    prefix = first_bytes[:PREFIX_LENGTH]
    if prefix.startswith(b"MZ"):
        return "application/x-msdownload"
    if prefix.startswith(b"\x7fELF"):
        return "application/x-executable"
    for content_type, candidates in SIGNATURES.items():
        if any(_matches(prefix, signature) for signature in candidates):
            return content_type
    return None
