from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class GrantRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=255, examples=["admin123"])
    file_name: str = Field(..., min_length=1, max_length=255, examples=["photo.jpg"])
    content_type: str = Field(..., min_length=1, max_length=255, examples=["image/jpeg"])
    size_bytes: int = Field(..., gt=0, examples=[1048576])


class GrantOut(BaseModel):
    upload_id: str
    owner_id: str
    declared_file_name: str
    declared_content_type: str
    declared_size_bytes: int
    staging_key: str
    issued_at: datetime
    expires_at: datetime
    status: str
    uploaded_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class UploadInstructions(BaseModel):
    url: str
    method: str
    headers: Dict[str, str]
    expires_at: datetime


class GrantIssued(BaseModel):
    grant: GrantOut
    upload: UploadInstructions


class ConfirmUploadRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=255)


class PromotionRequest(BaseModel):
    upload_id: str = Field(..., min_length=1, max_length=64)
    owner_id: str = Field(..., min_length=1, max_length=255)
    destination: str = Field(..., min_length=1, max_length=1024, examples=["notices/notice-9999/"])
    idempotent: bool = True


class PermanentObjectOut(BaseModel):
    destination_key: str
    source_upload_id: str
    promoted_at: datetime
    public_reference: str
    size_bytes: int
    content_type: str


class PromotionOut(BaseModel):
    permanent_object: PermanentObjectOut
    already_promoted: bool = False


class SweepOut(BaseModel):
    expired: int
    deleted_objects: int
    failures: int


class StorageEventsOut(BaseModel):
    completed: list[str]
