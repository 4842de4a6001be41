from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, sessionmaker

from .config import get_settings
from .models import GrantStatus

Base = declarative_base()


class GrantRecord(Base):
    __tablename__ = "upload_grants"

    upload_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(64), nullable=False, default="member")
    declared_file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    declared_content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    declared_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    staging_key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    status: Mapped[GrantStatus] = mapped_column(
        Enum(GrantStatus), default=GrantStatus.ISSUED, index=True, nullable=False
    )
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(64))
    # Set while a promotion is copying bytes; the sweep skips claimed grants.
    claim_token: Mapped[Optional[str]] = mapped_column(String(64))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class PermanentObjectRecord(Base):
    __tablename__ = "permanent_objects"

    destination_key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    source_upload_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("upload_grants.upload_id"), unique=True, nullable=False
    )
    promoted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    public_reference: Mapped[str] = mapped_column(String(2048), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)


class DestinationReservationRecord(Base):
    """Ownership of a permanent key, taken before bytes are copied there."""

    __tablename__ = "destination_reservations"

    destination_key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    upload_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("upload_grants.upload_id"), index=True, nullable=False
    )
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or get_settings().DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        # Request handlers and the sweeper run on different threads.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
