"""SQLAlchemy models for accounts, shareable records and their grants."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid.uuid4().hex


class Account(Base):
    __tablename__ = "accounts"

    id = sa.Column(String(32), primary_key=True, default=_uuid)
    name = sa.Column(String, nullable=False)
    contact = sa.Column(String(10), nullable=False, index=True)
    role = sa.Column(String, nullable=False)
    password_hash = sa.Column(String, nullable=False)
    email = sa.Column(String, nullable=True)
    qualification = sa.Column(String, nullable=True)
    registration = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("role", "contact", name="uq_accounts_role_contact"),
    )


class ShareableRecord(Base):
    """A prescription issued by a clinician.  Immutable once created."""

    __tablename__ = "shareable_records"

    id = sa.Column(String(32), primary_key=True, default=_uuid)
    owner_id = sa.Column(String(32), ForeignKey("accounts.id"), nullable=False, index=True)
    patient_info = sa.Column(sa.JSON, nullable=False, default=dict)
    patient_contact = sa.Column(String(10), nullable=False, index=True)
    medications = sa.Column(sa.JSON, nullable=False, default=list)
    clinical_info = sa.Column(sa.JSON, nullable=False, default=dict)
    doctor_info = sa.Column(sa.JSON, nullable=False, default=dict)
    reshared_from_id = sa.Column(String(32), ForeignKey("shareable_records.id"), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    grant = relationship("ShareGrant", back_populates="record", uselist=False, lazy="joined")


class ShareGrant(Base):
    """Time-limited authorization envelope attached 1:1 to a record."""

    __tablename__ = "share_grants"

    token = sa.Column(String(64), primary_key=True)
    record_id = sa.Column(
        String(32), ForeignKey("shareable_records.id"), nullable=False, unique=True, index=True
    )
    issued_at = sa.Column(DateTime(timezone=True), nullable=False)
    expires_at = sa.Column(DateTime(timezone=True), nullable=False)
    state = sa.Column(String(16), nullable=False, server_default=sa.text("'issued'"))
    linked_account_id = sa.Column(String(32), ForeignKey("accounts.id"), nullable=True, index=True)
    linked_at = sa.Column(DateTime(timezone=True), nullable=True)
    version = sa.Column(Integer, nullable=False, server_default=sa.text("1"), default=1)

    record = relationship("ShareableRecord", back_populates="grant")


class GrantEvent(Base):
    """Append-only transition fact.  ``kind='linked'`` rows are linkage events."""

    __tablename__ = "grant_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    grant_token = sa.Column(String(64), ForeignKey("share_grants.token"), nullable=False)
    record_id = sa.Column(String(32), nullable=False, index=True)
    owner_id = sa.Column(String(32), nullable=False, index=True)
    kind = sa.Column(String(16), nullable=False)
    account_id = sa.Column(String(32), nullable=True, index=True)
    sequence = sa.Column(Integer, nullable=False)
    occurred_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("grant_token", "kind", name="uq_grant_events_kind"),
    )


class HealthRecordEntry(Base):
    """The patient's history entry created when a prescription is linked."""

    __tablename__ = "health_record_entries"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    account_id = sa.Column(String(32), ForeignKey("accounts.id"), nullable=False, index=True)
    record_id = sa.Column(String(32), ForeignKey("shareable_records.id"), nullable=False)
    title = sa.Column(String, nullable=False)
    doctor_name = sa.Column(String, nullable=True)
    summary = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("account_id", "record_id", name="uq_health_record_account_record"),
    )


__all__ = [
    "Base",
    "Account",
    "ShareableRecord",
    "ShareGrant",
    "GrantEvent",
    "HealthRecordEntry",
]
