"""Record store operations surrounding the sharing core.

Creating prescriptions, looking them up by owner, patient or contact
number and rendering them for the API.  The grant lifecycle itself lives in
:mod:`rxshare.gateway` and :mod:`rxshare.linker`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from rxshare.db.models import Account, HealthRecordEntry, ShareableRecord, ShareGrant
from rxshare.errors import NotFoundError
from rxshare.schemas import PrescriptionCreate
from rxshare.state import GrantState, effective_state
from rxshare.time_utils import ensure_utc, isoformat_utc, remaining_label

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"


def create_record(session: Session, owner: Account, payload: PrescriptionCreate) -> ShareableRecord:
    """Persist a new prescription owned by ``owner``.

    The issuing doctor snapshot falls back to the owner's profile.
    """

    doctor = payload.doctor_info.model_dump() if payload.doctor_info else {}
    doctor = {
        "name": doctor.get("name") or owner.name,
        "qualification": doctor.get("qualification") or owner.qualification or "",
        "registration": doctor.get("registration") or owner.registration or "",
    }
    record = ShareableRecord(
        owner_id=owner.id,
        patient_info=payload.patient_info.model_dump(by_alias=True),
        patient_contact=payload.patient_info.contact,
        medications=[item.model_dump(by_alias=True) for item in payload.medications],
        clinical_info=payload.clinical_info.model_dump(by_alias=True),
        doctor_info=doctor,
    )
    session.add(record)
    session.flush()
    return record


def copy_record(session: Session, source: ShareableRecord) -> ShareableRecord:
    """Create a new record with ``source``'s payload for a fresh share."""

    record = ShareableRecord(
        owner_id=source.owner_id,
        patient_info=dict(source.patient_info or {}),
        patient_contact=source.patient_contact,
        medications=list(source.medications or []),
        clinical_info=dict(source.clinical_info or {}),
        doctor_info=dict(source.doctor_info or {}),
        reshared_from_id=source.id,
    )
    session.add(record)
    session.flush()
    return record


def get_record(session: Session, record_id: str) -> ShareableRecord:
    record = session.get(ShareableRecord, record_id)
    if record is None:
        raise NotFoundError("Prescription not found.", record_id=record_id)
    return record


def get_grant(session: Session, token: str) -> Optional[ShareGrant]:
    return session.execute(
        select(ShareGrant)
        .where(ShareGrant.token == token)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def list_by_owner(
    session: Session,
    owner_id: str,
    *,
    now: datetime,
    status: Optional[str] = None,
) -> List[ShareableRecord]:
    """Return ``owner_id``'s records, newest first, optionally filtered.

    ``active`` keeps grants that are still within their TTL, ``expired`` the
    rest.
    """

    stmt = (
        select(ShareableRecord)
        .join(ShareGrant, ShareGrant.record_id == ShareableRecord.id)
        .where(ShareableRecord.owner_id == owner_id)
        .order_by(ShareableRecord.created_at.desc())
    )
    if status == STATUS_ACTIVE:
        stmt = stmt.where(ShareGrant.expires_at >= ensure_utc(now))
    elif status == STATUS_EXPIRED:
        stmt = stmt.where(ShareGrant.expires_at < ensure_utc(now))
    return list(session.execute(stmt).unique().scalars().all())


def list_linked_to(session: Session, account_id: str) -> List[ShareableRecord]:
    stmt = (
        select(ShareableRecord)
        .join(ShareGrant, ShareGrant.record_id == ShareableRecord.id)
        .where(ShareGrant.linked_account_id == account_id)
        .order_by(ShareGrant.linked_at.desc())
    )
    return list(session.execute(stmt).unique().scalars().all())


def list_by_contact(session: Session, owner_id: str, contact: str) -> List[ShareableRecord]:
    """Return ``owner_id``'s prescriptions addressed to ``contact``."""

    stmt = (
        select(ShareableRecord)
        .where(ShareableRecord.owner_id == owner_id, ShareableRecord.patient_contact == contact)
        .order_by(ShareableRecord.created_at.desc())
    )
    return list(session.execute(stmt).unique().scalars().all())


def history_for(session: Session, account_id: str) -> List[HealthRecordEntry]:
    stmt = (
        select(HealthRecordEntry)
        .where(HealthRecordEntry.account_id == account_id)
        .order_by(HealthRecordEntry.created_at.desc())
    )
    return list(session.execute(stmt).scalars().all())


def history_entry_for(record: ShareableRecord, account_id: str, now: datetime) -> HealthRecordEntry:
    diagnosis = (record.clinical_info or {}).get("diagnosis") or "Prescription"
    doctor_name = (record.doctor_info or {}).get("name")
    count = len(record.medications or [])
    return HealthRecordEntry(
        account_id=account_id,
        record_id=record.id,
        title=f"Prescription - {diagnosis}",
        doctor_name=doctor_name,
        summary=(
            f"Digital prescription for {diagnosis}. "
            f"{count} medication{'s' if count != 1 else ''} prescribed."
        ),
        created_at=now,
    )


def serialize_record(
    record: ShareableRecord,
    *,
    now: datetime,
    include_token: bool = False,
) -> Dict[str, Any]:
    grant = record.grant
    payload: Dict[str, Any] = {
        "id": record.id,
        "ownerId": record.owner_id,
        "patientInfo": record.patient_info,
        "medications": record.medications,
        "clinicalInfo": record.clinical_info,
        "doctorInfo": record.doctor_info,
        "createdAt": isoformat_utc(record.created_at),
        "resharedFromId": record.reshared_from_id,
    }
    if grant is not None:
        state = effective_state(grant.state, grant.expires_at, now)
        payload.update(
            {
                "state": state.value,
                "expiresAt": isoformat_utc(grant.expires_at),
                "timeRemaining": remaining_label(grant.expires_at, now),
                "isLinked": grant.state == GrantState.LINKED.value,
                "linkedAccountId": grant.linked_account_id,
                "linkedAt": isoformat_utc(grant.linked_at),
            }
        )
        if include_token:
            payload["token"] = grant.token
    return payload


def serialize_history(entry: HealthRecordEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "recordId": entry.record_id,
        "title": entry.title,
        "doctorName": entry.doctor_name,
        "summary": entry.summary,
        "createdAt": isoformat_utc(entry.created_at),
    }


__all__ = [
    "STATUS_ACTIVE",
    "STATUS_EXPIRED",
    "copy_record",
    "create_record",
    "get_grant",
    "get_record",
    "history_entry_for",
    "history_for",
    "list_by_contact",
    "list_by_owner",
    "list_linked_to",
    "serialize_history",
    "serialize_record",
]
