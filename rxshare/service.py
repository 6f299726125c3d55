"""Application service wiring the issuer, gateway, linker and record store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from rxshare import records
from rxshare.config import AppSettings
from rxshare.db.engine import session_scope, translate_store_errors
from rxshare.db.models import Account, ShareableRecord
from rxshare.errors import ForbiddenError, InvalidRequestError, NotFoundError
from rxshare.gateway import AccessGateway, ResolvedRecord
from rxshare.identity import AccountIdentity, Identity, normalise_contact
from rxshare.linker import IdentityLinker, LinkResult
from rxshare.notifier import ChangeEvent, ChangeFeed
from rxshare.retry import retry_transient
from rxshare.schemas import PrescriptionCreate
from rxshare.time_utils import Clock, ensure_utc, utc_now
from rxshare.tokens import IssuedGrant, TokenIssuer, render_qr_png

logger = structlog.get_logger(__name__)


class ShareService:
    """Facade used by the HTTP layer.

    Every public method runs in its own transaction and retries transient
    store failures.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        base_url: str,
        feed: Optional[ChangeFeed] = None,
        clock: Clock = utc_now,
        require_contact_match: bool = True,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.feed = feed or ChangeFeed()
        self.issuer = issuer or TokenIssuer(base_url=base_url, clock=clock)
        self.gateway = AccessGateway(session_factory, feed=self.feed, clock=clock)
        self.linker = IdentityLinker(
            session_factory,
            gateway=self.gateway,
            feed=self.feed,
            require_contact_match=require_contact_match,
        )

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        session_factory: sessionmaker,
        *,
        clock: Clock = utc_now,
    ) -> "ShareService":
        return cls(
            session_factory,
            base_url=settings.base_url,
            feed=ChangeFeed(buffer_size=settings.feed_buffer_size),
            clock=clock,
            require_contact_match=settings.require_contact_match,
        )

    def _owner(self, session: Session, caller: AccountIdentity) -> Account:
        owner = session.get(Account, caller.account_id)
        if owner is None:
            raise NotFoundError("Account not found.", account_id=caller.account_id)
        return owner

    def create_prescription(self, owner: AccountIdentity, payload: PrescriptionCreate) -> IssuedGrant:
        """Persist ``payload`` and issue its share grant in one transaction."""

        def _create() -> IssuedGrant:
            with translate_store_errors("create_prescription"):
                with session_scope(self.session_factory) as session:
                    record = records.create_record(session, self._owner(session, owner), payload)
                    return self.issuer.issue(session, record)

        return retry_transient("create_prescription", _create)

    def reshare(self, record_id: str, caller: AccountIdentity) -> IssuedGrant:
        """Copy ``record_id`` into a new record with a fresh grant.

        The source record and its grant are left untouched.
        """

        def _reshare() -> IssuedGrant:
            with translate_store_errors("reshare"):
                with session_scope(self.session_factory) as session:
                    source = records.get_record(session, record_id)
                    if source.owner_id != caller.account_id:
                        raise ForbiddenError(record_id=record_id)
                    record = records.copy_record(session, source)
                    issued = self.issuer.issue(session, record, origin="reshare")
            logger.info("record_reshared", source_id=record_id, record_id=issued.record_id)
            return issued

        return retry_transient("reshare", _reshare)

    def resolve(self, token: str) -> ResolvedRecord:
        return self.gateway.resolve(token)

    def resolve_by_owner(self, record_id: str, caller: Identity) -> ResolvedRecord:
        return self.gateway.resolve_by_owner(record_id, caller)

    def link(self, token: str, identity: Identity) -> LinkResult:
        return self.linker.link(token, identity)

    def share_qr(self, token: str) -> Dict[str, Any]:
        """Return the share URL and its QR code for a still-valid grant."""

        def _qr() -> str:
            with translate_store_errors("share_qr"):
                with session_scope(self.session_factory) as session:
                    grant = self.gateway.lookup(session, token, self.gateway.now())
                    return grant.token

        live_token = retry_transient("share_qr", _qr)
        url = self.issuer.share_url(live_token)
        return {"shareUrl": url, "qrCode": render_qr_png(url), "format": "png", "encoding": "base64"}

    def list_records(self, owner: AccountIdentity, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status not in (None, records.STATUS_ACTIVE, records.STATUS_EXPIRED):
            raise InvalidRequestError("status must be 'active' or 'expired'.", field="status")
        now = ensure_utc(self.clock())

        def _list() -> List[Dict[str, Any]]:
            with translate_store_errors("list_records"):
                with session_scope(self.session_factory) as session:
                    found = records.list_by_owner(session, owner.account_id, now=now, status=status)
                    return [self._owner_view(record, now) for record in found]

        return retry_transient("list_records", _list)

    def records_for_contact(self, owner: AccountIdentity, contact: str) -> List[Dict[str, Any]]:
        now = ensure_utc(self.clock())
        normalised = normalise_contact(contact)

        def _list() -> List[Dict[str, Any]]:
            with translate_store_errors("records_for_contact"):
                with session_scope(self.session_factory) as session:
                    found = records.list_by_contact(session, owner.account_id, normalised)
                    return [self._owner_view(record, now) for record in found]

        return retry_transient("records_for_contact", _list)

    def patient_records(self, patient: AccountIdentity) -> Dict[str, Any]:
        """Return the prescriptions linked to ``patient`` and their history."""

        now = ensure_utc(self.clock())

        def _load() -> Dict[str, Any]:
            with translate_store_errors("patient_records"):
                with session_scope(self.session_factory) as session:
                    linked = records.list_linked_to(session, patient.account_id)
                    history = records.history_for(session, patient.account_id)
                    return {
                        "records": [records.serialize_record(item, now=now) for item in linked],
                        "history": [records.serialize_history(entry) for entry in history],
                    }

        return retry_transient("patient_records", _load)

    def replay(self, topic: str, since: Optional[int] = None) -> List[ChangeEvent]:
        def _replay() -> List[ChangeEvent]:
            with translate_store_errors("replay"):
                with session_scope(self.session_factory) as session:
                    return ChangeFeed.replay(session, topic, since)

        return retry_transient("replay", _replay)

    def _owner_view(self, record: ShareableRecord, now: datetime) -> Dict[str, Any]:
        payload = records.serialize_record(record, now=now, include_token=True)
        if record.grant is not None:
            payload["shareUrl"] = self.issuer.share_url(record.grant.token)
        return payload


__all__ = ["ShareService"]
