"""Access gateway: token and owner reads of shared prescriptions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from rxshare import records
from rxshare.db.engine import session_scope, translate_store_errors
from rxshare.db.models import GrantEvent, ShareableRecord, ShareGrant
from rxshare.errors import ExpiredError, ForbiddenError, NotFoundError
from rxshare.identity import AccountIdentity, Identity
from rxshare.metrics import RESOLVE_OUTCOMES
from rxshare.notifier import ChangeEvent, ChangeFeed, EventKind
from rxshare.retry import retry_transient
from rxshare.state import GrantState, effective_state, is_expired, require_transition
from rxshare.time_utils import Clock, ensure_utc, isoformat_utc, utc_now
from rxshare.tokens import token_fingerprint

logger = structlog.get_logger(__name__)

ACCESS_OWNER = "owner"
ACCESS_PATIENT = "patient"
ACCESS_TOKEN = "token"


@dataclass(frozen=True)
class ResolvedRecord:
    """A record together with its grant's state as observed at ``now``."""

    record: ShareableRecord
    state: GrantState
    linked_account_id: Optional[str]
    expires_at: datetime
    now: datetime
    access: str = ACCESS_TOKEN

    def to_payload(self) -> Dict[str, Any]:
        payload = records.serialize_record(self.record, now=self.now)
        payload["state"] = self.state.value
        payload["access"] = self.access
        payload["expiresAt"] = isoformat_utc(self.expires_at)
        return payload


class AccessGateway:
    """Validate tokens and hand out records.

    A successful token read before expiry moves an ``issued`` grant to
    ``viewed`` exactly once.  Owner reads skip token and expiry checks.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        feed: ChangeFeed,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self._clock = clock

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def lookup(self, session: Session, token: str, now: datetime) -> ShareGrant:
        """Return the live grant for ``token`` without recording a view."""

        grant = records.get_grant(session, token) if token else None
        if grant is None:
            RESOLVE_OUTCOMES.labels(path=ACCESS_TOKEN, outcome="not_found").inc()
            raise NotFoundError()
        if is_expired(grant.expires_at, now):
            RESOLVE_OUTCOMES.labels(path=ACCESS_TOKEN, outcome="expired").inc()
            raise ExpiredError(expiresAt=isoformat_utc(grant.expires_at))
        return grant

    def resolve(self, token: str) -> ResolvedRecord:
        """Return the record behind ``token`` or raise a typed denial."""

        return retry_transient("resolve", lambda: self._resolve_once(token))

    def _resolve_once(self, token: str) -> ResolvedRecord:
        now = self.now()
        event: Optional[ChangeEvent] = None
        with translate_store_errors("resolve"):
            with session_scope(self._session_factory) as session:
                grant = self.lookup(session, token, now)
                if grant.state == GrantState.ISSUED.value:
                    event = self._mark_viewed(session, grant, now)
                resolved = ResolvedRecord(
                    record=grant.record,
                    state=effective_state(grant.state, grant.expires_at, now),
                    linked_account_id=grant.linked_account_id,
                    expires_at=ensure_utc(grant.expires_at),
                    now=now,
                )
        RESOLVE_OUTCOMES.labels(path=ACCESS_TOKEN, outcome="ok").inc()
        if event is not None:
            logger.info(
                "grant_viewed",
                record_id=event.record_id,
                token_hash=token_fingerprint(token),
                sequence=event.sequence,
            )
            self._feed.publish(event)
        return resolved

    def _mark_viewed(self, session: Session, grant: ShareGrant, now: datetime) -> Optional[ChangeEvent]:
        require_transition(GrantState.ISSUED, GrantState.VIEWED)
        result = session.execute(
            update(ShareGrant)
            .where(
                ShareGrant.token == grant.token,
                ShareGrant.state == GrantState.ISSUED.value,
                ShareGrant.expires_at >= now,
            )
            .values(state=GrantState.VIEWED.value, version=ShareGrant.version + 1)
            .execution_options(synchronize_session=False)
        )
        session.refresh(grant)
        if result.rowcount != 1:
            # Another reader or a link got there first.
            return None
        row = GrantEvent(
            grant_token=grant.token,
            record_id=grant.record_id,
            owner_id=grant.record.owner_id,
            kind=EventKind.VIEWED.value,
            account_id=None,
            sequence=grant.version,
            occurred_at=now,
        )
        session.add(row)
        session.flush()
        return ChangeEvent.from_row(row)

    def resolve_by_owner(self, record_id: str, caller: Identity) -> ResolvedRecord:
        """Return ``record_id`` for its owner or its linked patient.

        Not time-limited: the TTL only guards token access.
        """

        return retry_transient("resolve_by_owner", lambda: self._resolve_by_owner_once(record_id, caller))

    def _resolve_by_owner_once(self, record_id: str, caller: Identity) -> ResolvedRecord:
        now = self.now()
        with translate_store_errors("resolve_by_owner"):
            with session_scope(self._session_factory) as session:
                record = session.get(ShareableRecord, record_id)
                if record is None:
                    RESOLVE_OUTCOMES.labels(path=ACCESS_OWNER, outcome="not_found").inc()
                    raise NotFoundError("Prescription not found.", record_id=record_id)
                access = self._access_for(record, caller)
                grant = record.grant
                if grant is None:
                    state, linked, expires_at = GrantState.EXPIRED, None, record.created_at
                else:
                    state = effective_state(grant.state, grant.expires_at, now)
                    linked, expires_at = grant.linked_account_id, grant.expires_at
        RESOLVE_OUTCOMES.labels(path=ACCESS_OWNER, outcome="ok").inc()
        return ResolvedRecord(
            record=record,
            state=state,
            linked_account_id=linked,
            expires_at=ensure_utc(expires_at),
            now=now,
            access=access,
        )

    @staticmethod
    def _access_for(record: ShareableRecord, caller: Identity) -> str:
        if isinstance(caller, AccountIdentity):
            if caller.account_id == record.owner_id:
                return ACCESS_OWNER
            grant = record.grant
            if grant is not None and grant.linked_account_id == caller.account_id:
                return ACCESS_PATIENT
        RESOLVE_OUTCOMES.labels(path=ACCESS_OWNER, outcome="forbidden").inc()
        logger.info("owner_access_denied", record_id=record.id, caller_kind=caller.kind)
        raise ForbiddenError(record_id=record.id)


__all__ = ["ACCESS_OWNER", "ACCESS_PATIENT", "ACCESS_TOKEN", "AccessGateway", "ResolvedRecord"]
