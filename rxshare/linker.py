"""Identity linker: attach a shared prescription to a patient account.

The claim is a single conditional ``UPDATE`` on the grant row::

    UPDATE share_grants
       SET state='linked', linked_account_id=:account, linked_at=:now, version=version+1
     WHERE token=:token AND linked_account_id IS NULL
       AND state IN ('issued', 'viewed') AND expires_at >= :now

Exactly one concurrent caller matches a row.  Losers roll back, re-read the
grant and report ``already_linked`` or ``link_conflict``.  The linkage event
and the patient's history entry are written in the winner's transaction, so
a failed call leaves nothing behind.

Only patient accounts may claim a grant, and by default only when their
mobile number is the one the prescription was issued to.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from rxshare import records
from rxshare.db.engine import translate_store_errors
from rxshare.db.models import GrantEvent, ShareGrant
from rxshare.errors import (
    ExpiredError,
    ForbiddenError,
    LinkConflictError,
    NotFoundError,
    ShareError,
    TransientStoreError,
)
from rxshare.gateway import AccessGateway
from rxshare.identity import AccountIdentity, GuestIdentity, Identity
from rxshare.metrics import LINK_OUTCOMES
from rxshare.notifier import ChangeEvent, ChangeFeed, EventKind
from rxshare.state import LINKABLE_STATES, GrantState, effective_state
from rxshare.time_utils import ensure_utc, isoformat_utc
from rxshare.tokens import token_fingerprint

logger = structlog.get_logger(__name__)

MAX_CLAIM_ATTEMPTS = 3


class LinkStatus(str, enum.Enum):
    LINKED = "linked"
    ALREADY_LINKED = "already_linked"
    GUEST_ACCESS = "guest_access"
    LINK_CONFLICT = "link_conflict"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


_FAILURES = {
    LinkStatus.LINK_CONFLICT: LinkConflictError,
    LinkStatus.EXPIRED: ExpiredError,
    LinkStatus.NOT_FOUND: NotFoundError,
}


@dataclass(frozen=True)
class LinkResult:
    status: LinkStatus
    record_id: Optional[str] = None
    state: Optional[GrantState] = None
    linked_account_id: Optional[str] = None
    linked_at: Optional[datetime] = None
    contact_matched: Optional[bool] = None
    event_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status not in _FAILURES

    def raise_for_status(self) -> "LinkResult":
        error_cls = _FAILURES.get(self.status)
        if error_cls is not None:
            raise error_cls(record_id=self.record_id) if self.record_id else error_cls()
        return self

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "recordId": self.record_id,
            "state": self.state.value if self.state else None,
            "linkedAccountId": self.linked_account_id,
            "linkedAt": isoformat_utc(self.linked_at),
            "contactMatched": self.contact_matched,
        }


class IdentityLinker:
    """Decide whether a viewer may claim a shared prescription."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        gateway: AccessGateway,
        feed: ChangeFeed,
        require_contact_match: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._feed = feed
        self.require_contact_match = require_contact_match

    def link(self, token: str, identity: Identity) -> LinkResult:
        if isinstance(identity, GuestIdentity):
            result = self._guest_access(token, identity)
        elif isinstance(identity, AccountIdentity):
            result = self._claim(token, identity)
        else:
            raise TypeError(f"Unsupported identity {identity!r}")
        LINK_OUTCOMES.labels(status=result.status.value).inc()
        return result

    def _guest_access(self, token: str, identity: GuestIdentity) -> LinkResult:
        try:
            resolved = self._gateway.resolve(token)
        except NotFoundError:
            return LinkResult(status=LinkStatus.NOT_FOUND)
        except ExpiredError:
            return LinkResult(status=LinkStatus.EXPIRED)
        logger.info("guest_access", record_id=resolved.record.id, token_hash=token_fingerprint(token))
        return LinkResult(
            status=LinkStatus.GUEST_ACCESS,
            record_id=resolved.record.id,
            state=resolved.state,
            linked_account_id=resolved.linked_account_id,
            contact_matched=identity.contact == resolved.record.patient_contact,
        )

    def _claim(self, token: str, identity: AccountIdentity) -> LinkResult:
        for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
            result, event = self._attempt_claim(token, identity)
            if result is not None:
                if event is not None:
                    self._feed.publish(event)
                return result
            logger.info("link_claim_retry", token_hash=token_fingerprint(token), attempt=attempt)
        raise TransientStoreError(operation="link")

    def _attempt_claim(
        self, token: str, identity: AccountIdentity
    ) -> tuple[Optional[LinkResult], Optional[ChangeEvent]]:
        now = self._gateway.now()
        with translate_store_errors("link"):
            session: Session = self._session_factory()
            try:
                try:
                    grant = self._gateway.lookup(session, token, now)
                except NotFoundError:
                    return LinkResult(status=LinkStatus.NOT_FOUND), None
                except ExpiredError:
                    return LinkResult(status=LinkStatus.EXPIRED, record_id=self._record_id(session, token)), None

                record = grant.record
                if not identity.is_patient:
                    logger.info("link_role_rejected", record_id=record.id, account_id=identity.account_id)
                    raise ForbiddenError(
                        "Only patient accounts can add a prescription to their records.",
                        record_id=record.id,
                    )
                matched = identity.contact == record.patient_contact
                if grant.linked_account_id:
                    return self._classify(grant, identity, matched, now, token), None
                if self.require_contact_match and not matched:
                    logger.info("link_contact_mismatch", record_id=record.id, account_id=identity.account_id)
                    raise ForbiddenError(
                        "This prescription was issued to a different mobile number.",
                        record_id=record.id,
                    )

                claimed = session.execute(
                    update(ShareGrant)
                    .where(
                        ShareGrant.token == grant.token,
                        ShareGrant.linked_account_id.is_(None),
                        ShareGrant.state.in_([state.value for state in LINKABLE_STATES]),
                        ShareGrant.expires_at >= now,
                    )
                    .values(
                        state=GrantState.LINKED.value,
                        linked_account_id=identity.account_id,
                        linked_at=now,
                        version=ShareGrant.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    session.rollback()
                    return None, None

                session.refresh(grant)
                row = GrantEvent(
                    grant_token=grant.token,
                    record_id=record.id,
                    owner_id=record.owner_id,
                    kind=EventKind.LINKED.value,
                    account_id=identity.account_id,
                    sequence=grant.version,
                    occurred_at=now,
                )
                session.add(row)
                session.add(records.history_entry_for(record, identity.account_id, now))
                session.flush()
                event = ChangeEvent.from_row(row)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        logger.info(
            "grant_linked",
            record_id=record.id,
            account_id=identity.account_id,
            token_hash=token_fingerprint(token),
            contact_matched=matched,
            sequence=event.sequence,
        )
        return (
            LinkResult(
                status=LinkStatus.LINKED,
                record_id=record.id,
                state=GrantState.LINKED,
                linked_account_id=identity.account_id,
                linked_at=now,
                contact_matched=matched,
                event_id=event.event_id,
            ),
            event,
        )

    @staticmethod
    def _classify(
        grant: ShareGrant,
        identity: AccountIdentity,
        matched: bool,
        now: datetime,
        token: str,
    ) -> LinkResult:
        state = effective_state(grant.state, grant.expires_at, now)
        linked_here = grant.linked_account_id == identity.account_id
        if linked_here:
            status = LinkStatus.ALREADY_LINKED
        else:
            status = LinkStatus.LINK_CONFLICT
            logger.warning(
                "link_conflict",
                record_id=grant.record_id,
                token_hash=token_fingerprint(token),
                account_id=identity.account_id,
            )
        return LinkResult(
            status=status,
            record_id=grant.record_id,
            state=state,
            linked_account_id=grant.linked_account_id if linked_here else None,
            linked_at=ensure_utc(grant.linked_at) if linked_here and grant.linked_at else None,
            contact_matched=matched,
        )

    @staticmethod
    def _record_id(session: Session, token: str) -> Optional[str]:
        grant = records.get_grant(session, token)
        return grant.record_id if grant is not None else None


def link_or_raise(linker: IdentityLinker, token: str, identity: Identity) -> LinkResult:
    """Like :meth:`IdentityLinker.link` but raise :class:`ShareError` on failure."""

    result = linker.link(token, identity)
    try:
        return result.raise_for_status()
    except ShareError:
        logger.debug("link_failed", status=result.status.value)
        raise


__all__ = ["IdentityLinker", "LinkResult", "LinkStatus", "link_or_raise"]
