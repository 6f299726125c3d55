"""Share token issuance.

A grant token is 32 bytes from :mod:`secrets` encoded URL-safe (43
characters), so guessing one is infeasible.  Expiry is always
``issued_at + GRANT_TTL``; callers cannot pick their own window.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from io import BytesIO
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import qrcode
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rxshare.db.models import ShareableRecord, ShareGrant
from rxshare.errors import GrantAlreadyIssuedError
from rxshare.metrics import GRANTS_ISSUED, TOKEN_COLLISIONS
from rxshare.state import GrantState
from rxshare.time_utils import Clock, ensure_utc, isoformat_utc, utc_now

logger = structlog.get_logger(__name__)

GRANT_TTL = timedelta(hours=48)
TOKEN_BYTES = 32
TOKEN_LENGTH = 43
MAX_TOKEN_ATTEMPTS = 5
SHARE_PATH = "/prescription/view"


class TokenGenerationError(RuntimeError):
    """Raised when no unused token could be generated."""


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def token_fingerprint(token: str) -> str:
    """Return a short stable hash of ``token`` that is safe to log."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def build_share_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}{SHARE_PATH}?{urlencode({'token': token})}"


def qr_payload(share_url: str) -> str:
    """The QR code encodes the share URL verbatim."""

    return share_url


def render_qr_png(share_url: str, *, box_size: int = 10, border: int = 4) -> str:
    """Render ``share_url`` as a base64 encoded PNG QR code."""

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(qr_payload(share_url))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@dataclass(frozen=True)
class IssuedGrant:
    record_id: str
    token: str
    share_url: str
    qr_payload: str
    issued_at: datetime
    expires_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "token": self.token,
            "shareUrl": self.share_url,
            "qrPayload": self.qr_payload,
            "expiresAt": isoformat_utc(self.expires_at),
        }


class TokenIssuer:
    """Mint the grant for a freshly created record."""

    def __init__(
        self,
        *,
        base_url: str,
        clock: Clock = utc_now,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.base_url = base_url
        self._clock = clock
        self._token_factory = token_factory

    def share_url(self, token: str) -> str:
        return build_share_url(self.base_url, token)

    def describe(self, grant: ShareGrant) -> IssuedGrant:
        url = self.share_url(grant.token)
        return IssuedGrant(
            record_id=grant.record_id,
            token=grant.token,
            share_url=url,
            qr_payload=qr_payload(url),
            issued_at=ensure_utc(grant.issued_at),
            expires_at=ensure_utc(grant.expires_at),
        )

    def issue(self, session: Session, record: ShareableRecord, *, origin: str = "create") -> IssuedGrant:
        """Attach a new grant in ``issued`` state to ``record``.

        Runs inside the caller's transaction; nothing is committed here.
        """

        if record.grant is not None:
            raise GrantAlreadyIssuedError(record_id=record.id)
        issued_at = ensure_utc(self._clock())
        grant = self._insert_grant(session, record, issued_at)
        token = grant.token
        record.grant = grant
        GRANTS_ISSUED.labels(origin=origin).inc()
        logger.info(
            "grant_issued",
            record_id=record.id,
            owner_id=record.owner_id,
            token_hash=token_fingerprint(token),
            expires_at=isoformat_utc(grant.expires_at),
        )
        return self.describe(grant)

    def _insert_grant(self, session: Session, record: ShareableRecord, issued_at: datetime) -> ShareGrant:
        """Insert the grant row, drawing a new token whenever the unique key rejects one."""

        for _ in range(MAX_TOKEN_ATTEMPTS):
            grant = ShareGrant(
                token=self._token_factory(),
                record_id=record.id,
                issued_at=issued_at,
                expires_at=issued_at + GRANT_TTL,
                state=GrantState.ISSUED.value,
                version=1,
            )
            try:
                with session.begin_nested():
                    session.add(grant)
                    session.flush()
            except IntegrityError as exc:
                if not _token_taken(session, grant.token):
                    raise GrantAlreadyIssuedError(record_id=record.id) from exc
                TOKEN_COLLISIONS.inc()
                logger.warning("token_collision", token_hash=token_fingerprint(grant.token))
                continue
            return grant
        raise TokenGenerationError("Could not generate an unused share token")


def _token_taken(session: Session, token: str) -> bool:
    # Column query so the existing row is not pulled into the identity map.
    return session.scalar(select(ShareGrant.token).where(ShareGrant.token == token)) is not None


__all__ = [
    "GRANT_TTL",
    "IssuedGrant",
    "TOKEN_LENGTH",
    "TokenGenerationError",
    "TokenIssuer",
    "build_share_url",
    "generate_token",
    "qr_payload",
    "render_qr_png",
    "token_fingerprint",
]
