"""Caller identities passed explicitly into the gateway and linker."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from rxshare.errors import InvalidRequestError

_NON_DIGITS = re.compile(r"\D+")
CONTACT_LENGTH = 10

ROLE_PATIENT = "patient"
ROLE_CLINICIAN = "clinician"


def normalise_contact(raw: Optional[str]) -> str:
    """Return the 10-digit mobile number contained in ``raw``.

    Separators are ignored and a leading ``91`` country code or trunk ``0``
    is stripped.  Anything else raises :class:`InvalidRequestError`.
    """

    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == CONTACT_LENGTH + 2 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == CONTACT_LENGTH + 1 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) != CONTACT_LENGTH:
        raise InvalidRequestError(
            "Contact number must be a 10-digit mobile number.", field="contact"
        )
    return digits


@dataclass(frozen=True)
class AccountIdentity:
    """An authenticated account with a durable id."""

    account_id: str
    contact: str
    name: Optional[str] = None
    role: Optional[str] = None

    kind = "account"

    @property
    def is_patient(self) -> bool:
        return self.role == ROLE_PATIENT


@dataclass(frozen=True)
class GuestIdentity:
    """A transient viewer known only by name and contact number."""

    name: str
    contact: str

    kind = "guest"


Identity = Union[AccountIdentity, GuestIdentity]


def guest(name: str, contact: str) -> GuestIdentity:
    return GuestIdentity(name=(name or "").strip() or "Guest User", contact=normalise_contact(contact))


def account(
    account_id: str,
    contact: str,
    name: Optional[str] = None,
    role: Optional[str] = None,
) -> AccountIdentity:
    if not account_id:
        raise InvalidRequestError("Account identity requires an id.", field="account_id")
    return AccountIdentity(
        account_id=str(account_id), contact=normalise_contact(contact), name=name, role=role
    )


def identity_from_claims(claims: Mapping[str, Any]) -> AccountIdentity:
    """Build an :class:`AccountIdentity` from decoded JWT claims."""

    return account(
        claims.get("sub", ""), claims.get("contact", ""), claims.get("name"), claims.get("role")
    )


__all__ = [
    "AccountIdentity",
    "GuestIdentity",
    "Identity",
    "ROLE_CLINICIAN",
    "ROLE_PATIENT",
    "account",
    "guest",
    "identity_from_claims",
    "normalise_contact",
]
