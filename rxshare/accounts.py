"""Account registration and authentication helpers."""

from __future__ import annotations

from typing import Optional

import structlog
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rxshare.db.models import Account
from rxshare.errors import InvalidRequestError
from rxshare.identity import ROLE_CLINICIAN, ROLE_PATIENT, AccountIdentity, normalise_contact

logger = structlog.get_logger(__name__)

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ROLES = (ROLE_PATIENT, ROLE_CLINICIAN)


class AccountExistsError(InvalidRequestError):
    """Raised when a contact number is already registered for a role."""

    code = "account_exists"
    status_code = 409
    default_message = "An account with this mobile number already exists."


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def find_account(session: Session, contact: str, role: str) -> Optional[Account]:
    return session.execute(
        select(Account).where(Account.contact == contact, Account.role == role)
    ).scalar_one_or_none()


def register_account(
    session: Session,
    *,
    name: str,
    contact: str,
    password: str,
    role: str = ROLE_PATIENT,
    email: Optional[str] = None,
    qualification: Optional[str] = None,
    registration: Optional[str] = None,
) -> Account:
    """Register a new account.

    A guest who later registers with the contact number a prescription was
    issued to goes through here before linking it.
    """

    if role not in ROLES:
        raise InvalidRequestError(f"Unknown role {role!r}.", field="role")
    contact = normalise_contact(contact)
    if find_account(session, contact, role) is not None:
        raise AccountExistsError(field="contact")

    account = Account(
        name=name.strip(),
        contact=contact,
        role=role,
        password_hash=hash_password(password),
        email=email,
        qualification=qualification,
        registration=registration,
    )
    session.add(account)
    try:
        session.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent registration for the same number.
        raise AccountExistsError(field="contact") from exc
    logger.info("account_registered", account_id=account.id, role=role)
    return account


def authenticate(session: Session, contact: str, password: str, role: str) -> Optional[Account]:
    """Validate credentials.

    Returns the matching :class:`Account` when the credentials are valid,
    otherwise ``None``.
    """

    account = find_account(session, normalise_contact(contact), role)
    if account is None or not verify_password(password, account.password_hash):
        logger.info("login_failed", role=role)
        return None
    return account


def to_identity(account: Account) -> AccountIdentity:
    return AccountIdentity(
        account_id=account.id, contact=account.contact, name=account.name, role=account.role
    )


__all__ = [
    "AccountExistsError",
    "ROLE_CLINICIAN",
    "ROLE_PATIENT",
    "authenticate",
    "find_account",
    "hash_password",
    "register_account",
    "to_identity",
    "verify_password",
]
