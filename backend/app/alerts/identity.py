"""
identity.py — Reporter identities and opaque bearer tokens.

A reporter is identified by the phone number they type into the
submission form. The number is canonicalised to E.164 and used as a
natural key: submitting again with the same number updates the existing
identity (name, remembered location) and keeps its token.

The token is the only credential for "manage my alerts". It is short
enough to read aloud, drawn from the OS CSPRNG, upper-case, and never
expires.

═══════════════════════════════════════════════════════════════════════════
PHONE CANONICALISATION
═══════════════════════════════════════════════════════════════════════════

    Input                  Digits          Canonical
    ─────────────────      ────────────    ──────────────
    (68) 99228-8071        68992288071     +5568992288071
    68 3224-1234           6832241234      +556832241234
    +55 68 99228-8071      5568992288071   +5568992288071

Fewer than 10 national digits is rejected. A leading country code is
recognised only when the digit count leaves a full 10/11-digit national
number after it, so area code 55 numbers are not mistaken for prefixed
ones.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from typing import Callable, Optional

from backend.app.alerts.models import AlertPolicy, Identity, Location, _now
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_uppercase + string.digits
_MAX_TOKEN_ATTEMPTS = 10
_NON_DIGITS = re.compile(r"\D")


def canonicalize_contact(raw: str, country_code: str = "55") -> str:
    """
    Normalise a phone number to E.164.

    Raises
    ------
    ValidationError
        If the number has fewer than 10 national digits.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if digits.startswith(country_code) and len(digits) >= len(country_code) + 10:
        national = digits[len(country_code):]
    else:
        national = digits
    if len(national) < 10:
        raise ValidationError("Enter a valid phone number", field="contact_id")
    return f"+{country_code}{national}"


def normalize_token(token: str) -> str:
    return (token or "").strip().upper()


def generate_token(length: int = 6) -> str:
    """Random upper-case alphanumeric token from the OS CSPRNG."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class IdentityStore:
    """Upsert-by-phone and lookup-by-token on top of an AlertStore."""

    def __init__(
        self,
        store: AlertStore,
        policy: Optional[AlertPolicy] = None,
        clock: Callable = _now,
    ) -> None:
        self._store = store
        self._policy = policy or AlertPolicy()
        self._clock = clock

    def canonicalize(self, contact_id: str) -> str:
        return canonicalize_contact(contact_id, self._policy.phone_country_code)

    async def _new_token(self) -> str:
        for _ in range(_MAX_TOKEN_ATTEMPTS):
            token = generate_token(self._policy.token_length)
            if await self._store.find_identity_by_token(token) is None:
                return token
        raise PersistenceError("generate_token", "could not allocate a unique token")

    async def upsert(
        self,
        contact_id: str,
        display_name: str,
        default_location: Optional[Location] = None,
    ) -> Identity:
        """
        Create or update the identity registered under ``contact_id``.

        Existing identities keep their id and token; only the display
        name and (when given) the remembered location change.
        """
        canonical = self.canonicalize(contact_id)
        name = (display_name or "").strip()
        if not name:
            raise ValidationError("Enter your full name", field="display_name")

        existing = await self._store.find_identity_by_contact(canonical)
        if existing is not None:
            existing.display_name = name
            if default_location is not None:
                existing.default_latitude = default_location.latitude
                existing.default_longitude = default_location.longitude
                if default_location.address_text:
                    existing.default_address = default_location.address_text
            await self._store.update_identity(existing)
            logger.info("Identity updated", extra={"identity_id": existing.id})
            return existing

        identity = Identity(
            display_name=name,
            contact_id=canonical,
            token=await self._new_token(),
            created_at=self._clock(),
        )
        if default_location is not None:
            identity.default_latitude = default_location.latitude
            identity.default_longitude = default_location.longitude
            identity.default_address = default_location.address_text
        await self._store.insert_identity(identity)
        logger.info("Identity registered", extra={"identity_id": identity.id})
        return identity

    async def find_by_token(self, token: str) -> Identity:
        """Case-insensitive exact token match; NotFoundError otherwise."""
        normalized = normalize_token(token)
        identity = None
        if normalized:
            identity = await self._store.find_identity_by_token(normalized)
        if identity is None:
            raise NotFoundError("Identity", token="<redacted>")
        return identity

    async def get(self, identity_id: str) -> Identity:
        identity = await self._store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("Identity", id=identity_id)
        return identity
