"""
Admission Gate
==============

Authenticates, meters and admits a single request against the credential
store. Every call pays one full load and, on success, one full save; the
whole cycle runs under the store's exclusive lock so two admissions against
the same key can never both see the last unit of quota.

Decision per credential, evaluated fresh each time:

    no key                      -> MissingKeyError      (401)
    unknown / expired / inactive -> InvalidKeyError      (401)
    used >= limit               -> QuotaExceededError   (429, used unchanged)
    otherwise                   -> used += 1, lastUsed = now, save, admit
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .credentials import Credential, utcnow
from .errors import (
    AccessDeniedError,
    AdminKeyRequiredError,
    GatewayError,
    InvalidKeyError,
    MissingKeyError,
    QuotaExceededError,
)
from .storage import CredentialStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionContext:
    """What a route handler learns about the caller after admission."""

    key: str
    owner: str
    used: int
    limit: int
    remaining: int

    @classmethod
    def from_credential(cls, credential: Credential) -> "AdmissionContext":
        return cls(
            key=credential.key,
            owner=credential.owner,
            used=credential.used,
            limit=credential.limit,
            remaining=credential.limit - credential.used,
        )


def key_prefix(key: Optional[str]) -> str:
    return f"{key[:8]}..." if key else "-"


def find_credential(credentials: List[Credential], key: str) -> Optional[Credential]:
    for credential in credentials:
        if credential.key == key:
            return credential
    return None


class AdmissionGate:
    """Request-gating state machine shared by every metered route."""

    def __init__(self, store: CredentialStore, metrics=None):
        self._store = store
        self._metrics = metrics

    @property
    def store(self) -> CredentialStore:
        return self._store

    def admit(self, key: Optional[str]) -> AdmissionContext:
        """Validate ``key`` and consume one unit of its quota."""
        try:
            context = self._admit(key)
        except GatewayError as e:
            self._record(e.kind.value)
            raise
        except Exception:
            self._record("error")
            raise
        self._record("granted")
        return context

    def _admit(self, key: Optional[str]) -> AdmissionContext:
        if not key:
            logger.info("Admission refused: no API key supplied")
            raise MissingKeyError()

        with self._store.exclusive():
            credentials = self._store.load()
            credential = find_credential(credentials, key)

            if credential is None or not credential.is_active:
                logger.info("Admission refused: invalid key %s", key_prefix(key))
                raise InvalidKeyError()

            if credential.exhausted:
                logger.warning(
                    "Admission refused: quota exhausted for %s (%d/%d)",
                    key_prefix(key),
                    credential.used,
                    credential.limit,
                )
                raise QuotaExceededError(limit=credential.limit, used=credential.used)

            credential.used += 1
            credential.last_used = utcnow()
            self._store.save(credentials)

        context = AdmissionContext.from_credential(credential)
        logger.info(
            "API key used: %s | owner: %s | remaining: %d",
            key_prefix(key),
            context.owner,
            context.remaining,
        )
        return context

    def authorize_admin(self, key: Optional[str]) -> Credential:
        """Require an active credential with the admin role; never meters."""
        if not key:
            raise AdminKeyRequiredError()

        credential = find_credential(self._store.load(), key)
        if credential is None or not credential.is_admin or not credential.is_active:
            logger.warning("Admin access denied for %s", key_prefix(key))
            raise AccessDeniedError()
        return credential

    def _record(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_admission(outcome)
