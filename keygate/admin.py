"""
Admin Surface
=============

Privileged CRUD over credentials. Shares the store (and its exclusive lock)
with the Admission Gate but never applies quota logic.
"""

import functools
import logging
import secrets
import string
from typing import Any, Callable, Dict, List, Mapping, Optional

from .credentials import ADMIN_ROLE, Credential, CredentialStatus
from .errors import DuplicateKeyError, GatewayError, InternalError, NotFoundError, ValidationError
from .gate import find_credential, key_prefix
from .storage import CredentialStore

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("limit", "used", "status")
RECENT_ACTIVITY_SIZE = 10


class KeyGenerator:
    """Random alphanumeric keys from the ``secrets`` CSPRNG."""

    ALPHABET = string.ascii_letters + string.digits

    def __init__(self, prefix: str = "sk_", length: int = 24):
        self.prefix = prefix
        self.length = length

    def __call__(self) -> str:
        return self.prefix + "".join(secrets.choice(self.ALPHABET) for _ in range(self.length))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_owner(owner: Any) -> str:
    if not isinstance(owner, str) or not owner.strip():
        raise ValidationError("Proprietário e limite são obrigatórios")
    return owner.strip()


def validate_limit(limit: Any) -> int:
    if limit is None:
        raise ValidationError("Proprietário e limite são obrigatórios")
    if not _is_int(limit) or limit <= 0:
        raise ValidationError("O limite deve ser um inteiro positivo", details={"field": "limit"})
    return limit


def validate_used(used: Any) -> int:
    if not _is_int(used) or used < 0:
        raise ValidationError("O uso deve ser um inteiro não negativo", details={"field": "used"})
    return used


def validate_status(status: Any) -> CredentialStatus:
    try:
        return CredentialStatus(status)
    except ValueError:
        allowed = [s.value for s in CredentialStatus]
        raise ValidationError(f"Status deve ser um de {allowed}", details={"field": "status"}) from None


def validate_expires_in_days(days: Any) -> Optional[int]:
    if days is None:
        return None
    if not _is_int(days) or days < 0:
        raise ValidationError("expiresInDays deve ser um inteiro não negativo", details={"field": "expiresInDays"})
    return days


def _tracked(operation: str):
    """Count each admin operation by outcome."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                result = func(self, *args, **kwargs)
            except GatewayError as e:
                self._record(operation, e.kind.value)
                raise
            self._record(operation, "success")
            return result

        return wrapper

    return decorator


class AdminService:
    """Credential administration over a :class:`CredentialStore`."""

    MAX_GENERATION_ATTEMPTS = 10

    def __init__(
        self,
        store: CredentialStore,
        key_generator: Optional[Callable[[], str]] = None,
        near_limit_ratio: float = 0.8,
        metrics=None,
    ):
        self._store = store
        self._generate = key_generator or KeyGenerator()
        self.near_limit_ratio = near_limit_ratio
        self._metrics = metrics

    @_tracked("list")
    def list_with_stats(self) -> Dict[str, Any]:
        """All live credentials plus aggregate usage statistics."""
        credentials = self._store.load()
        return {"keys": credentials, "stats": self.stats(credentials)}

    def stats(self, credentials: List[Credential]) -> Dict[str, Any]:
        recent = sorted(
            (c for c in credentials if c.last_used is not None),
            key=lambda c: c.last_used,
            reverse=True,
        )
        return {
            "total_keys": len(credentials),
            "active_keys": sum(1 for c in credentials if c.is_active),
            "total_usage": sum(c.used for c in credentials),
            "keys_near_limit": [c for c in credentials if c.used >= c.limit * self.near_limit_ratio],
            "recent_activity": recent[:RECENT_ACTIVITY_SIZE],
        }

    @_tracked("get")
    def get(self, key: str) -> Credential:
        credential = find_credential(self._store.load(), key)
        if credential is None:
            raise NotFoundError()
        return credential

    @_tracked("create")
    def create(
        self,
        owner: Any,
        limit: Any,
        expires_in_days: Any = None,
        role: Optional[str] = None,
    ) -> Credential:
        """Issue a credential under a freshly generated key."""
        owner = validate_owner(owner)
        limit = validate_limit(limit)
        expires_in_days = validate_expires_in_days(expires_in_days)

        with self._store.exclusive():
            credentials = self._store.load()
            existing = {c.key for c in credentials}
            for _ in range(self.MAX_GENERATION_ATTEMPTS):
                key = self._generate()
                if key not in existing:
                    break
            else:
                raise InternalError("Não foi possível gerar uma API key única")

            credential = self._issue(credentials, key, limit, owner, expires_in_days, role)

        logger.info("Created API key %s for %s (limit %d)", key_prefix(key), owner, limit)
        return credential

    @_tracked("create_raw")
    def create_raw(
        self,
        key: Any,
        limit: Any,
        owner: Any = "unknown",
        expires_in_days: Any = None,
        role: Optional[str] = None,
    ) -> Credential:
        """Issue a credential under a caller-chosen key."""
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("Campos obrigatórios: key e limit")
        limit = validate_limit(limit)
        owner = validate_owner(owner) if owner is not None else "unknown"
        expires_in_days = validate_expires_in_days(expires_in_days)

        with self._store.exclusive():
            credentials = self._store.load()
            if find_credential(credentials, key) is not None:
                raise DuplicateKeyError()
            credential = self._issue(credentials, key, limit, owner, expires_in_days, role)

        logger.info("Created API key %s for %s (limit %d)", key_prefix(key), owner, limit)
        return credential

    def _issue(
        self,
        credentials: List[Credential],
        key: str,
        limit: int,
        owner: str,
        expires_in_days: Optional[int],
        role: Optional[str],
    ) -> Credential:
        credential = Credential(key=key, limit=limit, owner=owner, role=role)
        if expires_in_days is not None:
            credential.expire_in(expires_in_days)
        credentials.append(credential)
        self._store.save(credentials)
        return credential

    @_tracked("update")
    def update(self, key: str, changes: Mapping[str, Any]) -> Credential:
        """Apply any subset of ``limit``/``used``/``status``."""
        changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}
        if not changes:
            raise ValidationError(f"Informe ao menos um campo: {list(UPDATABLE_FIELDS)}")

        limit = validate_limit(changes["limit"]) if "limit" in changes else None
        used = validate_used(changes["used"]) if "used" in changes else None
        status = validate_status(changes["status"]) if "status" in changes else None

        with self._store.exclusive():
            credentials = self._store.load()
            credential = find_credential(credentials, key)
            if credential is None:
                raise NotFoundError()
            if limit is not None:
                credential.limit = limit
            if used is not None:
                credential.used = used
            if status is not None:
                credential.status = status
            self._store.save(credentials)

        logger.info("Updated API key %s: %s", key_prefix(key), sorted(changes))
        return credential

    @_tracked("delete")
    def delete(self, key: str) -> None:
        with self._store.exclusive():
            credentials = self._store.load()
            remaining = [c for c in credentials if c.key != key]
            if len(remaining) == len(credentials):
                raise NotFoundError()
            self._store.save(remaining)
        logger.info("Deleted API key %s", key_prefix(key))

    @_tracked("reset")
    def reset_usage(self, key: str) -> Credential:
        with self._store.exclusive():
            credentials = self._store.load()
            credential = find_credential(credentials, key)
            if credential is None:
                raise NotFoundError()
            credential.used = 0
            credential.last_used = None
            self._store.save(credentials)
        logger.info("Reset usage of API key %s", key_prefix(key))
        return credential

    def ensure_admin(self, key: str, owner: str = "admin", limit: int = 1000000) -> bool:
        """Seed an admin credential unless ``key`` already exists. Returns True when created."""
        with self._store.exclusive():
            existing = find_credential(self._store.load(), key)
            if existing is not None:
                if not existing.is_admin:
                    logger.warning(
                        "Bootstrap admin key %s already exists without the admin role; it cannot reach /admin",
                        key_prefix(key),
                    )
                return False
            self.create_raw(key, limit, owner=owner, role=ADMIN_ROLE)
        return True

    def _record(self, operation: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_admin_operation(operation, outcome)
