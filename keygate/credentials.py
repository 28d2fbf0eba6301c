"""
Credential Model
================

An issued API key with its quota, usage counter and lifecycle metadata.

Persisted layout (one JSON object per credential):

    {"key", "limit", "used", "owner", "status", "role"?, "createdAt",
     "lastUsed", "expiresAt"?}

Fields the gateway does not know about are carried through unchanged, and a
record read from storage is written back in the layout it was read with.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

ADMIN_ROLE = "admin"

_KNOWN_FIELDS = ("key", "limit", "used", "owner", "status", "role", "createdAt", "lastUsed", "expiresAt")


class CredentialStatus(str, Enum):
    """Admission status of a credential."""

    ACTIVE = "active"
    INACTIVE = "inactive"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 UTC with milliseconds and a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Credential:
    """Represents an issued API key."""

    key: str
    limit: int
    owner: str = "unknown"
    used: int = 0
    status: CredentialStatus = CredentialStatus.ACTIVE
    role: Optional[str] = None
    created_at: Optional[datetime] = field(default_factory=utcnow)
    last_used: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    _origin: Optional[Tuple[Dict[str, Any], Dict[str, Any]]] = field(default=None, init=False, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def expire_in(self, days: int, now: Optional[datetime] = None) -> None:
        self.expires_at = (now or utcnow()) + timedelta(days=days)

    def _fields(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "limit": self.limit,
            "used": self.used,
            "owner": self.owner,
            "status": self.status.value,
            "role": self.role,
            "createdAt": format_timestamp(self.created_at),
            "lastUsed": format_timestamp(self.last_used),
            "expiresAt": format_timestamp(self.expires_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        record = self._fields()
        if self.role is None:
            del record["role"]
        if self.expires_at is None:
            del record["expiresAt"]
        record.update(self.extra)
        return record

    def to_record(self) -> Dict[str, Any]:
        """Persisted form.

        A credential read from storage is written back in its source layout:
        same keys in the same order, untouched fields exactly as read.
        Known fields the source lacked are only added once they change.
        """
        if self._origin is None:
            return self.to_dict()
        source, loaded = self._origin
        current = self._fields()
        record: Dict[str, Any] = {}
        for name, value in source.items():
            if name in current:
                record[name] = value if current[name] == loaded[name] else current[name]
            elif name in self.extra:
                record[name] = self.extra[name]
        for name, value in current.items():
            if name not in source and value != loaded[name]:
                record[name] = value
        for name, value in self.extra.items():
            record.setdefault(name, value)
        return record

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "Credential":
        """Build a credential from its persisted form.

        Records written by the legacy raw admin path only hold
        ``key``/``limit``/``used``; the remaining fields fall back to their
        defaults. Raises ValueError when ``key``, ``limit`` or ``used`` has
        the wrong type.
        """
        key = record["key"]
        if not isinstance(key, str):
            raise ValueError(f"key must be a string, got {type(key).__name__}")
        limit = _require_int("limit", record["limit"])
        used = record.get("used")
        used = 0 if used is None else _require_int("used", used)

        credential = cls(
            key=key,
            limit=limit,
            owner=record.get("owner") or "unknown",
            used=used,
            status=CredentialStatus(record.get("status") or CredentialStatus.ACTIVE.value),
            role=record.get("role"),
            created_at=parse_timestamp(record.get("createdAt")),
            last_used=parse_timestamp(record.get("lastUsed")),
            expires_at=parse_timestamp(record.get("expiresAt")),
            extra={k: v for k, v in record.items() if k not in _KNOWN_FIELDS},
        )
        credential._origin = (dict(record), credential._fields())
        return credential


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value
