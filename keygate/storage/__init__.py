"""Credential Store - full-replace persistence for issued API keys.

Callers never patch a single record: they load the whole collection, mutate
it in memory and save the whole collection back, holding ``exclusive()``
across the cycle so concurrent admissions cannot lose an increment.
"""

import abc
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..credentials import Credential, utcnow
from ..errors import StoreCorruptError, StoreIOError

logger = logging.getLogger(__name__)

READ_ERROR_POLICIES = ("raise", "empty")


class CredentialStore(abc.ABC):
    """Abstract credential store (Repository Pattern).

    Subclasses only move serialized records in and out of their backend;
    expiry pruning, locking and error policy live here.
    """

    def __init__(self, on_read_error: str = "raise", metrics=None):
        if on_read_error not in READ_ERROR_POLICIES:
            raise ValueError(f"on_read_error must be one of {READ_ERROR_POLICIES}: {on_read_error}")
        self.on_read_error = on_read_error
        self._metrics = metrics
        self._lock = threading.RLock()

    @abc.abstractmethod
    def _read(self) -> List[Dict[str, Any]]:
        """Return every persisted record, initializing empty storage."""

    @abc.abstractmethod
    def _write(self, records: List[Dict[str, Any]]) -> None:
        """Replace every persisted record."""

    @property
    def location(self) -> str:
        return type(self).__name__

    @contextmanager
    def exclusive(self) -> Iterator["CredentialStore"]:
        """Serialize a load-mutate-save sequence against every other writer."""
        with self._lock:
            yield self

    def load(self) -> List[Credential]:
        """Load live credentials, pruning and persisting away expired ones."""
        with self._lock:
            started = time.perf_counter()
            try:
                credentials = self._decode(self._read())
            except StoreIOError as e:
                self._observe("load", "error", started)
                if self.on_read_error == "empty":
                    logger.error("Credential store unreadable, serving empty collection: %s", e.cause or e)
                    return []
                raise

            now = utcnow()
            live = [c for c in credentials if not c.is_expired(now)]
            if len(live) != len(credentials):
                for credential in credentials:
                    if credential.is_expired(now):
                        logger.info("Pruned expired credential %s...", credential.key[:8])
                self._write([c.to_record() for c in live])

            self._observe("load", "success", started, live)
            return live

    def check(self) -> int:
        """Read and decode the backing storage, bypassing the read-error policy.

        Expired records are not pruned. Returns the number of stored records.
        """
        with self._lock:
            return len(self._decode(self._read()))

    def save(self, credentials: Iterable[Credential]) -> None:
        """Overwrite the whole collection."""
        credentials = list(credentials)
        with self._lock:
            started = time.perf_counter()
            try:
                self._write([c.to_record() for c in credentials])
            except StoreIOError:
                self._observe("save", "error", started)
                raise
            self._observe("save", "success", started, credentials)

    def _decode(self, records: List[Dict[str, Any]]) -> List[Credential]:
        try:
            return [Credential.from_dict(r) for r in records]
        except (KeyError, TypeError, ValueError) as e:
            raise StoreCorruptError(f"Registro de API key inválido em {self.location}", cause=e) from e

    def _observe(self, operation: str, outcome: str, started: float, credentials=None) -> None:
        if self._metrics is None:
            return
        self._metrics.record_store_operation(operation, outcome, (time.perf_counter() - started) * 1000)
        if credentials is not None:
            self._metrics.set_credentials(len(credentials))


class JsonFileCredentialStore(CredentialStore):
    """Single JSON document on the local filesystem.

    Writes go to a temp file in the same directory which is fsynced and then
    renamed over the target, so readers only ever see a complete snapshot.
    """

    def __init__(self, path: str = "data/api-keys.json", **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def _read(self) -> List[Dict[str, Any]]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write([])
                return []
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreIOError(cause=e) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreCorruptError(cause=e) from e

        if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
            raise StoreCorruptError(f"{self.path} does not hold a list of credentials")
        return data

    def _write(self, records: List[Dict[str, Any]]) -> None:
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            logger.error("Failed to write credential store %s: %s", self.path, e)
            raise StoreIOError(cause=e) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)


class InMemoryCredentialStore(CredentialStore):
    """In-memory store for testing and embedding.

    Holds a serialized snapshot so no caller ever shares objects with the
    store across requests.
    """

    def __init__(self, credentials: Optional[Iterable[Credential]] = None, **kwargs):
        super().__init__(**kwargs)
        self._snapshot = json.dumps([c.to_record() for c in credentials or []])

    @property
    def snapshot(self) -> str:
        return self._snapshot

    def _read(self) -> List[Dict[str, Any]]:
        return json.loads(self._snapshot)

    def _write(self, records: List[Dict[str, Any]]) -> None:
        self._snapshot = json.dumps(records)


def create_store(path: Optional[str] = None, on_read_error: str = "raise", metrics=None) -> CredentialStore:
    """Build the store named by configuration; ``None`` or ``:memory:`` keeps it in memory."""
    if path in (None, ":memory:"):
        return InMemoryCredentialStore(on_read_error=on_read_error, metrics=metrics)
    return JsonFileCredentialStore(path, on_read_error=on_read_error, metrics=metrics)
