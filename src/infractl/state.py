"""Persisted applied state.

The state file records, per resource, its kind, name, provider-assigned id,
the resolved input attributes last applied, the provider-resolved outputs
and the dependency edges at apply time.

Writes are per-resource upserts. Each write rewrites the file through a
temporary file and `os.replace`, so a crash mid-apply leaves the last
complete checkpoint on disk.

Two locks guard the store:
- an in-process `threading.Lock` held for each save and each snapshot
- a cross-process advisory `FileLock` held for the duration of an apply
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field, ValidationError

from .config import DEFAULT_LOCK_TIMEOUT_SECONDS
from .models import InfractlError, ResourceId

logger = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.WARNING)

STATE_FORMAT_VERSION = 1


class StateError(InfractlError):
    """Raised when the state file cannot be read or written."""

    pass


class StateLockError(StateError):
    """Raised when the state lock cannot be acquired."""

    pass


class ResourceState(BaseModel):
    """Last applied record for a single resource."""

    kind: str
    name: str
    provider_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def id(self) -> ResourceId:
        return ResourceId(kind=self.kind, name=self.name)

    @property
    def address(self) -> str:
        return self.id.address

    def dependency_ids(self) -> list[ResourceId]:
        return [ResourceId.parse(address) for address in self.dependencies]

    def lookup(self, attribute: str) -> tuple[bool, Any]:
        """Find an attribute value, outputs first.

        Returns:
            Tuple of (found, value).
        """
        if attribute == "id":
            return True, self.provider_id
        if attribute in self.outputs:
            return True, self.outputs[attribute]
        if attribute in self.attributes:
            return True, self.attributes[attribute]
        return False, None


class AppliedState(BaseModel):
    """Every resource as last successfully reconciled."""

    version: int = STATE_FORMAT_VERSION
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    resources: dict[str, ResourceState] = Field(default_factory=dict)

    def get(self, resource_id: ResourceId) -> ResourceState | None:
        return self.resources.get(resource_id.address)

    def __contains__(self, resource_id: object) -> bool:
        return isinstance(resource_id, ResourceId) and resource_id.address in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def ids(self) -> list[ResourceId]:
        return sorted(record.id for record in self.resources.values())

    def dependency_edges(self) -> dict[ResourceId, list[ResourceId]]:
        return {record.id: record.dependency_ids() for record in self.resources.values()}


class StateStore:
    """File-backed store for AppliedState.

    Usage:
        store = StateStore(Path("infractl.state.json"))
        with store.lock():
            applied = store.load()
            ...
            store.save(record)
    """

    def __init__(
        self,
        path: Path,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._lock_timeout = lock_timeout_seconds
        self._file_lock = FileLock(str(self._lock_path))
        self._mutex = threading.Lock()
        self._state: AppliedState | None = None

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def lock(self) -> Generator[None, None, None]:
        """Hold the single-writer lock for the duration of the block.

        Raises:
            StateLockError: If another process holds the lock past the timeout.
        """
        try:
            self._file_lock.acquire(timeout=self._lock_timeout)
        except Timeout as e:
            raise StateLockError(
                f"State is locked by another run: {self._lock_path} "
                f"(waited {self._lock_timeout}s)"
            ) from e

        logger.debug("Acquired state lock", extra={"lock_path": str(self._lock_path)})
        try:
            yield
        finally:
            self._file_lock.release()
            logger.debug("Released state lock", extra={"lock_path": str(self._lock_path)})

    def load(self) -> AppliedState:
        """Load state from disk. A missing file is an empty state (first run).

        Raises:
            StateError: If the file exists but cannot be parsed.
        """
        with self._mutex:
            self._state = self._read()
            return copy.deepcopy(self._state)

    def snapshot(self) -> AppliedState:
        """Consistent copy of the current state for planning."""
        with self._mutex:
            if self._state is None:
                self._state = self._read()
            return copy.deepcopy(self._state)

    def save(self, record: ResourceState) -> None:
        """Upsert one resource record and persist immediately."""
        with self._mutex:
            state = self._current()
            previous = state.resources.get(record.address)
            if previous is not None:
                record = record.model_copy(update={"created_at": previous.created_at})
            state.resources[record.address] = record
            self._write(state)

        logger.debug(
            "Saved resource state",
            extra={"resource": record.address, "provider_id": record.provider_id},
        )

    def remove(self, resource_id: ResourceId) -> None:
        """Remove one resource record and persist immediately."""
        with self._mutex:
            state = self._current()
            if state.resources.pop(resource_id.address, None) is None:
                return
            self._write(state)

        logger.debug("Removed resource state", extra={"resource": resource_id.address})

    def _current(self) -> AppliedState:
        if self._state is None:
            self._state = self._read()
        return self._state

    def _read(self) -> AppliedState:
        if not self._path.exists():
            logger.info("No state file found, starting empty", extra={"path": str(self._path)})
            return AppliedState()

        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise StateError(f"State file must contain a JSON object: {self._path}")

        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateError(
                f"Unsupported state format version {version} in {self._path}, "
                f"expected {STATE_FORMAT_VERSION}"
            )

        try:
            return AppliedState.model_validate(data)
        except ValidationError as e:
            raise StateError(f"Corrupt state file {self._path}: {e}") from e

    def _write(self, state: AppliedState) -> None:
        state.serial += 1
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateError(f"Failed to write state file {self._path}: {e}") from e
