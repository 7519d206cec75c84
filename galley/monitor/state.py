"""Persisted monitor state.

Two small JSON documents are kept on disk:

- MonitorState: last observed tag, last built tag, last check time
- MonthlyBuildState: month being tracked, releases seen, whether built

Documents are read-modify-written whole under an advisory file lock and
written through a temp file + ``os.replace``, so a concurrent reader never
sees a partial write. Unknown keys are ignored and missing keys default to
zero values, so operators can edit the files by hand. A field with an invalid
value falls back to its default while the valid fields are kept.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class MonitorState(BaseModel):
    """Release tracking state."""

    model_config = ConfigDict(extra="ignore")

    last_tag: str = ""
    last_build_tag: str = ""
    last_check: str = ""


class MonthlyBuildState(BaseModel):
    """Monthly build cadence state."""

    model_config = ConfigDict(extra="ignore")

    current_month: str = ""
    releases_this_month: int = Field(default=0, ge=0)
    built_this_month: bool = False


StateT = TypeVar("StateT", bound=BaseModel)


@contextmanager
def state_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock for a state file.

    The lock lives in a sibling ``.lock`` file so that atomic replacement of
    the state file itself does not drop it.

    Args:
        path: State file path.

    Yields:
        None while the lock is held.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = path.with_name(path.name + ".lock")

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        logger.debug("State lock acquired: %s", lock_file)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("State lock released: %s", lock_file)
    finally:
        os.close(fd)


def write_json_atomic(path: Path, data: dict[str, object]) -> None:
    """Write JSON to ``path`` via a temp file in the same directory.

    Args:
        path: Destination path.
        data: JSON-serializable mapping.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
        encoding="utf-8",
    ) as tmp_file:
        json.dump(data, tmp_file, indent=2)
        tmp_file.write("\n")
        tmp_file.flush()
        os.fsync(tmp_file.fileno())
        tmp_path = Path(tmp_file.name)

    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class StateStore(Generic[StateT]):
    """Typed JSON document store with atomic read-modify-write."""

    def __init__(self, path: Path, model: type[StateT]) -> None:
        self.path = path
        self.model = model

    def _read(self) -> StateT:
        if not self.path.exists():
            return self.model()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return self.model()
        if not isinstance(raw, dict):
            logger.warning("Ignoring state file %s: not a JSON object", self.path)
            return self.model()
        try:
            return self.model.model_validate(raw)
        except ValidationError as e:
            invalid = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
        for name in sorted(invalid):
            logger.warning(
                "Ignoring invalid %s in state file %s: %r", name, self.path, raw.get(name)
            )
        kept = {key: value for key, value in raw.items() if key not in invalid}
        try:
            return self.model.model_validate(kept)
        except ValidationError as e:
            logger.warning("Ignoring invalid state file %s: %s", self.path, e)
            return self.model()

    def _write(self, state: StateT) -> None:
        write_json_atomic(self.path, state.model_dump(mode="json"))

    def load(self) -> StateT:
        """Read the current document (defaults if absent)."""
        with state_lock(self.path):
            return self._read()

    def save(self, state: StateT) -> None:
        """Replace the document."""
        with state_lock(self.path):
            self._write(state)

    def ensure(self) -> StateT:
        """Create the document with defaults if it does not exist yet."""
        with state_lock(self.path):
            state = self._read()
            if not self.path.exists():
                self._write(state)
                logger.debug("Initialized state file %s", self.path)
            return state

    @contextmanager
    def update(self) -> Iterator[StateT]:
        """Lock, load, yield for mutation and write back if changed.

        An exception inside the block leaves the document untouched.

        Yields:
            Mutable state model.
        """
        with state_lock(self.path):
            state = self._read()
            before = state.model_dump()
            yield state
            if state.model_dump() != before:
                self._write(state)


__all__ = [
    "MonitorState",
    "MonthlyBuildState",
    "StateStore",
    "state_lock",
    "write_json_atomic",
]
