"""Transfer state persistence.

The orchestrator checkpoints a :py:class:`~triggvest.cctp.state.TransferState`
after every submission and every confirmed step. Stores hand out copies,
so a caller inspecting a transfer can never mutate the live record.

- :py:class:`InMemoryTransferStatusStore` for tests and one-shot scripts
- :py:class:`JSONFileTransferStatusStore` survives restarts, so pending
  transfers can be resumed by a later process
"""

import json
import logging
import os
import threading
from pathlib import Path

from triggvest.cctp.state import TransferState
from triggvest.utils import wait_other_writers

logger = logging.getLogger(__name__)


def copy_state(state: TransferState) -> TransferState:
    return TransferState.from_dict(state.to_dict())


class TransferStatusStore:
    """Persistence of transfer states keyed by correlation id.

    Implementations must be thread safe.
    """

    def get(self, correlation_id: str) -> TransferState | None:
        """Copy of the stored state, or ``None``."""
        raise NotImplementedError()

    def save(self, state: TransferState):
        """Insert or replace the state of a transfer."""
        raise NotImplementedError()

    def create(self, state: TransferState) -> tuple[TransferState, bool]:
        """Store a new transfer unless the correlation id is already taken.

        :return:
            Tuple (stored state, created). When the id exists the
            existing state is returned and nothing is written.
        """
        raise NotImplementedError()

    def list(self, include_terminal: bool = False) -> list[TransferState]:
        """All transfers, oldest first."""
        raise NotImplementedError()


class InMemoryTransferStatusStore(TransferStatusStore):
    """Process local store."""

    def __init__(self):
        self._states: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, correlation_id: str) -> TransferState | None:
        with self._lock:
            data = self._states.get(correlation_id)
        return TransferState.from_dict(data) if data else None

    def save(self, state: TransferState):
        data = state.to_dict()
        with self._lock:
            self._states[state.correlation_id] = data

    def create(self, state: TransferState) -> tuple[TransferState, bool]:
        with self._lock:
            existing = self._states.get(state.correlation_id)
            if existing is None:
                self._states[state.correlation_id] = state.to_dict()
                return copy_state(state), True
        return TransferState.from_dict(existing), False

    def list(self, include_terminal: bool = False) -> list[TransferState]:
        with self._lock:
            values = list(self._states.values())
        states = [TransferState.from_dict(v) for v in values]
        if not include_terminal:
            states = [s for s in states if not s.phase.is_terminal]
        return sorted(states, key=lambda s: s.created_at)

    def __len__(self):
        return len(self._states)


class JSONFileTransferStatusStore(TransferStatusStore):
    """All transfers in one JSON file.

    Writes are atomic (temp file + rename) and guarded by a lock file,
    so several processes can share the file.
    """

    def __init__(self, path: Path, lock_timeout: int = 120):
        """
        :param path:
            Absolute path of the JSON file. Created on the first write.
        """
        assert isinstance(path, Path), f"Not a Path: {path}"
        assert path.is_absolute(), f"Use an absolute state file path: {path}"
        self.path = path
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<JSONFileTransferStatusStore {self.path}>"

    def _read(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        with self.path.open("rt") as inp:
            data = json.load(inp)
        assert isinstance(data, dict), f"Corrupted state file {self.path}"
        return data.get("transfers", {})

    def _write(self, transfers: dict[str, dict]):
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("wt") as out:
            json.dump({"transfers": transfers}, out, indent=2)
        os.replace(tmp, self.path)

    def get(self, correlation_id: str) -> TransferState | None:
        with self._lock, wait_other_writers(self.path, timeout=self.lock_timeout):
            data = self._read().get(correlation_id)
        return TransferState.from_dict(data) if data else None

    def save(self, state: TransferState):
        with self._lock, wait_other_writers(self.path, timeout=self.lock_timeout):
            transfers = self._read()
            transfers[state.correlation_id] = state.to_dict()
            self._write(transfers)
        logger.debug("Saved transfer %s at phase %s to %s", state.correlation_id, state.phase.value, self.path)

    def create(self, state: TransferState) -> tuple[TransferState, bool]:
        with self._lock, wait_other_writers(self.path, timeout=self.lock_timeout):
            transfers = self._read()
            existing = transfers.get(state.correlation_id)
            if existing is None:
                transfers[state.correlation_id] = state.to_dict()
                self._write(transfers)
                return copy_state(state), True
        return TransferState.from_dict(existing), False

    def list(self, include_terminal: bool = False) -> list[TransferState]:
        with self._lock, wait_other_writers(self.path, timeout=self.lock_timeout):
            values = list(self._read().values())
        states = [TransferState.from_dict(v) for v in values]
        if not include_terminal:
            states = [s for s in states if not s.phase.is_terminal]
        return sorted(states, key=lambda s: s.created_at)


def create_transfer_status_store(state_file: Path | None) -> TransferStatusStore:
    """JSON file store when a path is configured, in-memory otherwise."""
    if state_file is None:
        return InMemoryTransferStatusStore()
    return JSONFileTransferStatusStore(state_file)
