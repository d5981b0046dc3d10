"""JSON state file with versioned, conflict-checked writes."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import os
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from driftwood.core.errors import StateConflictError, ValidationError
from driftwood.state.models import STATE_VERSION, State, StateRecord

logger = structlog.get_logger()

DEFAULT_STATE_PATH = Path("driftwood.state.json")


def _digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class StateStore:
    """Owns the state for one run.

    Every write bumps ``serial`` and is checked against the digest of the
    file as last read or written; if another run changed the file in between,
    the write fails with StateConflictError instead of overwriting it.
    ``path=None`` keeps the state in memory only.
    """

    def __init__(self, path: Optional[Path] = DEFAULT_STATE_PATH) -> None:
        self._path = Path(path) if path is not None else None
        self._state = State()
        self._digest: Optional[str] = None
        self._write_lock = asyncio.Lock()
        self._entry_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def serial(self) -> int:
        return self._state.serial

    @property
    def lineage(self) -> str:
        return self._state.lineage

    def load(self) -> State:
        """Read the state file; a missing file is an empty state."""
        if self._path is None or not self._path.exists():
            self._digest = None
            return self.snapshot()

        payload = self._path.read_bytes()
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"State file is not valid JSON: {self._path}") from exc
        version = int(data.get("version", STATE_VERSION))
        if version > STATE_VERSION:
            raise ValidationError(
                f"State file version {version} is newer than supported ({STATE_VERSION})"
            )
        self._state = State.from_dict(data)
        self._digest = _digest(payload)
        logger.debug(
            "state_loaded",
            path=str(self._path),
            serial=self._state.serial,
            records=len(self._state.records),
        )
        return self.snapshot()

    def snapshot(self) -> State:
        """Deep copy of the current state, safe to hand to the planner."""
        return copy.deepcopy(self._state)

    def get(self, address: str) -> Optional[StateRecord]:
        record = self._state.records.get(address)
        return copy.deepcopy(record) if record is not None else None

    def lock(self, address: str) -> asyncio.Lock:
        """Exclusive lock for writes to one record."""
        return self._entry_locks[address]

    def verify(self, serial: int, lineage: str) -> None:
        """Fail if the state moved on since a plan was computed from it."""
        if serial == 0 and self._state.serial == 0 and not self._state.records:
            # Never written: adopt the lineage the plan was made against
            if lineage:
                self._state.lineage = lineage
            return
        if lineage != self._state.lineage or serial != self._state.serial:
            raise StateConflictError(
                "Plan is stale: state changed since it was planned",
                {
                    "planned_serial": serial,
                    "current_serial": self._state.serial,
                },
            )

    async def put(self, *records: StateRecord) -> None:
        """Persist ``records`` in a single write."""
        async with self._write_lock:
            self._check_conflict()
            for record in records:
                self._state.records[record.address] = copy.deepcopy(record)
            self._write()
        for record in records:
            logger.debug("state_persisted", address=record.address, serial=self._state.serial)

    async def remove(self, address: str) -> None:
        async with self._write_lock:
            self._check_conflict()
            if self._state.records.pop(address, None) is None:
                return
            self._write()
        logger.debug("state_record_removed", address=address, serial=self._state.serial)

    async def set_outputs(self, outputs: Dict[str, Dict[str, Any]]) -> None:
        async with self._write_lock:
            self._check_conflict()
            if outputs == self._state.outputs:
                return
            self._state.outputs = copy.deepcopy(outputs)
            self._write()

    def _check_conflict(self) -> None:
        if self._path is None:
            return
        if self._path.exists():
            current = _digest(self._path.read_bytes())
            if current != self._digest:
                raise StateConflictError(
                    "State file was modified by another run",
                    {"path": str(self._path)},
                )
        elif self._digest is not None:
            raise StateConflictError(
                "State file was removed by another run",
                {"path": str(self._path)},
            )

    def _write(self) -> None:
        self._state.serial += 1
        if self._path is None:
            return
        payload = (json.dumps(self._state.to_dict(), indent=2, sort_keys=True) + "\n").encode()
        directory = self._path.parent if str(self._path.parent) else Path(".")
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        self._digest = _digest(payload)
