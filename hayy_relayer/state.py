"""
Durable relayer state.

The state lives in a single human-readable JSON file by default. Writes go
through a temporary file and ``os.replace`` so a crash never leaves a
half-written file behind.

Only one relayer process may use a given state file (or database, see
``db.py``). Running two against the same store is undefined behaviour.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import structlog
from pydantic import ValidationError

from .models import ProcessedEvent, RelayerState

logger = structlog.get_logger()


class StateStore(Protocol):
    """Storage backend for ``RelayerState``."""

    def load(self) -> RelayerState:
        """
        Return the stored state.

        The file store falls back to the zero-state when its file is
        missing or unreadable. The database store raises instead.
        """
        ...

    def save(self, state: RelayerState) -> bool:
        """Persist the state atomically. Returns False if the write failed."""
        ...

    def close(self) -> None:
        ...


class JsonStateStore:
    """State kept in a JSON file."""

    def __init__(self, path: Path | str = "./relayer-state.json", quarantine: bool = True):
        self.path = Path(path)
        # Read-only callers leave a corrupt file where it is
        self.quarantine = quarantine

    def load(self) -> RelayerState:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("state_file_missing", path=str(self.path))
            return RelayerState()
        except UnicodeDecodeError:
            if self.quarantine:
                self._quarantine()
            logger.error("state_file_corrupt", path=str(self.path), error="not utf-8")
            return RelayerState()
        except OSError as e:
            logger.error("state_file_unreadable", path=str(self.path), error=str(e))
            return RelayerState()

        try:
            state = RelayerState.model_validate_json(raw)
        except ValidationError as e:
            if self.quarantine:
                self._quarantine()
            logger.error(
                "state_file_corrupt",
                path=str(self.path),
                errors=e.error_count(),
                error=str(e).splitlines()[0],
            )
            return RelayerState()

        logger.info(
            "state_loaded",
            path=str(self.path),
            last_processed_block=state.last_processed_block,
            processed_events=len(state.processed_events),
            address_mappings=len(state.address_mappings),
        )
        return state

    def save(self, state: RelayerState) -> bool:
        payload = state.to_json()
        directory = self.path.parent
        tmp_name: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            logger.error("state_save_failed", path=str(self.path), error=str(e))
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        return True

    def close(self) -> None:
        return None

    def _quarantine(self) -> None:
        """Move a corrupt state file aside so it can be inspected."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
            logger.warning("state_file_quarantined", path=str(target))
        except OSError as e:
            logger.error("state_file_quarantine_failed", path=str(self.path), error=str(e))


# State helpers. Callers hold the context lock.


def is_event_processed(state: RelayerState, event_id: str) -> bool:
    return event_id in state.processed_events


def mark_event_processed(state: RelayerState, event: ProcessedEvent) -> None:
    state.processed_events[event.event_id] = event


def clear_event(state: RelayerState, event_id: str) -> Optional[ProcessedEvent]:
    """Remove a ledger entry so the event is dispatched again."""
    return state.processed_events.pop(event_id, None)


def add_address_mapping(state: RelayerState, principal: str, destination: str) -> None:
    state.address_mappings[principal] = destination


def get_destination_address(state: RelayerState, principal: str) -> Optional[str]:
    return state.address_mappings.get(principal)


def advance_cursor(state: RelayerState, block_height: int) -> bool:
    """Move ``last_processed_block`` forward. Returns True if it moved."""
    if block_height > state.last_processed_block:
        state.last_processed_block = block_height
        return True
    return False
