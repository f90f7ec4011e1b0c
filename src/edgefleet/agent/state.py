"""Persisted bootstrap state of a device."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path

from edgefleet.utils.crypto import Crypto

logger = logging.getLogger(__name__)


@dataclass
class AgentState:
    """Identity and enrollment progress, generated once and reused across restarts."""

    device_id: str
    pairing_code: str
    enrollment_token: str | None = None
    enrolled: bool = False


class StateStore:
    """Load and save AgentState as JSON in the agent's state directory."""

    def __init__(self, state_dir: str | Path) -> None:
        self._dir = Path(state_dir)
        self._path = self._dir / "state.json"

    @property
    def path(self) -> Path:
        """Location of the state file."""
        return self._path

    def load_or_create(self) -> AgentState:
        """Return the persisted state, generating a fresh identity on first run."""
        if self._path.exists():
            data = json.loads(self._path.read_text())
            return AgentState(
                device_id=str(data["device_id"]),
                pairing_code=str(data["pairing_code"]),
                enrollment_token=data.get("enrollment_token"),
                enrolled=bool(data.get("enrolled", False)),
            )
        state = AgentState(
            device_id=uuid.uuid4().hex,
            pairing_code=Crypto.generate_pairing_code(),
        )
        self.save(state)
        logger.info(
            "Generated device identity %s; pairing code is in %s",
            state.device_id, self._path,
        )
        return state

    def save(self, state: AgentState) -> None:
        """Atomically write the state file with owner-only permissions."""
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(asdict(state), indent=2))
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)
