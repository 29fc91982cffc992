"""
portfolio-signals Infrastructure: Position Store

Persistent position state with atomic writes.

The store is the only resource shared between service instances; writes are
coordinated by the distributed job lock, and every write goes through a
temp file + rename so readers never observe a partial file.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import logging

from core.models import Action, Position, SignalColor

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "positions": {},  # position_id -> Position.to_dict()
    "portfolio_metrics": {},  # "<user_id>:<portfolio_id>" -> metrics dict
    "updated_at": None,
}

_ENUM_FIELDS = {"action": Action, "color": SignalColor}


class PositionStore:
    """
    JSON-file position storage.

    Features:
    - Atomic writes (temp file + rename)
    - Thread-safe read-modify-write
    - Per-user symbol lookups for batched quote fetches
    """

    def __init__(self, state_file: Optional[str] = None):
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("POSITIONS_FILE", "data/positions.json"))

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        logger.info("Initialized PositionStore at %s", self.state_file)

    # ------------------------------------------------------------------
    # Raw state
    # ------------------------------------------------------------------

    def load(self) -> Dict[str, Any]:
        with self._lock:
            if not self.state_file.exists():
                logger.debug("No positions file found, using defaults")
                return json.loads(json.dumps(DEFAULT_STATE))

            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)

            if not isinstance(data, dict):
                raise ValueError(f"Invalid positions file format: {self.state_file}")
            return {**json.loads(json.dumps(DEFAULT_STATE)), **data}

    def save(self, state: Dict[str, Any]) -> None:
        with self._lock:
            state["updated_at"] = datetime.now(timezone.utc).isoformat()
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".positions_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                os.replace(temp_path, self.state_file)
            except Exception:
                logger.error("Failed to save positions to %s", self.state_file, exc_info=True)
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            logger.debug("Saved %d positions", len(state.get("positions", {})))

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def add_position(self, position: Position) -> Position:
        with self._lock:
            state = self.load()
            state["positions"][position.position_id] = position.to_dict()
            self.save(state)
        return position

    def get_position(self, position_id: str) -> Optional[Position]:
        raw = self.load()["positions"].get(position_id)
        return Position.from_dict(raw) if raw else None

    def remove_position(self, position_id: str) -> bool:
        with self._lock:
            state = self.load()
            if state["positions"].pop(position_id, None) is None:
                return False
            self.save(state)
        return True

    def list_positions(self, user_id: Optional[str] = None, portfolio_id: Optional[str] = None) -> List[Position]:
        positions = [Position.from_dict(raw) for raw in self.load()["positions"].values()]
        if user_id is not None:
            positions = [p for p in positions if p.user_id == user_id]
        if portfolio_id is not None:
            positions = [p for p in positions if p.portfolio_id == portfolio_id]
        return sorted(positions, key=lambda p: (p.user_id, p.portfolio_id, p.ticker, p.position_id))

    def user_ids(self) -> List[str]:
        return sorted({p.user_id for p in self.list_positions()})

    def user_symbols(self, user_id: str) -> List[str]:
        return sorted({p.ticker for p in self.list_positions(user_id=user_id)})

    def all_symbols(self) -> List[str]:
        return sorted({p.ticker for p in self.list_positions()})

    def update_position(self, position_id: str, **fields: Any) -> Position:
        """
        Overwrite selected fields on one position.

        Raises:
            KeyError: unknown position id
        """
        return self.update_positions({position_id: fields})[0]

    def update_positions(self, updates: Dict[str, Dict[str, Any]]) -> List[Position]:
        """Apply several field updates with a single write."""
        if not updates:
            return []
        with self._lock:
            state = self.load()
            updated: List[Position] = []
            for position_id, fields in updates.items():
                raw = state["positions"].get(position_id)
                if raw is None:
                    raise KeyError(f"Unknown position: {position_id}")
                for name, value in fields.items():
                    if name in _ENUM_FIELDS and not isinstance(value, str):
                        value = value.value
                    raw[name] = value
                updated.append(Position.from_dict(raw))
            self.save(state)
        return updated

    # ------------------------------------------------------------------
    # Portfolio metrics
    # ------------------------------------------------------------------

    @staticmethod
    def _portfolio_key(user_id: str, portfolio_id: str) -> str:
        return f"{user_id}:{portfolio_id}"

    def save_portfolio_metrics(self, user_id: str, portfolio_id: str, metrics: Dict[str, Any]) -> None:
        with self._lock:
            state = self.load()
            state["portfolio_metrics"][self._portfolio_key(user_id, portfolio_id)] = {
                **metrics,
                "computed_at": datetime.now(timezone.utc).isoformat(),
            }
            self.save(state)

    def get_portfolio_metrics(self, user_id: str, portfolio_id: str) -> Optional[Dict[str, Any]]:
        return self.load()["portfolio_metrics"].get(self._portfolio_key(user_id, portfolio_id))

    def import_positions(self, positions: Iterable[Position]) -> int:
        with self._lock:
            state = self.load()
            count = 0
            for position in positions:
                state["positions"][position.position_id] = position.to_dict()
                count += 1
            self.save(state)
        return count
