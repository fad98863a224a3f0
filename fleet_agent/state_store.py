from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .models import RegisteredOperator, Session, parse_operator, parse_session


logger = logging.getLogger("fleetwatch.state")

OPERATOR_KEY = "operator"
SESSION_KEY = "session"


class StateStore:
    """Keyed JSON records that survive a process restart.

    Each key is its own file under `root`; removing one key never touches
    another. Unreadable or malformed records load as absent.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def read(self, key: str) -> Optional[Mapping[str, Any]]:
        p = self._path(key)
        try:
            raw = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("failed to read %s: %r", p, exc)
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("discarding malformed record %s", p)
            return None
        if not isinstance(data, dict):
            return None
        return data

    def write(self, key: str, value: Mapping[str, Any]) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(value, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(p)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    # Typed accessors

    def load_operator(self) -> Optional[RegisteredOperator]:
        data = self.read(OPERATOR_KEY)
        if data is None:
            return None
        try:
            return parse_operator(data)
        except ValueError as exc:
            logger.warning("ignoring invalid operator record: %s", exc)
            return None

    def save_operator(self, operator: RegisteredOperator) -> None:
        self.write(OPERATOR_KEY, operator.to_dict())

    def remove_operator(self) -> None:
        self.remove(OPERATOR_KEY)

    def load_session(self) -> Optional[Session]:
        data = self.read(SESSION_KEY)
        if data is None:
            return None
        try:
            return parse_session(data)
        except ValueError as exc:
            logger.warning("ignoring invalid session record: %s", exc)
            return None

    def save_session(self, session: Session) -> None:
        self.write(SESSION_KEY, session.to_dict())

    def remove_session(self) -> None:
        self.remove(SESSION_KEY)
