from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

SESSION_KEY_FIELDS = ("session_key", "key", "token")


class SessionFileError(ValueError):
    """Raised when a sessions file does not hold a list of sessions."""


class SessionFileStore:
    """YAML file of session identities, written atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[str]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if payload is None:
            return []
        if isinstance(payload, dict):
            payload = payload.get("sessions")
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise SessionFileError(
                f"{self.path}: expected a list under 'sessions', got {type(payload).__name__}."
            )
        return [identity for identity in map(_session_identity, payload) if identity]

    def save(self, identities: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"sessions": [{"session_key": identity} for identity in identities]}
        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")


def _session_identity(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        for field in SESSION_KEY_FIELDS:
            value = item.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None
