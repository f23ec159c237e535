"""Shared helpers for persisting session exports."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from screenpilot.src.agent.history import SessionHistory


def _sessions_root() -> Path:
    return Path.home() / ".screenpilot" / "sessions"


def resolve_session_path(session_id: str | Path, root: Path | None = None) -> Path:
    if not session_id:
        raise ValueError("session id/path is required")

    candidate = Path(session_id)
    if candidate.suffix == ".json" or candidate.is_absolute() or candidate.exists():
        return candidate

    return (root or _sessions_root()) / f"{candidate}.json"


def write_session(session: SessionHistory, root: Path | None = None, include_screenshots: bool = False) -> Path:
    target = (root or _sessions_root()) / f"{session.session_id}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        json.dump(session.to_dict(include_screenshots), handle, ensure_ascii=False, indent=2)
    return target


def load_session(session_id_or_path: str | Path, root: Path | None = None) -> Dict[str, Any]:
    path = resolve_session_path(session_id_or_path, root)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Session export not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid session JSON: {path}") from exc

    if not isinstance(data, dict) or "session_id" not in data:
        raise ValueError(f"Session payload is invalid: {path}")
    return data
