"""Runtime trace log and the JSONL provenance logbook."""

from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
import threading
from typing import Any, Callable, Optional

from ..constants import EFFECT_GRADES, LOGBOOK_FILE


class RuntimeLog:
    """Append-only trace of runtime events (``send:actor_0:msg3`` style)."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._entries: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: str) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries.append(entry)

    def mark(self) -> int:
        with self._lock:
            return len(self._entries)

    def since(self, mark: int) -> list[str]:
        with self._lock:
            return list(self._entries[mark:])

    @property
    def entries(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return self.mark()


class Effect:
    """Graded result of a runtime operation together with its trace."""

    def __init__(self, grade: str, value: Any, log: Optional[list[str]] = None):
        if grade not in EFFECT_GRADES:
            raise ValueError(f"Unknown effect grade: {grade}")
        self.grade = grade
        self.value = value
        self.log = log or []

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Effect {self.grade} log={len(self.log)}>"

    def bind(self, fn: Callable[[Any], "Effect"]) -> "Effect":
        out = fn(self.value)
        new_idx = max(EFFECT_GRADES.index(self.grade), EFFECT_GRADES.index(out.grade))
        return Effect(EFFECT_GRADES[new_idx], out.value, self.log + out.log)


def hash_log(entries) -> str:
    payload = json.dumps(list(entries), separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def record_run(effect: Effect, logbook_path=LOGBOOK_FILE, *, label=None):
    """Append a summary of a scheduler run to the logbook."""

    stats = effect.value if isinstance(effect.value, dict) else {}
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "label": label,
        "grade": effect.grade,
        "hash": hash_log(effect.log),
        "steps": stats.get("steps", 0),
        "completed": stats.get("completed", 0),
        "faulted": stats.get("faulted", 0),
        "log_length": len(effect.log),
        "first_log": effect.log[0] if effect.log else None,
        "last_log": effect.log[-1] if effect.log else None,
    }
    with open(logbook_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry) + "\n")
    return entry


def load_logbook(logbook_path=LOGBOOK_FILE, limit: int | None = None) -> list[dict]:
    try:
        with open(logbook_path, "r", encoding="utf-8") as f:
            lines = [line for line in f.readlines() if line.strip()]
    except FileNotFoundError:
        return []
    if limit is not None:
        lines = lines[-limit:]
    return [json.loads(line) for line in lines]


def show_logbook(logbook_path=LOGBOOK_FILE, limit=10):
    """Display recent logbook entries."""

    entries = load_logbook(logbook_path, limit)
    if not entries:
        print("No logbook yet.")
        return
    print(f"\nAnimikii Logbook — last {len(entries)} entries:")
    for e in reversed(entries):
        label = e.get("label") or "run"
        print(
            f"• {e['timestamp']}  {label}  steps={e['steps']} faulted={e['faulted']}  {e['hash'][:12]}…"
        )
        if e["first_log"] and e["last_log"]:
            print(f"    log: {e['first_log']} → {e['last_log']}")


__all__ = [
    "Effect",
    "RuntimeLog",
    "hash_log",
    "load_logbook",
    "record_run",
    "show_logbook",
]
