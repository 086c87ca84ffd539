from __future__ import annotations
import json
from pathlib import Path
from datetime import datetime, timezone


def append_event(path: str, event: dict) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    event = {"ts": datetime.now(timezone.utc).isoformat(), **event}
    with p.open("a") as f:
        f.write(json.dumps(event, default=str) + "\n")


def read_events(path: str) -> list[dict]:
    p = Path(path)
    if not p.exists():
        return []
    return [json.loads(line) for line in p.read_text().splitlines() if line.strip()]
