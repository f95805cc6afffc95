from __future__ import annotations

import hashlib
import json
import os
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, Optional

import deal

from infra.time_utils import now_iso

EVENT_TYPES = ("initialize", "deposit", "withdraw")


@dataclass(frozen=True)
class CustodyEvent:
    event_type: str
    timestamp: str
    actor: str
    data: Dict[str, Any]
    prev_hash: Optional[str]
    hash: str


def _sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _canonical(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _payload(event_type: str, timestamp: str, actor: str, data: Dict[str, Any], prev_hash: Optional[str]) -> Dict[str, Any]:
    return {
        "event_type": event_type,
        "timestamp": timestamp,
        "actor": actor,
        "data": data,
        "prev_hash": prev_hash,
    }


class CustodyJournal:
    """
    Append-only NDJSON of committed custody operations, hash chained.
    Written after commit: a rejected operation never shows up here.
    """

    def __init__(self, path: str = "data/vault/journal.ndjson") -> None:
        self.path = path
        d = os.path.dirname(path)
        if d:
            os.makedirs(d, exist_ok=True)
        self._lock = threading.Lock()
        self._tail: Optional[str] = None
        self._tail_loaded = False

    @deal.pre(lambda self, event_type, actor, data: event_type in EVENT_TYPES, message="unknown event_type")
    @deal.pre(lambda self, event_type, actor, data: isinstance(actor, str) and actor.strip() != "", message="actor required")
    @deal.post(lambda result: isinstance(result, CustodyEvent))
    def append(self, event_type: str, actor: str, data: Dict[str, Any]) -> CustodyEvent:
        with self._lock:
            payload = _payload(event_type, now_iso(), actor, data, self._last_hash())
            evt = CustodyEvent(hash=_sha256(_canonical(payload)), **payload)
            with open(self.path, "a", encoding="utf-8", newline="\n") as f:
                f.write(_canonical(asdict(evt)) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._tail = evt.hash
        return evt

    def events(self) -> Iterator[CustodyEvent]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for n, raw in enumerate(f, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield CustodyEvent(**json.loads(raw))
                except (json.JSONDecodeError, TypeError) as exc:
                    raise ValueError(f"JOURNAL_CORRUPT_LINE_{n}") from exc

    def verify(self) -> bool:
        prev: Optional[str] = None
        try:
            for evt in self.events():
                if evt.prev_hash != prev:
                    return False
                payload = _payload(evt.event_type, evt.timestamp, evt.actor, evt.data, evt.prev_hash)
                if _sha256(_canonical(payload)) != evt.hash:
                    return False
                prev = evt.hash
        except ValueError:
            return False
        return True

    def _last_hash(self) -> Optional[str]:
        # full scan once per instance; appends keep the tail current
        if not self._tail_loaded:
            for evt in self.events():
                self._tail = evt.hash
            self._tail_loaded = True
        return self._tail
