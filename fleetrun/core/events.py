"""
Run journal for fleetrun.
Append-only JSONL record of pipeline lifecycle events, safe for concurrent
writers (one per host).
"""

import json
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


class EventType(str, Enum):
    # Pipeline lifecycle
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_COMPLETED = "pipeline_completed"

    # Host lifecycle
    HOST_STARTED = "host_started"
    HOST_COMPLETED = "host_completed"
    HOST_FAILED = "host_failed"

    # Connection
    CONNECTION_ESTABLISHED = "connection_established"
    CONNECTION_RETRY = "connection_retry"
    CONNECTION_FAILED = "connection_failed"

    # Tasks
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


@dataclass(frozen=True)
class Event:
    """One journal line."""
    seq: int
    timestamp: str
    event_type: str
    data: Dict[str, Any]

    @property
    def host(self) -> Optional[str]:
        return self.data.get('host')

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, line: str) -> 'Event':
        d = json.loads(line)
        return cls(d['seq'], d['timestamp'], d['event_type'], d.get('data') or {})


class EventStream:
    """
    JSONL journal of one or more pipeline runs. Sequence numbers keep
    increasing across runs appended to the same file.
    """

    def __init__(self, filepath: str):
        self.filepath = filepath
        self._lock = threading.Lock()
        last = None
        for last in self.iter_events():
            pass
        self._seq = last.seq if last is not None else 0

    def append(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> Event:
        with self._lock:
            self._seq += 1
            event = Event(
                seq=self._seq,
                timestamp=datetime.now(timezone.utc).isoformat(),
                event_type=EventType(event_type).value,
                data=dict(data or {}),
            )
            with open(self.filepath, 'a', encoding='utf-8') as f:
                f.write(event.to_json() + '\n')
                f.flush()
                os.fsync(f.fileno())
            return event

    def iter_events(self, after_seq: int = 0) -> Iterator[Event]:
        if not os.path.exists(self.filepath):
            return
        with open(self.filepath, 'r', encoding='utf-8') as f:
            for line in f:
                if not line.strip():
                    continue
                event = Event.from_json(line)
                if event.seq > after_seq:
                    yield event

    def events(self, event_type: Optional[EventType] = None,
               host: Optional[str] = None) -> List[Event]:
        """Journal entries, optionally narrowed to one type and/or one host."""
        selected = []
        for event in self.iter_events():
            if event_type is not None and event.event_type != EventType(event_type).value:
                continue
            if host is not None and event.host != host:
                continue
            selected.append(event)
        return selected

    def last(self, event_type: Optional[EventType] = None) -> Optional[Event]:
        events = self.events(event_type)
        return events[-1] if events else None

    @property
    def current_seq(self) -> int:
        return self._seq
