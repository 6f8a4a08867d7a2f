"""Tests for the JSONL run journal and logging setup."""

from __future__ import annotations

import threading
from pathlib import Path

from loguru import logger

from fleetrun.core.errors import ChannelError, ChannelErrorKind
from fleetrun.core.events import Event, EventStream, EventType
from fleetrun.core.log import LogConfig, configure_logging, reset_logging


def test_append_and_read_back(tmp_path: Path) -> None:
    stream = EventStream(str(tmp_path / "j.jsonl"))

    first = stream.append(EventType.HOST_STARTED, {"host": "web1"})
    stream.append(EventType.HOST_FAILED, {"host": "web1", "reason": ChannelError(ChannelErrorKind.TIMEOUT, "t")})

    events = stream.events()
    assert [e.seq for e in events] == [1, 2]
    assert events[0] == first
    assert events[1].data["reason"] == "timeout: t"
    assert stream.last(EventType.HOST_STARTED).host == "web1"


def test_sequence_continues_across_instances(tmp_path: Path) -> None:
    path = str(tmp_path / "j.jsonl")
    EventStream(path).append(EventType.PIPELINE_STARTED)
    EventStream(path).append(EventType.PIPELINE_COMPLETED)

    assert [e.seq for e in EventStream(path).events()] == [1, 2]
    assert [e.seq for e in EventStream(path).iter_events(after_seq=1)] == [2]


def test_concurrent_appends_keep_unique_sequence(tmp_path: Path) -> None:
    stream = EventStream(str(tmp_path / "j.jsonl"))

    def write(host):
        for _ in range(20):
            stream.append(EventType.TASK_COMPLETED, {"host": host})

    threads = [threading.Thread(target=write, args=(f"h{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    seqs = [e.seq for e in stream.events()]
    assert sorted(seqs) == list(range(1, 81))
    assert len(stream.events(host="h2")) == 20


def test_event_json_round_trip() -> None:
    event = Event(3, "2024-01-01T00:00:00+00:00", "task_started", {"host": "a", "index": 0})
    assert Event.from_json(event.to_json()) == event


def test_missing_journal_reads_empty(tmp_path: Path) -> None:
    stream = EventStream(str(tmp_path / "none.jsonl"))
    assert stream.events() == []
    assert stream.last() is None
    assert stream.current_seq == 0


def test_configure_logging_writes_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "fleetrun.log"
    handler_ids = configure_logging(LogConfig(level="ERROR", file=str(log_file), console=False))
    try:
        logger.debug("hello from tests")
    finally:
        reset_logging(handler_ids)

    assert "hello from tests" in log_file.read_text()
