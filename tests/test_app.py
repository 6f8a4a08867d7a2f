"""Tests for the fleetrun command line."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import pytest
from loguru import logger

from fakes import CommandRemote, FakeConnection
from fleetrun import app
from fleetrun.core.orchestrator import Orchestrator

PROFILE = """
hosts: [web1, web2]
tasks:
  - run: deploy {release}
"""


@pytest.fixture
def profiles(tmp_path: Path) -> Path:
    directory = tmp_path / "profiles"
    directory.mkdir()
    (directory / "deploy.yaml").write_text(PROFILE)
    return directory


@pytest.fixture
def fleet(monkeypatch):
    """Route the CLI's orchestrator through fake connections."""
    commands = []

    def connector(address, auth, timeout=None, port=22, cancel_event=None):
        def handler(command):
            commands.append((address, command))
            return CommandRemote(code=1 if address == "web2" and "broken" in command else 0)
        return FakeConnection(address, handler, cancel_event)

    monkeypatch.setattr(app, "Orchestrator", lambda **kwargs: Orchestrator(connector=connector, **kwargs))
    yield commands
    # main() installs sinks bound to the captured stderr
    logger.remove()
    logger.disable("fleetrun")


def test_parse_params() -> None:
    assert app.parse_params(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}
    assert app.parse_params(None) == {}
    with pytest.raises(argparse.ArgumentTypeError):
        app.parse_params(["novalue"])


def test_run_profile_success(profiles: Path, fleet, capsys) -> None:
    code = app.main(["deploy", "--profiles-dir", str(profiles), "--param", "release=v3"])

    assert code == 0
    assert sorted(fleet) == [("web1", "deploy v3"), ("web2", "deploy v3")]
    assert capsys.readouterr().out.splitlines() == ["web1: ok", "web2: ok"]


def test_failed_host_exits_one(profiles: Path, fleet, capsys) -> None:
    code = app.main(["deploy", "--profiles-dir", str(profiles), "--param", "release=broken"])

    assert code == 1
    assert "web2: failed at task 0" in capsys.readouterr().out


def test_missing_param_exits_two(profiles: Path, fleet, capsys) -> None:
    assert app.main(["deploy", "--profiles-dir", str(profiles)]) == 2
    assert "missing --param for: release" in capsys.readouterr().err
    assert fleet == []


def test_unknown_profile_exits_two(profiles: Path, fleet, capsys) -> None:
    assert app.main(["nope", "--profiles-dir", str(profiles)]) == 2
    assert "available: deploy" in capsys.readouterr().err


def test_invalid_profile_exits_two(profiles: Path, fleet, capsys) -> None:
    (profiles / "bad.yaml").write_text("hosts: [a]\ntasks:\n  - shell: ls\n")
    assert app.main(["bad", "--profiles-dir", str(profiles)]) == 2
    assert "fleetrun:" in capsys.readouterr().err


def test_journal_option_writes_jsonl(profiles: Path, fleet, tmp_path: Path) -> None:
    journal = tmp_path / "run.jsonl"
    app.main(["deploy", "--profiles-dir", str(profiles), "--param", "release=v1",
              "--journal", str(journal), "--max-parallel", "1"])

    events = [json.loads(line) for line in journal.read_text().splitlines()]
    assert events[0]["event_type"] == "pipeline_started"
    assert events[-1]["event_type"] == "pipeline_completed"
    assert events[-1]["data"]["ok"] is True
