"""Tests for execution contexts and command wrapping."""

from __future__ import annotations

import pytest

from fleetrun.core.context import Context, Host, context


def test_plain_command_is_unchanged() -> None:
    assert Context().build("uptime") == "uptime"


def test_path_and_env_wrapping() -> None:
    ctx = Context(path="/srv/app", env={"RELEASE": "42"})
    assert ctx.build("make install") == "cd /srv/app && (export RELEASE=42 && make install)"


def test_full_wrapping_order() -> None:
    ctx = Context(path="/srv/my app", user="deploy", group="www", umask="022", env={"A": "x y"})

    assert ctx.build("echo $A") == (
        "cd '/srv/my app' && umask 022 && "
        "(export A='x y' && sudo -H -n -u deploy -g www -- sh -c 'echo $A')"
    )


def test_group_only_uses_sudo() -> None:
    assert Context(group="adm").build("id") == "sudo -H -n -g adm -- sh -c id"


def test_with_methods_do_not_mutate() -> None:
    base = Context(hosts=("a",), env={"A": "1"})

    derived = base.with_path("/tmp").with_user("root").with_group("g").with_umask(0o027).with_env({"B": "2"})

    assert base.path is None and base.user is None and base.umask is None
    assert dict(base.env) == {"A": "1"}
    assert derived.path == "/tmp"
    assert derived.user == "root"
    assert derived.group == "g"
    assert derived.umask == "027"
    assert dict(derived.env) == {"A": "1", "B": "2"}
    assert derived.hosts == base.hosts


def test_with_hosts_replaces_targets() -> None:
    ctx = context(["a"]).with_hosts(["b", Host("c", 2222)])
    assert [str(h) for h in ctx.hosts] == ["b", "c:2222"]


def test_env_later_value_wins() -> None:
    ctx = Context(env={"A": "1"}).with_env({"A": "2"})
    assert ctx.build("true") == "(export A=2 && true)"


def test_env_values_are_quoted() -> None:
    ctx = Context(env={"MSG": "it's $HOME"})
    assert ctx.build("true") == "(export MSG='it'\"'\"'s $HOME' && true)"


@pytest.mark.parametrize("name", ["1BAD", "WITH-DASH", "A B", ""])
def test_invalid_env_names_are_rejected(name: str) -> None:
    with pytest.raises(ValueError):
        Context(env={name: "x"})


@pytest.mark.parametrize("umask", ["abc", "8", "0999", "12345"])
def test_invalid_umask_is_rejected(umask: str) -> None:
    with pytest.raises(ValueError):
        Context(umask=umask)


def test_duplicate_hosts_are_rejected() -> None:
    with pytest.raises(ValueError):
        context(["web1", "web1:22"])


def test_same_address_different_port_is_distinct() -> None:
    ctx = context(["web1", "web1:2222"])
    assert len(ctx.hosts) == 2


def test_host_overrides_apply_to_that_host_only() -> None:
    special = Host("db1", options={"path": "/var/lib", "env": {"ROLE": "db"}})
    ctx = context(["web1", special], path="/srv", env={"ROLE": "web", "TZ": "UTC"})

    assert ctx.build("ls", ctx.hosts[0]) == "cd /srv && (export ROLE=web TZ=UTC && ls)"
    assert ctx.build("ls", special) == "cd /var/lib && (export ROLE=db TZ=UTC && ls)"


def test_host_rejects_unknown_options() -> None:
    with pytest.raises(ValueError):
        Host("web1", options={"shell": "zsh"})


def test_host_options_are_read_only() -> None:
    host = Host("web1", options={"path": "/srv"})
    with pytest.raises(TypeError):
        host.options["path"] = "/tmp"


@pytest.mark.parametrize("spec, address, port, username", [
    ("web1", "web1", 22, None),
    ("web1:2222", "web1", 2222, None),
    ("deploy@web1", "web1", 22, "deploy"),
    ("deploy@10.0.0.5:2200", "10.0.0.5", 2200, "deploy"),
    ("[::1]:2022", "::1", 2022, None),
])
def test_host_parse(spec: str, address: str, port: int, username) -> None:
    host = Host.parse(spec)
    assert (host.address, host.port, host.options.get("username")) == (address, port, username)


def test_host_parse_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        Host.parse("")


def test_host_invalid_option_values_fail_context() -> None:
    with pytest.raises(ValueError):
        context([Host("web1", options={"umask": "bad"})])
