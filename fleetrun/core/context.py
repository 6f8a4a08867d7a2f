"""
Execution contexts for fleetrun.
A Context names the target hosts and the defaults (path, user, group, umask,
environment) every command is wrapped with. Building one never performs I/O.
"""

import re
import shlex
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

ENV_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
UMASK_RE = re.compile(r'^[0-7]{3,4}$')
HOST_RE = re.compile(r'^(?:(?P<user>[^@]+)@)?(?P<address>\[[^\]]+\]|[^:]+)(?::(?P<port>\d+))?$')

SETTING_KEYS = ('path', 'user', 'group', 'umask', 'env')


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Host:
    """
    A target host. `options` override the Context defaults for this host
    (path, user, group, umask, env) and may carry a login `username`.
    """
    address: str
    port: int = 22
    options: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, 'options', _freeze(self.options))
        unknown = set(self.options) - set(SETTING_KEYS) - {'username'}
        if unknown:
            raise ValueError(f"unknown host options for {self.address}: {sorted(unknown)}")

    @classmethod
    def parse(cls, spec: str, **options) -> 'Host':
        """Parse `[user@]address[:port]`."""
        match = HOST_RE.match(spec.strip())
        if not match:
            raise ValueError(f"invalid host: {spec!r}")
        address = match.group('address').strip('[]')
        port = int(match.group('port') or 22)
        if match.group('user'):
            options.setdefault('username', match.group('user'))
        return cls(address, port, options)

    def __str__(self):
        return self.address if self.port == 22 else f"{self.address}:{self.port}"


HostLike = Union[Host, str]


@dataclass(frozen=True)
class Settings:
    """Effective execution settings for one host."""
    path: Optional[str] = None
    user: Optional[str] = None
    group: Optional[str] = None
    umask: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Context:
    """Immutable description of target hosts plus shared execution defaults."""
    hosts: Tuple[Host, ...] = ()
    path: Optional[str] = None
    user: Optional[str] = None
    group: Optional[str] = None
    umask: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        hosts = tuple(_as_host(h) for h in self.hosts)
        if len(set(hosts)) != len(hosts):
            raise ValueError("duplicate hosts in context")
        object.__setattr__(self, 'hosts', hosts)
        object.__setattr__(self, 'env', _freeze(_check_env(self.env)))
        if self.umask is not None:
            object.__setattr__(self, 'umask', _check_umask(self.umask))
        for host in hosts:
            _check_env(host.options.get('env'))
            if host.options.get('umask') is not None:
                _check_umask(host.options['umask'])

    # ============ Transformations ============

    def with_hosts(self, hosts: Iterable[HostLike]) -> 'Context':
        return replace(self, hosts=tuple(hosts))

    def with_path(self, path: Optional[str]) -> 'Context':
        return replace(self, path=path)

    def with_user(self, user: Optional[str]) -> 'Context':
        return replace(self, user=user)

    def with_group(self, group: Optional[str]) -> 'Context':
        return replace(self, group=group)

    def with_umask(self, umask: Optional[Union[str, int]]) -> 'Context':
        if isinstance(umask, int):
            umask = f"{umask:03o}"
        return replace(self, umask=umask)

    def with_env(self, env: Mapping[str, str]) -> 'Context':
        """Merge variables into the environment."""
        merged = dict(self.env)
        merged.update(env)
        return replace(self, env=merged)

    # ============ Command building ============

    def settings_for(self, host: Optional[Host] = None) -> Settings:
        """Resolve the defaults with any per-host overrides applied."""
        values: Dict[str, Any] = {
            'path': self.path,
            'user': self.user,
            'group': self.group,
            'umask': self.umask,
        }
        env = dict(self.env)
        if host is not None:
            for key in ('path', 'user', 'group', 'umask'):
                if key in host.options:
                    values[key] = host.options[key]
            env.update(host.options.get('env') or {})
        return Settings(env=MappingProxyType(env), **values)

    def build(self, command: str, host: Optional[Host] = None) -> str:
        """Wrap a command so it runs with this context's settings."""
        settings = self.settings_for(host)
        command = _sudo(command, settings.user, settings.group)
        command = _export(command, settings.env)
        if settings.umask:
            command = f"umask {settings.umask} && {command}"
        if settings.path:
            command = f"cd {shlex.quote(settings.path)} && {command}"
        return command


def context(hosts: Iterable[HostLike], **defaults) -> Context:
    """Build a Context for `hosts` with the given defaults."""
    return Context(hosts=tuple(hosts), **defaults)


def _as_host(host: HostLike) -> Host:
    if isinstance(host, Host):
        return host
    return Host.parse(host)


def _check_env(env: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    env = env or {}
    for name in env:
        if not ENV_NAME_RE.match(name):
            raise ValueError(f"invalid environment variable name: {name!r}")
    return env


def _check_umask(umask: Union[str, int]) -> str:
    umask = str(umask)
    if not UMASK_RE.match(umask):
        raise ValueError(f"invalid umask: {umask!r}")
    return umask


def _sudo(command: str, user: Optional[str], group: Optional[str]) -> str:
    if not user and not group:
        return command
    parts = ["sudo", "-H", "-n"]
    if user:
        parts += ["-u", shlex.quote(user)]
    if group:
        parts += ["-g", shlex.quote(group)]
    return " ".join(parts) + f" -- sh -c {shlex.quote(command)}"


def _export(command: str, env: Mapping[str, str]) -> str:
    if not env:
        return command
    exports = " ".join(f"{name}={shlex.quote(str(value))}" for name, value in env.items())
    return f"(export {exports} && {command})"
