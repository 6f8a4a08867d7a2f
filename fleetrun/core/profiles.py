"""
Pipeline profile management for fleetrun.
Loads YAML pipeline descriptions (hosts, defaults, auth, tasks) and
substitutes {param} placeholders in task strings.
"""

import os
import re
import yaml
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

from .connection import AuthMaterial
from .context import Context, Host
from .orchestrator import Download, Run, Task, Upload

TASK_KINDS = ('run', 'upload', 'download')

# {name} placeholders; shell ${VAR} expansions are left alone
PARAM_RE = re.compile(r'(?<!\$)\{(\w+)\}')


@dataclass
class TaskDefinition:
    """One entry of a profile's task list."""
    kind: str  # "run", "upload" or "download"
    command: str = ""
    local: str = ""
    remote: str = ""
    recursive: bool = False
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TaskDefinition':
        kinds = [k for k in TASK_KINDS if k in data]
        if len(kinds) != 1:
            raise ValueError(f"task must have exactly one of {TASK_KINDS}: {data!r}")
        kind = kinds[0]
        if kind == 'run':
            return cls(kind='run', command=str(data['run']), timeout=data.get('timeout'))
        spec = data[kind] or {}
        return cls(
            kind=kind,
            local=str(spec.get('local', '')),
            remote=str(spec.get('remote', '.' if kind == 'upload' else '')),
            recursive=bool(spec.get('recursive', False)),
            timeout=data.get('timeout'),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == 'run':
            data: Dict[str, Any] = {'run': self.command}
        else:
            data = {self.kind: {'local': self.local, 'remote': self.remote,
                                'recursive': self.recursive}}
        if self.timeout is not None:
            data['timeout'] = self.timeout
        return data

    def to_task(self, params: Dict[str, str]) -> Task:
        if self.kind == 'run':
            return Run(substitute_parameters(self.command, params), self.timeout)
        local = substitute_parameters(self.local, params)
        remote = substitute_parameters(self.remote, params)
        if self.kind == 'upload':
            return Upload(local, remote, self.recursive, self.timeout)
        return Download(remote, local, self.recursive, self.timeout)


@dataclass
class AuthProfile:
    """Login parameters shared by every host of a profile."""
    user: Optional[str] = None
    key_file: Optional[str] = None
    password: Optional[str] = None
    host_key_policy: str = 'auto_add'

    def to_auth(self) -> AuthMaterial:
        return AuthMaterial(
            username=self.user,
            password=self.password,
            key_file=os.path.expanduser(self.key_file) if self.key_file else None,
            host_key_policy=self.host_key_policy,
        )


@dataclass
class PipelineSettings:
    max_parallel: int = 8
    connect_timeout: float = 30
    retry_attempts: int = 1
    retry_delay: float = 5


@dataclass
class PipelineProfile:
    """Complete pipeline profile."""
    name: str
    description: str
    hosts: List[Dict[str, Any]]  # address, port, username + Context overrides
    defaults: Dict[str, Any]
    auth: AuthProfile
    settings: PipelineSettings
    tasks: List[TaskDefinition]
    filepath: str = ""

    @classmethod
    def from_yaml(cls, filepath: str) -> 'PipelineProfile':
        """Load a profile from a YAML file."""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        default_name = os.path.splitext(os.path.basename(filepath))[0]
        return cls.from_dict(data, filepath=filepath, default_name=default_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], filepath: str = "",
                  default_name: str = "pipeline") -> 'PipelineProfile':
        hosts = []
        for entry in data.get('hosts', []):
            hosts.append({'address': entry} if isinstance(entry, str) else dict(entry))

        defaults = dict(data.get('defaults') or {})
        if 'umask' in defaults:
            defaults['umask'] = _umask(defaults['umask'])

        auth_data = data.get('auth') or {}
        auth = AuthProfile(
            user=auth_data.get('user'),
            key_file=auth_data.get('key_file'),
            password=auth_data.get('password'),
            host_key_policy=auth_data.get('host_key_policy', 'auto_add'),
        )

        settings_data = data.get('settings') or {}
        settings = PipelineSettings(
            max_parallel=settings_data.get('max_parallel', 8),
            connect_timeout=settings_data.get('connect_timeout', 30),
            retry_attempts=settings_data.get('retry_attempts', 1),
            retry_delay=settings_data.get('retry_delay', 5),
        )

        tasks = [TaskDefinition.from_dict(t) for t in data.get('tasks', [])]

        return cls(
            name=data.get('name', default_name),
            description=data.get('description', ''),
            hosts=hosts,
            defaults=defaults,
            auth=auth,
            settings=settings,
            tasks=tasks,
            filepath=filepath,
        )

    def to_context(self) -> Context:
        hosts = []
        for entry in self.hosts:
            entry = dict(entry)
            port = entry.pop('port', None)
            if 'umask' in entry:
                entry['umask'] = _umask(entry['umask'])
            host = Host.parse(entry.pop('address'), **entry)
            if port is not None:
                host = Host(host.address, int(port), host.options)
            hosts.append(host)
        return Context(
            hosts=tuple(hosts),
            path=self.defaults.get('path'),
            user=self.defaults.get('user'),
            group=self.defaults.get('group'),
            umask=self.defaults.get('umask'),
            env={k: str(v) for k, v in (self.defaults.get('env') or {}).items()},
        )

    def to_tasks(self, params: Optional[Dict[str, str]] = None) -> List[Task]:
        return [t.to_task(params or {}) for t in self.tasks]

    def parameters(self) -> List[str]:
        """All {param} names referenced by the task list."""
        names = set()
        for task in self.tasks:
            for template in (task.command, task.local, task.remote):
                names.update(extract_parameters(template))
        return sorted(names)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'hosts': self.hosts,
            'defaults': self.defaults,
            'auth': {
                'user': self.auth.user,
                'key_file': self.auth.key_file,
                'host_key_policy': self.auth.host_key_policy,
            },
            'settings': {
                'max_parallel': self.settings.max_parallel,
                'connect_timeout': self.settings.connect_timeout,
                'retry_attempts': self.settings.retry_attempts,
                'retry_delay': self.settings.retry_delay,
            },
            'tasks': [t.to_dict() for t in self.tasks],
        }

    def to_yaml(self) -> str:
        """Convert profile to YAML string. Passwords are never written."""
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)


class ProfileManager:
    """Manages loading and listing pipeline profiles."""

    def __init__(self, profiles_dir: str):
        self.profiles_dir = profiles_dir
        os.makedirs(profiles_dir, exist_ok=True)

    def list_profiles(self) -> List[str]:
        """List all available profile names."""
        profiles = []
        for filename in os.listdir(self.profiles_dir):
            if filename.endswith(('.yaml', '.yml')):
                profiles.append(filename.rsplit('.', 1)[0])
        return sorted(profiles)

    def load_profile(self, name: str) -> Optional[PipelineProfile]:
        """Load a profile by name, or None if it does not exist."""
        for ext in ('.yaml', '.yml'):
            filepath = os.path.join(self.profiles_dir, name + ext)
            if os.path.exists(filepath):
                return PipelineProfile.from_yaml(filepath)
        return None

    def save_profile(self, profile: PipelineProfile) -> str:
        filepath = os.path.join(self.profiles_dir, profile.name + '.yaml')
        with open(filepath, 'w', encoding='utf-8') as f:
            f.write(profile.to_yaml())
        return filepath

    def delete_profile(self, name: str) -> bool:
        for ext in ('.yaml', '.yml'):
            filepath = os.path.join(self.profiles_dir, name + ext)
            if os.path.exists(filepath):
                os.remove(filepath)
                return True
        return False


def substitute_parameters(template: str, params: Dict[str, str]) -> str:
    """
    Substitute {param_name} placeholders in a template string.
    Unknown placeholders are left untouched.
    """
    def replacer(match):
        return params.get(match.group(1), match.group(0))

    return re.sub(PARAM_RE, replacer, template)


def extract_parameters(template: str) -> List[str]:
    return sorted(set(PARAM_RE.findall(template)))


def _umask(value: Any) -> str:
    # YAML reads an unquoted 022 as the octal integer 18
    if isinstance(value, int):
        return f"{value:03o}"
    return str(value)
