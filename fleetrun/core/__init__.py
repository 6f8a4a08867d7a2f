"""
fleetrun core - SSH channel engine, SCP transfers and multi-host pipelines
"""

from .errors import (
    FleetError, ConnectError, ConnectErrorKind, ChannelError, ChannelErrorKind,
    ExecError, ExecErrorKind, ScpError, ScpErrorKind,
)
from .channel import (
    Channel, ChannelKind, ChannelOptions, ChannelType, Stream,
    Data, Eof, ExitStatus, ExitSignal, Closed,
    open_channel, exec_command, send, send_eof, close_channel, execute,
)
from .loop import EventLoop, ExecResult, ChannelState, ClosedWithoutStatus, CLOSED_WITHOUT_STATUS
from .connection import AuthMaterial, Connection, connect
from .scp import ScpEngine, ManifestEntry, EntryKind, TransferReport, walk_local
from .context import Context, Host, Settings, context
from .orchestrator import (
    Orchestrator, Run, Upload, Download, Task,
    HostOk, HostFailed, PipelineResult, PipelineError,
)
from .events import EventStream, EventType, Event
from .profiles import PipelineProfile, ProfileManager, TaskDefinition, substitute_parameters
from .log import LogConfig, configure_logging

__all__ = [
    'FleetError', 'ConnectError', 'ConnectErrorKind', 'ChannelError', 'ChannelErrorKind',
    'ExecError', 'ExecErrorKind', 'ScpError', 'ScpErrorKind',
    'Channel', 'ChannelKind', 'ChannelOptions', 'ChannelType', 'Stream',
    'Data', 'Eof', 'ExitStatus', 'ExitSignal', 'Closed',
    'open_channel', 'exec_command', 'send', 'send_eof', 'close_channel', 'execute',
    'EventLoop', 'ExecResult', 'ChannelState', 'ClosedWithoutStatus', 'CLOSED_WITHOUT_STATUS',
    'AuthMaterial', 'Connection', 'connect',
    'ScpEngine', 'ManifestEntry', 'EntryKind', 'TransferReport', 'walk_local',
    'Context', 'Host', 'Settings', 'context',
    'Orchestrator', 'Run', 'Upload', 'Download', 'Task',
    'HostOk', 'HostFailed', 'PipelineResult', 'PipelineError',
    'EventStream', 'EventType', 'Event',
    'PipelineProfile', 'ProfileManager', 'TaskDefinition', 'substitute_parameters',
    'LogConfig', 'configure_logging',
]
