from .launcher import LaunchedProcess, LogBuffer, ProcessLauncher
from .registry import ListenerRecord, ListenerRegistry, ListenerState, ListenerStatus
from .watcher import OutputWatcher

__all__ = [
    'LaunchedProcess',
    'ListenerRecord',
    'ListenerRegistry',
    'ListenerState',
    'ListenerStatus',
    'LogBuffer',
    'OutputWatcher',
    'ProcessLauncher',
]
