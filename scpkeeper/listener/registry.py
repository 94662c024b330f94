"""
Listener Registry Module

This module owns the per-user storescp listeners. The registry is the single
source of truth for "is a listener running for user X": it launches
listeners, tracks their identity and output, organizes what they receive,
and tears them down again.

Per user the lifecycle is::

    NO_LISTENER --start--> RUNNING --stop--> NO_LISTENER
    RUNNING --start--> RUNNING            (idempotent, nothing is spawned)
    RUNNING --process exits--> EXITED --start--> RUNNING
    EXITED --stop--> NO_LISTENER

A failed start leaves the user in NO_LISTENER and nothing is recorded.

Classes:
    ListenerState: Running or exited
    ListenerRecord: One user's listener
    ListenerStatus: Point-in-time status snapshot
    ListenerRegistry: The registry service
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set

from scpkeeper.config import Settings
from scpkeeper.errors import ListenerStartError
from scpkeeper.listener.launcher import LaunchedProcess, ProcessLauncher, sweep_orphans, terminate
from scpkeeper.listener.probe import echo
from scpkeeper.listener.watcher import OutputWatcher
from scpkeeper.storage.organizer import FileOrganizer

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class ListenerRecord:
    """
    Tracks one user's storescp listener.

    Attributes:
        user_id (str): Owner of the listener
        output_directory (Path): Directory storescp writes received files into
        ae_title (str): AE title the listener advertises
        port (int): TCP port the listener accepts associations on
        launched (LaunchedProcess): Process handle, command line and log buffer
        started_at (datetime): When the listener was started
        state (ListenerState): Running, or exited without being stopped
        exit_code (Optional[int]): Exit status once the process is gone
    """

    user_id: str
    output_directory: Path
    ae_title: str
    port: int
    launched: LaunchedProcess
    started_at: datetime = field(default_factory=datetime.now)
    state: ListenerState = ListenerState.RUNNING
    exit_code: Optional[int] = None
    watcher: Optional[OutputWatcher] = field(default=None, repr=False)
    exit_task: Optional[asyncio.Task] = field(default=None, repr=False)
    stopping: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return self.launched.pid

    @property
    def command(self) -> str:
        return self.launched.command

    @property
    def logs(self) -> str:
        return self.launched.log.text

    @property
    def running(self) -> bool:
        return self.state is ListenerState.RUNNING

    def identity(self) -> Dict[str, Any]:
        """Start response: listener identity plus the start-up log excerpt."""
        return {
            "running": self.running,
            "pid": self.pid,
            "out_dir": str(self.output_directory),
            "ae_title": self.ae_title,
            "port": self.port,
            "command": self.command,
            "logs": self.launched.initial_log,
        }


@dataclass
class ListenerStatus:
    running: bool
    out_dir: Path
    files: List[str]
    ae_title: Optional[str] = None
    port: Optional[int] = None
    pid: Optional[int] = None
    command: Optional[str] = None
    logs: Optional[str] = None
    state: Optional[ListenerState] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "ae_title": self.ae_title,
            "port": self.port,
            "out_dir": str(self.out_dir),
            "files": self.files,
            "pid": self.pid,
            "command": self.command,
            "logs": self.logs,
            "state": self.state.value if self.state else None,
            "exit_code": self.exit_code,
        }


def normalize_ae_title(ae_title: Any, default: str) -> str:
    text = str(ae_title).strip() if ae_title is not None else ""
    return text or default


def normalize_port(port: Any, default: int) -> int:
    """Parse ``port``, falling back to ``default`` for missing, invalid or out of range values."""
    if isinstance(port, bool):
        return default
    try:
        value = int(port)
    except (TypeError, ValueError):
        return default
    return value if 0 < value < 65536 else default


class ListenerRegistry:
    """
    Owns every user's storescp listener.

    The registry is an explicit service object: the application builds one and
    injects it into the HTTP layer, tests build their own. All state lives in
    memory and is lost on restart.

    Start, stop and clear are serialized per user, so two concurrent starts
    for the same user cannot both spawn a process.

    Attributes:
        settings (Settings): Application configuration settings
        launcher (ProcessLauncher): Starts storescp processes
        organizer (FileOrganizer): Files received objects into their folders
        watcher_factory (Callable): Builds the output watcher of a new listener
        sweeper (Callable): Kills orphaned storescp processes, sparing the
            pids it is given
    """

    def __init__(
        self,
        settings: Settings,
        launcher: ProcessLauncher,
        organizer: FileOrganizer,
        watcher_factory: Optional[Callable[..., OutputWatcher]] = None,
        sweeper: Callable[[Iterable[int]], List[int]] = sweep_orphans,
    ):
        self.settings = settings
        self.launcher = launcher
        self.organizer = organizer
        self.watcher_factory = watcher_factory or OutputWatcher
        self.sweeper = sweeper
        self._records: Dict[str, ListenerRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, user_id: str) -> Optional[ListenerRecord]:
        return self._records.get(user_id)

    def owned_pids(self, exclude_user: Optional[str] = None) -> Set[int]:
        """pids of all live listeners, optionally leaving out one user's."""
        return {
            record.pid
            for user_id, record in self._records.items()
            if user_id != exclude_user and record.running
        }

    @asynccontextmanager
    async def _lock(self, user_id: str) -> AsyncIterator[None]:
        # the lock lives only while someone holds or waits for it
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._locks[user_id]

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------
    async def start(self, user_id: str, ae_title: Any = None, port: Any = None) -> ListenerRecord:
        """
        Start a listener for ``user_id`` unless one is already running.

        Args:
            user_id (str): Owner of the listener
            ae_title: AE title to advertise; empty means the default
            port: TCP port; missing or unparseable means the default

        Returns:
            ListenerRecord: The new record, or the running one unchanged

        Raises:
            ListenerStartError: If storescp could not be started
        """
        async with self._lock(user_id):
            existing = self._records.get(user_id)
            if existing is not None and existing.running:
                logger.debug(f"Listener for {user_id} already running (pid {existing.pid})")
                return existing
            if existing is not None:
                logger.info(f"Replacing exited listener of {user_id} (exit code {existing.exit_code})")
                del self._records[user_id]
                await self._release(existing)

            ae = normalize_ae_title(ae_title, self.settings.default_ae_title)
            p = normalize_port(port, self.settings.default_port)
            output_directory = self.settings.receive_directory(user_id)

            if self.settings.sweep_orphans:
                await self._sweep(self.owned_pids())

            launched = await self.launcher.launch(ae, p, output_directory)

            record = ListenerRecord(
                user_id=user_id,
                output_directory=output_directory,
                ae_title=ae,
                port=p,
                launched=launched,
            )
            record.watcher = self.watcher_factory(output_directory, self.organizer, self.settings.settle_delay)
            try:
                record.watcher.start()
            except Exception as e:
                logger.error(f"Cannot watch {output_directory} for {user_id}, stopping pid {record.pid}: {e}")
                record.stopping = True
                await terminate(launched.process, self.settings.stop_timeout)
                await self._release(record)
                raise ListenerStartError(f"Cannot watch {output_directory}: {e}", logs=launched.log.text) from e

            record.exit_task = asyncio.create_task(self._watch_exit(record))
            self._records[user_id] = record

            logger.info(f"Listener for {user_id} started: {ae}@{p} pid={record.pid} -> {output_directory}")
            return record

    async def status(self, user_id: str) -> ListenerStatus:
        """
        Report the listener of ``user_id`` and the files it received.

        Loose files in the output root are organized first, so files the
        watcher missed still end up in their folders.
        """
        record = self._records.get(user_id)
        out_dir = record.output_directory if record else self.settings.receive_directory(user_id)

        await self.organizer.sweep(out_dir)
        files = await asyncio.get_running_loop().run_in_executor(None, self.organizer.list_files, out_dir)

        if record is None:
            return ListenerStatus(running=False, out_dir=out_dir, files=files)

        return ListenerStatus(
            running=record.running,
            out_dir=out_dir,
            files=files,
            ae_title=record.ae_title,
            port=record.port,
            pid=record.pid,
            command=record.command,
            logs=record.logs,
            state=record.state,
            exit_code=record.exit_code,
        )

    async def stop(self, user_id: str) -> bool:
        """
        Stop the listener of ``user_id``.

        Afterwards the user has no listener, whatever the outcome of killing
        the process.

        Returns:
            bool: Whether a record existed
        """
        async with self._lock(user_id):
            record = self._records.pop(user_id, None)
            if record is None:
                return False

            record.stopping = True
            exit_code = await terminate(record.launched.process, self.settings.stop_timeout)
            logger.info(f"Listener for {user_id} stopped (pid {record.pid}, exit code {exit_code})")
            await self._release(record)

            if self.settings.sweep_orphans:
                await self._sweep(self.owned_pids())
            return True

    async def clear(self, user_id: str) -> int:
        """Delete everything received for ``user_id``, keeping the directory."""
        async with self._lock(user_id):
            record = self._records.get(user_id)
            out_dir = record.output_directory if record else self.settings.receive_directory(user_id)
            return await asyncio.get_running_loop().run_in_executor(None, self.organizer.clear, out_dir)

    async def echo(self, user_id: str) -> Optional[bool]:
        """
        C-ECHO the listener of ``user_id``.

        Returns:
            Optional[bool]: None when the user has no running listener
        """
        record = self._records.get(user_id)
        if record is None or not record.running:
            return None

        calling = self.settings.echo.get("calling_ae_title", "SCPKEEPER")
        timeout = float(self.settings.echo.get("timeout", 5.0))
        return await asyncio.get_running_loop().run_in_executor(
            None, lambda: echo(record.ae_title, record.port, calling_ae_title=calling, timeout=timeout)
        )

    async def shutdown(self) -> None:
        """Stop every listener."""
        for user_id in list(self._records):
            await self.stop(user_id)

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------
    async def _watch_exit(self, record: ListenerRecord) -> None:
        exit_code = await record.launched.process.wait()
        record.exit_code = exit_code
        if record.stopping or self._records.get(record.user_id) is not record:
            return

        record.state = ListenerState.EXITED
        logger.warning(f"Listener for {record.user_id} exited unexpectedly (pid {record.pid}, exit code {exit_code})")
        if record.watcher is not None:
            await record.watcher.stop()

    async def _release(self, record: ListenerRecord) -> None:
        if record.watcher is not None:
            await record.watcher.stop()
        if record.exit_task is not None and record.exit_task is not asyncio.current_task():
            record.exit_task.cancel()
            await asyncio.gather(record.exit_task, return_exceptions=True)

        # a shell-spawned grandchild can keep the pipes open after the pid is gone
        if record.launched.pumps:
            _, pending = await asyncio.wait(record.launched.pumps, timeout=1.0)
            for task in pending:
                task.cancel()

    async def _sweep(self, exclude_pids: Set[int]) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self.sweeper, exclude_pids)
