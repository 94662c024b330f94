"""
Process Launcher Module

This module starts DCMTK ``storescp`` receivers. The install location of the
tool varies widely between hosts, so launching walks an ordered list of
strategies: one direct exec per candidate executable, then a final attempt
through the shell PATH. A candidate that is simply missing moves on to the
next one; any other OS error aborts the launch.

Output of the started process is pumped into a :class:`LogBuffer` for as
long as it runs.

Classes:
    LogBuffer: Append-only text accumulator for process output
    ExecStrategy: Start one candidate executable without a shell
    ShellStrategy: Start storescp through the shell PATH
    LaunchedProcess: A started storescp process and its output
    ProcessLauncher: Builds the strategy list and launches listeners

Functions:
    candidate_binaries: Ordered candidate executables for a platform
    discover: Evaluate strategies and return the first that spawns
    sweep_orphans: Kill stray storescp processes not owned by anyone
"""

import asyncio
import logging
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple

import psutil

from scpkeeper.config import Settings
from scpkeeper.errors import ListenerStartError

logger = logging.getLogger(__name__)

STORESCP_NAMES = ("storescp", "storescp.exe")

WINDOWS_CANDIDATES = (
    "storescp.exe",
    "storescp",
    r"C:\ProgramData\chocolatey\bin\storescp.exe",
    r"C:\Program Files\dcmtk\bin\storescp.exe",
    r"C:\Program Files (x86)\dcmtk\bin\storescp.exe",
    r"C:\dcmtk\bin\storescp.exe",
)

POSIX_CANDIDATES = (
    "storescp",
    "/usr/bin/storescp",
    "/usr/local/bin/storescp",
    "/opt/homebrew/bin/storescp",
)


class LogBuffer:
    """Unbounded append-only text buffer."""

    def __init__(self) -> None:
        self._chunks: List[str] = []

    def append(self, text: str) -> None:
        if text:
            self._chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)


def candidate_binaries(override: Optional[str] = None, platform: Optional[str] = None) -> List[str]:
    """
    Return the ordered, de-duplicated list of storescp executables to try.

    Args:
        override: Configured executable path, tried first
        platform: ``sys.platform`` value to build the list for
    """
    platform = platform or sys.platform
    defaults = WINDOWS_CANDIDATES if platform == "win32" else POSIX_CANDIDATES

    candidates = []
    for binary in ([override] if override else []) + list(defaults):
        if binary not in candidates:
            candidates.append(binary)
    return candidates


def build_arguments(ae_title: str, port: int, output_directory: Path) -> List[str]:
    return ["-v", "-aet", ae_title, "-od", str(output_directory), str(port)]


def format_command(binary: str, args: Sequence[str]) -> str:
    """Render a command line for display, quoting arguments with whitespace."""
    parts = [binary] + [f'"{a}"' if any(c.isspace() for c in a) else a for a in args]
    return " ".join(parts)


class ExecStrategy:
    """Start one candidate executable directly."""

    def __init__(self, binary: str):
        self.binary = binary

    @property
    def label(self) -> str:
        return self.binary

    def command(self, args: Sequence[str]) -> str:
        return format_command(self.binary, args)

    async def spawn(self, args: Sequence[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )


class ShellStrategy:
    """Start storescp through the shell so that the shell's PATH lookup applies."""

    def __init__(self, binary: str = "storescp", platform: Optional[str] = None):
        self.binary = binary
        self.platform = platform or sys.platform

    @property
    def label(self) -> str:
        return f"{self.binary} (shell)"

    def command(self, args: Sequence[str]) -> str:
        if self.platform == "win32":
            return subprocess.list2cmdline([self.binary, *args])
        return shlex.join([self.binary, *args])

    async def spawn(self, args: Sequence[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            self.command(args),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )


async def discover(strategies: Iterable, args: Sequence[str]) -> Tuple[object, asyncio.subprocess.Process]:
    """
    Evaluate launch strategies in order and return the first that spawns.

    Raises:
        ListenerStartError: If every candidate is missing, or a candidate
            fails for any reason other than not being found
    """
    tried = []
    for strategy in strategies:
        try:
            process = await strategy.spawn(args)
        except FileNotFoundError:
            logger.debug(f"storescp candidate not found: {strategy.label}")
            tried.append(strategy.label)
            continue
        except OSError as e:
            raise ListenerStartError(f"Failed to start storescp via {strategy.label}: {e}") from e
        logger.debug(f"Spawned storescp via {strategy.label} (pid {process.pid})")
        return strategy, process

    raise ListenerStartError(f"storescp not found (tried: {', '.join(tried)})")


@dataclass
class LaunchedProcess:
    """
    A started storescp process.

    Attributes:
        process: The asyncio subprocess handle
        command (str): Command line used to start it
        log (LogBuffer): Combined stdout/stderr, appended while the process runs
        initial_log (str): Output captured during the start-up grace period
        pumps (List[asyncio.Task]): Tasks copying the output streams into ``log``
    """

    process: asyncio.subprocess.Process
    command: str
    log: LogBuffer
    initial_log: str = ""
    pumps: List[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid


async def _pump(stream: Optional[asyncio.StreamReader], log: LogBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        log.append(chunk.decode("utf-8", errors="replace"))


class ProcessLauncher:
    """
    Launches storescp listeners.

    Attributes:
        settings (Settings): Application configuration settings
        platform (str): Platform the candidate list is built for
        shell_fallback (bool): Whether to end the strategy list with a
            shell PATH lookup
    """

    def __init__(self, settings: Settings, platform: Optional[str] = None, shell_fallback: bool = True):
        self.settings = settings
        self.platform = platform or sys.platform
        self.shell_fallback = shell_fallback

    def strategies(self) -> list:
        strategies = [ExecStrategy(b) for b in candidate_binaries(self.settings.storescp_override, self.platform)]
        if self.shell_fallback:
            strategies.append(ShellStrategy("storescp", self.platform))
        return strategies

    async def launch(self, ae_title: str, port: int, output_directory: Path) -> LaunchedProcess:
        """
        Start storescp writing into ``output_directory``.

        The output directory is created if missing. After spawning, output is
        collected for the configured grace period and kept as the initial log.

        Raises:
            ListenerStartError: If no process could be spawned or it exited
                during the grace period
        """
        output_directory = Path(output_directory)
        output_directory.mkdir(parents=True, exist_ok=True)

        args = build_arguments(ae_title, port, output_directory)
        strategy, process = await discover(self.strategies(), args)

        log = LogBuffer()
        pumps = [
            asyncio.create_task(_pump(process.stdout, log)),
            asyncio.create_task(_pump(process.stderr, log)),
        ]

        await asyncio.sleep(self.settings.grace_period)

        if process.returncode is not None:
            await asyncio.gather(*pumps, return_exceptions=True)
            raise ListenerStartError(
                f"storescp exited with code {process.returncode} during start-up",
                logs=log.text,
            )

        launched = LaunchedProcess(
            process=process,
            command=strategy.command(args),
            log=log,
            initial_log=log.text,
            pumps=pumps,
        )
        logger.info(f"storescp started pid={launched.pid} cmd={launched.command}")
        if launched.initial_log:
            logger.info(f"storescp startup logs:\n{launched.initial_log}")
        return launched


async def terminate(process: asyncio.subprocess.Process, timeout: float = 5.0) -> Optional[int]:
    """
    Stop ``process``, escalating from terminate to kill.

    A process that has already gone away is not an error.
    """
    if process.returncode is not None:
        return process.returncode

    try:
        process.terminate()
    except ProcessLookupError:
        pass

    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"storescp pid {process.pid} ignored terminate, killing it")

    try:
        process.kill()
    except ProcessLookupError:
        pass
    return await process.wait()


def sweep_orphans(exclude_pids: Iterable[int] = (), names: Sequence[str] = STORESCP_NAMES) -> List[int]:
    """
    Kill storescp processes that nobody owns.

    Processes listed in ``exclude_pids`` and their descendants are spared, so
    listeners owned by other users survive the sweep.

    Returns:
        List[int]: pids that were killed
    """
    protected: Set[int] = set()
    for pid in exclude_pids:
        protected.add(pid)
        try:
            protected.update(child.pid for child in psutil.Process(pid).children(recursive=True))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            pass

    killed = []
    for proc in psutil.process_iter(["pid", "name"]):
        try:
            if proc.info["name"] not in names or proc.pid in protected:
                continue
            proc.kill()
            killed.append(proc.pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            pass

    if killed:
        logger.warning(f"Killed orphaned storescp processes: {killed}")
    return killed
