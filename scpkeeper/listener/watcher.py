"""
Output directory watcher.

Watches the root of a listener's output directory with watchdog and hands
every new file to the :class:`~scpkeeper.storage.organizer.FileOrganizer`
once it has had time to settle. Events arrive on the observer thread and are
passed to the event loop; everything else runs on the loop.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from scpkeeper.storage.organizer import FileOrganizer, log_result

logger = logging.getLogger(__name__)


class NewFileHandler(FileSystemEventHandler):
    """Report files that appear in the watched directory."""

    def __init__(self, callback: Callable[[Path], None]):
        self.callback = callback

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.callback(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.callback(Path(event.dest_path))


class OutputWatcher:
    """Organize files written into ``directory`` as they arrive."""

    def __init__(self, directory: Path, organizer: FileOrganizer, settle_delay: float = 1.0):
        self.directory = Path(directory)
        self.organizer = organizer
        self.settle_delay = settle_delay
        self.observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[Path, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self.observer is not None

    def start(self) -> None:
        """Start watching. Must be called from the event loop."""
        if self.observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self.directory.mkdir(parents=True, exist_ok=True)

        observer = Observer()
        observer.schedule(NewFileHandler(self._notify), str(self.directory), recursive=False)
        observer.start()
        self.observer = observer
        logger.debug(f"Watching {self.directory}")

    async def stop(self) -> None:
        if self.observer is not None:
            observer, self.observer = self.observer, None
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join)
            logger.debug(f"Stopped watching {self.directory}")

        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    def _notify(self, path: Path) -> None:
        # observer thread
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._schedule, path)

    def _schedule(self, path: Path) -> None:
        if self.observer is None or path.parent != self.directory or path in self._pending:
            return
        self._pending[path] = asyncio.get_running_loop().create_task(self._organize_later(path))

    async def _organize_later(self, path: Path) -> None:
        try:
            await asyncio.sleep(self.settle_delay)
            result = await self.organizer.organize(path, self.directory)
            log_result(result)
        finally:
            self._pending.pop(path, None)
