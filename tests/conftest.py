"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from scpkeeper.config import Settings
from scpkeeper.errors import ListenerStartError
from scpkeeper.listener.launcher import LaunchedProcess, LogBuffer, format_command
from scpkeeper.listener.registry import ListenerRegistry
from scpkeeper.metadata import PydicomExtractor
from scpkeeper.storage import FileOrganizer

SECONDARY_CAPTURE = "1.2.840.10008.5.1.4.1.1.7"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses shebang scripts")


def write_dicom(
    path: Path,
    study_uid: str | None = "1.2.3.4",
    patient_name: str | None = "John Doe",
) -> Path:
    """Write a minimal Part 10 file carrying the given identifiers."""
    meta = FileMetaDataset()
    sop_uid = generate_uid()
    meta.MediaStorageSOPClassUID = SECONDARY_CAPTURE
    meta.MediaStorageSOPInstanceUID = sop_uid
    meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = Dataset()
    ds.file_meta = meta
    ds.SOPClassUID = SECONDARY_CAPTURE
    ds.SOPInstanceUID = sop_uid
    ds.Modality = "OT"
    ds.Rows = 512
    if patient_name is not None:
        ds.PatientName = patient_name
    if study_uid is not None:
        ds.StudyInstanceUID = study_uid

    path.parent.mkdir(parents=True, exist_ok=True)
    ds.save_as(path, enforce_file_format=True)
    return path


def make_script(directory: Path, name: str, body: str) -> Path:
    """Write an executable Python script standing in for a DCMTK tool."""
    script = directory / name
    script.write_text(f"#!{sys.executable}\n{body}")
    script.chmod(0o755)
    return script


class FakeProcess:
    """Quacks like asyncio.subprocess.Process."""

    def __init__(self, pid: int):
        self.pid = pid
        self.returncode: int | None = None
        self.terminated = False
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    """Records launches instead of spawning storescp."""

    def __init__(self):
        self.launches: list[LaunchedProcess] = []
        self.calls: list[tuple] = []
        self.fail = False
        self.delay = 0.0

    async def launch(self, ae_title: str, port: int, output_directory: Path) -> LaunchedProcess:
        self.calls.append((ae_title, port, output_directory))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ListenerStartError("storescp not found (tried: storescp)")

        output_directory.mkdir(parents=True, exist_ok=True)
        log = LogBuffer()
        log.append(f"I: storing DICOM file into {output_directory}\n")
        args = ["-v", "-aet", ae_title, "-od", str(output_directory), str(port)]
        launched = LaunchedProcess(
            process=FakeProcess(4000 + len(self.launches)),
            command=format_command("storescp", args),
            log=log,
            initial_log=log.text,
        )
        self.launches.append(launched)
        return launched


class StubWatcher:
    """Output watcher that never watches anything."""

    def __init__(self, directory: Path, organizer: FileOrganizer, settle_delay: float = 1.0):
        self.directory = directory
        self.organizer = organizer
        self.settle_delay = settle_delay
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage={"root": str(tmp_path / "data"), "settle_delay": 0.05},
        listener={"sweep_orphans": False, "grace_period": 0.2, "stop_timeout": 2.0},
    )


@pytest.fixture
def organizer() -> FileOrganizer:
    return FileOrganizer(PydicomExtractor())


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def registry(settings: Settings, launcher: FakeLauncher, organizer: FileOrganizer) -> ListenerRegistry:
    return ListenerRegistry(
        settings,
        launcher,
        organizer,
        watcher_factory=StubWatcher,
        sweeper=lambda pids: [],
    )
