"""
File Organizer Module

This module files received DICOM objects into a stable folder hierarchy::

    <output_directory>/<Year>/<MonthName>/<Day>/<PatientName>/<StudyInstanceUID>/<file>

The date is taken from the wall clock at organize time; patient name and
study identifier come from the file itself. Only files lying directly in the
output directory are ever moved, so organizing the same tree twice leaves
already placed files alone.

Organizing never raises: every attempt produces an :class:`OrganizeResult`
that the caller logs or reports.

Classes:
    OrganizeStatus: Outcome of one organize attempt
    OrganizeResult: Outcome plus destination or reason
    FileOrganizer: Organizes, lists and clears reception directories
"""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from scpkeeper.errors import MetadataExtractionError
from scpkeeper.metadata import MetadataExtractor

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)
UNKNOWN_PATIENT = "UNKNOWN"
IGNORED_SUFFIXES = (".tmp", ".part", ".json")
META_DIRECTORY = "_meta"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class OrganizeStatus(str, Enum):
    MOVED = "moved"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class OrganizeResult:
    source: Path
    status: OrganizeStatus
    destination: Optional[Path] = None
    reason: str = ""

    @property
    def moved(self) -> bool:
        return self.status is OrganizeStatus.MOVED


def sanitize_component(value: Optional[str]) -> str:
    """
    Make ``value`` safe to use as a single path component.

    Runs of characters outside ``[A-Za-z0-9._-]`` become one underscore and
    leading/trailing dots and underscores are dropped, which also rules out
    ``.`` and ``..``. Returns an empty string when nothing usable remains.
    """
    if not value:
        return ""
    return _UNSAFE.sub("_", value.strip()).strip("._")


def sanitize_patient_name(name: Optional[str]) -> str:
    """Sanitize a patient name, mapping empty names to the placeholder."""
    return sanitize_component(name) or UNKNOWN_PATIENT


def relocated_path(root: Path, source: Path, patient_name: Optional[str], study_uid: str, now: datetime) -> Path:
    """Compute the organized location of ``source`` below ``root``."""
    return (
        root
        / str(now.year)
        / MONTH_NAMES[now.month - 1]
        / str(now.day)
        / sanitize_patient_name(patient_name)
        / study_uid
        / source.name
    )


def is_ignored(relative: Path) -> bool:
    """
    Whether a path is a partial write or internal marker rather than received data.

    Args:
        relative: Path relative to the output directory
    """
    if any(part.startswith(".") or part == META_DIRECTORY for part in relative.parts):
        return True
    return relative.name.lower().endswith(IGNORED_SUFFIXES)


class FileOrganizer:
    """
    Organizes the files of a reception directory.

    Attributes:
        extractor (MetadataExtractor): Backend used to read study identifiers
    """

    def __init__(self, extractor: MetadataExtractor):
        self.extractor = extractor

    async def organize(self, path: Path, root: Optional[Path] = None, now: Optional[datetime] = None) -> OrganizeResult:
        """
        Move one file into the dated patient/study hierarchy.

        Args:
            path (Path): File to organize
            root (Path, optional): Output directory the hierarchy is built in;
                defaults to the directory containing ``path``
            now (datetime, optional): Date used for the dated folders

        Returns:
            OrganizeResult: ``moved`` with the destination, ``skipped`` when the
            file is not a candidate or carries no StudyInstanceUID, ``failed``
            when extraction or relocation went wrong. The file is left where it
            was in every case except ``moved``.
        """
        path = Path(path)
        root = Path(root) if root is not None else path.parent

        if not path.is_file():
            return OrganizeResult(path, OrganizeStatus.SKIPPED, reason="not a file")
        if is_ignored(Path(path.name)):
            return OrganizeResult(path, OrganizeStatus.SKIPPED, reason="temporary or internal file")

        try:
            metadata = await self.extractor.read(path)
        except MetadataExtractionError as e:
            return OrganizeResult(path, OrganizeStatus.FAILED, reason=str(e))

        study_uid = sanitize_component(metadata.study_instance_uid)
        if not study_uid:
            return OrganizeResult(path, OrganizeStatus.SKIPPED, reason="no StudyInstanceUID")

        destination = relocated_path(root, path, metadata.patient_name, study_uid, now or datetime.now())
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _move, path, destination)
        except OSError as e:
            return OrganizeResult(path, OrganizeStatus.FAILED, reason=f"move failed: {e}")

        return OrganizeResult(path, OrganizeStatus.MOVED, destination=destination)

    async def sweep(self, directory: Path, now: Optional[datetime] = None) -> List[OrganizeResult]:
        """
        Organize every loose file lying directly in ``directory``.

        Nested files are already organized and are never inspected. One bad
        file does not stop the sweep.
        """
        directory = Path(directory)
        if not directory.is_dir():
            return []

        results = []
        for entry in sorted(directory.iterdir()):
            if not entry.is_file() or is_ignored(Path(entry.name)):
                continue
            result = await self.organize(entry, directory, now)
            log_result(result)
            results.append(result)
        return results

    def list_files(self, directory: Path) -> List[str]:
        """
        List received files below ``directory``.

        Returns:
            List[str]: Sorted POSIX-style paths relative to ``directory``,
            excluding partial writes and internal markers
        """
        directory = Path(directory)
        if not directory.is_dir():
            return []

        files = []
        for path in directory.rglob("*"):
            relative = path.relative_to(directory)
            if path.is_file() and not is_ignored(relative):
                files.append(relative.as_posix())
        return sorted(files)

    def clear(self, directory: Path) -> int:
        """
        Delete everything inside ``directory`` but keep the directory.

        Returns:
            int: Number of top-level entries removed
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        removed = 0
        for entry in list(directory.iterdir()):
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        logger.info(f"Cleared {removed} entries from {directory}")
        return removed


def log_result(result: OrganizeResult) -> None:
    if result.status is OrganizeStatus.MOVED:
        logger.info(f"Organized {result.source.name} -> {result.destination}")
    elif result.status is OrganizeStatus.FAILED and result.reason.startswith("move failed"):
        logger.warning(f"Could not organize {result.source}: {result.reason}")
    else:
        logger.debug(f"Left {result.source.name} in place: {result.reason}")


def _move(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))
