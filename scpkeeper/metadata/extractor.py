"""
Metadata Extraction Module

This module reads the summary attributes of a received or uploaded DICOM file.
Two interchangeable backends are provided:

* :class:`PydicomExtractor` reads the file in-process with pydicom (default).
* :class:`DcmdumpExtractor` runs DCMTK ``dcmdump`` and parses its text output.

Both return a :class:`StudyMetadata` whose ``fields`` use the same snake_case
names, so callers never depend on the backend in use.

Classes:
    StudyMetadata: Extracted attribute values
    MetadataExtractor: Backend interface
    PydicomExtractor: pydicom based backend
    DcmdumpExtractor: dcmdump based backend

Functions:
    parse_dcmdump: Map dcmdump text output to field values
    extract_value: Pull the value out of a single dcmdump line
    create_extractor: Build the backend selected in the settings
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import pydicom
from pydicom.multival import MultiValue

from scpkeeper.config import Settings
from scpkeeper.errors import MetadataExtractionError

logger = logging.getLogger(__name__)

# (group, element) -> (pydicom keyword, field name)
SUMMARY_TAGS = {
    (0x0010, 0x0010): ("PatientName", "patient_name"),
    (0x0010, 0x0020): ("PatientID", "patient_id"),
    (0x0010, 0x0040): ("PatientSex", "patient_sex"),
    (0x0010, 0x0030): ("PatientBirthDate", "patient_birth_date"),
    (0x0008, 0x0060): ("Modality", "modality"),
    (0x0008, 0x0050): ("AccessionNumber", "accession_number"),
    (0x0008, 0x0020): ("StudyDate", "study_date"),
    (0x0008, 0x0030): ("StudyTime", "study_time"),
    (0x0008, 0x1030): ("StudyDescription", "study_description"),
    (0x0020, 0x000D): ("StudyInstanceUID", "study_instance_uid"),
    (0x0020, 0x0011): ("SeriesNumber", "series_number"),
    (0x0008, 0x103E): ("SeriesDescription", "series_description"),
    (0x0020, 0x000E): ("SeriesInstanceUID", "series_instance_uid"),
    (0x0018, 0x0015): ("BodyPartExamined", "body_part_examined"),
    (0x0020, 0x0013): ("InstanceNumber", "instance_number"),
    (0x0008, 0x0018): ("SOPInstanceUID", "sop_instance_uid"),
    (0x0028, 0x0010): ("Rows", "rows"),
    (0x0028, 0x0011): ("Columns", "columns"),
    (0x0008, 0x0070): ("Manufacturer", "manufacturer"),
    (0x0008, 0x1090): ("ManufacturerModelName", "manufacturer_model_name"),
    (0x0008, 0x1010): ("StationName", "station_name"),
    (0x0008, 0x0080): ("InstitutionName", "institution_name"),
    (0x0008, 0x1040): ("InstitutionalDepartmentName", "institutional_department_name"),
    (0x0008, 0x0090): ("ReferringPhysicianName", "referring_physician_name"),
}

_DCMDUMP_TAG = re.compile(r"^\(([0-9a-fA-F]{4}),([0-9a-fA-F]{4})\)\s+(\w{2})\s*(.*)$")
_BRACKETED = re.compile(r"\[([^\]]*)\]")


@dataclass
class StudyMetadata:
    """
    Summary attributes of one DICOM file.

    Attributes:
        fields (Dict[str, str]): Non-empty attribute values keyed by field name
        raw_output (Optional[str]): Tool output the values were parsed from,
            when the backend produced one
    """

    fields: Dict[str, str] = field(default_factory=dict)
    raw_output: Optional[str] = None

    @property
    def study_instance_uid(self) -> Optional[str]:
        return self.fields.get("study_instance_uid") or None

    @property
    def patient_name(self) -> Optional[str]:
        return self.fields.get("patient_name") or None


class MetadataExtractor:
    """Interface of the extraction backends."""

    name = "abstract"

    async def read(self, path: Path) -> StudyMetadata:
        """
        Read the summary attributes of ``path``.

        Raises:
            MetadataExtractionError: If the file cannot be read
        """
        raise NotImplementedError


class PydicomExtractor(MetadataExtractor):
    """Reads files in the default executor with pydicom."""

    name = "pydicom"

    async def read(self, path: Path) -> StudyMetadata:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_blocking, Path(path))

    def _read_blocking(self, path: Path) -> StudyMetadata:
        try:
            # Force reading even with missing meta headers; pixel data is never needed
            ds = pydicom.dcmread(path, force=True, stop_before_pixels=True)
            fields = {}
            for keyword, name in SUMMARY_TAGS.values():
                value = ds.get(keyword)
                if value is None:
                    continue
                if isinstance(value, MultiValue):
                    text = "\\".join(str(v) for v in value)
                else:
                    text = str(value)
                text = text.strip()
                if text:
                    fields[name] = text
        except Exception as e:
            raise MetadataExtractionError(f"Cannot read {path.name}: {e}") from e

        return StudyMetadata(fields=fields)


class DcmdumpExtractor(MetadataExtractor):
    """Runs DCMTK ``dcmdump`` and parses its output."""

    name = "dcmdump"

    def __init__(self, executable: str = "dcmdump", timeout: Optional[float] = 30.0):
        self.executable = executable
        self.timeout = timeout

    async def read(self, path: Path) -> StudyMetadata:
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise MetadataExtractionError(f"{self.executable} not found") from e
        except OSError as e:
            raise MetadataExtractionError(f"Failed to run {self.executable}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise MetadataExtractionError(f"{self.executable} timed out after {self.timeout}s on {Path(path).name}")

        output = stdout.decode("utf-8", errors="replace")
        errors = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise MetadataExtractionError(
                f"{self.executable} exited with code {process.returncode}: {errors or 'no output'}"
            )
        if errors:
            logger.debug(f"dcmdump stderr for {path}: {errors}")

        return StudyMetadata(fields=parse_dcmdump(output), raw_output=output)


def extract_value(line: str) -> str:
    """
    Extract the value from one line of dcmdump output.

    dcmdump prints ``(gggg,eeee) VR value  # length, vm Keyword``. String values
    are bracketed (``PN [Doe^John]``); numeric values are bare (``US 512``).
    ``(no value available)`` yields an empty string.

    Example:
        >>> extract_value("(0010,0010) PN [Doe^John]   #   8, 1 PatientName")
        'Doe^John'
    """
    match = _DCMDUMP_TAG.match(line.strip())
    if not match:
        return ""
    rest = match.group(4)

    bracketed = _BRACKETED.match(rest)
    if bracketed:
        return bracketed.group(1).strip()

    value = rest.split("#", 1)[0].strip()
    if value.startswith("(no value"):
        return ""
    return value


def parse_dcmdump(output: str) -> Dict[str, str]:
    """
    Map dcmdump output to summary field values.

    Only top-level elements are considered; nested sequence items are
    indented by dcmdump and skipped. The first occurrence of a tag wins.
    """
    fields: Dict[str, str] = {}
    for line in output.splitlines():
        if not line or line[0].isspace() or line.startswith("#"):
            continue
        match = _DCMDUMP_TAG.match(line)
        if not match:
            continue
        tag = (int(match.group(1), 16), int(match.group(2), 16))
        if tag not in SUMMARY_TAGS:
            continue
        name = SUMMARY_TAGS[tag][1]
        if name in fields:
            continue
        value = extract_value(line)
        if value:
            fields[name] = value
    return fields


def create_extractor(settings: Settings) -> MetadataExtractor:
    """Build the extraction backend selected by ``metadata.backend``."""
    backend = settings.metadata_backend
    if backend == "dcmdump":
        return DcmdumpExtractor(settings.dcmdump_path, settings.metadata_timeout)
    if backend != "pydicom":
        raise ValueError(f"Unknown metadata backend: {backend}")
    return PydicomExtractor()
