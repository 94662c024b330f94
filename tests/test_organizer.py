"""Tests for filing received objects into the dated patient/study hierarchy."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import PurePosixPath

from conftest import make_script, posix_only, write_dicom

from scpkeeper.metadata import DcmdumpExtractor
from scpkeeper.storage.organizer import (
    FileOrganizer,
    OrganizeStatus,
    is_ignored,
    relocated_path,
    sanitize_component,
    sanitize_patient_name,
)

NOW = datetime(2026, 10, 7, 14, 30)


class TestSanitize:
    def test_spaces_become_underscores(self):
        assert sanitize_patient_name("John Doe") == "John_Doe"

    def test_dicom_name_separator(self):
        assert sanitize_patient_name("Doe^John") == "Doe_John"

    def test_path_separators_cannot_escape(self):
        assert sanitize_patient_name("../../etc") == "etc"
        assert sanitize_patient_name("..") == "UNKNOWN"

    def test_empty_name_uses_placeholder(self):
        assert sanitize_patient_name("") == "UNKNOWN"
        assert sanitize_patient_name(None) == "UNKNOWN"
        assert sanitize_patient_name("^^") == "UNKNOWN"

    def test_uid_is_unchanged(self):
        assert sanitize_component("1.2.840.113619.2.55") == "1.2.840.113619.2.55"


class TestRelocatedPath:
    def test_layout(self, tmp_path):
        dest = relocated_path(tmp_path, tmp_path / "CT.1.dcm", "John Doe", "1.2.3.4", NOW)
        assert dest == tmp_path / "2026" / "October" / "7" / "John_Doe" / "1.2.3.4" / "CT.1.dcm"


class TestIgnored:
    def test_partial_writes(self):
        assert is_ignored(PurePosixPath("image.dcm.part"))
        assert is_ignored(PurePosixPath("image.tmp"))

    def test_internal_markers(self):
        assert is_ignored(PurePosixPath("_meta/image.dcm"))
        assert is_ignored(PurePosixPath("summary.json"))
        assert is_ignored(PurePosixPath(".DS_Store"))

    def test_received_file(self):
        assert not is_ignored(PurePosixPath("2026/October/7/John_Doe/1.2.3.4/CT.1"))


class TestSweep:
    def test_round_trip(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "CT.1.2.dcm", study_uid="1.2.3.4", patient_name="John Doe")

        results = asyncio.run(organizer.sweep(out, now=NOW))

        expected = out / "2026" / "October" / "7" / "John_Doe" / "1.2.3.4" / "CT.1.2.dcm"
        assert [r.status for r in results] == [OrganizeStatus.MOVED]
        assert results[0].destination == expected
        assert expected.is_file()
        assert not (out / "CT.1.2.dcm").exists()

    def test_sweep_is_idempotent(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "CT.1.dcm")

        asyncio.run(organizer.sweep(out, now=NOW))
        second = asyncio.run(organizer.sweep(out, now=datetime(2027, 1, 1)))

        assert second == []
        assert (out / "2026" / "October" / "7" / "John_Doe" / "1.2.3.4" / "CT.1.dcm").is_file()
        assert not (out / "2027").exists()

    def test_missing_study_uid_stays_at_root(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "OT.1.dcm", study_uid=None)

        results = asyncio.run(organizer.sweep(out, now=NOW))

        assert results[0].status is OrganizeStatus.SKIPPED
        assert results[0].reason == "no StudyInstanceUID"
        assert (out / "OT.1.dcm").is_file()

    def test_unreadable_file_stays_at_root(self, tmp_path, organizer):
        out = tmp_path / "out"
        out.mkdir()
        (out / "garbage").write_bytes(b"this is not a dicom file")

        results = asyncio.run(organizer.sweep(out, now=NOW))

        assert results[0].status is not OrganizeStatus.MOVED
        assert (out / "garbage").is_file()

    def test_missing_patient_name_uses_placeholder(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "CT.2.dcm", patient_name=None)

        asyncio.run(organizer.sweep(out, now=NOW))

        assert (out / "2026" / "October" / "7" / "UNKNOWN" / "1.2.3.4" / "CT.2.dcm").is_file()

    def test_partial_writes_are_not_touched(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "CT.3.dcm.part")

        results = asyncio.run(organizer.sweep(out, now=NOW))

        assert results == []
        assert (out / "CT.3.dcm.part").is_file()

    def test_one_bad_file_does_not_stop_the_sweep(self, tmp_path, organizer):
        out = tmp_path / "out"
        out.mkdir()
        (out / "a_garbage").write_bytes(b"\x00" * 10)
        write_dicom(out / "b_good.dcm")

        results = asyncio.run(organizer.sweep(out, now=NOW))

        assert [r.source.name for r in results] == ["a_garbage", "b_good.dcm"]
        assert results[1].moved

    def test_missing_directory(self, tmp_path, organizer):
        assert asyncio.run(organizer.sweep(tmp_path / "nope")) == []

    @posix_only
    def test_broken_extraction_tool_does_not_stop_the_sweep(self, tmp_path):
        tool = make_script(tmp_path, "dcmdump", "print('unreachable')\n")
        tool.chmod(0o644)
        out = tmp_path / "out"
        write_dicom(out / "CT.1.dcm")
        write_dicom(out / "CT.2.dcm")

        results = asyncio.run(FileOrganizer(DcmdumpExtractor(str(tool))).sweep(out, now=NOW))

        assert [r.status for r in results] == [OrganizeStatus.FAILED, OrganizeStatus.FAILED]
        assert all("Failed to run" in r.reason for r in results)
        assert (out / "CT.1.dcm").is_file()
        assert (out / "CT.2.dcm").is_file()


class TestOrganize:
    def test_relocation_failure_leaves_file(self, tmp_path, organizer):
        out = tmp_path / "out"
        source = write_dicom(out / "CT.1.dcm")
        (out / "2026").write_text("not a directory")

        result = asyncio.run(organizer.organize(source, out, now=NOW))

        assert result.status is OrganizeStatus.FAILED
        assert result.reason.startswith("move failed")
        assert source.is_file()

    def test_vanished_file_is_skipped(self, tmp_path, organizer):
        result = asyncio.run(organizer.organize(tmp_path / "gone.dcm", tmp_path))
        assert result.status is OrganizeStatus.SKIPPED


class TestListAndClear:
    def test_list_files_recurses_and_filters(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "loose.dcm")
        write_dicom(out / "2026" / "October" / "7" / "John_Doe" / "1.2.3.4" / "CT.1.dcm")
        (out / "partial.tmp").write_bytes(b"")
        (out / "_meta").mkdir()
        (out / "_meta" / "cache.bin").write_bytes(b"")

        assert organizer.list_files(out) == [
            "2026/October/7/John_Doe/1.2.3.4/CT.1.dcm",
            "loose.dcm",
        ]

    def test_list_missing_directory(self, tmp_path, organizer):
        assert organizer.list_files(tmp_path / "nope") == []

    def test_clear_keeps_directory(self, tmp_path, organizer):
        out = tmp_path / "out"
        write_dicom(out / "loose.dcm")
        write_dicom(out / "2026" / "October" / "7" / "X" / "1.2" / "CT.1.dcm")

        removed = organizer.clear(out)

        assert removed == 2
        assert out.is_dir()
        assert list(out.iterdir()) == []
