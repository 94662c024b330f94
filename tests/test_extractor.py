"""Tests for the metadata extraction backends."""

from __future__ import annotations

import asyncio

import pytest
from conftest import make_script, posix_only, write_dicom

from scpkeeper.config import Settings
from scpkeeper.errors import MetadataExtractionError
from scpkeeper.metadata import (
    DcmdumpExtractor,
    PydicomExtractor,
    create_extractor,
    extract_value,
    parse_dcmdump,
)

DUMP = """
# Dicom-File-Format

# Dicom-Meta-Information-Header
# Used TransferSyntax: Little Endian Explicit
(0002,0010) UI =LittleEndianExplicit                    #  20, 1 TransferSyntaxUID

# Dicom-Data-Set
# Used TransferSyntax: Little Endian Explicit
(0008,0060) CS [CT]                                     #   2, 1 Modality
(0008,1030) LO (no value available)                     #   0, 0 StudyDescription
(0008,103e) LO [Chest 1.25mm]                           #  12, 1 SeriesDescription
(0010,0010) PN [Doe^John]                               #   8, 1 PatientName
(0010,0020) LO [PID-001]                                #   8, 1 PatientID
(0040,0275) SQ (Sequence with explicit length #=1)      #  60, 1 RequestAttributesSequence
  (fffe,e000) na (Item with explicit length #=2)        #  52, 1 Item
    (0010,0010) PN [Nested^Name]                        #  12, 1 PatientName
  (fffe,e00d) na (ItemDelimitationItem for re-encoding) #   0, 0 ItemDelimitationItem
(0020,000d) UI [1.2.840.113619.2.55.3]                  #  22, 1 StudyInstanceUID
(0028,0010) US 512                                      #   2, 1 Rows
(0028,0011) US 512                                      #   2, 1 Columns
"""


class TestExtractValue:
    def test_bracketed(self):
        assert extract_value("(0010,0010) PN [Doe^John]   #   8, 1 PatientName") == "Doe^John"

    def test_numeric(self):
        assert extract_value("(0028,0010) US 512   #   2, 1 Rows") == "512"

    def test_no_value(self):
        assert extract_value("(0008,1030) LO (no value available)  #   0, 0 StudyDescription") == ""

    def test_not_a_tag_line(self):
        assert extract_value("# Dicom-Data-Set") == ""


class TestParseDcmdump:
    def test_summary_fields(self):
        fields = parse_dcmdump(DUMP)

        assert fields["modality"] == "CT"
        assert fields["patient_name"] == "Doe^John"
        assert fields["patient_id"] == "PID-001"
        assert fields["study_instance_uid"] == "1.2.840.113619.2.55.3"
        assert fields["rows"] == "512"
        assert fields["columns"] == "512"

    def test_lowercase_hex_tags(self):
        assert parse_dcmdump(DUMP)["series_description"] == "Chest 1.25mm"

    def test_empty_values_are_omitted(self):
        assert "study_description" not in parse_dcmdump(DUMP)

    def test_first_occurrence_wins(self):
        output = "(0010,0010) PN [First]  # x\n(0010,0010) PN [Second]  # x\n"
        assert parse_dcmdump(output)["patient_name"] == "First"

    def test_empty_output(self):
        assert parse_dcmdump("") == {}


class TestPydicomExtractor:
    def test_reads_written_file(self, tmp_path):
        path = write_dicom(tmp_path / "CT.1.dcm", study_uid="1.2.3.4", patient_name="Doe^Jane")

        metadata = asyncio.run(PydicomExtractor().read(path))

        assert metadata.study_instance_uid == "1.2.3.4"
        assert metadata.patient_name == "Doe^Jane"
        assert metadata.fields["modality"] == "OT"
        assert metadata.fields["rows"] == "512"
        assert metadata.raw_output is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(MetadataExtractionError):
            asyncio.run(PydicomExtractor().read(tmp_path / "missing.dcm"))


class TestDcmdumpExtractor:
    def test_missing_executable(self, tmp_path):
        extractor = DcmdumpExtractor(str(tmp_path / "no-such-dcmdump"))
        with pytest.raises(MetadataExtractionError, match="not found"):
            asyncio.run(extractor.read(tmp_path / "x.dcm"))

    @posix_only
    def test_non_executable_tool(self, tmp_path):
        script = make_script(tmp_path, "dcmdump", "print('unreachable')\n")
        script.chmod(0o644)

        with pytest.raises(MetadataExtractionError, match="Failed to run"):
            asyncio.run(DcmdumpExtractor(str(script)).read(tmp_path / "x.dcm"))

    @posix_only
    def test_parses_tool_output(self, tmp_path):
        (tmp_path / "dump.txt").write_text(DUMP)
        script = make_script(
            tmp_path,
            "dcmdump",
            f"import sys\nsys.stdout.write(open({str(tmp_path / 'dump.txt')!r}).read())\n",
        )

        metadata = asyncio.run(DcmdumpExtractor(str(script)).read(tmp_path / "x.dcm"))

        assert metadata.patient_name == "Doe^John"
        assert metadata.raw_output == DUMP

    @posix_only
    def test_non_zero_exit(self, tmp_path):
        script = make_script(
            tmp_path,
            "dcmdump",
            "import sys\nsys.stderr.write('E: cannot open file')\nsys.exit(1)\n",
        )
        with pytest.raises(MetadataExtractionError, match="cannot open file"):
            asyncio.run(DcmdumpExtractor(str(script)).read(tmp_path / "x.dcm"))

    @posix_only
    def test_timeout(self, tmp_path):
        script = make_script(tmp_path, "dcmdump", "import time\ntime.sleep(10)\n")
        with pytest.raises(MetadataExtractionError, match="timed out"):
            asyncio.run(DcmdumpExtractor(str(script), timeout=0.2).read(tmp_path / "x.dcm"))


class TestCreateExtractor:
    def test_default_backend(self):
        assert isinstance(create_extractor(Settings()), PydicomExtractor)

    def test_dcmdump_backend(self):
        settings = Settings(metadata={"backend": "dcmdump", "dcmdump_path": "/opt/dcmtk/bin/dcmdump", "timeout": 5})
        extractor = create_extractor(settings)

        assert isinstance(extractor, DcmdumpExtractor)
        assert extractor.executable == "/opt/dcmtk/bin/dcmdump"
        assert extractor.timeout == 5

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_extractor(Settings(metadata={"backend": "gdcm"}))
