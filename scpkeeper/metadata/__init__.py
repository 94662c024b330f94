from .extractor import (
    DcmdumpExtractor,
    MetadataExtractor,
    PydicomExtractor,
    StudyMetadata,
    create_extractor,
    extract_value,
    parse_dcmdump,
)

__all__ = [
    'DcmdumpExtractor',
    'MetadataExtractor',
    'PydicomExtractor',
    'StudyMetadata',
    'create_extractor',
    'extract_value',
    'parse_dcmdump',
]
