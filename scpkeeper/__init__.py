"""
SCPKeeper - per-user DICOM reception listeners around DCMTK storescp.
"""

__version__ = "0.1.0"
