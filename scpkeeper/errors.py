"""
Exception hierarchy shared by all SCPKeeper components.

HTTP handlers translate these into JSON error responses; background
components catch them and report through result objects or the log.
"""


class SCPKeeperError(Exception):
    """Base class for all application errors."""


class ListenerStartError(SCPKeeperError):
    """No storescp process could be started, or it died during the grace period."""

    def __init__(self, message: str, logs: str = ""):
        super().__init__(message)
        self.logs = logs


class MetadataExtractionError(SCPKeeperError):
    """A file could not be read by the metadata extraction backend."""


class SendError(SCPKeeperError):
    """storescu could not be run or reported a failure."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
