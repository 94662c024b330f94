"""
C-STORE sender.

Sends every file below a directory to a remote DICOM node by running DCMTK
``storescu`` recursively over it.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from scpkeeper.errors import SendError

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    returncode: int
    stdout: str
    stderr: str


class StoreSCUSender:
    """
    Runs storescu.

    Attributes:
        executable (str): storescu executable
        timeout (Optional[float]): Seconds before a send is killed; None waits forever
    """

    def __init__(self, executable: str = "storescu", timeout: Optional[float] = None):
        self.executable = executable
        self.timeout = timeout

    def build_arguments(self, calling_ae: str, called_ae: str, host: str, port: int, directory: Path) -> List[str]:
        return [
            "-aet", calling_ae,
            "-aec", called_ae,
            "-v",  # verbose output
            "-nh",  # do not halt on unsuccessful store
            host,
            str(port),
            "+sd",  # scan directories
            "+r",  # recurse
            str(directory),
        ]

    async def send(self, directory: Path, calling_ae: str, called_ae: str, host: str, port: int) -> SendResult:
        """
        Send the contents of ``directory``.

        Raises:
            SendError: If storescu is missing, times out or exits non-zero
        """
        args = self.build_arguments(calling_ae, called_ae, host, port, directory)
        logger.info(f"Sending {directory} to {called_ae}@{host}:{port} as {calling_ae}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SendError(f"Failed to run {self.executable}: {e}") from e

        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            out, err = await process.communicate()
            raise SendError(
                f"{self.executable} timed out after {self.timeout}s",
                out.decode("utf-8", errors="replace"),
                err.decode("utf-8", errors="replace"),
            )

        result = SendResult(
            returncode=process.returncode,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )
        if result.returncode != 0:
            logger.error(f"{self.executable} exited with code {result.returncode}")
            raise SendError(f"{self.executable} exited with code {result.returncode}", result.stdout, result.stderr)

        logger.info(f"Send to {called_ae}@{host}:{port} finished")
        return result
