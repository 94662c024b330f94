"""C-ECHO liveness probe for running listeners."""

import logging

from pynetdicom import AE
from pynetdicom.sop_class import Verification

logger = logging.getLogger(__name__)


def echo(
    ae_title: str,
    port: int,
    host: str = "127.0.0.1",
    calling_ae_title: str = "SCPKEEPER",
    timeout: float = 5.0,
) -> bool:
    """
    Send a C-ECHO to a listener.

    Blocking; run it in an executor from async code.

    Returns True if association + echo succeeded.
    """
    ae = AE(ae_title=calling_ae_title)
    ae.add_requested_context(Verification)
    ae.acse_timeout = timeout
    ae.network_timeout = timeout

    assoc = ae.associate(host, port, ae_title=ae_title)
    if not assoc.is_established:
        logger.debug(f"C-ECHO association to {ae_title}@{host}:{port} not established")
        return False

    try:
        status = assoc.send_c_echo()
        return bool(status) and status.Status == 0x0000
    finally:
        assoc.release()
