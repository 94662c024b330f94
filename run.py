"""
SCPKeeper Application Entry Point
=================================

This module is the executable entry point for the **SCPKeeper** service. It is
responsible for:

* Loading the application configuration via :class:`scpkeeper.config.settings.Settings`.
* Initialising console and rotating-file logging based on the configuration.
* Instantiating core services: the metadata extractor, the
  :class:`~scpkeeper.storage.organizer.FileOrganizer`, the
  :class:`~scpkeeper.listener.launcher.ProcessLauncher`, the
  :class:`~scpkeeper.listener.registry.ListenerRegistry` and the
  :class:`~scpkeeper.dashboard.server.Dashboard` HTTP API.
* Stopping every listener on cancellation, keyboard interrupt, or unexpected
  errors, so no storescp process outlives the service.
"""

import asyncio
import logging

from scpkeeper.config import Settings
from scpkeeper.dashboard import Dashboard
from scpkeeper.listener import ListenerRegistry, ProcessLauncher
from scpkeeper.metadata import create_extractor
from scpkeeper.storage import FileOrganizer
from scpkeeper.utils import setup_logging


async def main() -> None:
    """
    Main application entry point.

    Builds the services, serves the HTTP API and waits until cancelled.
    """
    settings = Settings.load()

    setup_logging(
        level=settings.logging.get("level", "INFO"),
        file=settings.logging.get("file", "logs/scpkeeper.log"),
    )

    logger = logging.getLogger(__name__)
    logger.info("Starting SCPKeeper")
    logger.info(f"Storage root: {settings.storage_root}")

    extractor = create_extractor(settings)
    organizer = FileOrganizer(extractor)
    registry = ListenerRegistry(settings, ProcessLauncher(settings), organizer)
    dashboard = Dashboard(settings, registry, extractor)

    if settings.sweep_orphans:
        logger.warning(
            "Orphan sweep is enabled: storescp processes on this host that are "
            "not owned by SCPKeeper will be killed when listeners start or stop"
        )

    try:
        await dashboard.start()

        # Wait indefinitely until cancelled (e.g., Ctrl-C)
        await asyncio.Event().wait()
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.info("Shutdown requested by user / cancellation")
    except Exception:
        logger.exception("Unexpected error - shutting down")
    finally:
        logger.info("Stopping services...")
        await dashboard.stop()
        await registry.shutdown()


def _run() -> None:
    """
    Entry-point used when executing ``run.py`` directly.

    It wraps :func:`asyncio.run` around :func:`main` and provides a minimal
    fallback logger if the configuration cannot be loaded before the
    ``KeyboardInterrupt`` is caught.
    """
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # Minimal fallback logger in case configuration failed
        logging.basicConfig(level=logging.INFO)
        logging.getLogger(__name__).info("Application shutdown by user")


if __name__ == "__main__":
    _run()
