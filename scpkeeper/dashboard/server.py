"""
HTTP API Module

This module provides the aiohttp JSON API of the SCPKeeper application:
listener start/status/stop/clear, a C-ECHO probe, metadata inspection, raw
DICOM upload, storescu sending and host network information.

Classes:
    Dashboard: HTTP server setup and route handlers
"""

import asyncio
import logging
import re
import socket
import time
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
from aiohttp import web

from scpkeeper.config import Settings
from scpkeeper.errors import ListenerStartError, MetadataExtractionError, SendError
from scpkeeper.listener.registry import ListenerRegistry, normalize_port
from scpkeeper.metadata import MetadataExtractor
from scpkeeper.sender import StoreSCUSender
from scpkeeper.storage.organizer import sanitize_component

logger = logging.getLogger(__name__)

_USER_ID = re.compile(r"^[A-Za-z0-9_.-]+$")
DICM_OFFSET = 128


class RequestError(Exception):
    """Invalid request; rendered as a JSON error with ``status``."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


def _error(message: str, status: int, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render request errors and unexpected exceptions as JSON."""
    try:
        return await handler(request)
    except RequestError as e:
        return _error(str(e), e.status)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error in {request.method} {request.path}")
        return _error(str(e) or "Internal server error", 500)


def _user_id(value: Any) -> str:
    if not value:
        raise RequestError("Missing user_id")
    user_id = str(value)
    if not _USER_ID.match(user_id) or user_id in (".", ".."):
        raise RequestError("Invalid user_id")
    return user_id


def _store_upload(directory: Path, filename: str, content: bytes) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / filename).write_bytes(content)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise RequestError("Invalid JSON body")
    if not isinstance(body, dict):
        raise RequestError("Invalid JSON body")
    return body


class Dashboard:
    """
    HTTP server setup and route handlers.

    Attributes:
        settings (Settings): Application configuration settings
        app (web.Application): aiohttp web application instance
        runner (web.AppRunner): Application runner for the web server
        site (web.TCPSite): TCP site for serving the web application
    """

    def __init__(
        self,
        settings: Settings,
        registry: ListenerRegistry,
        extractor: MetadataExtractor,
        sender: Optional[StoreSCUSender] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.extractor = extractor
        self.sender = sender or StoreSCUSender(settings.storescu_path, settings.sender_timeout)
        self.app = self.create_app()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        app = web.Application(
            middlewares=[error_middleware],
            client_max_size=int(self.settings.http_server.get("client_max_size", 512 * 1024 * 1024)),
        )
        app['registry'] = self.registry
        app.add_routes([
            web.post("/api/dicom/scp/start", self.handle_start),
            web.post("/api/dicom/scp/status", self.handle_status),
            web.post("/api/dicom/scp/stop", self.handle_stop),
            web.post("/api/dicom/scp/clear", self.handle_clear),
            web.post("/api/dicom/scp/echo", self.handle_echo),
            web.post("/api/dicom/metadata", self.handle_metadata),
            web.post("/api/dicom/send", self.handle_send),
            web.post("/api/upload/dicom", self.handle_upload),
            web.get("/api/network/info", self.handle_network_info),
            web.get("/health", self.handle_health),
        ])
        return app

    async def start(self) -> None:
        """
        Start the HTTP server on the configured address.

        Raises:
            OSError: If the address cannot be bound
        """
        ip = self.settings.http_server.get("ip", "127.0.0.1")
        port = int(self.settings.http_server.get("port", 8080))
        logger.info("Starting HTTP API")

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, ip, port)
        await self.site.start()

        logger.info(f"HTTP API started on http://{ip}:{port}")

    async def stop(self) -> None:
        logger.info("Stopping HTTP API")
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("HTTP API stopped")

    # -----------------------------------------------------------------
    # Listener
    # -----------------------------------------------------------------
    async def handle_start(self, request: web.Request) -> web.Response:
        """
        Start the caller's listener.

        Body: ``user_id``, optional ``ae_title`` and ``port``. Starting an
        already running listener returns it unchanged.
        """
        body = await _json_body(request)
        user_id = _user_id(body.get("user_id"))
        try:
            record = await request.app['registry'].start(user_id, body.get("ae_title"), body.get("port"))
        except ListenerStartError as e:
            logger.error(f"Listener for {user_id} failed to start: {e}")
            return _error(f"Listener failed to start: {e}", 500, logs=e.logs)
        return web.json_response(record.identity())

    async def handle_status(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        status = await request.app['registry'].status(_user_id(body.get("user_id")))
        return web.json_response(status.to_dict())

    async def handle_stop(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        await request.app['registry'].stop(_user_id(body.get("user_id")))
        return web.json_response({"running": False})

    async def handle_clear(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        user_id = _user_id(body.get("user_id"))
        cleared = await request.app['registry'].clear(user_id)
        return web.json_response({"cleared": cleared, "out_dir": str(self.settings.receive_directory(user_id))})

    async def handle_echo(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        alive = await request.app['registry'].echo(_user_id(body.get("user_id")))
        if alive is None:
            return _error("Listener not running", 404)
        return web.json_response({"alive": alive})

    # -----------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------
    def _scope_directory(self, user_id: str, scope: Any) -> Path:
        if scope == "received":
            return self.settings.receive_directory(user_id)
        return self.settings.upload_directory(user_id)

    async def handle_metadata(self, request: web.Request) -> web.Response:
        """
        Return the summary attributes of one received or uploaded file.

        Body: ``user_id``, ``filename`` (relative to the scope directory) and
        ``scope`` (``received`` or ``uploads``).
        """
        body = await _json_body(request)
        user_id = _user_id(body.get("user_id"))
        filename = body.get("filename")
        if not filename:
            raise RequestError("Missing filename")

        base = self._scope_directory(user_id, body.get("scope")).resolve()
        target = (base / str(filename)).resolve()
        if base not in target.parents:
            raise RequestError("Invalid path")
        if not target.is_file():
            return _error("File not found", 404)

        try:
            metadata = await self.extractor.read(target)
        except MetadataExtractionError as e:
            return _error(str(e), 500)

        response = {"success": True, "metadata": metadata.fields}
        if metadata.raw_output is not None:
            response["raw_output"] = metadata.raw_output
        return web.json_response(response)

    async def handle_upload(self, request: web.Request) -> web.Response:
        """
        Store one raw DICOM file in the caller's upload directory.

        Multipart fields: ``user_id`` and ``file``. The file must carry the
        ``DICM`` magic at offset 128.
        """
        data = await request.post()
        user_id = _user_id(data.get("user_id"))
        upload = data.get("file")
        if not isinstance(upload, web.FileField):
            raise RequestError("No file uploaded")

        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, upload.file.read)
        if content[DICM_OFFSET:DICM_OFFSET + 4] != b"DICM":
            raise RequestError("Uploaded file is not a valid DICOM")

        name = sanitize_component(Path(upload.filename or "").name) or "dicom"
        if not name.lower().endswith(".dcm"):
            name += ".dcm"
        filename = f"{int(time.time() * 1000)}_{name}"

        await loop.run_in_executor(None, _store_upload, self.settings.upload_directory(user_id), filename, content)
        logger.info(f"Stored upload {filename} for {user_id} ({len(content)} bytes)")

        return web.json_response({
            "message": "File uploaded successfully",
            "filename": filename,
            "size": len(content),
        })

    async def handle_send(self, request: web.Request) -> web.Response:
        """
        Send the caller's uploads to a remote node with storescu.

        Body: ``user_id``, ``calling_ae``, ``called_ae``, ``host``, ``port``.
        """
        body = await _json_body(request)
        user_id = _user_id(body.get("user_id"))
        calling_ae, called_ae, host = body.get("calling_ae"), body.get("called_ae"), body.get("host")
        port = normalize_port(body.get("port"), 0)
        if not (calling_ae and called_ae and host and port):
            raise RequestError("Missing parameters")

        directory = self.settings.upload_directory(user_id)
        if not directory.is_dir():
            return _error("No uploaded files found for this user", 404)

        try:
            result = await self.sender.send(directory, str(calling_ae), str(called_ae), str(host), port)
        except SendError as e:
            return _error(str(e), 500, stdout=e.stdout, stderr=e.stderr)

        return web.json_response({"status": result.returncode, "stdout": result.stdout, "stderr": result.stderr})

    # -----------------------------------------------------------------
    # Host
    # -----------------------------------------------------------------
    async def handle_network_info(self, request: web.Request) -> web.Response:
        """List the host's external IPv4 addresses, for configuring senders."""
        addresses = []
        for name, infos in psutil.net_if_addrs().items():
            for info in infos:
                if info.family == socket.AF_INET and not info.address.startswith("127."):
                    addresses.append({"name": name, "address": info.address, "family": "IPv4"})
        return web.json_response({"addresses": addresses})

    async def handle_health(self, request: web.Request) -> web.Response:
        """
        Simple health-check endpoint.

        Returns a JSON payload indicating that the service is alive.
        """
        return web.json_response({"status": "ok", "listeners": len(request.app['registry'])})
