"""
Configuration Settings Module

This module provides configuration management for the SCPKeeper application.
It handles loading and validation of application settings from YAML configuration files.

Classes:
    Settings: Main configuration class that manages all application settings
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_AE_TITLE = "RECEIVER"
DEFAULT_PORT = 11112


class Settings(BaseModel):
    """
    Main configuration class that manages all application settings.

    The configuration is split into loosely typed sections, each a plain
    dictionary, so that the application can start even if specific sections
    are not defined in the configuration file. Typed access with defaults
    goes through the accessor methods below.

    Attributes:
        http_server (Dict[str, Any]): Bind address of the HTTP API
        listener (Dict[str, Any]): storescp launch options (defaults, binary
            override, grace period, orphan sweep)
        storage (Dict[str, Any]): Root directory and watcher settle delay
        metadata (Dict[str, Any]): Metadata extraction backend and options
        sender (Dict[str, Any]): storescu options
        echo (Dict[str, Any]): C-ECHO probe options
        logging (Dict[str, Any]): Logging level and log file
    """

    http_server: Dict[str, Any] = Field(default_factory=dict)
    listener: Dict[str, Any] = Field(default_factory=dict)
    storage: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sender: Dict[str, Any] = Field(default_factory=dict)
    echo: Dict[str, Any] = Field(default_factory=dict)
    logging: Dict[str, Any] = Field(default_factory=dict)

    # -----------------------------------------------------------------
    # Storage
    # -----------------------------------------------------------------
    @property
    def storage_root(self) -> Path:
        return Path(self.storage.get("root", "data")).resolve()

    def receive_directory(self, user_id: str) -> Path:
        """Return the reception directory of ``user_id``."""
        return self.storage_root / "receives" / user_id

    def upload_directory(self, user_id: str) -> Path:
        """Return the upload directory of ``user_id``."""
        return self.storage_root / "uploads" / user_id

    @property
    def settle_delay(self) -> float:
        return float(self.storage.get("settle_delay", 1.0))

    # -----------------------------------------------------------------
    # Listener
    # -----------------------------------------------------------------
    @property
    def default_ae_title(self) -> str:
        return str(self.listener.get("default_ae_title", DEFAULT_AE_TITLE))

    @property
    def default_port(self) -> int:
        return int(self.listener.get("default_port", DEFAULT_PORT))

    @property
    def storescp_override(self) -> Optional[str]:
        """
        Explicit storescp path, if any.

        The configuration file takes precedence over the ``DCMTK_STORESCP``
        environment variable.
        """
        return self.listener.get("storescp_path") or os.environ.get("DCMTK_STORESCP")

    @property
    def grace_period(self) -> float:
        return float(self.listener.get("grace_period", 0.4))

    @property
    def sweep_orphans(self) -> bool:
        return bool(self.listener.get("sweep_orphans", True))

    @property
    def stop_timeout(self) -> float:
        return float(self.listener.get("stop_timeout", 5.0))

    # -----------------------------------------------------------------
    # External tools
    # -----------------------------------------------------------------
    @property
    def metadata_backend(self) -> str:
        return str(self.metadata.get("backend", "pydicom")).lower()

    @property
    def dcmdump_path(self) -> str:
        return self.metadata.get("dcmdump_path") or os.environ.get("DCMTK_DCMDUMP") or _tool_name("dcmdump")

    @property
    def metadata_timeout(self) -> Optional[float]:
        value = self.metadata.get("timeout", 30)
        return float(value) if value is not None else None

    @property
    def storescu_path(self) -> str:
        return self.sender.get("storescu_path") or os.environ.get("DCMTK_STORESCU") or _tool_name("storescu")

    @property
    def sender_timeout(self) -> Optional[float]:
        value = self.sender.get("timeout")
        return float(value) if value is not None else None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """
        Load application settings from a YAML configuration file.

        The method follows this priority order for configuration file loading:
        1. Custom config_path if provided
        2. The file named by the ``SCPKEEPER_CONFIG`` environment variable
        3. config/settings.yaml if it exists
        4. config/settings.yaml.example as fallback

        When none of the default locations exist, a Settings instance with
        built-in defaults is returned.

        Args:
            config_path (Path, optional): Custom path to configuration file.

        Returns:
            Settings: A validated Settings instance containing all configuration data

        Raises:
            FileNotFoundError: If an explicitly requested file does not exist
            yaml.YAMLError: If the configuration file contains invalid YAML
            ValidationError: If the configuration data doesn't match expected schema
        """
        if config_path is None and os.environ.get("SCPKEEPER_CONFIG"):
            config_path = Path(os.environ["SCPKEEPER_CONFIG"])

        if config_path is None:
            for candidate in (Path("config/settings.yaml"), Path("config/settings.yaml.example")):
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                return cls()

        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)


def _tool_name(name: str) -> str:
    return f"{name}.exe" if sys.platform == "win32" else name
