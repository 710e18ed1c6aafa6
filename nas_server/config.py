"""
Server configuration.

Values come from environment variables; the command line (see __main__)
overrides them. Invalid numeric values fall back to the defaults with a
warning.

Environment Variables:
    NAS_DATA_DIR: Directory for the database, password, repos and logs (default: /data)
    NAS_HOST: Address the API listens on (default: 0.0.0.0)
    NAS_PORT: Port the API listens on (default: 13000)
    NAS_PORT_RANGE_START: First host port handed to apps (default: 13001)
    NAS_PORT_RANGE_END: Last host port handed to apps (default: 13999)
    NAS_BUILD_TIMEOUT: Wall-clock limit in seconds for background builds (default: 1800)
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from nas_controller.port_allocator import PORT_RANGE_END, PORT_RANGE_START

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "/data"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 13000
DEFAULT_BUILD_TIMEOUT = 1800.0


def _positive_number(environ: Mapping[str, str], name: str, default, cast=int):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    return value


@dataclass
class Settings:
    """Runtime configuration of the controller server."""

    data_dir: str = DEFAULT_DATA_DIR
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    port_range_start: int = PORT_RANGE_START
    port_range_end: int = PORT_RANGE_END
    build_timeout: float = DEFAULT_BUILD_TIMEOUT

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / "controller.db")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Settings with defaults for anything unset or invalid
        """
        environ = os.environ if environ is None else environ
        settings = cls(
            data_dir=environ.get("NAS_DATA_DIR") or DEFAULT_DATA_DIR,
            host=environ.get("NAS_HOST") or DEFAULT_HOST,
            port=_positive_number(environ, "NAS_PORT", DEFAULT_PORT),
            port_range_start=_positive_number(environ, "NAS_PORT_RANGE_START", PORT_RANGE_START),
            port_range_end=_positive_number(environ, "NAS_PORT_RANGE_END", PORT_RANGE_END),
            build_timeout=_positive_number(
                environ, "NAS_BUILD_TIMEOUT", DEFAULT_BUILD_TIMEOUT, cast=float
            ),
        )

        if settings.port_range_start > settings.port_range_end:
            logger.warning(
                f"Invalid port range {settings.port_range_start}-{settings.port_range_end}, "
                f"using {PORT_RANGE_START}-{PORT_RANGE_END}"
            )
            settings.port_range_start = PORT_RANGE_START
            settings.port_range_end = PORT_RANGE_END

        return settings
