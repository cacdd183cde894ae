"""Pydantic models describing a mailcache session configuration."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from ..core.modes import DEFAULT_MODE, OperationMode
from ..utils.ids import checksum


class ConnectionSettings(BaseModel):
    """IMAP server coordinates and credentials."""

    model_config = ConfigDict(extra="forbid")

    host: Optional[str] = None
    port: Optional[int] = Field(default=None, gt=0, lt=65536)
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    ssl: bool = True
    timeout: Optional[float] = Field(default=None, gt=0)

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return 993 if self.ssl else 143

    @property
    def complete(self) -> bool:
        """True when host, username and password are all present."""

        return bool(self.host and self.username and self.password and self.password.get_secret_value())

    def secret(self) -> str:
        return self.password.get_secret_value() if self.password is not None else ""


class CacheSettings(BaseModel):
    """Local cache directory and content caching policy."""

    model_config = ConfigDict(extra="forbid")

    directory: Path
    cache_attachments: bool = True
    commit_after_write: bool = False

    @field_validator("directory", mode="before")
    @classmethod
    def _expand(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        return value


class StoreSettings(BaseModel):
    """Everything needed to open one store."""

    model_config = ConfigDict(extra="forbid")

    mode: OperationMode = DEFAULT_MODE
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    cache: CacheSettings

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: Any) -> Any:
        if value is None:
            return DEFAULT_MODE
        return OperationMode.parse(value)

    def fingerprint(self) -> str:
        """Stable digest of the parameters that identify a session.

        The password contributes only through its own digest so the
        fingerprint can be logged.
        """

        payload: Dict[str, Any] = {
            "host": self.connection.host,
            "port": self.connection.effective_port,
            "username": self.connection.username,
            "ssl": self.connection.ssl,
            "password": checksum(self.connection.secret().encode("utf-8")),
            "mode": self.mode.value,
            "directory": str(self.cache.directory),
        }
        return checksum(json.dumps(payload, sort_keys=True).encode("utf-8"))
