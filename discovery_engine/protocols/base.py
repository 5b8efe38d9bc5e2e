"""Protocol adapter interface for remote file listing."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Type

from pydantic import BaseModel, ValidationError

from discovery_engine.errors import ConnectionTimeout, InvalidConfigurationError
from discovery_engine.schemas import ProtocolType
from discovery_engine.secrets import SecretResolver

logger = logging.getLogger(__name__)


@dataclass
class FileRef:
    """A remote file found by an adapter. Contents are never fetched."""

    reference: str  # Canonical URL/path, stable across checks
    name: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ProtocolAdapter(ABC):
    """
    Lists candidate files on one kind of remote location.

    Subclasses map every library failure to exactly one of AuthenticationFailure,
    ConnectionTimeout, ProtocolError or InvalidConfigurationError, and never put
    resolved credentials into messages.
    """

    protocol: ProtocolType
    settings_model: Type[BaseModel]

    def __init__(
        self,
        secrets: SecretResolver,
        connect_timeout: float = 30.0,
        operation_timeout: float = 60.0,
    ):
        self.secrets = secrets
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout

    def parse_settings(self, raw: Any) -> BaseModel:
        """Validate stored protocol settings for this adapter."""
        if isinstance(raw, self.settings_model):
            return raw
        try:
            return self.settings_model.model_validate(raw)
        except ValidationError as e:
            raise InvalidConfigurationError(
                f"Invalid {self.protocol.value} settings: {e.error_count()} error(s)"
            ) from e

    async def list_candidates(
        self,
        settings: Any,
        resolved_path: str,
        resolved_name_pattern: str,
        file_extension: Optional[str] = None,
    ) -> list[FileRef]:
        """
        List files matching the resolved path and name pattern.

        Args:
            settings: Protocol settings (model or stored dict)
            resolved_path: Directory, prefix or URL path with tokens resolved
            resolved_name_pattern: File name or wildcard pattern with tokens resolved
            file_extension: Optional extension filter

        Returns:
            Matching files (empty when nothing is there yet)

        Raises:
            DiscoveryError: Categorized failure
        """
        parsed = self.parse_settings(settings)
        try:
            return await asyncio.wait_for(
                self._list(parsed, resolved_path, resolved_name_pattern, file_extension),
                timeout=self.operation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout(
                f"{self.protocol.value} listing exceeded {self.operation_timeout:.0f}s"
            ) from e

    async def test_connection(self, settings: Any) -> None:
        """Check connectivity and credentials without listing; raises on failure."""
        parsed = self.parse_settings(settings)
        try:
            await asyncio.wait_for(self._test_connection(parsed), timeout=self.operation_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout(
                f"{self.protocol.value} connection test exceeded {self.operation_timeout:.0f}s"
            ) from e

    @abstractmethod
    async def _list(
        self,
        settings: Any,
        resolved_path: str,
        resolved_name_pattern: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        pass

    @abstractmethod
    async def _test_connection(self, settings: Any) -> None:
        pass

    async def close(self) -> None:
        """Release shared resources."""
        return None
