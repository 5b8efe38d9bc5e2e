"""Protocol adapter selection keyed on the configuration's protocol tag."""

import logging
from typing import Optional, Type, Union

from discovery_engine.config import settings
from discovery_engine.errors import InvalidConfigurationError
from discovery_engine.protocols.base import ProtocolAdapter
from discovery_engine.protocols.ftp import FtpAdapter
from discovery_engine.protocols.https import HttpsAdapter
from discovery_engine.protocols.object_storage import ObjectStorageAdapter
from discovery_engine.schemas import ProtocolType
from discovery_engine.secrets import EnvSecretResolver, SecretResolver

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[ProtocolType, Type[ProtocolAdapter]] = {
    ProtocolType.FTP: FtpAdapter,
    ProtocolType.HTTPS: HttpsAdapter,
    ProtocolType.OBJECT_STORAGE: ObjectStorageAdapter,
}

OPERATION_TIMEOUTS = {
    ProtocolType.FTP: lambda: settings.ftp_operation_timeout_seconds,
    ProtocolType.HTTPS: lambda: settings.https_operation_timeout_seconds,
    ProtocolType.OBJECT_STORAGE: lambda: settings.object_storage_operation_timeout_seconds,
}


class ProtocolAdapterFactory:
    """Creates one shared adapter per protocol, on first use."""

    def __init__(self, secrets: Optional[SecretResolver] = None):
        self.secrets = secrets or EnvSecretResolver()
        self._adapters: dict[ProtocolType, ProtocolAdapter] = {}

    def register(self, protocol: ProtocolType, adapter: ProtocolAdapter) -> None:
        """Install a specific adapter instance for a protocol."""
        self._adapters[ProtocolType(protocol)] = adapter

    def get(self, protocol: Union[ProtocolType, str]) -> ProtocolAdapter:
        try:
            tag = ProtocolType(protocol)
        except ValueError:
            raise InvalidConfigurationError(f"Unsupported protocol '{protocol}'") from None

        adapter = self._adapters.get(tag)
        if adapter is None:
            adapter = ADAPTER_CLASSES[tag](
                self.secrets,
                connect_timeout=settings.protocol_connect_timeout_seconds,
                operation_timeout=OPERATION_TIMEOUTS[tag](),
            )
            self._adapters[tag] = adapter
            logger.debug("Created %s adapter", tag.value)
        return adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
