"""Secret reference resolution.

Configurations only ever carry secret *names*. Values are looked up when an
adapter needs them and are registered with the log redaction filter.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Optional

from discovery_engine.config import settings
from discovery_engine.errors import InvalidConfigurationError
from discovery_engine.logging_config import register_secret

logger = logging.getLogger(__name__)


class SecretResolver(ABC):
    """Resolves a secret name to its current value."""

    @abstractmethod
    async def _lookup(self, name: str) -> Optional[str]:
        pass

    async def resolve(self, name: Optional[str]) -> str:
        """
        Resolve a secret by name.

        Raises:
            InvalidConfigurationError: If the name is empty or the secret is missing
        """
        if not name:
            raise InvalidConfigurationError("Secret name is required")
        value = await self._lookup(name)
        if not value:
            # Name only; the value is never logged
            logger.warning("Secret '%s' could not be resolved", name)
            raise InvalidConfigurationError(f"Secret '{name}' is not available")
        register_secret(value)
        return value


class EnvSecretResolver(SecretResolver):
    """Reads secrets from environment variables (``<prefix><NAME>``)."""

    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix if prefix is not None else settings.secret_env_prefix

    def env_var(self, name: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", name).upper()

    async def _lookup(self, name: str) -> Optional[str]:
        return os.getenv(self.env_var(name))
