"""S3-compatible object storage adapter (minio client).

The minio client is synchronous; listings run in a worker thread.
"""

import asyncio
import logging
import posixpath
from typing import Any, Callable, Optional

import urllib3
from minio import Minio
from minio.credentials import IamAwsProvider
from minio.error import InvalidResponseError, S3Error, ServerError
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import MaxRetryError
from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

from discovery_engine.errors import (
    AuthenticationFailure,
    ConnectionTimeout,
    DiscoveryError,
    InvalidConfigurationError,
    ProtocolError,
    redact,
)
from discovery_engine.protocols.base import FileRef, ProtocolAdapter
from discovery_engine.protocols.matching import join_path, matches
from discovery_engine.schemas import ObjectStorageAuthType, ObjectStorageSettings, ProtocolType
from discovery_engine.utils.timeutils import as_utc

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "AccountProblem",
}
CONFIG_ERROR_CODES = {"NoSuchBucket", "InvalidBucketName", "AuthorizationHeaderMalformed"}
TRANSIENT_ERROR_CODES = {"SlowDown", "InternalError", "ServiceUnavailable", "RequestTimeout"}


class ObjectStorageAdapter(ProtocolAdapter):
    """
    Lists objects under ``prefix/resolved_path/`` and filters them by name.

    Authenticates with a managed identity (instance/IRSA credentials) or an access
    key pair referenced by secret name.
    """

    protocol = ProtocolType.OBJECT_STORAGE
    settings_model = ObjectStorageSettings

    def __init__(
        self,
        *args,
        client_factory: Optional[Callable[..., Any]] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._client_factory = client_factory or Minio

    async def _list(
        self,
        settings: ObjectStorageSettings,
        resolved_path: str,
        resolved_name_pattern: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        client, secrets = await self._client(settings)
        prefix = join_path(settings.prefix, resolved_path)
        if prefix:
            prefix += "/"

        try:
            objects = await asyncio.to_thread(self._list_blocking, client, settings.bucket, prefix)
        except DiscoveryError:
            raise
        except Exception as e:
            raise self._map_error(e, settings, secrets) from None

        scheme = "https" if settings.secure else "http"
        files = []
        for obj in objects:
            if getattr(obj, "is_dir", False):
                continue
            name = posixpath.basename(obj.object_name)
            if not matches(name, resolved_name_pattern, file_extension):
                continue
            files.append(
                FileRef(
                    reference=f"{scheme}://{settings.endpoint}/{settings.bucket}/{obj.object_name}",
                    name=name,
                    size=obj.size,
                    last_modified=as_utc(obj.last_modified),
                    metadata={"etag": obj.etag or ""},
                )
            )
        return files

    async def _test_connection(self, settings: ObjectStorageSettings) -> None:
        client, secrets = await self._client(settings)
        try:
            exists = await asyncio.to_thread(client.bucket_exists, settings.bucket)
        except Exception as e:
            raise self._map_error(e, settings, secrets) from None
        if not exists:
            raise InvalidConfigurationError(f"Bucket '{settings.bucket}' does not exist")

    @staticmethod
    def _list_blocking(client, bucket: str, prefix: str) -> list:
        return list(client.list_objects(bucket, prefix=prefix or None, recursive=False))

    async def _client(self, settings: ObjectStorageSettings):
        http_client = urllib3.PoolManager(
            timeout=urllib3.Timeout(connect=self.connect_timeout, read=self.operation_timeout),
            retries=False,
        )
        options: dict[str, Any] = {
            "secure": settings.secure,
            "region": settings.region,
            "http_client": http_client,
        }
        secrets: list[str] = []
        if settings.auth_type == ObjectStorageAuthType.ACCESS_KEY:
            access_key = await self.secrets.resolve(settings.access_key_secret_name)
            secret_key = await self.secrets.resolve(settings.secret_key_secret_name)
            options.update(access_key=access_key, secret_key=secret_key)
            secrets.extend([access_key, secret_key])
        else:
            options["credentials"] = IamAwsProvider()

        try:
            return self._client_factory(settings.endpoint, **options), secrets
        except ValueError as e:
            raise InvalidConfigurationError(
                f"Invalid object storage endpoint '{settings.endpoint}': {redact(str(e), secrets)}"
            ) from None

    def _map_error(
        self,
        exc: Exception,
        settings: ObjectStorageSettings,
        secrets: list[str],
    ) -> DiscoveryError:
        where = f"{settings.endpoint}/{settings.bucket}"

        if isinstance(exc, S3Error):
            code = exc.code or ""
            if code in AUTH_ERROR_CODES:
                return AuthenticationFailure(f"{where}: {code}")
            if code in CONFIG_ERROR_CODES:
                return InvalidConfigurationError(f"{where}: {code}")
            if code in TRANSIENT_ERROR_CODES:
                return ProtocolError(f"{where}: {code}")
            return ProtocolError(f"{where}: {code or 'S3 error'}")
        if isinstance(exc, (ServerError, InvalidResponseError)):
            return ProtocolError(f"{where}: server error ({exc.__class__.__name__})")
        if isinstance(exc, Urllib3TimeoutError):
            return ConnectionTimeout(f"{where}: timed out")
        if isinstance(exc, MaxRetryError):
            if isinstance(exc.reason, Urllib3TimeoutError):
                return ConnectionTimeout(f"{where}: timed out")
            return ProtocolError(f"{where}: connection failed ({exc.reason.__class__.__name__})")
        if isinstance(exc, (Urllib3HTTPError, OSError)):
            return ProtocolError(f"{where}: connection failed ({exc.__class__.__name__})")
        if isinstance(exc, ValueError):
            # Credential providers raise ValueError when no identity is available
            return AuthenticationFailure(
                f"{where}: credentials unavailable ({redact(str(exc), secrets)})"
            )
        return ProtocolError(f"{where}: {exc.__class__.__name__}")
