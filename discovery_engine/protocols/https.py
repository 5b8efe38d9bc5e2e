"""HTTPS existence-probe and JSON index adapter."""

import logging
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

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
from discovery_engine.schemas import HttpsAuthType, HttpsSettings, ProtocolType
from discovery_engine.utils.timeutils import as_utc

logger = logging.getLogger(__name__)

# Servers that reject HEAD answer with one of these
HEAD_NOT_SUPPORTED = (405, 501)
NOT_FOUND = (404,)


def _parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def _content_length(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("content-length")
    if value and value.isdigit():
        return int(value)
    return None


def build_url(settings: HttpsSettings, resolved_path: str, name: Optional[str] = None) -> str:
    """Combine base URL, resolved path and optional file name.

    A resolved path that is already an absolute https URL replaces the base URL.
    """
    if resolved_path.lower().startswith("https://"):
        base, path = resolved_path.rstrip("/"), ""
    else:
        base, path = settings.base_url.rstrip("/"), resolved_path
    tail = join_path(path, name)
    return f"{base}/{tail}" if tail else base


class HttpsAdapter(ProtocolAdapter):
    """
    Probes for a single file (HEAD, GET fallback) or reads a JSON file index.

    404 means "not there yet"; 5xx and 429 are retryable; 401/403 are
    authentication failures; any other 4xx is a configuration error.
    """

    protocol = ProtocolType.HTTPS
    settings_model = HttpsSettings

    def __init__(
        self,
        *args,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._transport = transport

    async def _list(
        self,
        settings: HttpsSettings,
        resolved_path: str,
        resolved_name_pattern: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        headers, auth, secrets = await self._credentials(settings)
        try:
            async with self._client(settings, headers, auth) as client:
                if settings.listing_mode == "json_index":
                    return await self._list_index(
                        client, build_url(settings, resolved_path), resolved_name_pattern, file_extension
                    )
                return await self._probe(
                    client, settings, resolved_path, resolved_name_pattern, file_extension
                )
        except DiscoveryError:
            raise
        except httpx.HTTPError as e:
            raise self._map_transport_error(e, secrets) from None

    async def _test_connection(self, settings: HttpsSettings) -> None:
        headers, auth, secrets = await self._credentials(settings)
        try:
            async with self._client(settings, headers, auth) as client:
                response = await client.head(settings.base_url)
                if response.status_code in HEAD_NOT_SUPPORTED or response.status_code in NOT_FOUND:
                    return
                self._raise_for_status(response)
        except DiscoveryError:
            raise
        except httpx.HTTPError as e:
            raise self._map_transport_error(e, secrets) from None

    def _client(self, settings: HttpsSettings, headers: dict[str, str], auth) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.operation_timeout,
            connect=min(settings.connection_timeout_seconds, self.connect_timeout),
        )
        return httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            auth=auth,
            follow_redirects=settings.follow_redirects and settings.max_redirects > 0,
            max_redirects=settings.max_redirects,
            transport=self._transport,
        )

    async def _credentials(self, settings: HttpsSettings):
        headers = {"Accept": "application/json, */*;q=0.8", "User-Agent": "file-discovery-engine"}
        auth = None
        secrets: list[str] = []

        if settings.auth_type == HttpsAuthType.BASIC:
            password = await self.secrets.resolve(settings.password_secret_name)
            auth = httpx.BasicAuth(settings.username, password)
            secrets.append(password)
        elif settings.auth_type == HttpsAuthType.BEARER:
            token = await self.secrets.resolve(settings.token_secret_name)
            headers["Authorization"] = f"Bearer {token}"
            secrets.append(token)
        elif settings.auth_type == HttpsAuthType.API_KEY:
            api_key = await self.secrets.resolve(settings.api_key_secret_name)
            headers[settings.api_key_header] = api_key
            secrets.append(api_key)

        return headers, auth, secrets

    async def _probe(
        self,
        client: httpx.AsyncClient,
        settings: HttpsSettings,
        resolved_path: str,
        name: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        if file_extension and not matches(name, "*", file_extension):
            return []

        url = build_url(settings, resolved_path, name)
        response = await client.head(url)
        if response.status_code in HEAD_NOT_SUPPORTED:
            # Stream so the body is never downloaded
            async with client.stream("GET", url) as streamed:
                return self._probe_result(url, name, streamed)
        return self._probe_result(url, name, response)

    def _probe_result(self, url: str, name: str, response: httpx.Response) -> list[FileRef]:
        if response.status_code in NOT_FOUND:
            logger.debug("HTTPS probe %s: not present", url)
            return []
        self._raise_for_status(response)

        metadata = {}
        if response.headers.get("etag"):
            metadata["etag"] = response.headers["etag"]
        if response.headers.get("content-type"):
            metadata["content_type"] = response.headers["content-type"]

        return [
            FileRef(
                reference=url,
                name=name,
                size=_content_length(response),
                last_modified=_parse_http_date(response.headers.get("last-modified")),
                metadata=metadata,
            )
        ]

    async def _list_index(
        self,
        client: httpx.AsyncClient,
        url: str,
        pattern: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        response = await client.get(url)
        if response.status_code in NOT_FOUND:
            return []
        self._raise_for_status(response)

        try:
            entries = response.json()
        except ValueError as e:
            raise ProtocolError(f"HTTPS index at {url} did not return valid JSON") from e
        if not isinstance(entries, list):
            raise InvalidConfigurationError(f"HTTPS index at {url} must return a JSON array")

        files = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            fields = {str(key).lower(): value for key, value in entry.items()}
            name = fields.get("name") or ""
            if not matches(name, pattern, file_extension):
                continue
            size = fields.get("size")
            files.append(
                FileRef(
                    reference=fields.get("url") or f"{url.rstrip('/')}/{name}",
                    name=name,
                    size=size if isinstance(size, int) and size > 0 else None,
                    last_modified=_parse_iso(fields.get("lastmodified")),
                    metadata={
                        "content_type": fields.get("contenttype") or "unknown",
                        "etag": fields.get("etag") or "",
                    },
                )
            )
        return files

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 300:
            return
        url = str(response.url).split("?", 1)[0]
        if status in (401, 403):
            raise AuthenticationFailure(f"HTTPS {status} from {url}")
        if status == 429 or status >= 500:
            raise ProtocolError(f"HTTPS {status} from {url}")
        raise InvalidConfigurationError(f"HTTPS {status} from {url}")

    @staticmethod
    def _map_transport_error(exc: httpx.HTTPError, secrets: list[str]) -> DiscoveryError:
        name = exc.__class__.__name__
        if isinstance(exc, httpx.TimeoutException):
            return ConnectionTimeout(f"HTTPS request timed out ({name})")
        if isinstance(exc, httpx.TooManyRedirects):
            return InvalidConfigurationError("HTTPS redirect limit exceeded")
        if isinstance(exc, httpx.UnsupportedProtocol):
            return InvalidConfigurationError(f"HTTPS URL not supported ({name})")
        return ProtocolError(redact(f"HTTPS request failed ({name}: {exc})", secrets))
