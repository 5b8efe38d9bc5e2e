"""FTP/FTPS listing adapter.

ftplib is blocking, so every session runs in a worker thread.
"""

import asyncio
import ftplib
import logging
import posixpath
import socket
import ssl
from contextlib import suppress
from datetime import datetime, timezone
from typing import Callable, Optional

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
from discovery_engine.schemas import FtpSettings, ProtocolType

logger = logging.getLogger(__name__)

# Replies that mean the server does not implement MLSD
MLSD_UNSUPPORTED = ("500", "501", "502", "504")


def _reply_code(exc: Exception) -> str:
    return str(exc)[:3]


def _parse_ftp_time(value: Optional[str]) -> Optional[datetime]:
    """Parse MLSD ``modify`` / MDTM values (YYYYMMDDHHMMSS[.sss], UTC)."""
    if not value:
        return None
    value = value.strip().split(".")[0]
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class FtpAdapter(ProtocolAdapter):
    """
    Lists a directory over FTP (explicit TLS and passive mode by default).

    Missing directories (550) mean nothing has been published yet and yield
    no candidates.
    """

    protocol = ProtocolType.FTP
    settings_model = FtpSettings

    def __init__(
        self,
        *args,
        client_factory: Optional[Callable[[FtpSettings, float], ftplib.FTP]] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._client_factory = client_factory or self._default_client

    def _default_client(self, settings: FtpSettings, timeout: float) -> ftplib.FTP:
        if settings.use_tls:
            return ftplib.FTP_TLS(timeout=timeout)
        return ftplib.FTP(timeout=timeout)

    async def _list(
        self,
        settings: FtpSettings,
        resolved_path: str,
        resolved_name_pattern: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        password = await self.secrets.resolve(settings.password_secret_name)
        try:
            return await asyncio.to_thread(
                self._list_blocking,
                settings,
                password,
                resolved_path,
                resolved_name_pattern,
                file_extension,
            )
        except DiscoveryError:
            raise
        except Exception as e:
            raise self._map_error(e, settings, password) from None

    async def _test_connection(self, settings: FtpSettings) -> None:
        password = await self.secrets.resolve(settings.password_secret_name)
        try:
            await asyncio.to_thread(self._probe_blocking, settings, password)
        except DiscoveryError:
            raise
        except Exception as e:
            raise self._map_error(e, settings, password) from None

    def _connect(self, settings: FtpSettings, password: str) -> ftplib.FTP:
        timeout = min(settings.connection_timeout_seconds, self.connect_timeout)
        client = self._client_factory(settings, timeout)
        try:
            client.connect(settings.server, settings.port, timeout=timeout)
            client.login(settings.username, password)
            if settings.use_tls:
                client.prot_p()
            client.set_pasv(settings.passive_mode)
        except Exception:
            with suppress(OSError):
                client.close()
            raise
        return client

    @staticmethod
    def _disconnect(client: ftplib.FTP) -> None:
        try:
            client.quit()
        except (ftplib.Error, OSError, EOFError):
            with suppress(OSError):
                client.close()

    def _probe_blocking(self, settings: FtpSettings, password: str) -> None:
        client = self._connect(settings, password)
        try:
            client.pwd()
        finally:
            self._disconnect(client)

    def _list_blocking(
        self,
        settings: FtpSettings,
        password: str,
        resolved_path: str,
        resolved_name_pattern: str,
        file_extension: Optional[str],
    ) -> list[FileRef]:
        directory = "/" + join_path(resolved_path)
        client = self._connect(settings, password)
        try:
            try:
                client.cwd(directory)
            except ftplib.error_perm as e:
                if _reply_code(e) == "550":
                    logger.debug("FTP directory %s not present on %s", directory, settings.server)
                    return []
                raise

            entries = self._read_listing(client, resolved_name_pattern, file_extension)
        finally:
            self._disconnect(client)

        base = f"ftp://{settings.server}:{settings.port}"
        return [
            FileRef(
                reference=base + posixpath.join(directory, name),
                name=name,
                size=size,
                last_modified=modified,
            )
            for name, size, modified in entries
        ]

    def _read_listing(
        self,
        client: ftplib.FTP,
        pattern: str,
        file_extension: Optional[str],
    ) -> list[tuple[str, Optional[int], Optional[datetime]]]:
        try:
            listing = list(client.mlsd(facts=["type", "size", "modify"]))
        except ftplib.error_perm as e:
            if _reply_code(e) not in MLSD_UNSUPPORTED:
                raise
            return self._read_listing_nlst(client, pattern, file_extension)

        entries = []
        for name, facts in listing:
            if facts.get("type", "file").lower() != "file":
                continue
            if not matches(name, pattern, file_extension):
                continue
            size = facts.get("size")
            entries.append((
                name,
                int(size) if size and size.isdigit() else None,
                _parse_ftp_time(facts.get("modify")),
            ))
        return entries

    def _read_listing_nlst(
        self,
        client: ftplib.FTP,
        pattern: str,
        file_extension: Optional[str],
    ) -> list[tuple[str, Optional[int], Optional[datetime]]]:
        try:
            names = client.nlst()
        except ftplib.error_perm as e:
            # Some servers answer an empty directory with 550/450
            if _reply_code(e) == "550":
                return []
            raise

        with suppress(ftplib.error_perm):
            client.voidcmd("TYPE I")

        entries = []
        for raw_name in names:
            name = posixpath.basename(raw_name.rstrip("/"))
            if name in (".", "..") or not matches(name, pattern, file_extension):
                continue
            size = None
            modified = None
            with suppress(ftplib.error_perm, ValueError):
                size = client.size(name)
            with suppress(ftplib.error_perm):
                modified = _parse_ftp_time(client.sendcmd(f"MDTM {name}")[4:])
            entries.append((name, size, modified))
        return entries

    def _map_error(self, exc: Exception, settings: FtpSettings, password: str) -> DiscoveryError:
        where = f"FTP {settings.server}:{settings.port}"
        detail = redact(str(exc), [password])

        if isinstance(exc, ftplib.error_perm):
            if _reply_code(exc) in ("530", "532"):
                return AuthenticationFailure(f"{where}: login rejected ({detail})")
            return InvalidConfigurationError(f"{where}: {detail}")
        if isinstance(exc, ftplib.error_temp):
            return ProtocolError(f"{where}: transient reply ({detail})")
        if isinstance(exc, (ftplib.error_proto, ftplib.error_reply, EOFError)):
            return ProtocolError(f"{where}: unexpected reply ({exc.__class__.__name__})")
        if isinstance(exc, (socket.timeout, TimeoutError)):
            return ConnectionTimeout(f"{where}: timed out")
        if isinstance(exc, ssl.SSLError):
            return ProtocolError(f"{where}: TLS negotiation failed ({exc.__class__.__name__})")
        if isinstance(exc, OSError):
            return ProtocolError(f"{where}: connection failed ({exc.__class__.__name__})")
        return ProtocolError(f"{where}: {exc.__class__.__name__}")
