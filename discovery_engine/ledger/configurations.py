"""Configuration persistence with write-time validation and optimistic concurrency."""

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Union
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from discovery_engine.db.models import FileCheckConfiguration
from discovery_engine.errors import (
    ConcurrencyConflict,
    ConfigurationNotFound,
    InvalidConfigurationError,
)
from discovery_engine.ledger.base import LedgerBase
from discovery_engine.protocols.matching import has_wildcards
from discovery_engine.scheduling import evaluator, tokens
from discovery_engine.schemas import (
    ConfigurationPayload,
    FtpSettings,
    HttpsSettings,
    ObjectStorageSettings,
)
from discovery_engine.utils.timeutils import to_db, utcnow

logger = logging.getLogger(__name__)


def parse_payload(payload: Union[ConfigurationPayload, dict[str, Any]]) -> ConfigurationPayload:
    if isinstance(payload, ConfigurationPayload):
        return payload
    try:
        return ConfigurationPayload.model_validate(payload)
    except ValidationError as e:
        # Field locations and messages only; input values may hold credentials
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise InvalidConfigurationError(f"Invalid configuration: {details}") from None


def validate_configuration(payload: ConfigurationPayload) -> None:
    """
    Validate everything that must be rejected before a configuration is stored.

    Raises:
        InvalidTokenPlacement: If a date token sits in a host, endpoint or bucket
        InvalidConfigurationError: For bad cron, timezone or protocol combinations
    """
    evaluator.validate_schedule(payload.schedule.cron_expression, payload.schedule.timezone)

    tokens.validate_pattern(payload.path_pattern, "path_pattern")
    tokens.validate_pattern(payload.name_pattern, "name_pattern")
    if "/" in payload.name_pattern:
        raise InvalidConfigurationError("name_pattern must not contain '/'")

    protocol_settings = payload.protocol_settings
    if isinstance(protocol_settings, FtpSettings):
        tokens.validate_host(protocol_settings.server, "server")
    elif isinstance(protocol_settings, HttpsSettings):
        tokens.validate_pattern(protocol_settings.base_url, "base_url")
        if protocol_settings.listing_mode == "probe" and has_wildcards(payload.name_pattern):
            raise InvalidConfigurationError(
                "HTTPS probe mode needs an exact name_pattern; use listing_mode "
                "'json_index' for wildcard matching"
            )
    elif isinstance(protocol_settings, ObjectStorageSettings):
        tokens.validate_host(protocol_settings.endpoint, "endpoint")
        tokens.validate_host(protocol_settings.bucket, "bucket")

    if not payload.notification_targets:
        raise InvalidConfigurationError("At least one notification target is required")


class ConfigurationStore(LedgerBase):
    """Tenant-scoped configuration records."""

    async def create(
        self,
        payload: Union[ConfigurationPayload, dict[str, Any]],
    ) -> FileCheckConfiguration:
        """
        Create a configuration; repeating the same identity is a no-op.

        Returns:
            The stored configuration (existing one on repeat)
        """
        payload = parse_payload(payload)
        validate_configuration(payload)

        existing = await self.get(payload.tenant_id, payload.id)
        if existing is not None:
            logger.debug("Configuration %s already exists; create is a no-op", payload.id)
            return existing

        record = FileCheckConfiguration(
            id=payload.id,
            tenant_id=payload.tenant_id,
            version=uuid4().hex,
            **self._columns(payload),
        )
        try:
            async with self.session() as db:
                db.add(record)
                await db.commit()
        except IntegrityError as e:
            existing = await self.get(payload.tenant_id, payload.id)
            if existing is not None:
                return existing
            raise InvalidConfigurationError(
                f"Configuration {payload.id} could not be stored for tenant {payload.tenant_id}"
            ) from e

        logger.info(
            "Created configuration %s for tenant %s (next run %s)",
            record.id,
            record.tenant_id,
            record.next_scheduled_run,
        )
        return record

    async def replace(
        self,
        tenant_id: str,
        configuration_id: str,
        payload: Union[ConfigurationPayload, dict[str, Any]],
        expected_version: str,
    ) -> FileCheckConfiguration:
        """
        Full replace guarded by the concurrency token.

        Raises:
            ConcurrencyConflict: If expected_version is stale
            ConfigurationNotFound: If the configuration does not exist
        """
        payload = parse_payload(payload)
        validate_configuration(payload)

        values = self._columns(payload)
        values["version"] = uuid4().hex
        values["updated_at"] = to_db(utcnow())
        await self._guarded_update(tenant_id, configuration_id, expected_version, values)
        return await self.get(tenant_id, configuration_id)

    async def deactivate(
        self,
        tenant_id: str,
        configuration_id: str,
        expected_version: str,
    ) -> None:
        """Soft delete; history stays queryable."""
        await self._guarded_update(
            tenant_id,
            configuration_id,
            expected_version,
            {
                "is_active": False,
                "next_scheduled_run": None,
                "version": uuid4().hex,
                "updated_at": to_db(utcnow()),
            },
        )
        logger.info("Deactivated configuration %s for tenant %s", configuration_id, tenant_id)

    async def get(self, tenant_id: str, configuration_id: str) -> Optional[FileCheckConfiguration]:
        async with self.session() as db:
            result = await db.execute(
                select(FileCheckConfiguration).where(
                    FileCheckConfiguration.tenant_id == tenant_id,
                    FileCheckConfiguration.id == configuration_id,
                )
            )
            return result.scalar_one_or_none()

    async def iter_active(self, page_size: int = 500) -> AsyncIterator[list[FileCheckConfiguration]]:
        """Yield pages of active configurations ordered by (tenant_id, id)."""
        last_key: Optional[tuple[str, str]] = None
        while True:
            query = select(FileCheckConfiguration).where(FileCheckConfiguration.is_active.is_(True))
            if last_key is not None:
                last_tenant, last_id = last_key
                query = query.where(
                    or_(
                        FileCheckConfiguration.tenant_id > last_tenant,
                        and_(
                            FileCheckConfiguration.tenant_id == last_tenant,
                            FileCheckConfiguration.id > last_id,
                        ),
                    )
                )
            query = query.order_by(
                FileCheckConfiguration.tenant_id,
                FileCheckConfiguration.id,
            ).limit(page_size)

            async with self.session() as db:
                result = await db.execute(query)
                page = list(result.scalars().all())

            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            last_key = (page[-1].tenant_id, page[-1].id)

    async def count_active(self) -> int:
        async with self.session() as db:
            result = await db.execute(
                select(func.count(FileCheckConfiguration.id)).where(
                    FileCheckConfiguration.is_active.is_(True)
                )
            )
            return int(result.scalar_one())

    async def record_schedule(
        self,
        tenant_id: str,
        configuration_id: str,
        last_executed_at: Optional[datetime],
        next_scheduled_run: Optional[datetime],
    ) -> None:
        """Engine write-back; leaves the concurrency token untouched."""
        values: dict[str, Any] = {"next_scheduled_run": to_db(next_scheduled_run)}
        if last_executed_at is not None:
            values["last_executed_at"] = to_db(last_executed_at)
        async with self.session() as db:
            await db.execute(
                update(FileCheckConfiguration)
                .where(
                    FileCheckConfiguration.tenant_id == tenant_id,
                    FileCheckConfiguration.id == configuration_id,
                )
                .values(**values)
            )
            await db.commit()

    async def _guarded_update(
        self,
        tenant_id: str,
        configuration_id: str,
        expected_version: str,
        values: dict[str, Any],
    ) -> None:
        async with self.session() as db:
            result = await db.execute(
                update(FileCheckConfiguration)
                .where(
                    FileCheckConfiguration.tenant_id == tenant_id,
                    FileCheckConfiguration.id == configuration_id,
                    FileCheckConfiguration.version == expected_version,
                )
                .values(**values)
            )
            await db.commit()

        if result.rowcount == 0:
            if await self.get(tenant_id, configuration_id) is None:
                raise ConfigurationNotFound(
                    f"Configuration {configuration_id} not found for tenant {tenant_id}"
                )
            raise ConcurrencyConflict(configuration_id, expected_version)

    @staticmethod
    def _columns(payload: ConfigurationPayload) -> dict[str, Any]:
        next_run = None
        if payload.is_active:
            next_run = evaluator.next_due(
                payload.schedule.cron_expression,
                payload.schedule.timezone,
                utcnow(),
            )
        return {
            "name": payload.name,
            "description": payload.description,
            "protocol": payload.protocol.value,
            "protocol_settings": payload.protocol_settings.model_dump(mode="json"),
            "path_pattern": payload.path_pattern,
            "name_pattern": payload.name_pattern,
            "file_extension": payload.file_extension,
            "cron_expression": payload.schedule.cron_expression,
            "timezone": payload.schedule.timezone,
            "notification_targets": [
                target.model_dump(mode="json") for target in payload.notification_targets
            ],
            "is_active": payload.is_active,
            "next_scheduled_run": to_db(next_run),
        }
