"""Shared fixtures: sqlite-backed stores and in-memory collaborators."""

import asyncio
from typing import Any, Optional
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from discovery_engine.db.models import Base
from discovery_engine.errors import NotificationError
from discovery_engine.ledger.configurations import ConfigurationStore
from discovery_engine.ledger.discovery import DiscoveryLedger
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.notify.emitter import NotificationEmitter
from discovery_engine.protocols.base import ProtocolAdapter
from discovery_engine.protocols.factory import ProtocolAdapterFactory
from discovery_engine.schemas import HttpsSettings, ProtocolType
from discovery_engine.secrets import SecretResolver
from discovery_engine.worker.lease import LeaseProvider


class DictSecretResolver(SecretResolver):
    def __init__(self, values: Optional[dict[str, str]] = None):
        self.values = values or {}

    async def _lookup(self, name: str) -> Optional[str]:
        return self.values.get(name)


class FakeLeaseProvider(LeaseProvider):
    """In-memory leases; ``held`` maps lease subject to token."""

    def __init__(self):
        self.held: dict[str, str] = {}
        self.released: list[str] = []

    async def acquire(self, configuration_id: str, ttl_seconds: int) -> Optional[str]:
        if configuration_id in self.held:
            return None
        token = uuid4().hex
        self.held[configuration_id] = token
        return token

    async def release(self, configuration_id: str, token: str) -> bool:
        if self.held.get(configuration_id) != token:
            return False
        del self.held[configuration_id]
        self.released.append(configuration_id)
        return True

    async def refresh(self, configuration_id: str, token: str, ttl_seconds: int) -> bool:
        return self.held.get(configuration_id) == token


class RecordingEmitter(NotificationEmitter):
    def __init__(self, failing_destinations: Optional[set[str]] = None):
        self.sent: list[tuple[str, Any]] = []
        self.failing_destinations = failing_destinations or set()

    async def emit(self, destination: str, message) -> None:
        if destination in self.failing_destinations:
            raise NotificationError(f"Delivery to {destination} refused")
        self.sent.append((destination, message))


class ScriptedAdapter(ProtocolAdapter):
    """
    HTTPS-tagged adapter returning scripted outcomes.

    Each call pops the next outcome (an exception is raised, a list is returned);
    once the script is exhausted ``files`` is returned.
    """

    protocol = ProtocolType.HTTPS
    settings_model = HttpsSettings

    def __init__(self, outcomes=None, files=None, delay: float = 0.0):
        super().__init__(DictSecretResolver(), operation_timeout=60)
        self.outcomes = list(outcomes or [])
        self.files = list(files or [])
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def _list(self, settings, resolved_path, resolved_name_pattern, file_extension):
        self.calls.append((resolved_path, resolved_name_pattern))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return list(self.files)

    async def _test_connection(self, settings) -> None:
        return None


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed sqlite database with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'discovery.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def configuration_store(session_factory) -> ConfigurationStore:
    return ConfigurationStore(session_factory)


@pytest.fixture
def execution_ledger(session_factory) -> ExecutionLedger:
    return ExecutionLedger(session_factory)


@pytest.fixture
def discovery_ledger(session_factory) -> DiscoveryLedger:
    return DiscoveryLedger(session_factory)


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def leases() -> FakeLeaseProvider:
    return FakeLeaseProvider()


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def adapter_factory(adapter) -> ProtocolAdapterFactory:
    factory = ProtocolAdapterFactory(secrets=DictSecretResolver())
    factory.register(ProtocolType.HTTPS, adapter)
    return factory


@pytest.fixture
def make_payload():
    """Build an HTTPS configuration payload dict with overrides."""

    def _make(**overrides) -> dict[str, Any]:
        payload = {
            "id": str(uuid4()),
            "tenant_id": "tenant-a",
            "name": "Daily settlement report",
            "protocol_settings": {
                "protocol": "https",
                "base_url": "https://files.example.com",
            },
            "path_pattern": "/rpt",
            "name_pattern": "{yyyy}{mm}{dd}.csv",
            "schedule": {"cron_expression": "* * * * *", "timezone": "UTC"},
            "notification_targets": [
                {
                    "kind": "event",
                    "message_type": "SettlementFileArrived",
                    "destination": "https://hooks.example.com/files",
                    "static_payload": {"pipeline": "settlement"},
                }
            ],
        }
        payload.update(overrides)
        return payload

    return _make
