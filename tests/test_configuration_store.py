"""Tests for configuration validation, idempotent create and optimistic concurrency."""

import pytest
from sqlalchemy import update

from discovery_engine.db.models import FileCheckConfiguration
from discovery_engine.errors import (
    ConcurrencyConflict,
    ConfigurationNotFound,
    InvalidConfigurationError,
    InvalidTokenPlacement,
)
from discovery_engine.utils.timeutils import utcnow


@pytest.mark.asyncio
async def test_create_is_idempotent(configuration_store, make_payload):
    payload = make_payload(id="cfg-1")

    first = await configuration_store.create(payload)
    second = await configuration_store.create(payload)

    assert first.id == second.id == "cfg-1"
    assert first.version == second.version
    assert await configuration_store.count_active() == 1


@pytest.mark.asyncio
async def test_create_computes_next_run(configuration_store, make_payload):
    record = await configuration_store.create(make_payload())

    assert record.next_scheduled_run is not None
    assert record.protocol == "https"
    assert record.protocol_settings["base_url"] == "https://files.example.com"
    assert record.notification_targets[0]["message_type"] == "SettlementFileArrived"


@pytest.mark.asyncio
async def test_replace_with_stale_version_conflicts(configuration_store, make_payload):
    payload = make_payload(id="cfg-2")
    record = await configuration_store.create(payload)

    updated = await configuration_store.replace(
        "tenant-a", "cfg-2", {**payload, "name": "Renamed"}, record.version
    )
    assert updated.name == "Renamed"
    assert updated.version != record.version

    with pytest.raises(ConcurrencyConflict):
        await configuration_store.replace(
            "tenant-a", "cfg-2", {**payload, "name": "Lost update"}, record.version
        )

    current = await configuration_store.get("tenant-a", "cfg-2")
    assert current.name == "Renamed"


@pytest.mark.asyncio
async def test_replace_missing_configuration(configuration_store, make_payload):
    with pytest.raises(ConfigurationNotFound):
        await configuration_store.replace(
            "tenant-a", "missing", make_payload(id="missing"), "0" * 32
        )


@pytest.mark.asyncio
async def test_configurations_are_tenant_scoped(configuration_store, make_payload):
    await configuration_store.create(make_payload(id="cfg-3"))

    assert await configuration_store.get("tenant-b", "cfg-3") is None
    with pytest.raises(ConfigurationNotFound):
        await configuration_store.deactivate("tenant-b", "cfg-3", "0" * 32)


@pytest.mark.asyncio
async def test_deactivate_is_soft_delete(configuration_store, make_payload):
    record = await configuration_store.create(make_payload(id="cfg-4"))

    await configuration_store.deactivate("tenant-a", "cfg-4", record.version)

    stored = await configuration_store.get("tenant-a", "cfg-4")
    assert stored is not None
    assert stored.is_active is False
    assert stored.next_scheduled_run is None
    assert await configuration_store.count_active() == 0
    pages = [page async for page in configuration_store.iter_active()]
    assert pages == []


@pytest.mark.asyncio
async def test_iter_active_pages(configuration_store, make_payload):
    for index in range(5):
        await configuration_store.create(make_payload(id=f"cfg-{index:02d}"))

    pages = [page async for page in configuration_store.iter_active(page_size=2)]

    assert [len(page) for page in pages] == [2, 2, 1]
    assert [c.id for page in pages for c in page] == [f"cfg-{i:02d}" for i in range(5)]


@pytest.mark.asyncio
async def test_same_id_in_two_tenants(configuration_store, make_payload):
    first = await configuration_store.create(make_payload(id="cfg-shared", name="Tenant A feed"))
    second = await configuration_store.create(
        make_payload(id="cfg-shared", tenant_id="tenant-b", name="Tenant B feed")
    )

    assert first.tenant_id == "tenant-a"
    assert second.tenant_id == "tenant-b"
    assert (await configuration_store.get("tenant-a", "cfg-shared")).name == "Tenant A feed"
    assert (await configuration_store.get("tenant-b", "cfg-shared")).name == "Tenant B feed"

    await configuration_store.deactivate("tenant-b", "cfg-shared", second.version)
    assert (await configuration_store.get("tenant-a", "cfg-shared")).is_active is True


@pytest.mark.asyncio
async def test_iter_active_pages_across_tenants(configuration_store, make_payload):
    for tenant in ("tenant-b", "tenant-a"):
        for index in range(2):
            await configuration_store.create(make_payload(id=f"cfg-{index}", tenant_id=tenant))

    pages = [page async for page in configuration_store.iter_active(page_size=3)]

    assert [len(page) for page in pages] == [3, 1]
    assert [(c.tenant_id, c.id) for page in pages for c in page] == [
        ("tenant-a", "cfg-0"),
        ("tenant-a", "cfg-1"),
        ("tenant-b", "cfg-0"),
        ("tenant-b", "cfg-1"),
    ]


@pytest.mark.asyncio
async def test_record_schedule_keeps_version(configuration_store, make_payload):
    record = await configuration_store.create(make_payload(id="cfg-5"))
    now = utcnow()

    await configuration_store.record_schedule(
        "tenant-a", "cfg-5", last_executed_at=now, next_scheduled_run=now
    )

    stored = await configuration_store.get("tenant-a", "cfg-5")
    assert stored.version == record.version
    assert stored.last_executed_at is not None


@pytest.mark.asyncio
async def test_token_in_host_rejected_before_persisting(configuration_store, make_payload):
    payload = make_payload(id="cfg-6", path_pattern="https://{yyyy}.example.com/reports")

    with pytest.raises(InvalidTokenPlacement):
        await configuration_store.create(payload)
    assert await configuration_store.get("tenant-a", "cfg-6") is None


@pytest.mark.asyncio
async def test_token_in_path_accepted(configuration_store, make_payload):
    record = await configuration_store.create(
        make_payload(path_pattern="https://example.com/{yyyy}", name_pattern="f.csv")
    )
    assert record.path_pattern == "https://example.com/{yyyy}"


@pytest.mark.asyncio
async def test_token_in_object_storage_bucket_rejected(configuration_store, make_payload):
    payload = make_payload(
        protocol_settings={
            "protocol": "object_storage",
            "endpoint": "s3.example.com",
            "bucket": "drops-{yyyy}",
        }
    )
    with pytest.raises(InvalidTokenPlacement):
        await configuration_store.create(payload)


@pytest.mark.asyncio
async def test_six_field_cron_rejected(configuration_store, make_payload):
    payload = make_payload(schedule={"cron_expression": "0 0 8 * * *", "timezone": "UTC"})
    with pytest.raises(InvalidConfigurationError):
        await configuration_store.create(payload)


@pytest.mark.asyncio
async def test_unknown_timezone_rejected(configuration_store, make_payload):
    payload = make_payload(schedule={"cron_expression": "0 8 * * *", "timezone": "Nowhere/City"})
    with pytest.raises(InvalidConfigurationError):
        await configuration_store.create(payload)


@pytest.mark.asyncio
async def test_missing_targets_rejected(configuration_store, make_payload):
    with pytest.raises(InvalidConfigurationError):
        await configuration_store.create(make_payload(notification_targets=[]))


@pytest.mark.asyncio
async def test_oversized_static_payload_rejected(configuration_store, make_payload):
    target = {
        "kind": "command",
        "message_type": "IngestFile",
        "destination": "https://hooks.example.com/files",
        "static_payload": {"blob": "x" * (11 * 1024)},
    }
    with pytest.raises(InvalidConfigurationError):
        await configuration_store.create(make_payload(notification_targets=[target]))


@pytest.mark.asyncio
async def test_probe_mode_requires_exact_name(configuration_store, make_payload):
    with pytest.raises(InvalidConfigurationError):
        await configuration_store.create(make_payload(name_pattern="report_*.csv"))

    record = await configuration_store.create(
        make_payload(
            name_pattern="report_*.csv",
            protocol_settings={
                "protocol": "https",
                "base_url": "https://files.example.com",
                "listing_mode": "json_index",
            },
        )
    )
    assert record.name_pattern == "report_*.csv"


@pytest.mark.asyncio
async def test_inline_credentials_rejected(configuration_store, make_payload):
    payload = make_payload(
        protocol_settings={
            "protocol": "ftp",
            "server": "ftp.example.com",
            "username": "reports",
            "password": "hunter2",
            "password_secret_name": "ftp-reports",
        }
    )
    with pytest.raises(InvalidConfigurationError) as exc_info:
        await configuration_store.create(payload)
    assert "hunter2" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_file_extension_normalized(configuration_store, make_payload):
    record = await configuration_store.create(make_payload(file_extension=".CSV"))
    assert record.file_extension == "CSV"


@pytest.mark.asyncio
async def test_iter_active_skips_inactive(configuration_store, session_factory, make_payload):
    await configuration_store.create(make_payload(id="cfg-a"))
    await configuration_store.create(make_payload(id="cfg-b"))
    async with session_factory() as db:
        await db.execute(
            update(FileCheckConfiguration)
            .where(FileCheckConfiguration.id == "cfg-b")
            .values(is_active=False)
        )
        await db.commit()

    pages = [page async for page in configuration_store.iter_active()]
    assert [c.id for page in pages for c in page] == ["cfg-a"]
