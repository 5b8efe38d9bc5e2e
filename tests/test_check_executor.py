"""Tests for the check executor: retries, claims, notifications and timeouts."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from discovery_engine.db.models import ClaimStatus, ExecutionStatus
from discovery_engine.errors import (
    AuthenticationFailure,
    ConnectionTimeout,
    ErrorCategory,
    ProtocolError,
    StoreUnavailableError,
)
from discovery_engine.protocols.base import FileRef
from discovery_engine.protocols.factory import ProtocolAdapterFactory
from discovery_engine.protocols.https import HttpsAdapter
from discovery_engine.schemas import ProtocolType
from discovery_engine.utils.timeutils import utcnow
from discovery_engine.worker import executor as executor_module
from discovery_engine.worker.executor import CheckExecutor

from conftest import DictSecretResolver, RecordingEmitter

REPORT = FileRef(
    reference="https://files.example.com/rpt/20240315.csv",
    name="20240315.csv",
    size=2048,
)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def check_executor(adapter_factory, discovery_ledger, execution_ledger, emitter, sleep):
    return CheckExecutor(
        adapter_factory,
        discovery_ledger,
        execution_ledger,
        emitter,
        max_attempts=3,
        base_delay=1.0,
        max_delay=30.0,
        execution_timeout=30.0,
        sleep=sleep,
    )


@pytest.fixture
async def configuration(configuration_store, make_payload):
    return await configuration_store.create(make_payload(id="cfg-run"))


@pytest.mark.asyncio
async def test_retry_exhaustion(check_executor, adapter, configuration, execution_ledger, sleep):
    adapter.outcomes = [ConnectionTimeout("connect timed out")] * 5

    outcome = await check_executor.run(configuration)

    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error_category == ErrorCategory.CONNECTION_TIMEOUT
    assert outcome.attempts == 3
    assert len(adapter.calls) == 3
    assert sleep.delays == [1.0, 2.0]

    execution = await execution_ledger.get(outcome.execution_id)
    assert execution.status == ExecutionStatus.FAILED.value
    assert execution.error_category == "ConnectionTimeout"
    assert execution.retry_count == 2
    assert execution.is_terminal


@pytest.mark.asyncio
async def test_non_retryable_fails_immediately(check_executor, adapter, configuration, sleep):
    adapter.outcomes = [AuthenticationFailure("HTTPS 401")]

    outcome = await check_executor.run(configuration)

    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error_category == ErrorCategory.AUTHENTICATION_FAILURE
    assert len(adapter.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_recovers_after_transient_failure(
    check_executor, adapter, configuration, execution_ledger, emitter
):
    adapter.outcomes = [ProtocolError("HTTPS 503"), [REPORT]]

    outcome = await check_executor.run(configuration)

    assert outcome.status == ExecutionStatus.COMPLETED
    assert outcome.files_found == 1
    assert outcome.files_claimed == 1
    assert len(emitter.sent) == 1

    execution = await execution_ledger.get(outcome.execution_id)
    assert execution.retry_count == 1
    assert execution.error_category is None


@pytest.mark.asyncio
async def test_store_outage_during_claim_is_retried(
    check_executor,
    adapter,
    configuration,
    discovery_ledger,
    execution_ledger,
    emitter,
    sleep,
    monkeypatch,
):
    adapter.files = [REPORT]
    claim = discovery_ledger.claim
    calls = []

    async def flaky_claim(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StoreUnavailableError("connection to database lost")
        return await claim(*args, **kwargs)

    monkeypatch.setattr(discovery_ledger, "claim", flaky_claim)

    outcome = await check_executor.run(configuration)

    assert outcome.status == ExecutionStatus.COMPLETED
    assert outcome.attempts == 2
    assert outcome.files_claimed == 1
    assert sleep.delays == [1.0]
    assert len(emitter.sent) == 1

    execution = await execution_ledger.get(outcome.execution_id)
    assert execution.retry_count == 1
    assert execution.files_claimed == 1

@pytest.mark.asyncio
async def test_unexpected_adapter_error_is_categorized(check_executor, adapter, configuration):
    adapter.outcomes = [KeyError("boom")] * 3

    outcome = await check_executor.run(configuration)

    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error_category == ErrorCategory.PROTOCOL_ERROR


@pytest.mark.asyncio
async def test_claims_and_notifies_once(
    check_executor, adapter, configuration, discovery_ledger, emitter
):
    adapter.files = [REPORT]

    first = await check_executor.run(configuration)
    second = await check_executor.run(configuration)

    assert (first.files_found, first.files_claimed) == (1, 1)
    assert (second.files_found, second.files_claimed) == (1, 0)
    assert len(emitter.sent) == 1

    destination, message = emitter.sent[0]
    assert destination == "https://hooks.example.com/files"
    assert message.message_type == "SettlementFileArrived"
    assert message.file_reference == REPORT.reference
    assert message.execution_id == first.execution_id
    assert message.static_payload == {"pipeline": "settlement"}
    assert message.idempotency_key.startswith(f"tenant-a:cfg-run:{REPORT.reference}:")

    files = await discovery_ledger.list_for_execution(first.execution_id)
    assert files[0].status == ClaimStatus.NOTIFICATION_SENT.value


@pytest.mark.asyncio
async def test_notification_failure_marks_claim_failed(
    adapter_factory, discovery_ledger, execution_ledger, adapter, configuration, sleep
):
    emitter = RecordingEmitter(failing_destinations={"https://hooks.example.com/files"})
    check_executor = CheckExecutor(
        adapter_factory, discovery_ledger, execution_ledger, emitter, sleep=sleep
    )
    adapter.files = [REPORT]

    outcome = await check_executor.run(configuration)
    assert outcome.status == ExecutionStatus.COMPLETED
    assert outcome.files_claimed == 1

    files = await discovery_ledger.list_for_execution(outcome.execution_id)
    assert files[0].status == ClaimStatus.FAILED.value
    assert "refused" in files[0].error_message

    # At most once: the failed claim is not retried by a later run
    again = await check_executor.run(configuration)
    assert again.files_claimed == 0


@pytest.mark.asyncio
async def test_execution_timeout(
    adapter_factory, discovery_ledger, execution_ledger, emitter, adapter, configuration
):
    adapter.delay = 5.0
    check_executor = CheckExecutor(
        adapter_factory,
        discovery_ledger,
        execution_ledger,
        emitter,
        execution_timeout=0.2,
    )

    outcome = await check_executor.run(configuration)

    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error_category == ErrorCategory.TIMEOUT
    execution = await execution_ledger.get(outcome.execution_id)
    assert execution.error_category == "Timeout"
    assert execution.is_terminal


@pytest.mark.asyncio
async def test_resumes_persisted_retry(
    check_executor, adapter, configuration, execution_ledger, sleep
):
    execution = await execution_ledger.create("tenant-a", configuration.id)
    await execution_ledger.start_attempt(execution.id, "/rpt", "20240315.csv")
    await execution_ledger.record_retry(
        execution.id, ErrorCategory.PROTOCOL_ERROR, "HTTPS 503", utcnow()
    )
    adapter.outcomes = [ProtocolError("HTTPS 503"), ProtocolError("HTTPS 503")]

    outcome = await check_executor.run(configuration, trigger="resume", execution_id=execution.id)

    # Attempt 1 happened before the restart; attempts 2 and 3 run here
    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.attempts == 3
    assert len(adapter.calls) == 2
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_resume_of_terminal_execution_is_noop(
    check_executor, adapter, configuration, execution_ledger
):
    execution = await execution_ledger.create("tenant-a", configuration.id)
    await execution_ledger.start_attempt(execution.id)
    await execution_ledger.complete(execution.id, 0, 0)

    outcome = await check_executor.run(configuration, execution_id=execution.id)

    assert outcome.status == ExecutionStatus.COMPLETED
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_lifecycle_event(
    adapter_factory, discovery_ledger, execution_ledger, emitter, adapter, configuration
):
    check_executor = CheckExecutor(
        adapter_factory,
        discovery_ledger,
        execution_ledger,
        emitter,
        lifecycle_destination="https://hooks.example.com/lifecycle",
    )
    adapter.files = [REPORT]

    await check_executor.run(configuration)

    lifecycle = [m for d, m in emitter.sent if d == "https://hooks.example.com/lifecycle"]
    assert len(lifecycle) == 1
    assert lifecycle[0].message_type == "FileCheckCompleted"
    assert lifecycle[0].files_claimed == 1


def test_backoff_is_capped(adapter_factory, discovery_ledger, execution_ledger, emitter):
    check_executor = CheckExecutor(
        adapter_factory,
        discovery_ledger,
        execution_ledger,
        emitter,
        base_delay=1.0,
        max_delay=3.0,
    )
    assert [check_executor.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_https_end_to_end(
    monkeypatch, configuration_store, discovery_ledger, execution_ledger, make_payload
):
    """
    Pattern /rpt/{yyyy}{mm}{dd}.csv checked at 08:01 UTC finds and notifies the
    file; a re-run at 08:30 the same day claims nothing new.
    """
    present = {"https://files.example.com/rpt/20240315.csv"}

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) in present:
            return httpx.Response(200, headers={"content-length": "42"})
        return httpx.Response(404)

    secrets = DictSecretResolver()
    factory = ProtocolAdapterFactory(secrets=secrets)
    factory.register(
        ProtocolType.HTTPS,
        HttpsAdapter(secrets, transport=httpx.MockTransport(handler)),
    )
    emitter = RecordingEmitter()
    check_executor = CheckExecutor(factory, discovery_ledger, execution_ledger, emitter)
    configuration = await configuration_store.create(make_payload(id="cfg-e2e"))

    clock = {"now": datetime(2024, 3, 15, 8, 1, tzinfo=timezone.utc)}
    monkeypatch.setattr(executor_module, "utcnow", lambda: clock["now"])

    first = await check_executor.run(configuration)
    assert first.status == ExecutionStatus.COMPLETED
    assert (first.files_found, first.files_claimed) == (1, 1)
    execution = await execution_ledger.get(first.execution_id)
    assert execution.resolved_path == "/rpt"
    assert execution.resolved_name == "20240315.csv"
    assert len(emitter.sent) == 1
    assert emitter.sent[0][1].file_size == 42

    clock["now"] = clock["now"] + timedelta(minutes=29)
    second = await check_executor.run(configuration)
    assert second.status == ExecutionStatus.COMPLETED
    assert (second.files_found, second.files_claimed) == (1, 0)
    assert len(emitter.sent) == 1

    # Next day the pattern resolves to a different file, which is not there yet
    clock["now"] = clock["now"] + timedelta(days=1)
    third = await check_executor.run(configuration)
    assert (third.files_found, third.files_claimed) == (0, 0)


@pytest.mark.asyncio
async def test_concurrent_runs_notify_once(
    check_executor, adapter, configuration, emitter
):
    adapter.files = [REPORT]

    outcomes = await asyncio.gather(*[check_executor.run(configuration) for _ in range(5)])

    assert all(o.status == ExecutionStatus.COMPLETED for o in outcomes)
    assert sum(o.files_claimed for o in outcomes) == 1
    assert len(emitter.sent) == 1
