"""Prometheus metrics for the file discovery engine."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("file_discovery", "File discovery engine application info")
app_info.info({"version": "0.1.0", "name": "file-discovery-engine"})

# Check metrics
checks_total = Counter(
    "file_checks_total",
    "Total number of finished check executions",
    ["protocol", "status"],
)

check_errors_total = Counter(
    "file_check_errors_total",
    "Total number of failed check attempts by category",
    ["protocol", "category"],
)

check_retries_total = Counter(
    "file_check_retries_total",
    "Total number of check retries scheduled",
    ["protocol", "category"],
)

check_duration_seconds = Histogram(
    "file_check_duration_seconds",
    "Wall time of a check execution including retries",
    ["protocol"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

# Discovery metrics
files_found_total = Counter(
    "files_found_total",
    "Total number of candidate files returned by adapters",
    ["protocol"],
)

files_claimed_total = Counter(
    "files_claimed_total",
    "Total number of new discovery claims",
    ["protocol"],
)

duplicate_claims_total = Counter(
    "duplicate_claims_total",
    "Total number of claims skipped because the file was already reported that day",
    ["protocol"],
)

notifications_total = Counter(
    "discovery_notifications_total",
    "Total number of notifications dispatched",
    ["kind", "status"],
)

# Scheduler metrics
scheduler_ticks_total = Counter(
    "scheduler_ticks_total",
    "Total number of scheduler ticks",
    ["status"],
)

scheduler_tick_configurations = Counter(
    "scheduler_tick_configurations_total",
    "Configurations handled by scheduler ticks, by outcome",
    ["outcome"],  # triggered, skipped_in_progress, deferred, not_due, error
)

scheduler_last_tick_timestamp = Gauge(
    "scheduler_last_tick_timestamp",
    "Timestamp of the last completed scheduler tick",
)

active_configurations = Gauge(
    "active_configurations",
    "Number of active configurations seen by the last tick",
)

checks_in_flight = Gauge(
    "file_checks_in_flight",
    "Number of check executions currently running in this instance",
)

# Lease metrics
lease_operations_total = Counter(
    "lease_operations_total",
    "Lease acquire/release outcomes",
    ["operation", "result"],
)

# Retention metrics
executions_purged_total = Counter(
    "executions_purged_total",
    "Total number of executions removed by the retention job",
)

stale_executions_recovered_total = Counter(
    "stale_executions_recovered_total",
    "Total number of InProgress executions failed by the watchdog",
)


def record_check(protocol: str, status: str, duration_seconds: float) -> None:
    """Record a finished execution."""
    checks_total.labels(protocol=protocol, status=status).inc()
    check_duration_seconds.labels(protocol=protocol).observe(duration_seconds)


def record_check_error(protocol: str, category: str) -> None:
    check_errors_total.labels(protocol=protocol, category=category).inc()


def record_retry(protocol: str, category: str) -> None:
    check_retries_total.labels(protocol=protocol, category=category).inc()


def record_discovery(protocol: str, found: int, claimed: int, duplicates: int) -> None:
    """Record the claim outcome of one attempt."""
    if found:
        files_found_total.labels(protocol=protocol).inc(found)
    if claimed:
        files_claimed_total.labels(protocol=protocol).inc(claimed)
    if duplicates:
        duplicate_claims_total.labels(protocol=protocol).inc(duplicates)


def record_notification(kind: str, success: bool) -> None:
    notifications_total.labels(kind=kind, status="success" if success else "failed").inc()


def record_tick(
    triggered: int,
    skipped_in_progress: int,
    deferred: int,
    active: int,
    errors: int = 0,
    timestamp: float | None = None,
) -> None:
    """Record a scheduler tick summary."""
    scheduler_ticks_total.labels(status="error" if errors else "success").inc()
    scheduler_tick_configurations.labels(outcome="triggered").inc(triggered)
    scheduler_tick_configurations.labels(outcome="skipped_in_progress").inc(skipped_in_progress)
    scheduler_tick_configurations.labels(outcome="deferred").inc(deferred)
    if errors:
        scheduler_tick_configurations.labels(outcome="error").inc(errors)
    active_configurations.set(active)
    if timestamp is not None:
        scheduler_last_tick_timestamp.set(timestamp)


def record_lease(operation: str, result: str) -> None:
    lease_operations_total.labels(operation=operation, result=result).inc()


def record_purge(count: int) -> None:
    if count:
        executions_purged_total.inc(count)


def record_stale_recovered(count: int = 1) -> None:
    stale_executions_recovered_total.inc(count)
