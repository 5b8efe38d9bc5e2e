#!/usr/bin/env python3
"""
Diagnose configuration leases and in-progress executions, with recovery hints.
"""

import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from discovery_engine.config import settings
from discovery_engine.db.models import CheckExecution, ExecutionStatus
from discovery_engine.db.session import AsyncSessionLocal
from discovery_engine.utils.timeutils import as_utc, utcnow
from discovery_engine.worker.lease import LEASE_KEY_PREFIX, RedisLeaseManager, lease_subject


async def diagnose() -> None:
    lease_manager = RedisLeaseManager()
    redis_client = await lease_manager._get_redis()

    lease_keys = [key async for key in redis_client.scan_iter(match=f"{LEASE_KEY_PREFIX}*")]
    leased = {}
    for key in lease_keys:
        subject = key[len(LEASE_KEY_PREFIX):]
        leased[subject] = await lease_manager.get_lease_info(subject)

    print("Lease Diagnosis")
    print("===============")
    print(f"LEASE_KEY_PREFIX: {LEASE_KEY_PREFIX}")
    print(f"Lease TTL (seconds): {settings.lease_ttl_seconds}")
    print("")

    if not leased:
        print("Leases: none")
    else:
        print(f"Leases: {len(leased)}")
        for subject, info in sorted(leased.items()):
            info = info or {}
            print(
                f"  - configuration={subject} owner={info.get('owner')} "
                f"acquired_at={info.get('acquired_at')} ttl_seconds={info.get('ttl_seconds')}"
            )
    print("")

    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(CheckExecution)
            .where(CheckExecution.status == ExecutionStatus.IN_PROGRESS.value)
            .order_by(CheckExecution.started_at.desc())
        )
        running = result.scalars().all()

    budget = settings.check_execution_timeout_seconds + settings.watchdog_grace_seconds
    stale = []
    if not running:
        print("InProgress executions: none")
    else:
        print(f"InProgress executions: {len(running)}")
        for execution in running:
            age_s = None
            if execution.started_at:
                age_s = (utcnow() - as_utc(execution.started_at)).total_seconds()
                if age_s > budget:
                    stale.append(execution)
            age_display = f"{age_s:.0f}" if age_s is not None else "n/a"
            print(
                f"  - id={execution.id} configuration={execution.configuration_id} "
                f"tenant={execution.tenant_id} age_s={age_display} "
                f"retry_count={execution.retry_count} trigger={execution.trigger}"
            )

    print("")
    print("Recommendations")
    print("----------------")
    running_configs = {lease_subject(e.tenant_id, e.configuration_id) for e in running}
    orphan_leases = [subject for subject in leased if subject not in running_configs]
    unleased_runs = [
        e for e in running if lease_subject(e.tenant_id, e.configuration_id) not in leased
    ]

    if stale:
        print(
            f"- {len(stale)} execution(s) exceed the {budget:.0f}s budget; the watchdog "
            "will mark them Failed/Timeout on its next run."
        )
    if orphan_leases:
        print(
            f"- {len(orphan_leases)} lease(s) without an InProgress execution; they expire "
            "on their own, or clear them with RedisLeaseManager.force_release()."
        )
    if unleased_runs and settings.scheduler_enable_distributed_locking:
        print(
            f"- {len(unleased_runs)} InProgress execution(s) without a lease; the holder "
            "probably crashed."
        )
    if not stale and not orphan_leases and not unleased_runs:
        print("- No issues detected.")

    await lease_manager.close()


if __name__ == "__main__":
    asyncio.run(diagnose())
