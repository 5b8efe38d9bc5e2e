"""Watchdog task to fail executions left InProgress by a crashed instance."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from discovery_engine import metrics
from discovery_engine.config import settings
from discovery_engine.errors import ErrorCategory, InvalidTransition
from discovery_engine.ledger.executions import ExecutionLedger
from discovery_engine.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


async def execution_watchdog_check(
    executions: ExecutionLedger,
    now: Optional[datetime] = None,
    reason_prefix: str = "Watchdog",
) -> int:
    """
    Mark stale InProgress executions as Failed with category Timeout.

    An execution is stale once its current attempt has been InProgress longer
    than the execution budget plus the grace period; a live instance would have
    recorded a result by then. Resumed retries are measured from the resume.

    Returns:
        Number of executions recovered
    """
    now = as_utc(now) or utcnow()
    max_age = settings.check_execution_timeout_seconds + settings.watchdog_grace_seconds
    cutoff = now - timedelta(seconds=max_age)

    try:
        stale = await executions.find_stale_in_progress(cutoff)
    except Exception as e:
        logger.error("Watchdog check failed: %s", e, exc_info=True)
        return 0

    recovered = 0
    for execution in stale:
        attempt_started = as_utc(execution.attempt_started_at or execution.started_at)
        elapsed = (now - attempt_started).total_seconds()
        logger.warning(
            "%s: execution %s for configuration %s has been in progress for %.0fs "
            "(> %ds). Marking as failed.",
            reason_prefix,
            execution.id,
            execution.configuration_id,
            elapsed,
            max_age,
        )
        try:
            await executions.fail(
                execution.id,
                ErrorCategory.TIMEOUT,
                f"{reason_prefix}: execution abandoned after {elapsed:.0f}s",
                files_found=execution.files_found,
                files_claimed=execution.files_claimed,
            )
        except InvalidTransition:
            # Finished between the query and the update
            continue
        except Exception as e:
            logger.error("%s: could not fail execution %s: %s", reason_prefix, execution.id, e)
            continue
        recovered += 1

    if recovered:
        metrics.record_stale_recovered(recovered)
    return recovered
