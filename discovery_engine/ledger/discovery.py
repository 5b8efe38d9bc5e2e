"""Durable record of files already reported for a given day."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from discovery_engine.db.models import ClaimStatus, DiscoveredFile
from discovery_engine.ledger.base import LedgerBase
from discovery_engine.protocols.base import FileRef
from discovery_engine.utils.timeutils import as_utc, to_db

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Outcome of a claim attempt."""

    claimed: bool
    claim_id: Optional[str] = None
    discovered_at: Optional[datetime] = None

    @property
    def already_claimed(self) -> bool:
        return not self.claimed


class DiscoveryLedger(LedgerBase):
    """
    Claims discovered files under a hard uniqueness constraint.

    The key is (tenant_id, configuration_id, file_reference, discovery_date) where
    discovery_date is the UTC calendar day of the claim.
    """

    async def claim(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str,
        file: FileRef,
        discovered_at: datetime,
    ) -> ClaimResult:
        """
        Create the claim record for a file, once per day.

        Args:
            tenant_id: Owning tenant
            configuration_id: Configuration being checked
            execution_id: Execution that found the file
            file: Candidate returned by the protocol adapter
            discovered_at: Claim timestamp; its UTC date is the discovery date

        Returns:
            ClaimResult with claimed=False when the key already exists

        Raises:
            StoreUnavailableError: If the store cannot be written
        """
        moment = as_utc(discovered_at)
        record = DiscoveredFile(
            id=str(uuid4()),
            tenant_id=tenant_id,
            configuration_id=configuration_id,
            execution_id=execution_id,
            file_reference=file.reference,
            file_name=file.name,
            file_size=file.size,
            last_modified=to_db(file.last_modified),
            discovered_at=to_db(moment),
            discovery_date=moment.date(),
            status=ClaimStatus.PENDING.value,
        )
        try:
            async with self.session() as db:
                db.add(record)
                await db.commit()
        except IntegrityError:
            logger.info(
                "File already claimed today, skipping: %s (configuration %s)",
                file.reference,
                configuration_id,
            )
            return ClaimResult(claimed=False)

        return ClaimResult(claimed=True, claim_id=record.id, discovered_at=moment)

    async def mark_notified(self, claim_id: str, notified_at: datetime) -> None:
        async with self.session() as db:
            record = await db.get(DiscoveredFile, claim_id)
            if record and record.status == ClaimStatus.PENDING.value:
                record.status = ClaimStatus.NOTIFICATION_SENT.value
                record.notified_at = to_db(notified_at)
                await db.commit()

    async def mark_failed(self, claim_id: str, error_message: str) -> None:
        async with self.session() as db:
            record = await db.get(DiscoveredFile, claim_id)
            if record and record.status == ClaimStatus.PENDING.value:
                record.status = ClaimStatus.FAILED.value
                record.error_message = error_message[:1000]
                await db.commit()

    async def count_for_execution(self, execution_id: str) -> int:
        async with self.session() as db:
            result = await db.execute(
                select(func.count(DiscoveredFile.id)).where(
                    DiscoveredFile.execution_id == execution_id
                )
            )
            return int(result.scalar_one())

    async def list_for_execution(self, execution_id: str) -> list[DiscoveredFile]:
        async with self.session() as db:
            result = await db.execute(
                select(DiscoveredFile)
                .where(DiscoveredFile.execution_id == execution_id)
                .order_by(DiscoveredFile.discovered_at)
            )
            return list(result.scalars().all())
