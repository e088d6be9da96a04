"""Audit trail for administrative and financial actions."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.models.audit import AuditLog

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


class AuditService:
    """Persists who did what, why, and whether it worked."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        *,
        actor_account_id: str | None,
        action: str,
        target_id: str | None,
        reason: str | None,
        outcome: str,
        context: dict[str, Any] | None = None,
    ) -> AuditLog:
        log = AuditLog(
            actor_account_id=actor_account_id,
            action=action,
            target_id=target_id,
            reason=reason,
            outcome=outcome,
            context=context or {},
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def for_target(self, target_id: str, limit: int = 50) -> list[AuditLog]:
        """Audit rows for one entity, newest first."""
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.target_id == target_id)
            .order_by(AuditLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
