"""Audit log and domain event models."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from arena_economy.models.base import Base, TimestampMixin, UUIDMixin


class AuditLog(Base, UUIDMixin, TimestampMixin):
    """Audit trail for administrative and financial actions."""

    __tablename__ = "audit_logs"

    # Actor (who performed the action)
    actor_account_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
    )

    action: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    """
    Action examples:
    - wallet.adjust
    - account.set_flags
    - withdrawal.approve
    - withdrawal.reject
    - competition.cancel
    """

    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="success | failure",
    )

    context: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    """
    Context examples:
    {
        "delta": -500,
        "pool": "withdrawable",
        "error_code": "INSUFFICIENT_BALANCE"
    }
    """

    def __repr__(self) -> str:
        actor = self.actor_account_id[:8] if self.actor_account_id else "system"
        return f"<AuditLog {self.action} by={actor}... {self.outcome}>"


class DomainEvent(Base, UUIDMixin, TimestampMixin):
    """Transactional outbox row for the notification dispatcher."""

    __tablename__ = "domain_events"

    event_type: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Accounts the dispatcher should notify
    recipient_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<DomainEvent {self.event_type} aggregate={self.aggregate_id[:8]}...>"
