"""SubscriptionAttempt model: one user's attempt to start a PayPal trial."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from partners.database import Base, UUIDPrimaryKeyMixin


class AttemptStatus(str, enum.Enum):
    """Lifecycle states of a subscription attempt."""

    NONE = "none"
    PENDING_CREATION = "pending_creation"
    APPROVAL_PENDING = "approval_pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AttemptStatus.ACTIVE, AttemptStatus.CANCELLED, AttemptStatus.FAILED}
)


def utcnow() -> datetime:
    """Naive UTC now, matching the DB column type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionAttempt(UUIDPrimaryKeyMixin, Base):
    """Tracks a trial subscription attempt and its reconciled status.

    Instances are also used detached from any session by the in-memory store,
    so ``id`` and timestamps are assigned in Python by :meth:`new`.
    """

    __tablename__ = "subscription_attempts"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # PayPal identifiers
    processor_subscription_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True, index=True
    )
    approval_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=AttemptStatus.NONE.value
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    last_transition_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    @classmethod
    def new(cls, user_id: str, plan_id: str | None = None) -> "SubscriptionAttempt":
        """Build a fresh attempt in ``pending_creation``."""
        now = utcnow()
        return cls(
            id=uuid.uuid4(),
            user_id=user_id,
            plan_id=plan_id,
            status=AttemptStatus.PENDING_CREATION.value,
            created_at=now,
            last_transition_at=now,
        )

    @property
    def attempt_status(self) -> AttemptStatus:
        return AttemptStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.attempt_status.is_terminal

    def mark(self, status: AttemptStatus, failure_reason: str | None = None) -> None:
        """Set ``status`` and stamp the transition time."""
        self.status = status.value
        if failure_reason is not None:
            self.failure_reason = failure_reason
        self.last_transition_at = utcnow()

    def snapshot(self) -> dict:
        """Plain-dict view used in bus messages and API responses."""
        return {
            "attempt_id": str(self.id),
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "processor_subscription_id": self.processor_subscription_id,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_transition_at": (
                self.last_transition_at.isoformat() if self.last_transition_at else None
            ),
        }

    def __repr__(self) -> str:
        return (
            f"<SubscriptionAttempt(id={self.id}, user_id={self.user_id}, "
            f"subscription={self.processor_subscription_id}, status={self.status})>"
        )
