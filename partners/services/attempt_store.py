"""Attempt stores: where SubscriptionAttempt records live.

The state machine only talks to the :class:`AttemptStore` protocol, so it can
run against the in-memory store (single process, tests) or the database store
(multi-instance / restart-resilient deployments).
"""

import logging
import uuid
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partners.models.subscription_attempt import SubscriptionAttempt

logger = logging.getLogger(__name__)


class AttemptStore(Protocol):
    async def get(self, attempt_id: uuid.UUID) -> SubscriptionAttempt | None: ...

    async def put(self, attempt: SubscriptionAttempt) -> SubscriptionAttempt: ...

    async def find_by_user(self, user_id: str) -> SubscriptionAttempt | None: ...

    async def find_by_resource(self, subscription_id: str) -> SubscriptionAttempt | None: ...


class InMemoryAttemptStore:
    """Dict-backed store; attempts are held detached from any DB session.

    Nothing is evicted: every attempt stays in memory for the life of the
    process. Meant for tests and single-process development; production runs
    use :class:`SqlAttemptStore`.
    """

    def __init__(self):
        self._attempts: dict[uuid.UUID, SubscriptionAttempt] = {}
        self._by_user: dict[str, uuid.UUID] = {}
        self._by_resource: dict[str, uuid.UUID] = {}

    async def get(self, attempt_id: uuid.UUID) -> SubscriptionAttempt | None:
        return self._attempts.get(attempt_id)

    async def put(self, attempt: SubscriptionAttempt) -> SubscriptionAttempt:
        self._attempts[attempt.id] = attempt
        latest_id = self._by_user.get(attempt.user_id)
        latest = self._attempts.get(latest_id) if latest_id else None
        if latest is None or latest.id == attempt.id or attempt.created_at >= latest.created_at:
            self._by_user[attempt.user_id] = attempt.id
        if attempt.processor_subscription_id:
            self._by_resource[attempt.processor_subscription_id] = attempt.id
        return attempt

    async def find_by_user(self, user_id: str) -> SubscriptionAttempt | None:
        attempt_id = self._by_user.get(user_id)
        return self._attempts.get(attempt_id) if attempt_id else None

    async def find_by_resource(self, subscription_id: str) -> SubscriptionAttempt | None:
        attempt_id = self._by_resource.get(subscription_id)
        return self._attempts.get(attempt_id) if attempt_id else None

    def __len__(self) -> int:
        return len(self._attempts)


class SqlAttemptStore:
    """Async SQLAlchemy store; each call runs in its own short session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, attempt_id: uuid.UUID) -> SubscriptionAttempt | None:
        async with self.session_factory() as db:
            return await db.get(SubscriptionAttempt, attempt_id)

    async def put(self, attempt: SubscriptionAttempt) -> SubscriptionAttempt:
        async with self.session_factory() as db:
            try:
                merged = await db.merge(attempt)
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception("Failed to persist attempt %s", attempt.id)
                raise
            return merged

    async def find_by_user(self, user_id: str) -> SubscriptionAttempt | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SubscriptionAttempt)
                .where(SubscriptionAttempt.user_id == user_id)
                .order_by(SubscriptionAttempt.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_by_resource(self, subscription_id: str) -> SubscriptionAttempt | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SubscriptionAttempt).where(
                    SubscriptionAttempt.processor_subscription_id == subscription_id
                )
            )
            return result.scalar_one_or_none()
