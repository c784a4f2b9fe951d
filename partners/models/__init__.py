"""SQLAlchemy models for the billing service.

All models are imported here so that ``Base.metadata.create_all`` can discover
them. If you add a new model, import it in this file.
"""

from partners.models.subscription_attempt import AttemptStatus, SubscriptionAttempt

__all__ = [
    "AttemptStatus",
    "SubscriptionAttempt",
]
