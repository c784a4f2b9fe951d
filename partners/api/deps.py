"""Shared API dependencies: single import point for all routers.

Re-exports authentication and billing runtime dependencies so that router
modules can import everything they need from one place::

    from partners.api.deps import get_current_user_id, get_runtime
"""

from partners.auth.dependencies import get_current_user_id
from partners.billing.dependencies import build_presenter, get_runtime

__all__ = [
    "get_current_user_id",
    "get_runtime",
    "build_presenter",
]
