"""Client-side authentication for the sync transport."""

from .request_guard import Credentials, RequestGuard, SessionExpiredError, SessionState

__all__ = ["Credentials", "RequestGuard", "SessionExpiredError", "SessionState"]
