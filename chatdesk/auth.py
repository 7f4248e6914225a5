"""Shared-secret check for admin-only operations."""
import hmac
from typing import Optional

from chatdesk import config
from chatdesk.errors import Unauthorized


def verify_admin_token(token: Optional[str]) -> None:
    """Raise Unauthorized unless `token` matches the configured admin token.

    With no admin token configured every admin action is refused.
    """
    expected = config.ADMIN_TOKEN
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise Unauthorized("Admin credentials required")
