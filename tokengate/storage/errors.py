from __future__ import annotations

from typing import Any, Dict, Optional

# Constraint names shared by the memory and postgres backends
ONE_ACTIVE_GRANT = "access_grant_one_active_per_user"
UNIQUE_EMAIL = "app_user_email_key"
USER_REFERENCE = "user_reference"
GRANT_REFERENCE = "grant_reference"


class ConstraintViolation(Exception):
    """Raised when a backend uniqueness or reference constraint is violated.

    ``constraint`` names the violated rule so services can translate it
    without parsing driver messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


__all__ = [
    "ConstraintViolation",
    "ONE_ACTIVE_GRANT",
    "UNIQUE_EMAIL",
    "USER_REFERENCE",
    "GRANT_REFERENCE",
]
