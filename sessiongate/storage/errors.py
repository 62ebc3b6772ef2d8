from __future__ import annotations

from typing import Dict, Optional


class ConstraintViolation(Exception):
    """A write broke an integrity rule of the auth tables.

    ``detail`` names what collided: ``{"field": "email"}`` for the unique
    address on ``app_user``, ``{"field": "id"}`` for a session digest that is
    already stored, or ``{"user_id": ...}`` when a session or challenge row
    points at a user that does not exist.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})


__all__ = ["ConstraintViolation"]
