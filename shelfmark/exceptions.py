"""Exception hierarchy for shelfmark."""

from __future__ import annotations

from typing import Dict, Optional


class ShelfmarkError(Exception):
    """Base error for all shelfmark failures."""


class UnknownActionTypeError(ShelfmarkError, ValueError):
    def __init__(self, action_type: object):
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type!r}")


class InvalidTransitionError(ShelfmarkError):
    """Raised in strict mode when an action cannot move to the requested status."""

    def __init__(self, action_id: str, current: str, target: str):
        self.action_id = action_id
        self.current = current
        self.target = target
        super().__init__(f"Action {action_id} cannot move from '{current}' to '{target}'")


class ActionApplyError(ShelfmarkError):
    """A host-side apply or undo failed for a single action."""

    def __init__(self, message: str, *, action_id: Optional[str] = None):
        self.action_id = action_id
        super().__init__(message)


class BackendError(ShelfmarkError, RuntimeError):
    """Structured backend-of-record error."""

    def __init__(self, code: str, message: str):
        self.code = str(code)
        self.message = str(message)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}
