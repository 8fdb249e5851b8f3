"""
Ошибки игровых операций. Любая из них откатывает транзакцию действия целиком;
api/main.py отдаёт клиенту {"detail": message, "error": code} со статусом класса.
"""
from typing import Any, Dict, Optional


class GameError(Exception):
    status_code = 400
    default_code = "game_error"

    def __init__(self, message: str, code: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error": self.code}
        if self.extra:
            body.update(self.extra)
        return body


class NotFound(GameError):
    status_code = 404
    default_code = "not_found"


class InvalidState(GameError):
    """Wrong lifecycle phase: empty slot, not ready yet, occupied cell."""
    status_code = 409
    default_code = "invalid_state"


class InsufficientResource(GameError):
    """Crystals, aether, items, energy, population or level below requirement."""
    status_code = 400
    default_code = "insufficient_resource"


class AlreadyDone(GameError):
    status_code = 409
    default_code = "already_done"


class Unauthorized(GameError):
    """Ownership or role mismatch."""
    status_code = 403
    default_code = "unauthorized"
