from __future__ import annotations


class InvariantViolation(ValueError):
    """A voxel map mutation was refused because it would break a terrain rule."""

    def __init__(self, message: str, *, pos: object | None = None) -> None:
        super().__init__(message)
        self.pos = pos


class CorruptedState(ValueError):
    """Persisted state failed validation and cannot be resumed."""
