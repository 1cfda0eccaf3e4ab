from __future__ import annotations


class RunGuard:
    """Single-slot exclusive flag. A second claimant is refused, never queued."""

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False
