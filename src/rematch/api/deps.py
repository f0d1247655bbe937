from __future__ import annotations

from rematch.core.service import MatchingService

_SERVICE: MatchingService | None = None


def get_service() -> MatchingService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = MatchingService()
    return _SERVICE
