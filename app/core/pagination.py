"""Pagination helpers for list endpoints (ledger, videos, payments)."""


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit to [1, max_limit] and offset to >= 0; return (limit, offset)."""
    return max(1, min(limit, max_limit)), max(0, offset)
