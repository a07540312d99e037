"""Route gate: background sync only runs on a small allow-list of screens."""

from typing import Iterable, Optional
from urllib.parse import urlsplit

from .config import DEFAULT_SYNC_ROUTES


def normalize_path(path: Optional[str]) -> str:
    """Strip query string, fragment and trailing slash ('/dashboard/?x=1' -> '/dashboard')."""
    if not path:
        return ""
    cleaned = urlsplit(path).path or "/"
    if len(cleaned) > 1:
        cleaned = cleaned.rstrip('/') or "/"
    return cleaned


class RouteGate:
    def __init__(self, allowed: Optional[Iterable[str]] = None, current_path: Optional[str] = None):
        routes = allowed if allowed is not None else DEFAULT_SYNC_ROUTES.split(',')
        self.allowed = frozenset(normalize_path(r) for r in routes if r)
        self.current_path = normalize_path(current_path)

    def navigate(self, path: str) -> None:
        self.current_path = normalize_path(path)

    def is_sync_allowed(self, path: Optional[str] = None) -> bool:
        """True only when `path` (or the current path) is on the allow-list."""
        target = normalize_path(path) if path is not None else self.current_path
        return target in self.allowed
