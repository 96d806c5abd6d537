"""Resolution of paths against a user-supplied host filesystem root."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

__all__ = ["Resolver", "TestingResolver", "new_test_resolver"]


@runtime_checkable
class Resolver(Protocol):
    """Resolves paths relative to an alternate filesystem root."""

    @property
    def is_set(self) -> bool:
        """True if an alternate filesystem root has been set."""
        ...

    def resolve_hostfs(self, path: str) -> str:
        """Resolve a path against the host filesystem root."""
        ...

    def join(self, *args: str) -> str:
        """Join path elements onto the host filesystem root."""
        ...


def _join(*elements: str) -> str:
    """Join non-empty elements with '/' and clean the result."""
    parts = [element for element in elements if element]
    if not parts:
        return ""
    cleaned = posixpath.normpath("/".join(parts))
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


@dataclass(frozen=True)
class TestingResolver:
    """A plain resolver rooted at a fixed path."""

    __test__ = False  # keep pytest from collecting this class

    path: str = "/"
    is_set: bool = False

    def resolve_hostfs(self, path: str) -> str:
        """Return ``path`` placed under the resolver's root."""
        return _join(self.path, path)

    def join(self, *args: str) -> str:
        """Join the given elements onto the resolver's root."""
        return _join(self.path, *args)


def new_test_resolver(path: str) -> TestingResolver:
    """Create a resolver; an empty path or '/' means no alternate root."""
    if path in ("", "/"):
        return TestingResolver(path="/", is_set=False)
    return TestingResolver(path=path, is_set=True)