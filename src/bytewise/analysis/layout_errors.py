from __future__ import annotations

from typing import Iterable


class LayoutError(ValueError):
    """Base class for every failure of a layout computation.

    ``path`` holds the member names leading to the offending member, outermost
    first. Callers wrapping a nested computation prepend their own member name
    with :meth:`push` before re-raising.
    """

    kind = "LayoutError"

    def __init__(self, message: str, path: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.path: list[str] = list(path)

    def push(self, name: str) -> None:
        if name:
            self.path.insert(0, name)

    @property
    def path_text(self) -> str:
        return ".".join(self.path)

    def __str__(self) -> str:
        if self.path:
            return f"{self.kind} at {self.path_text}: {self.message}"
        return f"{self.kind}: {self.message}"


class InvalidAttribute(LayoutError):
    kind = "InvalidAttribute"


class BitfieldTooWide(LayoutError):
    kind = "BitfieldTooWide"


class TrailingMemberAfterFlexibleArray(LayoutError):
    kind = "TrailingMemberAfterFlexibleArray"


class FlexibleArrayInUnion(LayoutError):
    kind = "FlexibleArrayInUnion"


class UnsupportedConstruct(LayoutError):
    kind = "UnsupportedConstruct"


class DuplicateMember(LayoutError):
    kind = "DuplicateMember"


class TypeTreeFormatError(ValueError):
    """Raised for a type-tree document that does not have the expected shape."""


class ProfileError(ValueError):
    """Raised for an unknown or malformed ABI profile."""
