from __future__ import annotations

from typing import Dict, Optional, Tuple


class CodememError(Exception):
    """Base class for errors raised by the indexing and search engine."""


class ParseFailure(CodememError):
    """The syntax tree for a file could not be produced.

    Recovered inside the extractor: the next extraction tier takes over.
    """


class DimensionMismatch(CodememError, ValueError):
    def __init__(self, expected: int, actual: int, *, shape: Optional[Tuple[int, ...]] = None) -> None:
        if shape is not None:
            message = f"Vector of shape {shape} is not a single row of dimension {expected}"
        else:
            message = f"Vector dimension {actual} does not match table dimension {expected}"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class BackendUnavailable(CodememError):
    """A vector backend could not be loaded or failed its self-test."""


class QuerySyntaxError(CodememError, ValueError):
    """The lexical query is malformed even after sanitization."""


class OrphanDataInconsistency(CodememError):
    """A vector record has no KeyMapping entry (or the reverse)."""

    def __init__(
        self,
        message: str,
        *,
        internal_ids: tuple[int, ...] = (),
        resolved: Optional[Dict[int, str]] = None,
    ) -> None:
        super().__init__(message)
        self.internal_ids = internal_ids
        # The part of the lookup that did succeed.
        self.resolved = dict(resolved or {})
