"""Failures raised while rewriting, building or running a style graph.

None of these are recoverable: a failed build aborts setup before any frame
is produced, and the caller is expected to disable the effect.
"""

from __future__ import annotations


class StyleGraphError(RuntimeError):
    """Base class for all fatal graph errors."""


class StructuralLookupFailure(StyleGraphError):
    """A layer expected by the known model variants is absent."""

    def __init__(self, name: str, context: str = "") -> None:
        msg = f"Layer {name!r} not found"
        if context:
            msg = f"{msg} ({context})"
        super().__init__(msg)
        self.name = name


class ShapeMismatch(StyleGraphError):
    """Conditioning data length disagrees with the buffer it targets."""


class UnsupportedConstruct(StyleGraphError):
    """The graph contains a construct this system does not implement."""


class DisconnectedGraphFailure(StyleGraphError):
    """A rewrite would leave a consumer referencing a deleted layer."""
