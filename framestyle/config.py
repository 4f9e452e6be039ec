from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple, TypeVar

from framestyle.executor import BACKENDS
from framestyle.naming import ModelVariant

T = TypeVar("T")

STYLE_INDEX_MAX = 1.0 - 1e-5


@dataclass(frozen=True)
class StyleTransferConfig:
    """Options recognised by the style-transfer effect."""

    input_resolution: Tuple[int, int] = (960, 540)  # width, height
    force_bilinear_upsample: bool = True
    backend: str = "auto"
    debug_model_loading: bool = False
    model_variant: ModelVariant = ModelVariant.REF_BUT_32_CHANNELS
    style_index: float = 0.0

    def __post_init__(self) -> None:
        width, height = self.input_resolution
        if int(width) <= 0 or int(height) <= 0:
            raise ValueError(f"input_resolution must be positive, got {self.input_resolution}")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")

    @property
    def width(self) -> int:
        return int(self.input_resolution[0])

    @property
    def height(self) -> int:
        return int(self.input_resolution[1])

    def with_style_index(self, index: float) -> "StyleTransferConfig":
        return replace(self, style_index=float(index))


def select_style_index(index: float, count: int) -> Optional[int]:
    """floor(index * count), clamped to a valid position; None when empty."""
    if count <= 0:
        return None
    return min(max(int(math.floor(index * count)), 0), count - 1)


def select_style(styles: Sequence[T], index: float) -> Optional[T]:
    pos = select_style_index(index, len(styles))
    return None if pos is None else styles[pos]
