"""Per-frame inference and the style-transfer effect lifecycle.

Calls are synchronous and not thread safe: style changes and frame renders
must be serialised by the caller.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np

from framestyle.conditioning import ConditioningExtractor, ConditioningVector, as_nhwc, patch_conditioning
from framestyle.config import StyleTransferConfig, select_style_index
from framestyle.errors import StyleGraphError
from framestyle.executor import BoundExecutable, TorchExecutor
from framestyle.graph import Graph
from framestyle.model_io import load_variant
from framestyle.naming import POST_NETWORK_COLOR_BIAS, POST_NETWORK_COLOR_SCALE, ModelVariant
from framestyle.runtime_graph import RuntimeBuild, RuntimeGraphBuilder

_logger = logging.getLogger(__name__)

GraphLoader = Callable[[ModelVariant, bool], Graph]


def infer_frame(executable: BoundExecutable, frame: np.ndarray) -> np.ndarray:
    """Run one content frame through `executable` and undo the network's
    colour normalisation. Returns an array shaped like `frame`.
    """
    batched = as_nhwc(frame)
    model_input = executable.inputs[0]
    outputs = executable.execute({model_input.name: batched})
    pred = outputs[executable.outputs[0]]
    bias = np.asarray(POST_NETWORK_COLOR_BIAS[: pred.shape[-1]], dtype=np.float32)
    out = pred * POST_NETWORK_COLOR_SCALE + bias
    return out[0] if np.ndim(frame) == 3 else out


class StyleTransfer:
    """Style transfer effect: build once, patch on style change, infer per frame."""

    def __init__(
        self,
        config: StyleTransferConfig,
        styles: Sequence[np.ndarray],
        graph_loader: GraphLoader = load_variant,
    ) -> None:
        self.config = config
        self.styles: List[np.ndarray] = list(styles)
        self._load_graph = graph_loader
        self._graph: Optional[Graph] = None
        self._extractor: Optional[ConditioningExtractor] = None
        self._build: Optional[RuntimeBuild] = None
        self._vectors: List[ConditioningVector] = []
        self._last_style: Optional[int] = None

    def is_active(self) -> bool:
        return len(self.styles) > 0

    @property
    def style_position(self) -> Optional[int]:
        return select_style_index(self.config.style_index, len(self.styles))

    @property
    def executable(self) -> Optional[BoundExecutable]:
        return None if self._build is None else self._build.executable

    @property
    def patch_names(self) -> List[str]:
        return [] if self._build is None else list(self._build.patch_names)

    @property
    def conditioning(self) -> List[ConditioningVector]:
        return list(self._vectors)

    def set_style_index(self, index: float) -> None:
        self.config = self.config.with_style_index(index)

    def setup(self) -> None:
        if self._build is not None:
            self.cleanup()
        _logger.info("Setup (%s, %dx%d)", self.config.model_variant.name, self.config.width, self.config.height)
        self._graph = self._load_graph(self.config.model_variant, self.config.debug_model_loading)
        executor = TorchExecutor(self.config.backend, debug=self.config.debug_model_loading)
        self._extractor = ConditioningExtractor(executor)
        position = self.style_position
        if position is None:
            _logger.warning("No style images configured, effect stays inactive")
            return
        self._vectors = self._extractor.extract(self._graph, self.styles[position])
        self._last_style = position
        builder = RuntimeGraphBuilder(
            executor,
            variant=self.config.model_variant,
            resolution=self.config.input_resolution,
            force_bilinear_upsample=self.config.force_bilinear_upsample,
        )
        self._build = builder.build(self._graph, self._vectors)

    def render(self, frame: np.ndarray) -> np.ndarray:
        if not self.is_active():
            return frame
        if self._build is None:
            raise StyleGraphError("render() called before setup()")
        position = self.style_position
        if position != self._last_style:
            _logger.info("Style changed: %s -> %s", self._last_style, position)
            self._last_style = position
            self._vectors = self._extractor.extract(self._graph, self.styles[position])
            patch_conditioning(self._build.executable, self._build.patch_names, self._vectors)
        return infer_frame(self._build.executable, frame)

    def cleanup(self) -> None:
        _logger.info("Cleanup")
        self._last_style = None
        if self._build is not None:
            self._build.executable.dispose()
            self._build = None
