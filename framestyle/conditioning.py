"""Per-style conditioning: extraction from the prediction network, and
in-place patching of an already compiled runtime graph.
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np
import torch

from framestyle import naming
from framestyle.errors import ShapeMismatch, StructuralLookupFailure
from framestyle.executor import BoundExecutable, TorchExecutor
from framestyle.graph import Graph, LayerKind
from framestyle.rewrite import (
    bypass_layer,
    inject_normalization_defaults,
    prune_unreachable,
    remove_layers_where,
    strip_unsupported_padding,
    tag_conditioning_taps,
)

_logger = logging.getLogger(__name__)

# One flat float32 vector per tap; alpha/beta pairs are consecutive.
ConditioningVector = np.ndarray


def build_prediction_graph(graph: Graph) -> Tuple[Graph, List[str]]:
    """Reduce `graph` to the prediction network with its taps as outputs."""
    g = bypass_layer(graph, naming.PREDICTION_INPUT_DIVIDE)
    g = strip_unsupported_padding(g)
    taps = tag_conditioning_taps(g)
    if not taps:
        raise StructuralLookupFailure("<StridedSlice>", "graph has no conditioning taps")
    g.outputs = list(taps)
    g = prune_unreachable(g)
    g = remove_layers_where(
        g,
        lambda layer: layer.kind != LayerKind.STRIDED_SLICE and naming.is_style_network_layer(layer.name),
        "remove_style_network",
    )
    g = inject_normalization_defaults(g)
    return g, taps


def as_nhwc(image: np.ndarray) -> np.ndarray:
    arr = np.asarray(image, dtype=np.float32)
    if arr.ndim == 3:
        arr = arr[None]
    if arr.ndim != 4 or arr.shape[-1] != 3:
        raise ShapeMismatch(f"Expected an RGB image (H, W, 3), got {np.shape(image)}")
    return arr


class ConditioningExtractor:
    """Runs the prediction network once per style to get alpha/beta vectors."""

    def __init__(self, executor: TorchExecutor) -> None:
        self.executor = executor

    def extract(self, graph: Graph, style_image: np.ndarray) -> List[ConditioningVector]:
        prediction, taps = build_prediction_graph(graph)
        style = as_nhwc(style_image)
        # only the style input is read, but every declared input must be bound
        feed = {name: style for name in prediction.input_names}
        with self.executor.compile(prediction) as worker:
            outputs = worker.execute(feed)
        vectors = [np.array(outputs[tap], dtype=np.float32).reshape(-1) for tap in taps]
        _logger.info("Extracted %d conditioning vectors from %d-layer prediction graph", len(vectors), len(prediction))
        return vectors


def patch_conditioning(
    executable: BoundExecutable,
    patch_names: Sequence[str],
    vectors: Sequence[ConditioningVector],
) -> None:
    """Overwrite scale/bias of `patch_names` in place, two vectors per layer."""
    if len(vectors) != 2 * len(patch_names):
        raise ShapeMismatch(f"{len(vectors)} conditioning vectors for {len(patch_names)} patch targets")
    for i, name in enumerate(patch_names):
        buffers = executable.peek_constants(name)
        if len(buffers) != 2:
            raise ShapeMismatch(f"{name}: expected scale and bias buffers, found {len(buffers)}")
        for buf, vec in zip(buffers, (vectors[2 * i], vectors[2 * i + 1])):
            vec = np.asarray(vec, dtype=np.float32).reshape(-1)
            if vec.size != buf.numel():
                raise ShapeMismatch(f"{name}: vector has {vec.size} values, buffer holds {buf.numel()}")
            buf.copy_(torch.from_numpy(vec).view(buf.shape))
    _logger.debug("Patched %d normalization layers", len(patch_names))
