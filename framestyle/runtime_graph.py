"""Build the fixed-shape per-frame inference graph from an exported graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from framestyle import naming
from framestyle.executor import BoundExecutable, TorchExecutor
from framestyle.graph import Graph
from framestyle.naming import ModelVariant
from framestyle.rewrite import (
    bind_input,
    fix_upsample_params,
    fold_activation_into_normalization,
    inject_normalization_defaults,
    inject_normalization_from_vectors,
    remove_by_name_substring,
    remove_layers,
    remove_strided_slice_layers,
    rewire_input,
    strip_unsupported_padding,
    tap_fed_normalizations,
    trim_tail,
)

_logger = logging.getLogger(__name__)


def build_inference_graph(
    graph: Graph,
    vectors: Sequence[np.ndarray],
    variant: ModelVariant,
    resolution: Tuple[int, int],
    force_bilinear_upsample: bool = True,
) -> Tuple[Graph, List[str]]:
    """Rewrite `graph` for per-frame use with the given conditioning vectors.

    `resolution` is (width, height). Returns the rewritten graph and the
    names of the normalization layers whose scale/bias follow the style.
    """
    width, height = resolution
    tap_fed = tap_fed_normalizations(graph)

    # the prediction network is baked into the conditioning vectors; taps are dropped once normalizations are bound
    g = remove_by_name_substring(graph, naming.PREDICTION_PREFIX, detach_taps=True)
    # nearest is the reference behaviour, bilinear scales better at low resolution
    use_bilinear = force_bilinear_upsample or variant != ModelVariant.REFERENCE
    g = fix_upsample_params(g, use_bilinear)
    g = strip_unsupported_padding(g)
    g, patch_names = inject_normalization_from_vectors(g, vectors, tap_fed)
    g = inject_normalization_defaults(g)
    g = remove_strided_slice_layers(g)
    g = fold_activation_into_normalization(g)
    g = rewire_input(g, naming.FIRST_CONV, naming.CONTENT_INPUT)
    g = remove_layers(g, naming.DEAD_NORMALISATION_LAYERS[variant])
    # post-processing is applied on read-back instead
    g = trim_tail(g, naming.POST_PROCESS_ENTRY, naming.POST_PROCESS_LENGTH)
    g = bind_input(g, naming.CONTENT_INPUT, height, width, 3)
    g.validate()
    return g, patch_names


@dataclass
class RuntimeBuild:
    graph: Graph
    executable: BoundExecutable
    patch_names: List[str]


class RuntimeGraphBuilder:
    def __init__(
        self,
        executor: TorchExecutor,
        variant: ModelVariant,
        resolution: Tuple[int, int],
        force_bilinear_upsample: bool = True,
    ) -> None:
        self.executor = executor
        self.variant = variant
        self.resolution = (int(resolution[0]), int(resolution[1]))
        self.force_bilinear_upsample = force_bilinear_upsample

    def build(self, graph: Graph, vectors: Sequence[np.ndarray]) -> RuntimeBuild:
        runtime, patch_names = build_inference_graph(
            graph,
            vectors,
            variant=self.variant,
            resolution=self.resolution,
            force_bilinear_upsample=self.force_bilinear_upsample,
        )
        executable = self.executor.compile(runtime)
        self._prime(executable)
        _logger.info(
            "Built %s runtime graph: %d layers, %d patch targets, output %s",
            self.variant.name,
            len(runtime),
            len(patch_names),
            runtime.outputs[0],
        )
        return RuntimeBuild(graph=runtime, executable=executable, patch_names=patch_names)

    @staticmethod
    def _prime(executable: BoundExecutable) -> None:
        # one throwaway run so allocation happens before the first real frame
        model_input = executable.inputs[0]
        _, height, width, channels = model_input.shape
        zeros = np.zeros((1, height, width, channels), dtype=np.float32)
        executable.execute({model_input.name: zeros})
