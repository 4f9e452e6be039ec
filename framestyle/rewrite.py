"""Graph-to-graph rewrite passes.

Every pass takes a `Graph` and returns a new one; the input graph is never
modified. Deletions are done mark-then-compact: the doomed set is decided
first, then a new layer list is built and surviving input references are
rewritten through an explicit redirect table.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from framestyle import naming
from framestyle.errors import (
    DisconnectedGraphFailure,
    ShapeMismatch,
    StructuralLookupFailure,
    StyleGraphError,
    UnsupportedConstruct,
)
from framestyle.graph import (
    CONVOLUTION_KINDS,
    UPSAMPLE_BILINEAR,
    UPSAMPLE_NEAREST,
    Activation,
    Graph,
    Layer,
    LayerKind,
    ModelInput,
    nearest_convolution_before,
)

_logger = logging.getLogger(__name__)

# Maps a deleted layer name to its replacement; None drops the reference.
Redirect = Dict[str, Optional[str]]


def _compact(graph: Graph, doomed: Set[str], redirect: Redirect, pass_name: str) -> Graph:
    """Build a graph without `doomed`, rewriting survivors through `redirect`.

    A surviving reference to a doomed layer with no redirect entry is a
    `DisconnectedGraphFailure`. Declared outputs that were deleted are
    redirected when possible and dropped otherwise.
    """
    kept: List[Layer] = []
    for layer in graph.layers:
        if layer.name in doomed:
            continue
        layer = layer.copy()
        inputs: List[str] = []
        for ref in layer.inputs:
            if ref not in doomed:
                inputs.append(ref)
                continue
            if ref not in redirect:
                raise DisconnectedGraphFailure(
                    f"{pass_name}: {layer.name!r} still consumes deleted layer {ref!r}"
                )
            target = redirect[ref]
            if target is not None:
                inputs.append(target)
        layer.inputs = inputs
        kept.append(layer)

    outputs: List[str] = []
    for out in graph.outputs:
        if out in doomed:
            target = redirect.get(out)
            if target is not None and target not in outputs:
                outputs.append(target)
        elif out not in outputs:
            outputs.append(out)

    _logger.debug("%s: %d -> %d layers", pass_name, len(graph.layers), len(kept))
    return Graph(layers=kept, inputs=list(graph.inputs), outputs=outputs)


def apply_renames(graph: Graph, renames: Dict[str, str]) -> Graph:
    """Rewrite every input reference and output name found in `renames`."""
    result = graph.clone()
    for layer in result.layers:
        layer.inputs = [renames.get(ref, ref) for ref in layer.inputs]
    result.outputs = [renames.get(out, out) for out in result.outputs]
    return result


def lookup_by_name(graph: Graph, name: str) -> int:
    return graph.index_of(name)


def remove_by_name_substring(graph: Graph, substring: str, detach_taps: bool = False) -> Graph:
    """Delete every layer whose name contains `substring`.

    Consumers of a deleted layer are rewired to that layer's own input, which
    only works for single-input passthrough layers. Chains of deleted
    single-input layers are followed back to the first survivor.

    With `detach_taps`, surviving StridedSlice taps drop their references to
    deleted layers instead of being rewired; every other consumer is still
    subject to the rewiring rule.
    """
    doomed = {layer.name for layer in graph.layers if substring in layer.name}
    redirect: Redirect = {}
    for layer in graph.layers:
        if layer.name not in doomed or len(layer.inputs) != 1:
            continue
        source = layer.inputs[0]
        if source in doomed:
            if source not in redirect:
                # multi-input ancestor, leave unresolved
                continue
            source = redirect[source]
        redirect[layer.name] = source
    if detach_taps:
        graph = graph.clone()
        for layer in graph.layers:
            if layer.kind == LayerKind.STRIDED_SLICE and layer.name not in doomed:
                layer.inputs = [ref for ref in layer.inputs if ref not in doomed]
    return _compact(graph, doomed, redirect, f"remove_by_name_substring({substring!r})")


def bypass_layer(graph: Graph, name: str) -> Graph:
    """Delete layer `name` and feed its consumers from its first input.

    Constant operands that nothing else reads are deleted along with it.
    """
    layer = graph.get(name)
    if not layer.inputs:
        raise DisconnectedGraphFailure(f"{name!r} has no input to bypass to")
    doomed = {name}
    for ref in layer.inputs[1:]:
        operand = graph.find(ref)
        if operand is not None and operand.op == "Const" and len(graph.consumers(ref)) == 1:
            doomed.add(ref)
    return _compact(graph, doomed, {name: layer.inputs[0]}, f"bypass_layer({name!r})")


def remove_layers(graph: Graph, names: Sequence[str]) -> Graph:
    """Delete exactly `names`; each must exist and have no surviving consumer."""
    for name in names:
        graph.index_of(name)
    return _compact(graph, set(names), {}, "remove_layers")


def remove_layers_where(graph: Graph, predicate: Callable[[Layer], bool], pass_name: str = "remove_layers_where") -> Graph:
    doomed = {layer.name for layer in graph.layers if predicate(layer)}
    return _compact(graph, doomed, {}, pass_name)


def strip_unsupported_padding(graph: Graph) -> Graph:
    """Forward reflect-padding amounts onto their consuming convolution.

    The padding mode is not carried over: the consumer pads with zeros.
    """
    pads = [layer for layer in graph.layers if naming.is_reflect_padding(layer.name)]
    if not pads:
        return graph.clone()

    result = graph.clone()
    doomed: Set[str] = set()
    for pad in pads:
        consumers = result.consumers(pad.name)
        if len(consumers) != 1:
            raise UnsupportedConstruct(
                f"{pad.name}: reflect padding needs exactly one consumer, found {len(consumers)}"
            )
        consumer = consumers[0]
        if consumer.kind not in CONVOLUTION_KINDS:
            raise UnsupportedConstruct(
                f"{pad.name}: cannot forward padding onto {consumer.kind.value} layer {consumer.name!r}"
            )
        inputs: List[str] = []
        for ref in consumer.inputs:
            if ref == pad.name:
                inputs.extend(pad.inputs)
            else:
                inputs.append(ref)
        consumer.inputs = inputs
        consumer.pad = tuple(pad.pad)
        doomed.add(pad.name)
    return _compact(result, doomed, {}, "strip_unsupported_padding")


def fix_upsample_params(graph: Graph, use_bilinear: bool) -> Graph:
    result = graph.clone()
    for layer in result.layers:
        if layer.kind == LayerKind.UPSAMPLE_2D:
            layer.pool = (2, 2)
            layer.axis = UPSAMPLE_BILINEAR if use_bilinear else UPSAMPLE_NEAREST
    return result


def tag_conditioning_taps(graph: Graph) -> List[str]:
    """Names of all StridedSlice layers, in declaration order."""
    return [layer.name for layer in graph.layers if layer.kind == LayerKind.STRIDED_SLICE]


def tap_fed_normalizations(graph: Graph) -> List[str]:
    """Normalization layers immediately preceded by a StridedSlice tap."""
    names: List[str] = []
    for i, layer in enumerate(graph.layers):
        if i > 0 and layer.kind == LayerKind.NORMALIZATION and graph.layers[i - 1].kind == LayerKind.STRIDED_SLICE:
            names.append(layer.name)
    return names


def _governing_channels(layers: Sequence[Layer], index: int) -> int:
    conv = nearest_convolution_before(layers, index)
    if conv is None:
        raise StructuralLookupFailure(
            "<convolution>", f"no convolution precedes normalization {layers[index].name!r}"
        )
    return conv.output_channels


def inject_normalization_defaults(graph: Graph) -> Graph:
    """Give every Normalization without scale/bias an identity pair."""
    result = graph.clone()
    for i, layer in enumerate(result.layers):
        if layer.kind != LayerKind.NORMALIZATION or layer.datasets:
            continue
        channels = _governing_channels(result.layers, i)
        layer.set_scale_bias(np.ones(channels, dtype=np.float32), np.zeros(channels, dtype=np.float32))
    return result


def inject_normalization_from_vectors(
    graph: Graph,
    vectors: Sequence[np.ndarray],
    targets: Optional[Sequence[str]] = None,
) -> Tuple[Graph, List[str]]:
    """Bind (alpha, beta) pairs as scale/bias of tap-fed Normalization layers.

    `targets` names the layers that were fed by a tap in the original
    graph; it defaults to the tap-fed layers of `graph` itself. Pairs are
    consumed in order. Returns the new graph and the patched layer names.
    """
    if targets is None:
        targets = tap_fed_normalizations(graph)
    wanted = set(targets)
    result = graph.clone()
    patched: List[str] = []
    cursor = 0
    for i, layer in enumerate(result.layers):
        if layer.kind != LayerKind.NORMALIZATION or layer.name not in wanted:
            continue
        if cursor + 2 > len(vectors):
            raise ShapeMismatch(
                f"{layer.name}: ran out of conditioning vectors after {len(vectors)} (needs pair {cursor // 2})"
            )
        alpha = np.asarray(vectors[cursor], dtype=np.float32).reshape(-1)
        beta = np.asarray(vectors[cursor + 1], dtype=np.float32).reshape(-1)
        channels = _governing_channels(result.layers, i)
        if alpha.size != channels or beta.size != channels:
            raise ShapeMismatch(
                f"{layer.name}: conditioning vectors have {alpha.size}/{beta.size} channels, "
                f"governing convolution has {channels}"
            )
        layer.set_scale_bias(alpha, beta)
        patched.append(layer.name)
        cursor += 2

    missing = wanted.difference(patched)
    if missing:
        raise StructuralLookupFailure(sorted(missing)[0], "tap-fed normalization")
    if cursor != len(vectors):
        raise ShapeMismatch(f"{len(vectors)} conditioning vectors for {len(patched)} normalization layers")
    return result, patched


def fold_activation_into_normalization(graph: Graph) -> Graph:
    """Absorb ReLU activations into the Normalization layer feeding them.

    Fusion is decided first and recorded in a rename table; references are
    rewritten in a separate pass with `apply_renames`.
    """
    result = graph.clone()
    by_name = {layer.name: layer for layer in result.layers}
    renames: Dict[str, str] = {}
    for layer in result.layers:
        if layer.kind != LayerKind.ACTIVATION or layer.activation != Activation.RELU:
            continue
        if len(layer.inputs) != 1:
            continue
        producer = by_name.get(layer.inputs[0])
        if producer is None or producer.kind != LayerKind.NORMALIZATION:
            continue
        if producer.activation != Activation.NONE or producer.name in result.outputs:
            continue
        if len(result.consumers(producer.name)) != 1:
            continue
        producer.activation = Activation.RELU
        renames[layer.name] = producer.name

    folded = Graph(
        layers=[layer for layer in result.layers if layer.name not in renames],
        inputs=result.inputs,
        outputs=result.outputs,
    )
    _logger.debug("fold_activation_into_normalization: folded %d activations", len(renames))
    return apply_renames(folded, renames)


def remove_strided_slice_layers(graph: Graph) -> Graph:
    """Delete every tap; Normalization layers lose their tap inputs."""
    doomed = set(tag_conditioning_taps(graph))
    for layer in graph.layers:
        if layer.name in doomed:
            continue
        uses = [ref for ref in layer.inputs if ref in doomed]
        if not uses:
            continue
        if layer.kind != LayerKind.NORMALIZATION:
            raise DisconnectedGraphFailure(f"{layer.name!r} consumes tap {uses[0]!r}")
        if not layer.datasets:
            raise ShapeMismatch(f"{layer.name}: tap inputs removed before scale/bias were bound")
    redirect: Redirect = {name: None for name in doomed}
    return _compact(graph, doomed, redirect, "remove_strided_slice_layers")


def rewire_input(graph: Graph, layer_name: str, new_input: str) -> Graph:
    result = graph.clone()
    index = result.index_of(layer_name)
    visible = set(result.input_names) | {layer.name for layer in result.layers[:index]}
    if new_input not in visible:
        raise StructuralLookupFailure(new_input, f"new input of {layer_name!r}")
    result.layers[index].inputs = [new_input]
    return result


def trim_tail(graph: Graph, from_layer: str, count: int) -> Graph:
    """Remove `count` layers starting at `from_layer`.

    The layer just before the removed range becomes the sole output.
    """
    start = graph.index_of(from_layer)
    if start == 0 or count < 1 or start + count > len(graph.layers):
        raise StyleGraphError(
            f"Cannot trim {count} layers from {from_layer!r} at index {start} of {len(graph.layers)}"
        )
    doomed = {layer.name for layer in graph.layers[start : start + count]}
    result = _compact(graph, doomed, {}, "trim_tail")
    result.outputs = [graph.layers[start - 1].name]
    return result


def prune_unreachable(graph: Graph) -> Graph:
    """Keep only the layers the declared outputs depend on."""
    by_name = {layer.name: layer for layer in graph.layers}
    needed: Set[str] = set()
    stack = [out for out in graph.outputs if out in by_name]
    while stack:
        name = stack.pop()
        if name in needed:
            continue
        needed.add(name)
        stack.extend(ref for ref in by_name[name].inputs if ref in by_name)
    doomed = {name for name in by_name if name not in needed}
    return _compact(graph, doomed, {}, "prune_unreachable")


def bind_input(graph: Graph, name: str, height: int, width: int, channels: int = 3) -> Graph:
    """Keep only declared input `name`, with a fixed spatial shape."""
    result = graph.clone()
    result.input(name)
    result.inputs = [ModelInput(name, (0, int(height), int(width), int(channels)))]
    return result
