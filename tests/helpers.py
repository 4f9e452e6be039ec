"""Small hand-built graphs for rewrite and pipeline tests."""

from __future__ import annotations

from typing import List, Sequence

import numpy as np

from framestyle import naming
from framestyle.graph import Activation, Graph, Layer, LayerKind, ModelInput


def conv(name: str, src: str, cin: int, cout: int, kernel: int = 1, seed: int = 0) -> Layer:
    rng = np.random.default_rng(seed)
    layer = Layer(name, LayerKind.CONVOLUTION, [src])
    layer.set_datasets(
        [
            ("kernel", rng.normal(0.0, 0.3, size=(kernel, kernel, cin, cout))),
            ("bias", np.zeros((1, 1, 1, cout))),
        ]
    )
    return layer


def op(name: str, kind_op: str, inputs: Sequence[str], **kwargs) -> Layer:
    return Layer(name, LayerKind.OTHER, list(inputs), op=kind_op, **kwargs)


def const(name: str, values: Sequence[float]) -> Layer:
    layer = Layer(name, LayerKind.OTHER, op="Const")
    layer.set_datasets([("value", np.asarray(values, dtype=np.float32).reshape(1, 1, 1, -1))])
    return layer


def tap(name: str, src: str, start: int, channels: int) -> Layer:
    return Layer(
        name,
        LayerKind.STRIDED_SLICE,
        [src],
        starts=(0, 0, 0, start),
        ends=(1, 1, 1, start + channels),
        strides=(1, 1, 1, 1),
    )


def norm(name: str, inputs: Sequence[str]) -> Layer:
    return Layer(name, LayerKind.NORMALIZATION, list(inputs))


def relu(name: str, src: str) -> Layer:
    return Layer(name, LayerKind.ACTIVATION, [src], activation=Activation.RELU)


def graph(layers: List[Layer], outputs: Sequence[str], inputs: Sequence[str] = ("x",)) -> Graph:
    return Graph(
        layers=layers,
        inputs=[ModelInput(name, (0, 0, 0, 3)) for name in inputs],
        outputs=list(outputs),
    )


def twenty_layer_graph(channels: int = 4, seed: int = 0) -> Graph:
    """Exported-layout graph with two taps feeding one normalization, `norm_a`."""
    rng = np.random.default_rng(seed)
    P, S = naming.PREDICTION_PREFIX, naming.STYLE_NETWORK_PREFIX
    params = Layer(f"{P}style_params", LayerKind.OTHER, [f"{P}mean"], op="Dense")
    params.set_datasets(
        [
            ("kernel", rng.normal(0.0, 0.5, size=(1, 1, 3, 2 * channels))),
            ("bias", np.concatenate([np.ones(channels), np.zeros(channels)]).reshape(1, 1, 1, -1)),
        ]
    )
    tail = f"{S}clamp_0_255"
    layers = [
        op(naming.PREDICTION_INPUT_DIVIDE, "Div", [naming.STYLE_INPUT], alpha=255.0),
        op(f"{P}mean", "GlobalAvgPool", [naming.PREDICTION_INPUT_DIVIDE]),
        params,
        const(f"{S}normalized_contentFrames/y", [255.0, 255.0, 255.0]),
        op(f"{S}normalized_contentFrames", "Div", [naming.CONTENT_INPUT, f"{S}normalized_contentFrames/y"]),
        op(f"{S}conv1/reflect_padding", "Pad", [f"{S}normalized_contentFrames"], mode="reflect", pad=(1, 1, 1, 1)),
        conv(naming.FIRST_CONV, f"{S}conv1/reflect_padding", 3, channels, kernel=3, seed=seed),
        tap(f"{S}conv1/StridedSlice", params.name, 0, channels),
        tap(f"{S}conv1/StridedSlice_1", params.name, channels, channels),
        norm("norm_a", [naming.FIRST_CONV, f"{S}conv1/StridedSlice", f"{S}conv1/StridedSlice_1"]),
        relu(f"{S}conv1/Relu", "norm_a"),
        Layer(f"{S}up/Upsample2D", LayerKind.UPSAMPLE_2D, [f"{S}conv1/Relu"]),
        conv(f"{S}output/convolution", f"{S}up/Upsample2D", channels, 3, seed=seed + 1),
        Layer(f"{S}output/Sigmoid", LayerKind.ACTIVATION, [f"{S}output/convolution"], activation=Activation.SIGMOID),
        op(f"{S}output/mul", "Mul", [f"{S}output/Sigmoid"], alpha=1.0),
        op(f"{tail}/add", "Add", [f"{S}output/mul"], alpha=0.5),
        op(f"{tail}/mul", "Mul", [f"{tail}/add"], alpha=255.0),
        op(f"{tail}/clip", "Clamp", [f"{tail}/mul"], alpha=0.0, beta=255.0),
        op(f"{tail}/div", "Div", [f"{tail}/clip"], alpha=255.0),
        op(f"{tail}/output", "Identity", [f"{tail}/div"]),
    ]
    return graph(layers, [f"{tail}/output"], inputs=(naming.STYLE_INPUT, naming.CONTENT_INPUT))


def branching_prediction_graph(channels: int = 4, seed: int = 0) -> Graph:
    """`twenty_layer_graph` with a two-operand input divide and an Add in the
    prediction network, the way exported graphs carry them."""
    g = twenty_layer_graph(channels, seed)
    P = naming.PREDICTION_PREFIX
    divide_y = f"{naming.PREDICTION_INPUT_DIVIDE}/y"
    head = [
        const(divide_y, [255.0, 255.0, 255.0]),
        op(naming.PREDICTION_INPUT_DIVIDE, "Div", [naming.STYLE_INPUT, divide_y]),
        op(f"{P}mean", "GlobalAvgPool", [naming.PREDICTION_INPUT_DIVIDE]),
        op(f"{P}twice", "Mul", [f"{P}mean"], alpha=2.0),
        op(f"{P}mix", "Add", [f"{P}mean", f"{P}twice"]),
    ]
    g.get(f"{P}style_params").inputs = [f"{P}mix"]
    g.layers = head + g.layers[2:]
    g.validate()
    return g
