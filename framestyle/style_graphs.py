"""Randomly initialised graphs in the exported style-transfer layout.

The layout matches what the export tool produces for both model variants:
a style prediction network whose output is cut into per-layer alpha/beta
vectors by StridedSlice taps, a style network with instance normalization,
variant-specific content normalisation and a post-processing tail. Layer
names follow `framestyle.naming`, so these graphs go through the same
rewrites as real assets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from framestyle import naming
from framestyle.graph import Activation, Graph, Layer, LayerKind, ModelInput
from framestyle.naming import ModelVariant

P = naming.PREDICTION_PREFIX
S = naming.STYLE_NETWORK_PREFIX


@dataclass(frozen=True)
class StyleGraphSpec:
    """Sizes of a generated style graph."""

    base_channels: int = 32
    wide_channels: int = 64
    bottleneck: int = 16
    residual_blocks: int = 1


VARIANT_SPECS: Dict[ModelVariant, StyleGraphSpec] = {
    ModelVariant.REFERENCE: StyleGraphSpec(base_channels=32, wide_channels=64),
    ModelVariant.REF_BUT_32_CHANNELS: StyleGraphSpec(base_channels=32, wide_channels=32),
}


class _Writer:
    def __init__(self, seed: int) -> None:
        self.rng = np.random.default_rng(seed)
        self.layers: List[Layer] = []
        # (norm, alpha tap, beta tap, channels) in tap order; offsets resolved later
        self.taps: List[Tuple[str, str, str, int]] = []

    def add(self, layer: Layer) -> str:
        self.layers.append(layer)
        return layer.name

    def const(self, name: str, values: np.ndarray) -> str:
        layer = Layer(name, LayerKind.OTHER, op="Const")
        layer.set_datasets([("value", np.asarray(values, dtype=np.float32).reshape(1, 1, 1, -1))])
        return self.add(layer)

    def conv(self, name: str, src: str, cin: int, cout: int, kernel: int, stride: int = 1) -> str:
        std = np.sqrt(2.0 / (kernel * kernel * cin)) * 0.5
        layer = Layer(name, LayerKind.CONVOLUTION, [src], stride=(stride, stride))
        layer.set_datasets(
            [
                ("kernel", self.rng.normal(0.0, std, size=(kernel, kernel, cin, cout))),
                ("bias", self.rng.normal(0.0, 0.01, size=(1, 1, 1, cout))),
            ]
        )
        return self.add(layer)

    def padded_conv(self, scope: str, src: str, cin: int, cout: int, kernel: int, stride: int = 1) -> str:
        half = kernel // 2
        pad = self.add(
            Layer(f"{scope}/reflect_padding", LayerKind.OTHER, [src], op="Pad", mode="reflect", pad=(half, half, half, half))
        )
        leaf = scope.rsplit("/", 1)[-1]
        return self.conv(f"{scope}/convolution_{leaf}/convolution", pad, cin, cout, kernel, stride)

    def norm(self, scope: str, src: str, channels: int, conditioned: bool, relu: bool) -> str:
        name = f"{scope}/InstanceNorm"
        inputs = [src]
        if conditioned:
            alpha = self.add(Layer(f"{scope}/StridedSlice", LayerKind.STRIDED_SLICE))
            beta = self.add(Layer(f"{scope}/StridedSlice_1", LayerKind.STRIDED_SLICE))
            self.taps.append((name, alpha, beta, channels))
            inputs += [alpha, beta]
        out = self.add(Layer(name, LayerKind.NORMALIZATION, inputs))
        if relu:
            out = self.add(Layer(f"{scope}/Relu", LayerKind.ACTIVATION, [out], activation=Activation.RELU))
        return out


def _content_normalisation(w: _Writer, variant: ModelVariant) -> str:
    frame = naming.CONTENT_INPUT
    if variant == ModelVariant.REFERENCE:
        scope = f"{S}normalisation"
        sub_y = w.const(f"{scope}/sub/y", np.zeros(3))
        sub = w.add(Layer(f"{scope}/sub", LayerKind.OTHER, [frame, sub_y], op="Sub"))
        div_y = w.const(f"{scope}/normalized_contentFrames/y", np.full(3, 255.0))
        div = w.add(Layer(f"{scope}/normalized_contentFrames", LayerKind.OTHER, [sub, div_y], op="Div"))
        add_y = w.const(f"{scope}/add/y", np.zeros(3))
        return w.add(Layer(f"{scope}/add", LayerKind.OTHER, [div, add_y], op="Add"))
    div_y = w.const(f"{S}normalized_contentFrames/y", np.full(3, 255.0))
    return w.add(Layer(f"{S}normalized_contentFrames", LayerKind.OTHER, [frame, div_y], op="Div"))


def _post_process_tail(w: _Writer, src: str) -> str:
    scope = f"{S}clamp_0_255"
    out = w.add(Layer(f"{scope}/add", LayerKind.OTHER, [src], op="Add", alpha=0.5))
    out = w.add(Layer(f"{scope}/mul", LayerKind.OTHER, [out], op="Mul", alpha=255.0))
    out = w.add(Layer(f"{scope}/clip", LayerKind.OTHER, [out], op="Clamp", alpha=0.0, beta=255.0))
    out = w.add(Layer(f"{scope}/div", LayerKind.OTHER, [out], op="Div", alpha=255.0))
    return w.add(Layer(f"{scope}/output", LayerKind.OTHER, [out], op="Identity"))


def build_style_graph(
    variant: ModelVariant = ModelVariant.REF_BUT_32_CHANNELS,
    spec: Optional[StyleGraphSpec] = None,
    seed: int = 0,
) -> Graph:
    """Build an exported-layout graph for `variant` with random weights."""
    spec = spec or VARIANT_SPECS[variant]
    base, wide = spec.base_channels, spec.wide_channels

    head = _Writer(seed)
    divide_y = head.const(f"{naming.PREDICTION_INPUT_DIVIDE}/y", np.full(3, 255.0))
    style = head.add(
        Layer(naming.PREDICTION_INPUT_DIVIDE, LayerKind.OTHER, [naming.STYLE_INPUT, divide_y], op="Div")
    )
    x = head.padded_conv(f"{P}conv0", style, 3, base, 3, stride=2)
    x = head.add(Layer(f"{P}conv0/Relu", LayerKind.ACTIVATION, [x], activation=Activation.RELU))
    y = head.padded_conv(f"{P}conv1", x, base, base, 3)
    y = head.add(Layer(f"{P}conv1/Relu", LayerKind.ACTIVATION, [y], activation=Activation.RELU))
    x = head.add(Layer(f"{P}residual/add", LayerKind.OTHER, [x, y], op="Add"))
    x = head.add(Layer(f"{P}mean", LayerKind.OTHER, [x], op="GlobalAvgPool"))
    bottleneck = head.add(Layer(f"{P}bottleneck", LayerKind.OTHER, [x], op="Dense"))
    params = head.add(Layer(f"{P}style_params", LayerKind.OTHER, [bottleneck], op="Dense"))

    body = _Writer(seed + 1)
    x = _content_normalisation(body, variant)
    x = body.padded_conv(f"{S}conv1", x, 3, base, 9)
    x = body.norm(f"{S}conv1", x, base, conditioned=True, relu=True)
    x = body.padded_conv(f"{S}conv2", x, base, wide, 3, stride=2)
    x = body.norm(f"{S}conv2", x, wide, conditioned=True, relu=True)
    for r in range(1, spec.residual_blocks + 1):
        scope = f"{S}residual/residual{r}"
        y = body.padded_conv(f"{scope}/conv1", x, wide, wide, 3)
        y = body.norm(f"{scope}/conv1", y, wide, conditioned=False, relu=True)
        y = body.padded_conv(f"{scope}/conv2", y, wide, wide, 3)
        y = body.norm(f"{scope}/conv2", y, wide, conditioned=True, relu=False)
        x = body.add(Layer(f"{scope}/add", LayerKind.OTHER, [x, y], op="Add"))
    x = body.add(Layer(f"{S}expand1/Upsample2D", LayerKind.UPSAMPLE_2D, [x]))
    x = body.padded_conv(f"{S}expand1/conv", x, wide, base, 3)
    x = body.norm(f"{S}expand1/conv", x, base, conditioned=True, relu=True)
    x = body.padded_conv(f"{S}output", x, base, 3, 9)
    x = body.add(Layer(f"{S}output/Tanh", LayerKind.ACTIVATION, [x], activation=Activation.TANH))
    x = body.add(Layer(f"{S}output/mul", LayerKind.OTHER, [x], op="Mul", alpha=0.5))
    out = _post_process_tail(body, x)

    # taps slice the prediction output in declaration order: alpha then beta
    total = 2 * sum(channels for *_, channels in body.taps)
    offset = 0
    alphas_bias: List[np.ndarray] = []
    by_name = {layer.name: layer for layer in body.layers}
    for _, alpha, beta, channels in body.taps:
        for tap, start in ((alpha, offset), (beta, offset + channels)):
            layer = by_name[tap]
            layer.inputs = [params]
            layer.starts = (0, 0, 0, start)
            layer.ends = (1, 1, 1, start + channels)
            layer.strides = (1, 1, 1, 1)
        alphas_bias += [np.ones(channels), np.zeros(channels)]
        offset += 2 * channels

    rng = head.rng
    by_head = {layer.name: layer for layer in head.layers}
    by_head[bottleneck].set_datasets(
        [
            ("kernel", rng.normal(0.0, 1.0 / np.sqrt(base), size=(1, 1, base, spec.bottleneck))),
            ("bias", np.zeros((1, 1, 1, spec.bottleneck))),
        ]
    )
    by_head[params].set_datasets(
        [
            ("kernel", rng.normal(0.0, 0.1 / np.sqrt(spec.bottleneck), size=(1, 1, spec.bottleneck, total))),
            ("bias", np.concatenate(alphas_bias).reshape(1, 1, 1, total)),
        ]
    )

    graph = Graph(
        layers=head.layers + body.layers,
        inputs=[ModelInput(naming.STYLE_INPUT, (0, 0, 0, 3)), ModelInput(naming.CONTENT_INPUT, (0, 0, 0, 3))],
        outputs=[out],
    )
    graph.validate()
    return graph
