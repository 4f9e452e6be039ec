"""In-memory layer graph of an exported style-transfer network.

Layers are kept in dependency order: every input reference names either a
declared graph input or a layer earlier in the sequence. Constant tensors are
stored NHWC, one flat float32 buffer per layer with `DataSet` views into it.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from framestyle.errors import ShapeMismatch, StructuralLookupFailure, StyleGraphError

Shape4 = Tuple[int, int, int, int]


class LayerKind(str, Enum):
    CONVOLUTION = "Convolution"
    CONVOLUTION_TRANSPOSE = "ConvolutionTranspose"
    NORMALIZATION = "Normalization"
    ACTIVATION = "Activation"
    UPSAMPLE_2D = "Upsample2D"
    STRIDED_SLICE = "StridedSlice"
    OTHER = "Other"


class Activation(str, Enum):
    NONE = "None"
    RELU = "Relu"
    SIGMOID = "Sigmoid"
    TANH = "Tanh"


CONVOLUTION_KINDS = (LayerKind.CONVOLUTION, LayerKind.CONVOLUTION_TRANSPOSE)

# Upsample2D sampling flag stored in `Layer.axis`.
UPSAMPLE_BILINEAR = 1
UPSAMPLE_NEAREST = -1


@dataclass(frozen=True)
class DataSet:
    """A named view (offset, length) into its layer's weight buffer."""

    name: str
    shape: Shape4
    offset: int
    length: int

    @property
    def channels(self) -> int:
        return self.shape[3]


@dataclass(frozen=True)
class ModelInput:
    name: str
    # (batch, height, width, channels); 0 means unbound
    shape: Shape4


@dataclass(eq=False)
class Layer:
    name: str
    kind: LayerKind
    inputs: List[str] = field(default_factory=list)
    activation: Activation = Activation.NONE
    op: str = ""
    pad: Tuple[int, int, int, int] = (0, 0, 0, 0)  # left, right, top, bottom
    stride: Tuple[int, int] = (1, 1)
    pool: Tuple[int, int] = (1, 1)
    axis: int = UPSAMPLE_NEAREST
    mode: str = "constant"
    starts: Tuple[int, ...] = ()
    ends: Tuple[int, ...] = ()
    strides: Tuple[int, ...] = ()
    alpha: float = 0.0
    beta: float = 0.0
    epsilon: float = 1e-5
    datasets: List[DataSet] = field(default_factory=list)
    weights: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))

    def dataset(self, index: int) -> np.ndarray:
        """Return dataset `index` as a reshaped view of the weight buffer."""
        ds = self.datasets[index]
        return self.weights[ds.offset : ds.offset + ds.length].reshape(ds.shape)

    def set_datasets(self, arrays: Sequence[Tuple[str, np.ndarray]]) -> None:
        """Pack `(name, array)` pairs back to back into one owned buffer."""
        datasets: List[DataSet] = []
        chunks: List[np.ndarray] = []
        offset = 0
        for name, arr in arrays:
            arr = np.asarray(arr, dtype=np.float32)
            if arr.ndim != 4:
                raise ShapeMismatch(f"{self.name}: dataset {name!r} must be rank 4, got {arr.shape}")
            datasets.append(DataSet(name, tuple(int(d) for d in arr.shape), offset, int(arr.size)))
            chunks.append(arr.reshape(-1))
            offset += int(arr.size)
        self.datasets = datasets
        self.weights = np.concatenate(chunks) if chunks else np.zeros(0, dtype=np.float32)

    def set_scale_bias(self, scale: Sequence[float], bias: Sequence[float]) -> None:
        """Store scale and bias as the two halves of one buffer."""
        scale = np.asarray(scale, dtype=np.float32).reshape(-1)
        bias = np.asarray(bias, dtype=np.float32).reshape(-1)
        if scale.size != bias.size:
            raise ShapeMismatch(f"{self.name}: scale has {scale.size} channels, bias has {bias.size}")
        channels = int(scale.size)
        self.datasets = [
            DataSet("scale", (1, 1, 1, channels), 0, channels),
            DataSet("bias", (1, 1, 1, channels), channels, channels),
        ]
        self.weights = np.concatenate([scale, bias])

    @property
    def output_channels(self) -> int:
        if self.kind not in CONVOLUTION_KINDS or len(self.datasets) < 2:
            raise StyleGraphError(f"{self.name}: output channels only defined for convolutions with bias")
        return self.datasets[1].channels

    def copy(self) -> "Layer":
        return copy.deepcopy(self)

    def describe(self) -> Dict[str, object]:
        """Plain-data rendering of everything except the weight bytes."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "inputs": list(self.inputs),
            "activation": self.activation.value,
            "op": self.op,
            "pad": list(self.pad),
            "stride": list(self.stride),
            "pool": list(self.pool),
            "axis": self.axis,
            "mode": self.mode,
            "starts": list(self.starts),
            "ends": list(self.ends),
            "strides": list(self.strides),
            "alpha": self.alpha,
            "beta": self.beta,
            "epsilon": self.epsilon,
            "datasets": [[d.name, list(d.shape), d.offset, d.length] for d in self.datasets],
        }


@dataclass(eq=False)
class Graph:
    layers: List[Layer] = field(default_factory=list)
    inputs: List[ModelInput] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)

    def clone(self) -> "Graph":
        return copy.deepcopy(self)

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self):
        return iter(self.layers)

    @property
    def layer_names(self) -> List[str]:
        return [layer.name for layer in self.layers]

    @property
    def input_names(self) -> List[str]:
        return [i.name for i in self.inputs]

    def index_of(self, name: str) -> int:
        """Linear scan for `name`; absence is fatal."""
        for i, layer in enumerate(self.layers):
            if layer.name == name:
                return i
        raise StructuralLookupFailure(name)

    def find(self, name: str) -> Optional[Layer]:
        for layer in self.layers:
            if layer.name == name:
                return layer
        return None

    def get(self, name: str) -> Layer:
        return self.layers[self.index_of(name)]

    def consumers(self, name: str) -> List[Layer]:
        return [layer for layer in self.layers if name in layer.inputs]

    def input(self, name: str) -> ModelInput:
        for model_input in self.inputs:
            if model_input.name == name:
                return model_input
        raise StructuralLookupFailure(name, "declared input")

    def validate(self) -> None:
        """Check the structural invariants; raise on the first violation."""
        defined = set(self.input_names)
        if len(defined) != len(self.inputs):
            raise StyleGraphError("Duplicate declared input names")
        for layer in self.layers:
            if layer.name in defined:
                raise StyleGraphError(f"Duplicate layer name {layer.name!r}")
            for ref in layer.inputs:
                if ref not in defined:
                    raise StructuralLookupFailure(ref, f"input of {layer.name!r}")
            if layer.kind == LayerKind.NORMALIZATION and layer.datasets:
                if len(layer.datasets) != 2 or layer.datasets[0].length != layer.datasets[1].length:
                    raise ShapeMismatch(f"{layer.name}: normalization needs a scale/bias pair of equal length")
            defined.add(layer.name)
        if not self.outputs:
            raise StyleGraphError("Graph declares no outputs")
        for out in self.outputs:
            if out not in defined:
                raise StructuralLookupFailure(out, "declared output")

    def digest(self) -> str:
        h = hashlib.sha256()
        header = {
            "inputs": [[i.name, list(i.shape)] for i in self.inputs],
            "outputs": list(self.outputs),
            "layers": [layer.describe() for layer in self.layers],
        }
        h.update(json.dumps(header, sort_keys=True).encode("utf-8"))
        for layer in self.layers:
            h.update(np.ascontiguousarray(layer.weights, dtype=np.float32).tobytes())
        return h.hexdigest()


def nearest_convolution_before(layers: Sequence[Layer], index: int) -> Optional[Layer]:
    """Closest Convolution/ConvolutionTranspose strictly before `index`."""
    for i in range(index - 1, -1, -1):
        if layers[i].kind in CONVOLUTION_KINDS:
            return layers[i]
    return None
