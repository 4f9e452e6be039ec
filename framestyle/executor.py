"""Torch execution backend for layer graphs.

Graph tensors are NHWC at the boundary (inputs, outputs, constants); compute
runs NCHW. Constants live in one flat tensor per layer so that scale/bias
views can be overwritten in place after compilation.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

import numpy as np
import torch
import torch.nn.functional as F

from framestyle.errors import ShapeMismatch, StructuralLookupFailure, StyleGraphError, UnsupportedConstruct
from framestyle.graph import UPSAMPLE_BILINEAR, Activation, Graph, Layer, LayerKind, ModelInput

_logger = logging.getLogger(__name__)

BACKENDS = ("auto", "cpu", "cuda")

_BINARY_OPS = ("Add", "Sub", "Mul", "Div")
_OTHER_OPS = _BINARY_OPS + ("Const", "Identity", "GlobalAvgPool", "Dense", "Clamp", "Pad")

# NHWC axis -> NCHW dimension
_NHWC_TO_NCHW_DIM = (0, 2, 3, 1)


def resolve_device(backend: str = "auto") -> torch.device:
    if backend not in BACKENDS:
        raise ValueError(f"Unknown backend {backend!r}, expected one of {BACKENDS}")
    if backend == "cpu":
        return torch.device("cpu")
    if torch.cuda.is_available():
        return torch.device("cuda")
    if backend == "cuda":
        _logger.warning("CUDA backend requested but not available, falling back to CPU")
    return torch.device("cpu")


def _activate(x: torch.Tensor, activation: Activation) -> torch.Tensor:
    if activation == Activation.RELU:
        return F.relu(x)
    if activation == Activation.SIGMOID:
        return torch.sigmoid(x)
    if activation == Activation.TANH:
        return torch.tanh(x)
    return x


def _to_nchw(arr: torch.Tensor) -> torch.Tensor:
    return arr.permute(0, 3, 1, 2)


def _to_nhwc_array(t: torch.Tensor) -> np.ndarray:
    return t.permute(0, 2, 3, 1).contiguous().cpu().numpy().astype(np.float32, copy=False)


def _check_supported(layer: Layer) -> None:
    if layer.kind == LayerKind.OTHER:
        if layer.op not in _OTHER_OPS:
            raise UnsupportedConstruct(f"{layer.name}: unsupported op {layer.op!r}")
        if layer.op == "Pad" and layer.mode != "constant":
            raise UnsupportedConstruct(f"{layer.name}: {layer.mode} padding is not supported")
        if layer.op in ("Const", "Dense") and not layer.datasets:
            raise StyleGraphError(f"{layer.name}: {layer.op} layer has no constants")
    elif layer.kind in (LayerKind.CONVOLUTION, LayerKind.CONVOLUTION_TRANSPOSE):
        if len(layer.datasets) != 2:
            raise StyleGraphError(f"{layer.name}: convolution needs kernel and bias datasets")
    elif layer.kind == LayerKind.NORMALIZATION:
        if not layer.datasets and len(layer.inputs) != 3:
            raise UnsupportedConstruct(f"{layer.name}: normalization has neither constants nor tap inputs")
    elif layer.kind == LayerKind.STRIDED_SLICE:
        if not (len(layer.starts) == len(layer.ends) == len(layer.strides) == 4):
            raise UnsupportedConstruct(f"{layer.name}: strided slice needs 4 starts/ends/strides")


class BoundExecutable:
    """A graph compiled against a device, with live constant buffers."""

    def __init__(self, graph: Graph, device: torch.device) -> None:
        graph.validate()
        for layer in graph.layers:
            _check_supported(layer)
        self.device = device
        self.layers: List[Layer] = [layer.copy() for layer in graph.layers]
        self.inputs: List[ModelInput] = list(graph.inputs)
        self.outputs: List[str] = list(graph.outputs)
        self._buffers: Dict[str, torch.Tensor] = {}
        self._views: Dict[str, List[torch.Tensor]] = {}
        for layer in self.layers:
            if not layer.datasets:
                continue
            flat = torch.from_numpy(np.array(layer.weights, dtype=np.float32)).to(device)
            self._buffers[layer.name] = flat
            self._views[layer.name] = [
                flat[ds.offset : ds.offset + ds.length].view(ds.shape) for ds in layer.datasets
            ]
        self._disposed = False

    def __enter__(self) -> "BoundExecutable":
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def peek_constants(self, layer_name: str) -> List[torch.Tensor]:
        """Live views of `layer_name`'s datasets; writes land in the executable."""
        self._ensure_live()
        if layer_name not in self._views:
            raise StructuralLookupFailure(layer_name, "constant buffers")
        return self._views[layer_name]

    def execute(self, inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run the graph on NHWC inputs and return NHWC declared outputs."""
        self._ensure_live()
        values: Dict[str, torch.Tensor] = {}
        try:
            with torch.no_grad():
                for model_input in self.inputs:
                    if model_input.name not in inputs:
                        raise StyleGraphError(f"Input {model_input.name!r} is not bound")
                    values[model_input.name] = self._bind(model_input, inputs[model_input.name])
                for layer in self.layers:
                    values[layer.name] = self._run_layer(layer, values)
                return {name: _to_nhwc_array(values[name]) for name in self.outputs}
        finally:
            values.clear()

    def dispose(self) -> None:
        self._buffers.clear()
        self._views.clear()
        self._disposed = True

    def _ensure_live(self) -> None:
        if self._disposed:
            raise StyleGraphError("Executable has been disposed")

    def _bind(self, model_input: ModelInput, arr: np.ndarray) -> torch.Tensor:
        arr = np.asarray(arr, dtype=np.float32)
        if arr.ndim == 3:
            arr = arr[None]
        if arr.ndim != 4:
            raise ShapeMismatch(f"Input {model_input.name!r} must be HWC or NHWC, got {arr.shape}")
        for axis in range(1, 4):
            bound = model_input.shape[axis]
            if bound and bound != arr.shape[axis]:
                raise ShapeMismatch(
                    f"Input {model_input.name!r} bound to {model_input.shape}, got {arr.shape}"
                )
        t = torch.from_numpy(np.array(arr, dtype=np.float32)).to(self.device)
        return _to_nchw(t)

    def _const(self, layer: Layer, index: int) -> torch.Tensor:
        return self._views[layer.name][index]

    def _run_layer(self, layer: Layer, values: Dict[str, torch.Tensor]) -> torch.Tensor:
        x = values[layer.inputs[0]] if layer.inputs else None
        kind = layer.kind

        if kind == LayerKind.CONVOLUTION:
            left, right, top, bottom = layer.pad
            if any(layer.pad):
                x = F.pad(x, (left, right, top, bottom))
            weight = self._const(layer, 0).permute(3, 2, 0, 1).contiguous()
            bias = self._const(layer, 1).reshape(-1)
            return _activate(F.conv2d(x, weight, bias, stride=layer.stride), layer.activation)

        if kind == LayerKind.CONVOLUTION_TRANSPOSE:
            weight = self._const(layer, 0).permute(2, 3, 0, 1).contiguous()
            bias = self._const(layer, 1).reshape(-1)
            out = F.conv_transpose2d(
                x,
                weight,
                bias,
                stride=layer.stride,
                padding=(layer.pad[2], layer.pad[0]),
                output_padding=tuple(s - 1 for s in layer.stride),
            )
            return _activate(out, layer.activation)

        if kind == LayerKind.NORMALIZATION:
            if layer.datasets:
                scale = self._const(layer, 0).reshape(-1)
                bias = self._const(layer, 1).reshape(-1)
            else:
                scale = values[layer.inputs[1]].reshape(-1)
                bias = values[layer.inputs[2]].reshape(-1)
            if scale.numel() != x.shape[1]:
                raise ShapeMismatch(f"{layer.name}: {scale.numel()} scale values for {x.shape[1]} channels")
            out = F.instance_norm(x, weight=scale, bias=bias, eps=layer.epsilon)
            return _activate(out, layer.activation)

        if kind == LayerKind.ACTIVATION:
            return _activate(x, layer.activation)

        if kind == LayerKind.UPSAMPLE_2D:
            factor = (float(layer.pool[0]), float(layer.pool[1]))
            if layer.axis == UPSAMPLE_BILINEAR:
                return F.interpolate(x, scale_factor=factor, mode="bilinear", align_corners=False)
            return F.interpolate(x, scale_factor=factor, mode="nearest")

        if kind == LayerKind.STRIDED_SLICE:
            index = [slice(None)] * 4
            for axis in range(4):
                index[_NHWC_TO_NCHW_DIM[axis]] = slice(layer.starts[axis], layer.ends[axis], layer.strides[axis])
            return x[tuple(index)]

        return self._run_other(layer, x, values)

    def _run_other(self, layer: Layer, x: Optional[torch.Tensor], values: Dict[str, torch.Tensor]) -> torch.Tensor:
        op = layer.op
        if op == "Const":
            return _to_nchw(self._const(layer, 0))
        if op == "Identity":
            return x
        if op in _BINARY_OPS:
            other = values[layer.inputs[1]] if len(layer.inputs) > 1 else layer.alpha
            if op == "Add":
                return x + other
            if op == "Sub":
                return x - other
            if op == "Mul":
                return x * other
            return x / other
        if op == "GlobalAvgPool":
            return x.mean(dim=(2, 3), keepdim=True)
        if op == "Dense":
            kernel = self._const(layer, 0).reshape(-1, layer.datasets[0].channels)
            bias = self._const(layer, 1).reshape(-1)
            out = x.flatten(1) @ kernel + bias
            return _activate(out.reshape(out.shape[0], -1, 1, 1), layer.activation)
        if op == "Clamp":
            return torch.clamp(x, layer.alpha, layer.beta)
        # Pad, constant mode
        return F.pad(x, layer.pad)


class TorchExecutor:
    """Compiles graphs into `BoundExecutable`s on the selected device."""

    def __init__(self, backend: str = "auto", debug: bool = False) -> None:
        self.backend = backend
        self.device = resolve_device(backend)
        self.debug = debug

    def compile(self, graph: Graph) -> BoundExecutable:
        executable = BoundExecutable(graph, self.device)
        if self.debug:
            _logger.debug(
                "Compiled %d layers on %s, inputs=%s outputs=%s",
                len(executable.layers),
                self.device,
                [(i.name, i.shape) for i in executable.inputs],
                executable.outputs,
            )
        return executable
