from __future__ import annotations

import numpy as np
import pytest
import torch

from framestyle.errors import ShapeMismatch, StructuralLookupFailure, StyleGraphError, UnsupportedConstruct
from framestyle.executor import TorchExecutor, resolve_device
from framestyle.graph import UPSAMPLE_BILINEAR, Activation, Layer, LayerKind, ModelInput
from tests.helpers import conv, graph, norm, op, relu, tap


def _instance_norm(x: np.ndarray, scale: np.ndarray, bias: np.ndarray, eps: float = 1e-5) -> np.ndarray:
    mean = x.mean(axis=(1, 2), keepdims=True)
    var = x.var(axis=(1, 2), keepdims=True)
    return (x - mean) / np.sqrt(var + eps) * scale + bias


def test_resolve_device() -> None:
    assert resolve_device("cpu") == torch.device("cpu")
    assert resolve_device("auto").type in ("cpu", "cuda")
    with pytest.raises(ValueError):
        resolve_device("tpu")


def test_normalization_with_fused_relu(executor: TorchExecutor) -> None:
    layer = norm("n", ["x"])
    layer.set_scale_bias([2.0, 0.5, 1.0], [0.1, -0.2, 0.0])
    layer.activation = Activation.RELU
    g = graph([layer], outputs=["n"])
    x = np.random.default_rng(0).random((1, 5, 6, 3), dtype=np.float32)

    out = executor.compile(g).execute({"x": x})["n"]

    expected = np.maximum(
        _instance_norm(x, np.array([2.0, 0.5, 1.0]), np.array([0.1, -0.2, 0.0])), 0.0
    )
    np.testing.assert_allclose(out, expected, atol=1e-4)


def test_convolution_respects_padding_and_stride(executor: TorchExecutor) -> None:
    layer = conv("c", "x", 3, 4, kernel=3)
    layer.pad = (1, 1, 1, 1)
    layer.stride = (2, 2)
    out = executor.compile(graph([layer], outputs=["c"])).execute({"x": np.ones((8, 8, 3))})["c"]
    assert out.shape == (1, 4, 4, 4)


@pytest.mark.parametrize("axis", [UPSAMPLE_BILINEAR, -1])
def test_upsample_doubles_spatial_size(executor: TorchExecutor, axis: int) -> None:
    g = graph([Layer("up", LayerKind.UPSAMPLE_2D, ["x"], pool=(2, 2), axis=axis)], outputs=["up"])
    out = executor.compile(g).execute({"x": np.ones((3, 5, 3))})["up"]
    assert out.shape == (1, 6, 10, 3)
    np.testing.assert_allclose(out, 1.0)


def test_strided_slice_over_channels(executor: TorchExecutor) -> None:
    g = graph([tap("t", "x", 2, 3)], outputs=["t"], inputs=("x",))
    x = np.arange(8, dtype=np.float32).reshape(1, 1, 1, 8)
    out = executor.compile(g).execute({"x": x})["t"]
    np.testing.assert_array_equal(out.reshape(-1), [2, 3, 4])


def test_normalization_reads_tap_inputs_when_unbound(executor: TorchExecutor) -> None:
    g = graph(
        [
            op("gap", "GlobalAvgPool", ["x"]),
            tap("alpha", "gap", 0, 3),
            tap("beta", "gap", 0, 3),
            norm("n", ["x", "alpha", "beta"]),
        ],
        outputs=["n"],
    )
    x = np.random.default_rng(3).random((1, 4, 4, 3), dtype=np.float32)
    out = executor.compile(g).execute({"x": x})["n"]
    m = x.mean(axis=(1, 2))[0]
    np.testing.assert_allclose(out, _instance_norm(x, m, m), atol=1e-4)


def test_reflect_padding_is_unsupported(executor: TorchExecutor) -> None:
    g = graph([op("p", "Pad", ["x"], mode="reflect", pad=(1, 1, 1, 1))], outputs=["p"])
    with pytest.raises(UnsupportedConstruct):
        executor.compile(g)


def test_unknown_op_is_unsupported(executor: TorchExecutor) -> None:
    with pytest.raises(UnsupportedConstruct):
        executor.compile(graph([op("m", "MirrorPad", ["x"])], outputs=["m"]))


def test_missing_input_is_fatal(executor: TorchExecutor) -> None:
    g = graph([relu("r", "frame")], outputs=["r"], inputs=("style", "frame"))
    with pytest.raises(StyleGraphError):
        executor.compile(g).execute({"frame": np.zeros((2, 2, 3))})


def test_bound_shape_is_enforced(executor: TorchExecutor) -> None:
    g = graph([relu("r", "frame")], outputs=["r"], inputs=("frame",))
    g.inputs = [ModelInput("frame", (0, 4, 6, 3))]
    executable = executor.compile(g)
    assert executable.execute({"frame": np.zeros((4, 6, 3))})["r"].shape == (1, 4, 6, 3)
    with pytest.raises(ShapeMismatch):
        executable.execute({"frame": np.zeros((6, 4, 3))})


def test_peek_constants_are_live(executor: TorchExecutor) -> None:
    layer = norm("n", ["x"])
    layer.set_scale_bias([1.0, 1.0, 1.0], [0.0, 0.0, 0.0])
    executable = executor.compile(graph([layer], outputs=["n"]))
    x = np.random.default_rng(1).random((1, 3, 3, 3), dtype=np.float32)

    scale, bias = executable.peek_constants("n")
    bias.copy_(torch.tensor([1.0, 2.0, 3.0]).view(bias.shape))

    out = executable.execute({"x": x})["n"]
    np.testing.assert_allclose(out, _instance_norm(x, np.ones(3), np.array([1.0, 2.0, 3.0])), atol=1e-4)
    # the compiled copy is independent of the source graph
    np.testing.assert_array_equal(layer.weights, [1, 1, 1, 0, 0, 0])
    with pytest.raises(StructuralLookupFailure):
        executable.peek_constants("missing")


def test_dispose(executor: TorchExecutor) -> None:
    with executor.compile(graph([relu("r", "x")], outputs=["r"])) as executable:
        executable.execute({"x": np.zeros((2, 2, 3))})
    assert executable.disposed
    with pytest.raises(StyleGraphError):
        executable.execute({"x": np.zeros((2, 2, 3))})
