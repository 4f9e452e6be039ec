from __future__ import annotations

import numpy as np
import pytest

from framestyle import naming
from framestyle.conditioning import ConditioningExtractor, as_nhwc, build_prediction_graph, patch_conditioning
from framestyle.errors import ShapeMismatch, StructuralLookupFailure
from framestyle.executor import TorchExecutor
from framestyle.graph import LayerKind
from framestyle.rewrite import tag_conditioning_taps
from tests.helpers import branching_prediction_graph


def test_prediction_graph_keeps_only_prediction_network_and_taps(style_graph) -> None:
    prediction, taps = build_prediction_graph(style_graph)

    assert taps == tag_conditioning_taps(style_graph)
    assert prediction.outputs == taps
    for layer in prediction.layers:
        assert naming.is_prediction_layer(layer.name) or layer.kind == LayerKind.STRIDED_SLICE
        assert not naming.is_reflect_padding(layer.name)
    assert prediction.find(naming.PREDICTION_INPUT_DIVIDE) is None
    assert prediction.find(f"{naming.PREDICTION_INPUT_DIVIDE}/y") is None
    prediction.validate()


def test_prediction_graph_requires_divide(style_graph) -> None:
    broken = style_graph.clone()
    broken.layers = [layer for layer in broken.layers if layer.name != naming.PREDICTION_INPUT_DIVIDE]
    with pytest.raises(StructuralLookupFailure):
        build_prediction_graph(broken)


def test_extract_returns_one_vector_per_tap(style_graph, executor: TorchExecutor, style_images) -> None:
    vectors = ConditioningExtractor(executor).extract(style_graph, style_images[1])

    taps = tag_conditioning_taps(style_graph)
    assert len(vectors) == len(taps)
    by_name = {layer.name: layer for layer in style_graph.layers}
    for name, vec in zip(taps, vectors):
        layer = by_name[name]
        assert vec.dtype == np.float32
        assert vec.shape == (layer.ends[3] - layer.starts[3],)


def test_extract_depends_on_style(compact_graph, executor: TorchExecutor, style_images) -> None:
    extractor = ConditioningExtractor(executor)
    dark = extractor.extract(compact_graph, style_images[0])
    bright = extractor.extract(compact_graph, style_images[2])
    again = extractor.extract(compact_graph, style_images[0])

    assert any(not np.allclose(a, b) for a, b in zip(dark, bright))
    for a, b in zip(dark, again):
        np.testing.assert_array_equal(a, b)


def test_extract_does_not_touch_source_graph(compact_graph, executor: TorchExecutor, style_images) -> None:
    before = compact_graph.digest()
    ConditioningExtractor(executor).extract(compact_graph, style_images[1])
    assert compact_graph.digest() == before


def test_as_nhwc_requires_rgb() -> None:
    assert as_nhwc(np.zeros((4, 5, 3))).shape == (1, 4, 5, 3)
    with pytest.raises(ShapeMismatch):
        as_nhwc(np.zeros((4, 5, 4)))


def _compiled_norm(executor: TorchExecutor, channels: int = 3):
    from tests.helpers import graph, norm

    layer = norm("n", ["x"])
    layer.set_scale_bias(np.ones(channels), np.zeros(channels))
    return executor.compile(graph([layer], outputs=["n"]))


def test_patch_overwrites_in_place(executor: TorchExecutor) -> None:
    executable = _compiled_norm(executor)
    scale, bias = executable.peek_constants("n")
    scale_ptr = scale.data_ptr()

    patch_conditioning(executable, ["n"], [np.array([2.0, 3.0, 4.0]), np.array([5.0, 6.0, 7.0])])

    scale, bias = executable.peek_constants("n")
    assert scale.data_ptr() == scale_ptr
    assert scale.shape == (1, 1, 1, 3)
    np.testing.assert_array_equal(scale.cpu().numpy().reshape(-1), [2, 3, 4])
    np.testing.assert_array_equal(bias.cpu().numpy().reshape(-1), [5, 6, 7])


def test_patch_length_mismatch_is_fatal(executor: TorchExecutor) -> None:
    executable = _compiled_norm(executor)
    with pytest.raises(ShapeMismatch):
        patch_conditioning(executable, ["n"], [np.ones(4), np.zeros(4)])
    with pytest.raises(ShapeMismatch):
        patch_conditioning(executable, ["n"], [np.ones(3)])
    with pytest.raises(StructuralLookupFailure):
        patch_conditioning(executable, ["other"], [np.ones(3), np.zeros(3)])


def test_extract_through_branching_prediction_network(executor: TorchExecutor, style_images) -> None:
    g = branching_prediction_graph(channels=4)
    prediction, taps = build_prediction_graph(g)

    assert prediction.find(naming.PREDICTION_INPUT_DIVIDE) is None
    assert prediction.find(f"{naming.PREDICTION_INPUT_DIVIDE}/y") is None
    assert prediction.get(f"{naming.PREDICTION_PREFIX}mean").inputs == [naming.STYLE_INPUT]

    style = style_images[1]
    alpha, beta = ConditioningExtractor(executor).extract(g, style)

    params = g.get(f"{naming.PREDICTION_PREFIX}style_params")
    mix = 3.0 * style.reshape(-1, 3).mean(axis=0)
    expected = mix @ params.dataset(0).reshape(3, -1) + params.dataset(1).reshape(-1)
    np.testing.assert_allclose(alpha, expected[:4], rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(beta, expected[4:], rtol=1e-5, atol=1e-5)
