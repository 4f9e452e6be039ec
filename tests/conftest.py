"""Shared pytest fixtures.

Graphs are kept small (8/16 channels, 16x16 frames) so the torch backend
runs the whole suite quickly on CPU.
"""

from __future__ import annotations

import numpy as np
import pytest

from framestyle.executor import TorchExecutor
from framestyle.naming import ModelVariant
from framestyle.style_graphs import StyleGraphSpec, build_style_graph

SMALL_SPEC = StyleGraphSpec(base_channels=8, wide_channels=16, bottleneck=8)
FRAME_SIZE = (16, 16)  # width, height


@pytest.fixture
def executor():
    return TorchExecutor("cpu")


@pytest.fixture(params=list(ModelVariant), ids=lambda v: v.name.lower())
def variant(request):
    return request.param


@pytest.fixture
def style_graph(variant):
    return build_style_graph(variant, spec=SMALL_SPEC, seed=0)


@pytest.fixture
def compact_graph():
    return build_style_graph(ModelVariant.REF_BUT_32_CHANNELS, spec=SMALL_SPEC, seed=0)


@pytest.fixture
def style_images():
    rng = np.random.default_rng(1234)
    return [
        np.zeros((12, 12, 3), dtype=np.float32),
        rng.random((12, 12, 3), dtype=np.float32),
        np.ones((12, 12, 3), dtype=np.float32),
    ]


@pytest.fixture
def content_frame():
    rng = np.random.default_rng(99)
    width, height = FRAME_SIZE
    return rng.random((height, width, 3), dtype=np.float32)
