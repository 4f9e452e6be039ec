"""Naming conventions of the exported style-transfer graphs.

Layers are matched by name (or name substring), so this table is the only
place that knows how the export tool names things.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, Tuple


class ModelVariant(IntEnum):
    REFERENCE = 0
    REF_BUT_32_CHANNELS = 1


# Asset stem per variant, looked up by `model_io.find_model`.
MODEL_ASSETS: Dict[ModelVariant, str] = {
    ModelVariant.REFERENCE: "adele_2",
    ModelVariant.REF_BUT_32_CHANNELS: "model_32channels",
}

STYLE_INPUT = "style"
CONTENT_INPUT = "frame"

PREDICTION_PREFIX = "Style_Prediction_Network/"
STYLE_NETWORK_PREFIX = "StyleNetwork/"

# Divide by 255 at the head of the prediction network; style images are
# already in [0, 1].
PREDICTION_INPUT_DIVIDE = "Style_Prediction_Network/normalized_image"

REFLECT_PADDING_MARKER = "reflect_padding"

FIRST_CONV = "StyleNetwork/conv1/convolution_conv1/convolution"

POST_PROCESS_ENTRY = "StyleNetwork/clamp_0_255/add"
POST_PROCESS_LENGTH = 5

# Content-frame normalisation left dead once the first convolution reads the
# frame directly.
DEAD_NORMALISATION_LAYERS: Dict[ModelVariant, Tuple[str, ...]] = {
    ModelVariant.REFERENCE: (
        "StyleNetwork/normalisation/add",
        "StyleNetwork/normalisation/add/y",
        "StyleNetwork/normalisation/normalized_contentFrames",
        "StyleNetwork/normalisation/normalized_contentFrames/y",
        "StyleNetwork/normalisation/sub",
        "StyleNetwork/normalisation/sub/y",
    ),
    ModelVariant.REF_BUT_32_CHANNELS: (
        "StyleNetwork/normalized_contentFrames",
        "StyleNetwork/normalized_contentFrames/y",
    ),
}

# Added back to the network output in place of the removed tail.
POST_NETWORK_COLOR_SCALE = 1.0
POST_NETWORK_COLOR_BIAS: Tuple[float, float, float, float] = (0.4850196, 0.4579569, 0.4076039, 0.0)


def is_prediction_layer(name: str) -> bool:
    return PREDICTION_PREFIX in name


def is_style_network_layer(name: str) -> bool:
    return STYLE_NETWORK_PREFIX in name


def is_reflect_padding(name: str) -> bool:
    return REFLECT_PADDING_MARKER in name
