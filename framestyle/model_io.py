"""Graph assets on disk: a plain dict of layer records saved with torch."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import torch

from framestyle.graph import Activation, DataSet, Graph, Layer, LayerKind, ModelInput
from framestyle.naming import MODEL_ASSETS, ModelVariant

_logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
MODEL_DIR_ENV = "FRAMESTYLE_MODEL_DIR"


def _repo_root() -> Path:
    return Path(__file__).resolve().parent.parent


def find_model(variant: ModelVariant) -> Path:
    filename = f"{MODEL_ASSETS[variant]}.pt"
    env = os.environ.get(MODEL_DIR_ENV)
    candidates: List[Path] = []
    if env:
        candidates.append(Path(env).expanduser() / filename)
    candidates += [_repo_root() / filename, Path.cwd() / filename]
    for p in candidates:
        if p.exists():
            return p
    raise FileNotFoundError(
        f"Missing model asset `{filename}`. Place it in the repo root "
        f"or set env var `{MODEL_DIR_ENV}`."
    )


def _layer_record(layer: Layer) -> Dict[str, Any]:
    record = layer.describe()
    record["weights"] = torch.from_numpy(np.array(layer.weights, dtype=np.float32))
    return record


def _layer_from_record(record: Dict[str, Any]) -> Layer:
    return Layer(
        name=record["name"],
        kind=LayerKind(record["kind"]),
        inputs=list(record["inputs"]),
        activation=Activation(record["activation"]),
        op=record["op"],
        pad=tuple(record["pad"]),
        stride=tuple(record["stride"]),
        pool=tuple(record["pool"]),
        axis=int(record["axis"]),
        mode=record["mode"],
        starts=tuple(record["starts"]),
        ends=tuple(record["ends"]),
        strides=tuple(record["strides"]),
        alpha=float(record["alpha"]),
        beta=float(record["beta"]),
        epsilon=float(record["epsilon"]),
        datasets=[DataSet(name, tuple(shape), offset, length) for name, shape, offset, length in record["datasets"]],
        weights=record["weights"].numpy().astype(np.float32),
    )


def save_graph(graph: Graph, path: str | Path) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "format": FORMAT_VERSION,
        "inputs": [[i.name, list(i.shape)] for i in graph.inputs],
        "outputs": list(graph.outputs),
        "layers": [_layer_record(layer) for layer in graph.layers],
    }
    torch.save(payload, out_path)
    return out_path


def load_graph(path: str | Path, debug: bool = False) -> Graph:
    payload = torch.load(path, map_location="cpu")
    if payload.get("format") != FORMAT_VERSION:
        raise ValueError(f"{path}: unsupported graph format {payload.get('format')!r}")
    graph = Graph(
        layers=[_layer_from_record(r) for r in payload["layers"]],
        inputs=[ModelInput(name, tuple(shape)) for name, shape in payload["inputs"]],
        outputs=list(payload["outputs"]),
    )
    if debug:
        for layer in graph.layers:
            _logger.debug(
                "%s %s inputs=%s datasets=%s",
                layer.kind.value,
                layer.name,
                layer.inputs,
                [(d.name, d.shape) for d in layer.datasets],
            )
        _logger.info("Loaded %s: %d layers, inputs=%s, outputs=%s", path, len(graph), graph.input_names, graph.outputs)
    graph.validate()
    return graph


def load_variant(variant: ModelVariant, debug: bool = False) -> Graph:
    return load_graph(find_model(variant), debug=debug)
