from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import List, Optional

from PIL import Image

from framestyle.config import StyleTransferConfig
from framestyle.executor import BACKENDS
from framestyle.graph import Graph
from framestyle.images import load_image, save_image
from framestyle.model_io import load_graph, load_variant
from framestyle.naming import ModelVariant
from framestyle.pipeline import StyleTransfer


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "framestyle: fast feed-forward style transfer with an exported style graph.\n"
            "The style network is conditioned once per style, then runs per frame.\n"
            "Place the model asset in the repo root (or set FRAMESTYLE_MODEL_DIR), or pass --model."
        )
    )
    p.add_argument("--content", type=str, required=True, help="Path to content image.")
    p.add_argument("--style", type=str, nargs="+", required=True, help="Path(s) to style image(s).")
    p.add_argument("--out", type=str, required=True, help="Output image path.")
    p.add_argument(
        "--variant",
        choices=[v.name.lower() for v in ModelVariant],
        default=ModelVariant.REF_BUT_32_CHANNELS.name.lower(),
        help="Model variant.",
    )
    p.add_argument("--model", type=str, default="", help="Explicit graph asset (.pt), overrides variant lookup.")
    p.add_argument("--style-index", type=float, default=0.0, help="Style selector in [0, 1).")
    p.add_argument("--width", type=int, default=0, help="Render width (default: content width).")
    p.add_argument("--height", type=int, default=0, help="Render height (default: content height).")
    p.add_argument("--backend", choices=list(BACKENDS), default="auto")
    p.add_argument("--nearest-upsample", action="store_true", help="Keep nearest upsampling for the reference model.")
    p.add_argument("--debug-model-loading", action="store_true")
    p.add_argument("--verbose", action="store_true")
    return p


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    with Image.open(args.content) as img:
        content_size = img.size
    width = args.width or content_size[0]
    height = args.height or content_size[1]

    config = StyleTransferConfig(
        input_resolution=(width, height),
        force_bilinear_upsample=not args.nearest_upsample,
        backend=args.backend,
        debug_model_loading=args.debug_model_loading,
        model_variant=ModelVariant[args.variant.upper()],
        style_index=args.style_index,
    )

    def _loader(variant: ModelVariant, debug: bool) -> Graph:
        if args.model:
            return load_graph(Path(args.model), debug=debug)
        try:
            return load_variant(variant, debug=debug)
        except FileNotFoundError as e:
            raise SystemExit(f"{e}\nCreate one with `python3 -m framestyle.export_style_graph --out ...`.") from e

    styles = [load_image(p) for p in args.style]
    content = load_image(args.content, size=(width, height))

    t0 = time.time()
    effect = StyleTransfer(config, styles, graph_loader=_loader)
    effect.setup()
    print(f"setup: variant={config.model_variant.name} size={width}x{height} t={round(time.time() - t0, 2)}s")
    try:
        t1 = time.time()
        out = effect.render(content)
        print(f"frame: t={round(time.time() - t1, 3)}s")
    finally:
        effect.cleanup()

    save_image(out, args.out)
    print(f"Saved: {args.out}")


if __name__ == "__main__":
    main()
