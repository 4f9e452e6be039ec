from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from framestyle.model_io import save_graph
from framestyle.naming import MODEL_ASSETS, ModelVariant
from framestyle.style_graphs import build_style_graph


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Write a randomly initialised style graph in the exported layout. "
            "Useful to exercise the runtime without a trained asset."
        )
    )
    p.add_argument(
        "--variant",
        choices=[v.name.lower() for v in ModelVariant],
        default=ModelVariant.REF_BUT_32_CHANNELS.name.lower(),
    )
    p.add_argument("--out", type=str, default="", help="Output .pt path (default: <asset name>.pt in CWD).")
    p.add_argument("--seed", type=int, default=0)
    return p


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    variant = ModelVariant[args.variant.upper()]
    out_path = Path(args.out) if args.out else Path.cwd() / f"{MODEL_ASSETS[variant]}.pt"

    graph = build_style_graph(variant, seed=int(args.seed))
    save_graph(graph, out_path)
    size_mb = out_path.stat().st_size / (1024 * 1024)
    print(f"Saved: {out_path} ({size_mb:.1f} MB)  layers={len(graph)}  variant={variant.name}")


if __name__ == "__main__":
    main()
