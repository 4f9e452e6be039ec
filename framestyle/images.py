from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import Image


def pil_to_array(img: Image.Image) -> np.ndarray:
    """RGB image as an (H, W, 3) float32 array in [0, 1]."""
    return np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0


def array_to_pil(arr: np.ndarray) -> Image.Image:
    arr = np.clip(np.asarray(arr, dtype=np.float32), 0.0, 1.0)
    if arr.ndim == 4:
        arr = arr[0]
    return Image.fromarray((arr[..., :3] * 255.0 + 0.5).astype(np.uint8))


def load_image(path: str | Path, size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """Load an image, optionally resized to `size` = (width, height)."""
    img = Image.open(path).convert("RGB")
    if size is not None:
        img = img.resize((int(size[0]), int(size[1])), resample=Image.BICUBIC)
    return pil_to_array(img)


def save_image(arr: np.ndarray, path: str | Path) -> None:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    array_to_pil(arr).save(out_path)
