"""Image sources and palette images, backed by Pillow."""

import math
from pathlib import Path
from typing import Protocol, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from color_hist import Color

PALETTE_COLUMNS = 256


class ImageSource(Protocol):
    width: int
    height: int

    def pixel_at(self, x: int, y: int) -> Color:
        ...


class PILImageSource:
    """Read-only RGB view of a Pillow image."""

    def __init__(self, image: Image.Image):
        self.image = image.convert("RGB")
        self.width, self.height = self.image.size
        self._arr = None

    def as_array(self) -> np.ndarray:
        if self._arr is None:
            self._arr = np.asarray(self.image, dtype=np.uint8)
        return self._arr

    def pixel_at(self, x: int, y: int) -> Color:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"pixel ({x}, {y}) outside {self.width}x{self.height} image")
        return Color(*self.image.getpixel((x, y)))


def load_image(path: Union[str, Path]) -> PILImageSource:
    with Image.open(path) as img:
        return PILImageSource(img)


def rgb_hex(rgb: Tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(int(rgb[0]), int(rgb[1]), int(rgb[2]))


def render_palette(colors: Sequence[Tuple[int, int, int]], columns: int = PALETTE_COLUMNS) -> Image.Image:
    """One pixel per palette color, laid out in rows of at most ``columns``."""
    if not colors:
        raise ValueError("Empty palette")
    if columns < 1:
        raise ValueError(f"columns must be positive, got {columns}")
    n = len(colors)
    width = min(n, columns)
    height = math.ceil(n / columns)
    cells = np.zeros((height * width, 3), dtype=np.uint8)
    cells[:n] = np.asarray(colors, dtype=np.uint8).reshape(-1, 3)
    return Image.fromarray(cells.reshape(height, width, 3))


def palette_output_path(path: Union[str, Path], k: int) -> Path:
    """``palette-{k}-{name}`` next to the source image."""
    path = Path(path)
    return path.with_name(f"palette-{k}-{path.name}")


def save_palette(colors: Sequence[Tuple[int, int, int]], path: Union[str, Path],
                 columns: int = PALETTE_COLUMNS) -> Path:
    path = Path(path)
    render_palette(colors, columns).save(path)
    return path
