"""Color histogram: deduplicate pixel colors and count their frequency."""

from dataclasses import dataclass
from typing import Dict, List, NamedTuple

import numpy as np


class Color(NamedTuple):
    r: int
    g: int
    b: int


@dataclass
class WeightedSample:
    """A unique image color, the cluster it belongs to and its pixel count."""
    color: Color
    cluster: int
    weight: int


def pack_color(color) -> int:
    r, g, b = color
    return (int(r) << 16) | (int(g) << 8) | int(b)


def unpack_color(key: int) -> Color:
    key = int(key)
    return Color((key >> 16) & 0xFF, (key >> 8) & 0xFF, key & 0xFF)


def pack_array(pixels: np.ndarray) -> np.ndarray:
    """Pack an (..., 3) uint8 array into flat 24-bit integer keys."""
    flat = np.asarray(pixels, dtype=np.uint8).reshape(-1, 3).astype(np.int64)
    return (flat[:, 0] << 16) | (flat[:, 1] << 8) | flat[:, 2]


def unpack_array(keys: np.ndarray) -> np.ndarray:
    keys = np.asarray(keys, dtype=np.int64)
    return np.stack([(keys >> 16) & 0xFF, (keys >> 8) & 0xFF, keys & 0xFF], axis=1)


class ColorHistogram:
    """Counting map from packed color key to number of pixels.

    Keys keep the order in which colors were first recorded.
    """

    def __init__(self):
        self._counts: Dict[int, int] = {}

    def record_pixel(self, color) -> bool:
        """Count one pixel; return True if its color was not seen before."""
        key = pack_color(color)
        count = self._counts.get(key)
        if count is None:
            self._counts[key] = 1
            return True
        self._counts[key] = count + 1
        return False

    def record_array(self, pixels: np.ndarray) -> int:
        """Count every pixel of an (H, W, 3) or (N, 3) array.

        Pixels are scanned in row-major order. Returns the number of colors
        seen for the first time.
        """
        keys = pack_array(pixels)
        if keys.size == 0:
            return 0
        uniq, first, counts = np.unique(keys, return_index=True, return_counts=True)
        order = np.argsort(first, kind="stable")
        added = 0
        for key, count in zip(uniq[order].tolist(), counts[order].tolist()):
            if key in self._counts:
                self._counts[key] += count
            else:
                self._counts[key] = count
                added += 1
        return added

    def weight_of(self, color) -> int:
        key = pack_color(color)
        try:
            return self._counts[key]
        except KeyError:
            raise KeyError(f"color {tuple(color)} was never recorded") from None

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, color) -> bool:
        return pack_color(color) in self._counts

    def total(self) -> int:
        return sum(self._counts.values())

    def colors(self) -> np.ndarray:
        """Unique colors as an (N, 3) int64 array, first-seen order."""
        keys = np.fromiter(self._counts.keys(), dtype=np.int64, count=len(self._counts))
        return unpack_array(keys)

    def weights(self) -> np.ndarray:
        return np.fromiter(self._counts.values(), dtype=np.int64, count=len(self._counts))

    def samples(self) -> List[WeightedSample]:
        return [WeightedSample(unpack_color(key), 0, count) for key, count in self._counts.items()]


def histogram_from_source(source) -> ColorHistogram:
    """Build a histogram from an image source.

    Sources that expose ``as_array()`` are counted in one vectorized pass,
    anything else through ``pixel_at(x, y)``.
    """
    hist = ColorHistogram()
    as_array = getattr(source, "as_array", None)
    if as_array is not None:
        hist.record_array(as_array())
        return hist
    for y in range(source.height):
        for x in range(source.width):
            hist.record_pixel(source.pixel_at(x, y))
    return hist
