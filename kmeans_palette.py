"""Weighted k-means over RGB space, seeded deterministically from image colors."""

import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from color_hist import Color, WeightedSample, histogram_from_source

logger = logging.getLogger(__name__)

MIN_COLORS = 2
MAX_COLORS = 65536
# Squared distance between (0, 0, 0) and (255, 255, 255)
MAX_DISTANCE_SQ = 3 * 255 ** 2
# Upper bound on the size of one samples x centers distance block
ASSIGN_BLOCK_ELEMENTS = 1 << 22


class PaletteError(Exception):
    pass


class InvalidClusterCount(PaletteError, ValueError):
    pass


class InsufficientColors(PaletteError):
    def __init__(self, unique: int, k: int):
        super().__init__(
            f"The image has {unique} distinct colors, fewer than the {k} colors requested for the palette."
        )
        self.unique = unique
        self.k = k


@dataclass
class KMeansResult:
    centers: np.ndarray
    labels: np.ndarray
    cluster_weights: np.ndarray
    iterations: int
    converged: bool

    @property
    def palette(self) -> List[Color]:
        return [Color(*c) for c in self.centers.tolist()]

    @property
    def unused_clusters(self) -> List[int]:
        return np.flatnonzero(self.cluster_weights == 0).tolist()


def validate_cluster_count(k) -> int:
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise InvalidClusterCount(f"Color count must be an integer, got {k!r}")
    if k < MIN_COLORS or k > MAX_COLORS:
        raise InvalidClusterCount(f"Color count must be in [{MIN_COLORS};{MAX_COLORS}], got {k}")
    return int(k)


def _as_colors(colors) -> np.ndarray:
    return np.asarray(colors, dtype=np.int64).reshape(-1, 3)


def initial_centers(colors: np.ndarray, k: int) -> np.ndarray:
    """Pick k evenly spaced colors, starting with the first one."""
    colors = _as_colors(colors)
    n = len(colors)
    if n < k:
        raise InsufficientColors(n, k)
    step = n // k
    return colors[np.arange(k) * step].copy()


def assign(colors: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """Index of the nearest center for every color, lowest index on ties."""
    colors = _as_colors(colors)
    centers = _as_colors(centers)
    labels = np.empty(len(colors), dtype=np.int64)
    block = max(1, ASSIGN_BLOCK_ELEMENTS // len(centers))

    # All terms are small integers, so float64 sums are exact and ties stay ties
    c = centers.astype(np.float64)
    c_sq = (c * c).sum(axis=1)
    for start in range(0, len(colors), block):
        x = colors[start:start + block].astype(np.float64)
        d2 = (x * x).sum(axis=1)[:, None] - 2.0 * (x @ c.T) + c_sq[None, :]
        labels[start:start + block] = d2.argmin(axis=1)
    return labels


def recenter(colors: np.ndarray, weights: np.ndarray, labels: np.ndarray,
             centers: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Weighted centroid of every cluster.

    Centroids are rounded half up to integers. A cluster that received no
    weight keeps its previous center.
    """
    colors = _as_colors(colors)
    weights = np.asarray(weights, dtype=np.int64)
    centers = _as_colors(centers)
    k = len(centers)

    cluster_weights = np.bincount(labels, weights=weights, minlength=k)
    sums = np.stack([
        np.bincount(labels, weights=colors[:, ch] * weights, minlength=k)
        for ch in range(3)
    ], axis=1)
    # Exact in float64: every sum stays far below 2**53
    cluster_weights = np.rint(cluster_weights).astype(np.int64)
    sums = np.rint(sums).astype(np.int64)

    new_centers = centers.copy()
    filled = cluster_weights > 0
    w = cluster_weights[filled][:, None]
    new_centers[filled] = (2 * sums[filled] + w) // (2 * w)
    np.clip(new_centers, 0, 255, out=new_centers)
    return new_centers, cluster_weights


def objective(colors: np.ndarray, weights: np.ndarray, centers: np.ndarray,
              labels: np.ndarray) -> int:
    """Total weighted squared distance of every color to its assigned center."""
    colors = _as_colors(colors)
    diff = colors - _as_colors(centers)[labels]
    return int((np.asarray(weights, dtype=np.int64) * (diff * diff).sum(axis=1)).sum())


def kmeans_step(colors: np.ndarray, weights: np.ndarray, centers: np.ndarray):
    """One assignment pass followed by one recentering pass."""
    labels = assign(colors, centers)
    new_centers, cluster_weights = recenter(colors, weights, labels, centers)
    return labels, new_centers, cluster_weights


def _state_digest(centers: np.ndarray) -> bytes:
    return hashlib.blake2b(np.ascontiguousarray(centers).tobytes(), digest_size=16).digest()


def kmeans(colors: np.ndarray, weights: np.ndarray, k: int,
           max_iterations: Optional[int] = None,
           on_iteration: Optional[Callable[[int, np.ndarray], None]] = None) -> KMeansResult:
    """Run weighted k-means until no center changes.

    Without ``max_iterations`` the loop is only stopped early when the
    centers come back to a state already visited, which means they cycle.
    """
    colors = _as_colors(colors)
    weights = np.asarray(weights, dtype=np.int64)
    if len(weights) != len(colors):
        raise ValueError(f"{len(colors)} colors but {len(weights)} weights")
    if max_iterations is not None and max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
    k = validate_cluster_count(k)
    centers = initial_centers(colors, k)
    logger.debug("k-means: %d unique colors, %d clusters, seed step %d", len(colors), k, len(colors) // k)

    visited = {_state_digest(centers)}
    reported_empty = set()
    iteration = 0
    while True:
        labels, new_centers, cluster_weights = kmeans_step(colors, weights, centers)
        iteration += 1

        for i in np.flatnonzero(cluster_weights == 0).tolist():
            if i not in reported_empty:
                reported_empty.add(i)
                logger.warning("cluster %d received no colors at iteration %d, keeping center %s",
                               i, iteration, tuple(centers[i].tolist()))

        changed = int(np.any(new_centers != centers, axis=1).sum())
        logger.debug("iteration %d: %d centers moved", iteration, changed)
        if on_iteration is not None:
            on_iteration(iteration, new_centers)

        if changed == 0:
            result = KMeansResult(new_centers, labels, cluster_weights, iteration, True)
            break

        digest = _state_digest(new_centers)
        if digest in visited:
            logger.warning("centers returned to an earlier state at iteration %d, stopping", iteration)
            result = _stop(colors, weights, new_centers, iteration)
            break
        visited.add(digest)
        centers = new_centers

        if max_iterations is not None and iteration >= max_iterations:
            logger.warning("no convergence after %d iterations, stopping", iteration)
            result = _stop(colors, weights, centers, iteration)
            break

    if result.converged:
        logger.info("converged after %d iterations", result.iterations)
    if result.unused_clusters:
        logger.info("%d palette entries have no colors assigned: %s",
                    len(result.unused_clusters), result.unused_clusters)
    return result


def _stop(colors, weights, centers, iteration) -> KMeansResult:
    labels = assign(colors, centers)
    _, cluster_weights = recenter(colors, weights, labels, centers)
    return KMeansResult(centers, labels, cluster_weights, iteration, False)


def kmeans_samples(samples: Sequence[WeightedSample], k: int, **kwargs) -> KMeansResult:
    """Cluster weighted samples in place, storing each sample's cluster label."""
    colors = np.array([s.color for s in samples], dtype=np.int64).reshape(-1, 3)
    weights = np.array([s.weight for s in samples], dtype=np.int64)
    result = kmeans(colors, weights, k, **kwargs)
    for sample, label in zip(samples, result.labels.tolist()):
        sample.cluster = label
    return result


def cluster_source(source, k: int, **kwargs) -> KMeansResult:
    k = validate_cluster_count(k)
    hist = histogram_from_source(source)
    logger.debug("histogram: %d pixels, %d unique colors", hist.total(), len(hist))
    if len(hist) < k:
        raise InsufficientColors(len(hist), k)
    return kmeans(hist.colors(), hist.weights(), k, **kwargs)


def generate_palette(source, k: int, **kwargs) -> List[Color]:
    """Compute the k-color palette of an image source."""
    return cluster_source(source, k, **kwargs).palette
