import logging

import numpy as np
import pytest
from PIL import Image

import kmeans_palette
from color_hist import Color, ColorHistogram, histogram_from_source
from kmeans_palette import (InsufficientColors, InvalidClusterCount, assign, generate_palette,
                            initial_centers, kmeans, kmeans_samples, kmeans_step, objective,
                            recenter, validate_cluster_count)
from palette_io import PILImageSource


def image_from(rows):
    return PILImageSource(Image.fromarray(np.array(rows, dtype=np.uint8)))


def random_samples(seed=0, size=(40, 40), levels=32):
    rng = np.random.default_rng(seed)
    arr = (rng.integers(0, levels, size=size + (3,)) * (255 // (levels - 1))).astype(np.uint8)
    hist = histogram_from_source(PILImageSource(Image.fromarray(arr)))
    return hist.colors(), hist.weights()


def test_black_and_white_converges_in_one_iteration():
    source = image_from([
        [(0, 0, 0), (0, 0, 0)],
        [(255, 255, 255), (255, 255, 255)],
    ])
    hist = histogram_from_source(source)
    result = kmeans(hist.colors(), hist.weights(), 2)
    assert result.converged
    assert result.iterations == 1
    assert result.palette == [Color(0, 0, 0), Color(255, 255, 255)]
    assert generate_palette(source, 2) == [Color(0, 0, 0), Color(255, 255, 255)]


def test_too_few_colors():
    source = image_from([
        [(255, 0, 0), (0, 255, 0)],
        [(0, 0, 255), (255, 0, 0)],
    ])
    with pytest.raises(InsufficientColors) as excinfo:
        generate_palette(source, 4)
    assert excinfo.value.unique == 3
    assert excinfo.value.k == 4


@pytest.mark.parametrize("k", [-3, 0, 1, 65537, 2.5, "8", True])
def test_invalid_cluster_count(k):
    with pytest.raises(InvalidClusterCount):
        validate_cluster_count(k)


@pytest.mark.parametrize("k", [2, 16, 65536])
def test_valid_cluster_count(k):
    assert validate_cluster_count(k) == k


def test_invalid_cluster_count_is_checked_before_reading_pixels():
    class Exploding:
        width = height = 1

        def as_array(self):
            raise AssertionError("pixels read")

    with pytest.raises(InvalidClusterCount):
        generate_palette(Exploding(), 1)


def test_initial_centers_are_evenly_spaced():
    colors = np.array([[i, i, i] for i in range(10)])
    assert initial_centers(colors, 3).tolist() == [[0, 0, 0], [3, 3, 3], [6, 6, 6]]
    assert initial_centers(colors, 10).tolist() == colors.tolist()
    with pytest.raises(InsufficientColors):
        initial_centers(colors, 11)


def test_assign_breaks_ties_on_lowest_index():
    colors = np.array([[0, 0, 0], [2, 2, 2]])
    centers = np.array([[1, 0, 0], [0, 1, 0], [2, 2, 2]])
    assert assign(colors, centers).tolist() == [0, 2]


def test_assign_in_small_blocks_matches_full_matrix(monkeypatch):
    colors, _ = random_samples(seed=1)
    centers = initial_centers(colors, 7)
    diff = colors[:, None, :] - centers[None, :, :]
    expected = (diff * diff).sum(axis=2).argmin(axis=1)
    monkeypatch.setattr(kmeans_palette, "ASSIGN_BLOCK_ELEMENTS", 5)
    assert assign(colors, centers).tolist() == expected.tolist()


def test_recenter_rounds_weighted_centroid():
    colors = np.array([[0, 0, 0], [1, 1, 1], [10, 20, 30], [11, 20, 30]])
    weights = np.array([1, 1, 2, 1])
    labels = np.array([0, 0, 1, 1])
    centers = np.array([[0, 0, 0], [10, 20, 30]])
    new_centers, cluster_weights = recenter(colors, weights, labels, centers)
    # (0 + 1) / 2 rounds half up, (20 + 11) / 3 rounds down
    assert new_centers.tolist() == [[1, 1, 1], [10, 20, 30]]
    assert cluster_weights.tolist() == [2, 3]


def test_recenter_keeps_empty_cluster_center():
    colors = np.array([[0, 0, 0], [4, 4, 4]])
    weights = np.array([3, 1])
    labels = np.array([0, 0])
    centers = np.array([[0, 0, 0], [200, 100, 50]])
    new_centers, cluster_weights = recenter(colors, weights, labels, centers)
    assert new_centers.tolist() == [[1, 1, 1], [200, 100, 50]]
    assert cluster_weights.tolist() == [4, 0]


def test_recenter_handles_large_weights():
    colors = np.array([[255, 255, 255], [0, 0, 0]])
    weights = np.array([4_000_000_000, 1])
    labels = np.array([0, 0])
    new_centers, _ = recenter(colors, weights, labels, np.zeros((1, 3), dtype=np.int64))
    assert new_centers.tolist() == [[255, 255, 255]]


def test_deterministic():
    colors, weights = random_samples(seed=2)
    first = kmeans(colors, weights, 12)
    second = kmeans(colors.copy(), weights.copy(), 12)
    assert first.centers.tolist() == second.centers.tolist()
    assert first.iterations == second.iterations


@pytest.mark.parametrize("k", [2, 5, 17])
def test_palette_has_k_entries(k):
    colors, weights = random_samples(seed=k)
    result = kmeans(colors, weights, k)
    assert len(result.palette) == k
    assert result.centers.shape == (k, 3)
    assert result.centers.min() >= 0 and result.centers.max() <= 255


def test_one_cluster_per_color():
    colors = np.array([[0, 0, 0], [50, 60, 70], [255, 0, 0]])
    result = kmeans(colors, np.array([5, 1, 2]), 3)
    assert result.converged
    assert result.centers.tolist() == colors.tolist()


def test_objective_never_increases():
    colors, weights = random_samples(seed=4)
    centers = initial_centers(colors, 9)
    costs = []
    for _ in range(500):
        labels, new_centers, _ = kmeans_step(colors, weights, centers)
        costs.append(objective(colors, weights, centers, labels))
        if np.array_equal(new_centers, centers):
            break
        centers = new_centers
    assert len(costs) > 1
    assert all(later <= earlier for earlier, later in zip(costs, costs[1:]))


def test_converged_centers_are_a_fixed_point():
    colors, weights = random_samples(seed=5)
    result = kmeans(colors, weights, 6)
    assert result.converged
    labels, again, _ = kmeans_step(colors, weights, result.centers)
    assert again.tolist() == result.centers.tolist()
    assert labels.tolist() == result.labels.tolist()


def test_max_iterations_stops_early(caplog):
    ramp = np.array([[i, i, i] for i in range(100)])
    with caplog.at_level(logging.WARNING, logger="kmeans_palette"):
        result = kmeans(ramp, np.ones(100, dtype=np.int64), 3, max_iterations=1)
    assert not result.converged
    assert result.iterations == 1
    assert len(result.palette) == 3
    assert "no convergence" in caplog.text


def test_on_iteration_callback():
    colors, weights = random_samples(seed=6)
    seen = []
    result = kmeans(colors, weights, 4, on_iteration=lambda i, centers: seen.append(i))
    assert seen == list(range(1, result.iterations + 1))


def test_mismatched_weights():
    with pytest.raises(ValueError):
        kmeans(np.array([[0, 0, 0], [1, 1, 1]]), np.array([1]), 2)


def test_kmeans_samples_sets_cluster_labels():
    hist = ColorHistogram()
    for c in [(0, 0, 0), (10, 10, 10), (250, 250, 250), (0, 0, 0), (240, 240, 240)]:
        hist.record_pixel(c)
    samples = hist.samples()
    result = kmeans_samples(samples, 2)
    assert [s.cluster for s in samples] == [0, 0, 1, 1]
    assert sum(s.weight for s in samples) == 5
    assert result.palette == [Color(3, 3, 3), Color(245, 245, 245)]


def test_pixel_accessor_source_matches_array_source():
    rows = [
        [(200, 10, 10), (210, 12, 9), (10, 200, 10)],
        [(12, 190, 14), (10, 10, 200), (9, 14, 190)],
    ]

    class Rows:
        height, width = 2, 3

        def pixel_at(self, x, y):
            return Color(*rows[y][x])

    assert generate_palette(Rows(), 3) == generate_palette(image_from(rows), 3)


def test_empty_cluster_is_logged_and_kept(caplog):
    # Seeds are 62, 100 and 181. The heavy grays 80 and 141 pull the outer
    # centers in, so every member of the middle cluster leaves it.
    grays = [62, 80, 100, 140, 181, 141]
    colors = np.array([[g, g, g] for g in grays])
    weights = np.array([1, 100, 1, 2, 1, 100])
    with caplog.at_level(logging.WARNING, logger="kmeans_palette"):
        result = kmeans(colors, weights, 3)
    assert "cluster 1 received no colors at iteration 2" in caplog.text
    assert result.converged
    assert result.iterations == 2
    assert result.palette == [Color(80, 80, 80), Color(127, 127, 127), Color(141, 141, 141)]
    assert result.unused_clusters == [1]
    assert result.labels.tolist() == [0, 0, 0, 2, 2, 2]


def test_cycling_centers_stop_without_converging(monkeypatch, caplog):
    colors = np.array([[0, 0, 0], [255, 255, 255]])
    weights = np.array([1, 1])
    first = initial_centers(colors, 2)
    other = np.array([[10, 10, 10], [200, 200, 200]])
    calls = []

    def alternate(colors, weights, centers):
        calls.append(centers.copy())
        following = other if np.array_equal(centers, first) else first
        return np.zeros(len(colors), dtype=np.int64), following.copy(), np.array([1, 1])

    monkeypatch.setattr(kmeans_palette, "kmeans_step", alternate)
    with caplog.at_level(logging.WARNING, logger="kmeans_palette"):
        result = kmeans(colors, weights, 2)
    assert result.converged is False
    assert result.iterations == 2
    assert len(calls) == 2
    assert len(result.palette) == 2
    assert result.centers.tolist() == first.tolist()
    assert "returned to an earlier state" in caplog.text


@pytest.mark.parametrize("limit", [0, -1])
def test_max_iterations_must_be_positive(limit):
    ramp = np.array([[i, i, i] for i in range(10)])
    with pytest.raises(ValueError):
        kmeans(ramp, np.ones(10, dtype=np.int64), 2, max_iterations=limit)
