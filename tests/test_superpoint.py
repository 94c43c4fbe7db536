import random

import pytest

from flowodom.superpoint import (
    DESCRIPTOR_SIZE,
    HEATMAP_CHANNELS,
    calculate_cosine_similarity,
    extract_kpts,
    inplace_match_one_way_max_flow,
    inplace_match_two_way_max_flow,
    interpolate_desc,
)
from flowodom.types import FeatureMatch, Point2D

WIDTH = 160
HEIGHT = 120
REDUCTION = 8
CELLS_X = WIDTH // REDUCTION
CELLS_Y = HEIGHT // REDUCTION


def _heatmap():
    return [0] * (CELLS_X * CELLS_Y * HEATMAP_CHANNELS)


def _offset(cell_x, cell_y, feature_i):
    return feature_i + cell_y * CELLS_X * HEATMAP_CHANNELS + cell_x * HEATMAP_CHANNELS


def _uniform_descs(value):
    return [value] * (CELLS_X * CELLS_Y * DESCRIPTOR_SIZE)


def test_extract_single_keypoint():
    features = _heatmap()
    features[_offset(2, 3, 10)] = 200
    assert extract_kpts(features, WIDTH, HEIGHT, REDUCTION) == [
        Point2D(2 * REDUCTION + 10 % REDUCTION, 3 * REDUCTION + 10 // REDUCTION)
    ]


def test_extract_requires_score_above_threshold():
    features = _heatmap()
    features[_offset(2, 3, 10)] = 115
    assert extract_kpts(features, WIDTH, HEIGHT, REDUCTION) == []
    features[_offset(2, 3, 10)] = 116
    assert len(extract_kpts(features, WIDTH, HEIGHT, REDUCTION)) == 1


def test_extract_picks_highest_score_first_on_tie():
    features = _heatmap()
    features[_offset(5, 5, 3)] = 150
    features[_offset(5, 5, 20)] = 210
    features[_offset(5, 5, 30)] = 210
    kpts = extract_kpts(features, WIDTH, HEIGHT, REDUCTION)
    assert kpts == [Point2D(5 * REDUCTION + 20 % REDUCTION, 5 * REDUCTION + 20 // REDUCTION)]


def test_extract_skips_border_and_right_side_beyond_height():
    features = _heatmap()
    features[_offset(0, 0, 0)] = 250
    features[_offset(HEIGHT // REDUCTION, 5, 0)] = 250
    assert extract_kpts(features, WIDTH, HEIGHT, REDUCTION) == []


def test_extract_rejects_zero_reduction():
    with pytest.raises(ValueError):
        extract_kpts(_heatmap(), WIDTH, HEIGHT, 0)


def test_interpolate_uniform_grid_is_unchanged():
    descs = _uniform_descs(37)
    result = interpolate_desc(descs, Point2D(27, 45), CELLS_X, CELLS_Y, REDUCTION)
    assert result == [37] * DESCRIPTOR_SIZE


def test_interpolate_rejects_keypoint_in_border():
    with pytest.raises(ValueError):
        interpolate_desc(_uniform_descs(1), Point2D(2, 20), CELLS_X, CELLS_Y, REDUCTION)


def test_interpolate_outside_grid_raises():
    with pytest.raises(IndexError):
        interpolate_desc(_uniform_descs(1), Point2D(20, 119), CELLS_X, CELLS_Y, REDUCTION)


def test_identical_descriptors_have_full_similarity():
    descs = _uniform_descs(16)
    desc1 = [16] * DESCRIPTOR_SIZE
    similarity = calculate_cosine_similarity(
        descs, desc1, 256, Point2D(20, 20), CELLS_X, CELLS_Y, REDUCTION
    )
    assert similarity == 255


def test_zero_descriptor_has_zero_similarity():
    similarity = calculate_cosine_similarity(
        _uniform_descs(0), [16] * DESCRIPTOR_SIZE, 256, Point2D(20, 20),
        CELLS_X, CELLS_Y, REDUCTION,
    )
    assert similarity == 0


def test_similarity_rejects_short_descriptor():
    with pytest.raises(ValueError):
        calculate_cosine_similarity(
            _uniform_descs(16), [16] * 10, 256, Point2D(20, 20), CELLS_X, CELLS_Y, REDUCTION
        )


def test_one_way_match_within_flow():
    descs = _uniform_descs(16)
    matches = inplace_match_one_way_max_flow(
        descs, descs, [Point2D(20, 20)], [Point2D(25, 22)], 10, WIDTH, HEIGHT, REDUCTION, 166
    )
    assert matches == [FeatureMatch(0, 0, 255)]


def test_one_way_match_respects_max_flow():
    descs = _uniform_descs(16)
    matches = inplace_match_one_way_max_flow(
        descs, descs, [Point2D(20, 20)], [Point2D(25, 22)], 3, WIDTH, HEIGHT, REDUCTION, 166
    )
    assert matches == []


def test_one_way_match_respects_threshold():
    descs = _uniform_descs(16)
    matches = inplace_match_one_way_max_flow(
        descs, descs, [Point2D(20, 20)], [Point2D(20, 20)], 10, WIDTH, HEIGHT, REDUCTION, 255
    )
    assert matches == []


def test_two_way_keeps_unique_match():
    descs = _uniform_descs(16)
    matches = inplace_match_two_way_max_flow(
        descs, descs, [Point2D(20, 20)], [Point2D(22, 21)], 10, WIDTH, HEIGHT, REDUCTION, 166
    )
    assert matches == [FeatureMatch(0, 0, 255)]


def test_two_way_drops_tied_matches_to_same_keypoint():
    descs = _uniform_descs(16)
    kpts0 = [Point2D(20, 20)]
    kpts1 = [Point2D(20, 20), Point2D(21, 21)]
    one_way = inplace_match_one_way_max_flow(
        descs, descs, kpts0, kpts1, 10, WIDTH, HEIGHT, REDUCTION, 166
    )
    assert len(one_way) == 2
    two_way = inplace_match_two_way_max_flow(
        descs, descs, kpts0, kpts1, 10, WIDTH, HEIGHT, REDUCTION, 166
    )
    assert two_way == []


def test_random_matching_invariants():
    rng = random.Random(3)
    size = CELLS_X * CELLS_Y * DESCRIPTOR_SIZE
    descs0 = [rng.randrange(256) for _ in range(size)]
    descs1 = [rng.randrange(256) for _ in range(size)]
    kpts0 = [Point2D(rng.randint(4, 150), rng.randint(4, 110)) for _ in range(10)]
    kpts1 = [Point2D(rng.randint(4, 150), rng.randint(4, 110)) for _ in range(10)]
    max_flow = 60
    threshold = 166

    one_way = inplace_match_one_way_max_flow(
        descs0, descs1, kpts0, kpts1, max_flow, WIDTH, HEIGHT, REDUCTION, threshold
    )
    assert one_way
    assert [m.feat_idx1 for m in one_way] == sorted({m.feat_idx1 for m in one_way})
    for m in one_way:
        assert threshold < m.match_score <= 255
        assert abs(kpts0[m.feat_idx0].x - kpts1[m.feat_idx1].x) <= max_flow
        assert abs(kpts0[m.feat_idx0].y - kpts1[m.feat_idx1].y) <= max_flow

    two_way = inplace_match_two_way_max_flow(
        descs0, descs1, kpts0, kpts1, max_flow, WIDTH, HEIGHT, REDUCTION, threshold
    )
    assert set(two_way) <= set(one_way)
    idx0s = [m.feat_idx0 for m in two_way]
    assert len(idx0s) == len(set(idx0s))