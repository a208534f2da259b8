from __future__ import annotations

import numpy as np
import pytest

from media_ocr.postprocess import (
    DBPostProcess,
    TextBox,
    compute_containment_ratio,
    compute_iou,
    detect_text_traditional,
    extract_boxes_with_unclip,
    group_boxes_by_line,
    merge_adjacent_boxes,
    merge_into_text_lines,
    merge_multi_scale_results,
    nms,
    otsu_threshold,
    sort_boxes_by_reading_order,
    unclip_distance,
)


def _bitmap(height: int, width: int, blobs) -> np.ndarray:
    bitmap = np.zeros((height, width), dtype=np.uint8)
    for x, y, w, h in blobs:
        bitmap[y:y + h, x:x + w] = 255
    return bitmap


def test_unclip_distance_for_ten_by_five_box() -> None:
    assert unclip_distance(10, 5, 1.5) == pytest.approx(2.5)


def test_unclip_distance_is_at_least_one_pixel() -> None:
    assert unclip_distance(2, 2, 1.5) == 1.0
    assert unclip_distance(0, 0, 1.5) == 1.0


def test_extract_boxes_expands_contour_bounds() -> None:
    bitmap = _bitmap(64, 64, [(20, 20, 10, 5)])

    boxes = extract_boxes_with_unclip(bitmap, 64, 64, 64, 64, min_area=16, unclip_ratio=1.5)

    # Contour spans 9x4 px, distance = 36 * 1.5 / 26
    assert boxes == [TextBox(17, 17, 14, 9, 1.0)]


def test_extract_boxes_rescales_to_original_size() -> None:
    bitmap = _bitmap(64, 64, [(20, 20, 10, 5)])

    boxes = extract_boxes_with_unclip(bitmap, 64, 64, 128, 32, min_area=16, unclip_ratio=1.5)

    assert boxes == [TextBox(34, 8, 28, 4, 1.0)]


def test_extract_boxes_skips_small_and_padding_blobs() -> None:
    bitmap = _bitmap(64, 64, [(5, 5, 3, 3), (50, 50, 10, 10)])

    boxes = extract_boxes_with_unclip(bitmap, 40, 40, 40, 40, min_area=16, unclip_ratio=1.5)

    assert boxes == []


def test_extract_boxes_ignores_nested_contours() -> None:
    bitmap = _bitmap(64, 64, [(10, 10, 40, 40)])
    bitmap[20:40, 20:40] = 0
    bitmap[25:35, 25:35] = 255

    boxes = extract_boxes_with_unclip(bitmap, 64, 64, 64, 64, min_area=16, unclip_ratio=1.5)

    assert len(boxes) == 1


def test_unclip_is_monotonic_in_ratio() -> None:
    bitmap = _bitmap(100, 100, [(30, 40, 30, 12)])

    sizes = []
    for ratio in (0.5, 1.0, 1.5, 2.0, 3.0):
        (box,) = extract_boxes_with_unclip(bitmap, 100, 100, 100, 100, 16, ratio)
        sizes.append(box.area())

    assert sizes == sorted(sizes)
    assert sizes[0] < sizes[-1]


def test_db_postprocess_thresholds_probability_map() -> None:
    pred = np.zeros((64, 64), dtype=np.float32)
    pred[20:25, 20:30] = 0.35
    pred[40:45, 20:30] = 0.25

    boxes = DBPostProcess(thresh=0.3)(pred, [64, 64, 64, 64])

    assert boxes == [TextBox(17, 17, 14, 9, 1.0)]


def test_db_postprocess_polygons_stay_inside_image() -> None:
    pred = np.zeros((64, 64), dtype=np.float32)
    pred[20:30, 10:50] = 1.0

    (box,) = DBPostProcess(return_polygons=True)(pred, [128, 128, 64, 64])

    assert box.points is not None
    assert len(box.points) == 4
    for x, y in box.points:
        assert 0 <= x <= 128
        assert 0 <= y <= 128


def test_text_box_expand_clamps_to_image() -> None:
    box = TextBox(2, 3, 10, 10, 0.8)

    assert box.expand(5, 100, 100) == TextBox(0, 0, 17, 18, 0.8)
    assert TextBox(95, 95, 10, 10).expand(5, 100, 100) == TextBox(90, 90, 10, 10)


def test_text_box_expand_keeps_one_pixel_minimum() -> None:
    expanded = TextBox(100, 100, 5, 5).expand(0, 100, 100)

    assert (expanded.width, expanded.height) == (1, 1)


def test_text_box_corners() -> None:
    box = TextBox(10, 20, 30, 40)

    assert box.to_bbox() == (10, 20, 40, 60)
    assert box.area() == 1200


def test_compute_iou() -> None:
    a = TextBox(0, 0, 10, 10)

    assert compute_iou(a, TextBox(5, 0, 10, 10)) == pytest.approx(1.0 / 3.0)
    assert compute_iou(a, a) == pytest.approx(1.0)
    assert compute_iou(a, TextBox(10, 0, 10, 10)) == 0.0


def test_containment_ratio() -> None:
    outer = TextBox(0, 0, 100, 20)

    assert compute_containment_ratio(TextBox(10, 5, 20, 10), outer) == 1.0
    assert compute_containment_ratio(TextBox(90, 0, 20, 20), outer) == 0.5


def test_nms_suppresses_heavy_overlap() -> None:
    boxes = [TextBox(0, 0, 10, 10, 0.8), TextBox(1, 1, 10, 10, 0.9), TextBox(50, 50, 10, 10, 0.7)]

    kept = nms(boxes, 0.3)

    assert kept == [TextBox(1, 1, 10, 10, 0.9), TextBox(50, 50, 10, 10, 0.7)]


def test_nms_drops_box_nested_in_kept_box() -> None:
    large = TextBox(0, 0, 100, 20, 0.9)
    small = TextBox(10, 5, 20, 10, 0.9)

    assert nms([small, large], 0.3) == [large]


def test_nms_drops_container_of_kept_box() -> None:
    large = TextBox(0, 0, 100, 20, 0.8)
    small = TextBox(10, 5, 20, 10, 0.95)

    assert nms([large, small], 0.3) == [small]


def test_nms_is_idempotent() -> None:
    boxes = [
        TextBox(0, 0, 40, 10, 0.9),
        TextBox(5, 2, 40, 10, 0.85),
        TextBox(30, 0, 40, 10, 0.8),
        TextBox(0, 30, 20, 10, 0.7),
        TextBox(2, 31, 5, 5, 0.95),
        TextBox(100, 100, 10, 10, 0.5),
    ]

    once = nms(boxes, 0.3)

    assert nms(once, 0.3) == once


def test_nms_of_nothing() -> None:
    assert nms([], 0.3) == []


def test_merge_adjacent_boxes_unions_close_neighbours() -> None:
    boxes = [
        TextBox(0, 0, 10, 10, 0.8),
        TextBox(15, 2, 10, 10, 0.6),
        TextBox(100, 0, 10, 10, 0.5),
    ]

    merged = merge_adjacent_boxes(boxes, 10)

    assert merged[0] == TextBox(0, 0, 25, 12, pytest.approx(0.7))
    assert merged[1] == TextBox(100, 0, 10, 10, 0.5)


def test_merge_adjacent_boxes_chains_transitively() -> None:
    boxes = [TextBox(40, 0, 10, 10), TextBox(0, 0, 10, 10), TextBox(20, 0, 10, 10)]

    merged = merge_adjacent_boxes(boxes, 10)

    assert merged == [TextBox(0, 0, 50, 10, 1.0)]


def test_merge_adjacent_boxes_needs_vertical_overlap() -> None:
    boxes = [TextBox(0, 0, 10, 10), TextBox(5, 30, 10, 10)]

    assert len(merge_adjacent_boxes(boxes, 10)) == 2


def test_sort_boxes_by_reading_order() -> None:
    boxes = [TextBox(50, 10, 5, 5), TextBox(0, 40, 5, 5), TextBox(0, 10, 5, 5)]

    ordered = sort_boxes_by_reading_order(boxes)

    assert [(b.left, b.top) for b in ordered] == [(0, 10), (50, 10), (0, 40)]


def test_group_boxes_by_line() -> None:
    boxes = [
        TextBox(60, 12, 10, 10),
        TextBox(0, 10, 10, 10),
        TextBox(30, 50, 10, 10),
        TextBox(5, 52, 10, 10),
    ]

    lines = group_boxes_by_line(boxes, 5)

    assert [[b.left for b in line] for line in lines] == [[0, 60], [5, 30]]


def test_group_boxes_by_line_of_nothing() -> None:
    assert group_boxes_by_line([], 5) == []


def test_merge_multi_scale_results_maps_back_and_dedups() -> None:
    half_scale = ([TextBox(20, 10, 40, 20, 0.9)], 100, 50, 2.0)
    full_scale = ([TextBox(110, 55, 20, 10, 0.8), TextBox(0, 0, 10, 10, 0.7)], 0, 0, 1.0)

    merged = merge_multi_scale_results([half_scale, full_scale], 0.5)

    assert merged == [TextBox(110, 55, 20, 10, 0.9), TextBox(0, 0, 10, 10, 0.7)]


def test_otsu_threshold_splits_bimodal_histogram() -> None:
    gray = np.full((10, 10), 200, dtype=np.uint8)
    gray[:, :5] = 50

    assert otsu_threshold(gray) == 50


def test_otsu_threshold_of_flat_image() -> None:
    assert otsu_threshold(np.full((5, 5), 128, dtype=np.uint8)) == 0


def test_detect_text_traditional_finds_lines() -> None:
    gray = np.full((100, 300), 255, dtype=np.uint8)
    for x in (20, 35):
        gray[20:40, x:x + 10] = 0
    gray[60:80, 20:30] = 0

    lines = detect_text_traditional(gray, min_area=16, expand_ratio=0.1)

    assert [(b.left, b.top, b.width, b.height) for b in lines] == [
        (20, 20, 24, 19),
        (20, 60, 9, 19),
    ]


def test_detect_text_traditional_accepts_bgr() -> None:
    image = np.full((50, 50, 3), 255, dtype=np.uint8)
    image[10:30, 10:30] = 0

    assert len(detect_text_traditional(image, 16, 0.1)) == 1


def test_merge_into_text_lines_keeps_distant_boxes_apart() -> None:
    boxes = [TextBox(0, 0, 10, 20), TextBox(100, 0, 10, 20), TextBox(12, 2, 10, 20)]

    lines = merge_into_text_lines(boxes, 10)

    assert lines == [TextBox(0, 0, 22, 22), TextBox(100, 0, 10, 20)]
