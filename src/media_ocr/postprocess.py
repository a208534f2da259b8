"""Postprocessing modules for OCR outputs.

Box extraction from DB probability maps, plus the geometric helpers shared
by detection and callers: NMS, IoU, merging, reading order and a classic
Otsu-based detector for plain documents.
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import pyclipper

from .preprocess import threshold_mask

Point = Tuple[float, float]


@dataclass(frozen=True)
class TextBox:
    """Axis-aligned text region in original image coordinates."""
    left: int
    top: int
    width: int
    height: int
    score: float = 1.0
    points: Optional[Tuple[Point, Point, Point, Point]] = None  # clockwise from top-left

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    def area(self) -> int:
        return self.width * self.height

    def expand(self, border: int, max_width: int, max_height: int) -> "TextBox":
        """Grow by ``border`` pixels on every side, clamped to the image.

        Width and height never drop below one pixel.
        """
        x = max(self.left - border, 0)
        y = max(self.top - border, 0)
        right = min(self.left + self.width + border, max_width)
        bottom = min(self.top + self.height + border, max_height)
        width = right - x if right > x else 1
        height = bottom - y if bottom > y else 1
        return replace(self, left=x, top=y, width=width, height=height)

    def to_bbox(self) -> Tuple[int, int, int, int]:
        """Corner form (x1, y1, x2, y2)."""
        return self.left, self.top, self.right, self.bottom


def unclip_distance(width: float, height: float, unclip_ratio: float) -> float:
    """DB expansion distance for a ``width`` x ``height`` region.

    ``area * unclip_ratio / perimeter``, never less than one pixel.
    """
    perimeter = 2.0 * (width + height)
    if perimeter <= 0:
        return 1.0
    return max(1.0, width * height * unclip_ratio / perimeter)


def _find_contours(bitmap: np.ndarray, mode: int):
    outs = cv2.findContours(bitmap, mode, cv2.CHAIN_APPROX_NONE)
    # OpenCV 3 returns (image, contours, hierarchy)
    if len(outs) == 3:
        return outs[1]
    return outs[0]


class DBPostProcess:
    """Post-processing for DB (Differentiable Binarization) text detection.

    Converts probability maps to bounding boxes. The map covers the padded
    network input; only its valid (unpadded) region carries image content.
    """

    def __init__(
        self,
        thresh=0.3,
        unclip_ratio=1.5,
        min_area=16,
        return_polygons=False,
    ):
        """Initialize DB post-processor.

        Args:
            thresh: Binarization threshold for probability map
            unclip_ratio: Ratio for expanding text regions
            min_area: Minimum bounding-box area (mask pixels) of a contour
            return_polygons: Attach an expanded min-area quad to each box
        """
        self.thresh = thresh
        self.unclip_ratio = unclip_ratio
        self.min_area = min_area
        self.return_polygons = return_polygons

    def __call__(self, pred: np.ndarray, shape) -> List[TextBox]:
        """Convert a probability map to boxes.

        Args:
            pred: Probability map (H, W)
            shape: [src_h, src_w, valid_h, valid_w] from ``DetResizeForTest``

        Returns:
            Boxes in source image coordinates
        """
        src_h, src_w, valid_h, valid_w = [int(v) for v in shape]
        bitmap = threshold_mask(pred, self.thresh)
        return self.boxes_from_bitmap(bitmap, valid_w, valid_h, src_w, src_h)

    def boxes_from_bitmap(
        self,
        bitmap: np.ndarray,
        valid_width: int,
        valid_height: int,
        dest_width: int,
        dest_height: int,
    ) -> List[TextBox]:
        """Extract unclipped boxes from a binary {0, 255} mask."""
        if bitmap.ndim != 2:
            bitmap = bitmap.squeeze()
        if bitmap.ndim != 2:
            raise ValueError(f"Expected 2D bitmap, got shape {bitmap.shape}")
        if valid_width <= 0 or valid_height <= 0:
            return []

        contours = _find_contours(np.ascontiguousarray(bitmap, dtype=np.uint8), cv2.RETR_EXTERNAL)

        scale_x = dest_width / float(valid_width)
        scale_y = dest_height / float(valid_height)

        boxes = []
        for contour in contours:
            points = contour.reshape(-1, 2)
            if points.shape[0] < 4:
                continue

            min_x, min_y = points.min(axis=0)
            max_x, max_y = points.max(axis=0)

            # Blob lies in the stride padding
            if min_x >= valid_width or min_y >= valid_height:
                continue

            min_x, min_y = max(int(min_x), 0), max(int(min_y), 0)
            max_x, max_y = min(int(max_x), valid_width), min(int(max_y), valid_height)

            box_width = max_x - min_x
            box_height = max_y - min_y
            if box_width * box_height < self.min_area:
                continue

            distance = unclip_distance(box_width, box_height, self.unclip_ratio)

            expanded_min_x = int(max(min_x - distance, 0.0))
            expanded_min_y = int(max(min_y - distance, 0.0))
            expanded_max_x = int(min(max_x + distance, float(valid_width)))
            expanded_max_y = int(min(max_y + distance, float(valid_height)))

            x = int(expanded_min_x * scale_x)
            y = int(expanded_min_y * scale_y)
            w = int((expanded_max_x - expanded_min_x) * scale_x)
            h = int((expanded_max_y - expanded_min_y) * scale_y)

            w = min(w, max(dest_width - x, 0))
            h = min(h, max(dest_height - y, 0))
            if w <= 0 or h <= 0:
                continue

            quad = None
            if self.return_polygons:
                quad = self.polygon_from_contour(
                    contour, distance, valid_width, valid_height, scale_x, scale_y
                )
            boxes.append(TextBox(x, y, w, h, 1.0, quad))

        return boxes

    def polygon_from_contour(
        self, contour, distance, valid_width, valid_height, scale_x, scale_y
    ) -> Tuple[Point, Point, Point, Point]:
        """Min-area quad of ``contour`` grown by ``distance`` and rescaled."""
        box, _ = self.get_mini_boxes(contour)
        expanded = self.unclip(np.array(box), distance)
        if len(expanded) == 1 and len(expanded[0]) >= 4:
            box, _ = self.get_mini_boxes(
                np.array(expanded[0], dtype=np.float32).reshape(-1, 1, 2)
            )

        box = np.array(box, dtype=np.float64)
        box[:, 0] = np.clip(box[:, 0], 0, valid_width) * scale_x
        box[:, 1] = np.clip(box[:, 1], 0, valid_height) * scale_y
        return tuple((float(px), float(py)) for px, py in box)

    def unclip(self, box, distance):
        """Expand box using Vatti clipping algorithm."""
        offset = pyclipper.PyclipperOffset()
        offset.AddPath(box.astype(np.int64).tolist(), pyclipper.JT_ROUND, pyclipper.ET_CLOSEDPOLYGON)
        return offset.Execute(distance)

    def get_mini_boxes(self, contour):
        """Get minimum area rectangle."""
        bounding_box = cv2.minAreaRect(contour)
        points = sorted(list(cv2.boxPoints(bounding_box)), key=lambda x: x[0])

        if points[1][1] > points[0][1]:
            index_1, index_4 = 0, 1
        else:
            index_1, index_4 = 1, 0

        if points[3][1] > points[2][1]:
            index_2, index_3 = 2, 3
        else:
            index_2, index_3 = 3, 2

        box = [points[index_1], points[index_2], points[index_3], points[index_4]]
        return box, min(bounding_box[1])


def extract_boxes_with_unclip(
    bitmap: np.ndarray,
    valid_width: int,
    valid_height: int,
    original_width: int,
    original_height: int,
    min_area: int,
    unclip_ratio: float,
) -> List[TextBox]:
    """Boxes from a binary mask, expanded and mapped to original coordinates."""
    post = DBPostProcess(unclip_ratio=unclip_ratio, min_area=min_area)
    return post.boxes_from_bitmap(bitmap, valid_width, valid_height, original_width, original_height)


def compute_iou(a: TextBox, b: TextBox) -> float:
    """Intersection over union of two boxes, 0 when disjoint."""
    x1 = max(a.left, b.left)
    y1 = max(a.top, b.top)
    x2 = min(a.right, b.right)
    y2 = min(a.bottom, b.bottom)
    if x2 <= x1 or y2 <= y1:
        return 0.0

    intersection = float(x2 - x1) * float(y2 - y1)
    union = float(a.area()) + float(b.area()) - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def compute_containment_ratio(inner: TextBox, outer: TextBox) -> float:
    """Fraction of ``inner``'s area lying inside ``outer``."""
    x1 = max(inner.left, outer.left)
    y1 = max(inner.top, outer.top)
    x2 = min(inner.right, outer.right)
    y2 = min(inner.bottom, outer.bottom)
    if x2 <= x1 or y2 <= y1:
        return 0.0

    inner_area = float(inner.area())
    if inner_area <= 0:
        return 0.0
    return float(x2 - x1) * float(y2 - y1) / inner_area


def nms(boxes: Sequence[TextBox], iou_threshold: float) -> List[TextBox]:
    """Containment-aware non-maximum suppression.

    Boxes are visited by score, then area, both descending. A later box is
    dropped when its IoU with a kept box exceeds ``iou_threshold``, when
    more than half of it lies inside the kept box, or when the kept box
    lies more than 70% inside it.
    """
    order = sorted(range(len(boxes)), key=lambda i: (-boxes[i].score, -boxes[i].area()))
    suppressed = [False] * len(boxes)
    keep = []

    for pos, i in enumerate(order):
        if suppressed[i]:
            continue
        keep.append(boxes[i])

        for j in order[pos + 1:]:
            if suppressed[j]:
                continue
            if compute_iou(boxes[i], boxes[j]) > iou_threshold:
                suppressed[j] = True
            elif compute_containment_ratio(boxes[j], boxes[i]) > 0.5:
                suppressed[j] = True
            elif compute_containment_ratio(boxes[i], boxes[j]) > 0.7:
                suppressed[j] = True

    return keep


def _can_merge(a: TextBox, b: TextBox, threshold: int) -> bool:
    vertical_overlap = not (a.top > b.bottom or b.top > a.bottom)
    if a.left > b.right:
        horizontal_dist = a.left - b.right
    elif b.left > a.right:
        horizontal_dist = b.left - a.right
    else:
        horizontal_dist = 0
    return vertical_overlap and horizontal_dist <= threshold


def _union(a: TextBox, b: TextBox, score: float) -> TextBox:
    left = min(a.left, b.left)
    top = min(a.top, b.top)
    return TextBox(
        left,
        top,
        max(a.right, b.right) - left,
        max(a.bottom, b.bottom) - top,
        score,
    )


def merge_adjacent_boxes(boxes: Sequence[TextBox], distance_threshold: int) -> List[TextBox]:
    """Union vertically overlapping boxes whose horizontal gap is small.

    Each group keeps growing until nothing else can join it; its score is
    the mean of its members' scores.
    """
    merged = []
    used = [False] * len(boxes)

    for i in range(len(boxes)):
        if used[i]:
            continue
        used[i] = True
        current = boxes[i]
        total_score = boxes[i].score
        count = 1

        found = True
        while found:
            found = False
            for j in range(len(boxes)):
                if used[j]:
                    continue
                if _can_merge(current, boxes[j], distance_threshold):
                    current = _union(current, boxes[j], current.score)
                    total_score += boxes[j].score
                    count += 1
                    used[j] = True
                    found = True

        merged.append(replace(current, score=total_score / count, points=None))

    return merged


def sort_boxes_by_reading_order(boxes: Sequence[TextBox]) -> List[TextBox]:
    """Top to bottom, then left to right."""
    return sorted(boxes, key=lambda b: (b.top, b.left))


def group_boxes_by_line(boxes: Sequence[TextBox], line_threshold: int) -> List[List[TextBox]]:
    """Group boxes into lines, each sorted left to right.

    A box joins the current line when its top is within ``line_threshold``
    of the top of the box that opened the line.
    """
    if not boxes:
        return []

    sorted_boxes = sorted(boxes, key=lambda b: b.top)
    lines = []
    current_line = [sorted_boxes[0]]
    current_y = sorted_boxes[0].top

    for box in sorted_boxes[1:]:
        if abs(box.top - current_y) <= line_threshold:
            current_line.append(box)
        else:
            lines.append(sorted(current_line, key=lambda b: b.left))
            current_line = [box]
            current_y = box.top

    lines.append(sorted(current_line, key=lambda b: b.left))
    return lines


def merge_multi_scale_results(
    results: Sequence[Tuple[Sequence[TextBox], int, int, float]],
    iou_threshold: float,
) -> List[TextBox]:
    """Combine detections made on scaled or tiled views of one image.

    Args:
        results: (boxes, offset_x, offset_y, scale) per view; boxes are
            divided by ``scale`` then shifted by the offset
        iou_threshold: NMS threshold for the combined set

    Returns:
        Deduplicated boxes in full-image coordinates
    """
    all_boxes = []
    for boxes, offset_x, offset_y, scale in results:
        for box in boxes:
            all_boxes.append(TextBox(
                int(box.left / scale) + offset_x,
                int(box.top / scale) + offset_y,
                int(box.width / scale),
                int(box.height / scale),
                box.score,
            ))
    return nms(all_boxes, iou_threshold)


# Traditional (non-learned) detection

def otsu_threshold(gray: np.ndarray) -> int:
    """Otsu threshold over the 256-bin histogram of a uint8 image."""
    histogram = np.bincount(np.asarray(gray, dtype=np.uint8).ravel(), minlength=256)
    total = float(histogram.sum())
    weighted_sum = float(np.dot(np.arange(256), histogram))

    sum_b = 0.0
    w_b = 0.0
    max_variance = 0.0
    threshold = 0

    for t in range(256):
        count = float(histogram[t])
        w_b += count
        if w_b == 0:
            continue

        w_f = total - w_b
        if w_f == 0:
            break

        sum_b += t * count
        m_b = sum_b / w_b
        m_f = (weighted_sum - sum_b) / w_f

        variance = w_b * w_f * (m_b - m_f) ** 2
        if variance > max_variance:
            max_variance = variance
            threshold = t

    return threshold


def detect_text_traditional(gray: np.ndarray, min_area: int, expand_ratio: float) -> List[TextBox]:
    """Find dark text on a light, uniform background without a model.

    Args:
        gray: Grayscale (H, W) uint8 image; BGR input is converted
        min_area: Minimum contour bounding-box area
        expand_ratio: Each box grows by ``size * expand_ratio / 2`` per axis

    Returns:
        Line-level boxes
    """
    if gray.ndim == 3:
        gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)
    height, width = gray.shape[:2]

    threshold = otsu_threshold(gray)
    # Otsu puts the threshold level itself in the dark class
    binary = np.where(gray <= threshold, 255, 0).astype(np.uint8)

    boxes = []
    for contour in _find_contours(binary, cv2.RETR_LIST):
        points = contour.reshape(-1, 2)
        if points.shape[0] < 4:
            continue

        min_x, min_y = (int(v) for v in points.min(axis=0))
        max_x, max_y = (int(v) for v in points.max(axis=0))
        box_width = max_x - min_x
        box_height = max_y - min_y
        if box_width * box_height < min_area:
            continue

        expand_w = int(box_width * expand_ratio * 0.5)
        expand_h = int(box_height * expand_ratio * 0.5)

        x = max(min_x - expand_w, 0)
        y = max(min_y - expand_h, 0)
        w = max(min(max_x + expand_w, width) - x, 0)
        h = max(min(max_y + expand_h, height) - y, 0)
        if w > 0 and h > 0:
            boxes.append(TextBox(x, y, w, h, 1.0))

    return merge_into_text_lines(boxes, 10)


def merge_into_text_lines(boxes: Sequence[TextBox], gap_threshold: int) -> List[TextBox]:
    """Chain character boxes into lines.

    Boxes are taken top-down; each joins the first line whose vertical
    center is within half the line height and whose right edge is closer
    than ``3 * gap_threshold`` to the box's left edge.
    """
    lines: List[TextBox] = []

    for box in sorted(boxes, key=lambda b: b.top):
        box_center_y = box.top + box.height // 2
        for k, line in enumerate(lines):
            line_center_y = line.top + line.height // 2
            if abs(line_center_y - box_center_y) >= line.height // 2:
                continue
            if abs(box.left - line.right) < gap_threshold * 3:
                lines[k] = _union(line, box, line.score)
                break
        else:
            lines.append(box)

    return lines
