"""Preprocessing operations for OCR.

Images are uint8 BGR arrays (H, W, 3); every tensor produced here is
float32 NCHW.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import cv2
import numpy as np

from .config import OriPreprocessMode
from .errors import PreprocessError

DET_STRIDE = 32


@dataclass(frozen=True)
class NormalizeParams:
    """Per-channel mean/std applied after scaling pixels to [0, 1]."""
    mean: Tuple[float, float, float] = (0.485, 0.456, 0.406)
    std: Tuple[float, float, float] = (0.229, 0.224, 0.225)

    @classmethod
    def paddle_det(cls) -> "NormalizeParams":
        return cls((0.485, 0.456, 0.406), (0.229, 0.224, 0.225))

    @classmethod
    def paddle_rec(cls) -> "NormalizeParams":
        return cls((0.5, 0.5, 0.5), (0.5, 0.5, 0.5))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def get_padded_size(size: int) -> int:
    """Round ``size`` up to the next multiple of the detector stride."""
    return ((size + DET_STRIDE - 1) // DET_STRIDE) * DET_STRIDE


def _resize(img: np.ndarray, width: int, height: int) -> np.ndarray:
    try:
        resized = cv2.resize(img, (width, height))
    except cv2.error as e:
        raise PreprocessError(f"Cannot resize {img.shape[1]}x{img.shape[0]} image to {width}x{height}: {e}") from e
    if resized.ndim == 2:
        resized = resized[:, :, np.newaxis]
    return resized


def resize_to_max_side(img: np.ndarray, max_side_len: int) -> np.ndarray:
    """Scale down so the longer side is at most ``max_side_len``."""
    h, w = img.shape[:2]
    max_dim = max(h, w)
    if max_dim <= max_side_len:
        return img

    scale = max_side_len / float(max_dim)
    new_w = max(_round_half_up(w * scale), 1)
    new_h = max(_round_half_up(h * scale), 1)
    return _resize(img, new_w, new_h)


def rec_target_width(width: int, height: int, target_height: int) -> int:
    return max(_round_half_up(width * target_height / float(height)), 1)


def resize_to_height(img: np.ndarray, target_height: int) -> np.ndarray:
    """Scale to a fixed height, keeping the aspect ratio."""
    h, w = img.shape[:2]
    if h == target_height:
        return img
    return _resize(img, rec_target_width(w, h, target_height), target_height)


class DetResizeForTest:
    """Resize image for text detection (longer side bounded)."""

    def __init__(self, limit_side_len=960, **kwargs):
        self.limit_side_len = limit_side_len

    def __call__(self, data: Dict) -> Dict:
        img = data['image']
        src_h, src_w = img.shape[:2]

        img = resize_to_max_side(img, self.limit_side_len)
        resize_h, resize_w = img.shape[:2]

        data['image'] = img
        # Valid (unpadded) region, used to undo scaling after inference
        data['shape'] = np.array([src_h, src_w, resize_h, resize_w])
        return data


class NormalizeImage:
    """Normalize image values."""

    def __init__(self, scale=1.0 / 255.0, mean=(0.485, 0.456, 0.406),
                 std=(0.229, 0.224, 0.225), **kwargs):
        self.scale = np.float32(scale)
        self.mean = np.array(mean).reshape((1, 1, 3)).astype('float32')
        self.std = np.array(std).reshape((1, 1, 3)).astype('float32')

    def __call__(self, data: Dict) -> Dict:
        img = data['image'].astype('float32')
        img = img * self.scale
        img = (img - self.mean) / self.std
        data['image'] = img
        return data


class PadToStride:
    """Zero-pad height and width up to the next multiple of ``stride``."""

    def __init__(self, stride=DET_STRIDE, **kwargs):
        self.stride = stride

    def __call__(self, data: Dict) -> Dict:
        img = data['image']
        h, w = img.shape[:2]
        pad_h = ((h + self.stride - 1) // self.stride) * self.stride
        pad_w = ((w + self.stride - 1) // self.stride) * self.stride
        if (pad_h, pad_w) != (h, w):
            padded = np.zeros((pad_h, pad_w, img.shape[2]), dtype=img.dtype)
            padded[:h, :w] = img
            data['image'] = padded
        return data


class ToCHWImage:
    """Convert image from HWC to CHW format."""

    def __call__(self, data: Dict) -> Dict:
        img = data['image']
        data['image'] = img.transpose((2, 0, 1))
        return data


class KeepKeys:
    """Keep only specified keys in data dict."""

    def __init__(self, keep_keys: List[str], **kwargs):
        self.keep_keys = keep_keys

    def __call__(self, data: Dict) -> Tuple:
        """Return tuple of (image, shape) for detection."""
        result = []
        for key in self.keep_keys:
            result.append(data[key])
        return tuple(result)


def create_operators(op_param_list: List[Dict]):
    """Create preprocessing operators from config list.

    Args:
        op_param_list: List of dicts like [{"OpName": {params}}]

    Returns:
        List of operator instances
    """
    ops = []
    for operator in op_param_list:
        if not isinstance(operator, dict) or len(operator) != 1:
            raise ValueError(f"Operator config must be a single-key dict, got {operator!r}")
        op_name = list(operator)[0]
        param = {} if operator[op_name] is None else operator[op_name]
        op = globals()[op_name](**param)
        ops.append(op)
    return ops


def transform(data: Dict, ops: List):
    """Apply preprocessing operators sequentially.

    Args:
        data: Dictionary containing 'image' key
        ops: List of operator instances

    Returns:
        Output of the last operator, or None if an operator dropped the sample
    """
    for op in ops:
        data = op(data)
        if data is None:
            return None
    return data


def det_operators(max_side_len: int, params: NormalizeParams) -> List:
    """Standard detection chain: resize, normalize, pad, CHW."""
    return create_operators([
        {"DetResizeForTest": {"limit_side_len": max_side_len}},
        {"NormalizeImage": {"mean": params.mean, "std": params.std}},
        {"PadToStride": {"stride": DET_STRIDE}},
        {"ToCHWImage": None},
        {"KeepKeys": {"keep_keys": ["image", "shape"]}},
    ])


def _normalize_chw(img: np.ndarray, params: NormalizeParams) -> np.ndarray:
    data = NormalizeImage(mean=params.mean, std=params.std)({"image": img})
    return data["image"].transpose((2, 0, 1))


def preprocess_for_rec(img: np.ndarray, target_height: int, params: NormalizeParams) -> np.ndarray:
    """Resize a text line to ``target_height`` and normalize to [1, 3, H, W]."""
    resized = resize_to_height(img, target_height)
    return _normalize_chw(resized, params)[np.newaxis, :].astype(np.float32)


def preprocess_batch_for_rec(
    images: Sequence[np.ndarray],
    target_height: int,
    params: NormalizeParams,
) -> np.ndarray:
    """Stack text lines into one [N, 3, H, max_W] tensor.

    Narrower lines are zero-padded on the right; input order is preserved.
    """
    if len(images) == 0:
        return np.zeros((0, 3, target_height, 0), dtype=np.float32)

    normalized = [_normalize_chw(resize_to_height(img, target_height), params) for img in images]
    max_width = max(chw.shape[2] for chw in normalized)

    batch = np.zeros((len(images), 3, target_height, max_width), dtype=np.float32)
    for i, chw in enumerate(normalized):
        batch[i, :, :, :chw.shape[2]] = chw
    return batch


def preprocess_for_ori(
    img: np.ndarray,
    target_height: int,
    target_width: int,
    resize_shorter: int,
    mode: OriPreprocessMode,
    params: NormalizeParams,
) -> np.ndarray:
    """Fit an image to the orientation classifier input, [1, 3, th, tw].

    Document mode resizes the shorter side to ``resize_shorter`` then
    center-crops (or stretches, when too small) to the target. Textline
    mode resizes to the target height with the width clipped to the target
    width; the remainder is zero-padded.
    """
    if target_height <= 0 or target_width <= 0:
        raise PreprocessError("Target size must be greater than zero")

    h, w = img.shape[:2]
    if mode == OriPreprocessMode.TEXTLINE:
        ratio = w / float(max(h, 1))
        resize_w = min(max(_round_half_up(target_height * ratio), 1), target_width)
        processed = _resize(img, resize_w, target_height)
    else:
        scale = resize_shorter / float(max(min(w, h), 1))
        new_w = max(_round_half_up(w * scale), 1)
        new_h = max(_round_half_up(h * scale), 1)
        resized = _resize(img, new_w, new_h)
        if new_w < target_width or new_h < target_height:
            processed = _resize(resized, target_width, target_height)
        else:
            left = (new_w - target_width) // 2
            top = (new_h - target_height) // 2
            processed = resized[top:top + target_height, left:left + target_width]

    chw = _normalize_chw(processed, params)
    tensor = np.zeros((1, 3, target_height, target_width), dtype=np.float32)
    ph = min(chw.shape[1], target_height)
    pw = min(chw.shape[2], target_width)
    tensor[0, :, :ph, :pw] = chw[:, :ph, :pw]
    return tensor


def threshold_mask(mask: np.ndarray, threshold: float) -> np.ndarray:
    """Binarize a probability map to {0, 255} (strictly above ``threshold``)."""
    return np.where(np.asarray(mask) > threshold, 255, 0).astype(np.uint8)


def split_into_blocks(
    img: np.ndarray, block_size: int, overlap: int
) -> List[Tuple[np.ndarray, int, int]]:
    """Tile an image into overlapping blocks.

    Returns:
        List of (block, x_offset, y_offset)
    """
    if block_size <= overlap:
        raise PreprocessError("block_size must be larger than overlap")

    height, width = img.shape[:2]
    step = block_size - overlap
    blocks = []

    y = 0
    while y < height:
        x = 0
        while x < width:
            block = img[y:y + block_size, x:x + block_size]
            blocks.append((block, x, y))
            x += step
            if x + overlap >= width:
                break
        y += step
        if y + overlap >= height:
            break

    return blocks
