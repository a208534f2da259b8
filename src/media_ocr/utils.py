"""Utility functions for OCR pipeline."""

import io
from pathlib import Path
from typing import Union

import cv2
import numpy as np
from PIL import Image

from .errors import PreprocessError

ImageSource = Union[str, Path, bytes, bytearray]


def to_bgr_array(image) -> np.ndarray:
    """Coerce an image into a contiguous uint8 BGR array of shape (H, W, 3).

    Args:
        image: numpy array (gray, gray with one channel, BGR or BGRA) or a
            PIL image

    Returns:
        BGR image
    """
    if isinstance(image, Image.Image):
        image = cv2.cvtColor(np.asarray(image.convert("RGB")), cv2.COLOR_RGB2BGR)
    elif not isinstance(image, np.ndarray):
        raise PreprocessError(f"Unsupported image type: {type(image).__name__}")

    if image.size == 0:
        raise PreprocessError(f"Image is empty (shape {image.shape})")

    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    elif image.ndim == 3 and image.shape[2] == 1:
        image = cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGR)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    elif image.ndim != 3 or image.shape[2] != 3:
        raise PreprocessError(f"Unsupported image shape: {image.shape}")

    return np.ascontiguousarray(image)


def load_image(source: ImageSource) -> np.ndarray:
    """Decode an image file or encoded bytes (PNG, JPEG, ...) to BGR."""
    try:
        if isinstance(source, (bytes, bytearray)):
            with Image.open(io.BytesIO(bytes(source))) as img:
                img.load()
                return to_bgr_array(img)
        with Image.open(Path(source)) as img:
            img.load()
            return to_bgr_array(img)
    except OSError as e:
        raise PreprocessError(f"Cannot decode image: {e}") from e


def crop_box(img: np.ndarray, box) -> np.ndarray:
    """Copy the axis-aligned region of ``box`` out of ``img``."""
    return img[box.top:box.top + box.height, box.left:box.left + box.width].copy()


def rotate_by_angle(img: np.ndarray, angle: int) -> np.ndarray:
    """Undo a detected rotation of 90, 180 or 270 degrees.

    Other angles leave the image untouched.
    """
    angle = angle % 360
    if angle == 90:
        return cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE)
    if angle == 180:
        return cv2.rotate(img, cv2.ROTATE_180)
    if angle == 270:
        return cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE)
    return img
