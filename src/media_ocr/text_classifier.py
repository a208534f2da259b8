"""
Orientation Classification Module - optional stage of the OCR pipeline

Predicts how far an image is rotated, as one of a few discrete angles
(0/180 for text lines, 0/90/180/270 for whole documents).
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import InferenceConfig, OriOptions, OriPreprocessMode
from .errors import PostprocessError
from .onnx_base import InferenceSession, load_session
from .preprocess import NormalizeParams, preprocess_for_ori
from .utils import to_bgr_array

logger = logging.getLogger(__name__)

_DEFAULT_ANGLES = {
    2: (0, 180),
    4: (0, 90, 180, 270),
}


@dataclass
class OrientationResult:
    """Predicted class, its angle in degrees, and the softmax scores."""
    class_idx: int
    angle: int
    confidence: float
    scores: List[float] = field(default_factory=list)

    def is_valid(self, threshold: float) -> bool:
        return self.confidence >= threshold


def softmax(scores) -> np.ndarray:
    """Numerically stable softmax over a 1-D score vector."""
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size == 0:
        return scores
    exp_scores = np.exp(scores - scores.max())
    total = exp_scores.sum()
    if total == 0:
        return np.zeros_like(scores)
    return exp_scores / total


def class_to_angle(num_classes: int, class_idx: int, class_angles: Sequence[int]) -> int:
    """Map a class index to degrees.

    An explicit table wins when it has one entry per class; otherwise the
    built-in 2- and 4-class tables apply; otherwise the index itself is
    returned.
    """
    if len(class_angles) == num_classes:
        return int(class_angles[class_idx])

    defaults = _DEFAULT_ANGLES.get(num_classes)
    if defaults is not None:
        return defaults[class_idx]

    logger.warning(
        "No angle table for %d orientation classes, using class index %d as angle",
        num_classes, class_idx,
    )
    return int(class_idx)


class ClsPostProcess:
    """Post-processing for orientation classification."""

    def __init__(self, class_angles: Sequence[int] = (0, 90, 180, 270)):
        self.class_angles = tuple(class_angles)

    def __call__(self, preds: np.ndarray) -> OrientationResult:
        """Softmax the first row of ``preds`` and pick the best class.

        Tied top scores resolve to the lowest class index.
        """
        preds = np.asarray(preds, dtype=np.float32)
        if preds.ndim == 0 or preds.size == 0:
            raise PostprocessError("Orientation model output is empty")

        num_classes = preds.shape[-1]
        if num_classes == 0:
            raise PostprocessError("Orientation model output classes is zero")

        scores = softmax(preds.reshape(-1)[:num_classes])
        class_idx = int(scores.argmax())
        angle = class_to_angle(num_classes, class_idx, self.class_angles)
        return OrientationResult(class_idx, angle, float(scores[class_idx]), scores.tolist())


class OrientationModel:
    """Orientation classifier for documents or single text lines."""

    def __init__(
        self,
        session: Union[str, Path, bytes, InferenceSession],
        options: Optional[OriOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ):
        """Initialize orientation classifier.

        Args:
            session: Orientation ONNX model (path or bytes) or a loaded session
            options: Classifier options (document defaults if None)
            inference_config: Session settings used when loading a model
        """
        self.options = options if options is not None else OriOptions()
        self.session = load_session(session, inference_config)

        if self.options.preprocess_mode == OriPreprocessMode.TEXTLINE:
            self.normalize_params = NormalizeParams.paddle_rec()
        else:
            self.normalize_params = NormalizeParams.paddle_det()

        self.postprocess_op = ClsPostProcess(self.options.class_angles)

    @classmethod
    def from_file(
        cls,
        model_path: Union[str, Path],
        options: Optional[OriOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "OrientationModel":
        return cls(Path(model_path), options, inference_config)

    @classmethod
    def from_bytes(
        cls,
        model_bytes: bytes,
        options: Optional[OriOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "OrientationModel":
        return cls(bytes(model_bytes), options, inference_config)

    def input_shape(self) -> Tuple[int, ...]:
        return self.session.input_shape()

    def output_shape(self) -> Tuple[int, ...]:
        return self.session.output_shape()

    def run_raw(self, tensor: np.ndarray) -> np.ndarray:
        return self.session.run_dynamic(tensor)

    def classify(self, image) -> OrientationResult:
        """Classify the rotation of an image.

        Args:
            image: BGR array, gray array or PIL image

        Returns:
            OrientationResult
        """
        image = to_bgr_array(image)
        tensor = preprocess_for_ori(
            image,
            self.options.target_height,
            self.options.target_width,
            self.options.resize_shorter,
            self.options.preprocess_mode,
            self.normalize_params,
        )
        return self.postprocess_op(self.run_raw(tensor))
