"""
Text Detection Module - Stage 1 of OCR Pipeline

Detects text regions in images using the DBNet architecture: the network
predicts a text probability map, and boxes are derived from the contours
of its binarized mask.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np

from .config import DetOptions, InferenceConfig
from .errors import PostprocessError
from .onnx_base import InferenceSession, load_session
from .postprocess import DBPostProcess, TextBox, merge_adjacent_boxes, nms
from .preprocess import NormalizeParams, det_operators, transform
from .utils import crop_box, to_bgr_array

logger = logging.getLogger(__name__)


class DetectionModel:
    """Text detection model.

    Holds one inference session and frozen options; ``detect`` keeps no
    per-call state on the instance, so one model may serve several threads.
    """

    def __init__(
        self,
        session: Union[str, Path, bytes, InferenceSession],
        options: Optional[DetOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ):
        """Initialize text detector.

        Args:
            session: Detection ONNX model (path or bytes) or a loaded session
            options: Detection options (uses defaults if None)
            inference_config: Session settings used when loading a model
        """
        self.options = options if options is not None else DetOptions()
        self.session = load_session(session, inference_config)
        self.normalize_params = NormalizeParams.paddle_det()

        self.preprocess_ops = det_operators(self.options.max_side_len, self.normalize_params)
        self.postprocess_op = DBPostProcess(
            thresh=self.options.score_threshold,
            unclip_ratio=self.options.unclip_ratio,
            min_area=self.options.min_area,
            return_polygons=self.options.return_polygons,
        )

    @classmethod
    def from_file(
        cls,
        model_path: Union[str, Path],
        options: Optional[DetOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "DetectionModel":
        return cls(Path(model_path), options, inference_config)

    @classmethod
    def from_bytes(
        cls,
        model_bytes: bytes,
        options: Optional[DetOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "DetectionModel":
        return cls(bytes(model_bytes), options, inference_config)

    def input_shape(self) -> Tuple[int, ...]:
        return self.session.input_shape()

    def output_shape(self) -> Tuple[int, ...]:
        return self.session.output_shape()

    def preprocess(self, image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Preprocess single image for detection.

        Args:
            image: Input image as numpy array (H, W, C) in BGR

        Returns:
            Tuple of (tensor [1, 3, H, W], [src_h, src_w, valid_h, valid_w])
        """
        img, shape_info = transform({"image": image}, self.preprocess_ops)
        return np.expand_dims(img, axis=0).astype(np.float32), shape_info

    def run_raw(self, tensor: np.ndarray) -> np.ndarray:
        """Run the network on a prepared tensor and return the raw map."""
        return self.session.run_dynamic(tensor)

    def detect(self, image) -> List[TextBox]:
        """Detect text in a single image.

        Args:
            image: BGR array, gray array or PIL image

        Returns:
            Boxes in original image coordinates, each with score 1.0
        """
        image = to_bgr_array(image)

        tensor, shape_info = self.preprocess(image)
        output = self.run_raw(tensor)
        boxes = self.postprocess_output(output, shape_info)

        if self.options.merge_boxes:
            boxes = nms(boxes, self.options.nms_threshold)
            boxes = merge_adjacent_boxes(boxes, self.options.merge_threshold)

        logger.debug(
            "Detected %d boxes in %dx%d image (working size %dx%d)",
            len(boxes), shape_info[1], shape_info[0], shape_info[3], shape_info[2],
        )
        return boxes

    def detect_and_crop(self, image) -> List[Tuple[np.ndarray, TextBox]]:
        """Detect text and cut each region out of the image.

        Each box is first grown by ``box_border`` pixels (clamped to the
        image); the returned box is the grown one.
        """
        image = to_bgr_array(image)
        height, width = image.shape[:2]

        results = []
        for box in self.detect(image):
            expanded = box.expand(self.options.box_border, width, height)
            results.append((crop_box(image, expanded), expanded))
        return results

    def postprocess_output(self, output: np.ndarray, shape_info) -> List[TextBox]:
        """Turn the raw probability map into boxes.

        Args:
            output: Network output, [N, 1, H, W] or [N, H, W]
            shape_info: [src_h, src_w, valid_h, valid_w]
        """
        output = np.asarray(output)
        if output.ndim < 3:
            raise PostprocessError(
                f"Detection model output shape invalid: {list(output.shape)}"
            )

        # First map of the batch, at padded input resolution
        pred = output[(0,) * (output.ndim - 2)]
        return self.postprocess_op(pred, shape_info)
