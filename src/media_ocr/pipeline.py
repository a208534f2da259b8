"""
High-level OCR Pipeline

Combines orientation correction, detection and recognition into one engine,
plus lightweight detection-only and recognition-only variants.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np

from .config import OcrEngineConfig
from .errors import ModelLoadError, NotInitializedError
from .postprocess import TextBox
from .text_classifier import OrientationModel, OrientationResult
from .text_detector import DetectionModel
from .text_recognizer import RecognitionModel, RecognitionResult
from .utils import load_image, rotate_by_angle, to_bgr_array

logger = logging.getLogger(__name__)

# File names looked up by ``OcrEngine.from_model_dir``
DET_MODEL_NAME = "PP-OCRv5_mobile_det.onnx"
REC_MODEL_NAME = "latin_PP-OCRv5_mobile_rec_infer.onnx"
CHARSET_NAME = "ppocr_keys_latin.txt"
ORI_MODEL_NAME = "PP-LCNet_x1_0_doc_ori.onnx"

# Above this many regions, parallel mode fans recognition out to workers
PARALLEL_MIN_REGIONS = 4


@dataclass
class OcrResult:
    """One recognized text region."""
    text: str
    confidence: float
    bbox: TextBox

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "bbox": list(self.bbox.to_bbox()),
        }


class OcrEngine:
    """
    Complete OCR engine: orientation correction (optional), detection,
    cropping and recognition.

    Usage:
        with OcrEngine("det.onnx", "rec.onnx", "keys.txt") as engine:
            for result in engine.recognize(image):
                print(result.text, result.confidence, result.bbox)

    The engine is safe to share between threads. It owns a worker pool for
    parallel recognition; ``close()`` (or leaving the ``with`` block) shuts
    it down.
    """

    def __init__(
        self,
        det_source,
        rec_source,
        charset_source,
        ori_source=None,
        config: Optional[OcrEngineConfig] = None,
    ):
        """
        Initialize OCR engine

        Args:
            det_source: Detection model (path, bytes or loaded session)
            rec_source: Recognition model (path, bytes or loaded session)
            charset_source: Recognition charset (path or bytes)
            ori_source: Optional orientation model; None disables correction
            config: Engine configuration (defaults if None)
        """
        config = config if config is not None else OcrEngineConfig()
        inference_config = config.to_inference_config()

        det_model = DetectionModel(det_source, config.det_options, inference_config)
        rec_model = RecognitionModel(rec_source, charset_source, config.rec_options, inference_config)
        ori_model = None
        if ori_source is not None:
            ori_model = OrientationModel(ori_source, config.ori_options, inference_config)

        self._setup(det_model, rec_model, ori_model, config)

    @classmethod
    def from_models(
        cls,
        det_model: DetectionModel,
        rec_model: RecognitionModel,
        ori_model: Optional[OrientationModel] = None,
        config: Optional[OcrEngineConfig] = None,
    ) -> "OcrEngine":
        """Assemble an engine from already constructed models."""
        engine = cls.__new__(cls)
        engine._setup(det_model, rec_model, ori_model, config if config is not None else OcrEngineConfig())
        return engine

    @classmethod
    def from_model_dir(
        cls,
        model_dir: Union[str, Path],
        config: Optional[OcrEngineConfig] = None,
        use_orientation: bool = True,
    ) -> "OcrEngine":
        """Load the standard model set from one directory.

        The orientation model is used when ``use_orientation`` is set and
        its file exists; the other three files are required.
        """
        model_dir = Path(model_dir)
        det_path = model_dir / DET_MODEL_NAME
        rec_path = model_dir / REC_MODEL_NAME
        charset_path = model_dir / CHARSET_NAME

        for path in (det_path, rec_path, charset_path):
            if not path.exists():
                raise ModelLoadError(f"OCR model file not found: {path}")

        ori_path = model_dir / ORI_MODEL_NAME
        if not use_orientation or not ori_path.exists():
            ori_path = None

        return cls(det_path, rec_path, charset_path, ori_path, config)

    @staticmethod
    def det_only(det_source, config: Optional[OcrEngineConfig] = None) -> "DetOnlyEngine":
        config = config if config is not None else OcrEngineConfig()
        return DetOnlyEngine(
            DetectionModel(det_source, config.det_options, config.to_inference_config())
        )

    @staticmethod
    def rec_only(
        rec_source, charset_source, config: Optional[OcrEngineConfig] = None
    ) -> "RecOnlyEngine":
        config = config if config is not None else OcrEngineConfig()
        return RecOnlyEngine(
            RecognitionModel(rec_source, charset_source, config.rec_options, config.to_inference_config())
        )

    def _setup(self, det_model, rec_model, ori_model, config):
        self.det_model = det_model
        self.rec_model = rec_model
        self.ori_model = ori_model
        self.config = config

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

        logger.info(
            "OCR engine ready (backend=%s, threads=%d, parallel=%s, orientation=%s)",
            config.backend.value,
            config.thread_count,
            config.enable_parallel,
            ori_model is not None,
        )

    def __enter__(self) -> "OcrEngine":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        """Shut down the recognition worker pool.

        Safe to call while other threads are recognizing: work already
        submitted finishes first, and a later parallel call starts a new pool.
        """
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def _submit_all(self, fn, items) -> List[Future]:
        # Submitting under the lock keeps close() from shutting the pool
        # down between creation and submission
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.thread_count,
                    thread_name_prefix="media-ocr",
                )
            return [self._executor.submit(fn, item) for item in items]

    def recognize(self, image) -> List[OcrResult]:
        """
        Run the full pipeline on one image

        Args:
            image: BGR array, gray array or PIL image

        Returns:
            Results in detection order; regions with empty text or a
            confidence below ``min_result_confidence`` are left out.

        Raises:
            OcrError: Detection or any region's recognition failed; no
                partial results are returned
        """
        image = to_bgr_array(image)
        if self.ori_model is not None:
            image = self._correct_orientation(image)

        detections = self.det_model.detect_and_crop(image)
        if not detections:
            return []

        crops = [crop for crop, _ in detections]
        boxes = [box for _, box in detections]
        rec_results = self.recognize_many(crops)

        min_confidence = self.config.min_result_confidence
        results = [
            OcrResult(rec.text, rec.confidence, box)
            for rec, box in zip(rec_results, boxes)
            if rec.text and rec.confidence >= min_confidence
        ]

        logger.debug("Kept %d of %d recognized regions", len(results), len(rec_results))
        return results

    def recognize_many(self, images: Sequence[np.ndarray]) -> List[RecognitionResult]:
        """Recognize line images, one result per image in input order.

        With parallel mode on and more than four images, each image is a
        separate task on the worker pool. Otherwise the recognition model's
        batched path is used.
        """
        if self.config.enable_parallel and len(images) > PARALLEL_MIN_REGIONS:
            logger.debug("Recognizing %d regions on the worker pool", len(images))
            futures = self._submit_all(self.rec_model.recognize, images)
            return [future.result() for future in futures]

        logger.debug("Recognizing %d regions in batches", len(images))
        return self.rec_model.recognize_batch(images)

    def _correct_orientation(self, image: np.ndarray) -> np.ndarray:
        try:
            result = self.ori_model.classify(image)
        except Exception as e:
            logger.debug("Orientation classification failed, keeping image as is: %s", e)
            return image

        if not result.is_valid(self.config.ori_min_confidence):
            logger.debug(
                "Orientation %d deg below confidence floor (%.3f), not rotating",
                result.angle, result.confidence,
            )
            return image

        if result.angle % 360 == 0:
            return image

        logger.debug("Rotating image back by %d deg (confidence %.3f)", result.angle, result.confidence)
        return rotate_by_angle(image, result.angle)

    def classify_orientation(self, image) -> OrientationResult:
        if self.ori_model is None:
            raise NotInitializedError("Orientation model is not loaded")
        return self.ori_model.classify(image)

    def detect(self, image) -> List[TextBox]:
        """Detection only."""
        return self.det_model.detect(image)

    def recognize_text(self, image) -> RecognitionResult:
        """Recognition only, on a pre-cropped text line."""
        return self.rec_model.recognize(image)

    def recognize_batch(self, images: Sequence) -> List[RecognitionResult]:
        return self.rec_model.recognize_batch(images)

    def extract_text(self, image) -> Optional[str]:
        """All recognized lines joined with newlines, or None when blank."""
        text = "\n".join(result.text for result in self.recognize(image))
        return text if text.strip() else None

    def __repr__(self):
        return (
            f"OcrEngine(\n"
            f"  detector={self.det_model.options},\n"
            f"  recognizer={self.rec_model.options},\n"
            f"  orientation={self.ori_model.options if self.ori_model else None}\n"
            f")"
        )


class DetOnlyEngine:
    """Detection without recognition."""

    def __init__(self, det_model: DetectionModel):
        self.model = det_model

    def detect(self, image) -> List[TextBox]:
        return self.model.detect(image)

    def detect_and_crop(self, image):
        return self.model.detect_and_crop(image)


class RecOnlyEngine:
    """Recognition of pre-cropped text lines."""

    def __init__(self, rec_model: RecognitionModel):
        self.model = rec_model

    def recognize(self, image) -> RecognitionResult:
        return self.model.recognize(image)

    def recognize_text(self, image) -> str:
        return self.model.recognize_text(image)

    def recognize_batch(self, images: Sequence) -> List[RecognitionResult]:
        return self.model.recognize_batch(images)


def ocr_file(
    image_path: Union[str, Path],
    det_model_path: Union[str, Path],
    rec_model_path: Union[str, Path],
    charset_path: Union[str, Path],
    ori_model_path: Optional[Union[str, Path]] = None,
    config: Optional[OcrEngineConfig] = None,
) -> List[OcrResult]:
    """Load models, read one image file and run OCR on it."""
    image = load_image(image_path)
    with OcrEngine(det_model_path, rec_model_path, charset_path, ori_model_path, config) as engine:
        return engine.recognize(image)
