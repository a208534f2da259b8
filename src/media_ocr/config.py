"""Configuration classes for OCR modules.

Every options object is frozen: build it once, hand it to a model, and
derive variants with the ``with_*`` helpers instead of mutating it.
"""

import os
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Mapping, Optional, Tuple

from .errors import InvalidParameterError


class Backend(str, Enum):
    """Execution backend for the inference sessions."""
    CPU = "cpu"
    CUDA = "cuda"
    TENSORRT = "tensorrt"
    COREML = "coreml"
    DIRECTML = "directml"
    OPENVINO = "openvino"
    ROCM = "rocm"


class PrecisionMode(str, Enum):
    """Numeric precision trade-off requested from the backend."""
    NORMAL = "normal"
    LOW = "low"  # fp16 where the provider supports it
    HIGH = "high"


class DetPrecisionMode(str, Enum):
    """Detection strategy. Only single-pass detection exists."""
    FAST = "fast"


class OriPreprocessMode(str, Enum):
    """How an image is fitted to the orientation classifier input."""
    DOC = "doc"
    TEXTLINE = "textline"


def _check_unit_interval(name: str, value: float):
    if not 0.0 <= value <= 1.0:
        raise InvalidParameterError(f"{name} must be within [0, 1], got {value}")


def _check_positive(name: str, value: float):
    if value <= 0:
        raise InvalidParameterError(f"{name} must be greater than zero, got {value}")


@dataclass(frozen=True)
class InferenceConfig:
    """Settings shared by every inference session of one engine."""
    thread_count: int = 4  # intra-op threads, -1 lets onnxruntime decide
    precision_mode: PrecisionMode = PrecisionMode.NORMAL
    backend: Backend = Backend.CPU

    def __post_init__(self):
        if self.thread_count == 0 or self.thread_count < -1:
            raise InvalidParameterError(
                f"thread_count must be positive or -1, got {self.thread_count}"
            )


@dataclass(frozen=True)
class DetOptions:
    """Configuration for text detection stage."""
    max_side_len: int = 960  # Longer side is scaled down to this bound
    box_threshold: float = 0.5  # Box score floor, unused by fast mode
    unclip_ratio: float = 1.5  # Text region expansion ratio
    score_threshold: float = 0.3  # Mask binarization threshold
    min_area: int = 16  # Minimum contour bounding-box area, in mask pixels
    box_border: int = 5  # Extra pixels around each crop
    merge_boxes: bool = False  # Stitch adjacent boxes into lines
    merge_threshold: int = 10  # Max horizontal gap for merging
    nms_threshold: float = 0.3  # IoU threshold used before merging
    precision_mode: DetPrecisionMode = DetPrecisionMode.FAST
    return_polygons: bool = False  # Attach a 4-point polygon to each box

    def __post_init__(self):
        _check_positive("max_side_len", self.max_side_len)
        _check_positive("unclip_ratio", self.unclip_ratio)
        _check_unit_interval("box_threshold", self.box_threshold)
        _check_unit_interval("score_threshold", self.score_threshold)
        _check_unit_interval("nms_threshold", self.nms_threshold)
        if self.min_area < 0 or self.box_border < 0:
            raise InvalidParameterError("min_area and box_border must not be negative")

    @classmethod
    def fast(cls) -> "DetOptions":
        """Lower working resolution for throughput."""
        return cls(max_side_len=736, precision_mode=DetPrecisionMode.FAST)

    def with_max_side_len(self, length: int) -> "DetOptions":
        return replace(self, max_side_len=length)

    def with_score_threshold(self, threshold: float) -> "DetOptions":
        return replace(self, score_threshold=threshold)

    def with_unclip_ratio(self, ratio: float) -> "DetOptions":
        return replace(self, unclip_ratio=ratio)

    def with_min_area(self, area: int) -> "DetOptions":
        return replace(self, min_area=area)

    def with_box_border(self, border: int) -> "DetOptions":
        return replace(self, box_border=border)

    def with_merge_boxes(self, merge: bool, threshold: Optional[int] = None) -> "DetOptions":
        if threshold is None:
            return replace(self, merge_boxes=merge)
        return replace(self, merge_boxes=merge, merge_threshold=threshold)


@dataclass(frozen=True)
class RecOptions:
    """Configuration for text recognition stage."""
    target_height: int = 48  # Input height of the recognition network
    min_score: float = 0.3  # Per-character score floor
    punct_min_score: float = 0.1  # Per-character floor for punctuation
    batch_size: int = 8  # Images per inference call when batching
    enable_batch: bool = True

    def __post_init__(self):
        _check_positive("target_height", self.target_height)
        _check_positive("batch_size", self.batch_size)
        _check_unit_interval("min_score", self.min_score)
        _check_unit_interval("punct_min_score", self.punct_min_score)

    def with_target_height(self, height: int) -> "RecOptions":
        return replace(self, target_height=height)

    def with_min_score(self, score: float) -> "RecOptions":
        return replace(self, min_score=score)

    def with_punct_min_score(self, score: float) -> "RecOptions":
        return replace(self, punct_min_score=score)

    def with_batch_size(self, size: int) -> "RecOptions":
        return replace(self, batch_size=size)

    def with_batch(self, enable: bool) -> "RecOptions":
        return replace(self, enable_batch=enable)


@dataclass(frozen=True)
class OriOptions:
    """Configuration for orientation classification stage.

    Defaults describe a 4-class document classifier; ``textline()`` gives
    the 2-class (0/180) textline variant.
    """
    target_height: int = 224
    target_width: int = 224
    min_score: float = 0.5
    resize_shorter: int = 256  # Document mode: shorter side before center crop
    preprocess_mode: OriPreprocessMode = OriPreprocessMode.DOC
    class_angles: Tuple[int, ...] = (0, 90, 180, 270)

    def __post_init__(self):
        _check_positive("target_height", self.target_height)
        _check_positive("target_width", self.target_width)
        _check_positive("resize_shorter", self.resize_shorter)
        _check_unit_interval("min_score", self.min_score)
        # Lists are accepted for convenience, stored as tuples
        object.__setattr__(self, "class_angles", tuple(int(a) for a in self.class_angles))

    @classmethod
    def doc(cls) -> "OriOptions":
        return cls()

    @classmethod
    def textline(cls) -> "OriOptions":
        return cls(
            target_height=48,
            target_width=192,
            preprocess_mode=OriPreprocessMode.TEXTLINE,
            class_angles=(0, 180),
        )

    def with_min_score(self, score: float) -> "OriOptions":
        return replace(self, min_score=score)

    def with_class_angles(self, angles) -> "OriOptions":
        return replace(self, class_angles=tuple(angles))


@dataclass(frozen=True)
class OcrEngineConfig:
    """Top-level configuration consumed by ``OcrEngine``."""
    backend: Backend = Backend.CPU
    thread_count: int = 4  # worker threads and intra-op threads
    precision_mode: PrecisionMode = PrecisionMode.NORMAL
    det_options: DetOptions = field(default_factory=DetOptions)
    rec_options: RecOptions = field(default_factory=RecOptions)
    ori_options: OriOptions = field(default_factory=OriOptions)
    enable_parallel: bool = True
    min_result_confidence: float = 0.5
    ori_min_confidence: float = 0.5

    def __post_init__(self):
        _check_positive("thread_count", self.thread_count)
        _check_unit_interval("min_result_confidence", self.min_result_confidence)
        _check_unit_interval("ori_min_confidence", self.ori_min_confidence)

    @classmethod
    def fast(cls) -> "OcrEngineConfig":
        return cls(precision_mode=PrecisionMode.LOW, det_options=DetOptions.fast())

    @classmethod
    def gpu(cls) -> "OcrEngineConfig":
        if sys.platform == "darwin":
            return cls(backend=Backend.COREML)
        return cls(backend=Backend.CUDA)

    @classmethod
    def from_env(
        cls,
        base: Optional["OcrEngineConfig"] = None,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = "MEDIA_OCR_",
    ) -> "OcrEngineConfig":
        """Overlay ``MEDIA_OCR_*`` environment variables on ``base``.

        Recognized names (after the prefix): BACKEND, THREADS, PRECISION,
        PARALLEL, MIN_CONFIDENCE, ORI_MIN_CONFIDENCE.
        """
        config = base if base is not None else cls()
        env = os.environ if environ is None else environ
        changes = {}

        def lookup(name):
            value = env.get(prefix + name)
            return value.strip() if value is not None else None

        try:
            value = lookup("BACKEND")
            if value:
                changes["backend"] = Backend(value.lower())
            value = lookup("PRECISION")
            if value:
                changes["precision_mode"] = PrecisionMode(value.lower())
            value = lookup("THREADS")
            if value:
                changes["thread_count"] = int(value)
            value = lookup("MIN_CONFIDENCE")
            if value:
                changes["min_result_confidence"] = float(value)
            value = lookup("ORI_MIN_CONFIDENCE")
            if value:
                changes["ori_min_confidence"] = float(value)
        except ValueError as e:
            raise InvalidParameterError(f"Invalid {prefix}* environment value: {e}") from e

        value = lookup("PARALLEL")
        if value:
            lowered = value.lower()
            if lowered in ("1", "true", "yes", "on"):
                changes["enable_parallel"] = True
            elif lowered in ("0", "false", "no", "off"):
                changes["enable_parallel"] = False
            else:
                raise InvalidParameterError(f"Invalid {prefix}PARALLEL value: {value!r}")

        return replace(config, **changes) if changes else config

    def with_backend(self, backend: Backend) -> "OcrEngineConfig":
        return replace(self, backend=backend)

    def with_threads(self, threads: int) -> "OcrEngineConfig":
        return replace(self, thread_count=threads)

    def with_det_options(self, options: DetOptions) -> "OcrEngineConfig":
        return replace(self, det_options=options)

    def with_rec_options(self, options: RecOptions) -> "OcrEngineConfig":
        return replace(self, rec_options=options)

    def with_ori_options(self, options: OriOptions) -> "OcrEngineConfig":
        return replace(self, ori_options=options)

    def with_parallel(self, enable: bool) -> "OcrEngineConfig":
        return replace(self, enable_parallel=enable)

    def with_min_result_confidence(self, threshold: float) -> "OcrEngineConfig":
        return replace(self, min_result_confidence=threshold)

    def with_ori_min_confidence(self, threshold: float) -> "OcrEngineConfig":
        return replace(self, ori_min_confidence=threshold)

    def to_inference_config(self) -> InferenceConfig:
        return InferenceConfig(
            thread_count=self.thread_count,
            precision_mode=self.precision_mode,
            backend=self.backend,
        )
