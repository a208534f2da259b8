"""
Embeddable OCR engine on ONNX Runtime

Stages:
- DetectionModel: Finds text regions (DB probability map + unclip)
- OrientationModel: Optional whole-image rotation classifier
- RecognitionModel: Converts text line images to strings (greedy CTC)

High-level interface:
- OcrEngine: Complete pipeline (orientation + detection + recognition)
- ocr_file: One-shot helper for an image on disk
"""

from .config import (
    Backend,
    DetOptions,
    DetPrecisionMode,
    InferenceConfig,
    OcrEngineConfig,
    OriOptions,
    OriPreprocessMode,
    PrecisionMode,
    RecOptions,
)
from .errors import (
    CharsetError,
    InferenceError,
    InvalidParameterError,
    ModelLoadError,
    NotInitializedError,
    OcrError,
    PostprocessError,
    PreprocessError,
    ShapeMismatchError,
)
from .onnx_base import DYNAMIC_DIM, InferenceSession, OnnxInferenceEngine, SessionPool
from .pipeline import DetOnlyEngine, OcrEngine, OcrResult, RecOnlyEngine, ocr_file
from .postprocess import (
    TextBox,
    compute_iou,
    detect_text_traditional,
    group_boxes_by_line,
    merge_adjacent_boxes,
    merge_multi_scale_results,
    nms,
    sort_boxes_by_reading_order,
)
from .text_classifier import OrientationModel, OrientationResult
from .text_detector import DetectionModel
from .text_recognizer import RecognitionModel, RecognitionResult
from .utils import load_image

__version__ = "0.1.0"


def version() -> str:
    return __version__


__all__ = [
    'Backend',
    'DetOptions',
    'DetPrecisionMode',
    'InferenceConfig',
    'OcrEngineConfig',
    'OriOptions',
    'OriPreprocessMode',
    'PrecisionMode',
    'RecOptions',
    'CharsetError',
    'InferenceError',
    'InvalidParameterError',
    'ModelLoadError',
    'NotInitializedError',
    'OcrError',
    'PostprocessError',
    'PreprocessError',
    'ShapeMismatchError',
    'DYNAMIC_DIM',
    'InferenceSession',
    'OnnxInferenceEngine',
    'SessionPool',
    'DetOnlyEngine',
    'OcrEngine',
    'OcrResult',
    'RecOnlyEngine',
    'ocr_file',
    'TextBox',
    'compute_iou',
    'detect_text_traditional',
    'group_boxes_by_line',
    'merge_adjacent_boxes',
    'merge_multi_scale_results',
    'nms',
    'sort_boxes_by_reading_order',
    'OrientationModel',
    'OrientationResult',
    'DetectionModel',
    'RecognitionModel',
    'RecognitionResult',
    'load_image',
    'version',
]
