"""
Text Recognition Module - Stage 3 of OCR Pipeline

Recognizes text from cropped line images with a CTC network. Lines are
processed one at a time or stacked into zero-padded batches.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import InferenceConfig, RecOptions
from .errors import CharsetError, PostprocessError
from .onnx_base import InferenceSession, load_session
from .preprocess import NormalizeParams, preprocess_batch_for_rec, preprocess_for_rec
from .utils import to_bgr_array

logger = logging.getLogger(__name__)

CharsetSource = Union[str, Path, bytes, bytearray]

# Decoded with the lower ``punct_min_score`` floor
PUNCTUATIONS = frozenset(
    ",.!?;:\"'()[]{}-_/\\|@#$%&*+=~"
    "，。！？；：、「」『』（）【】《》—…·～"
)


def is_punctuation(ch: str) -> bool:
    return ch in PUNCTUATIONS


def parse_charset(data: bytes) -> List[str]:
    """Build the model charset from a dictionary file's bytes.

    Every character except line terminators is taken in file order. A space
    is added at index 0 (the CTC blank) and another at the end (padding).

    Raises:
        CharsetError: data is not UTF-8 or holds no characters
    """
    try:
        content = bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise CharsetError(f"UTF-8 decode error: {e}") from e

    charset = [" "]
    charset.extend(ch for ch in content if ch not in "\r\n")
    charset.append(" ")

    if len(charset) < 3:
        raise CharsetError("Charset too small")
    return charset


def load_charset(source: CharsetSource) -> List[str]:
    """Read a charset from a file path or from the file's bytes."""
    if isinstance(source, (bytes, bytearray)):
        return parse_charset(source)
    try:
        data = Path(source).read_bytes()
    except OSError as e:
        raise CharsetError(f"Cannot read charset file {source}: {e}") from e
    return parse_charset(data)


@dataclass
class RecognitionResult:
    """Decoded line: text, mean kept score, and (char, score) pairs."""
    text: str
    confidence: float
    char_scores: List[Tuple[str, float]] = field(default_factory=list)

    def is_valid(self, threshold: float) -> bool:
        return self.confidence >= threshold


class CTCLabelDecode:
    """Greedy CTC decoding for text recognition."""

    def __init__(self, charset: Sequence[str], min_score=0.3, punct_min_score=0.1):
        """Initialize CTC decoder.

        Args:
            charset: Characters by class index, blank at index 0
            min_score: Score floor for ordinary characters
            punct_min_score: Score floor for punctuation
        """
        self.character = list(charset)
        self.min_score = min_score
        self.punct_min_score = punct_min_score

    def __call__(self, preds: np.ndarray) -> RecognitionResult:
        """Decode one sample.

        Args:
            preds: [1, time, num_classes] or [time, num_classes]; only the
                first sample of a rank-3 array is read

        Returns:
            RecognitionResult
        """
        preds = np.asarray(preds)
        if preds.ndim == 3:
            preds = preds[0]
        elif preds.ndim != 2:
            raise PostprocessError(f"Invalid output shape: {list(preds.shape)}")

        if preds.shape[0] == 0 or preds.shape[1] == 0:
            return RecognitionResult("", 0.0, [])

        preds_idx = preds.argmax(axis=1)
        preds_prob = preds.max(axis=1)
        return self.decode(preds_idx, preds_prob)

    def decode(self, text_index, text_prob) -> RecognitionResult:
        """Collapse repeats, drop blanks and low-scoring characters.

        ``text_index`` comes from numpy ``argmax``, so a time step with tied
        top scores resolves to the lowest tied class index.
        """
        char_scores = []
        prev_idx = 0

        for idx, prob in zip(text_index.tolist(), text_prob.tolist()):
            if idx != 0 and idx != prev_idx and idx < len(self.character):
                ch = self.character[idx]
                threshold = self.punct_min_score if is_punctuation(ch) else self.min_score
                if prob >= threshold:
                    char_scores.append((ch, float(prob)))
            prev_idx = idx

        if char_scores:
            confidence = sum(score for _, score in char_scores) / len(char_scores)
        else:
            confidence = 0.0

        text = "".join(ch for ch, _ in char_scores)
        return RecognitionResult(text, confidence, char_scores)


class RecognitionModel:
    """Text recognition module with batch processing.

    Like ``DetectionModel`` it only reads its own state during inference and
    can be shared between threads.
    """

    def __init__(
        self,
        session: Union[str, Path, bytes, InferenceSession],
        charset: CharsetSource,
        options: Optional[RecOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ):
        """Initialize text recognizer.

        Args:
            session: Recognition ONNX model (path or bytes) or a loaded session
            charset: Character dictionary, as a file path or its bytes
            options: Recognition options (uses defaults if None)
            inference_config: Session settings used when loading a model
        """
        self.options = options if options is not None else RecOptions()
        self.charset = load_charset(charset)
        self.session = load_session(session, inference_config)
        self.normalize_params = NormalizeParams.paddle_rec()

        self.postprocess_op = CTCLabelDecode(
            self.charset,
            min_score=self.options.min_score,
            punct_min_score=self.options.punct_min_score,
        )
        logger.info("Recognition model ready, charset size %d", len(self.charset))

    @classmethod
    def from_file(
        cls,
        model_path: Union[str, Path],
        charset_path: Union[str, Path],
        options: Optional[RecOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "RecognitionModel":
        return cls(Path(model_path), Path(charset_path), options, inference_config)

    @classmethod
    def from_bytes(
        cls,
        model_bytes: bytes,
        charset_bytes: bytes,
        options: Optional[RecOptions] = None,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "RecognitionModel":
        return cls(bytes(model_bytes), bytes(charset_bytes), options, inference_config)

    def charset_size(self) -> int:
        """Number of classes, blank and padding included."""
        return len(self.charset)

    def get_char(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.charset):
            return self.charset[index]
        return None

    def input_shape(self) -> Tuple[int, ...]:
        return self.session.input_shape()

    def output_shape(self) -> Tuple[int, ...]:
        return self.session.output_shape()

    def run_raw(self, tensor: np.ndarray) -> np.ndarray:
        """Run the network on a prepared [N, 3, H, W] tensor."""
        return self.session.run_dynamic(tensor)

    def recognize(self, image) -> RecognitionResult:
        """Recognize a single text line image."""
        image = to_bgr_array(image)
        tensor = preprocess_for_rec(image, self.options.target_height, self.normalize_params)
        return self.decode_output(self.run_raw(tensor))

    def recognize_text(self, image) -> str:
        return self.recognize(image).text

    def recognize_batch(self, images: Sequence) -> List[RecognitionResult]:
        """Recognize several line images, one result per image in order.

        Up to two images, or batching disabled, runs them one by one.
        Otherwise images go through the network ``batch_size`` at a time.
        """
        if len(images) == 0:
            return []

        if len(images) <= 2 or not self.options.enable_batch:
            return [self.recognize(img) for img in images]

        batch_size = self.options.batch_size
        results = []
        for start in range(0, len(images), batch_size):
            results.extend(self._recognize_chunk(images[start:start + batch_size]))
        return results

    def _recognize_chunk(self, images: Sequence) -> List[RecognitionResult]:
        if len(images) == 1:
            return [self.recognize(images[0])]

        batch = preprocess_batch_for_rec(
            [to_bgr_array(img) for img in images],
            self.options.target_height,
            self.normalize_params,
        )
        output = np.asarray(self.run_raw(batch))
        if output.ndim != 3:
            raise PostprocessError(
                f"Batch inference output shape error: {list(output.shape)}"
            )

        logger.debug("Recognized batch of %d lines", output.shape[0])
        return [self.decode_output(output[i]) for i in range(output.shape[0])]

    def decode_output(self, output: np.ndarray) -> RecognitionResult:
        return self.postprocess_op(output)
