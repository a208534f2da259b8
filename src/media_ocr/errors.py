"""Exception hierarchy for the OCR engine."""

from typing import Sequence


class OcrError(Exception):
    """Base class for every error raised by media_ocr."""
    pass


class ModelLoadError(OcrError):
    """A model file or byte buffer could not be turned into an inference session."""
    pass


class InvalidParameterError(OcrError):
    """An option or argument is out of its valid range."""
    pass


class ShapeMismatchError(OcrError):
    """Input tensor shape disagrees with a statically shaped model."""

    def __init__(self, expected: Sequence[int], got: Sequence[int]):
        self.expected = tuple(expected)
        self.got = tuple(got)
        super().__init__(f"Shape mismatch: expected {list(self.expected)}, got {list(self.got)}")


class InferenceError(OcrError):
    """The inference backend failed while running a tensor."""
    pass


class PreprocessError(OcrError):
    """An image could not be decoded, converted or resized."""
    pass


class PostprocessError(OcrError):
    """A model output could not be interpreted."""
    pass


class CharsetError(OcrError):
    """The recognition charset is not valid UTF-8 or is empty."""
    pass


class NotInitializedError(OcrError):
    """An optional feature was requested without its model."""
    pass
