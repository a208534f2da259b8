from __future__ import annotations

import threading

import numpy as np
import pytest

from media_ocr.errors import InferenceError

LOWERCASE_CHARSET = "\n".join("abcdefghijklmnopqrstuvwxyz").encode("utf-8")


class DarkMaskDetSession:
    """Detection stand-in: probability 1.0 wherever the input pixel is dark.

    Works on the normalized tensor, so stride padding (0.0) reads as
    background just like white pixels do.
    """

    def __init__(self) -> None:
        self.input_shapes: list[tuple[int, ...]] = []

    def input_shape(self) -> tuple[int, ...]:
        return (1, 3, -1, -1)

    def output_shape(self) -> tuple[int, ...]:
        return (1, 1, -1, -1)

    def run(self, tensor: np.ndarray) -> np.ndarray:
        return self.run_dynamic(tensor)

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        self.input_shapes.append(tuple(tensor.shape))
        dark = tensor.mean(axis=1, keepdims=True) < -0.5
        return dark.astype(np.float32)


class ColumnCodeRecSession:
    """Recognition stand-in emitting one time step per 8-pixel column block.

    The darkest value in a block picks the class; light blocks and padding
    decode as blank. The winning class always scores ``score``.
    """

    def __init__(self, num_classes: int = 28, score: float = 0.9) -> None:
        self.num_classes = num_classes
        self.score = score
        self.batch_sizes: list[int] = []
        self._lock = threading.Lock()

    def input_shape(self) -> tuple[int, ...]:
        return (-1, 3, 48, -1)

    def output_shape(self) -> tuple[int, ...]:
        return (-1, -1, self.num_classes)

    def run(self, tensor: np.ndarray) -> np.ndarray:
        return self.run_dynamic(tensor)

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        with self._lock:
            self.batch_sizes.append(tensor.shape[0])
        n, _, _, width = tensor.shape
        steps = width // 8
        gray = tensor.mean(axis=1)

        rest = (1.0 - self.score) / (self.num_classes - 1)
        out = np.full((n, steps, self.num_classes), rest, dtype=np.float32)
        for i in range(n):
            for t in range(steps):
                darkest = float(gray[i, :, t * 8:(t + 1) * 8].min())
                if darkest < -0.2:
                    cls = min(1 + int(round((darkest + 1.0) * 10)), self.num_classes - 1)
                else:
                    cls = 0
                out[i, t, cls] = self.score
        return out


class FixedOutputSession:
    """Returns the same array for every call and records the inputs."""

    def __init__(self, output) -> None:
        self.output = np.asarray(output, dtype=np.float32)
        self.inputs: list[np.ndarray] = []

    def input_shape(self) -> tuple[int, ...]:
        return (1, 3, -1, -1)

    def output_shape(self) -> tuple[int, ...]:
        return tuple(self.output.shape)

    def run(self, tensor: np.ndarray) -> np.ndarray:
        return self.run_dynamic(tensor)

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        self.inputs.append(tensor)
        return self.output


class FailingSession:
    """Raises on call number ``fail_on`` (1-based), otherwise delegates."""

    def __init__(self, inner=None, fail_on: int = 1) -> None:
        self.inner = inner
        self.fail_on = fail_on
        self.calls = 0
        self._lock = threading.Lock()

    def input_shape(self) -> tuple[int, ...]:
        return (1, 3, -1, -1)

    def output_shape(self) -> tuple[int, ...]:
        return (1, -1)

    def run(self, tensor: np.ndarray) -> np.ndarray:
        return self.run_dynamic(tensor)

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        with self._lock:
            self.calls += 1
            call = self.calls
        if call >= self.fail_on or self.inner is None:
            raise InferenceError(f"backend failure on call {call}")
        return self.inner.run_dynamic(tensor)


def make_page(bars, height: int = 120, width: int = 400) -> np.ndarray:
    """White BGR page with filled rectangles ``(x, y, w, h, gray)``."""
    page = np.full((height, width, 3), 255, dtype=np.uint8)
    for x, y, w, h, gray in bars:
        page[y:y + h, x:x + w] = gray
    return page


# Six separated bars, each with its own gray level
PAGE_BARS = [
    (20, 20, 40, 20, 0),
    (100, 20, 70, 20, 15),
    (220, 20, 100, 20, 30),
    (20, 70, 30, 20, 45),
    (100, 70, 50, 20, 60),
    (200, 70, 60, 20, 75),
]


@pytest.fixture
def charset_bytes() -> bytes:
    return LOWERCASE_CHARSET


@pytest.fixture
def det_session() -> DarkMaskDetSession:
    return DarkMaskDetSession()


@pytest.fixture
def rec_session() -> ColumnCodeRecSession:
    return ColumnCodeRecSession()


@pytest.fixture
def page() -> np.ndarray:
    return make_page(PAGE_BARS)
