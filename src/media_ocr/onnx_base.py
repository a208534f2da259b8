"""ONNX Runtime inference sessions with hardware acceleration support.

Models only depend on the narrow ``InferenceSession`` protocol below, so any
object with ``run``/``run_dynamic`` (a session pool, a test double) can stand
in for the onnxruntime-backed ``OnnxInferenceEngine``.
"""

import logging
import queue
import traceback
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple, Union

import numpy as np
import onnxruntime
from onnxruntime import GraphOptimizationLevel, SessionOptions

from .config import Backend, InferenceConfig, PrecisionMode
from .errors import (
    InferenceError,
    InvalidParameterError,
    ModelLoadError,
    ShapeMismatchError,
)

logger = logging.getLogger(__name__)

# Sentinel reported for axes whose size is only known at run time
DYNAMIC_DIM = -1

ModelSource = Union[str, Path, bytes, bytearray]

_PROVIDER_NAMES = {
    Backend.TENSORRT: "TensorrtExecutionProvider",
    Backend.CUDA: "CUDAExecutionProvider",
    Backend.COREML: "CoreMLExecutionProvider",
    Backend.DIRECTML: "DmlExecutionProvider",
    Backend.OPENVINO: "OpenVINOExecutionProvider",
    Backend.ROCM: "ROCMExecutionProvider",
}


class InferenceSession(Protocol):
    """Capability every loaded model must provide."""

    def input_shape(self) -> Tuple[int, ...]:
        ...

    def output_shape(self) -> Tuple[int, ...]:
        ...

    def run(self, tensor: np.ndarray) -> np.ndarray:
        ...

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        ...


def _normalize_shape(shape) -> Tuple[int, ...]:
    """Map onnxruntime shape entries (int, None or symbolic str) to ints."""
    return tuple(
        int(d) if isinstance(d, (int, np.integer)) and d >= 0 else DYNAMIC_DIM
        for d in shape
    )


class OnnxInferenceEngine:
    """Single onnxruntime session exposing the ``InferenceSession`` protocol.

    ``onnxruntime.InferenceSession.run`` is safe to call from several threads,
    so one engine can serve concurrent ``run``/``run_dynamic`` calls.
    """

    def __init__(
        self,
        model: ModelSource,
        config: Optional[InferenceConfig] = None,
    ):
        """Initialize ONNX Runtime session.

        Args:
            model: Path to an ONNX model file, or the model bytes
            config: Thread count, precision and backend (defaults if None)
        """
        self.config = config if config is not None else InferenceConfig()

        if isinstance(model, (bytes, bytearray)):
            if len(model) == 0:
                raise InvalidParameterError("Model data is empty")
            source = bytes(model)
            self.model_path = None
        else:
            self.model_path = Path(model)
            self.verify_exist(self.model_path)
            source = str(self.model_path)

        self._init_sess_opt()
        self._init_providers()

        try:
            self.session = onnxruntime.InferenceSession(
                source,
                sess_options=self.sess_opt,
                providers=self.providers,
            )
        except Exception as e:
            raise ModelLoadError(f"Failed to load model {self.model_path or '<bytes>'}: {e}") from e

        self.input_names = [node.name for node in self.session.get_inputs()]
        self.output_names = [node.name for node in self.session.get_outputs()]
        self._input_shape = _normalize_shape(self.session.get_inputs()[0].shape)
        self._output_shape = _normalize_shape(self.session.get_outputs()[0].shape)

        logger.info(
            "Loaded model %s (input %s, output %s, providers %s)",
            self.model_path or "<bytes>",
            list(self._input_shape),
            list(self._output_shape),
            self.session.get_providers(),
        )

    @classmethod
    def from_file(
        cls, model_path: Union[str, Path], config: Optional[InferenceConfig] = None
    ) -> "OnnxInferenceEngine":
        return cls(Path(model_path), config)

    @classmethod
    def from_bytes(
        cls, model_bytes: bytes, config: Optional[InferenceConfig] = None
    ) -> "OnnxInferenceEngine":
        return cls(bytes(model_bytes), config)

    def _init_sess_opt(self):
        """Initialize session options."""
        self.sess_opt = SessionOptions()
        self.sess_opt.log_severity_level = 4
        self.sess_opt.enable_cpu_mem_arena = False

        if self.config.thread_count != -1:
            self.sess_opt.intra_op_num_threads = self.config.thread_count

        if self.config.precision_mode == PrecisionMode.HIGH:
            # Skip layout/fusion rewrites that can shift numerics
            self.sess_opt.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_BASIC
        else:
            self.sess_opt.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_ALL

    def _init_providers(self):
        """Build the execution provider list, CPU always last as fallback."""
        available_providers = onnxruntime.get_available_providers()
        self.providers: List = []

        backend = self.config.backend
        if backend != Backend.CPU:
            name = _PROVIDER_NAMES[backend]
            if name in available_providers:
                options = {}
                if backend == Backend.TENSORRT and self.config.precision_mode == PrecisionMode.LOW:
                    options["trt_fp16_enable"] = True
                elif backend == Backend.CUDA:
                    options["cudnn_conv_algo_search"] = "DEFAULT"
                self.providers.append((name, options))
                # TensorRT falls back to CUDA for unsupported subgraphs
                if backend == Backend.TENSORRT and "CUDAExecutionProvider" in available_providers:
                    self.providers.append(("CUDAExecutionProvider", {}))
            else:
                logger.warning(
                    "%s is not available in this onnxruntime build, using CPU", name
                )

        self.providers.append(("CPUExecutionProvider", {"arena_extend_strategy": "kSameAsRequested"}))

    def input_shape(self) -> Tuple[int, ...]:
        return self._input_shape

    def output_shape(self) -> Tuple[int, ...]:
        return self._output_shape

    def has_dynamic_shape(self) -> bool:
        return DYNAMIC_DIM in self._input_shape or DYNAMIC_DIM in self._output_shape

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Run a statically shaped model; the input must match its declared shape."""
        expected = self._input_shape
        got = tuple(tensor.shape)
        if len(expected) != len(got) or any(
            e != DYNAMIC_DIM and e != g for e, g in zip(expected, got)
        ):
            raise ShapeMismatchError(expected, got)
        return self._execute(tensor)

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        """Run a model whose output shape follows the input size."""
        return self._execute(tensor)

    def _execute(self, tensor: np.ndarray) -> np.ndarray:
        input_feed = {self.input_names[0]: np.ascontiguousarray(tensor, dtype=np.float32)}
        try:
            outputs = self.session.run(self.output_names[:1], input_feed)
        except Exception as e:
            error_info = traceback.format_exc()
            raise InferenceError(error_info) from e
        return np.asarray(outputs[0], dtype=np.float32)

    @staticmethod
    def verify_exist(model_path: Path):
        """Verify that model file exists."""
        if not model_path.exists():
            raise ModelLoadError(f"{model_path} does not exist!")
        if not model_path.is_file():
            raise ModelLoadError(f"{model_path} must be a file")


class SessionPool:
    """Fixed set of pre-warmed sessions handed out one call at a time.

    For backends that cannot run one session from several threads: each
    call checks a handle out of a FIFO queue (round-robin reuse) and puts
    it back when done, so no handle ever runs two calls at once.
    """

    def __init__(self, factory: Callable[[], InferenceSession], size: int):
        if size < 1:
            raise InvalidParameterError("Pool size cannot be 0")

        self._sessions: List[InferenceSession] = [factory() for _ in range(size)]
        self._idle: "queue.Queue[InferenceSession]" = queue.Queue()
        for session in self._sessions:
            self._idle.put(session)

    @classmethod
    def from_source(
        cls,
        model: ModelSource,
        size: int,
        config: Optional[InferenceConfig] = None,
    ) -> "SessionPool":
        if isinstance(model, (str, Path)):
            # Read once so every handle is built from identical bytes
            path = Path(model)
            OnnxInferenceEngine.verify_exist(path)
            model = path.read_bytes()
        return cls(lambda: OnnxInferenceEngine(model, config), size)

    @property
    def size(self) -> int:
        return len(self._sessions)

    def available(self) -> int:
        return self._idle.qsize()

    def input_shape(self) -> Tuple[int, ...]:
        return self._sessions[0].input_shape()

    def output_shape(self) -> Tuple[int, ...]:
        return self._sessions[0].output_shape()

    def run(self, tensor: np.ndarray) -> np.ndarray:
        return self._with_session(lambda s: s.run(tensor))

    def run_dynamic(self, tensor: np.ndarray) -> np.ndarray:
        return self._with_session(lambda s: s.run_dynamic(tensor))

    def _with_session(self, call):
        session = self._idle.get()
        try:
            return call(session)
        finally:
            self._idle.put(session)


def load_session(
    source: Union[ModelSource, InferenceSession],
    config: Optional[InferenceConfig] = None,
) -> InferenceSession:
    """Turn a path, byte string or ready session into an ``InferenceSession``."""
    if isinstance(source, (str, Path, bytes, bytearray)):
        return OnnxInferenceEngine(source, config)
    if hasattr(source, "run_dynamic"):
        return source
    raise InvalidParameterError(
        f"Unsupported model source type: {type(source).__name__}"
    )

