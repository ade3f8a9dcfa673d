"""Inference backends: one ONNX Runtime execution-provider family per device.

The backend is chosen once, when the session is loaded. A session is bound
to exactly one device family for its whole life; switching devices means
loading a new session.
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

import numpy as np
import onnxruntime
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from waifutag.ml.errors import BackendExecutionError, ModelLoadError, ShapeMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from waifutag.config import Settings
    from waifutag.ml.variants import VariantConfig

logger = logging.getLogger(__name__)

ProviderList = list[str | tuple[str, dict[str, object]]]


class Device(StrEnum):
    CPU = "cpu"
    CUDA = "cuda"
    TENSORRT = "tensorrt"
    COREML = "coreml"


@dataclass(frozen=True)
class DeviceSelector:
    """Which device family to run on, and which card for GPU families."""

    device: Device = Device.CPU
    device_id: int = 0

    @classmethod
    def parse(cls, value: str) -> DeviceSelector:
        """Parse ``"cpu"``, ``"cuda"`` or ``"cuda:1"`` style selectors."""
        name, _, index = value.strip().lower().partition(":")
        try:
            device = Device(name)
        except ValueError:
            raise ValueError(f"Unknown device {name!r}; expected one of {[d.value for d in Device]}") from None
        if not index:
            return cls(device=device)
        if not index.isdigit():
            raise ValueError(f"Invalid device index in {value!r}")
        return cls(device=device, device_id=int(index))

    def __str__(self) -> str:
        if self.device is Device.CPU:
            return self.device.value
        return f"{self.device.value}:{self.device_id}"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class ExecutionBackend:
    """One device family. Subclasses declare their providers and capabilities."""

    device: ClassVar[Device]
    provider: ClassVar[str]
    # Whether InferenceSession.run may be called from several threads at once.
    concurrent_execution: ClassVar[bool] = True

    def __init__(self, selector: DeviceSelector, settings: Settings | None = None) -> None:
        self.selector = selector
        self._settings = settings

    def providers(self) -> ProviderList:
        return [self.provider]

    def session_options(self) -> SessionOptions:
        opts = SessionOptions()
        if self._settings is not None:
            opts.intra_op_num_threads = self._settings.intra_op_threads
            opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_ALL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts

    def is_available(self) -> bool:
        return self.provider in onnxruntime.get_available_providers()

    def load(self, model_path: Path | str, config: VariantConfig) -> BackendSession:
        """Create a session for ``model_path`` on this device.

        Raises:
            ModelLoadError: If the file is missing, the provider is not part
                of this ONNX Runtime build, or the session cannot be created
                on the requested provider.
        """
        device_name = str(self.selector)
        path = Path(model_path)
        if not path.is_file():
            raise ModelLoadError(path, device_name, "model file not found")
        if not self.is_available():
            raise ModelLoadError(
                path,
                device_name,
                f"{self.provider} is not available (have: {', '.join(onnxruntime.get_available_providers())})",
            )

        try:
            session = InferenceSession(
                str(path),
                sess_options=self.session_options(),
                providers=self.providers(),
            )
        except Exception as exc:  # onnxruntime raises its own pybind exception types
            raise ModelLoadError(path, device_name, str(exc)) from exc

        active = session.get_providers()
        if not active or active[0] != self.provider:
            raise ModelLoadError(path, device_name, f"runtime fell back to {active} instead of {self.provider}")

        logger.info("Loaded %s on %s (providers=%s)", path.name, device_name, active)
        return BackendSession(session, config, self)


class CpuBackend(ExecutionBackend):
    device = Device.CPU
    provider = "CPUExecutionProvider"


class CudaBackend(ExecutionBackend):
    device = Device.CUDA
    provider = "CUDAExecutionProvider"

    def providers(self) -> ProviderList:
        options: dict[str, object] = {
            "device_id": self.selector.device_id,
            "arena_extend_strategy": "kSameAsRequested",
        }
        if self._settings is not None and self._settings.gpu_mem_limit:
            options["gpu_mem_limit"] = self._settings.gpu_mem_limit
        # CPU only picks up the ops CUDA has no kernel for.
        return [(self.provider, options), "CPUExecutionProvider"]


class TensorRTBackend(ExecutionBackend):
    device = Device.TENSORRT
    provider = "TensorrtExecutionProvider"
    concurrent_execution = False

    def providers(self) -> ProviderList:
        device_id = self.selector.device_id
        trt_options: dict[str, object] = {"device_id": device_id}
        if self._settings is not None:
            trt_options["trt_engine_cache_enable"] = True
            trt_options["trt_engine_cache_path"] = str(Path(self._settings.models_dir) / "trt-cache")
        return [
            (self.provider, trt_options),
            ("CUDAExecutionProvider", {"device_id": device_id}),
            "CPUExecutionProvider",
        ]


class CoreMLBackend(ExecutionBackend):
    device = Device.COREML
    provider = "CoreMLExecutionProvider"
    concurrent_execution = False

    def providers(self) -> ProviderList:
        return [self.provider, "CPUExecutionProvider"]


BACKENDS: dict[Device, type[ExecutionBackend]] = {
    Device.CPU: CpuBackend,
    Device.CUDA: CudaBackend,
    Device.TENSORRT: TensorRTBackend,
    Device.COREML: CoreMLBackend,
}


def get_backend(selector: DeviceSelector, settings: Settings | None = None) -> ExecutionBackend:
    return BACKENDS[selector.device](selector, settings)


def load(
    model_path: Path | str,
    config: VariantConfig,
    selector: DeviceSelector | None = None,
    settings: Settings | None = None,
) -> BackendSession:
    """Load ``model_path`` on the backend picked by ``selector``."""
    return get_backend(selector or DeviceSelector(), settings).load(model_path, config)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class BackendSession:
    """A loaded graph bound to one device.

    Read-only after construction apart from ``close()``. Backends that are
    not reentrant get their ``run`` calls serialized through a lock.
    """

    def __init__(self, session: InferenceSession, config: VariantConfig, backend: ExecutionBackend) -> None:
        self._session: InferenceSession | None = session
        self._config = config
        self._backend = backend
        self._device_name = str(backend.selector)

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._input_shape: tuple[int | str | None, ...] = tuple(model_input.shape)
        outputs = session.get_outputs()
        self._output_name: str = outputs[0].name
        self._output_shape: tuple[int | str | None, ...] = tuple(outputs[0].shape)

        self._run_lock = nullcontext() if backend.concurrent_execution else threading.Lock()
        self._close_lock = threading.Lock()

    @property
    def device(self) -> Device:
        return self._backend.device

    @property
    def device_name(self) -> str:
        return self._device_name

    @property
    def input_shape(self) -> tuple[int | str | None, ...]:
        return self._input_shape

    @property
    def output_width(self) -> int | None:
        """Number of output columns, if the graph declares it statically."""
        width = self._output_shape[-1] if self._output_shape else None
        return width if isinstance(width, int) else None

    @property
    def closed(self) -> bool:
        return self._session is None

    def execute(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run a single-image tensor and return its 1-D score vector."""
        if tensor.ndim == 0 or tensor.shape[0] != 1:
            raise ShapeMismatchError(self._input_shape, tuple(tensor.shape), "execute expects a batch of one")
        return self.execute_batch(tensor)[0]

    def execute_batch(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run an ``(N, ...)`` tensor and return ``(N, num_labels)`` scores.

        Raises:
            ShapeMismatchError: If the tensor disagrees with the graph input.
            BackendExecutionError: On any runtime failure, or if closed.
        """
        self._check_input(tensor)
        session = self._session
        if session is None:
            raise BackendExecutionError(self._device_name, "session is closed")

        try:
            with self._run_lock:
                outputs = session.run([self._output_name], {self._input_name: tensor})
        except Exception as exc:  # onnxruntime raises its own pybind exception types
            raise BackendExecutionError(self._device_name, str(exc)) from exc

        scores = np.asarray(outputs[0], dtype=np.float32)
        if scores.ndim != 2 or scores.shape[0] != tensor.shape[0]:
            raise BackendExecutionError(
                self._device_name,
                f"unexpected output shape {scores.shape} for batch of {tensor.shape[0]}",
            )
        if self._config.apply_sigmoid:
            scores = 1.0 / (1.0 + np.exp(-scores))
        return scores

    def close(self) -> None:
        """Release the underlying session. Safe to call more than once."""
        with self._close_lock:
            if self._session is None:
                return
            self._session = None
        logger.info("Released session on %s", self._device_name)

    def __enter__(self) -> BackendSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_input(self, tensor: NDArray[np.float32]) -> None:
        actual = tuple(int(d) for d in tensor.shape)
        if tensor.dtype != np.float32:
            raise ShapeMismatchError(self._input_shape, actual, f"dtype {tensor.dtype}, expected float32")
        if len(actual) != len(self._input_shape):
            raise ShapeMismatchError(self._input_shape, actual)
        # Symbolic dims (e.g. "batch_size") and None match anything.
        for expected_dim, actual_dim in zip(self._input_shape, actual, strict=True):
            if isinstance(expected_dim, int) and expected_dim > 0 and expected_dim != actual_dim:
                raise ShapeMismatchError(self._input_shape, actual)
