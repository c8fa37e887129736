from __future__ import annotations

import os
import threading
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

import numpy as np
import numpy.typing as npt
import onnxruntime as ort
from torch import Tensor

from ..config import Settings
from ..logging import get_logger


class ModelNotFoundError(FileNotFoundError):
    pass


class NodeArg(Protocol):
    @property
    def name(self) -> str: ...


class OnnxSession(Protocol):
    """The slice of ``onnxruntime.InferenceSession`` the engine relies on."""

    def get_inputs(self) -> Sequence[NodeArg]: ...

    def get_outputs(self) -> Sequence[NodeArg]: ...

    def run(
        self, output_names: list[str] | None, input_feed: Mapping[str, npt.NDArray[np.float32]]
    ) -> Sequence[object]: ...


SessionFactory = Callable[[Path], OnnxSession]


def open_onnx_session(path: Path) -> OnnxSession:
    opts = ort.SessionOptions()
    # The engine's thread pool provides request parallelism
    opts.intra_op_num_threads = 1
    opts.inter_op_num_threads = 1
    return ort.InferenceSession(path.as_posix(), opts, providers=["CPUExecutionProvider"])


class InferenceEngine:
    """Process-wide ONNX session behind a bounded thread pool.

    The session is opened once by :meth:`load`, shared read-only by every
    worker thread, and released by :meth:`close`.
    """

    def __init__(self, settings: Settings, session_factory: SessionFactory | None = None) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._factory: SessionFactory = session_factory or open_onnx_session
        self._pool: ThreadPoolExecutor | None = _make_pool(settings)
        self._lock = threading.RLock()
        self._session: OnnxSession | None = None
        self._input_name: str | None = None
        self._output_name: str | None = None

    @property
    def ready(self) -> bool:
        return self._session is not None

    @property
    def input_name(self) -> str | None:
        return self._input_name

    @property
    def output_name(self) -> str | None:
        return self._output_name

    @property
    def n_classes(self) -> int:
        return int(self._settings.model.n_classes)

    @property
    def model_path(self) -> Path:
        return self._settings.model.path

    def load(self) -> None:
        path = self._settings.model.path
        if not path.exists():
            raise ModelNotFoundError(f"Model not found: {path}")
        session = self._factory(path)
        inp = _pick_name(session.get_inputs(), self._settings.model.input_name, "input")
        out = _pick_name(session.get_outputs(), self._settings.model.output_name, "output")
        with self._lock:
            if self._pool is None:
                self._pool = _make_pool(self._settings)
            self._session = session
            self._input_name = inp
            self._output_name = out
        self._logger.info("model_loaded path=%s input=%s output=%s", path.as_posix(), inp, out)

    def close(self) -> None:
        with self._lock:
            self._session = None
            pool = self._pool
            self._pool = None
        if pool is not None:
            pool.shutdown(wait=True, cancel_futures=True)
        self._logger.info("model_closed")

    def submit_scores(self, tensor: Tensor) -> Future[tuple[float, ...]]:
        with self._lock:
            pool = self._pool
        if pool is None:
            raise RuntimeError("Model not loaded")
        return pool.submit(self._scores_impl, tensor)

    def _scores_impl(self, tensor: Tensor) -> tuple[float, ...]:
        with self._lock:
            session = self._session
            inp = self._input_name
            out = self._output_name
        if session is None or inp is None or out is None:
            raise RuntimeError("Model not loaded")
        feed = {inp: tensor.detach().cpu().numpy().astype(np.float32, copy=False)}
        results = session.run([out], feed)
        if len(results) == 0:
            raise RuntimeError(f"model returned no value for output {out}")
        raw = np.asarray(results[0], dtype=np.float32).reshape(-1)
        return select_scores([float(v) for v in raw], self.n_classes)


def select_scores(raw: Sequence[float], n_classes: int) -> tuple[float, ...]:
    """Slice a raw output vector to the class scores.

    Exported models emit either ``[n]`` or ``[1, n]`` and some prepend extra
    values; the class scores are always the trailing ``n_classes`` entries.
    """
    if len(raw) < n_classes:
        raise RuntimeError(f"model output has {len(raw)} values, expected {n_classes}")
    if len(raw) == n_classes:
        return tuple(raw)
    return tuple(raw[len(raw) - n_classes :])


def _pick_name(args: Sequence[NodeArg], configured: str, kind: str) -> str:
    names = [a.name for a in args]
    if not names:
        raise RuntimeError(f"model declares no {kind}s")
    if configured:
        if configured not in names:
            raise RuntimeError(f"model has no {kind} named {configured}")
        return configured
    return names[0]


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")
