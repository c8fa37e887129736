from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path

import numpy as np
import numpy.typing as npt
import pytest
import torch

from digit_lab.config import AppConfig, ModelConfig, Settings
from digit_lab.inference.engine import (
    InferenceEngine,
    ModelNotFoundError,
    open_onnx_session,
    select_scores,
)


class _Arg:
    def __init__(self, name: str) -> None:
        self.name = name


class _FakeSession:
    def __init__(
        self,
        output: Sequence[float],
        inputs: Sequence[str] = ("Input3",),
        outputs: Sequence[str] = ("Plus214_Output_0",),
    ) -> None:
        self._output = list(output)
        self._inputs = list(inputs)
        self._outputs = list(outputs)
        self.feeds: list[dict[str, npt.NDArray[np.float32]]] = []
        self.requested: list[list[str] | None] = []

    def get_inputs(self) -> list[_Arg]:
        return [_Arg(n) for n in self._inputs]

    def get_outputs(self) -> list[_Arg]:
        return [_Arg(n) for n in self._outputs]

    def run(
        self, output_names: list[str] | None, input_feed: Mapping[str, npt.NDArray[np.float32]]
    ) -> list[object]:
        self.requested.append(output_names)
        self.feeds.append(dict(input_feed))
        return [np.asarray([self._output], dtype=np.float32)]


def _settings(path: Path, **model: str) -> Settings:
    return replace(
        Settings.defaults(),
        app=AppConfig(threads=1),
        model=ModelConfig(path=path, **model),
    )


def _model_file(tmp_path: Path) -> Path:
    p = tmp_path / "model.onnx"
    p.write_bytes(b"stub")
    return p


def test_select_scores_takes_trailing_classes() -> None:
    assert select_scores([float(i) for i in range(10)], 10) == tuple(float(i) for i in range(10))
    assert select_scores([9.0, 9.0] + [float(i) for i in range(10)], 10)[0] == 0.0
    with pytest.raises(RuntimeError):
        select_scores([1.0, 2.0], 10)


def test_submit_before_load_fails(tmp_path: Path) -> None:
    eng = InferenceEngine(_settings(_model_file(tmp_path)))
    assert not eng.ready
    fut = eng.submit_scores(torch.zeros((1, 1, 28, 28)))
    with pytest.raises(RuntimeError, match="not loaded"):
        fut.result(timeout=5)
    eng.close()


def test_load_missing_model_raises(tmp_path: Path) -> None:
    eng = InferenceEngine(_settings(tmp_path / "missing.onnx"))
    with pytest.raises(ModelNotFoundError):
        eng.load()
    assert not eng.ready
    eng.close()


def test_scores_with_fake_session_use_first_names(tmp_path: Path) -> None:
    raw = [0.5, 0.25] + [float(i) for i in range(10)]
    sess = _FakeSession(raw, inputs=("Input3", "extra"), outputs=("Plus214_Output_0", "aux"))
    eng = InferenceEngine(_settings(_model_file(tmp_path)), session_factory=lambda _p: sess)
    eng.load()
    assert eng.ready and eng.input_name == "Input3" and eng.output_name == "Plus214_Output_0"

    t = torch.full((1, 1, 28, 28), 0.5)
    scores = eng.submit_scores(t).result(timeout=5)
    assert scores == tuple(float(i) for i in range(10))
    assert sess.requested == [["Plus214_Output_0"]]
    feed = sess.feeds[0]["Input3"]
    assert feed.dtype == np.float32 and feed.shape == (1, 1, 28, 28)
    eng.close()
    assert not eng.ready


def test_configured_names_override_and_validate(tmp_path: Path) -> None:
    sess = _FakeSession([0.0] * 10, inputs=("a", "b"), outputs=("c", "d"))
    s = _settings(_model_file(tmp_path), input_name="b", output_name="d")
    eng = InferenceEngine(s, session_factory=lambda _p: sess)
    eng.load()
    assert eng.input_name == "b" and eng.output_name == "d"
    eng.close()

    bad = _settings(_model_file(tmp_path), input_name="nope")
    eng2 = InferenceEngine(bad, session_factory=lambda _p: sess)
    with pytest.raises(RuntimeError, match="no input named nope"):
        eng2.load()
    eng2.close()


def test_session_without_inputs_is_rejected(tmp_path: Path) -> None:
    sess = _FakeSession([0.0] * 10, inputs=())
    eng = InferenceEngine(_settings(_model_file(tmp_path)), session_factory=lambda _p: sess)
    with pytest.raises(RuntimeError, match="declares no inputs"):
        eng.load()
    eng.close()


def test_short_model_output_fails_the_request(tmp_path: Path) -> None:
    sess = _FakeSession([1.0, 2.0, 3.0])
    eng = InferenceEngine(_settings(_model_file(tmp_path)), session_factory=lambda _p: sess)
    eng.load()
    with pytest.raises(RuntimeError, match="expected 10"):
        eng.submit_scores(torch.zeros((1, 1, 28, 28))).result(timeout=5)
    eng.close()


def test_real_onnx_graph_roundtrip(tmp_path: Path) -> None:
    onnx = pytest.importorskip("onnx")
    from onnx import TensorProto, helper, numpy_helper

    weights = numpy_helper.from_array(np.zeros((784, 10), dtype=np.float32), name="W")
    bias = numpy_helper.from_array(np.arange(10, dtype=np.float32), name="B")
    graph = helper.make_graph(
        [
            helper.make_node("Flatten", ["Input3"], ["flat"], axis=1),
            helper.make_node("MatMul", ["flat", "W"], ["mm"]),
            helper.make_node("Add", ["mm", "B"], ["Plus214_Output_0"]),
        ],
        "tiny_mnist",
        [helper.make_tensor_value_info("Input3", TensorProto.FLOAT, [1, 1, 28, 28])],
        [helper.make_tensor_value_info("Plus214_Output_0", TensorProto.FLOAT, [1, 10])],
        initializer=[weights, bias],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    path = tmp_path / "tiny.onnx"
    onnx.save(model, path.as_posix())

    sess = open_onnx_session(path)
    assert [a.name for a in sess.get_inputs()] == ["Input3"]

    eng = InferenceEngine(_settings(path))
    eng.load()
    scores = eng.submit_scores(torch.rand((1, 1, 28, 28))).result(timeout=10)
    assert [round(s) for s in scores] == list(range(10))
    eng.close()


def test_reload_after_close_restores_pool(tmp_path: Path) -> None:
    sess = _FakeSession([float(i) for i in range(10)])
    eng = InferenceEngine(_settings(_model_file(tmp_path)), session_factory=lambda _p: sess)
    eng.load()
    eng.close()
    with pytest.raises(RuntimeError, match="not loaded"):
        eng.submit_scores(torch.zeros((1, 1, 28, 28)))

    eng.load()
    scores = eng.submit_scores(torch.zeros((1, 1, 28, 28))).result(timeout=5)
    assert scores[9] == 9.0
    eng.close()
    # Closing twice is harmless
    eng.close()
