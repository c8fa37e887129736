from __future__ import annotations

import math

import pytest

from digit_lab.errors import ErrorCode, InvalidArgumentError
from digit_lab.postprocess import argmax, softmax, summarize_scores, top_k


def test_softmax_sums_to_one_and_is_shift_invariant() -> None:
    scores = [0.5, -1.0, 3.0, 2.0]
    p = softmax(scores)
    assert abs(sum(p) - 1.0) < 1e-9
    shifted = softmax([s + 1000.0 for s in scores])
    for a, b in zip(p, shifted, strict=True):
        assert abs(a - b) < 1e-9


def test_softmax_large_scores_do_not_overflow() -> None:
    p = softmax([1e4, 1e4 - 1.0])
    assert all(math.isfinite(v) for v in p)
    assert p[0] > p[1]


def test_summary_ranks_ties_by_lowest_index() -> None:
    s = summarize_scores([1, 2, 3, 4, 1, 2, 3, 4, 1, 2], 3)
    assert [r.index for r in s.top_k] == [3, 7, 2]
    assert s.best.index == 3
    assert abs(s.best.prob - s.probs[3]) < 1e-12
    assert s.top_k[0].prob >= s.top_k[1].prob >= s.top_k[2].prob


def test_uniform_scores_pick_first_class() -> None:
    s = summarize_scores([0.0] * 10, 3)
    assert s.best.index == 0
    assert abs(s.best.prob - 0.1) < 1e-9
    assert [r.index for r in s.top_k] == [0, 1, 2]


def test_argmax_first_occurrence() -> None:
    assert argmax([0.1, 0.7, 0.7, 0.2]) == 1
    with pytest.raises(InvalidArgumentError):
        argmax([])


def test_summary_rejects_bad_input() -> None:
    with pytest.raises(InvalidArgumentError) as ei:
        summarize_scores([], 1)
    assert ei.value.code is ErrorCode.invalid_argument
    with pytest.raises(InvalidArgumentError):
        summarize_scores([1.0, 2.0], 0)
    with pytest.raises(InvalidArgumentError):
        summarize_scores([1.0, 2.0], 3)
    with pytest.raises(InvalidArgumentError):
        summarize_scores([1.0, float("nan")], 1)
    with pytest.raises(InvalidArgumentError):
        softmax([float("inf"), 0.0])


def test_top_k_full_length_covers_every_class() -> None:
    ranked = top_k([0.2, 0.5, 0.3], 3)
    assert [r.index for r in ranked] == [1, 2, 0]
