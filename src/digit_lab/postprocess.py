from __future__ import annotations

import math
from collections.abc import Sequence

import torch

from .errors import InvalidArgumentError
from .inference.types import RankedPrediction, ScoreSummary


def softmax(scores: Sequence[float]) -> tuple[float, ...]:
    """Max-shifted softmax; exponents are taken on ``s - max(s)`` so they never overflow."""
    _check_scores(scores)
    t = torch.tensor(list(scores), dtype=torch.float64)
    exps = torch.exp(t - t.max())
    probs = exps / exps.sum()
    return tuple(float(p) for p in probs.tolist())


def argmax(values: Sequence[float]) -> int:
    """Index of the largest value; ties go to the lowest index."""
    if len(values) == 0:
        raise InvalidArgumentError("Score vector is empty")
    best_idx = 0
    best = values[0]
    for i in range(1, len(values)):
        if values[i] > best:
            best = values[i]
            best_idx = i
    return best_idx


def top_k(probs: Sequence[float], k: int) -> tuple[RankedPrediction, ...]:
    if k < 1 or k > len(probs):
        raise InvalidArgumentError(f"k must be within [1, {len(probs)}], got {k}")
    order = sorted(range(len(probs)), key=lambda i: (-probs[i], i))
    return tuple(RankedPrediction(index=i, prob=float(probs[i])) for i in order[:k])


def summarize_scores(scores: Sequence[float], k: int) -> ScoreSummary:
    _check_scores(scores)
    if k < 1 or k > len(scores):
        raise InvalidArgumentError(f"k must be within [1, {len(scores)}], got {k}")
    probs = softmax(scores)
    best_idx = argmax(probs)
    return ScoreSummary(
        best=RankedPrediction(index=best_idx, prob=probs[best_idx]),
        probs=probs,
        top_k=top_k(probs, k),
    )


def _check_scores(scores: Sequence[float]) -> None:
    if len(scores) == 0:
        raise InvalidArgumentError("Score vector is empty")
    for s in scores:
        if not math.isfinite(s):
            raise InvalidArgumentError("Score vector contains non-finite values")
