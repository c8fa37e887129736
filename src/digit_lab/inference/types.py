from __future__ import annotations

from dataclasses import dataclass

from torch import Tensor


@dataclass(frozen=True)
class NormalizedImage:
    tensor: Tensor  # float32, shape (1, 1, 28, 28), values in [0, 1]
    policy: str
    invert: bool


@dataclass(frozen=True)
class RankedPrediction:
    index: int
    prob: float


@dataclass(frozen=True)
class ScoreSummary:
    best: RankedPrediction
    probs: tuple[float, ...]
    top_k: tuple[RankedPrediction, ...]
