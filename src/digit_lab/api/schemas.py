from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic.dataclasses import dataclass as pydantic_dataclass

_CAMEL = ConfigDict(populate_by_name=True)


@pydantic_dataclass(frozen=True)
class ScoresResponse:
    predicted: int
    scores: list[float]


@pydantic_dataclass(frozen=True, config=_CAMEL)
class Base64PredictRequest:
    base64_image: str | None = Field(default=None, alias="base64Image")
    invert: bool | None = None


@pydantic_dataclass(frozen=True)
class TopKPrediction:
    digit: int
    prob: float


@pydantic_dataclass(frozen=True, config=_CAMEL)
class PredictionResponse:
    digit: int
    confidence: float
    top_k: list[TopKPrediction] = Field(alias="topK")


@pydantic_dataclass(frozen=True, config=_CAMEL)
class PredictionWithExplanationResponse:
    digit: int
    confidence: float
    top_k: list[TopKPrediction] = Field(alias="topK")
    explanation: str = ""


@pydantic_dataclass(frozen=True, config=_CAMEL)
class QuizRequest:
    recent_mistakes: list[int] | None = Field(default=None, alias="recentMistakes")
