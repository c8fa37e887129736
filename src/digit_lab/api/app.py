from __future__ import annotations

import asyncio
import base64
import binascii
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Annotated

from fastapi import Body, Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse, PlainTextResponse
from PIL import Image, ImageFile
from starlette.datastructures import FormData
from torch import Tensor

from ..config import Limits, ResizePolicy, Settings
from ..errors import (
    AppError,
    ErrorCode,
    InvalidArgumentError,
    InvalidImageError,
    app_error,
    new_error,
)
from ..inference.engine import InferenceEngine
from ..inference.types import ScoreSummary
from ..llm.service import LlmService, create_llm_service, parse_json_reply
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..postprocess import argmax, summarize_scores
from ..preprocess import NormalizeOptions, decode_image, normalize_image, thumbnail_png_b64
from ..request_context import request_id_var
from ..version import get_version
from .schemas import (
    Base64PredictRequest,
    PredictionResponse,
    PredictionWithExplanationResponse,
    QuizRequest,
    ScoresResponse,
)

ImageFile.LOAD_TRUNCATED_IMAGES = False

_SUPPORTED_TYPES = ("image/png", "image/jpeg", "image/jpg", "image/gif", "image/bmp", "image/webp")
_TRUE_FLAGS = frozenset({"1", "true", "yes", "on"})
_FALSE_FLAGS = frozenset({"", "0", "false", "no", "off"})


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    # Runs outside RequestIdMiddleware, after the contextvar has been reset
    rid = request_id_var.get() or _state_request_id(request)
    get_logger().error(
        "unhandled_exception type=%s request_id=%s", type(exc).__name__, rid, exc_info=exc
    )
    body = new_error(ErrorCode.internal_error, rid)
    headers = {"X-Request-ID": rid} if rid else None
    return JSONResponse(status_code=500, content=body.to_dict(), headers=headers)


def _state_request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return rid if isinstance(rid, str) else ""


def _register_basic(app: FastAPI, engine: InferenceEngine, settings: Settings) -> None:
    async def _root() -> PlainTextResponse:
        return PlainTextResponse("MNIST ONNX API is running. POST /predict-file or /predict-base64")

    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready", "llm_configured": settings.llm.configured}
        return {
            "status": "not_ready",
            "model_loaded": False,
            "model_path": engine.model_path.as_posix(),
            "llm_configured": settings.llm.configured,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    async def _model() -> dict[str, object]:
        return {
            "model_loaded": engine.ready,
            "path": engine.model_path.as_posix(),
            "input_name": engine.input_name,
            "output_name": engine.output_name,
            "n_classes": engine.n_classes,
            "predict_policy": settings.digits.predict_policy,
            "tutor_policy": settings.digits.tutor_policy,
        }

    app.add_api_route("/", _root, methods=["GET"], include_in_schema=False)
    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])
    app.add_api_route("/v1/model", _model, methods=["GET"])


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "File exceeds size limit")


def _strict_validate_multipart(form: FormData, file_field: str, extra: frozenset[str]) -> None:
    for key in form:
        if key != file_field and key not in extra:
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist(file_field))
    if n_files > 1:
        raise app_error(ErrorCode.malformed_multipart, "Multiple file parts not allowed")
    for key in extra:
        if len(form.getlist(key)) > 1:
            raise app_error(ErrorCode.malformed_multipart, f"Repeated form field: {key}")


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in _SUPPORTED_TYPES:
        raise app_error(ErrorCode.unsupported_media_type, "Only image uploads are supported")


def _parse_flag(name: str, value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_FLAGS:
            return True
        if v in _FALSE_FLAGS:
            return False
    raise InvalidArgumentError(f"{name} must be a boolean")


def _decode_base64_image(data: str) -> bytes:
    body = data.strip()
    # Accept data URLs as produced by canvas.toDataURL()
    if body.startswith("data:") and "," in body:
        body = body.split(",", 1)[1]
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImageError("base64Image is not valid base64") from None


async def _read_upload(
    request: Request,
    file: UploadFile | None,
    file_field: str,
    extra: frozenset[str],
    limits: Limits,
    content_length: int | None,
) -> Image.Image:
    form = await request.form()
    _strict_validate_multipart(form, file_field, extra)
    if file is None:
        raise InvalidImageError(f"Missing '{file_field}' file")
    _ensure_supported_content_type((file.content_type or "").lower())
    if content_length is not None and content_length > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "Request body too large")

    raw = await file.read()
    _raise_if_too_large(raw, limits)
    return decode_image(raw, max_side_px=limits.max_side_px)


async def _run_scores(
    engine: InferenceEngine, tensor: Tensor, timeout_s: float
) -> tuple[float, ...]:
    if not engine.ready:
        raise app_error(ErrorCode.service_not_ready)
    fut = engine.submit_scores(tensor)
    try:
        return await asyncio.wait_for(asyncio.wrap_future(fut), timeout=timeout_s)
    except TimeoutError:
        fut.cancel()
        raise app_error(ErrorCode.timeout, "Prediction timed out") from None


def _summary_body(summary: ScoreSummary) -> dict[str, object]:
    return {
        "digit": summary.best.index,
        "confidence": float(summary.best.prob),
        "topK": [{"digit": p.index, "prob": float(p.prob)} for p in summary.top_k],
    }


def _register_predict(
    app: FastAPI,
    api_dep: DependsParamType,
    engine: InferenceEngine,
    settings: Settings,
    limits: Limits,
) -> None:
    policy: ResizePolicy = settings.digits.predict_policy
    timeout_s = float(settings.digits.predict_timeout_seconds)

    async def _scores_response(img: Image.Image, invert: bool, route: str) -> dict[str, object]:
        t0 = time.perf_counter()
        norm = normalize_image(img, NormalizeOptions(policy=policy, invert=invert))
        scores = await _run_scores(engine, norm.tensor, timeout_s)
        predicted = argmax(scores)
        log_event(
            "predict_finished",
            fields={
                "route": route,
                "policy": policy,
                "invert": invert,
                "predicted": predicted,
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
            },
        )
        return {"predicted": predicted, "scores": [float(s) for s in scores]}

    async def _predict_file(
        request: Request,
        image: Annotated[UploadFile | None, File()] = None,
        invert: str | None = None,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        img = await _read_upload(
            request, image, "image", frozenset({"invert"}), limits, content_length
        )
        if invert is not None:
            flag = _parse_flag("invert", invert)
        else:
            form = await request.form()
            flag = _parse_flag("invert", form.get("invert"))
        return await _scores_response(img, flag, "predict_file")

    async def _predict_base64(body: Base64PredictRequest) -> dict[str, object]:
        if not body.base64_image:
            raise InvalidImageError("Missing 'base64Image'")
        raw = _decode_base64_image(body.base64_image)
        _raise_if_too_large(raw, limits)
        img = decode_image(raw, max_side_px=limits.max_side_px)
        return await _scores_response(img, bool(body.invert), "predict_base64")

    for path in ("/predict", "/predict-file"):
        app.add_api_route(
            path,
            _predict_file,
            methods=["POST"],
            response_model=ScoresResponse,
            dependencies=[api_dep],
        )
    app.add_api_route(
        "/predict-base64",
        _predict_base64,
        methods=["POST"],
        response_model=ScoresResponse,
        dependencies=[api_dep],
    )


def _register_tutor(
    app: FastAPI,
    api_dep: DependsParamType,
    engine: InferenceEngine,
    llm: LlmService,
    settings: Settings,
    limits: Limits,
) -> None:
    digits = settings.digits
    opts = NormalizeOptions(policy=digits.tutor_policy, invert=digits.tutor_invert)
    k = int(settings.digits.top_k)
    timeout_s = float(settings.digits.predict_timeout_seconds)

    async def _classify(img: Image.Image, route: str) -> ScoreSummary:
        t0 = time.perf_counter()
        norm = normalize_image(img, opts)
        scores = await _run_scores(engine, norm.tensor, timeout_s)
        summary = summarize_scores(scores, k)
        log_event(
            "predict_finished",
            fields={
                "route": route,
                "policy": opts.policy,
                "digit": summary.best.index,
                "confidence": float(summary.best.prob),
                "k": k,
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
            },
        )
        return summary

    async def _mnist_predict(
        request: Request,
        image_file: Annotated[UploadFile | None, File(alias="imageFile")] = None,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        img = await _read_upload(
            request, image_file, "imageFile", frozenset(), limits, content_length
        )
        return _summary_body(await _classify(img, "mnist_predict"))

    async def _mnist_predict_explain(
        request: Request,
        image_file: Annotated[UploadFile | None, File(alias="imageFile")] = None,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        img = await _read_upload(
            request, image_file, "imageFile", frozenset(), limits, content_length
        )
        summary = await _classify(img, "mnist_predict_explain")
        explanation = await llm.explain_prediction(
            summary.best.index, summary.best.prob, summary.probs, thumbnail_png_b64(img)
        )
        return {**_summary_body(summary), "explanation": explanation}

    async def _mnist_quiz(body: QuizRequest) -> JSONResponse:
        if not body.recent_mistakes:
            raise InvalidArgumentError("recentMistakes list is required and cannot be empty")
        reply = await llm.build_quiz(body.recent_mistakes)
        parsed = parse_json_reply(reply)
        if parsed is None:
            return JSONResponse(content={"response": reply})
        return JSONResponse(content=parsed)

    app.add_api_route(
        "/api/mnist/predict",
        _mnist_predict,
        methods=["POST"],
        response_model=PredictionResponse,
        dependencies=[api_dep],
    )
    app.add_api_route(
        "/api/mnist/predict-explain",
        _mnist_predict_explain,
        methods=["POST"],
        response_model=PredictionWithExplanationResponse,
        dependencies=[api_dep],
    )
    app.add_api_route("/api/mnist/quiz", _mnist_quiz, methods=["POST"], dependencies=[api_dep])


def _register_chat(app: FastAPI, api_dep: DependsParamType, llm: LlmService) -> None:
    async def _ask(question: Annotated[str, Body()]) -> str:
        return await llm.ask(question)

    async def _summary(chat_content: Annotated[str, Body()]) -> str:
        return await llm.summarize(chat_content)

    app.add_api_route("/api/chat/ask", _ask, methods=["POST"], dependencies=[api_dep])
    app.add_api_route("/api/chat/summary", _summary, methods=["POST"], dependencies=[api_dep])


def _lifespan(
    engine: InferenceEngine, llm: LlmService
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def _run(_: FastAPI) -> AsyncIterator[None]:
        # Fail fast: a missing model aborts startup
        if not engine.ready:
            engine.load()
        try:
            yield
        finally:
            engine.close()
            await llm.close()

    return _run


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
    llm_provider: Callable[[], LlmService] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads env + TOML.
    - `engine_provider`: Optional provider for the `InferenceEngine` (tests inject fakes).
    - `llm_provider`: Optional provider for the `LlmService`.

    The ONNX session opens in the lifespan startup hook and closes on shutdown.
    """
    s = settings or Settings.load()
    if s.digits.top_k > s.model.n_classes:
        raise RuntimeError("digits.top_k cannot exceed model.n_classes")
    init_logging()

    engine = engine_provider() if engine_provider is not None else InferenceEngine(s)
    llm = llm_provider() if llm_provider is not None else create_llm_service(s.llm)
    limits = Limits.from_settings(s)

    app = FastAPI(title="digit-lab", version=get_version().version, lifespan=_lifespan(engine, llm))
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    app.state.engine = engine
    app.state.llm = llm
    app.state.settings = s

    api_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_basic(app, engine, s)
    _register_predict(app, api_dep, engine, s, limits)
    _register_tutor(app, api_dep, engine, llm, s, limits)
    _register_chat(app, api_dep, llm)
    return app


# Default ASGI app for uvicorn
app = create_app()
