from __future__ import annotations

import io
import logging
from importlib.metadata import PackageNotFoundError

import anyio
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.types import Scope

from digit_lab import version as version_mod
from digit_lab.api.app import _handle_app_error, _handle_unexpected
from digit_lab.errors import (
    AppError,
    ErrorCode,
    InvalidArgumentError,
    InvalidImageError,
    app_error,
    new_error,
    status_for,
)
from digit_lab.logging import _JsonFormatter, get_logger
from digit_lab.middleware import RequestIdMiddleware
from digit_lab.request_context import request_id_var
from digit_lab.version import get_version


def test_status_mapping() -> None:
    assert status_for(ErrorCode.invalid_image) == 400
    assert status_for(ErrorCode.invalid_argument) == 400
    assert status_for(ErrorCode.unsupported_media_type) == 415
    assert status_for(ErrorCode.too_large) == 413
    assert status_for(ErrorCode.timeout) == 504
    assert status_for(ErrorCode.unauthorized) == 401
    assert status_for(ErrorCode.service_not_ready) == 503
    assert status_for(ErrorCode.llm_not_configured) == 503
    assert status_for(ErrorCode.llm_failed) == 502
    assert status_for(ErrorCode.internal_error) == 500


def test_error_helpers_default_messages() -> None:
    e = new_error(ErrorCode.timeout, "abc-123")
    assert e.message != "" and e.to_dict()["request_id"] == "abc-123"
    assert e.to_dict()["code"] == "timeout"
    assert InvalidImageError().http_status == 400 and InvalidImageError().message != ""
    assert InvalidArgumentError("k too big").message == "k too big"
    err = app_error(ErrorCode.llm_failed)
    assert isinstance(err, AppError) and err.http_status == 502


def test_handlers_render_error_body() -> None:
    async def run() -> tuple[bytes, bytes]:
        scope: Scope = {"type": "http"}
        req = Request(scope)
        token = request_id_var.set("rid-1")
        try:
            r1 = await _handle_app_error(req, app_error(ErrorCode.unauthorized))
            r2 = await _handle_unexpected(req, Exception("boom"))
        finally:
            request_id_var.reset(token)
        assert r1.status_code == 401 and r2.status_code == 500
        return bytes(r1.body), bytes(r2.body)

    b1, b2 = anyio.run(run)
    assert b'"code":"unauthorized"' in b1 and b'"request_id":"rid-1"' in b1
    # Internal details stay out of the response
    assert b'"code":"internal_error"' in b2 and b"boom" not in b2


def test_request_id_generated_and_echoed() -> None:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    seen: list[str] = []

    async def _echo_id() -> dict[str, str]:
        seen.append(request_id_var.get())
        return {"ok": "1"}

    app.add_api_route("/echo-id", _echo_id, methods=["GET"])
    client = TestClient(app)
    r1 = client.get("/echo-id", headers={"X-Request-ID": "req-123"})
    assert r1.headers["x-request-id"] == "req-123" and seen[-1] == "req-123"
    r2 = client.get("/echo-id")
    assert len(r2.headers["x-request-id"]) == 36 and seen[-1] == r2.headers["x-request-id"]
    assert request_id_var.get() == ""


def test_version_fallback_logs_and_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(_: str) -> str:
        raise PackageNotFoundError("digit-lab")

    monkeypatch.setattr(version_mod, "version", _missing)
    monkeypatch.setenv("BUILD_ID", "b-9")
    monkeypatch.setenv("GIT_COMMIT", "abc1234")

    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    logger.addHandler(h)
    try:
        v = get_version()
    finally:
        logger.removeHandler(h)
    assert v.service == "digit-lab" and v.version == "0.0.0+local"
    assert v.build == "b-9" and v.commit == "abc1234"
    assert "pkg_version_fallback" in buf.getvalue()
