from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final, Literal

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/digit_lab.toml")

ResizePolicy = Literal["letterbox", "direct"]
LlmProvider = Literal["openai", "azure"]


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class ModelConfig:
    path: Path = Path("mnist-12.onnx")
    n_classes: int = 10
    # Empty means "first declared" on the loaded session
    input_name: str = ""
    output_name: str = ""


@dataclass(frozen=True)
class DigitsConfig:
    predict_policy: ResizePolicy = "letterbox"
    tutor_policy: ResizePolicy = "direct"
    tutor_invert: bool = True
    top_k: int = 3
    max_image_mb: int = 10
    max_image_side_px: int = 4096
    predict_timeout_seconds: int = 5


@dataclass(frozen=True)
class LlmConfig:
    provider: LlmProvider = "openai"
    api_key: str = ""
    endpoint: str = ""
    deployment: str = "gpt-4o-mini"
    api_version: str = "2024-06-01"
    timeout_seconds: float = 30.0
    explain_temperature: float = 0.2
    quiz_temperature: float = 0.7
    summarize_prompt_path: Path | None = None

    @property
    def configured(self) -> bool:
        if not self.api_key or not self.deployment:
            return False
        return self.provider == "openai" or bool(self.endpoint)


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    digits: DigitsConfig
    llm: LlmConfig
    security: SecurityConfig

    @staticmethod
    def defaults() -> Settings:
        return Settings(
            app=AppConfig(),
            model=ModelConfig(),
            digits=DigitsConfig(),
            llm=LlmConfig(),
            security=SecurityConfig(),
        )

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("DIGITLAB_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            digits=_load_digits_from_env(),
            llm=_load_llm_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            digits=_merge_digits(base.digits, _toml_table(raw, "digits")),
            llm=_merge_llm(base.llm, _toml_table(raw, "llm")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _truthy(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _policy(v: str) -> ResizePolicy:
    m = v.strip().lower()
    if m == "letterbox":
        return "letterbox"
    if m == "direct":
        return "direct"
    raise RuntimeError(f"unknown resize policy: {v}")


def _provider(v: str) -> LlmProvider:
    m = v.strip().lower()
    if m == "openai":
        return "openai"
    if m == "azure":
        return "azure"
    raise RuntimeError(f"unknown llm provider: {v}")


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _check_positive(name: str, v: int) -> int:
    if v < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return v


def _check_non_negative(name: str, v: int) -> int:
    if v < 0:
        raise RuntimeError(f"{name} must be >= 0")
    return v


def _int(name: str, v: object) -> int:
    if isinstance(v, bool):
        raise RuntimeError(f"{name} must be an integer")
    try:
        return int(str(v).strip())
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {v!r}") from None


def _positive_int(name: str, v: object) -> int:
    return _check_positive(name, _int(name, v))


def _float(name: str, v: object) -> float:
    if isinstance(v, bool):
        raise RuntimeError(f"{name} must be a number")
    try:
        return float(str(v).strip())
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {v!r}") from None


def _positive_float(name: str, v: object) -> float:
    f = _float(name, v)
    if not f > 0:
        raise RuntimeError(f"{name} must be > 0")
    return f


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None:
        a = replace(a, threads=_check_non_negative("threads", _int("threads", th)))
    if pt is not None:
        a = replace(a, port=_check_port(_int("port", pt)))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    path = os.getenv("MODEL__PATH")
    nc = os.getenv("MODEL__N_CLASSES")
    inp = os.getenv("MODEL__INPUT_NAME")
    out = os.getenv("MODEL__OUTPUT_NAME")
    if path:
        m = replace(m, path=Path(path))
    if nc is not None:
        m = replace(m, n_classes=_positive_int("n_classes", nc))
    if inp is not None:
        m = replace(m, input_name=inp.strip())
    if out is not None:
        m = replace(m, output_name=out.strip())
    return m


def _load_digits_from_env() -> DigitsConfig:
    d = DigitsConfig()
    pp = os.getenv("DIGITS__PREDICT_POLICY")
    tp = os.getenv("DIGITS__TUTOR_POLICY")
    ti = os.getenv("DIGITS__TUTOR_INVERT")
    tk = os.getenv("DIGITS__TOP_K")
    mb = os.getenv("DIGITS__MAX_IMAGE_MB")
    mx = os.getenv("DIGITS__MAX_IMAGE_SIDE_PX")
    to = os.getenv("DIGITS__PREDICT_TIMEOUT_SECONDS")
    if pp:
        d = replace(d, predict_policy=_policy(pp))
    if tp:
        d = replace(d, tutor_policy=_policy(tp))
    if ti is not None:
        d = replace(d, tutor_invert=_truthy(ti))
    if tk is not None:
        d = replace(d, top_k=_positive_int("top_k", tk))
    if mb is not None:
        d = replace(d, max_image_mb=_positive_int("max_image_mb", mb))
    if mx is not None:
        d = replace(d, max_image_side_px=_positive_int("max_image_side_px", mx))
    if to is not None:
        d = replace(d, predict_timeout_seconds=_positive_int("predict_timeout_seconds", to))
    return d


def _load_llm_from_env() -> LlmConfig:
    c = LlmConfig()
    provider = os.getenv("LLM__PROVIDER")
    # LLM__* wins over the legacy OPENAI__* keys
    key = os.getenv("LLM__API_KEY") or os.getenv("OPENAI__APIKEY")
    endpoint = os.getenv("LLM__ENDPOINT") or os.getenv("OPENAI__ENDPOINT")
    deployment = os.getenv("LLM__DEPLOYMENT") or os.getenv("OPENAI__DEPLOYMENTID")
    api_version = os.getenv("LLM__API_VERSION")
    timeout = os.getenv("LLM__TIMEOUT_SECONDS")
    et = os.getenv("LLM__EXPLAIN_TEMPERATURE")
    qt = os.getenv("LLM__QUIZ_TEMPERATURE")
    sp = os.getenv("LLM__SUMMARIZE_PROMPT_PATH")
    if provider:
        c = replace(c, provider=_provider(provider))
    if key:
        c = replace(c, api_key=key)
    if endpoint:
        c = replace(c, endpoint=endpoint)
    if deployment:
        c = replace(c, deployment=deployment)
    if api_version:
        c = replace(c, api_version=api_version)
    if timeout is not None:
        c = replace(c, timeout_seconds=_positive_float("timeout_seconds", timeout))
    if et is not None:
        c = replace(c, explain_temperature=_float("explain_temperature", et))
    if qt is not None:
        c = replace(c, quiz_temperature=_float("quiz_temperature", qt))
    if sp:
        c = replace(c, summarize_prompt_path=Path(sp))
    return c


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        threads = _int("threads", data["threads"])
        out = replace(out, threads=_check_non_negative("threads", threads))
    if "port" in data:
        out = replace(out, port=_check_port(_int("port", data["port"])))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "path" in data:
        out = replace(out, path=Path(str(data["path"])))
    if "n_classes" in data:
        out = replace(out, n_classes=_positive_int("n_classes", data["n_classes"]))
    if "input_name" in data:
        out = replace(out, input_name=str(data["input_name"]).strip())
    if "output_name" in data:
        out = replace(out, output_name=str(data["output_name"]).strip())
    return out


def _merge_digits(base: DigitsConfig, data: dict[str, object]) -> DigitsConfig:
    out = base
    if "predict_policy" in data:
        out = replace(out, predict_policy=_policy(str(data["predict_policy"])))
    if "tutor_policy" in data:
        out = replace(out, tutor_policy=_policy(str(data["tutor_policy"])))
    if "tutor_invert" in data:
        out = replace(out, tutor_invert=bool(data["tutor_invert"]))
    if "top_k" in data:
        out = replace(out, top_k=_positive_int("top_k", data["top_k"]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=_positive_int("max_image_mb", data["max_image_mb"]))
    if "max_image_side_px" in data:
        side = _positive_int("max_image_side_px", data["max_image_side_px"])
        out = replace(out, max_image_side_px=side)
    if "predict_timeout_seconds" in data:
        timeout = _positive_int("predict_timeout_seconds", data["predict_timeout_seconds"])
        out = replace(out, predict_timeout_seconds=timeout)
    return out


def _merge_llm(base: LlmConfig, data: dict[str, object]) -> LlmConfig:
    out = base
    if "provider" in data:
        out = replace(out, provider=_provider(str(data["provider"])))
    if "api_key" in data:
        out = replace(out, api_key=str(data["api_key"]))
    if "endpoint" in data:
        out = replace(out, endpoint=str(data["endpoint"]))
    if "deployment" in data:
        out = replace(out, deployment=str(data["deployment"]))
    if "api_version" in data:
        out = replace(out, api_version=str(data["api_version"]))
    if "timeout_seconds" in data:
        timeout = _positive_float("timeout_seconds", data["timeout_seconds"])
        out = replace(out, timeout_seconds=timeout)
    if "explain_temperature" in data:
        temp = _float("explain_temperature", data["explain_temperature"])
        out = replace(out, explain_temperature=temp)
    if "quiz_temperature" in data:
        temp = _float("quiz_temperature", data["quiz_temperature"])
        out = replace(out, quiz_temperature=temp)
    if "summarize_prompt_path" in data:
        out = replace(out, summarize_prompt_path=Path(str(data["summarize_prompt_path"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    coerced = _coerce_security(data)
    if "api_key" in coerced:
        out = replace(out, api_key=str(coerced["api_key"]))
    return out


def _coerce_security(inp: dict[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    api_key_val = inp.get("api_key")
    if isinstance(api_key_val, str):
        out["api_key"] = api_key_val
    enabled = inp.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out["api_key"] = ""
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.digits.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.digits.max_image_side_px),
        )
