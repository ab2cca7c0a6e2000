from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .db import DEFAULT_DATA_DIR, get_state_db_path
from .storage import get_setting, set_setting

EMPTY_CRAWL_POLICIES = ("finish", "fail")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    public_base_url: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    object_store_dir: str


@dataclass(frozen=True)
class LauncherConfig:
    max_concurrent_launches: int
    lease_ttl_seconds: int


@dataclass(frozen=True)
class ProviderConfig:
    base_url: str
    timeout_seconds: int
    max_pages: int
    callback_path: str
    user_agent: str


@dataclass(frozen=True)
class ProcessingConfig:
    similarity_threshold: float
    extract_main: bool
    remove_metadata: bool
    summarize: bool
    max_summary_input_chars: int


@dataclass(frozen=True)
class AssemblyConfig:
    description_chars: int
    include_summaries: bool


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    max_task_attempts: int
    retry_backoff_seconds: list[int]
    empty_crawl_policy: str
    stale_job_minutes: int
    recrawl_tick_seconds: int


@dataclass(frozen=True)
class LlmConfig:
    enabled: bool
    base_url: str
    model: str
    timeout_seconds: int
    temperature: float
    max_tokens: int
    default_prompt: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    launcher: LauncherConfig
    provider: ProviderConfig
    processing: ProcessingConfig
    assembly: AssemblyConfig
    jobs: JobsConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "sitedigest",
        "public_base_url": "http://localhost:8000",
    },
    "paths": {
        "data_dir": DEFAULT_DATA_DIR,
        "object_store_dir": os.path.join(DEFAULT_DATA_DIR, "artifacts"),
    },
    "launcher": {
        "max_concurrent_launches": 10,
        "lease_ttl_seconds": 300,
    },
    "provider": {
        "base_url": "https://api.firecrawl.dev/v1",
        "timeout_seconds": 30,
        "max_pages": 10,
        "callback_path": "/webhooks/crawl",
        "user_agent": "sitedigest/0.1",
    },
    "processing": {
        "similarity_threshold": 0.95,
        "extract_main": True,
        "remove_metadata": True,
        "summarize": False,
        "max_summary_input_chars": 12000,
    },
    "assembly": {
        "description_chars": 200,
        "include_summaries": True,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "max_task_attempts": 5,
        "retry_backoff_seconds": [10, 30, 60, 120, 300],
        "empty_crawl_policy": "finish",
        "stale_job_minutes": 1440,
        "recrawl_tick_seconds": 300,
    },
    "llm": {
        "enabled": False,
        "base_url": "https://openrouter.ai/api/v1",
        "model": "openai/gpt-4o-mini",
        "timeout_seconds": 60,
        "temperature": 0.3,
        "max_tokens": 500,
        "default_prompt": (
            "Summarize this documentation page for a developer audience. "
            "Return JSON with a one sentence 'description' and a short 'summary'."
        ),
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, default_runtime_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def default_runtime_config() -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    data_dir = os.path.dirname(get_state_db_path())
    if data_dir != DEFAULT_DATA_DIR:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["object_store_dir"] = os.path.join(data_dir, "artifacts")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    _validate_semantics(cfg, errors)
    return errors


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    threshold = cfg["processing"]["similarity_threshold"]
    if not 0 < float(threshold) <= 1:
        errors.append("config.runtime.processing.similarity_threshold must be in (0, 1]")
    if cfg["jobs"]["empty_crawl_policy"] not in EMPTY_CRAWL_POLICIES:
        errors.append(
            "config.runtime.jobs.empty_crawl_policy must be one of "
            + ", ".join(EMPTY_CRAWL_POLICIES)
        )
    if cfg["launcher"]["max_concurrent_launches"] < 1:
        errors.append("config.runtime.launcher.max_concurrent_launches must be >= 1")
    if cfg["jobs"]["max_task_attempts"] < 1:
        errors.append("config.runtime.jobs.max_task_attempts must be >= 1")
    if not cfg["jobs"]["retry_backoff_seconds"]:
        errors.append("config.runtime.jobs.retry_backoff_seconds must not be empty")
    if not str(cfg["provider"]["callback_path"]).startswith("/"):
        errors.append("config.runtime.provider.callback_path must start with /")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)) or isinstance(item, bool):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    launcher_cfg = cfg.get("launcher") or {}
    provider_cfg = cfg.get("provider") or {}
    processing_cfg = cfg.get("processing") or {}
    assembly_cfg = cfg.get("assembly") or {}
    jobs_cfg = cfg.get("jobs") or {}
    llm_cfg = cfg.get("llm") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        public_base_url=str(app_cfg.get("public_base_url")).rstrip("/"),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        object_store_dir=str(paths_cfg.get("object_store_dir")),
    )

    launcher = LauncherConfig(
        max_concurrent_launches=int(launcher_cfg.get("max_concurrent_launches")),
        lease_ttl_seconds=int(launcher_cfg.get("lease_ttl_seconds")),
    )

    provider = ProviderConfig(
        base_url=str(provider_cfg.get("base_url")).rstrip("/"),
        timeout_seconds=int(provider_cfg.get("timeout_seconds")),
        max_pages=int(provider_cfg.get("max_pages")),
        callback_path=str(provider_cfg.get("callback_path")),
        user_agent=str(provider_cfg.get("user_agent")),
    )

    processing = ProcessingConfig(
        similarity_threshold=float(processing_cfg.get("similarity_threshold")),
        extract_main=bool(processing_cfg.get("extract_main")),
        remove_metadata=bool(processing_cfg.get("remove_metadata")),
        summarize=bool(processing_cfg.get("summarize")),
        max_summary_input_chars=int(processing_cfg.get("max_summary_input_chars")),
    )

    assembly = AssemblyConfig(
        description_chars=int(assembly_cfg.get("description_chars")),
        include_summaries=bool(assembly_cfg.get("include_summaries")),
    )

    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        max_task_attempts=int(jobs_cfg.get("max_task_attempts")),
        retry_backoff_seconds=[int(item) for item in jobs_cfg.get("retry_backoff_seconds")],
        empty_crawl_policy=str(jobs_cfg.get("empty_crawl_policy")),
        stale_job_minutes=int(jobs_cfg.get("stale_job_minutes")),
        recrawl_tick_seconds=int(jobs_cfg.get("recrawl_tick_seconds")),
    )

    llm = LlmConfig(
        enabled=bool(llm_cfg.get("enabled")),
        base_url=str(llm_cfg.get("base_url")).rstrip("/"),
        model=str(llm_cfg.get("model")),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        temperature=float(llm_cfg.get("temperature")),
        max_tokens=int(llm_cfg.get("max_tokens")),
        default_prompt=str(llm_cfg.get("default_prompt")),
    )

    return Config(
        app=app,
        paths=paths,
        launcher=launcher,
        provider=provider,
        processing=processing,
        assembly=assembly,
        jobs=jobs,
        llm=llm,
    )


def load_domains_file(path: str) -> list[dict[str, Any]]:
    """Read a YAML seed file: a list of domains or ``{"domains": [...]}``."""
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if isinstance(data, dict):
        data = data.get("domains") or []
    if not isinstance(data, list):
        raise ConfigError(f"{path}: domains must be a list")
    entries: list[dict[str, Any]] = []
    for index, item in enumerate(data):
        if isinstance(item, str):
            item = {"hostname": item}
        if not isinstance(item, dict):
            raise ConfigError(f"{path}: domains[{index}] must be a mapping or hostname")
        if not item.get("hostname") and not item.get("url"):
            raise ConfigError(f"{path}: domains[{index}].hostname is required")
        entries.append(dict(item))
    return entries


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
