from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .common import merge_dict


DEFAULT_CONFIG: Dict[str, Any] = {
    "api_keys": {
        "tmdb": "",
        "omdb": "",
    },
    "runtime": {
        "database_path": "catalog.sqlite3",
        "log_file_path": "logs/catalog_sync.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "console_mode": "dashboard",
        "debug_raw_console_logs": False,
        "dashboard_event_lines": 8,
        "dashboard_event_dedupe_window_seconds": 30,
        "dashboard_event_max_message_length": 160,
        "dashboard_refresh_seconds": 1.0,
        "startup_jitter_seconds": 5,
        "network_backoff_max_seconds": 60,
        "log_level": "INFO",
    },
    "tvmaze": {
        "base_url": "https://api.tvmaze.com",
        "timeout_seconds": 20,
        "rate_limit": {
            "requests": 20,
            "per_seconds": 10,
            "margin_seconds": 0.1,
        },
        "rate_limited_retry_seconds": 5,
        "updates_window": "day",
        "progress_every": 50,
    },
    "tmdb": {
        "enabled": True,
        "base_url": "https://api.themoviedb.org/3",
        "language": "en-US",
        "timeout_seconds": 20,
        "min_interval_seconds": 0.2,
        "rate_limited_retry_seconds": 2,
        "changes_window_hours": 24,
        "progress_every": 100,
        "seed": {
            "popular_pages": 200,
            "top_rated_pages": 200,
            "discover_pages": 100,
            "discover_decades": [2020, 2010, 2000, 1990, 1980],
            "discover_min_votes": 50,
        },
    },
    "omdb": {
        "enabled": True,
        "base_url": "https://www.omdbapi.com/",
        "timeout_seconds": 20,
        "daily_limit": 1000,
        "request_delay_seconds": 0.1,
        "rate_limited_retry_seconds": 5,
        "progress_every": 10,
        "min_batch_size": 10,
        "max_batch_size": 10000,
    },
    "sonarr": {
        "timeout_seconds": 30,
        "instances": [],
    },
    "jobs": {},
}


KNOWN_JOB_IDS: Set[str] = {
    "sonarr-sync",
    "tvmaze-sync",
    "omdb-sync",
    "tmdb-sync",
}

SUPPORTED_CONSOLE_MODES: Set[str] = {
    "dashboard",
    "raw",
}

SUPPORTED_LOG_LEVELS: Set[str] = {
    "DEBUG",
    "INFO",
    "WARNING",
    "ERROR",
}

API_KEY_ENV_VARS: Dict[str, str] = {
    "tmdb": "TMDB_API_KEY",
    "omdb": "OMDB_API_KEY",
}

PLACEHOLDER_MARKERS = (
    "YOUR_",
    "YOUR-",
    "CHANGEME",
    "REPLACE_ME",
)


def is_placeholder(value: str) -> bool:
    upper = value.upper()
    return any(marker in upper for marker in PLACEHOLDER_MARKERS)


def resolve_api_key(config: Dict[str, Any], name: str) -> str:
    raw_value = str(config.get("api_keys", {}).get(name, "") or "").strip()
    if not raw_value or is_placeholder(raw_value):
        env_name = API_KEY_ENV_VARS.get(name)
        raw_value = str(os.environ.get(env_name, "") if env_name else "").strip()
    if not raw_value or is_placeholder(raw_value):
        return ""
    return raw_value


def _normalize_sonarr_instances(raw_instances: Any) -> List[Dict[str, Any]]:
    if raw_instances is None:
        return []
    if not isinstance(raw_instances, list):
        raise ValueError("sonarr.instances must be a list")

    normalized: List[Dict[str, Any]] = []
    seen: Set[str] = set()
    for idx, instance in enumerate(raw_instances):
        if not isinstance(instance, dict):
            raise ValueError(f"sonarr.instances[{idx}] must be an object")
        url = str(instance.get("url", "")).strip().rstrip("/")
        api_key = str(instance.get("api_key", "")).strip()
        if not url:
            raise ValueError(f"sonarr.instances[{idx}].url is required")
        if not api_key or is_placeholder(api_key):
            raise ValueError(f"sonarr.instances[{idx}].api_key is required")
        name = str(instance.get("name", "")).strip() or f"sonarr-{idx + 1}"
        if name in seen:
            raise ValueError(f"sonarr.instances[{idx}].name='{name}' is duplicated")
        seen.add(name)
        normalized.append(
            {
                "name": name,
                "url": url,
                "api_key": api_key,
                "enabled": bool(instance.get("enabled", True)),
            }
        )
    return normalized


def _normalize_jobs(raw_jobs: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(raw_jobs, dict):
        raise ValueError("jobs must be an object keyed by job id")

    normalized: Dict[str, Dict[str, Any]] = {}
    for job_id, job_cfg in raw_jobs.items():
        if job_id not in KNOWN_JOB_IDS:
            raise ValueError(
                f"jobs.{job_id} is unknown. Expected one of: "
                + ", ".join(sorted(KNOWN_JOB_IDS))
            )
        if not isinstance(job_cfg, dict):
            raise ValueError(f"jobs.{job_id} must be an object")
        entry: Dict[str, Any] = {}
        if "enabled" in job_cfg:
            entry["enabled"] = bool(job_cfg["enabled"])
        if "interval_minutes" in job_cfg:
            entry["interval_minutes"] = max(1, int(job_cfg["interval_minutes"]))
        normalized[job_id] = entry
    return normalized


def build_config(loaded: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    config = merge_dict(DEFAULT_CONFIG, loaded or {})
    runtime = config["runtime"]

    for key_name in API_KEY_ENV_VARS:
        config["api_keys"][key_name] = resolve_api_key(config, key_name)

    database_path = str(runtime.get("database_path", "")).strip()
    runtime["database_path"] = database_path or "catalog.sqlite3"
    log_file_path = str(runtime.get("log_file_path", "logs/catalog_sync.log")).strip()
    runtime["log_file_path"] = log_file_path or "logs/catalog_sync.log"
    runtime["log_file_max_bytes"] = max(1024, int(runtime.get("log_file_max_bytes", 10485760)))
    runtime["log_file_backup_count"] = max(0, int(runtime.get("log_file_backup_count", 5)))
    runtime["dashboard_event_lines"] = max(
        3, min(20, int(runtime.get("dashboard_event_lines", 8)))
    )
    runtime["dashboard_event_dedupe_window_seconds"] = max(
        1, int(runtime.get("dashboard_event_dedupe_window_seconds", 30))
    )
    runtime["dashboard_event_max_message_length"] = max(
        60, int(runtime.get("dashboard_event_max_message_length", 160))
    )
    runtime["dashboard_refresh_seconds"] = max(
        0.1, float(runtime.get("dashboard_refresh_seconds", 1.0))
    )
    runtime["startup_jitter_seconds"] = max(0.0, float(runtime.get("startup_jitter_seconds", 5)))
    runtime["network_backoff_max_seconds"] = max(
        1, int(runtime.get("network_backoff_max_seconds", 60))
    )
    runtime["debug_raw_console_logs"] = bool(runtime.get("debug_raw_console_logs", False))

    console_mode = str(runtime.get("console_mode", "dashboard")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ValueError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    runtime["console_mode"] = console_mode

    log_level = str(runtime.get("log_level", "INFO")).strip().upper()
    if log_level not in SUPPORTED_LOG_LEVELS:
        raise ValueError(
            "Invalid runtime.log_level. Expected one of: "
            + ", ".join(sorted(SUPPORTED_LOG_LEVELS))
        )
    runtime["log_level"] = log_level

    tvmaze_rate = config["tvmaze"]["rate_limit"]
    tvmaze_rate["requests"] = max(1, int(tvmaze_rate["requests"]))
    tvmaze_rate["per_seconds"] = max(0.001, float(tvmaze_rate["per_seconds"]))
    tvmaze_rate["margin_seconds"] = max(0.0, float(tvmaze_rate.get("margin_seconds", 0.1)))
    config["tvmaze"]["progress_every"] = max(1, int(config["tvmaze"]["progress_every"]))

    tmdb = config["tmdb"]
    tmdb["enabled"] = bool(tmdb.get("enabled", True))
    tmdb["min_interval_seconds"] = max(0.0, float(tmdb["min_interval_seconds"]))
    tmdb["changes_window_hours"] = max(1, min(336, int(tmdb["changes_window_hours"])))
    tmdb["progress_every"] = max(1, int(tmdb["progress_every"]))
    seed = tmdb["seed"]
    # TMDB refuses page numbers above 500.
    for page_key in ("popular_pages", "top_rated_pages", "discover_pages"):
        seed[page_key] = max(1, min(500, int(seed[page_key])))
    seed["discover_min_votes"] = max(0, int(seed["discover_min_votes"]))
    decades = seed.get("discover_decades")
    if not isinstance(decades, list):
        raise ValueError("tmdb.seed.discover_decades must be a list of years")
    normalized_decades: List[int] = []
    for idx, decade in enumerate(decades):
        value = int(decade)
        if value % 10 != 0:
            raise ValueError(
                f"tmdb.seed.discover_decades[{idx}]={value} is not the first year of a decade"
            )
        normalized_decades.append(value)
    seed["discover_decades"] = normalized_decades

    omdb = config["omdb"]
    omdb["enabled"] = bool(omdb.get("enabled", True))
    omdb["daily_limit"] = max(1, int(omdb["daily_limit"]))
    omdb["request_delay_seconds"] = max(0.0, float(omdb["request_delay_seconds"]))
    omdb["progress_every"] = max(1, int(omdb["progress_every"]))
    omdb["min_batch_size"] = max(1, int(omdb["min_batch_size"]))
    omdb["max_batch_size"] = max(omdb["min_batch_size"], int(omdb["max_batch_size"]))

    for section in ("tvmaze", "tmdb", "omdb", "sonarr"):
        config[section]["timeout_seconds"] = max(1, int(config[section]["timeout_seconds"]))
    for section in ("tvmaze", "tmdb", "omdb"):
        config[section]["rate_limited_retry_seconds"] = max(
            0.1, float(config[section]["rate_limited_retry_seconds"])
        )

    config["sonarr"]["instances"] = _normalize_sonarr_instances(
        config["sonarr"].get("instances")
    )
    config["jobs"] = _normalize_jobs(config.get("jobs") or {})

    return config


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)

    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    return build_config(loaded)
