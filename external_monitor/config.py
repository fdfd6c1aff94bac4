"""Configuration management for the external monitor."""

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


DEFAULT_CONFIG_PATH = "config/external_monitor.yaml"


class MonitorConfig(BaseModel):
    """Runtime configuration for the probe loop and the metrics endpoint."""

    # Exposition endpoint
    listen_address: str = Field(default=":8080", description="Address the metrics endpoint binds to")
    metrics_path: str = Field(default="/metrics", description="Path serving the metrics snapshot")

    # Probe loop
    period_seconds: int = Field(default=15, ge=1, description="Seconds to wait between probe cycles")
    request_timeout_seconds: Optional[float] = Field(
        default=10.0, description="Per-request timeout in seconds; None disables it"
    )
    fail_on_invalid_target: bool = Field(default=False, description="Stop the monitor on a malformed target")
    observe_failed_latency: bool = Field(default=True, description="Record latency for failed probes too")
    align_to_cycle_start: bool = Field(default=False, description="Measure the period between cycle starts")

    # Latency summary
    summary_max_age_seconds: float = Field(default=600.0, gt=0, description="Sliding window for quantiles")
    summary_age_buckets: int = Field(default=5, ge=1, description="Buckets in the quantile sliding window")

    # Input / output
    targets_file: Optional[str] = Field(default=None, description="Targets file; stdin when unset")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("request_timeout_seconds", mode="before")
    @classmethod
    def normalize_timeout(cls, v):
        """Treat 0, negative values and 'none' as no timeout."""
        if v is None:
            return None
        if isinstance(v, str):
            s = v.strip().lower()
            if s in ("", "none", "null", "off"):
                return None
            v = float(s)
        if float(v) <= 0:
            return None
        return float(v)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = str(v or "").strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level

    @field_validator("metrics_path")
    @classmethod
    def normalize_metrics_path(cls, v: str) -> str:
        path = str(v or "").strip()
        if not path.startswith("/"):
            path = "/" + path
        return path


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "y", "on")


def _env_overrides() -> Dict[str, Any]:
    env_overrides = {
        "listen_address": os.getenv("EXTERNAL_MONITOR_LISTEN_ADDRESS"),
        "metrics_path": os.getenv("EXTERNAL_MONITOR_METRICS_PATH"),
        "period_seconds": os.getenv("EXTERNAL_MONITOR_PERIOD"),
        "request_timeout_seconds": os.getenv("EXTERNAL_MONITOR_REQUEST_TIMEOUT"),
        "fail_on_invalid_target": os.getenv("EXTERNAL_MONITOR_FAIL_ON_INVALID_TARGET"),
        "observe_failed_latency": os.getenv("EXTERNAL_MONITOR_OBSERVE_FAILED_LATENCY"),
        "align_to_cycle_start": os.getenv("EXTERNAL_MONITOR_ALIGN_TO_CYCLE_START"),
        "targets_file": os.getenv("EXTERNAL_MONITOR_TARGETS_FILE"),
        "log_level": os.getenv("LOG_LEVEL"),
    }

    out: Dict[str, Any] = {}
    for key, value in env_overrides.items():
        if value is None:
            continue
        if key in ("fail_on_invalid_target", "observe_failed_latency", "align_to_cycle_start"):
            out[key] = _env_bool(value)
        else:
            out[key] = value
    return out


def load_config(config_path: Optional[str] = None, **overrides: Any) -> MonitorConfig:
    """
    Load configuration from a YAML file, then environment variables, then overrides.

    A missing file is only an error when the path was given explicitly (argument
    or EXTERNAL_MONITOR_CONFIG). Overrides whose value is None are ignored so
    unset CLI flags fall through to the lower layers.
    """
    explicit = config_path is not None or os.getenv("EXTERNAL_MONITOR_CONFIG") is not None
    if config_path is None:
        config_path = os.getenv("EXTERNAL_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config YAML must be a mapping: {config_path}")
        config_data.update(loaded)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    config_data.update(_env_overrides())
    config_data.update({k: v for k, v in overrides.items() if v is not None})

    return MonitorConfig(**config_data)
