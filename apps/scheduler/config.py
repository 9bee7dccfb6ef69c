# apps/scheduler/config.py
#
# CONFIG INPUTS
#
# One YAML file (default ./avwpulse.yml, override with -c or AVW_CONFIG).
# JSON is valid YAML, so the older JSON-style config files load unchanged.
#
#   broker:                      (alias: mqtt)
#     url: redis://localhost:6379/0
#     client_id: avwpulse
#     topic_prefix: weather/aviation
#     username / password        (optional)
#     retain: true               (also SET the latest payload per topic)
#     broker: <host>             (legacy mqtt key; used only if it is a redis:// URL)
#   stations_file: stations.js   (optional station metadata)
#   defaults:
#     fetch_metar: true
#     fetch_taf: true
#     interval_minutes: 10
#   scheduler:
#     tick_seconds: 5
#     fetch_timeout_seconds: 15
#     shutdown_grace_seconds: 10
#     failure_retry_seconds: 0   (0 = retry on every tick after a failure)
#   airports:
#     - icao: egll
#     - { icao: KSFO, fetch_taf: false, interval_minutes: 5 }
#
# Env (pydantic-settings) wins over YAML for the deployment knobs:
#   REDIS_URL, AVW_TOPIC_PREFIX, AVW_CONFIG

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("avwpulse.config")

MAX_AIRPORTS = 64
REDIS_SCHEMES = ("redis://", "rediss://", "unix://")


class ConfigError(ValueError):
    """Configuration is unusable; the process must not start."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # deployment overrides (None = keep whatever the YAML says)
    redis_url: Optional[str] = None
    avw_topic_prefix: Optional[str] = None
    avw_config: str = "avwpulse.yml"


# -------------------------------------------------------------------
# models
# -------------------------------------------------------------------

class BrokerConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    client_id: str = "avwpulse"
    topic_prefix: str = "weather/aviation"
    username: Optional[str] = None
    password: Optional[str] = None
    retain: bool = True


class Defaults(BaseModel):
    fetch_metar: bool = True
    fetch_taf: bool = True
    interval_minutes: int = 10


class SchedulerConfig(BaseModel):
    tick_seconds: float = 5.0
    fetch_timeout_seconds: float = 15.0
    shutdown_grace_seconds: float = 10.0
    failure_retry_seconds: int = 0
    metar_url: str = "https://aviationweather.gov/api/data/metar?format=xml&taf=false&ids={icao}"
    taf_url: str = "https://aviationweather.gov/api/data/taf?format=xml&ids={icao}"


class AirportConfig(BaseModel):
    icao: str
    fetch_metar: bool = True
    fetch_taf: bool = True
    interval_minutes: int = 10

    @field_validator("icao")
    @classmethod
    def _upper(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if not v:
            raise ValueError("icao must not be empty")
        return v


class AppConfig(BaseModel):
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    defaults: Defaults = Field(default_factory=Defaults)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    stations_file: Optional[str] = None
    airports: List[AirportConfig] = Field(default_factory=list)


# -------------------------------------------------------------------
# loader
# -------------------------------------------------------------------

def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"config: file cannot be opened: {path} ({e.strerror})") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"config: parse error in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config: top level of {path} must be a mapping")
    return data


def _merge_airports(raw: Dict[str, Any], defaults: Defaults) -> List[Dict[str, Any]]:
    """
    Apply `defaults` to each airport entry, drop duplicates (first wins) and
    cap the list at MAX_AIRPORTS.
    """
    entries = raw.get("airports") or []
    if not isinstance(entries, list):
        raise ConfigError("config: 'airports' must be a list")

    out: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for entry in entries:
        if isinstance(entry, str):
            entry = {"icao": entry}
        if not isinstance(entry, dict):
            continue
        icao = str(entry.get("icao") or "").strip().upper()
        if not icao or icao in seen:
            continue
        if len(out) >= MAX_AIRPORTS:
            log.warning("airports: more than %d configured, ignoring %s", MAX_AIRPORTS, icao)
            continue
        seen.add(icao)
        out.append({
            "icao": icao,
            "fetch_metar": entry.get("fetch_metar", defaults.fetch_metar),
            "fetch_taf": entry.get("fetch_taf", defaults.fetch_taf),
            "interval_minutes": entry.get("interval_minutes", defaults.interval_minutes),
        })
    return out


def _legacy_broker_host(broker_raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Old `mqtt:` sections name the server with `broker: <host>`. A Redis URL
    there is taken as `url`; anything else cannot reach the sink and is dropped.
    """
    host = broker_raw.get("broker")
    if host is None:
        return broker_raw
    out = {k: v for k, v in broker_raw.items() if k != "broker"}
    if isinstance(host, str) and host.startswith(REDIS_SCHEMES) and not out.get("url"):
        out["url"] = host
    else:
        log.warning("config: ignoring broker %r, set broker.url to a redis:// URL", host)
    return out


def load_config(path: str, settings: Optional[Settings] = None) -> AppConfig:
    """Read + validate the config file. Raises ConfigError on anything unusable."""
    raw = _read_yaml(path)
    settings = settings or Settings()

    broker_raw = raw.get("broker") or raw.get("mqtt") or {}
    if not isinstance(broker_raw, dict):
        raise ConfigError("config: 'broker' must be a mapping")
    broker_raw = _legacy_broker_host(broker_raw)
    try:
        defaults = Defaults.model_validate(raw.get("defaults") or {})
        cfg = AppConfig.model_validate({
            "broker": broker_raw,
            "defaults": defaults,
            "scheduler": raw.get("scheduler") or {},
            "stations_file": raw.get("stations_file") or broker_raw.get("stations_file"),
            "airports": _merge_airports(raw, defaults),
        })
    except ValidationError as e:
        raise ConfigError(f"config: invalid {path}: {e}") from e

    if settings.redis_url:
        cfg.broker.url = settings.redis_url
    if settings.avw_topic_prefix:
        cfg.broker.topic_prefix = settings.avw_topic_prefix

    if not cfg.airports:
        raise ConfigError("airports: none configured")
    return cfg
