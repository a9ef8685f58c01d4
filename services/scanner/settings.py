# services/scanner/settings.py
from __future__ import annotations
import os
from typing import Dict, Any, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_PATH = os.getenv("CONFIG_PATH", "config/app.yaml")
DEFAULT_BASE_URL = "https://openapi.koreainvestment.com:9443"

class KisSettings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    app_key: str = ""
    app_secret: str = ""
    config_id: str = "default"  # clé du cache token dans Redis

class ScanSettings(BaseModel):
    enabled: bool = True
    exchange_code: str = "NAS"
    ranking_gubn: str = "0"
    top_n: int = Field(20, ge=1)
    history_min: int = Field(30, ge=30)
    interval_s: float = Field(60.0, gt=0)
    timeout_s: float = Field(5.0, gt=0)
    # upstream allows ~2 req/s per app key
    min_interval_s: float = Field(0.5, ge=0.5)
    token_margin_s: float = Field(300.0, ge=0)
    default_token_ttl_s: float = Field(7200.0, gt=0)
    alert_cooldown_s: int = Field(0, ge=0)

class Config(BaseModel):
    env: str = "dev"
    log_level: str = "INFO"
    redis_url: Optional[str] = None
    kis: KisSettings = Field(default_factory=KisSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    pattern: Dict[str, Any] = Field(default_factory=dict)

def deep_merge(a, b):
    if not isinstance(a, dict): a = {}
    if not isinstance(b, dict): b = {}
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out

def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    ov: Dict[str, Any] = {}

    def put(section: Optional[str], key: str, value):
        if section is None:
            ov[key] = value
        else:
            ov.setdefault(section, {})[key] = value

    if env.get("KIS_APP_KEY"): put("kis", "app_key", env["KIS_APP_KEY"].strip().strip("'\""))
    if env.get("KIS_APP_SECRET"): put("kis", "app_secret", env["KIS_APP_SECRET"].strip().strip("'\""))
    if env.get("KIS_BASE_URL"): put("kis", "base_url", env["KIS_BASE_URL"].strip())
    if env.get("REDIS_URL"): put(None, "redis_url", env["REDIS_URL"].strip())
    if env.get("LOG_LEVEL"): put(None, "log_level", env["LOG_LEVEL"].strip().upper())
    if env.get("SCAN_EXCHANGE"): put("scan", "exchange_code", env["SCAN_EXCHANGE"].strip().upper())
    if env.get("SCAN_ENABLED"):
        put("scan", "enabled", env["SCAN_ENABLED"].strip().lower() in ("1", "true", "yes", "on"))
    return ov

def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """app.yaml (optional) + env overrides -> validated Config."""
    path = path or CONFIG_PATH
    base: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r") as f:
            base = yaml.safe_load(f) or {}
    return Config(**deep_merge(base, env_overrides(environ)))

def masked(cfg: Config) -> Dict[str, Any]:
    d = cfg.model_dump()
    for k in ("app_key", "app_secret"):
        v = d["kis"].get(k) or ""
        d["kis"][k] = (v[:4] + "***") if v else ""
    return d
