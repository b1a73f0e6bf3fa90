"""Static configuration for opsroute.

All operator-editable settings (engine tuning, bridge, logging and the
category/channel/rule seed) live in a single JSON file. Secrets and
deployment paths come from the environment (a ``.env`` file is honored).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from opsroute.core.config import (
    DispatchConfig,
    EngineConfig,
    EscalationConfig,
    LivenessConfig,
    RetryPolicy,
)

PROJECT_ROOT = os.getcwd()

# config.json next to where the CLI runs unless OPSROUTE_CONFIG says otherwise.
DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_DB_PATH = "opsroute.db"


@dataclass(frozen=True)
class Settings:
    config_path: str
    db_path: str
    engine: EngineConfig
    bridge_url: Optional[str] = None
    bridge_token: Optional[str] = None
    # Raw sections handed to their own parsers.
    seed: Dict[str, Any] = field(default_factory=dict)
    logging: Dict[str, Any] = field(default_factory=dict)


def _load_json_config(path: str) -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _engine_config(raw: Dict[str, Any]) -> EngineConfig:
    """Build the engine tuning from the ``engine`` section, defaults for anything missing."""

    engine = raw.get("engine", {})
    dispatch = raw.get("dispatch", {})
    retry = dispatch.get("retry", {})
    escalation = raw.get("escalation", {})
    liveness = raw.get("liveness", {})

    fallback = dispatch.get("fallback_channel_id")
    return EngineConfig(
        workers=int(engine.get("workers", 4)),
        fan_out=bool(engine.get("fan_out", False)),
        history_size=int(engine.get("history_size", 2048)),
        dispatch=DispatchConfig(
            retry=RetryPolicy(
                max_attempts=int(retry.get("max_attempts", 3)),
                base_delay_ms=int(retry.get("base_delay_ms", 500)),
                factor=float(retry.get("factor", 2.0)),
            ),
            max_in_flight=int(dispatch.get("max_in_flight", 8)),
            fallback_channel_id=int(fallback) if fallback is not None else None,
            excerpt_chars=int(dispatch.get("excerpt_chars", 400)),
            idempotency_cache=int(dispatch.get("idempotency_cache", 4096)),
        ),
        escalation=EscalationConfig(
            max_levels=int(escalation.get("max_levels", 3)),
            max_passive_chains=int(escalation.get("max_passive_chains", 512)),
        ),
        liveness=LivenessConfig(ttl_seconds=float(liveness.get("ttl_seconds", 45.0))),
    )


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Read environment and config.json into a ``Settings`` value."""

    load_dotenv()
    path = config_path or os.getenv("OPSROUTE_CONFIG") or DEFAULT_CONFIG_PATH
    if not os.path.isabs(path):
        path = os.path.join(PROJECT_ROOT, path)
    raw = _load_json_config(path)

    bridge = raw.get("bridge", {})
    return Settings(
        config_path=path,
        db_path=os.getenv("OPSROUTE_DB_PATH") or raw.get("db_path") or DEFAULT_DB_PATH,
        engine=_engine_config(raw),
        bridge_url=os.getenv("WHATSAPP_BRIDGE_URL") or bridge.get("url"),
        bridge_token=os.getenv("WHATSAPP_BRIDGE_TOKEN"),
        seed={key: raw.get(key, []) for key in ("categories", "channels", "rules")},
        logging=raw.get("logging", {}),
    )
