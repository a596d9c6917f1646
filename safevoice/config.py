"""
safevoice.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for **infrastructure-only** settings (community
identity, dashboard port, volunteer moderators, claim settlement).  The
$VOICE economy and lifecycle tuning live in :mod:`safevoice.constants`.

Usage::

    from safevoice.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.community_name)        # "SafeVoice"
    print(cfg.moderator_ids)         # ("Student#1001",)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SafeVoiceConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Dashboard
    dashboard_port: int

    # Global volunteer-moderator capability
    moderator_ids: tuple[str, ...] = ()

    # Optional external claim settlement
    settlement_url: str | None = None
    settlement_timeout: float = 10.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> SafeVoiceConfig:
    """Read *path* and return a :class:`SafeVoiceConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return SafeVoiceConfig(
        community_name=raw["community_name"],
        dashboard_port=int(raw["dashboard_port"]),
        moderator_ids=tuple(str(m) for m in raw.get("moderator_ids") or ()),
        settlement_url=raw.get("settlement_url") or None,
        settlement_timeout=float(raw.get("settlement_timeout", 10.0)),
    )
