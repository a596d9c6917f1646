"""
safevoice.services.community_seed — Default communities
========================================================

Builds the default campus communities and their channels from
``seeds/communities.yaml``.  The Post Store writes the result once per
:data:`~safevoice.constants.COMMUNITY_SEED_VERSION`; bumping the version
re-seeds exactly once on the next load.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from safevoice.engine.community import Channel, ChannelPostMeta, Community

logger = logging.getLogger(__name__)

# Resolve the seeds directory relative to the project root
_SEEDS_DIR = Path(__file__).resolve().parent.parent.parent / "seeds"


@dataclass(slots=True)
class CommunitySeed:
    communities: list[Community] = field(default_factory=list)
    channels: list[Channel] = field(default_factory=list)
    post_meta: list[ChannelPostMeta] = field(default_factory=list)


def community_id(code: str) -> str:
    return f"community-{code.lower()}"


def channel_id(code: str, kind: str) -> str:
    return f"channel-{code.lower()}-{kind}"


def _slug(text: str) -> str:
    return "-".join(text.lower().replace("&", "and").split())


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        logger.warning("Seed file not found: %s", path)
        return {}
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    return data if isinstance(data, dict) else {}


def build_default_seed(now_ms: int, path: Path | None = None) -> CommunitySeed:
    """Materialise every community × channel from the seed file."""
    data = _load_yaml(path or _SEEDS_DIR / "communities.yaml")
    channel_defs = data.get("channels") or []
    rules = list(data.get("rules") or [])

    seed = CommunitySeed()
    for item in data.get("communities") or []:
        code = item["code"]
        cid = community_id(code)
        seed.communities.append(
            Community(
                id=cid,
                name=item["name"],
                slug=_slug(item["name"]),
                short_code=code,
                description=item.get("description", ""),
                city=item.get("city", ""),
                state=item.get("state", ""),
                country=item.get("country", "India"),
                rules=rules,
                tags=list(item.get("tags") or []),
                created_at=now_ms,
                last_activity_at=now_ms,
                is_verified=True,
            )
        )
        for channel in channel_defs:
            chid = channel_id(code, channel["kind"])
            seed.channels.append(
                Channel(
                    id=chid,
                    community_id=cid,
                    kind=channel["kind"],
                    name=channel["name"],
                    slug=_slug(channel["name"]),
                    description=channel.get("description", ""),
                    icon=channel.get("icon", ""),
                    order=int(channel.get("order", 0)),
                    last_activity_at=now_ms,
                    is_default=bool(channel.get("is_default", False)),
                    is_locked=bool(channel.get("is_locked", False)),
                    created_at=now_ms,
                    rules=rules,
                )
            )
            seed.post_meta.append(ChannelPostMeta(channel_id=chid, community_id=cid))

    logger.info(
        "Built community seed: %d communities, %d channels",
        len(seed.communities), len(seed.channels),
    )
    return seed
