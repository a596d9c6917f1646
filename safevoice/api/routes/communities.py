"""
safevoice.api.routes.communities — Communities, memberships & moderation
==========================================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from safevoice.api.deps import Runtime, StudentId
from safevoice.engine.community import settings_key

router = APIRouter(tags=["communities"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SettingsUpdate(BaseModel):
    notify_on_post: bool | None = None
    notify_on_mention: bool | None = None
    notify_on_reply: bool | None = None
    mute_all: bool | None = None


class MarkReadIn(BaseModel):
    channel_id: str | None = None


class MuteIn(BaseModel):
    muted: bool


class PinIn(BaseModel):
    duration_hours: int | None = None


class ReasonIn(BaseModel):
    reason: str = ""


class TimedReasonIn(BaseModel):
    reason: str = ""
    duration_hours: int


class AnnouncementIn(BaseModel):
    title: str
    content: str


class ModeratorActionIn(BaseModel):
    action_type: str
    target_id: str
    metadata: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Communities & memberships
# ---------------------------------------------------------------------------
@router.get("/communities")
async def list_communities(runtime: Runtime):
    communities = sorted(runtime.community.communities.values(), key=lambda c: c.name)
    return [c.to_dict() for c in communities]


@router.get("/communities/mine")
async def my_memberships(runtime: Runtime, student_id: StudentId):
    return [m.to_dict() for m in runtime.community.memberships_for(student_id)]


@router.get("/communities/{community_id}")
async def get_community(community_id: str, runtime: Runtime):
    community = runtime.community.get_community(community_id)
    return {
        **community.to_dict(),
        "channels": [c.to_dict() for c in runtime.community.channels_for(community_id)],
        "announcements": [a.to_dict() for a in runtime.community.announcements_for(community_id)],
    }


@router.post("/communities/{community_id}/join")
async def join(community_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.community.join(community_id, student_id).to_dict()


@router.post("/communities/{community_id}/leave")
async def leave(community_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.community.leave(community_id, student_id).to_dict()


@router.post("/communities/{community_id}/read")
async def mark_read(community_id: str, body: MarkReadIn, runtime: Runtime, student_id: StudentId):
    membership = runtime.community.mark_read(community_id, student_id, body.channel_id)
    return {"unread_count": membership.unread_count, "channel_unread_counts": membership.channel_unread_counts}


@router.put("/communities/{community_id}/mute")
async def set_muted(community_id: str, body: MuteIn, runtime: Runtime, student_id: StudentId):
    """Mute or unmute the whole community for the caller; fan-out skips muted members."""
    return runtime.community.set_membership_muted(community_id, student_id, body.muted).to_dict()


@router.get("/communities/{community_id}/settings")
async def get_settings(community_id: str, runtime: Runtime, student_id: StudentId):
    runtime.community.require_membership(community_id, student_id)
    return runtime.community.get_settings(community_id, student_id).to_dict()


@router.patch("/communities/{community_id}/settings")
async def update_settings(community_id: str, body: SettingsUpdate, runtime: Runtime, student_id: StudentId):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    return runtime.community.update_settings(community_id, student_id, **changes).to_dict()


@router.post("/communities/{community_id}/channels/{channel_id}/toggle")
async def toggle_channel(community_id: str, channel_id: str, runtime: Runtime, student_id: StudentId):
    enabled = runtime.community.toggle_channel(community_id, student_id, channel_id)
    settings = runtime.community.settings[settings_key(community_id, student_id)]
    return {"enabled": enabled, "mute_all": settings.mute_all}


# ---------------------------------------------------------------------------
# Community moderation
# ---------------------------------------------------------------------------
@router.get("/communities/{community_id}/moderation/log")
async def moderation_log(community_id: str, runtime: Runtime, student_id: StudentId):
    runtime.community.get_community(community_id)
    if not runtime.community.is_moderator(student_id, community_id):
        raise HTTPException(403, "Not a moderator")
    return [e.to_dict() for e in runtime.community.log_for(community_id)]


@router.post("/communities/{community_id}/posts/{post_id}/pin")
async def pin_post(community_id: str, post_id: str, body: PinIn, runtime: Runtime, student_id: StudentId):
    return runtime.moderation.pin_post(student_id, community_id, post_id, body.duration_hours).to_dict()


@router.delete("/communities/{community_id}/posts/{post_id}/pin")
async def unpin_post(community_id: str, post_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.moderation.unpin_post(student_id, community_id, post_id).to_dict()


@router.post("/communities/{community_id}/posts/{post_id}/remove")
async def remove_post(community_id: str, post_id: str, body: ReasonIn, runtime: Runtime, student_id: StudentId):
    return runtime.moderation.delete_post(student_id, community_id, post_id, body.reason).to_dict()


@router.post("/communities/{community_id}/members/{member_id}/ban")
async def ban_member(
    community_id: str, member_id: str, body: TimedReasonIn, runtime: Runtime, student_id: StudentId,
):
    entry = runtime.moderation.ban_member(student_id, community_id, member_id, body.reason, body.duration_hours)
    return entry.to_dict()


@router.post("/communities/{community_id}/members/{member_id}/warn")
async def warn_member(community_id: str, member_id: str, body: ReasonIn, runtime: Runtime, student_id: StudentId):
    return runtime.moderation.warn_member(student_id, community_id, member_id, body.reason).to_dict()


@router.post("/communities/{community_id}/channels/{channel_id}/mute")
async def mute_channel(
    community_id: str, channel_id: str, body: TimedReasonIn, runtime: Runtime, student_id: StudentId,
):
    entry = runtime.moderation.mute_channel(student_id, community_id, channel_id, body.reason, body.duration_hours)
    return entry.to_dict()


@router.delete("/communities/{community_id}/channels/{channel_id}/mute")
async def unmute_channel(community_id: str, channel_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.moderation.unmute_channel(student_id, community_id, channel_id).to_dict()


@router.post("/communities/{community_id}/announcements", status_code=201)
async def post_announcement(community_id: str, body: AnnouncementIn, runtime: Runtime, student_id: StudentId):
    return runtime.moderation.post_announcement(student_id, community_id, body.title, body.content).to_dict()


# ---------------------------------------------------------------------------
# Volunteer moderation (global feed)
# ---------------------------------------------------------------------------
@router.post("/moderation/actions", status_code=201)
async def moderator_action(body: ModeratorActionIn, runtime: Runtime, student_id: StudentId):
    action = runtime.moderation.record_moderator_action(
        student_id, body.action_type, body.target_id, body.metadata,
    )
    return action.to_dict()


@router.get("/moderation/actions")
async def list_moderator_actions(runtime: Runtime, student_id: StudentId):
    if not runtime.community.is_moderator(student_id):
        raise HTTPException(403, "Not a moderator")
    return [a.to_dict() for a in runtime.moderation.actions_for()]
