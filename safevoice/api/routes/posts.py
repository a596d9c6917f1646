"""
safevoice.api.routes.posts — Posts, comments, reactions & reports
===================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from safevoice.api.deps import Runtime, StudentId
from safevoice.engine.entities import Lifetime, Post
from safevoice.services.collaborators import ModerationResult

router = APIRouter(prefix="/posts", tags=["posts"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ModerationIn(BaseModel):
    blocked: bool = False
    issues: list[str] = Field(default_factory=list)
    needs_review: bool = False


class PostCreate(BaseModel):
    content: str
    category: str | None = None
    lifetime: str = Lifetime.NEVER.value
    custom_hours: int | None = None
    image_url: str | None = None
    encrypted: bool = False
    moderation: ModerationIn | None = None
    community_id: str | None = None
    channel_id: str | None = None
    visibility: str = "public"
    is_anonymous: bool = True


class PostUpdate(BaseModel):
    content: str | None = None
    lifetime: str | None = None
    custom_hours: int | None = None


class ReactionIn(BaseModel):
    kind: str


class CommentCreate(BaseModel):
    content: str
    parent_id: str | None = None


class CommentUpdate(BaseModel):
    content: str


class ReportCreate(BaseModel):
    report_type: str
    description: str = ""
    comment_id: str | None = None


class BoostIn(BaseModel):
    kind: str
    hours: int | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _post_dict(post: Post) -> dict:
    data = post.to_dict()
    data["total_reactions"] = post.total_reactions
    return data


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
@router.get("")
async def list_posts(
    runtime: Runtime,
    community_id: str | None = None,
    channel_id: str | None = None,
    include_archived: bool = False,
    limit: int = Query(50, ge=1, le=200),
):
    posts = runtime.store.list_posts(
        community_id=community_id, channel_id=channel_id, include_archived=include_archived,
    )
    return [_post_dict(p) for p in posts[:limit]]


@router.post("", status_code=201)
async def create_post(body: PostCreate, runtime: Runtime, student_id: StudentId):
    moderation = None
    if body.moderation is not None:
        moderation = ModerationResult(
            blocked=body.moderation.blocked,
            issues=tuple(body.moderation.issues),
            needs_review=body.moderation.needs_review,
        )
    post = runtime.store.create_post(
        student_id,
        body.content,
        category=body.category,
        lifetime=body.lifetime,
        custom_hours=body.custom_hours,
        image_url=body.image_url,
        encrypted=body.encrypted,
        moderation=moderation,
        community_id=body.community_id,
        channel_id=body.channel_id,
        visibility=body.visibility,
        is_anonymous=body.is_anonymous,
    )
    return _post_dict(post)


@router.get("/bookmarks")
async def list_bookmarks(runtime: Runtime, student_id: StudentId):
    return [_post_dict(p) for p in runtime.store.bookmarked_posts(student_id)]


@router.get("/{post_id}")
async def get_post(post_id: str, runtime: Runtime):
    return _post_dict(runtime.store.get_post(post_id))


@router.patch("/{post_id}")
async def update_post(post_id: str, body: PostUpdate, runtime: Runtime, student_id: StudentId):
    post = runtime.store.edit_post(
        post_id, student_id,
        content=body.content, lifetime=body.lifetime, custom_hours=body.custom_hours,
    )
    return _post_dict(post)


@router.delete("/{post_id}")
async def delete_post(post_id: str, runtime: Runtime, student_id: StudentId):
    runtime.store.delete_post(post_id, student_id)
    return {"ok": True}


@router.post("/{post_id}/reactions")
async def react(post_id: str, body: ReactionIn, runtime: Runtime, student_id: StudentId):
    post = runtime.store.react(post_id, student_id, body.kind)
    return {"reactions": post.reactions, "total_reactions": post.total_reactions, "is_viral": post.is_viral}


@router.post("/{post_id}/helpful")
async def mark_helpful(post_id: str, runtime: Runtime, student_id: StudentId):
    post = runtime.store.mark_post_helpful(post_id, student_id)
    return {"helpful_count": post.helpful_count}


@router.post("/{post_id}/bookmark")
async def toggle_bookmark(post_id: str, runtime: Runtime, student_id: StudentId):
    return {"bookmarked": runtime.store.toggle_bookmark(post_id, student_id)}


@router.post("/{post_id}/pin")
async def toggle_pin(post_id: str, runtime: Runtime, student_id: StudentId):
    return {"pinned": runtime.store.toggle_pin(post_id, student_id)}


@router.post("/{post_id}/extend")
async def extend_post(post_id: str, runtime: Runtime, student_id: StudentId):
    post = runtime.store.extend_post(post_id, student_id)
    return {"expires_at": post.expires_at, "balance": runtime.ledger.balance(student_id)}


@router.post("/{post_id}/boost")
async def boost_post(post_id: str, body: BoostIn, runtime: Runtime, student_id: StudentId):
    runtime.store.boost_post(post_id, student_id, body.kind, body.hours)
    return {"ok": True, "balance": runtime.ledger.balance(student_id)}


@router.post("/{post_id}/reports", status_code=201)
async def report_post(post_id: str, body: ReportCreate, runtime: Runtime, student_id: StudentId):
    report = runtime.store.report(
        student_id, body.report_type, body.description, post_id=post_id, comment_id=body.comment_id,
    )
    return report.to_dict()


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------
@router.post("/{post_id}/comments", status_code=201)
async def add_comment(post_id: str, body: CommentCreate, runtime: Runtime, student_id: StudentId):
    comment = runtime.store.add_comment(post_id, student_id, body.content, body.parent_id)
    return comment.to_dict()


@router.patch("/{post_id}/comments/{comment_id}")
async def edit_comment(
    post_id: str, comment_id: str, body: CommentUpdate, runtime: Runtime, student_id: StudentId,
):
    return runtime.store.edit_comment(post_id, comment_id, student_id, body.content).to_dict()


@router.delete("/{post_id}/comments/{comment_id}")
async def delete_comment(post_id: str, comment_id: str, runtime: Runtime, student_id: StudentId):
    return {"removed": runtime.store.delete_comment(post_id, comment_id, student_id)}


@router.post("/{post_id}/comments/{comment_id}/reactions")
async def react_to_comment(
    post_id: str, comment_id: str, body: ReactionIn, runtime: Runtime, student_id: StudentId,
):
    comment = runtime.store.react_to_comment(post_id, comment_id, student_id, body.kind)
    return {"reactions": comment.reactions}


@router.post("/{post_id}/comments/{comment_id}/helpful")
async def mark_comment_helpful(post_id: str, comment_id: str, runtime: Runtime, student_id: StudentId):
    comment = runtime.store.mark_comment_helpful(post_id, comment_id, student_id)
    return {"helpful_votes": comment.helpful_votes, "rewarded": comment.helpful_reward_awarded}
