"""
tests/test_moderation_log.py — Unit Tests for Privileged Actions
=================================================================

Capability checks, audit entries, and the 5-minute reward cooldown for
both volunteer (global feed) and community-scoped moderation.
"""

from __future__ import annotations

import pytest

from conftest import COMMUNITY, GENERAL, MODERATOR, earn_reasons, kinds
from safevoice.constants import MINUTE_MS
from safevoice.engine.community import MemberRole
from safevoice.errors import NotFound, PermissionDenied, ValidationError


@pytest.fixture
def moderation(runtime):
    return runtime.moderation


@pytest.fixture
def community_post(runtime):
    runtime.community.join(COMMUNITY, "s1")
    return runtime.store.create_post("s1", "campus post", community_id=COMMUNITY, channel_id=GENERAL)


# ===========================================================================
# Volunteer actions
# ===========================================================================
class TestVolunteerActions:
    def test_blur_hide_restore(self, runtime, moderation):
        post = runtime.store.create_post("s1", "sensitive")
        moderation.record_moderator_action(MODERATOR, "blur_post", post.id)
        assert post.is_blurred

        moderation.record_moderator_action(MODERATOR, "hide_post", post.id)
        assert post.is_hidden
        assert runtime.store.list_posts() == []

        moderation.record_moderator_action(MODERATOR, "restore_post", post.id)
        assert not post.is_blurred and not post.is_hidden

    def test_cooldown_suppresses_credit_not_action(self, runtime, moderation, clock, runtime_events):
        first = runtime.store.create_post("s1", "one")
        second = runtime.store.create_post("s1", "two")

        a = moderation.record_moderator_action(MODERATOR, "blur_post", first.id)
        b = moderation.record_moderator_action(MODERATOR, "blur_post", second.id)

        assert (a.rewarded, b.rewarded) == (True, False)
        assert second.is_blurred
        assert len(moderation.actions_for(MODERATOR)) == 2
        assert earn_reasons(runtime.ledger, MODERATOR) == ["Sensitive content blurred"]
        assert "moderator_cooldown" in kinds(runtime_events)

        clock.advance(5 * MINUTE_MS + 1)
        c = moderation.record_moderator_action(MODERATOR, "blur_post", first.id)
        assert c.rewarded

    def test_cooldown_is_per_action_type(self, runtime, moderation):
        post = runtime.store.create_post("s1", "one")
        moderation.record_moderator_action(MODERATOR, "blur_post", post.id)
        hide = moderation.record_moderator_action(MODERATOR, "hide_post", post.id)
        assert hide.rewarded

    def test_non_moderator_changes_nothing(self, runtime, moderation):
        post = runtime.store.create_post("s1", "one")
        with pytest.raises(PermissionDenied):
            moderation.record_moderator_action("s2", "hide_post", post.id)
        assert not post.is_hidden
        assert moderation.actions == []
        assert runtime.ledger.balance("s2") == 0

    def test_unknown_action(self, moderation):
        with pytest.raises(ValidationError):
            moderation.record_moderator_action(MODERATOR, "nuke_post", "p1")

    def test_review_report_and_verify_advice(self, runtime, moderation):
        post = runtime.store.create_post("s1", "question")
        report = runtime.store.report("s2", "spam", post_id=post.id)
        comment = runtime.store.add_comment(post.id, "s3", "answer")

        moderation.record_moderator_action(MODERATOR, "review_report", report.id, {"accepted": False})
        moderation.record_moderator_action(MODERATOR, "verify_advice", comment.id)

        assert report.status == "dismissed"
        assert comment.is_verified_advice
        assert "Advice verified by moderator" in earn_reasons(runtime.ledger, "s3")

    def test_actions_persist(self, runtime, moderation, db_engine, clock, backend):
        from conftest import make_runtime

        post = runtime.store.create_post("s1", "one")
        moderation.record_moderator_action(MODERATOR, "blur_post", post.id)
        runtime.shutdown()

        restarted = make_runtime(db_engine, clock, backend)
        assert [a.target_id for a in restarted.moderation.actions] == [post.id]
        restarted.shutdown()


# ===========================================================================
# Community actions
# ===========================================================================
class TestCommunityActions:
    def test_pin_with_duration(self, runtime, moderation, community_post, backend):
        entry = moderation.pin_post(MODERATOR, COMMUNITY, community_post.id, duration_hours=2)
        assert community_post.is_pinned
        assert entry.metadata["rewarded"] is True
        assert runtime.community.post_meta[GENERAL].pinned_post_count == 1

        backend.advance(2 * 60 * MINUTE_MS)
        assert not community_post.is_pinned
        assert runtime.community.post_meta[GENERAL].pinned_post_count == 0

    def test_unpin(self, moderation, community_post):
        moderation.pin_post(MODERATOR, COMMUNITY, community_post.id)
        moderation.unpin_post(MODERATOR, COMMUNITY, community_post.id)
        assert not community_post.is_pinned

    def test_delete_requires_reason(self, runtime, moderation, community_post):
        with pytest.raises(ValidationError):
            moderation.delete_post(MODERATOR, COMMUNITY, community_post.id, "  ")
        moderation.delete_post(MODERATOR, COMMUNITY, community_post.id, "off topic")
        assert community_post.id not in runtime.store.posts

    def test_post_from_other_community_rejected(self, runtime, moderation):
        post = runtime.store.create_post("s1", "global feed")
        with pytest.raises(ValidationError):
            moderation.pin_post(MODERATOR, COMMUNITY, post.id)

    def test_community_role_grants_capability(self, runtime, moderation, community_post):
        runtime.community.join(COMMUNITY, "lead")
        with pytest.raises(PermissionDenied):
            moderation.pin_post("lead", COMMUNITY, community_post.id)
        runtime.community.set_role(COMMUNITY, "lead", MemberRole.MODERATOR)
        moderation.pin_post("lead", COMMUNITY, community_post.id)
        assert community_post.is_pinned

    def test_unknown_community(self, moderation):
        with pytest.raises(NotFound):
            moderation.warn_member(MODERATOR, "community-nowhere", "s1", "rude")

    def test_ban_member(self, runtime, moderation, community_post, clock):
        entry = moderation.ban_member(MODERATOR, COMMUNITY, "s1", "spam", 24)
        membership = runtime.community.membership(COMMUNITY, "s1")
        status = runtime.community.member_status(COMMUNITY, "s1")

        assert membership.banned_until == clock.now_ms() + 24 * 60 * MINUTE_MS
        assert status.ban_reason == "spam"
        assert entry.description == "Banned for 24h: spam"

    def test_ban_validation(self, runtime, moderation, community_post):
        runtime.community.join(COMMUNITY, MODERATOR)
        with pytest.raises(ValidationError):
            moderation.ban_member(MODERATOR, COMMUNITY, MODERATOR, "self", 1)
        with pytest.raises(ValidationError):
            moderation.ban_member(MODERATOR, COMMUNITY, "s1", "spam", 0)
        with pytest.raises(ValidationError):
            moderation.ban_member(MODERATOR, COMMUNITY, "stranger", "spam", 1)

    def test_warnings_accumulate(self, runtime, moderation, community_post):
        moderation.warn_member(MODERATOR, COMMUNITY, "s1", "rude")
        entry = moderation.warn_member(MODERATOR, COMMUNITY, "s1", "rude again")
        assert entry.metadata["warning_count"] == 2
        assert [w["reason"] for w in runtime.community.member_status(COMMUNITY, "s1").warnings] == [
            "rude", "rude again",
        ]

    def test_mute_blocks_members_until_unmuted(self, runtime, moderation, community_post):
        moderation.mute_channel(MODERATOR, COMMUNITY, GENERAL, "cool down", 1)
        assert runtime.community.is_channel_muted(GENERAL)
        with pytest.raises(PermissionDenied):
            runtime.store.create_post("s1", "hi", community_id=COMMUNITY, channel_id=GENERAL)

        moderation.unmute_channel(MODERATOR, COMMUNITY, GENERAL)
        runtime.store.create_post("s1", "hi", community_id=COMMUNITY, channel_id=GENERAL)

    def test_announcement(self, runtime, moderation):
        announcement = moderation.post_announcement(MODERATOR, COMMUNITY, "Exams", "Good luck!")
        assert runtime.community.announcements_for(COMMUNITY) == [announcement]
        with pytest.raises(ValidationError):
            moderation.post_announcement(MODERATOR, COMMUNITY, "", "body")

    def test_log_newest_first_and_cooldown_shared(self, runtime, moderation, community_post, runtime_events):
        moderation.warn_member(MODERATOR, COMMUNITY, "s1", "one")
        moderation.warn_member(MODERATOR, COMMUNITY, "s1", "two")

        log = runtime.community.log_for(COMMUNITY)
        assert [e.description for e in log] == ["Warned: two", "Warned: one"]
        assert [e.metadata["rewarded"] for e in log] == [False, True]
        assert kinds(runtime_events).count("moderation_logged") == 2

    def test_log_cap_is_per_community(self, runtime, moderation):
        from safevoice.constants import MAX_MODERATION_LOG_ENTRIES

        other = "community-iit-d"
        runtime.community.join(other, "s9")
        runtime.community.join(COMMUNITY, "s1")
        moderation.warn_member(MODERATOR, other, "s9", "quiet")
        for i in range(MAX_MODERATION_LOG_ENTRIES):
            moderation.warn_member(MODERATOR, COMMUNITY, "s1", f"warn {i}")

        assert [e.description for e in runtime.community.log_for(other)] == ["Warned: quiet"]
        busy = runtime.community.log_for(COMMUNITY)
        assert len(busy) == MAX_MODERATION_LOG_ENTRIES

        moderation.warn_member(MODERATOR, COMMUNITY, "s1", "one more")
        busy = runtime.community.log_for(COMMUNITY)
        assert len(busy) == MAX_MODERATION_LOG_ENTRIES
        assert busy[0].description == "Warned: one more"
        assert busy[-1].description == "Warned: warn 1"
        assert len(runtime.community.log_for(other)) == 1
