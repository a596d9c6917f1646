"""
tests/test_fanout.py — Unit Tests for Unread-Counter Fan-out
=============================================================

Pure precedence rules first, then the same rules through CommunityState
with real memberships and persisted settings.
"""

from __future__ import annotations

import pytest

from conftest import COMMUNITY, GENERAL
from safevoice.engine.community import Membership, NotificationSettings
from safevoice.engine.fanout import (
    fan_out_new_post,
    mark_community_read,
    should_increment_unread,
    toggle_channel_override,
)
from safevoice.errors import ValidationError

CID = "community-x"
CHANNEL = "channel-x-general"


def _member(student_id: str, **kw) -> Membership:
    return Membership(id=f"m-{student_id}", community_id=CID, student_id=student_id, **kw)


def _settings(student_id: str, **kw) -> NotificationSettings:
    return NotificationSettings(community_id=CID, student_id=student_id, **kw)


# ===========================================================================
# Precedence
# ===========================================================================
class TestShouldIncrementUnread:
    def test_author_excluded(self):
        assert not should_increment_unread(_member("a"), "a", CHANNEL, _settings("a"))

    def test_inactive_excluded(self):
        assert not should_increment_unread(_member("b", is_active=False), "a", CHANNEL, _settings("b"))

    def test_muted_membership_excluded(self):
        assert not should_increment_unread(_member("b", is_muted=True), "a", CHANNEL, _settings("b"))

    def test_mute_all_beats_channel_override(self):
        settings = _settings("b", mute_all=True, channel_overrides={CHANNEL: True})
        assert not should_increment_unread(_member("b"), "a", CHANNEL, settings)

    def test_override_true_beats_general_toggle_off(self):
        settings = _settings("b", notify_on_post=False, channel_overrides={CHANNEL: True})
        assert should_increment_unread(_member("b"), "a", CHANNEL, settings)

    def test_override_false_beats_general_toggle_on(self):
        settings = _settings("b", channel_overrides={CHANNEL: False})
        assert not should_increment_unread(_member("b"), "a", CHANNEL, settings)

    @pytest.mark.parametrize("notify, expected", [(True, True), (False, False)])
    def test_general_toggle_fallback(self, notify, expected):
        settings = _settings("b", notify_on_post=notify)
        assert should_increment_unread(_member("b"), "a", CHANNEL, settings) is expected

    def test_missing_settings_default_on(self):
        assert should_increment_unread(_member("b"), "a", CHANNEL, None)

    def test_effective_toggles_under_mute_all(self):
        settings = _settings("b", mute_all=True)
        assert settings.effective_toggles() == {"post": False, "mention": False, "reply": False}


class TestFanOut:
    def test_increments_each_eligible_membership_once(self):
        members = [_member("a"), _member("b"), _member("c", is_muted=True), _member("d")]
        settings = {"d": _settings("d", notify_on_post=False)}

        bumped = fan_out_new_post(members, settings, community_id=CID, author_id="a", channel_id=CHANNEL)

        assert [m.student_id for m in bumped] == ["b"]
        assert members[1].unread_count == 1
        assert members[1].channel_unread_counts == {CHANNEL: 1}
        assert [m.unread_count for m in (members[0], members[2], members[3])] == [0, 0, 0]

    def test_other_communities_untouched(self):
        other = Membership(id="m", community_id="community-y", student_id="b")
        fan_out_new_post([other], {}, community_id=CID, author_id="a", channel_id=None)
        assert other.unread_count == 0


class TestMarkRead:
    def test_whole_community(self):
        member = _member("b", unread_count=3, channel_unread_counts={CHANNEL: 2, "other": 1})
        mark_community_read(member, 1234)
        assert member.unread_count == 0
        assert set(member.channel_unread_counts.values()) == {0}
        assert member.last_visited_at == 1234

    def test_single_channel(self):
        member = _member("b", unread_count=3, channel_unread_counts={CHANNEL: 2, "other": 1})
        mark_community_read(member, 1234, CHANNEL)
        assert member.unread_count == 1
        assert member.channel_unread_counts == {CHANNEL: 0, "other": 1}
        assert member.channel_last_visited_at[CHANNEL] == 1234


class TestChannelToggle:
    def test_enabling_clears_mute_all_only(self):
        settings = _settings("b", mute_all=True, channel_overrides={"other": False})
        assert toggle_channel_override(settings, CHANNEL, 5) is True
        assert settings.mute_all is False
        assert settings.channel_overrides == {"other": False, CHANNEL: True}

    def test_disabling_keeps_mute_all(self):
        settings = _settings("b")
        assert toggle_channel_override(settings, CHANNEL, 5) is False
        assert settings.mute_all is False
        assert settings.channel_overrides[CHANNEL] is False


# ===========================================================================
# Through CommunityState
# ===========================================================================
class TestCommunityFanOut:
    def test_post_bumps_members_and_mark_read_resets(self, runtime):
        community = runtime.community
        for sid in ("author", "reader", "quiet"):
            community.join(COMMUNITY, sid)
        community.update_settings(COMMUNITY, "quiet", notify_on_post=False)

        runtime.store.create_post("author", "hello campus", community_id=COMMUNITY, channel_id=GENERAL)

        assert community.membership(COMMUNITY, "reader").unread_count == 1
        assert community.membership(COMMUNITY, "quiet").unread_count == 0
        assert community.membership(COMMUNITY, "author").unread_count == 0

        community.mark_read(COMMUNITY, "reader")
        assert community.membership(COMMUNITY, "reader").unread_count == 0

    def test_channel_toggle_reenables_quiet_member(self, runtime):
        community = runtime.community
        community.join(COMMUNITY, "author")
        community.join(COMMUNITY, "quiet")
        community.update_settings(COMMUNITY, "quiet", notify_on_post=False)
        community.toggle_channel(COMMUNITY, "quiet", GENERAL)

        runtime.store.create_post("author", "hi", community_id=COMMUNITY, channel_id=GENERAL)
        assert community.membership(COMMUNITY, "quiet").unread_count == 1

    def test_unknown_setting_rejected(self, runtime):
        runtime.community.join(COMMUNITY, "s1")
        with pytest.raises(ValidationError):
            runtime.community.update_settings(COMMUNITY, "s1", notify_on_everything=True)
        with pytest.raises(ValidationError):
            runtime.community.update_settings(COMMUNITY, "s1", mute_all="yes")

    def test_negative_counters_clamped_on_load(self, runtime, db_engine, clock, backend):
        from conftest import make_runtime

        runtime.community.join(COMMUNITY, "s1")
        raw = runtime.persistence.load("community_memberships")
        key = f"{COMMUNITY}:s1"
        raw[key]["unread_count"] = -4
        raw[key]["channel_unread_counts"] = {GENERAL: -2}
        runtime.persistence.save("community_memberships", raw)

        reloaded = make_runtime(db_engine, clock, backend)
        membership = reloaded.community.membership(COMMUNITY, "s1")
        assert membership.unread_count == 0
        assert membership.channel_unread_counts[GENERAL] == 0
        reloaded.shutdown()
