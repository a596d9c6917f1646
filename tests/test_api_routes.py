"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Drives the HTTP surface with the FastAPI TestClient.

The TestClient is used without its context manager, so the lifespan hook
never runs; each test installs a manually-clocked runtime on
``app.state`` instead.

These tests verify:
- Bearer-token guards
- Error → status-code mapping (400 / 402 / 403 / 404)
- Basic response structure of post, wallet and community endpoints
"""

from __future__ import annotations

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import COMMUNITY, GENERAL, MODERATOR, make_token
from safevoice.api.deps import JWT_ALGORITHM


@pytest.fixture
def app(runtime):
    from safevoice.api.main import app

    app.state.runtime = runtime
    yield app
    del app.state.runtime


@pytest.fixture
def client(app):
    """Create a FastAPI TestClient."""
    return TestClient(app, raise_server_exceptions=False)


def _auth(student_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(student_id)}"}


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_reports_store_counts(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["posts"] == 0
        assert body["communities"] > 0

    def test_health_before_startup(self):
        from safevoice.api.main import app

        resp = TestClient(app).get("/api/health")
        assert resp.json() == {"status": "starting"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    PROTECTED = [
        ("post", "/api/posts"),
        ("get", "/api/wallet"),
        ("get", "/api/notifications"),
        ("get", "/api/posts/bookmarks"),
        ("post", f"/api/communities/{COMMUNITY}/join"),
    ]

    @pytest.mark.parametrize("method, path", PROTECTED)
    def test_no_token_returns_401(self, client, method, path):
        resp = client.request(method.upper(), path, json={"content": "x"})
        assert resp.status_code == 401

    def test_invalid_token_returns_401(self, client):
        resp = client.get("/api/wallet", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401

    def test_wrong_secret_returns_401(self, client):
        forged = jwt.encode({"sub": "s1"}, "some-other-secret-that-is-long-enough!!", algorithm=JWT_ALGORITHM)
        resp = client.get("/api/wallet", headers={"Authorization": f"Bearer {forged}"})
        assert resp.status_code == 401

    def test_token_without_subject_returns_401(self, client):
        from safevoice.api.deps import JWT_SECRET

        token = jwt.encode({"name": "nobody"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        resp = client.get("/api/wallet", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


# ===========================================================================
# Posts
# ===========================================================================
class TestPostRoutes:
    def test_create_and_list(self, client):
        resp = client.post("/api/posts", json={"content": "hello campus", "lifetime": "24h"}, headers=_auth("s1"))
        assert resp.status_code == 201
        post = resp.json()
        assert post["author_id"] == "s1"
        assert post["expires_at"] is not None
        assert post["total_reactions"] == 0

        listed = client.get("/api/posts").json()
        assert [p["id"] for p in listed] == [post["id"]]

    def test_validation_error_is_400(self, client):
        resp = client.post("/api/posts", json={"content": "  "}, headers=_auth("s1"))
        assert resp.status_code == 400

    def test_unknown_post_is_404(self, client):
        assert client.get("/api/posts/missing").status_code == 404

    def test_insufficient_balance_is_402(self, client):
        post = client.post("/api/posts", json={"content": "hi"}, headers=_auth("s1")).json()
        resp = client.post(f"/api/posts/{post['id']}/boost", json={"kind": "cross_campus"}, headers=_auth("s1"))
        assert resp.status_code == 402
        assert resp.json()["required"] == 25
        assert resp.json()["available"] == 20

    def test_other_author_delete_is_403(self, client):
        post = client.post("/api/posts", json={"content": "hi"}, headers=_auth("s1")).json()
        assert client.delete(f"/api/posts/{post['id']}", headers=_auth("s2")).status_code == 403
        assert client.delete(f"/api/posts/{post['id']}", headers=_auth("s1")).status_code == 200

    def test_comment_react_and_notify(self, client):
        post = client.post("/api/posts", json={"content": "hi"}, headers=_auth("s1")).json()
        resp = client.post(f"/api/posts/{post['id']}/comments", json={"content": "hey"}, headers=_auth("s2"))
        assert resp.status_code == 201
        resp = client.post(f"/api/posts/{post['id']}/reactions", json={"kind": "heart"}, headers=_auth("s2"))
        assert resp.json()["total_reactions"] == 1

        notes = client.get("/api/notifications", headers=_auth("s1")).json()
        assert [n["type"] for n in notes] == ["reaction", "comment"]
        resp = client.post("/api/notifications/read-all", headers=_auth("s1"))
        assert resp.json() == {"updated": 2}


# ===========================================================================
# Wallet
# ===========================================================================
class TestWalletRoutes:
    def test_wallet_after_first_post(self, client):
        client.post("/api/posts", json={"content": "hi"}, headers=_auth("s1"))
        wallet = client.get("/api/wallet", headers=_auth("s1")).json()
        assert wallet["balance"] == 20
        assert wallet["breakdown"]["posts"] == 20
        assert wallet["verified"] is True

        txs = client.get("/api/wallet/transactions", headers=_auth("s1")).json()
        assert [t["reason"] for t in txs] == ["First post bonus"]

    def test_daily_login_once_per_day(self, client):
        first = client.post("/api/wallet/daily-login", headers=_auth("s1")).json()
        second = client.post("/api/wallet/daily-login", headers=_auth("s1")).json()
        assert (first["awarded"], first["streak"]) == (True, 1)
        assert second["awarded"] is False

    def test_subscription_without_balance_is_402(self, client):
        resp = client.post("/api/wallet/subscriptions/analytics", headers=_auth("s1"))
        assert resp.status_code == 402

    def test_unknown_plan_is_400(self, client):
        resp = client.post("/api/wallet/subscriptions/gold", headers=_auth("s1"))
        assert resp.status_code == 400

    def test_catalog(self, client):
        body = client.get("/api/wallet/catalog").json()
        assert body["spend"]["cross_campus_boost"] == 25
        assert "verified_badge" in body["subscriptions"]

    def test_referral_join_and_summary(self, client):
        code = client.get("/api/referrals", headers=_auth("s1")).json()["code"]
        resp = client.post("/api/referrals/join", json={"code": code}, headers=_auth("s2"))
        assert resp.status_code == 201
        assert resp.json()["referrer_id"] == "s1"

        again = client.post("/api/referrals/join", json={"code": code}, headers=_auth("s2"))
        assert again.status_code == 400
        unknown = client.post("/api/referrals/join", json={"code": "NOPE0000"}, headers=_auth("s3"))
        assert unknown.status_code == 404

        summary = client.get("/api/referrals", headers=_auth("s1")).json()
        assert [f["friend_id"] for f in summary["friends"]] == ["s2"]
        assert client.get("/api/wallet", headers=_auth("s1")).json()["breakdown"]["referrals"] == 50


# ===========================================================================
# Communities & moderation
# ===========================================================================
class TestCommunityRoutes:
    def test_join_post_and_unread(self, client):
        client.post(f"/api/communities/{COMMUNITY}/join", headers=_auth("s1"))
        client.post(f"/api/communities/{COMMUNITY}/join", headers=_auth("s2"))
        resp = client.post(
            "/api/posts",
            json={"content": "hi all", "community_id": COMMUNITY, "channel_id": GENERAL},
            headers=_auth("s1"),
        )
        assert resp.status_code == 201

        mine = client.get("/api/communities/mine", headers=_auth("s2")).json()
        assert [m["unread_count"] for m in mine] == [1]
        read = client.post(f"/api/communities/{COMMUNITY}/read", json={}, headers=_auth("s2")).json()
        assert read["unread_count"] == 0

    def test_muted_member_skips_unread(self, client):
        client.post(f"/api/communities/{COMMUNITY}/join", headers=_auth("s1"))
        client.post(f"/api/communities/{COMMUNITY}/join", headers=_auth("s2"))
        resp = client.put(f"/api/communities/{COMMUNITY}/mute", json={"muted": True}, headers=_auth("s2"))
        assert resp.json()["is_muted"] is True

        client.post(
            "/api/posts",
            json={"content": "hi all", "community_id": COMMUNITY, "channel_id": GENERAL},
            headers=_auth("s1"),
        )
        mine = client.get("/api/communities/mine", headers=_auth("s2")).json()
        assert [m["unread_count"] for m in mine] == [0]

        client.put(f"/api/communities/{COMMUNITY}/mute", json={"muted": False}, headers=_auth("s2"))
        client.post(
            "/api/posts",
            json={"content": "again", "community_id": COMMUNITY, "channel_id": GENERAL},
            headers=_auth("s1"),
        )
        mine = client.get("/api/communities/mine", headers=_auth("s2")).json()
        assert [m["unread_count"] for m in mine] == [1]

    def test_mute_requires_membership(self, client):
        resp = client.put(f"/api/communities/{COMMUNITY}/mute", json={"muted": True}, headers=_auth("s9"))
        assert resp.status_code == 400

    def test_community_detail(self, client):
        body = client.get(f"/api/communities/{COMMUNITY}").json()
        assert GENERAL in [c["id"] for c in body["channels"]]
        assert client.get("/api/communities/community-nowhere").status_code == 404

    def test_empty_settings_patch_is_400(self, client):
        client.post(f"/api/communities/{COMMUNITY}/join", headers=_auth("s1"))
        resp = client.patch(f"/api/communities/{COMMUNITY}/settings", json={}, headers=_auth("s1"))
        assert resp.status_code == 400
        resp = client.patch(
            f"/api/communities/{COMMUNITY}/settings", json={"mute_all": True}, headers=_auth("s1"),
        )
        assert resp.json()["mute_all"] is True

    def test_moderation_requires_capability(self, client):
        resp = client.post(
            f"/api/communities/{COMMUNITY}/announcements",
            json={"title": "Hi", "content": "Body"},
            headers=_auth("s1"),
        )
        assert resp.status_code == 403
        assert client.get(f"/api/communities/{COMMUNITY}/moderation/log", headers=_auth("s1")).status_code == 403
        assert client.get("/api/moderation/actions", headers=_auth("s1")).status_code == 403

    def test_moderator_announcement_and_log(self, client):
        resp = client.post(
            f"/api/communities/{COMMUNITY}/announcements",
            json={"title": "Exams", "content": "Good luck"},
            headers=_auth(MODERATOR),
        )
        assert resp.status_code == 201
        log = client.get(f"/api/communities/{COMMUNITY}/moderation/log", headers=_auth(MODERATOR)).json()
        assert [e["action_type"] for e in log] == ["post_announcement"]

    def test_volunteer_action(self, client):
        post = client.post("/api/posts", json={"content": "hmm"}, headers=_auth("s1")).json()
        resp = client.post(
            "/api/moderation/actions",
            json={"action_type": "blur_post", "target_id": post["id"]},
            headers=_auth(MODERATOR),
        )
        assert resp.status_code == 201
        assert resp.json()["rewarded"] is True
        assert client.get(f"/api/posts/{post['id']}").json()["is_blurred"] is True


# ===========================================================================
# Memorial wall
# ===========================================================================
class TestMemorialRoutes:
    def test_tribute_and_candle(self, client):
        resp = client.post(
            "/api/memorial/tributes",
            json={"person_name": "Jane Smith", "message": "Forever in our hearts"},
            headers=_auth("s1"),
        )
        assert resp.status_code == 201
        tribute = resp.json()

        lit = client.post(f"/api/memorial/tributes/{tribute['id']}/candles", headers=_auth("s2"))
        assert lit.status_code == 201
        assert lit.json()["candle_count"] == 1

        listed = client.get("/api/memorial/tributes").json()
        assert [t["id"] for t in listed] == [tribute["id"]]
        assert len(listed[0]["candles"]) == 1

    def test_validation_and_unknown_tribute(self, client):
        resp = client.post("/api/memorial/tributes", json={"person_name": "", "message": "m"}, headers=_auth("s1"))
        assert resp.status_code == 400
        resp = client.post("/api/memorial/tributes/missing/candles", headers=_auth("s1"))
        assert resp.status_code == 404
