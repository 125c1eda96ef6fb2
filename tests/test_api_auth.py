"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth endpoints.

Uses the `api` fixture: a TestClient over in-memory stores, a recording
notifier and a controllable clock. Audit events are written inline (no
dispatcher thread), so they can be asserted right after each request.
"""

from audit.models import AuditAction, AuditFilters
from notify.sender import TemplateKind
from tests.helpers import ARABIC_INDIC_CODE, FIREFOX_UA, PASSWORD


def _events(api, action: AuditAction):
    return api.audit_trail.query(AuditFilters(action=action), page_size=100).events


# ---------------------------------------------------------------------------
# Registration and email verification
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_verify_login(self, api) -> None:
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"username": "ada", "email": "Ada@Example.com", "password": PASSWORD},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["email"] == "ada@example.com"
        assert body["isVerified"] is False
        assert "hashedPassword" not in body and "password" not in body

        assert api.login("ada@example.com").status_code == 403

        code = api.sender.last_code(TemplateKind.verification)
        resp = api.client.post(
            "/api/v1/auth/verify-email",
            json={"email": "ada@example.com", "verificationCode": code},
        )
        assert resp.status_code == 200
        assert resp.json()["isVerified"] is True
        assert api.login("ada@example.com").status_code == 200

    def test_duplicate_is_conflict(self, api) -> None:
        api.create_user("ada")
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"username": "ada", "email": "other@example.com", "password": PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_short_password_is_validation_error(self, api) -> None:
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"username": "ada", "email": "ada@example.com", "password": "Zq9xv"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert "Zq9xv" not in resp.text

    def test_password_whitespace_is_kept(self, api) -> None:
        padded = f"  {PASSWORD}  "
        api.client.post(
            "/api/v1/auth/register",
            json={"username": " ada ", "email": "ada@example.com", "password": padded},
        )
        code = api.sender.last_code(TemplateKind.verification)
        api.client.post("/api/v1/auth/verify-email", json={"email": "ada@example.com", "verificationCode": code})

        resp = api.login("ada@example.com", padded)
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "ada"
        assert api.login("ada@example.com", PASSWORD).status_code == 401

    def test_wrong_verification_code(self, api) -> None:
        api.client.post(
            "/api/v1/auth/register",
            json={"username": "ada", "email": "ada@example.com", "password": PASSWORD},
        )
        code = api.sender.last_code(TemplateKind.verification)
        wrong = "000000" if code != "000000" else "111111"
        resp = api.client.post("/api/v1/auth/verify-email", json={"email": "ada@example.com", "verificationCode": wrong})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_code"

    def test_non_ascii_verification_code_is_rejected(self, api) -> None:
        api.client.post(
            "/api/v1/auth/register",
            json={"username": "ada", "email": "ada@example.com", "password": PASSWORD},
        )
        resp = api.client.post(
            "/api/v1/auth/verify-email",
            json={"email": "ada@example.com", "verificationCode": ARABIC_INDIC_CODE},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_tokens_cookie_and_no_store(self, api) -> None:
        user = api.create_user("ada")
        resp = api.client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        body = resp.json()
        assert body["accessToken"] and body["refreshToken"]
        assert body["tokenType"] == "bearer"
        assert body["user"]["id"] == user.id
        assert body["deviceId"] is not None
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token" in resp.cookies

    def test_unknown_email_and_wrong_password_are_identical(self, api) -> None:
        user = api.create_user("ada")
        unknown = api.login("nobody@example.com", "whatever-1")
        wrong = api.login("ada@example.com", "wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.headers["cache-control"] == "no-store"
        actors = [e.actor_user_id for e in _events(api, AuditAction.LOGIN_FAILED)]
        assert sorted(actors) == sorted(["anonymous", str(user.id)])

    def test_lockout_returns_423_with_minutes(self, api) -> None:
        api.create_user("ada")
        for _ in range(5):
            assert api.login("ada@example.com", "wrong-password").status_code == 401
        resp = api.login("ada@example.com")
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert "15 minute" in error["message"]
        assert len(_events(api, AuditAction.ACCOUNT_LOCK)) == 1

    def test_lock_expires(self, api) -> None:
        api.create_user("ada")
        for _ in range(5):
            api.login("ada@example.com", "wrong-password")
        api.clock.advance(minutes=16)
        assert api.login("ada@example.com").status_code == 200
        assert len(_events(api, AuditAction.ACCOUNT_UNLOCK)) == 1

    def test_success_and_failure_are_audited(self, api) -> None:
        user = api.create_user("ada")
        api.login("ada@example.com", "wrong-password")
        api.login("ada@example.com")
        (failed,) = _events(api, AuditAction.LOGIN_FAILED)
        assert failed.actor_user_id == str(user.id)
        assert failed.details["reason"] == "invalid_password"
        (success,) = _events(api, AuditAction.LOGIN_SUCCESS)
        assert success.details["suspicion"]["isNewDevice"] is True

    def test_request_body_password_never_reaches_audit(self, api) -> None:
        api.create_user("ada")
        api.login("ada@example.com")
        for event in api.audit_trail.query(AuditFilters(), page_size=100).events:
            assert PASSWORD not in str(event.details)


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class TestMfa:
    def test_mfa_round_trip(self, api) -> None:
        user = api.create_user("ada", mfa=True)
        resp = api.login("ada@example.com")
        assert resp.status_code == 200
        body = resp.json()
        assert body == {
            "requireMfa": True,
            "userId": user.id,
            "message": "A verification code has been sent to your email.",
        }
        assert "access_token" not in resp.cookies

        code = api.sender.last_code(TemplateKind.mfa_code)
        resp = api.client.post("/api/v1/auth/verify-mfa", json={"userId": user.id, "mfaCode": code})
        assert resp.status_code == 200
        assert resp.json()["accessToken"]
        assert resp.headers["cache-control"] == "no-store"

        replay = api.client.post("/api/v1/auth/verify-mfa", json={"userId": user.id, "mfaCode": code})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "mfa_expired"

    def test_wrong_code_is_mismatch(self, api) -> None:
        user = api.create_user("ada", mfa=True)
        api.login("ada@example.com")
        code = api.sender.last_code(TemplateKind.mfa_code)
        wrong = "000000" if code != "000000" else "111111"
        resp = api.client.post("/api/v1/auth/verify-mfa", json={"userId": user.id, "mfaCode": wrong})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "mfa_mismatch"

    def test_non_ascii_digits_are_rejected(self, api) -> None:
        user = api.create_user("ada", mfa=True)
        api.login("ada@example.com")
        resp = api.client.post("/api/v1/auth/verify-mfa", json={"userId": user.id, "mfaCode": ARABIC_INDIC_CODE})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

        code = api.sender.last_code(TemplateKind.mfa_code)
        resp = api.client.post("/api/v1/auth/verify-mfa", json={"userId": user.id, "mfaCode": code})
        assert resp.status_code == 200

    def test_expired_code(self, api) -> None:
        user = api.create_user("ada", mfa=True)
        api.login("ada@example.com")
        code = api.sender.last_code(TemplateKind.mfa_code)
        api.clock.advance(minutes=6)
        resp = api.client.post("/api/v1/auth/verify-mfa", json={"userId": user.id, "mfaCode": code})
        assert resp.json()["error"]["code"] == "mfa_expired"

    def test_toggle_mfa(self, api) -> None:
        user = api.create_user("ada")
        headers = api.headers_for(user)
        resp = api.client.post("/api/v1/auth/toggle-mfa", json={}, headers=headers)
        assert resp.json()["mfaEnabled"] is True
        resp = api.client.post("/api/v1/auth/toggle-mfa", json={"enabled": False}, headers=headers)
        assert resp.json()["mfaEnabled"] is False
        assert len(_events(api, AuditAction.MFA_ENABLE)) == 1
        assert len(_events(api, AuditAction.MFA_DISABLE)) == 1


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_me_requires_auth(self, api) -> None:
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_bearer_and_cookie(self, api) -> None:
        user = api.create_user("ada")
        assert api.client.get("/api/v1/auth/me", headers=api.headers_for(user)).json()["username"] == "ada"

        api.client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert api.client.get("/api/v1/auth/me").status_code == 200
        api.client.cookies.clear()

    def test_refresh_then_logout(self, api) -> None:
        user = api.create_user("ada")
        tokens = api.login("ada@example.com").json()
        resp = api.client.post("/api/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
        assert resp.status_code == 200
        assert resp.json()["accessToken"]
        assert resp.headers["cache-control"] == "no-store"

        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}
        assert api.client.post("/api/v1/auth/logout", headers=headers).status_code == 200
        assert api.client.post("/api/v1/auth/logout", headers=headers).status_code == 200

        resp = api.client.post("/api/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"
        assert api.user_store.get_by_id(user.id).refresh_token is None

    def test_newer_login_supersedes_refresh_token(self, api) -> None:
        api.create_user("ada")
        first = api.login("ada@example.com").json()["refreshToken"]
        api.login("ada@example.com", user_agent=FIREFOX_UA)
        resp = api.client.post("/api/v1/auth/refresh-token", json={"refreshToken": first})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestPasswords:
    def test_change_password_kills_old_tokens(self, api) -> None:
        api.create_user("ada")
        tokens = api.login("ada@example.com").json()
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}
        api.clock.advance(seconds=2)

        resp = api.client.put(
            "/api/v1/auth/password",
            json={"currentPassword": PASSWORD, "newPassword": "another-password-9"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert api.client.get("/api/v1/auth/me", headers=headers).status_code == 401
        assert api.client.post("/api/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}).status_code == 401
        assert api.login("ada@example.com", "another-password-9").status_code == 200

        (event,) = _events(api, AuditAction.PASSWORD_CHANGE)
        assert "another-password-9" not in str(event.details)

    def test_change_password_wrong_current(self, api) -> None:
        user = api.create_user("ada")
        resp = api.client.put(
            "/api/v1/auth/password",
            json={"currentPassword": "not-it", "newPassword": "another-password-9"},
            headers=api.headers_for(user),
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Current password is incorrect."

    def test_reset_flow(self, api) -> None:
        api.create_user("ada")
        resp = api.client.post("/api/v1/auth/password-reset", json={"email": "ada@example.com"})
        assert resp.status_code == 200
        code = api.sender.last_code(TemplateKind.password_reset)
        api.clock.advance(seconds=2)

        resp = api.client.post(
            "/api/v1/auth/password-reset/verify",
            json={"email": "ada@example.com", "resetCode": code, "newPassword": "brand-new-pass-2"},
        )
        assert resp.status_code == 200
        assert api.login("ada@example.com", "brand-new-pass-2").status_code == 200
        assert api.login("ada@example.com").status_code == 401
        assert len(_events(api, AuditAction.PASSWORD_RESET)) == 1

    def test_reset_for_unknown_email_looks_the_same(self, api) -> None:
        api.create_user("ada")
        known = api.client.post("/api/v1/auth/password-reset", json={"email": "ada@example.com"})
        unknown = api.client.post("/api/v1/auth/password-reset", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert len(api.sender.of_kind(TemplateKind.password_reset)) == 1

    def test_reset_delivery_failure_is_502(self, api) -> None:
        api.create_user("ada")
        api.sender.fail_kinds.add(TemplateKind.password_reset)
        resp = api.client.post("/api/v1/auth/password-reset", json={"email": "ada@example.com"})
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "notification_failed"

    def test_non_ascii_reset_code_is_rejected(self, api) -> None:
        api.create_user("ada")
        api.client.post("/api/v1/auth/password-reset", json={"email": "ada@example.com"})
        resp = api.client.post(
            "/api/v1/auth/password-reset/verify",
            json={"email": "ada@example.com", "resetCode": ARABIC_INDIC_CODE, "newPassword": "brand-new-pass-2"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert api.login("ada@example.com").status_code == 200


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class TestProfile:
    def test_update_own_profile_is_audited(self, api) -> None:
        user = api.create_user("ada")
        headers = api.headers_for(user)
        resp = api.client.patch(
            "/api/v1/auth/me",
            json={"username": "lovelace", "avatar": "https://cdn.example.com/ada.png", "bio": "Analyst"},
            headers=headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert (body["username"], body["avatar"], body["bio"]) == ("lovelace", "https://cdn.example.com/ada.png", "Analyst")
        assert api.client.get("/api/v1/auth/me", headers=headers).json()["bio"] == "Analyst"

        (event,) = _events(api, AuditAction.USER_UPDATE)
        assert event.actor_user_id == event.target_id == str(user.id)
        assert event.target_username == "lovelace"
        assert event.details["method"] == "PATCH"
        assert event.details["body"]["bio"] == "Analyst"

    def test_role_in_body_is_ignored(self, api) -> None:
        user = api.create_user("ada")
        resp = api.client.patch("/api/v1/auth/me", json={"role": "admin", "bio": "hi"}, headers=api.headers_for(user))
        assert resp.status_code == 200
        assert resp.json()["role"] == "user"

    def test_taken_username_is_conflict(self, api) -> None:
        api.create_user("grace")
        user = api.create_user("ada")
        resp = api.client.patch("/api/v1/auth/me", json={"username": "grace"}, headers=api.headers_for(user))
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == "Username is already taken."
        assert _events(api, AuditAction.USER_UPDATE) == []

    def test_bio_longer_than_200_is_rejected(self, api) -> None:
        user = api.create_user("ada")
        resp = api.client.patch("/api/v1/auth/me", json={"bio": "x" * 201}, headers=api.headers_for(user))
        assert resp.status_code == 422

    def test_requires_auth(self, api) -> None:
        assert api.client.patch("/api/v1/auth/me", json={"bio": "hi"}).status_code == 401
