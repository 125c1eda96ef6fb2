"""
tests/test_api_devices.py -- Integration tests for /api/v1/devices.

TestClient connects from the host "testclient", which is not an IP address,
so masked addresses come back as "*".
"""

from audit.models import AuditAction, AuditFilters
from tests.helpers import FIREFOX_UA


def _login_twice(api):
    user = api.create_user("ada")
    api.login("ada@example.com")
    api.login("ada@example.com", user_agent=FIREFOX_UA)
    return user


def test_list_devices_masks_ip(api) -> None:
    user = _login_twice(api)
    resp = api.client.get("/api/v1/devices", headers=api.headers_for(user))
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 2
    assert {d["browser"].split()[0] for d in body["devices"]} == {"Chrome", "Firefox"}
    assert all(d["ipAddress"] == "*" for d in body["devices"])
    assert all(d["isTrusted"] is False for d in body["devices"])


def test_other_users_device_is_404(api) -> None:
    user = _login_twice(api)
    device_id = api.client.get("/api/v1/devices", headers=api.headers_for(user)).json()["devices"][0]["id"]
    grace = api.create_user("grace")
    headers = api.headers_for(grace)
    assert api.client.get(f"/api/v1/devices/{device_id}", headers=headers).status_code == 404
    assert api.client.patch(f"/api/v1/devices/{device_id}", json={"isTrusted": True}, headers=headers).status_code == 404
    assert api.client.delete(f"/api/v1/devices/{device_id}", headers=headers).status_code == 404
    assert api.audit_trail.query(AuditFilters(actor_user_id=str(grace.id))).total == 0


def test_trust_is_audited_as_device_trust(api) -> None:
    user = _login_twice(api)
    headers = api.headers_for(user)
    device_id = api.client.get("/api/v1/devices", headers=headers).json()["devices"][0]["id"]

    resp = api.client.patch(f"/api/v1/devices/{device_id}", json={"isTrusted": True}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["isTrusted"] is True
    (event,) = api.audit_trail.query(AuditFilters(action=AuditAction.DEVICE_TRUST)).events
    assert event.target_id == str(device_id)
    assert event.details["body"] == {"isTrusted": True}


def test_rename_is_audited_as_device_update(api) -> None:
    user = _login_twice(api)
    headers = api.headers_for(user)
    device_id = api.client.get("/api/v1/devices", headers=headers).json()["devices"][0]["id"]

    resp = api.client.patch(f"/api/v1/devices/{device_id}", json={"deviceName": "Work laptop"}, headers=headers)
    assert resp.json()["deviceName"] == "Work laptop"
    assert api.audit_trail.query(AuditFilters(action=AuditAction.DEVICE_UPDATE)).total == 1
    assert api.audit_trail.query(AuditFilters(action=AuditAction.DEVICE_TRUST)).total == 0


def test_trusted_device_login_is_not_suspicious(api) -> None:
    user = api.create_user("ada")
    api.login("ada@example.com")
    headers = api.headers_for(user)
    device_id = api.client.get("/api/v1/devices", headers=headers).json()["devices"][0]["id"]
    api.client.patch(f"/api/v1/devices/{device_id}", json={"isTrusted": True}, headers=headers)

    api.login("ada@example.com")
    last = api.audit_trail.query(AuditFilters(action=AuditAction.LOGIN_SUCCESS)).events[0]
    assert last.details["suspicion"]["score"] == 0
    assert last.details["suspicion"]["isSuspicious"] is False


def test_remove_deactivates(api) -> None:
    user = _login_twice(api)
    headers = api.headers_for(user)
    device_id = api.client.get("/api/v1/devices", headers=headers).json()["devices"][0]["id"]

    resp = api.client.delete(f"/api/v1/devices/{device_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"message": "Device removed."}
    assert api.client.get(f"/api/v1/devices/{device_id}", headers=headers).json()["isActive"] is False
    assert api.audit_trail.query(AuditFilters(action=AuditAction.DEVICE_REMOVE)).total == 1


def test_devices_require_auth(api) -> None:
    assert api.client.get("/api/v1/devices").status_code == 401
