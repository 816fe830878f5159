from uuid import uuid4

from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD, make_user
from emrs_api.main import app
from emrs_api.models.enums import OtpPurpose, UserRole

API = "/api"
NEW_PASSWORD = "Night-Shift9?"


def _seed(api, **kwargs):
    with api.db() as db:
        return make_user(db, **kwargs).id


def _token(client: TestClient, email: str, password: str = STRONG_PASSWORD) -> str:
    resp = client.post(f"{API}/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["access_token"]


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _admin_headers(api) -> dict[str, str]:
    _seed(api, email="admin@hospital.org", name="Admin", role=UserRole.ADMIN)
    return _bearer(_token(api.client, "admin@hospital.org"))


def test_non_admin_cannot_manage_users(api):
    _seed(api, email="resident@hospital.org", role=UserRole.RESIDENT)
    headers = _bearer(_token(api.client, "resident@hospital.org"))

    resp = api.client.get(f"{API}/users", headers=headers)

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"
    assert api.client.post(f"{API}/users/{uuid4()}/deactivate", headers=headers).status_code == 403


def test_admin_lists_users_with_pagination(api):
    headers = _admin_headers(api)
    _seed(api, email="a.faculty@hospital.org", name="Dr. Faculty", role=UserRole.FACULTY)
    _seed(api, email="b.resident@hospital.org", name="Dr. Resident", role=UserRole.RESIDENT)

    resp = api.client.get(f"{API}/users", params={"page_size": 2}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["data"]) == 2
    assert body["meta"]["pagination"] == {"page": 1, "page_size": 2, "total": 3}

    filtered = api.client.get(f"{API}/users", params={"role": "Faculty"}, headers=headers)
    assert [item["email"] for item in filtered.json()["data"]] == ["a.faculty@hospital.org"]

    searched = api.client.get(f"{API}/users", params={"keyword": "RESIDENT"}, headers=headers)
    assert [item["email"] for item in searched.json()["data"]] == ["b.resident@hospital.org"]


def test_admin_onboards_user_who_sets_password_then_logs_in(api):
    headers = _admin_headers(api)

    created = api.client.post(
        f"{API}/users",
        json={"name": "Dr. Mehta", "email": "Mehta@Hospital.org", "role": "Resident"},
        headers=headers,
    )
    assert created.status_code == 201, created.text
    user = created.json()["data"]
    assert user["email"] == "mehta@hospital.org"
    assert user["is_active"] is True

    email, link = api.mailer.setup_links[-1]
    assert email == "mehta@hospital.org"
    assert "/setup-password?token=" in link
    setup_token = link.split("token=", 1)[1]

    # 尚未设置密码时无法登录。
    no_password = api.client.post(f"{API}/auth/login", json={"email": email, "password": NEW_PASSWORD})
    assert no_password.json()["error"]["code"] == "INVALID_CREDENTIALS"

    weak = api.client.post(f"{API}/auth/setup-password", json={"token": setup_token, "password": "weakpass"})
    assert weak.status_code == 400
    assert weak.json()["error"]["code"] == "WEAK_PASSWORD"

    done = api.client.post(f"{API}/auth/setup-password", json={"token": setup_token, "password": NEW_PASSWORD})
    assert done.status_code == 200, done.text

    reused = api.client.post(f"{API}/auth/setup-password", json={"token": setup_token, "password": NEW_PASSWORD})
    assert reused.status_code == 400

    assert _token(api.client, email, NEW_PASSWORD)


def test_duplicate_email_is_conflict(api):
    headers = _admin_headers(api)
    _seed(api, email="taken@hospital.org")

    resp = api.client.post(
        f"{API}/users",
        json={"name": "Someone", "email": "taken@hospital.org", "role": "Faculty"},
        headers=headers,
    )

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "CONFLICT"


def test_resent_setup_link_replaces_previous_link(api):
    headers = _admin_headers(api)
    user_id = api.client.post(
        f"{API}/users",
        json={"name": "Dr. Rao", "email": "rao@hospital.org", "role": "Faculty"},
        headers=headers,
    ).json()["data"]["id"]
    first_token = api.mailer.setup_links[-1][1].split("token=", 1)[1]

    assert api.client.post(f"{API}/users/{user_id}/setup-link", headers=headers).status_code == 200
    second_token = api.mailer.setup_links[-1][1].split("token=", 1)[1]

    stale = api.client.post(f"{API}/auth/setup-password", json={"token": first_token, "password": NEW_PASSWORD})
    assert stale.status_code == 400
    fresh = api.client.post(f"{API}/auth/setup-password", json={"token": second_token, "password": NEW_PASSWORD})
    assert fresh.status_code == 200


def test_admin_deactivation_ends_sessions_immediately(api):
    headers = _admin_headers(api)
    user_id = _seed(api, email="u1@hospital.org")
    ward = TestClient(app)
    user_token = _token(ward, "u1@hospital.org")

    resp = api.client.post(f"{API}/users/{user_id}/deactivate", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is False

    gated = ward.get(f"{API}/users/me", headers=_bearer(user_token))
    assert gated.status_code == 401
    assert gated.json()["error"]["code"] == "ACCOUNT_INACTIVE"
    assert ward.post(f"{API}/session/refresh").json()["error"]["code"] == "SESSION_EXPIRED"

    login = ward.post(f"{API}/auth/login", json={"email": "u1@hospital.org", "password": STRONG_PASSWORD})
    assert login.json()["error"]["code"] == "ACCOUNT_INACTIVE"

    assert api.client.post(f"{API}/users/{user_id}/activate", headers=headers).status_code == 200
    assert _token(ward, "u1@hospital.org")


def test_admin_cannot_deactivate_self(api):
    headers = _admin_headers(api)
    me = api.client.get(f"{API}/users/me", headers=headers).json()["data"]

    resp = api.client.post(f"{API}/users/{me['id']}/deactivate", headers=headers)

    assert resp.status_code == 400


def test_admin_toggles_two_factor_and_updates_role(api):
    headers = _admin_headers(api)
    user_id = _seed(api, email="u1@hospital.org", role=UserRole.RESIDENT)

    enabled = api.client.post(f"{API}/users/{user_id}/2fa/enable", headers=headers)
    assert enabled.json()["data"]["two_factor_enabled"] is True
    login = api.client.post(f"{API}/auth/login", json={"email": "u1@hospital.org", "password": STRONG_PASSWORD})
    assert login.json()["data"]["otp_required"] is True

    disabled = api.client.post(f"{API}/users/{user_id}/2fa/disable", headers=headers)
    assert disabled.json()["data"]["two_factor_enabled"] is False

    updated = api.client.put(f"{API}/users/{user_id}", json={"role": "Faculty"}, headers=headers)
    assert updated.json()["data"]["role"] == "Faculty"
    assert api.client.get(f"{API}/users/{user_id}", headers=headers).json()["data"]["role"] == "Faculty"

    missing = api.client.get(f"{API}/users/{uuid4()}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


def test_doctor_list_is_available_to_any_signed_in_user(api):
    _seed(api, email="pwo@hospital.org", name="Welfare", role=UserRole.PWO)
    _seed(api, email="f@hospital.org", name="Dr. B", role=UserRole.FACULTY)
    _seed(api, email="r@hospital.org", name="Dr. A", role=UserRole.RESIDENT)
    _seed(api, email="off@hospital.org", name="Dr. C", role=UserRole.RESIDENT, is_active=False)
    headers = _bearer(_token(api.client, "pwo@hospital.org"))

    resp = api.client.get(f"{API}/users/doctors", headers=headers)

    assert resp.status_code == 200
    assert [item["name"] for item in resp.json()["data"]] == ["Dr. A", "Dr. B"]


def test_profile_update_and_password_change(api):
    _seed(api, email="u1@hospital.org", name="Old Name")
    headers = _bearer(_token(api.client, "u1@hospital.org"))

    profile = api.client.put(f"{API}/users/me", json={"name": "  New Name "}, headers=headers)
    assert profile.json()["data"]["name"] == "New Name"

    wrong = api.client.put(
        f"{API}/users/me/password",
        json={"current_password": "Not-mine1!", "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "INVALID_CREDENTIALS"

    same = api.client.put(
        f"{API}/users/me/password",
        json={"current_password": STRONG_PASSWORD, "new_password": STRONG_PASSWORD},
        headers=headers,
    )
    assert same.status_code == 400

    changed = api.client.put(
        f"{API}/users/me/password",
        json={"current_password": STRONG_PASSWORD, "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert changed.status_code == 200
    assert _token(api.client, "u1@hospital.org", NEW_PASSWORD)


def test_self_service_two_factor_disable_requires_otp(api):
    _seed(api, email="u1@hospital.org")
    headers = _bearer(_token(api.client, "u1@hospital.org"))

    enabled = api.client.post(f"{API}/users/me/2fa/enable", headers=headers)
    assert enabled.json()["data"]["two_factor_enabled"] is True

    wrong = api.client.post(f"{API}/users/me/2fa/disable", json={"otp": "000000"}, headers=headers)
    assert wrong.status_code == 401

    sent = api.client.post(f"{API}/users/me/2fa/otp", headers=headers)
    assert sent.json()["data"]["expires_in"] == 300
    assert api.mailer.codes[-1].purpose == OtpPurpose.LOGIN

    code = api.mailer.last_code("u1@hospital.org")
    disabled = api.client.post(f"{API}/users/me/2fa/disable", json={"otp": code}, headers=headers)
    assert disabled.status_code == 200
    assert disabled.json()["data"]["two_factor_enabled"] is False


def test_forgot_password_is_uniform_and_rate_limited(api):
    _seed(api, email="u1@hospital.org")

    known = api.client.post(f"{API}/auth/forgot-password", json={"email": "u1@hospital.org"})
    unknown = api.client.post(f"{API}/auth/forgot-password", json={"email": "ghost@hospital.org"})
    assert known.status_code == unknown.status_code == 200
    assert known.json()["data"] == unknown.json()["data"]
    assert [sent.email for sent in api.mailer.codes] == ["u1@hospital.org"]
    assert api.mailer.codes[0].ttl_seconds == 900

    assert api.client.post(f"{API}/auth/forgot-password", json={"email": "ghost@hospital.org"}).status_code == 200
    limited = api.client.post(f"{API}/auth/forgot-password", json={"email": "u1@hospital.org"})
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "RATE_LIMITED"
    assert int(limited.headers["Retry-After"]) > 0


def test_reset_password_revokes_every_session(api):
    _seed(api, email="u1@hospital.org")
    laptop = api.client
    tablet = TestClient(app)
    _token(laptop, "u1@hospital.org")
    _token(tablet, "u1@hospital.org")

    laptop.post(f"{API}/auth/forgot-password", json={"email": "u1@hospital.org"})
    code = api.mailer.last_code("u1@hospital.org")

    weak = laptop.post(
        f"{API}/auth/reset-password",
        json={"email": "u1@hospital.org", "otp": code, "new_password": "weakpass"},
    )
    assert weak.status_code == 400
    assert weak.json()["error"]["code"] == "WEAK_PASSWORD"

    reset = laptop.post(
        f"{API}/auth/reset-password",
        json={"email": "u1@hospital.org", "otp": code, "new_password": NEW_PASSWORD},
    )
    assert reset.status_code == 200, reset.text
    assert api.mailer.password_changed == ["u1@hospital.org"]

    for client in (laptop, tablet):
        assert client.post(f"{API}/session/refresh").json()["error"]["code"] == "SESSION_EXPIRED"

    replay = laptop.post(
        f"{API}/auth/reset-password",
        json={"email": "u1@hospital.org", "otp": code, "new_password": "Another-one2#"},
    )
    assert replay.json()["error"]["code"] == "OTP_INVALID"

    old = laptop.post(f"{API}/auth/login", json={"email": "u1@hospital.org", "password": STRONG_PASSWORD})
    assert old.json()["error"]["code"] == "INVALID_CREDENTIALS"
    assert _token(laptop, "u1@hospital.org", NEW_PASSWORD)


def test_unknown_route_uses_error_envelope(api):
    resp = api.client.get(f"{API}/nowhere")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"
    assert resp.json()["error"]["details"]["path"] == "/api/nowhere"


def test_admin_user_stats_counts_by_role(api):
    headers = _admin_headers(api)
    _seed(api, email="f1@hospital.org", role=UserRole.FACULTY)
    _seed(api, email="r1@hospital.org", role=UserRole.RESIDENT)
    _seed(api, email="r2@hospital.org", role=UserRole.RESIDENT, is_active=False)

    resp = api.client.get(f"{API}/users/stats", headers=headers)

    assert resp.status_code == 200, resp.text
    assert resp.json()["data"] == [
        {"role": "Admin", "total": 1, "active": 1},
        {"role": "Faculty", "total": 1, "active": 1},
        {"role": "Resident", "total": 2, "active": 1},
    ]


def test_user_stats_requires_admin(api):
    _seed(api, email="resident@hospital.org", role=UserRole.RESIDENT)
    headers = _bearer(_token(api.client, "resident@hospital.org"))

    resp = api.client.get(f"{API}/users/stats", headers=headers)

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"
