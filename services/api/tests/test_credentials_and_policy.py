from datetime import timedelta

import pytest

from conftest import STRONG_PASSWORD, make_user
from emrs_api.core.errors import AccountInactive, AccountLocked, InvalidCredentials, PasswordPolicyViolation
from emrs_api.core.config import get_settings
from emrs_api.models.user import User
from emrs_api.services.credentials import (
    authenticate,
    find_active_user,
    hash_password,
    normalize_email,
    verify_password,
)
from emrs_api.services.password_policy import ensure_strong_password, password_problems
from emrs_api.utils.clock import utc_now


def test_hash_password_is_salted_and_verifiable():
    first = hash_password("Abc!2345")
    second = hash_password("Abc!2345")

    assert first != second
    assert first.startswith("pbkdf2_sha256$1000$")
    assert verify_password("Abc!2345", first)
    assert not verify_password("abc!2345", first)


@pytest.mark.parametrize("broken", ["", "plain-text", "md5$1$a$b", "pbkdf2_sha256$x$y$z"])
def test_verify_password_rejects_malformed_hash(broken: str):
    assert verify_password("whatever", broken) is False


def test_normalize_email_trims_and_lowercases():
    assert normalize_email("  Dr.Mehta@Hospital.ORG ") == "dr.mehta@hospital.org"


def test_authenticate_unknown_email_and_wrong_password_look_identical(db_session):
    make_user(db_session, email="u1@hospital.org")
    now = utc_now()

    with pytest.raises(InvalidCredentials) as unknown:
        authenticate(db_session, "nobody@hospital.org", STRONG_PASSWORD, now=now)
    with pytest.raises(InvalidCredentials) as wrong:
        authenticate(db_session, "u1@hospital.org", "Wrong-pass1!", now=now)

    assert unknown.value.code == wrong.value.code == "INVALID_CREDENTIALS"
    assert unknown.value.message == wrong.value.message
    assert unknown.value.details == wrong.value.details == {}


def test_authenticate_matches_email_case_insensitively(db_session):
    make_user(db_session, email="u1@hospital.org")

    user = authenticate(db_session, "  U1@Hospital.org", STRONG_PASSWORD, now=utc_now())

    assert user.email == "u1@hospital.org"


def test_authenticate_inactive_account_is_rejected_before_password_check(db_session):
    make_user(db_session, email="gone@hospital.org", is_active=False)

    with pytest.raises(AccountInactive):
        authenticate(db_session, "gone@hospital.org", "not-even-the-password", now=utc_now())

    stored = db_session.query(User).filter_by(email="gone@hospital.org").one()
    assert stored.failed_login_attempts == 0


def test_authenticate_inactive_account_can_be_collapsed_into_invalid_credentials(db_session, monkeypatch):
    monkeypatch.setenv("EMRS_AUTH_EXPOSE_ACCOUNT_STATUS", "false")
    get_settings.cache_clear()
    make_user(db_session, email="gone@hospital.org", is_active=False)

    with pytest.raises(InvalidCredentials):
        authenticate(db_session, "gone@hospital.org", STRONG_PASSWORD, now=utc_now())


def test_authenticate_locks_after_repeated_failures_and_unlocks_later(db_session):
    make_user(db_session, email="u1@hospital.org")
    settings = get_settings()
    now = utc_now()

    for _ in range(settings.auth_max_failed_logins - 1):
        with pytest.raises(InvalidCredentials):
            authenticate(db_session, "u1@hospital.org", "Wrong-pass1!", now=now)
    with pytest.raises(AccountLocked) as locked:
        authenticate(db_session, "u1@hospital.org", "Wrong-pass1!", now=now)
    assert locked.value.status_code == 423

    # 锁定期内即使密码正确也拒绝。
    with pytest.raises(AccountLocked):
        authenticate(db_session, "u1@hospital.org", STRONG_PASSWORD, now=now + timedelta(minutes=5))

    later = now + timedelta(seconds=settings.auth_lockout_seconds + 1)
    user = authenticate(db_session, "u1@hospital.org", STRONG_PASSWORD, now=later)
    assert user.failed_login_attempts == 0
    assert user.locked_until is None


def test_successful_login_resets_failure_counter(db_session):
    make_user(db_session, email="u1@hospital.org")
    now = utc_now()
    with pytest.raises(InvalidCredentials):
        authenticate(db_session, "u1@hospital.org", "Wrong-pass1!", now=now)

    user = authenticate(db_session, "u1@hospital.org", STRONG_PASSWORD, now=now)

    assert user.failed_login_attempts == 0


def test_user_without_password_cannot_log_in(db_session):
    make_user(db_session, email="pending@hospital.org", password=None)

    with pytest.raises(InvalidCredentials):
        authenticate(db_session, "pending@hospital.org", "", now=utc_now())


def test_find_active_user_requires_matching_email_and_active_flag(db_session):
    user = make_user(db_session, email="u1@hospital.org")

    assert find_active_user(db_session, user.id, "U1@hospital.org") is not None
    assert find_active_user(db_session, user.id, "other@hospital.org") is None

    user.is_active = False
    db_session.commit()
    assert find_active_user(db_session, user.id, "u1@hospital.org") is None


def test_password_policy_lists_every_problem():
    problems = password_problems("abc")

    assert len(problems) == 4
    assert password_problems(STRONG_PASSWORD) == []
    assert password_problems("Password123!") == ["密码过于常见，请更换。"]


def test_ensure_strong_password_raises_with_details():
    with pytest.raises(PasswordPolicyViolation) as exc_info:
        ensure_strong_password("short")

    assert exc_info.value.code == "WEAK_PASSWORD"
    assert exc_info.value.details["errors"]
