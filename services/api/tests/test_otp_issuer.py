from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from conftest import make_user
from emrs_api.core.errors import OtpAlreadyUsed, OtpExpired, OtpMismatch, OtpVerificationFailed
from emrs_api.models.auth import OneTimeCode
from emrs_api.models.base import Base
from emrs_api.models.enums import OtpPurpose
from emrs_api.services import otp
from emrs_api.utils.clock import as_utc, utc_now


def _fixed_codes(monkeypatch, *codes: str) -> None:
    sequence = iter(codes)
    monkeypatch.setattr(otp, "generate_code", lambda: next(sequence))


def test_generate_code_is_six_digits():
    for _ in range(50):
        code = otp.generate_code()
        assert len(code) == 6
        assert code.isdigit()


def test_issue_code_uses_purpose_specific_ttl(db_session):
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()

    login_code = otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    reset_code = otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.PASSWORD_RESET, now=now)

    assert login_code.ttl_seconds == 300
    assert login_code.expires_at == now + timedelta(minutes=5)
    assert reset_code.ttl_seconds == 900
    assert reset_code.expires_at == now + timedelta(minutes=15)


def test_verified_code_never_verifies_again(db_session):
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()
    issued = otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    db_session.commit()

    row = otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code=issued.code, now=now)
    db_session.commit()
    assert row.used is True

    with pytest.raises(OtpAlreadyUsed):
        otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code=issued.code, now=now)


def test_expired_code_fails_even_when_correct(db_session):
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()
    issued = otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    db_session.commit()

    with pytest.raises(OtpExpired):
        otp.verify_code(
            db_session,
            user_id=user.id,
            purpose=OtpPurpose.LOGIN,
            code=issued.code,
            now=now + timedelta(seconds=301),
        )


def test_new_code_supersedes_previous_one(db_session, monkeypatch):
    _fixed_codes(monkeypatch, "111111", "222222")
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()
    otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now + timedelta(seconds=30))
    db_session.commit()

    with pytest.raises(OtpAlreadyUsed):
        otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code="111111", now=now)

    otp.verify_code(
        db_session,
        user_id=user.id,
        purpose=OtpPurpose.LOGIN,
        code="222222",
        now=now + timedelta(seconds=31),
    )
    unused = db_session.execute(select(OneTimeCode).where(OneTimeCode.used.is_(False))).scalars().all()
    assert unused == []


def test_wrong_or_garbled_code_is_a_mismatch(db_session, monkeypatch):
    _fixed_codes(monkeypatch, "123456")
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()
    otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    db_session.commit()

    with pytest.raises(OtpMismatch):
        otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code="654321", now=now)
    with pytest.raises(OtpMismatch):
        otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code="12a456", now=now)
    # 其他用途的验证码互不通用。
    with pytest.raises(OtpMismatch):
        otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.PASSWORD_RESET, code="123456", now=now)

    # 用户输入中的空白会被忽略。
    otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code=" 123 456 ", now=now)


def test_failure_reasons_share_one_external_code():
    errors = [OtpMismatch(), OtpAlreadyUsed(), OtpExpired()]

    assert {error.code for error in errors} == {"OTP_INVALID"}
    assert len({error.message for error in errors}) == 1
    assert all(isinstance(error, OtpVerificationFailed) for error in errors)
    assert [error.reason for error in errors] == ["mismatch", "already_used", "expired"]


def test_lost_consume_race_is_reported_as_already_used(db_session, monkeypatch):
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()
    issued = otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=now)
    db_session.commit()
    monkeypatch.setattr(otp, "_consume", lambda db, *, row_id, now: False)

    with pytest.raises(OtpAlreadyUsed):
        otp.verify_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, code=issued.code, now=now)


def test_concurrent_consume_only_one_wins(tmp_path):
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'otp.db'}", future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    now = utc_now()

    with factory() as setup:
        user = make_user(setup, email="u2@hospital.org")
        user_id = user.id
        issued = otp.issue_code(setup, user_id=user_id, purpose=OtpPurpose.LOGIN, now=now)
        setup.commit()

    first = factory()
    second = factory()
    try:
        # 两个请求都读到了同一条未使用的验证码。
        candidate = otp._find_candidate(first, user_id=user_id, purpose=OtpPurpose.LOGIN, code=issued.code)
        assert candidate is not None and candidate.used is False

        otp.verify_code(second, user_id=user_id, purpose=OtpPurpose.LOGIN, code=issued.code, now=now)
        second.commit()

        assert otp._consume(first, row_id=candidate.id, now=now) is False
        first.rollback()
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_prune_stale_codes_removes_old_used_and_expired_rows(db_session):
    user = make_user(db_session, email="u2@hospital.org")
    now = utc_now()
    two_days_ago = now - timedelta(days=2)
    db_session.add_all(
        [
            OneTimeCode(
                user_id=user.id,
                code="000001",
                purpose=OtpPurpose.LOGIN,
                created_at=two_days_ago,
                expires_at=two_days_ago + timedelta(minutes=5),
                used=True,
                used_at=two_days_ago,
            ),
            OneTimeCode(
                user_id=user.id,
                code="000002",
                purpose=OtpPurpose.PASSWORD_RESET,
                created_at=two_days_ago,
                expires_at=two_days_ago + timedelta(minutes=15),
                used=False,
            ),
            OneTimeCode(
                user_id=user.id,
                code="000003",
                purpose=OtpPurpose.LOGIN,
                created_at=now,
                expires_at=now + timedelta(minutes=5),
                used=False,
            ),
        ]
    )
    db_session.commit()

    deleted = otp.prune_stale_codes(db_session, now=now)
    db_session.commit()

    assert deleted == 2
    remaining = db_session.execute(select(OneTimeCode.code)).scalars().all()
    assert remaining == ["000003"]


def test_issued_rows_carry_the_service_clock(db_session):
    user = make_user(db_session, email="u2@hospital.org")
    issued_at = utc_now() - timedelta(minutes=3)

    otp.issue_code(db_session, user_id=user.id, purpose=OtpPurpose.LOGIN, now=issued_at)
    db_session.commit()

    row = db_session.execute(select(OneTimeCode)).scalar_one()
    assert as_utc(row.created_at) == issued_at
    assert as_utc(row.expires_at) - as_utc(row.created_at) == timedelta(minutes=5)
