import os

# 必须在导入应用模块之前设置，保证配置单例读取到测试值。
os.environ["EMRS_APP_ENV"] = "test"
os.environ["EMRS_DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["EMRS_AUTH_JWT_SECRET"] = "emrs-test-signing-secret-0123456789abcdef"
os.environ["EMRS_AUTH_PASSWORD_HASH_ITERATIONS"] = "1000"
os.environ.pop("EMRS_REDIS_URL", None)
os.environ.pop("EMRS_SMTP_HOST", None)

from collections.abc import Generator
from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import emrs_api.models  # noqa: F401
from emrs_api.core.config import get_settings
from emrs_api.db.session import get_db
from emrs_api.main import app
from emrs_api.models.base import Base
from emrs_api.models.enums import OtpPurpose, UserRole
from emrs_api.models.user import User
from emrs_api.services.credentials import hash_password
from emrs_api.services.mailer import get_mailer
from emrs_api.services.rate_limit import reset_local_windows

STRONG_PASSWORD = "Ward7-Rounds!"


@dataclass
class SentCode:
    email: str
    code: str
    purpose: OtpPurpose
    name: str
    ttl_seconds: int


@dataclass
class RecordingMailer:
    """记录所有投递请求，不真正发信。"""

    codes: list[SentCode] = field(default_factory=list)
    setup_links: list[tuple[str, str]] = field(default_factory=list)
    password_changed: list[str] = field(default_factory=list)

    def send_code(self, email, code, purpose, *, name, ttl_seconds):
        self.codes.append(SentCode(email=email, code=code, purpose=purpose, name=name, ttl_seconds=ttl_seconds))

    def send_setup_link(self, email, link, *, name, ttl_seconds):
        self.setup_links.append((email, link))

    def send_password_changed(self, email, *, name):
        self.password_changed.append(email)

    def last_code(self, email: str) -> str:
        for sent in reversed(self.codes):
            if sent.email == email:
                return sent.code
        raise AssertionError(f"no code sent to {email}")


def make_user(
    db: Session,
    *,
    email: str,
    name: str = "Test User",
    role: str = UserRole.RESIDENT,
    password: str | None = STRONG_PASSWORD,
    two_factor_enabled: bool = False,
    is_active: bool = True,
) -> User:
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password) if password else None,
        role=role,
        two_factor_enabled=two_factor_enabled,
        is_active=is_active,
        failed_login_attempts=0,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(autouse=True)
def _isolated_settings_and_limits():
    get_settings.cache_clear()
    reset_local_windows()
    yield
    get_settings.cache_clear()
    reset_local_windows()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    local_session = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    db = local_session()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@dataclass
class ApiHarness:
    client: TestClient
    mailer: RecordingMailer
    session_factory: sessionmaker

    def db(self) -> Session:
        return self.session_factory()


@pytest.fixture
def api(mailer: RecordingMailer) -> Generator[ApiHarness, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    testing_session = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)

    def _override_get_db():
        db = testing_session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_mailer] = lambda: mailer
    try:
        with TestClient(app) as client:
            yield ApiHarness(client=client, mailer=mailer, session_factory=testing_session)
    finally:
        app.dependency_overrides.clear()
        engine.dispose()
