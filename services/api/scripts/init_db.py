"""数据库初始化与运维命令。

用法:
    python services/api/scripts/init_db.py create-tables
    python services/api/scripts/init_db.py bootstrap-admin --email admin@hospital.org --name "System Admin" --password '...'
    python services/api/scripts/init_db.py prune-otp
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os

from emrs_api.core.errors import PasswordPolicyViolation
from emrs_api.core.logging import setup_logging
from emrs_api.db.base import Base
from emrs_api.db.session import SessionLocal, engine
from emrs_api.models import User
from emrs_api.models.enums import UserRole
from emrs_api.services.credentials import find_user_by_email, hash_password, normalize_email
from emrs_api.services.otp import prune_stale_codes
from emrs_api.services.password_policy import ensure_strong_password
from emrs_api.utils.clock import utc_now

logger = logging.getLogger("emrs_api.scripts.init_db")


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("tables created: %s", ", ".join(sorted(Base.metadata.tables)))


def bootstrap_admin(email: str, name: str, password: str) -> str:
    """创建首个管理员；邮箱已存在时提升为管理员并重新启用。"""
    ensure_strong_password(password)
    with SessionLocal() as db:
        user = find_user_by_email(db, email)
        if user is None:
            user = User(
                name=name,
                email=normalize_email(email),
                password_hash=hash_password(password),
                role=UserRole.ADMIN,
                two_factor_enabled=False,
                is_active=True,
                failed_login_attempts=0,
            )
            db.add(user)
            status = "created"
        else:
            user.role = UserRole.ADMIN
            user.is_active = True
            user.password_hash = hash_password(password)
            status = "promoted"
        db.commit()
        logger.info("admin %s user_id=%s", status, user.id)
        return status


def prune_codes() -> int:
    with SessionLocal() as db:
        deleted = prune_stale_codes(db, now=utc_now())
        db.commit()
    logger.info("stale otp codes pruned count=%s", deleted)
    return deleted


def main() -> int:
    parser = argparse.ArgumentParser(description="EMRS 数据库初始化与运维命令")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("create-tables", help="创建全部数据表")

    admin_parser = subparsers.add_parser("bootstrap-admin", help="创建或提升管理员账号")
    admin_parser.add_argument("--email", default=os.getenv("EMRS_ADMIN_EMAIL"), help="管理员邮箱")
    admin_parser.add_argument("--name", default=os.getenv("EMRS_ADMIN_NAME", "System Admin"), help="管理员姓名")
    admin_parser.add_argument("--password", default=os.getenv("EMRS_ADMIN_PASSWORD"), help="管理员密码，缺省时交互输入")

    subparsers.add_parser("prune-otp", help="清理过期与已使用的验证码")

    args = parser.parse_args()
    setup_logging()

    if args.command == "create-tables":
        create_tables()
        return 0
    if args.command == "prune-otp":
        prune_codes()
        return 0

    if not args.email:
        parser.error("--email 或 EMRS_ADMIN_EMAIL 必填")
    password = args.password or getpass.getpass("管理员密码: ")
    try:
        bootstrap_admin(args.email, args.name, password)
    except PasswordPolicyViolation as exc:
        for problem in exc.details.get("errors", []):
            logger.error("weak password: %s", problem)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
