"""口令强度策略。"""

import re

from emrs_api.core.errors import PasswordPolicyViolation

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_COMMON_PASSWORDS = (
    "password",
    "password123",
    "12345678",
    "qwerty123",
    "admin123",
    "welcome123",
    "letmein123",
    "monkey123",
)


def password_problems(password: str) -> list[str]:
    """返回口令不满足的规则列表，空列表表示通过。"""
    problems: list[str] = []
    if len(password) < 8:
        problems.append("密码长度至少 8 位。")
    if not re.search(r"[A-Z]", password):
        problems.append("密码需包含大写字母。")
    if not re.search(r"[a-z]", password):
        problems.append("密码需包含小写字母。")
    if not re.search(r"[0-9]", password):
        problems.append("密码需包含数字。")
    if not _SPECIAL_CHARS.search(password):
        problems.append("密码需包含特殊字符。")
    lowered = password.lower()
    if any(common in lowered for common in _COMMON_PASSWORDS):
        problems.append("密码过于常见，请更换。")
    return problems


def ensure_strong_password(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise PasswordPolicyViolation(details={"errors": problems})
