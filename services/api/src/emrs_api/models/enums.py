"""领域枚举定义。"""

from enum import StrEnum


class UserRole(StrEnum):
    """院内账号角色。"""

    ADMIN = "Admin"  # 系统管理员，负责账号开通与停用。
    FACULTY = "Faculty"  # 主治/教学医生。
    RESIDENT = "Resident"  # 住院医生。
    PWO = "Psychiatric Welfare Officer"  # 精神科社工，负责患者登记。


class OtpPurpose(StrEnum):
    """一次性验证码用途。"""

    LOGIN = "login"  # 登录二次验证。
    PASSWORD_RESET = "password_reset"  # 找回密码。


# 医生类角色。
CLINICIAN_ROLES = (UserRole.FACULTY, UserRole.RESIDENT)
