"""服务层能力导出集合。"""

from emrs_api.services.credentials import authenticate, find_active_user, hash_password, normalize_email, verify_password
from emrs_api.services.otp import issue_code, prune_stale_codes, verify_code
from emrs_api.services.tokens import (
    issue_access_token,
    issue_refresh_token,
    refresh_access_token,
    revoke_all_for_user,
    revoke_refresh_token,
    touch_refresh_token,
)

__all__ = [
    "authenticate",
    "find_active_user",
    "hash_password",
    "issue_access_token",
    "issue_code",
    "issue_refresh_token",
    "normalize_email",
    "prune_stale_codes",
    "refresh_access_token",
    "revoke_all_for_user",
    "revoke_refresh_token",
    "touch_refresh_token",
    "verify_code",
    "verify_password",
]
