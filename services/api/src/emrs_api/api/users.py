"""个人资料与账号管理接口。"""

from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.orm import Session

from emrs_api.db.session import get_db
from emrs_api.dependencies import ADMIN_ONLY, RequestIdentity, get_current_identity, otp_rate_limit, require_roles
from emrs_api.models.enums import UserRole
from emrs_api.schemas.common import ErrorResponse, PaginationMeta, SuccessResponse
from emrs_api.schemas.user import (
    ChangePasswordRequest,
    DisableTwoFactorRequest,
    DoctorData,
    OtpSentData,
    ProfileUpdateRequest,
    RoleStatsData,
    UserCreateRequest,
    UserData,
    UserUpdateRequest,
)
from emrs_api.services import accounts
from emrs_api.services.mailer import Mailer, get_mailer
from emrs_api.utils.clock import utc_now
from emrs_api.utils.response import success

router = APIRouter(prefix="/users", tags=["users"])

_AUTH_ERRORS = {401: {"model": ErrorResponse}}
_ADMIN_ERRORS = {401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


def _user(user) -> UserData:
    return UserData.model_validate(user)


@router.get(
    "/me",
    summary="查询个人资料",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses=_AUTH_ERRORS,
)
def get_profile(
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return success(request, _user(accounts.get_user(db, identity.user_id)))


@router.put(
    "/me",
    summary="更新个人资料",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses={**_AUTH_ERRORS, 409: {"model": ErrorResponse}},
)
def update_profile(
    payload: ProfileUpdateRequest,
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    user = accounts.update_profile(db, identity.user_id, name=payload.name, email=payload.email)
    return success(request, _user(user))


@router.put(
    "/me/password",
    summary="修改密码",
    description="需要提供当前密码，新密码须满足密码强度要求。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses={**_AUTH_ERRORS, 400: {"model": ErrorResponse}},
)
def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    user = accounts.change_password(db, identity.user_id, payload.current_password, payload.new_password)
    return success(request, _user(user), meta={"message": "密码修改成功。"})


@router.post(
    "/me/2fa/enable",
    summary="开启二次验证",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses=_AUTH_ERRORS,
)
def enable_own_two_factor(
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return success(request, _user(accounts.enable_own_two_factor(db, identity.user_id)))


@router.post(
    "/me/2fa/otp",
    summary="发送关闭二次验证所需验证码",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[OtpSentData],
    responses={**_AUTH_ERRORS, 429: {"model": ErrorResponse}},
    dependencies=[Depends(otp_rate_limit)],
)
def request_two_factor_otp(
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    expires_in = accounts.request_two_factor_otp(db, mailer, identity.user_id, now=utc_now())
    return success(request, {"message": "验证码已发送至邮箱。", "expires_in": expires_in})


@router.post(
    "/me/2fa/disable",
    summary="关闭二次验证",
    description="需要提交邮箱验证码确认。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses={**_AUTH_ERRORS, 400: {"model": ErrorResponse}},
)
def disable_own_two_factor(
    payload: DisableTwoFactorRequest,
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    user = accounts.disable_own_two_factor(db, identity.user_id, payload.otp, now=utc_now())
    return success(request, _user(user))


@router.get(
    "/doctors",
    summary="查询医生列表",
    description="返回在岗的主治医生与住院医生，供分诊与患者分配使用。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[list[DoctorData]],
    responses=_AUTH_ERRORS,
)
def list_doctors(
    request: Request,
    _: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return success(request, [DoctorData.model_validate(user) for user in accounts.list_doctors(db)])


@router.get(
    "",
    summary="分页查询账号",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[list[UserData]],
    responses=_ADMIN_ERRORS,
)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1, description="页码，从 1 开始。"),
    page_size: int = Query(default=20, ge=1, le=100, description="每页条数。"),
    role: UserRole | None = Query(default=None, description="按角色过滤。"),
    keyword: str | None = Query(default=None, max_length=128, description="按姓名或邮箱模糊查询。"),
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    items, total = accounts.list_users(db, page=page, page_size=page_size, role=role, keyword=keyword)
    pagination = PaginationMeta(page=page, page_size=page_size, total=total)
    return success(request, [_user(user) for user in items], meta={"pagination": pagination.model_dump()})


@router.post(
    "",
    summary="开通账号",
    description="管理员开通账号，系统向其邮箱发送密码设置链接。",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessResponse[UserData],
    responses={**_ADMIN_ERRORS, 409: {"model": ErrorResponse}},
)
def create_user(
    payload: UserCreateRequest,
    request: Request,
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    user = accounts.create_user(
        db,
        mailer,
        name=payload.name,
        email=payload.email,
        role=payload.role,
        two_factor_enabled=payload.two_factor_enabled,
        now=utc_now(),
    )
    return success(request, _user(user), meta={"message": "账号已开通，密码设置链接已发送。"})


# 必须在 /{user_id} 之前注册。
@router.get(
    "/stats",
    summary="账号统计",
    description="按角色统计账号总数与启用中的账号数。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[list[RoleStatsData]],
    responses=_ADMIN_ERRORS,
)
def user_stats(
    request: Request,
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    return success(request, accounts.user_stats(db))


@router.get(
    "/{user_id}",
    summary="查询账号详情",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses=_ADMIN_ERRORS,
)
def get_user(
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    return success(request, _user(accounts.get_user(db, user_id)))


@router.put(
    "/{user_id}",
    summary="更新账号",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses={**_ADMIN_ERRORS, 409: {"model": ErrorResponse}},
)
def update_user(
    payload: UserUpdateRequest,
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    user = accounts.update_user(db, user_id, name=payload.name, email=payload.email, role=payload.role)
    return success(request, _user(user))


@router.post(
    "/{user_id}/activate",
    summary="启用账号",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses=_ADMIN_ERRORS,
)
def activate_user(
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    identity: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    user = accounts.set_active(db, identity.user_id, user_id, True, now=utc_now())
    return success(request, _user(user))


@router.post(
    "/{user_id}/deactivate",
    summary="停用账号",
    description="停用后该账号无法登录，已签发的访问令牌在下一次请求时失效，所有刷新令牌被吊销。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses={**_ADMIN_ERRORS, 400: {"model": ErrorResponse}},
)
def deactivate_user(
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    identity: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    user = accounts.set_active(db, identity.user_id, user_id, False, now=utc_now())
    return success(request, _user(user))


@router.post(
    "/{user_id}/2fa/enable",
    summary="为账号开启二次验证",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses=_ADMIN_ERRORS,
)
def enable_two_factor(
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    return success(request, _user(accounts.set_two_factor(db, user_id, True)))


@router.post(
    "/{user_id}/2fa/disable",
    summary="为账号关闭二次验证",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses=_ADMIN_ERRORS,
)
def disable_two_factor(
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    return success(request, _user(accounts.set_two_factor(db, user_id, False)))


@router.post(
    "/{user_id}/setup-link",
    summary="重新发送密码设置链接",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[UserData],
    responses={**_ADMIN_ERRORS, 400: {"model": ErrorResponse}},
)
def resend_setup_link(
    request: Request,
    user_id: UUID = Path(..., description="目标用户 ID。"),
    _: RequestIdentity = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    user = accounts.resend_setup_link(db, mailer, user_id, now=utc_now())
    return success(request, _user(user), meta={"message": "密码设置链接已重新发送。"})
