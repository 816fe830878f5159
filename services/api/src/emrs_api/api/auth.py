"""登录与密码找回接口。"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from emrs_api.core.security import client_info
from emrs_api.db.session import get_db
from emrs_api.dependencies import otp_rate_limit
from emrs_api.schemas.auth import (
    ForgotPasswordRequest,
    LoginData,
    LoginRequest,
    OtpChallengeData,
    ResendLoginOtpRequest,
    ResetPasswordRequest,
    SetupPasswordRequest,
    VerifyLoginOtpRequest,
)
from emrs_api.schemas.common import ErrorResponse, MessageData, SuccessResponse
from emrs_api.schemas.user import UserData
from emrs_api.services import accounts, sessions
from emrs_api.services.mailer import Mailer, get_mailer
from emrs_api.utils.clock import utc_now
from emrs_api.utils.cookies import set_refresh_cookie
from emrs_api.utils.response import success

router = APIRouter(prefix="/auth", tags=["auth"])

# 无论邮箱是否存在都返回同一文案。
FORGOT_PASSWORD_MESSAGE = "如果该邮箱已注册，验证码已发送，请查收邮件。"


def _login_payload(result: sessions.LoginResult) -> dict:
    return {
        "otp_required": False,
        "user": UserData.model_validate(result.user),
        "access_token": result.access_token,
        "token_type": "bearer",
        "expires_at": result.access_expires_at,
        "expires_in": result.expires_in,
    }


@router.post(
    "/login",
    summary="邮箱密码登录",
    description=(
        "未开启二次验证时直接返回访问令牌并写入刷新令牌 Cookie；"
        "已开启时向邮箱发送验证码，返回 `otp_required=true`，不签发任何令牌。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[LoginData],
    responses={401: {"model": ErrorResponse}, 423: {"model": ErrorResponse}},
)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    result = sessions.login(
        db,
        mailer,
        payload.email,
        payload.password,
        client=client_info(request),
        now=utc_now(),
    )
    if isinstance(result, sessions.OtpChallenge):
        return success(
            request,
            {
                "otp_required": True,
                "user_id": result.user_id,
                "email": result.email,
                "expires_in": result.expires_in,
            },
            meta={"message": "验证码已发送至邮箱。"},
        )
    set_refresh_cookie(response, result.refresh_token)
    return success(request, _login_payload(result), meta={"message": "登录成功。"})


@router.post(
    "/verify-login-otp",
    summary="提交登录验证码",
    description="校验登录验证码，成功后签发访问令牌并写入刷新令牌 Cookie。验证码只能使用一次。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[LoginData],
    responses={401: {"model": ErrorResponse}},
)
def verify_login_otp(
    payload: VerifyLoginOtpRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    result = sessions.verify_login_otp(
        db,
        payload.user_id,
        payload.otp,
        client=client_info(request),
        now=utc_now(),
    )
    set_refresh_cookie(response, result.refresh_token)
    return success(request, _login_payload(result), meta={"message": "登录成功。"})


@router.post(
    "/resend-login-otp",
    summary="重新发送登录验证码",
    description="重新发送登录验证码，此前发出的验证码立即失效。按客户端 IP 限流。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[OtpChallengeData],
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(otp_rate_limit)],
)
def resend_login_otp(
    payload: ResendLoginOtpRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    challenge = sessions.resend_login_otp(db, mailer, payload.user_id, now=utc_now())
    return success(
        request,
        {"user_id": challenge.user_id, "email": challenge.email, "expires_in": challenge.expires_in},
        meta={"message": "验证码已重新发送。"},
    )


@router.post(
    "/forgot-password",
    summary="申请找回密码",
    description="向账号邮箱发送找回密码验证码。为防止探测账号，是否存在该邮箱都返回相同结果。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MessageData],
    responses={429: {"model": ErrorResponse}},
    dependencies=[Depends(otp_rate_limit)],
)
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    accounts.forgot_password(db, mailer, payload.email, now=utc_now())
    return success(request, {"message": FORGOT_PASSWORD_MESSAGE})


@router.post(
    "/reset-password",
    summary="通过验证码重设密码",
    description="校验找回密码验证码并设置新密码，同时注销该账号所有终端的会话。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MessageData],
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    accounts.reset_password(db, mailer, payload.email, payload.otp, payload.new_password, now=utc_now())
    return success(request, {"message": "密码已重置，请使用新密码登录。"})


@router.post(
    "/setup-password",
    summary="首次设置密码",
    description="使用管理员开通账号时发送的链接令牌设置密码，令牌只能使用一次。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MessageData],
    responses={400: {"model": ErrorResponse}},
)
def setup_password(
    payload: SetupPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    accounts.setup_password(db, payload.token, payload.password, now=utc_now())
    return success(request, {"message": "密码设置成功，请登录。"})
