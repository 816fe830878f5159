"""会话接口：刷新、活跃心跳、会话信息与退出登录。"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from emrs_api.db.session import get_db
from emrs_api.dependencies import RequestIdentity, get_current_identity
from emrs_api.schemas.common import ErrorResponse, SuccessResponse
from emrs_api.schemas.session import LogoutData, RefreshData, SessionInfoData
from emrs_api.services import sessions
from emrs_api.utils.clock import utc_now
from emrs_api.utils.cookies import clear_refresh_cookie, read_refresh_cookie
from emrs_api.utils.response import success

router = APIRouter(prefix="/session", tags=["session"])


@router.post(
    "/refresh",
    summary="刷新访问令牌",
    description=(
        "使用 HttpOnly Cookie 中的刷新令牌换取新的访问令牌。"
        "刷新令牌已吊销、超过绝对有效期或超过 15 分钟无操作时返回 `SESSION_EXPIRED`。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[RefreshData],
    responses={401: {"model": ErrorResponse}},
)
def refresh(request: Request, db: Session = Depends(get_db)):
    access_token, expires_in = sessions.refresh(db, read_refresh_cookie(request), now=utc_now())
    return success(request, {"access_token": access_token, "token_type": "bearer", "expires_in": expires_in})


@router.post(
    "/activity",
    summary="记录活跃",
    description="前端在用户操作时调用，重置当前终端会话的无操作计时。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[SessionInfoData],
    responses={401: {"model": ErrorResponse}},
)
def activity(request: Request, db: Session = Depends(get_db)):
    window = sessions.record_activity(db, read_refresh_cookie(request), now=utc_now())
    return success(
        request,
        {
            "last_activity": window.last_activity,
            "session_expires_at": window.session_expires_at,
            "seconds_until_expiry": window.seconds_until_expiry,
        },
        meta={"message": "活跃时间已更新。"},
    )


@router.get(
    "/info",
    summary="查询会话信息",
    description="返回当前终端会话的最近活跃时间、到期时间与终端信息。需要访问令牌。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[SessionInfoData],
    responses={401: {"model": ErrorResponse}},
)
def info(
    request: Request,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    result = sessions.session_info(db, identity.user_id, read_refresh_cookie(request), now=utc_now())
    return success(
        request,
        {
            "last_activity": result.last_activity,
            "session_expires_at": result.session_expires_at,
            "seconds_until_expiry": result.seconds_until_expiry,
            "device_info": result.device_info,
        },
    )


@router.post(
    "/logout",
    summary="退出登录",
    description="吊销当前终端的刷新令牌并清除 Cookie，其他终端的会话不受影响。需要访问令牌。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[LogoutData],
    responses={401: {"model": ErrorResponse}},
)
def logout(
    request: Request,
    response: Response,
    identity: RequestIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    revoked = sessions.logout(db, identity.user_id, read_refresh_cookie(request), now=utc_now())
    clear_refresh_cookie(response)
    return success(request, {"logged_out": True, "revoked": revoked}, meta={"message": "已退出登录。"})
