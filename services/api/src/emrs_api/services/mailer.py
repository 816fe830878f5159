"""邮件发送服务。

验证码与密码设置链接都通过这里投递。未配置 SMTP 时只记录脱敏日志，
便于本地开发。模板中的用户输入统一做 HTML 转义。
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from emrs_api.core.config import Settings, get_settings
from emrs_api.core.errors import ServiceUnavailable
from emrs_api.core.logging import redact_email
from emrs_api.models.enums import OtpPurpose

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    """邮件投递接口，服务层只依赖该协议。"""

    def send_code(self, email: str, code: str, purpose: OtpPurpose, *, name: str, ttl_seconds: int) -> None: ...

    def send_setup_link(self, email: str, link: str, *, name: str, ttl_seconds: int) -> None: ...

    def send_password_changed(self, email: str, *, name: str) -> None: ...


@dataclass(frozen=True)
class EmailMessage:
    to_email: str
    subject: str
    html_body: str
    text_body: str


def _minutes(ttl_seconds: int) -> int:
    return max(1, ttl_seconds // 60)


def render_code_email(email: str, code: str, purpose: OtpPurpose, *, name: str, ttl_seconds: int) -> EmailMessage:
    safe_name = html.escape(name.strip() or "用户")
    safe_code = html.escape(code)
    minutes = _minutes(ttl_seconds)
    if purpose == OtpPurpose.PASSWORD_RESET:
        subject = "EMRS 找回密码验证码"
        intro = "您正在找回 EMRS 账号密码。"
    else:
        subject = "EMRS 登录验证码"
        intro = "您正在登录 EMRS。"
    text_body = f"{name}，您好：\n{intro}验证码为 {code}，{minutes} 分钟内有效。如非本人操作请忽略。"
    html_body = (
        f"<p>{safe_name}，您好：</p>"
        f"<p>{intro}验证码为 <strong>{safe_code}</strong>，{minutes} 分钟内有效。</p>"
        "<p>如非本人操作请忽略本邮件。</p>"
    )
    return EmailMessage(to_email=email, subject=subject, html_body=html_body, text_body=text_body)


def render_setup_email(email: str, link: str, *, name: str, ttl_seconds: int) -> EmailMessage:
    safe_name = html.escape(name.strip() or "用户")
    safe_link = html.escape(link, quote=True)
    hours = max(1, ttl_seconds // 3600)
    text_body = f"{name}，您好：\n管理员已为您开通 EMRS 账号，请在 {hours} 小时内访问以下链接设置密码：\n{link}"
    html_body = (
        f"<p>{safe_name}，您好：</p>"
        f"<p>管理员已为您开通 EMRS 账号，请在 {hours} 小时内点击下方链接设置密码。</p>"
        f'<p><a href="{safe_link}">设置密码</a></p>'
    )
    return EmailMessage(to_email=email, subject="EMRS 账号密码设置", html_body=html_body, text_body=text_body)


def render_password_changed_email(email: str, *, name: str) -> EmailMessage:
    safe_name = html.escape(name.strip() or "用户")
    text_body = f"{name}，您好：\n您的 EMRS 账号密码已重置，所有终端需重新登录。如非本人操作请立即联系管理员。"
    html_body = (
        f"<p>{safe_name}，您好：</p>"
        "<p>您的 EMRS 账号密码已重置，所有终端需重新登录。</p>"
        "<p>如非本人操作请立即联系管理员。</p>"
    )
    return EmailMessage(to_email=email, subject="EMRS 密码已重置", html_body=html_body, text_body=text_body)


class SmtpMailer:
    """基于 SMTP 的邮件投递实现。"""

    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.from_email = settings.smtp_from_email or settings.smtp_user
        self.timeout = settings.smtp_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    def deliver(self, message: EmailMessage) -> None:
        if not self.is_configured:
            # 开发模式：不发信，只记录脱敏日志。
            logger.info("email dev-mode to=%s subject=%s", redact_email(message.to_email), message.subject)
            return

        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.from_email
        mime["To"] = message.to_email
        mime.attach(MIMEText(message.text_body, "plain", "utf-8"))
        mime.attach(MIMEText(message.html_body, "html", "utf-8"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, [message.to_email], mime.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("email delivery failed to=%s error=%s", redact_email(message.to_email), exc)
            raise ServiceUnavailable("邮件发送失败，请稍后重试。") from exc
        logger.info("email sent to=%s subject=%s", redact_email(message.to_email), message.subject)

    def send_code(self, email: str, code: str, purpose: OtpPurpose, *, name: str, ttl_seconds: int) -> None:
        self.deliver(render_code_email(email, code, purpose, name=name, ttl_seconds=ttl_seconds))

    def send_setup_link(self, email: str, link: str, *, name: str, ttl_seconds: int) -> None:
        self.deliver(render_setup_email(email, link, name=name, ttl_seconds=ttl_seconds))

    def send_password_changed(self, email: str, *, name: str) -> None:
        self.deliver(render_password_changed_email(email, name=name))


def get_mailer() -> Mailer:
    """路由依赖：返回邮件投递实现，测试中可覆盖。"""
    return SmtpMailer(get_settings())
