import os
import smtplib
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Mapping, Optional

DEFAULT_FROM = "HydroBloom Auth <no-reply@hydrobloom.app>"
MAILHOG_DEFAULT_PORT = 1025
MAILTRAP_DEFAULT_HOST = "sandbox.smtp.mailtrap.io"
MAILTRAP_DEFAULT_PORT = 2525
SENDGRID_HOST = "smtp.sendgrid.net"
SENDGRID_PORT = 587
SMTP_TIMEOUT_SECONDS = 15


class MailerConfigError(Exception):
    pass


@dataclass(frozen=True)
class Transport:
    provider: str
    host: str
    port: int
    user: Optional[str] = None
    password: Optional[str] = None
    starttls: bool = False


_TRANSPORT: Optional[Transport] = None
_TRANSPORT_LOCK = threading.Lock()


def parse_port(raw: Optional[str], default: int) -> int:
    if raw is None or str(raw).strip() == "":
        return default
    try:
        port = int(str(raw).strip())
    except ValueError:
        print(f"[mailer] invalid port {raw!r}, using {default}")
        return default
    if port < 1 or port > 65535:
        print(f"[mailer] port {port} out of range, using {default}")
        return default
    return port


def resolve_transport(env: Optional[Mapping[str, str]] = None) -> Transport:
    env = os.environ if env is None else env
    app_env = (env.get("APP_ENV") or "development").strip().lower()
    if app_env != "production":
        mh_host = (env.get("MH_HOST") or "").strip()
        if mh_host:
            return Transport("mailhog", mh_host, parse_port(env.get("MH_PORT"), MAILHOG_DEFAULT_PORT))
        user = (env.get("MT_USER") or "").strip()
        password = (env.get("MT_PASS") or "").strip()
        if not user or not password:
            raise MailerConfigError("MT_USER and MT_PASS must be set for the Mailtrap sandbox")
        return Transport(
            "mailtrap",
            (env.get("MT_HOST") or MAILTRAP_DEFAULT_HOST).strip(),
            parse_port(env.get("MT_PORT"), MAILTRAP_DEFAULT_PORT),
            user=user,
            password=password,
            starttls=True,
        )
    api_key = (env.get("SENDGRID_API_KEY") or "").strip()
    if not api_key:
        raise MailerConfigError("SENDGRID_API_KEY must be set in production")
    return Transport("sendgrid", SENDGRID_HOST, SENDGRID_PORT, user="apikey", password=api_key, starttls=True)


def get_transport() -> Transport:
    global _TRANSPORT
    with _TRANSPORT_LOCK:
        if _TRANSPORT is None:
            _TRANSPORT = resolve_transport()
            print(f"[mailer] using {_TRANSPORT.provider} at {_TRANSPORT.host}:{_TRANSPORT.port}")
        return _TRANSPORT


def reset_transport() -> None:
    global _TRANSPORT
    with _TRANSPORT_LOCK:
        _TRANSPORT = None


def is_configured() -> bool:
    try:
        get_transport()
    except MailerConfigError:
        return False
    return True


def _sender() -> str:
    return (os.getenv("MAIL_FROM") or "").strip() or DEFAULT_FROM


def send_mail(to: str, subject: str, text: str, html: Optional[str] = None) -> None:
    transport = get_transport()
    msg = EmailMessage()
    msg["From"] = _sender()
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")
    with smtplib.SMTP(transport.host, transport.port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
        if transport.starttls:
            smtp.starttls()
        if transport.user and transport.password:
            smtp.login(transport.user, transport.password)
        smtp.send_message(msg)


def send_otp_email(to: str, code: str) -> None:
    text = f"Your HydroBloom sign-in code is {code}. It expires in 10 minutes."
    html = (
        "<p>Your HydroBloom sign-in code is</p>"
        f"<p style=\"font-size:24px;font-weight:bold;letter-spacing:4px\">{code}</p>"
        "<p>It expires in 10 minutes. If you did not request it, ignore this email.</p>"
    )
    send_mail(to, "Your sign-in code", text, html)


def send_invite_email(to: str, link: str, inviter: str) -> None:
    text = f"{inviter} invited you to join their farm on HydroBloom.\nAccept the invitation: {link}\nThe link is valid for 7 days."
    html = (
        f"<p>{inviter} invited you to join their farm on HydroBloom.</p>"
        f"<p><a href=\"{link}\">Accept the invitation</a></p>"
        "<p>The link is valid for 7 days.</p>"
    )
    send_mail(to, "You're invited to HydroBloom", text, html)


def send_alert_email(to: str, title: str, message: str) -> None:
    send_mail(to, f"[HydroBloom] {title}", message)
