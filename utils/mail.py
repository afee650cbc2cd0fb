# utils/mail.py
import smtplib
import ssl
import socket
from email.message import EmailMessage
from threading import Thread
from typing import Optional

from flask import current_app

from services.errors import NotConfigured

__all__ = ["send_email", "send_email_async", "mask_email"]

_FALLBACK_PORTS = [("STARTTLS", 587), ("STARTTLS", 2525), ("SSL", 465)]


def mask_email(addr: Optional[str]) -> str:
    if not addr:
        return ""
    try:
        local, domain = addr.split("@", 1)
    except ValueError:
        return addr
    local_mask = local[0] + "***" if len(local) > 1 else "*"
    # keep domain TLD visible
    dot = domain.rfind(".")
    if dot > 0:
        dom_mask = domain[0] + "***" + domain[dot:]
    else:
        dom_mask = domain[0] + "***"
    return f"{local_mask}@{dom_mask}"


def _port_plan(port: int):
    mode = "SSL" if port == 465 else "STARTTLS"
    plan = [(mode, port)]
    plan += [p for p in _FALLBACK_PORTS if p[1] != port]
    return plan


def send_email(*, to: str, subject: str, html: str = "", text: str = "") -> None:
    """
    Sends an email over SMTP, walking the port plan until one works.
    Reads SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASSWORD / MAIL_FROM from app config.
    Raises NotConfigured when credentials are missing, RuntimeError when every attempt fails.
    """
    cfg = current_app.config
    host      = cfg.get("SMTP_HOST")
    port      = int(cfg.get("SMTP_PORT") or 587)
    login     = cfg.get("SMTP_USER")
    password  = cfg.get("SMTP_PASSWORD")
    mail_from = cfg.get("MAIL_FROM") or login
    timeout   = int(cfg.get("MAIL_TIMEOUT_S") or 20)

    if not (host and login and password and mail_from):
        raise NotConfigured("SMTP is not configured (SMTP_HOST, SMTP_USER, SMTP_PASSWORD, MAIL_FROM)")

    msg = EmailMessage()
    msg["From"] = mail_from
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text or "")
    if html:
        msg.add_alternative(html, subtype="html")

    last_err: Optional[Exception] = None

    for mode, p in _port_plan(port):
        try:
            ctx = ssl.create_default_context()
            if mode == "SSL":
                with smtplib.SMTP_SSL(host, p, context=ctx, timeout=timeout) as s:
                    s.login(login, password)
                    s.send_message(msg)
            else:
                with smtplib.SMTP(host, p, timeout=timeout) as s:
                    s.ehlo()
                    s.starttls(context=ctx)
                    s.ehlo()
                    s.login(login, password)
                    s.send_message(msg)

            current_app.logger.info("[mail] sent via %s:%s to %s", host, p, mask_email(to))
            return
        except (smtplib.SMTPException, OSError, socket.error) as e:
            last_err = e
            current_app.logger.warning("[mail] attempt %s %s:%s failed: %r", mode, host, p, e)

    raise RuntimeError(f"All SMTP attempts failed; last error: {last_err!r}")


def send_email_async(*, to: str, subject: str, html: str = "", text: str = "") -> None:
    """
    Fire-and-forget wrapper. Returns immediately; failures are logged inside the thread.
    With MAIL_ASYNC off the send runs inline but is still best-effort.
    """
    app = current_app._get_current_object()

    def _send():
        try:
            send_email(to=to, subject=subject, html=html, text=text)
        except NotConfigured as e:
            app.logger.warning("[mail] skipped (%s) to=%s", e.message, mask_email(to))
        except Exception:
            app.logger.exception("[mail] send failed to=%s", mask_email(to))

    def _run():
        with app.app_context():
            _send()

    if not app.config.get("MAIL_ASYNC", True):
        _send()
        return
    Thread(target=_run, daemon=True).start()
