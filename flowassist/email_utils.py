"""
Email Utilities
===============

Email sending for password reset and cabinet notifications.
Supports both SMTP and mock mode for development.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from html import escape
from typing import Optional

from .config import get_settings

logger = logging.getLogger(__name__)


def get_email_config():
    """Get email configuration from settings."""
    settings = get_settings()
    return {
        "smtp_host": settings.smtp_host or "",
        "smtp_port": settings.smtp_port,
        "smtp_user": settings.smtp_user or "",
        "smtp_password": settings.smtp_password or "",
        "smtp_from": settings.smtp_from,
        "smtp_use_tls": settings.smtp_use_tls,
        "app_url": settings.app_url,
    }


def is_email_configured() -> bool:
    """Check if SMTP is properly configured."""
    config = get_email_config()
    return bool(config["smtp_host"] and config["smtp_user"] and config["smtp_password"])


def send_email(
    to_email: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None
) -> bool:
    """
    Send an email.

    Returns True if sent successfully, False otherwise.
    In development mode (SMTP not configured), logs the email instead.
    """
    config = get_email_config()

    if not is_email_configured():
        logger.info(f"[DEV MODE] Email would be sent to {to_email}: {subject}")
        logger.debug(f"[DEV MODE] Email body: {text_body or html_body[:200]}")
        return True

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = config["smtp_from"]
        msg["To"] = to_email

        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(config["smtp_host"], config["smtp_port"]) as server:
            if config["smtp_use_tls"]:
                server.starttls()
            server.login(config["smtp_user"], config["smtp_password"])
            server.sendmail(config["smtp_from"], to_email, msg.as_string())

        logger.info(f"Email sent successfully to {to_email}")
        return True

    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def _layout(title: str, body_html: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html lang="fr">
    <head>
        <meta charset="UTF-8">
        <style>
            body {{ font-family: Arial, sans-serif; color: #1f2937; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
            .header {{ background: #1e3a8a; padding: 24px; border-radius: 10px 10px 0 0; }}
            .header h1 {{ color: white; margin: 0; font-size: 22px; }}
            .content {{ background: #f8f9fa; padding: 24px; border-radius: 0 0 10px 10px; }}
            .button {{ display: inline-block; background: #1e3a8a; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; font-weight: bold; margin: 16px 0; }}
            .footer {{ text-align: center; color: #666; font-size: 12px; margin-top: 20px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header"><h1>{escape(title)}</h1></div>
            <div class="content">{body_html}</div>
            <div class="footer"><p>Message automatique FlowAssist, merci de ne pas répondre.</p></div>
        </div>
    </body>
    </html>
    """


def send_password_reset_email(to_email: str, reset_token: str, user_name: Optional[str] = None) -> bool:
    """
    Send a password reset email.

    Args:
        to_email: Recipient email address
        reset_token: The password reset token
        user_name: Optional user name for personalization

    Returns:
        True if sent successfully, False otherwise
    """
    app_url = get_email_config()["app_url"].rstrip("/")
    reset_link = f"{app_url}/reset-password?token={reset_token}"
    greeting = f"Bonjour {user_name}," if user_name else "Bonjour,"

    html_body = _layout("FlowAssist", f"""
        <p>{escape(greeting)}</p>
        <p>Nous avons reçu une demande de réinitialisation de votre mot de passe.</p>
        <center><a href="{reset_link}" class="button">Réinitialiser le mot de passe</a></center>
        <p>Ce lien est valable une heure. Si vous n'êtes pas à l'origine de cette demande, ignorez ce message.</p>
        <p style="word-break: break-all; font-size: 12px;">{reset_link}</p>
    """)
    text_body = f"""{greeting}

Nous avons reçu une demande de réinitialisation de votre mot de passe.

Lien (valable une heure) :
{reset_link}

Si vous n'êtes pas à l'origine de cette demande, ignorez ce message.
"""
    return send_email(to_email, "Réinitialisation de votre mot de passe", html_body, text_body)


def send_budget_alert_email(to_email: str, matter_code: str, matter_label: str,
                            consumed_cents: int, max_cents: int, percent: int) -> bool:
    from .billing import format_cents

    currency = get_settings().currency_label
    consumed = format_cents(consumed_cents, currency)
    budget = format_cents(max_cents, currency)
    subject = f"Alerte budget - {matter_code} ({percent}%)"

    html_body = _layout("Alerte budget", f"""
        <p>Le dossier <strong>{escape(matter_code)} - {escape(matter_label)}</strong> a consommé
        <strong>{percent}%</strong> de son budget.</p>
        <p>Consommé : {consumed}<br>Budget HT : {budget}</p>
    """)
    text_body = (
        f"Le dossier {matter_code} - {matter_label} a consommé {percent}% de son budget.\n"
        f"Consommé : {consumed}\nBudget HT : {budget}\n"
    )
    return send_email(to_email, subject, html_body, text_body)


def send_document_notification_email(to_email: str, client_name: str, file_name: str,
                                     category_label: str) -> bool:
    app_url = get_email_config()["app_url"].rstrip("/")
    subject = f"Nouveau document disponible - {category_label}"

    html_body = _layout("Nouveau document", f"""
        <p>Bonjour {escape(client_name)},</p>
        <p>Un nouveau document a été déposé dans votre espace ({escape(category_label)}) :</p>
        <p><strong>{escape(file_name)}</strong></p>
        <center><a href="{app_url}/documents" class="button">Voir mes documents</a></center>
    """)
    text_body = (
        f"Bonjour {client_name},\n\n"
        f"Un nouveau document a été déposé dans votre espace ({category_label}) : {file_name}\n"
        f"{app_url}/documents\n"
    )
    return send_email(to_email, subject, html_body, text_body)


def send_agenda_reminder_email(to_email: str, note: str, entry_date: str,
                               user_name: Optional[str] = None) -> bool:
    subject = f"Rappel : {note[:60]}"
    greeting = f"Bonjour {user_name}," if user_name else "Bonjour,"

    html_body = _layout("Rappel agenda", f"""
        <p>{escape(greeting)}</p>
        <p>Rappel pour le {escape(entry_date)} :</p>
        <p><strong>{escape(note)}</strong></p>
    """)
    text_body = f"{greeting}\n\nRappel pour le {entry_date} :\n{note}\n"
    return send_email(to_email, subject, html_body, text_body)
