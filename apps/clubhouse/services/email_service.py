"""
Email service using SendGrid for transactional and broadcast mail.

Sending is best effort: every public function catches and logs failures and
reports them in its return value, so a mail problem can never undo a
registration or payment.
"""

import asyncio
import base64
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import (
    Attachment,
    Content,
    Disposition,
    Email,
    FileContent,
    FileName,
    FileType,
    Mail,
    To,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database import db
from clubhouse.database.models import EmailTemplate, Parent, Payment, Player, Team

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def get_bool_env(key: str, default: bool = True) -> bool:
    """
    Parse a boolean environment variable from a string value.

    Args:
        key: Environment variable name
        default: Default value if the variable is not set

    Returns:
        bool: Parsed boolean value
    """
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


# SendGrid Configuration
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@clubhouse.local")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Clubhouse")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
UPLOADS_DIR = os.getenv("UPLOADS_DIR", "./uploads")
ENABLE_EMAIL = get_bool_env("ENABLE_EMAIL", default=True)

# emailType -> communication preference key
PREFERENCE_KEYS = {
    "campaign": "marketingEmails",
    "broadcast": "broadcastEmails",
    "news": "newsUpdates",
    "offers": "offersPromotions",
    "transactional": "transactionalEmails",
    "notification": "emailNotifications",
}
DEFAULT_PREFERENCE_KEY = "marketingEmails"

PLACEHOLDER_PATTERN = re.compile(r"\[(parent|player|team|tournament)\.(\w+)\]")

# Receipt template titles per payment flow
RECEIPT_TEMPLATES = {
    "tryout": "Tryout Receipt",
    "training": "Training Receipt",
    "tournament-team": "Tournament Receipt",
    "tournament-teams": "Tournament Receipt",
    "general": "Payment Receipt",
}

_background_tasks: set = set()


def preference_key_for(email_type: Optional[str]) -> str:
    return PREFERENCE_KEYS.get(email_type or "", DEFAULT_PREFERENCE_KEY)


async def _find_recipient(
    session: AsyncSession, to: str, parent_id: Optional[int]
) -> Optional[Parent]:
    if parent_id is not None:
        parent = await session.get(Parent, parent_id)
        if parent is not None:
            return parent
    result = await session.execute(
        select(Parent).where(func.lower(Parent.email) == to.strip().lower())
    )
    return result.scalar_one_or_none()


async def should_send_email(
    session: Optional[AsyncSession],
    to: str,
    email_type: str,
    parent_id: Optional[int] = None,
) -> bool:
    """
    Check the recipient's communication preferences.

    A recipient without an account, or without the preference set, gets mail.
    """
    if session is None:
        return True
    parent = await _find_recipient(session, to, parent_id)
    if parent is None:
        return True
    preferences = parent.communication_preferences or {}
    return preferences.get(preference_key_for(email_type)) is not False


def _first_name(full_name: Optional[str]) -> str:
    return (full_name or "").strip().split(" ")[0]


async def build_placeholder_values(
    session: Optional[AsyncSession], context: Optional[Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    """Look up the Parent/Player/Team named in ``context`` and flatten them for substitution."""
    context = context or {}
    values: Dict[str, Dict[str, Any]] = {}

    if session is not None and context.get("parentId") is not None:
        parent = await session.get(Parent, context["parentId"])
        if parent is not None:
            values["parent"] = {
                "fullName": parent.full_name,
                "email": parent.email,
                "phone": parent.phone or "",
            }
    if session is not None and context.get("playerId") is not None:
        player = await session.get(Player, context["playerId"])
        if player is not None:
            values["player"] = {
                "fullName": player.full_name,
                "firstName": _first_name(player.full_name),
                "grade": player.grade or "",
                "schoolName": player.school_name or "",
            }
    if session is not None and context.get("teamId") is not None:
        team = await session.get(Team, context["teamId"])
        if team is not None:
            values["team"] = {
                "name": team.name,
                "grade": team.grade,
                "sex": team.sex,
                "levelOfCompetition": team.level_of_competition,
            }
    tournament = context.get("tournamentData")
    if tournament:
        values["tournament"] = {
            "name": tournament.get("name") or tournament.get("tournament") or "",
            "year": tournament.get("year", ""),
            "fee": tournament.get("fee", ""),
        }
    return values


def substitute_placeholders(text: str, values: Dict[str, Dict[str, Any]]) -> str:
    """Replace ``[entity.field]`` tokens; unknown tokens are left as written."""
    if not text:
        return text

    def replace(match: re.Match) -> str:
        entity, field_name = match.group(1), match.group(2)
        entity_values = values.get(entity)
        if entity_values is None or field_name not in entity_values:
            return match.group(0)
        return str(entity_values[field_name])

    return PLACEHOLDER_PATTERN.sub(replace, text)


def compose_envelope(
    content: str, include_signature: bool = False, signature_config: Optional[Dict[str, Any]] = None
) -> str:
    """Wrap template content in the standard HTML header/footer."""
    signature = ""
    if include_signature:
        config = signature_config or {}
        lines = [
            config.get("organizationName", EMAIL_FROM_NAME),
            config.get("title", ""),
            config.get("phone", ""),
            config.get("email", ""),
            config.get("website", ""),
        ]
        signature_html = "<br>".join(line for line in lines if line)
        signature = f'<div class="signature" style="margin-top:24px;color:#555;">{signature_html}</div>'

    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        '<body style="font-family:Arial,sans-serif;background:#f4f4f4;margin:0;padding:0;">'
        '<div style="max-width:600px;margin:0 auto;background:#fff;">'
        f'<div style="background:#1a2a4f;color:#fff;padding:20px;text-align:center;">'
        f"<h1 style=\"margin:0;font-size:22px;\">{EMAIL_FROM_NAME}</h1></div>"
        f'<div style="padding:24px;">{content}{signature}</div>'
        '<div style="padding:16px;text-align:center;font-size:12px;color:#888;">'
        f'You are receiving this email because you have an account with {EMAIL_FROM_NAME}. '
        f'<a href="{FRONTEND_URL}/account/preferences">Manage email preferences</a>'
        "</div></div></body></html>"
    )


def _resolve_upload(url: str) -> bytes:
    relative = url.split("/uploads/", 1)[1]
    root = Path(UPLOADS_DIR).resolve()
    path = (root / relative).resolve()
    if root not in path.parents:
        raise ValueError(f"Attachment path escapes uploads directory: {url}")
    return path.read_bytes()


def build_attachments(attachments: Optional[Iterable[Dict[str, Any]]]) -> List[Attachment]:
    """
    Convert attachment dicts into SendGrid attachments.

    Each dict has ``filename`` and either ``content`` (bytes or base64 text)
    or ``url`` pointing under ``/uploads/``.
    """
    built = []
    for item in attachments or []:
        content = item.get("content")
        if content is None and item.get("url") and "/uploads/" in item["url"]:
            content = _resolve_upload(item["url"])
        if content is None:
            logger.warning(f"Skipping attachment without content: {item.get('filename')}")
            continue
        if isinstance(content, bytes):
            encoded = base64.b64encode(content).decode()
        else:
            encoded = content
        built.append(
            Attachment(
                FileContent(encoded),
                FileName(item.get("filename", "attachment")),
                FileType(item.get("type", "application/octet-stream")),
                Disposition("attachment"),
            )
        )
    return built


async def send(
    session: Optional[AsyncSession],
    to: str,
    subject: str,
    html: str,
    context: Optional[Dict[str, Any]] = None,
    email_type: str = "transactional",
    attachments: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Send one email, honouring the recipient's communication preferences.

    Args:
        session: Database session for preference and placeholder lookups
        to: Recipient address
        subject: Subject, may contain placeholders
        html: HTML body, may contain placeholders
        context: ``{parentId?, playerId?, teamId?, tournamentData?}``
        email_type: transactional, campaign, broadcast, news, offers, notification
        attachments: See :func:`build_attachments`

    Returns:
        ``{"sent": True}``, ``{"skipped": True, "reason": ...}`` or
        ``{"sent": False, "error": ...}``. Never raises.
    """
    context = context or {}
    try:
        if not ENABLE_EMAIL:
            logger.info(f"Email disabled; not sending '{subject}' to {to}")
            return {"sent": False, "skipped": True, "reason": "email_disabled"}

        if not await should_send_email(session, to, email_type, context.get("parentId")):
            logger.info(f"{to} opted out of {email_type} email; skipping '{subject}'")
            return {"sent": False, "skipped": True, "reason": "user_opt_out"}

        values = await build_placeholder_values(session, context)
        subject = substitute_placeholders(subject, values)
        html = substitute_placeholders(html, values)

        if not SENDGRID_API_KEY:
            logger.warning("SENDGRID_API_KEY not configured. Email skipped.")
            return {"sent": False, "skipped": True, "reason": "not_configured"}

        message = Mail(
            from_email=Email(EMAIL_FROM, EMAIL_FROM_NAME),
            to_emails=To(to),
            subject=subject,
            html_content=Content("text/html", html),
        )
        for attachment in build_attachments(attachments):
            message.add_attachment(attachment)

        sg = SendGridAPIClient(SENDGRID_API_KEY)
        response = sg.send(message)

        if 200 <= response.status_code < 300:
            logger.info(f"Email '{subject}' sent to {to}")
            return {"sent": True, "statusCode": response.status_code}
        logger.error(f"SendGrid returned status {response.status_code}: {response.body}")
        return {"sent": False, "error": f"SendGrid returned status {response.status_code}"}

    except Exception as e:
        logger.error(f"Failed to send email '{subject}' to {to}: {str(e)}", exc_info=True)
        return {"sent": False, "error": str(e)}


async def get_template(session: AsyncSession, title: str) -> Optional[EmailTemplate]:
    result = await session.execute(
        select(EmailTemplate).where(
            EmailTemplate.title == title, EmailTemplate.status == "active"
        )
    )
    return result.scalar_one_or_none()


async def send_template(
    session: AsyncSession,
    template_name: str,
    to: str,
    context: Optional[Dict[str, Any]] = None,
    email_type: str = "transactional",
    attachments: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Send a persisted EmailTemplate by title.

    Template attachments are sent along with any passed in ``attachments``.
    """
    try:
        template = await get_template(session, template_name)
    except Exception as e:
        logger.error(f"Failed to load email template '{template_name}': {e}", exc_info=True)
        return {"sent": False, "error": str(e)}
    if template is None:
        logger.warning(f"Email template '{template_name}' not found")
        return {"sent": False, "error": "template_not_found"}

    html = compose_envelope(template.content, template.include_signature, template.signature_config)
    all_attachments = list(template.attachments or []) + list(attachments or [])
    return await send(session, to, template.subject, html, context, email_type, all_attachments)


def _receipt_html(payment: Payment, parent: Parent) -> str:
    lines = [
        f"<p>Hi {_first_name(parent.full_name) or 'there'},</p>",
        "<p>Thank you! We received your payment.</p>",
        "<table style=\"border-collapse:collapse;\">",
        f"<tr><td>Description</td><td>{payment.note or ''}</td></tr>",
        f"<tr><td>Amount</td><td>{payment.amount} {payment.currency}</td></tr>",
    ]
    if payment.card_brand or payment.card_last_four:
        lines.append(
            f"<tr><td>Card</td><td>{payment.card_brand or ''} ending in {payment.card_last_four or ''}</td></tr>"
        )
    lines.append(f"<tr><td>Payment ID</td><td>{payment.payment_id}</td></tr>")
    lines.append("</table>")
    if payment.receipt_url:
        lines.append(f'<p><a href="{payment.receipt_url}">View your receipt</a></p>')
    return "".join(lines)


async def send_payment_receipt(
    parent_id: int, payment_record_id: int, flow: str
) -> Dict[str, Any]:
    """
    Send the confirmation email for a committed payment.

    Runs after the orchestrator's commit with its own session.
    """
    try:
        async with db.AsyncSessionLocal() as session:
            parent = await session.get(Parent, parent_id)
            payment = await session.get(Payment, payment_record_id)
            if parent is None or payment is None:
                logger.warning(
                    f"Receipt skipped: parent {parent_id} or payment {payment_record_id} missing"
                )
                return {"sent": False, "error": "not_found"}

            metadata = payment.payment_metadata or {}
            context: Dict[str, Any] = {"parentId": parent.id}
            if payment.player_ids:
                context["playerId"] = payment.player_ids[0]
            if payment.team_ids:
                context["teamId"] = payment.team_ids[0]
            if payment.tournament_name:
                context["tournamentData"] = {
                    "name": payment.tournament_name,
                    "year": payment.year,
                    "fee": metadata.get("amountPerTeam", ""),
                }

            template_name = RECEIPT_TEMPLATES.get(flow, RECEIPT_TEMPLATES["general"])
            template = await get_template(session, template_name)
            if template is not None:
                return await send_template(
                    session, template_name, parent.email, context, "transactional"
                )
            return await send(
                session,
                parent.email,
                f"Payment confirmation - {payment.note or 'Clubhouse'}",
                compose_envelope(_receipt_html(payment, parent)),
                context,
                "transactional",
            )
    except Exception as e:
        logger.error(f"Failed to send receipt for payment {payment_record_id}: {e}", exc_info=True)
        return {"sent": False, "error": str(e)}


def send_in_background(coro) -> asyncio.Task:
    """Schedule an email coroutine without awaiting it. Shutdown drains pending ones."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error(f"Background email task failed: {finished.exception()}")

    task.add_done_callback(_done)
    return task


async def wait_for_background_emails(timeout: Optional[float] = None) -> None:
    """Wait for scheduled email tasks to finish."""
    if not _background_tasks:
        return
    await asyncio.wait(list(_background_tasks), timeout=timeout)


async def send_broadcast(
    session: AsyncSession, parent_ids: Iterable[int], subject: str, html: str
) -> Dict[str, int]:
    """Email a cohort of parents. Opted-out parents are skipped."""
    summary = {"sent": 0, "skipped": 0, "failed": 0}
    for parent_id in parent_ids:
        parent = await session.get(Parent, parent_id)
        if parent is None:
            summary["failed"] += 1
            continue
        result = await send(
            session, parent.email, subject, compose_envelope(html), {"parentId": parent.id}, "broadcast"
        )
        if result.get("sent"):
            summary["sent"] += 1
        elif result.get("skipped"):
            summary["skipped"] += 1
        else:
            summary["failed"] += 1
    logger.info(f"Broadcast '{subject}': {summary}")
    return summary


async def send_verification_email(session: AsyncSession, parent: Parent, token: str) -> Dict[str, Any]:
    link = f"{FRONTEND_URL}/verify-email?token={token}"
    html = compose_envelope(
        "<p>Hi [parent.fullName],</p>"
        "<p>Please confirm your email address to finish setting up your account.</p>"
        f'<p><a href="{link}">Verify my email</a></p>'
        "<p>This link expires in 24 hours.</p>"
    )
    return await send(session, parent.email, "Verify your email", html, {"parentId": parent.id})


async def send_password_reset_email(session: AsyncSession, parent: Parent, token: str) -> Dict[str, Any]:
    link = f"{FRONTEND_URL}/reset-password?token={token}"
    html = compose_envelope(
        "<p>Hi [parent.fullName],</p>"
        "<p>We received a request to reset your password.</p>"
        f'<p><a href="{link}">Choose a new password</a></p>'
        "<p>If you did not ask for this, you can ignore this email. The link expires in 1 hour.</p>"
    )
    return await send(session, parent.email, "Reset your password", html, {"parentId": parent.id})


async def send_temp_account_email(email: str, token: str) -> Dict[str, Any]:
    link = f"{FRONTEND_URL}/verify-email?token={token}&email={email}"
    html = compose_envelope(
        "<p>Thanks for starting your registration.</p>"
        f'<p><a href="{link}">Verify your email to continue</a></p>'
        "<p>This link expires in 30 minutes.</p>"
    )
    return await send(None, email, "Verify your email to continue registration", html)
