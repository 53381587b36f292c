from postmarker.core import PostmarkClient
from database import database
from models import MessageLog, EmailTemplateAlias, AuditAction
from utils.audit import create_audit_log
from datetime import datetime, timezone
from html import escape
import os
import logging
from typing import Optional, Dict, Any, List, Tuple

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "noreply@registeredoffice.co.uk")
SERVICE_NAME = os.getenv("SERVICE_NAME", "Registered Office Service")


def admin_alert_recipients() -> List[str]:
    """Operator recipients for new-registration alerts: ADMIN_ALERT_EMAILS (comma separated)."""
    raw = (os.getenv("ADMIN_ALERT_EMAILS") or "").strip()
    return [e.strip() for e in raw.split(",") if e.strip()]


def portal_link(path: str = "/dashboard") -> str:
    base = (os.getenv("FRONTEND_ORIGIN") or "http://localhost:3000").strip().rstrip("/")
    return f"{base}{path}"


# subject, heading, paragraphs (str.format against the template model), button label, button path
_TEMPLATES: Dict[EmailTemplateAlias, Tuple[str, str, List[str], Optional[str], str]] = {
    EmailTemplateAlias.WELCOME: (
        "Welcome to {service_name}",
        "Registration received",
        [
            "Thank you for registering {company_name}.",
            "Your signed agreement has been recorded. Complete your payment from the dashboard "
            "and our team will review your application.",
        ],
        "Go to dashboard", "/dashboard",
    ),
    EmailTemplateAlias.ADMIN_NEW_REGISTRATION: (
        "[Admin] New registration: {company_name}",
        "New registration",
        [
            "{company_name} (CRN: {company_number}) has registered.",
            "Account email: {client_email}. Account id: {account_id}.",
        ],
        "Review client", "/admin/clients/{account_id}",
    ),
    EmailTemplateAlias.APPLICATION_APPROVED: (
        "Your application has been approved",
        "Application approved",
        ["Your registered office service for {company_name} is now active."],
        "Go to dashboard", "/dashboard",
    ),
    EmailTemplateAlias.APPLICATION_REJECTED: (
        "Update on your application",
        "Application not approved",
        [
            "We were unable to approve the application for {company_name}.",
            "Reason: {reason}",
            "Any payment taken will be refunded to the original payment method.",
        ],
        None, "/dashboard",
    ),
    EmailTemplateAlias.ACCOUNT_SUSPENDED: (
        "Your account has been suspended",
        "Account suspended",
        ["The registered office service for {company_name} has been suspended.", "Reason: {reason}"],
        "Contact us", "/dashboard/support",
    ),
    EmailTemplateAlias.ACCOUNT_REACTIVATED: (
        "Your account has been reactivated",
        "Account reactivated",
        ["The registered office service for {company_name} is active again."],
        "Go to dashboard", "/dashboard",
    ),
    EmailTemplateAlias.SERVICE_WITHDRAWN: (
        "Your service has been withdrawn",
        "Service withdrawn",
        ["The registered office service for {company_name} has been withdrawn."],
        None, "/dashboard",
    ),
    EmailTemplateAlias.PAYMENT_RECEIVED: (
        "Payment received",
        "Payment received",
        [
            "We have received your payment of {amount} for {company_name}.",
            "{status_line}",
        ],
        "Go to dashboard", "/dashboard/subscription",
    ),
    EmailTemplateAlias.PAYMENT_FAILED: (
        "Payment failed for {company_name}",
        "Payment failed",
        [
            "We were unable to process the payment for {company_name}.",
            "{urgency}",
        ],
        "Update payment method", "/dashboard/subscription",
    ),
    EmailTemplateAlias.RENEWAL_REMINDER: (
        "Your service renews in {days_remaining} days",
        "Renewal reminder",
        ["The registered office service for {company_name} expires on {expiry_date}."],
        "Renew now", "/dashboard/subscription",
    ),
}


class _SafeModel(dict):
    def __missing__(self, key):
        return ""


class EmailService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_email(
        self,
        recipient: str,
        template_alias: EmailTemplateAlias,
        template_model: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> MessageLog:
        """Send a built-in template. Never raises: failures are recorded on the returned MessageLog."""
        db = database.get_db()

        model = _SafeModel({"service_name": SERVICE_NAME, **template_model})
        subject = _TEMPLATES[template_alias][0].format_map(model)

        message_log = MessageLog(
            account_id=account_id,
            recipient=recipient,
            template_alias=template_alias,
            subject=subject,
            status="queued"
        )

        try:
            if self.client:
                response = self.client.emails.send(
                    From=DEFAULT_SENDER,
                    To=recipient,
                    Subject=subject,
                    HtmlBody=self._build_html_body(template_alias, model),
                    TextBody=self._build_text_body(template_alias, model),
                    TrackOpens=True,
                    TrackLinks="HtmlOnly",
                    Tag=template_alias.value
                )
                message_log.postmark_message_id = response["MessageID"]
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"Email sent to {recipient}: {response['MessageID']}")
            else:
                # Dev mode - just log
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"[DEV MODE] Email logged (not sent) to {recipient}: {template_alias.value}")
        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)
            message_log.provider_error_type = type(e).__name__
            logger.error(f"Failed to send email to {recipient}: {e}")

        try:
            await db.message_logs.insert_one(message_log.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Failed to store message log for {recipient}: {e}")

        await create_audit_log(
            action=AuditAction.EMAIL_SENT if message_log.status == "sent" else AuditAction.EMAIL_FAILED,
            account_id=account_id,
            metadata={
                "template": template_alias.value,
                "status": message_log.status,
                "postmark_id": message_log.postmark_message_id,
                "error": message_log.error_message,
            }
        )

        return message_log

    def _build_html_body(self, template_alias: EmailTemplateAlias, model: Dict[str, Any]) -> str:
        _, heading, paragraphs, button_label, button_path = _TEMPLATES[template_alias]
        body = "".join(
            f"<p>{escape(p.format_map(model))}</p>" for p in paragraphs if p.format_map(model).strip()
        )
        button = ""
        if button_label:
            button = f"""
                    <p style="margin: 30px 0;">
                        <a href="{escape(portal_link(button_path.format_map(model)))}"
                           style="background-color: #00B8A9; color: white; padding: 12px 24px;
                                  text-decoration: none; border-radius: 6px; display: inline-block;">
                            {escape(button_label)}
                        </a>
                    </p>"""
        return f"""
            <html>
            <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
                <div style="background-color: #0B1D3A; padding: 20px; border-radius: 8px 8px 0 0;">
                    <h1 style="color: #00B8A9; margin: 0;">{escape(heading)}</h1>
                </div>
                <div style="padding: 20px; border: 1px solid #e2e8f0; border-top: none; border-radius: 0 0 8px 8px;">
                    {body}{button}
                </div>
                <p style="color: #64748b; font-size: 13px;">{escape(SERVICE_NAME)}</p>
            </body>
            </html>
            """

    def _build_text_body(self, template_alias: EmailTemplateAlias, model: Dict[str, Any]) -> str:
        _, heading, paragraphs, button_label, button_path = _TEMPLATES[template_alias]
        lines = [heading, ""]
        lines += [p.format_map(model) for p in paragraphs if p.format_map(model).strip()]
        if button_label:
            lines += ["", f"{button_label}: {portal_link(button_path.format_map(model))}"]
        lines += ["", SERVICE_NAME]
        return "\n".join(lines)

    async def send_welcome_email(self, recipient: str, company_name: str, account_id: str) -> MessageLog:
        return await self.send_email(
            recipient, EmailTemplateAlias.WELCOME, {"company_name": company_name}, account_id=account_id
        )

    async def send_admin_new_registration_email(
        self, company_name: str, company_number: str, client_email: str, account_id: str
    ) -> List[MessageLog]:
        results = []
        for recipient in admin_alert_recipients():
            results.append(await self.send_email(
                recipient,
                EmailTemplateAlias.ADMIN_NEW_REGISTRATION,
                {
                    "company_name": company_name,
                    "company_number": company_number,
                    "client_email": client_email,
                    "account_id": account_id,
                },
                account_id=account_id,
            ))
        return results

    async def send_payment_received_email(
        self, recipient: str, company_name: str, amount_pence: int, status_line: str, account_id: str
    ) -> MessageLog:
        return await self.send_email(
            recipient,
            EmailTemplateAlias.PAYMENT_RECEIVED,
            {
                "company_name": company_name,
                "amount": f"£{amount_pence / 100:.2f}",
                "status_line": status_line,
            },
            account_id=account_id,
        )

    async def send_payment_failed_email(
        self, recipient: str, company_name: str, retry_count: int, threshold: int, account_id: str
    ) -> MessageLog:
        if retry_count >= threshold:
            urgency = "Your account has been suspended due to repeated payment failures."
        elif retry_count == threshold - 1:
            urgency = "This is your final reminder. Please update your payment method to avoid suspension."
        else:
            urgency = f"Please update your payment method or try again. Attempt {retry_count} of {threshold}."
        return await self.send_email(
            recipient,
            EmailTemplateAlias.PAYMENT_FAILED,
            {"company_name": company_name, "urgency": urgency},
            account_id=account_id,
        )

    async def send_renewal_reminder_email(
        self, recipient: str, company_name: str, days_remaining: int, expiry_date: str, account_id: str
    ) -> MessageLog:
        return await self.send_email(
            recipient,
            EmailTemplateAlias.RENEWAL_REMINDER,
            {"company_name": company_name, "days_remaining": days_remaining, "expiry_date": expiry_date},
            account_id=account_id,
        )


email_service = EmailService()
