import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Protocol

from .config import EMAIL_HOST, EMAIL_PASSWORD, EMAIL_PORT, EMAIL_SENDER, EMAIL_SENDER_NAME, EMAIL_USER
from .logger import get_logger

logger = get_logger(__name__)

SIGNING_INVITATION = "signing_invitation"
VERIFICATION_CODE = "verification_code"
COMPLETION = "completion"


class Notifier(Protocol):
    def send(self, recipient: str, template_kind: str, template_data: dict) -> bool:
        ...

def _wrap_html(title: str, inner: str) -> str:
    return f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{escape(title)}</h2>
      {inner}
    </div>
  </body>
</html>
"""

def render_signing_invitation(data: dict):
    document = data.get("document_name") or "Document"
    sender = data.get("sender_name") or "Your contact"
    intro = data.get("message") or f"{sender} invited you to review and sign this document."
    link = data["signing_link"]
    subject = f"Signature Requested: {data.get('subject') or document}"
    text = f"""{sender} sent you a document to review and sign.
Document: "{document}"

{intro}

Open document: {link}
Access code: {data.get('code', '')}
"""
    html = _wrap_html("Signature requested", f"""
      <p style="font-size: 14px; color: #1e293b;">{escape(sender)} sent you a document to review and sign.</p>
      <p style="font-size: 14px; color: #1e293b;">{escape(intro)}</p>
      <p><a href="{escape(link)}" style="background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none;">Review &amp; Sign</a></p>
      <p style="font-size: 13px; color: #475569;">Access code: <strong>{escape(str(data.get('code', '')))}</strong></p>
""")
    return subject, text, html

def render_verification_code(data: dict):
    minutes = data.get("expires_in_minutes", 10)
    subject = "Your signing verification code"
    text = f"Hello {data.get('signer_name', '')},\n\nYour verification code is {data['code']}. It expires in {minutes} minutes.\n"
    html = _wrap_html("Verification code", f"""
      <p style="font-size: 14px; color: #1e293b;">Hello {escape(data.get('signer_name', ''))},</p>
      <p style="font-size: 24px; letter-spacing: 4px; font-weight: 600;">{escape(data['code'])}</p>
      <p style="font-size: 13px; color: #475569;">The code expires in {minutes} minutes.</p>
""")
    return subject, text, html

def render_completion(data: dict):
    document = data.get("document_name") or "Document"
    subject = f"Completed: {data.get('subject') or document}"
    signers = ", ".join(data.get("signers") or [])
    text = f"All parties have finished signing {document}.\nSigners: {signers}\n\nDownload: {data.get('download_link', '')}\n"
    html = _wrap_html("Completed", f"""
      <p style="font-size: 14px; color: #1e293b;">All parties have finished signing <strong>{escape(document)}</strong>.</p>
      <p style="font-size: 13px; color: #475569;">Signers: {escape(signers)}</p>
      <p><a href="{escape(data.get('download_link', ''))}">Download the signed document</a></p>
""")
    return subject, text, html

TEMPLATES = {
    SIGNING_INVITATION: render_signing_invitation,
    VERIFICATION_CODE: render_verification_code,
    COMPLETION: render_completion,
}

def send_email(to: str, subject: str, body: str, html_body: str | None = None, sender_name: str | None = None):
    display_name = (sender_name or EMAIL_SENDER_NAME).strip()
    from_value = formataddr((display_name, EMAIL_SENDER)) if display_name else EMAIL_SENDER
    if EMAIL_USER and EMAIL_PASSWORD:
        msg = EmailMessage()
        msg["From"] = from_value
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        with smtplib.SMTP(EMAIL_HOST, EMAIL_PORT) as smtp:
            smtp.starttls()
            smtp.login(EMAIL_USER, EMAIL_PASSWORD)
            smtp.send_message(msg)
    else:
        logger.info("email_stub", sender=from_value, to=to, subject=subject, body=body)


class EmailNotifier:
    """Fire-and-forget delivery: failures are logged and reported as False."""

    def send(self, recipient: str, template_kind: str, template_data: dict) -> bool:
        render = TEMPLATES.get(template_kind)
        if render is None:
            logger.warning("notification_unknown_template", template=template_kind, to=recipient)
            return False
        subject, text, html = render(template_data)
        try:
            send_email(recipient, subject, text, html_body=html, sender_name=template_data.get("sender_name"))
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("notification_failed", template=template_kind, to=recipient, error=str(exc))
            return False
        return True
