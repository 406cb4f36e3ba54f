"""
tasks/notification_tasks.py
Celery tasks for transactional mail.

Usage from the engine (see services/verification/notifier.py):
    send_email.delay(to_email=..., template_name="college_verification", data={...})
"""

import html
import logging

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Delivery ───────────────────────────────────────────────────────────────────

def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Templates ──────────────────────────────────────────────────────────────────

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background: #667eea; padding: 20px; border-radius: 10px 10px 0 0;">
    <h1 style="color: white; margin: 0; text-align: center;">StaySafe Hub</h1>
  </div>
  <div style="background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px;">
    {content}
  </div>
</div>
"""

TEMPLATES = {
    "college_verification": {
        "subject": "Verify your college email for StaySafe Hub",
        "body": (
            '<h2 style="color: #333;">Verify your college email</h2>'
            '<p style="color: #666; font-size: 16px;">Hello <strong>{user_name}</strong>,</p>'
            '<p style="color: #666; font-size: 16px;">Click the button below to verify your '
            "college/university email address. The link expires in {ttl_hours} hours.</p>"
            '<div style="text-align: center; margin-top: 20px;">'
            '<a href="{verify_url}" style="background: #667eea; color: white; padding: 12px 30px; '
            'text-decoration: none; border-radius: 25px; font-weight: bold;">Verify Email</a></div>'
            '<p style="color: #999; font-size: 12px; margin-top: 20px;">If the button doesn\'t work, '
            "copy and paste this link into your browser: {verify_url}</p>"
        ),
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer. Values are HTML-escaped."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", html.escape(str(value)))
    return template


def render_email(template_name: str, data: dict) -> tuple[str, str]:
    """Returns (subject, html_body). Raises KeyError for an unknown template."""
    tmpl = TEMPLATES[template_name]
    values = {"ttl_hours": settings.EMAIL_TOKEN_TTL_HOURS, **(data or {})}
    content = _render(tmpl["body"], **values)
    return _render(tmpl["subject"], **values), _LAYOUT.replace("{content}", content)


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_email(self, to_email: str, template_name: str, data: dict = None):
    """Render a template and send it via Resend, retrying with exponential back-off."""
    try:
        subject, html_body = render_email(template_name, data or {})
    except KeyError:
        logger.error(f"send_email: unknown template '{template_name}'")
        return False

    success = _send_email(to_email, subject, html_body)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    return True
