"""
Email delivery of meeting briefs via Gmail SMTP.

Renders a MeetingBrief into HTML with Jinja2 and sends it over SMTP
(STARTTLS on port 587, authenticated with a Gmail App Password, not the
account password).
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import List, Optional

from jinja2 import Environment, FileSystemLoader

from followthrough.config import EmailConfig
from followthrough.models import CalendarEvent, MeetingBrief

logger = logging.getLogger(__name__)


class EmailSender:
    """
    Usage:
        sender = EmailSender(config.email)
        ok = sender.send_brief(brief, event)
    """

    def __init__(self, config: EmailConfig):
        self.config = config
        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=True,
        )

    def send_brief(
        self,
        brief: MeetingBrief,
        event: CalendarEvent,
        recipients: Optional[List[str]] = None,
    ) -> bool:
        """
        Render and send one brief.

        Returns:
            True if the SMTP server accepted the message
        """
        recipients = recipients or [self.config.recipient]
        try:
            template = self.jinja_env.get_template("brief_email.html")
            html_body = template.render(**brief.to_email_context(event))
            subject = self.config.subject_template.format(title=event.title)
            return self._send_smtp(subject, html_body, brief.to_plain_text(), recipients)
        except Exception as e:
            logger.error(f"Failed to send brief email for '{event.title}': {e}")
            return False

    def _send_smtp(self, subject: str, html_body: str, text_body: str, recipients: List[str]) -> bool:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.config.sender
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject

        # Plain text first, then HTML: clients show the last part they support
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            with smtplib.SMTP(self.config.smtp_server, self.config.smtp_port) as server:
                server.starttls()
                server.login(self.config.sender, self.config.app_password)
                server.sendmail(self.config.sender, recipients, msg.as_string())

            logger.info("Brief email sent to %s", ", ".join(recipients))
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error(
                "SMTP authentication failed. "
                "Make sure you're using a Gmail App Password, not your regular password."
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return False
