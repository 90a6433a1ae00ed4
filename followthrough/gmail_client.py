"""
Gmail drafts for follow-up emails.

Follow-up emails are never sent automatically: they are created as drafts
in the user's mailbox so a human can review and send them.
"""

import base64
import logging
from email.mime.text import MIMEText
from typing import List

from googleapiclient.discovery import build

from followthrough.config import GoogleConfig
from followthrough.google_auth import get_credentials

logger = logging.getLogger(__name__)


class GmailDraftClient:
    def __init__(self, config: GoogleConfig, service=None):
        self.config = config
        self._service = service

    def authenticate(self, interactive: bool = True) -> None:
        creds = get_credentials(self.config, interactive=interactive)
        self._service = build("gmail", "v1", credentials=creds)
        logger.info("Gmail API service initialized")

    @property
    def service(self):
        if not self._service:
            raise RuntimeError("Not authenticated. Call authenticate() first.")
        return self._service

    def create_draft(self, to: List[str], subject: str, body: str) -> str:
        """
        Create a plain-text draft.

        Returns:
            The Gmail draft id
        """
        message = MIMEText(body, "plain")
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()

        draft = (
            self.service.users()
            .drafts()
            .create(userId="me", body={"message": {"raw": raw}})
            .execute()
        )
        logger.info("Created Gmail draft '%s' for %d recipient(s)", subject, len(to))
        return draft["id"]
