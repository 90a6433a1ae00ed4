"""
Google Meet recordings and transcripts, looked up in Google Drive.

Meet saves recordings and transcripts into the organizer's Drive
("Meet Recordings" folder), named after the meeting title plus a timestamp:

    "Weekly sync (2026-03-02 10:00 GMT-5)"              video/mp4
    "Weekly sync (2026-03-02 10:00 GMT-5) - Transcript" Google Doc

A file only counts for a meeting if it was created after the meeting
started, so earlier instances of a recurring meeting are not picked up.
"""

import logging
from datetime import datetime
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel

from followthrough.config import GoogleConfig
from followthrough.google_auth import get_credentials
from followthrough.models import CalendarEvent, MeetingRecording

logger = logging.getLogger(__name__)

GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
FILE_FIELDS = "files(id, name, mimeType, size, createdTime, webViewLink)"


class RecordingAvailability(BaseModel):
    recording: Optional[MeetingRecording] = None
    transcript: Optional[str] = None

    @property
    def recording_found(self) -> bool:
        return self.recording is not None

    @property
    def transcript_found(self) -> bool:
        return bool(self.transcript)


class MeetRecordingClient:
    """
    Usage:
        client = MeetRecordingClient(config.google)
        client.authenticate()
        availability = client.check_availability(event)
    """

    def __init__(self, config: GoogleConfig, service=None):
        self.config = config
        self._service = service

    def authenticate(self, interactive: bool = True) -> None:
        creds = get_credentials(self.config, interactive=interactive)
        self._service = build("drive", "v3", credentials=creds)
        logger.info("Google Drive API service initialized")

    @property
    def service(self):
        if not self._service:
            raise RuntimeError("Not authenticated. Call authenticate() first.")
        return self._service

    def check_availability(self, event: CalendarEvent) -> RecordingAvailability:
        """Look for both the recording and the transcript of a meeting."""
        try:
            recording = self.find_recording(event)
            transcript = self.fetch_transcript(event)
        except HttpError as e:
            logger.error("Drive lookup failed for '%s': %s", event.title, e)
            return RecordingAvailability()
        return RecordingAvailability(recording=recording, transcript=transcript)

    def find_recording(self, event: CalendarEvent) -> Optional[MeetingRecording]:
        query = (
            f"name contains '{_escape(event.title)}' and mimeType contains 'video' "
            f"and createdTime > '{_rfc3339(event.start_time)}' and trashed = false"
        )
        files = self._search(query)
        if not files:
            return None

        f = files[0]
        return MeetingRecording(
            recording_id=f["id"],
            event_id=event.event_id,
            file_name=f.get("name", ""),
            mime_type=f.get("mimeType", ""),
            format=_recording_format(f.get("mimeType", "")),
            url=f.get("webViewLink"),
            size_bytes=int(f["size"]) if f.get("size") else None,
            created_at=f.get("createdTime"),
        )

    def fetch_transcript(self, event: CalendarEvent) -> Optional[str]:
        """Return the transcript text, or None if Meet has not produced it yet."""
        query = (
            f"name contains '{_escape(event.title)}' and name contains 'Transcript' "
            f"and createdTime > '{_rfc3339(event.start_time)}' and trashed = false"
        )
        files = self._search(query)
        if not files:
            return None

        f = files[0]
        if f.get("mimeType") == GOOGLE_DOC_MIME:
            content = self.service.files().export(fileId=f["id"], mimeType="text/plain").execute()
        else:
            content = self.service.files().get_media(fileId=f["id"]).execute()

        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        text = (content or "").strip()
        return text or None

    def _search(self, query: str) -> list:
        result = (
            self.service.files()
            .list(q=query, orderBy="createdTime desc", pageSize=5, fields=FILE_FIELDS)
            .execute()
        )
        return result.get("files", [])


def _recording_format(mime_type: str) -> str:
    if "webm" in mime_type:
        return "webm"
    if mime_type.startswith("audio"):
        return "audio"
    return "mp4"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _rfc3339(value: datetime) -> str:
    return value.isoformat()
