"""
Google OAuth 2.0 credentials shared by the Calendar, Drive and Gmail clients.

OAuth 2.0 Flow (first-time setup):
    1. Download credentials.json from Google Cloud Console
       (OAuth client, "Desktop application" type)
    2. Enable the Calendar, Drive and Gmail APIs on the project
    3. First run opens a browser to grant access to all configured scopes
    4. The token is saved to token.json and refreshed automatically

Changing config.google.scopes invalidates the saved token; delete
token.json and re-run to consent to the new scopes.
"""

import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from followthrough.config import GoogleConfig

logger = logging.getLogger(__name__)


def get_credentials(config: GoogleConfig, interactive: bool = True) -> Credentials:
    """
    Load, refresh, or obtain OAuth credentials.

    Args:
        config: Google settings (paths + scopes)
        interactive: allow opening a browser for first-time consent.
            The web server passes False; it must never block on a browser.

    Raises:
        FileNotFoundError: no token and no credentials.json to start a flow
        PermissionError: consent is needed but interactive is False
    """
    creds = None
    token_path = Path(config.token_path)
    credentials_path = Path(config.credentials_path)

    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), config.scopes)
        logger.info("Loaded existing token from %s", token_path)

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        logger.info("Token expired, refreshing...")
        creds.refresh(Request())
    else:
        if not credentials_path.exists():
            raise FileNotFoundError(
                f"credentials.json not found at {credentials_path}. "
                "Download it from Google Cloud Console."
            )
        if not interactive:
            raise PermissionError(
                "Google consent required. Run `followthrough --sync` once from a terminal."
            )
        logger.info("No valid token found. Opening browser for authentication...")
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), config.scopes)
        creds = flow.run_local_server(port=0)

    with open(token_path, "w") as token_file:
        token_file.write(creds.to_json())
    logger.info("Token saved to %s", token_path)
    return creds
