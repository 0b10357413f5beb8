"""
Google OAuth2 credentials per principal.
The web flow stores tokens in the user_tokens table; expired ones are
refreshed and written back before a service is built.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import id_token as google_id_token
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

import database as db

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = Path("credentials.json")

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/calendar.readonly",
]


def create_oauth_flow(redirect_uri: Optional[str] = None) -> Flow:
    """Build an OAuth flow for the web connect step."""
    if not CREDENTIALS_FILE.exists():
        raise FileNotFoundError("credentials.json not found.")
    base_url = os.environ.get("APP_BASE_URL", "http://localhost:8000")
    return Flow.from_client_secrets_file(
        str(CREDENTIALS_FILE),
        scopes=SCOPES,
        redirect_uri=redirect_uri or f"{base_url}/auth/callback",
    )


def principal_from_flow(flow: Flow) -> str:
    """Verify the id_token returned with the credentials; its subject is the principal id."""
    info = google_id_token.verify_oauth2_token(
        flow.credentials.id_token,
        Request(),
        os.environ.get("GOOGLE_CLIENT_ID"),
    )
    return info["sub"]


def get_credentials(principal_id: str) -> Credentials:
    token = db.load_token(principal_id)
    if token is None:
        raise ValueError(f"No stored token for {principal_id}")

    creds = Credentials.from_authorized_user_info(token, SCOPES)
    if not creds.valid:
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise ValueError(f"Token refresh failed for {principal_id}: {e}") from e
            db.save_token(principal_id, credentials_to_dict(creds))
            logger.info(f"[{principal_id}] Refreshed Google token")
        else:
            raise ValueError(f"Token for {principal_id} is invalid and cannot be refreshed")

    return creds


def credentials_to_dict(creds: Credentials) -> dict:
    return {
        "token": creds.token,
        "refresh_token": creds.refresh_token,
        "token_uri": creds.token_uri,
        "client_id": creds.client_id,
        "client_secret": creds.client_secret,
        "scopes": list(creds.scopes or SCOPES),
    }


def is_authorized(principal_id: str) -> bool:
    try:
        get_credentials(principal_id)
        return True
    except ValueError:
        return False


def get_gmail_service(principal_id: str):
    return build("gmail", "v1", credentials=get_credentials(principal_id), cache_discovery=False)


def get_calendar_service(principal_id: str):
    return build("calendar", "v3", credentials=get_credentials(principal_id), cache_discovery=False)
