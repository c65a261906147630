"""
SchoolSync — Gmail Authentication.

Read-only Gmail access feeds the whole sync loop. The bot runs headless, so
it only ever *loads* a saved token (refreshing it when expired); the browser
consent flow is a one-off run from a terminal:

    python -m schoolsync.integrations.google_auth
"""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


class GmailAuthError(Exception):
    """Raised when no usable Gmail token exists and consent must be run."""


def _paths() -> tuple[Path, Path]:
    from schoolsync.config import settings

    return Path(settings.GOOGLE_CREDENTIALS_PATH), Path(settings.GOOGLE_TOKEN_PATH)


def _save(creds: Credentials, token_path: Path) -> None:
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
    logger.debug("Gmail token saved to %s", token_path)


def load_credentials(token_path: Path) -> Credentials | None:
    """Return valid credentials from `token_path`, or None if there are none.

    An expired token is refreshed and written back.
    """
    if not token_path.exists():
        logger.debug("No Gmail token at %s", token_path)
        return None

    creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
    if creds.valid:
        return creds

    if creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            logger.warning("Gmail token refresh failed: %s", exc)
            return None
        _save(creds, token_path)
        logger.info("Gmail token refreshed")
        return creds

    return None


def authorize(credentials_path: Path, token_path: Path) -> Credentials:
    """Run the interactive OAuth2 consent flow and persist the token."""
    if not credentials_path.exists():
        raise FileNotFoundError(
            f"Google credentials file not found at {credentials_path}. "
            "Download it from the Google Cloud Console."
        )
    flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
    creds = flow.run_local_server(port=0)
    _save(creds, token_path)
    logger.info("Gmail access granted via OAuth2 consent flow")
    return creds


def get_gmail_service(interactive: bool = False):
    """Return a Gmail API v1 service object.

    Raises GmailAuthError when no valid token is saved, unless
    `interactive` is set, in which case the consent flow runs.
    """
    credentials_path, token_path = _paths()
    creds = load_credentials(token_path)
    if creds is None:
        if not interactive:
            raise GmailAuthError(
                "Gmail is not authorized. Run "
                "`python -m schoolsync.integrations.google_auth` once."
            )
        creds = authorize(credentials_path, token_path)

    return build("gmail", "v1", credentials=creds, cache_discovery=False)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    print("Running Gmail authorization flow...")
    svc = get_gmail_service(interactive=True)
    profile = svc.users().getProfile(userId="me").execute()
    print(f"Auth successful! Connected to {profile.get('emailAddress')}.")
