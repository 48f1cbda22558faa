"""
External identity providers: Google OAuth 2.0 and Firebase ID tokens.

Both resolve to a plain profile dict (`id`, `email`, optional names) that the
auth routes turn into a local user.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import firebase_admin
import httpx
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials as firebase_credentials
from firebase_admin import exceptions as firebase_exceptions

from config import Settings

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


class IdentityError(Exception):
    pass


class GoogleOAuth:
    def __init__(self, client_id: Optional[str], client_secret: Optional[str], callback_url: str,
                 timeout: float = 10.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleOAuth":
        return cls(settings.google_client_id, settings.google_client_secret, settings.google_callback_url)

    def authorization_url(self) -> str:
        if not self.client_id:
            raise IdentityError("Google OAuth is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": "openid email profile",
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    def fetch_profile(self, code: str) -> dict:
        if not self.client_id or not self.client_secret:
            raise IdentityError("Google OAuth is not configured")
        try:
            with httpx.Client(timeout=self.timeout) as client:
                token_res = client.post(GOOGLE_TOKEN_URL, data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.callback_url,
                    "grant_type": "authorization_code",
                })
                token_res.raise_for_status()
                access_token = token_res.json()["access_token"]
                info_res = client.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
                info_res.raise_for_status()
                info = info_res.json()
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("Google code exchange failed: %s", exc)
            raise IdentityError("Google authentication failed") from exc
        if not info.get("email"):
            raise IdentityError("Google account has no email")
        return {
            "id": info.get("sub"),
            "email": info["email"],
            "first_name": info.get("given_name"),
            "last_name": info.get("family_name"),
        }


class FirebaseVerifier:
    APP_NAME = "bookstore"

    def __init__(self, credentials_path: Optional[str] = None):
        self.credentials_path = credentials_path
        self._app = None

    def _get_app(self):
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(self.APP_NAME)
            except ValueError:
                cred = firebase_credentials.Certificate(self.credentials_path) if self.credentials_path else None
                self._app = firebase_admin.initialize_app(cred, name=self.APP_NAME)
        return self._app

    def verify(self, token: str) -> dict:
        app = self._get_app()
        try:
            claims = firebase_auth.verify_id_token(token, app=app)
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            logger.info("Rejected Firebase token: %s", exc)
            raise IdentityError("Invalid or expired Firebase token") from exc
        return {"id": claims.get("uid"), "email": claims.get("email")}
