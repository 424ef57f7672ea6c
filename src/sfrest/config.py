from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_CALLBACK_URL = "http://localhost:8439/callback"

# Salesforce sessions time out after two hours unless the org says otherwise.
DEFAULT_SESSION_SECONDS = 7200

AUTH_FLOWS = ("password", "oauth")


def normalize_api_version(value: Optional[str]) -> Optional[str]:
    """Return ``value`` as ``vNN.0`` (``"60"``, ``"60.0"`` and ``"v60.0"`` are equivalent)."""
    if not value:
        return None
    v = value.strip().lstrip("vV")
    if "." not in v:
        v = f"{v}.0"
    return f"v{v}"


@dataclass
class SFConfig:
    """Configuration for Salesforce authentication and REST calls."""

    # Which auth flow to use: "password" or "oauth" (authorization code)
    auth_flow: str = "password"

    # Base login URL (not the instance URL)
    login_url: str = DEFAULT_LOGIN_URL

    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    # Resource-owner password grant
    username: Optional[str] = None
    password: Optional[str] = None
    security_token: str = ""

    # Authorization-code grant
    callback_url: str = DEFAULT_CALLBACK_URL

    # Optional: pre-issued token / instance URL / refresh token
    access_token: Optional[str] = None
    instance_url: Optional[str] = None
    refresh_token: Optional[str] = None

    # Optional: override API version (e.g. "v60.0"); otherwise auto-discover
    api_version: Optional[str] = None

    session_seconds: int = DEFAULT_SESSION_SECONDS
    timeout: float = 30.0

    def __post_init__(self) -> None:
        self.login_url = self.login_url.rstrip("/")
        self.api_version = normalize_api_version(self.api_version)
        if self.instance_url:
            self.instance_url = self.instance_url.rstrip("/")

    @property
    def token_url(self) -> str:
        return f"{self.login_url}/services/oauth2/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.login_url}/services/oauth2/authorize"

    @property
    def userinfo_url(self) -> str:
        return f"{self.login_url}/services/oauth2/userinfo"

    @classmethod
    def from_env(cls) -> SFConfig:
        """Load configuration from environment variables."""
        return cls(
            auth_flow=os.getenv("SF_AUTH_FLOW", "password"),
            login_url=os.getenv("SF_LOGIN_URL", DEFAULT_LOGIN_URL),
            client_id=os.getenv("SF_CLIENT_ID"),
            client_secret=os.getenv("SF_CLIENT_SECRET"),
            username=os.getenv("SF_USERNAME"),
            password=os.getenv("SF_PASSWORD"),
            security_token=os.getenv("SF_SECURITY_TOKEN", ""),
            callback_url=os.getenv("SF_CALLBACK_URL", DEFAULT_CALLBACK_URL),
            access_token=os.getenv("SF_ACCESS_TOKEN"),
            instance_url=os.getenv("SF_INSTANCE_URL"),
            refresh_token=os.getenv("SF_REFRESH_TOKEN"),
            api_version=os.getenv("SF_API_VERSION"),
            session_seconds=int(os.getenv("SF_SESSION_SECONDS", DEFAULT_SESSION_SECONDS)),
            timeout=float(os.getenv("SF_TIMEOUT", "30")),
        )
