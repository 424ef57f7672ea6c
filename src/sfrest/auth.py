"""OAuth2 login support for the Salesforce REST API.

Two grant types are supported:

* ``PasswordAuth``: resource-owner password grant (username, password and
  the user's security token).
* ``OAuthAuth``: authorization-code grant with PKCE. The user is sent to the
  Salesforce login page and the returned code is exchanged for tokens.

Both keep the token in memory only. An auth object is also a
``requests`` auth hook, so it can be passed as ``auth=`` to any request.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import threading
import time
import webbrowser
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from requests.auth import AuthBase

from .config import SFConfig
from .exceptions import (
    AuthorizationRequired,
    InvalidSignatureError,
    MissingCredentialsError,
    SalesforceError,
)

_logger = logging.getLogger(__name__)

# Seconds before the computed expiry at which a token is already treated as stale
EXPIRY_LEEWAY = 60


# ----------------------------------------------------------------------
# Token
# ----------------------------------------------------------------------
@dataclass
class Token:
    """An access token and what Salesforce returned alongside it."""

    access_token: str
    instance_url: str
    identity_url: Optional[str] = None
    issued_at: Optional[str] = None
    signature: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_at: Optional[float] = None

    @classmethod
    def from_response(
        cls,
        payload: Dict[str, Any],
        session_seconds: int,
        refresh_token: Optional[str] = None,
    ) -> Token:
        """Build a token from a token endpoint JSON payload.

        Salesforce does not return ``expires_in`` for most grants, so the
        expiry is derived from ``issued_at`` (milliseconds since epoch) and
        the configured session length.
        """
        try:
            access_token = payload["access_token"]
            instance_url = payload["instance_url"].rstrip("/")
        except (KeyError, AttributeError) as e:
            raise SalesforceError(f"Malformed token response, missing {e}") from None

        issued_at = payload.get("issued_at")
        expires_at: Optional[float] = None
        try:
            if payload.get("expires_in") is not None:
                expires_at = time.time() + int(payload["expires_in"])
            elif issued_at:
                expires_at = int(issued_at) / 1000.0 + session_seconds
        except (TypeError, ValueError):
            _logger.warning("Unreadable token expiry in response, treating token as non-expiring")
            expires_at = None

        return cls(
            access_token=access_token,
            instance_url=instance_url,
            identity_url=payload.get("id"),
            issued_at=issued_at,
            signature=payload.get("signature"),
            # A refresh response does not repeat the refresh token
            refresh_token=payload.get("refresh_token") or refresh_token,
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope"),
            expires_at=expires_at,
        )

    def is_expired(self, now: Optional[float] = None, leeway: int = EXPIRY_LEEWAY) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - leeway


# ----------------------------------------------------------------------
# Signature check
# ----------------------------------------------------------------------
def compute_signature(identity_url: str, issued_at: str, client_secret: str) -> str:
    """Base64 HMAC-SHA256 of ``identity_url + issued_at`` keyed by the client secret."""
    digest = hmac.new(
        key=client_secret.encode("utf-8"),
        msg=(identity_url + issued_at).encode("utf-8"),
        digestmod=hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(payload: Dict[str, Any], client_secret: str) -> None:
    """Raise InvalidSignatureError unless the token payload was signed with our secret."""
    signature = payload.get("signature")
    identity_url = payload.get("id")
    issued_at = payload.get("issued_at")

    if signature is None and identity_url is None and issued_at is None:
        # Nothing to check, e.g. a bare refresh response
        return
    if not (signature and identity_url and issued_at):
        raise InvalidSignatureError("Token response is missing signature fields.")

    expected = compute_signature(identity_url, issued_at, client_secret)
    if not hmac.compare_digest(expected, signature):
        raise InvalidSignatureError("Token signature does not match. Access token is invalid.")


# ----------------------------------------------------------------------
# PKCE helpers
# ----------------------------------------------------------------------
def generate_code_verifier() -> str:
    """Generate a 128-character URL-safe code verifier."""
    return secrets.token_urlsafe(96)


def generate_code_challenge(verifier: str) -> str:
    """SHA256 hash of verifier, base64url-encoded (no padding)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# ----------------------------------------------------------------------
# Base auth
# ----------------------------------------------------------------------
class SalesforceAuth(AuthBase):
    """Holds the credentials and the cached token of one Salesforce connection.

    Subclasses implement ``authenticate()``. Everything else decides whether
    the cached token can be reused:

        get_token()             cached token, else the refresh grant when a
                                refresh token is known, else authenticate()
        refresh_access_token()  refresh grant if a refresh token is known,
                                otherwise a full authenticate()
        reauthenticate()        forget the token and ask for a new one
                                (used after the API rejected the token)
        __call__(r)             requests auth hook
    """

    def __init__(self, cfg: SFConfig, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self._session = session or requests.Session()
        self._lock = threading.RLock()
        self._token: Optional[Token] = None
        self._refresh_token: Optional[str] = cfg.refresh_token

        if cfg.access_token and cfg.instance_url:
            _logger.debug("Using existing access token from configuration.")
            self._token = Token(
                access_token=cfg.access_token,
                instance_url=cfg.instance_url.rstrip("/"),
                refresh_token=cfg.refresh_token,
            )

    # --------------------------- To override ------------------------

    def authenticate(self) -> Token:
        """Ask Salesforce for a new token. Called only when nothing usable is cached."""
        raise NotImplementedError("The authenticate method should be subclassed.")

    # --------------------------- Token cache -------------------------

    @property
    def token(self) -> Optional[Token]:
        return self._token

    def get_token(self) -> Token:
        with self._lock:
            token = self._token
            if token is None:
                if self._refresh_token:
                    _logger.debug("No access token cached, using the refresh token")
                    token = self.refresh_access_token()
                else:
                    token = self.authenticate()
                    self._store(token)
            elif token.is_expired():
                _logger.info("Access token expired, refreshing")
                token = self.refresh_access_token()
            return token

    def get_access_token(self) -> str:
        return self.get_token().access_token

    def get_instance_url(self) -> str:
        return self.get_token().instance_url

    def get_identity_url(self) -> Optional[str]:
        return self.get_token().identity_url

    def set_access_token(self, access_token: str, instance_url: Optional[str] = None) -> None:
        """Replace the cached access token, e.g. with one obtained elsewhere."""
        with self._lock:
            if instance_url is None:
                if self._token is None:
                    raise SalesforceError("instance_url is required when no token is cached")
                instance_url = self._token.instance_url
            self._token = Token(
                access_token=access_token,
                instance_url=instance_url.rstrip("/"),
                refresh_token=self._refresh_token,
            )

    def get_refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def set_refresh_token(self, refresh_token: Optional[str]) -> None:
        self._refresh_token = refresh_token

    def del_token(self) -> None:
        with self._lock:
            self._token = None

    def reauthenticate(self) -> str:
        with self._lock:
            self.del_token()
            return self.get_access_token()

    def refresh_access_token(self) -> Token:
        """Return a new token, using the refresh token when one is known.

        A refresh token rejected with 400 (revoked or expired) is forgotten and
        a full ``authenticate()`` is attempted instead.
        """
        with self._lock:
            if not self._refresh_token:
                _logger.debug("No refresh token, performing full authentication")
                token = self.authenticate()
            else:
                try:
                    token = self._request_token(
                        {
                            "grant_type": "refresh_token",
                            "client_id": self.cfg.client_id,
                            "client_secret": self.cfg.client_secret,
                            "refresh_token": self._refresh_token,
                        }
                    )
                except SalesforceError as e:
                    if e.status_code != 400:
                        raise
                    _logger.warning("Refresh token rejected, falling back to full authentication")
                    self._refresh_token = None
                    token = self.authenticate()
            self._store(token)
            return token

    def __call__(self, r):
        """Standard auth hook on the "requests" request r"""
        token = self.get_token()
        r.headers["Authorization"] = f"{token.token_type} {token.access_token}"
        return r

    # --------------------------- Internal helpers --------------------

    def _store(self, token: Token) -> None:
        self._token = token
        if token.refresh_token:
            self._refresh_token = token.refresh_token

    def _require(self, **settings: Optional[str]) -> None:
        missing = [name for name, value in settings.items() if not value]
        if missing:
            raise MissingCredentialsError(missing)

    def _request_token(self, data: Dict[str, Any]) -> Token:
        """POST a form-encoded grant to the token endpoint and validate the answer."""
        self._require(SF_CLIENT_ID=self.cfg.client_id, SF_CLIENT_SECRET=self.cfg.client_secret)
        data = dict(data, format="json")
        url = self.cfg.token_url

        _logger.debug("Requesting access token from %s (grant=%s)", url, data["grant_type"])
        try:
            r = self._session.post(url, data=data, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise SalesforceError(f"Unable to connect to Salesforce: {e}", url=url) from e

        if r.status_code != 200:
            try:
                detail = r.json()
            except ValueError:
                detail = r.text
            _logger.error("Token request failed (%s): %s", r.status_code, detail)
            raise SalesforceError(
                f"Token request failed ({r.status_code}): {detail}",
                status_code=r.status_code,
                url=url,
                content=detail,
            )

        try:
            payload = r.json()
        except ValueError:
            raise SalesforceError(
                f"Invalid JSON response from {url}",
                status_code=r.status_code,
                url=url,
                content=r.text,
            ) from None
        verify_signature(payload, self.cfg.client_secret or "")
        token = Token.from_response(
            payload, self.cfg.session_seconds, refresh_token=data.get("refresh_token")
        )
        _logger.info("Successfully authenticated to %s", token.instance_url)
        return token


# ----------------------------------------------------------------------
# Username / password
# ----------------------------------------------------------------------
class PasswordAuth(SalesforceAuth):
    """Resource-owner password grant."""

    def authenticate(self, grant: str = "password") -> Token:
        """Authenticate with the configured username, password and security token.

        ``grant`` may be ``"refresh_token"``; it is honoured only when a refresh
        token is cached, otherwise the request falls back to ``"password"``.
        """
        if grant == "refresh_token" and self._refresh_token:
            return self._request_token(
                {
                    "grant_type": "refresh_token",
                    "client_id": self.cfg.client_id,
                    "client_secret": self.cfg.client_secret,
                    "refresh_token": self._refresh_token,
                }
            )

        self._require(
            SF_CLIENT_ID=self.cfg.client_id,
            SF_CLIENT_SECRET=self.cfg.client_secret,
            SF_USERNAME=self.cfg.username,
            SF_PASSWORD=self.cfg.password,
        )
        _logger.info("Attempting password authentication to %s", self.cfg.login_url)
        return self._request_token(
            {
                "grant_type": "password",
                "client_id": self.cfg.client_id,
                "client_secret": self.cfg.client_secret,
                "username": self.cfg.username,
                "password": f"{self.cfg.password}{self.cfg.security_token or ''}",
            }
        )


# ----------------------------------------------------------------------
# Authorization code (web server flow)
# ----------------------------------------------------------------------
class _CallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler that captures the authorization code from the OAuth callback."""

    callback_path = "/callback"
    auth_code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != self.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        params = parse_qs(parsed.query)

        if "error" in params:
            type(self).error = params["error"][0]
            self._reply(
                400,
                f"<h2>Authorization failed</h2><p>{params['error'][0]}: "
                f"{params.get('error_description', [''])[0]}</p>"
                "<p>You can close this tab.</p>",
            )
            return

        if "code" in params:
            type(self).auth_code = params["code"][0]
            type(self).state = params.get("state", [None])[0]
            self._reply(
                200,
                "<h2>Login successful!</h2>"
                "<p>You can close this tab and return to the terminal.</p>",
            )
            return

        self._reply(400, "<h2>Missing authorization code</h2>")

    def _reply(self, status: int, body: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(body.encode())

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Route the HTTP server access log to our logger."""
        _logger.debug("callback server: " + format, *args)


class OAuthAuth(SalesforceAuth):
    """Authorization-code grant with PKCE.

    A web application calls ``authorization_url()``, redirects the user there,
    and passes the ``code`` from the callback to ``fetch_token()``. A command
    line tool can use ``interactive_login()`` which does both with a local
    callback server.
    """

    def __init__(self, cfg: SFConfig, session: Optional[requests.Session] = None) -> None:
        super().__init__(cfg, session)
        self._code_verifier: Optional[str] = None

    def authorization_url(self, state: Optional[str] = None) -> str:
        self._require(SF_CLIENT_ID=self.cfg.client_id)
        self._code_verifier = generate_code_verifier()
        params = {
            "response_type": "code",
            "client_id": self.cfg.client_id,
            "redirect_uri": self.cfg.callback_url,
            "code_challenge": generate_code_challenge(self._code_verifier),
            "code_challenge_method": "S256",
        }
        if state is not None:
            params["state"] = state
        return f"{self.cfg.authorize_url}?{urlencode(params)}"

    def fetch_token(self, code: str) -> Token:
        """Exchange an authorization code for tokens and cache them."""
        data = {
            "grant_type": "authorization_code",
            "client_id": self.cfg.client_id,
            "client_secret": self.cfg.client_secret,
            "code": code,
            "redirect_uri": self.cfg.callback_url,
        }
        if self._code_verifier:
            data["code_verifier"] = self._code_verifier
        with self._lock:
            token = self._request_token(data)
            self._store(token)
            self._code_verifier = None
        return token

    def authenticate(self) -> Token:
        if self._refresh_token:
            return self.refresh_access_token()
        raise AuthorizationRequired(self.authorization_url())

    def interactive_login(self, *, open_browser: bool = True, timeout: float = 120) -> Token:
        """Run the full web server flow: open a browser, wait for the callback, exchange the code."""
        callback = urlparse(self.cfg.callback_url)
        host = callback.hostname or "localhost"
        port = callback.port if callback.port is not None else 80

        handler = type(
            "CallbackHandler",
            (_CallbackHandler,),
            {"callback_path": callback.path or "/", "auth_code": None, "state": None, "error": None},
        )
        try:
            server = HTTPServer((host, port), handler)
        except OSError as e:
            raise SalesforceError(
                f"Cannot start callback server on {host}:{port}: {e}", url=self.cfg.callback_url
            ) from e
        server_thread = threading.Thread(target=server.serve_forever, daemon=True)
        server_thread.start()

        state = secrets.token_urlsafe(16)
        try:
            auth_url = self.authorization_url(state=state)
            _logger.info("Waiting for authorization callback on %s", self.cfg.callback_url)
            if open_browser:
                webbrowser.open(auth_url)
            else:
                print(f"Open this URL to log in:\n{auth_url}")

            deadline = time.time() + timeout
            while handler.auth_code is None and handler.error is None:
                if time.time() > deadline:
                    raise SalesforceError(f"Login timed out after {timeout:.0f} seconds")
                time.sleep(0.2)
        finally:
            server.shutdown()
            server.server_close()

        if handler.error:
            raise SalesforceError(f"Authorization failed: {handler.error}")
        if handler.state != state:
            raise SalesforceError("Authorization callback state does not match.")

        return self.fetch_token(handler.auth_code)


AUTH_CLASSES = {
    "password": PasswordAuth,
    "oauth": OAuthAuth,
}


def build_auth(cfg: SFConfig, session: Optional[requests.Session] = None) -> SalesforceAuth:
    """Return the auth object for the configured flow."""
    try:
        cls = AUTH_CLASSES[cfg.auth_flow]
    except KeyError:
        raise SalesforceError(f"Unsupported SF_AUTH_FLOW: {cfg.auth_flow!r}") from None
    return cls(cfg, session=session)
