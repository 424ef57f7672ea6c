from __future__ import annotations

from typing import Any, Iterable, Optional


class SalesforceError(RuntimeError):
    """Raised on unexpected HTTP status codes, transport failures and bad tokens."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        content: Any = None,
    ) -> None:
        self.status_code = status_code
        self.url = url
        self.content = content
        super().__init__(message)


class MissingCredentialsError(SalesforceError):
    """Raised when the required Salesforce settings are not present."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__("Missing required Salesforce settings: " + ", ".join(self.missing))


class InvalidSignatureError(SalesforceError):
    """The token response signature does not match the client secret."""


class AuthorizationRequired(SalesforceError):
    """The user has to visit ``authorization_url`` and grant access first."""

    def __init__(self, authorization_url: str):
        self.authorization_url = authorization_url
        super().__init__(f"Authorization required, visit: {authorization_url}")
