"""Salesforce REST API client: password and authorization-code login, SOQL and sObject CRUD."""

from importlib.metadata import PackageNotFoundError, version

from .api import SalesforceAPI
from .auth import OAuthAuth, PasswordAuth, SalesforceAuth, Token, build_auth
from .config import SFConfig
from .exceptions import (
    AuthorizationRequired,
    InvalidSignatureError,
    MissingCredentialsError,
    SalesforceError,
)

try:
    __version__ = version("sfrest")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "unknown"

__all__ = [
    "AuthorizationRequired",
    "InvalidSignatureError",
    "MissingCredentialsError",
    "OAuthAuth",
    "PasswordAuth",
    "SFConfig",
    "SalesforceAPI",
    "SalesforceAuth",
    "SalesforceError",
    "Token",
    "build_auth",
]
