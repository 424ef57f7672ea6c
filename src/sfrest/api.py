from __future__ import annotations

import logging
from typing import Any, Collection, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests

from .auth import SalesforceAuth, Token, build_auth
from .config import SFConfig
from .env_loader import load_env_files
from .exceptions import SalesforceError

__author__ = "Kevin Steptoe"
__copyright__ = "Kevin Steptoe"
__license__ = "MIT"

_logger = logging.getLogger(__name__)

# Ensure .env is loaded for library use as well (e.g., scripts importing SalesforceAPI)
load_env_files(quiet=True)


def _segment(value: Any) -> str:
    """Percent-encode one URL path segment (record ids, external ids, sObject names)."""
    return quote(str(value), safe="")


def _json(r: requests.Response, url: str) -> Any:
    try:
        return r.json()
    except ValueError:
        _logger.error("Invalid JSON response (HTTP %s) from %s", r.status_code, url)
        raise SalesforceError(
            f"Invalid JSON response from {url}",
            status_code=r.status_code,
            url=url,
            content=r.text,
        ) from None


class SalesforceAPI:
    """Thin Salesforce REST API client.

    Each public method maps to one REST endpoint and one HTTP verb, checks
    the status code and returns the decoded JSON. Records are plain dicts.
    """

    def __init__(
        self,
        cfg: Optional[SFConfig] = None,
        auth: Optional[SalesforceAuth] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.cfg = cfg or SFConfig.from_env()
        self.session = session or requests.Session()
        self.auth = auth or build_auth(self.cfg, session=self.session)
        self.api_version: Optional[str] = self.cfg.api_version

    # --------------------------- Connection --------------------------

    def connect(self) -> Token:
        """Authenticate (or reuse the cached token) and resolve the API version."""
        token = self.auth.get_token()
        if not self.api_version:
            self.api_version = self._discover_latest_api_version()
        _logger.info(
            "Connected to Salesforce instance=%s api=%s",
            token.instance_url,
            self.api_version,
        )
        return token

    @property
    def access_token(self) -> str:
        return self.auth.get_access_token()

    @property
    def instance_url(self) -> str:
        return self.auth.get_instance_url()

    @property
    def base_url(self) -> str:
        if not self.api_version:
            self.connect()
        return f"{self.instance_url}/services/data/{self.api_version}"

    def _sobject_url(self, sobject: str, *parts: Any) -> str:
        path = "/".join(_segment(p) for p in (sobject, *parts))
        return f"{self.base_url}/sobjects/{path}"

    # --------------------------- Public methods -----------------------

    def versions(self) -> List[Dict[str, Any]]:
        """Return the API versions the instance supports."""
        return self._get(f"{self.instance_url}/services/data/")

    def whoami(self) -> Dict[str, Any]:
        """Return identity information for the current user."""
        url = self.auth.get_identity_url() or self.cfg.userinfo_url
        return self._get(url)

    def limits(self) -> Dict[str, Any]:
        """Return API usage limits."""
        return self._get(f"{self.base_url}/limits")

    def query(self, soql: str) -> Dict[str, Any]:
        """Run a SOQL query."""
        return self._get(f"{self.base_url}/query", params={"q": soql})

    def query_all(self, soql: str) -> Dict[str, Any]:
        """Run a SOQL query that also returns deleted and archived records."""
        return self._get(f"{self.base_url}/queryAll", params={"q": soql})

    def query_more(self, next_records_url: str) -> Dict[str, Any]:
        """Fetch the next page of a query from its ``nextRecordsUrl``."""
        return self._get(f"{self.instance_url}{next_records_url}")

    def query_all_iter(self, soql: str, include_deleted: bool = False) -> Iterator[Dict[str, Any]]:
        """Yield records across pages via nextRecordsUrl."""
        res = self.query_all(soql) if include_deleted else self.query(soql)
        yield from res.get("records", [])
        next_url = res.get("nextRecordsUrl")
        while next_url:
            res = self.query_more(next_url)
            yield from res.get("records", [])
            next_url = res.get("nextRecordsUrl")

    def get(
        self, sobject: str, record_id: str, fields: Optional[Collection[str]] = None
    ) -> Dict[str, Any]:
        """Return a single record, optionally restricted to ``fields``."""
        params = {"fields": ",".join(fields)} if fields else None
        return self._get(self._sobject_url(sobject, record_id), params=params)

    def create(self, sobject: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record; returns ``{"id": ..., "success": ..., "errors": [...]}``."""
        url = self._sobject_url(sobject) + "/"
        return _json(self._request("POST", url, json=data, expected=(201,)), url)

    def update(self, sobject: str, record_id: str, data: Dict[str, Any]) -> int:
        """Update the given fields of a record; returns the HTTP status code (204)."""
        r = self._request(
            "PATCH", self._sobject_url(sobject, record_id), json=data, expected=(204,)
        )
        return r.status_code

    def upsert(
        self,
        sobject: str,
        external_id_field: str,
        external_id: Any,
        data: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Insert or update a record matched on an external id field.

        Returns the response body (``id`` and ``created``) when Salesforce sends
        one, else an empty dict.
        """
        url = self._sobject_url(sobject, external_id_field, external_id)
        r = self._request("PATCH", url, json=data, expected=(200, 201, 204))
        return _json(r, url) if r.content else {}

    def delete(self, sobject: str, record_id: str) -> int:
        """Delete a record; returns the HTTP status code (204)."""
        r = self._request("DELETE", self._sobject_url(sobject, record_id), expected=(204,))
        return r.status_code

    # --- Describe & list views ---

    def describe_global(self) -> Dict[str, Any]:
        """Return /sobjects (global describe)."""
        return self._get(f"{self.base_url}/sobjects")

    def describe_object(self, name: str) -> Dict[str, Any]:
        """Return /sobjects/{name}/describe."""
        return self._get(self._sobject_url(name, "describe"))

    def get_fields(self, name: str) -> List[Dict[str, Any]]:
        return self.describe_object(name).get("fields", [])

    def get_field_names(self, name: str) -> List[str]:
        return [f["name"] for f in self.get_fields(name)]

    def list_views(self, sobject: str) -> Dict[str, Any]:
        """Return the list views defined for ``sobject``."""
        return self._get(self._sobject_url(sobject, "listviews"))

    def describe_list_view(self, sobject: str, list_view_id: str) -> Dict[str, Any]:
        return self._get(self._sobject_url(sobject, "listviews", list_view_id, "describe"))

    def list_view_results(self, sobject: str, list_view_id: str) -> Dict[str, Any]:
        """Return the records shown by a list view."""
        return self._get(self._sobject_url(sobject, "listviews", list_view_id, "results"))

    # --------------------------- Internal helpers --------------------

    def _discover_latest_api_version(self) -> str:
        """Find the latest available API version."""
        versions = self.versions()
        if not versions:
            raise SalesforceError("Instance did not report any API versions.")
        best = max(versions, key=lambda v: float(v.get("version", "0")))
        version_str = best.get("url", "").rstrip("/").split("/")[-1]
        _logger.debug("Latest API version discovered: %s", version_str)
        return version_str

    # --------------------------- HTTP wrappers -----------------------

    def _get(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """GET ``url`` expecting 200 and return the decoded JSON body."""
        return _json(self._request("GET", url, params=params), url)

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        expected: Collection[int] = (200,),
    ) -> requests.Response:
        """Send one authenticated request and check its status code.

        A 401 means the session was revoked or expired early: the token is
        dropped, a new one is obtained and the call is sent once more.
        """
        r = self._send(method, url, params=params, json=json)
        if r.status_code == 401:
            _logger.info("Session rejected for %s %s, re-authenticating", method, url)
            self.auth.reauthenticate()
            r = self._send(method, url, params=params, json=json)

        if r.status_code in expected:
            return r

        try:
            detail = r.json()
        except ValueError:
            detail = r.text
        _logger.error("HTTP %s error for %s %s: %s", r.status_code, method, url, detail)
        raise SalesforceError(
            f"{method} {url} returned {r.status_code}, expected "
            f"{', '.join(str(s) for s in expected)}: {detail}",
            status_code=r.status_code,
            url=url,
            content=detail,
        )

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        _logger.debug("%s %s", method, url)
        try:
            return self.session.request(
                method,
                url,
                params=params,
                json=json,
                auth=self.auth,
                timeout=self.cfg.timeout,
            )
        except requests.RequestException as e:
            raise SalesforceError(f"Unable to connect to Salesforce: {e}", url=url) from e
