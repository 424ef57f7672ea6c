import os
import time
from unittest.mock import MagicMock

import pytest

from sfrest.auth import Token, compute_signature

CLIENT_SECRET = "s3cr3t"
IDENTITY_URL = "https://login.salesforce.com/id/00Dxx0000001gPL/005xx000001Sv6e"
INSTANCE_URL = "https://example.my.salesforce.com"


@pytest.fixture(autouse=True)
def clean_sf_env(monkeypatch):
    """Keep SF_* settings from the developer's shell or .env out of unit tests."""
    for name in list(os.environ):
        if name.startswith("SF_"):
            monkeypatch.delenv(name, raising=False)


def make_response(status_code=200, json_data=None, text="", content=b"x"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.content = content
    if isinstance(json_data, Exception):
        resp.json.side_effect = json_data
    else:
        resp.json.return_value = json_data if json_data is not None else {}
    return resp


def token_payload(
    access_token="00DFAKE-TOKEN",
    secret=CLIENT_SECRET,
    issued_at=None,
    **extra,
):
    """A signed token endpoint response, as Salesforce returns it."""
    issued_at = issued_at or str(int(time.time() * 1000))
    payload = {
        "access_token": access_token,
        "instance_url": INSTANCE_URL,
        "id": IDENTITY_URL,
        "token_type": "Bearer",
        "issued_at": issued_at,
        "signature": compute_signature(IDENTITY_URL, issued_at, secret),
    }
    payload.update(extra)
    return payload


@pytest.fixture(autouse=True)
def dummy_api(monkeypatch):
    """
    Global DummyAPI replacement for the CLI.
    Applies to ALL tests unless they patch SalesforceAPI themselves.
    """

    class DummyAPI:
        instances = []

        def __init__(self, cfg=None, auth=None, session=None):
            self.cfg = cfg
            self.auth = auth
            self.api_version = "v60.0"
            self.calls = []
            DummyAPI.instances.append(self)

        def connect(self):
            return Token(access_token="00DFAKE-TOKEN-123456", instance_url=INSTANCE_URL)

        def limits(self):
            return {"DailyApiRequests": {"Max": 15000, "Remaining": 14999}}

        def query(self, soql):
            self.calls.append(("query", soql))
            return {
                "totalSize": 1,
                "done": True,
                "records": [
                    {
                        "attributes": {
                            "type": "Account",
                            "url": "/services/data/v60.0/sobjects/Account/001",
                        },
                        "Id": "001",
                        "Name": "Acme Corp",
                    }
                ],
            }

        def query_all(self, soql):
            self.calls.append(("query_all", soql))
            return {"totalSize": 0, "done": True, "records": []}

        def query_all_iter(self, soql, include_deleted=False):
            self.calls.append(("query_all_iter", soql, include_deleted))
            yield {"Id": "001"}
            yield {"Id": "002"}

        def get(self, sobject, record_id, fields=None):
            self.calls.append(("get", sobject, record_id, fields))
            return {"Id": record_id}

        def create(self, sobject, data):
            self.calls.append(("create", sobject, data))
            return {"id": "001NEW", "success": True, "errors": []}

        def update(self, sobject, record_id, data):
            self.calls.append(("update", sobject, record_id, data))
            return 204

        def upsert(self, sobject, field, value, data):
            self.calls.append(("upsert", sobject, field, value, data))
            return {}

        def delete(self, sobject, record_id):
            self.calls.append(("delete", sobject, record_id))
            return 204

        def describe_global(self):
            return {"sobjects": [{"name": "Account"}, {"name": "Contact"}]}

        def describe_object(self, name):
            return {"name": name, "fields": [{"name": "Id"}, {"name": "Name"}]}

        def get_field_names(self, name):
            return ["Id", "Name"]

        def list_views(self, sobject):
            return {"listviews": [{"id": "00BLV", "label": "All"}]}

        def list_view_results(self, sobject, list_view_id):
            return {"id": list_view_id, "records": []}

        def describe_list_view(self, sobject, list_view_id):
            return {"id": list_view_id, "columns": []}

    DummyAPI.instances = []
    monkeypatch.setattr("sfrest.cli.SalesforceAPI", DummyAPI)
    return DummyAPI


@pytest.fixture
def response():
    """Factory for fake ``requests.Response`` objects."""
    return make_response


@pytest.fixture
def signed_payload():
    """Factory for signed token endpoint payloads."""
    return token_payload
