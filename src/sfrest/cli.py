from __future__ import annotations

import json
import logging
from typing import Any, NoReturn, Optional

import click

from . import __version__
from .api import SalesforceAPI
from .auth import OAuthAuth
from .config import SFConfig
from .env_loader import load_env_files
from .exceptions import SalesforceError
from .logging_config import configure_logging

_logger = logging.getLogger(__name__)

# Load .env very early, so everything else sees env vars
load_env_files()


def _connect() -> SalesforceAPI:
    api = SalesforceAPI(SFConfig.from_env())
    api.connect()
    return api


def _echo_json(data: Any, pretty: bool) -> None:
    click.echo(json.dumps(data, indent=2 if pretty else None))


def _parse_record(raw: str) -> dict:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise click.BadParameter("record data must be a JSON object")
    return data


def _fail(e: Exception) -> NoReturn:
    click.echo(f"Error: {e}", err=True)
    raise click.Abort() from None


pretty_option = click.option("--pretty", is_flag=True, help="Pretty-print JSON.")


@click.group(
    context_settings={"help_option_names": ["-h", "--help"]},
    invoke_without_command=True,
)
@click.version_option(__version__, "--version", prog_name="sfrest")
@click.option(
    "-v",
    "--verbose",
    "loglevel",
    flag_value=logging.INFO,
    default=None,
    help="Enable INFO logs.",
)
@click.option(
    "-vv",
    "--very-verbose",
    "loglevel",
    flag_value=logging.DEBUG,
    help="Enable DEBUG logs.",
)
@click.pass_context
def cli(ctx: click.Context, loglevel: Optional[int]) -> None:
    """Salesforce REST CLI. Use subcommands like 'login' or 'query'."""
    configure_logging(loglevel)
    _logger.debug("CLI start, version=%s", __version__)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("login")
@click.option("--web", is_flag=True, help="Log in through the browser (authorization code flow).")
@click.option("--no-browser", is_flag=True, help="Print the login URL instead of opening it.")
def cmd_login(web: bool, no_browser: bool) -> None:
    """Authenticate and show the instance the token belongs to."""
    try:
        if web:
            cfg = SFConfig.from_env()
            cfg.auth_flow = "oauth"
            auth = OAuthAuth(cfg)
            auth.interactive_login(open_browser=not no_browser)
            api = SalesforceAPI(cfg, auth=auth)
            token = api.connect()
        else:
            api = SalesforceAPI(SFConfig.from_env())
            token = api.connect()
    except SalesforceError as e:
        click.echo(f"Login failed: {e}", err=True)
        raise click.Abort() from None

    click.echo("Salesforce login successful.")
    click.echo(f"Instance URL: {token.instance_url}")
    click.echo(f"API Version: {api.api_version}")
    click.echo(f"Token preview: {token.access_token[:10]}...{token.access_token[-6:]}")
    if token.refresh_token:
        click.echo("Refresh token: received (set SF_REFRESH_TOKEN to reuse it)")


@cli.command("query")
@click.argument("soql")
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted/archived records.")
@click.option("--iterate", is_flag=True, help="Follow nextRecordsUrl and print every record.")
@pretty_option
def cmd_query(soql: str, include_deleted: bool, iterate: bool, pretty: bool) -> None:
    """Run a SOQL query."""
    try:
        api = _connect()
        if iterate:
            res: Any = list(api.query_all_iter(soql, include_deleted=include_deleted))
        elif include_deleted:
            res = api.query_all(soql)
        else:
            res = api.query(soql)
    except SalesforceError as e:
        _fail(e)
    _echo_json(res, pretty)


@cli.command("get")
@click.argument("sobject")
@click.argument("record_id")
@click.option("--fields", help="Comma separated field names.")
@pretty_option
def cmd_get(sobject: str, record_id: str, fields: Optional[str], pretty: bool) -> None:
    """Fetch one record."""
    field_list = [f.strip() for f in fields.split(",") if f.strip()] if fields else None
    try:
        res = _connect().get(sobject, record_id, fields=field_list)
    except SalesforceError as e:
        _fail(e)
    _echo_json(res, pretty)


@cli.command("create")
@click.argument("sobject")
@click.argument("data")
@pretty_option
def cmd_create(sobject: str, data: str, pretty: bool) -> None:
    """Create a record from a JSON object."""
    record = _parse_record(data)
    try:
        res = _connect().create(sobject, record)
    except SalesforceError as e:
        _fail(e)
    _echo_json(res, pretty)


@cli.command("update")
@click.argument("sobject")
@click.argument("record_id")
@click.argument("data")
def cmd_update(sobject: str, record_id: str, data: str) -> None:
    """Update fields of a record from a JSON object."""
    record = _parse_record(data)
    try:
        _connect().update(sobject, record_id, record)
    except SalesforceError as e:
        _fail(e)
    click.echo(f"Updated {sobject} {record_id}")


@cli.command("upsert")
@click.argument("sobject")
@click.argument("external_id_field")
@click.argument("external_id")
@click.argument("data")
@pretty_option
def cmd_upsert(
    sobject: str, external_id_field: str, external_id: str, data: str, pretty: bool
) -> None:
    """Insert or update a record matched on an external id field."""
    record = _parse_record(data)
    try:
        res = _connect().upsert(sobject, external_id_field, external_id, record)
    except SalesforceError as e:
        _fail(e)
    if res:
        _echo_json(res, pretty)
    else:
        click.echo(f"Upserted {sobject} {external_id_field}={external_id}")


@cli.command("delete")
@click.argument("sobject")
@click.argument("record_id")
def cmd_delete(sobject: str, record_id: str) -> None:
    """Delete a record."""
    try:
        _connect().delete(sobject, record_id)
    except SalesforceError as e:
        _fail(e)
    click.echo(f"Deleted {sobject} {record_id}")


@cli.command("describe")
@click.argument("sobject", required=False)
@click.option("--fields", "fields_only", is_flag=True, help="Only list field names.")
@pretty_option
def cmd_describe(sobject: Optional[str], fields_only: bool, pretty: bool) -> None:
    """Describe an sObject, or list all sObjects when none is given."""
    try:
        api = _connect()
        if sobject is None:
            res: Any = [o["name"] for o in api.describe_global().get("sobjects", [])]
        elif fields_only:
            res = api.get_field_names(sobject)
        else:
            res = api.describe_object(sobject)
    except SalesforceError as e:
        _fail(e)
    if isinstance(res, list) and not pretty:
        for name in res:
            click.echo(name)
    else:
        _echo_json(res, pretty)


@cli.command("listviews")
@click.argument("sobject")
@click.option("--results", "list_view_id", help="Show the records of this list view.")
@click.option("--describe", "describe_id", help="Describe this list view.")
@pretty_option
def cmd_listviews(
    sobject: str, list_view_id: Optional[str], describe_id: Optional[str], pretty: bool
) -> None:
    """List the list views of an sObject."""
    try:
        api = _connect()
        if list_view_id:
            res = api.list_view_results(sobject, list_view_id)
        elif describe_id:
            res = api.describe_list_view(sobject, describe_id)
        else:
            res = api.list_views(sobject)
    except SalesforceError as e:
        _fail(e)
    _echo_json(res, pretty)


@cli.command("limits")
@pretty_option
def cmd_limits(pretty: bool) -> None:
    """Show org API limits."""
    try:
        limits = _connect().limits()
    except SalesforceError as e:
        _fail(e)
    core = limits.get("DailyApiRequests", {})
    _logger.info("Daily API requests: %s max / %s remaining", core.get("Max"), core.get("Remaining"))
    _echo_json(limits, pretty)
