"""Command-line interface for the mapping engine."""

from __future__ import annotations

import json
import sys
from typing import Optional

import click
from tqdm import tqdm

from ..engine import MappingEngine, build_engine
from ..lib.db_manager import DatabaseManager
from ..lib.logging_config import log_context, setup_logging
from ..models import CopyStatus
from ..services.resource_address import parse_resource_uri
from .error_handler import safe_execute

LOG_LEVELS = ["WARNING", "INFO", "DEBUG"]

FINAL_COPY_STATUSES = {
    CopyStatus.COMPLETED.value,
    CopyStatus.COMPLETED_WITH_ERRORS.value,
    CopyStatus.ERROR.value,
}


def _configure_logging(verbose: int, quiet: bool) -> None:
    level = LOG_LEVELS[min(verbose, len(LOG_LEVELS) - 1)]
    if quiet:
        level = "ERROR"
    # stdout is reserved for command output
    setup_logging(log_dir=None, log_level=level, enable_file=False, stream=sys.stderr)


def _engine(ctx: click.Context) -> MappingEngine:
    if ctx.obj.get("engine") is None:
        ctx.obj["engine"] = build_engine(DatabaseManager(ctx.obj.get("database_url")))
    return ctx.obj["engine"]


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--verbose", "-v", count=True, help="Increase verbosity (use up to -vv)")
@click.option("--quiet", "-q", is_flag=True, help="Only show errors")
@click.option("--database-url", envvar="DATABASE_URL", default=None, help="Mapping store URL")
@click.pass_context
def cli(ctx: click.Context, verbose: int, quiet: bool, database_url: Optional[str]) -> None:
    """Manage mappings and move data between resources."""
    _configure_logging(verbose, quiet)
    ctx.ensure_object(dict)
    ctx.obj.update({"verbose": verbose, "quiet": quiet, "database_url": database_url})


@cli.command(name="init-db")
@click.pass_context
@safe_execute
def init_db(ctx: click.Context) -> None:
    """Create the mapping store tables."""
    engine = _engine(ctx)
    engine.db.create_all()
    click.echo(f"Mapping store ready ({engine.db.get_connection_info().get('database_type', 'unknown')})")


@cli.command()
def serve() -> None:
    """Run the HTTP API server."""
    from ..main import main as run_server
    run_server()


@cli.command(name="list-mappings")
@click.argument("tenant_id")
@click.argument("workspace")
@click.pass_context
@safe_execute
def list_mappings(ctx: click.Context, tenant_id: str, workspace: str) -> None:
    """List the mappings of a workspace."""
    mappings = _engine(ctx).mappings.list_mappings(tenant_id, workspace)
    if not mappings:
        click.echo("No mappings found")
        return
    for mapping in mappings:
        click.echo(f"{mapping['name']}\t{mapping['mapping_type']}\trules={mapping['rule_count']}")


@cli.command(name="show-mapping")
@click.argument("tenant_id")
@click.argument("workspace")
@click.argument("name")
@click.pass_context
@safe_execute
def show_mapping(ctx: click.Context, tenant_id: str, workspace: str, name: str) -> None:
    """Show a mapping with its ordered rules."""
    _echo_json(_engine(ctx).mappings.show_mapping(tenant_id, workspace, name))


@cli.command(name="validate-mapping")
@click.argument("tenant_id")
@click.argument("workspace")
@click.argument("name")
@click.pass_context
@safe_execute
def validate_mapping(ctx: click.Context, tenant_id: str, workspace: str, name: str) -> None:
    """Validate a mapping and record the outcome."""
    with log_context(tenant_id=tenant_id, workspace=workspace):
        result = _engine(ctx).mappings.validate_mapping(tenant_id, workspace, name)
    for error in result['errors']:
        click.echo(f"ERROR: {error}")
    for warning in result['warnings']:
        click.echo(f"WARNING: {warning}")
    click.echo(f"Mapping '{name}' is {'valid' if result['is_valid'] else 'invalid'}")
    if not result['is_valid']:
        raise SystemExit(2)


@cli.command(name="copy-data")
@click.argument("tenant_id")
@click.argument("workspace")
@click.argument("name")
@click.option("--batch-size", type=int, default=None)
@click.option("--workers", type=int, default=None, help="Parallel row transformation workers")
@click.option("--dry-run", is_flag=True, help="Only check that rules exist")
@click.pass_context
@safe_execute
def copy_data(ctx: click.Context, tenant_id: str, workspace: str, name: str,
              batch_size: Optional[int], workers: Optional[int], dry_run: bool) -> None:
    """Copy a mapping's data, showing progress."""
    progress = _engine(ctx).pipeline.copy_mapping_data(
        tenant_id, workspace, name,
        batch_size=batch_size, parallel_workers=workers, dry_run=dry_run
    )
    final = None
    with log_context(tenant_id=tenant_id, workspace=workspace), \
            tqdm(total=0, unit="rows", disable=ctx.obj.get("quiet", False)) as bar:
        for update in progress:
            message = update.to_dict()
            if message['total_rows'] and bar.total != message['total_rows']:
                bar.total = message['total_rows']
                bar.refresh()
            bar.update(message['rows_processed'] - bar.n)
            if message['current_table']:
                bar.set_description(message['current_table'])
            if message['status'] in FINAL_COPY_STATUSES:
                final = message

    if final is None:
        raise click.ClickException("copy stream ended without a final status")
    click.echo(final['message'])
    for error in final['errors']:
        click.echo(f"  - {error}", err=True)
    if final['status'] != CopyStatus.COMPLETED.value:
        raise SystemExit(1)


@cli.command(name="parse-uri")
@click.argument("uri")
@safe_execute
def parse_uri(uri: str) -> None:
    """Decode a resource address and print its parts."""
    address = parse_resource_uri(uri)
    _echo_json({
        'protocol': address.protocol.value,
        'object_type': address.object_type.value,
        'database_id': address.database_id,
        'table': address.table,
        'column': address.column,
        'resource_name': address.resource_name,
        'workspace': address.workspace,
        'kind': address.kind,
        'integration': address.integration,
        'topic': address.topic,
    })


def main() -> None:  # pragma: no cover - console entry point
    cli(prog_name="mapping-engine")


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    main()
