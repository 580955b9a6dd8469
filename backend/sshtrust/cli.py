"""sshtrust CLI: generate, publish and distribute SSH keys between backup hosts."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .catalog import ExportCatalog, get_catalog
from .config import TopologyError, get_settings, load_topology
from .exceptions import SSHTrustError
from .key_parser import flatten_key_text, parse_key_line, read_key_file
from .key_store import KeyMaterialStore, SshKeygenGenerator
from .models import CatalogIdentifier, KeyConfig, KeyFamily, KeyPath, KeyRecord, key_path
from .orchestrator import ConvergenceOrchestrator, ConvergenceReport, PassReport

console = Console()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

EXIT_FAILED = 1
EXIT_NOT_CONVERGED = 2


def _setup_logging(verbose: bool, level: str) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(EXIT_FAILED)


def _open_catalog(ctx: click.Context) -> ExportCatalog:
    try:
        return get_catalog(ctx.obj["catalog_url"])
    except (SSHTrustError, ValueError) as exc:
        _fail(str(exc))


def _parse_identifier(text: str) -> CatalogIdentifier:
    try:
        return CatalogIdentifier.parse(text)
    except ValueError as exc:
        raise click.BadParameter(str(exc))


def _record_table(record: KeyRecord, title: str | None = None) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for name, value in record.to_dict().items():
        table.add_row(name, value)
    table.add_row("fingerprint", record.fingerprint or "[dim]n/a[/dim]")
    return table


# ── Shared options ──────────────────────────────────────────────────────────


def topology_options(f):
    """Topology file option for pass/converge."""
    f = click.option(
        "--topology",
        "-t",
        "topology_file",
        default=None,
        help="Host topology YAML (default: $SSHTRUST_TOPOLOGY_FILE)",
    )(f)
    return f


# ── CLI group ───────────────────────────────────────────────────────────────


@click.group(context_settings={"max_content_width": 120})
@click.version_option(version="0.1.0", prog_name="sshtrust")
@click.option("--catalog", "catalog_url", default=None, help="Catalog URL (default: $SSHTRUST_CATALOG_URL)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, catalog_url, verbose):
    """sshtrust: bootstrap SSH trust between a backup repository and its database hosts."""
    settings = get_settings()
    _setup_logging(verbose, settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["catalog_url"] = catalog_url or settings.catalog_url


# ── parse / key-path / keygen ───────────────────────────────────────────────


@main.command()
@click.argument("line", required=False)
@click.option("--file", "-f", "key_file", type=click.Path(dir_okay=False), help="Read the key from a file")
@click.option("--json", "json_output", is_flag=True, help="Print JSON")
def parse(line, key_file, json_output):
    """Parse a public key line (argument, --file, or stdin)."""
    try:
        if key_file:
            record = read_key_file(key_file)
        else:
            text = line if line is not None else click.get_text_stream("stdin").read()
            record = parse_key_line(flatten_key_text(text))
    except SSHTrustError as exc:
        _fail(str(exc))

    if json_output:
        data = record.to_dict()
        data["fingerprint"] = record.fingerprint
        click.echo(json.dumps(data, indent=2))
    else:
        console.print(_record_table(record))


@main.command("key-path")
@click.argument("directory")
@click.argument("family", required=False, default=KeyFamily.ED25519.value)
@click.option("--private", "private", is_flag=True, help="Private key path instead of .pub")
def key_path_command(directory, family, private):
    """Print the key file path for FAMILY inside DIRECTORY."""
    try:
        click.echo(str(key_path(directory, family, public=not private)))
    except ValueError as exc:
        _fail(str(exc))


@main.command()
@click.argument("user")
@click.option(
    "--family",
    type=click.Choice([f.value for f in KeyFamily]),
    default=KeyFamily.ED25519.value,
    show_default=True,
)
@click.option("--directory", "-d", default=None, help="Key directory (default: ~USER/.ssh)")
@click.pass_context
def keygen(ctx, user, family, directory):
    """Generate USER's key pair unless it exists and print the public key."""
    settings = ctx.obj["settings"]
    store = KeyMaterialStore(SshKeygenGenerator(timeout=settings.keygen_timeout))
    config = KeyConfig(family=KeyFamily(family), directory=Path(directory) if directory else None)
    try:
        record = store.ensure_key(user, config)
    except SSHTrustError as exc:
        _fail(str(exc))

    click.echo(record.to_line())
    if record.fingerprint:
        console.print(f"[dim]{record.fingerprint}[/dim]")


# ── catalog ─────────────────────────────────────────────────────────────────


@main.group()
def catalog():
    """Inspect and edit the export catalog."""
    pass


@catalog.command("list")
@click.option("--json", "json_output", is_flag=True, help="Print JSON")
@click.pass_context
def catalog_list(ctx, json_output):
    """List every catalog entry."""
    with _open_catalog(ctx) as cat:
        try:
            entries = cat.snapshot()
        except SSHTrustError as exc:
            _fail(str(exc))

    if json_output:
        data = {
            str(ident): (value.to_dict() if isinstance(value, KeyRecord) else {"path": value.path})
            for ident, value in sorted(entries.items())
        }
        click.echo(json.dumps(data, indent=2))
        return

    if not entries:
        console.print("[yellow]Catalog is empty[/yellow]")
        return

    table = Table(title=f"Export catalog ({ctx.obj['catalog_url']})")
    table.add_column("Identifier", style="cyan")
    table.add_column("Type")
    table.add_column("Key")
    for ident, value in sorted(entries.items()):
        if isinstance(value, KeyPath):
            table.add_row(str(ident), "path", value.path)
        else:
            table.add_row(str(ident), value.algorithm, value.fingerprint or value.material[:24])
    console.print(table)
    console.print(f"[dim]Total: {len(entries)} entries[/dim]")


@catalog.command("show")
@click.argument("identifier")
@click.pass_context
def catalog_show(ctx, identifier):
    """Show one catalog entry."""
    ident = _parse_identifier(identifier)
    with _open_catalog(ctx) as cat:
        try:
            value = cat.lookup(ident)
        except SSHTrustError as exc:
            _fail(str(exc))

    if value is None:
        console.print(f"[yellow]{ident} has not been published yet[/yellow]")
        sys.exit(EXIT_FAILED)
    if isinstance(value, KeyPath):
        click.echo(value.path)
    else:
        click.echo(value.to_line())


@catalog.command("publish")
@click.argument("identifier")
@click.argument("value", required=False)
@click.option("--file", "-f", "key_file", type=click.Path(dir_okay=False), help="Publish the key read from a file")
@click.option("--path-ref", is_flag=True, help="With --file, publish the path instead of the parsed key")
@click.pass_context
def catalog_publish(ctx, identifier, value, key_file, path_ref):
    """Publish VALUE (a key line or absolute path) under IDENTIFIER."""
    ident = _parse_identifier(identifier)
    if not value and not key_file:
        raise click.UsageError("Provide VALUE or --file")

    try:
        if key_file:
            record = read_key_file(key_file)
            entry = KeyPath(str(Path(key_file).resolve())) if path_ref else record
        elif value.startswith("/"):
            read_key_file(value)
            entry = KeyPath(value)
        else:
            entry = parse_key_line(value)
    except SSHTrustError as exc:
        _fail(str(exc))

    with _open_catalog(ctx) as cat:
        try:
            changed = cat.publish(ident, entry)
        except SSHTrustError as exc:
            _fail(str(exc))

    console.print(f"[green]Published[/green] {ident}" if changed else f"[dim]{ident} unchanged[/dim]")


@catalog.command("withdraw")
@click.argument("identifier")
@click.pass_context
def catalog_withdraw(ctx, identifier):
    """Remove IDENTIFIER from the catalog."""
    ident = _parse_identifier(identifier)
    with _open_catalog(ctx) as cat:
        try:
            removed = cat.withdraw(ident)
        except SSHTrustError as exc:
            _fail(str(exc))

    console.print(f"[green]Withdrew[/green] {ident}" if removed else f"[yellow]{ident} was not in the catalog[/yellow]")


# ── pass / converge ─────────────────────────────────────────────────────────


def _orchestrator(ctx: click.Context, topology_file: str | None) -> ConvergenceOrchestrator:
    settings = ctx.obj["settings"]
    try:
        topology = load_topology(topology_file or settings.topology_file)
    except TopologyError as exc:
        _fail(str(exc))

    catalog_url = ctx.obj["catalog_url"]
    if topology.catalog_url and catalog_url == settings.catalog_url:
        catalog_url = topology.catalog_url
    try:
        cat = get_catalog(catalog_url)
    except (SSHTrustError, ValueError) as exc:
        _fail(str(exc))

    return ConvergenceOrchestrator(
        cat,
        topology.nodes(),
        store=KeyMaterialStore(SshKeygenGenerator(timeout=settings.keygen_timeout)),
        state_dir=settings.state_dir,
    )


def _print_pass(report: PassReport) -> None:
    prefix = "[yellow]DRY RUN[/yellow] " if report.dry_run else ""
    if report.ok:
        console.print(f"  {prefix}[green]OK[/green]    {report.host:<24s} {report.changes} change(s)")
    else:
        kind = report.error_kind.value if report.error_kind else type(report.error).__name__
        target = f" {report.failed_identifier}" if report.failed_identifier else ""
        console.print(
            f"  {prefix}[red]FAIL[/red]  {report.host:<24s} {report.failed_stage.value}{target}: ({kind}) {escape(str(report.error))}"
        )
    for path in report.would_generate:
        console.print(f"        [dim]would generate {path}[/dim]")
    for ident in report.pending:
        console.print(f"        [dim]waiting for {ident}[/dim]")
    for ident, exc in report.unresolved.items():
        console.print(f"        [yellow]unresolved {ident}:[/yellow] {escape(str(exc))}")


@main.command("pass")
@click.option("--host", "-h", "host", required=True, help="Host name from the topology")
@click.option("--dry-run", is_flag=True, help="Show what would be done without making changes")
@topology_options
@click.pass_context
def pass_command(ctx, host, dry_run, topology_file):
    """Run one reconciliation pass for HOST."""
    orchestrator = _orchestrator(ctx, topology_file)
    try:
        node = orchestrator.node(host)
    except KeyError:
        orchestrator.catalog.close()
        _fail(f"Host {host!r} is not in the topology")

    with orchestrator.catalog:
        report = orchestrator.run_pass(node, dry_run=dry_run)
    _print_pass(report)
    if not report.ok:
        sys.exit(EXIT_FAILED)


def _print_convergence(report: ConvergenceReport) -> None:
    table = Table(title="Convergence")
    table.add_column("Round", justify="right")
    table.add_column("Changes", justify="right")
    table.add_column("Failed hosts")
    for number, passes in enumerate(report.rounds, start=1):
        failed = ", ".join(p.host for p in passes if not p.ok)
        table.add_row(str(number), str(sum(p.changes for p in passes)), failed or "-")
    console.print(table)


@main.command()
@click.option("--max-rounds", type=click.IntRange(2, 100), default=None, help="Round limit (default: $SSHTRUST_MAX_ROUNDS)")
@topology_options
@click.pass_context
def converge(ctx, max_rounds, topology_file):
    """Run rounds over every host until nothing changes."""
    orchestrator = _orchestrator(ctx, topology_file)
    with orchestrator.catalog:
        report = orchestrator.converge(max_rounds or ctx.obj["settings"].max_rounds)

    _print_convergence(report)
    for failed in report.failures:
        _print_pass(failed)

    if report.converged:
        console.print(f"[green]Fixpoint reached after {len(report.rounds)} rounds[/green]")
        return
    console.print(f"[red]No fixpoint after {len(report.rounds)} rounds[/red]")
    sys.exit(EXIT_NOT_CONVERGED)


if __name__ == "__main__":
    main()
