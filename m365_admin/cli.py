"""Command line interface for the Microsoft 365 admin toolkit."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

import typer

from .availability import check_username_availability
from .config import AppConfig, ConfigurationError, configure_logging, ensure_default_config, load_config
from .context import DirectoryContext
from .csv_import import CSVParser, ImportParseResult, generate_template
from .graph_client import GraphClientError
from .models import ImportRecord, ProvisioningProgress
from .passwords import DEFAULT_LENGTH, generate_password_with_strength
from .progress import LoggingProgressObserver
from .provisioning import BulkProvisioner, ProvisioningSetupError
from .summary import build_summary, format_summary

app = typer.Typer(help="Provision Microsoft 365 users in bulk through Microsoft Graph.")
config_app = typer.Typer(help="Manage the settings file.")
app.add_typer(config_app, name="config")

_CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        config = load_config(config_path)
        configure_logging(config.logging)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    return config


def _read_csv(path: Path, config: AppConfig) -> ImportParseResult:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        typer.echo(f"Error: unable to read '{path}': {exc}")
        raise typer.Exit(code=1)
    return CSVParser(config.imports).parse(text)


def _echo_parse_summary(parsed: ImportParseResult) -> None:
    summary = parsed.summary
    typer.echo(
        f"Rows: {summary.total}  valid: {summary.valid}  "
        f"invalid: {summary.invalid}  duplicate: {summary.duplicate}"
    )
    for error in summary.errors:
        typer.echo(f"  row {error.row} [{error.field}]: {error.error}")


class _ProgressBarObserver:
    def __init__(self, bar: Any) -> None:
        self._bar = bar
        self._seen = 0

    def on_progress(self, progress: ProvisioningProgress) -> None:
        self._bar.update(progress.processed - self._seen)
        self._seen = progress.processed


@app.command("template")
def show_template(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the template to a file."),
) -> None:
    """Print a CSV template with sample rows."""

    template = generate_template()
    if output is None:
        typer.echo(template, nl=False)
        return
    output.write_text(template, encoding="utf-8")
    typer.echo(f"Wrote template to {output}.")


@app.command("validate")
def validate_file(
    csv_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV file to check."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Parse a CSV file and report validation problems without contacting Graph."""

    config = _load_configuration(config_path)
    parsed = _read_csv(csv_file, config)
    _echo_parse_summary(parsed)
    if parsed.summary.valid != parsed.summary.total:
        raise typer.Exit(code=1)


@app.command("check-username")
def check_username(
    principal_name: str = typer.Argument(..., help="User principal name to look up."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Check whether a user principal name is free."""

    config = _load_configuration(config_path)
    context = DirectoryContext.from_config(config)
    try:
        result = check_username_availability(context.client, principal_name)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    except GraphClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.command("password")
def new_password(
    length: int = typer.Option(DEFAULT_LENGTH, "--length", min=4, help="Number of characters."),
) -> None:
    """Generate a temporary password."""

    generated = generate_password_with_strength(length)
    typer.echo(generated.password)
    typer.echo(f"Strength: {generated.strength.value}", err=True)


def _drop_taken(context: DirectoryContext, records: List[ImportRecord]) -> List[ImportRecord]:
    available: List[ImportRecord] = []
    for record in records:
        try:
            result = check_username_availability(context.client, record.principal_name)
        except GraphClientError as exc:
            typer.echo(f"Error checking {record.principal_name}: {exc}")
            raise typer.Exit(code=1)
        if result.available:
            available.append(record)
            continue
        typer.echo(
            f"  row {record.row_number}: {record.principal_name} is taken "
            f"(try {', '.join(result.suggestions)})"
        )
    return available


@app.command("import")
def import_users(
    csv_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV file of users."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Rehearse without creating accounts."),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Re-read created accounts."),
    check_availability: bool = typer.Option(
        False,
        "--check-availability",
        help="Skip rows whose principal name already exists before starting.",
    ),
    report: Optional[Path] = typer.Option(None, "--report", help="Write a JSON report to this path."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Create the valid users from a CSV file."""

    config = _load_configuration(config_path)
    config.provisioning.verify = verify
    parsed = _read_csv(csv_file, config)
    _echo_parse_summary(parsed)

    context = DirectoryContext.from_config(config)
    records = parsed.provisionable()
    if check_availability and records:
        typer.echo("Checking principal name availability...")
        records = _drop_taken(context, records)
    if not records:
        typer.echo("No valid records to provision.")
        raise typer.Exit(code=1)

    provisioner = BulkProvisioner(context, observers=[LoggingProgressObserver()])
    with typer.progressbar(length=len(records), label="Provisioning") as bar:
        provisioner.add_observer(_ProgressBarObserver(bar))
        try:
            result = provisioner.run(records, dry_run=dry_run)
        except ProvisioningSetupError as exc:
            typer.echo(f"\nError: {exc}")
            raise typer.Exit(code=2)

    summary = build_summary(result)
    for line in format_summary(summary):
        typer.echo(line)

    if report is not None:
        payload = {"result": result.to_dict(), "summary": summary.to_dict()}
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        typer.echo(f"Report written to {report}.")

    if summary.failed:
        raise typer.Exit(code=1)


@config_app.command("init")
def init_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
    template_path: Optional[Path] = typer.Option(None, "--template", help="Template to copy from."),
) -> None:
    """Create the settings file from the example template if it is missing."""

    try:
        target = ensure_default_config(config_path, template_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    typer.echo(f"Configuration file: {target}")


def run():
    app()


if __name__ == "__main__":
    run()
