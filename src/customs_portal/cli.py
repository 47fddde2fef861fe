"""Command-line interface for the customs portal submission engine."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from customs_portal.config import settings
from customs_portal.core.errors import SubmissionError
from customs_portal.core.models import DeclarationBundle, SubmissionRecord
from customs_portal.core.store import TargetConfigStore
from customs_portal.service import SubmissionService, create_submission_service
from customs_portal.utils.logging import configure_logging

app = typer.Typer(
    name="customs-portal",
    help="Customs Portal - submit customs declarations into external web portals",
    add_completion=False,
)
console = Console()


def build_service(targets_dir: Optional[Path] = None, headless: Optional[bool] = None) -> SubmissionService:
    """Create the submission service used by the commands."""
    store = TargetConfigStore()
    store.load_directory(targets_dir or settings.targets_dir)
    if headless is not None:
        settings.browser_headless = headless
    return create_submission_service(store=store)


def load_declaration(path: Path) -> DeclarationBundle:
    try:
        return DeclarationBundle.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as e:
        console.print(f"[red]Could not read declaration {path}: {e}[/red]")
        raise typer.Exit(code=2)


def print_record(record: SubmissionRecord) -> None:
    colour = "green" if record.is_successful else "red"
    table = Table(title=f"Submission {record.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style=colour)
    table.add_row("Target", record.target_code)
    table.add_row("Declaration", record.declaration_id)
    table.add_row("Status", record.status.value)
    table.add_row("Reference", record.external_reference or "-")
    table.add_row("Message", record.message or "-")
    if record.error_code:
        table.add_row("Error", f"{record.error_code}: {record.error_message}")
    table.add_row("Decisions", str(len(record.decisions)))
    table.add_row("Recovered errors", str(len(record.errors_recovered)))
    table.add_row("Screenshots", str(len(record.screenshots)))
    table.add_row("Duration", f"{record.duration_seconds}s" if record.duration_seconds is not None else "-")
    console.print(table)
    for field in record.missing_fields:
        console.print(f"  [yellow]missing[/yellow] {field.get('message')}")
    for warning in record.warnings:
        console.print(f"  [yellow]warning[/yellow] {warning}")


@app.command()
def submit(
    target: str = typer.Argument(..., help="Target code"),
    declaration: Path = typer.Argument(..., help="Declaration bundle JSON file"),
    targets_dir: Optional[Path] = typer.Option(None, help="Directory of target configuration files"),
    headless: bool = typer.Option(True, help="Run the browser headless"),
) -> None:
    """Submit one declaration to one target."""
    configure_logging()
    bundle = load_declaration(declaration)
    try:
        service = build_service(targets_dir, headless)
        record = asyncio.run(service.submit(target, bundle))
    except SubmissionError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(code=1)
    print_record(record)
    if not record.is_successful:
        raise typer.Exit(code=1)


@app.command("test-connection")
def test_connection(
    target: str = typer.Argument(..., help="Target code"),
    targets_dir: Optional[Path] = typer.Option(None, help="Directory of target configuration files"),
    headless: bool = typer.Option(True, help="Run the browser headless"),
) -> None:
    """Log in to a portal without submitting anything."""
    configure_logging()
    try:
        service = build_service(targets_dir, headless)
        result = asyncio.run(service.test_connection(target))
    except SubmissionError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(code=1)

    for line in result.logs:
        console.print(f"  {line}")
    if result.success:
        console.print(f"✅ Connected to {target}")
    else:
        console.print(f"❌ Connection to {target} failed: {result.error}")
        raise typer.Exit(code=1)


@app.command()
def preview(
    target: str = typer.Argument(..., help="Target code"),
    declaration: Path = typer.Argument(..., help="Declaration bundle JSON file"),
    targets_dir: Optional[Path] = typer.Option(None, help="Directory of target configuration files"),
) -> None:
    """Show the values a submission would type, without opening a browser."""
    bundle = load_declaration(declaration)
    try:
        result = build_service(targets_dir).preview(target, bundle)
    except SubmissionError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(code=1)

    for page in result.pages:
        table = Table(title=f"{page.page_name} ({page.page_type})")
        table.add_column("Field", style="cyan")
        table.add_column("Line")
        table.add_column("Value", style="green")
        table.add_column("Source")
        table.add_column("Required")
        for row in page.fields:
            value = "" if row.value is None else str(row.value)
            if row.error:
                value = f"[red]{row.error}[/red]"
            table.add_row(
                row.label,
                str(row.line_number or ""),
                value,
                row.source,
                "yes" if row.required else "",
            )
        console.print(table)

    console.print(f"Fields with value: {result.filled_fields}/{result.total_fields}")
    for warning in result.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    if result.ready_to_submit:
        console.print("✅ Ready to submit")
    else:
        console.print(f"❌ {len(result.unmapped_required)} required field(s) have no value")
        raise typer.Exit(code=1)


@app.command()
def targets(
    targets_dir: Optional[Path] = typer.Option(None, help="Directory of target configuration files"),
) -> None:
    """List configured targets."""
    store = TargetConfigStore()
    store.load_directory(targets_dir or settings.targets_dir)
    table = Table(title="Configured Targets")
    table.add_column("Code", style="cyan")
    table.add_column("Name")
    table.add_column("Auth")
    table.add_column("Pages")
    table.add_column("AI assist")
    table.add_column("Active")
    for target in store.list():
        table.add_row(
            target.code,
            target.name,
            target.auth_mode.value,
            str(len(target.pages)),
            "yes" if target.allow_ai_assist else "no",
            "yes" if target.is_active else "no",
        )
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(settings.host, help="Host to bind to"),
    port: int = typer.Option(settings.port, help="Port to bind to"),
    reload: bool = typer.Option(settings.reload, help="Enable auto-reload"),
) -> None:
    """Start the API server."""
    import uvicorn

    console.print(f"🚀 Starting Customs Portal API on {host}:{port}")
    uvicorn.run(
        "customs_portal.api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_config=None,
    )


@app.command()
def config() -> None:
    """Show current configuration."""
    table = Table(title="Customs Portal Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    # Show non-sensitive settings
    table.add_row("Debug Mode", str(settings.debug))
    table.add_row("Log Level", settings.log_level)
    table.add_row("Browser Headless", str(settings.browser_headless))
    table.add_row("Action Timeout (ms)", str(settings.browser_action_timeout_ms))
    table.add_row("Max Retries", str(settings.max_retries))
    table.add_row("Max Submission Retries", str(settings.max_submission_retries))
    table.add_row("Advisor Enabled", str(settings.advisor_enabled))
    table.add_row("Advisor Model", settings.advisor_model)
    table.add_row("Groq API Key", "configured" if settings.groq_api_key else "missing")
    table.add_row("OpenAI API Key", "configured" if settings.openai_api_key else "missing")
    table.add_row("Targets Directory", settings.targets_dir)
    table.add_row("Submissions Directory", settings.submissions_dir)
    table.add_row("Screenshot Directory", settings.screenshot_dir)

    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from customs_portal import __version__
    console.print(f"Customs Portal v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
