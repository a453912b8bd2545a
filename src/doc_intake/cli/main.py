"""Main CLI entry point for doc-intake."""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from doc_intake import __version__
from doc_intake.config import DocIntakeConfig, load_config
from doc_intake.exceptions import DocIntakeError
from doc_intake.intake import UploadFile
from doc_intake.jobs.worker import LOG_FILE, is_worker_running, start_worker
from doc_intake.models.enums import DocumentStatus, JobStatus, UserRole
from doc_intake.models.events import Actor
from doc_intake.models.jobs import Job
from doc_intake.models.prompts import DEFAULT_MODEL_PARAMETERS
from doc_intake.pipeline import Pipeline
from doc_intake.utils.logging import setup_logging


def _load_dotenv() -> None:
    """Load .env file if it exists."""
    # Look for .env in current directory and parent directories
    current = Path.cwd()
    for path in [current, *current.parents]:
        env_file = path / ".env"
        if env_file.exists():
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        key, _, value = line.partition("=")
                        key = key.strip()
                        value = value.strip().strip("\"'")
                        if key and key not in os.environ:
                            os.environ[key] = value
            break


# Load .env file before anything else
_load_dotenv()

# Create the main Typer app
app = typer.Typer(
    name="doc-intake",
    help="""Asynchronous document intake with LLM extraction and human review.

Uploaded files are queued as durable jobs, extracted by a background worker,
then wait for a reviewer to confirm or correct the extracted fields.

[bold]Examples:[/bold]

  [dim]# Create the database and default prompts[/dim]
  doc-intake init-db

  [dim]# Queue two files for processing[/dim]
  doc-intake upload report.txt protocol.txt --owner alice

  [dim]# Process queued jobs[/dim]
  doc-intake worker

  [dim]# Accept a review, correcting one field[/dim]
  doc-intake review DOC_ID --reviewer bob --set review_number=R-17

[bold]Configuration:[/bold]

  Create [cyan]doc-intake.config.json[/cyan] in your project root, or use CLI flags.
  Set [cyan]ANTHROPIC_API_KEY[/cyan] for extraction with Claude.
""",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

prompts_app = typer.Typer(help="Manage versioned extraction prompts.", no_args_is_help=True)
app.add_typer(prompts_app, name="prompts")

# Console for rich output
console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "pending": "yellow",
    "processing": "cyan",
    "awaiting_review": "magenta",
    "completed": "green",
    "failed": "red",
    "active": "green",
    "draft": "yellow",
    "archived": "dim",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"doc-intake version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Queue, process and review uploaded documents."""
    pass


# Common options used across commands
ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
]

DatabaseOption = Annotated[
    Optional[Path],
    typer.Option(
        "--db",
        help="Path to the SQLite database.",
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        help="Verbosity level (0=quiet, 1=normal, 2=verbose, 3=debug).",
        min=0,
        max=3,
        count=True,
    ),
]


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _short(value: Optional[str], width: int = 8) -> str:
    return value[:width] if value else "-"


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _build(
    config: Optional[Path],
    db: Optional[Path],
    verbose: int,
    **overrides,
) -> tuple[DocIntakeConfig, Pipeline]:
    cfg = load_config(config_path=config, database=db, verbose=verbose, **overrides)
    setup_logging(verbosity=cfg.verbosity)
    return cfg, Pipeline(cfg)


def _fail(e: Exception, verbose: int) -> None:
    console.print(f"\n[bold red]Error:[/bold red] {e}")
    if verbose >= 2:
        console.print_exception()
    sys.exit(1)


def _parse_params(entries: list[str]) -> dict[str, Any]:
    """Parse key=value model parameters; values are read as JSON when they can be."""
    parameters: dict[str, Any] = {}
    for entry in entries:
        key, sep, raw = entry.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Invalid --param value (expected key=value): {entry}[/red]")
            sys.exit(2)
        try:
            parameters[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            parameters[key.strip()] = raw
    return parameters


def _jobs_table(jobs: list[Job], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Job", style="cyan")
    table.add_column("Document")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Scheduled")
    table.add_column("Worker")
    table.add_column("Error", overflow="fold")

    for job in jobs:
        table.add_row(
            _short(job.id),
            _short(job.document_id),
            _styled(job.status.value),
            f"{job.attempts}/{job.max_attempts}",
            _when(job.scheduled_for),
            job.worker_id or "-",
            job.error_message or "",
        )
    return table


@app.command("init-db")
def init_db(
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
    seed: Annotated[
        bool,
        typer.Option("--seed/--no-seed", help="Install the default prompts."),
    ] = True,
) -> None:
    """Create the database schema (and seed the default prompts)."""
    try:
        cfg, pipeline = _build(config, db, verbose)
        created = pipeline.prompts.seed_defaults() if seed else []
    except DocIntakeError as e:
        _fail(e, verbose)

    console.print(f"[bold green]Database ready[/bold green] at {cfg.database_path}")
    for prompt in created:
        console.print(f"  Seeded prompt [cyan]{prompt.name}[/cyan] v{prompt.version}")


@app.command()
def upload(
    files: Annotated[
        list[Path],
        typer.Argument(
            help="Files to upload.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    owner: Annotated[str, typer.Option("--owner", "-o", help="Uploading user's id.")],
    building: Annotated[
        Optional[str], typer.Option("--building", help="Building the documents belong to.")
    ] = None,
    revision_type: Annotated[
        Optional[str], typer.Option("--revision-type", help="Revision type id.")
    ] = None,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Upload files and queue them for processing.

    [bold]Examples:[/bold]

      [dim]# Upload every report in a folder[/dim]
      doc-intake upload reports/*.txt --owner alice --building B-12
    """
    _, pipeline = _build(config, db, verbose)
    uploads = [UploadFile(filename=path.name, content=path.read_bytes()) for path in files]

    try:
        result = asyncio.run(
            pipeline.intake.upload_batch(uploads, owner, building, revision_type)
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Upload interrupted by user[/yellow]")
        sys.exit(1)

    table = Table(title="Upload Summary")
    table.add_column("File", style="cyan")
    table.add_column("Document")
    table.add_column("Job")
    table.add_column("Result")

    for document, job in zip(result.documents, result.jobs):
        table.add_row(document.filename, document.id, job.id, _styled("queued"))
    for failure in result.failures:
        table.add_row(failure.filename, "-", "-", f"[red]{failure.error}[/red]")

    console.print(table)
    if result.failures:
        sys.exit(1)


@app.command()
def worker(
    once: Annotated[
        bool, typer.Option("--once", help="Process one job and exit.")
    ] = False,
    concurrency: Annotated[
        Optional[int],
        typer.Option("--concurrency", help="Jobs to run at once.", min=1, max=32),
    ] = None,
    model: Annotated[
        Optional[str],
        typer.Option("--model", "-m", help="LLM model to use for extraction."),
    ] = None,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Run the background worker in the foreground."""
    cfg = load_config(
        config_path=config,
        database=db,
        verbose=verbose,
        concurrency=concurrency,
        model=model,
    )
    setup_logging(verbosity=cfg.verbosity, log_file=LOG_FILE)

    if is_worker_running():
        console.print("[yellow]A worker is already running[/yellow]")
        sys.exit(1)

    console.print(f"[bold green]Starting worker[/bold green]")
    console.print(f"  Database: {cfg.database_path}")
    console.print(f"  Model: {cfg.llm.model}")
    console.print(f"  Concurrency: {cfg.worker.concurrency}")
    console.print(f"  Log: {LOG_FILE}")

    try:
        start_worker(config=cfg, once=once)
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker interrupted by user[/yellow]")


@app.command()
def jobs(
    status: Annotated[
        Optional[JobStatus], typer.Option("--status", "-s", help="Only jobs in this status.")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1)] = 50,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """List jobs and queue counts."""
    _, pipeline = _build(config, db, verbose)

    console.print(_jobs_table(pipeline.queue.list_jobs(status=status, limit=limit), "Jobs"))

    stats = pipeline.queue.stats()
    console.print(
        f"pending {stats.pending}  processing {stats.processing}  "
        f"completed {stats.completed}  failed {stats.failed}"
    )


@app.command()
def job(
    job_id: Annotated[str, typer.Argument(help="Job id.")],
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Show one job in detail."""
    _, pipeline = _build(config, db, verbose)
    try:
        found = pipeline.queue.get_job(job_id)
    except DocIntakeError as e:
        _fail(e, verbose)

    table = Table(title=f"Job {found.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Document", found.document_id)
    table.add_row("Type", found.job_type.value)
    table.add_row("Status", _styled(found.status.value))
    table.add_row("Attempts", f"{found.attempts}/{found.max_attempts}")
    table.add_row("Created", _when(found.created_at))
    table.add_row("Scheduled", _when(found.scheduled_for))
    table.add_row("Started", _when(found.started_at))
    table.add_row("Finished", _when(found.completed_at))
    table.add_row("Worker", found.worker_id or "-")
    table.add_row("Lease until", _when(found.lease_expires_at))
    table.add_row("Error", found.error_message or "-")
    table.add_row("Payload", str(found.payload))
    console.print(table)


@app.command()
def documents(
    owner: Annotated[
        Optional[str], typer.Option("--owner", "-o", help="Only this user's documents.")
    ] = None,
    status: Annotated[
        Optional[DocumentStatus],
        typer.Option("--status", "-s", help="Only documents in this status."),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1)] = 50,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """List documents."""
    _, pipeline = _build(config, db, verbose)
    docs = pipeline.documents.list_documents(owner_id=owner, status=status, limit=limit)

    table = Table(title="Documents")
    table.add_column("Document", style="cyan")
    table.add_column("Filename")
    table.add_column("Owner")
    table.add_column("Status")
    table.add_column("Confidence", justify="right")
    table.add_column("Uploaded")

    for document in docs:
        confidence = (
            f"{document.confidence_score:.0%}" if document.confidence_score is not None else "-"
        )
        table.add_row(
            document.id,
            document.filename,
            document.owner_id,
            _styled(document.status.value),
            confidence,
            _when(document.created_at),
        )
    console.print(table)

    stats = pipeline.documents.stats(owner_id=owner)
    average = (
        f"{stats.average_processing_seconds / 60:.0f} min"
        if stats.average_processing_seconds is not None
        else "-"
    )
    console.print(
        f"total {stats.total}  in queue {stats.in_queue}  "
        f"awaiting review {stats.awaiting_review}  completed {stats.completed}  "
        f"failed {stats.failed}  completion {stats.completion_rate:.0%}  "
        f"avg processing {average}"
    )


@app.command()
def reclaim(
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Return jobs with expired leases to the queue."""
    _, pipeline = _build(config, db, verbose)
    reclaimed = pipeline.queue.reclaim_expired()
    if not reclaimed:
        console.print("No expired leases")
        return
    console.print(_jobs_table(reclaimed, "Reclaimed Jobs"))


@app.command()
def review(
    document_id: Annotated[str, typer.Argument(help="Document to accept.")],
    reviewer: Annotated[str, typer.Option("--reviewer", "-r", help="Reviewer's user id.")],
    role: Annotated[
        UserRole, typer.Option("--role", help="Reviewer's role.")
    ] = UserRole.REVIEWER,
    corrections: Annotated[
        Optional[list[str]],
        typer.Option("--set", help="Corrected value as field=value (repeatable)."),
    ] = None,
    show: Annotated[
        bool, typer.Option("--show", help="Only show the extracted fields.")
    ] = False,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Show or accept the extracted fields of a document.

    [bold]Examples:[/bold]

      [dim]# Look at what was extracted[/dim]
      doc-intake review DOC_ID --reviewer bob --show

      [dim]# Accept, correcting two fields[/dim]
      doc-intake review DOC_ID -r bob --set reviewer_name="J. Doe" --set status=open
    """
    _, pipeline = _build(config, db, verbose)

    try:
        item = pipeline.reviews.get_review(document_id)
    except DocIntakeError as e:
        _fail(e, verbose)

    if show:
        table = Table(title=f"{item.document.filename} ({item.document.status.value})")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_column("Confidence", justify="right")
        table.add_column("Page", justify="right")
        for field in item.fields:
            table.add_row(
                field.field_name,
                field.field_value,
                f"{field.confidence_score:.0%}",
                str(field.bounding_box.page),
            )
        console.print(table)
        return

    corrected: dict[str, str] = {}
    for entry in corrections or []:
        name, sep, value = entry.partition("=")
        if not sep or not name.strip():
            console.print(f"[red]Invalid --set value (expected field=value): {entry}[/red]")
            sys.exit(2)
        corrected[name.strip()] = value

    try:
        outcome = pipeline.reviews.accept_review(
            document_id, corrected, Actor(user_id=reviewer, role=role)
        )
    except DocIntakeError as e:
        _fail(e, verbose)

    console.print(
        f"[bold green]Review accepted[/bold green] for {outcome.document.filename} "
        f"({outcome.changes_made} correction(s))"
    )
    for record in outcome.feedback:
        console.print(f"  {record.field_name}: {record.ai_value!r} -> {record.human_value!r}")


@prompts_app.command("list")
def prompts_list(
    name: Annotated[Optional[str], typer.Argument(help="Only versions of this prompt.")] = None,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """List prompt versions."""
    _, pipeline = _build(config, db, verbose)

    table = Table(title="Prompts")
    table.add_column("Name", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("Status")
    table.add_column("Id")
    table.add_column("Parameters", overflow="fold")
    table.add_column("Changelog", overflow="fold")
    for prompt in pipeline.prompts.list_versions(name):
        table.add_row(
            prompt.name,
            str(prompt.version),
            _styled(prompt.status.value),
            prompt.id,
            json.dumps(prompt.parameters),
            prompt.changelog or "",
        )
    console.print(table)


@prompts_app.command("create")
def prompts_create(
    name: Annotated[str, typer.Argument(help="Prompt name.")],
    text_file: Annotated[
        Path,
        typer.Argument(
            help="File holding the prompt text.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    changelog: Annotated[
        Optional[str], typer.Option("--changelog", help="What changed in this version.")
    ] = None,
    author: Annotated[Optional[str], typer.Option("--author", help="Author's user id.")] = None,
    activate: Annotated[
        bool, typer.Option("--activate", help="Activate the new version right away.")
    ] = False,
    params: Annotated[
        Optional[list[str]],
        typer.Option(
            "--param",
            help="Model parameter as key=value (repeatable), e.g. temperature=0.2.",
        ),
    ] = None,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Create a new draft version of a prompt.

    [bold]Examples:[/bold]

      [dim]# New version with a lower temperature, live immediately[/dim]
      doc-intake prompts create extract_review_report_data prompt.txt --param temperature=0.2 --activate
    """
    parameters = _parse_params(params or [])
    _, pipeline = _build(config, db, verbose)
    try:
        prompt = pipeline.prompts.create_version(
            name,
            text_file.read_text(encoding="utf-8"),
            parameters={**DEFAULT_MODEL_PARAMETERS, **parameters} if parameters else None,
            changelog=changelog,
            created_by=author,
        )
        if activate:
            prompt = pipeline.prompts.activate(prompt.id, name, actor_id=author)
    except (DocIntakeError, ValueError) as e:
        _fail(e, verbose)

    console.print(
        f"Created [cyan]{prompt.name}[/cyan] v{prompt.version} "
        f"({_styled(prompt.status.value)}) id {prompt.id}"
    )


@prompts_app.command("activate")
def prompts_activate(
    name: Annotated[str, typer.Argument(help="Prompt name.")],
    prompt_id: Annotated[str, typer.Argument(help="Version id to activate.")],
    actor: Annotated[Optional[str], typer.Option("--actor", help="Acting user's id.")] = None,
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Activate a prompt version, archiving the current one."""
    _, pipeline = _build(config, db, verbose)
    try:
        prompt = pipeline.prompts.activate(prompt_id, name, actor_id=actor)
    except DocIntakeError as e:
        _fail(e, verbose)
    console.print(f"[bold green]Activated[/bold green] {prompt.name} v{prompt.version}")


@prompts_app.command("seed")
def prompts_seed(
    config: ConfigOption = None,
    db: DatabaseOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Install the default prompts where missing."""
    _, pipeline = _build(config, db, verbose)
    created = pipeline.prompts.seed_defaults()
    if not created:
        console.print("All default prompts already present")
    for prompt in created:
        console.print(f"Seeded [cyan]{prompt.name}[/cyan] v{prompt.version}")


if __name__ == "__main__":
    app()
