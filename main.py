"""Main CLI entry point for the narrative engine."""
import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from budget.governor import BudgetGovernor
from budget.task_config import TaskConfigResolver
from storage.database import Database
from utils.errors import EngineError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)
console = Console()


def _engine():
    from engine import NarrativeEngine
    return NarrativeEngine()


def _require_api_key() -> bool:
    if not config.ANTHROPIC_API_KEY:
        console.print("[red]Error: ANTHROPIC_API_KEY not set in environment[/red]")
        return False
    return True


@click.group()
def cli():
    """Timeline-aware narrative ingestion and retrieval engine"""
    pass


@cli.command()
@click.option('--file', 'file_path', required=True, type=click.Path(exists=True), help='Path to PDF or text file')
@click.option('--owner', required=True, help='Owner id')
@click.option('--title', default=None, help='Title (defaults to the file name)')
@click.option('--background', is_flag=True, help='Return immediately and ingest on a background thread')
def ingest(file_path, owner, title, background):
    """Register a document and segment, chunk and index it."""
    console.print("\n[bold cyan]Document Ingestion[/bold cyan]\n")
    if not _require_api_key():
        return

    path = Path(file_path)
    engine = _engine()
    document_id = engine.register_document(owner, title or path.stem, str(path.absolute()))

    if background:
        thread = engine.start_ingestion(document_id)
        console.print(f"Ingestion running in background for [cyan]{document_id}[/cyan]")
        thread.join()
        document = engine.db.get_document(document_id)
        console.print(f"Final status: {document['status']}")
        return

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task("Extracting chapters, scenes and chunks...", total=None)
        result = engine.ingest(document_id)
        progress.update(task, completed=True)

    if not result.success:
        console.print(f"[red]Ingestion failed: {result.error}[/red]")
        return

    table = Table(show_header=False)
    table.add_row("Document ID", f"[cyan]{document_id}[/cyan]")
    table.add_row("Chapters", str(result.stats.chapters))
    table.add_row("Scenes", str(result.stats.scenes))
    table.add_row("Chunks", str(result.stats.chunks))
    console.print("\n[green]✓ Ingestion complete![/green]")
    console.print(table)


@cli.command()
@click.option('--owner', default=None, help='Only show documents of this owner')
def status(owner):
    """Show registered documents and their labeling jobs."""
    db = Database()
    documents = db.list_documents(owner)

    if not documents:
        console.print("[yellow]No documents have been registered yet[/yellow]")
        return

    table = Table(title="Documents")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Owner")
    table.add_column("Pages", justify="right")
    table.add_column("Status")
    table.add_column("Labeling")
    table.add_column("Updated", style="dim")

    for document in documents:
        jobs = db.list_jobs(document['id'])
        job_status = jobs[-1]['status'] if jobs else "-"
        table.add_row(
            document['id'],
            document['title'],
            document['owner_id'],
            str(document['page_count'] or 0),
            document['status'],
            job_status,
            (document['updated_at'] or '')[:19]
        )
        if document['error']:
            table.add_row("", f"[red]{document['error']}[/red]", "", "", "", "", "")

    console.print(table)


@cli.command('resolve-focus')
@click.option('--document-id', required=True, help='Document UUID')
@click.option('--focus', required=True, help='Temporal focus, e.g. "before the siege"')
def resolve_focus(document_id, focus):
    """Resolve a temporal focus phrase to a scene window."""
    window = _engine().resolve_focus_window(document_id, focus)
    if window is None:
        console.print("[yellow]No focus window resolved[/yellow]")
        return

    console.print(f"Window: scenes [cyan]{window.start_global_index}[/cyan] to [cyan]{window.end_global_index}[/cyan]")
    table = Table(title="Matched Scenes")
    table.add_column("Scene", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Summary")
    for scene in window.matched_scenes:
        table.add_row(str(scene.global_scene_index), f"{scene.score:.3f}", scene.summary)
    console.print(table)


@cli.command()
@click.option('--owner', required=True, help='Owner id')
@click.option('--document-id', 'document_ids', required=True, multiple=True, help='Document UUID (repeatable)')
@click.option('--name', required=True, help='Entity name')
@click.option('--type', 'entity_type', default='CHARACTER', show_default=True, help='Entity type')
@click.option('--focus', default=None, help='Temporal focus, e.g. "before the battle"')
@click.option('--output', default=None, type=click.Path(), help='Write the full result as JSON')
def analyze(owner, document_ids, name, entity_type, focus, output):
    """Extract an evidence-backed attribute map for one entity."""
    console.print(f"\n[bold cyan]Analyzing {name}[/bold cyan]\n")
    if not _require_api_key():
        return

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Retrieving and extracting attributes...", total=None)
            result = _engine().analyze(owner, list(document_ids), name, entity_type, focus)
            progress.update(task, completed=True)
    except EngineError as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    console.print(f"[bold]{result.title}[/bold] ({result.entity_type}, {result.pipeline})")
    console.print(result.description + "\n")

    table = Table(title="Attributes")
    table.add_column("Attribute", style="cyan")
    table.add_column("Value")
    table.add_column("Conf.", justify="right")
    table.add_column("Time")
    table.add_column("Evidence", style="dim")
    for attr, value in result.attributes.items():
        if value.value is None and not value.notes:
            continue
        table.add_row(
            attr,
            value.value or f"[dim]{value.notes}[/dim]",
            f"{value.confidence:.2f}",
            value.time_state.value,
            value.evidence[0].quote[:60] if value.evidence else ""
        )
    console.print(table)

    if result.refined_attributes:
        console.print(f"Refined: {', '.join(result.refined_attributes)}")

    if output:
        with open(output, 'w', encoding='utf-8') as f:
            json.dump(result.model_dump(mode='json'), f, indent=2, ensure_ascii=False)
        console.print(f"[green]✓ Result written to {output}[/green]")


@cli.group()
def label():
    """Micro-fragment labeling queue."""
    pass


@label.command('enqueue')
@click.option('--document-id', required=True, help='Document UUID')
def label_enqueue(document_id):
    """Queue a labeling job for a document."""
    try:
        job = _engine().enqueue_labeling(document_id)
    except EngineError as e:
        console.print(f"[red]Error: {e}[/red]")
        return
    console.print(f"[green]✓ Queued job {job['id']}[/green]")


@label.command('tick')
def label_tick():
    """Process the oldest queued job once."""
    job_id = _engine().labeling.process_queue()
    if job_id is None:
        console.print("[yellow]Nothing processed[/yellow]")
        return
    job = Database().get_job(job_id)
    console.print(f"Job {job_id}: {job['status']} {job['message'] or job['error'] or ''}")


@label.command('worker')
@click.option('--interval', default=config.LABELING_POLL_INTERVAL, show_default=True, type=float, help='Seconds between ticks')
def label_worker(interval):
    """Run the labeling worker until interrupted."""
    queue = _engine().labeling
    try:
        asyncio.run(queue.run_worker(interval))
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")


@label.command('retry')
@click.option('--job-id', required=True, help='Job UUID')
def label_retry(job_id):
    """Put a failed job back in the queue."""
    db = Database()
    job = db.get_job(job_id)
    if job is None:
        console.print("[red]Error: Job not found[/red]")
        return
    db.update_job(job_id, "queued")
    console.print(f"[green]✓ Job {job_id} re-queued[/green]")


@cli.command()
@click.option('--owner', required=True, help='Owner id')
@click.option('--document-id', required=True, help='Document UUID')
def aggregate(owner, document_id):
    """Seed character and scene records from the snippet layer."""
    if not _require_api_key():
        return
    try:
        report = _engine().aggregate(document_id, owner)
    except EngineError as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    table = Table(show_header=False)
    table.add_row("Snippets", str(report.snippets))
    table.add_row("Entities considered", str(report.entities_considered))
    table.add_row("Characters created", str(report.characters_created))
    table.add_row("Scenes created", str(report.scenes_created))
    table.add_row("Failures", str(report.failures))
    if report.stopped_reason:
        table.add_row("Stopped", f"[red]{report.stopped_reason}[/red]")
    console.print(table)


@cli.group()
def budget():
    """Daily usage quotas."""
    pass


@budget.command('status')
@click.option('--date', default=None, help='UTC date (YYYY-MM-DD), defaults to today')
def budget_status(date):
    """Show today's usage per task and per model."""
    governor = BudgetGovernor(Database())
    usage = governor.usage_summary(date)

    console.print(f"Usage limits disabled: {governor.is_global_limit_disabled()}")
    for title, rows, key in (("Tasks", usage['tasks'], 'task'), ("Models", usage['models'], 'model')):
        table = Table(title=title)
        table.add_column(key.capitalize(), style="cyan")
        table.add_column("Requests", justify="right")
        table.add_column("Input tokens", justify="right")
        table.add_column("Output tokens", justify="right")
        for row in rows:
            table.add_row(
                row[key], str(row['requests']),
                f"{row['input_tokens']:,}", f"{row['output_tokens']:,}"
            )
        console.print(table)


@budget.command('disable')
def budget_disable():
    """Bypass every budget check."""
    BudgetGovernor(Database()).set_global_limit_disabled(True)
    console.print("[yellow]Usage limits disabled[/yellow]")


@budget.command('enable')
def budget_enable():
    """Enforce budget checks again."""
    BudgetGovernor(Database()).set_global_limit_disabled(False)
    console.print("[green]Usage limits enabled[/green]")


@budget.command('set-task')
@click.option('--task', required=True, help='Task name, e.g. sceneExtraction')
@click.option('--provider', default=config.LLM_PROVIDER, show_default=True)
@click.option('--model', required=True)
@click.option('--limit', 'daily_limit', default=config.DEFAULT_TASK_DAILY_LIMIT, show_default=True, type=int)
@click.option('--disabled', is_flag=True, help='Do not enforce this task budget')
def budget_set_task(task, provider, model, daily_limit, disabled):
    """Configure provider, model and daily limit for a task."""
    saved = TaskConfigResolver(Database()).set_task(task, provider, model, not disabled, daily_limit)
    console.print(f"[green]✓ {saved.task}: {saved.provider}/{saved.model}, limit {saved.daily_limit}[/green]")


@budget.command('set-model')
@click.option('--model', required=True)
@click.option('--limit', 'daily_limit', default=config.DEFAULT_MODEL_DAILY_LIMIT, show_default=True, type=int)
@click.option('--disabled', is_flag=True, help='Do not enforce this model budget')
def budget_set_model(model, daily_limit, disabled):
    """Configure the daily limit shared by all tasks using a model."""
    saved = TaskConfigResolver(Database()).set_model(model, not disabled, daily_limit)
    console.print(f"[green]✓ {saved.model}: limit {saved.daily_limit} ({'on' if saved.budget_enabled else 'off'})[/green]")


@cli.command()
@click.option('--document-id', required=True, help='Document UUID')
@click.confirmation_option(prompt='Delete this document and everything derived from it?')
def delete(document_id):
    """Delete a document, its records and its fragments."""
    from storage.vector_store import FragmentStore

    FragmentStore().delete_all_for(document_id)
    Database().delete_document(document_id)
    console.print(f"[green]✓ Deleted {document_id}[/green]")


@cli.command()
def health():
    """Check the database and the fragment store."""
    from storage.vector_store import FragmentStore

    table = Table(title="Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    table.add_column("Error", style="red")

    try:
        count = len(Database().list_documents())
        table.add_row("database", "OK", str(count), "")
    except Exception as e:
        table.add_row("database", "FAILED", "0", str(e))

    fragments = FragmentStore().health()
    table.add_row("fragments", fragments.status, str(fragments.count), fragments.error or "")
    console.print(table)


if __name__ == '__main__':
    cli()
