"""Submit Commands - Start ingestion, vectorization and evaluation work"""

from pathlib import Path

import typer
from rich.console import Console

from ..client.endpoints import LabelOpsClient, LabelOpsError
from ..utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="submit", help="Queue ingestion and evaluation work")


@app.command("ingest")
def submit_ingest(
    project_id: str = typer.Argument(..., help="Project to ingest into"),
    csv_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV file"),
    record_type: str | None = typer.Option(None, "--type", "-t", help="Record type"),
    source: str | None = typer.Option(None, "--source", help="Source label"),
    keyword: list[str] = typer.Option(
        None, "--keyword", "-k", help="Only keep rows containing a keyword"
    ),
    no_embeddings: bool = typer.Option(
        False, "--no-embeddings", help="Skip the vectorization follow-up"
    ),
):
    """📥 Queue a CSV file for ingestion"""
    try:
        with LabelOpsClient() as client:
            data = client.start_ingest(
                project_id,
                csv_file.read_text(encoding="utf-8"),
                record_type=record_type,
                source=source or csv_file.name,
                filter_keywords=keyword or None,
                generate_embeddings=not no_embeddings,
            )
        print_success(
            f"Queued ingest job {data.get('job_id')} ({data.get('total_rows', 0)} rows)"
        )
        print_info(f"Track it with: labelops jobs chain {data.get('correlation_id')}")

    except LabelOpsError as e:
        print_error(f"Failed to queue ingest: {e}")
        raise typer.Exit(1) from None


@app.command("vectorize")
def submit_vectorize(project_id: str = typer.Argument(..., help="Project id")):
    """🧮 Queue embeddings for records without one"""
    try:
        with LabelOpsClient() as client:
            data = client.start_vectorization(project_id)
        if not data.get("job_id"):
            print_info("All records already have embeddings")
            return
        print_success(
            f"Vectorization job {data['job_id']} "
            f"({data.get('remaining', 0)} records remaining)"
        )

    except LabelOpsError as e:
        print_error(f"Failed to queue vectorization: {e}")
        raise typer.Exit(1) from None


@app.command("evaluate")
def submit_evaluation(
    project_id: str = typer.Argument(..., help="Project id"),
    model: list[str] = typer.Option(..., "--model", "-m", help="Model id (repeatable)"),
    system_prompt: str | None = typer.Option(None, "--prompt", help="System prompt"),
):
    """🧪 Start an evaluation chain per model"""
    try:
        with LabelOpsClient() as client:
            data = client.start_evaluation(project_id, model, system_prompt)
        for job in data.get("jobs", []):
            console.print(
                f"• [cyan]{job.get('model_id')}[/cyan]: job {job.get('job_id')} "
                f"({job.get('remaining', 0)} records)"
            )

    except LabelOpsError as e:
        print_error(f"Failed to start evaluation: {e}")
        raise typer.Exit(1) from None


@app.command("evaluation-status")
def evaluation_status(
    project_id: str = typer.Argument(..., help="Project id"),
    model: str = typer.Argument(..., help="Model id"),
):
    """📈 Evaluated and remaining records for one model"""
    try:
        with LabelOpsClient() as client:
            data = client.evaluation_status(project_id, model)
    except LabelOpsError as e:
        print_error(f"Failed to get evaluation status: {e}")
        raise typer.Exit(1) from None

    evaluated = data.get("evaluated", 0)
    remaining = data.get("remaining", 0)
    console.print(
        f"[cyan]{model}[/cyan]: {evaluated} evaluated, {remaining} remaining"
    )
    if remaining == 0:
        print_success("Evaluation complete")
