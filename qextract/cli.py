"""
CLI Interface
=============
Command-line interface for the question extractor.

Usage:
    python -m qextract extract <pdf>... --course CS101 --year 2023 [options]
    python -m qextract render <json_path> [-o preview.html]
    python -m qextract info <pdf_path>
    python -m qextract serve
"""

from __future__ import annotations

import json
import os
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .errors import ExtractionError
from .models import ExtractedQuestion, MarkingScheme, QuestionType
from .pipeline import ExtractionPipeline, ExtractorConfig, PDFSource

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="qextract")
def cli():
    """qextract: exam question extraction with a vision model."""
    pass


@cli.command()
@click.argument("pdf_paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.option(
    "--key", "-k", "keys",
    multiple=True,
    help="Gemini API key (repeatable; defaults to GEMINI_API_KEYS)",
)
@click.option("--course", "-c", required=True, help="Course id for every question")
@click.option(
    "--year", "-y", "years",
    multiple=True,
    required=True,
    type=int,
    help="Exam year; once for all PDFs or once per PDF",
)
@click.option(
    "--type", "question_type",
    default="MCQ",
    type=click.Choice([t.value for t in QuestionType]),
    help="Question type stamped onto every question",
)
@click.option("--correct", default=4.0, type=float, help="Marks for a correct answer")
@click.option("--incorrect", default=-1.0, type=float, help="Marks for a wrong answer")
@click.option("--skipped", default=0.0, type=float, help="Marks for a skipped question")
@click.option("--partial", default=0.0, type=float, help="Partial marks (MSQ)")
@click.option("--time", "time_minutes", default=3, type=int, help="Minutes per question")
@click.option("--slot", default=None, help="Exam slot")
@click.option("--part", default=None, help="Exam part")
@click.option(
    "--page-start",
    default=None,
    type=int,
    help="Start page (1-indexed)",
)
@click.option(
    "--page-end",
    default=None,
    type=int,
    help="End page (1-indexed, inclusive)",
)
@click.option(
    "--auto-save",
    is_flag=True,
    default=False,
    help="Persist each page's questions as soon as they are extracted",
)
@click.option("--db", "db_path", default=None, help="SQLite database path")
@click.option("--output", "-o", default=None, help="Directory for the run JSON")
@click.option(
    "--continue-on-error",
    is_flag=True,
    default=False,
    help="Keep going after a page fails",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def extract(
    pdf_paths: tuple[str, ...],
    keys: tuple[str, ...],
    course: str,
    years: tuple[int, ...],
    question_type: str,
    correct: float,
    incorrect: float,
    skipped: float,
    partial: float,
    time_minutes: int,
    slot: str,
    part: str,
    page_start: int,
    page_end: int,
    auto_save: bool,
    db_path: str,
    output: str,
    continue_on_error: bool,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Extract questions from one or more PDF files."""

    if json_output:
        log_level = "ERROR"

    if len(years) == 1:
        years = years * len(pdf_paths)
    elif len(years) != len(pdf_paths):
        console.print(
            f"[red]Error:[/] got {len(years)} --year values "
            f"for {len(pdf_paths)} PDFs"
        )
        sys.exit(1)

    page_range = None
    if page_start is not None or page_end is not None:
        page_range = (page_start or 1, page_end or 99999)

    config = ExtractorConfig.from_env(
        api_keys=list(keys) or None,
        course_id=course,
        slot=slot,
        part=part,
        scheme=MarkingScheme(
            question_type=question_type,
            correct_marks=correct,
            incorrect_marks=incorrect,
            skipped_marks=skipped,
            partial_marks=partial,
            time_minutes=time_minutes,
        ),
        page_range=page_range,
        auto_save=auto_save,
        db_path=db_path,
        output_dir=output,
        continue_on_error=continue_on_error,
        log_level=log_level,
        log_file=log_file,
    )
    files = [PDFSource(path, year) for path, year in zip(pdf_paths, years)]

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]qextract v{__version__}[/]\n"
                f"[dim]Extracting: {', '.join(os.path.basename(p) for p in pdf_paths)}[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        pipeline = ExtractionPipeline(config)

        if not json_output:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Extracting...", total=None)

                def on_progress(event):
                    progress.update(
                        task,
                        total=event.total_pages,
                        completed=event.processed_pages,
                        description=(
                            f"{event.current_file} p{event.current_page} "
                            f"({event.saved_questions} saved)"
                        ),
                    )

                result = pipeline.run(files, progress_callback=on_progress)

            _display_results(result)
        else:
            result = pipeline.run(files)
            print(json.dumps(
                result.model_dump(mode="json", by_alias=True),
                indent=2,
                ensure_ascii=False,
            ))

    except (FileNotFoundError, RuntimeError, ValueError, ExtractionError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
        sys.exit(1)

    if result.aborted:
        sys.exit(1)


@cli.command()
@click.argument("json_path", type=click.Path(exists=True))
@click.option(
    "--output", "-o",
    default="preview.html",
    help="HTML file to write",
)
@click.option("--title", default="Extracted Questions", help="Page title")
def render(json_path: str, output: str, title: str):
    """Render questions from a run JSON (or a question list) to HTML."""
    from .renderer import ContentRenderer

    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    try:
        questions = load_questions(data)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    html = ContentRenderer().render_preview(questions, title=title)
    with open(output, "w", encoding="utf-8") as f:
        f.write(html)

    console.print(
        f"[green]Rendered {len(questions)} questions to[/] {output}"
    )


def load_questions(data) -> list[ExtractedQuestion]:
    """
    Questions from a run JSON or a bare list. Items without marks are
    treated as raw model output and get the default marking scheme.
    """
    if isinstance(data, dict):
        data = data.get("questions")
    if not isinstance(data, list):
        raise ValueError("Expected a list of questions or a run result")

    scheme = MarkingScheme()
    questions = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"Question must be an object, got {type(item).__name__}")
        if "correct_marks" in item:
            questions.append(ExtractedQuestion.model_validate(item))
        else:
            questions.append(ExtractedQuestion.from_raw(item, scheme))
    return questions


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP extraction and rendering service."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]qextract service[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
def info(pdf_path: str):
    """Display PDF file information."""

    import fitz

    with fitz.open(pdf_path) as doc:
        table = Table(title="PDF Information", border_style="cyan")
        table.add_column("Property", style="bold")
        table.add_column("Value")

        table.add_row("File", os.path.basename(pdf_path))
        table.add_row("Pages", str(doc.page_count))
        table.add_row(
            "File Size",
            f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
        )

        metadata = doc.metadata or {}
        for key in ["title", "author", "subject", "creator", "producer"]:
            val = metadata.get(key, "")
            if val:
                table.add_row(key.title(), val)

    console.print()
    console.print(table)
    console.print()


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_results(result):
    """Display run results in formatted tables."""
    console.print()

    table = Table(title="Extraction Run", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Run ID", result.run_id)
    table.add_row("Pages", f"{result.processed_pages}/{result.total_pages}")
    table.add_row("Failed Pages", str(result.failed_pages))
    table.add_row("Questions", str(len(result.questions)))
    table.add_row("Saved", str(result.saved_questions))
    table.add_row("Status", "[red]aborted[/]" if result.aborted else "[green]complete[/]")
    console.print(table)
    console.print()

    failed = [p for p in result.pages if p.error]
    if failed:
        errors = Table(title="Failed Pages", border_style="red")
        errors.add_column("File", style="bold")
        errors.add_column("Page", justify="right")
        errors.add_column("Error")
        for page in failed:
            errors.add_row(page.source_file, str(page.page_number), page.error)
        console.print(errors)
        console.print()

    _display_report_table(result.report)


def _display_report_table(report):
    """Display the extraction report as a rich table."""
    table = Table(title="Extraction Report", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    def status_icon(count, threshold=0):
        if count <= threshold:
            return "[green]✓[/]"
        return "[red]✗[/]"

    table.add_row(
        "Total Questions",
        str(report.total_questions),
        "[green]✓[/]" if report.total_questions > 0 else "[red]✗[/]",
    )
    table.add_row(
        "Clean",
        f"{report.clean_rate}%",
        "[green]✓[/]" if report.clean_rate >= 90 else "[yellow]⚠[/]",
    )
    table.add_row(
        "Empty Statements",
        str(report.empty_statements),
        status_icon(report.empty_statements),
    )
    table.add_row(
        "Missing Options",
        str(report.missing_options),
        status_icon(report.missing_options),
    )
    table.add_row(
        "Unexpected Options",
        str(report.unexpected_options),
        status_icon(report.unexpected_options),
    )
    table.add_row(
        "Malformed Diagrams",
        str(report.malformed_diagrams),
        status_icon(report.malformed_diagrams),
    )
    table.add_row(
        "Diagrams (statement / option)",
        f"{report.diagram_count} / {report.option_diagram_count}",
        "",
    )

    console.print(table)
    console.print()


# ─── Entry point (for python -m qextract.cli) ─────────────────────────────────


if __name__ == "__main__":
    cli()
