"""Command-line entry points for generating and browsing briefings."""

import asyncio
import dataclasses
import json
import logging
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, List, Optional, TypeVar

import typer
from pydantic import BaseModel, ValidationError
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .analysis import analyze_and_save, generate_briefing
from .config import get_settings
from .errors import BriefingError
from .history import HistoryStore, filter_history
from .models import (
    AnalysisMode,
    Briefing,
    BriefingRequest,
    HistoryItem,
    OutputLanguage,
    TriageStatus,
)

T = TypeVar("T")

app = typer.Typer(help="Generate and manage Brevita intelligence briefings.")
history_app = typer.Typer(help="Browse and manage stored briefings.")
app.add_typer(history_app, name="history")


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
):
    """Set up logging for every subcommand."""
    level = "DEBUG" if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _run(coro: Awaitable[T]) -> T:
    """Run a coroutine; pipeline and storage failures end the command with exit code 1."""
    try:
        return asyncio.run(coro)
    except (BriefingError, RuntimeError) as exc:
        rprint(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _to_plain(value: Any) -> Any:
    """
    Convert pydantic models, dataclasses, Paths, enums, and date-like objects into
    JSON-serializable primitives. Sets are returned as lists.
    """
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value):
        return _to_plain(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_plain(item) for item in value]
    return value


def _write_output(out_path: Path, markdown: str, json_payload: dict) -> None:
    suffix = out_path.suffix.lower()
    if suffix == ".json":
        out_path.write_text(
            json.dumps(json_payload, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
    else:
        out_path.write_text(markdown, encoding="utf-8")


def _bullets(items: List[str]) -> List[str]:
    return [f"- {item}" for item in items]


def render_markdown(briefing: Briefing) -> str:
    """Plain Markdown rendering of a briefing for the terminal or a .md file."""
    meta = briefing.meta
    byline = " | ".join(part for part in (meta.source, meta.date, meta.category) if part)
    lines = [f"# {meta.title}"]
    if byline:
        lines.append(f"_{byline}_")
    if meta.estimated_reading_time_seconds:
        lines.append(f"Reading time: {meta.estimated_reading_time_seconds}s")
    if meta.tags:
        lines.append("Tags: " + ", ".join(meta.tags))
    lines += ["", "## Summary", briefing.summary]
    if briefing.key_points:
        lines += ["", "## Key points", *_bullets(briefing.key_points)]
    if briefing.context_notes:
        lines += ["", "## Context", briefing.context_notes]
    if briefing.bias_notes:
        lines += ["", "## Bias and uncertainty", briefing.bias_notes]
    if meta.reliability_score is not None:
        lines += ["", f"## Reliability: {meta.reliability_score:g}/100"]
        if meta.credibility_analysis:
            lines.append(meta.credibility_analysis)

    military = briefing.military_mode
    if military.is_included:
        lines += ["", f"## Military assessment (risk: {military.risk_level})"]
        if military.commander_brief:
            lines += ["", military.commander_brief]
        for heading, text in (
            ("Interests and objectives", military.objectives),
            ("Timeline", military.timeline),
            ("Risks and threats", military.risks),
            ("Operational implications", military.operational_implications),
            ("Tech and AI relevance", military.tech_relevance),
        ):
            if text:
                lines += ["", f"### {heading}", text]
        if military.actors:
            lines += ["", "### Actors", *_bullets(military.actors)]
        if military.watchpoints:
            lines += ["", "### Watchpoints", *_bullets(military.watchpoints)]

    if briefing.grounding_sources:
        lines += ["", "## Sources"]
        lines += [
            f"- [{source.title or source.uri}]({source.uri})"
            for source in briefing.grounding_sources
            if source.uri
        ]
    return "\n".join(lines) + "\n"


def _format_timestamp(millis: int) -> str:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


@app.command("analyze")
def analyze(
    url: str = typer.Argument("", help="Article URL; searched when no article text is given."),
    title: str = typer.Option("", "--title", help="Article title, if known."),
    source: str = typer.Option("", "--source", help="Publisher name, if known."),
    article_date: str = typer.Option("", "--date", help="Publication date, if known."),
    mode: AnalysisMode = typer.Option(
        AnalysisMode.STANDARD, "--mode", "-m", case_sensitive=False, help="STANDARD or MILITARY."
    ),
    language: OutputLanguage = typer.Option(
        OutputLanguage.EN, "--language", "-l", case_sensitive=False, help="Output language."
    ),
    length: int = typer.Option(30, "--length", help="Summary length in seconds: 15, 30 or 60."),
    article_file: Optional[Path] = typer.Option(
        None, "--article-file", "-f", help="Path to a text file with the article body."
    ),
    out: Optional[Path] = typer.Option(
        None,
        "--out",
        "-o",
        help="Optional path to write output (.md or .json). Defaults to stdout (Markdown).",
    ),
    no_save: bool = typer.Option(False, "--no-save", help="Do not store the briefing in history."),
):
    """Analyze one article and print (and by default store) the briefing."""
    if length not in (15, 30, 60):
        raise typer.BadParameter("length must be 15, 30 or 60.")
    article_text = article_file.read_text(encoding="utf-8") if article_file else ""
    try:
        request = BriefingRequest(
            url=url,
            title=title,
            source=source,
            date=article_date,
            mode=mode,
            output_language=language,
            summary_length=length,
            article_text=article_text,
        )
    except ValidationError as exc:
        raise typer.BadParameter(exc.errors()[0]["msg"]) from exc

    settings = get_settings()
    if no_save:
        briefing = _run(generate_briefing(request, settings=settings))
        payload: Any = briefing
    else:
        item = _run(analyze_and_save(request, HistoryStore.from_settings(settings), settings=settings))
        briefing = item.data
        payload = item.to_record()
        rprint(f"[green]Stored briefing {item.id}[/green]")

    markdown = render_markdown(briefing)
    if out:
        _write_output(out, markdown, _to_plain(payload))
        rprint(f"[cyan]Wrote output to {out}[/cyan]")
    else:
        typer.echo(markdown)


@history_app.command("list")
def history_list(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Match title or summary."),
    category: Optional[str] = typer.Option(None, "--category", help="Exact category name."),
    mode: Optional[AnalysisMode] = typer.Option(None, "--mode", case_sensitive=False),
    language: Optional[OutputLanguage] = typer.Option(None, "--language", case_sensitive=False),
    pinned: Optional[bool] = typer.Option(None, "--pinned/--unpinned", help="Filter on pin state."),
    triage: Optional[TriageStatus] = typer.Option(None, "--triage", case_sensitive=False),
    as_json: bool = typer.Option(False, "--json", help="Print records as JSON."),
):
    """List stored briefings, pinned first, then newest."""
    items = _run(HistoryStore.from_settings(get_settings()).get_all())
    selected = filter_history(
        items,
        query=query,
        mode=mode,
        language=language,
        category=category,
        pinned=pinned,
        triage_status=triage,
    )
    if as_json:
        typer.echo(
            json.dumps([item.to_record() for item in selected], ensure_ascii=False, indent=2)
        )
        return
    if not selected:
        rprint("[yellow]No briefings found.[/yellow]")
        return
    for item in selected:
        _print_item(item)


def _print_item(item: HistoryItem) -> None:
    pin = "*" if item.pinned else " "
    status = item.triage_status.value if item.triage_status else "-"
    rprint(
        f"{pin} [cyan]{item.id}[/cyan] {_format_timestamp(item.timestamp)} "
        f"{escape('[' + item.data.meta.category + ']')} ({status}) {escape(item.data.meta.title)}"
    )


@history_app.command("delete")
def history_delete(item_id: str = typer.Argument(..., help="Briefing id.")):
    _run(HistoryStore.from_settings(get_settings()).delete(item_id))
    rprint(f"[green]Deleted {item_id}[/green]")


@history_app.command("clear")
def history_clear(
    yes: bool = typer.Option(False, "--yes", help="Confirm deleting every stored briefing."),
):
    """Delete every stored briefing."""
    if not yes:
        raise typer.BadParameter("Pass --yes to clear the whole history.")
    _run(HistoryStore.from_settings(get_settings()).clear())
    rprint("[green]History cleared[/green]")


def _report_untouched(store: HistoryStore, item_id: str) -> None:
    if store.remote_enabled:
        rprint(f"[yellow]No local copy of {item_id}; remote update only.[/yellow]")
        return
    rprint(f"[red]Briefing {item_id} not found[/red]")
    raise typer.Exit(code=1)


@history_app.command("pin")
def history_pin(
    item_id: str = typer.Argument(..., help="Briefing id."),
    unpin: bool = typer.Option(False, "--unpin", help="Remove the pin instead."),
):
    store = HistoryStore.from_settings(get_settings())
    item = _run(store.update_pin(item_id, not unpin))
    if item is None:
        _report_untouched(store, item_id)
        return
    rprint(f"[green]{'Unpinned' if unpin else 'Pinned'} {item_id}[/green]")


@history_app.command("triage")
def history_triage(
    item_id: str = typer.Argument(..., help="Briefing id."),
    status: TriageStatus = typer.Argument(..., case_sensitive=False, help="new, review or closed."),
):
    store = HistoryStore.from_settings(get_settings())
    item = _run(store.update_triage_status(item_id, status))
    if item is None:
        _report_untouched(store, item_id)
        return
    rprint(f"[green]{item_id} marked {status.value}[/green]")


@app.command("migrate")
def migrate():
    """Import the legacy flat history file into the current store."""
    migrated = _run(HistoryStore.from_settings(get_settings()).init())
    if migrated:
        rprint("[green]Legacy history migrated[/green]")
    else:
        rprint("[yellow]No legacy history to migrate[/yellow]")


def main():
    app()


if __name__ == "__main__":
    main()
