"""CLI interface for StoryRecap."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from storyrecap.config import SummarizerSettings, load_settings
from storyrecap.engine import ImportMode, SummaryEngine
from storyrecap.errors import SummaryEngineError
from storyrecap.host import BufferPromptSink, InMemoryChat
from storyrecap.memory.persistence import JsonFileSink
from storyrecap.pipeline.run_state import RunReport
from storyrecap.utils.logging import setup_logging
from storyrecap.utils.tokens import tiktoken_counter

console = Console()


def _run_async(coro):
    """Run an async function from sync CLI."""
    return asyncio.run(coro)


def _build_engine(ctx: click.Context) -> SummaryEngine:
    opts = ctx.obj
    settings_path: Optional[Path] = opts["settings"]
    settings = load_settings(settings_path) if settings_path else SummarizerSettings()
    chat = InMemoryChat.from_file(opts["chat"])

    counter = None
    fingerprint = ""
    if settings.tokenizer_model:
        counter = tiktoken_counter(settings.tokenizer_model)
        fingerprint = settings.tokenizer_model

    return SummaryEngine(
        settings,
        chat,
        JsonFileSink(opts["data_dir"]),
        BufferPromptSink(),
        token_counter=counter,
        model_fingerprint=fingerprint,
    )


def _print_report(report: RunReport) -> None:
    style = "green" if report.ok else "yellow"
    console.print(f"[{style}]{report.status.value}[/{style}]: {report.message}")
    for failure in report.failures:
        console.print(f"  [red]#{failure.start}-{failure.end}[/red] {failure.error}")
    if report.incomplete_keys:
        console.print(
            f"  [yellow]Needs review:[/yellow] "
            + ", ".join(f"#{k}" for k in report.incomplete_keys)
        )


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/red] {e}")
    raise SystemExit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--chat", "chat_path", required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Chat JSON file",
)
@click.option(
    "--settings", "settings_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Settings YAML file",
)
@click.option(
    "--data-dir", type=click.Path(file_okay=False, path_type=Path),
    default=Path(".storyrecap"), show_default=True,
    help="Directory for per-chat summary records",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx, chat_path: Path, settings_path: Optional[Path], data_dir: Path, verbose: bool):
    """StoryRecap: rolling summaries for long role-play chats."""
    setup_logging(verbose)
    ctx.obj = {"chat": chat_path, "settings": settings_path, "data_dir": data_dir}


@main.command()
@click.option("--from", "start", type=int, help="First message of an explicit range")
@click.option("--to", "end", type=int, help="Last message of an explicit range")
@click.pass_context
def summarize(ctx, start: Optional[int], end: Optional[int]):
    """Summarize every message after the last covered one, or --from/--to."""
    if (start is None) != (end is None):
        raise click.UsageError("--from and --to must be given together")

    async def _summarize():
        async with _build_engine(ctx) as engine:
            if start is not None:
                total = end - start + 1
            else:
                total = engine.pending_count()
                if not total:
                    console.print("Nothing to summarize.")
                    return
            with Progress(console=console) as progress:
                task = progress.add_task("Summarizing", total=total)

                def on_progress(done, count):
                    progress.update(task, completed=done, total=count)

                if start is not None:
                    report = await engine.summarize_range(start, end, on_progress)
                else:
                    report = await engine.summarize_incremental(on_progress)
            _print_report(report)

    try:
        _run_async(_summarize())
    except SummaryEngineError as e:
        _fail(e)


@main.command()
@click.argument("index", type=int)
@click.pass_context
def resummarize(ctx, index: int):
    """Rebuild the summary (or group) covering message INDEX."""

    async def _resummarize():
        async with _build_engine(ctx) as engine:
            _print_report(await engine.resummarize(index))

    try:
        _run_async(_resummarize())
    except SummaryEngineError as e:
        _fail(e)


@main.command()
@click.pass_context
def inject(ctx):
    """Print the injection text the current summaries produce."""

    async def _inject():
        async with _build_engine(ctx) as engine:
            result = await engine.refresh()
            if not result.text:
                console.print("[dim]Nothing to inject.[/dim]")
                return
            click.echo(result.text)
            console.print(
                f"[dim]{result.tokens} tokens, {len(result.included_keys)} entries, "
                f"{len(result.skipped_keys)} skipped[/dim]"
            )

    _run_async(_inject())


@main.command()
@click.pass_context
def stats(ctx):
    """Show summary coverage for the chat."""

    async def _stats():
        async with _build_engine(ctx) as engine:
            counts = engine.stats()
            record = engine.store.record

            table = Table(title=f"Chat {record.chat_id}")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", justify="right")
            table.add_row("Messages", str(counts.total))
            table.add_row("Summarized", str(counts.summarized))
            table.add_row("Hidden", str(counts.hidden))
            table.add_row("Pending", str(counts.pending_count))
            table.add_row("Entries", str(len(engine.store.spans())))
            table.add_row("Legacy entries", str(len(record.legacy_summaries)))
            table.add_row("Characters", str(len(record.characters)))
            table.add_row("Events", str(len(record.events)))
            table.add_row("Items", str(len(record.items)))
            table.add_row("Injection tokens", str(engine.injection.last_result.tokens))
            console.print(table)

            invalid = [s.key for s in engine.store.spans() if s.entry.invalidated]
            if invalid:
                console.print(
                    "[yellow]Invalidated:[/yellow] " + ", ".join(f"#{k}" for k in invalid)
                )

    _run_async(_stats())


@main.command(name="export")
@click.argument("out", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def export_cmd(ctx, out: Path):
    """Write the chat's summary data to OUT."""

    async def _export():
        async with _build_engine(ctx) as engine:
            data = engine.export_data()
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        console.print(f"[green]Exported to {out}[/green]")

    _run_async(_export())


@main.command(name="import")
@click.argument("src", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--mode", type=click.Choice([m.value for m in ImportMode]),
    default=ImportMode.MERGE.value, show_default=True,
)
@click.pass_context
def import_cmd(ctx, src: Path, mode: str):
    """Import summary data from SRC."""

    async def _import():
        async with _build_engine(ctx) as engine:
            count = await engine.import_data(src.read_text(encoding="utf-8"), mode)
        console.print(f"[green]Imported {count} entries ({mode})[/green]")

    try:
        _run_async(_import())
    except (ValueError, SummaryEngineError) as e:
        _fail(e)


@main.command()
@click.option("--apply", "do_apply", is_flag=True, help="Replace entries with the compressed text")
@click.option(
    "--backup", type=click.Path(dir_okay=False, path_type=Path),
    help="Where to write the pre-compression export",
)
@click.pass_context
def compress(ctx, do_apply: bool, backup: Optional[Path]):
    """Preview (or apply) compression of all valid entries."""

    async def _compress():
        async with _build_engine(ctx) as engine:
            preview = await engine.compress_preview()
            before = after = 0
            for key, text in preview.compressed_by_key.items():
                before += await engine.tokens.count(preview.original_by_key[key])
                after += await engine.tokens.count(text)
            console.print(
                f"{len(preview.compressed_by_key)} entries: {before} -> {after} tokens"
                f" ({len(preview.failed_keys)} failed)"
            )
            if not do_apply or not preview.compressed_by_key:
                return
            result = await engine.compress_apply(preview)
            if backup:
                backup.write_text(
                    json.dumps(result.backup, indent=2, ensure_ascii=False), encoding="utf-8"
                )
                console.print(f"Backup written to {backup}")
            console.print(f"[green]Applied to {result.applied} entries[/green]")

    try:
        _run_async(_compress())
    except SummaryEngineError as e:
        _fail(e)


@main.command()
@click.pass_context
def check(ctx):
    """Check that the configured LLM backend answers."""

    async def _check():
        async with _build_engine(ctx) as engine:
            return await engine.health_check()

    if _run_async(_check()):
        console.print("[green]Backend OK[/green]")
    else:
        console.print("[red]Backend unavailable[/red]")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
