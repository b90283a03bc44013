"""CLI entrypoint for book-distiller."""

import logging
from pathlib import Path

import rich_click as click

from book_distiller import __version__
from book_distiller.distiller.controllers import (
    ConfigKeyCommand,
    ConfigSetCommand,
    DistillerCliController,
    DistillRunCommand,
    PromptShowCommand,
)
from book_distiller.distiller.export import ExportFormat
from book_distiller.distiller.models import JobStatus
from book_distiller.storage.repository import SETTING_KEYS

click.rich_click.USE_MARKDOWN = True
DISTILLER_CONTROLLER = DistillerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="book-distiller")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr.")
def book_distiller(verbose: bool) -> None:
    """Distill a book into a long-form document, one model turn at a time."""

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@book_distiller.command("run")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model", default=None, help="Model name, for example gemini-2.5-flash.")
@click.option(
    "--temperature",
    type=click.FloatRange(min=0.0, max=2.0),
    default=None,
    help="Sampling temperature in [0, 2].",
)
@click.option(
    "--prompt-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="File with the seed prompt for the first turn.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Export path. Defaults to `<file stem>.<format>` in the working directory.",
)
@click.option(
    "--format",
    "export_format",
    type=click.Choice([item.value for item in ExportFormat]),
    default=ExportFormat.MARKDOWN.value,
    show_default=True,
    help="Export file format.",
)
@click.option(
    "--trace-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the run trace as JSON lines.",
)
@click.option(
    "--no-stream",
    is_flag=True,
    default=False,
    help="Request whole responses instead of streamed chunks.",
)
@click.option(
    "--dry-run-script",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Replay turns from a JSON script instead of calling Gemini.",
)
def run(  # noqa: PLR0913
    file_path: Path,
    db_path: Path | None,
    model: str | None,
    temperature: float | None,
    prompt_file: Path | None,
    output_path: Path | None,
    export_format: str,
    trace_file: Path | None,
    no_stream: bool,
    dry_run_script: Path | None,
) -> None:
    """Upload FILE and run turns until the model reports the end of the book.

    Press **Ctrl+C** once to pause after the current turn and export the
    partial document; press it again to stop immediately.
    """

    controller = DistillerCliController(progress=click.echo)
    try:
        result = controller.run(
            DistillRunCommand(
                file_path=file_path,
                db_path=db_path,
                model=model,
                temperature=temperature,
                prompt_file=prompt_file,
                output_path=output_path,
                export_format=ExportFormat(export_format),
                trace_file=trace_file,
                streaming=False if no_stream else None,
                dry_run_script=dry_run_script,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.status is JobStatus.ERROR:
        raise click.ClickException(result.error_message or "Distillation failed.")


@book_distiller.group()
def config() -> None:
    """Stored settings commands."""


@config.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_show(db_path: Path | None) -> None:
    """Show stored settings (the API key is masked)."""

    _emit_lines(DISTILLER_CONTROLLER.show_config(db_path))


@config.command("set")
@click.argument("key", type=click.Choice(SETTING_KEYS))
@click.argument("value")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_set(key: str, value: str, db_path: Path | None) -> None:
    """Store KEY=VALUE for future runs."""

    try:
        lines = DISTILLER_CONTROLLER.set_config(
            ConfigSetCommand(db_path=db_path, key=key, value=value),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@config.command("unset")
@click.argument("key", type=click.Choice(SETTING_KEYS))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_unset(key: str, db_path: Path | None) -> None:
    """Remove a stored setting."""

    _emit_lines(DISTILLER_CONTROLLER.unset_config(ConfigKeyCommand(db_path=db_path, key=key)))


@book_distiller.group()
def prompts() -> None:
    """Prompt history commands."""


@prompts.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def prompts_history(db_path: Path | None) -> None:
    """List previously used seed prompts, most recent first."""

    _emit_lines(DISTILLER_CONTROLLER.prompt_history(db_path))


@prompts.command("show")
@click.argument("index", type=click.IntRange(min=1))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def prompts_show(index: int, db_path: Path | None) -> None:
    """Print prompt number INDEX from the history."""

    try:
        lines = DISTILLER_CONTROLLER.show_prompt(PromptShowCommand(db_path=db_path, index=index))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    book_distiller()
