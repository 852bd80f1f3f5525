"""CLI entrypoint for chunkpipe."""

from pathlib import Path

import rich_click as click

from chunkpipe import __version__
from chunkpipe.collectors import CollectorSpecError
from chunkpipe.config import (
    DEFAULT_LINES_PER_CHUNK,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_JOBS,
    DEFAULT_RETRY_DELAY,
)
from chunkpipe.controllers import (
    ChunkpipeCliController,
    ChunkRunCommand,
    SplitCommand,
    StatsCommand,
)
from chunkpipe.models import CleanupMode

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ChunkpipeCliController()


@click.group()
@click.version_option(version=__version__, prog_name="chunkpipe")
def chunkpipe() -> None:
    """Run a command over fixed-size chunks of line input, in parallel, with ordered output."""


@chunkpipe.command(
    "run",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--cleanup",
    type=click.Choice([mode.value for mode in CleanupMode], case_sensitive=False),
    default=None,
    help="Which temporary artifacts to delete. Default: successful.",
)
@click.option(
    "--collector",
    "collectors",
    multiple=True,
    help=(
        "Collector spec `SUFFIX[+ok|+keep|+gzip]=TARGET`. TARGET is @stdout, @stderr, "
        "`|command` or a file path. Can be repeated."
    ),
)
@click.option(
    "--lines-per-chunk",
    type=click.IntRange(min=1),
    default=None,
    help=f"Input lines per chunk. Default: {DEFAULT_LINES_PER_CHUNK}.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help=f"Attempts per chunk before giving up. Default: {DEFAULT_MAX_ATTEMPTS}.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help=f"Chunks processed concurrently. Default: {DEFAULT_MAX_JOBS}.",
)
@click.option(
    "--metadata",
    "metadata_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write per-chunk and per-collector metadata here. Default: discarded.",
)
@click.option(
    "--retry-delay",
    default=None,
    help=(
        "Delay between attempts: `<seconds>`, `linear:<step>[:<cap>]` or "
        f"`exponential:<base>[:<cap>]`. Default: {DEFAULT_RETRY_DELAY}."
    ),
)
@click.option(
    "--retry-fatal/--no-retry-fatal",
    default=None,
    help="Stop dispatching new chunks once any chunk exhausts its attempts.",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help=(
        "Write diagnostics to --log-file, or to stderr when no collector targets @stderr. "
        "Without it nothing but collected output is written."
    ),
)
@click.option(
    "--log-file",
    "log_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Send diagnostics to this file instead of stderr.",
)
@click.option(
    "--placeholder",
    default=None,
    help="Token in COMMAND replaced by the chunk path. Default: {}.",
)
@click.option(
    "--workdir-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the temporary working directory. Default: system temp.",
)
@click.option(
    "--input",
    "inputs",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, allow_dash=True, path_type=Path),
    help="Input file (`-` for stdin). Can be repeated. Default: stdin.",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run(  # noqa: PLR0913
    ctx: click.Context,
    cleanup: str | None,
    collectors: tuple[str, ...],
    lines_per_chunk: int | None,
    max_attempts: int | None,
    max_jobs: int | None,
    metadata_path: Path | None,
    retry_delay: str | None,
    retry_fatal: bool | None,
    verbose: bool,
    log_path: Path | None,
    placeholder: str | None,
    workdir_root: Path | None,
    inputs: tuple[Path, ...],
    command: tuple[str, ...],
) -> None:
    """Split input into chunks and run COMMAND on each one.

    Each chunk is fed to COMMAND on stdin. Results are written in input order;
    the exit status is nonzero when any chunk or collector failed.
    """

    try:
        result = CONTROLLER.run(
            ChunkRunCommand(
                command=command,
                inputs=inputs,
                cleanup=cleanup.lower() if cleanup else None,
                collectors=collectors,
                lines_per_chunk=lines_per_chunk,
                max_attempts=max_attempts,
                max_jobs=max_jobs,
                metadata_path=metadata_path,
                retry_delay=retry_delay,
                retry_fatal=retry_fatal,
                verbose=verbose,
                log_path=log_path,
                placeholder=placeholder,
                workdir_root=workdir_root,
            ),
        )
    except CollectorSpecError as error:
        raise click.BadParameter(str(error), param_hint="'--collector'") from error
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    ctx.exit(result.exit_code)


@chunkpipe.command("split")
@click.option(
    "--lines-per-chunk",
    type=click.IntRange(min=1),
    default=DEFAULT_LINES_PER_CHUNK,
    show_default=True,
    help="Input lines per chunk.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Directory receiving the numbered chunk files and the count file.",
)
@click.argument(
    "inputs",
    nargs=-1,
    type=click.Path(exists=True, dir_okay=False, allow_dash=True, path_type=Path),
)
def split(lines_per_chunk: int, output_dir: Path, inputs: tuple[Path, ...]) -> None:
    """Split INPUT files (default stdin) into numbered chunks, printing each path once closed."""

    for path in CONTROLLER.split(
        SplitCommand(lines_per_chunk=lines_per_chunk, output_dir=output_dir, inputs=inputs),
    ):
        click.echo(path)


@chunkpipe.command("stats")
@click.argument("metadata_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def stats(metadata_path: Path) -> None:
    """Summarize a metadata file written by `chunkpipe run --metadata`."""

    try:
        lines = CONTROLLER.stats(StatsCommand(metadata_path=metadata_path))
    except ValueError as error:
        raise click.ClickException(f"Cannot parse {metadata_path}: {error}") from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    chunkpipe()
