"""logsandbox CLI entry point, global options and commands."""

import sys
import time
from pathlib import Path
from typing import Any, Literal

import click
import yaml

from logsandbox import __version__
from logsandbox.cli.output import OutputFormat, OutputFormatter, output_error, set_output_format
from logsandbox.core.config import HostSettings, load_settings
from logsandbox.core.errors import (
    CorruptArtifactError,
    PluginHostError,
    PluginTimeoutError,
    UnknownFormatError,
    describe_error,
)
from logsandbox.core.logging import ProgressReporter, configure_logging, set_verbose
from logsandbox.plugins.artifact import ArtifactFormatError, inspect_artifact
from logsandbox.plugins.dispatcher import DEFAULT_CHUNK_SIZE, Dispatcher
from logsandbox.plugins.loader import ArtifactLoader
from logsandbox.plugins.registry import build_registry

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_UNKNOWN_FORMAT = 3
EXIT_PARSE_ERROR = 4
EXIT_TIMEOUT = 10

# Options whose values are always lists; repeat the option to add items
LIST_OPTIONS = frozenset({"fibex_files"})


def exit_code_for(error: Exception) -> int:
    """Map an error to the process exit code."""
    if isinstance(error, PluginTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(error, UnknownFormatError):
        return EXIT_UNKNOWN_FORMAT
    if isinstance(error, PluginHostError) and error.category in ("plugin", "incompatible"):
        return EXIT_PARSE_ERROR
    return EXIT_ERROR


def parse_option_pairs(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into an options mapping.

    Values are read as YAML scalars, so ``60`` becomes an int and
    ``true`` a bool.
    """
    options: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--option")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        if key in LIST_OPTIONS:
            options.setdefault(key, []).append(value)
        else:
            options[key] = value
    return options


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="LOGSANDBOX_CONFIG",
    default=None,
    help="Host settings file (YAML or JSON)",
)
@click.option(
    "--plugin-dir",
    "plugin_dirs",
    type=click.Path(path_type=Path, file_okay=False),
    multiple=True,
    help="Extra plugin directory, searched before configured ones",
)
@click.option(
    "--format",
    "-f",
    type=click.Choice(["json", "jsonl", "human"]),
    default="json",
    help="Output format (default: json)",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose logging to stderr",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    default=False,
    help="Suppress progress output",
)
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log format for stderr (default: from settings, else text)",
)
@click.version_option(version=__version__, prog_name="logsandbox")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    plugin_dirs: tuple[Path, ...],
    format: OutputFormat,
    verbose: bool,
    quiet: bool,
    log_format: Literal["text", "json"] | None,
) -> None:
    """logsandbox: run sandboxed WebAssembly log parsers.

    Loads format plugins from plugin directories and streams log files
    through them, printing structured entries as JSON/JSONL.
    """
    formatter = OutputFormatter(format=format)
    try:
        settings = load_settings(config_path)
    except PluginHostError as e:
        formatter.error(e.to_structured_error())
        ctx.exit(EXIT_ERROR)
        return

    if plugin_dirs:
        settings = settings.model_copy(update={"plugin_dirs": [*plugin_dirs, *settings.plugin_dirs]})

    ctx.ensure_object(dict)
    ctx.obj = {
        "format": format,
        "verbose": verbose or settings.verbose,
        "quiet": quiet,
        "settings": settings,
        "formatter": formatter,
    }

    set_output_format(format)
    set_verbose(verbose or settings.verbose)
    configure_logging(log_format=log_format or settings.log_format, quiet=quiet)


def _dispatcher(settings: HostSettings) -> Dispatcher:
    registry = build_registry(settings.plugin_dirs)
    return Dispatcher(registry, ArtifactLoader(settings))


@cli.command()
@click.pass_context
def formats(ctx: click.Context) -> None:
    """List registered formats and their capabilities."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    dispatcher = _dispatcher(ctx.obj["settings"])

    listing = dispatcher.list_formats()
    if formatter.is_human():
        for item in listing:
            caps = item.pop("capabilities")
            item["capabilities"] = ", ".join(name for name, on in caps.items() if on) or "-"
            formatter.output(item)
        formatter.flush_table(
            title=f"Formats ({len(listing)} registered)",
            columns=["format_id", "version", "execution_model", "file_extensions", "capabilities"],
        )
        if not listing:
            click.echo("No formats registered.")
    elif formatter.format == "jsonl":
        for item in listing:
            formatter.output(item)
    else:
        formatter.output(listing)


@cli.command()
@click.argument("artifact_path", type=click.Path(path_type=Path, dir_okay=False, exists=True))
@click.pass_context
def inspect(ctx: click.Context, artifact_path: Path) -> None:
    """Show the section layout and ABI version of a plugin binary."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        info = inspect_artifact(artifact_path.read_bytes())
    except ArtifactFormatError as e:
        formatter.error(CorruptArtifactError(str(artifact_path), str(e)).to_structured_error())
        ctx.exit(EXIT_PARSE_ERROR)
        return
    except OSError as e:
        formatter.error({
            "code": "IO_ERROR",
            "message": str(e),
            "remediation": "Check file permissions and path accessibility",
            "retryable": True,
        })
        ctx.exit(EXIT_ERROR)
        return

    result = {"path": str(artifact_path), **info.to_dict()}
    if formatter.is_human():
        sections = result.pop("sections")
        formatter.output(result)
        for section in sections:
            formatter.output(section)
        formatter.flush_table(title=f"Sections ({len(sections)})")
    else:
        formatter.output(result)


@cli.command()
@click.argument("format_id")
@click.argument("file_path", type=click.Path(path_type=Path, dir_okay=False, exists=True))
@click.option(
    "--option",
    "-o",
    "option_pairs",
    multiple=True,
    help="Parse option as key=value (repeatable)",
)
@click.option(
    "--chunk-size",
    type=click.IntRange(min=1),
    default=DEFAULT_CHUNK_SIZE,
    show_default=True,
    help="Bytes fed to the plugin per call",
)
@click.option("--limit", "-l", type=int, default=None, help="Limit number of entries")
@click.pass_context
def parse(
    ctx: click.Context,
    format_id: str,
    file_path: Path,
    option_pairs: tuple[str, ...],
    chunk_size: int,
    limit: int | None,
) -> None:
    """Parse FILE_PATH with the plugin registered for FORMAT_ID.

    \b
    Examples:
      logsandbox parse dlt trace.dlt
      logsandbox parse dlt trace.dlt -o log_level=warn --limit 100

    Entries are streamed to stdout; progress and a summary go to stderr.
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    options = parse_option_pairs(option_pairs)
    dispatcher = _dispatcher(ctx.obj["settings"])

    start_time = time.time()
    entries_output = 0
    progress = ProgressReporter(total=file_path.stat().st_size, description="Parsing", unit="bytes")

    try:
        results = dispatcher.open_file(format_id, file_path, options, chunk_size=chunk_size)
        try:
            for result in results:
                progress.update(result.bytes_consumed)
                for entry in result.entries:
                    formatter.output(entry.to_dict())
                    entries_output += 1
                    if limit and entries_output >= limit:
                        break
                if limit and entries_output >= limit:
                    break
        finally:
            results.close()
        progress.finish()
        formatter.flush_table(
            title=f"{format_id} entries ({entries_output} total)",
            columns=["timestamp", "level", "source_tag", "payload"],
        )
        duration_ms = int((time.time() - start_time) * 1000)
        if not ctx.obj["quiet"]:
            click.echo(f"Parsed {entries_output} entries in {duration_ms}ms", err=True)

    except PluginHostError as e:
        formatter.error(e.to_structured_error())
        ctx.exit(exit_code_for(e))
    except OSError as e:
        formatter.error({
            "code": "IO_ERROR",
            "message": str(e),
            "remediation": "Check file permissions and path accessibility",
            "retryable": True,
        })
        ctx.exit(EXIT_ERROR)
    finally:
        dispatcher.close_all()


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except Exception as e:
        output_error(describe_error(e).model_dump(mode="json", exclude_none=True))
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
