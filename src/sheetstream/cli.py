"""CLI interface for SheetStream."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sheetstream import __version__
from sheetstream.config import ClientConfig, ConfigError, load_config
from sheetstream.llm.client import CompletionClient, decode_structured
from sheetstream.llm.models import ModelCatalog
from sheetstream.types import ClassifiedError, Failed, Found, Message, Parsed, Role

_logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def _make_client(config: ClientConfig) -> CompletionClient:
    return CompletionClient(config)


def _load_config(ctx: click.Context) -> ClientConfig:
    try:
        config, config_file = load_config(ctx.obj["config_path"])
    except (FileNotFoundError, ConfigError) as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        ctx.exit(1)
    if config_file:
        _logger.info("Config: %s", config_file)
    else:
        _logger.info("Config: defaults (no sheetstream.yaml found)")
    return config


def _print_error(error: ClassifiedError | None) -> None:
    if error is None:
        return
    attempts = f" after {error.attempts} attempt(s)" if error.attempts else ""
    err_console.print(f"[red]Error{attempts}: {escape(error.message)}[/red]")


def _print_json(value: Any) -> None:
    console.print_json(json.dumps(value, ensure_ascii=False))


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to sheetstream.yaml (auto-detected from CWD or ~/.sheetstream/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="sheetstream")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """SheetStream - resilient streaming client for OpenAI-compatible APIs."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = {"config_path": config_path}


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------

@main.command()
@click.argument("prompt")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
@click.option("--json", "as_json", is_flag=True,
              help="Extract the JSON object from the reply and pretty-print it")
@click.option("--model", "-m", default=None, help="Override the configured model")
@click.pass_context
def ask(ctx: click.Context, prompt: str, system_prompt: str | None,
        as_json: bool, model: str | None) -> None:
    """Send PROMPT and stream the reply."""
    config = _load_config(ctx)
    try:
        config = config.updated(model=model)
    except ConfigError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        ctx.exit(1)
    if not config.is_available():
        err_console.print(
            "[red]API key not configured.[/red] "
            "Set SHEETSTREAM_API_KEY or api_key in sheetstream.yaml."
        )
        ctx.exit(1)

    messages: list[Message] = []
    if system_prompt:
        messages.append(Message(Role.SYSTEM, system_prompt))
    messages.append(Message(Role.USER, prompt))

    ok = asyncio.run(_ask(_make_client(config), messages, as_json))
    if not ok:
        ctx.exit(1)


async def _ask(client: CompletionClient, messages: list[Message], as_json: bool) -> bool:
    async with client:
        if as_json:
            request = client.build_request(messages, json_mode=True)
            with console.status("[dim]Waiting for response...[/dim]"):
                structured = await client.complete_json(request)
            if not structured.ok:
                _print_error(structured.error)
                return False
            _print_json(structured.value)
            return True

        stream = client.stream(messages)
        async for delta in stream:
            console.out(delta, end="", highlight=False)
        console.out("")
        if stream.result is None or not stream.result.ok:
            _print_error(stream.result.error if stream.result else None)
            return False
        return True


# ---------------------------------------------------------------------------
# extract
# ---------------------------------------------------------------------------

@main.command("extract")
@click.argument("source", type=click.File("r"), default="-")
@click.pass_context
def extract_cmd(ctx: click.Context, source: Any) -> None:
    """Find, repair and print the JSON object in SOURCE (default: stdin)."""
    structured = decode_structured(source.read())
    if isinstance(structured.extraction, Found):
        console.print(f"[dim]method: {structured.extraction.method.value}[/dim]")
    passes: tuple[str, ...] = ()
    if isinstance(structured.parse, Parsed):
        passes = structured.parse.passes
    elif isinstance(structured.parse, Failed):
        passes = structured.parse.after_passes
    if passes:
        console.print(f"[dim]repairs: {', '.join(passes)}[/dim]")
    if not structured.ok:
        _print_error(structured.error)
        ctx.exit(1)
    _print_json(structured.value)


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------

@main.command("models")
@click.pass_context
def models_cmd(ctx: click.Context) -> None:
    """List models offered by the configured endpoint."""
    config = _load_config(ctx)
    result = asyncio.run(ModelCatalog(config).fetch_models())

    table = Table(title="Models")
    table.add_column("Model", style="cyan")
    table.add_column("Label")
    for option in result.models:
        table.add_row(option.value, option.label)
    console.print(table)
    if result.error:
        err_console.print(
            f"[yellow]Showing {'cached' if result.from_cache else 'default'} list: "
            f"{escape(result.error)}[/yellow]"
        )


if __name__ == "__main__":
    main()
