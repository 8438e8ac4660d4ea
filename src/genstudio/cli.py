from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .gen.config import ConfigError, StudioConfig, resolve_config
from .gen.errors import StudioError
from .gen.events import EventSink, JsonlEventSink, LoggingEventSink, MultiEventSink, RecordingEventSink
from .gen.generate import ImageJobResult, VideoJobResult, run_image_job, run_request_file, run_video_job
from .gen.provider import GenerativeProvider
from .gen.registry import ProviderRegistry
from .gen.types import Mode
from .upload import ImageUploadService

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()


@dataclass
class CliState:
    config: StudioConfig
    recorder: RecordingEventSink
    events: EventSink
    verbose: bool
    provider_name: Optional[str] = None
    registry: Optional[ProviderRegistry] = None

    def provider(self) -> GenerativeProvider:
        self.registry = self.registry or ProviderRegistry(self.config)
        name = self.provider_name or self.config.default_provider
        try:
            return self.registry.get_provider(name)
        except ConfigError as e:
            console.print(f"[bold red]Provider error:[/bold red] {e}")
            raise typer.Exit(code=2) from e

    def close(self) -> None:
        if self.registry is not None:
            self.registry.close()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to studio.toml"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Override default provider"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print the event trace"),
    log_jsonl: Optional[Path] = typer.Option(None, "--log-jsonl", help="Append events to a JSON lines file"),
):
    _setup_logging(verbose)
    try:
        config = resolve_config(config_path)
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(code=2) from e

    recorder = RecordingEventSink()
    sinks: list[EventSink] = [recorder, LoggingEventSink()]
    if log_jsonl is not None:
        sinks.append(JsonlEventSink(log_jsonl))
    state = CliState(
        config=config,
        recorder=recorder,
        events=MultiEventSink(sinks),
        verbose=verbose,
        provider_name=provider,
    )
    ctx.obj = state
    ctx.call_on_close(state.close)


def _print_trace(state: CliState) -> None:
    if not state.verbose or not state.recorder.events:
        return
    table = Table(title="Events")
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("Fields")
    for ev in state.recorder.events:
        fields = " ".join(f"{k}={v}" for k, v in ev.fields.items() if k != "level")
        table.add_row(ev.timestamp, ev.name, fields)
    console.print(table)


def _report_image(state: CliState, job: ImageJobResult) -> None:
    result = job.result
    table = Table(title="Image generation")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Output")
    status = "[green]OK[/green]" if result.ok else f"[red]{result.error.kind.value if result.error else 'failed'}[/red]"
    table.add_row(status, str(result.attempts), str(job.output or "-"))
    console.print(table)

    for text in result.texts:
        console.print(f"[dim]{text}[/dim]")
    _print_trace(state)

    if not result.ok:
        console.print(f"[bold red]Error:[/bold red] {result.error}")
        raise typer.Exit(code=1)


def _report_video(state: CliState, job: VideoJobResult) -> None:
    outcome = job.outcome
    table = Table(title="Video generation")
    table.add_column("Operation")
    table.add_column("State")
    table.add_column("Polls")
    table.add_column("Output")
    table.add_row(job.handle, outcome.state.value, str(outcome.polls), str(job.output or "-"))
    console.print(table)
    _print_trace(state)

    if outcome.error:
        console.print(f"[bold red]Error:[/bold red] {outcome.error}")
    if not job.ok:
        if outcome.asset is None and not outcome.error:
            console.print("[bold yellow]Job finished without a video[/bold yellow]")
        raise typer.Exit(code=1)


def _guard(state: CliState, err: StudioError) -> None:
    _print_trace(state)
    console.print(f"[bold red]Error:[/bold red] {err}")
    raise typer.Exit(code=1) from err


@app.command()
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the HTTP proxy."""
    import uvicorn

    from .server import create_app

    state: CliState = ctx.obj
    server_app = create_app(state.config, state.provider(), events=state.events)
    uvicorn.run(
        server_app,
        host=host or state.config.server.host,
        port=port or state.config.server.port,
        log_config=None,
    )


@app.command("check-image")
def check_image(
    ctx: typer.Context,
    image: Path = typer.Argument(..., exists=True, dir_okay=False),
):
    """Validate an image and show what the upload step would do with it."""
    state: CliState = ctx.obj
    service = ImageUploadService(state.config.upload, events=state.events)
    try:
        with service.process_file(image) as upload:
            table = Table(title=str(image))
            table.add_column("MIME type")
            table.add_column("Size")
            table.add_column("Compressed")
            table.add_column("Ratio")
            ratio = f"{upload.compression_ratio:.2f}x" if upload.compression_ratio else "-"
            table.add_row(
                upload.payload.mime_type,
                f"{upload.payload.size / (1024 * 1024):.2f}MB",
                "yes" if upload.was_compressed else "no",
                ratio,
            )
            console.print(table)
    except StudioError as e:
        _guard(state, e)
    _print_trace(state)
    console.print("[bold green]OK[/bold green]")


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    out: Path = typer.Option(Path("generated"), "--out", "-o", help="Output path; suffix added if missing"),
    model: Optional[str] = typer.Option(None, "--model"),
):
    """Generate an image from a prompt."""
    state: CliState = ctx.obj
    try:
        job = run_image_job(state.provider(), state.config, prompt, mode=Mode.GENERATE, model=model, output=out, events=state.events)
    except StudioError as e:
        _guard(state, e)
    _report_image(state, job)


@app.command()
def edit(
    ctx: typer.Context,
    image: Path = typer.Argument(..., exists=True, dir_okay=False),
    instruction: str = typer.Argument(...),
    out: Path = typer.Option(Path("edited"), "--out", "-o"),
    iterative: bool = typer.Option(False, "--iterative", help="Treat the image as a previous generation"),
    model: Optional[str] = typer.Option(None, "--model"),
):
    """Edit one image."""
    state: CliState = ctx.obj
    kwargs = {"current": image} if iterative else {"images": [image]}
    try:
        job = run_image_job(
            state.provider(),
            state.config,
            instruction,
            mode=Mode.EDIT,
            model=model,
            iterative=iterative,
            output=out,
            events=state.events,
            **kwargs,
        )
    except StudioError as e:
        _guard(state, e)
    _report_image(state, job)


@app.command()
def compose(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    images: list[Path] = typer.Argument(..., exists=True, dir_okay=False),
    current: Optional[Path] = typer.Option(None, "--current", exists=True, dir_okay=False, help="Existing image, sent last"),
    out: Path = typer.Option(Path("composed"), "--out", "-o"),
    model: Optional[str] = typer.Option(None, "--model"),
):
    """Combine several images into one."""
    state: CliState = ctx.obj
    try:
        job = run_image_job(
            state.provider(),
            state.config,
            prompt,
            images=images,
            current=current,
            mode=Mode.COMPOSE,
            model=model,
            output=out,
            events=state.events,
        )
    except StudioError as e:
        _guard(state, e)
    _report_image(state, job)


@app.command()
def video(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    image: Optional[Path] = typer.Option(None, "--image", exists=True, dir_okay=False, help="First frame"),
    out: Path = typer.Option(Path("video"), "--out", "-o"),
    model: Optional[str] = typer.Option(None, "--model"),
    aspect_ratio: str = typer.Option("16:9", "--aspect-ratio"),
    negative_prompt: Optional[str] = typer.Option(None, "--negative-prompt"),
):
    """Start a video job and wait for it."""
    state: CliState = ctx.obj
    try:
        job = run_video_job(
            state.provider(),
            state.config,
            prompt,
            image=image,
            model=model,
            aspect_ratio=aspect_ratio,
            negative_prompt=negative_prompt,
            output=out,
            events=state.events,
        )
    except StudioError as e:
        _guard(state, e)
    _report_video(state, job)


@app.command()
def run(
    ctx: typer.Context,
    request_yaml: Path = typer.Argument(..., exists=True, dir_okay=False),
):
    """Run a generation described in a YAML request file."""
    state: CliState = ctx.obj
    try:
        job = run_request_file(request_yaml, state.provider(), state.config, events=state.events)
    except StudioError as e:
        _guard(state, e)
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        console.print(f"[bold red]Invalid request file:[/bold red] {e}")
        raise typer.Exit(code=2) from e

    if isinstance(job, VideoJobResult):
        _report_video(state, job)
    else:
        _report_image(state, job)
