"""
Command-line interface for model sync.

copy / rename move models between the local store and inference servers,
qc compares quantizations of one model, resolve expands tag patterns and
serve runs the HTTP API.
"""

import asyncio
import signal
import threading
from typing import Optional

import typer

from .config import get_settings
from .core.cancellation import CancellationToken
from .core.errors import ModelSyncError, RunCancelled
from .core.logging_config import get_logger, setup_logging
from .models.throttle import format_rate
from .schemas.qc import DEFAULT_JUDGE_CONTEXT_LENGTH, JudgeMode, QcRunRequest
from .schemas.transfer import RenameRequest, TransferProgress, TransferRequest
from .services.qc_runner import EXIT_CANCELLED, EXIT_NO_RESULTS
from .services.qc_service import QcService, open_runner
from .services.transfer_service import TransferService, create_transfer_engine

app = typer.Typer(
    name="model-sync",
    help="Incremental model transfer and quantization quality comparison",
    no_args_is_help=True,
    add_completion=False,
)
logger = get_logger(__name__)


def _install_interrupt(token: CancellationToken) -> None:
    """Route Ctrl+C into the token: the first asks, the second forces"""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.request)
    except NotImplementedError:
        logger.debug("Event loop signal handlers unavailable, using signal.signal")
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(token.request))


async def _confirm(message: str) -> bool:
    """Ask on a daemon thread; a forced exit never waits for the answer"""
    loop = asyncio.get_running_loop()
    answer = loop.create_future()

    def settle(value: Optional[bool], error: Optional[BaseException]) -> None:
        if answer.done():
            return
        if error is not None:
            answer.set_exception(error)
        else:
            answer.set_result(value)

    def ask() -> None:
        value, error = None, None
        try:
            value = typer.confirm(message, default=False)
        except Exception as e:
            error = e
        try:
            loop.call_soon_threadsafe(settle, value, error)
        except RuntimeError:
            logger.debug("Prompt answered after the event loop closed")

    threading.Thread(target=ask, name="model-sync-confirm", daemon=True).start()
    return await answer


def _cancel_prompt(assume_yes: bool):
    if assume_yes:
        return None

    async def _ask() -> bool:
        return await _confirm("\nCancel the run? Finished work is saved, the question in progress is lost")
    return _ask


def _timeout_prompt(assume_yes: bool):
    async def _ask(timeout: float) -> bool:
        if assume_yes:
            return False
        return await _confirm(f"Requests keep timing out after {timeout:g}s. Double the timeout to {timeout * 2:g}s and retry?")
    return _ask


def _fail(error: Exception) -> None:
    typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _print_progress(event: TransferProgress) -> None:
    if event.total:
        typer.echo(f"\r{event.status} {event.progress_percent:5.1f}%", nl=False)
        if event.completed is not None and event.completed >= event.total:
            typer.echo()
    else:
        typer.echo(event.status)


@app.command("copy")
def copy_command(
    source: str = typer.Argument(..., help="Local model or http(s)://host:port/model[:tag]"),
    destination: str = typer.Argument(..., help="Local model or http(s)://host:port/model[:tag]"),
    throttle: Optional[str] = typer.Option(None, "--throttle", "-t", help="Bandwidth limit, e.g. 50MB"),
    buffer_size: Optional[str] = typer.Option(None, "--buffer-size", help="Relay buffer size, e.g. 512MB"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing destination model"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No progress output"),
):
    """Copy a model, skipping layers the destination already has"""
    settings = get_settings()
    setup_logging(settings)
    try:
        request = TransferRequest(source=source, destination=destination,
                                  throttle=throttle, buffer_size=buffer_size)
    except ValueError as e:
        _fail(e)

    async def _run():
        token = CancellationToken()
        _install_interrupt(token)
        engine = create_transfer_engine(settings, token)
        if not quiet:
            engine.add_progress_callback(_print_progress)
        service = TransferService(engine)
        try:
            return await service.copy(request, overwrite=overwrite)
        finally:
            await service.close()

    try:
        result = asyncio.run(_run())
    except RunCancelled:
        typer.secho("Transfer cancelled", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=EXIT_CANCELLED)
    except ModelSyncError as e:
        _fail(e)

    rate = result.bytes_transferred / result.duration_seconds if result.duration_seconds else None
    typer.echo(
        f"Copied {result.source} -> {result.destination}: "
        f"{result.layers_transferred} layers sent, {result.layers_skipped} already present, "
        f"{result.bytes_transferred} bytes in {result.duration_seconds:.1f}s ({format_rate(rate)})"
    )


@app.command("rename")
def rename_command(
    source: str = typer.Argument(..., help="Existing model, local or http(s)://host:port/model[:tag]"),
    new_name: str = typer.Argument(..., help="New model name on the same server"),
):
    """Rename a model; the original is only deleted once the copy is verified"""
    settings = get_settings()
    setup_logging(settings)

    async def _run():
        service = TransferService(create_transfer_engine(settings))
        try:
            await service.rename(RenameRequest(source=source, destination=new_name))
        finally:
            await service.close()

    try:
        asyncio.run(_run())
    except ModelSyncError as e:
        _fail(e)
    typer.echo(f"Renamed {source} -> {new_name}")


@app.command("resolve")
def resolve_command(
    model: str = typer.Argument(..., help="Model name, e.g. llama3.2 or hf.co/ns/repo"),
    patterns: str = typer.Argument(..., help="Comma separated tags or wildcard patterns, e.g. 'q4*,q8_0'"),
    local: bool = typer.Option(False, "--local", help="Match against the local server"),
):
    """Expand tag patterns into concrete tags"""
    settings = get_settings()
    setup_logging(settings)
    service = QcService(settings)
    try:
        tags = asyncio.run(service.resolve(model, patterns.split(','), local=local))
    except ModelSyncError as e:
        _fail(e)
    for tag in tags:
        typer.echo(tag)


@app.command("qc")
def qc_command(
    model: str = typer.Argument(..., help="Model name, e.g. llama3.2 or hf.co/ns/repo"),
    quants: str = typer.Option(..., "--quants", "-q", help="Comma separated tags or wildcard patterns"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base quantization tag (default: stored or fp16)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Results file path"),
    suite: str = typer.Option("v1base", "--suite", "-s", help="Built-in suite name or JSON file"),
    judge: Optional[str] = typer.Option(
        None, "--judge", "-j",
        help="Judge model: name, http(s)://host:port/model or @provider[:token]/model"
    ),
    judge_mode: JudgeMode = typer.Option(JudgeMode.SERIAL, "--mode", "-m", help="Judge after each quantization or alongside testing"),
    judge_ctx: int = typer.Option(DEFAULT_JUDGE_CONTEXT_LENGTH, "--judge-ctx", help="Judge context length"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Per request timeout in seconds"),
    temperature: float = typer.Option(0.0, "--temperature"),
    seed: int = typer.Option(365, "--seed"),
    top_p: float = typer.Option(0.001, "--top-p"),
    top_k: int = typer.Option(-1, "--top-k", help="Omitted from requests when not positive"),
    repeat_penalty: Optional[float] = typer.Option(None, "--repeat-penalty"),
    frequency_penalty: Optional[float] = typer.Option(None, "--frequency-penalty"),
    force: bool = typer.Option(False, "--force", help="Re-test quantizations that already have results"),
    rejudge: bool = typer.Option(False, "--rejudge", help="Judge again even where a verdict exists"),
    on_demand: bool = typer.Option(False, "--on-demand", help="Pull missing quantizations and remove them afterwards"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Never prompt"),
):
    """Compare quantizations of a model against its base quantization"""
    settings = get_settings()
    setup_logging(settings)
    try:
        request = QcRunRequest(
            model=model,
            quants=quants,
            base_tag=base,
            output=output,
            suite=suite,
            judge=judge,
            judge_mode=judge_mode,
            judge_context_length=judge_ctx,
            timeout=timeout or settings.request_timeout,
            temperature=temperature,
            seed=seed,
            top_p=top_p,
            top_k=top_k,
            repeat_penalty=repeat_penalty,
            frequency_penalty=frequency_penalty,
            force=force,
            rejudge=rejudge,
            on_demand=on_demand,
        )
    except ValueError as e:
        _fail(e)

    async def _run() -> int:
        token = CancellationToken(confirm=_cancel_prompt(yes))
        _install_interrupt(token)
        async with open_runner(request, settings, token, timeout_prompt=_timeout_prompt(yes)) as runner:
            code = await runner.run()
            if runner.context is not None:
                typer.echo(f"Results: {runner.context.output_path}")
            return code

    try:
        code = asyncio.run(_run())
    except ModelSyncError as e:
        _fail(e)
    if code == EXIT_NO_RESULTS:
        typer.secho("No quantization produced results", fg=typer.colors.RED, err=True)
    elif code == EXIT_CANCELLED:
        typer.secho("QC run cancelled", fg=typer.colors.YELLOW, err=True)
    raise typer.Exit(code=code)


@app.command("serve")
def serve_command():
    """Run the HTTP API"""
    from .main import main
    main()


if __name__ == "__main__":
    app()
