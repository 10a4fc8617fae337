# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path

import click

from forge import settings
from forge.cache import CacheStore
from forge.config import CONFIG_NOT_FOUND, load_config, write_example_config
from forge.dag import build_graph
from forge.errors import ConfigError, GraphError, ProviderError
from forge.runner import plan_run
from forge.sandbox import DockerSandboxProvider, SandboxProvider
from forge.ui.console import Console, get_console, set_console


def make_provider() -> SandboxProvider:
    """Sandbox backend used by `forge run`; raises ProviderError if unusable."""
    provider = DockerSandboxProvider()
    provider.ping()
    return provider


def _load_or_exit(file: str):
    console = get_console()
    try:
        return load_config(file)
    except ConfigError as e:
        suggestion = None
        if e.kind == CONFIG_NOT_FOUND:
            suggestion = "Create one with:\n  forge init"
        details = [f"{k}: {v}" for k, v in e.details.items()]
        console.print_error("Invalid configuration", e.message, details=details or None, suggestion=suggestion)
        sys.exit(2)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """FORGE: run CI/CD pipelines locally in containers."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--file", "-f", default=settings.CONFIG_FILE, show_default=True, help="Path to the forge.yaml file")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Stream step output live")
@click.option("--cache/--no-cache", "cache", default=None, help="Force caching on/off (overrides configuration)")
@click.option("--stage", "-s", default=None, help="Run only this stage (and the stages it depends on)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--log-dir", default=settings.LOG_DIR, show_default=True, help="Step log directory")
@click.option("--sequential-stages", is_flag=True, default=False, help="Run independent stages one at a time")
@click.pass_context
def run(ctx, file, verbose, cache, stage, workers, cache_dir, log_dir, sequential_stages):
    """Run a FORGE pipeline."""
    console = get_console()
    console.verbose = verbose or console.debug

    config = _load_or_exit(file)
    if cache is not None:
        config = config.with_cache(cache)

    try:
        provider = make_provider()
        scheduler = plan_run(
            config,
            provider,
            stage=stage,
            cache_root=cache_dir,
            log_root=log_dir,
            max_workers=workers,
            concurrent_stages=not sequential_stages,
            on_event=console.render_event,
        )
    except GraphError as e:
        console.print_error("Invalid pipeline", e.message, details=list(e.cycle) or None)
        sys.exit(2)
    except ProviderError as e:
        console.print_error(
            "Sandbox provider unavailable",
            e.message,
            details=[f"{k}: {v}" for k, v in e.details.items()] or None,
        )
        sys.exit(1)

    console.print_run_started(
        config_file=file,
        stage_count=len(scheduler.graph),
        run_id=scheduler.run_id,
        scope=stage,
    )

    def _on_sigint(signum, frame):
        console.print_info("\nInterrupted: waiting for running steps to finish...")
        scheduler.abort()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        result = scheduler.run()
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    console.print_results(result)
    sys.exit(result.exit_code)


@cli.command()
@click.option("--file", "-f", default=settings.CONFIG_FILE, show_default=True, help="Path to the forge.yaml file")
def validate(file):
    """Validate a forge.yaml file without running it."""
    console = get_console()
    console.print_info("Validating configuration file...")

    config = _load_or_exit(file)
    try:
        build_graph(config)
    except GraphError as e:
        console.print_error("Invalid pipeline", e.message, details=list(e.cycle) or None)
        sys.exit(2)

    console.print_validation(config)


@cli.command()
@click.option("--file", "-f", default=settings.CONFIG_FILE, show_default=True, help="Path to create")
@click.option("--force", "-F", is_flag=True, default=False, help="Overwrite an existing file")
def init(file, force):
    """Create an example forge.yaml file."""
    console = get_console()
    try:
        path = write_example_config(file, force=force)
    except ConfigError as e:
        console.print_error("Cannot create configuration", e.message)
        sys.exit(1)
    console.print_info(f"Created example configuration file: {path}")
    console.print_info("Edit this file to configure your pipeline.")


@cli.group()
def cache():
    """Inspect or clear the persisted cache."""


@cache.command("ls")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
def cache_ls(cache_dir):
    """List cache entries."""
    console = get_console()
    entries = CacheStore(cache_dir).entries()
    if not entries:
        console.print_info("Cache is empty.")
        return
    for e in entries:
        console.print_info(f"{e.path}  files={e.files} size={e.size_bytes}B updated={e.updated_at}")


@cache.command("clear")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
def cache_clear(cache_dir):
    """Remove every cache entry."""
    if not Path(cache_dir).exists():
        get_console().print_info("Cache is empty.")
        return
    removed = CacheStore(cache_dir).clear()
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}.")


if __name__ == "__main__":
    cli()
