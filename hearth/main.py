"""Command-line entry point for Hearth."""

import asyncio
import sys

import typer

from hearth import __version__
from hearth.checkpoints import CheckpointStore
from hearth.config import Config
from hearth.logging import configure_logging, get_logger
from hearth.runtime import build_registry, run_daemon

log = get_logger(__name__)

cli = typer.Typer(help="Hearth - local-inference agent runtime", no_args_is_help=True)


def _load_config(config: str) -> Config:
    if not config:
        return Config.load()
    try:
        return Config.load(config)
    except Exception as e:
        log.error("Failed to load config", path=config, error=str(e))
        raise typer.Exit(code=1) from e


@cli.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "-p", "--port", help="Override bind port"),
    token: str = typer.Option("", "--token", help="Bearer token required on private endpoints"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the HTTP daemon."""
    cfg = _load_config(config)
    if verbose:
        cfg.logging.level = "DEBUG"
    configure_logging(cfg.logging)

    if host:
        cfg.daemon.host = host
    if port:
        cfg.daemon.port = port
    if token:
        cfg.daemon.auth_token = token

    try:
        asyncio.run(run_daemon(cfg))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    except OSError as e:
        log.error("Daemon failed to start", error=str(e))
        sys.exit(1)


@cli.command()
def tools(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List configured tools."""
    cfg = _load_config(config)
    configure_logging(cfg.logging)
    registry = build_registry(cfg)
    for entry in asyncio.run(registry.status()):
        state = "disabled" if entry["disabled"] else ("denied" if not entry["allowed"] else "enabled")
        print(f"{entry['name']:<22} {entry['risk_level']:<8} {state:<9} {entry['description']}")


@cli.command()
def checkpoints(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List saved run checkpoints."""
    cfg = _load_config(config)
    configure_logging(cfg.logging)
    store = CheckpointStore(cfg.storage.checkpoints_dir)
    saved = asyncio.run(store.list())
    if not saved:
        print("No checkpoints.")
        return
    for checkpoint in saved:
        print(
            f"{checkpoint.id}  {checkpoint.status:<9} {checkpoint.agent_type:<9} "
            f"steps={checkpoint.step_count:<4} {checkpoint.user_message[:60]}"
        )


@cli.command()
def version() -> None:
    """Show version information."""
    print(f"Hearth v{__version__}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
