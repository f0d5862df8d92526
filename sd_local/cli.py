"""Thin CLI wrapper for sd_local.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
import signal
import tempfile
from contextlib import ExitStack
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from sd_local import __version__
from sd_local.config import (
    ConfigFileError,
    Settings,
    default_config_path,
    get_settings,
    print_settings_json,
)
from sd_local.types import RuntimeName

app = typer.Typer(
    name="sd-local",
    help="Run Screwdriver.cd builds on your local machine",
    no_args_is_help=True,
)
console = Console()

SCREWDRIVER_YAML = "screwdriver.yaml"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sd-local version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records through rich at the configured level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_settings(local: bool) -> Settings:
    try:
        return get_settings(default_config_path(local))
    except ConfigFileError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None


def _raise_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt(f"received signal {signum}")


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Run Screwdriver.cd builds on your local machine."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    local: Annotated[
        bool,
        typer.Option("--local", help="Use .sdlocal/config in the current directory"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load_settings(local)
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Screwdriver:[/bold]")
    console.print(f"  API URL:             {settings.api_url or '(not set)'}")
    console.print(f"  Store URL:           {settings.store_url or '(not set)'}")
    console.print(f"  Token:               {'****' if settings.token else '(not set)'}")
    console.print()
    console.print("[bold]Launcher:[/bold]")
    console.print(f"  Image:               {settings.launcher_image}")
    console.print(f"  Version:             {settings.launcher_version}")
    console.print()
    console.print("[bold]Runtime:[/bold]")
    console.print(f"  Command:             {settings.runtime.value}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Setup timeout:       {settings.setup_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout or '(none)'}")


@app.command()
def build(
    job_name: Annotated[str, typer.Argument(help="Name of the job to run")],
    meta: Annotated[
        str | None,
        typer.Option("--meta", help="Metadata to pass into the build, as JSON"),
    ] = None,
    meta_file: Annotated[
        Path | None,
        typer.Option("--meta-file", help="Path to a JSON metadata file"),
    ] = None,
    env: Annotated[
        list[str] | None,
        typer.Option(
            "--env",
            "-e",
            help="Environment variable for the build container (KEY=VALUE, repeatable)",
        ),
    ] = None,
    env_file: Annotated[
        Path | None,
        typer.Option("--env-file", help="Path to a '.env' format file"),
    ] = None,
    artifacts_dir: Annotated[
        str | None,
        typer.Option(
            "--artifacts-dir",
            help="Host directory mounted into $SD_ARTIFACTS_DIR (default: sd-artifacts)",
        ),
    ] = None,
    memory: Annotated[
        str | None,
        typer.Option("--memory", "-m", help="Memory limit for the build container"),
    ] = None,
    src_path: Annotated[
        Path | None,
        typer.Option("--src-path", help="Source directory to build (default: cwd)"),
    ] = None,
    src_url: Annotated[
        str | None,
        typer.Option(
            "--src-url",
            help="Repository to build instead of a local directory (<url>[#<branch>])",
        ),
    ] = None,
    job_file: Annotated[
        Path | None,
        typer.Option("--job-file", help="Job definition JSON instead of the API"),
    ] = None,
    sudo: Annotated[
        bool,
        typer.Option("--sudo", help="Use sudo for the container runtime"),
    ] = False,
    runtime: Annotated[
        RuntimeName | None,
        typer.Option("--runtime", help="Container runtime command"),
    ] = None,
    local: Annotated[
        bool,
        typer.Option("--local", help="Use .sdlocal/config in the current directory"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Print the build configuration and exit"),
    ] = False,
) -> None:
    """Run a Screwdriver job locally."""
    from sd_local.launch.build_config import (
        MetadataParseError,
        OverrideConflictError,
        Overrides,
        ResolvedConfig,
    )
    from sd_local.launch.environment import (
        EnvFileError,
        parse_env_file,
        parse_env_pairs,
    )
    from sd_local.launch.orchestrator import LaunchError, Option, new_launcher
    from sd_local.launch.source import SourceCheckoutError, clone_source
    from sd_local.screwdriver.api import APIError, ScrewdriverAPI
    from sd_local.screwdriver.models import load_job_file

    if src_url is not None and src_path is not None:
        console.print("[red]--src-url and --src-path cannot be used together[/red]")
        raise typer.Exit(code=1)

    settings = _load_settings(local)
    setup_logging(settings.log_level)

    try:
        env_layers = []
        if env_file is not None:
            env_layers.append(parse_env_file(env_file))
        if env:
            env_layers.append(parse_env_pairs(env))
    except EnvFileError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    with ExitStack() as stack:
        yaml_path = Path(SCREWDRIVER_YAML)
        if src_url is not None:
            checkout = Path(
                stack.enter_context(tempfile.TemporaryDirectory(prefix="sd-local-src-"))
            )
            try:
                src_path = clone_source(src_url, checkout / "src")
            except SourceCheckoutError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(code=1) from None
            yaml_path = src_path / SCREWDRIVER_YAML

        jwt = ""
        if job_file is not None:
            try:
                job = load_job_file(job_file)
            except (OSError, ValueError) as e:
                console.print(f"[red]Failed to load job file {job_file}: {e}[/red]")
                raise typer.Exit(code=1) from None
        else:
            api = ScrewdriverAPI(settings.api_url, settings.token)
            try:
                job = api.job(job_name, yaml_path)
                jwt = api.jwt()
            except FileNotFoundError:
                console.print(f"[red]{yaml_path} not found[/red]")
                raise typer.Exit(code=1) from None
            except APIError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(code=1) from None
            finally:
                api.close()

        option = Option(
            job=job,
            config=ResolvedConfig(
                api_url=settings.api_url,
                store_url=settings.store_url,
                jwt=jwt,
                launcher_image=settings.launcher_image,
                launcher_version=settings.launcher_version,
            ),
            overrides=Overrides(
                job_name=job_name,
                artifacts_dir=artifacts_dir,
                src_path=str(src_path) if src_path is not None else None,
                meta=meta,
                meta_file=meta_file,
                env_layers=tuple(env_layers),
                memory_limit=memory,
            ),
            cache_dir=settings.cache_dir,
            runtime=runtime or settings.runtime,
            use_sudo=sudo,
            setup_timeout=settings.setup_timeout,
            step_timeout=settings.build_timeout,
        )

        try:
            launcher = new_launcher(option)
        except (MetadataParseError, OverrideConflictError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

        if dry_run:
            console.print_json(launcher.build_config.to_launcher_json())
            return

        artifacts_path = Path(launcher.build_config.artifacts_path)
        try:
            artifacts_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            console.print(
                f"[red]Failed to create artifacts directory {artifacts_path}: {e}[/red]"
            )
            raise typer.Exit(code=1) from None

        previous = signal.signal(signal.SIGTERM, _raise_interrupt)
        try:
            result = launcher.run()
        except LaunchError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=e.exit_code) from None
        except KeyboardInterrupt:
            console.print("[yellow]Build aborted[/yellow]")
            raise typer.Exit(code=130) from None
        finally:
            signal.signal(signal.SIGTERM, previous)

    console.print(
        f"[green]Build succeeded[/green] ({len(result.steps)} step(s) in {result.container})"
    )


__all__ = ["app"]
