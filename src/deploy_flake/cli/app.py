# src/deploy_flake/cli/app.py
from __future__ import annotations

import functools
from pathlib import Path
from typing import Dict, List, Optional

import typer

from deploy_flake.config.loader import load_config
from deploy_flake.config.models import DeployConfig
from deploy_flake.deploy.machine import HostDeploymentMachine
from deploy_flake.deploy.models import aggregate_exit_code
from deploy_flake.deploy.orchestrator import ParallelOrchestrator, check_all
from deploy_flake.logging.log import init_logging
from deploy_flake.nixos.errors import ConfigurationError
from deploy_flake.nixos.flake import Flake
from deploy_flake.nixos.models import Target
from deploy_flake.observers.console import ConsoleObserver
from deploy_flake.observers.dispatcher import EventBus
from deploy_flake.observers.jsonfile import JsonFileObserver
from deploy_flake.observers.logger import LoggerObserver
from deploy_flake.utils.ssh import open_ssh


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Deploy a nix flake to remote NixOS systems")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def parse_targets(raw: List[str]) -> List[Target]:
    targets = []
    for item in raw:
        try:
            targets.append(Target.parse(item))
        except ConfigurationError as exc:
            raise typer.BadParameter(exc.format_message(), param_hint="TARGETS")
    return targets


def build_config(config_file: Optional[Path], overrides: Dict) -> DeployConfig:
    try:
        return load_config(config_file, overrides)
    except ConfigurationError as exc:
        raise typer.BadParameter(exc.format_message())


def ssh_overrides(user: Optional[str], key: Optional[Path]) -> Dict:
    return {k: v for k, v in {"user": user, "key_path": key}.items() if v is not None}


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def deploy(
    targets: List[str] = typer.Argument(..., help="host, user@host:port or nixos://host/profile"),
    pre_activate_script: Optional[str] = typer.Option(
        None, "--pre-activate-script",
        help="Executable inside the built system to run before committing it as the boot default",
    ),
    flake: Optional[Path] = typer.Option(None, "--flake", help="Flake source directory [default: .]"),
    parallel: Optional[int] = typer.Option(None, "--parallel", min=1, help="Deploy to at most N hosts at once"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up on hosts still running after SECONDS"),
    poll_interval: Optional[float] = typer.Option(None, "--poll-interval", help="Seconds between activation polls"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    events: bool = typer.Option(False, "--events", help="Print lifecycle events to the console"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Build, test-activate and commit the flake's NixOS configuration on every target.
    """
    parsed = parse_targets(targets)
    cfg = build_config(config_file, {
        "flake": flake,
        "pre_activate_script": pre_activate_script,
        "parallelism": parallel,
        "timeout": timeout,
        "poll_interval": poll_interval,
        "ssh": ssh_overrides(ssh_user, ssh_key),
    })

    logger, run_id, log_path = init_logging(verbose=verbose)

    try:
        source = Flake.from_path(cfg.flake)
    except ConfigurationError as exc:
        logger.error(exc.format_message())
        raise typer.Exit(code=2)
    logger.info(f"flake={source.dir} store_path={source.store_path}")

    observers = [LoggerObserver(logger), JsonFileObserver(log_path.with_suffix(".jsonl"))]
    if events:
        observers.append(ConsoleObserver())
    bus = EventBus(observers=observers)

    connect = functools.partial(open_ssh, settings=cfg.ssh)

    def machine_factory(target, config, **kwargs):
        return HostDeploymentMachine(target, config, source=source.store_path, connect=connect, **kwargs)

    orchestrator = ParallelOrchestrator(machine_factory, bus=bus, run_id=run_id)
    results = orchestrator.run(parsed, cfg)

    typer.echo("", err=True)
    for result in results.values():
        line = result.describe()
        if result.succeeded:
            logger.info(line)
        else:
            logger.error(line)
            if result.output:
                logger.error("captured output:\n%s", result.output)

    code = aggregate_exit_code(results.values())
    logger.info(f"=== deploy-flake finished (exit {code}) ===")
    raise typer.Exit(code=code)


@app.command()
def check(
    targets: List[str] = typer.Argument(..., help="host, user@host:port or nixos://host/profile"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Report whether each target is healthy enough to deploy to. Changes nothing.
    """
    parsed = parse_targets(targets)
    cfg = build_config(config_file, {"ssh": ssh_overrides(ssh_user, ssh_key)})
    logger, _, _ = init_logging(verbose=verbose)

    reports = check_all(parsed, functools.partial(open_ssh, settings=cfg.ssh), parallelism=cfg.parallelism)
    unhealthy = 0
    for target, report in reports.items():
        units = ", ".join(report.failed_units) or "-"
        typer.echo(f"{target}\t{report.overall.value}\t{report.status}\tfailed: {units}")
        if not report.healthy:
            unhealthy += 1
    raise typer.Exit(code=1 if unhealthy else 0)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
