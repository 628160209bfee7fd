"""
CLI entry point for certapprover.

This module provides the Typer-based command-line interface.

Commands:
    run        Run the approval controller against the cluster
    check      Compile policy files without starting the controller
    evaluate   Dry-run the policy against requests from a fixture file

Architecture Note:
    The CLI only loads configuration and policy files, builds the
    collaborators and hands them to ``new_controller``. Everything it does
    can be done programmatically.
"""

import json
import logging
import signal
import threading
import traceback
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from certapprover import __version__
from certapprover.conditions import is_decided
from certapprover.config import ControllerConfig, load_config
from certapprover.errors import ApproverError, PolicyError, PolicyInUseError
from certapprover.events import FanoutRecorder, KubeEventRecorder, LoggingRecorder
from certapprover.facts import FactGatherer
from certapprover.manager import new_controller
from certapprover.policy import (
    CompiledPolicy,
    OpaClient,
    PolicyAdapter,
    PolicyHolder,
    load_policy_sources,
)
from certapprover.store import InMemoryStore, KubeStore

logger = logging.getLogger("certapprover")

app = typer.Typer(
    name="certapprover",
    help="Approve cert-manager CertificateRequests with an Open Policy Agent policy.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

PolicyFiles = Annotated[
    Optional[list[Path]],
    typer.Argument(help="Rego policy files defining package approval.", show_default=False),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Controller configuration YAML file.", exists=True, readable=True),
]
OpaUrlOption = Annotated[
    Optional[str],
    typer.Option("--opa-url", help="Base URL of the OPA server. Overrides the config file."),
]
LogLevelOption = Annotated[
    Optional[str],
    typer.Option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)."),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output results in JSON format.")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]certapprover[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    certapprover - policy-driven approval of CertificateRequests.
    """


def configure_logging(level: str) -> None:
    """Send all certapprover logs to stderr through rich."""
    handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def _load_settings(
    config_path: Path | None,
    opa_url: str | None,
    log_level: str | None,
    **kube_overrides: Any,
) -> ControllerConfig:
    config = load_config(config_path)
    updates: dict[str, Any] = {}
    if opa_url:
        updates["opa"] = config.opa.model_copy(update={"base_url": opa_url})
    kube = {k: v for k, v in kube_overrides.items() if v is not None}
    if kube:
        updates["kube"] = config.kube.model_copy(update=kube)
    if log_level:
        updates["log_level"] = log_level
    return config.model_copy(update=updates) if updates else config


def _compile(opa: OpaClient, policy_files: list[Path], replace_existing: bool) -> CompiledPolicy:
    sources = load_policy_sources(policy_files)
    return opa.compile(sources, replace_existing=replace_existing)


def _compile_dry_run(opa: OpaClient, policy_files: list[Path], json_output: bool) -> CompiledPolicy:
    try:
        return _compile(opa, policy_files, replace_existing=False)
    except PolicyInUseError as e:
        _fail("opa_in_use", e.message, json_output, e.to_dict())
    except PolicyError as e:
        _fail("policy_error", str(e), json_output, e.to_dict())


@app.command()
def run(
    policy_files: PolicyFiles = None,
    config_path: ConfigOption = None,
    kube_url: Annotated[
        Optional[str],
        typer.Option("--kube-url", help="Kubernetes API server URL. Defaults to in-cluster discovery."),
    ] = None,
    opa_url: OpaUrlOption = None,
    workers: Annotated[
        Optional[int],
        typer.Option("--workers", "-w", min=1, help="Number of reconcile workers."),
    ] = None,
    log_level: LogLevelOption = None,
) -> None:
    """
    Run the approval controller.

    Compiles the policy files through OPA, then watches CertificateRequests
    and Namespaces until interrupted.

    Example:
        $ certapprover run policy/approval.rego --opa-url http://localhost:8181
    """
    try:
        config = _load_settings(config_path, opa_url, log_level, api_url=kube_url)
    except Exception as e:
        err_console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(code=1)
    if workers:
        config = config.model_copy(
            update={"controller": config.controller.model_copy(update={"workers": workers})}
        )

    configure_logging(config.log_level)

    if not policy_files:
        logger.info("no policy loaded, exit early")
        raise typer.Exit(code=0)

    opa = OpaClient(config.opa)
    try:
        policy = _compile(opa, policy_files, replace_existing=True)
    except PolicyError as e:
        logger.error("unable to compile policy: %s", e)
        opa.close()
        raise typer.Exit(code=1)

    try:
        store = KubeStore(config.kube)
    except ValueError as e:
        logger.error("could not create manager: %s", e)
        opa.remove(policy)
        opa.close()
        raise typer.Exit(code=1)

    recorder = FanoutRecorder(LoggingRecorder(), KubeEventRecorder(store.client))
    controller = new_controller(policy, store, opa, recorder, config.controller)

    stop = threading.Event()

    def _handle_signal(signum: int, frame: Any) -> None:
        logger.info("received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        controller.run(stop)
    finally:
        opa.remove(policy)
        opa.close()

    if controller.error is not None:
        raise typer.Exit(code=1)


@app.command()
def check(
    policy_files: PolicyFiles = None,
    config_path: ConfigOption = None,
    opa_url: OpaUrlOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Compile policy files without starting the controller.

    Exits 0 when OPA accepts every module, 1 otherwise. The policy is
    removed from OPA again afterwards. An OPA server that already holds a
    certapprover policy is refused, since a running controller would
    evaluate both.

    Example:
        $ certapprover check policy/*.rego
    """
    if not policy_files:
        _fail("no_policy", "No policy files given", json_output)

    config = _load_settings(config_path, opa_url, None)
    with OpaClient(config.opa) as opa:
        policy = _compile_dry_run(opa, policy_files, json_output)
        opa.remove(policy)

    if json_output:
        print(json.dumps({
            "success": True,
            "digest": policy.digest,
            "modules": sorted(policy.sources),
        }, indent=2))
        return

    console.print(f"[green]✓[/green] Policy compiled ({len(policy.sources)} module(s))")
    console.print(f"[dim]  digest: {policy.digest}[/dim]")


@app.command()
def evaluate(
    policy_files: PolicyFiles = None,
    fixtures: Annotated[
        Optional[Path],
        typer.Option(
            "--fixtures",
            "-f",
            help="YAML file with Namespaces and CertificateRequests.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    config_path: ConfigOption = None,
    opa_url: OpaUrlOption = None,
    json_output: JsonOption = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug mode with full error tracebacks."),
    ] = False,
) -> None:
    """
    Dry-run the policy against requests from a fixture file.

    Shows what the controller would decide for every request. Nothing is
    written to the cluster. Like ``check``, this needs an OPA server no
    controller is using.

    Example:
        $ certapprover evaluate policy/approval.rego --fixtures cluster.yaml
    """
    if not policy_files:
        _fail("no_policy", "No policy files given", json_output)
    if fixtures is None:
        _fail("no_fixtures", "Missing option --fixtures", json_output)

    config = _load_settings(config_path, opa_url, None)
    store = InMemoryStore()
    try:
        store.load_fixtures(fixtures)
    except Exception as e:
        _fail("fixture_load_error", f"Error loading fixtures: {e}", json_output)

    rows: list[dict[str, Any]] = []
    with OpaClient(config.opa) as opa:
        policy = _compile_dry_run(opa, policy_files, json_output)

        facts = FactGatherer(store)
        adapter = PolicyAdapter(opa, PolicyHolder(policy))
        try:
            for request in sorted(store.requests(), key=lambda r: str(r.key)):
                rows.append(_dry_run(facts, adapter, request, debug))
        finally:
            opa.remove(policy)

    if json_output:
        print(json.dumps({"policy_digest": policy.digest, "results": rows}, indent=2))
        return

    table = Table(title=f"Policy {policy.short_digest}")
    table.add_column("Request", style="cyan")
    table.add_column("Decision")
    table.add_column("Reason")
    styles = {"approve": "green", "pending": "yellow", "decided": "dim", "error": "red"}
    for row in rows:
        style = styles[row["decision"]]
        table.add_row(row["request"], f"[{style}]{row['decision']}[/{style}]", row["reason"])
    console.print(table)


def _dry_run(
    facts: FactGatherer,
    adapter: PolicyAdapter,
    request: Any,
    debug: bool,
) -> dict[str, Any]:
    row = {"request": str(request.key)}
    if is_decided(request.conditions):
        return row | {"decision": "decided", "reason": "already approved or denied"}

    try:
        namespace = facts.fetch_context(request)
        decision = adapter.decide(request, namespace)
    except ApproverError as e:
        if debug:
            err_console.print(f"[dim]{traceback.format_exc()}[/dim]")
        return row | {"decision": "error", "reason": e.message}

    return row | {
        "decision": "approve" if decision.allowed else "pending",
        "reason": decision.reason,
    }


def _fail(
    error_type: str,
    message: str,
    json_output: bool,
    details: dict[str, Any] | None = None,
) -> NoReturn:
    if json_output:
        payload: dict[str, Any] = {"success": False, "error_type": error_type, "message": message}
        if details:
            payload["details"] = details
        print(json.dumps(payload, indent=2))
    else:
        err_console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
