"""ClickHouse installation operator CLI (chi-operator).

Usage:
    chi-operator run                              # Run the operator loop
    chi-operator check-config                     # Validate the failure policy
    chi-operator check-config --policy-file p.yaml
    chi-operator status NAMESPACE NAME           # Show StatefulSet rollout status
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
from kubernetes_asyncio.client import ApiException

from .config import ConfigurationError, FailurePolicyConfig, load_policy_file
from .kube import create_kube_clients, is_not_found
from .status import has_reached_generation, status_string


@click.group()
@click.version_option(version="0.1.0", prog_name="chi-operator")
def cli() -> None:
    """ClickHouse installation operator.

    Drives host StatefulSets to their desired spec and applies the
    configured failure policy when a rollout does not converge.
    """


@cli.command("run")
def run_operator() -> None:
    """Run the reconciliation loop (configured from the environment)."""
    from .main import main

    sys.exit(asyncio.run(main()))


@cli.command("check-config")
@click.option(
    "--policy-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML failure policy to validate instead of the environment.",
)
def check_config(policy_file: Path | None) -> None:
    """Validate the failure policy and print the effective values."""
    try:
        policy = load_policy_file(policy_file) if policy_file else FailurePolicyConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"onCreateFailure:      {policy.on_create_failure.value}")
    click.echo(f"onUpdateFailure:      {policy.on_update_failure.value}")
    click.echo(f"convergenceTimeout:   {policy.convergence_timeout_seconds}s")
    click.echo(f"convergencePoll:      {policy.convergence_poll_interval_seconds}s")
    click.echo(f"continueOnFailure:    {str(policy.continue_on_failure).lower()}")


@cli.command("status")
@click.argument("namespace")
@click.argument("name")
@click.option(
    "--generation",
    type=int,
    default=None,
    help="Generation to check for (default: the object's current generation).",
)
@click.option("--kubeconfig", type=click.Path(dir_okay=False), default=None)
def show_status(namespace: str, name: str, generation: int | None, kubeconfig: str | None) -> None:
    """Show whether a StatefulSet has rolled out its generation."""
    converged = asyncio.run(_show_status(namespace, name, generation, kubeconfig))
    sys.exit(0 if converged else 3)


async def _show_status(
    namespace: str, name: str, generation: int | None, kubeconfig: str | None
) -> bool:
    clients = await create_kube_clients(kubeconfig)
    try:
        statefulset = await clients.apps_api.read_namespaced_stateful_set(name, namespace)
    except ApiException as e:
        if is_not_found(e):
            raise click.ClickException(f"StatefulSet {namespace}/{name} not found") from e
        raise click.ClickException(f"Failed to read StatefulSet: {e.reason}") from e
    finally:
        await clients.close()

    target = generation if generation is not None else statefulset.metadata.generation
    converged = has_reached_generation(statefulset, target)
    click.echo(f"{namespace}/{name} generation {target}: {status_string(statefulset.status)}")
    click.echo("converged" if converged else "not converged")
    return converged
