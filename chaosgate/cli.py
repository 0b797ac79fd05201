"""chaosgate CLI - chaos testing for workloads deployed from a repository."""

import json
import sys
from dataclasses import replace
from typing import Optional

import click

from chaosgate.chaos import StuckExperimentRecovery
from chaosgate.cluster import ClusterClient
from chaosgate.config import Settings, ValidationError, load_settings
from chaosgate.errors import FatalSetupError
from chaosgate.models import CHAOS_TYPES
from chaosgate.pipeline import ChaosTestPipeline
from chaosgate.provisioner import LitmusInstaller, ManifestDeployer


def _build_cluster(settings: Settings):
    """Cluster client for a command."""
    return ClusterClient(settings)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _fail(error: FatalSetupError):
    click.echo(f"Error ({error.stage.value}): {error}", err=True)
    if error.details and error.details != str(error):
        click.echo(error.details, err=True)
    sys.exit(1)


@click.group()
@click.version_option(package_name="chaosgate")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Settings file (YAML)",
)
@click.option("--verbose", "-v", is_flag=True, help="Print executed commands")
@click.option("--quiet", "-q", is_flag=True, help="Suppress progress output")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: bool, quiet: bool):
    """chaosgate - chaos testing for Kubernetes workloads.

    Deploys a repository's workload, installs LitmusChaos, runs one chaos
    experiment against a target deployment and reports the verdict.
    """
    try:
        settings = load_settings(config_path)
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        for detail in e.errors:
            click.echo(f"  - {detail}", err=True)
        sys.exit(1)
    if verbose:
        settings = replace(settings, log_level="verbose")
    elif quiet:
        settings = replace(settings, log_level="silent")
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command()
@click.argument("repo_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--namespace", "-n", default=None, help="Target namespace")
@click.option(
    "--strategy",
    type=click.Choice(["normal", "strict-order", "parallel"]),
    default=None,
    help="How plain manifest files are applied",
)
@click.option("--no-fallback", is_flag=True, help="Fail instead of deploying the sample workload")
@click.option("--json", "json_output", is_flag=True, help="Output the outcome as JSON")
@click.pass_context
def deploy(
    ctx: click.Context,
    repo_dir: str,
    namespace: Optional[str],
    strategy: Optional[str],
    no_fallback: bool,
    json_output: bool,
):
    """Deploy the manifests of a local repository checkout."""
    settings = _settings(ctx)
    if strategy:
        settings = replace(settings, apply_strategy=strategy)
    if json_output:
        settings = replace(settings, log_level="silent")

    deployer = ManifestDeployer(_build_cluster(settings), settings)
    try:
        outcome = deployer.deploy(repo_dir, namespace=namespace, allow_fallback=not no_fallback)
    except FatalSetupError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(outcome.to_dict(), indent=2))
    else:
        click.echo(f"Applied {outcome.applied}/{outcome.total} resources to {outcome.namespace}")
        for error in outcome.errors:
            click.echo(f"  Error in {error['file']}: {error['error']}", err=True)
        for warning in outcome.warnings:
            click.echo(f"  Warning: {warning}")
    if not outcome.success:
        sys.exit(1)


@main.command()
@click.option("--repo", "repo_dir", type=click.Path(exists=True, file_okay=False), help="Local repository checkout")
@click.option("--github-url", help="Repository URL to clone")
@click.option(
    "--chaos-type",
    "-t",
    type=click.Choice(list(CHAOS_TYPES)),
    default=None,
    help="Experiment type",
)
@click.option("--duration", "-d", type=click.IntRange(min=1), default=None, help="Chaos duration in seconds")
@click.option("--namespace", "-n", default=None, help="Target namespace")
@click.option("--deployment", default=None, help="Target deployment")
@click.option("--no-cluster", is_flag=True, help="Use the current kube context instead of a kind cluster")
@click.option("--json", "json_output", is_flag=True, help="Output the report as JSON")
@click.pass_context
def run(
    ctx: click.Context,
    repo_dir: Optional[str],
    github_url: Optional[str],
    chaos_type: Optional[str],
    duration: Optional[int],
    namespace: Optional[str],
    deployment: Optional[str],
    no_cluster: bool,
    json_output: bool,
):
    """Run a complete chaos test against a repository.

    \b
    Example:
      chaosgate run --github-url https://github.com/org/app -t pod-delete -d 30
      chaosgate run --repo ./checkout --no-cluster -n shop --deployment cart
    """
    if not repo_dir and not github_url:
        click.echo("Error: provide --repo or --github-url", err=True)
        sys.exit(1)

    settings = _settings(ctx)
    if no_cluster:
        settings = replace(settings, provision_cluster=False)
    if json_output:
        settings = replace(settings, log_level="silent")

    pipeline = ChaosTestPipeline(settings, cluster=_build_cluster(settings))
    try:
        report = pipeline.run(
            github_url=github_url,
            repo_dir=repo_dir,
            chaos_type=chaos_type,
            duration=duration,
            target_namespace=namespace,
            target_deployment=deployment,
        )
    except FatalSetupError as e:
        if json_output:
            click.echo(json.dumps(e.to_dict(), indent=2))
            sys.exit(1)
        _fail(e)

    response = report.to_response()
    if json_output:
        click.echo(json.dumps(response, indent=2))
        return

    result = report.result
    click.echo(f"\n{response['message']}")
    click.echo(f"  Target: {report.target.namespace}/{report.target.name} ({report.target.label_selector})")
    click.echo(f"  Verdict: {result.verdict.value}")
    click.echo(f"  Experiment status: {result.phase or 'unknown'}")
    if result.fail_step:
        click.echo(f"  Fail step: {result.fail_step}")
    click.echo(f"  Source: {result.source.value}")
    if result.stuck:
        click.echo("  Engine is stuck in 'initialized'. Run 'chaosgate recover --auto-recover'.")
    for observation in result.observations:
        click.echo(f"  Note [{observation.source}]: {observation.message}")


@main.command()
@click.option("--namespace", "-n", default=None, help="Namespace to scan (default: all)")
@click.option("--auto-recover", is_flag=True, help="Recover every stuck engine found")
@click.option("--detect-only", is_flag=True, help="Only report stuck engines")
@click.option("--json", "json_output", is_flag=True, help="Output the report as JSON")
@click.pass_context
def recover(
    ctx: click.Context,
    namespace: Optional[str],
    auto_recover: bool,
    detect_only: bool,
    json_output: bool,
):
    """Detect and recover chaos engines stuck in 'initialized'."""
    if auto_recover and detect_only:
        click.echo("Error: --auto-recover and --detect-only are mutually exclusive", err=True)
        sys.exit(1)

    settings = _settings(ctx)
    if json_output:
        settings = replace(settings, log_level="silent")
    cluster = _build_cluster(settings)
    recovery = StuckExperimentRecovery(cluster, LitmusInstaller(cluster, settings), settings)
    report = recovery.auto_recover(namespace, enabled=auto_recover)

    if json_output:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
        return

    if not report.stuck_experiments:
        click.echo("No stuck experiments found")
        return

    click.echo(f"Found {len(report.stuck_experiments)} stuck experiment(s):")
    for record in report.stuck_experiments:
        click.echo(
            f"  {record.namespace}/{record.engine_name} ({record.chaos_type}), "
            f"stuck {record.stuck_minutes:.1f} min"
        )
        outcome = report.recovery_results.get(record.key)
        if outcome:
            click.echo(f"    {'OK' if outcome.success else 'FAILED'}: {outcome.message}")
            for action in outcome.actions:
                click.echo(f"      - {action}")
    if report.dry_run:
        click.echo("\nRun with --auto-recover to remediate.")


@main.command()
@click.option("--namespace", "-n", default=None, help="Namespace experiments run in")
@click.option("--chaos-type", "-t", type=click.Choice(list(CHAOS_TYPES)), default=None)
@click.option("--json", "json_output", is_flag=True, help="Output status as JSON")
@click.pass_context
def status(ctx: click.Context, namespace: Optional[str], chaos_type: Optional[str], json_output: bool):
    """Check the state of the chaos framework in the cluster."""
    settings = _settings(ctx)
    installer = LitmusInstaller(_build_cluster(settings), settings)
    state = installer.validate(namespace, chaos_type)

    if json_output:
        click.echo(json.dumps(state.to_dict(), indent=2))
        return

    click.echo("chaosgate Status:")
    click.echo(f"  CRDs: {'OK' if state.crds_present else 'MISSING'}")
    click.echo(f"  Chaos operator: {'Running' if state.operator_running else 'Not running'}")
    click.echo(f"  Service account: {'OK' if state.service_account_present else 'MISSING'}")
    click.echo(
        f"  Experiment definition: {'OK' if state.experiment_definition_present else 'MISSING'}"
    )
    click.echo(f"\n{state.message}")


@main.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", type=int, default=None, help="Listen port (default: $PORT or 3000)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]):
    """Serve the HTTP API."""
    from chaosgate.server import serve as serve_http

    settings = _settings(ctx)
    click.echo(f"Serving on {host or settings.host}:{port or settings.port}")
    serve_http(settings, host=host, port=port)


if __name__ == "__main__":
    main()
