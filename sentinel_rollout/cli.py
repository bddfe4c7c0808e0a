"""rolloutctl - command line client for the rollout control API."""

import json
import sys
from typing import Any, Optional

import click
import httpx

from .config import get_settings

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_ACTIVE_ROLLOUT = 3
EXIT_INVALID_REVISION = 4
EXIT_NOT_FOUND = 5

STATUS_EXIT_CODES = {
    404: EXIT_NOT_FOUND,
    409: EXIT_NO_ACTIVE_ROLLOUT,
    422: EXIT_INVALID_REVISION,
}


def _client(ctx: click.Context) -> httpx.Client:
    client = ctx.obj.get("client")
    if client is None:
        client = httpx.Client(base_url=ctx.obj["url"], timeout=10.0)
        ctx.obj["client"] = client
    return client


def _call(
    ctx: click.Context, method: str, path: str, payload: Optional[dict[str, Any]] = None
) -> Any:
    """Call the control API and exit with the mapped code on failure."""
    prefix = get_settings().api_prefix
    try:
        response = _client(ctx).request(method, f"{prefix}/workloads{path}", json=payload)
    except httpx.HTTPError as exc:
        click.echo(f"Error: cannot reach control API: {exc}", err=True)
        sys.exit(EXIT_ERROR)

    if response.status_code != 200:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        click.echo(f"Error: {detail}", err=True)
        sys.exit(STATUS_EXIT_CODES.get(response.status_code, EXIT_ERROR))

    return response.json()


def _print_status(status: dict[str, Any]) -> None:
    counters = status["counters"]
    phase = status["phase"]
    if status.get("reason"):
        phase = f"{phase} ({status['reason']})"

    click.echo(f"Workload:  {status['workload']}")
    click.echo(f"Phase:     {phase}")
    if status.get("message"):
        click.echo(f"Message:   {status['message']}")
    click.echo(
        f"Revision:  current {status.get('current_revision') or '-'}, "
        f"target {status.get('target_revision') or '-'}"
    )
    click.echo(
        f"Replicas:  desired {status['desired_replicas']}, total {counters['total']}, "
        f"ready {counters['ready']} (max {counters['max_total']}, "
        f"min available {counters['min_available']})"
    )
    if status.get("canary_step") is not None:
        click.echo(
            f"Canary:    weight {status['traffic_weight']}%, step {status['canary_step']}, "
            f"failures {status['canary_failures']}"
        )
    for condition in status.get("conditions", []):
        if condition["status"]:
            click.echo(f"Condition: {condition['type']} ({condition['reason']})")


def _emit(ctx: click.Context, status: dict[str, Any]) -> None:
    if ctx.obj.get("output") == "json":
        click.echo(json.dumps(status, indent=2))
    else:
        _print_status(status)


@click.group()
@click.option(
    "--url",
    default=None,
    help="Control API base URL. Defaults to ROLLOUT_CONTROL_URL.",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format.",
)
@click.pass_context
def main(ctx, url, output):
    """Inspect and steer workload rollouts."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("url", url or get_settings().control_url)
    ctx.obj["output"] = output


@main.command()
@click.argument("workload")
@click.pass_context
def status(ctx, workload):
    """Show the rollout status of a workload."""
    _emit(ctx, _call(ctx, "GET", f"/{workload}/status"))


@main.command()
@click.argument("workload")
@click.pass_context
def pause(ctx, workload):
    """Pause the in-flight rollout."""
    _emit(ctx, _call(ctx, "POST", f"/{workload}/pause"))


@main.command()
@click.argument("workload")
@click.pass_context
def resume(ctx, workload):
    """Resume a paused rollout, or roll a failed one forward."""
    _emit(ctx, _call(ctx, "POST", f"/{workload}/resume"))


@main.command()
@click.argument("workload")
@click.pass_context
def promote(ctx, workload):
    """Skip the remaining canary steps and promote."""
    _emit(ctx, _call(ctx, "POST", f"/{workload}/promote"))


@main.command()
@click.argument("workload")
@click.option(
    "--to-revision",
    "revision",
    default="previous",
    show_default=True,
    help="Revision sequence number or id.",
)
@click.pass_context
def rollback(ctx, workload, revision):
    """Roll a workload back to an earlier revision."""
    record = _call(ctx, "POST", f"/{workload}/rollback", {"revision": revision})
    if ctx.obj.get("output") == "json":
        click.echo(json.dumps(record, indent=2))
        return
    click.echo(
        f"Rolling {workload} back to revision {record['to_sequence']} "
        f"(rollback {record['id']})"
    )


@main.command()
@click.argument("workload")
@click.option(
    "--file",
    "-f",
    "spec_file",
    required=True,
    type=click.Path(exists=True),
    help="JSON file with replicas, template and policy.",
)
@click.pass_context
def apply(ctx, workload, spec_file):
    """Declare the desired state of a workload."""
    with open(spec_file) as f:
        try:
            payload = json.load(f)
        except json.JSONDecodeError as exc:
            click.echo(f"Error: invalid spec file: {exc}", err=True)
            sys.exit(EXIT_ERROR)

    spec = _call(ctx, "PUT", f"/{workload}", payload)
    click.echo(f"Applied {workload} generation {spec['generation']}")


@main.command()
@click.argument("workload")
@click.pass_context
def delete(ctx, workload):
    """Delete a workload and tear down its instances."""
    _call(ctx, "DELETE", f"/{workload}")
    click.echo(f"Deleted {workload}")


if __name__ == "__main__":
    main()
