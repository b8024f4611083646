#!/usr/bin/env python3
"""
CLI tool for the EMQX operator
Provides a kubectl-like view of broker clusters through the operator's HTTP API
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("BROKERCTL_API_URL", "http://localhost:8000/api/v1")


class BrokerOperatorCLI:
    """CLI client for the EMQX operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        kwargs.setdefault("timeout", 10)
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def cluster_path(kind: str, namespace: str, name: str) -> str:
    return f"/clusters/{kind}/{namespace}/{name}"


def cluster_rows(clusters, wide: bool = False):
    rows = []
    for cluster in clusters:
        row = [
            cluster["namespace"],
            cluster["name"],
            cluster["kind"],
            f"{cluster['ready_replicas']}/{cluster['replicas']}",
            "True" if cluster["running"] else "False",
            cluster.get("running_reason") or "",
        ]
        if wide:
            row.append(cluster.get("reconciled_reason") or "")
            row.append(cluster.get("last_reconciled_at") or "Never")
        rows.append(row)
    return rows


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Operator API base URL")
@click.pass_context
def cli(ctx, api_url):
    """EMQX operator CLI - kubectl-like view of broker clusters"""
    ctx.obj = BrokerOperatorCLI(api_url)


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only list this namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, namespace, output):
    """List broker clusters"""
    params = {"namespace": namespace} if namespace else None
    result = client._make_request("GET", "/clusters", params=params)
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["NAMESPACE", "NAME", "KIND", "READY", "RUNNING", "REASON"]
    if output == "wide":
        headers += ["RECONCILED", "LAST RECONCILE"]
    click.echo(
        tabulate(cluster_rows(result, wide=output == "wide"), headers=headers, tablefmt="plain")
    )


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, kind, name, namespace, output):
    """Describe a cluster including node statuses and conditions"""
    result = client._make_request("GET", cluster_path(kind, namespace, name))
    if result:
        if output == "yaml":
            click.echo(yaml.safe_dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def nodes(client, kind, name, namespace):
    """Show the broker members of a cluster"""
    result = client._make_request("GET", cluster_path(kind, namespace, name))
    if not result:
        return

    headers = ["POD", "NODE", "STATUS", "VERSION", "OTP", "READY"]
    rows = [
        [
            node["podName"],
            node["node"],
            node["nodeStatus"],
            node.get("version", ""),
            node.get("otpRelease", ""),
            "✓" if node["ready"] else "✗",
        ]
        for node in result["status"].get("nodeStatuses", [])
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def conditions(client, kind, name, namespace):
    """Show the status conditions of a cluster"""
    result = client._make_request("GET", cluster_path(kind, namespace, name))
    if not result:
        return

    headers = ["TYPE", "STATUS", "REASON", "MESSAGE", "LAST TRANSITION"]
    rows = [
        [c["type"], c["status"], c["reason"], c["message"], c["lastTransitionTime"]]
        for c in result["status"].get("conditions", [])
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, kind, name, namespace):
    """Manually trigger reconciliation for a cluster"""
    result = client._make_request(
        "POST", f"{cluster_path(kind, namespace, name)}/reconcile"
    )
    if result:
        click.echo(f"Reconciliation triggered for {result['cluster']}")


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, kind, name, namespace, follow, interval):
    """Show readiness of a cluster"""

    def show_status():
        result = client._make_request("GET", cluster_path(kind, namespace, name))
        if result:
            click.clear()
            click.echo(f"Cluster: {result['namespace']}/{result['name']} ({result['kind']})")
            click.echo(f"Ready: {result['ready_replicas']}/{result['replicas']}")
            click.echo(f"Running: {result['running']} ({result.get('running_reason') or 'N/A'})")
            click.echo(f"Reconciled: {result.get('reconciled_reason') or 'N/A'}")
            click.echo(f"Last Reconcile: {result.get('last_reconciled_at') or 'Never'}")

            if result["running"]:
                click.echo("\n✓ Cluster is running")
            else:
                click.echo("\n⚠️  Cluster is not ready yet")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
