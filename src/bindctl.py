#!/usr/bin/env python3
"""
CLI tool for the BindInfo operator.
Provides a kubectl-like interface to the operator's REST API.
"""

import json
import sys

import click
import requests
import yaml
from tabulate import tabulate

from models import PLURALS

API_BASE_URL = "http://localhost:8000/api/v1"

KIND_TO_PLURAL = {kind: plural for plural, kind in PLURALS.items()}

# Accepted spellings for each resource type
ALIASES = {
    **{plural: plural for plural in PLURALS},
    **{kind.lower(): plural for kind, plural in KIND_TO_PLURAL.items()},
    "bi": "bindinfos",
    "reg": "registries",
    "req": "requests",
    "cm": "configmaps",
}


class BindInfoOperatorCLI:
    """CLI client for the BindInfo operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
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
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def object_path(self, plural: str, namespace: str, name: str) -> str:
        return f"/namespaces/{namespace}/{plural}/{name}"


def resolve_plural(resource: str) -> str:
    plural = ALIASES.get(resource.lower())
    if plural is None:
        raise click.BadParameter(
            f"unknown resource type '{resource}' (expected one of: {', '.join(PLURALS)})"
        )
    return plural


def load_manifests(filename: str):
    """Read one or more manifests from a YAML or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            documents = data if isinstance(data, list) else [data]
        else:
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
    return documents


def summarize(plural: str, obj: dict) -> list:
    """Table row for one object"""
    meta = obj.get("metadata", {})
    row = [meta.get("namespace", ""), meta.get("name", "")]
    if plural == "bindinfos":
        spec = obj.get("spec", {})
        status = obj.get("status", {})
        row += [
            spec.get("operand", ""),
            f"{spec.get('registryNamespace', '')}/{spec.get('registry', '')}",
            status.get("phase", ""),
        ]
    elif plural == "registries":
        row += [len(obj.get("spec", {}).get("operators", []))]
    elif plural == "requests":
        row += [len(obj.get("spec", {}).get("requests", []))]
    elif plural == "secrets":
        row += [
            obj.get("type", ""),
            len(obj.get("data", {})) + len(obj.get("stringData", {})),
        ]
    else:
        row += [len(obj.get("data", {}))]
    controller = next(
        (ref for ref in meta.get("ownerReferences", []) if ref.get("controller")),
        None,
    )
    row.append(f"{controller['kind']}/{controller['name']}" if controller else "")
    return row


TABLE_HEADERS = {
    "bindinfos": ["NAMESPACE", "NAME", "OPERAND", "REGISTRY", "PHASE"],
    "registries": ["NAMESPACE", "NAME", "OPERATORS"],
    "requests": ["NAMESPACE", "NAME", "REQUESTS"],
    "secrets": ["NAMESPACE", "NAME", "TYPE", "DATA"],
    "configmaps": ["NAMESPACE", "NAME", "DATA"],
}


def echo_object(obj, output: str) -> None:
    if output == "yaml":
        click.echo(yaml.safe_dump(obj, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(obj, indent=2))


@click.group()
@click.option(
    "--server",
    "-s",
    envvar="BINDCTL_SERVER",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API",
)
@click.pass_context
def cli(ctx, server):
    """BindInfo operator CLI - kubectl-like interface for BindInfos and their dependencies"""
    ctx.obj = BindInfoOperatorCLI(server)


@cli.command()
@click.option("--filename", "-f", required=True, type=click.Path(exists=True))
@click.option("--namespace", "-n", default="default", help="Namespace for manifests without one")
@click.pass_obj
def apply(client, filename, namespace):
    """Create or update resources from a YAML/JSON file"""
    failed = False
    for manifest in load_manifests(filename):
        kind = manifest.get("kind", "")
        plural = KIND_TO_PLURAL.get(kind)
        meta = manifest.get("metadata") or {}
        name = meta.get("name")
        if plural is None or not name:
            click.echo(f"Skipping manifest with kind '{kind}' and name '{name}'", err=True)
            failed = True
            continue

        ns = meta.get("namespace") or namespace
        result = client._make_request(
            "PUT", client.object_path(plural, ns, name), json=manifest
        )
        if result is not None:
            click.echo(f"{plural}/{name} applied in namespace {ns}")
        else:
            failed = True

    if failed:
        sys.exit(1)


@cli.command()
@click.argument("resource")
@click.option("--namespace", "-n", default=None, help="Only list this namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client, resource, namespace, output):
    """List resources of one type"""
    plural = resolve_plural(resource)
    params = {"namespace": namespace} if namespace else {}

    result = client._make_request("GET", f"/{plural}", params=params)
    if result is None:
        sys.exit(1)

    items = result.get("items", [])
    if output != "table":
        echo_object(items, output)
        return
    if not items:
        click.echo("No resources found")
        return

    headers = TABLE_HEADERS[plural] + ["CONTROLLED BY"]
    rows = [summarize(plural, item) for item in items]
    click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


@cli.command()
@click.argument("resource")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml")
@click.pass_obj
def describe(client, resource, name, namespace, output):
    """Show one resource in full"""
    plural = resolve_plural(resource)

    result = client._make_request("GET", client.object_path(plural, namespace, name))
    if result is None:
        sys.exit(1)
    echo_object(result, output)

    if plural == "bindinfos":
        events = client._make_request(
            "GET", "/events", params={"namespace": namespace, "name": name, "limit": 10}
        )
        if events:
            click.echo("Events:")
            rows = [
                [e["event_type"], e["reason"], e["timestamp"], e["message"]]
                for e in events
            ]
            click.echo(
                tabulate(rows, headers=["TYPE", "REASON", "TIME", "MESSAGE"], tablefmt="plain")
            )


@cli.command()
@click.argument("resource")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this resource?")
@click.pass_obj
def delete(client, resource, name, namespace):
    """Delete a resource (copies it owns are left in place)"""
    plural = resolve_plural(resource)

    result = client._make_request("DELETE", client.object_path(plural, namespace, name))
    if result is None:
        sys.exit(1)
    click.echo(f"{plural}/{name} deleted")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, name, namespace):
    """Manually trigger reconciliation for a BindInfo"""
    result = client._make_request(
        "POST", f"{client.object_path('bindinfos', namespace, name)}/reconcile"
    )
    if result is None:
        sys.exit(1)
    click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, name, namespace, limit):
    """Show reconciliation history for a BindInfo"""
    result = client._make_request(
        "GET",
        f"{client.object_path('bindinfos', namespace, name)}/history",
        params={"limit": limit},
    )
    if result is None:
        sys.exit(1)

    headers = ["Generation", "Success", "Phase", "Duration", "Time", "Error"]
    rows = []
    for entry in result:
        duration = entry.get("duration_seconds")
        rows.append(
            [
                entry["generation"],
                "✓" if entry["success"] else "✗",
                entry["phase"],
                f"{duration:.2f}s" if duration is not None else "",
                entry["reconcile_time"],
                entry.get("error_message") or "",
            ]
        )

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.option("--namespace", "-n", default=None)
@click.option("--name", default=None, help="Only events about this object")
@click.option("--limit", "-l", default=50, help="Number of events to show")
@click.pass_obj
def events(client, namespace, name, limit):
    """Show recently recorded events"""
    params = {"limit": limit}
    if namespace:
        params["namespace"] = namespace
    if name:
        params["name"] = name

    result = client._make_request("GET", "/events", params=params)
    if result is None:
        sys.exit(1)
    if not result:
        click.echo("No events found")
        return

    headers = ["TIME", "TYPE", "REASON", "OBJECT", "MESSAGE"]
    rows = [
        [
            e["timestamp"],
            e["event_type"],
            e["reason"],
            f"{e['involved_kind']}/{e['involved_namespace']}/{e['involved_name']}",
            e["message"],
        ]
        for e in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


if __name__ == "__main__":
    cli()
