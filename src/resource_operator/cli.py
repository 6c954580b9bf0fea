"""Resource Operator CLI (rop).

Manage desired-state objects in the store and run the operator locally.

Usage:
    rop apply -f zone.yaml          # Create or update an object from a manifest
    rop get DnsZone                 # List objects of a kind
    rop get ContainerApp web -o yaml
    rop delete DnsZone example      # Request deletion
    rop reconcile DnsZone example   # Run a single reconcile pass
    rop run                         # Run the operator until interrupted
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import DEFAULT_STORE_DIR, Config, ConfigurationError
from .manifests import ManifestLoadError, dump_manifest, load_manifest
from .models import DEFAULT_NAMESPACE, OBJECT_REGISTRY, ObjectKey
from .store import FileStore, StoreError

STATUS_COLUMNS = ("NAMESPACE", "NAME", "GENERATION", "OBSERVED", "READY", "PENDING", "DELETING")


def resolve_kind(kind: str) -> str:
    """Resolve a kind name case-insensitively.

    Raises:
        click.BadParameter: If the kind is unknown.
    """
    for registered in OBJECT_REGISTRY:
        if registered.lower() == kind.lower():
            return registered
    raise click.BadParameter(
        f"Unknown kind '{kind}'. Valid kinds: {list(OBJECT_REGISTRY)}", param_hint="KIND"
    )


def open_store(store_dir: Path) -> FileStore:
    if not store_dir.is_dir():
        raise click.ClickException(f"Store directory does not exist: {store_dir}")
    return FileStore(store_dir)


store_dir_option = click.option(
    "--store-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="STORE_DIR",
    default=DEFAULT_STORE_DIR,
    show_default=True,
    help="Desired-state store directory",
)
namespace_option = click.option(
    "--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True, help="Object namespace"
)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="rop")
def cli() -> None:
    """Resource Operator CLI (rop).

    Reconciles Azure DNS zones and Container Apps against manifests
    kept in a local desired-state store.
    """
    pass


# =============================================================================
# Store Commands
# =============================================================================


@cli.command()
@click.option(
    "--filename",
    "-f",
    "filenames",
    multiple=True,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Manifest file to apply (repeatable)",
)
@store_dir_option
def apply(filenames: tuple[Path, ...], store_dir: Path) -> None:
    """Create or update objects from manifest files."""
    store = open_store(store_dir)
    for filename in filenames:
        try:
            obj = load_manifest(filename)
            stored = store.apply(obj)
        except (ManifestLoadError, StoreError) as e:
            raise click.ClickException(str(e)) from e
        click.echo(
            f"{stored.kind}/{stored.key} applied (generation {stored.metadata.generation})"
        )


@cli.command()
@click.argument("kind")
@click.argument("name", required=False)
@namespace_option
@click.option(
    "--output", "-o", type=click.Choice(["table", "yaml"]), default="table", show_default=True
)
@store_dir_option
def get(kind: str, name: str | None, namespace: str, output: str, store_dir: Path) -> None:
    """Show objects of a kind, or a single object by name."""
    kind = resolve_kind(kind)
    store = open_store(store_dir)

    try:
        if name:
            objects = [store.get(kind, ObjectKey(namespace=namespace, name=name))]
        else:
            objects = store.list_objects(kind)
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    if output == "yaml":
        click.echo("---\n".join(dump_manifest(obj) for obj in objects), nl=False)
        return

    if not objects:
        click.echo(f"No {kind} objects found")
        return

    rows = [STATUS_COLUMNS]
    for obj in objects:
        pending = sum(1 for record in obj.status.operations if not record.done)
        rows.append(
            (
                obj.metadata.namespace,
                obj.metadata.name,
                str(obj.metadata.generation),
                str(obj.status.observed_generation or "-"),
                str(obj.status.ready),
                str(pending),
                str(obj.deletion_requested),
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(STATUS_COLUMNS))]
    for row in rows:
        click.echo("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


@cli.command()
@click.argument("kind")
@click.argument("name")
@namespace_option
@store_dir_option
def delete(kind: str, name: str, namespace: str, store_dir: Path) -> None:
    """Request deletion of an object."""
    kind = resolve_kind(kind)
    store = open_store(store_dir)
    key = ObjectKey(namespace=namespace, name=name)

    try:
        erased = store.request_deletion(kind, key)
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    if erased:
        click.echo(f"{kind}/{key} deleted")
    else:
        click.echo(f"{kind}/{key} marked for deletion, waiting for remote cleanup")


# =============================================================================
# Operator Commands
# =============================================================================


@cli.command()
@click.argument("kind")
@click.argument("name")
@namespace_option
def reconcile(kind: str, name: str, namespace: str) -> None:
    """Run a single reconcile pass for one object.

    Uses the same environment configuration and managed identity as the
    operator itself.
    """
    from .main import build_kinds, setup_logging
    from .reconciler import Disposition, Reconciler
    from .security import SecretlessViolationError, get_credential

    kind = resolve_kind(kind)
    try:
        config = Config.from_env()
        setup_logging(config.log_level, config.json_logging)
        if kind not in config.enabled_kinds:
            raise click.ClickException(f"Kind {kind} is not enabled (ENABLED_KINDS)")
        credential = get_credential(config.managed_identity_client_id)
        resource_kinds = build_kinds(config, credential)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    except SecretlessViolationError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(2)

    resource_kind = next(k for k in resource_kinds if k.name == kind)
    reconciler = Reconciler(resource_kind, FileStore(config.store_dir), config)
    result = asyncio.run(reconciler.reconcile(ObjectKey(namespace=namespace, name=name)))

    click.echo(f"disposition: {result.disposition.value}")
    if result.requeue_after is not None:
        click.echo(f"requeue after: {result.requeue_after}s")
    if result.remote_calls:
        click.echo(f"remote calls: {', '.join(result.remote_calls)}")
    if result.error is not None:
        click.secho(f"error: {result.error}", fg="red", err=True)
    if result.disposition in (Disposition.RETRY, Disposition.FAIL):
        sys.exit(1)


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM or SIGINT."""
    from .main import main

    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
