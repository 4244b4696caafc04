"""
Civitai Mirror CLI

Thin wrapper around the Store facade providing a command-line interface.

Usage:
    civitai-mirror scan [--full] [--check] [--repair] [--json]
    civitai-mirror check [--json]
    civitai-mirror repair [--json]
    civitai-mirror versions [--json]
    civitai-mirror delete <versionId>... [--yes] [--json]
    civitai-mirror disk-status <modelId> [--json]

The mirror base directory and database come from CIVITAI_MIRROR_BASE_PATH /
CIVITAI_MIRROR_DATABASE_URL or ~/.civitai-mirror/config.json.

Deletion tokens live in memory, so `delete` requests and confirms within one
invocation. Pending-token stats are served by the HTTP API only.
"""

from __future__ import annotations

import json as json_module
from typing import List

import typer

from .errors import BatchDeleteError, CatalogError, Err
from .models import ScanResult

app = typer.Typer(
    name="civitai-mirror",
    help="Civitai Mirror - local model store maintenance",
    no_args_is_help=True,
)


def get_store():
    """Get or create Store instance."""
    from . import Store
    return Store()


def output_json(data: dict) -> None:
    """Output data as JSON."""
    typer.echo(json_module.dumps(data, indent=2, default=str))


def output_error(message: str) -> None:
    """Output error message."""
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)


def output_success(message: str) -> None:
    """Output success message."""
    typer.secho(message, fg=typer.colors.GREEN)


def output_warning(message: str) -> None:
    """Output warning message."""
    typer.secho(f"Warning: {message}", fg=typer.colors.YELLOW)


def _print_scan(result: ScanResult) -> None:
    mode = "incremental" if result.incremental else "full"
    output_success(f"Scan complete ({mode}, {result.scan_duration_ms}ms)")
    typer.echo(f"  Files scanned:    {result.files_scanned}")
    typer.echo(f"  New records:      {result.new_records_added}")
    typer.echo(f"  Existing records: {result.existing_records_found}")
    if result.repaired_records:
        typer.echo(f"  Repaired records: {result.repaired_records}")
    for skipped in result.skipped_files:
        output_warning(f"Skipped {skipped.path}: {skipped.reason}")
    for failed in result.failed_files:
        output_error(f"Failed {failed.path}: {failed.reason}")
    inconsistent = [r for r in result.consistency if not r.is_consistent]
    if result.consistency:
        typer.echo(f"  Consistency: {len(result.consistency)} checked, {len(inconsistent)} inconsistent")


# =============================================================================
# Reconciliation Commands
# =============================================================================

@app.command("scan")
def scan_command(
    full: bool = typer.Option(False, "--full", help="Ignore the watermark and scan everything"),
    check: bool = typer.Option(False, "--check", help="Run a consistency check afterwards"),
    repair: bool = typer.Option(False, "--repair", help="Repair inconsistent records afterwards"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Index newly downloaded model versions."""
    store = get_store()
    result = store.scan(incremental=not full, check_consistency=check, repair=repair)

    if isinstance(result, Err):
        output_error(str(result.error))
        raise typer.Exit(1)

    if json:
        output_json(result.value.model_dump(mode="json"))
    else:
        _print_scan(result.value)


@app.command("check")
def check_command(
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Compare indexed versions with manifests and files on disk."""
    store = get_store()
    result = store.check_consistency()

    if isinstance(result, Err):
        output_error(str(result.error))
        raise typer.Exit(1)

    reports = result.value
    if json:
        output_json({"reports": [r.model_dump(mode="json") for r in reports]})
        return

    inconsistent = [r for r in reports if not r.is_consistent]
    if not inconsistent:
        output_success(f"All {len(reports)} version(s) consistent")
        return

    output_warning(f"{len(inconsistent)} of {len(reports)} version(s) inconsistent")
    for report in inconsistent:
        typer.echo(f"  Model {report.model_id} / version {report.version_id}"
                   f"{'' if report.json_valid else ' (manifest invalid)'}")
        for entry in report.missing_files:
            typer.echo(f"    - missing: {entry}")
        for entry in report.extra_files:
            typer.echo(f"    + extra:   {entry}")


@app.command("repair")
def repair_command(
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Re-sync inconsistent records from their manifests."""
    store = get_store()
    result = store.repair()

    if isinstance(result, Err):
        output_error(str(result.error))
        raise typer.Exit(1)

    repair = result.value
    if json:
        output_json(repair.model_dump(mode="json"))
        return

    output_success(f"Repaired {repair.repaired} of {repair.total} inconsistent version(s)")
    for error in repair.errors:
        output_warning(error)
    if repair.failed:
        raise typer.Exit(1)


@app.command("versions")
def versions_command(
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List indexed model versions."""
    store = get_store()
    records = store.list_versions()

    if json:
        output_json({"versions": [r.model_dump(mode="json") for r in records]})
        return

    if not records:
        typer.echo("No versions indexed.")
        return
    typer.echo(f"Found {len(records)} version(s):")
    for record in records:
        typer.echo(f"  - {record.model_type}/{record.model_id}/{record.version_id}  {record.name}")


# =============================================================================
# Deletion Commands
# =============================================================================

@app.command("delete")
def delete_command(
    version_ids: List[int] = typer.Argument(..., help="Model version ids to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Delete model versions from the index and the disk."""
    if json and not yes:
        output_error("--json requires --yes")
        raise typer.Exit(2)

    store = get_store()
    request = store.request_deletion(version_ids)
    if isinstance(request, Err):
        output_error(str(request.error))
        raise typer.Exit(1)

    confirmation = request.value
    if not json:
        typer.echo("The following will be deleted:")
        for item in confirmation.items:
            state = "" if item.exists else " (not on disk)"
            typer.echo(
                f"  - {item.model_name} / {item.version_name} [{item.version_id}]: "
                f"{item.file_count} file(s), {item.image_count} image(s){state}"
            )
            typer.echo(f"    {item.directory_path}")

    if not yes and not typer.confirm("Proceed?"):
        typer.echo("Aborted.")
        raise typer.Exit(0)

    result = store.confirm_deletion(confirmation.token)
    if isinstance(result, Err):
        error = result.error
        if isinstance(error, BatchDeleteError):
            if json:
                output_json({
                    "total": error.total,
                    "succeeded": error.succeeded,
                    "failed": error.failed,
                    "failed_items": error.failed_items,
                })
            for item in error.failed_items:
                output_error(f"Version {item['version_id']}: {item['error']}")
        output_error(str(error))
        raise typer.Exit(1)

    summary = result.value
    if json:
        output_json(summary.model_dump(mode="json"))
        return

    output_success(f"Deleted {summary.succeeded} of {summary.total} version(s)")
    for item in summary.results:
        extra = ", model removed" if item.model_deleted else ""
        typer.echo(
            f"  - {item.version_id}: database={item.database_deleted}, "
            f"files={item.files_deleted}{extra}"
        )



@app.command("disk-status")
def disk_status_command(
    model_id: int = typer.Argument(..., help="Catalog model id"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show which versions of a catalog model have files on disk."""
    store = get_store()
    try:
        versions = store.disk_status(model_id)
    except CatalogError as e:
        output_error(str(e))
        raise typer.Exit(1)

    if json:
        output_json({"model_id": model_id, "versions": [v.model_dump(mode="json") for v in versions]})
        return

    if not versions:
        typer.echo(f"No versions of model {model_id} on disk.")
        return
    for version in versions:
        typer.echo(f"  - version {version.version_id}: files {version.files_on_disk}")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
