"""CLI for proctorbox."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from . import __version__
from .capture.service import CaptureService
from .config import Settings, load_settings
from .errors import ProctorboxError
from .log_setup import setup_logging
from .models import CaptureFailed, CaptureJob, SourceKind, TriggerKind
from .runtime import DockerRuntime
from .sandbox_manager import SandboxLifecycleManager
from .storage import FileArtifactStore, JsonRecordStore

console = Console()


def _settings(config_path: Optional[str]) -> Settings:
    load_dotenv()
    settings = load_settings(config_path)
    setup_logging(settings.log_level, settings.log_dir)
    return settings


def _manager(settings: Settings) -> SandboxLifecycleManager:
    rt = settings.runtime
    return SandboxLifecycleManager(
        rt,
        DockerRuntime(base_url=rt.docker_base_url, timeout=rt.client_timeout),
        record_store=JsonRecordStore(settings.records_path),
        workspace_template=settings.workspace_template,
        workspace_root=settings.workspace_root,
    )


@click.group()
@click.version_option(version=__version__, prog_name="proctorbox")
def cli():
    """Proctorbox – per-user code sandboxes with integrity captures."""
    pass


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML settings file")
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int]):
    """Run the HTTP coordinator."""
    import uvicorn

    from .api import create_app

    settings = _settings(config_path)
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[bold]proctorbox[/bold] listening on http://{host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port)


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML settings file")
def sandboxes(config_path: Optional[str]):
    """List sandboxes recorded by the coordinator."""
    settings = _settings(config_path)
    records = JsonRecordStore(settings.records_path).load_all()
    if not records:
        console.print("[dim]No sandboxes recorded[/dim]")
        return

    table = Table(title="Sandboxes")
    table.add_column("Owner", style="cyan")
    table.add_column("Sandbox")
    table.add_column("Endpoint", style="green")
    table.add_column("Subject")
    table.add_column("Status")
    for r in sorted(records, key=lambda r: r.created_at):
        table.add_row(r.owner_id, r.sandbox_id[:12], r.endpoint, r.subject_label, r.status.value)
    console.print(table)


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML settings file")
@click.confirmation_option(prompt="Remove every recorded sandbox container?")
def cleanup(config_path: Optional[str]):
    """Remove sandboxes left behind by a stopped coordinator."""
    settings = _settings(config_path)
    try:
        removed = _manager(settings).recover()
    except ProctorboxError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    for record in removed:
        console.print(f"[green]✓ Removed {record.name or record.sandbox_id[:12]} ({record.owner_id})[/green]")
    console.print(f"{len(removed)} sandbox(es) removed")


@cli.command()
@click.argument("endpoint", required=False, default="")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML settings file")
@click.option("--owner", "-o", required=True, help="Owner id recorded on the artifact")
@click.option("--subject", "-s", default="", help="Subject label")
@click.option("--desktop", is_flag=True, help="Capture the full desktop instead of a sandbox")
@click.option("--out", type=click.Path(file_okay=False), default=None, help="Artifact directory")
def capture(
    endpoint: str,
    config_path: Optional[str],
    owner: str,
    subject: str,
    desktop: bool,
    out: Optional[str],
):
    """Capture one sandbox endpoint (or the desktop) and store the artifact."""
    settings = _settings(config_path)
    if not desktop and not endpoint:
        raise click.UsageError("ENDPOINT is required unless --desktop is given")

    store = FileArtifactStore(Path(out) if out else settings.artifact_dir)
    service = CaptureService(settings.capture, store, credential=settings.runtime.shared_credential)
    job = CaptureJob(
        target_endpoint=endpoint,
        owner_id=owner,
        subject_label=subject,
        trigger_kind=TriggerKind.MANUAL,
        source_kind=SourceKind.FULL_DESKTOP if desktop else SourceKind.SANDBOX_FRAME,
    )

    async def run():
        try:
            return await service.capture(job)
        finally:
            await service.close()

    outcome = asyncio.run(run())
    if isinstance(outcome, CaptureFailed):
        console.print(f"[red]✗ Capture failed ({outcome.category.value}): {outcome.reason}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ {outcome.filename}[/green] ({outcome.size_bytes} bytes)")
    console.print(f"  stored in {store.path_for(outcome)}")


@cli.command("config")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML settings file")
def show_config(config_path: Optional[str]):
    """Print the effective settings."""
    settings = _settings(config_path)
    console.print(
        yaml.safe_dump(settings.to_dict(), sort_keys=False),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def main():
    cli()


if __name__ == "__main__":
    main()
