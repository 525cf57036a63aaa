from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import typer

from .config import Settings, load_settings
from .encryption import cipher
from .encryption.keys import KeyMaterial
from .errors import OfflineDRMError
from .service import OfflineResourceService
from .utils import media_io

LOGGER = logging.getLogger("offline_drm")

app = typer.Typer(help="Offline resource protection and delivery.")


def _configure_logging(verbose: int) -> None:
    log_level = logging.WARNING
    if verbose >= 2:
        log_level = logging.DEBUG
    elif verbose == 1:
        log_level = logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(name)s: %(message)s")


@app.callback()
def main_options(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "-c", "--config", help="Path to YAML policy file"),
    data_dir: str | None = typer.Option(None, "--data-dir", help="Override the storage directory"),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase verbosity"),
):
    """Offline resource protection and delivery."""
    _configure_logging(verbose)
    try:
        settings = load_settings(config)
        if data_dir:
            settings = settings.with_overrides(data_dir=Path(data_dir).expanduser())
    except OfflineDRMError as e:
        typer.echo(f"ERROR: {e.detail or e.message}", err=True)
        raise typer.Exit(code=1)
    ctx.obj = settings


@contextmanager
def _service(ctx: typer.Context) -> Iterator[OfflineResourceService]:
    settings: Settings = ctx.obj
    try:
        with OfflineResourceService(settings) as service:
            yield service
    except OfflineDRMError as e:
        typer.echo(f"ERROR: {e.message}", err=True)
        if e.detail:
            LOGGER.info("%s", e.detail)
        if getattr(e, "errors", None):
            for err in e.errors:
                typer.echo(f"  {err['field']}: {err['message']}", err=True)
        raise typer.Exit(code=1)


@app.command("request")
def request_resource(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Origin URL of the resource"),
    owner: str = typer.Option(..., "--owner", help="Owner identity"),
    title: str = typer.Option(..., "--title", help="Display title"),
    media_type: str = typer.Option("", "--media-type", help="Media type (detected from the URL if omitted)"),
    course: str | None = typer.Option(None, "--course", help="Course tag"),
    module: str | None = typer.Option(None, "--module", help="Module tag"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Block until the resource is encrypted"),
):
    """Register a resource for offline use and print a one-time access token."""
    kind = media_type or media_io.detect_media_kind(source)
    with _service(ctx) as service:
        grant = service.request_resource(owner, source, kind, title, course, module, wait=wait)
        typer.echo(f"Resource: {grant.resource_id} ({grant.status.value})")
        typer.echo(f"Token:    {grant.token}")


@app.command("list")
def list_resources(
    ctx: typer.Context,
    owner: str = typer.Option(..., "--owner", help="Owner identity"),
):
    """List an owner's offline resources."""
    with _service(ctx) as service:
        summaries = service.list_resources(owner)
        if not summaries:
            typer.echo("No offline resources.")
            return
        for s in summaries:
            typer.echo(
                f"{s.id}  {s.status.value:<8} {s.media_type:<10} {s.size_bytes:>12}  "
                f"expires {s.expires_at.isoformat()}  {s.title}"
                + (f"  [last run failed: {s.last_error}]" if s.last_error else "")
            )


@app.command("fetch")
def fetch_content(
    ctx: typer.Context,
    resource_id: str = typer.Argument(..., help="Resource id"),
    owner: str = typer.Option(..., "--owner", help="Owner identity"),
    output: str = typer.Option("", "-o", "--output", help="Path to write ciphertext"),
):
    """Download the ciphertext of a resource."""
    out_path = Path(output) if output else Path(f"{resource_id}.odrm")
    with _service(ctx) as service:
        token = service.request_token(resource_id, owner)
        stream = service.fetch_content(token, owner)
        with open(out_path, "wb") as fout:
            for chunk in stream:
                fout.write(chunk)
        typer.echo(f"Wrote {stream.size_bytes} bytes to {out_path}")


@app.command("decrypt")
def decrypt(
    input: str = typer.Argument(..., help="Path to downloaded ciphertext"),
    output: str = typer.Option("", "-o", "--output", help="Path to write decrypted file"),
    key: str | None = typer.Option(None, "--key", help="Key material as <key hex>:<nonce hex>"),
    keyfile: str | None = typer.Option(None, "-k", "--keyfile", help="Path to key material file"),
):
    """Decrypt a downloaded resource locally."""
    input_path = Path(input)
    if not input_path.exists():
        raise typer.BadParameter(f"Input file not found: {input}")
    if keyfile:
        key_path = Path(keyfile)
        if not key_path.exists():
            raise typer.BadParameter(f"Key file not found: {keyfile}")
        key = key_path.read_text(encoding="ascii")
    if not key:
        raise typer.BadParameter("Key material required to decrypt (use --key or --keyfile)")
    try:
        key_material = KeyMaterial.decode(key)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    out_path = Path(output) if output else input_path.with_suffix(".dec")
    typer.echo(f"Decrypting file: {input_path} -> {out_path}")
    try:
        metadata = cipher.decrypt_stream(str(input_path), str(out_path), key_material)
    except cipher.CorruptCiphertext as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Decryption complete. Metadata: {metadata}")


@app.command("delete")
def delete_resource(
    ctx: typer.Context,
    resource_id: str = typer.Argument(..., help="Resource id"),
    owner: str = typer.Option(..., "--owner", help="Owner identity"),
):
    """Delete a resource's ciphertext and record."""
    with _service(ctx) as service:
        service.delete_resource(resource_id, owner)
        typer.echo(f"Deleted {resource_id}")


@app.command("revoke")
def revoke_resource(
    ctx: typer.Context,
    resource_id: str = typer.Argument(..., help="Resource id"),
):
    """Revoke a resource. Outstanding tokens stop working immediately."""
    with _service(ctx) as service:
        service.revoke_resource(resource_id)
        typer.echo(f"Revoked {resource_id}")


@app.command("sweep")
def sweep(ctx: typer.Context):
    """Expire due resources, evict expired tokens and remove orphaned blobs."""
    with _service(ctx) as service:
        report = service.sweep()
        for name, value in report.to_dict().items():
            typer.echo(f"{name}: {value}")


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
):
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    with _service(ctx) as service:
        service.start(background_sweep=True)
        typer.echo(f"Serving offline resources from {service.settings.data_dir} on {host}:{port}")
        uvicorn.run(create_app(service), host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
