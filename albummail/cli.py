import typer
from typing import Optional

app = typer.Typer(name="albummail")

def _load(config_path: Optional[str]):
    from .config import load_config, ConfigError
    try:
        return load_config(config_path)
    except ConfigError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(2)

@app.command()
def run(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file (environment variables are used when omitted)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Pack and log batches without sending or recording anything"),
    once: bool = typer.Option(False, "--once", help="Run a single cycle even if a schedule is configured"),
    test_mode: bool = typer.Option(False, "--test", "-t", help="Test configuration and connectivity only")
):
    """
    Send new album photos to the configured recipients.

    Use --test to validate configuration and connectivity without sending anything.
    """
    config = _load(config_path)
    source = config_path or "environment"
    typer.echo(f"🚀 Starting album mailer with config: {source}")
    if verbose:
        typer.echo("📝 Verbose mode enabled")

    if test_mode:
        from .validate import ConfigValidator
        typer.echo("\n🔍 Testing configuration...")
        results = ConfigValidator(config).validate_all()
        failed = False
        for result in results.values():
            if result.success:
                typer.echo(f"   ✅ {result.message}")
            else:
                failed = True
                typer.echo(f"   ❌ {result.message}: {result.error}")
        if failed:
            raise typer.Exit(1)
        typer.echo("\n🎉 Configuration test completed!")
        return

    if dry_run:
        typer.echo("🧪 Dry run enabled - nothing will be sent or recorded")

    from .main import run_pipeline
    try:
        run_pipeline(config, verbose=verbose, dry_run=dry_run, once=once)
    except Exception as e:
        typer.echo(f"❌ Run failed: {e}", err=True)
        raise typer.Exit(1)
    typer.echo("✅ Run completed successfully!")

@app.command()
def status(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file (environment variables are used when omitted)"
    )
):
    """
    Show what has been delivered to whom.
    """
    from .pipeline import StateStore, StorageError

    config = _load(config_path)
    pipeline_config = config.get_pipeline_configs()
    recipients = [r.address for r in pipeline_config["deliver"].recipients]

    store = StateStore(pipeline_config["state"], read_only=True)
    try:
        state = store.load(recipients)
    except StorageError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    stats = store.stats(state)
    typer.echo(f"📁 State file: {stats['state_file']}{'' if stats['exists'] else ' (not created yet)'}")
    typer.echo(f"🖼️  Tracked assets: {stats['assets_count']}")
    for recipient in recipients:
        typer.echo(f"   {recipient}: {stats['delivered_per_recipient'].get(recipient, 0)} delivered")

if __name__ == "__main__":
    app()
