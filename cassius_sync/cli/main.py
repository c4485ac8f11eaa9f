import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress
from rich.table import Table

from cassius_sync.config.manager import ConfigManager, configure_logging
from cassius_sync.database.connection import DatabaseManager
from cassius_sync.errors import AppError
from cassius_sync.services.calendar_sync_service import CalendarSyncService
from cassius_sync.services.conflict_store import ConflictStore
from cassius_sync.services.integration_manager import IntegrationManager
from cassius_sync.services.patient_import import PatientImportPipeline

console = Console()


def open_database(config: ConfigManager) -> DatabaseManager:
    config.ensure_directories()
    db = DatabaseManager(url=config.get('app.database_url'))
    db.init_database()
    return db


def stats_table(title: str, rows) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="dim")
    table.add_column("Count")
    for label, value in rows:
        table.add_row(label, str(value))
    return table


@click.group()
@click.option('--env-file', '-e', help='Path to a .env file')
@click.pass_context
def cli(ctx, env_file):
    """Cassius Sync - Google Calendar sync and patient import"""
    config = ConfigManager(env_file)
    configure_logging(config)
    ctx.obj = config


@cli.command()
@click.pass_obj
def setup(config):
    """Run the setup wizard"""
    config.setup_wizard()
    if config.validate():
        console.print("\nStart the API with: cassius-sync serve")


@cli.command('init-db')
@click.pass_obj
def init_db(config):
    """Create the database tables"""
    db = open_database(config)
    console.print(f"[green]Database ready at {db.url}[/green]")


@cli.command()
@click.argument('tenant_id')
@click.pass_obj
def sync(config, tenant_id):
    """Push a tenant's appointments to its Google calendar"""
    db = open_database(config)
    with db.get_session() as session:
        try:
            manager = IntegrationManager(session, tenant_id, config)
            service = CalendarSyncService(session, tenant_id, manager.adapter(), config)
            with Progress() as progress:
                task = progress.add_task("[cyan]Syncing appointments...", total=1)
                status = service.sync_now()
                progress.update(task, advance=1)
        except AppError as e:
            console.print(f"[bold red]Sync failed: {e.message}[/bold red]")
            raise SystemExit(1)

    console.print("\n[bold green]Sync Complete![/bold green]")
    console.print(stats_table("Export", [
        ("Created", status.created),
        ("Updated", status.updated),
        ("Skipped", status.skipped),
        ("Failed", status.failed),
    ]))
    if status.errors:
        console.print("\n[bold red]Errors:[/bold red]")
        for error in status.errors:
            console.print(f"- {error}")


@cli.command('import-patients')
@click.argument('tenant_id')
@click.argument('csv_file', type=click.File('r', encoding='utf-8-sig'))
@click.option('--run', 'run_import', is_flag=True, help='Write the valid rows after validation')
@click.pass_obj
def import_patients(config, tenant_id, csv_file, run_import):
    """Validate (and optionally import) a patient CSV file"""
    content = csv_file.read()
    db = open_database(config)
    with db.get_session() as session:
        pipeline = PatientImportPipeline(session, tenant_id, sample_limit=config.get('import.sample_limit', 20))
        try:
            job = pipeline.upload(content, csv_file.name)
            validation = pipeline.validate(job.id)
        except AppError as e:
            console.print(f"[bold red]{e.message}[/bold red]")
            raise SystemExit(1)

        stats = validation.stats
        console.print(stats_table(f"Validation of {csv_file.name}", [
            ("Rows", stats.total),
            ("OK", stats.ok),
            ("Warnings", stats.warning),
            ("Errors", stats.error),
            ("To create", stats.to_create),
            ("To update", stats.to_update),
        ]))
        for sample in validation.samples.errors:
            messages = "; ".join(f"{issue.field}: {issue.message}" for issue in sample.errors)
            console.print(f"[red]Line {sample.row}[/red] {messages}")

        if not run_import:
            console.print(f"\nJob [bold]{job.id}[/bold] validated. Re-run with --run to import.")
            return

        try:
            result = pipeline.run(job.id)
        except AppError as e:
            console.print(f"[bold red]{e.message}[/bold red]")
            raise SystemExit(1)

        console.print(stats_table("Import", [
            ("Created", result.created),
            ("Updated", result.updated),
            ("Skipped", result.skipped),
            ("Failed", result.failed),
            ("Invalid", result.invalid),
        ]))
        for failure in result.failures:
            console.print(f"[red]Line {failure.row}[/red] {failure.message}")


@cli.command()
@click.argument('tenant_id')
@click.option('--status', '-s', type=click.Choice(['open', 'resolved', 'ignored']), default=None)
@click.pass_obj
def conflicts(config, tenant_id, status):
    """List sync conflicts"""
    db = open_database(config)
    with db.get_session() as session:
        items = ConflictStore(session, tenant_id).list(status)

        if not items:
            console.print("[yellow]No conflicts found[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Id", style="dim")
        table.add_column("Reason")
        table.add_column("Event", style="dim")
        table.add_column("Appointment", style="dim")
        table.add_column("Status")
        table.add_column("Created", style="dim")
        for conflict in items:
            table.add_row(
                conflict.id,
                conflict.reason,
                conflict.external_id or "",
                conflict.internal_id or "",
                conflict.status,
                conflict.created_at.strftime("%Y-%m-%d %H:%M")
            )
        console.print(table)


@cli.command()
@click.argument('tenant_id')
@click.argument('conflict_id')
@click.argument('status', type=click.Choice(['open', 'resolved', 'ignored']))
@click.option('--resolution', '-r', default=None, help='Action taken, e.g. keep_external')
@click.option('--user', '-u', 'user_id', default=None, help='Operator recorded as resolver')
@click.pass_obj
def resolve(config, tenant_id, conflict_id, status, resolution, user_id):
    """Change the status of a conflict"""
    db = open_database(config)
    with db.get_session() as session:
        try:
            conflict = ConflictStore(session, tenant_id).update_status(conflict_id, status, resolution, user_id)
            session.commit()
        except AppError as e:
            console.print(f"[bold red]{e.message}[/bold red]")
            raise SystemExit(1)
        console.print(Panel.fit(
            f"[bold]{conflict.reason}[/bold]\nStatus: {conflict.status}\nResolution: {conflict.resolution or '-'}",
            title=f"Conflict {conflict.id}"
        ))


@cli.command()
@click.option('--host', default='0.0.0.0')
@click.option('--port', default=8000, type=int)
def serve(host, port):
    """Start the HTTP API"""
    from cassius_sync.api.main import serve as run_server
    run_server(host=host, port=port)


if __name__ == '__main__':
    cli()
