"""Command-line interface for the cloud backup application."""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from . import __version__
from .auth.cognito_auth import (
    Authenticated,
    AuthStage,
    Authenticator,
    ChallengeNewPassword,
    ChallengeSecondFactor,
    CognitoIdentityProvider,
    Failed,
)
from .config.settings import DEFAULT_CONFIG_DIR, AppSettings, CognitoSettings
from .exceptions import (
    CloudBackupError,
    CredentialOrphaned,
    InvalidChallengeResponse,
    InvalidCredentials,
    ValidationError,
)
from .models import BackupMode, ChangeSet, Operation, OperationStatus, Profile, ScheduleFrequency
from .schedule.recurrence import parse_time
from .sync.backup_manager import BackupManager, ToolStatus
from .sync.confirmation import ConfirmationRequired
from .utils.file_utils import FileHelper
from .utils.logging import setup_logging

# Force UTF-8 encoding for Windows console to handle Unicode characters
if sys.platform == 'win32':
    import codecs
    sys.stdout = codecs.getwriter('utf-8')(sys.stdout.buffer, errors='replace')
    sys.stderr = codecs.getwriter('utf-8')(sys.stderr.buffer, errors='replace')

console = Console()

DEFAULT_SETTINGS_FILE = DEFAULT_CONFIG_DIR / "settings.yaml"


class AppContext:
    """Lazily loaded settings and backup manager shared by the commands."""

    def __init__(self, settings_path: Path):
        self.settings_path = settings_path
        self._settings: Optional[AppSettings] = None
        self._manager: Optional[BackupManager] = None

    @property
    def settings(self) -> AppSettings:
        if self._settings is None:
            self._settings = AppSettings.load(self.settings_path)
            setup_logging(
                log_level=self._settings.log_level,
                log_file=self._settings.log_file or self._settings.logs_dir / "cloud-backup.log",
                log_to_console=False,
            )
        return self._settings

    @property
    def manager(self) -> BackupManager:
        if self._manager is None:
            self._manager = BackupManager.from_settings(self.settings, notifier=_notify)
        return self._manager

    def active_profile(self) -> Profile:
        profile = self.manager.provisioner.active_profile()
        if profile is None:
            raise ValidationError("No active profile. Run 'cloud-backup login' first.", field="profile")
        return profile


def _notify(title: str, message: str) -> None:
    console.print(f"⚠️ {title}: {message}", style="yellow")


def _exit_with_error(error: Exception) -> None:
    if isinstance(error, CredentialOrphaned):
        console.print(f"❌ {error}", style="red bold")
        console.print("   Retrying will not help; contact your administrator.", style="red")
    else:
        console.print(f"❌ Error: {error}", style="red bold")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_SETTINGS_FILE,
              help='Path to settings file (environment variables are used when it does not exist)')
@click.pass_context
def cli(ctx: click.Context, config: Path):
    """Cloud Backup

    Sign in, back up folders to your storage bucket with rclone, and
    schedule recurring backups.
    """
    ctx.obj = AppContext(config)


@cli.command()
@click.option('--region', prompt='AWS region', default='us-east-1')
@click.option('--user-pool-id', prompt='Cognito user pool id')
@click.option('--app-client-id', prompt='Cognito app client id')
@click.option('--identity-pool-id', prompt='Cognito identity pool id')
@click.option('--bucket', prompt='Backup bucket')
@click.option('--issuance-url', prompt='Credential issuance URL (blank to disable scheduled backups)',
              default='', show_default=False)
@click.pass_obj
def init(app: AppContext, region: str, user_pool_id: str, app_client_id: str,
         identity_pool_id: str, bucket: str, issuance_url: str):
    """Create a settings file."""
    path = app.settings_path
    if path.exists():
        if not click.confirm(f"Settings file {path} already exists. Overwrite?"):
            return

    settings = AppSettings(
        cognito=CognitoSettings(
            region=region,
            user_pool_id=user_pool_id,
            app_client_id=app_client_id,
            identity_pool_id=identity_pool_id,
        ),
        bucket_name=bucket,
        issuance_url=issuance_url or None,
    )
    settings.to_yaml(path)

    console.print(f"✅ Settings saved to {path}", style="green")
    console.print("\n📝 Next steps:")
    console.print("1. Run 'cloud-backup login' to sign in and create your profile")
    console.print("2. Run 'cloud-backup backup' to start backing up")


async def _answer_challenges(authenticator: Authenticator):
    state = authenticator.state
    while not isinstance(state, Authenticated):
        try:
            if isinstance(state, ChallengeSecondFactor):
                code = click.prompt("Verification code")
                state = await authenticator.submit_second_factor(code)
            elif isinstance(state, ChallengeNewPassword):
                console.print("🔑 A new password is required.", style="yellow")
                new_password = click.prompt("New password", hide_input=True)
                confirm_password = click.prompt("Confirm new password", hide_input=True)
                attributes = {name: click.prompt(name.replace('_', ' ').capitalize())
                              for name in state.required_attributes}
                state = await authenticator.submit_new_password(new_password, confirm_password, attributes)
            elif isinstance(state, Failed):
                authenticator.cancel()
                raise InvalidChallengeResponse(f"{state.reason}. Please sign in again.")
            else:
                raise InvalidCredentials(f"Unexpected authentication state {state.stage.value}")
        except (ValidationError, InvalidChallengeResponse) as e:
            if authenticator.state.stage == AuthStage.AWAITING_CREDENTIALS:
                raise
            console.print(f"❌ {e}", style="red")
    return state.session


async def _login_async(app: AppContext, email: str, password: str):
    settings = app.settings
    authenticator = Authenticator(CognitoIdentityProvider(settings.cognito))
    with console.status("Signing in..."):
        await authenticator.submit_password(email, password)

    session = await _answer_challenges(authenticator)
    console.print(f"✅ Signed in as {session.email}", style="green")

    with console.status("Setting up credentials and profile..."):
        result = await app.manager.complete_login(session)

    rprint(f"\n👤 [bold]Profile:[/bold] {result.profile.name} ({result.profile.role.value})")
    rprint(f"   • Destination: {result.profile.destination()}")
    if result.federated is None:
        rprint("   • [yellow]Interactive storage credentials unavailable; sign in again to retry[/yellow]")
    else:
        reachable = await asyncio.to_thread(app.manager.check_bucket_access, result.profile, result.federated)
        rprint(f"   • Bucket access: {'✅ ok' if reachable else '❌ failed (see log)'}")
    _print_tool_status(await app.manager.check_tool(result.profile))
    if result.unattended_available:
        rprint("   • Scheduled backups: [green]available[/green]")
    else:
        rprint("   • Scheduled backups: [yellow]unavailable[/yellow]")
    if result.exchange_error:
        rprint(f"   • [yellow]{result.exchange_error}[/yellow]")


@cli.command()
@click.option('--email', '-e', prompt='Email')
@click.option('--password', prompt='Password', hide_input=True)
@click.pass_obj
def login(app: AppContext, email: str, password: str):
    """Sign in and prepare credentials and the backup profile."""
    try:
        asyncio.run(_login_async(app, email, password))
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.command()
@click.pass_obj
def status(app: AppContext):
    """Show settings, the active profile and its schedule."""
    try:
        settings = app.settings
        console.print("⚙️ [bold]Settings:[/bold]")
        rprint(f"   • Region: {settings.cognito.region}")
        rprint(f"   • Bucket: {settings.bucket_name}")
        rprint(f"   • Config directory: {settings.config_dir}")
        issuance = "configured" if settings.unattended_configured else "not configured"
        rprint(f"   • Issuance endpoint: {issuance}")
        unattended = settings.scheduled_rclone_conf.exists()
        rprint(f"   • Scheduled backup credential: {'✅ present' if unattended else '❌ missing'}")
        stored = app.manager.coordinator.credential_store.subjects()
        rprint(f"   • Stored service credentials: {len(stored)}")

        profile = app.manager.provisioner.active_profile()
        _print_tool_status(asyncio.run(app.manager.check_tool(profile)))
        if profile is None:
            console.print("\n❌ No active profile. Run 'cloud-backup login'.", style="yellow")
            return

        console.print("\n👤 [bold]Active profile:[/bold]")
        rprint(f"   • {profile.name} ({profile.role.value})")
        rprint(f"   • Destination: {profile.destination()}")
        rprint(f"   • Mode: {profile.mode.value}")
        rprint(f"   • Sources: {', '.join(profile.sources) or 'none'}")
        _print_schedule(profile.schedule)
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.group()
def profiles():
    """Manage backup profiles."""
    pass


@profiles.command('list')
@click.pass_obj
def list_profiles(app: AppContext):
    """List profiles."""
    try:
        active = app.manager.provisioner.active_profile()
        table = Table(title="Profiles")
        table.add_column("Id", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Role", style="magenta")
        table.add_column("Destination")
        table.add_column("Mode")
        table.add_column("Active", style="green")
        for profile in app.manager.provisioner.list_profiles():
            table.add_row(
                profile.id,
                profile.name,
                profile.role.value,
                profile.destination(),
                profile.mode.value,
                "✅" if active is not None and active.id == profile.id else "",
            )
        console.print(table)
    except CloudBackupError as e:
        _exit_with_error(e)


@profiles.command('select')
@click.argument('profile_id')
@click.pass_obj
def select_profile(app: AppContext, profile_id: str):
    """Make a profile the active one."""
    try:
        profile = app.manager.provisioner.select_active_profile(profile_id)
        console.print(f"✅ Active profile: {profile.name}", style="green")
    except CloudBackupError as e:
        _exit_with_error(e)


@profiles.command('configure')
@click.option('--source', '-s', 'sources', multiple=True,
              type=click.Path(exists=True, file_okay=False, resolve_path=True),
              help='Local folder to back up (repeat for several; replaces the current list)')
@click.option('--mode', '-m', type=click.Choice(['copy', 'sync']), help='Copy keeps remote files, sync mirrors deletions')
@click.option('--name', '-n', help='Display name')
@click.pass_obj
def configure_profile(app: AppContext, sources: List[str], mode: Optional[str], name: Optional[str]):
    """Change the active profile's sources, mode or name."""
    try:
        profile = app.active_profile()
        if sources:
            profile.sources = list(sources)
        if mode:
            profile.mode = BackupMode.SYNC if mode == 'sync' else BackupMode.COPY
        if name:
            profile.name = name.strip()
        profile = app.manager.provisioner.update_profile(profile)
        console.print(f"✅ Updated profile {profile.name}", style="green")
        rprint(f"   • Mode: {profile.mode.value}")
        rprint(f"   • Sources: {', '.join(profile.sources) or 'none'}")
        if profile.schedule is not None and profile.schedule.enabled:
            console.print("   Run 'cloud-backup schedule enable' again to update the scheduled job.", style="yellow")
    except CloudBackupError as e:
        _exit_with_error(e)


def _display_change_set(change_set: ChangeSet, title: str = "Preview") -> None:
    table = Table(title=title)
    table.add_column("Action", style="magenta")
    table.add_column("Path", style="cyan")
    table.add_column("Size", justify="right")
    for style, changes in (("green", change_set.files_to_copy),
                           ("yellow", change_set.files_to_update),
                           ("red", change_set.files_to_delete)):
        for change in changes:
            table.add_row(f"[{style}]{change.action.value}[/{style}]", change.path,
                          FileHelper.format_file_size(change.size))
    console.print(table)
    rprint(f"\n📊 [bold]Summary:[/bold] {change_set.total_files} files, "
           f"{FileHelper.format_file_size(change_set.total_size)}")
    rprint(f"   • To copy: [green]{len(change_set.files_to_copy)}[/green]")
    rprint(f"   • To update: [yellow]{len(change_set.files_to_update)}[/yellow]")
    rprint(f"   • To delete: [red]{len(change_set.files_to_delete)}[/red]")


def _display_operation(operation: Operation) -> None:
    table = Table(title=f"{operation.operation_type.value} Result")
    table.add_column("Status", style="magenta")
    table.add_column("Files", justify="right")
    table.add_column("Data Transferred", justify="right")
    table.add_column("Duration", justify="right")

    status_style = "green" if operation.status == OperationStatus.COMPLETED else "red"
    duration = ""
    if operation.completed_at:
        duration = f"{(operation.completed_at - operation.started_at).total_seconds():.1f}s"
    table.add_row(
        f"[{status_style}]{operation.status.value}[/{status_style}]",
        str(operation.files_transferred),
        FileHelper.format_file_size(operation.bytes_transferred),
        duration,
    )
    console.print(table)
    if operation.error_message:
        rprint(f"\n⚠️ [red]{operation.error_message}[/red]")


@cli.command()
@click.pass_obj
def preview(app: AppContext):
    """Show what a sync of the active profile would change."""
    try:
        profile = app.active_profile()
        with console.status("Computing changes..."):
            change_set = asyncio.run(app.manager.preview(profile))
        _display_change_set(change_set)
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Confirm remote deletions without asking')
@click.pass_obj
def backup(app: AppContext, yes: bool):
    """Back up the active profile's sources."""
    try:
        profile = app.active_profile()
        console.print(f"🚀 Backing up {profile.name} ({profile.mode.value})")
        with console.status("Running rclone..."):
            result = asyncio.run(app.manager.run_backup(profile))

        if isinstance(result, ConfirmationRequired):
            _display_change_set(result.change_set, title="Pending changes")
            console.print(f"\n⚠️ This sync will DELETE {result.deletions} remote files.", style="yellow bold")
            if not yes and not click.confirm("Proceed with the sync?"):
                console.print("Cancelled. Nothing was changed.")
                return
            with console.status("Running rclone..."):
                result = asyncio.run(app.manager.run_backup(profile, result.change_set, confirmed=True))

        _display_operation(result)
        if result.status != OperationStatus.COMPLETED:
            sys.exit(1)
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.command()
@click.argument('remote_paths', nargs=-1, required=True)
@click.option('--target', '-t', type=click.Path(file_okay=False, path_type=Path), required=True,
              help='Local folder to restore into')
@click.pass_obj
def restore(app: AppContext, remote_paths: List[str], target: Path):
    """Restore files or folders from the active profile's destination."""
    try:
        profile = app.active_profile()
        target.mkdir(parents=True, exist_ok=True)
        with console.status("Restoring..."):
            operation = asyncio.run(app.manager.restore(profile, list(remote_paths), str(target)))
        _display_operation(operation)
        if operation.status != OperationStatus.COMPLETED:
            sys.exit(1)
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.command('ls')
@click.argument('path', required=False)
@click.option('--depth', '-d', type=int, default=1, help='Maximum depth (0 for recursive)')
@click.pass_obj
def list_files(app: AppContext, path: Optional[str], depth: int):
    """List files in the active profile's destination."""
    try:
        profile = app.active_profile()
        with console.status("Listing files..."):
            files = asyncio.run(app.manager.list_remote(profile, path, depth or None))

        table = Table(title=f"Files in {profile.destination()}")
        table.add_column("Name", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Modified")
        for item in files:
            name = f"📁 {item.path}" if item.is_dir else f"📄 {item.path}"
            size = "" if item.is_dir else FileHelper.format_file_size(item.size)
            modified = item.mod_time.strftime('%Y-%m-%d %H:%M') if item.mod_time else ""
            table.add_row(name, size, modified)
        console.print(table)
    except CloudBackupError as e:
        _exit_with_error(e)


def _print_tool_status(status: ToolStatus) -> None:
    if status.available:
        rprint(f"   • rclone: ✅ {status.version}")
    else:
        rprint(f"   • rclone: ❌ cannot run {status.rclone_bin}")
        if status.alternatives:
            rprint(f"     Found instead: {', '.join(status.alternatives)} (set rclone_bin in the settings)")
    if status.config_valid is not None:
        state = "✅ valid" if status.config_valid else "❌ missing or unreadable"
        rprint(f"   • rclone config: {state} ({status.config_path})")


def _print_schedule(schedule) -> None:
    console.print("\n🕑 [bold]Schedule:[/bold]")
    if schedule is None or not schedule.enabled:
        rprint("   • Disabled")
        return
    rprint(f"   • {schedule.frequency.describe()} at {schedule.time}")
    if schedule.next_run:
        rprint(f"   • Next run: {schedule.next_run.astimezone():%Y-%m-%d %H:%M}")
    if schedule.last_run:
        rprint(f"   • Last run: {schedule.last_run.astimezone():%Y-%m-%d %H:%M}")


@cli.group()
def schedule():
    """Manage scheduled backups of the active profile."""
    pass


@schedule.command('show')
@click.pass_obj
def schedule_show(app: AppContext):
    """Show the schedule."""
    try:
        profile = app.active_profile()
        draft = asyncio.run(app.manager.schedule_manager.reload(profile.id, silent=False))
        _print_schedule(draft.schedule)
    except CloudBackupError as e:
        _exit_with_error(e)


async def _enable_schedule(app: AppContext, profile: Profile, frequency: ScheduleFrequency,
                           hour: int, minute: int):
    manager = app.manager.schedule_manager
    await manager.reload(profile.id, silent=True)
    manager.edit_frequency(profile.id, frequency)
    manager.edit_time(profile.id, hour, minute)
    return await manager.set_enabled(profile.id, True, silent=False)


@schedule.command('enable')
@click.option('--frequency', '-f', type=click.Choice(['daily', 'weekly', 'monthly']), default='daily')
@click.option('--day', '-d', type=int, help='Weekday (0=Sunday) for weekly, day of month for monthly')
@click.option('--time', '-t', 'time_', default='02:00', help='Time of day, HH:MM')
@click.pass_obj
def schedule_enable(app: AppContext, frequency: str, day: Optional[int], time_: str):
    """Enable scheduled backups."""
    try:
        hour, minute = parse_time(time_)
        try:
            if frequency == 'weekly':
                rule = ScheduleFrequency.weekly(day if day is not None else 1)
            elif frequency == 'monthly':
                rule = ScheduleFrequency.monthly(day if day is not None else 1)
            else:
                rule = ScheduleFrequency.daily()
        except ValueError as e:
            raise ValidationError(str(e), field="day") from e

        profile = app.active_profile()
        draft = asyncio.run(_enable_schedule(app, profile, rule, hour, minute))
        console.print("✅ Scheduled backups enabled", style="green")
        _print_schedule(draft.schedule)
    except CloudBackupError as e:
        _exit_with_error(e)


@schedule.command('disable')
@click.pass_obj
def schedule_disable(app: AppContext):
    """Disable scheduled backups."""
    try:
        profile = app.active_profile()
        asyncio.run(app.manager.schedule_manager.set_enabled(profile.id, False, silent=False))
        console.print("✅ Scheduled backups disabled", style="green")
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.command()
@click.option('--limit', '-n', type=int, default=20, help='Number of operations to show')
@click.option('--clear', is_flag=True, help='Delete the recorded history')
@click.pass_obj
def history(app: AppContext, limit: int, clear: bool):
    """Show recent backup and restore operations."""
    try:
        if clear:
            if click.confirm("Delete all recorded operations?"):
                count = app.manager.clear_history()
                console.print(f"✅ Cleared {count} operations", style="green")
            return

        profile = app.manager.provisioner.active_profile()
        if profile is not None:
            imported = asyncio.run(app.manager.import_scheduled_logs(profile.id))
            if imported:
                console.print(f"📥 Imported {imported} scheduled runs")

        operations = app.manager.history(profile.id if profile else None, limit)
        table = Table(title="Backup History")
        table.add_column("Started", style="cyan")
        table.add_column("Type")
        table.add_column("Status", style="magenta")
        table.add_column("Files", justify="right")
        table.add_column("Data", justify="right")
        table.add_column("Error", style="red")
        for operation in operations:
            status_style = "green" if operation.status == OperationStatus.COMPLETED else "red"
            table.add_row(
                f"{operation.started_at.astimezone():%Y-%m-%d %H:%M}",
                operation.operation_type.value,
                f"[{status_style}]{operation.status.value}[/{status_style}]",
                str(operation.files_transferred),
                FileHelper.format_file_size(operation.bytes_transferred),
                (operation.error_message or "")[:60],
            )
        console.print(table)

        summary = app.manager.get_history_summary(operations)
        rprint("\n📊 [bold]Summary:[/bold]")
        rprint(f"   • Operations: {summary['total_operations']}")
        rprint(f"   • Completed: [green]{summary['completed']}[/green]")
        rprint(f"   • Failed: [red]{summary['failed']}[/red]")
        rprint(f"   • Data transferred: {FileHelper.format_file_size(summary['total_bytes_transferred'])}")
    except CloudBackupError as e:
        _exit_with_error(e)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_obj
def revoke(app: AppContext, yes: bool):
    """Delete the stored service credential of the active profile's user."""
    try:
        profile = app.active_profile()
        if not profile.user_id:
            raise ValidationError("The active profile is not bound to a user", field="profile")
        if not yes and not click.confirm(
            "Scheduled backups will stop working until an administrator issues new keys. Continue?"
        ):
            return
        removed = app.manager.coordinator.revoke_service_credential(profile.user_id)
        if removed:
            console.print("✅ Service credential removed", style="green")
        else:
            console.print("No stored service credential found", style="yellow")
    except CloudBackupError as e:
        _exit_with_error(e)


if __name__ == '__main__':
    cli()
