"""
Command line interface.

    dumpkeeper backup run        Run one cycle now (for a Kubernetes CronJob)
    dumpkeeper backup prune      Delete expired backups
    dumpkeeper backup list       List backups on disk
    dumpkeeper backup history    Show recent cycles
    dumpkeeper backup cancel     Ask the running cycle to stop
    dumpkeeper backup hash-token Hash an API token for API_TOKEN_HASH

``backup run`` exits 0 on success, 1 on failure and 75 (EX_TEMPFAIL) when
another cycle is already running.
"""

import signal
from contextlib import contextmanager

import click
from flask.cli import AppGroup, FlaskGroup

from dumpkeeper.backup.errors import CycleCancelled, CycleInProgress

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_SKIPPED = 75

backup_cli = AppGroup('backup', help='Run and manage backups.')


@contextmanager
def _cancel_on_sigterm():
    """
    Record SIGTERM and yield a cancellation check for the running cycle.

    The handler only notes the signal; the cycle raises CycleCancelled at
    its next checkpoint and removes its partial files. A signal that arrives
    while expired backups are pruned stops the pruning and keeps the new
    artifact.
    """
    received = []

    def handler(signum, frame):
        received.append(signal.Signals(signum).name)

    def check():
        if received:
            raise CycleCancelled(f"Received signal {received[0]}")

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield check
    finally:
        signal.signal(signal.SIGTERM, previous)


@backup_cli.command('run')
@click.pass_context
def run_command(ctx):
    """Run one backup cycle now."""
    from dumpkeeper.backup.service import perform_backup

    with _cancel_on_sigterm() as check:
        history = perform_backup('cli', cancellation_check=check)

    if history is None:
        click.echo('Backup skipped: another backup cycle is in progress', err=True)
        ctx.exit(EXIT_SKIPPED)

    if history.status == 'success':
        click.echo(
            f"Backup completed: {history.artifact_name} "
            f"({history.size_bytes} bytes in {history.duration_seconds}s)"
        )
        for warning in history.to_dict()['warnings']:
            click.echo(f"Warning: {warning}", err=True)
        ctx.exit(EXIT_SUCCESS)

    click.echo(f"Backup failed ({history.error_kind}): {history.error_message}", err=True)
    ctx.exit(EXIT_FAILED)


@backup_cli.command('prune')
@click.pass_context
def prune_command(ctx):
    """Delete backups older than the retention window."""
    from dumpkeeper.backup.service import prune_backups

    try:
        summary = prune_backups()
    except CycleInProgress as e:
        click.echo(f"Prune skipped: {e}", err=True)
        ctx.exit(EXIT_SKIPPED)

    for name in summary.removed_files:
        click.echo(f"Deleted {name}")
    for error in summary.errors:
        click.echo(f"Warning: {error}", err=True)
    click.echo(f"Pruned {len(summary.deleted)} backup(s)")


@backup_cli.command('list')
def list_command():
    """List backups in the output directory, newest first."""
    from dumpkeeper.backup.service import list_backup_artifacts

    artifacts = list_backup_artifacts()
    if not artifacts:
        click.echo('No backups found')
        return

    for artifact in artifacts:
        size = artifact['size_bytes'] if artifact['size_bytes'] is not None else '-'
        name = artifact['artifact'] or f"{artifact['stem']} (no data file)"
        meta = 'meta' if artifact['metadata'] else 'no-meta'
        click.echo(f"{artifact['timestamp']}  {name}  {size}  {meta}")


@backup_cli.command('history')
@click.option('--limit', default=10, show_default=True, help='Number of cycles to show.')
def history_command(limit):
    """Show the most recent backup cycles."""
    from dumpkeeper.models import BackupHistory

    records = BackupHistory.query.order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).all()

    if not records:
        click.echo('No backup history')
        return

    for record in records:
        detail = record.artifact_name if record.status == 'success' else record.error_kind
        click.echo(
            f"{record.id:>5}  {record.started_at:%Y-%m-%d %H:%M:%S}  "
            f"{record.trigger:<9}  {record.status:<7}  {detail}"
        )


@backup_cli.command('cancel')
@click.pass_context
def cancel_command(ctx):
    """Ask the running backup cycle to stop."""
    from dumpkeeper.backup.service import request_cancellation

    if not request_cancellation():
        click.echo('No backup cycle is running', err=True)
        ctx.exit(EXIT_FAILED)
    click.echo('Cancellation requested')


@backup_cli.command('hash-token')
@click.option('--token', prompt=True, hide_input=True, confirmation_prompt=True,
              help='API token to hash.')
@click.pass_context
def hash_token_command(ctx, token):
    """Print the API_TOKEN_HASH value for a token."""
    from dumpkeeper.auth import hash_token, validate_token_strength

    is_valid, error = validate_token_strength(token)
    if not is_valid:
        click.echo(error, err=True)
        ctx.exit(EXIT_FAILED)
    click.echo(hash_token(token))


def _create_app():
    from dumpkeeper import create_app
    return create_app()


cli = FlaskGroup(create_app=_create_app, help='dumpkeeper backup service.')
