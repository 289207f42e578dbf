"""Owned-file commands for the sendsafe CLI.

Commands:
- list: Show files uploaded from this client or account
- sync: Synchronize the file list with the account
- delete: Delete an uploaded file
- password: Protect an uploaded file with a password
- limit: Change the download limit of an uploaded file
"""

from __future__ import annotations

from datetime import UTC, datetime

import click

from sendsafe.client.cli.session import Session, fail, open_session
from sendsafe.client.owned_file import OwnedFile
from sendsafe.client.types import APIError, NetworkError, NotFoundError


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _get_file(session: Session, file_id: str) -> OwnedFile:
    owned = session.storage.get_file_by_id(file_id)
    if owned is None:
        fail(f"No uploaded file with id {file_id}")
    return owned


@click.command("list")
@click.pass_context
def list_files(ctx: click.Context) -> None:
    """List uploaded files."""
    with open_session(ctx) as session:
        files = session.storage.files
        if not files:
            click.echo("No uploads.")
            return
        for owned in files:
            expires = datetime.fromtimestamp(owned.expires_at / 1000, tz=UTC)
            lock = " [password]" if owned.has_password else ""
            click.echo(
                f"{owned.id}  {owned.name}  {_format_size(owned.size)}  "
                f"{owned.dtotal}/{owned.dlimit} downloads  "
                f"expires {expires:%Y-%m-%d %H:%M} UTC{lock}"
            )
            click.echo(f"    {owned.url}")


@click.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Synchronize the file list with your account.

    Without an account, refreshes download counts and drops expired files.
    """
    with open_session(ctx) as session:
        was_logged_in = session.user.logged_in
        if was_logged_in:
            result = session.sync()
        else:
            result = session.storage.merge(client=session.client)
        if was_logged_in and not session.user.logged_in:
            fail("Session expired. Run 'sendsafe login' again.")
        click.echo(
            f"Synced {len(session.storage.files)} file(s)"
            + (" (account updated)" if result.outgoing and was_logged_in else "")
        )


@click.command()
@click.argument("file_id")
@click.pass_context
def delete(ctx: click.Context, file_id: str) -> None:
    """Delete an uploaded file."""
    with open_session(ctx) as session:
        owned = _get_file(session, file_id)
        try:
            owned.delete(session.client)
        except NotFoundError:
            pass  # already gone on the service
        except (APIError, NetworkError) as e:
            fail(f"Delete failed: {e}")
        session.storage.remove_file(owned.id)
        if session.user.logged_in:
            session.sync()
        click.echo(f"Deleted {owned.name}")


@click.command()
@click.argument("file_id")
@click.argument("password")
@click.pass_context
def password(ctx: click.Context, file_id: str, password: str) -> None:
    """Protect an uploaded file with PASSWORD."""
    with open_session(ctx) as session:
        owned = _get_file(session, file_id)
        try:
            owned.set_password(password, session.client)
        except (APIError, NetworkError) as e:
            fail(f"Could not set password: {e}")
        session.storage.write_file(owned)
        if session.user.logged_in:
            session.sync()
        click.echo(f"Password set for {owned.name}")


@click.command()
@click.argument("file_id")
@click.argument("downloads", type=int)
@click.pass_context
def limit(ctx: click.Context, file_id: str, downloads: int) -> None:
    """Change the download limit of an uploaded file."""
    with open_session(ctx) as session:
        owned = _get_file(session, file_id)
        if not 0 < downloads <= session.user.max_downloads:
            fail(f"Download limit must be between 1 and {session.user.max_downloads}.")
        try:
            changed = owned.change_limit(downloads, session.client, session.user.bearer_token)
        except (APIError, NetworkError) as e:
            fail(f"Could not change the limit: {e}")
        if changed:
            session.storage.write_file(owned)
            if session.user.logged_in:
                session.sync()
        click.echo(f"{owned.name}: {owned.dlimit} download(s) allowed")
