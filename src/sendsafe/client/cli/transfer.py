"""Transfer commands for the sendsafe CLI.

Commands:
- upload: Encrypt and share files
- download: Fetch and decrypt a shared link
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from sendsafe.client.archive import Archive
from sendsafe.client.cli.session import fail, open_session, run_transfer
from sendsafe.client.link import InvalidLinkError, ShareLink
from sendsafe.client.transfer import FileReceiver, FileSender, ReceivedFile
from sendsafe.client.types import (
    APIError,
    ArchiveError,
    AuthError,
    CancelledError,
    NetworkError,
    NotFoundError,
)
from sendsafe.core.config import DEFAULT_DOWNLOAD_LIMIT, DEFAULT_EXPIRE_SECONDS
from sendsafe.core.ece import AuthenticationError

logger = logging.getLogger(__name__)


@click.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--password", "-p", default=None, help="Protect the link with a password.")
@click.option(
    "--expire",
    "-e",
    type=int,
    default=DEFAULT_EXPIRE_SECONDS,
    show_default=True,
    help="Seconds before the link expires.",
)
@click.option(
    "--downloads",
    "-d",
    type=int,
    default=DEFAULT_DOWNLOAD_LIMIT,
    show_default=True,
    help="Number of downloads allowed.",
)
@click.pass_context
def upload(
    ctx: click.Context,
    files: tuple[str, ...],
    password: str | None,
    expire: int,
    downloads: int,
) -> None:
    """Encrypt FILES and print a share link.

    Several files are sent together as one archive.
    """
    with open_session(ctx) as session:
        user = session.user
        limits = session.config.limits

        if len(session.storage.files) >= limits.max_archives_per_user:
            fail("Too many active uploads. Delete one first.")
        if not 0 < expire <= user.max_expire_seconds:
            fail(f"Expiry must be between 1 and {user.max_expire_seconds} seconds.")
        if not 0 < downloads <= user.max_downloads:
            fail(f"Download limit must be between 1 and {user.max_downloads}.")

        archive = Archive(time_limit=expire, dlimit=downloads, password=password)
        try:
            archive.add_files(
                [Path(f) for f in files],
                max_size=user.max_size,
                max_files=limits.max_files_per_archive,
            )
        except ArchiveError as e:
            if e.reason == "fileTooBig" and not user.logged_in:
                fail(f"{e}. Sign in to send larger files.")
            fail(str(e))

        bearer = user.bearer_token if user.logged_in else None
        sender = FileSender(session.client)
        try:
            owned = run_transfer(sender, lambda: sender.upload(archive, bearer), "Uploading")
        except CancelledError:
            fail("Upload cancelled.")
        except (APIError, NetworkError, ArchiveError) as e:
            fail(f"Upload failed: {e}")

        session.storage.add_file(owned)
        session.storage.total_uploads += 1

        if archive.password:
            try:
                owned.set_password(archive.password, session.client)
            except (APIError, NetworkError) as e:
                click.echo(f"Warning: could not set password: {e}", err=True)
            session.storage.write_file(owned)

        archive.clear()
        if user.logged_in:
            session.sync()

        click.echo(owned.url)


@click.command()
@click.argument("url")
@click.option("--password", "-p", default=None, help="Password of the link.")
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Destination file or directory (default: current directory).",
)
@click.pass_context
def download(ctx: click.Context, url: str, password: str | None, output: str | None) -> None:
    """Download and decrypt a shared URL."""
    try:
        link = ShareLink.parse(url)
    except InvalidLinkError as e:
        fail(str(e))

    with open_session(ctx, server_url=link.server_url) as session:
        info = ReceivedFile.from_link(url, password)
        receiver = FileReceiver(info, session.client)

        try:
            try:
                receiver.get_metadata()
            except AuthError:
                if not info.requires_password or info.password:
                    raise
                info.password = click.prompt("Password", hide_input=True)
                receiver.get_metadata()
        except AuthError:
            if info.requires_password:
                fail("Incorrect password.")
            fail("The link's secret key is invalid.")
        except NotFoundError:
            fail("This link has expired.")
        except AuthenticationError:
            fail("The link's secret key is invalid.")
        except (APIError, NetworkError) as e:
            fail(str(e))

        dest = Path(output) if output else Path.cwd()
        try:
            paths = run_transfer(
                receiver,
                lambda: receiver.download(stream=True, dest=dest),
                f"Downloading {info.name}",
            )
        except CancelledError:
            fail("Download cancelled.")
        except NotFoundError:
            fail("This link has expired.")
        except AuthenticationError:
            fail("Download failed verification; the file may have been tampered with.")
        except (APIError, NetworkError, ArchiveError, OSError) as e:
            fail(f"Download failed: {e}")

        session.storage.total_downloads += 1
        for path in paths:
            click.echo(str(path))
