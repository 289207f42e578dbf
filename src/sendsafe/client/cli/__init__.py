"""Command-line interface for sendsafe.

This module provides the main CLI entry point and assembles all commands.

Commands:
- upload: Encrypt and share files
- download: Fetch and decrypt a shared link
- login: Start an OAuth login
- finish-login: Complete an OAuth login
- logout: Sign out
- configure: Show or change the service URL
- list: Show uploaded files
- sync: Synchronize the file list with the account
- delete: Delete an uploaded file
- password: Protect an uploaded file with a password
- limit: Change the download limit of an uploaded file
"""

from __future__ import annotations

import logging

import click

from sendsafe.client.cli.account import configure, finish_login, login, logout
from sendsafe.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_state_db,
    load_config,
    save_config,
)
from sendsafe.client.cli.files import delete, limit, list_files, password, sync
from sendsafe.client.cli.transfer import download, upload


def configure_logging(verbose: int) -> None:
    """Send sendsafe log records to stderr at the requested verbosity."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    sendsafe_logger = logging.getLogger("sendsafe")
    sendsafe_logger.handlers = [handler]
    sendsafe_logger.setLevel(logging.DEBUG if verbose > 1 else logging.INFO)


@click.group()
@click.version_option(package_name="sendsafe")
@click.option("--verbose", "-v", count=True, help="Log progress (-vv for debug output).")
@click.pass_context
def cli(ctx: click.Context, verbose: int) -> None:
    """sendsafe - End-to-end encrypted, expiring file sharing."""
    ctx.ensure_object(dict)
    if verbose:
        configure_logging(verbose)


# Transfer commands
cli.add_command(upload)
cli.add_command(download)

# Account commands
cli.add_command(login)
cli.add_command(finish_login)
cli.add_command(logout)
cli.add_command(configure)

# File commands
cli.add_command(list_files)
cli.add_command(sync)
cli.add_command(delete)
cli.add_command(password)
cli.add_command(limit)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "configure_logging",
    "get_config_dir",
    "get_config_file",
    "get_state_db",
    "load_config",
    "main",
    "save_config",
]
