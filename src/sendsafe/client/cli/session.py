"""Shared plumbing for CLI commands.

This module provides:
- Session: the objects a command works with, opened from the config dir
- open_session: context manager closing them afterwards
- run_transfer: runs a transfer on a worker thread so Ctrl-C cancels it
- fail: print an error and exit
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import sys
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, NoReturn, TypeVar

import click

from sendsafe.client.api import SendClient
from sendsafe.client.cli.config import get_service_config, get_state_db
from sendsafe.client.filelist import FileListSync
from sendsafe.client.storage import LocalStorage
from sendsafe.client.user import User

if TYPE_CHECKING:
    import httpx

    from sendsafe.client.transfer import Transfer
    from sendsafe.client.types import SyncResult
    from sendsafe.core.config import ServiceConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROGRESS_STEPS = 1000


@dataclass
class Session:
    """Objects shared by the commands of one CLI invocation."""

    config: ServiceConfig
    storage: LocalStorage
    client: SendClient
    user: User

    def sync(self) -> SyncResult:
        """Synchronize the owned-file list with the account."""
        return FileListSync(self.user, self.storage, self.client).sync()


@contextlib.contextmanager
def open_session(ctx: click.Context, server_url: str | None = None) -> Iterator[Session]:
    """Open storage and the service client for a command.

    Args:
        ctx: Click context; ``ctx.obj["transport"]`` may hold an httpx
            transport to use instead of the network.
        server_url: Service to talk to instead of the configured one.
    """
    config = get_service_config()
    if server_url:
        config = dataclasses.replace(config, server_url=server_url)
    if not config.is_secure:
        logger.warning(f"Talking to {config.server_url} without TLS")
    transport: httpx.BaseTransport | None = (ctx.obj or {}).get("transport")

    storage = LocalStorage(get_state_db())
    client = SendClient(config, transport=transport)
    try:
        yield Session(config, storage, client, User(storage, config))
    finally:
        client.close()
        storage.close()


def run_transfer(transfer: Transfer, work: Callable[[], T], label: str) -> T:
    """Run a transfer with a progress bar; Ctrl-C cancels it.

    Raises:
        CancelledError: If interrupted.
    """
    with click.progressbar(length=PROGRESS_STEPS, label=label, file=sys.stderr) as bar:
        shown = 0

        def on_progress(ratio: float) -> None:
            nonlocal shown
            step = int(ratio * PROGRESS_STEPS)
            if step > shown:
                bar.update(step - shown)
                shown = step

        transfer.on("progress", on_progress)
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(work)
            try:
                return future.result()
            except KeyboardInterrupt:
                transfer.cancel()
                return future.result()


def fail(message: str) -> NoReturn:
    """Print an error to stderr and exit with status 1."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)
