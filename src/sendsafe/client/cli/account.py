"""Account commands for the sendsafe CLI.

Commands:
- login: Start an OAuth login and print the authorization URL
- finish-login: Complete the login with the redirect's code and state
- logout: End the session and forget local files
- configure: Show or change the service URL
"""

from __future__ import annotations

import logging
from urllib.parse import urlparse

import click

from sendsafe.client.cli.config import get_config_file, load_config, save_config
from sendsafe.client.cli.session import fail, open_session
from sendsafe.client.fxa import KeyManagerError
from sendsafe.client.types import APIError, NetworkError, StateMismatchError
from sendsafe.core.config import ServiceConfig
from sendsafe.core.ece import AuthenticationError

logger = logging.getLogger(__name__)


@click.command()
@click.option("--email", default=None, help="Pre-fill the login form with this email.")
@click.pass_context
def login(ctx: click.Context, email: str | None) -> None:
    """Print the URL to sign in with.

    After signing in, pass the ``code`` and ``state`` parameters of the
    redirect to ``sendsafe finish-login``.
    """
    with open_session(ctx) as session:
        if not session.config.auth.authorization_endpoint:
            fail("No identity provider configured. Set 'auth' in config.json.")
        url = session.user.login(email)
    click.echo("Open this URL in a browser to sign in:")
    click.echo(url)


@click.command("finish-login")
@click.argument("code")
@click.argument("state")
@click.pass_context
def finish_login(ctx: click.Context, code: str, state: str) -> None:
    """Complete a login with CODE and STATE from the redirect."""
    with open_session(ctx) as session:
        try:
            session.user.finish_login(code, state, session.client)
        except StateMismatchError:
            fail("Login state does not match. Run 'sendsafe login' again.")
        except (KeyManagerError, AuthenticationError) as e:
            fail(f"Could not unlock account keys: {e}")
        except (APIError, NetworkError) as e:
            fail(f"Login failed: {e}")

        result = session.sync()
        click.echo(f"Signed in as {session.user.email or session.user.name or 'unknown'}")
        if result.incoming:
            click.echo(f"{len(session.storage.files)} file(s) in your account")


@click.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Sign out and forget local uploads."""
    with open_session(ctx) as session:
        if not session.user.logged_in:
            click.echo("Not signed in.")
            return
        session.user.logout()
    click.echo("Signed out.")


@click.command()
@click.option("--server", default=None, help="Base URL of the send service.")
def configure(server: str | None) -> None:
    """Show or change the service this client talks to."""
    config = load_config()
    if server is not None:
        parsed = urlparse(server)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            fail(f"Not an http(s) URL: {server}")
        config["server_url"] = server.rstrip("/")
        save_config(config)
        logger.info(f"Saved server URL to {get_config_file()}")

    service = ServiceConfig.from_dict(config)
    click.echo(f"Server: {service.server_url}")
    if not service.is_secure:
        click.echo("Warning: this server does not use HTTPS.", err=True)
