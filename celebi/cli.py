"""CLI entry point for Celebi."""

from __future__ import annotations

import asyncio
import html
import logging
import re
from pathlib import Path
from typing import Any, NoReturn

import click

from . import __version__
from .config import Config, ConfigError, load_config
from .oauth import (
    AuthorizationRedirect,
    CallbackError,
    InvalidInstance,
    LocalhostCallbackServer,
    OAuthFlowError,
    OAuthManager,
    Session,
    StoreError,
    get_oauth_manager,
)
from .output import OutputHandler
from .platform import get_ephemeral_dir
from .timeline import TimelineError, fetch_home_timeline

# Logger for CLI
logger = logging.getLogger("celebi")

_TAG_RE = re.compile(r"<[^>]+>")


def _plain_text(content: str) -> str:
    """Status HTML to one line of text."""
    text = _TAG_RE.sub(" ", content.replace("</p><p>", "\n"))
    return " ".join(html.unescape(text).split())


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """Celebi - log in to a Mastodon-compatible instance."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> Config | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["env_path"])
    except ConfigError as e:
        output.error(e, help_text="Check the CELEBI_* settings in your environment or .env file.")


def get_manager(ctx: click.Context, config: Config, **kwargs: Any) -> OAuthManager | NoReturn:
    """Build a manager over the on-disk stores, handling storage errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return get_oauth_manager(config, **kwargs)
    except StoreError as e:
        output.error(e, help_text=f"Check the permissions of {get_ephemeral_dir()}.")


def _prompt_if_not_opened(redirect: AuthorizationRedirect, output: OutputHandler) -> None:
    if not redirect.opened:
        output.prompt(f"Could not open browser. Please open this URL manually:\n  {redirect.url}")


async def _login_and_wait(
    config: Config,
    instance: str,
    force_login: bool,
    output: OutputHandler,
) -> Session | None:
    """Start a login, catch the redirect, and complete it.

    The completing side uses its own manager, so it sees only what the
    stores carried across the redirect.
    """
    async with LocalhostCallbackServer(
        config.redirect_uri, timeout=config.callback_timeout
    ) as server:
        starter = get_oauth_manager(config, on_status=output.status)
        redirect = await starter.start(instance, force_login=force_login)
        _prompt_if_not_opened(redirect, output)
        output.status(f"Waiting for the browser to return to {config.redirect_uri}")
        result = await server.wait_for_callback()

    logger.debug("Redirect received, completing login")
    finisher = get_oauth_manager(config, on_status=output.status)
    return await finisher.complete_from_callback(result.url)


@main.command()
@click.argument("instance")
@click.option("--force-login", is_flag=True, help="Ask the instance for credentials even if already signed in there")
@click.option("--no-listen", is_flag=True, help="Do not wait for the redirect; finish with 'celebi callback URL'")
@click.pass_context
def login(ctx: click.Context, instance: str, force_login: bool, no_listen: bool) -> None:
    """Log in to INSTANCE (e.g. mastodon.social or @you@mastodon.social)."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    if no_listen:
        manager = get_manager(ctx, config, on_status=output.status)
        try:
            redirect = asyncio.run(manager.start(instance, force_login=force_login))
        except InvalidInstance as e:
            output.error(e, help_text="Pass a server name such as mastodon.social.")
        except (OAuthFlowError, StoreError) as e:
            output.error(e)

        output.success(
            {
                "authorization_url": redirect.url,
                "instance": redirect.instance,
                "pkce": redirect.pkce,
            },
            human_message=(
                f"Authorize at:\n  {redirect.url}\n\n"
                f"Then run: celebi callback '<the URL you land on>'"
            ),
        )
        return

    try:
        session = asyncio.run(_login_and_wait(config, instance, force_login, output))
    except InvalidInstance as e:
        output.error(e, help_text="Pass a server name such as mastodon.social.")
    except (OAuthFlowError, CallbackError, StoreError) as e:
        output.error(e, help_text="Run 'celebi login' again to retry.")

    if session is None:
        output.error(
            OAuthFlowError("Authorization was not granted"),
            help_text="Run 'celebi login' again to retry.",
        )

    output.success(
        {"logged_in": True, "instance": session.instance_url},
        human_message=click.style(f"Logged in to {session.instance_url}", fg="green"),
    )


@main.command()
@click.argument("url")
@click.pass_context
def callback(ctx: click.Context, url: str) -> None:
    """Complete a login from the URL the instance redirected to."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    manager = get_manager(ctx, config, on_status=output.status)

    try:
        session = asyncio.run(manager.complete_from_callback(url))
    except OAuthFlowError as e:
        output.error(e, help_text="Run 'celebi login' again to retry.")

    if session is None:
        output.success(
            {"logged_in": manager.is_logged_in(), "completed": False},
            human_message="No authorization code in that URL; nothing to do.",
        )
        return

    output.success(
        {"logged_in": True, "completed": True, "instance": session.instance_url},
        human_message=click.style(f"Logged in to {session.instance_url}", fg="green"),
    )


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether you are logged in, and where."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    auth_status = get_manager(ctx, config).get_auth_status()

    if ctx.obj["json_mode"]:
        output.success(auth_status.to_dict())
        return

    if auth_status.logged_in:
        click.secho("Logged in", fg="green", nl=False)
        click.echo(f" to {auth_status.instance}", nl=False)
        if auth_status.logged_in_ago_human:
            click.echo(f" ({auth_status.logged_in_ago_human})")
        else:
            click.echo()
    else:
        click.secho("Logged out", fg="yellow")

    if auth_status.pending_instance:
        flavor = "PKCE" if auth_status.pkce_pending else "no PKCE"
        click.echo(f"Login to {auth_status.pending_instance} in progress ({flavor})")


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Forget the current session."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    get_manager(ctx, config).logout()
    output.success({"logged_in": False}, human_message="Logged out.")


@main.command()
@click.option("--limit", "-l", default=10, show_default=True, help="Number of posts")
@click.option("--max-id", help="Only posts older than this id")
@click.pass_context
def timeline(ctx: click.Context, limit: int, max_id: str | None) -> None:
    """Show your home timeline."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    session = get_manager(ctx, config).get_session()

    if session is None:
        output.error(
            OAuthFlowError("Not logged in"),
            help_text="Run 'celebi login <instance>' first.",
        )

    try:
        posts = asyncio.run(
            fetch_home_timeline(session, limit=limit, max_id=max_id, timeout=config.http_timeout)
        )
    except TimelineError as e:
        output.error(e)

    if ctx.obj["json_mode"]:
        output.success({"instance": session.instance_url, "posts": [p.to_dict() for p in posts]})
        return

    if not posts:
        click.echo("Your home timeline is empty.")
        return

    for post in posts:
        click.secho(post.author, bold=True, nl=False)
        click.secho(f" {post.username}", fg="cyan", nl=False)
        click.secho(f"  {post.created_at or ''}", dim=True)
        click.echo(f"  {_plain_text(post.content)}")
        if post.media_attachments:
            click.secho(f"  [{len(post.media_attachments)} attachment(s)]", fg="yellow")
        click.echo()
