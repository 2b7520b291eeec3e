import asyncio
import json
import sys
from typing import Optional

import typer
from loguru import logger

from teamcache.config import get_settings
from teamcache.slack.client import SlackClient
from teamcache.slack.errors import TeamCacheError
from teamcache.slack.store import EntityStore

# Create Typer app instances
app = typer.Typer()
show_app = typer.Typer()

# Register subapps
app.add_typer(show_app, name="show")


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else get_settings().log_level)


async def hydrate(token: Optional[str]) -> EntityStore:
    """Authenticate a token and load its team into a fresh store."""
    client = SlackClient(token=token)
    store = EntityStore(client)
    await store.add_token(client.token)
    return store


def _load(token: Optional[str], verbose: bool) -> EntityStore:
    configure_logging(verbose)
    try:
        return asyncio.run(hydrate(token))
    except (TeamCacheError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def snapshot_data(store: EntityStore) -> dict:
    """Summarize every team in the store as plain data."""
    teams = []
    for team in store.teams.values():
        data = team.model_dump(exclude={"icon"})
        data["icon_url"] = team.icon_url
        data["channels"] = [
            {"id": c.id, "name": c.name, "type": c.type, "private": c.private, "members": len(c.member_ids)}
            for c in team.channels.values()
        ]
        data["users"] = [
            {"id": u.id, "name": u.name, "display_name": u.display_name, "bot": u.bot}
            for u in team.users.values()
        ]
        data["bots"] = [{"id": b.id, "name": b.name, "app_id": b.app_id} for b in team.bots.values()]
        teams.append(data)
    return {"teams": teams}


@app.command("snapshot")
def snapshot(
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Slack API token (defaults to SLACK_API_TOKEN)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write JSON to this file instead of stdout"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Load a workspace and dump teams, channels, users and bots as JSON."""
    store = _load(token, verbose)
    text = json.dumps(snapshot_data(store), indent=2)
    if output:
        with open(output, "w") as f:
            f.write(text)
        typer.echo(f"Wrote snapshot to {output}")
    else:
        typer.echo(text)


# Show commands
@show_app.command("teams")
def show_teams(
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Slack API token"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """List loaded teams."""
    store = _load(token, verbose)
    for team in store.teams.values():
        proxy = f" (via {team.fake_id})" if team.is_proxy else ""
        typer.echo(f"{team.id}\t{team.name or ''}\t{team.domain or ''}{proxy}")


@show_app.command("channels")
def show_channels(
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Slack API token"),
    private: bool = typer.Option(False, "--private", "-p", help="Only show private conversations"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """List conversations of every loaded team."""
    store = _load(token, verbose)
    for team in store.teams.values():
        for channel in sorted(team.channels.values(), key=lambda c: c.name or c.id):
            if private and not channel.private:
                continue
            typer.echo(f"{channel.full_id}\t{channel.type}\t{channel.name or ''}")


@show_app.command("users")
def show_users(
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Slack API token"),
    bots: bool = typer.Option(False, "--bots", "-b", help="Include bot users"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """List members of every loaded team."""
    store = _load(token, verbose)
    for team in store.teams.values():
        for user in sorted(team.users.values(), key=lambda u: u.name or u.id):
            if user.bot and not bots:
                continue
            typer.echo(f"{user.full_id}\t{user.name or ''}\t{user.display_name or ''}")


if __name__ == "__main__":
    app()
