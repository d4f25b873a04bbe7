#!/usr/bin/env python3
"""
Main CLI for Pulse - what should I do right now?

Usage:
    pulse now                    - Show the current focus
    pulse do OP REF_ID           - Apply an action (e.g. complete_action 42)
    pulse defer                  - Leave me alone for 24h
    pulse wake                   - End a deferral early
    pulse dismiss KEY            - Dismiss a candidate (e.g. action:42)
    pulse add KIND TITLE         - Add an action/decision/blocker/session
    pulse compute FILE           - Run the engine offline on a bundle JSON file
    pulse daemon start|status    - Manage the daemon
"""

import asyncio
import json
from typing import Any, Dict, Optional

import click
import httpx
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..daemon.models import CANDIDATE_KINDS, Deferred, NoClearNow, ResolvedNow
from ..daemon.results import parse_now_result, safe_compute_now

console = Console()

DAEMON_URL = "http://localhost:8766"


def render_result(data: Dict[str, Any]) -> None:
    """Render a NowResult payload; anything malformed shows as no clear focus."""
    if data.get("status") == "fetch_error":
        console.print(f"[red]{data.get('explanation', 'Could not load your work.')}[/red]")
        console.print("Try again with: [cyan]pulse now[/cyan]")
        return

    result = parse_now_result(data)

    if isinstance(result, ResolvedNow):
        focus = result.primary_focus
        body = "\n".join(f"• {r}" for r in result.supporting_reasons)
        console.print(Panel(
            body,
            title=f"[bold]{focus.title}[/bold]",
            subtitle=f"{result.recommended_action.label} · {result.confidence_score:.0%} confident",
        ))
        op = result.recommended_action.payload.get("op")
        if op:
            console.print(f"[dim]pulse do {op} {focus.ref_id}[/dim]")

        if result.futures:
            table = Table(title="What's next")
            table.add_column("Key", style="cyan")
            table.add_column("Title")
            table.add_column("Horizon", style="magenta")
            table.add_column("Confidence", justify="right")
            for f in result.futures:
                table.add_row(f.key, f.title, f.horizon, f"{f.confidence:.2f}")
            console.print(table)

    elif isinstance(result, Deferred):
        console.print(f"[yellow]Deferred until {result.cooldown_until:%Y-%m-%d %H:%M} UTC[/yellow]")
        if result.last_known_focus:
            console.print(f"Last focus: {result.last_known_focus.title}")
        console.print("End early with: [cyan]pulse wake[/cyan]")

    else:
        explanation = result.explanation if isinstance(result, NoClearNow) else ""
        console.print(f"[yellow]{explanation}[/yellow]")
        fallback = getattr(result, "fallback_action", None)
        if fallback:
            console.print(f"Suggested: [cyan]{fallback.label}[/cyan]")


async def _request(method: str, url: str, path: str, **kwargs) -> Optional[httpx.Response]:
    try:
        async with httpx.AsyncClient() as client:
            return await client.request(method, f"{url}{path}", timeout=5.0, **kwargs)
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        console.print("Start with: [cyan]pulse daemon start[/cyan]")
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] {e}")
    return None


@click.group()
@click.option("--user", "-u", envvar="PULSE_USER", default="me", show_default=True, help="User id")
@click.option("--url", envvar="PULSE_URL", default=DAEMON_URL, show_default=True, help="Daemon URL")
@click.pass_context
def cli(ctx, user: str, url: str):
    """Pulse - focus on one thing."""
    ctx.obj = {"user": user, "url": url}


@cli.command()
@click.pass_obj
def now(obj):
    """Show what to focus on right now."""
    asyncio.run(show_now(obj["url"], obj["user"]))


async def show_now(url: str, user: str) -> Optional[Dict[str, Any]]:
    response = await _request("GET", url, "/now", params={"user_id": user})
    if response is None:
        return None
    if response.status_code not in (200, 503):
        console.print(f"[red]Failed:[/red] {response.text}")
        return None
    data = response.json()
    render_result(data)
    return data


@cli.command(name="do")
@click.argument("op")
@click.argument("ref_id")
@click.pass_obj
def do_action(obj, op: str, ref_id: str):
    """Apply an action to an item."""
    asyncio.run(execute_action(obj["url"], obj["user"], op, ref_id))


async def execute_action(url: str, user: str, op: str, ref_id: str) -> None:
    response = await _request(
        "POST", url, "/now/execute", json={"user_id": user, "op": op, "ref_id": ref_id}
    )
    if response is None:
        return
    data = response.json()
    if data.get("ok"):
        console.print(f"[green]✓[/green] {op} {ref_id}")
    else:
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        console.print(f"[red]Failed:[/red] {error}")


@cli.command()
@click.pass_obj
def defer(obj):
    """Defer focus suggestions for 24 hours."""
    asyncio.run(defer_now(obj["url"], obj["user"]))


async def defer_now(url: str, user: str) -> None:
    current = await _request("GET", url, "/now", params={"user_id": user})
    if current is None:
        return
    data = current.json() if current.status_code == 200 else {}
    focus = data.get("primary_focus") if data.get("status") == "resolved_now" else None

    response = await _request("POST", url, "/now/events", json={
        "user_id": user,
        "type": "DEFER_NOW",
        "payload": {"last_focus_candidate": focus},
    })
    if response is not None and response.status_code == 201:
        console.print("[green]✓[/green] Deferred for 24 hours")


@cli.command()
@click.pass_obj
def wake(obj):
    """End a deferral and recompute."""
    asyncio.run(wake_now(obj["url"], obj["user"]))


async def wake_now(url: str, user: str) -> None:
    response = await _request("POST", url, "/now/events", json={
        "user_id": user, "type": "OVERRIDE_NOW", "payload": {},
    })
    if response is not None and response.status_code == 201:
        await show_now(url, user)


@cli.command()
@click.argument("key")
@click.pass_obj
def dismiss(obj, key: str):
    """Dismiss a candidate so it surfaces less often."""
    asyncio.run(dismiss_candidate(obj["url"], obj["user"], key))


async def dismiss_candidate(url: str, user: str, key: str) -> None:
    response = await _request("POST", url, "/now/dismiss", json={"user_id": user, "key": key})
    if response is None:
        return
    if response.status_code == 200:
        console.print(f"[green]✓[/green] Dismissed {key} ({response.json()['count']} total)")
    else:
        console.print(f"[red]Failed:[/red] {response.text}")


@cli.command()
@click.argument("kind", type=click.Choice(list(CANDIDATE_KINDS)))
@click.argument("title")
@click.option("--priority", "-p", type=click.Choice(["low", "normal", "high", "critical"]))
@click.option("--project", help="Project to associate with")
@click.option("--due", help="Due date (ISO-8601)")
@click.pass_obj
def add(obj, kind: str, title: str, priority: Optional[str], project: Optional[str], due: Optional[str]):
    """Add a work item."""
    asyncio.run(add_item(obj["url"], obj["user"], kind, title, priority, project, due))


async def add_item(url, user, kind, title, priority, project, due) -> None:
    response = await _request("POST", url, "/items", json={
        "user_id": user,
        "kind": kind,
        "title": title,
        "priority": priority,
        "project": project,
        "due_at": due,
    })
    if response is None:
        return
    if response.status_code == 201:
        console.print(f"[green]✓[/green] Added {kind}:{response.json()['id']}")
    else:
        console.print(f"[red]Failed:[/red] {response.text}")


@cli.command()
@click.argument("bundle_file", type=click.File("r"))
@click.option("--json", "as_json", is_flag=True, help="Print the raw result JSON")
def compute(bundle_file, as_json: bool):
    """Run the engine locally on a signal bundle JSON file."""
    try:
        payload = json.load(bundle_file)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="BUNDLE_FILE")

    result = safe_compute_now(payload)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    else:
        render_result(result.to_dict())


@cli.group()
def daemon():
    """Manage the Pulse daemon."""
    pass


@daemon.command()
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
def start(config: Optional[str]):
    """Start the Pulse daemon."""
    console.print("[cyan]Starting Pulse daemon...[/cyan]")

    from ..daemon.main import main as daemon_main

    try:
        asyncio.run(daemon_main(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Daemon error:[/red] {e}")
        logger.exception("Daemon crashed")


@daemon.command()
@click.pass_obj
def status(obj):
    """Check daemon status."""
    asyncio.run(check_status(obj["url"]))


async def check_status(url: str) -> None:
    response = await _request("GET", url, "/status")
    if response is None or response.status_code != 200:
        return
    data = response.json()
    stats = data.get("stats", {})
    console.print("[green]✓ Daemon is running[/green]")
    console.print(f"\nUptime: {data.get('uptime', 'unknown')}")
    console.print(f"Computations: {stats.get('compute_count', 0)}")
    console.print(f"Executions: {stats.get('execute_count', 0)}")
    console.print(f"Memory: {stats.get('memory_mb', 0):.1f} MB")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
