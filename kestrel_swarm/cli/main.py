"""kestrel-swarm CLI interface."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Optional

import click
import pendulum
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from kestrel_swarm import __version__
from kestrel_swarm.core.di_container import container, initialize_container
from kestrel_swarm.core.errors import KestrelSwarmError
from kestrel_swarm.core.models import DelegationStatus, SwarmRun, SwarmStatus
from kestrel_swarm.core.settings import get_settings
from kestrel_swarm.delegation.engine import DelegationEngine
from kestrel_swarm.delegation.types import DelegationRequest, DelegationResult
from kestrel_swarm.swarm.orchestrator import SwarmOrchestrator

console = Console(force_terminal=True, stderr=False)

STATUS_STYLES = {
    "pending": "dim",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
    "timeout": "magenta",
}


@dataclass
class Runtime:
    engine: DelegationEngine
    orchestrator: SwarmOrchestrator


async def build_runtime() -> Runtime:
    """Fresh services from the DI container for one command invocation."""
    container.reset_singletons()
    await initialize_container(container)
    return Runtime(engine=container.engine(), orchestrator=container.orchestrator())


def run_async(coro: Any) -> Any:
    """Helper to run async function in sync context"""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Interrupted.[/yellow]")
        sys.exit(130)
    except KestrelSwarmError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        sys.exit(1)


def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "-"
    return pendulum.from_timestamp(timestamp).format("YYYY-MM-DD HH:mm:ss")


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """kestrel-swarm - recursive agent delegation and swarm orchestration"""
    app_settings = get_settings()
    level = "DEBUG" if verbose or app_settings.debug else app_settings.log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------------------------------------------------------
# Profiles and templates
# ----------------------------------------------------------------------


@click.group()
def profiles() -> None:
    """Agent profiles"""


@profiles.command("list")
def list_profiles() -> None:
    """List agent profiles"""

    async def _list() -> None:
        runtime = await build_runtime()
        items, total = await runtime.engine.list_profiles()

        table = Table(title=f"Agent profiles ({total})")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Budget", justify="right")
        table.add_column("Built-in")
        table.add_column("Description", style="dim")
        for profile in items:
            table.add_row(
                profile.name,
                profile.type.value,
                str(profile.max_token_budget),
                "yes" if profile.is_builtin else "",
                profile.description,
            )
        console.print(table)

    run_async(_list())


@click.group()
def templates() -> None:
    """Swarm templates"""


@templates.command("list")
def list_templates() -> None:
    """List swarm templates"""

    async def _list() -> None:
        runtime = await build_runtime()
        items = await runtime.orchestrator.list_templates()

        table = Table(title=f"Swarm templates ({len(items)})")
        table.add_column("Name", style="cyan")
        table.add_column("Strategy")
        table.add_column("Roles")
        table.add_column("Coordinator")
        table.add_column("Built-in")
        for template in items:
            table.add_row(
                template.name,
                template.strategy.value,
                ", ".join(f"{r.role}({r.profile_name})" for r in template.roles),
                template.coordinator_profile or "",
                "yes" if template.is_builtin else "",
            )
        console.print(table)

    run_async(_list())


# ----------------------------------------------------------------------
# Delegations
# ----------------------------------------------------------------------


def _print_delegation_result(result: DelegationResult) -> None:
    console.print(f"[bold]Delegation[/bold] {result.delegation_id} ({result.profile})")
    console.print(f"Status: {_styled(result.status.value)}")
    usage = result.token_usage
    console.print(
        f"Tokens: {usage.total} (prompt {usage.prompt}, completion {usage.completion})"
        f"  Duration: {result.duration_ms}ms"
    )
    if result.sub_delegations:
        console.print(f"Sub-delegations: {len(result.sub_delegations)}")
    if result.error:
        console.print(f"[red]{escape(result.error)}[/red]")
    if result.result:
        console.print()
        console.print(result.result, markup=False)


@click.command()
@click.argument("profile")
@click.argument("task")
@click.option("--context", "-c", help="Background for the agent")
@click.option("--budget", "-b", type=int, help="Token budget (clamped to configured ceilings)")
@click.option("--timeout-ms", type=int, help="Timeout in milliseconds")
def delegate(
    profile: str,
    task: str,
    context: Optional[str],
    budget: Optional[int],
    timeout_ms: Optional[int],
) -> None:
    """Delegate TASK to the agent PROFILE"""

    async def _delegate() -> DelegationResult:
        runtime = await build_runtime()
        return await runtime.engine.delegate(
            DelegationRequest(
                profile=profile,
                task=task,
                context=context,
                max_token_budget=budget,
                timeout_ms=timeout_ms,
                initiated_by="cli",
            )
        )

    result = run_async(_delegate())
    _print_delegation_result(result)
    if not result.succeeded:
        sys.exit(1)


@click.group()
def delegations() -> None:
    """Inspect delegations"""


@delegations.command("list")
@click.option(
    "--status",
    "-s",
    type=click.Choice([s.value for s in DelegationStatus]),
    help="Only delegations with this status",
)
@click.option("--limit", "-n", type=int, default=50, show_default=True)
def list_delegations(status: Optional[str], limit: int) -> None:
    """List delegations, newest first"""

    async def _list() -> None:
        runtime = await build_runtime()
        items, total = await runtime.engine.list_delegations(
            status=DelegationStatus(status) if status else None, limit=limit
        )

        table = Table(title=f"Delegations ({len(items)} of {total})")
        table.add_column("ID", style="cyan")
        table.add_column("Profile")
        table.add_column("Status")
        table.add_column("Depth", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Created", style="dim")
        for record in items:
            table.add_row(
                record.id,
                record.profile_name,
                _styled(record.status.value),
                str(record.depth),
                f"{record.tokens_used}/{record.token_budget}",
                _format_time(record.created_at),
            )
        console.print(table)

    run_async(_list())


@delegations.command("tree")
@click.argument("delegation_id")
def delegation_tree(delegation_id: str) -> None:
    """Show a delegation and all of its descendants"""

    async def _tree() -> None:
        runtime = await build_runtime()
        records = await runtime.engine.get_delegation_tree(delegation_id)

        nodes = {}
        root = None
        for record in records:
            label = (
                f"[cyan]{record.profile_name}[/cyan] {_styled(record.status.value)} "
                f"[dim]{record.id} tokens={record.tokens_used}[/dim]"
            )
            parent = nodes.get(record.parent_delegation_id or "")
            if root is None:
                root = Tree(label)
                nodes[record.id] = root
            elif parent is not None:
                nodes[record.id] = parent.add(label)
        console.print(root)

    run_async(_tree())


@delegations.command("messages")
@click.argument("delegation_id")
def delegation_messages(delegation_id: str) -> None:
    """Show the transcript of a delegation"""

    async def _messages() -> None:
        runtime = await build_runtime()
        messages = await runtime.engine.get_delegation_messages(delegation_id)
        if not messages:
            console.print("[dim]No messages recorded.[/dim]")
            return
        for message in messages:
            console.print(f"[bold]#{message.seq} {message.role}[/bold]")
            if message.content:
                console.print(message.content, markup=False)
            for call in message.tool_calls or []:
                call_text = escape(f"{call.get('name')}({call.get('arguments')})")
                console.print(f"[yellow]-> {call_text}[/yellow]")
            console.print()

    run_async(_messages())


# ----------------------------------------------------------------------
# Swarms
# ----------------------------------------------------------------------


def _print_swarm_run(run: SwarmRun) -> None:
    console.print(f"[bold]Swarm run[/bold] {run.id} ({run.template_name}, {run.strategy.value})")
    console.print(f"Status: {_styled(run.status.value)}")
    console.print(
        f"Tokens: {run.tokens_used_prompt + run.tokens_used_completion}/{run.token_budget} "
        f"(prompt {run.tokens_used_prompt}, completion {run.tokens_used_completion})"
    )
    if run.members:
        table = Table()
        table.add_column("#", justify="right")
        table.add_column("Role", style="cyan")
        table.add_column("Profile")
        table.add_column("Status")
        table.add_column("Delegation", style="dim")
        for member in run.members:
            table.add_row(
                str(member.seq_order),
                member.role,
                member.profile_name,
                _styled(member.status.value),
                member.delegation_id or "-",
            )
        console.print(table)
    if run.error:
        console.print(f"[red]{escape(run.error)}[/red]")
    if run.result:
        console.print()
        console.print(run.result, markup=False)


@click.group()
def swarm() -> None:
    """Run and inspect swarms"""


@swarm.command("run")
@click.argument("template")
@click.argument("task")
@click.option("--context", "-c", help="Background shared by all roles")
@click.option("--budget", "-b", type=int, help="Shared token budget for the run")
def run_swarm(template: str, task: str, context: Optional[str], budget: Optional[int]) -> None:
    """Run TEMPLATE against TASK"""

    async def _run() -> SwarmRun:
        runtime = await build_runtime()
        return await runtime.orchestrator.execute_swarm(
            template, task, context=context, token_budget=budget, initiated_by="cli"
        )

    run = run_async(_run())
    _print_swarm_run(run)
    if run.status != SwarmStatus.COMPLETED:
        sys.exit(1)


@swarm.command("list")
@click.option(
    "--status",
    "-s",
    type=click.Choice([s.value for s in SwarmStatus]),
    help="Only runs with this status",
)
@click.option("--limit", "-n", type=int, default=50, show_default=True)
def list_swarm_runs(status: Optional[str], limit: int) -> None:
    """List swarm runs, newest first"""

    async def _list() -> None:
        runtime = await build_runtime()
        runs, total = await runtime.orchestrator.list_swarm_runs(
            status=SwarmStatus(status) if status else None, limit=limit
        )

        table = Table(title=f"Swarm runs ({len(runs)} of {total})")
        table.add_column("ID", style="cyan")
        table.add_column("Template")
        table.add_column("Strategy")
        table.add_column("Status")
        table.add_column("Created", style="dim")
        for run in runs:
            table.add_row(
                run.id,
                run.template_name,
                run.strategy.value,
                _styled(run.status.value),
                _format_time(run.created_at),
            )
        console.print(table)

    run_async(_list())


@swarm.command("show")
@click.argument("run_id")
def show_swarm_run(run_id: str) -> None:
    """Show a swarm run with its members"""

    async def _show() -> SwarmRun:
        runtime = await build_runtime()
        return await runtime.orchestrator.get_swarm_run(run_id)

    _print_swarm_run(run_async(_show()))


# ----------------------------------------------------------------------
# Config
# ----------------------------------------------------------------------


@click.group()
def config() -> None:
    """Configuration"""


@config.command("show")
def show_config() -> None:
    """Show the effective configuration"""
    app_settings = get_settings()

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("storage_dir", str(app_settings.storage_dir_path()))
    table.add_row("log_level", app_settings.log_level)
    for key, value in app_settings.delegation.model_dump().items():
        table.add_row(f"delegation.{key}", str(value))
    table.add_row("swarm.default_token_budget", str(app_settings.swarm.default_token_budget))
    table.add_row("inference.base_url", app_settings.inference.base_url)
    table.add_row("inference.model", app_settings.inference.model)
    table.add_row(
        "inference.api_key", "set" if app_settings.inference.api_key else "[red]not set[/red]"
    )
    console.print(table)


cli.add_command(profiles)
cli.add_command(templates)
cli.add_command(delegate)
cli.add_command(delegations)
cli.add_command(swarm)
cli.add_command(config)


if __name__ == "__main__":
    cli()
