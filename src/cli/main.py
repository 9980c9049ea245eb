"""CLI commands for daily prompts."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import load_config_model
from app.logging_config import setup_logging
from app.runtime import PromptsRuntime, run_forever
from prompts.errors import PromptsError

console = Console()


def get_runtime(ctx: click.Context) -> PromptsRuntime:
    """Runtime with packs loaded, built once per invocation."""
    if "runtime" not in ctx.obj:
        runtime = PromptsRuntime(ctx.obj["config"])
        runtime.load_packs()
        ctx.obj["runtime"] = runtime
    return ctx.obj["runtime"]


def run_and_close(runtime: PromptsRuntime, coro):
    """Run one engine operation, then flush pending progress."""

    async def _run():
        try:
            return await coro
        finally:
            await runtime.engine.close()

    try:
        return asyncio.run(_run())
    except PromptsError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option("-c", "--config", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool):
    """Daily Prompts - scheduled prompt packs with progress tracking."""
    try:
        config = load_config_model(config_path)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)
    level = "DEBUG" if verbose else config.logging.level
    setup_logging(json_mode=config.logging.json_mode, level=level, log_file=config.paths.log_file)
    ctx.obj = {"config": config}


@cli.command("packs")
@click.pass_context
def packs_list(ctx: click.Context):
    """List packs with their progress."""
    runtime = get_runtime(ctx)
    packs = runtime.engine.list_packs()
    if not packs:
        console.print("[yellow]No packs configured.[/]")
        return

    table = Table(title="Prompt Packs")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Progress", justify="right")
    table.add_column("Notify")

    for pack in packs:
        stats = runtime.engine.get_pack_stats(pack.id)
        notify = pack.settings.notification_time if pack.settings.notifications_enabled else "-"
        table.add_row(
            pack.id,
            pack.name,
            pack.type.value,
            f"{stats['completed']}/{stats['total']} ({stats['percentage']}%)",
            notify,
        )
    console.print(table)


@cli.command("next")
@click.argument("pack_id")
@click.pass_context
def next_prompt(ctx: click.Context, pack_id: str):
    """Show the next prompt of a pack."""
    runtime = get_runtime(ctx)
    prompt = run_and_close(runtime, runtime.engine.get_next_prompt(pack_id))
    if prompt is None:
        console.print("[yellow]No prompts remaining.[/]")
        return
    console.print(f"[dim]{prompt.id}[/]")
    console.print(prompt.content)


@cli.command("complete")
@click.argument("pack_id")
@click.argument("prompt_id")
@click.pass_context
def complete(ctx: click.Context, pack_id: str, prompt_id: str):
    """Mark a prompt completed."""
    runtime = get_runtime(ctx)
    run_and_close(runtime, runtime.engine.mark_prompt_completed(pack_id, prompt_id))
    console.print(f"[green]Completed:[/] {prompt_id}")


@cli.command("reset")
@click.argument("pack_id")
@click.confirmation_option(prompt="Reset all progress for this pack?")
@click.pass_context
def reset(ctx: click.Context, pack_id: str):
    """Reset a pack's progress."""
    runtime = get_runtime(ctx)
    run_and_close(runtime, runtime.engine.reset_progress(pack_id))
    console.print(f"[green]Reset:[/] {pack_id}")


@cli.command("stats")
@click.pass_context
def stats(ctx: click.Context):
    """Overall completion statistics."""
    overall = get_runtime(ctx).engine.get_overall_stats()
    console.print(
        f"Packs: {overall['total_packs']} "
        f"({overall['active_packs']} active, {overall['completed_packs']} completed)"
    )
    console.print(
        f"Prompts: {overall['completed_prompts']}/{overall['total_prompts']} "
        f"({overall['overall_progress']}%)"
    )


@cli.command("archives")
@click.pass_context
def archives(ctx: click.Context):
    """List archived progress records."""
    records = get_runtime(ctx).store.list_archives()
    if not records:
        console.print("[yellow]No archived progress.[/]")
        return
    table = Table(title="Archived Progress")
    table.add_column("Pack", style="cyan")
    table.add_column("Archived")
    table.add_column("Completed", justify="right")
    for record in records:
        table.add_row(record["pack_id"], record["archived_at"][:19], str(record["completed"]))
    console.print(table)


@cli.command("run")
@click.pass_context
def run(ctx: click.Context):
    """Run the notification scheduler until interrupted."""
    runtime = PromptsRuntime(ctx.obj["config"])
    console.print("[green]Daily prompts running.[/] Press Ctrl+C to stop.")
    try:
        asyncio.run(run_forever(runtime))
    except KeyboardInterrupt:
        pass
    console.print("\n[yellow]Stopped[/]")


if __name__ == "__main__":
    cli()
