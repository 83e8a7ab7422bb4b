"""Command-line interface for peerwatch."""

import asyncio
import logging
import sys
import typing

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from peerwatch.config import ConfigError, PeerwatchConfig, load_config
from peerwatch.database import AsyncDatabase
from peerwatch.errors import CycleFailedError
from peerwatch.models import CycleReport, EventKind, TopologyNode
from peerwatch.poll import PollService
from peerwatch.topology import TopologyAnalyzer

console = Console()

HEALTH_STYLES = {"healthy": "green", "lagging": "yellow", "issue": "red"}


def run_async(coro):
    """Run an async coroutine from sync context.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    with asyncio.Runner() as runner:
        return runner.run(coro)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _db_path(config: PeerwatchConfig, db: str | None) -> str:
    return db or config.db_path


db_option = click.option(
    "--db",
    default=None,
    help="Database file path (default: from config)",
    type=click.Path(),
)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    default=None,
    help="Config file (default: ~/.peerwatch/config.yaml)",
    type=click.Path(),
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool):
    """Peerwatch - Observe the nodes and peer graph of a validator network."""
    setup_logging(verbose)
    try:
        ctx.obj = load_config(config_path)
    except (ConfigError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e


def _print_report(report: CycleReport) -> None:
    process = report.process
    snapshot = process.snapshot

    console.print(
        f"[green]Polled {report.nodes_polled} node(s)[/green] "
        f"(network height {report.network_max_height})"
    )
    console.print(
        f"  Health: [green]{snapshot.healthy_nodes} healthy[/green], "
        f"[yellow]{snapshot.lagging_nodes} lagging[/yellow], "
        f"[red]{snapshot.issue_nodes} issue[/red]"
    )
    console.print(f"  Pulse score: [bold]{snapshot.pulse_score:.1f}[/bold]")

    changes = [
        ("new", process.new_nodes, "cyan"),
        ("disappeared", process.disappeared, "red"),
        ("reappeared", process.reappeared, "green"),
        ("restarted", process.restarts, "yellow"),
    ]
    for label, node_ids, style in changes:
        if node_ids:
            preview = ", ".join(node_ids[:5])
            if len(node_ids) > 5:
                preview += f", ... (+{len(node_ids) - 5} more)"
            console.print(f"  [{style}]→ {len(node_ids)} {label}[/{style}]: {preview}")
    if process.health_changes:
        console.print(f"  [dim]→ {len(process.health_changes)} health change(s)[/dim]")
    if process.version_changes:
        console.print(f"  [dim]→ {len(process.version_changes)} version change(s)[/dim]")

    console.print(f"\nPeers: {report.merge.merged} merged, {report.merge.new_peers} new")
    if report.geo.attempted:
        console.print(
            f"  Geo: {report.geo.succeeded}/{report.geo.attempted} located, "
            f"{report.geo.failed} failed"
        )
    console.print(
        f"  Inference: {report.inference.locations_inferred} location(s), "
        f"{report.inference.bootstrappers_detected} bootstrapper(s)"
    )
    console.print(f"  Validators linked: {report.links.linked} new, {report.links.already_linked} known")
    if report.phantom_validators:
        console.print(f"  [yellow]Phantom validators: {len(report.phantom_validators)}[/yellow]")

    topology = report.topology
    diameter = "∞" if topology.diameter_is_infinite else str(topology.diameter)
    console.print(
        f"\nTopology: {topology.node_count} nodes, {topology.edge_count} edges, "
        f"diameter {diameter}, {len(topology.bridges)} bridge(s)"
    )

    for warning in report.process.warnings + report.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")
    for source, error in report.source_errors.items():
        console.print(f"[yellow]Source {source} unavailable: {error}[/yellow]")
    for error in process.errors:
        console.print(f"[red]Integrity error: {error}[/red]")

    if report.status == "partial":
        console.print("\n[yellow]Partial data this cycle: some sources were unavailable.[/yellow]")


@cli.command()
@db_option
@click.pass_obj
def poll(config: PeerwatchConfig, db: str | None):
    """Run one poll cycle and record the results."""
    async def _poll() -> bool:
        async with AsyncDatabase(_db_path(config, db)) as database:
            await database.initialize()
            service = PollService.from_config(config, database)
            try:
                with console.status("[bold green]Polling sources..."):
                    report = await service.run_cycle()
            except CycleFailedError as e:
                console.print(f"[red]Cycle failed: {e}[/red]")
                console.print("[dim]No history was written for this cycle.[/dim]")
                return False

        _print_report(report)
        return True

    if not run_async(_poll()):
        sys.exit(1)


@cli.command()
@db_option
@click.option(
    "--all",
    "show_all",
    is_flag=True,
    help="Include nodes absent from the latest poll",
)
@click.pass_obj
def nodes(config: PeerwatchConfig, db: str | None, show_all: bool):
    """List tracked nodes and their last known state."""
    async def _nodes():
        async with AsyncDatabase(_db_path(config, db)) as database:
            await database.initialize()
            records = await database.get_all_history(present_only=not show_all)

        if not records:
            console.print("[yellow]No nodes found in database.[/yellow]")
            console.print("Run [bold]peerwatch poll[/bold] to collect data.")
            return

        table = Table(title="All Nodes" if show_all else "Present Nodes")
        table.add_column("Node ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="cyan")
        table.add_column("Client", style="blue")
        table.add_column("Health", style="white")
        table.add_column("Peers", style="yellow")
        table.add_column("First Seen", style="white")
        table.add_column("Status", style="white")

        for record in records:
            obs = record.last_observation
            health = record.last_health or "?"
            style = HEALTH_STYLES.get(health, "white")
            if record.is_currently_present:
                status = "[green]✓ Present[/green]"
            else:
                status = f"[red]✗ Missing ({record.missed_poll_streak})[/red]"
            table.add_row(
                record.node_id,
                obs.node_name if obs else "?",
                record.last_client_version or "Unknown",
                f"[{style}]{health}[/{style}]",
                str(obs.peers_count) if obs else "?",
                record.first_seen_at.strftime("%Y-%m-%d %H:%M") if record.first_seen_at else "?",
                status,
            )

        console.print(table)
        console.print(f"\nTotal: {len(records)} node(s)")

    run_async(_nodes())


@cli.command()
@db_option
@click.option(
    "--kind",
    type=click.Choice(typing.get_args(EventKind)),
    help="Only show events of this kind",
)
@click.option("--node", "node_id", help="Only show events for this node")
@click.option("--limit", default=50, help="Maximum events to show", type=int)
@click.pass_obj
def events(config: PeerwatchConfig, db: str | None, kind: str | None, node_id: str | None, limit: int):
    """Show recent change events, newest first."""
    async def _events():
        async with AsyncDatabase(_db_path(config, db)) as database:
            await database.initialize()
            found = await database.get_events(kind=kind, node_id=node_id, limit=limit)

        if not found:
            console.print("[yellow]No events found.[/yellow]")
            return

        table = Table(title="Change Events")
        table.add_column("Time", style="white", no_wrap=True)
        table.add_column("Kind", style="cyan")
        table.add_column("Node ID", style="magenta")
        table.add_column("Detail", style="dim")

        for event in found:
            detail = ", ".join(f"{key}={value}" for key, value in event.detail.items())
            table.add_row(
                event.occurred_at.strftime("%Y-%m-%d %H:%M:%S"),
                event.kind,
                event.node_id,
                detail,
            )

        console.print(table)

    run_async(_events())


@cli.command()
@db_option
@click.option("--limit", default=20, help="Maximum snapshots to show", type=int)
@click.pass_obj
def snapshots(config: PeerwatchConfig, db: str | None, limit: int):
    """Show recent network snapshots, newest first."""
    async def _snapshots():
        async with AsyncDatabase(_db_path(config, db)) as database:
            await database.initialize()
            found = await database.get_snapshots(limit=limit)

        if not found:
            console.print("[yellow]No snapshots recorded yet.[/yellow]")
            return

        table = Table(title="Network Snapshots")
        table.add_column("Time", style="white", no_wrap=True)
        table.add_column("Nodes", style="cyan")
        table.add_column("Healthy", style="green")
        table.add_column("Lagging", style="yellow")
        table.add_column("Issue", style="red")
        table.add_column("Avg Peers", style="blue")
        table.add_column("Avg Latency", style="blue")
        table.add_column("Lag p95", style="magenta")
        table.add_column("Consensus %", style="white")
        table.add_column("Pulse", style="bold")

        for snapshot in found:
            latency = f"{snapshot.avg_latency:.0f} ms" if snapshot.avg_latency is not None else "?"
            table.add_row(
                snapshot.timestamp.strftime("%Y-%m-%d %H:%M"),
                str(snapshot.total_nodes),
                str(snapshot.healthy_nodes),
                str(snapshot.lagging_nodes),
                str(snapshot.issue_nodes),
                f"{snapshot.avg_peers:.1f}",
                latency,
                str(snapshot.max_finalization_lag),
                f"{snapshot.consensus_participation_pct:.1f}",
                f"{snapshot.pulse_score:.1f}",
            )

        console.print(table)

    run_async(_snapshots())


@cli.command()
@db_option
@click.option(
    "--bootstrappers-only",
    is_flag=True,
    help="Only show peers flagged as bootstrappers",
)
@click.pass_obj
def peers(config: PeerwatchConfig, db: str | None, bootstrappers_only: bool):
    """List the reconciled peer registry."""
    async def _peers():
        async with AsyncDatabase(_db_path(config, db)) as database:
            await database.initialize()
            found = await database.get_all_peers(bootstrappers_only=bootstrappers_only)

        if not found:
            console.print("[yellow]No peers found.[/yellow]")
            return

        table = Table(title="Bootstrappers" if bootstrappers_only else "Peers")
        table.add_column("Endpoint", style="cyan", no_wrap=True)
        table.add_column("Node", style="magenta")
        table.add_column("Validator", style="green")
        table.add_column("Sources", style="blue")
        table.add_column("Seen By", style="yellow")
        table.add_column("Location", style="white")
        table.add_column("Last Seen", style="white")

        for peer in found:
            location = "?"
            if peer.geo is not None:
                place = ", ".join(part for part in (peer.geo.city, peer.geo.country) if part)
                location = place or f"{peer.geo.lat:.2f}, {peer.geo.lon:.2f}"
                if peer.geo.confidence != "lookup":
                    location += f" [dim]({peer.geo.confidence})[/dim]"
            endpoint = f"{peer.ip}:{peer.port}"
            if peer.is_bootstrapper:
                endpoint += " [bold]★[/bold]"
            table.add_row(
                endpoint,
                peer.node_name or peer.linked_node_id or "",
                str(peer.linked_baker_id) if peer.linked_baker_id is not None else "",
                ", ".join(sorted(peer.sources)),
                str(peer.seen_by_count),
                location,
                peer.last_observed.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)
        console.print(f"\nTotal: {len(found)} peer(s)")

    run_async(_peers())


@cli.command()
@db_option
@click.option("--top-k", default=None, help="Bottleneck nodes to report", type=int)
@click.pass_obj
def topology(config: PeerwatchConfig, db: str | None, top_k: int | None):
    """Analyze the peer graph of the nodes present in the latest poll."""
    async def _topology():
        async with AsyncDatabase(_db_path(config, db)) as database:
            await database.initialize()
            records = await database.get_all_history(present_only=True)

        nodes = [
            TopologyNode(id=record.node_id, peer_ids=record.last_observation.peers_list)
            for record in records
            if record.last_observation is not None
        ]
        if not nodes:
            console.print("[yellow]No nodes found in database.[/yellow]")
            console.print("Run [bold]peerwatch poll[/bold] to collect data.")
            return

        analyzer = TopologyAnalyzer(
            degree_weight=config.bottleneck_degree_weight,
            cut_vertex_weight=config.bottleneck_cut_vertex_weight,
        )
        summary = analyzer.analyze(nodes, top_k=top_k if top_k is not None else config.bottleneck_top_k)

        diameter = "∞" if summary.diameter_is_infinite else str(summary.diameter)
        connected = "[green]yes[/green]" if summary.is_connected else "[red]no[/red]"

        console.print("\n[bold cyan]Peer Graph[/bold cyan]")
        console.print(f"[dim]{'=' * 60}[/dim]")
        console.print(f"  Nodes: {summary.node_count}")
        console.print(f"  Edges: {summary.edge_count}")
        console.print(f"  Average degree: {summary.avg_degree:.2f}")
        console.print(f"  Diameter: {diameter}")
        console.print(f"  Clustering coefficient: {summary.global_clustering_coefficient:.3f}")
        console.print(f"  Connected: {connected}")

        if summary.bottlenecks:
            console.print("\n[bold]Bottlenecks:[/bold]")
            for node_id in summary.bottlenecks:
                marker = " [red](cut vertex)[/red]" if node_id in summary.articulation_points else ""
                console.print(f"  - {node_id}{marker}")

        if summary.bridges:
            console.print(f"\n[bold]Bridges ({len(summary.bridges)}):[/bold]")
            for a, b in summary.bridges[:20]:
                console.print(f"  {a} <-> {b}")
            if len(summary.bridges) > 20:
                console.print(f"  ... and {len(summary.bridges) - 20} more")

        console.print()

    run_async(_topology())


if __name__ == "__main__":
    cli()
