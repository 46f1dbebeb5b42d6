"""Command-line interface for the signograph knowledge graph.

Every command opens the store, does its work and closes it again (which
saves), so each invocation is one undo-less session.
"""

import asyncio
import json
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click
from rich.console import Console
from rich.table import Table

from .errors import MergeError
from .oracle import parse_expansion
from .store import GraphStore, default_data_path

console = Console()

T = TypeVar("T")

METRIC_CHOICES = ["pagerank", "betweenness", "closeness", "degree", "clustering", "importance"]


def _run(ctx: click.Context, action: Callable[[GraphStore], Awaitable[T]]) -> T:
    """Open the store, run ``action`` and close it."""

    async def _session() -> T:
        async with GraphStore(ctx.obj["data_path"], autosave_interval=0) as store:
            return await action(store)

    return asyncio.run(_session())


@click.group()
@click.option(
    "--data-path",
    envvar="SIGNOGRAPH_PATH",
    type=click.Path(path_type=Path),
    help="Path to data directory (default: ./.signograph)",
)
@click.pass_context
def cli(ctx, data_path):
    """Signograph - signed knowledge graph analytics."""
    ctx.ensure_object(dict)
    ctx.obj["data_path"] = data_path or default_data_path()


@cli.command()
@click.option("--force", is_flag=True, help="Replace the stored graph with the bundled seed")
@click.pass_context
def init(ctx, force):
    """Initialize the data directory from the bundled seed."""

    async def action(store: GraphStore):
        if force:
            await store.reset_to_seed()
        return store.stats()

    stats = _run(ctx, action)
    console.print(
        f"[green]✓[/green] Graph v{stats['version']} at {ctx.obj['data_path']}: "
        f"{stats['nodes']} nodes, {stats['edges']} edges"
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json):
    """Show graph size and graph-level metrics."""

    async def action(store: GraphStore):
        return store.stats()

    stats = _run(ctx, action)
    if as_json:
        click.echo(json.dumps(stats, indent=2, default=str))
        return

    console.print(f"Graph version: [cyan]{stats['version']}[/cyan]")
    console.print(f"Nodes: [bold]{stats['nodes']}[/bold], edges: [bold]{stats['edges']}[/bold]")
    for node_type, count in sorted(stats["node_types"].items()):
        console.print(f"  {node_type}: {count}")
    console.print(f"Modularity: {stats['modularity']}")
    console.print(f"Global balance: {stats['global_balance']:.3f}" if stats["global_balance"] is not None else "Global balance: n/a")
    if stats["metrics_stale"]:
        console.print("[yellow]Metrics are stale[/yellow]")
    if stats["embeddings"]:
        console.print(f"Embeddings: {stats['embeddings']['status']}")


@cli.command()
@click.option("-n", "--limit", default=10, help="Number of nodes to show")
@click.option("--by", "metric", type=click.Choice(METRIC_CHOICES), default="pagerank", help="Ranking metric")
@click.pass_context
def top(ctx, limit, metric):
    """Show the most central nodes."""
    attribute = "degree_centrality" if metric == "degree" else metric

    async def action(store: GraphStore):
        return store.graph

    graph = _run(ctx, action)
    ranked = sorted(graph.nodes, key=lambda n: getattr(n, attribute) or 0.0, reverse=True)[:limit]

    table = Table(title=f"Top {len(ranked)} by {metric}")
    table.add_column("ID", style="cyan")
    table.add_column("Label")
    table.add_column("Type")
    table.add_column(metric, justify="right")
    table.add_column("Community", justify="right")
    for node in ranked:
        table.add_row(
            node.id,
            node.label,
            node.type,
            f"{getattr(node, attribute) or 0.0:.4f}",
            str(node.louvain_community),
        )
    console.print(table)


@cli.command()
@click.option("--threshold", type=float, default=None, help="Minimum similarity 0-1")
@click.option("--semantic", is_flag=True, help="Compare embeddings instead of labels")
@click.pass_context
def duplicates(ctx, threshold, semantic):
    """List node pairs that look like duplicates."""

    async def action(store: GraphStore):
        return await store.find_duplicates(semantic=semantic, threshold=threshold)

    candidates = _run(ctx, action)
    if not candidates:
        console.print("[green]No duplicate candidates[/green]")
        return

    table = Table(title=f"{len(candidates)} duplicate candidates")
    table.add_column("A", style="cyan")
    table.add_column("B", style="cyan")
    table.add_column("Similarity", justify="right")
    table.add_column("Reason", style="dim")
    for c in candidates:
        table.add_row(
            f"{c.node_a.label} ({c.node_a.id})",
            f"{c.node_b.label} ({c.node_b.id})",
            f"{c.similarity:.2f}",
            c.reason,
        )
    console.print(table)


@cli.command()
@click.argument("keep")
@click.argument("drop")
@click.pass_context
def merge(ctx, keep, drop):
    """Merge node DROP into node KEEP."""

    async def action(store: GraphStore):
        await store.merge_nodes(keep, drop)
        return store.stats()

    try:
        stats = _run(ctx, action)
    except MergeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] Merged {drop} into {keep} ({stats['nodes']} nodes, {stats['edges']} edges)")


@cli.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_context
def delete(ctx, ids):
    """Delete nodes and every edge touching them."""

    async def action(store: GraphStore):
        return await store.bulk_delete(ids)

    removed = _run(ctx, action)
    if removed:
        console.print(f"[green]✓[/green] Deleted {removed} node(s)")
    else:
        console.print("[yellow]No matching nodes[/yellow]")


@cli.command()
@click.argument("patch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def apply(ctx, patch_file):
    """Apply a patch file ({nodes: [...], edges: [...]}, fenced or plain JSON)."""
    proposal = parse_expansion(patch_file.read_text(encoding="utf-8"))
    if not proposal.ok:
        console.print(f"[red]Error:[/red] {proposal.error}")
        raise SystemExit(1)

    async def action(store: GraphStore):
        return await store.apply_proposal(proposal)

    report = _run(ctx, action).to_dict()
    console.print(f"[green]✓[/green] {report['summary']}")
    if report["edges_invalid"] or report["edges_duplicate"]:
        console.print(
            f"  [yellow]Dropped {report['edges_invalid']} dangling and "
            f"{report['edges_duplicate']} duplicate edges[/yellow]"
        )
    for problem in report["skipped"]:
        console.print(f"  [dim]Skipped: {problem}[/dim]")
    if proposal.skipped:
        console.print(f"  [dim]{proposal.skipped} malformed items ignored[/dim]")


@cli.command()
@click.pass_context
def regions(ctx):
    """Show regional isolation and the strongest cross-region bridges."""

    async def action(store: GraphStore):
        return store.regional_analysis()

    result = _run(ctx, action)
    console.print(f"Isolation index: [bold]{result.isolation_index:.2f}[/bold]")
    console.print(f"Dominant region: [cyan]{result.dominant_region}[/cyan]")

    table = Table(title="Bridges")
    table.add_column("ID", style="cyan")
    table.add_column("Label")
    table.add_column("Score", justify="right")
    for bridge in result.bridges:
        table.add_row(bridge.id, bridge.label, f"{bridge.score:.2f}")
    console.print(table)


@cli.command()
@click.pass_context
def communities(ctx):
    """Show community summaries at coarse and fine resolution."""

    async def action(store: GraphStore):
        return store.community_hierarchy()

    hierarchy = _run(ctx, action)
    if not hierarchy.summaries:
        console.print("[yellow]No communities with enough members[/yellow]")
        return

    table = Table(title="Communities")
    table.add_column("ID", style="cyan")
    table.add_column("Resolution", justify="right")
    table.add_column("Members", justify="right")
    table.add_column("Timespan")
    table.add_column("Region")
    for summary in hierarchy.summaries:
        table.add_row(
            summary.id,
            f"{summary.resolution:.1f}",
            str(len(summary.entities)),
            summary.timespan,
            summary.region,
        )
    console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
