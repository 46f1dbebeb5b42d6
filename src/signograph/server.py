"""MCP server exposing the graph store."""

import asyncio
import json
import logging
import sys
import traceback

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .store import GraphStore, default_data_path

# --- Logging setup ---
data_dir = default_data_path()
data_dir.mkdir(parents=True, exist_ok=True)
log_file = data_dir / "signograph.log"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[
        logging.FileHandler(log_file),
        logging.StreamHandler(sys.stderr),
    ],
)
logger = logging.getLogger("signograph")

# --- Store (opened inside the event loop) ---
store = GraphStore(data_dir)

server = Server("signograph")


def _json(result) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name="get_graph_stats",
            description="Node/edge counts, node types, modularity, global balance and undo/redo availability.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="find_duplicates",
            description=(
                "Find node pairs of the same type that probably describe the same entity. "
                "Lexical mode compares labels by edit distance (default threshold 0.7); "
                "semantic mode compares label+description embeddings (default threshold 0.88)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "semantic": {"type": "boolean", "default": False},
                    "threshold": {"type": "number", "description": "Minimum similarity"},
                    "limit": {"type": "integer", "default": 20},
                },
            },
        ),
        Tool(
            name="apply_patch",
            description=(
                "Upsert nodes by id and add edges. Edges whose endpoints do not exist are dropped; "
                "an edge with the same source, target and label as an existing one is ignored. "
                "Node types: person, organization, event, publication, concept."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "nodes": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "id": {"type": "string"},
                                "label": {"type": "string"},
                                "type": {"type": "string"},
                                "dates": {"type": "string"},
                                "description": {"type": "string"},
                                "importance": {"type": "number"},
                                "region": {"type": "string"},
                                "certainty": {"type": "string"},
                                "sources": {"type": "array", "items": {"type": "string"}},
                            },
                            "required": ["id"],
                        },
                        "default": [],
                    },
                    "edges": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "source": {"type": "string"},
                                "target": {"type": "string"},
                                "label": {"type": "string"},
                                "dates": {"type": "string"},
                                "sign": {"type": "string", "enum": ["positive", "negative"]},
                                "certainty": {"type": "string"},
                            },
                            "required": ["source", "target"],
                        },
                        "default": [],
                    },
                },
            },
        ),
        Tool(
            name="merge_nodes",
            description="Merge node 'drop' into node 'keep': edges are rewired, self-loops removed, missing fields backfilled.",
            inputSchema={
                "type": "object",
                "properties": {
                    "keep": {"type": "string"},
                    "drop": {"type": "string"},
                },
                "required": ["keep", "drop"],
            },
        ),
        Tool(
            name="bulk_delete",
            description="Delete nodes by id together with every edge touching them.",
            inputSchema={
                "type": "object",
                "properties": {"ids": {"type": "array", "items": {"type": "string"}}},
                "required": ["ids"],
            },
        ),
        Tool(
            name="undo",
            description="Revert the last structural change.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="redo",
            description="Re-apply the last undone change.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="regional_analysis",
            description="Regional isolation index, top cross-region bridge nodes and the dominant region.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="community_hierarchy",
            description="Louvain communities at coarse (0.8) and fine (1.2) resolution with timespan and region.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="set_year_filter",
            description="Restrict the filtered view to nodes up to a year (null clears the filter).",
            inputSchema={
                "type": "object",
                "properties": {"year": {"type": ["integer", "null"]}},
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    logger.info(f"Tool call: {name}")
    logger.debug(f"Arguments: {arguments}")

    try:
        if name == "get_graph_stats":
            return _json(store.stats())

        elif name == "find_duplicates":
            candidates = await store.find_duplicates(
                semantic=arguments.get("semantic", False),
                threshold=arguments.get("threshold"),
            )
            limit = arguments.get("limit", 20)
            return _json({
                "count": len(candidates),
                "candidates": [c.to_summary() for c in candidates[:limit]],
            })

        elif name == "apply_patch":
            report = await store.apply_patch(arguments.get("nodes", []), arguments.get("edges", []))
            return _json(report.to_dict())

        elif name == "merge_nodes":
            await store.merge_nodes(arguments["keep"], arguments["drop"])
            return _json({"status": "merged", "kept": arguments["keep"], **store.stats()})

        elif name == "bulk_delete":
            count = await store.bulk_delete(arguments["ids"])
            return [TextContent(type="text", text=f"Deleted {count} nodes")]

        elif name == "undo":
            done = await store.undo()
            return [TextContent(type="text", text="Undone" if done else "Nothing to undo")]

        elif name == "redo":
            done = await store.redo()
            return [TextContent(type="text", text="Redone" if done else "Nothing to redo")]

        elif name == "regional_analysis":
            return _json(store.regional_analysis().model_dump())

        elif name == "community_hierarchy":
            return _json(store.community_hierarchy().model_dump())

        elif name == "set_year_filter":
            store.set_year_filter(arguments.get("year"))
            view = store.filtered_graph
            return _json({
                "year": store.ui.timeline_year,
                "visible_nodes": len(view.nodes),
                "visible_edges": len(view.edges),
            })

        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

    except Exception as e:
        logger.error(f"Tool {name} failed: {e}")
        logger.error(traceback.format_exc())
        return [TextContent(type="text", text=f"Error: {e}")]


def main():
    """Entry point for the MCP server."""
    logger.info(f"Signograph MCP Server starting (data_dir={data_dir})")
    try:
        asyncio.run(_run_server())
    except Exception as e:
        logger.error(f"Server crashed: {e}")
        logger.error(traceback.format_exc())
        raise


async def _run_server():
    """Open the store and run the MCP server."""
    async with store:
        logger.info(f"Loaded {len(store.graph.nodes)} nodes, {len(store.graph.edges)} edges")
        async with stdio_server() as (read, write):
            await server.run(read, write, server.create_initialization_options())


if __name__ == "__main__":
    main()
