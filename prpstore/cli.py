"""CLI entry point for prpstore."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from prpstore.activity import read_activity_log
from prpstore.config import Config
from prpstore.storage.db import get_connection
from prpstore.storage.repository import ItemFilter, Repository
from prpstore.tools.dispatcher import Dispatcher

app = typer.Typer(help="Store PRP documents as structured records for AI coding agents.")


def _configure_logging(level: str) -> None:
    """Send log records to stderr; stdout carries the MCP stream."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _write_env(project_dir: Path, user: str, privileged: str, anthropic_key: str) -> None:
    """Write or update .env file with prpstore settings."""
    env_path = project_dir / ".env"
    lines: list[str] = []
    lines.append(f"PRPSTORE_USER={user}")
    lines.append(f"PRPSTORE_PRIVILEGED_USERS={privileged}")
    if anthropic_key:
        lines.append(f"ANTHROPIC_API_KEY={anthropic_key}")

    our_keys = {"PRPSTORE_USER", "PRPSTORE_PRIVILEGED_USERS", "ANTHROPIC_API_KEY"}
    if env_path.exists():
        for line in env_path.read_text().splitlines():
            key = line.split("=")[0].strip()
            if key and key not in our_keys:
                lines.append(line)

    env_path.write_text("\n".join(lines) + "\n")
    rprint(f"Settings saved to {env_path}")


def _write_mcp_config(project_dir: Path, user: str, privileged: str) -> None:
    """Create .mcp.json for per-project MCP server configuration.

    The server identity travels in the launch environment, so the server
    does not depend on finding the project .env from its working directory.
    """
    import shutil

    mcp_config_path = project_dir / ".mcp.json"

    prpstore_bin = shutil.which("prpstore")
    if prpstore_bin:
        command, args = prpstore_bin, ["serve"]
    else:
        # Fall back to uv run, pointing at the prpstore source directory
        source_dir = Path(__file__).resolve().parent.parent
        command, args = "uv", ["run", "--directory", str(source_dir), "prpstore", "serve"]

    config = {
        "mcpServers": {
            "prpstore": {
                "type": "stdio",
                "command": command,
                "args": args,
                "env": {
                    "PRPSTORE_DB_PATH": str(project_dir / "prpstore.db"),
                    "PRPSTORE_USER": user,
                    "PRPSTORE_PRIVILEGED_USERS": privileged,
                },
            }
        }
    }

    mcp_config_path.write_text(json.dumps(config, indent=2) + "\n")
    rprint(f"MCP config written to {mcp_config_path}")


def _update_gitignore(project_dir: Path) -> None:
    """Ensure .gitignore includes prpstore files that shouldn't be committed."""
    gitignore_path = project_dir / ".gitignore"
    entries_to_add = ["prpstore.db", "prpstore-activity.jsonl", ".env"]

    existing_lines: set[str] = set()
    if gitignore_path.exists():
        existing_lines = set(gitignore_path.read_text().splitlines())

    new_entries = [e for e in entries_to_add if e not in existing_lines]
    if new_entries:
        with open(gitignore_path, "a") as f:
            if existing_lines and not gitignore_path.read_text().endswith("\n"):
                f.write("\n")
            f.write("\n# prpstore\n")
            for entry in new_entries:
                f.write(f"{entry}\n")
        rprint(f"Added {', '.join(new_entries)} to .gitignore")


def _open_repository(db_path: str) -> tuple:
    db = Path(db_path)
    if not db.exists():
        rprint(f"[red]Database not found at {db}. Run 'prpstore parse' first.[/red]")
        raise typer.Exit(1)
    conn = get_connection(db)
    return conn, Repository(conn)


@app.command()
def init(
    user: str = typer.Option(..., prompt="Your handle", help="Handle prpstore acts as"),
    privileged: str = typer.Option(
        "", prompt="Handles allowed to write (comma-separated)",
        help="Comma-separated handles allowed to use write tools",
    ),
    anthropic_key: str = typer.Option(
        None, "--anthropic-key",
        prompt="Anthropic API key (for document extraction)",
        hide_input=True,
        help="Anthropic API key",
    ),
) -> None:
    """Initialize prpstore in a project directory.

    Writes settings to .env, creates .mcp.json for Claude Code/Cursor,
    and adds prpstore files to .gitignore. Run in your project root.
    """
    project_dir = Path.cwd()

    _write_env(project_dir, user, privileged, anthropic_key or "")
    _write_mcp_config(project_dir, user, privileged)
    _update_gitignore(project_dir)

    rprint("\n[green bold]prpstore initialized[/green bold]")
    rprint("\nNext steps:")
    rprint("  1. Run [bold]prpstore parse PRPs/your-feature.md[/bold] to store a document")
    rprint("  2. Restart Claude Code — it picks up the MCP server automatically")
    rprint("  3. Your agent now has prpstore tools for reading and updating tasks")


@app.command()
def serve() -> None:
    """Start the MCP server (called by Claude Code / Cursor automatically)."""
    from prpstore.mcp_server import main as mcp_main

    _configure_logging(Config.load().log_level)
    asyncio.run(mcp_main())


@app.command()
def parse(
    file: Path = typer.Argument(help="PRP markdown file", exists=True, dir_okay=False),
    name: str = typer.Option(None, help="Override the extracted document name"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Extract a PRP document with Claude and store it with its tasks."""
    config = Config.load()
    _configure_logging(config.log_level)
    if db_path:
        config.db_path = Path(db_path)

    dispatcher = Dispatcher.from_config(config)
    identity = dispatcher.policy.resolve_identity(config.user_handle, config.user_display_name)
    arguments = {"content": file.read_text()}
    if name:
        arguments["name"] = name

    try:
        envelope = asyncio.run(
            dispatcher.dispatch("extract_and_save_document", arguments, identity)
        )
    finally:
        dispatcher.close()

    if not envelope["ok"]:
        rprint(f"[red]{envelope['errorKind']}: {envelope['message']}[/red]")
        for detail in envelope.get("details", []):
            rprint(f"  [red]{detail['field']}: {detail['message']}[/red]")
        rprint(f"  correlation id: {envelope['correlationId']}")
        raise typer.Exit(1)

    data = envelope["data"]
    rprint(f"[green]Stored '{data['name']}'[/green] ({data['document_id']})")
    rprint(f"  {data['items_saved']} task(s), {data['citations_saved']} reference(s)")


@app.command()
def items(
    document_id: str = typer.Argument(None, help="Only tasks of this document"),
    status: str = typer.Option(None, help="pending, in_progress or completed"),
    deleted: bool = typer.Option(False, "--deleted", help="Include deleted tasks"),
    db_path: str = typer.Option("prpstore.db", help="Database file path"),
) -> None:
    """List stored tasks."""
    conn, repo_store = _open_repository(db_path)
    try:
        rows, total = repo_store.select_items(
            ItemFilter(document_id=document_id, status=status, include_deleted=deleted),
            limit=-1,
        )
        table = Table("#", "Status", "Description", "File", "Id")
        for item in rows:
            description = item["description"]
            if item["deleted_at"]:
                description = f"[strike]{description}[/strike]"
            table.add_row(
                str(item["order"]), item["status"], description, item["file_path"] or "", item["id"]
            )
        Console().print(table)
        rprint(f"{total} task(s)")
    finally:
        conn.close()


@app.command()
def tags(
    db_path: str = typer.Option("prpstore.db", help="Database file path"),
) -> None:
    """List tags with their usage."""
    conn, repo_store = _open_repository(db_path)
    try:
        table = Table("Name", "Tasks", "Documents", "Color", "Description")
        for tag in repo_store.list_tags():
            table.add_row(
                tag["name"],
                str(tag["item_count"]),
                str(tag["document_count"]),
                tag["color"] or "",
                tag["description"] or "",
            )
        Console().print(table)
    finally:
        conn.close()


@app.command()
def stats(
    db_path: str = typer.Option("prpstore.db", help="Database file path"),
) -> None:
    """Show statistics about stored documents and tasks."""
    conn, repo_store = _open_repository(db_path)
    try:
        s = repo_store.get_stats()
        rprint("[bold]prpstore statistics:[/bold]")
        rprint(f"  Documents:      {s['total_documents']}")
        rprint(f"  Tasks:          {s['total_items']}")
        rprint(f"  Deleted tasks:  {s['deleted_items']}")
        rprint(f"  Tags:           {s['total_tags']}")
        for status, count in sorted(s["items_by_status"].items()):
            rprint(f"    {status}: {count}")
    finally:
        conn.close()


@app.command()
def activity(
    limit: int = typer.Option(20, help="Number of entries to show"),
    tool: str = typer.Option(None, help="Only calls of this tool"),
) -> None:
    """Show recent MCP tool calls, most recent first."""
    entries = read_activity_log(limit=limit, tool_name=tool)
    if not entries:
        rprint("No tool calls logged yet.")
        return

    table = Table("Time", "Tool", "Caller", "Result", "ms")
    for entry in entries:
        result = "[green]ok[/green]" if entry.get("ok") else f"[red]{entry.get('error_kind')}[/red]"
        table.add_row(
            entry.get("timestamp", "")[:19],
            entry.get("tool_name", ""),
            entry.get("caller") or "",
            result,
            str(entry.get("duration_ms", "")),
        )
    Console().print(table)


if __name__ == "__main__":
    app()
