#!/usr/bin/env python3
"""
wg: CLI for the wikigraph link index

Usage:
    wg index                       # Rebuild and summarize the index
    wg backlinks notes/target.md   # Who links here
    wg resolve "My Note"           # How a link target resolves
    wg broken                      # Mentions without a target
    wg neighbors notes/a.md -d 2   # Documents within two hops
"""

from __future__ import annotations

import difflib
import json
import posixpath
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click
from click.exceptions import ClickException, UsageError

from . import __version__ as WIKIGRAPH_VERSION

if TYPE_CHECKING:
    from .engine import LinkEngine


# ─────────────────────────────────────────────────────────────────────────────
# Output Helpers
# ─────────────────────────────────────────────────────────────────────────────


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}
    widths = {col: len(col) for col in columns}

    for row in rows:
        for col in columns:
            val = str(row.get(col, ""))
            limit = max_widths.get(col, 50)
            if len(val) > limit:
                val = val[: limit - 3] + "..."
            widths[col] = max(widths[col], len(val))

    header = "  ".join(col.upper().ljust(widths[col]) for col in columns)
    separator = "  ".join("-" * widths[col] for col in columns)

    lines = [header, separator]
    for row in rows:
        vals = []
        for col in columns:
            val = str(row.get(col, ""))
            limit = max_widths.get(col, 50)
            if len(val) > limit:
                val = val[: limit - 3] + "..."
            vals.append(val.ljust(widths[col]))
        lines.append("  ".join(vals).rstrip())

    return "\n".join(lines)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


# ─────────────────────────────────────────────────────────────────────────────
# JSON Error Handling
# ─────────────────────────────────────────────────────────────────────────────


def format_json_error(code: str, message: str, details: dict | None = None) -> str:
    """Format an error as JSON for --json-errors output."""
    error: dict[str, dict[str, object]] = {"error": {"code": code, "message": message}}
    if details:
        error["error"]["details"] = details
    return json.dumps(error)


def get_error_code_for_exception(exc: Exception) -> str:
    """Map exceptions to error codes."""
    from .errors import ConfigurationError, DocumentReadError, RebuildInProgressError, WikigraphError

    if isinstance(exc, click.BadParameter):
        return "INVALID_ARGUMENT"
    elif isinstance(exc, click.MissingParameter):
        return "MISSING_ARGUMENT"
    elif isinstance(exc, click.NoSuchOption):
        return "UNKNOWN_OPTION"
    elif isinstance(exc, UsageError):
        return "USAGE_ERROR"
    elif isinstance(exc, ClickException):
        return "CLI_ERROR"
    elif isinstance(exc, ConfigurationError):
        return "CONFIGURATION_ERROR"
    elif isinstance(exc, DocumentReadError):
        return "READ_ERROR"
    elif isinstance(exc, RebuildInProgressError):
        return "REBUILD_IN_PROGRESS"
    elif isinstance(exc, WikigraphError):
        return "WIKIGRAPH_ERROR"
    elif isinstance(exc, (KeyError, ValueError)):
        return "NOT_FOUND" if "not found" in str(exc).lower() else "INVALID_ARGUMENT"
    return "UNKNOWN_ERROR"


def _handle_error(ctx: click.Context, error: Exception, exit_code: int = 1) -> NoReturn:
    """Report an error on stderr (as JSON with --json-errors) and exit."""
    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False
    if json_errors:
        click.echo(format_json_error(get_error_code_for_exception(error), str(error)), err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(exit_code)


class JsonErrorGroup(click.Group):
    """Click group that formats errors as JSON when --json-errors is set.

    Also suggests the closest command name for typos.
    """

    def resolve_command(self, ctx, args):
        try:
            return super().resolve_command(ctx, args)
        except UsageError as e:
            cmd_name = args[0] if args else ""
            if cmd_name and "No such command" in str(e):
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=1, cutoff=0.6
                )
                if matches:
                    raise UsageError(f"No such command '{cmd_name}'. Did you mean '{matches[0]}'?")
            raise

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except ClickException as e:
            if ctx.params.get("json_errors"):
                click.echo(format_json_error(get_error_code_for_exception(e), e.format_message()), err=True)
                raise SystemExit(1)
            raise

    def main(
        self,
        args: Sequence[str] | None = None,
        prog_name: str | None = None,
        complete_var: str | None = None,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        """Catch errors raised while parsing arguments.

        With --json-errors anywhere on the command line, the flag is moved to
        the front so it parses as a global option, and Click runs in
        non-standalone mode so usage errors can be reported as JSON.
        """
        argv = list(args) if args is not None else list(sys.argv[1:])
        if "--json-errors" not in argv:
            return super().main(args, prog_name, complete_var, standalone_mode, **extra)

        argv = [a for a in argv if a != "--json-errors"]
        argv.insert(0, "--json-errors")

        try:
            return super().main(argv, prog_name, complete_var, standalone_mode=False, **extra)
        except ClickException as e:
            click.echo(format_json_error(get_error_code_for_exception(e), e.format_message()), err=True)
            raise SystemExit(1)
        except SystemExit:
            raise
        except Exception as e:
            click.echo(format_json_error("INTERNAL_ERROR", str(e)), err=True)
            raise SystemExit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Engine Loading
# ─────────────────────────────────────────────────────────────────────────────


def _load_engine(ctx: click.Context) -> LinkEngine:
    """Build the engine for the selected corpus and index it (once per run)."""
    from .config import get_corpus_root
    from .engine import LinkEngine
    from .errors import WikigraphError

    engine = ctx.obj.get("engine")
    if engine is not None:
        return engine

    try:
        root = ctx.obj.get("root") or get_corpus_root()
        engine = LinkEngine.for_directory(root)
        engine.rebuild()
    except WikigraphError as e:
        _handle_error(ctx, e)

    ctx.obj["engine"] = engine
    return engine


def _document_id(ctx: click.Context, engine: LinkEngine, path: str) -> str:
    """Turn a user-supplied path into an indexed document id, or exit."""
    doc_id = path.strip().replace("\\", "/").removeprefix("./")
    if not posixpath.splitext(doc_id)[1]:
        doc_id = f"{doc_id}{engine.settings.extension}"

    documents = engine.get_index().documents
    if doc_id in documents:
        return doc_id

    message = f"Document not found: {path}"
    matches = difflib.get_close_matches(doc_id, list(documents), n=3, cutoff=0.6)
    if matches:
        message += f". Did you mean: {', '.join(matches)}?"
    _handle_error(ctx, ValueError(message))


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group(cls=JsonErrorGroup)
@click.version_option(version=WIKIGRAPH_VERSION, prog_name="wg")
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Corpus directory (default: WIKIGRAPH_ROOT or nearest .wikigraph.yaml)",
)
@click.option(
    "--json-errors",
    "json_errors",
    is_flag=True,
    help="Output errors as JSON (for programmatic use)",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    envvar="WIKIGRAPH_QUIET",
    help="Suppress warnings, show only errors and essential output",
)
@click.pass_context
def cli(ctx: click.Context, root: Path | None, json_errors: bool, quiet: bool):
    """wg: query the link graph of a Markdown notes directory.

    \b
    Quick start:
      wg index                       # Rebuild and summarize
      wg backlinks notes/target.md   # Who links here
      wg links notes/a.md            # Outgoing mentions
      wg resolve "My Note"           # How a target resolves
      wg broken                      # Broken mentions

    \b
    For programmatic error handling:
      wg --json-errors backlinks ... # Errors output as JSON with error codes
    """
    from ._logging import set_quiet_mode

    ctx.ensure_object(dict)
    ctx.obj["root"] = root
    ctx.obj["json_errors"] = json_errors
    ctx.obj["quiet"] = quiet

    if quiet:
        set_quiet_mode(True)


# ─────────────────────────────────────────────────────────────────────────────
# Index Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def index(ctx: click.Context, as_json: bool):
    """Rebuild the index and summarize it."""
    engine = _load_engine(ctx)
    stats = engine.get_stats()
    failures = engine.store.failures

    if as_json:
        output({**stats.model_dump(), "failures": failures}, as_json=True)
        return

    click.echo(f"Indexed {stats.document_count} documents in {stats.last_build_duration_ms:.1f}ms")
    click.echo(f"Mentions: {stats.mention_count}")
    click.echo(f"Tags:     {stats.tag_count}")
    if failures:
        click.echo(f"\nFailed to read {len(failures)} document(s):", err=True)
        for path, reason in sorted(failures.items()):
            click.echo(f"  {path}: {reason}", err=True)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool):
    """Show index and reference statistics."""
    engine = _load_engine(ctx)
    index_stats = engine.get_stats()
    registry_stats = engine.registry.get_stats()
    broken = len(engine.documents_with_broken_links())

    if as_json:
        output(
            {
                **index_stats.model_dump(),
                "documents_with_broken_links": broken,
                "references": registry_stats,
            },
            as_json=True,
        )
        return

    click.echo(f"Documents:        {index_stats.document_count}")
    click.echo(f"Mentions:         {index_stats.mention_count}")
    click.echo(f"Tags:             {index_stats.tag_count}")
    click.echo(f"Broken documents: {broken}")
    click.echo(f"References:       {registry_stats['total_definitions']} ({registry_stats['conflicts']} conflicting)")
    click.echo(f"Build time:       {index_stats.last_build_duration_ms:.1f}ms")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def validate(ctx: click.Context, as_json: bool):
    """Check index consistency and count valid/broken mentions."""
    engine = _load_engine(ctx)
    repairs = engine.validate_index()
    report = engine.validate_all()

    if as_json:
        output(
            {"valid": report.valid, "broken": report.broken, "repairs": repairs.model_dump()},
            as_json=True,
        )
        return

    click.echo(f"Valid mentions:  {report.valid}")
    click.echo(f"Broken mentions: {report.broken}")
    click.echo(f"Index repairs:   {repairs.total}")


# ─────────────────────────────────────────────────────────────────────────────
# Link Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("path")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def backlinks(ctx: click.Context, path: str, as_json: bool):
    """List documents that link to PATH."""
    engine = _load_engine(ctx)
    doc_id = _document_id(ctx, engine, path)
    sources = engine.backlinks_of(doc_id)

    if as_json:
        output({"path": doc_id, "backlinks": sources}, as_json=True)
        return

    if not sources:
        click.echo(f"No backlinks to {doc_id}")
        return

    documents = engine.get_index().documents
    rows = [{"path": source, "title": documents[source].metadata.title} for source in sources]
    click.echo(format_table(rows, ["path", "title"], {"path": 60}))


@cli.command()
@click.argument("path")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def links(ctx: click.Context, path: str, as_json: bool):
    """List the outgoing mentions of PATH."""
    engine = _load_engine(ctx)
    doc_id = _document_id(ctx, engine, path)
    mentions = engine.forward_links_of(doc_id)

    if as_json:
        output(
            {"path": doc_id, "links": [m.model_dump(mode="json") for m in mentions]},
            as_json=True,
        )
        return

    if not mentions:
        click.echo(f"No links in {doc_id}")
        return

    rows = [
        {
            "line": m.range.start.line + 1,
            "form": m.form,
            "mention": m.raw,
            "target": m.target or "(broken)",
        }
        for m in mentions
    ]
    click.echo(format_table(rows, ["line", "form", "mention", "target"], {"mention": 40, "target": 60}))


@cli.command()
@click.argument("target")
@click.option("--from", "source", help="Document the link is written in")
@click.option("--limit", "-n", type=click.IntRange(min=0), default=None, help="Max candidates")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def resolve(ctx: click.Context, target: str, source: str | None, limit: int | None, as_json: bool):
    """Show how a link TARGET resolves, with ranked candidates."""
    engine = _load_engine(ctx)
    source_id = _document_id(ctx, engine, source) if source else None
    result = engine.resolve_target(target, source_id)
    candidates = engine.get_candidates(target, limit, source_id) if limit is not None else result.candidates

    if as_json:
        output(
            {
                "target": target,
                "canonical": result.mention.canonical,
                "resolved": result.target,
                "match_type": result.match_type,
                "candidates": [c.model_dump() for c in candidates],
            },
            as_json=True,
        )
        return

    if result.target:
        click.echo(f"{target} -> {result.target} ({result.match_type})")
    else:
        click.echo(f"{target} -> unresolved")

    if candidates:
        click.echo()
        rows = [
            {"path": c.path, "title": c.title, "match": c.match_type, "distance": c.distance}
            for c in candidates
        ]
        click.echo(format_table(rows, ["path", "title", "match", "distance"], {"path": 60}))


@cli.command()
@click.argument("name")
@click.option("--from", "context", help="Document the lookup is made from")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def refs(ctx: click.Context, name: str, context: str | None, as_json: bool):
    """Show reference definitions declared for NAME."""
    engine = _load_engine(ctx)
    context_id = _document_id(ctx, engine, context) if context else None
    definitions = engine.registry.get_definitions(name)
    best = engine.get_best_definition(name, context_id)

    if as_json:
        output(
            {
                "name": name,
                "best": best.model_dump() if best else None,
                "definitions": [d.model_dump() for d in definitions],
            },
            as_json=True,
        )
        return

    if not definitions:
        click.echo(f"No reference named '{name}'")
        return

    rows = [
        {
            "": "*" if d == best else "",
            "target": d.path,
            "declared in": d.source,
            "priority": d.priority,
        }
        for d in definitions
    ]
    click.echo(format_table(rows, ["", "target", "declared in", "priority"], {"target": 50}))


# ─────────────────────────────────────────────────────────────────────────────
# Graph Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("source")
@click.argument("target")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def distance(ctx: click.Context, source: str, target: str, as_json: bool):
    """Shortest hop count between two documents (-1 if unconnected)."""
    engine = _load_engine(ctx)
    source_id = _document_id(ctx, engine, source)
    target_id = _document_id(ctx, engine, target)
    hops = engine.distance(source_id, target_id)

    if as_json:
        output({"source": source_id, "target": target_id, "distance": hops}, as_json=True)
        return

    if hops < 0:
        click.echo(f"{source_id} and {target_id} are not connected")
    else:
        click.echo(f"{source_id} -> {target_id}: {hops} hop(s)")


@cli.command()
@click.argument("path")
@click.option("--depth", "-d", type=click.IntRange(min=0), default=None, help="Max hops (default unbounded)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def neighbors(ctx: click.Context, path: str, depth: int | None, as_json: bool):
    """Documents connected to PATH, with their distance."""
    engine = _load_engine(ctx)
    doc_id = _document_id(ctx, engine, path)
    neighborhood = engine.connected_neighborhood(doc_id, depth)

    if as_json:
        output({"path": doc_id, "depth": depth, "neighbors": neighborhood}, as_json=True)
        return

    if not neighborhood:
        click.echo(f"No documents connected to {doc_id}")
        return

    rows = [{"path": p, "distance": d} for p, d in neighborhood.items()]
    click.echo(format_table(rows, ["path", "distance"], {"path": 60}))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def broken(ctx: click.Context, as_json: bool):
    """List mentions that do not resolve to a document."""
    engine = _load_engine(ctx)
    report = engine.validate_all()

    if as_json:
        output(
            {
                "valid": report.valid,
                "broken": report.broken,
                "details": [
                    {
                        "source": d.source,
                        "target": d.target,
                        "line": d.mention.range.start.line + 1,
                        "column": d.mention.range.start.column + 1,
                    }
                    for d in report.details
                ],
            },
            as_json=True,
        )
        return

    if not report.details:
        click.echo(f"No broken links ({report.valid} valid)")
        return

    rows = [
        {"source": d.source, "line": d.mention.range.start.line + 1, "target": d.target}
        for d in report.details
    ]
    click.echo(format_table(rows, ["source", "line", "target"], {"source": 50, "target": 40}))
    click.echo(f"\n{report.broken} broken, {report.valid} valid")


@cli.command()
@click.argument("tag", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def tags(ctx: click.Context, tag: str | None, as_json: bool):
    """List tags with counts, or the documents carrying TAG."""
    engine = _load_engine(ctx)

    if tag:
        paths = engine.documents_with_tag(tag)
        if as_json:
            output({"tag": tag.lstrip("#").casefold(), "documents": paths}, as_json=True)
        elif paths:
            click.echo("\n".join(paths))
        else:
            click.echo(f"No documents tagged #{tag.lstrip('#')}")
        return

    counts = engine.tag_counts()
    if as_json:
        output(counts, as_json=True)
        return

    if not counts:
        click.echo("No tags")
        return

    rows = [{"tag": f"#{t}", "documents": n} for t, n in counts.items()]
    click.echo(format_table(rows, ["tag", "documents"]))


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def main():
    """Entry point for wg CLI."""
    from ._logging import configure_logging

    configure_logging()
    cli()


if __name__ == "__main__":
    main()
