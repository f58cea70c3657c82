"""aku CLI: content-addressed knowledge store on the filesystem, SQLite indexes.

Commands:
    aku init                    create the substrate layout at the root
    aku ingest BODY -d DOMAIN   store an atom (BODY '-' reads stdin) and index it
    aku get HASH                print a stored atom
    aku list                    hashes matching a filter
    aku link FROM TO            record an external link
    aku neighbors HASH          adjacent hashes (embedded + external links)
    aku search QUERY            full-text search
    aku recent                  most recently created atoms
    aku traverse HASH           BFS over the graph index
    aku path FROM TO            shortest path over the graph index
    aku stats                   store aggregates
    aku verify                  integrity audit (exit 1 if invalid)
    aku reindex                 rebuild graph/temporal/fts from atoms
    aku embed                   (re)embed every atom into the vector index
    aku similar QUERY           vector similarity search

The root comes from --root or $AKU_ROOT (default ~/.aku/knowledge).
"""

from __future__ import annotations

import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from aku.embedder import get_embedder
from aku.errors import SubstrateError
from aku.frontmatter import serialize_aku
from aku.indexes import IndexManager
from aku.models import DIRECTIONS, KNOWLEDGE_TYPES, RELATION_TYPES, SOURCE_TYPES, VOLATILITIES, AKUFilter, IngestInput
from aku.substrate import Substrate, init_substrate, open_substrate

if TYPE_CHECKING:
    from collections.abc import Iterator

    from aku.embedder import EmbeddingProvider
    from aku.indexes import VectorIndex
    from aku.models import AKU

DEFAULT_ROOT = Path.home() / ".aku" / "knowledge"
EMBED_BATCH = 32

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except SubstrateError as exc:
        raise click.ClickException(str(exc)) from exc


def _substrate(ctx: click.Context) -> Substrate:
    with _errors():
        return open_substrate(ctx.obj["root"])


def _indexes(sub: Substrate) -> IndexManager:
    return IndexManager.for_substrate(sub)


def _parse_link(value: str) -> tuple[str, str]:
    relation, sep, target = value.partition(":")
    if not sep:
        msg = f"--link expects RELATION:HASH, got {value!r}"
        raise click.BadParameter(msg)
    return relation, target


def _title(sub: Substrate, content_hash: str) -> str:
    aku = sub.get(content_hash)
    return aku.title if aku is not None else "[missing]"


def _embedder(sub: Substrate, model: str | None) -> EmbeddingProvider:
    vec_cfg = sub.config.indexes.vectors
    if not vec_cfg.enabled:
        msg = "Vector index is disabled: set indexes.vectors.enabled in .aku/config.yaml"
        raise click.ClickException(msg)
    name = model or vec_cfg.model
    if name == "unknown":
        msg = "No embedding model configured: set indexes.vectors.model or pass --model"
        raise click.ClickException(msg)
    cache_dir = sub.root / ".aku" / "cache" / "embeddings" if sub.root is not None else None
    embedder = get_embedder(name, cache_dir=cache_dir, dimensions=vec_cfg.dimensions)
    if embedder.dimensions != vec_cfg.dimensions:
        msg = f"Model {name} produces {embedder.dimensions}-dim vectors, index expects {vec_cfg.dimensions}"
        raise click.ClickException(msg)
    return embedder


def _store_batch(vectors: VectorIndex, embedder: EmbeddingProvider, batch: list[AKU]) -> int:
    embeddings = embedder.embed_batch([aku.body for aku in batch])
    for aku, vec in zip(batch, embeddings, strict=True):
        vectors.store(aku.id, vec)
    return len(batch)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="aku-substrate")
@click.option(
    "--root",
    envvar="AKU_ROOT",
    default=str(DEFAULT_ROOT),
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Substrate root directory",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr")
@click.pass_context
def cli(ctx: click.Context, root: Path, verbose: bool) -> None:
    """aku: content-addressed knowledge store."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["root"] = root.expanduser()


# ---------------------------------------------------------------------------
# aku init
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the substrate directory layout and default config."""
    with _errors():
        sub = init_substrate(ctx.obj["root"])
    click.echo(f"Initialized substrate at {sub.root}")


# ---------------------------------------------------------------------------
# aku ingest / get / list
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("body")
@click.option("--domain", "-d", required=True, help="Hierarchical domain, e.g. data-systems/storage")
@click.option("--type", "type_", default="fact", show_default=True, type=click.Choice(KNOWLEDGE_TYPES))
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--confidence", type=click.FloatRange(0.0, 1.0), default=None, help="Defaults to config")
@click.option("--volatility", type=click.Choice(VOLATILITIES), default=None, help="Defaults to config")
@click.option("--link", "links", multiple=True, help="Embedded link RELATION:HASH (repeatable)")
@click.option("--source-type", default="user", show_default=True, type=click.Choice(SOURCE_TYPES))
@click.option("--uri", default=None, help="Source URI")
@click.option("--no-index", is_flag=True, help="Store only; skip index update")
@click.pass_context
def ingest(
    ctx: click.Context,
    body: str,
    domain: str,
    type_: str,
    tags: tuple[str, ...],
    confidence: float | None,
    volatility: str | None,
    links: tuple[str, ...],
    source_type: str,
    uri: str | None,
    no_index: bool,
) -> None:
    """Store BODY as an atom and print its hash. BODY '-' reads stdin."""
    if body == "-":
        body = sys.stdin.read()
    embedded: dict[str, list[str]] = {}
    for value in links:
        relation, target = _parse_link(value)
        embedded.setdefault(relation, []).append(target)

    sub = _substrate(ctx)
    with _errors():
        content_hash = sub.ingest(IngestInput(
            body=body,
            domain=domain,
            type=type_,
            source={"type": source_type, "uri": uri},
            confidence=confidence,
            volatility=volatility,
            links=embedded,
            tags=list(tags),
        ))
        if not no_index:
            aku = sub.get(content_hash)
            if aku is not None:
                with _indexes(sub) as idx:
                    idx.index_aku(aku)
    click.echo(content_hash)


@cli.command()
@click.argument("content_hash")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def get(ctx: click.Context, content_hash: str, as_json: bool) -> None:
    """Print the atom stored under CONTENT_HASH."""
    sub = _substrate(ctx)
    with _errors():
        aku = sub.get(content_hash)
    if aku is None:
        msg = f"Not found: {content_hash}"
        raise click.ClickException(msg)
    if as_json:
        click.echo(json.dumps(aku.to_dict(), indent=2, ensure_ascii=False))
    else:
        click.echo(serialize_aku(aku))


@cli.command("list")
@click.option("--domain", default=None, help="Exact domain")
@click.option("--prefix", default=None, help="Domain prefix")
@click.option("--type", "type_", default=None, type=click.Choice(KNOWLEDGE_TYPES))
@click.option("--tag", "-t", "tags", multiple=True, help="Required tag (repeatable)")
@click.option("--min-confidence", type=float, default=None)
@click.option("--since", default=None, help="ISO 8601, inclusive")
@click.option("--until", default=None, help="ISO 8601, inclusive")
@click.option("--limit", "-l", default=None, type=int)
@click.option("--offset", "-o", default=0, show_default=True)
@click.pass_context
def list_cmd(
    ctx: click.Context,
    domain: str | None,
    prefix: str | None,
    type_: str | None,
    tags: tuple[str, ...],
    min_confidence: float | None,
    since: str | None,
    until: str | None,
    limit: int | None,
    offset: int,
) -> None:
    """List hashes matching a filter (streams; does not load the whole store)."""
    sub = _substrate(ctx)
    flt = AKUFilter(
        domain=domain,
        domain_prefix=prefix,
        type=type_,
        tags=list(tags) or None,
        min_confidence=min_confidence,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    with _errors():
        for content_hash in sub.list(flt):
            click.echo(content_hash)


# ---------------------------------------------------------------------------
# aku link / neighbors
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("source")
@click.argument("target")
@click.option("--relation", "-r", default="relates_to", show_default=True, type=click.Choice(RELATION_TYPES))
@click.pass_context
def link(ctx: click.Context, source: str, target: str, relation: str) -> None:
    """Record SOURCE -[RELATION]-> TARGET in the external link log."""
    sub = _substrate(ctx)
    with _errors():
        entry = sub.link(source, target, relation)
        with _indexes(sub) as idx:
            idx.index_link(entry)
    click.echo(f"{entry.source.short} -[{relation}]-> {entry.target.short}")


@cli.command()
@click.argument("content_hash")
@click.option("--direction", default="both", show_default=True, type=click.Choice(DIRECTIONS))
@click.pass_context
def neighbors(ctx: click.Context, content_hash: str, direction: str) -> None:
    """Adjacent hashes over embedded and external links."""
    sub = _substrate(ctx)
    with _errors():
        found = sub.neighbors(content_hash, direction)
    for h in sorted(found):
        click.echo(h)


# ---------------------------------------------------------------------------
# aku search / recent / traverse / path
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("query")
@click.option("--limit", "-l", default=20, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: str, limit: int) -> None:
    """Full-text search over domain, title, body and tags."""
    sub = _substrate(ctx)
    with _errors(), _indexes(sub) as idx:
        if idx.fts is None:
            msg = "Full-text index is disabled in config"
            raise click.ClickException(msg)
        results = idx.fts.search(query, limit=limit)
        if not results:
            click.echo("No results.")
            return
        for r in results:
            click.echo(f"{r.hash[:12]}  {r.score:7.3f}  {_title(sub, r.hash)}")


@cli.command()
@click.option("--limit", "-l", default=20, show_default=True)
@click.pass_context
def recent(ctx: click.Context, limit: int) -> None:
    """Most recently created atoms first."""
    sub = _substrate(ctx)
    with _errors(), _indexes(sub) as idx:
        if idx.temporal is None:
            msg = "Temporal index is disabled in config"
            raise click.ClickException(msg)
        for h in idx.temporal.recent(limit):
            click.echo(f"{h[:12]}  {_title(sub, h)}")


@cli.command()
@click.argument("start")
@click.option("--depth", default=2, show_default=True)
@click.option("--direction", default="out", show_default=True, type=click.Choice(DIRECTIONS))
@click.pass_context
def traverse(ctx: click.Context, start: str, depth: int, direction: str) -> None:
    """Breadth-first walk from START."""
    sub = _substrate(ctx)
    with _errors(), _indexes(sub) as idx:
        if idx.graph is None:
            msg = "Graph index is disabled in config"
            raise click.ClickException(msg)
        for node in idx.graph.traverse(start, max_depth=depth, direction=direction):
            click.echo(f"{'  ' * node.depth}{node.hash[:12]}  {_title(sub, node.hash)}")


@cli.command()
@click.argument("source")
@click.argument("target")
@click.option("--max-depth", default=10, show_default=True)
@click.pass_context
def path(ctx: click.Context, source: str, target: str, max_depth: int) -> None:
    """Shortest path between two atoms, following links either way."""
    sub = _substrate(ctx)
    with _errors(), _indexes(sub) as idx:
        if idx.graph is None:
            msg = "Graph index is disabled in config"
            raise click.ClickException(msg)
        hops = idx.graph.shortest_path(source, target, max_depth=max_depth)
    if hops is None:
        msg = f"No path within {max_depth} hops"
        raise click.ClickException(msg)
    click.echo(" -> ".join(h[:12] for h in hops))


# ---------------------------------------------------------------------------
# aku stats / verify
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show store aggregates."""
    from rich.console import Console
    from rich.table import Table

    sub = _substrate(ctx)
    with _errors():
        s = sub.stats()

    table = Table(title=f"aku: {sub.root}", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_row("Atoms", str(s.total_atoms))
    table.add_row("Embedded links", str(s.total_links))
    table.add_row("Disk usage", f"{s.disk_usage / 1024:.1f} KB")
    table.add_row("Oldest", s.oldest_atom or "-")
    table.add_row("Newest", s.newest_atom or "-")
    table.add_row("", "")
    for type_, n in sorted(s.by_type.items()):
        table.add_row(f"type: {type_}", str(n))
    for domain, n in sorted(s.by_domain.items()):
        table.add_row(f"domain: {domain}", str(n))
    Console().print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def verify(ctx: click.Context, as_json: bool) -> None:
    """Recompute every hash and check link targets. Exits 1 if the store is invalid."""
    sub = _substrate(ctx)
    with _errors():
        report = sub.verify()
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(f"Checked {report.total_checked} atoms")
        for h in report.corrupted:
            click.echo(f"  corrupted: {h}")
        for o in report.orphaned_links:
            click.echo(f"  orphaned link: {o.source[:12]} -> {o.target[:12]}")
        click.echo("OK" if report.valid else "INVALID")
    if not report.valid:
        ctx.exit(1)


# ---------------------------------------------------------------------------
# aku reindex
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def reindex(ctx: click.Context) -> None:
    """Rebuild graph, temporal and full-text indexes from the atom store."""
    sub = _substrate(ctx)
    with _errors(), _indexes(sub) as idx:
        n = idx.rebuild(sub.iter_atoms(), sub.external_links())
    click.echo(f"Indexed {n} atoms")


# ---------------------------------------------------------------------------
# aku embed / similar
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--model", "-m", default=None, help="Embedding model (default: indexes.vectors.model)")
@click.option("--force", is_flag=True, help="Re-embed atoms that already have a vector")
@click.pass_context
def embed(ctx: click.Context, model: str | None, force: bool) -> None:
    """Embed every atom body into the vector index."""
    sub = _substrate(ctx)
    embedder = _embedder(sub, model)
    n = 0
    with _errors(), _indexes(sub) as idx:
        vectors = idx.vectors
        if vectors is None:
            msg = "Vector index is disabled in config"
            raise click.ClickException(msg)
        batch: list[AKU] = []
        for aku in sub.iter_atoms():
            if not force and vectors.has(aku.id):
                continue
            batch.append(aku)
            if len(batch) >= EMBED_BATCH:
                n += _store_batch(vectors, embedder, batch)
                batch = []
        if batch:
            n += _store_batch(vectors, embedder, batch)
    click.echo(f"Embedded {n} atoms")


@cli.command()
@click.argument("query", required=False)
@click.option("--hash", "content_hash", default=None, help="Find neighbors of a stored atom instead")
@click.option("--model", "-m", default=None, help="Embedding model (default: indexes.vectors.model)")
@click.option("--limit", "-l", default=10, show_default=True)
@click.option("--min-similarity", default=0.0, show_default=True)
@click.pass_context
def similar(
    ctx: click.Context,
    query: str | None,
    content_hash: str | None,
    model: str | None,
    limit: int,
    min_similarity: float,
) -> None:
    """Vector similarity search by QUERY text or by --hash."""
    if (query is None) == (content_hash is None):
        msg = "Pass exactly one of QUERY or --hash"
        raise click.UsageError(msg)
    sub = _substrate(ctx)
    with _errors(), _indexes(sub) as idx:
        if idx.vectors is None:
            msg = "Vector index is disabled: set indexes.vectors.enabled in .aku/config.yaml"
            raise click.ClickException(msg)
        if content_hash is not None:
            hits = idx.vectors.find_nearest(content_hash, k=limit, min_similarity=min_similarity)
        else:
            vec = _embedder(sub, model).embed_query(query or "")
            hits = idx.vectors.search(vec, limit=limit, min_similarity=min_similarity)
        for hit in hits:
            click.echo(f"{hit.hash[:12]}  {hit.similarity:.3f}  {_title(sub, hit.hash)}")


if __name__ == "__main__":
    cli()
