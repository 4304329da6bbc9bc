"""Typer CLI for indexing, searching and asking questions."""
from __future__ import annotations

import json
import time
from dataclasses import asdict

import typer
import uvicorn

from .models import Operation
from .services import get_services

app = typer.Typer(help="CLI for the GRC hybrid retrieval and RAG core")


@app.command()
def index(namespace: str, record_id: str, operation: Operation = Operation.UPDATE) -> None:
    """Notify the indexer that a record was inserted, updated or deleted."""

    result = get_services().indexer.handle_data_change(namespace, record_id, operation)
    if not result.success:
        typer.echo(f"Indexing failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Job {result.job_id} completed")


@app.command()
def search(query: str, namespace: str, top_k: int = 10, method: str | None = None) -> None:
    """Run a hybrid search in one namespace."""

    services = get_services()
    config = services.search.get_config().merged(method=method) if method else None
    for result in services.search.search(query, namespace, top_k=top_k, config=config):
        title = result.metadata.get("title", "")
        typer.echo(f"{result.fused_score:.4f}  {result.id:<8} {title}")


@app.command()
def ask(
    question: str,
    namespace: str | None = None,
    preset: str = "detailed",
    top_k: int | None = None,
) -> None:
    """Ask a question via the LangGraph RAG pipeline."""

    rag = get_services().rag
    response = rag.query(question, namespace, rag.preset(preset, top_k=top_k))
    typer.echo(response.answer)
    typer.echo(f"\nConfidence: {response.confidence:.2f}")
    for number, source in enumerate(response.sources, start=1):
        typer.echo(f"[{number}] {source.title} ({source.namespace}) {source.url}")


@app.command()
def poll(watch: bool = False) -> None:
    """Run one polling sweep, or keep polling until interrupted with --watch."""

    indexer = get_services().indexer
    if not watch:
        typer.echo(json.dumps(indexer.poll_recent_changes()))
        return
    indexer.start_polling()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        indexer.stop_polling()


@app.command()
def reindex(namespace: str) -> None:
    """Backfill every record of a namespace into the vector index."""

    summary = get_services().indexer.reindex_namespace(namespace)
    typer.echo(f"Indexed {summary['indexed']} records ({summary['failed']} failed)")


@app.command("jobs")
def jobs(limit: int = 20) -> None:
    """Show indexing statistics and the most recent jobs."""

    indexer = get_services().indexer
    typer.echo(json.dumps(indexer.statistics(), indent=2))
    for job in indexer.list_jobs(limit=limit):
        typer.echo(json.dumps(asdict(job), default=str))


@app.command("cache-stats")
def cache_stats() -> None:
    """Print query cache hit/miss statistics."""

    typer.echo(json.dumps(get_services().cache.get_stats(), indent=2))


@app.command()
def invalidate(namespace: str | None = None) -> None:
    """Drop cached results for one namespace, or all of them."""

    cache = get_services().cache
    deleted = cache.invalidate_namespace(namespace) if namespace else cache.clear_all()
    typer.echo(f"Invalidated {deleted} cache entries")


@app.command()
def serve(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Start the HTTP API."""

    uvicorn.run("grc_rag.server:app", host=host, port=port)


if __name__ == "__main__":
    app()
