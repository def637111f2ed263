"""Housekeeping CLI for the knowledge base and response cache.

Meant for a cron job::

    python -m marketplace_assistant.maintenance run-all
    python -m marketplace_assistant.maintenance purge-knowledge --retention-days 30
    python -m marketplace_assistant.maintenance sweep-cache
    python -m marketplace_assistant.maintenance repair-embeddings
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from datetime import timedelta

import click
from loguru import logger

from marketplace_assistant.application.exceptions import (
    CacheUnavailableError,
    KnowledgeStoreUnavailableError,
)
from marketplace_assistant.config import Settings, get_settings
from marketplace_assistant.infrastructure.embedding_provider import (
    HashingEmbeddingProvider,
    build_embedder,
)
from marketplace_assistant.infrastructure.knowledge_store import KnowledgeStore
from marketplace_assistant.infrastructure.response_cache import ResponseCache
from marketplace_assistant.logging_config import setup_logging


@dataclass
class MaintenanceReport:
    knowledge_purged: int = 0
    cache_swept: int = 0
    embeddings_repaired: int = 0


async def purge_knowledge(settings: Settings, retention_days: int) -> int:
    """Delete knowledge items (all users) created more than *retention_days* ago."""
    # Purging never embeds, so the offline provider is enough here.
    store = KnowledgeStore(settings.knowledge_db_path, HashingEmbeddingProvider())
    store.connect()
    try:
        return await store.purge_all_older_than(timedelta(days=retention_days))
    finally:
        store.close()


async def repair_embeddings(settings: Settings) -> int:
    """Re-embed knowledge items stored with a degraded vector."""
    store = KnowledgeStore(settings.knowledge_db_path, build_embedder(settings))
    store.connect()
    try:
        return await store.reembed_degraded()
    finally:
        store.close()


async def sweep_cache(settings: Settings) -> int:
    """Delete expired response cache rows."""
    cache = ResponseCache(settings.cache_db_path, ttl_seconds=settings.cache_ttl_seconds)
    cache.connect()
    try:
        return await cache.sweep_expired()
    finally:
        cache.close()


async def run_maintenance(settings: Settings, *, retention_days: int | None = None) -> MaintenanceReport:
    days = retention_days if retention_days is not None else settings.retention_days
    report = MaintenanceReport(
        knowledge_purged=await purge_knowledge(settings, days),
        cache_swept=await sweep_cache(settings),
        embeddings_repaired=await repair_embeddings(settings),
    )
    logger.info(
        "Maintenance done | retention_days={} purged={} swept={} repaired={}",
        days,
        report.knowledge_purged,
        report.cache_swept,
        report.embeddings_repaired,
    )
    return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
def cli():
    """Maintenance jobs for the marketplace assistant."""
    settings = get_settings()
    setup_logging(level=settings.log_level, json=settings.log_json, file=settings.log_file)


_retention_option = click.option(
    "--retention-days",
    type=click.IntRange(min=1),
    default=None,
    help="Override RETENTION_DAYS for this run.",
)


@cli.command("run-all")
@_retention_option
def run_all(retention_days: int | None):
    """Purge old knowledge, sweep the response cache and repair embeddings."""
    try:
        report = asyncio.run(run_maintenance(get_settings(), retention_days=retention_days))
    except (KnowledgeStoreUnavailableError, CacheUnavailableError) as exc:
        click.echo(f"✗ Maintenance failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"✓ Knowledge items purged: {report.knowledge_purged}")
    click.echo(f"✓ Cache entries swept: {report.cache_swept}")
    click.echo(f"✓ Degraded embeddings repaired: {report.embeddings_repaired}")


@cli.command("purge-knowledge")
@_retention_option
def purge_knowledge_cmd(retention_days: int | None):
    """Purge knowledge items older than the retention window."""
    settings = get_settings()
    days = retention_days if retention_days is not None else settings.retention_days
    try:
        purged = asyncio.run(purge_knowledge(settings, days))
    except KnowledgeStoreUnavailableError as exc:
        click.echo(f"✗ Purge failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"✓ Knowledge items purged: {purged} (older than {days} days)")


@cli.command("sweep-cache")
def sweep_cache_cmd():
    """Delete expired response cache entries."""
    try:
        swept = asyncio.run(sweep_cache(get_settings()))
    except CacheUnavailableError as exc:
        click.echo(f"✗ Sweep failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"✓ Cache entries swept: {swept}")


@cli.command("repair-embeddings")
def repair_embeddings_cmd():
    """Re-embed knowledge items written during an embedding outage."""
    try:
        repaired = asyncio.run(repair_embeddings(get_settings()))
    except KnowledgeStoreUnavailableError as exc:
        click.echo(f"✗ Repair failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"✓ Degraded embeddings repaired: {repaired}")


if __name__ == "__main__":
    cli()
