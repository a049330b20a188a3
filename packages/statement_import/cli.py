"""Console interface for ``statement_import``.

``statement-import import FILE...`` runs each CSV through the import pipeline
and prints one summary line per file (or JSON with ``--json``);
``statement-import detect FILE`` prints the column mapping only. Environment
variables (``OPENAI_API_KEY``, ``DATABASE_URL``, ``SI_*`` settings) are
loaded from a local ``.env`` without overriding values already set.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv

from .cache import CategoryMappingCache, MerchantCategoryCache
from .config import PipelineSettings
from .errors import FileFatalError
from .logging_setup import configure_logging
from .models import ROLES, ImportResult
from .pipeline import ImportPipeline
from .service import CategorizationService, OpenAICategorizationService
from .store import InMemoryTransactionStore, SqlTransactionStore, TransactionStore

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Import bank CSV exports into a deduplicated, categorized transaction store. "
        "Loads OPENAI_API_KEY and DATABASE_URL from a local .env before running."
    ),
)

NO_AI_OPTION = typer.Option(
    False, "--no-ai", help="Skip the categorization service; use deterministic rules only."
)
JSON_OPTION = typer.Option(False, "--json", help="Print machine-readable JSON.")


def _build_service(settings: PipelineSettings, *, no_ai: bool) -> CategorizationService | None:
    if no_ai:
        return None
    if not os.getenv("OPENAI_API_KEY"):
        print(
            "Error: OPENAI_API_KEY is not set; pass --no-ai to import without the "
            "categorization service.",
            file=sys.stderr,
        )
        raise typer.Exit(1)
    return OpenAICategorizationService(model=settings.model)


def _build_store(database_url: str | None) -> TransactionStore:
    url = database_url or os.getenv("DATABASE_URL")
    if url:
        return SqlTransactionStore(url)
    print(
        "Note: no DATABASE_URL configured; imported transactions are not persisted.",
        file=sys.stderr,
    )
    return InMemoryTransactionStore()


def _build_pipeline(
    settings: PipelineSettings,
    *,
    store: TransactionStore,
    service: CategorizationService | None,
) -> ImportPipeline:
    if settings.cache_dir is not None:
        category_cache = CategoryMappingCache.load(settings.cache_dir)
        merchant_cache = MerchantCategoryCache.load(
            settings.cache_dir,
            ttl=settings.merchant_cache_ttl,
            enabled=settings.merchant_cache_enabled,
        )
    else:
        category_cache = CategoryMappingCache()
        merchant_cache = MerchantCategoryCache(
            ttl=settings.merchant_cache_ttl, enabled=settings.merchant_cache_enabled
        )
    return ImportPipeline(
        store=store,
        service=service,
        settings=settings,
        category_cache=category_cache,
        merchant_cache=merchant_cache,
    )


def format_result(result: ImportResult) -> str:
    if not result.ok:
        return f"{result.source}: failed ({result.reason_code}): {result.message}"
    line = (
        f"{result.source}: added {result.transactions_added}, "
        f"duplicates {result.duplicates_rejected}, skipped {result.rows_skipped}"
    )
    if result.skip_reasons:
        reasons = ", ".join(f"{k}={v}" for k, v in sorted(result.skip_reasons.items()))
        line += f" ({reasons})"
    if result.categorization_fallbacks:
        line += f", fallbacks {result.categorization_fallbacks}"
    return line


async def _import_all(pipeline: ImportPipeline, paths: list[Path]) -> list[ImportResult]:
    return await asyncio.gather(*(pipeline.import_path(p) for p in paths))


@app.command("import")
def import_cmd(
    paths: Annotated[list[Path], typer.Argument(help="CSV files to import.")],
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    no_ai: bool = NO_AI_OPTION,
    as_json: bool = JSON_OPTION,
    log_level: str | None = typer.Option(
        None, help="Log level (falls back to STATEMENT_IMPORT_LOG_LEVEL, then INFO)."
    ),
) -> None:
    """Import one or more CSV files; exits 1 if any file fails."""

    configure_logging(log_level)
    missing = [p for p in paths if not p.is_file()]
    if missing:
        for p in missing:
            print(f"Error: file not found: {p}", file=sys.stderr)
        raise typer.Exit(1)

    settings = PipelineSettings.from_env()
    service = _build_service(settings, no_ai=no_ai)
    pipeline = _build_pipeline(settings, store=_build_store(database_url), service=service)

    results = asyncio.run(_import_all(pipeline, paths))
    pipeline.save_caches()

    if as_json:
        typer.echo(json.dumps([r.to_json() for r in results], indent=2))
    else:
        for r in results:
            typer.echo(format_result(r))

    if not all(r.ok for r in results):
        raise typer.Exit(1)


@app.command("detect")
def detect_cmd(
    path: Annotated[Path, typer.Argument(help="CSV file to inspect.")],
    *,
    no_ai: bool = NO_AI_OPTION,
    as_json: bool = JSON_OPTION,
) -> None:
    """Print the column mapping the importer would use for PATH."""

    configure_logging()
    if not path.is_file():
        print(f"Error: file not found: {path}", file=sys.stderr)
        raise typer.Exit(1)

    settings = PipelineSettings.from_env()
    service = _build_service(settings, no_ai=no_ai)
    pipeline = ImportPipeline(store=InMemoryTransactionStore(), service=service, settings=settings)
    raw_text = path.read_text(encoding="utf-8-sig")
    try:
        mapping = asyncio.run(pipeline.detect(raw_text, path.name))
    except FileFatalError as e:
        print(f"Error: {path.name}: {e}", file=sys.stderr)
        raise typer.Exit(1) from e

    if as_json:
        typer.echo(json.dumps(mapping.as_dict(), indent=2))
        return
    for role in ROLES:
        typer.echo(f"{role}: {mapping.get(role) or '-'}")


@app.callback()
def _root() -> None:
    """Load ``.env`` from the current directory without overriding existing env."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)


def main() -> None:  # pragma: no cover - console script entry
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
