"""
askbase - Database Setup & Ingestion Script
=============================================
CLI entry point that orchestrates:
    1. Load settings (fail-fast on a bad ``.env``).
    2. Initialise ``KnowledgeStore`` and run ``ensure_schema``
       (optionally drop the tables first).
    3. Run the ``IngestionPipeline`` over a directory of ``.txt`` files,
       or over the built-in sample corpus.
    4. Re-run ``ensure_schema`` so the vector index is (re)built now that
       the corpus exists.
    5. Print a structured execution summary with timing breakdown.

Flags:
    --files DIR   Ingest every ``*.txt`` in DIR (one document per file).
    --mode MODE   ``replace`` (clear first) or ``incremental`` (content-hash upsert).
    --drop        Drop both tables before ingesting.
    --drop-only   Drop both tables and exit immediately.

Usage:
    python -m askbase.scripts.setup_db                       # Sample corpus
    python -m askbase.scripts.setup_db --files ./documents   # Directory ingestion
    python -m askbase.scripts.setup_db --mode incremental --files ./documents
    python -m askbase.scripts.setup_db --drop-only
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="askbase — Initialise the knowledge base and run document ingestion.")
    parser.add_argument("--files", type=Path, default=None, metavar="DIR", help="Ingest every .txt file in DIR instead of the sample corpus.")
    parser.add_argument("--mode", choices=("replace", "incremental"), default=None, help="Ingestion policy (default: INGEST_MODE setting).")
    parser.add_argument("--drop", action="store_true", default=False, help="Drop the documents and history tables before ingesting.")
    parser.add_argument("--drop-only", action="store_true", default=False, help="Drop the documents and history tables and exit (no ingestion).")
    return parser.parse_args(argv)


# ── Main Orchestration ─────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from askbase.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        return 1
    settings_ms = (time.perf_counter() - t_settings) * 1000

    # Now that settings is loaded, we can safely import the logger
    from askbase.src.core.embedder import EmbeddingService
    from askbase.src.core.errors import AskbaseError
    from askbase.src.core.ingestor import SAMPLE_DOCUMENTS, IngestionPipeline
    from askbase.src.database.vector_store import KnowledgeStore
    from askbase.src.utils.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Settings loaded in %.1fms", settings_ms)

    mode = args.mode or settings.INGEST_MODE
    _print_header(settings, mode, args.files)

    # ── 1. Initialise KnowledgeStore (timed) ───────────────────────────
    t_store = time.perf_counter()
    try:
        store = KnowledgeStore()
        if args.drop or args.drop_only:
            logger.warning("Dropping tables as requested.")
            store.drop_tables()
            if args.drop_only:
                logger.info("--drop-only: Tables dropped. Exiting.")
                return 0
        store.ensure_schema()
    except AskbaseError:
        logger.exception("Failed to initialise the knowledge store.")
        return 1
    store_ms = (time.perf_counter() - t_store) * 1000
    logger.info("KnowledgeStore ready in %.1fms (%d existing documents).", store_ms, store.count_documents())

    # ── 2. Initialise embedder (timed) ─────────────────────────────────
    t_embedder = time.perf_counter()
    embedder = EmbeddingService()
    try:
        dimension = embedder.warm_up()
    except AskbaseError:
        logger.exception("Failed to load the embedding model.")
        return 1
    embedder_ms = (time.perf_counter() - t_embedder) * 1000
    logger.info("Embedder '%s' (%d dims) loaded in %.1fms", embedder.model_name, dimension, embedder_ms)

    startup_ms = settings_ms + store_ms + embedder_ms

    # ── 3. Run IngestionPipeline ───────────────────────────────────────
    pipeline = IngestionPipeline(vector_store=store, embedder=embedder, mode=mode)
    documents = IngestionPipeline.load_directory(args.files) if args.files else list(SAMPLE_DOCUMENTS)
    result = pipeline.ingest(documents)

    # ── 4. Rebuild indexes over the new corpus ─────────────────────────
    state = store.ensure_schema()

    # ── 5. Print execution summary ─────────────────────────────────────
    _print_footer(result, state.vector_index, store.count_documents(), time.perf_counter() - t_start, settings_ms, store_ms, embedder_ms, startup_ms)
    return 0 if result.ingested or not documents else 1


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object, mode: str, source: Path | None) -> None:
    synthesis = "gemini" if settings.GOOGLE_API_KEY is not None else "off (raw passages)"  # type: ignore[attr-defined]

    print()
    print("=" * 60)
    print("  ASKBASE — Knowledge Base Setup & Ingestion")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                                          # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_PROVIDER}/{settings.EMBEDDING_MODEL}")  # type: ignore[attr-defined]
    print(f"  Dimensions   : {settings.EMBEDDING_DIM}")                                # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")                                 # type: ignore[attr-defined]
    print(f"  Source       : {source or 'built-in sample corpus'}")
    print(f"  Mode         : {mode}")
    print(f"  Workers      : {settings.MAX_WORKERS}")                                  # type: ignore[attr-defined]
    print(f"  Synthesis    : {synthesis}")
    print("=" * 60)
    print()


def _print_footer(result: object, vector_index: str, total_documents: int, elapsed: float, settings_ms: float, store_ms: float, embedder_ms: float, startup_ms: float) -> None:
    processing_s = elapsed - (startup_ms / 1000)

    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Documents submitted  : {result.total}")            # type: ignore[attr-defined]
    print(f"  Documents ingested   : {result.ingested}")         # type: ignore[attr-defined]
    print(f"  Documents rejected   : {len(result.failures)}")    # type: ignore[attr-defined]
    print(f"  Previously cleared   : {result.cleared}")          # type: ignore[attr-defined]
    print(f"  Corpus size          : {total_documents}")
    print(f"  Vector index         : {vector_index}")
    for failure in result.failures:                              # type: ignore[attr-defined]
        print(f"    ✗ #{failure.index + 1} {failure.title or 'Untitled'}: {failure.kind} — {failure.message}")
    print("-" * 60)
    print("  TIMING BREAKDOWN")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  LanceDB + schema     : {store_ms:>8.1f}ms")
    print(f"  Embedder init        : {embedder_ms:>8.1f}ms")
    print(f"  Startup time (total) : {startup_ms:>8.1f}ms")
    print(f"  Processing time      : {processing_s:>8.2f}s")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    sys.exit(main())
