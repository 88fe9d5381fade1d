#!/usr/bin/env python3
"""
docforge command line: scan a checkout, plan its catalogue, write every page.

Exit codes:
  0  every planned document was generated
  1  planning failed, configuration was invalid, or every document failed
  2  some documents failed (the rest were saved)
"""

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from api_client import DocumentAPIClient, InMemoryDocumentStore
from completion_client import LiteLLMCompletionClient
from document_generator import DocumentGenerator, GenerationContext
from errors import ConfigError, OutlineValidationError, StoreError
from generation_config import GenerationConfig
from logging_config import setup_logging
from models import new_id
from planner import CatalogueSynthesizer, plan_pending_items
from repo_scanner import iter_chunk_messages, load_ignore_patterns, render_catalogue, scan_directory
from writer_pool import TaskOrchestrator

logger = logging.getLogger("docforge.agent.cli")

DEFAULT_OUTPUT_DIR = "docforge-output"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docforge",
        description="Generate quality-gated Markdown documentation for a repository checkout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --repo ./checkout --git-url https://github.com/user/repo
  %(prog)s --repo ./checkout --output-dir ./docs --concurrency 2 --refine
  %(prog)s --repo ./checkout --dry-run
        """,
    )
    parser.add_argument("--repo", required=True, type=Path, help="Path to the repository checkout")
    parser.add_argument("--branch", default="main", help="Branch name shown in prompts (default: main)")
    parser.add_argument("--git-url", default="", help="Repository URL shown in prompts and links")
    parser.add_argument("--document-id", default=None, help="Catalogue scope id (default: random)")
    parser.add_argument("--concurrency", type=int, default=None, help="Override TASK_MAX_SIZE_PER_USER")
    parser.add_argument("--refine", action="store_true", help="Run the refinement pass after fallback generation")
    parser.add_argument("--chat-model", default=None, help="Override CHAT_MODEL")
    parser.add_argument("--analysis-model", default=None, help="Override ANALYSIS_MODEL")
    parser.add_argument("--base-url", default=None, help="Override LLM_BASE_URL")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Write generated Markdown here instead of posting to DOC_API_URL",
    )
    parser.add_argument(
        "--export-chunks",
        type=Path,
        default=None,
        help="Also write the repository's file chunks as JSON lines (message + metadata)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Scan and print the catalogue, no model calls")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--log-format", default=None, choices=["text", "json"], help="Override LOG_FORMAT")
    return parser


def _apply_overrides(config: GenerationConfig, args: argparse.Namespace) -> GenerationConfig:
    overrides = {}
    if args.concurrency is not None:
        overrides["max_concurrency"] = args.concurrency
    if args.refine:
        overrides["refine_enabled"] = True
    if args.chat_model:
        overrides["chat_model"] = args.chat_model
    if args.analysis_model:
        overrides["analysis_model"] = args.analysis_model
    if args.base_url:
        overrides["llm_base_url"] = args.base_url
    return dataclasses.replace(config, **overrides) if overrides else config


def _export_chunks(path: Path, repo: Path, chunks, document_id: str) -> int:
    count = 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        for message, metadata in iter_chunk_messages(repo, chunks, document_id):
            fh.write(json.dumps({"message": message, "metadata": metadata}, ensure_ascii=False) + "\n")
            count += 1
    return count


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    load_dotenv()
    setup_logging(args.log_level or os.getenv("LOG_LEVEL"), args.log_format or os.getenv("LOG_FORMAT"))

    try:
        config = _apply_overrides(GenerationConfig.from_env(), args)
    except ConfigError as e:
        print(f"[Error] Invalid configuration: {e}", file=sys.stderr)
        return 1

    repo = args.repo.resolve()
    if not repo.is_dir():
        print(f"[Error] Repository path does not exist: {repo}", file=sys.stderr)
        return 1

    document_id = args.document_id or new_id()
    patterns = load_ignore_patterns(repo, config.excluded_files + config.excluded_folders)
    chunks = scan_directory(repo, patterns)
    catalogue = render_catalogue(repo, chunks)
    logger.info("Scanned %s: %d files, %d chunks", repo, catalogue.count("\n"), len(chunks))
    logger.info("Configuration: %s", config)

    if args.export_chunks:
        written = _export_chunks(args.export_chunks, repo, chunks, document_id)
        logger.info("Exported %d chunks to %s", written, args.export_chunks)

    if args.dry_run:
        print(catalogue, end="")
        return 0

    output_dir = args.output_dir
    if output_dir is None and not os.getenv("DOC_API_URL"):
        output_dir = Path(DEFAULT_OUTPUT_DIR)
    if output_dir is not None:
        store = InMemoryDocumentStore()
    else:
        store = DocumentAPIClient(fallback_dir=repo / ".docforge" / "fallback")
        if not store.health_check():
            logger.warning("Document API at %s is not healthy, saves may fail", store.api_url)

    client = LiteLLMCompletionClient(config)
    context = GenerationContext(
        catalogue=catalogue,
        git_repository=args.git_url,
        branch=args.branch,
        repo_path=repo,
    )

    try:
        items = plan_pending_items(CatalogueSynthesizer(client, config), store, context, document_id)
    except OutlineValidationError as e:
        print(f"[Error] Planning failed: {e}", file=sys.stderr)
        return 1
    except StoreError as e:
        print(f"[Error] Could not store the catalogue: {e}", file=sys.stderr)
        return 1

    orchestrator = TaskOrchestrator(DocumentGenerator(client, config), store, config)
    report = orchestrator.run(items, context)

    if isinstance(store, InMemoryDocumentStore) and output_dir is not None:
        paths = store.export(output_dir)
        print(f"[Info] Wrote {len(paths)} document(s) to {output_dir}")

    print(f"[Info] {report.summary()}")
    if report.failed:
        names = {item.id: item.name for item in items}
        print(f"[Warning] {len(report.failed)}/{len(items)} document(s) failed:", file=sys.stderr)
        for item_id, reason in report.failed.items():
            print(f"  - {names.get(item_id, item_id)}: {reason}", file=sys.stderr)
        return 1 if not report.completed else 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
