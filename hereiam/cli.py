#!/usr/bin/env python3
"""
Command Line Interface for HereIAm
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from . import __version__
from .app import HereIAmApp
from .config import load_settings
from .errors import HereIAmError
from .local_search.constants import GRANULARITIES
from .local_search.indexer import IndexProgress
from .local_search.utils import safe_relpath
from .logging import configure_logging


def _print_progress(event: IndexProgress) -> None:
    name = event.current_file or ""
    print(
        f"\r[{event.progress_percent:3d}%] {event.state.value:<14} "
        f"{event.processed_files}/{event.total_files} {name[:40]:<40}",
        end="",
        file=sys.stderr,
        flush=True,
    )


def index_cli(app: HereIAmApp, args: argparse.Namespace) -> int:
    """Index command"""
    print(f"📁 Indexing folder: {args.folder}")
    result = app.scan(
        args.folder,
        extensions=args.extensions,
        granularity=args.granularity,
        progress=None if args.quiet else _print_progress,
    )
    if not args.quiet:
        print(file=sys.stderr)

    if result.total_files_found > len(result.files) + len(result.failed_files):
        print(f"Found {result.total_files_found} files, indexed the first {len(result.files) + len(result.failed_files)}")
    for path in result.failed_files:
        print(f"✗ Skipped: {path}")

    if not result.ok:
        print(f"❌ Indexing failed: {result.error}", file=sys.stderr)
        if result.files:
            print(f"Kept {result.chunk_count} chunks from {len(result.files)} files embedded before the failure")
        return 1

    print(f"✅ Indexed {len(result.files)} files, {result.chunk_count} chunks")
    if not result.metadata_saved:
        print("⚠️  Chunk metadata could not be saved; re-index before restarting", file=sys.stderr)
    return 0


def search_cli(app: HereIAmApp, args: argparse.Namespace) -> int:
    """Search command"""
    response = app.search(args.query, granularity=args.granularity, limit=args.limit, min_score=args.min_score)

    if args.json:
        print(json.dumps(response.to_dict(), indent=2, ensure_ascii=False))
        return 0

    print(f"\n🔍 Searching for: '{args.query}'")
    print("-" * 60)
    if not response.results:
        print("No matches")
        return 0
    folder = app.session.folder
    for i, result in enumerate(response.results):
        snippet = " ".join(result.text.split())
        print(f"\n📄 Result {i + 1} (Score: {result.score:.3f}, {result.granularity})")
        shown = safe_relpath(result.file_path, folder) if folder else result.file_path
        print(f"File: {shown} @ {result.start_offset}")
        print(f"Content: {snippet[:200]}{'...' if len(snippet) > 200 else ''}")
        print("-" * 40)
    return 0


def status_cli(app: HereIAmApp, args: argparse.Namespace) -> int:
    """Status command"""
    info = app.check_indexed_data()
    if args.json:
        print(json.dumps(info, indent=2))
        return 0
    print("\n📊 HEREIAM STATUS")
    print("=" * 40)
    print(f"📁 Folder: {info['folderPath'] or '-'}")
    print(f"📄 Documents: {app.store.count_documents()}")
    print(f"🧩 Chunks: {info['chunkCount']}")
    print(f"🔎 Ready to search: {'yes' if info['hasData'] else 'no'}")
    print(f"💾 Data dir: {app.settings.data_dir}")
    print(f"🧠 Model: {app.settings.model_name}")
    indexed_with = app.vector_index.model
    if indexed_with and indexed_with != app.settings.model_name:
        print(f"⚠️  Index was built with {indexed_with}; re-index before searching with this model")
    return 0


def show_cli(app: HereIAmApp, args: argparse.Namespace) -> int:
    """Show a file around a character offset"""
    text = app.read_file(args.file)
    start = max(0, args.offset - args.context)
    end = min(len(text), args.offset + args.context)
    print(text[start:end])
    return 0


def interactive(app: HereIAmApp) -> int:
    print("🔍 HereIAm - Interactive Mode")
    print("-" * 40)

    while True:
        try:
            query = input("\nEnter search query (or 'quit' to exit): ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            return 0

        if query.lower() in ["quit", "exit", "q"]:
            print("Goodbye!")
            return 0
        if not query:
            continue
        try:
            search_cli(
                app,
                argparse.Namespace(query=query, granularity=None, limit=None, min_score=None, json=False),
            )
        except HereIAmError as e:
            print(f"Error: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hereiam", description="HereIAm - local semantic document search")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", help="Where the index and metadata are stored")
    parser.add_argument("--model", help="Embedding model name")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper)
    parser.add_argument("--dev", action="store_true", default=None, help="Small model, few chunks per file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    level_help = f"Granularity levels ({', '.join(GRANULARITIES)})"

    # Index command
    index_parser = subparsers.add_parser("index", help="Index a folder")
    index_parser.add_argument("folder", help="Folder to index")
    index_parser.add_argument("-e", "--extensions", nargs="+", metavar="EXT", help="File extensions to include")
    index_parser.add_argument("-g", "--granularity", nargs="+", choices=GRANULARITIES, help=level_help)
    index_parser.add_argument("-q", "--quiet", action="store_true", help="No progress output")

    # Search command
    search_parser = subparsers.add_parser("search", help="Search the indexed folder")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("-g", "--granularity", nargs="+", choices=GRANULARITIES, help=level_help)
    search_parser.add_argument("-l", "--limit", type=int, default=None, help="Maximum results")
    search_parser.add_argument("--min-score", type=float, default=None, help="Drop weaker matches")
    search_parser.add_argument("--json", action="store_true", help="Print results as JSON")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show what is indexed")
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")

    # Show command
    show_parser = subparsers.add_parser("show", help="Print part of a file")
    show_parser.add_argument("file", help="File to read")
    show_parser.add_argument("--offset", type=int, default=0, help="Character offset of the match")
    show_parser.add_argument("--context", type=int, default=500, help="Characters to show around the offset")

    return parser


_COMMANDS = {
    "index": index_cli,
    "search": search_cli,
    "status": status_cli,
    "show": show_cli,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI function"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(
            data_dir=args.data_dir,
            model_name=args.model,
            log_level=args.log_level,
            dev_mode=args.dev,
        )
    except HereIAmError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    configure_logging(level=settings.log_level, json_format=settings.log_json, log_file=settings.log_file)

    try:
        with HereIAmApp(settings) as app:
            handler = _COMMANDS.get(args.command)
            if handler is None:
                return interactive(app)
            return handler(app, args)
    except HereIAmError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
