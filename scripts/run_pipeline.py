#!/usr/bin/env python3
"""
Run the analysis pipeline for a single PDF from the command line.

This script:
1. Extracts page-delimited text from the PDF
2. Registers the paper in the local database (reusing an earlier registration
   of the same file, so cached stage results are picked up)
3. Runs every stage (or the selected ones) through an in-process coordinator
4. Writes all stage results as one JSON bundle

Usage:
    python scripts/run_pipeline.py paper.pdf [--title ...] [--doi ...] [--output out.json] [--stages claims,patents]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Add parent directory to path to import evidentia modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from evidentia.config import settings
from evidentia.database import get_db
from evidentia.db_init import init_database
from evidentia.models import PaperCreate, PaperMetadata, PaperRecord, StageStatus
from evidentia.services.cache_store import SqliteCacheStore
from evidentia.services.coordinator import PipelineCoordinator
from evidentia.services.model_client import ModelClient
from evidentia.services.paper_store import create_paper, get_paper_by_storage_path
from evidentia.services.pdf_extractor import extract_pdf
from evidentia.services.text_utils import compute_content_hash, extract_title_from_text
from evidentia.stages.registry import STAGE_ORDER


def parse_stages(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma-separated stage list, rejecting unknown names."""
    if not value:
        return None
    stages = [name.strip() for name in value.split(",") if name.strip()]
    unknown = [name for name in stages if name not in STAGE_ORDER]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"Unknown stage(s): {', '.join(unknown)}. Choose from: {', '.join(STAGE_ORDER)}"
        )
    return stages


def register_pdf(pdf_path: Path, title: Optional[str], doi: Optional[str]) -> PaperRecord:
    """Extract the PDF and register it, or return the earlier registration."""
    extracted = extract_pdf(pdf_path.read_bytes())
    storage_path = f"cli/{compute_content_hash(extracted.text)[:16]}.pdf"

    with get_db() as conn:
        existing = get_paper_by_storage_path(conn, storage_path)
        if existing:
            print(f"Reusing registered paper {existing.id}")
            return existing

        paper = PaperMetadata(
            title=title or extract_title_from_text(extracted.text),
            doi=doi or extracted.doi,
        )
        record = create_paper(conn, PaperCreate(
            storage_path=storage_path,
            file_name=pdf_path.name,
            paper=paper,
            text=extracted.text,
        ))
        print(f"Registered paper {record.id} ({extracted.pages} pages)")
        return record


async def run(record: PaperRecord, stages: Optional[List[str]]) -> dict:
    coordinator = PipelineCoordinator(
        SqliteCacheStore(settings.database_path),
        lambda: ModelClient.from_settings(settings),
    )
    coordinator.register(record)
    try:
        await coordinator.activate(record.id, run_missing=False)
        results = await coordinator.run_pipeline(record.id, stages)
    finally:
        await coordinator.close()

    return {
        "paper": record.model_dump(mode="json", by_alias=True, exclude={"text"}),
        "stages": {name: result.model_dump(mode="json", by_alias=True) for name, result in results.items()},
    }


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the Evidentia pipeline for one PDF"
    )
    parser.add_argument("pdf", type=Path, help="Path to the paper PDF")
    parser.add_argument("--title", type=str, default=None, help="Paper title (default: first line of the text)")
    parser.add_argument("--doi", type=str, default=None, help="Paper DOI (default: detected from the PDF)")
    parser.add_argument("--output", type=Path, default=None, help="Write the JSON bundle here (default: stdout)")
    parser.add_argument(
        "--stages",
        type=parse_stages,
        default=None,
        help=f"Comma-separated subset of stages (default: all of {', '.join(STAGE_ORDER)})"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 70, file=sys.stderr)
    print("Evidentia Pipeline", file=sys.stderr)
    print("=" * 70, file=sys.stderr)
    print(f"PDF: {args.pdf}", file=sys.stderr)
    print(f"Database: {settings.database_path}", file=sys.stderr)
    print(f"Model: {settings.openai_model}", file=sys.stderr)
    print("=" * 70, file=sys.stderr)

    if not args.pdf.exists():
        print(f"\nError: PDF not found: {args.pdf}", file=sys.stderr)
        sys.exit(1)

    if not settings.has_api_key:
        print("\nError: OPENAI_API_KEY not found in environment", file=sys.stderr)
        print("   Set the OPENAI_API_KEY environment variable or add it to .env", file=sys.stderr)
        sys.exit(1)

    init_database()

    try:
        record = register_pdf(args.pdf, args.title, args.doi)
    except ValueError as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    bundle = asyncio.run(run(record, args.stages))

    failed = [name for name, result in bundle["stages"].items() if result["status"] == StageStatus.ERROR.value]
    output = json.dumps(bundle, indent=2, ensure_ascii=False)

    if args.output:
        args.output.write_text(output, encoding="utf-8")
        print(f"\nWrote results to {args.output}", file=sys.stderr)
    else:
        print(output)

    if failed:
        print(f"\nFailed stages: {', '.join(failed)}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
