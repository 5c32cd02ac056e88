"""
Command-line interface for the document merger.

Usage:
    document-merger merge a.pdf b.docx notes.txt --output merged.pdf
    document-merger merge q1.xlsx q2.xlsx --output-format xlsx --sheet-naming original
    document-merger info report.docx
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from document_processors import MergeOptions
from error_handler import DocumentError, ErrorHandler
from format_detection import InputFile, LogicalFormat
from merger_engine import DocumentStatus, JobStatus, MergeOrchestrator


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="document-merger",
        description="Merge PDF, Word, Excel, PowerPoint, text and CSV files into one document",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge_parser = subparsers.add_parser("merge", help="Merge documents in the order given")
    merge_parser.add_argument("inputs", nargs="+", help="Input files")
    merge_parser.add_argument(
        "-o", "--output",
        default=".",
        help="Output file or directory (default: current directory)",
    )
    merge_parser.add_argument(
        "-f", "--output-format",
        choices=[fmt.value for fmt in LogicalFormat],
        help="Required output format (default: decided from the inputs)",
    )
    merge_parser.add_argument("--name", default="merged-document", help="Output file name without extension")
    merge_parser.add_argument("--page-breaks", action="store_true", help="Separate documents with page breaks")
    merge_parser.add_argument("--headers", action="store_true", help="Label each document with a header")
    merge_parser.add_argument("--footers", action="store_true", help="Add a footer to Word output")
    merge_parser.add_argument("--no-metadata", action="store_true", help="Do not stamp merged-document metadata")
    merge_parser.add_argument("--plain", action="store_true", help="Copy text only instead of formatted content")
    merge_parser.add_argument("--keep-duplicate-headers", action="store_true", help="Keep every CSV header row")
    merge_parser.add_argument("--formulas", action="store_true", help="Keep Excel formulas instead of values")
    merge_parser.add_argument("--separator", help="Separator placed between merged text files")
    merge_parser.add_argument(
        "--sheet-naming",
        choices=["default", "sequential", "original"],
        default="default",
        help="How merged Excel sheets are named",
    )
    merge_parser.add_argument("--logs-dir", help="Write run logs (text and JSONL) to this directory")
    merge_parser.add_argument("--manifest", help="Write a JSON summary of the merge to this path")
    merge_parser.add_argument(
        "--log-privacy",
        choices=["redacted", "full"],
        default="redacted",
        help="Whether run logs keep full paths",
    )

    info_parser = subparsers.add_parser("info", help="Show document analysis and preview")
    info_parser.add_argument("inputs", nargs="+", help="Input files")
    info_parser.add_argument("--json", action="store_true", help="Output as JSON")
    return parser


def options_from_args(args: argparse.Namespace) -> MergeOptions:
    return MergeOptions(
        output_format=LogicalFormat(args.output_format) if args.output_format else None,
        output_name=args.name,
        preserve_metadata=not args.no_metadata,
        preserve_formatting=not args.plain,
        page_breaks=args.page_breaks,
        include_headers=args.headers,
        include_footers=args.footers,
        skip_duplicate_headers=not args.keep_duplicate_headers,
        preserve_formulas=args.formulas,
        text_separator=args.separator,
        sheet_naming=args.sheet_naming,
    )


def _print_progress(fraction: float) -> None:
    print(f"\r  Merging... {fraction * 100:5.1f}%", end="", file=sys.stderr, flush=True)


async def run_merge(args: argparse.Namespace) -> int:
    options = options_from_args(args)
    with MergeOrchestrator(logs_dir=args.logs_dir, log_privacy_mode=args.log_privacy) as orchestrator:
        _, rejected = orchestrator.add_documents(InputFile.from_path(path) for path in args.inputs)
        for error in rejected:
            print(f"Skipped: {error.message}", file=sys.stderr)

        documents = await orchestrator.process_documents()
        for document in documents:
            if document.status == DocumentStatus.ERROR:
                print(f"Warning: {document.name}: {document.error.message}", file=sys.stderr)

        job = await orchestrator.merge(options, on_progress=_print_progress)
        print(file=sys.stderr)
        if args.manifest:
            with open(args.manifest, "w", encoding="utf-8") as handle:
                json.dump(job.to_dict(), handle, indent=2, default=str)

        if job.status != JobStatus.COMPLETED:
            print(f"Merge failed: {job.error.title}: {job.error.message}", file=sys.stderr)
            print(f"  {job.error.user_action}", file=sys.stderr)
            return 1

        with job.result as output:
            destination = output.save(args.output)
        print(f"Created: {destination} ({job.format_reason})")
        for warning in job.warnings:
            print(f"  warning [{warning.get('code')}]: {warning.get('message')}", file=sys.stderr)
    return 0


async def run_info(args: argparse.Namespace) -> int:
    with MergeOrchestrator(enable_detailed_logging=False) as orchestrator:
        _, rejected = orchestrator.add_documents(InputFile.from_path(path) for path in args.inputs)
        documents = await orchestrator.process_documents()
        reports = []
        for document in documents:
            reports.append({
                "name": document.name,
                "format": document.format.value,
                "status": document.status.value,
                "metadata": document.metadata.to_dict() if document.metadata else {},
                "preview": document.preview,
                "warnings": document.warnings,
                "error": document.error.to_dict() if document.error else None,
            })
        for error in rejected:
            reports.append({"status": "rejected", "error": error.to_dict()})

    if args.json:
        print(json.dumps(reports, indent=2, default=str))
        return 0
    for report in reports:
        if report["status"] == "rejected":
            print(f"Rejected: {report['error']['message']}\n")
            continue
        print(f"{report['name']} [{report['format']}] - {report['status']}")
        for key, value in report["metadata"].items():
            print(f"  {key}: {value}")
        if report["preview"]:
            print("  " + report["preview"].replace("\n", "\n  "))
        if report["error"]:
            print(f"  error: {report['error']['message']}")
        print()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    missing = [path for path in args.inputs if not os.path.isfile(path)]
    if missing:
        print(f"Error: file not found: {', '.join(missing)}", file=sys.stderr)
        return 2

    try:
        ErrorHandler.check_environment_support()
        if args.command == "merge":
            return asyncio.run(run_merge(args))
        return asyncio.run(run_info(args))
    except DocumentError as exc:
        print(f"Error: {exc.title}: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
