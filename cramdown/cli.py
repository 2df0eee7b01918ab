from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from .fs import write_text
from .report import EXIT_PARSE_ERROR, REPORT_FORMATS, exit_status, render_report
from .rewrite import rewrite_for_update
from .runner import RunLimits, load_documents, run_documents
from .settings import SETTINGS, Settings


def limits_from_settings(settings: Settings, *, concurrency: int | None = None) -> RunLimits:
    return RunLimits(
        output_limit_bytes=settings.max_output_bytes,
        grace_seconds=settings.kill_grace_seconds,
        concurrency=concurrency or settings.concurrency,
        shell=settings.shell,
        languages=settings.languages or ("cramdown",),
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="cramdown", description="Run shell commands from documents and compare their output.")
    ap.add_argument("--log-level", default=None, choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    sub = ap.add_subparsers(dest="command", required=True)

    for name, help_text in (("test", "run documents and report results"), ("update", "rewrite expectations of failed tests")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("paths", nargs="+")
        p.add_argument("--format", dest="document_format", default=None, choices=("markdown", "cram"))
        p.add_argument("--concurrency", type=int, default=None)
        if name == "test":
            p.add_argument("--output", default="pretty", choices=REPORT_FORMATS)
        else:
            p.add_argument("--dry-run", action="store_true")
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level or SETTINGS.log_level,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    limits = limits_from_settings(SETTINGS, concurrency=args.concurrency)

    cancel_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda _signo, _frame: cancel_event.set())
    try:
        documents, errors = load_documents([Path(p) for p in args.paths], fmt=args.document_format, limits=limits)
        reports = [*errors, *run_documents(documents, limits=limits, cancel_event=cancel_event)]
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.command == "test":
        sys.stdout.write(render_report(reports, args.output))
    else:
        for report in reports:
            document = report.document
            if document is None or document.path is None:
                continue
            if not any(outcome.failed for _tc, outcome in report.outcomes):
                continue
            text = rewrite_for_update(document, report.outcomes)
            if args.dry_run:
                print(f"[dry-run] would update {document.path}")
                continue
            write_text(Path(document.path), text)
            print(f"[update] updated {document.path}")
        for report in errors:
            print(f"ERROR {report.parse_error}", file=sys.stderr)

    if errors:
        return EXIT_PARSE_ERROR
    return exit_status(reports)


if __name__ == "__main__":
    raise SystemExit(main())
