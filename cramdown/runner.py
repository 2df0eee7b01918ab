from __future__ import annotations

# Runs parsed documents: one shell session per document, testcases in order.

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import ExecutionError, ParseError, SessionError
from .fs import create_workdir, remove_workdir
from .matching import match_testcase
from .models import Document, DocumentFormat, DocumentReport, Outcome, TestCase
from .parsers.markdown import DEFAULT_MARKDOWN_LANGUAGES
from .parsing import parse_file
from .session import DEFAULT_GRACE_PERIOD_SECONDS, DEFAULT_OUTPUT_LIMIT_BYTES, ShellSession, execute


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunLimits:
    output_limit_bytes: int = DEFAULT_OUTPUT_LIMIT_BYTES
    grace_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS
    concurrency: int = 1
    # Used when a document does not choose its own shell.
    shell: str | None = None
    languages: tuple[str, ...] = DEFAULT_MARKDOWN_LANGUAGES


def skipped_outcome(testcase: TestCase, reason: str, *, message: str = "") -> Outcome:
    return Outcome(
        status="incomplete",
        reasons=(reason,),
        expected_exit_code=testcase.expected_exit_code,
        message=message,
    )


def document_environment(document: Document, workdir: Path) -> dict[str, str]:
    if document.path is not None:
        path = Path(document.path).resolve()
        testdir, testfile = path.parent, path.name
    else:
        testdir, testfile = workdir, ""
    return {"TESTDIR": str(testdir), "TESTFILE": testfile, "TMPDIR": str(workdir)}


def resolve_document_workdir(document: Document, tmpdir: Path, env: dict[str, str]) -> Path:
    if not document.config.workdir:
        return tmpdir
    workdir = Path(document.config.workdir).expanduser()
    if not workdir.is_absolute():
        workdir = Path(env["TESTDIR"]) / workdir
    if not workdir.is_dir():
        raise SessionError(f"workdir_missing:{workdir}")
    return workdir


def run_document(
    document: Document,
    *,
    limits: RunLimits | None = None,
    cancel_event: threading.Event | None = None,
) -> list[tuple[TestCase, Outcome]]:
    """Run every testcase of ``document`` in order and match its output."""

    limits = limits or RunLimits()
    config = document.config
    shell = config.shell or limits.shell or config.effective_shell
    name = document.display_name
    tmpdir = create_workdir()
    env = document_environment(document, tmpdir)

    outcomes: list[tuple[TestCase, Outcome]] = []
    abort_reason: str | None = None
    abort_message = ""
    session: ShellSession | None = None
    deadline = time.monotonic() + config.effective_total_timeout
    try:
        try:
            workdir = resolve_document_workdir(document, tmpdir, env)
            session = ShellSession(
                shell,
                workdir=workdir,
                env=env,
                output_limit_bytes=limits.output_limit_bytes,
                grace_seconds=limits.grace_seconds,
            )
        except SessionError as exc:
            logger.warning("%s: cannot prepare shell session: %s", name, exc)
            workdir = tmpdir
            abort_reason, abort_message = "session_error", str(exc)

        total = len(document.testcases)
        for idx, testcase in enumerate(document.testcases, start=1):
            if abort_reason is None and cancel_event is not None and cancel_event.is_set():
                abort_reason = "cancelled"
            if abort_reason is None and time.monotonic() >= deadline:
                logger.warning("%s: total timeout of %.1fs exceeded", name, config.effective_total_timeout)
                abort_reason = "total_timeout"
            if abort_reason is not None:
                outcomes.append((testcase, skipped_outcome(testcase, abort_reason, message=abort_message)))
                continue

            remaining = max(0.0, deadline - time.monotonic())
            timeout = remaining if testcase.config.timeout is None else min(testcase.config.timeout, remaining)
            logger.debug("%s: [%d/%d] line %d: %s", name, idx, total, testcase.line_number, testcase.command)
            try:
                result = execute(
                    testcase,
                    session,
                    workdir=workdir,
                    env=env,
                    shell=shell,
                    timeout=timeout,
                    cancel_event=cancel_event,
                    output_limit_bytes=limits.output_limit_bytes,
                    grace_seconds=limits.grace_seconds,
                )
            except SessionError as exc:
                logger.warning("%s: shell session failed: %s", name, exc)
                outcome = skipped_outcome(testcase, "session_error", message=str(exc))
                abort_reason, abort_message = "skipped", str(exc)
            except ExecutionError as exc:
                outcome = Outcome(
                    status="fail",
                    reasons=("execution_error",),
                    expected_exit_code=testcase.expected_exit_code,
                    message=str(exc),
                )
            else:
                outcome = match_testcase(testcase, result)
                if outcome.incomplete:
                    abort_reason = "skipped"

            if outcome.failed and config.stop_on_failure:
                logger.info("%s: stopping after first failure at line %d", name, testcase.line_number)
                abort_reason = "skipped"
            logger.debug("%s: [%d/%d] %s", name, idx, total, outcome.status)
            outcomes.append((testcase, outcome))
    finally:
        if session is not None:
            session.close()
        remove_workdir(tmpdir)

    passed = sum(1 for _tc, outcome in outcomes if outcome.passed)
    logger.info("%s: %d/%d passed", name, passed, len(outcomes))
    return outcomes


def run_documents(
    documents: Sequence[Document],
    *,
    limits: RunLimits | None = None,
    cancel_event: threading.Event | None = None,
) -> list[DocumentReport]:
    limits = limits or RunLimits()

    def worker(document: Document) -> DocumentReport:
        outcomes = run_document(document, limits=limits, cancel_event=cancel_event)
        return DocumentReport(document=document, outcomes=tuple(outcomes))

    with ThreadPoolExecutor(max_workers=max(1, limits.concurrency)) as pool:
        return list(pool.map(worker, documents))


def load_documents(
    paths: Sequence[Path],
    *,
    fmt: DocumentFormat | None = None,
    limits: RunLimits | None = None,
) -> tuple[list[Document], list[DocumentReport]]:
    """Parse ``paths``; unparseable files become error reports instead of documents."""

    limits = limits or RunLimits()
    documents: list[Document] = []
    errors: list[DocumentReport] = []
    for path in paths:
        try:
            documents.append(parse_file(Path(path), fmt, languages=limits.languages))
        except ParseError as exc:
            logger.warning("%s", exc)
            errors.append(DocumentReport(document=None, parse_error=str(exc), path=str(path)))
    return documents, errors
