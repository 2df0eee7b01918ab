from __future__ import annotations

# Report builders and renderers.

import base64
import difflib
import json
from typing import Any, Literal, Sequence

import yaml

from .models import DiffLine, DocumentFormat, DocumentReport, Outcome, TestCase
from .rewrite import authored_expectations, render_actual_line, rewrite_expectations


ReportFormat = Literal["pretty", "diff", "json", "yaml"]
REPORT_FORMATS: tuple[ReportFormat, ...] = ("pretty", "diff", "json", "yaml")

MAX_STREAM_BYTES = 65536

EXIT_OK = 0
EXIT_PARSE_ERROR = 1
EXIT_VALIDATION_FAILED = 50


def b64encode_ascii(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64_trunc(data: bytes, max_bytes: int = MAX_STREAM_BYTES) -> tuple[str, bool]:
    if len(data) > max_bytes:
        truncated = data[:max_bytes]
        return b64encode_ascii(truncated), True
    return b64encode_ascii(data), False


def init_summary() -> dict[str, Any]:
    return {
        "documents": 0,
        "total": 0,
        "passed": 0,
        "failed": 0,
        "incomplete": 0,
        "errors": 0,
        "first_failure": None,
        "first_failure_message": None,
    }


def update_summary(*, summary: dict[str, Any], name: str, testcase: TestCase, outcome: Outcome) -> None:
    summary["total"] += 1
    if outcome.passed:
        summary["passed"] += 1
        return
    if outcome.incomplete:
        summary["incomplete"] += 1
    else:
        summary["failed"] += 1
    if summary.get("first_failure") is None:
        summary["first_failure"] = f"{name}:{testcase.line_number}"
        summary["first_failure_message"] = outcome.message or ", ".join(outcome.reasons) or outcome.status


def summarize(reports: Sequence[DocumentReport]) -> dict[str, Any]:
    summary = init_summary()
    for report in reports:
        summary["documents"] += 1
        if report.parse_error is not None:
            summary["errors"] += 1
            continue
        for testcase, outcome in report.outcomes:
            update_summary(summary=summary, name=report.name, testcase=testcase, outcome=outcome)
    return summary


def exit_status(reports: Sequence[DocumentReport]) -> int:
    """0 when every testcase passed, 50 when any failed or did not complete."""

    for report in reports:
        if any(not outcome.passed for _tc, outcome in report.outcomes):
            return EXIT_VALIDATION_FAILED
    return EXIT_OK


def build_diff_record(entry: DiffLine) -> dict[str, Any]:
    expected = entry.expected
    return {
        "kind": entry.kind,
        "expected": (expected.source or expected.text) if expected is not None else None,
        "rule": expected.kind if expected is not None else None,
        "actual_b64": b64encode_ascii(entry.actual) if entry.actual is not None else None,
        "actual_eol": entry.actual_eol if entry.actual is not None else None,
        "expected_index": entry.expected_index,
        "actual_index": entry.actual_index,
    }


def build_test_record(testcase: TestCase, outcome: Outcome) -> dict[str, Any]:
    result = outcome.result
    stdout_b64, stdout_truncated = b64_trunc(result.stdout if result is not None else b"")
    stderr_b64, stderr_truncated = b64_trunc(result.stderr if result is not None else b"")
    return {
        "name": testcase.title,
        "line": testcase.line_number,
        "command": testcase.command,
        "status": outcome.status,
        "reasons": list(outcome.reasons),
        "message": outcome.message,
        "expected_exit_code": outcome.expected_exit_code,
        "exit_code": outcome.actual_exit_code,
        "timeout": result.timeout if result is not None else False,
        "cancelled": result.cancelled if result is not None else False,
        "output_truncated": result.truncated if result is not None else False,
        "time_ms": result.duration_ms if result is not None else 0,
        "stdout_b64": stdout_b64,
        "stderr_b64": stderr_b64,
        "stdout_truncated": stdout_truncated,
        "stderr_truncated": stderr_truncated,
        "diff": [build_diff_record(entry) for entry in outcome.diff],
    }


def build_document_record(report: DocumentReport) -> dict[str, Any]:
    summary = summarize([report])
    return {
        "path": report.name,
        "format": report.document.format if report.document is not None else None,
        "error": report.parse_error,
        "tests": [build_test_record(testcase, outcome) for testcase, outcome in report.outcomes],
        "summary": {key: summary[key] for key in ("total", "passed", "failed", "incomplete")},
    }


def build_report(reports: Sequence[DocumentReport]) -> dict[str, Any]:
    return {
        "schema_version": "report.v1",
        "documents": [build_document_record(report) for report in reports],
        "summary": summarize(reports),
        "truncation": {"max_stream_bytes": MAX_STREAM_BYTES},
    }


def _diff_entry_lines(entry: DiffLine, fmt: DocumentFormat) -> list[str]:
    expected = (entry.expected.source or entry.expected.text) if entry.expected is not None else ""
    actual = render_actual_line(entry.actual, entry.actual_eol, fmt) if entry.actual is not None else ""
    if entry.kind == "match":
        return [f"   {expected}"]
    if entry.kind == "missing":
        return [f" - {expected}"]
    if entry.kind == "unexpected":
        return [f" + {actual}"]
    return [f" - {expected}", f" + {actual}"]


def _describe(testcase: TestCase) -> str:
    title = testcase.title.replace("\n", " ").strip()
    return f"line {testcase.line_number}" + (f" ({title})" if title else "")


def render_pretty(reports: Sequence[DocumentReport]) -> str:
    out: list[str] = []
    for report in reports:
        if report.parse_error is not None:
            out.append(f"ERROR {report.parse_error}")
            continue
        for testcase, outcome in report.outcomes:
            status = outcome.status.upper()
            out.append(f"{status:<10} {report.name}: {_describe(testcase)}")
            if outcome.passed:
                continue
            out.append(f"           $ {testcase.command.splitlines()[0] if testcase.command else ''}")
            for reason in outcome.reasons:
                if reason == "exit_code_mismatch":
                    out.append(
                        f"           exit code: expected {outcome.expected_exit_code}, got {outcome.actual_exit_code}"
                    )
                elif reason != "output_mismatch":
                    out.append(f"           reason: {reason}")
            if outcome.message:
                out.append(f"           {outcome.message}")
            for entry in outcome.diff:
                out.extend("         " + line for line in _diff_entry_lines(entry, testcase.format))

    summary = summarize(reports)
    out.append(
        f"Result: {summary['documents']} document(s) with {summary['total']} testcase(s): "
        f"{summary['passed']} passed, {summary['failed']} failed, {summary['incomplete']} incomplete"
        + (f", {summary['errors']} document(s) with errors" if summary["errors"] else "")
    )
    return "\n".join(out) + "\n"


def render_diff(reports: Sequence[DocumentReport]) -> str:
    out: list[str] = []
    for report in reports:
        if report.parse_error is not None:
            out.append(f"# ERROR {report.parse_error}\n")
            continue
        for testcase, outcome in report.outcomes:
            if not outcome.failed:
                continue
            before = authored_expectations(testcase)
            after = rewrite_expectations(testcase, outcome)
            label = f"{report.name}:{testcase.line_number}"
            out.extend(
                difflib.unified_diff(
                    [line + "\n" for line in before],
                    [line + "\n" for line in after],
                    fromfile=f"{label} (expected)",
                    tofile=f"{label} (actual)",
                )
            )
    return "".join(out)


def render_report(reports: Sequence[DocumentReport], fmt: ReportFormat) -> str:
    if fmt == "pretty":
        return render_pretty(reports)
    if fmt == "diff":
        return render_diff(reports)
    if fmt == "json":
        return json.dumps(build_report(reports), ensure_ascii=False, indent=2) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(build_report(reports), sort_keys=False, allow_unicode=True)
    raise ValueError(f"unknown_report_format:{fmt}")


def render(outcomes: Sequence[tuple[TestCase, Outcome]], fmt: ReportFormat, *, name: str | None = None) -> str:
    return render_report([DocumentReport(document=None, outcomes=tuple(outcomes), path=name)], fmt)
