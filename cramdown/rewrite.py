from __future__ import annotations

# Update mode: write actual output back into a document.

from typing import Sequence

from . import escaping
from .models import DiffLine, Document, DocumentFormat, Outcome, OutputLine, TestCase
from .parsers.common import GAP_MARKER, NO_EOL, has_rule_marker, is_command_line, is_continuation_line, is_exit_code_line
from .parsers.cram import CONFIG_PREFIX, INDENT


def _ambiguous_start(text: str, fmt: DocumentFormat) -> bool:
    # Lines the parser would read as commands, test config or a closing fence.
    if is_command_line(text) or is_continuation_line(text):
        return True
    if fmt == "cram":
        return text.startswith(CONFIG_PREFIX)
    return text.startswith("```")


def _with_marker(text: str, kind: str, *, eol: bool) -> str:
    if eol:
        return f"{text} ({kind})"
    return f"{text} ({kind}, {NO_EOL})"


def render_actual_line(content: bytes, eol: bool, fmt: DocumentFormat) -> str:
    """Render one actual output line so that it parses back into a matching expectation."""

    if not escaping.needs_escaping(content, fmt):
        text = content.decode("utf-8")
        if not _ambiguous_start(text, fmt):
            if text == GAP_MARKER or is_exit_code_line(text) or has_rule_marker(text):
                return _with_marker(text, "equal", eol=eol)
            return text if eol else f"{text} ({NO_EOL})"

    encoded = escaping.encode(content, fmt)
    if content and _ambiguous_start(encoded, fmt):
        encoded = f"\\x{content[0]:02x}" + escaping.encode(content[1:], fmt)
    return _with_marker(encoded, "escaped", eol=eol)


def _lines_from_diff(diff: Sequence[DiffLine], expectations: Sequence[OutputLine], fmt: DocumentFormat) -> list[str]:
    lines: list[str] = []
    covered = {entry.expected_index for entry in diff if entry.expected_index is not None}
    pending = 0
    last_expected: int | None = None

    def keep_unused_rules(upto: int) -> None:
        # Rules that may match nothing leave no diff entry when they matched nothing.
        nonlocal pending
        for index in range(pending, upto):
            line = expectations[index]
            if index not in covered and line.bounds[0] == 0:
                lines.append(line.source or line.text)
        pending = max(pending, upto)

    for entry in diff:
        if entry.expected_index is not None:
            keep_unused_rules(entry.expected_index)
        if entry.kind == "match" and entry.expected is not None:
            # A multi-line rule is written once, as authored.
            if entry.expected_index != last_expected:
                lines.append(entry.expected.source or entry.expected.text)
                last_expected = entry.expected_index
            continue
        last_expected = None
        if entry.kind in ("mismatch", "unexpected") and entry.actual is not None:
            lines.append(render_actual_line(entry.actual, entry.actual_eol, fmt))
    keep_unused_rules(len(expectations))
    return lines


def rewrite_expectations(testcase: TestCase, outcome: Outcome) -> list[str]:
    """New expectation lines (without Cram indentation) for one testcase."""

    if "output_mismatch" in outcome.reasons:
        lines = _lines_from_diff(outcome.diff, testcase.expectations, testcase.format)
    else:
        lines = authored_expectations(testcase)[: len(testcase.expectations)]
    if outcome.actual_exit_code not in (None, 0):
        lines.append(f"[{outcome.actual_exit_code}]")
    return lines


def authored_expectations(testcase: TestCase) -> list[str]:
    lines = [line.source or line.text for line in testcase.expectations]
    if testcase.exit_code is not None:
        lines.append(f"[{testcase.exit_code}]")
    return lines


def rewrite_for_update(document: Document, outcomes: Sequence[tuple[TestCase, Outcome]]) -> str:
    lines = list(document.source_lines)
    failed = [(testcase, outcome) for testcase, outcome in outcomes if outcome.failed]
    # Replace from the bottom so earlier spans keep their offsets.
    for testcase, outcome in sorted(failed, key=lambda pair: pair[0].expectation_span[0], reverse=True):
        start, end = testcase.expectation_span
        replacement = rewrite_expectations(testcase, outcome)
        if document.format == "cram":
            replacement = [INDENT + line for line in replacement]
        lines[start:end] = replacement

    text = "\n".join(lines)
    if lines and document.trailing_newline:
        text += "\n"
    return text
