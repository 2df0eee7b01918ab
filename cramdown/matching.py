from __future__ import annotations

# Output matching (expected lines vs. actual output lines).

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from . import escaping
from .config import OutputStream
from .errors import InvariantViolation
from .models import DiffLine, DocumentFormat, ExecutionResult, Outcome, OutputLine, TestCase


# Above this many (expected x actual) cells the diff falls back to "all missing, all unexpected".
DIFF_ALIGN_LIMIT = 1_000_000


@dataclass(frozen=True)
class ActualLine:
    content: bytes
    eol: bool = True


Predicate = Callable[[ActualLine], bool]


def split_output(data: bytes, *, keep_crlf: bool = False) -> list[ActualLine]:
    if not data:
        return []
    if not keep_crlf:
        data = data.replace(b"\r\n", b"\n")
    parts = data.split(b"\n")
    lines = [ActualLine(content=part, eol=True) for part in parts[:-1]]
    if parts[-1]:
        lines.append(ActualLine(content=parts[-1], eol=False))
    return lines


def glob_to_regex(pattern: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern) and pattern[i + 1] in "*?\\":
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


@lru_cache(maxsize=1024)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    return re.compile(glob_to_regex(pattern), re.DOTALL)


@lru_cache(maxsize=1024)
def _compile_regex(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _as_text(line: ActualLine) -> str:
    return line.content.decode("utf-8", errors="surrogateescape")


def line_predicate(expected: OutputLine, fmt: DocumentFormat) -> Predicate:
    if expected.gap:
        return lambda _line: True

    want_eol = not expected.no_eol
    if expected.kind in ("equal", "escaped"):
        if expected.kind == "equal":
            wanted = expected.text.encode("utf-8", errors="surrogateescape")
        else:
            wanted = escaping.decode(expected.text, fmt)
        return lambda line: line.content == wanted and line.eol == want_eol

    if expected.kind == "glob":
        pattern = _compile_glob(expected.text)
    elif expected.kind == "regex":
        pattern = _compile_regex(expected.text)
    else:
        raise InvariantViolation(f"unknown rule kind: {expected.kind!r}")

    if expected.no_eol:
        return lambda line: not line.eol and pattern.fullmatch(_as_text(line)) is not None
    return lambda line: pattern.fullmatch(_as_text(line)) is not None


def match_lines(
    expected: tuple[OutputLine, ...] | list[OutputLine],
    actual: list[ActualLine],
    predicates: list[Predicate],
) -> list[int] | None:
    """Return how many actual lines each expected line consumed, or None.

    Every expected line first takes as many consecutive lines as it can. When
    the remainder cannot be matched, the most recently placed expected line
    gives back one line at a time down to its minimum before earlier ones are
    revisited. Failed (expected, actual) positions are remembered.
    """

    n, m = len(expected), len(actual)
    failed: set[tuple[int, int]] = set()
    # (expected index, actual index, lines taken)
    stack: list[tuple[int, int, int]] = []
    i, j = 0, 0

    while True:
        if i == n:
            if j == m:
                return [taken for _i, _j, taken in stack]
        elif (i, j) not in failed:
            lo, hi = expected[i].bounds
            limit = m - j if hi is None else min(hi, m - j)
            taken = 0
            while taken < limit and predicates[i](actual[j + taken]):
                taken += 1
            if taken >= lo:
                stack.append((i, j, taken))
                i, j = i + 1, j + taken
                continue
            failed.add((i, j))

        while stack:
            pi, pj, taken = stack.pop()
            if taken > expected[pi].bounds[0]:
                stack.append((pi, pj, taken - 1))
                i, j = pi + 1, pj + taken - 1
                break
            failed.add((pi, pj))
        else:
            return None


def _merge_mismatches(entries: list[DiffLine]) -> list[DiffLine]:
    merged: list[DiffLine] = []
    missing: list[DiffLine] = []
    unexpected: list[DiffLine] = []

    def flush() -> None:
        for exp, act in zip(missing, unexpected):
            merged.append(
                DiffLine(
                    kind="mismatch",
                    expected=exp.expected,
                    actual=act.actual,
                    expected_index=exp.expected_index,
                    actual_index=act.actual_index,
                    actual_eol=act.actual_eol,
                )
            )
        pairs = min(len(missing), len(unexpected))
        merged.extend(missing[pairs:])
        merged.extend(unexpected[pairs:])
        missing.clear()
        unexpected.clear()

    for entry in entries:
        if entry.kind == "missing":
            missing.append(entry)
        elif entry.kind == "unexpected":
            unexpected.append(entry)
        else:
            flush()
            merged.append(entry)
    flush()
    return merged


def _unaligned_diff(expected: tuple[OutputLine, ...] | list[OutputLine], actual: list[ActualLine]) -> list[DiffLine]:
    entries = [
        DiffLine(kind="missing", expected=line, expected_index=i)
        for i, line in enumerate(expected)
        if line.bounds[0] > 0
    ]
    entries.extend(
        DiffLine(kind="unexpected", actual=line.content, actual_index=j, actual_eol=line.eol)
        for j, line in enumerate(actual)
    )
    return entries


def align(
    expected: tuple[OutputLine, ...] | list[OutputLine],
    actual: list[ActualLine],
    predicates: list[Predicate],
) -> list[DiffLine]:
    """Minimum-edit alignment of expected and actual lines.

    A state is (expected index, actual index, whether the current expected
    line already consumed a line). Consuming a matching line is free, an
    unconsumed mandatory expectation or an extra actual line costs one.
    """

    n, m = len(expected), len(actual)
    if n * m > DIFF_ALIGN_LIMIT:
        return _merge_mismatches(_unaligned_diff(expected, actual))

    hits = [[predicates[i](actual[j]) for j in range(m)] for i in range(n)]
    # cost[used][i][j]
    cost = [[[0] * (m + 1) for _ in range(n + 1)] for _used in range(2)]
    for used in range(2):
        for j in range(m + 1):
            cost[used][n][j] = m - j
    for i in range(n - 1, -1, -1):
        lo, hi = expected[i].bounds
        for j in range(m, -1, -1):
            for used in range(2):
                best = cost[0][i + 1][j] + (0 if used or lo == 0 else 1)
                if j < m:
                    best = min(best, cost[used][i][j + 1] + 1)
                    if hits[i][j]:
                        best = min(best, cost[0][i + 1][j + 1])
                        if hi is None:
                            best = min(best, cost[1][i][j + 1])
                cost[used][i][j] = best

    entries: list[DiffLine] = []
    i, j, used = 0, 0, 0
    while i < n or j < m:
        if i == n:
            entries.append(DiffLine(kind="unexpected", actual=actual[j].content, actual_index=j, actual_eol=actual[j].eol))
            j += 1
            continue
        here = cost[used][i][j]
        lo, hi = expected[i].bounds
        if j < m and hits[i][j]:
            step = DiffLine(
                kind="match",
                expected=expected[i],
                actual=actual[j].content,
                expected_index=i,
                actual_index=j,
                actual_eol=actual[j].eol,
            )
            if hi is None and cost[1][i][j + 1] == here:
                entries.append(step)
                j, used = j + 1, 1
                continue
            if cost[0][i + 1][j + 1] == here:
                entries.append(step)
                i, j, used = i + 1, j + 1, 0
                continue
        skip_cost = 0 if used or lo == 0 else 1
        if cost[0][i + 1][j] + skip_cost == here:
            if skip_cost:
                entries.append(DiffLine(kind="missing", expected=expected[i], expected_index=i))
            i, used = i + 1, 0
            continue
        entries.append(DiffLine(kind="unexpected", actual=actual[j].content, actual_index=j, actual_eol=actual[j].eol))
        j += 1

    return _merge_mismatches(entries)


def select_stream(result: ExecutionResult, output_stream: OutputStream) -> bytes:
    if output_stream == "stderr":
        return result.stderr
    # Combined output is merged into stdout at execution time.
    return result.stdout


def match(
    expected: tuple[OutputLine, ...] | list[OutputLine],
    expected_exit_code: int,
    result: ExecutionResult,
    *,
    fmt: DocumentFormat,
    output_stream: OutputStream = "stdout",
    keep_crlf: bool = False,
) -> Outcome:
    if result.timeout or result.cancelled:
        return Outcome(
            status="incomplete",
            reasons=("timeout",) if result.timeout else ("cancelled",),
            expected_exit_code=expected_exit_code,
            actual_exit_code=result.exit_code,
            result=result,
        )

    actual = split_output(select_stream(result, output_stream), keep_crlf=keep_crlf)
    predicates = [line_predicate(line, fmt) for line in expected]

    reasons: list[str] = []
    diff: tuple[DiffLine, ...] = ()
    if match_lines(expected, actual, predicates) is None:
        reasons.append("output_mismatch")
        diff = tuple(align(expected, actual, predicates))
    if result.exit_code != expected_exit_code:
        reasons.append("exit_code_mismatch")

    message = ""
    if result.truncated:
        message = "output was truncated"
    return Outcome(
        status="fail" if reasons else "pass",
        reasons=tuple(reasons),
        diff=diff,
        expected_exit_code=expected_exit_code,
        actual_exit_code=result.exit_code,
        result=result,
        message=message,
    )


def match_testcase(testcase: TestCase, result: ExecutionResult) -> Outcome:
    return match(
        testcase.expectations,
        testcase.expected_exit_code,
        result,
        fmt=testcase.format,
        output_stream=testcase.config.output_stream,
        keep_crlf=testcase.config.keep_crlf,
    )
