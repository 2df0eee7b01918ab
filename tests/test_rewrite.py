from __future__ import annotations

import pytest

from cramdown.matching import ActualLine, line_predicate, match_testcase
from cramdown.models import ExecutionResult
from cramdown.parsers.common import parse_output_line
from cramdown.parsing import parse
from cramdown.rewrite import render_actual_line, rewrite_for_update


def _result(stdout: bytes, exit_code: int = 0) -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr=b"", exit_code=exit_code, duration_ms=1)


def _outcomes(document, outputs):
    return [(tc, match_testcase(tc, result)) for tc, result in zip(document.testcases, outputs)]


@pytest.mark.parametrize(
    ("content", "eol", "fmt", "rendered"),
    [
        (b"plain", True, "markdown", "plain"),
        (b"plain", False, "markdown", "plain (no-eol)"),
        (b"...", True, "markdown", "... (equal)"),
        (b"[2]", True, "markdown", "[2] (equal)"),
        (b"x (glob)", True, "markdown", "x (glob) (equal)"),
        (b"x (not a rule)", True, "markdown", "x (not a rule)"),
        (b"\x1b[0m", True, "markdown", "\\x1b[0m (escaped)"),
        (b"\x1b[0m", False, "markdown", "\\x1b[0m (escaped, no-eol)"),
        (b"$ not a command", True, "markdown", "\\x24 not a command (escaped)"),
        (b"```", True, "markdown", "\\x60`` (escaped)"),
        (b"#! not config", True, "cram", "\\x23! not config (escaped)"),
        ("ü".encode("utf-8"), True, "cram", "\\xc3\\xbc (escaped)"),
        ("ü".encode("utf-8"), True, "markdown", "ü"),
    ],
)
def test_render_actual_line(content: bytes, eol: bool, fmt: str, rendered: str):
    assert render_actual_line(content, eol, fmt) == rendered  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("content", "eol", "fmt"),
    [
        (b"...", True, "markdown"),
        (b"x (re+)", True, "markdown"),
        (b"\x00\xff tail", False, "markdown"),
        (b"> quoted", True, "cram"),
        (b"tab\there", True, "cram"),
    ],
)
def test_rendered_lines_parse_back(content: bytes, eol: bool, fmt: str):
    expected = parse_output_line(render_actual_line(content, eol, fmt), line=1, fmt=fmt)  # type: ignore[arg-type]
    assert line_predicate(expected, fmt)(ActualLine(content, eol))  # type: ignore[arg-type]


def test_rewrite_markdown_keeps_patterns_and_passing_tests():
    text = "\n".join(
        [
            "# Doc",
            "",
            "```cramdown",
            "$ seq 3",
            "1",
            "* (glob)",
            "9",
            "```",
            "",
            "```cramdown",
            "$ echo fine",
            "fine",
            "```",
            "",
        ]
    )
    document = parse(text, "markdown")
    outcomes = _outcomes(document, [_result(b"1\n2\n3\n"), _result(b"fine\n")])
    assert [outcome.status for _tc, outcome in outcomes] == ["fail", "pass"]

    rewritten = rewrite_for_update(document, outcomes)
    assert rewritten == text.replace("1\n* (glob)\n9\n", "1\n* (glob)\n3\n")


def test_rewrite_writes_exit_code_and_keeps_trailing_newline_state():
    text = "  $ false\n  nothing"
    document = parse(text, "cram")
    outcomes = _outcomes(document, [_result(b"", exit_code=1)])
    assert rewrite_for_update(document, outcomes) == "  $ false\n  [1]"


def test_rewrite_exit_code_only_keeps_expectations():
    text = "```cramdown\n$ cmd\nout* (glob)\n[2]\n```\n"
    document = parse(text, "markdown")
    outcomes = _outcomes(document, [_result(b"output\n", exit_code=5)])
    assert outcomes[0][1].reasons == ("exit_code_mismatch",)
    assert rewrite_for_update(document, outcomes) == "```cramdown\n$ cmd\nout* (glob)\n[5]\n```\n"


def test_rewritten_document_passes():
    text = "Title\n  $ printf 'a\\n\\x01\\nend'\n  a\n"
    document = parse(text, "cram")
    output = b"a\n\x01\nend"
    rewritten = rewrite_for_update(document, _outcomes(document, [_result(output)]))
    assert rewritten == "Title\n  $ printf 'a\\n\\x01\\nend'\n  a\n  \\x01 (escaped)\n  end (no-eol)\n"

    again = parse(rewritten, "cram")
    assert match_testcase(again.testcases[0], _result(output)).passed


def test_rewrite_keeps_rules_that_matched_nothing():
    text = "  $ printf 'start\\nEND\\n'\n  start\n  noise* (glob*)\n  end\n"
    document = parse(text, "cram")
    rewritten = rewrite_for_update(document, _outcomes(document, [_result(b"start\nEND\n")]))
    assert rewritten == "  $ printf 'start\\nEND\\n'\n  start\n  noise* (glob*)\n  END\n"
    assert match_testcase(parse(rewritten, "cram").testcases[0], _result(b"start\nEND\n")).passed


def test_rewrite_keeps_trailing_optional_rule():
    text = "```cramdown\n$ cmd\nfirst\nmaybe (regex?)\n```\n"
    document = parse(text, "markdown")
    rewritten = rewrite_for_update(document, _outcomes(document, [_result(b"other\n")]))
    assert rewritten == "```cramdown\n$ cmd\nother\nmaybe (regex?)\n```\n"
