from __future__ import annotations

import pytest

from cramdown.errors import InvariantViolation
from cramdown.matching import ActualLine, align, line_predicate, match, match_lines, split_output
from cramdown.models import ExecutionResult, OutputLine
from cramdown.parsers.common import parse_output_line


def _expect(*lines: str, fmt: str = "markdown") -> list[OutputLine]:
    return [parse_output_line(line, line=i + 1, fmt=fmt) for i, line in enumerate(lines)]


def _result(stdout: bytes, *, exit_code: int | None = 0, stderr: bytes = b"", timeout: bool = False) -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code, duration_ms=1, timeout=timeout)


def _check(expected: list[OutputLine], stdout: bytes, **kwargs: object):
    return match(expected, 0, _result(stdout), fmt="markdown", **kwargs)  # type: ignore[arg-type]


def test_split_output_tracks_final_newline():
    assert split_output(b"") == []
    assert split_output(b"a\nb") == [ActualLine(b"a", True), ActualLine(b"b", False)]
    assert split_output(b"a\r\n") == [ActualLine(b"a", True)]
    assert split_output(b"a\r\n", keep_crlf=True) == [ActualLine(b"a\r", True)]
    assert split_output(b"\n\n") == [ActualLine(b"", True), ActualLine(b"", True)]


def test_glob_is_anchored_to_one_line():
    (glob,) = _expect("foo*bar (glob)")
    predicate = line_predicate(glob, "markdown")
    assert predicate(ActualLine(b"foobazbar"))
    assert predicate(ActualLine(b"foobar"))
    assert not predicate(ActualLine(b"xfoobar"))
    assert not _check([glob], b"foo\nbar\n").passed


def test_glob_escapes_and_question_mark():
    (glob,) = _expect(r"a\*b? (glob)")
    predicate = line_predicate(glob, "markdown")
    assert predicate(ActualLine(b"a*bc"))
    assert not predicate(ActualLine(b"axbc"))
    assert not predicate(ActualLine(b"a*b"))


def test_regex_full_match():
    (regex,) = _expect(r"\d+ items (regex)")
    predicate = line_predicate(regex, "markdown")
    assert predicate(ActualLine(b"12 items"))
    assert not predicate(ActualLine(b"12 items!"))


def test_equal_and_escaped_check_eol():
    plain, no_eol, escaped = _expect("hi", "hi (no-eol)", r"\x1b[0m (escaped)")
    assert line_predicate(plain, "markdown")(ActualLine(b"hi", True))
    assert not line_predicate(plain, "markdown")(ActualLine(b"hi", False))
    assert line_predicate(no_eol, "markdown")(ActualLine(b"hi", False))
    assert line_predicate(escaped, "markdown")(ActualLine(b"\x1b[0m", True))


def test_glob_ignores_eol_unless_asked():
    glob, glob_no_eol = _expect("h* (glob)", "h* (glob, no-eol)")
    assert line_predicate(glob, "markdown")(ActualLine(b"hi", False))
    assert not line_predicate(glob_no_eol, "markdown")(ActualLine(b"hi", True))


def test_unknown_rule_kind_is_an_engine_bug():
    bogus = OutputLine(text="x", kind="fuzzy")  # type: ignore[arg-type]
    with pytest.raises(InvariantViolation):
        line_predicate(bogus, "markdown")


def test_equal_pass_and_single_line_diff():
    assert _check(_expect("hi"), b"hi\n").passed

    outcome = _check(_expect("hii"), b"hi\n")
    assert outcome.failed
    assert outcome.reasons == ("output_mismatch",)
    assert len(outcome.diff) == 1
    entry = outcome.diff[0]
    assert entry.kind == "mismatch"
    assert entry.position == 0
    assert entry.expected is not None and entry.expected.text == "hii"
    assert entry.actual == b"hi"


def test_multiline_glob_then_equal():
    outcome = _check(_expect("a* (glob+)", "done"), b"aX\naY\ndone\n")
    assert outcome.passed


def test_greedy_rule_gives_lines_back():
    # The glob also matches "a-last", which the following line needs.
    expected = _expect("a* (glob+)", "a-last")
    actual = split_output(b"a1\na2\na-last\n")
    predicates = [line_predicate(line, "markdown") for line in expected]
    assert match_lines(expected, actual, predicates) == [2, 1]


def test_backtracking_releases_most_recent_line_first():
    # The trailing "end" is released by the first rule; the second rule is left empty.
    expected = _expect("* (glob+)", "x* (glob*)", "end")
    actual = split_output(b"a\nx1\nx2\nend\n")
    predicates = [line_predicate(line, "markdown") for line in expected]
    assert match_lines(expected, actual, predicates) == [3, 0, 1]


def test_quantifiers():
    assert _check(_expect("maybe (equal?)", "done"), b"done\n").passed
    assert _check(_expect("maybe (equal?)", "done"), b"maybe\ndone\n").passed
    assert not _check(_expect("y (equal+)"), b"").passed
    assert _check(_expect("y (equal*)"), b"").passed
    assert _check(_expect("y (eq+)"), b"y\ny\ny\n").passed


def test_gap_marker_skips_lines():
    assert _check(_expect("start", "...", "end"), b"start\nnoise\nmore noise\nend\n").passed
    assert _check(_expect("start", "...", "end"), b"start\nend\n").passed
    assert not _check(_expect("start", "...", "end"), b"start\nnoise\n").passed


def test_extra_actual_lines_fail():
    outcome = _check(_expect("a"), b"a\nb\n")
    assert outcome.failed
    assert [entry.kind for entry in outcome.diff] == ["match", "unexpected"]


def test_missing_expected_lines_fail():
    outcome = _check(_expect("a", "b"), b"a\n")
    assert [entry.kind for entry in outcome.diff] == ["match", "missing"]


def test_exit_code_mismatch_is_its_own_reason():
    outcome = match([], 0, _result(b"", exit_code=3), fmt="markdown")
    assert outcome.failed
    assert outcome.reasons == ("exit_code_mismatch",)
    assert outcome.diff == ()
    assert match([], 3, _result(b"", exit_code=3), fmt="markdown").passed


def test_timeout_is_incomplete_without_matching():
    outcome = match(_expect("never"), 0, _result(b"partial\n", exit_code=None, timeout=True), fmt="markdown")
    assert outcome.incomplete
    assert outcome.reasons == ("timeout",)
    assert outcome.diff == ()


def test_output_stream_selection():
    result = _result(b"out\n", stderr=b"err\n")
    assert match(_expect("err"), 0, result, fmt="markdown", output_stream="stderr").passed
    assert match(_expect("out"), 0, result, fmt="markdown", output_stream="stdout").passed


def test_align_uses_quantifiers():
    expected = _expect("a* (glob+)", "end")
    actual = split_output(b"a1\na2\nb\nend\n")
    predicates = [line_predicate(line, "markdown") for line in expected]
    kinds = [entry.kind for entry in align(expected, actual, predicates)]
    assert kinds == ["match", "match", "unexpected", "match"]
