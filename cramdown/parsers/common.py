from __future__ import annotations

# Line-level helpers shared by the Markdown and Cram front ends.
#
# Nothing here decides where a testcase starts or ends; that control flow
# belongs to each front end.

import re
from dataclasses import dataclass, field
from typing import Any

import yaml
from pydantic import ValidationError

from .. import escaping
from ..config import DocumentConfig, TestCaseConfig, load_document_config, load_testcase_config
from ..errors import DecodeError, ParseError
from ..models import OutputLine, Quantifier, RuleKind


GAP_MARKER = "..."
MAX_HEADING_LEVEL = 6

_EXIT_CODE_LINE = re.compile(r"^\[(\d+)\]$")
_RULE_SUFFIX = re.compile(r"^(?P<body>.*) \((?P<marker>[^()]*)\)$")
_RULE_TOKEN = re.compile(r"^(?P<kind>equal|eq|escaped|esc|glob|gl|regex|re)(?P<suffix>[^a-z0-9\s-]*)$")
_HEADER_LINE = re.compile(r"^(#{1,6})\s+(.+)$")
_PARAGRAPH_START = re.compile(r"^[^\W\d_]+")

KIND_ALIASES: dict[str, RuleKind] = {
    "equal": "equal",
    "eq": "equal",
    "escaped": "escaped",
    "esc": "escaped",
    "glob": "glob",
    "gl": "glob",
    "regex": "regex",
    "re": "regex",
}
QUANTIFIER_SUFFIXES: dict[str, Quantifier] = {
    "": "one",
    "?": "optional",
    "+": "one_or_more",
    "*": "zero_or_more",
}
NO_EOL = "no-eol"


def split_document_lines(text: str) -> tuple[list[str], bool]:
    """Split on ``\\n`` only; a trailing ``\\r`` (CRLF documents) is dropped per line."""

    if not text:
        return [], False
    trailing_newline = text.endswith("\n")
    raw = text.split("\n")
    if trailing_newline:
        raw.pop()
    return [line[:-1] if line.endswith("\r") else line for line in raw], trailing_newline


def is_command_line(line: str) -> bool:
    return line == "$" or line.startswith("$ ")


def is_continuation_line(line: str) -> bool:
    return line == ">" or line.startswith("> ")


def strip_prompt(line: str) -> str:
    return line[2:] if len(line) > 1 else ""


def load_yaml_mapping(raw: str, *, line: int, what: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ParseError(f"invalid {what}: {exc}", line=line) from exc


def parse_document_config(raw: str, *, line: int) -> DocumentConfig:
    data = load_yaml_mapping(raw, line=line, what="document configuration")
    try:
        return load_document_config(data)
    except (ValidationError, ValueError) as exc:
        raise ParseError(f"invalid document configuration: {exc}", line=line) from exc


def parse_testcase_config(raw: str, *, line: int) -> TestCaseConfig:
    raw = raw.strip()
    if not raw:
        return TestCaseConfig()
    if not raw.startswith("{"):
        raw = "{" + raw + "}"
    data = load_yaml_mapping(raw, line=line, what="testcase configuration")
    try:
        return load_testcase_config(data)
    except (ValidationError, ValueError) as exc:
        raise ParseError(f"invalid testcase configuration: {exc}", line=line) from exc


def find_front_matter_end(lines: list[str], start: int) -> int:
    for index in range(start + 1, len(lines)):
        if lines[index] == "---":
            return index
    raise ParseError("unterminated document configuration block", line=start + 1)


def _parse_marker(marker: str, *, line: int) -> tuple[RuleKind, Quantifier, bool] | None:
    tokens = [t.strip() for t in marker.split(",")]
    if tokens == [NO_EOL]:
        return "equal", "one", True

    m = _RULE_TOKEN.match(tokens[0])
    if m is None:
        # Not a rule marker; the parenthetical is literal output.
        return None

    quantifier = QUANTIFIER_SUFFIXES.get(m.group("suffix"))
    if quantifier is None:
        raise ParseError(f"unknown rule marker ({marker})", line=line)
    modifiers = tokens[1:]
    if any(mod != NO_EOL for mod in modifiers) or len(modifiers) > 1:
        raise ParseError(f"unknown rule marker ({marker})", line=line)
    return KIND_ALIASES[m.group("kind")], quantifier, bool(modifiers)


def _validate_rule(text: str, kind: RuleKind, *, fmt: str, line: int) -> None:
    if kind == "regex":
        try:
            re.compile(text)
        except re.error as exc:
            raise ParseError(f"invalid regular expression {text!r}: {exc}", line=line) from exc
    elif kind == "escaped":
        try:
            escaping.decode(text, fmt)
        except DecodeError as exc:
            raise ParseError(f"invalid escaped line: {exc}", line=line) from exc


def is_exit_code_line(text: str) -> bool:
    return _EXIT_CODE_LINE.match(text) is not None


def has_rule_marker(text: str) -> bool:
    """True when a trailing parenthetical of ``text`` would be read as a rule marker."""

    m = _RULE_SUFFIX.match(text)
    if m is None:
        return False
    try:
        return _parse_marker(m.group("marker"), line=0) is not None
    except ParseError:
        return True


def parse_output_line(text: str, *, line: int, fmt: str) -> OutputLine:
    if text == GAP_MARKER:
        return OutputLine(
            text="*",
            kind="glob",
            quantifier="zero_or_more",
            gap=True,
            line_number=line,
            source=text,
        )

    kind: RuleKind = "equal"
    quantifier: Quantifier = "one"
    no_eol = False
    body = text
    m = _RULE_SUFFIX.match(text)
    if m is not None:
        parsed = _parse_marker(m.group("marker"), line=line)
        if parsed is not None:
            kind, quantifier, no_eol = parsed
            body = m.group("body")

    _validate_rule(body, kind, fmt=fmt, line=line)
    return OutputLine(
        text=body,
        kind=kind,
        quantifier=quantifier,
        no_eol=no_eol,
        line_number=line,
        source=text,
    )


def parse_expectations(
    lines: list[tuple[int, str]],
    *,
    fmt: str,
) -> tuple[tuple[OutputLine, ...], int | None]:
    """Decode expectation lines; ``lines`` holds (1-based line number, text)."""

    expectations: list[OutputLine] = []
    exit_code: int | None = None
    for position, (line_no, text) in enumerate(lines):
        m = _EXIT_CODE_LINE.match(text)
        if m is not None:
            if position != len(lines) - 1:
                raise ParseError("exit code line must be the last line of a testcase", line=line_no)
            exit_code = int(m.group(1))
            continue
        expectations.append(parse_output_line(text, line=line_no, fmt=fmt))
    return tuple(expectations), exit_code


def extract_title(line: str) -> tuple[str, int] | None:
    """Return (title, heading level) for headings, (text, 0) for paragraphs."""

    line = line.strip()
    m = _HEADER_LINE.match(line)
    if m is not None:
        return m.group(2).strip(), len(m.group(1))
    if _PARAGRAPH_START.match(line):
        return line, 0
    return None


@dataclass
class TitleStack:
    """Tracks headings and the paragraph nearest above the next testcase."""

    headings: list[str | None] = field(default_factory=lambda: [None] * MAX_HEADING_LEVEL)
    paragraph: list[str] = field(default_factory=list)

    def set_heading(self, level: int, title: str) -> None:
        if level < 1 or level > MAX_HEADING_LEVEL:
            return
        self.headings[level - 1] = title
        for deeper in range(level, MAX_HEADING_LEVEL):
            self.headings[deeper] = None
        self.paragraph.clear()

    def add_paragraph(self, text: str) -> None:
        self.paragraph.append(text)

    def clear_paragraph(self) -> None:
        self.paragraph.clear()

    def build_title(self, *, composite: bool, separator: str) -> str:
        parts = [h for h in self.headings if h is not None]
        if composite:
            if self.paragraph:
                paragraph = "\n".join(self.paragraph)
                return separator.join([*parts, paragraph]) if parts else paragraph
            return separator.join(parts)
        if self.paragraph:
            return "\n".join(self.paragraph)
        return parts[-1] if parts else ""


@dataclass
class TitleTracker:
    """Feeds non-test lines into a TitleStack and remembers the last title."""

    config: DocumentConfig
    stack: TitleStack = field(default_factory=TitleStack)
    title: str = ""
    _since_break: bool = False

    def feed(self, line: str) -> None:
        extracted = extract_title(line)
        if extracted is None:
            # A non-title line ends the paragraph; the last title persists.
            if self._since_break:
                self.stack.clear_paragraph()
                self._since_break = False
            return
        text, level = extracted
        if level > 0:
            self.stack.set_heading(level, text)
        else:
            self.stack.add_paragraph(text)
        self._since_break = True
        self.title = self.stack.build_title(
            composite=self.config.composite_test_names,
            separator=self.config.composite_test_name_separator,
        )

    def end_testcase(self) -> None:
        self.stack.clear_paragraph()
        self._since_break = False
