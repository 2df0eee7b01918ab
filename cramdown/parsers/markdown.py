from __future__ import annotations

# Markdown front end.
#
# Testcases are fenced code blocks tagged with a test language:
#
#     A title
#
#     ```cramdown {timeout: 3s}
#     # comments before the command are ignored
#     $ echo hello
#     hello
#     ```
#
# An optional `---` YAML block at the top of the document holds the document
# configuration.

import logging
import re
from pathlib import Path

from ..config import DocumentConfig, resolve_effective_config
from ..errors import ParseError
from ..models import Document, TestCase
from .common import (
    TitleTracker,
    find_front_matter_end,
    is_command_line,
    is_continuation_line,
    parse_document_config,
    parse_expectations,
    parse_testcase_config,
    split_document_lines,
    strip_prompt,
)


logger = logging.getLogger(__name__)

DEFAULT_MARKDOWN_LANGUAGES: tuple[str, ...] = ("cramdown",)

_FENCE_START = re.compile(r"^(?P<ticks>`{3,})(?P<rest>[^`]*)$")


def extract_code_block_start(line: str) -> tuple[str, str, str] | None:
    """Return (backticks, language, raw config) for an opening fence line."""

    m = _FENCE_START.match(line)
    if m is None:
        return None
    rest = m.group("rest")
    brace = rest.find("{")
    if brace >= 0:
        return m.group("ticks"), rest[:brace].strip(), rest[brace:].strip()
    return m.group("ticks"), rest.strip(), ""


def _find_fence_end(lines: list[str], start: int, ticks: str) -> int:
    for index in range(start + 1, len(lines)):
        if lines[index].startswith(ticks):
            return index
    raise ParseError("unterminated code block", line=start + 1)


def _testcase_from_block(
    *,
    lines: list[str],
    start: int,
    end: int,
    raw_config: str,
    config: DocumentConfig,
    title: str,
) -> TestCase:
    # lines[start] is the opening fence, lines[end] the closing one.
    testcase_config = parse_testcase_config(raw_config, line=start + 1)

    pos = start + 1
    while pos < end and lines[pos].startswith("#"):
        pos += 1
    if pos >= end or not is_command_line(lines[pos]):
        raise ParseError("test code block must start with a `$ ` command line", line=min(pos, end) + 1)

    command_line = pos + 1
    command = [strip_prompt(lines[pos])]
    pos += 1
    while pos < end and is_continuation_line(lines[pos]):
        command.append(strip_prompt(lines[pos]))
        pos += 1

    expectations, exit_code = parse_expectations(
        [(index + 1, lines[index]) for index in range(pos, end)],
        fmt="markdown",
    )
    return TestCase(
        title=title,
        command="\n".join(command),
        expectations=expectations,
        exit_code=exit_code,
        config=resolve_effective_config(testcase=testcase_config, document=config, fmt="markdown"),
        format="markdown",
        line_number=command_line,
        expectation_span=(pos, end),
    )


def parse_markdown(
    text: str,
    *,
    path: Path | None = None,
    languages: tuple[str, ...] = DEFAULT_MARKDOWN_LANGUAGES,
) -> Document:
    logger.debug("parsing markdown document, test languages: %s", ", ".join(languages))

    lines, trailing_newline = split_document_lines(text)
    config = DocumentConfig()
    titles = TitleTracker(config=config)
    testcases: list[TestCase] = []
    content_started = False

    index = 0
    while index < len(lines):
        line = lines[index]

        if not content_started and line == "---":
            end = find_front_matter_end(lines, index)
            config = parse_document_config("\n".join(lines[index + 1 : end]), line=index + 1)
            titles.config = config
            content_started = True
            index = end + 1
            continue

        fence = extract_code_block_start(line)
        if fence is not None:
            content_started = True
            ticks, language, raw_config = fence
            end = _find_fence_end(lines, index, ticks)
            if language in languages:
                testcases.append(
                    _testcase_from_block(
                        lines=lines,
                        start=index,
                        end=end,
                        raw_config=raw_config,
                        config=config,
                        title=titles.title,
                    )
                )
                titles.end_testcase()
            elif not language:
                raise ParseError(
                    "code block is missing a language; use ```"
                    + languages[0]
                    + " for a test or any other language to skip the block",
                    line=index + 1,
                )
            index = end + 1
            continue

        if line.strip():
            content_started = True
        titles.feed(line)
        index += 1

    logger.debug("found %d testcases in markdown document", len(testcases))
    return Document(
        format="markdown",
        config=config,
        testcases=tuple(testcases),
        source_lines=tuple(lines),
        trailing_newline=trailing_newline,
        path=path,
    )
