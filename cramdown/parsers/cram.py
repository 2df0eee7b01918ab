from __future__ import annotations

# Cram front end.
#
# Testcase lines are indented by two spaces; everything else is prose:
#
#     A title
#       #! {timeout: 3s}
#       $ cat <<EOF
#       > hello world
#       > EOF
#       hello world

import logging
from pathlib import Path

from ..config import DocumentConfig, TestCaseConfig, resolve_effective_config
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

INDENT = "  "
CONFIG_PREFIX = "#!"


def _is_test_line(line: str) -> bool:
    return line.startswith(INDENT)


def _is_block_boundary(content: str) -> bool:
    return is_command_line(content) or content.startswith(CONFIG_PREFIX)


def parse_cram(text: str, *, path: Path | None = None) -> Document:
    lines, trailing_newline = split_document_lines(text)
    config = DocumentConfig()
    titles = TitleTracker(config=config)
    testcases: list[TestCase] = []
    pending_config: tuple[int, TestCaseConfig] | None = None
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

        if not _is_test_line(line):
            if pending_config is not None:
                raise ParseError("testcase configuration must directly precede a command", line=pending_config[0])
            if line.strip():
                content_started = True
            titles.feed(line)
            index += 1
            continue

        content_started = True
        content = line[len(INDENT) :]

        if content.startswith(CONFIG_PREFIX):
            if pending_config is not None:
                raise ParseError("testcase configuration must directly precede a command", line=pending_config[0])
            pending_config = (index + 1, parse_testcase_config(content[len(CONFIG_PREFIX) :], line=index + 1))
            index += 1
            continue

        if not is_command_line(content):
            raise ParseError("expected output without a preceding `$ ` command", line=index + 1)

        command_line = index + 1
        command = [strip_prompt(content)]
        index += 1
        while index < len(lines) and _is_test_line(lines[index]) and is_continuation_line(lines[index][len(INDENT) :]):
            command.append(strip_prompt(lines[index][len(INDENT) :]))
            index += 1

        span_start = index
        output: list[tuple[int, str]] = []
        while index < len(lines) and _is_test_line(lines[index]) and not _is_block_boundary(lines[index][len(INDENT) :]):
            output.append((index + 1, lines[index][len(INDENT) :]))
            index += 1

        expectations, exit_code = parse_expectations(output, fmt="cram")
        testcase_config = pending_config[1] if pending_config is not None else TestCaseConfig()
        pending_config = None
        testcases.append(
            TestCase(
                title=titles.title,
                command="\n".join(command),
                expectations=expectations,
                exit_code=exit_code,
                config=resolve_effective_config(testcase=testcase_config, document=config, fmt="cram"),
                format="cram",
                line_number=command_line,
                expectation_span=(span_start, index),
            )
        )
        titles.end_testcase()

    if pending_config is not None:
        raise ParseError("testcase configuration must directly precede a command", line=pending_config[0])

    logger.debug("found %d testcases in cram document", len(testcases))
    return Document(
        format="cram",
        config=config,
        testcases=tuple(testcases),
        source_lines=tuple(lines),
        trailing_newline=trailing_newline,
        path=path,
    )
