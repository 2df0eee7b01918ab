from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .config import DocumentConfig, EffectiveConfig


RuleKind = Literal["equal", "glob", "regex", "escaped"]
Quantifier = Literal["one", "optional", "one_or_more", "zero_or_more"]
DocumentFormat = Literal["markdown", "cram"]
OutcomeStatus = Literal["pass", "fail", "incomplete"]
DiffKind = Literal["match", "missing", "unexpected", "mismatch"]

RULE_KINDS: tuple[RuleKind, ...] = ("equal", "glob", "regex", "escaped")

# (min, max) consumed lines; None means unbounded.
QUANTIFIER_BOUNDS: dict[Quantifier, tuple[int, int | None]] = {
    "one": (1, 1),
    "optional": (0, 1),
    "one_or_more": (1, None),
    "zero_or_more": (0, None),
}


@dataclass(frozen=True)
class OutputLine:
    text: str
    kind: RuleKind = "equal"
    quantifier: Quantifier = "one"
    no_eol: bool = False
    gap: bool = False
    line_number: int = 0
    # The line as authored (without Cram indentation), used when rewriting.
    source: str = ""

    @property
    def bounds(self) -> tuple[int, int | None]:
        return QUANTIFIER_BOUNDS[self.quantifier]


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    title: str
    command: str
    expectations: tuple[OutputLine, ...]
    exit_code: int | None
    config: EffectiveConfig
    format: DocumentFormat
    line_number: int
    # Half-open 0-based range of source lines holding expectations + exit code line.
    expectation_span: tuple[int, int] = (0, 0)

    @property
    def expected_exit_code(self) -> int:
        return 0 if self.exit_code is None else self.exit_code


@dataclass(frozen=True)
class Document:
    format: DocumentFormat
    config: DocumentConfig
    testcases: tuple[TestCase, ...]
    source_lines: tuple[str, ...] = ()
    trailing_newline: bool = True
    path: Path | None = None

    @property
    def display_name(self) -> str:
        return str(self.path) if self.path is not None else "<document>"


@dataclass(frozen=True)
class ExecutionResult:
    stdout: bytes
    stderr: bytes
    exit_code: int | None
    duration_ms: int
    timeout: bool = False
    cancelled: bool = False
    truncated: bool = False
    session_restarted: bool = False


@dataclass(frozen=True)
class DiffLine:
    kind: DiffKind
    expected: OutputLine | None = None
    actual: bytes | None = None
    expected_index: int | None = None
    actual_index: int | None = None
    actual_eol: bool = True

    @property
    def position(self) -> int:
        if self.actual_index is not None:
            return self.actual_index
        return self.expected_index if self.expected_index is not None else 0


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    reasons: tuple[str, ...] = ()
    diff: tuple[DiffLine, ...] = ()
    expected_exit_code: int = 0
    actual_exit_code: int | None = None
    result: ExecutionResult | None = None
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status == "pass"

    @property
    def failed(self) -> bool:
        return self.status == "fail"

    @property
    def incomplete(self) -> bool:
        return self.status == "incomplete"


@dataclass(frozen=True)
class DocumentReport:
    document: Document | None
    outcomes: tuple[tuple[TestCase, Outcome], ...] = field(default_factory=tuple)
    parse_error: str | None = None
    path: str | None = None

    @property
    def name(self) -> str:
        if self.document is not None:
            return self.document.display_name
        return self.path or "<document>"
