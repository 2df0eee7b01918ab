from __future__ import annotations

# Document and testcase configuration.
#
# Both layers are validated from YAML mappings found in documents. They are
# merged exactly once per testcase into an immutable EffectiveConfig.

import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


OutputStream = Literal["stdout", "stderr", "combined"]

DEFAULT_SHELL = "bash"
DEFAULT_TOTAL_TIMEOUT_SECONDS = 15 * 60.0
DEFAULT_COMPOSITE_SEPARATOR = " > "

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float | None:
    """Parse ``3m 3s``, ``500ms``, ``1.5`` (seconds) or a number into seconds."""

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        raw = str(value).strip()
        if not raw:
            raise ValueError("empty duration")
        seconds = 0.0
        pos = 0
        while pos < len(raw):
            m = _DURATION_PART.match(raw, pos)
            if m is None or m.end() == pos:
                raise ValueError(f"invalid duration: {raw!r}")
            unit = (m.group(2) or "s").lower()
            seconds += float(m.group(1)) * _DURATION_UNITS[unit]
            pos = m.end()
    if seconds < 0:
        raise ValueError(f"negative duration: {value!r}")
    return seconds


class TestCaseWait(BaseModel):
    """Hold a testcase back until ``path`` exists, or for ``timeout`` when no path is given."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout: float
    path: str | None = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float:
        seconds = parse_duration(value)
        if seconds is None:
            raise ValueError("wait needs a timeout")
        return seconds


class TestCaseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout: float | None = None
    wait: TestCaseWait | None = None
    environment: dict[str, str] | None = None
    output_stream: OutputStream | None = None
    workdir: str | None = None
    isolated: bool | None = None
    keep_crlf: bool | None = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        return parse_duration(value)

    @field_validator("wait", mode="before")
    @classmethod
    def _expand_wait(cls, value: Any) -> Any:
        # A bare duration waits without a path.
        if value is None or isinstance(value, (dict, TestCaseWait)):
            return value
        return {"timeout": value}

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, value: Any) -> dict[str, str] | None:
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValueError("environment must be a mapping")
        out: dict[str, str] = {}
        for key, val in value.items():
            if isinstance(val, bool):
                out[str(key)] = "1" if val else "0"
            else:
                out[str(key)] = "" if val is None else str(val)
        return out


_TESTCASE_KEYS = tuple(TestCaseConfig.model_fields)


class DocumentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    shell: str | None = None
    total_timeout: float | None = None
    composite_test_names: bool = False
    composite_test_name_separator: str = DEFAULT_COMPOSITE_SEPARATOR
    stop_on_failure: bool = False
    workdir: str | None = None
    defaults: TestCaseConfig = TestCaseConfig()

    @model_validator(mode="before")
    @classmethod
    def _fold_testcase_keys(cls, data: Any) -> Any:
        # Testcase keys written at the top level are defaults for every test.
        if not isinstance(data, dict):
            return data
        folded = {k: v for k, v in data.items() if k in _TESTCASE_KEYS and k != "workdir"}
        if not folded:
            return data
        rest = {k: v for k, v in data.items() if k not in folded}
        defaults = rest.get("defaults")
        if defaults is None:
            defaults = {}
        elif not isinstance(defaults, dict):
            raise ValueError("defaults must be a mapping")
        defaults = dict(defaults)
        for key, value in folded.items():
            defaults.setdefault(key, value)
        rest["defaults"] = defaults
        return rest

    @field_validator("total_timeout", mode="before")
    @classmethod
    def _parse_total_timeout(cls, value: Any) -> float | None:
        return parse_duration(value)

    @property
    def effective_shell(self) -> str:
        return self.shell or DEFAULT_SHELL

    @property
    def effective_total_timeout(self) -> float:
        if self.total_timeout is None:
            return DEFAULT_TOTAL_TIMEOUT_SECONDS
        return self.total_timeout


@dataclass(frozen=True)
class EffectiveConfig:
    shell: str = DEFAULT_SHELL
    timeout: float | None = None
    wait: TestCaseWait | None = None
    environment: tuple[tuple[str, str], ...] = ()
    output_stream: OutputStream = "stdout"
    workdir: str | None = None
    isolated: bool = False
    keep_crlf: bool = False

    @property
    def env(self) -> dict[str, str]:
        return dict(self.environment)


FORMAT_DEFAULTS: dict[str, TestCaseConfig] = {
    "markdown": TestCaseConfig(output_stream="stdout"),
    "cram": TestCaseConfig(output_stream="combined"),
}


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def resolve_effective_config(
    *,
    testcase: TestCaseConfig,
    document: DocumentConfig,
    fmt: str,
) -> EffectiveConfig:
    # Per-test value wins, then document defaults, then the format's defaults.
    layers = (testcase, document.defaults, FORMAT_DEFAULTS.get(fmt, TestCaseConfig()))
    builtin = EffectiveConfig()

    environment: dict[str, str] = {}
    for layer in reversed(layers):
        environment.update(layer.environment or {})

    return EffectiveConfig(
        shell=document.effective_shell,
        timeout=_first(*(layer.timeout for layer in layers)),
        wait=_first(*(layer.wait for layer in layers)),
        environment=tuple(environment.items()),
        output_stream=_first(*(layer.output_stream for layer in layers), builtin.output_stream),
        workdir=_first(testcase.workdir, document.defaults.workdir),
        isolated=bool(_first(*(layer.isolated for layer in layers), builtin.isolated)),
        keep_crlf=bool(_first(*(layer.keep_crlf for layer in layers), builtin.keep_crlf)),
    )


def load_testcase_config(data: Any) -> TestCaseConfig:
    if data is None:
        return TestCaseConfig()
    if not isinstance(data, dict):
        raise ValueError("testcase configuration must be a mapping")
    return TestCaseConfig.model_validate(data)


def load_document_config(data: Any) -> DocumentConfig:
    if data is None:
        return DocumentConfig()
    if not isinstance(data, dict):
        raise ValueError("document configuration must be a mapping")
    return DocumentConfig.model_validate(data)
