from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from cramdown import cli
from cramdown.settings import Settings


pytestmark = pytest.mark.skipif(shutil.which("bash") is None, reason="bash is not installed")


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CRAMDOWN_CONCURRENCY", "3")
    monkeypatch.setenv("CRAMDOWN_MARKDOWN_LANGUAGES", "scrut, cramdown")
    settings = Settings()
    assert settings.concurrency == 3
    assert settings.languages == ("scrut", "cramdown")

    limits = cli.limits_from_settings(settings)
    assert limits.concurrency == 3
    assert limits.languages == ("scrut", "cramdown")


def test_cli_test_exit_codes(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    good = tmp_path / "good.md"
    good.write_text("```cramdown\n$ echo ok\nok\n```\n", encoding="utf-8")
    bad = tmp_path / "bad.t"
    bad.write_text("  $ echo ok\n  nope\n", encoding="utf-8")

    assert cli.main(["test", str(good)]) == 0
    assert "1 passed" in capsys.readouterr().out

    assert cli.main(["test", "--output", "json", str(good), str(bad)]) == 50
    payload = json.loads(capsys.readouterr().out)
    assert payload["schema_version"] == "report.v1"
    assert [doc["summary"]["failed"] for doc in payload["documents"]] == [0, 1]


def test_cli_parse_error_exit_code(tmp_path: Path):
    broken = tmp_path / "broken.md"
    broken.write_text("```\n$ true\n```\n", encoding="utf-8")
    assert cli.main(["test", str(broken)]) == 1


def test_cli_update_rewrites_failed_documents(tmp_path: Path):
    doc = tmp_path / "doc.t"
    doc.write_text("  $ echo new\n  old\n", encoding="utf-8")
    assert cli.main(["update", str(doc)]) == 50
    assert doc.read_text(encoding="utf-8") == "  $ echo new\n  new\n"
    assert cli.main(["test", str(doc)]) == 0


def test_cli_takes_file_paths_only(tmp_path: Path):
    (tmp_path / "a.md").write_text("```cramdown\n$ true\n```\n", encoding="utf-8")
    assert cli.main(["test", str(tmp_path)]) == 1
    assert cli.main(["test", "--format", "markdown", str(tmp_path)]) == 1
    assert cli.main(["test", str(tmp_path / "a.md")]) == 0
