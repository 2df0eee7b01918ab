from __future__ import annotations

from datetime import datetime, timezone

import pytest


def pytest_sessionstart(session: pytest.Session) -> None:
    """Print explicit test lifecycle start status."""

    started_at = datetime.now(tz=timezone.utc).isoformat(timespec="seconds")
    print(f"[cramdown-test] status=running started_at={started_at}", flush=True)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    """Print explicit test lifecycle finish status."""

    finished_at = datetime.now(tz=timezone.utc).isoformat(timespec="seconds")
    result = "ok" if exitstatus == 0 else "failed"
    print(f"[cramdown-test] status=finished result={result} exit_code={exitstatus} finished_at={finished_at}", flush=True)
