from __future__ import annotations

# Command execution.
#
# Non-isolated testcases of one document share a single long-lived shell, so
# shell state (variables, functions, working directory) carries over from one
# command to the next. Each command is written to the shell's stdin followed by
# a sentinel that reports its exit status on stdout and marks the end of its
# stderr. Isolated testcases get a fresh `shell -c <command>` process.

import logging
import os
import shlex
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .config import TestCaseWait
from .errors import ExecutionError, SessionError
from .models import ExecutionResult, TestCase
from .process import (
    StreamCapture,
    drain_ready_streams,
    monotonic_ms,
    register_streams,
    setsid_preexec,
    terminate_process_group,
)


logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_LIMIT_BYTES = 1024 * 1024
DEFAULT_GRACE_PERIOD_SECONDS = 1.0
# How long to keep reading after the shell exited while a background child still holds the pipes.
EXIT_DRAIN_SECONDS = 0.5
WAIT_POLL_SECONDS = 0.05


@dataclass
class CommandState:
    timeout: bool = False
    cancelled: bool = False
    exited_at: float | None = None


def _build_env(env: Mapping[str, str]) -> dict[str, str]:
    merged = dict(os.environ)
    merged.update(env)
    return merged


def _build_script(command: str, *, marker: str, env: Mapping[str, str], workdir: str | None, combined: bool) -> bytes:
    # Testcase overrides are undone after the command, unless the command changed them itself.
    setup: list[str] = []
    restore: list[str] = []
    for index, (key, value) in enumerate(env.items()):
        saved = f"__cramdown_env_{index}"
        quoted = shlex.quote(value)
        setup.append(f'if [ -n "${{{key}+set}}" ]; then {saved}=${{{key}}}; {saved}_set=1; else {saved}_set=; fi')
        setup.append(f"export {key}={quoted}")
        restore.append(
            f'if [ "${{{key}-}}" = {quoted} ]; then '
            f'if [ -n "${saved}_set" ]; then {key}=${saved}; else unset {key}; fi; fi'
        )
        restore.append(f"unset {saved} {saved}_set")
    if workdir:
        setup.append("__cramdown_pwd=$PWD")
        setup.append(f"cd -- {shlex.quote(workdir)}")
        setup.append("__cramdown_test_pwd=$PWD")
        restore.append('if [ "$PWD" = "$__cramdown_test_pwd" ]; then cd -- "$__cramdown_pwd" 2>/dev/null || :; fi')
        restore.append("unset __cramdown_pwd __cramdown_test_pwd")

    redirect = " 2>&1" if combined else ""
    lines = [
        *setup,
        f"eval {shlex.quote(command)} < /dev/null{redirect}",
        "__cramdown_rc=$?",
        *restore,
        f"printf '%s:%d\\n' {marker} \"$__cramdown_rc\"",
        f"printf '%s\\n' {marker} >&2",
        "unset __cramdown_rc",
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")


def _check_stop(
    proc: subprocess.Popen[bytes],
    state: CommandState,
    *,
    deadline: float | None,
    cancel_event: threading.Event | None,
    grace_seconds: float,
) -> bool:
    if cancel_event is not None and cancel_event.is_set():
        state.cancelled = True
    elif deadline is not None and time.monotonic() >= deadline:
        state.timeout = True
    else:
        return False
    terminate_process_group(proc, grace_seconds=grace_seconds)
    return True


class ShellSession:
    """A persistent shell shared by the non-isolated testcases of a document."""

    def __init__(
        self,
        shell: str,
        *,
        workdir: Path,
        env: Mapping[str, str] | None = None,
        output_limit_bytes: int = DEFAULT_OUTPUT_LIMIT_BYTES,
        grace_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
    ) -> None:
        self.shell = shell
        self.workdir = Path(workdir)
        self.env = dict(env or {})
        self.output_limit_bytes = output_limit_bytes
        self.grace_seconds = grace_seconds
        self._proc: subprocess.Popen[bytes] | None = None
        self._restarted = False

    def __enter__(self) -> ShellSession:
        self.start()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        if self.alive:
            return
        try:
            self._proc = subprocess.Popen(
                [self.shell],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(self.workdir),
                env=_build_env(self.env),
                preexec_fn=setsid_preexec,
            )
        except OSError as exc:
            raise SessionError(f"shell_start_failed:{self.shell}:{exc}") from exc
        logger.debug("started shell session %s (pid %d) in %s", self.shell, self._proc.pid, self.workdir)

    def close(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None:
            return
        if proc.poll() is None and proc.stdin is not None:
            try:
                proc.stdin.close()
                proc.wait(timeout=self.grace_seconds)
            except (OSError, subprocess.TimeoutExpired):
                pass
        terminate_process_group(proc, grace_seconds=self.grace_seconds)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass

    def restart(self) -> None:
        logger.info("restarting shell session %s", self.shell)
        self.close()
        self.start()
        self._restarted = True

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        workdir: str | None = None,
        combined: bool = False,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        if not self.alive:
            if self._proc is not None:
                self.restart()
            else:
                self.start()
        proc = self._proc
        assert proc is not None and proc.stdin and proc.stdout and proc.stderr

        marker = f"__CRAMDOWN_{uuid.uuid4().hex}__"
        script = _build_script(command, marker=marker, env=env or {}, workdir=workdir, combined=combined)
        captures = {
            "stdout": StreamCapture(limit=self.output_limit_bytes, sentinel=marker.encode("ascii")),
            "stderr": StreamCapture(limit=self.output_limit_bytes, sentinel=marker.encode("ascii")),
        }
        restarted, self._restarted = self._restarted, False

        start = time.monotonic()
        try:
            proc.stdin.write(script)
            proc.stdin.flush()
        except BrokenPipeError as exc:
            raise SessionError(f"shell_write_failed:{self.shell}:{exc}") from exc

        deadline = start + timeout if timeout is not None else None
        state = CommandState()
        sel = register_streams({"stdout": proc.stdout, "stderr": proc.stderr})
        try:
            while not (captures["stdout"].done and captures["stderr"].done):
                if _check_stop(
                    proc,
                    state,
                    deadline=deadline,
                    cancel_event=cancel_event,
                    grace_seconds=self.grace_seconds,
                ):
                    break
                drain_ready_streams(sel, captures)
                if proc.poll() is not None:
                    if state.exited_at is None:
                        state.exited_at = time.monotonic()
                    elif time.monotonic() - state.exited_at > EXIT_DRAIN_SECONDS:
                        break
        finally:
            sel.close()

        duration_ms = monotonic_ms(start)
        stdout = captures["stdout"]
        exit_code: int | None
        if state.timeout or state.cancelled:
            exit_code = None
        elif stdout.found_at is not None:
            exit_code = int(stdout.trailer.lstrip(b":") or b"0")
        else:
            # The command ended the shell itself (``exit 3``); its status is the result.
            exit_code = proc.wait()
            logger.debug("shell session exited with %d", exit_code)

        if state.timeout or state.cancelled or stdout.found_at is None:
            # Session state is lost; the next command runs in a fresh shell.
            self.restart()

        return ExecutionResult(
            stdout=stdout.content(),
            stderr=captures["stderr"].content(),
            exit_code=exit_code,
            duration_ms=duration_ms,
            timeout=state.timeout,
            cancelled=state.cancelled,
            truncated=stdout.truncated or captures["stderr"].truncated,
            session_restarted=restarted,
        )


def run_isolated(
    command: str,
    *,
    shell: str,
    workdir: Path,
    env: Mapping[str, str] | None = None,
    combined: bool = False,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    output_limit_bytes: int = DEFAULT_OUTPUT_LIMIT_BYTES,
    grace_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
) -> ExecutionResult:
    """Run ``command`` in a fresh ``shell -c`` process."""

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            [shell, "-c", command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if combined else subprocess.PIPE,
            cwd=str(workdir),
            env=_build_env(env or {}),
            preexec_fn=setsid_preexec,
        )
    except OSError as exc:
        raise ExecutionError(f"spawn_failed:{shell}:{exc}") from exc
    assert proc.stdout

    streams = {"stdout": proc.stdout}
    if proc.stderr is not None:
        streams["stderr"] = proc.stderr
    captures = {name: StreamCapture(limit=output_limit_bytes) for name in streams}
    deadline = start + timeout if timeout is not None else None
    state = CommandState()
    sel = register_streams(streams)
    try:
        while sel.get_map():
            if _check_stop(
                proc,
                state,
                deadline=deadline,
                cancel_event=cancel_event,
                grace_seconds=grace_seconds,
            ):
                break
            drain_ready_streams(sel, captures)
            if proc.poll() is not None:
                if state.exited_at is None:
                    state.exited_at = time.monotonic()
                elif time.monotonic() - state.exited_at > EXIT_DRAIN_SECONDS:
                    break
    finally:
        sel.close()
        for stream in streams.values():
            stream.close()

    returncode = proc.wait() if not (state.timeout or state.cancelled) else None
    if returncode is not None and returncode < 0:
        # Killed by a signal; report it the way a shell would.
        returncode = 128 - returncode
    stderr = captures.get("stderr")
    return ExecutionResult(
        stdout=captures["stdout"].content(),
        stderr=stderr.content() if stderr is not None else b"",
        exit_code=returncode,
        duration_ms=monotonic_ms(start),
        timeout=state.timeout,
        cancelled=state.cancelled,
        truncated=any(c.truncated for c in captures.values()),
    )


def wait_for_testcase(wait: TestCaseWait, cwd: Path, *, cancel_event: threading.Event | None = None) -> bool:
    """Hold a testcase back as its ``wait`` setting asks.

    Without a path this sleeps for the wait timeout. With one it polls until
    the path (relative to the testcase workdir) exists and raises
    ``ExecutionError`` if it never shows up. Returns False when cancelled.
    """

    deadline = time.monotonic() + wait.timeout
    target = cwd / wait.path if wait.path else None
    while True:
        if target is not None and target.exists():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if target is None:
                return True
            raise ExecutionError(f"wait_timeout:{target}:{wait.timeout:g}s")
        pause = remaining if target is None else min(remaining, WAIT_POLL_SECONDS)
        if cancel_event is not None:
            if cancel_event.wait(pause):
                return False
        else:
            time.sleep(pause)


def execute(
    testcase: TestCase,
    session: ShellSession | None,
    *,
    workdir: Path,
    env: Mapping[str, str] | None = None,
    shell: str | None = None,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    output_limit_bytes: int = DEFAULT_OUTPUT_LIMIT_BYTES,
    grace_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
) -> ExecutionResult:
    """Run one testcase, in ``session`` unless it is isolated (or no session is given)."""

    cfg = testcase.config
    merged_env = dict(env or {})
    merged_env.update(cfg.env)
    combined = cfg.output_stream == "combined"
    effective_timeout = cfg.timeout if timeout is None else timeout

    cwd = Path(workdir)
    if cfg.workdir:
        cwd = cwd / cfg.workdir

    if cfg.wait is not None and not wait_for_testcase(cfg.wait, cwd, cancel_event=cancel_event):
        return ExecutionResult(stdout=b"", stderr=b"", exit_code=None, duration_ms=0, cancelled=True)

    if cfg.isolated or session is None:
        return run_isolated(
            testcase.command,
            shell=shell or cfg.shell,
            workdir=cwd,
            env=merged_env,
            combined=combined,
            timeout=effective_timeout,
            cancel_event=cancel_event,
            output_limit_bytes=output_limit_bytes,
            grace_seconds=grace_seconds,
        )
    return session.run(
        testcase.command,
        env=cfg.env,
        workdir=str(cwd) if cfg.workdir else None,
        combined=combined,
        timeout=effective_timeout,
        cancel_event=cancel_event,
    )
