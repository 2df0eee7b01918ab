from __future__ import annotations

# Low-level subprocess helpers shared by the shell session and isolated runs.
#
# Children always start in their own process group so a timeout can signal
# the command together with everything it spawned.

import logging
import os
import selectors
import signal
import subprocess
import time
from dataclasses import dataclass, field
from typing import IO


logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
SELECT_INTERVAL_SECONDS = 0.05


def setsid_preexec() -> None:
    os.setsid()


def signal_process_group(proc: subprocess.Popen[bytes], signo: int) -> None:
    try:
        os.killpg(proc.pid, signo)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.send_signal(signo)


def terminate_process_group(proc: subprocess.Popen[bytes], *, grace_seconds: float) -> int | None:
    """SIGTERM the group, SIGKILL it after ``grace_seconds``; returns the exit status if reaped."""

    if proc.poll() is None:
        logger.debug("terminating process group %d", proc.pid)
        signal_process_group(proc, signal.SIGTERM)
        try:
            return proc.wait(timeout=max(0.0, grace_seconds))
        except subprocess.TimeoutExpired:
            logger.info("process group %d ignored SIGTERM, killing", proc.pid)
    # The leader may be gone while group members still hold the pipes open.
    signal_process_group(proc, signal.SIGKILL)
    try:
        return proc.wait(timeout=1)
    except subprocess.TimeoutExpired:
        return None


@dataclass
class StreamCapture:
    """Size-capped buffer for one output stream that can look for a sentinel.

    Bytes past ``limit`` are dropped (``truncated`` is set), but a short tail is
    kept so a sentinel written after a flood of output is still detected.
    """

    limit: int
    sentinel: bytes | None = None
    data: bytearray = field(default_factory=bytearray)
    truncated: bool = False
    closed: bool = False
    # Offset of the sentinel in ``data`` once found, and the text following it up to the newline.
    found_at: int | None = None
    trailer: bytes = b""
    _scan_from: int = 0

    @property
    def _keep(self) -> int:
        return len(self.sentinel) + 32 if self.sentinel else 0

    def feed(self, chunk: bytes) -> None:
        if self.found_at is not None:
            return
        self.data.extend(chunk)
        if self.sentinel is not None:
            self._search()
        self._enforce_limit()

    def _search(self) -> None:
        assert self.sentinel is not None
        idx = self.data.find(self.sentinel, self._scan_from)
        if idx < 0:
            self._scan_from = max(0, len(self.data) - len(self.sentinel) + 1)
            return
        newline = self.data.find(b"\n", idx + len(self.sentinel))
        if newline < 0:
            # Wait for the rest of the sentinel line.
            self._scan_from = idx
            return
        self.found_at = idx
        self.trailer = bytes(self.data[idx + len(self.sentinel) : newline])
        del self.data[idx:]

    def _enforce_limit(self) -> None:
        excess_end = len(self.data) - self._keep
        if self.found_at is not None:
            excess_end = len(self.data)
        if excess_end <= self.limit:
            return
        self.truncated = True
        dropped = excess_end - self.limit
        del self.data[self.limit : excess_end]
        if self.found_at is not None:
            self.found_at = min(self.found_at, self.limit)
        self._scan_from = max(self.limit, self._scan_from - dropped)

    @property
    def done(self) -> bool:
        return self.closed or self.found_at is not None

    def content(self) -> bytes:
        if self.found_at is None and len(self.data) > self.limit:
            self.truncated = True
            return bytes(self.data[: self.limit])
        return bytes(self.data)


def register_streams(streams: dict[str, IO[bytes]]) -> selectors.BaseSelector:
    sel = selectors.DefaultSelector()
    for name, stream in streams.items():
        _ = sel.register(stream, selectors.EVENT_READ, data=name)
    return sel


def drain_ready_streams(
    sel: selectors.BaseSelector,
    captures: dict[str, StreamCapture],
    *,
    timeout: float = SELECT_INTERVAL_SECONDS,
) -> None:
    if not sel.get_map():
        time.sleep(timeout)
        return
    for key, _mask in sel.select(timeout=timeout):
        name = key.data
        data = key.fileobj.read1(READ_CHUNK_BYTES)  # type: ignore[attr-defined]
        capture = captures[name]
        if not data:
            capture.closed = True
            sel.unregister(key.fileobj)
            continue
        capture.feed(data)
        if capture.found_at is not None:
            sel.unregister(key.fileobj)


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
