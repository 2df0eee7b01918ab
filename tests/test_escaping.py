from __future__ import annotations

import random

import pytest

from cramdown import escaping
from cramdown.errors import DecodeError


def test_encode_markdown_keeps_printable_unicode():
    assert escaping.encode("héllo wörld".encode("utf-8"), "markdown") == "héllo wörld"


def test_encode_markdown_named_and_hex_escapes():
    assert escaping.encode(b"a\tb\\c\r\n", "markdown") == "a\\tb\\\\c\\r\\n"
    assert escaping.encode(b"\xff\x00\xc3\xbc", "markdown") == "\\xff\\x00ü"
    assert escaping.encode(b"\x1b[1mbold\x1b[0m", "markdown") == "\\x1b[1mbold\\x1b[0m"


def test_encode_cram_escapes_non_ascii_per_byte():
    assert escaping.encode("ü".encode("utf-8"), "cram") == "\\xc3\\xbc"
    assert escaping.encode(b"tab\there\x7f", "cram") == "tab\\there\\x7f"


@pytest.mark.parametrize("fmt", ["markdown", "cram"])
def test_round_trip_all_bytes(fmt: str):
    data = bytes(range(256)) + "snowman ☃".encode("utf-8") + b"\xe2\x98"
    assert escaping.decode(escaping.encode(data, fmt), fmt) == data


@pytest.mark.parametrize("fmt", ["markdown", "cram"])
def test_round_trip_random_bytes(fmt: str):
    rng = random.Random(20240611)
    for _ in range(500):
        data = bytes(rng.randrange(256) for _ in range(rng.randrange(64)))
        assert escaping.decode(escaping.encode(data, fmt), fmt) == data

    # Mostly text with partial multi-byte sequences and escape characters mixed in.
    pieces = [b"a", b" ", b"\\", b"\\x", b"\t", b"\r", b"\n", "ü".encode("utf-8"), "☃".encode("utf-8"), b"\xe2", b"\x80", b"\x1b"]
    for _ in range(500):
        data = b"".join(rng.choice(pieces) for _ in range(rng.randrange(32)))
        assert escaping.decode(escaping.encode(data, fmt), fmt) == data


@pytest.mark.parametrize("fmt", ["markdown", "cram"])
@pytest.mark.parametrize(
    "data",
    [
        b"\xff" * 4096,
        b"\xc3" * 1000 + b"\xa9",
        b"\xe2\x98" * 500,
        b"\xf0\x9f\x98" + b"\x80" * 300,
        b"\\",
        b"\\x41",
        b"trailing\\",
        b"\\leading",
        b"\r",
        b"\rstart",
        b"end\r",
        b"\r\n\\\r",
        b"",
    ],
)
def test_round_trip_edge_cases(data: bytes, fmt: str):
    assert escaping.decode(escaping.encode(data, fmt), fmt) == data


@pytest.mark.parametrize(
    "text",
    ["dangling\\", "bad \\q escape", "short \\x4", "not hex \\xzz"],
)
def test_decode_rejects_malformed_escapes(text: str):
    with pytest.raises(DecodeError):
        escaping.decode(text, "markdown")


def test_decode_cram_rejects_non_ascii():
    with pytest.raises(DecodeError):
        escaping.decode("grüße", "cram")
    assert escaping.decode("grüße", "markdown") == "grüße".encode("utf-8")


def test_needs_escaping():
    assert not escaping.needs_escaping(b"plain text", "markdown")
    assert not escaping.needs_escaping(b"tab\tseparated", "cram")
    assert escaping.needs_escaping(b"\x1b[0m", "markdown")
    assert escaping.needs_escaping(b"\xff", "markdown")
    assert not escaping.needs_escaping("ü".encode("utf-8"), "markdown")
    assert escaping.needs_escaping("ü".encode("utf-8"), "cram")


def test_unknown_format():
    with pytest.raises(ValueError):
        escaping.encode(b"x", "rst")
