from __future__ import annotations

# Lossless byte <-> text codecs for expected-output lines.
#
# Two notations exist, one per document format:
#
# - `markdown`: printable Unicode is kept as-is; control characters and bytes
#   that are not valid UTF-8 are written as `\xNN` (one escape per byte).
# - `cram`: only printable ASCII is kept; every other byte is written as
#   `\xNN`.
#
# Both write backslash as `\\` and tab/CR/LF as `\t`/`\r`/`\n`.
# `decode(encode(data, fmt), fmt) == data` holds for every byte string.

import unicodedata

from .errors import DecodeError


_NAMED_ESCAPES = {"\\": "\\\\", "\t": "\\t", "\r": "\\r", "\n": "\\n"}
_NAMED_DECODES = {"\\": b"\\", "t": b"\t", "r": b"\r", "n": b"\n"}


def _hex_escape(data: bytes) -> str:
    return "".join(f"\\x{b:02x}" for b in data)


def _is_printable_char(ch: str) -> bool:
    # Cc covers C0/C1 controls and DEL; surrogates and unassigned points are escaped too.
    return unicodedata.category(ch) not in ("Cc", "Cs", "Cn")


def _encode_markdown(data: bytes) -> str:
    out: list[str] = []
    pos = 0
    while pos < len(data):
        chunk = data[pos:]
        try:
            text = chunk.decode("utf-8")
        except UnicodeDecodeError as exc:
            text = chunk[: exc.start].decode("utf-8")
            out.append(_encode_markdown_text(text))
            bad_end = exc.start + max(1, exc.end - exc.start)
            out.append(_hex_escape(chunk[exc.start : bad_end]))
            pos += bad_end
            continue
        out.append(_encode_markdown_text(text))
        break
    return "".join(out)


def _encode_markdown_text(text: str) -> str:
    out: list[str] = []
    for ch in text:
        named = _NAMED_ESCAPES.get(ch)
        if named is not None:
            out.append(named)
        elif _is_printable_char(ch):
            out.append(ch)
        else:
            out.append(_hex_escape(ch.encode("utf-8")))
    return "".join(out)


def _encode_cram(data: bytes) -> str:
    out: list[str] = []
    for b in data:
        ch = chr(b)
        named = _NAMED_ESCAPES.get(ch)
        if named is not None:
            out.append(named)
        elif 0x20 <= b < 0x7F:
            out.append(ch)
        else:
            out.append(f"\\x{b:02x}")
    return "".join(out)


def encode(data: bytes, fmt: str) -> str:
    if fmt == "markdown":
        return _encode_markdown(data)
    if fmt == "cram":
        return _encode_cram(data)
    raise ValueError(f"unknown_format:{fmt}")


def decode(text: str, fmt: str) -> bytes:
    if fmt not in ("markdown", "cram"):
        raise ValueError(f"unknown_format:{fmt}")

    out = bytearray()
    pos = 0
    length = len(text)
    while pos < length:
        ch = text[pos]
        if ch != "\\":
            if fmt == "cram" and ord(ch) > 0x7E:
                raise DecodeError(f"non-ASCII character {ch!r} at column {pos + 1}")
            out.extend(ch.encode("utf-8", errors="surrogateescape"))
            pos += 1
            continue

        if pos + 1 >= length:
            raise DecodeError(f"dangling backslash at column {pos + 1}")
        code = text[pos + 1]
        named = _NAMED_DECODES.get(code)
        if named is not None:
            out.extend(named)
            pos += 2
            continue
        if code == "x":
            digits = text[pos + 2 : pos + 4]
            if len(digits) != 2 or any(c not in "0123456789abcdefABCDEF" for c in digits):
                raise DecodeError(f"invalid \\x escape at column {pos + 1}")
            out.append(int(digits, 16))
            pos += 4
            continue
        raise DecodeError(f"unknown escape \\{code} at column {pos + 1}")
    return bytes(out)


def needs_escaping(data: bytes, fmt: str) -> bool:
    """True when ``data`` cannot be written as a literal (Equal) line."""

    if fmt == "cram":
        return any(not (0x20 <= b < 0x7F) and b != 0x09 for b in data)
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return any(ch not in ("\t",) and not _is_printable_char(ch) for ch in text)
