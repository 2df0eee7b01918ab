from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path


logger = logging.getLogger(__name__)

WORKDIR_PREFIX = "cramdown-"


def read_document_text(path: Path) -> str:
    # Documents are UTF-8; decoding errors surface as ParseError at the caller.
    return path.read_bytes().decode("utf-8")


def write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(text, encoding=encoding)
        tmp.replace(path)
    except OSError as exc:
        raise RuntimeError(f"write_text_failed:{path}:{exc}") from exc


def create_workdir() -> Path:
    return Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX))


def remove_workdir(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("failed to remove work directory %s: %s", path, exc)
