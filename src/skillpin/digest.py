from __future__ import annotations

import hashlib
import os
from pathlib import Path

ALGORITHM = "sha256"
IGNORED_DIRS = frozenset({".git", ".hg", ".svn"})
IGNORED_NAMES = frozenset({".DS_Store"})
IGNORED_SUFFIXES = ("~", ".swp", ".swo")


def _ignored(name: str) -> bool:
    return name in IGNORED_NAMES or name.endswith(IGNORED_SUFFIXES)


def iter_files(root: Path) -> list[tuple[str, Path]]:
    """
    Regular files under root as (posix relative path, absolute path), sorted
    byte-wise by relative path. Symlinks, VCS directories and editor
    leftovers are skipped.
    """
    out: list[tuple[str, Path]] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
        base = Path(dirpath)
        for fname in filenames:
            if _ignored(fname):
                continue
            p = base / fname
            if p.is_symlink() or not p.is_file():
                continue
            out.append((p.relative_to(root).as_posix(), p))
    out.sort(key=lambda item: item[0].encode("utf-8", errors="surrogateescape"))
    return out


def _normalize(data: bytes) -> bytes:
    if b"\0" in data:
        return data
    return data.replace(b"\r\n", b"\n")


def digest_dir(root: Path) -> str:
    h = hashlib.new(ALGORITHM)
    for rel, path in iter_files(root):
        data = _normalize(path.read_bytes())
        h.update(rel.encode("utf-8", errors="surrogateescape"))
        h.update(b"\0")
        h.update(str(len(data)).encode("ascii"))
        h.update(b"\0")
        h.update(data)
    return f"{ALGORITHM}:{h.hexdigest()}"


def is_valid_digest(value: str) -> bool:
    algo, sep, hexpart = value.partition(":")
    if not sep or algo != ALGORITHM or len(hexpart) != hashlib.new(ALGORITHM).digest_size * 2:
        return False
    return all(c in "0123456789abcdef" for c in hexpart)
