from __future__ import annotations

import io
import json
import os
import shutil
import tarfile
from pathlib import Path
from typing import Any

from .errors import SkillpinError


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()


def relative_or_abs(path: Path, *, base: Path) -> str:
    try:
        rel = path.relative_to(base)
    except ValueError:
        return str(path)
    return str(rel) if str(rel) else "."


def normalize_subdir(value: str) -> str:
    trimmed = value.strip().replace("\\", "/")
    while trimmed.startswith("./"):
        trimmed = trimmed[2:]
    trimmed = trimmed.strip("/")
    if not trimmed or trimmed == ".":
        return "."
    return trimmed


def _safe_target(dest: Path, name: str) -> Path:
    if name.startswith("/"):
        raise SkillpinError(f"Archive contains an absolute path entry: {name!r}")
    target = (dest / name).resolve()
    base = dest.resolve()
    if not str(target).startswith(str(base) + os.sep) and target != base:
        raise SkillpinError(f"Archive contains an invalid path entry: {name!r}")
    return target


def extract_tar(tar_bytes: bytes, dest: Path, *, prefix: str = ".") -> int:
    """
    Extract a `git archive --format=tar` stream into dest, dropping the
    leading `prefix` directory so the subtree lands at dest's root.

    Returns the number of regular files written.
    """
    dest.mkdir(parents=True, exist_ok=True)
    strip = "" if prefix == "." else prefix.rstrip("/") + "/"
    written = 0
    with tarfile.open(fileobj=io.BytesIO(tar_bytes), mode="r:") as tf:
        for member in tf.getmembers():
            name = member.name
            if strip:
                if not name.startswith(strip):
                    continue
                name = name[len(strip) :]
            name = name.strip("/")
            if not name:
                continue
            target = _safe_target(dest, name)

            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            if member.issym():
                if target.exists() or target.is_symlink():
                    target.unlink()
                os.symlink(member.linkname, target)
                continue
            if not member.isfile():
                continue

            src = tf.extractfile(member)
            if src is None:
                continue
            with src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            if member.mode & 0o111:
                target.chmod(0o755)
            written += 1
    return written


def purge_children_except_git(directory: Path) -> None:
    if not directory.is_dir():
        return
    for child in directory.iterdir():
        if child.name == ".git":
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def mirror_dir(src: Path, dest: Path) -> None:
    """Make dest an exact copy of src (symlinks preserved, `.git` left alone)."""
    dest.mkdir(parents=True, exist_ok=True)
    purge_children_except_git(dest)
    shutil.copytree(
        src,
        dest,
        symlinks=True,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(".git"),
    )


def remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def remove_empty_parents(path: Path, *, stop: Path) -> None:
    """Remove now-empty directories from path upwards, never touching stop."""
    current = path
    stop = stop.resolve()
    while current.resolve() != stop and stop in current.resolve().parents:
        if not current.is_dir():
            break
        try:
            next(current.iterdir())
        except StopIteration:
            current.rmdir()
            current = current.parent
            continue
        break
