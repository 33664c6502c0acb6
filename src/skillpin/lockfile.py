from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .digest import digest_dir, is_valid_digest
from .errors import LockfileCorruptionError
from .fsops import write_json_atomic
from .remote import LOCAL_HOST, RemoteRef

LOCKFILE_NAME = "skills.lock.json"
LOCK_VERSION = 1

_RESTORE_HINT = f"Restore a valid copy (e.g. 'git checkout -- {LOCKFILE_NAME}') before retrying."


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _protocol_for(url: str, host: str) -> str:
    if host == LOCAL_HOST:
        return "file"
    if url.startswith(("https://", "http://")):
        return "https"
    return "ssh"


@dataclass(frozen=True)
class Source:
    url: str
    host: str
    owner: str
    repo: str
    skill_path: str

    @classmethod
    def from_remote(cls, remote: RemoteRef, skill_path: str) -> "Source":
        return cls(url=remote.url, host=remote.host, owner=remote.owner, repo=remote.repo, skill_path=skill_path)

    def remote(self) -> RemoteRef:
        return RemoteRef(
            url=self.url,
            host=self.host,
            owner=self.owner,
            repo=self.repo,
            protocol=_protocol_for(self.url, self.host),
        )

    @property
    def label(self) -> str:
        return f"{self.owner}/{self.repo}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "host": self.host,
            "owner": self.owner,
            "repo": self.repo,
            "skillPath": self.skill_path,
        }


@dataclass(frozen=True)
class LockEntry:
    install_name: str
    source: Source
    ref: str | None
    commit: str
    digest: str
    installed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "installName": self.install_name,
            "source": self.source.to_dict(),
            "ref": self.ref,
            "commit": self.commit,
            "digest": self.digest,
            "installedAt": self.installed_at,
        }

    def with_commit(self, commit: str, digest: str) -> "LockEntry":
        return replace(self, commit=commit, digest=digest, installed_at=utc_now())


@dataclass(frozen=True)
class RepoEntry:
    alias: str
    url: str
    host: str
    owner: str
    repo: str

    def remote(self) -> RemoteRef:
        return RemoteRef(
            url=self.url,
            host=self.host,
            owner=self.owner,
            repo=self.repo,
            protocol=_protocol_for(self.url, self.host),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"alias": self.alias, "url": self.url, "host": self.host, "owner": self.owner, "repo": self.repo}


@dataclass
class Lockfile:
    version: int = LOCK_VERSION
    skills: list[LockEntry] = field(default_factory=list)
    generated_at: str = field(default_factory=utc_now)
    repos: list[RepoEntry] = field(default_factory=list)

    def find(self, install_name: str) -> LockEntry | None:
        for entry in self.skills:
            if entry.install_name == install_name:
                return entry
        return None

    def replace_entry(self, entry: LockEntry) -> None:
        for i, existing in enumerate(self.skills):
            if existing.install_name == entry.install_name:
                self.skills[i] = entry
                return
        self.skills.append(entry)

    def drop(self, install_name: str) -> bool:
        before = len(self.skills)
        self.skills = [e for e in self.skills if e.install_name != install_name]
        return len(self.skills) != before

    def find_repo(self, alias: str) -> RepoEntry | None:
        for repo in self.repos:
            if repo.alias == alias:
                return repo
        return None

    def touch(self) -> None:
        self.generated_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "skills": [e.to_dict() for e in self.skills],
            "generatedAt": self.generated_at,
        }
        if self.repos:
            data["repos"] = [r.to_dict() for r in self.repos]
        return data


class InstallState(str, Enum):
    CLEAN = "clean"
    MODIFIED = "modified"
    MISSING = "missing"


def entry_state(entry: LockEntry, install_dir: Path) -> InstallState:
    if not install_dir.is_dir():
        return InstallState.MISSING
    if digest_dir(install_dir) == entry.digest:
        return InstallState.CLEAN
    return InstallState.MODIFIED


def _require(obj: dict[str, Any], key: str, *, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: {where} is missing {key!r}. {_RESTORE_HINT}")
    return value


def _parse_entry(raw: Any, index: int) -> LockEntry:
    where = f"skills[{index}]"
    if not isinstance(raw, dict):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: {where} is not an object. {_RESTORE_HINT}")
    src = raw.get("source")
    if not isinstance(src, dict):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: {where} has no source. {_RESTORE_HINT}")
    ref = raw.get("ref")
    if ref is not None and not isinstance(ref, str):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: {where}.ref must be a string or null. {_RESTORE_HINT}")
    digest = _require(raw, "digest", where=where)
    if not is_valid_digest(digest):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: {where}.digest {digest!r} is not '<algorithm>:<hex>'. {_RESTORE_HINT}")
    return LockEntry(
        install_name=_require(raw, "installName", where=where),
        source=Source(
            url=_require(src, "url", where=f"{where}.source"),
            host=_require(src, "host", where=f"{where}.source"),
            owner=_require(src, "owner", where=f"{where}.source"),
            repo=_require(src, "repo", where=f"{where}.source"),
            skill_path=_require(src, "skillPath", where=f"{where}.source"),
        ),
        ref=ref or None,
        commit=_require(raw, "commit", where=where),
        digest=digest,
        installed_at=_require(raw, "installedAt", where=where),
    )


def _parse_repo(raw: Any, index: int) -> RepoEntry:
    where = f"repos[{index}]"
    if not isinstance(raw, dict):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: {where} is not an object. {_RESTORE_HINT}")
    return RepoEntry(
        alias=_require(raw, "alias", where=where),
        url=_require(raw, "url", where=where),
        host=_require(raw, "host", where=where),
        owner=_require(raw, "owner", where=where),
        repo=_require(raw, "repo", where=where),
    )


def parse_lockfile(text: str) -> Lockfile:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise LockfileCorruptionError(f"{LOCKFILE_NAME} is not valid JSON ({e}). {_RESTORE_HINT}") from e
    if not isinstance(raw, dict):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME} must contain a JSON object. {_RESTORE_HINT}")
    version = raw.get("version")
    if version != LOCK_VERSION:
        raise LockfileCorruptionError(
            f"{LOCKFILE_NAME} has unsupported version {version!r} (expected {LOCK_VERSION}). {_RESTORE_HINT}"
        )
    skills = raw.get("skills", [])
    repos = raw.get("repos", [])
    if not isinstance(skills, list) or not isinstance(repos, list):
        raise LockfileCorruptionError(f"{LOCKFILE_NAME}: 'skills' and 'repos' must be arrays. {_RESTORE_HINT}")
    generated_at = raw.get("generatedAt")
    return Lockfile(
        version=LOCK_VERSION,
        skills=[_parse_entry(e, i) for i, e in enumerate(skills)],
        generated_at=generated_at if isinstance(generated_at, str) else utc_now(),
        repos=[_parse_repo(r, i) for i, r in enumerate(repos)],
    )


def load_lockfile(path: Path) -> Lockfile:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError) as e:
        raise LockfileCorruptionError(f"Unable to read {path}: {e}. {_RESTORE_HINT}") from e
    return parse_lockfile(text)


def load_or_empty(path: Path) -> Lockfile:
    if not path.exists():
        return Lockfile()
    return load_lockfile(path)


def save_lockfile(path: Path, lock: Lockfile) -> None:
    write_json_atomic(path, lock.to_dict())
