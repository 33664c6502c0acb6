from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .digest import digest_dir
from .errors import ConfigurationError, GitError, PublishError, SkillpinError, UnreachableCommitError
from .fsops import mirror_dir, normalize_subdir
from .lockfile import LockEntry, Source, utc_now
from .manager import SkillManager, short_sha
from .remote import RemoteRef
from .review import GhReview, ReviewOutcome
from .skills import MARKER_FILE, parse_frontmatter_file
from .tools import ToolStatus, Toolset

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "skillpin/sync"


@dataclass(frozen=True)
class SyncBackResult:
    install_name: str
    status: str  # "published" | "unchanged"
    repo: str
    branch: str
    commit: str
    pr_url: str | None = None
    messages: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def _timestamp() -> datetime:
    return datetime.now(timezone.utc)


def default_branch_name(install_name: str, now: datetime) -> str:
    return f"{BRANCH_PREFIX}/{install_name}/{now.strftime('%Y%m%d-%H%M%S')}"


def default_message(install_name: str, now: datetime) -> str:
    return f"skillpin sync-back: {install_name} ({now.strftime('%Y-%m-%dT%H:%M:%SZ')})"


def _rsync(binary: str, src: Path, dst: Path) -> None:
    dst.mkdir(parents=True, exist_ok=True)
    cmd = [binary, "-a", "--delete", "--exclude", ".git", f"{src}/", f"{dst}/"]
    logger.debug("running: %s", " ".join(cmd))
    proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if proc.returncode != 0:
        raise SkillpinError(proc.stderr.strip() or f"rsync exited with status {proc.returncode}")


def mirror_tree(src: Path, dst: Path, rsync: ToolStatus) -> list[str]:
    """
    Make dst match src. rsync is used when available; otherwise a plain
    recursive copy produces the same tree. Returns warnings.
    """
    warnings: list[str] = []
    if rsync.path is not None:
        try:
            _rsync(rsync.path, src, dst)
            return warnings
        except (OSError, SkillpinError) as e:
            warnings.append(f"rsync failed ({e}); falling back to a recursive copy")
    else:
        warnings.append(f"rsync unavailable ({rsync.reason}); using a recursive copy")
    for w in warnings:
        logger.info(w)
    mirror_dir(src, dst)
    return warnings


@dataclass(frozen=True)
class _Target:
    remote: RemoteRef
    skill_path: str
    base_commit: str
    entry: LockEntry | None


class Publisher:
    """Push an installed skill (locked or brand new) to its upstream repository."""

    def __init__(
        self,
        manager: SkillManager,
        *,
        tools: Toolset | None = None,
        review_factory: Callable[..., GhReview] = GhReview,
    ) -> None:
        self.manager = manager
        self.git = manager.git
        self.cache = manager.cache
        self.tools = tools if tools is not None else Toolset.detect()
        self.review_factory = review_factory

    def _target(
        self,
        install_name: str,
        entry: LockEntry | None,
        *,
        repo: str | None,
        path: str | None,
        https: bool,
    ) -> _Target:
        if entry is not None:
            remote = entry.source.remote()
            if repo is not None and self.manager.resolve_remote(repo, https=https).label != remote.label:
                raise ConfigurationError(
                    f"'{install_name}' is locked to {remote.label}; --repo only applies to skills without a lock entry."
                )
            self.cache.ensure(remote)
            if not self.cache.has_commit(remote, entry.commit):
                raise UnreachableCommitError(
                    f"Locked commit {short_sha(entry.commit)} of '{install_name}' is not in the cache of "
                    f"{remote.label}. Run 'skillpin update' and retry."
                )
            skill_path = normalize_subdir(path) if path is not None else entry.source.skill_path
            return _Target(remote=remote, skill_path=skill_path, base_commit=entry.commit, entry=entry)

        repo_input = repo or self.manager.config.default_repo
        if not repo_input:
            raise ConfigurationError(
                f"'{install_name}' has no lock entry and no destination repository. "
                f"Pass --repo @owner/repo or run 'skillpin config set default_repo @owner/repo'."
            )
        remote = self.manager.resolve_remote(repo_input, https=https)
        self.cache.ensure(remote)
        base = self.cache.resolve_commit(remote, None)
        return _Target(
            remote=remote,
            skill_path=normalize_subdir(path or install_name),
            base_commit=base.commit,
            entry=None,
        )

    def sync_back(
        self,
        install_name: str,
        *,
        repo: str | None = None,
        path: str | None = None,
        branch: str | None = None,
        message: str | None = None,
        https: bool = False,
        open_pr: bool = True,
    ) -> SyncBackResult:
        lock = self.manager.load_lock()
        src = self.manager.install_dir(install_name)
        if not src.is_dir():
            raise PublishError(f"No installed directory for '{install_name}' at {src}. Nothing to sync back.")
        parse_frontmatter_file(src / MARKER_FILE)

        entry = lock.find(install_name)
        target = self._target(install_name, entry, repo=repo, path=path, https=https)
        repo_dir = self.cache.path_for(target.remote)

        now = _timestamp()
        branch = branch or default_branch_name(install_name, now)
        message = message or default_message(install_name, now)
        warnings: list[str] = []
        messages: list[str] = []

        with tempfile.TemporaryDirectory(prefix="skillpin-sync-") as td:
            wt = Path(td) / "wt"
            try:
                self.git.worktree_add(repo_dir, wt, branch, target.base_commit)
            except GitError as e:
                raise PublishError(
                    f"Unable to create branch '{branch}' in the cache of {target.remote.label}: {e}. "
                    f"Pass a different --branch."
                ) from e
            pushed = False
            try:
                dst = wt if target.skill_path == "." else wt / target.skill_path
                warnings.extend(mirror_tree(src, dst, self.tools.rsync))
                commit = self.git.commit_all(wt, message)
                if commit is None:
                    return SyncBackResult(
                        install_name=install_name,
                        status="unchanged",
                        repo=target.remote.label,
                        branch=branch,
                        commit=target.base_commit,
                        warnings=tuple(warnings),
                    )
                try:
                    self.git.push(wt, branch)
                except GitError as e:
                    raise PublishError(
                        f"Push of '{branch}' to {target.remote.label} was rejected: {e}. "
                        f"If upstream moved, run 'skillpin update' then re-run 'skillpin sync-back {install_name}' "
                        f"(optionally with a new --branch). If you lack push access, fork {target.remote.label} "
                        f"and sync to the fork with --repo."
                    ) from e
                pushed = True
                messages.append(f"Pushed {branch} ({short_sha(commit)}) to {target.remote.label}.")

                review = self._review(target.remote, branch, open_pr=open_pr, warnings=warnings)
            finally:
                self.git.worktree_remove(repo_dir, wt)
                if not pushed:
                    self.git.delete_branch(repo_dir, branch)

        final_commit = commit
        pr_url: str | None = None
        if review is not None:
            messages.extend(review.messages)
            pr_url = review.pr.url
            if review.merged_commit:
                final_commit = self._adopt_merge(target, review.merged_commit, commit, warnings)
            elif review.auto_merge_armed:
                messages.append(
                    f"Auto-merge for '{install_name}' has not finished yet; keeping lock at {short_sha(commit)}. "
                    f"Run 'skillpin upgrade {install_name}' after the PR merges."
                )

        source = Source.from_remote(target.remote, target.skill_path)
        if final_commit != commit:
            self.manager.replace_install(install_name, source, final_commit)

        new_entry = LockEntry(
            install_name=install_name,
            source=source,
            ref=entry.ref if entry is not None else None,
            commit=final_commit,
            digest=digest_dir(src),
            installed_at=utc_now(),
        )
        lock = self.manager.load_lock()
        lock.replace_entry(new_entry)
        lock.touch()
        self.manager.save_lock(lock)

        return SyncBackResult(
            install_name=install_name,
            status="published",
            repo=target.remote.label,
            branch=branch,
            commit=final_commit,
            pr_url=pr_url,
            messages=tuple(messages),
            warnings=tuple(warnings),
        )

    def _review(self, remote: RemoteRef, branch: str, *, open_pr: bool, warnings: list[str]) -> ReviewOutcome | None:
        if not open_pr:
            return None
        gh = self.tools.gh
        if gh.path is None:
            msg = (
                f"Skipping PR automation: {gh.reason}. Open a pull request for '{branch}' on "
                f"{remote.label} manually (install https://cli.github.com/ to automate this)."
            )
            logger.info(msg)
            warnings.append(msg)
            return None
        try:
            return self.review_factory(remote, binary=gh.path).run(branch)
        except PublishError as e:
            msg = f"PR automation failed: {e}. Open a pull request for '{branch}' on {remote.label} manually."
            logger.info(msg)
            warnings.append(msg)
            return None

    def _adopt_merge(self, target: _Target, merged: str, pushed: str, warnings: list[str]) -> str:
        outcome = self.cache.ensure(target.remote)
        if outcome.stale or not self.cache.has_commit(target.remote, merged):
            warnings.append(
                f"Merged commit {short_sha(merged)} is not reachable in the cache yet; keeping lock at {short_sha(pushed)}."
            )
            return pushed
        return merged
