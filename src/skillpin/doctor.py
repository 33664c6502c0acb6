from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from .digest import digest_dir
from .errors import FrontmatterError, RepoResolutionError, SkillpinError, UnitNotFoundError
from .fsops import remove_empty_parents, remove_tree
from .lockfile import LOCKFILE_NAME, LockEntry, Lockfile
from .manager import SkillManager, short_sha
from .skills import MARKER_FILE, parse_frontmatter_file

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate-name"
MISSING = "missing-install"
INVALID_MANIFEST = "invalid-manifest"
MODIFIED = "modified"
CACHE_MISSING = "cache-missing"
UNREACHABLE = "unreachable-commit"
UPGRADE_AVAILABLE = "upgrade-available"
ORPHAN_CACHE = "orphan-cache"

# Informational findings; they never make the report unhealthy.
NOTES = frozenset({UPGRADE_AVAILABLE})


@dataclass(frozen=True)
class Finding:
    kind: str
    subject: str
    message: str
    action: str
    resolved: bool = False

    @property
    def is_note(self) -> bool:
        return self.kind in NOTES


@dataclass(frozen=True)
class DoctorReport:
    findings: tuple[Finding, ...]
    applied: bool
    lockfile_changed: bool = False

    @property
    def problems(self) -> tuple[Finding, ...]:
        return tuple(f for f in self.findings if not f.is_note and not f.resolved)

    @property
    def ok(self) -> bool:
        return not self.problems


@dataclass
class _Run:
    lock: Lockfile
    apply: bool
    confirm: Callable[[LockEntry], bool] | None
    findings: list[Finding] = field(default_factory=list)
    changed: bool = False

    def add(self, kind: str, subject: str, message: str, action: str, *, resolved: bool = False) -> None:
        self.findings.append(Finding(kind, subject, message, action, resolved))


class Doctor:
    """
    Reconcile the lockfile, the cache and the install tree.

    Analysis is read-only. With apply=True only safe repairs are made:
    rebuilding missing installs, dropping entries that can never be rebuilt,
    pruning unreferenced cache clones and normalising entry order. Modified
    installs are never touched.
    """

    def __init__(self, manager: SkillManager) -> None:
        self.manager = manager
        self.cache = manager.cache

    def run(
        self,
        *,
        apply: bool = False,
        names: Iterable[str] | None = None,
        confirm: Callable[[LockEntry], bool] | None = None,
    ) -> DoctorReport:
        lock = self.manager.load_lock()
        run = _Run(lock=lock, apply=apply, confirm=confirm)
        wanted = set(names) if names else None
        entries = [e for e in lock.skills if wanted is None or e.install_name in wanted]
        if wanted is not None:
            unknown = sorted(wanted - {e.install_name for e in entries})
            if unknown:
                raise UnitNotFoundError(f"No installed skills matched: {', '.join(unknown)}. Run 'skillpin list'.")

        self._duplicates(run, entries)
        for entry in entries:
            self._entry(run, entry)
        if wanted is None:
            self._orphans(run)
            self._normalize(run)

        if run.changed:
            run.lock.touch()
            self.manager.save_lock(run.lock)
        return DoctorReport(findings=tuple(run.findings), applied=apply, lockfile_changed=run.changed)

    def _duplicates(self, run: _Run, entries: list[LockEntry]) -> None:
        counts = Counter(e.install_name for e in entries)
        for name, n in sorted(counts.items()):
            if n > 1:
                run.add(
                    DUPLICATE,
                    name,
                    f"'{name}' appears {n} times in {LOCKFILE_NAME}.",
                    f"Edit {LOCKFILE_NAME} to keep a single '{name}' entry.",
                )

    def _entry(self, run: _Run, entry: LockEntry) -> None:
        name = entry.install_name
        remote = entry.source.remote()

        cache_ok = self.cache.is_cached(remote)
        if not cache_ok:
            resolved = False
            if run.apply:
                try:
                    self.cache.ensure(remote)
                    cache_ok = resolved = True
                except RepoResolutionError as e:
                    logger.warning("could not re-clone %s: %s", remote.label, e)
            run.add(
                CACHE_MISSING,
                name,
                f"No cached clone of {remote.label} for '{name}'.",
                "Run 'skillpin update' (or 'skillpin doctor --apply') to re-clone it.",
                resolved=resolved,
            )

        reachable = cache_ok and self.cache.has_commit(remote, entry.commit)
        install_dir = self.manager.install_dir(name)

        if not install_dir.is_dir():
            self._missing(run, entry, reachable=reachable, cache_ok=cache_ok)
            return

        if cache_ok and not reachable:
            run.add(
                UNREACHABLE,
                name,
                f"Locked commit {short_sha(entry.commit)} of '{name}' is not in the cache of {remote.label}.",
                f"Run 'skillpin update'; if the commit is gone upstream, run 'skillpin upgrade {name}' or 'skillpin sync-back {name}'.",
            )

        try:
            parse_frontmatter_file(install_dir / MARKER_FILE)
        except FrontmatterError as e:
            run.add(
                INVALID_MANIFEST,
                name,
                str(e),
                f"Fix {MARKER_FILE} in {install_dir} so it declares name and description.",
            )

        if digest_dir(install_dir) != entry.digest:
            run.add(
                MODIFIED,
                name,
                f"'{name}' differs from its locked digest.",
                f"Run 'skillpin sync-back {name}' to publish the changes, or 'skillpin remove {name} --force' and reinstall.",
            )
            return

        if cache_ok:
            latest = self.cache.cached_tip(remote, entry.ref)
            if latest is not None and latest != entry.commit:
                run.add(
                    UPGRADE_AVAILABLE,
                    name,
                    f"'{name}' can move {short_sha(entry.commit)} -> {short_sha(latest)}.",
                    f"Run 'skillpin upgrade {name}'.",
                )

    def _missing(self, run: _Run, entry: LockEntry, *, reachable: bool, cache_ok: bool) -> None:
        name = entry.install_name
        if not cache_ok:
            run.add(
                MISSING,
                name,
                f"Install directory for '{name}' is missing and its source is not cached.",
                "Run 'skillpin update', then 'skillpin doctor --apply' to rebuild it.",
            )
            return
        if reachable:
            resolved = False
            message = f"Install directory for '{name}' is missing."
            action = f"Run 'skillpin doctor --apply' to rebuild it from {short_sha(entry.commit)}."
            if run.apply:
                try:
                    digest = self.manager.materialize(entry)
                except SkillpinError as e:
                    logger.warning("rebuild of %s failed: %s", name, e)
                else:
                    resolved = digest == entry.digest
                    if not resolved:
                        message = (
                            f"Rebuilt '{name}' from {short_sha(entry.commit)} but its digest {digest} "
                            f"does not match the locked {entry.digest}."
                        )
                        action = (
                            f"Inspect {self.manager.install_dir(name)}; run 'skillpin remove {name} --force' "
                            f"and reinstall to relock it."
                        )
            run.add(MISSING, name, message, action, resolved=resolved)
            return

        dropped = False
        if run.apply and (run.confirm is None or run.confirm(entry)):
            run.lock.drop(name)
            run.changed = dropped = True
        run.add(
            UNREACHABLE,
            name,
            f"'{name}' is missing and commit {short_sha(entry.commit)} is unreachable; it cannot be rebuilt.",
            "Run 'skillpin doctor --apply' to drop the entry, then reinstall with 'skillpin install'.",
            resolved=dropped,
        )

    def _referenced_caches(self, lock: Lockfile) -> set[Path]:
        refs = {self.cache.path_for(e.source.remote()) for e in lock.skills}
        refs.update(self.cache.path_for(r.remote()) for r in lock.repos)
        return {p.resolve() for p in refs}

    def _orphans(self, run: _Run) -> None:
        root = self.manager.ctx.cache_root
        if not root.is_dir():
            return
        referenced = self._referenced_caches(run.lock)
        for clone in sorted(root.glob("*/*/*/.git")):
            repo_dir = clone.parent
            if repo_dir.resolve() in referenced:
                continue
            resolved = False
            if run.apply:
                remove_tree(repo_dir)
                remove_empty_parents(repo_dir.parent, stop=root)
                resolved = True
            rel = repo_dir.relative_to(root).as_posix()
            run.add(
                ORPHAN_CACHE,
                rel,
                f"Cache clone {rel} is not referenced by {LOCKFILE_NAME}.",
                "Run 'skillpin doctor --apply' to prune it.",
                resolved=resolved,
            )

    def _normalize(self, run: _Run) -> None:
        if not run.apply:
            return
        ordered = sorted(run.lock.skills, key=lambda e: e.install_name)
        if ordered != run.lock.skills:
            run.lock.skills = ordered
            run.changed = True
