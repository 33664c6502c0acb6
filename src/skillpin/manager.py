from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .config import Config, load_config, save_config_if_missing
from .context import Context, resolve_project_path
from .digest import digest_dir
from .errors import (
    ConfigurationError,
    InstallConflictError,
    MissingCacheError,
    ModifiedStateError,
    RepoResolutionError,
    SkillpinError,
    UnitNotFoundError,
    UnreachableCommitError,
)
from .fsops import remove_tree
from .git import GitBackend
from .lockfile import (
    LOCKFILE_NAME,
    InstallState,
    LockEntry,
    Lockfile,
    Source,
    entry_state,
    load_or_empty,
    save_lockfile,
    utc_now,
)
from .remote import RemoteRef, RepoCache, is_local_source, parse_repo_input
from .skills import MARKER_FILE, discover_skills, read_installed_meta, select_skill

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".skillpin-"


def short_sha(commit: str) -> str:
    return commit[:7]


def _modified_message(install_name: str) -> str:
    return (
        f"'{install_name}' has local modifications. "
        f"Run 'skillpin sync-back {install_name}' or revert changes, then retry."
    )


@dataclass(frozen=True)
class InitResult:
    install_root: Path
    lockfile_path: Path
    created_lockfile: bool
    config_path: Path | None


@dataclass(frozen=True)
class InstallResult:
    entry: LockEntry
    install_dir: Path
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstalledSkill:
    entry: LockEntry
    declared_name: str
    description: str
    install_dir: Path


@dataclass(frozen=True)
class CheckRow:
    install_name: str
    state: InstallState


@dataclass(frozen=True)
class StatusRow:
    install_name: str
    state: InstallState
    commit: str
    locked_digest: str
    current_digest: str | None
    latest: str | None
    pinned: bool

    @property
    def update_available(self) -> bool:
        return self.latest is not None and self.latest != self.commit


@dataclass(frozen=True)
class RepoFailure:
    repo: str
    message: str


@dataclass(frozen=True)
class UpdateResult:
    refreshed: tuple[str, ...]
    stale: tuple[str, ...]
    failures: tuple[RepoFailure, ...]


@dataclass(frozen=True)
class UpgradeChange:
    install_name: str
    old_commit: str
    new_commit: str
    new_digest: str | None = None


@dataclass(frozen=True)
class Skipped:
    install_name: str
    reason: str
    diff: str = ""


@dataclass(frozen=True)
class UpgradeResult:
    dry_run: bool
    changes: tuple[UpgradeChange, ...]
    up_to_date: tuple[str, ...]
    skipped: tuple[Skipped, ...]
    failures: tuple[RepoFailure, ...]
    warnings: tuple[str, ...] = ()
    # Modified installs whose tree already equals the new tip; relocked without touching files.
    refreshed: tuple[UpgradeChange, ...] = ()


@dataclass(frozen=True)
class RemoveResult:
    install_name: str
    removed_dir: bool


@dataclass(frozen=True)
class _Plan:
    entry: LockEntry
    remote: RemoteRef
    new_commit: str


@dataclass(frozen=True)
class _Refresh:
    entry: LockEntry
    new_commit: str
    digest: str

    def change(self) -> UpgradeChange:
        return UpgradeChange(self.entry.install_name, self.entry.commit, self.new_commit, self.digest)


@dataclass
class _Swap:
    plan: _Plan
    staged: Path
    digest: str
    backup: Path | None = None
    swapped: bool = False


class SkillManager:
    """
    Install, inspect, upgrade and remove vendored skills for one project.

    The project root is the top level of the git work tree containing
    `ctx.cwd`; the lockfile lives there and installs go under the install
    root (`--root` override or the configured default).
    """

    def __init__(
        self,
        ctx: Context,
        git: GitBackend,
        *,
        config: Config | None = None,
        root: str | None = None,
    ) -> None:
        self.ctx = ctx
        self.git = git
        self.config = config if config is not None else load_config(ctx.config_dir)
        self.root_override = root
        self.cache = RepoCache(ctx, git)
        self._project_root: Path | None = None

    # -- locations -------------------------------------------------------

    @property
    def project_root(self) -> Path:
        if self._project_root is None:
            top = self.git.toplevel(self.ctx.cwd)
            if top is None:
                raise ConfigurationError(
                    f"{self.ctx.cwd} is not inside a git working tree. Run 'git init' first."
                )
            self._project_root = top
        return self._project_root

    @property
    def install_root(self) -> Path:
        return resolve_project_path(self.project_root, self.root_override or self.config.default_root)

    @property
    def lockfile_path(self) -> Path:
        return self.project_root / LOCKFILE_NAME

    def install_dir(self, install_name: str) -> Path:
        return self.install_root / install_name

    def load_lock(self) -> Lockfile:
        return load_or_empty(self.lockfile_path)

    def save_lock(self, lock: Lockfile) -> None:
        save_lockfile(self.lockfile_path, lock)

    def resolve_remote(self, value: str, *, https: bool = False, lock: Lockfile | None = None) -> RemoteRef:
        lock = lock if lock is not None else self.load_lock()
        registered = lock.find_repo(value)
        if registered is not None:
            return registered.remote()
        return parse_repo_input(
            value,
            https=https or self.config.prefers_https,
            default_host=self.config.default_host,
            base=self.ctx.cwd,
        )

    def _require_entry(self, lock: Lockfile, install_name: str) -> LockEntry:
        entry = lock.find(install_name)
        if entry is None:
            raise UnitNotFoundError(f"'{install_name}' is not installed. Run 'skillpin list' to see installed skills.")
        return entry

    def _select(self, lock: Lockfile, names: Iterable[str] | None) -> list[LockEntry]:
        if not names:
            return list(lock.skills)
        return [self._require_entry(lock, n) for n in names]

    # -- staging ---------------------------------------------------------

    @contextmanager
    def _staging(self) -> Iterator[Path]:
        self.install_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=STAGING_PREFIX, dir=self.install_root) as td:
            yield Path(td)

    def _export(self, remote: RemoteRef, commit: str, skill_path: str, dest: Path) -> str:
        repo_dir = self.cache.path_for(remote)
        self.git.export_tree(repo_dir, commit, skill_path, dest)
        if not (dest / MARKER_FILE).is_file():
            raise UnitNotFoundError(
                f"{remote.label}@{short_sha(commit)} has no {MARKER_FILE} at '{skill_path}'."
            )
        return digest_dir(dest)

    def materialize(self, entry: LockEntry) -> str:
        """
        (Re)create an install directory from its locked commit.

        The destination must not exist. Returns the digest of the new tree.
        """
        remote = entry.source.remote()
        if not self.cache.has_commit(remote, entry.commit):
            raise UnreachableCommitError(
                f"Commit {short_sha(entry.commit)} for '{entry.install_name}' is not in the cache of {remote.label}. "
                f"Run 'skillpin update' and retry, or remove the entry."
            )
        dest = self.install_dir(entry.install_name)
        with self._staging() as tmp:
            staged = tmp / entry.install_name
            digest = self._export(remote, entry.commit, entry.source.skill_path, staged)
            dest.parent.mkdir(parents=True, exist_ok=True)
            staged.rename(dest)
        return digest

    # -- commands --------------------------------------------------------

    def init(self) -> InitResult:
        self.install_root.mkdir(parents=True, exist_ok=True)
        created = False
        if not self.lockfile_path.exists():
            self.save_lock(Lockfile())
            created = True
        saved = save_config_if_missing(self.config, self.ctx.config_dir)
        return InitResult(
            install_root=self.install_root,
            lockfile_path=self.lockfile_path,
            created_lockfile=created,
            config_path=saved,
        )

    def install(
        self,
        repo: str,
        name: str,
        *,
        ref: str | None = None,
        alias: str | None = None,
        path: str | None = None,
        https: bool = False,
    ) -> InstallResult:
        lock = self.load_lock()
        install_name = (alias or name).strip()
        if not install_name or "/" in install_name or "\\" in install_name or install_name in (".", ".."):
            raise InstallConflictError(f"Invalid install name {install_name!r}. Use --alias with a plain directory name.")
        if lock.find(install_name) is not None:
            raise InstallConflictError(
                f"'{install_name}' is already installed. Run 'skillpin upgrade {install_name}' "
                f"or install under a different --alias."
            )
        dest = self.install_dir(install_name)
        if dest.exists():
            raise InstallConflictError(
                f"{dest} already exists but is not in {LOCKFILE_NAME}. Remove it or install with --alias."
            )

        remote = self.resolve_remote(repo, https=https, lock=lock)
        outcome = self.cache.ensure(remote)
        warnings: list[str] = []
        if outcome.stale:
            warnings.append(f"could not refresh {remote.label}; using cached copy ({outcome.error})")

        resolved = self.cache.resolve_commit(remote, ref)
        descriptors = discover_skills(self.git, outcome.path, resolved.commit)
        descriptor = select_skill(descriptors, name, path=path, repo_label=remote.label)

        with self._staging() as tmp:
            staged = tmp / install_name
            digest = self._export(remote, resolved.commit, descriptor.path, staged)
            staged.rename(dest)

        entry = LockEntry(
            install_name=install_name,
            source=Source.from_remote(remote, descriptor.path),
            ref=ref,
            commit=resolved.commit,
            digest=digest,
            installed_at=utc_now(),
        )
        lock.skills.append(entry)
        lock.touch()
        try:
            self.save_lock(lock)
        except OSError:
            remove_tree(dest)
            raise
        logger.info("installed %s from %s@%s", install_name, remote.label, short_sha(resolved.commit))
        return InstallResult(entry=entry, install_dir=dest, warnings=tuple(warnings))

    def list_installed(self) -> list[InstalledSkill]:
        lock = self.load_lock()
        out: list[InstalledSkill] = []
        for entry in lock.skills:
            install_dir = self.install_dir(entry.install_name)
            meta = read_installed_meta(install_dir)
            out.append(
                InstalledSkill(
                    entry=entry,
                    declared_name=meta.name if meta else "",
                    description=meta.description if meta else "",
                    install_dir=install_dir,
                )
            )
        return out

    def local_sources(self) -> list[LockEntry]:
        """Lock entries collaborators cannot reproduce because their source lives on this machine."""
        return [e for e in self.load_lock().skills if is_local_source(e.source.url, e.source.host)]

    def where(self, install_name: str) -> Path:
        entry = self._require_entry(self.load_lock(), install_name)
        return self.install_dir(entry.install_name).resolve()

    def state_of(self, entry: LockEntry) -> InstallState:
        return entry_state(entry, self.install_dir(entry.install_name))

    def check(self, names: Iterable[str] | None = None) -> list[CheckRow]:
        lock = self.load_lock()
        return [CheckRow(e.install_name, self.state_of(e)) for e in self._select(lock, names)]

    def status(self, names: Iterable[str] | None = None) -> list[StatusRow]:
        lock = self.load_lock()
        rows: list[StatusRow] = []
        for entry in self._select(lock, names):
            install_dir = self.install_dir(entry.install_name)
            current = digest_dir(install_dir) if install_dir.is_dir() else None
            if current is None:
                state = InstallState.MISSING
            elif current == entry.digest:
                state = InstallState.CLEAN
            else:
                state = InstallState.MODIFIED
            remote = entry.source.remote()
            latest = self.cache.cached_tip(remote, entry.ref)
            rows.append(
                StatusRow(
                    install_name=entry.install_name,
                    state=state,
                    commit=entry.commit,
                    locked_digest=entry.digest,
                    current_digest=current,
                    latest=latest,
                    pinned=entry.ref is not None
                    and self.cache.is_cached(remote)
                    and not self.cache.is_tracked(remote, entry.ref),
                )
            )
        return rows

    def diff(self, install_name: str) -> str:
        entry = self._require_entry(self.load_lock(), install_name)
        local = self.install_dir(entry.install_name)
        if not local.is_dir():
            raise MissingCacheError(
                f"Install directory for '{install_name}' is missing. Run 'skillpin doctor --apply' to rebuild it first."
            )
        remote = entry.source.remote()
        if not self.cache.is_cached(remote):
            raise MissingCacheError(f"No cached copy of {remote.label}. Run 'skillpin update' first.")
        target = self.cache.cached_tip(remote, entry.ref) or entry.commit
        return self._compare_upstream(entry, remote, target)

    def _compare_upstream(self, entry: LockEntry, remote: RemoteRef, commit: str) -> str:
        """Unified diff of an install against its subtree at `commit`; empty when identical."""
        with tempfile.TemporaryDirectory(prefix="skillpin-diff-") as td:
            upstream = Path(td) / entry.install_name
            self.git.export_tree(self.cache.path_for(remote), commit, entry.source.skill_path, upstream)
            return self.git.diff_dirs(self.install_dir(entry.install_name), upstream)

    def _remotes(self, lock: Lockfile) -> dict[str, RemoteRef]:
        remotes: dict[str, RemoteRef] = {}
        for entry in lock.skills:
            remotes.setdefault(entry.source.url, entry.source.remote())
        for repo in lock.repos:
            remotes.setdefault(repo.url, repo.remote())
        return remotes

    def update(self) -> UpdateResult:
        """Refresh every cache mirror the project references. Never touches the project tree."""
        lock = self.load_lock()
        refreshed: list[str] = []
        stale: list[str] = []
        failures: list[RepoFailure] = []
        for remote in self._remotes(lock).values():
            try:
                outcome = self.cache.ensure(remote)
            except RepoResolutionError as e:
                failures.append(RepoFailure(remote.label, str(e)))
                continue
            if outcome.stale:
                stale.append(remote.label)
                failures.append(RepoFailure(remote.label, outcome.error or "fetch failed"))
            else:
                refreshed.append(remote.label)
        return UpdateResult(tuple(refreshed), tuple(stale), tuple(failures))

    def upgrade(
        self,
        target: str | None = None,
        *,
        dry_run: bool = False,
        include_pinned: bool = False,
    ) -> UpgradeResult:
        """
        Move clean entries to the tip of what they track.

        A named target that is modified or missing raises; in a batch those
        entries are reported as skipped, modified ones with their diff against
        the new tip. A modified install whose tree already equals the new tip
        is relocked in place. Pinned entries are skipped in a batch unless
        include_pinned is set.
        """
        lock = self.load_lock()
        single = target is not None
        entries = [self._require_entry(lock, target)] if target is not None else list(lock.skills)

        skipped: list[Skipped] = []
        failures: list[RepoFailure] = []
        warnings: list[str] = []
        up_to_date: list[str] = []
        plans: list[_Plan] = []
        refreshes: list[_Refresh] = []

        candidates: list[LockEntry] = []
        modified: set[str] = set()
        for entry in entries:
            state = self.state_of(entry)
            if state is InstallState.MISSING:
                msg = (
                    f"Install directory for '{entry.install_name}' is missing. "
                    "Run 'skillpin doctor --apply' to rebuild it first."
                )
                if single:
                    raise MissingCacheError(msg)
                skipped.append(Skipped(entry.install_name, msg))
                continue
            if state is InstallState.MODIFIED:
                modified.add(entry.install_name)
            candidates.append(entry)

        by_repo: dict[str, list[LockEntry]] = {}
        for entry in candidates:
            by_repo.setdefault(entry.source.url, []).append(entry)

        for group in by_repo.values():
            remote = group[0].source.remote()
            try:
                outcome = self.cache.ensure(remote)
            except RepoResolutionError as e:
                for entry in group:
                    if single and entry.install_name in modified:
                        raise ModifiedStateError(_modified_message(entry.install_name)) from e
                    failures.append(RepoFailure(remote.label, f"{entry.install_name}: {e}"))
                continue
            if outcome.stale:
                warnings.append(f"could not refresh {remote.label}; using cached copy ({outcome.error})")

            for entry in group:
                name = entry.install_name
                is_modified = name in modified
                if entry.ref is not None and not self.cache.is_tracked(remote, entry.ref):
                    if not self.cache.ref_exists(remote, entry.ref):
                        msg = (
                            f"Branch '{entry.ref}' of '{name}' no longer exists on {remote.label}. "
                            f"Run 'skillpin remove {name}' and reinstall with --ref <branch>."
                        )
                        if single:
                            raise RepoResolutionError(msg)
                        skipped.append(Skipped(name, msg))
                        continue
                    if not single and not include_pinned:
                        if is_modified:
                            skipped.append(Skipped(name, _modified_message(name)))
                        else:
                            skipped.append(
                                Skipped(
                                    name,
                                    f"'{name}' is pinned to {entry.ref}. Re-run with --include-pinned to re-resolve it.",
                                )
                            )
                        continue
                try:
                    resolved = self.cache.resolve_commit(remote, entry.ref)
                except RepoResolutionError as e:
                    failures.append(RepoFailure(remote.label, f"{name}: {e}"))
                    continue

                if is_modified:
                    diff = ""
                    if resolved.commit != entry.commit:
                        try:
                            diff = self._compare_upstream(entry, remote, resolved.commit)
                        except SkillpinError as e:
                            failures.append(RepoFailure(remote.label, f"{name}: {e}"))
                            continue
                        if not diff:
                            refreshes.append(_Refresh(entry, resolved.commit, digest_dir(self.install_dir(name))))
                            continue
                    if single:
                        raise ModifiedStateError(_modified_message(name))
                    skipped.append(Skipped(name, _modified_message(name), diff))
                    continue

                if resolved.commit == entry.commit:
                    up_to_date.append(name)
                    continue
                plans.append(_Plan(entry=entry, remote=remote, new_commit=resolved.commit))

        if dry_run or not (plans or refreshes):
            return UpgradeResult(
                dry_run=dry_run,
                changes=tuple(UpgradeChange(p.entry.install_name, p.entry.commit, p.new_commit) for p in plans),
                up_to_date=tuple(up_to_date),
                skipped=tuple(skipped),
                failures=tuple(failures),
                warnings=tuple(warnings),
                refreshed=tuple(r.change() for r in refreshes),
            )

        applied = self._apply_plans(lock, plans, refreshes, failures)
        return UpgradeResult(
            dry_run=False,
            changes=tuple(
                UpgradeChange(s.plan.entry.install_name, s.plan.entry.commit, s.plan.new_commit, s.digest)
                for s in applied
            ),
            up_to_date=tuple(up_to_date),
            skipped=tuple(skipped),
            failures=tuple(failures),
            warnings=tuple(warnings),
            refreshed=tuple(r.change() for r in refreshes),
        )

    def _apply_plans(
        self,
        lock: Lockfile,
        plans: list[_Plan],
        refreshes: list[_Refresh],
        failures: list[RepoFailure],
    ) -> list[_Swap]:
        with self._staging() as tmp:
            ready: list[_Swap] = []
            for plan in plans:
                staged = tmp / "new" / plan.entry.install_name
                try:
                    digest = self._export(plan.remote, plan.new_commit, plan.entry.source.skill_path, staged)
                except SkillpinError as e:
                    failures.append(RepoFailure(plan.remote.label, f"{plan.entry.install_name}: {e}"))
                    continue
                ready.append(_Swap(plan=plan, staged=staged, digest=digest))
            if not ready and not refreshes:
                return []

            backups = tmp / "old"
            backups.mkdir()
            try:
                for swap in ready:
                    dest = self.install_dir(swap.plan.entry.install_name)
                    swap.backup = backups / swap.plan.entry.install_name
                    dest.rename(swap.backup)
                    swap.staged.rename(dest)
                    swap.swapped = True
                for swap in ready:
                    lock.replace_entry(swap.plan.entry.with_commit(swap.plan.new_commit, swap.digest))
                for refresh in refreshes:
                    lock.replace_entry(refresh.entry.with_commit(refresh.new_commit, refresh.digest))
                lock.touch()
                self.save_lock(lock)
            except Exception:
                self._rollback(ready)
                raise
        for swap in ready:
            logger.info(
                "upgraded %s %s -> %s",
                swap.plan.entry.install_name,
                short_sha(swap.plan.entry.commit),
                short_sha(swap.plan.new_commit),
            )
        for refresh in refreshes:
            logger.info(
                "relocked %s at %s (local tree matches upstream)",
                refresh.entry.install_name,
                short_sha(refresh.new_commit),
            )
        return ready

    def _rollback(self, swaps: list[_Swap]) -> None:
        for swap in reversed(swaps):
            dest = self.install_dir(swap.plan.entry.install_name)
            if swap.swapped:
                remove_tree(dest)
            if swap.backup is not None and swap.backup.exists() and not dest.exists():
                swap.backup.rename(dest)

    def replace_install(self, install_name: str, source: Source, commit: str) -> str:
        """Swap an install directory for the tree at `commit`, restoring the old tree on failure."""
        dest = self.install_dir(install_name)
        with self._staging() as tmp:
            staged = tmp / "new" / install_name
            digest = self._export(source.remote(), commit, source.skill_path, staged)
            backup = tmp / "old" / install_name
            backup.parent.mkdir()
            had_existing = dest.exists()
            if had_existing:
                dest.rename(backup)
            try:
                staged.rename(dest)
            except OSError:
                if had_existing:
                    backup.rename(dest)
                raise
        return digest

    def remove(self, install_name: str, *, force: bool = False) -> RemoveResult:
        lock = self.load_lock()
        entry = self._require_entry(lock, install_name)
        state = self.state_of(entry)
        if state is InstallState.MODIFIED and not force:
            raise ModifiedStateError(
                f"'{install_name}' has local modifications. Run 'skillpin sync-back {install_name}' to publish them, "
                f"or re-run with --force to discard them."
            )
        if state is InstallState.MISSING and not force:
            raise MissingCacheError(
                f"Install directory for '{install_name}' is missing. Run 'skillpin doctor --apply' to rebuild it first, "
                f"or re-run with --force to drop the lock entry."
            )
        dest = self.install_dir(install_name)
        removed_dir = dest.exists()
        lock.drop(install_name)
        lock.touch()
        self.save_lock(lock)
        if removed_dir:
            shutil.rmtree(dest)
        return RemoveResult(install_name=install_name, removed_dir=removed_dir)
