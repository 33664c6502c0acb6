from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import ConfigurationError, RepoResolutionError, UnitNotFoundError
from .lockfile import RepoEntry
from .manager import SkillManager
from .remote import RemoteRef
from .skills import SkillDescriptor, discover_skills

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoRow:
    alias: str
    label: str
    url: str
    skills: int | None
    stale: bool


@dataclass(frozen=True)
class SearchHit:
    repo: str
    skill: SkillDescriptor


def default_alias(remote: RemoteRef, *, default_host: str) -> str:
    if remote.host == default_host:
        return remote.label
    return f"{remote.host}:{remote.label}"


class RepoRegistry:
    """Named source repositories recorded in the lockfile for discovery."""

    def __init__(self, manager: SkillManager) -> None:
        self.manager = manager
        self.cache = manager.cache
        self.git = manager.git

    def _catalog(self, remote: RemoteRef) -> list[SkillDescriptor]:
        resolved = self.cache.resolve_commit(remote, None)
        return discover_skills(self.git, self.cache.path_for(remote), resolved.commit)

    def add(self, repo: str, *, alias: str | None = None, https: bool = False) -> tuple[RepoEntry, int]:
        lock = self.manager.load_lock()
        remote = self.manager.resolve_remote(repo, https=https, lock=lock)
        alias = alias or default_alias(remote, default_host=self.manager.config.default_host)
        existing = lock.find_repo(alias)
        if existing is not None and existing.url != remote.url:
            raise ConfigurationError(
                f"Alias '{alias}' already points at {existing.url}. Run 'skillpin repo remove {alias}' first."
            )
        self.cache.ensure(remote)
        count = len(self._catalog(remote))
        entry = RepoEntry(alias=alias, url=remote.url, host=remote.host, owner=remote.owner, repo=remote.repo)
        if existing is None:
            lock.repos.append(entry)
            lock.repos.sort(key=lambda r: r.alias)
            lock.touch()
            self.manager.save_lock(lock)
        return entry, count

    def list_repos(self) -> list[RepoRow]:
        lock = self.manager.load_lock()
        rows: list[RepoRow] = []
        for repo in lock.repos:
            remote = repo.remote()
            count: int | None = None
            stale = False
            try:
                outcome = self.cache.ensure(remote)
                stale = outcome.stale
                count = len(self._catalog(remote))
            except RepoResolutionError as e:
                logger.warning("could not read %s: %s", remote.label, e)
                stale = True
            rows.append(RepoRow(alias=repo.alias, label=remote.label, url=repo.url, skills=count, stale=stale))
        return rows

    def remove(self, alias: str) -> RepoEntry:
        lock = self.manager.load_lock()
        repo = lock.find_repo(alias)
        if repo is None:
            raise UnitNotFoundError(f"No registered repo '{alias}'. Run 'skillpin repo list' to see registered repos.")
        dependents = [e.install_name for e in lock.skills if e.source.url == repo.url]
        if dependents:
            raise ConfigurationError(
                f"Cannot remove '{alias}': installed skills depend on it ({', '.join(dependents)}). "
                f"Run 'skillpin remove <name>' for each first."
            )
        lock.repos = [r for r in lock.repos if r.alias != alias]
        lock.touch()
        self.manager.save_lock(lock)
        return repo

    def catalog(self, repo: str, *, https: bool = False) -> list[SkillDescriptor]:
        remote = self.manager.resolve_remote(repo, https=https)
        self.cache.ensure(remote)
        return self._catalog(remote)

    def search(self, query: str, *, repo: str | None = None) -> list[SearchHit]:
        lock = self.manager.load_lock()
        if repo is not None:
            registered = lock.find_repo(repo)
            targets = [registered] if registered is not None else []
            if not targets:
                raise UnitNotFoundError(f"No registered repo '{repo}'. Run 'skillpin repo add {repo}' first.")
        else:
            targets = list(lock.repos)

        needle = query.strip().lower()
        hits: list[SearchHit] = []
        for entry in targets:
            remote = entry.remote()
            try:
                self.cache.ensure(remote)
                skills = self._catalog(remote)
            except RepoResolutionError as e:
                logger.warning("skipping %s: %s", entry.alias, e)
                continue
            for skill in skills:
                haystack = f"{skill.name}\n{skill.path}\n{skill.description}".lower()
                if needle in haystack:
                    hits.append(SearchHit(repo=entry.alias, skill=skill))
        return hits
