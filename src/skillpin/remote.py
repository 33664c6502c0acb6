from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlsplit

from .context import Context
from .errors import GitError, RepoResolutionError
from .git import GitBackend

logger = logging.getLogger(__name__)

LOCAL_HOST = "local"
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
_SCP_RE = re.compile(r"^(?:(?P<user>[^@/]+)@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")


@dataclass(frozen=True)
class RemoteRef:
    url: str
    host: str
    owner: str
    repo: str
    protocol: str  # "ssh" | "https" | "file"

    @property
    def is_local(self) -> bool:
        return self.host == LOCAL_HOST

    @property
    def label(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def selector(self) -> str:
        """`host/owner/repo`, the form `gh -R` accepts for any host."""
        return f"{self.host}/{self.owner}/{self.repo}"

    def https_fallback(self) -> str | None:
        if self.is_local or not self.host or not self.owner or not self.repo:
            return None
        return f"https://{self.host}/{self.owner}/{self.repo}.git"

    def clone_candidates(self) -> list[str]:
        urls = [self.url]
        fallback = self.https_fallback()
        if fallback and fallback != self.url:
            urls.append(fallback)
        return urls


def _strip_git_suffix(name: str) -> str:
    return name[: -len(".git")] if name.endswith(".git") else name


def _owner_repo_from_path(path: str, *, original: str) -> tuple[str, str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2:
        raise RepoResolutionError(f"Cannot parse owner/repo from {original!r}. Expected .../<owner>/<repo>[.git].")
    owner, repo = parts[0], _strip_git_suffix(parts[1])
    if not owner or not repo:
        raise RepoResolutionError(f"Cannot parse owner/repo from {original!r}.")
    return owner, repo


def _local_ref(path: Path, *, url: str) -> RemoteRef:
    repo = _strip_git_suffix(path.name) or "repo"
    owner = path.parent.name or LOCAL_HOST
    return RemoteRef(url=url, host=LOCAL_HOST, owner=owner, repo=repo, protocol="file")


def parse_repo_input(
    value: str,
    *,
    https: bool = False,
    default_host: str = "github.com",
    base: Path | None = None,
) -> RemoteRef:
    """
    Parse a repository reference as typed by a user.

    Accepted forms:
      @owner/repo                    (ssh or https on default_host)
      https://host/owner/repo[.git]
      ssh://[user@]host[:port]/owner/repo[.git]
      [user@]host:owner/repo[.git]   (scp-like)
      file:///path/to/repo, /path/to/repo, ./relative/repo

    Relative local paths are resolved against `base` (the process working
    directory when omitted).
    """
    raw = value.strip()
    if not raw:
        raise RepoResolutionError("Repository reference is empty. Use @owner/repo or a git URL.")

    if raw.startswith("@"):
        owner, sep, repo = raw[1:].partition("/")
        repo = _strip_git_suffix(repo.strip("/"))
        if not sep or not owner or not repo or "/" in repo:
            raise RepoResolutionError(f"Expected @owner/repo, got {raw!r}.")
        if https:
            url = f"https://{default_host}/{owner}/{repo}.git"
        else:
            url = f"git@{default_host}:{owner}/{repo}.git"
        return RemoteRef(url=url, host=default_host, owner=owner, repo=repo, protocol="https" if https else "ssh")

    if "://" in raw:
        parts = urlsplit(raw)
        scheme = parts.scheme.lower()
        if scheme == "file":
            path = Path(unquote(parts.path))
            return _local_ref(path, url=raw)
        if scheme not in ("https", "http", "ssh", "git"):
            raise RepoResolutionError(f"Unsupported URL scheme {scheme!r} in {raw!r}.")
        if not parts.hostname:
            raise RepoResolutionError(f"Missing host in {raw!r}.")
        owner, repo = _owner_repo_from_path(parts.path, original=raw)
        protocol = "ssh" if scheme == "ssh" else "https"
        return RemoteRef(url=raw, host=parts.hostname, owner=owner, repo=repo, protocol=protocol)

    candidate = Path(raw).expanduser()
    if not candidate.is_absolute() and base is not None:
        candidate = base / candidate
    if raw.startswith((".", "/", "~")) or candidate.exists():
        path = candidate.resolve()
        return _local_ref(path, url=str(path))

    m = _SCP_RE.match(raw)
    if m:
        owner, repo = _owner_repo_from_path(m.group("path"), original=raw)
        return RemoteRef(url=raw, host=m.group("host"), owner=owner, repo=repo, protocol="ssh")

    raise RepoResolutionError(
        f"Unable to parse repository {raw!r}. Use @owner/repo, an https/ssh URL, or a local path."
    )


def is_local_source(url: str, host: str) -> bool:
    """True for sources only this machine can fetch: local paths, file:// URLs and loopback hosts."""
    if host == LOCAL_HOST or url.lower().startswith("file://"):
        return True
    if "://" in url:
        hostname = urlsplit(url).hostname or ""
    else:
        m = _SCP_RE.match(url)
        hostname = m.group("host") if m else ""
    return hostname.strip("[]").lower() in LOOPBACK_HOSTS


def cache_path_for(cache_root: Path, ref: RemoteRef) -> Path:
    if ref.is_local:
        # Two local repositories may share owner/repo names.
        suffix = hashlib.sha256(ref.url.encode("utf-8")).hexdigest()[:12]
        return cache_root / LOCAL_HOST / ref.owner / f"{ref.repo}-{suffix}"
    return cache_root / ref.host / ref.owner / ref.repo


@dataclass(frozen=True)
class RefreshOutcome:
    path: Path
    cloned: bool = False
    stale: bool = False
    error: str | None = None


@dataclass(frozen=True)
class ResolvedCommit:
    commit: str
    branch: str | None
    pinned: bool


class RepoCache:
    """
    Per-user mirrors of remote repositories, keyed by host/owner/repo.

    Everything here writes only below `ctx.cache_root`.
    """

    def __init__(self, ctx: Context, git: GitBackend) -> None:
        self.ctx = ctx
        self.git = git

    def path_for(self, ref: RemoteRef) -> Path:
        return cache_path_for(self.ctx.cache_root, ref)

    def is_cached(self, ref: RemoteRef) -> bool:
        return (self.path_for(ref) / ".git").exists()

    def _clone(self, ref: RemoteRef, dest: Path) -> None:
        errors: list[str] = []
        for url in ref.clone_candidates():
            try:
                self.git.clone(url, dest)
                return
            except GitError as e:
                errors.append(str(e))
                logger.debug("clone of %s failed: %s", url, e)
        raise RepoResolutionError(
            f"Unable to clone {ref.label} ({ref.url}): {'; '.join(errors)}. "
            "Check the URL and your access, then retry."
        )

    def ensure(self, ref: RemoteRef) -> RefreshOutcome:
        """
        Clone the mirror when absent, otherwise fetch with pruning.

        A failed fetch on an existing mirror is not fatal; the outcome is
        marked stale and the old mirror stays usable.
        """
        dest = self.path_for(ref)
        if not (dest / ".git").exists():
            self._clone(ref, dest)
            return RefreshOutcome(path=dest, cloned=True)
        try:
            self.git.fetch(dest)
        except GitError as e:
            logger.info("could not refresh %s, using cached copy: %s", ref.label, e)
            return RefreshOutcome(path=dest, stale=True, error=str(e))
        return RefreshOutcome(path=dest)

    def default_branch(self, ref: RemoteRef) -> str:
        repo_dir = self.path_for(ref)
        branch = self.git.symbolic_head(repo_dir)
        if branch:
            return branch
        try:
            branch = self.git.remote_default_branch(ref.url)
        except GitError as e:
            raise RepoResolutionError(
                f"Unable to determine the default branch of {ref.label}: {e}. "
                "Pass --ref <branch> explicitly."
            ) from e
        try:
            self.git.set_head(repo_dir, branch)
        except GitError as e:
            logger.warning("could not record default branch %s for %s: %s", branch, ref.label, e)
        return branch

    def is_tracked(self, ref: RemoteRef, constraint: str | None) -> bool:
        if constraint is None:
            return True
        return self.git.remote_branch_exists(self.path_for(ref), constraint)

    def ref_exists(self, ref: RemoteRef, constraint: str) -> bool:
        """True when `constraint` names a branch, tag or commit known to the mirror."""
        repo_dir = self.path_for(ref)
        if self.git.remote_branch_exists(repo_dir, constraint):
            return True
        try:
            self.git.rev_parse(repo_dir, constraint)
        except GitError:
            return False
        return True

    def resolve_commit(self, ref: RemoteRef, constraint: str | None) -> ResolvedCommit:
        """
        Resolve a ref constraint against the mirror.

        None follows the default branch, a branch name follows that branch,
        and anything else (tag or commit) is pinned to the commit it names.
        """
        repo_dir = self.path_for(ref)
        if constraint is None or self.git.remote_branch_exists(repo_dir, constraint):
            branch = constraint or self.default_branch(ref)
            try:
                commit = self.git.rev_parse(repo_dir, f"refs/remotes/origin/{branch}")
            except GitError as e:
                raise RepoResolutionError(f"Branch {branch!r} not found in {ref.label}: {e}") from e
            return ResolvedCommit(commit=commit, branch=branch, pinned=False)
        try:
            commit = self.git.rev_parse(repo_dir, constraint)
        except GitError as e:
            raise RepoResolutionError(
                f"Ref {constraint!r} not found in {ref.label}. Run 'skillpin update' if it was pushed recently."
            ) from e
        return ResolvedCommit(commit=commit, branch=None, pinned=True)

    def cached_tip(self, ref: RemoteRef, constraint: str | None) -> str | None:
        """Tip of a tracked constraint from the mirror as-is (no network); None when pinned or unknown."""
        repo_dir = self.path_for(ref)
        if not (repo_dir / ".git").exists():
            return None
        branch = constraint
        if branch is None:
            branch = self.git.symbolic_head(repo_dir)
            if branch is None:
                return None
        elif not self.git.remote_branch_exists(repo_dir, branch):
            return None
        try:
            return self.git.rev_parse(repo_dir, f"refs/remotes/origin/{branch}")
        except GitError:
            return None

    def has_commit(self, ref: RemoteRef, commit: str) -> bool:
        return self.git.has_object(self.path_for(ref), commit)
