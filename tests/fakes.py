import difflib
import hashlib
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from skillpin.errors import GitError


@dataclass
class FakeCommit:
    sha: str
    files: dict[str, bytes]
    parent: str | None = None
    message: str = ""


@dataclass
class FakeRemote:
    url: str
    default_branch: str = "main"
    branches: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    commits: set[str] = field(default_factory=set)
    reachable: bool = True
    reject_push: bool = False
    pushes: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class FakeClone:
    url: str
    branches: dict[str, str]
    tags: dict[str, str]
    known: set[str]
    head: str | None
    local_branches: dict[str, str] = field(default_factory=dict)


@dataclass
class FakeWorktree:
    repo_dir: Path
    branch: str
    head: str


class FakeGit:
    """In-memory stand-in for GitCLI. Clones and worktrees still exist on disk as directories."""

    def __init__(self) -> None:
        self.objects: dict[str, FakeCommit] = {}
        self.remotes: dict[str, FakeRemote] = {}
        self.clones: dict[Path, FakeClone] = {}
        self.worktrees: dict[Path, FakeWorktree] = {}
        self.calls: list[str] = []
        self._counter = 0

    # -- fixture helpers -------------------------------------------------

    def add_remote(self, url: str, *, default_branch: str = "main") -> FakeRemote:
        remote = FakeRemote(url=url, default_branch=default_branch)
        self.remotes[url] = remote
        return remote

    def _new_commit(self, files: dict[str, bytes], parent: str | None, message: str) -> str:
        self._counter += 1
        h = hashlib.sha1(f"{self._counter}:{message}:{parent}".encode())
        for path in sorted(files):
            h.update(path.encode() + b"\0" + files[path])
        sha = h.hexdigest()
        self.objects[sha] = FakeCommit(sha=sha, files=dict(files), parent=parent, message=message)
        return sha

    def commit(
        self,
        url: str,
        files: dict[str, str | bytes],
        *,
        branch: str = "main",
        remove: tuple[str, ...] = (),
        message: str = "commit",
    ) -> str:
        remote = self.remotes[url]
        parent = remote.branches.get(branch)
        tree = dict(self.objects[parent].files) if parent else {}
        for path in remove:
            tree.pop(path, None)
        for path, data in files.items():
            tree[path] = data.encode() if isinstance(data, str) else data
        sha = self._new_commit(tree, parent, message)
        remote.branches[branch] = sha
        remote.commits.add(sha)
        return sha

    def tag(self, url: str, name: str, sha: str) -> None:
        self.remotes[url].tags[name] = sha

    def merge(self, url: str, source_branch: str, *, into: str | None = None) -> str:
        remote = self.remotes[url]
        into = into or remote.default_branch
        files = dict(self.objects[remote.branches[source_branch]].files)
        sha = self._new_commit(files, remote.branches.get(into), f"Merge {source_branch}")
        remote.branches[into] = sha
        remote.commits.add(sha)
        return sha

    def forget(self, repo_dir: Path, sha: str) -> None:
        self.clones[repo_dir].known.discard(sha)

    # -- helpers ---------------------------------------------------------

    def _remote(self, url: str) -> FakeRemote:
        remote = self.remotes.get(url)
        if remote is None or not remote.reachable:
            raise GitError(f"fatal: could not read from remote repository '{url}'")
        return remote

    def _clone(self, repo_dir: Path) -> FakeClone:
        clone = self.clones.get(Path(repo_dir))
        if clone is None:
            raise GitError(f"fatal: not a git repository: {repo_dir}")
        return clone

    def _commit_in(self, repo_dir: Path, commit: str) -> FakeCommit:
        clone = self._clone(repo_dir)
        if commit not in clone.known:
            raise GitError(f"fatal: bad object {commit}")
        return self.objects[commit]

    # -- GitBackend ------------------------------------------------------

    def toplevel(self, path: Path) -> Path | None:
        self.calls.append("toplevel")
        return Path(path)

    def clone(self, url: str, dest: Path) -> None:
        self.calls.append(f"clone {url}")
        remote = self._remote(url)
        (dest / ".git").mkdir(parents=True, exist_ok=True)
        self.clones[Path(dest)] = FakeClone(
            url=url,
            branches=dict(remote.branches),
            tags=dict(remote.tags),
            known=set(remote.commits),
            head=remote.default_branch,
        )

    def fetch(self, repo_dir: Path) -> None:
        self.calls.append(f"fetch {repo_dir}")
        clone = self._clone(repo_dir)
        remote = self._remote(clone.url)
        clone.branches = dict(remote.branches)
        clone.tags = dict(remote.tags)
        clone.known |= remote.commits

    def symbolic_head(self, repo_dir: Path) -> str | None:
        clone = self._clone(repo_dir)
        if clone.head and clone.head in clone.branches:
            return clone.head
        return None

    def remote_default_branch(self, url: str) -> str:
        return self._remote(url).default_branch

    def set_head(self, repo_dir: Path, branch: str) -> None:
        self._clone(repo_dir).head = branch

    def rev_parse(self, repo_dir: Path, rev: str) -> str:
        wt = self.worktrees.get(Path(repo_dir))
        if wt is not None and rev == "HEAD":
            return wt.head
        clone = self._clone(repo_dir)
        if rev.startswith("refs/remotes/origin/"):
            branch = rev[len("refs/remotes/origin/") :]
            if branch in clone.branches:
                return clone.branches[branch]
        elif rev in clone.tags:
            return clone.tags[rev]
        elif rev in clone.known:
            return rev
        else:
            matches = [sha for sha in clone.known if len(rev) >= 4 and sha.startswith(rev)]
            if len(matches) == 1:
                return matches[0]
        raise GitError(f"fatal: ambiguous argument '{rev}'")

    def remote_branch_exists(self, repo_dir: Path, branch: str) -> bool:
        return branch in self._clone(repo_dir).branches

    def has_object(self, repo_dir: Path, oid: str) -> bool:
        clone = self.clones.get(Path(repo_dir))
        return clone is not None and oid in clone.known

    def list_files(self, repo_dir: Path, commit: str) -> list[str]:
        return sorted(self._commit_in(repo_dir, commit).files)

    def read_file(self, repo_dir: Path, commit: str, path: str) -> bytes | None:
        return self._commit_in(repo_dir, commit).files.get(path)

    def export_tree(self, repo_dir: Path, commit: str, subdir: str, dest: Path) -> None:
        self.calls.append(f"export {commit[:7]} {subdir}")
        files = self._commit_in(repo_dir, commit).files
        prefix = "" if subdir == "." else subdir.rstrip("/") + "/"
        selected = {p[len(prefix) :]: data for p, data in files.items() if p.startswith(prefix)}
        if not selected:
            raise GitError(f"fatal: pathspec '{subdir}' did not match any files")
        dest.mkdir(parents=True, exist_ok=True)
        for rel, data in selected.items():
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def worktree_add(self, repo_dir: Path, path: Path, branch: str, commit: str) -> None:
        self.calls.append(f"worktree add {branch}")
        clone = self._clone(repo_dir)
        if branch in clone.local_branches:
            raise GitError(f"fatal: a branch named '{branch}' already exists")
        files = self._commit_in(repo_dir, commit).files
        path.mkdir(parents=True)
        (path / ".git").write_text(f"gitdir: {repo_dir}/.git/worktrees/{path.name}\n")
        for rel, data in files.items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        clone.local_branches[branch] = commit
        self.worktrees[Path(path)] = FakeWorktree(repo_dir=Path(repo_dir), branch=branch, head=commit)

    def worktree_remove(self, repo_dir: Path, path: Path) -> bool:
        self.calls.append("worktree remove")
        self.worktrees.pop(Path(path), None)
        shutil.rmtree(path, ignore_errors=True)
        return True

    def delete_branch(self, repo_dir: Path, branch: str) -> bool:
        self.calls.append(f"branch -D {branch}")
        return self._clone(repo_dir).local_branches.pop(branch, None) is not None

    def commit_all(self, worktree: Path, message: str) -> str | None:
        wt = self.worktrees[Path(worktree)]
        files: dict[str, bytes] = {}
        for p in sorted(worktree.rglob("*")):
            rel = p.relative_to(worktree)
            if rel.parts[0] == ".git" or not p.is_file():
                continue
            files[rel.as_posix()] = p.read_bytes()
        if files == self.objects[wt.head].files:
            return None
        sha = self._new_commit(files, wt.head, message)
        clone = self._clone(wt.repo_dir)
        clone.known.add(sha)
        clone.local_branches[wt.branch] = sha
        wt.head = sha
        return sha

    def push(self, worktree: Path, branch: str) -> None:
        self.calls.append(f"push {branch}")
        wt = self.worktrees[Path(worktree)]
        clone = self._clone(wt.repo_dir)
        remote = self._remote(clone.url)
        if remote.reject_push:
            raise GitError(f"! [rejected] {branch} -> {branch} (fetch first)")
        remote.branches[branch] = wt.head
        remote.commits.add(wt.head)
        remote.pushes.append((branch, wt.head))

    def diff_dirs(self, local: Path, remote: Path) -> str:
        def _files(root: Path) -> dict[str, list[str]]:
            return {
                p.relative_to(root).as_posix(): p.read_text(encoding="utf-8").splitlines(keepends=True)
                for p in sorted(root.rglob("*"))
                if p.is_file()
            }

        left, right = _files(local), _files(remote)
        out: list[str] = []
        for rel in sorted(set(left) | set(right)):
            out.extend(
                difflib.unified_diff(
                    left.get(rel, []),
                    right.get(rel, []),
                    fromfile=f"local/{rel}",
                    tofile=f"remote/{rel}",
                )
            )
        return "".join(out)


SKILL_MD = "---\nname: {name}\ndescription: {description}\n---\n\n# {name}\n"


def skill_md(name: str, description: str = "A test skill") -> str:
    return SKILL_MD.format(name=name, description=description)
