from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Protocol

from .errors import GitError
from .fsops import extract_tar

logger = logging.getLogger(__name__)


class GitBackend(Protocol):
    """
    The narrow set of version-control capabilities the engine relies on.

    `GitCLI` shells out to the `git` binary; tests substitute an in-memory
    implementation.
    """

    def toplevel(self, path: Path) -> Path | None:
        ...

    def clone(self, url: str, dest: Path) -> None:
        ...

    def fetch(self, repo_dir: Path) -> None:
        ...

    def symbolic_head(self, repo_dir: Path) -> str | None:
        ...

    def remote_default_branch(self, url: str) -> str:
        ...

    def set_head(self, repo_dir: Path, branch: str) -> None:
        ...

    def rev_parse(self, repo_dir: Path, rev: str) -> str:
        ...

    def remote_branch_exists(self, repo_dir: Path, branch: str) -> bool:
        ...

    def has_object(self, repo_dir: Path, oid: str) -> bool:
        ...

    def list_files(self, repo_dir: Path, commit: str) -> list[str]:
        ...

    def read_file(self, repo_dir: Path, commit: str, path: str) -> bytes | None:
        ...

    def export_tree(self, repo_dir: Path, commit: str, subdir: str, dest: Path) -> None:
        ...

    def worktree_add(self, repo_dir: Path, path: Path, branch: str, commit: str) -> None:
        ...

    def worktree_remove(self, repo_dir: Path, path: Path) -> bool:
        ...

    def delete_branch(self, repo_dir: Path, branch: str) -> bool:
        ...

    def commit_all(self, worktree: Path, message: str) -> str | None:
        ...

    def push(self, worktree: Path, branch: str) -> None:
        ...

    def diff_dirs(self, local: Path, remote: Path) -> str:
        ...


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace").strip()


class GitCLI:
    def __init__(self, binary: str = "git") -> None:
        self.binary = binary

    def _run(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[bytes]:
        cmd = [self.binary, *args]
        logger.debug("running: %s", " ".join(cmd))
        env = dict(os.environ)
        env.setdefault("GIT_TERMINAL_PROMPT", "0")
        try:
            proc = subprocess.run(cmd, cwd=str(cwd) if cwd else None, capture_output=True, env=env, check=False)
        except FileNotFoundError as e:
            raise GitError(f"git executable not found: {self.binary}. Install git and retry.") from e
        if check and proc.returncode != 0:
            detail = _decode(proc.stderr) or _decode(proc.stdout) or f"exit status {proc.returncode}"
            raise GitError(f"git {' '.join(args)} failed: {detail}")
        return proc

    def _git_c(self, repo_dir: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[bytes]:
        return self._run(["-C", str(repo_dir), *args], check=check)

    def toplevel(self, path: Path) -> Path | None:
        proc = self._git_c(path, "rev-parse", "--show-toplevel", check=False)
        if proc.returncode != 0:
            return None
        out = _decode(proc.stdout)
        return Path(out) if out else None

    def clone(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        self._run(["clone", "--quiet", url, str(dest)])

    def fetch(self, repo_dir: Path) -> None:
        self._git_c(repo_dir, "fetch", "--prune", "--quiet")

    def symbolic_head(self, repo_dir: Path) -> str | None:
        proc = self._git_c(repo_dir, "symbolic-ref", "-q", "refs/remotes/origin/HEAD", check=False)
        if proc.returncode != 0:
            return None
        ref = _decode(proc.stdout)
        branch = ref.removeprefix("refs/remotes/origin/")
        if not branch or branch == ref:
            return None
        if not self.remote_branch_exists(repo_dir, branch):
            return None
        return branch

    def remote_default_branch(self, url: str) -> str:
        proc = self._run(["ls-remote", "--symref", url, "HEAD"])
        for line in _decode(proc.stdout).splitlines():
            if not line.startswith("ref: ") or not line.endswith("\tHEAD"):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            branch = parts[1].removeprefix("refs/heads/")
            if branch:
                return branch
        raise GitError(f"Unable to determine the default branch of {url} from ls-remote output.")

    def set_head(self, repo_dir: Path, branch: str) -> None:
        self._git_c(repo_dir, "remote", "set-head", "origin", branch)

    def rev_parse(self, repo_dir: Path, rev: str) -> str:
        proc = self._git_c(repo_dir, "rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}", check=False)
        if proc.returncode != 0:
            raise GitError(f"Unable to resolve {rev!r} in {repo_dir}.")
        return _decode(proc.stdout)

    def remote_branch_exists(self, repo_dir: Path, branch: str) -> bool:
        proc = self._git_c(repo_dir, "show-ref", "--verify", "--quiet", f"refs/remotes/origin/{branch}", check=False)
        return proc.returncode == 0

    def has_object(self, repo_dir: Path, oid: str) -> bool:
        if not (repo_dir / ".git").exists():
            return False
        proc = self._git_c(repo_dir, "cat-file", "-e", f"{oid}^{{commit}}", check=False)
        return proc.returncode == 0

    def list_files(self, repo_dir: Path, commit: str) -> list[str]:
        proc = self._git_c(repo_dir, "ls-tree", "-r", "--name-only", "-z", commit)
        raw = proc.stdout.decode("utf-8", errors="surrogateescape")
        return [p for p in raw.split("\0") if p]

    def read_file(self, repo_dir: Path, commit: str, path: str) -> bytes | None:
        proc = self._git_c(repo_dir, "show", f"{commit}:{path}", check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout

    def export_tree(self, repo_dir: Path, commit: str, subdir: str, dest: Path) -> None:
        args = ["archive", "--format=tar", commit]
        if subdir != ".":
            args += ["--", subdir]
        proc = self._git_c(repo_dir, *args)
        extract_tar(proc.stdout, dest, prefix=subdir)

    def worktree_add(self, repo_dir: Path, path: Path, branch: str, commit: str) -> None:
        self._git_c(repo_dir, "worktree", "add", "--quiet", "-b", branch, str(path), commit)

    def worktree_remove(self, repo_dir: Path, path: Path) -> bool:
        proc = self._git_c(repo_dir, "worktree", "remove", "--force", str(path), check=False)
        if proc.returncode != 0:
            logger.warning("git worktree remove failed for %s: %s", path, _decode(proc.stderr))
            self._git_c(repo_dir, "worktree", "prune", check=False)
            return False
        return True

    def delete_branch(self, repo_dir: Path, branch: str) -> bool:
        proc = self._git_c(repo_dir, "branch", "-D", branch, check=False)
        return proc.returncode == 0

    def commit_all(self, worktree: Path, message: str) -> str | None:
        self._git_c(worktree, "add", "-A")
        staged = self._git_c(worktree, "diff", "--cached", "--quiet", check=False)
        if staged.returncode == 0:
            return None
        self._git_c(worktree, "commit", "--quiet", "-m", message)
        return self.rev_parse(worktree, "HEAD")

    def push(self, worktree: Path, branch: str) -> None:
        self._git_c(worktree, "push", "--quiet", "-u", "origin", branch)

    def diff_dirs(self, local: Path, remote: Path) -> str:
        proc = self._run(
            [
                "--no-pager",
                "-c",
                "core.autocrlf=false",
                "diff",
                "--no-index",
                "--src-prefix=local/",
                "--dst-prefix=remote/",
                "--",
                str(local),
                str(remote),
            ],
            check=False,
        )
        if proc.returncode == 0:
            return ""
        if proc.returncode == 1:
            return proc.stdout.decode("utf-8", errors="replace")
        raise GitError(f"git diff exited with status {proc.returncode}: {_decode(proc.stderr)}")
