from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable

from .errors import PublishError
from .remote import RemoteRef

logger = logging.getLogger(__name__)

AUTO_MERGE_TIMEOUT_ENV = "SKILLPIN_AUTO_MERGE_TIMEOUT_MS"
AUTO_MERGE_POLL_ENV = "SKILLPIN_AUTO_MERGE_POLL_MS"
DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_POLL_MS = 2_000

Runner = Callable[[list[str]], subprocess.CompletedProcess]


def _ms_from_env(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def auto_merge_timeout_ms() -> int:
    return _ms_from_env(AUTO_MERGE_TIMEOUT_ENV, DEFAULT_TIMEOUT_MS)


def auto_merge_poll_ms() -> int:
    return _ms_from_env(AUTO_MERGE_POLL_ENV, DEFAULT_POLL_MS)


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    merge_state_status: str | None = None
    mergeable: str | None = None

    @property
    def conflicted(self) -> bool:
        return (self.merge_state_status or "").upper() == "DIRTY" or (self.mergeable or "").upper() == "CONFLICTING"


@dataclass(frozen=True)
class ReviewOutcome:
    pr: PullRequest
    created: bool
    auto_merge_armed: bool
    merged_commit: str | None
    messages: tuple[str, ...] = ()


def _failure_detail(proc: subprocess.CompletedProcess[str]) -> str:
    detail = (proc.stderr or "").strip() or (proc.stdout or "").strip()
    return detail or f"exit status {proc.returncode}"


def auto_merge_tip(reason: str, remote: RemoteRef) -> str | None:
    if "enablepullrequestautomerge" not in reason.lower():
        return None
    slug = remote.label
    if remote.host.lower() == "github.com":
        cmd = f"gh repo edit {slug} --enable-auto-merge"
    else:
        cmd = f"gh repo edit -R {remote.host}/{slug} --enable-auto-merge"
    return (
        f"Tip: enable auto-merge with `{cmd}` or toggle Auto-merge under Settings > General "
        f"(https://{remote.host}/{slug}/settings)."
    )


class GhReview:
    """
    Pull-request automation through the `gh` CLI.

    `runner` receives the argument list after `gh`; tests pass a fake.
    """

    def __init__(
        self,
        remote: RemoteRef,
        *,
        binary: str = "gh",
        runner: Runner | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.remote = remote
        self.binary = binary
        self._runner = runner
        self._sleep = sleep
        self._clock = clock

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        full = [*args, "-R", self.remote.selector]
        logger.debug("running: %s %s", self.binary, " ".join(full))
        if self._runner is not None:
            return self._runner(full)
        try:
            return subprocess.run([self.binary, *full], capture_output=True, text=True, check=False)
        except OSError as e:
            raise PublishError(f"Unable to run {self.binary}: {e}") from e

    def _json(self, args: list[str], *, what: str) -> Any:
        proc = self._run(args)
        if proc.returncode != 0:
            raise PublishError(f"gh {what} failed: {_failure_detail(proc)}")
        try:
            return json.loads(proc.stdout or "null")
        except json.JSONDecodeError as e:
            raise PublishError(f"gh {what} returned invalid JSON: {e}") from e

    def find_pr(self, branch: str) -> PullRequest | None:
        data = self._json(
            [
                "pr",
                "list",
                "--state",
                "all",
                "--head",
                branch,
                "--limit",
                "1",
                "--json",
                "number,url,mergeStateStatus,mergeable",
            ],
            what="pr list",
        )
        if not isinstance(data, list) or not data:
            return None
        item = data[-1]
        if not isinstance(item, dict) or not isinstance(item.get("number"), int):
            return None
        return PullRequest(
            number=item["number"],
            url=str(item.get("url", "")),
            merge_state_status=item.get("mergeStateStatus"),
            mergeable=item.get("mergeable"),
        )

    def create_pr(self, branch: str) -> None:
        proc = self._run(["pr", "create", "--fill", "--head", branch])
        if proc.returncode != 0:
            raise PublishError(f"gh pr create failed: {_failure_detail(proc)}")

    def ensure_pr(self, branch: str) -> tuple[PullRequest, bool]:
        existing = self.find_pr(branch)
        if existing is not None:
            return existing, False
        self.create_pr(branch)
        created = self.find_pr(branch)
        if created is None:
            raise PublishError(f"gh pr create succeeded but no pull request was found for branch '{branch}'.")
        return created, True

    def arm_auto_merge(self, pr: PullRequest) -> str | None:
        """Returns None when auto-merge was armed, else the reason it was not."""
        if pr.conflicted:
            return "conflicts"
        proc = self._run(["pr", "merge", str(pr.number), "--auto", "--merge"])
        if proc.returncode != 0:
            return _failure_detail(proc)
        return None

    def merge_status(self, pr: PullRequest) -> tuple[str, str | None]:
        data = self._json(["pr", "view", str(pr.number), "--json", "state,mergeCommit"], what="pr view")
        if not isinstance(data, dict):
            return "", None
        state = str(data.get("state") or "").upper()
        merge_commit = data.get("mergeCommit")
        oid = merge_commit.get("oid") if isinstance(merge_commit, dict) else None
        return state, oid if isinstance(oid, str) and oid else None

    def wait_for_merge(self, pr: PullRequest, *, timeout_ms: int, poll_ms: int) -> str | None:
        deadline = self._clock() + timeout_ms / 1000.0
        while True:
            state, oid = self.merge_status(pr)
            if state == "MERGED" and oid:
                return oid
            if state == "CLOSED":
                return None
            if self._clock() >= deadline:
                return None
            self._sleep(poll_ms / 1000.0)

    def run(self, branch: str, *, wait: bool = True) -> ReviewOutcome:
        pr, created = self.ensure_pr(branch)
        messages = [f"{'Opened' if created else 'Reusing'} PR {pr.url} for branch '{branch}'."]

        reason = self.arm_auto_merge(pr)
        if reason == "conflicts":
            messages.append(f"Auto-merge blocked by conflicts. Resolve manually: {pr.url}")
        elif reason is not None:
            messages.append(f"Auto-merge skipped for {pr.url} ({reason}).")
            tip = auto_merge_tip(reason, self.remote)
            if tip:
                messages.append(tip)
        else:
            messages.append(f"Auto-merge armed; {pr.url} will land once required checks pass.")

        merged: str | None = None
        if reason is None and wait:
            try:
                merged = self.wait_for_merge(pr, timeout_ms=auto_merge_timeout_ms(), poll_ms=auto_merge_poll_ms())
            except PublishError as e:
                messages.append(f"Unable to confirm the merged commit for {pr.url}: {e}")

        return ReviewOutcome(
            pr=pr,
            created=created,
            auto_merge_armed=reason is None,
            merged_commit=merged,
            messages=tuple(messages),
        )
