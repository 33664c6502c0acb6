import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from fakes import FakeGit, skill_md

from skillpin.config import Config
from skillpin.context import Context
from skillpin.digest import digest_dir
from skillpin.errors import ConfigurationError, FrontmatterError, PublishError
from skillpin.lockfile import InstallState
from skillpin.manager import SkillManager
from skillpin.publish import Publisher, default_branch_name, default_message, mirror_tree
from skillpin.review import PullRequest, ReviewOutcome
from skillpin.tools import ToolStatus, Toolset

URL = "https://github.com/acme/skills.git"
OTHER_URL = "https://github.com/acme/extra.git"
BRANCH = "skillpin/sync/demo/test"

NO_TOOLS = Toolset(
    rsync=ToolStatus.unavailable("rsync", "'rsync' not found on PATH"),
    gh=ToolStatus.unavailable("gh", "'gh' not found on PATH"),
)
GH_ONLY = Toolset(
    rsync=ToolStatus.unavailable("rsync", "'rsync' not found on PATH"),
    gh=ToolStatus.found("gh", "/usr/bin/gh"),
)


class MergingReview:
    """Stands in for GhReview: opens a PR and merges it immediately on the fake remote."""

    def __init__(self, git: FakeGit, url: str) -> None:
        self.git = git
        self.url = url
        self.branches: list[str] = []

    def __call__(self, remote, *, binary):
        return self

    def run(self, branch: str) -> ReviewOutcome:
        self.branches.append(branch)
        merged = self.git.merge(self.url, branch)
        pr = PullRequest(number=7, url="https://github.com/acme/skills/pull/7")
        return ReviewOutcome(pr=pr, created=True, auto_merge_armed=True, merged_commit=merged, messages=("Opened PR.",))


class FailingReview:
    def __call__(self, remote, *, binary):
        return self

    def run(self, branch: str) -> ReviewOutcome:
        raise PublishError("gh pr create failed: HTTP 403")


class PublishTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.project = self.tmp / "project"
        self.project.mkdir()
        ctx = Context(cwd=self.project, cache_root=self.tmp / "cache" / "repos", config_dir=self.tmp / "config")
        self.git = FakeGit()
        self.remote = self.git.add_remote(URL)
        self.base = self.git.commit(
            URL,
            {
                "skills/demo/SKILL.md": skill_md("demo"),
                "skills/demo/run.sh": "echo demo\n",
                "README.md": "# fixtures\n",
            },
        )
        self.manager = SkillManager(ctx, self.git, config=Config())
        self.install_dir = self.project / "skills" / "demo"

    def tearDown(self) -> None:
        self._td.cleanup()

    def clone_dir(self) -> Path:
        return self.manager.cache.path_for(self.manager.resolve_remote(URL))


class TestSyncBackLocked(PublishTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager.install(URL, "demo")

    def test_pushes_branch_and_relocks(self) -> None:
        (self.install_dir / "run.sh").write_text("echo improved\n", encoding="utf-8")
        (self.install_dir / "extra.md").write_text("new file\n", encoding="utf-8")

        result = Publisher(self.manager, tools=NO_TOOLS).sync_back("demo", branch=BRANCH, message="Improve demo")

        self.assertEqual(result.status, "published")
        self.assertEqual(result.branch, BRANCH)
        self.assertEqual(self.remote.pushes, [(BRANCH, result.commit)])
        pushed = self.git.objects[result.commit or ""]
        self.assertEqual(pushed.parent, self.base)
        self.assertEqual(pushed.message, "Improve demo")
        self.assertEqual(pushed.files["skills/demo/run.sh"], b"echo improved\n")
        self.assertEqual(pushed.files["skills/demo/extra.md"], b"new file\n")
        self.assertEqual(pushed.files["README.md"], b"# fixtures\n")

        entry = self.manager.load_lock().find("demo")
        assert entry is not None
        self.assertEqual(entry.commit, result.commit)
        self.assertEqual(entry.digest, digest_dir(self.install_dir))
        self.assertEqual(self.manager.check()[0].state, InstallState.CLEAN)
        self.assertEqual(self.git.worktrees, {})

        self.assertTrue(any("rsync unavailable" in w for w in result.warnings))
        self.assertTrue(any("Skipping PR automation" in w for w in result.warnings))

    def test_deleted_files_are_removed_upstream(self) -> None:
        (self.install_dir / "run.sh").unlink()
        result = Publisher(self.manager, tools=NO_TOOLS).sync_back("demo", branch=BRANCH, open_pr=False)
        self.assertNotIn("skills/demo/run.sh", self.git.objects[result.commit or ""].files)
        self.assertEqual(result.warnings, ("rsync unavailable ('rsync' not found on PATH); using a recursive copy",))

    def test_nothing_to_publish(self) -> None:
        lock_before = (self.project / "skills.lock.json").read_bytes()
        result = Publisher(self.manager, tools=NO_TOOLS).sync_back("demo", branch=BRANCH)

        self.assertEqual(result.status, "unchanged")
        self.assertEqual(self.remote.pushes, [])
        self.assertEqual(self.git.clones[self.clone_dir()].local_branches, {})
        self.assertEqual(lock_before, (self.project / "skills.lock.json").read_bytes())

    def test_rejected_push_leaves_lock_untouched(self) -> None:
        (self.install_dir / "run.sh").write_text("echo improved\n", encoding="utf-8")
        self.remote.reject_push = True
        lock_before = (self.project / "skills.lock.json").read_bytes()

        with self.assertRaises(PublishError) as cm:
            Publisher(self.manager, tools=NO_TOOLS).sync_back("demo", branch=BRANCH)

        self.assertIn("skillpin update", str(cm.exception))
        self.assertIn("skillpin sync-back demo", str(cm.exception))
        self.assertEqual(lock_before, (self.project / "skills.lock.json").read_bytes())
        self.assertEqual(self.git.clones[self.clone_dir()].local_branches, {})
        self.assertEqual(self.git.worktrees, {})

    def test_existing_branch_name_is_a_publish_error(self) -> None:
        (self.install_dir / "run.sh").write_text("echo improved\n", encoding="utf-8")
        self.git.clones[self.clone_dir()].local_branches[BRANCH] = self.base
        with self.assertRaises(PublishError) as cm:
            Publisher(self.manager, tools=NO_TOOLS).sync_back("demo", branch=BRANCH)
        self.assertIn("--branch", str(cm.exception))

    def test_merged_pull_request_is_adopted(self) -> None:
        (self.install_dir / "run.sh").write_text("echo improved\n", encoding="utf-8")
        review = MergingReview(self.git, URL)

        result = Publisher(self.manager, tools=GH_ONLY, review_factory=review).sync_back("demo", branch=BRANCH)

        merged = self.remote.branches["main"]
        self.assertEqual(review.branches, [BRANCH])
        self.assertEqual(result.commit, merged)
        self.assertEqual(result.pr_url, "https://github.com/acme/skills/pull/7")
        self.assertIn("Opened PR.", result.messages)
        entry = self.manager.load_lock().find("demo")
        assert entry is not None
        self.assertEqual(entry.commit, merged)
        self.assertEqual(entry.digest, digest_dir(self.install_dir))
        self.assertEqual((self.install_dir / "run.sh").read_text(encoding="utf-8"), "echo improved\n")

    def test_review_failure_degrades_to_warning(self) -> None:
        (self.install_dir / "run.sh").write_text("echo improved\n", encoding="utf-8")
        result = Publisher(self.manager, tools=GH_ONLY, review_factory=FailingReview()).sync_back("demo", branch=BRANCH)
        self.assertEqual(result.status, "published")
        self.assertEqual(len(self.remote.pushes), 1)
        self.assertTrue(any("PR automation failed" in w for w in result.warnings))

    def test_locked_entry_cannot_be_redirected(self) -> None:
        self.git.add_remote(OTHER_URL)
        with self.assertRaises(ConfigurationError):
            Publisher(self.manager, tools=NO_TOOLS).sync_back("demo", repo=OTHER_URL)


class TestSyncBackNewSkill(PublishTestCase):
    def setUp(self) -> None:
        super().setUp()
        fresh = self.project / "skills" / "fresh"
        fresh.mkdir(parents=True)
        (fresh / "SKILL.md").write_text(skill_md("fresh", "Brand new"), encoding="utf-8")

    def test_requires_destination(self) -> None:
        with self.assertRaises(ConfigurationError) as cm:
            Publisher(self.manager, tools=NO_TOOLS).sync_back("fresh")
        self.assertIn("default_repo", str(cm.exception))
        self.assertFalse((self.project / "skills.lock.json").exists())

    def test_publishes_and_creates_lock_entry(self) -> None:
        result = Publisher(self.manager, tools=NO_TOOLS).sync_back(
            "fresh", repo=URL, path="skills/fresh", branch="skillpin/sync/fresh/test", open_pr=False
        )

        files = self.git.objects[result.commit or ""].files
        self.assertIn("skills/fresh/SKILL.md", files)
        self.assertIn("skills/demo/SKILL.md", files)
        entry = self.manager.load_lock().find("fresh")
        assert entry is not None
        self.assertEqual(entry.source.skill_path, "skills/fresh")
        self.assertEqual(entry.source.url, URL)
        self.assertIsNone(entry.ref)
        self.assertEqual(entry.digest, digest_dir(self.project / "skills" / "fresh"))

    def test_default_repo_and_path(self) -> None:
        self.manager.config = Config(default_repo=URL)
        result = Publisher(self.manager, tools=NO_TOOLS).sync_back("fresh", open_pr=False)
        self.assertIn("fresh/SKILL.md", self.git.objects[result.commit or ""].files)
        self.assertTrue(result.branch.startswith("skillpin/sync/fresh/"))

    def test_invalid_marker_is_rejected_before_any_git_work(self) -> None:
        (self.project / "skills" / "fresh" / "SKILL.md").write_text("no front matter\n", encoding="utf-8")
        with self.assertRaises(FrontmatterError):
            Publisher(self.manager, tools=NO_TOOLS).sync_back("fresh", repo=URL)
        self.assertEqual(self.git.clones, {})


class TestHelpers(unittest.TestCase):
    def test_branch_and_message_defaults(self) -> None:
        now = datetime(2024, 1, 2, 3, 4, 5)
        self.assertEqual(default_branch_name("demo", now), "skillpin/sync/demo/20240102-030405")
        self.assertEqual(default_message("demo", now), "skillpin sync-back: demo (2024-01-02T03:04:05Z)")

    def test_mirror_tree_without_rsync(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "src"
            dst = Path(td) / "dst"
            (src / "sub").mkdir(parents=True)
            (src / "SKILL.md").write_text("a", encoding="utf-8")
            (src / "sub" / "x.txt").write_text("b", encoding="utf-8")
            dst.mkdir()
            (dst / ".git").write_text("gitdir: elsewhere\n", encoding="utf-8")
            (dst / "stale.txt").write_text("old", encoding="utf-8")

            warnings = mirror_tree(src, dst, ToolStatus.unavailable("rsync", "missing"))

            self.assertEqual(warnings, ["rsync unavailable (missing); using a recursive copy"])
            self.assertEqual(sorted(p.name for p in dst.iterdir()), [".git", "SKILL.md", "sub"])
            self.assertEqual((dst / "sub" / "x.txt").read_text(encoding="utf-8"), "b")


if __name__ == "__main__":
    unittest.main()
