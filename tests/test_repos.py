import tempfile
import unittest
from pathlib import Path

from fakes import FakeGit, skill_md

from skillpin.config import Config
from skillpin.context import Context
from skillpin.errors import ConfigurationError, UnitNotFoundError
from skillpin.manager import SkillManager
from skillpin.remote import parse_repo_input
from skillpin.repos import RepoRegistry, default_alias

URL = "https://github.com/acme/skills.git"
OTHER_URL = "https://github.com/acme/extra.git"


class TestRepoRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        project = self.tmp / "project"
        project.mkdir()
        ctx = Context(cwd=project, cache_root=self.tmp / "cache" / "repos", config_dir=self.tmp / "config")
        self.git = FakeGit()
        self.git.add_remote(URL)
        self.git.commit(
            URL,
            {
                "pdf/SKILL.md": skill_md("pdf", "Fill and merge PDF forms"),
                "docs/docx/SKILL.md": skill_md("docx", "Edit Word documents"),
            },
        )
        self.git.add_remote(OTHER_URL)
        self.git.commit(OTHER_URL, {"SKILL.md": skill_md("extra", "Everything at the root")})
        self.manager = SkillManager(ctx, self.git, config=Config())
        self.registry = RepoRegistry(self.manager)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_add_is_idempotent(self) -> None:
        entry, count = self.registry.add(URL)
        self.assertEqual(entry.alias, "acme/skills")
        self.assertEqual(count, 2)
        self.registry.add(URL)
        self.assertEqual([r.alias for r in self.manager.load_lock().repos], ["acme/skills"])

    def test_alias_collision_is_refused(self) -> None:
        self.registry.add(URL, alias="team")
        with self.assertRaises(ConfigurationError):
            self.registry.add(OTHER_URL, alias="team")

    def test_list_marks_stale_repos(self) -> None:
        self.registry.add(URL)
        self.registry.add(OTHER_URL, alias="extra")
        self.git.remotes[OTHER_URL].reachable = False

        rows = {r.alias: r for r in self.registry.list_repos()}
        self.assertEqual((rows["acme/skills"].skills, rows["acme/skills"].stale), (2, False))
        self.assertEqual((rows["extra"].skills, rows["extra"].stale), (1, True))

    def test_search_and_catalog(self) -> None:
        self.registry.add(URL)
        self.registry.add(OTHER_URL, alias="extra")

        hits = self.registry.search("WORD")
        self.assertEqual([(h.repo, h.skill.name) for h in hits], [("acme/skills", "docx")])
        self.assertEqual([h.skill.path for h in self.registry.search("root", repo="extra")], ["."])
        with self.assertRaises(UnitNotFoundError):
            self.registry.search("pdf", repo="unknown")

        self.assertEqual([s.name for s in self.registry.catalog(URL)], ["docx", "pdf"])

    def test_install_through_alias_and_remove_guard(self) -> None:
        self.registry.add(URL, alias="team")
        result = self.manager.install("team", "pdf")
        self.assertEqual(result.entry.source.url, URL)

        with self.assertRaises(ConfigurationError) as cm:
            self.registry.remove("team")
        self.assertIn("pdf", str(cm.exception))

        self.manager.remove("pdf")
        self.assertEqual(self.registry.remove("team").alias, "team")
        self.assertEqual(self.manager.load_lock().repos, [])
        with self.assertRaises(UnitNotFoundError):
            self.registry.remove("team")

    def test_default_alias_includes_foreign_host(self) -> None:
        ref = parse_repo_input("https://gitlab.com/acme/skills.git")
        self.assertEqual(default_alias(ref, default_host="github.com"), "gitlab.com:acme/skills")
        self.assertEqual(default_alias(parse_repo_input(URL), default_host="github.com"), "acme/skills")


if __name__ == "__main__":
    unittest.main()
