import os
import tempfile
import unittest
from pathlib import Path

from skillpin.digest import digest_dir, is_valid_digest, iter_files


def _write(root: Path, rel: str, data: bytes) -> None:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)


class TestDigest(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _tree(self, name: str, files: dict[str, bytes]) -> Path:
        root = self.tmp / name
        root.mkdir()
        for rel, data in files.items():
            _write(root, rel, data)
        return root

    def test_format(self) -> None:
        d = digest_dir(self._tree("a", {"SKILL.md": b"x"}))
        self.assertTrue(d.startswith("sha256:"))
        self.assertTrue(is_valid_digest(d))
        self.assertFalse(is_valid_digest("sha256:xyz"))
        self.assertFalse(is_valid_digest("md5:" + "0" * 32))

    def test_deterministic_regardless_of_creation_order(self) -> None:
        a = self._tree("a", {"b.txt": b"2", "a/x.txt": b"1"})
        b = self._tree("b", {"a/x.txt": b"1", "b.txt": b"2"})
        self.assertEqual(digest_dir(a), digest_dir(b))

    def test_content_and_path_changes_are_detected(self) -> None:
        base = digest_dir(self._tree("a", {"f.txt": b"hello"}))
        self.assertNotEqual(base, digest_dir(self._tree("b", {"f.txt": b"hello!"})))
        self.assertNotEqual(base, digest_dir(self._tree("c", {"g.txt": b"hello"})))
        # Boundary between path and content must not be ambiguous.
        self.assertNotEqual(
            digest_dir(self._tree("d", {"ab": b"c"})),
            digest_dir(self._tree("e", {"a": b"bc"})),
        )

    def test_vcs_dirs_and_editor_files_are_ignored(self) -> None:
        clean = digest_dir(self._tree("a", {"SKILL.md": b"x"}))
        noisy = self._tree(
            "b",
            {
                "SKILL.md": b"x",
                ".git/HEAD": b"ref: refs/heads/main\n",
                ".DS_Store": b"\0\1",
                "SKILL.md~": b"old",
                ".SKILL.md.swp": b"swap",
            },
        )
        self.assertEqual(clean, digest_dir(noisy))

    def test_line_endings_are_normalized_for_text_only(self) -> None:
        lf = digest_dir(self._tree("lf", {"f.txt": b"a\nb\n"}))
        crlf = digest_dir(self._tree("crlf", {"f.txt": b"a\r\nb\r\n"}))
        self.assertEqual(lf, crlf)

        bin_lf = digest_dir(self._tree("bin_lf", {"f.bin": b"\0a\nb"}))
        bin_crlf = digest_dir(self._tree("bin_crlf", {"f.bin": b"\0a\r\nb"}))
        self.assertNotEqual(bin_lf, bin_crlf)

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks unsupported")
    def test_symlinks_are_skipped(self) -> None:
        root = self._tree("a", {"SKILL.md": b"x"})
        before = digest_dir(root)
        os.symlink(root / "SKILL.md", root / "link.md")
        self.assertEqual(before, digest_dir(root))
        self.assertEqual([rel for rel, _ in iter_files(root)], ["SKILL.md"])

    def test_empty_directory(self) -> None:
        self.assertEqual(digest_dir(self._tree("a", {})), digest_dir(self._tree("b", {})))


if __name__ == "__main__":
    unittest.main()
