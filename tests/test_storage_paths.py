import os
import sys
import tempfile
import unittest
from pathlib import Path


class StorageTestCase(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["FREEHOST_STORAGE_ROOT"] = str(root)
        os.environ["FREEHOST_PUBLIC_DIR"] = str(root / "public")
        os.environ["FREEHOST_LOGS_DIR"] = str(root / "logs")
        sys.modules.pop("freehost.storage", None)
        import importlib

        self.storage = importlib.import_module("freehost.storage")
        self.storage.ensure_directories()
        self.public_dir = self.storage.PUBLIC_DIR

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ["FREEHOST_STORAGE_ROOT", "FREEHOST_PUBLIC_DIR", "FREEHOST_LOGS_DIR"]:
            os.environ.pop(key, None)
        sys.modules.pop("freehost.storage", None)

    def _make_project(self, name, files):
        project_dir = self.public_dir / name
        project_dir.mkdir(parents=True, exist_ok=True)
        for filename, content in files.items():
            target = project_dir / filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        return project_dir


class SanitizeProjectNameTests(StorageTestCase):
    SAMPLES = [
        "",
        "My Cool Site!",
        "already-clean-123",
        "!!!",
        "   spaced   out   ",
        "Ünïcödé näme",
        "日本語のサイト",
        "emoji 🚀 launch",
        "../../etc/passwd",
        "tab\tand\nnewline",
        "UPPER_lower-Mixed.Case",
        "x" * 500,
    ]

    def test_known_examples(self):
        sanitize = self.storage.sanitize_project_name
        self.assertEqual(sanitize("My Cool Site!"), "my-cool-site-")
        self.assertEqual(sanitize(""), "")
        self.assertEqual(sanitize(None), "")
        self.assertEqual(sanitize("!!!"), "---")
        self.assertEqual(sanitize("héllo"), "h-llo")
        self.assertEqual(sanitize("../../etc/passwd"), "------etc-passwd")
        self.assertEqual(sanitize("ABC123"), "abc123")

    def test_idempotent(self):
        sanitize = self.storage.sanitize_project_name
        for sample in self.SAMPLES:
            once = sanitize(sample)
            self.assertEqual(sanitize(once), once, sample)

    def test_output_alphabet_and_length(self):
        sanitize = self.storage.sanitize_project_name
        allowed = set("abcdefghijklmnopqrstuvwxyz0123456789-")
        for sample in self.SAMPLES:
            result = sanitize(sample)
            self.assertTrue(set(result) <= allowed, sample)
            self.assertLessEqual(len(result), self.storage.MAX_PROJECT_NAME_LENGTH)
            self.assertEqual(result, sanitize(sample))

    def test_each_code_point_becomes_one_character(self):
        sanitize = self.storage.sanitize_project_name
        self.assertEqual(sanitize("a b"), "a-b")
        self.assertEqual(sanitize("日本"), "--")
        self.assertEqual(len(sanitize("x" * 500)), self.storage.MAX_PROJECT_NAME_LENGTH)

    def test_canonical_names(self):
        is_canonical = self.storage.is_canonical_project_name
        self.assertTrue(is_canonical("my-cool-site-"))
        self.assertTrue(is_canonical("a"))
        self.assertFalse(is_canonical(""))
        self.assertFalse(is_canonical("---"))
        self.assertFalse(is_canonical("My-Site"))
        self.assertFalse(is_canonical(".."))
        self.assertFalse(is_canonical("a/b"))


class ResolveProjectFileTests(StorageTestCase):
    def test_resolves_file_and_directory_index(self):
        project_dir = self._make_project(
            "site",
            {"index.html": b"home", "docs/index.html": b"docs", "img/logo.png": b"png"},
        )
        resolve = self.storage.resolve_project_file
        self.assertEqual(resolve("site", "img/logo.png"), (project_dir / "img/logo.png").resolve())
        self.assertEqual(resolve("site", ""), (project_dir / "index.html").resolve())
        self.assertEqual(resolve("site", "docs/"), (project_dir / "docs/index.html").resolve())

    def test_index_match_is_case_insensitive(self):
        project_dir = self._make_project("shout", {"INDEX.HTML": b"loud"})
        self.assertEqual(
            self.storage.resolve_project_file("shout"),
            (project_dir / "INDEX.HTML").resolve(),
        )

    def test_rejects_parent_segments(self):
        self._make_project("site", {"index.html": b"home"})
        (Path(self.storage_dir.name) / "secret.txt").write_bytes(b"secret")
        for relative in ["../../secret.txt", "../site/index.html", "a/../../secret.txt", "..\\..\\secret.txt"]:
            with self.assertRaises(self.storage.PathTraversalError, msg=relative):
                self.storage.resolve_project_file("site", relative)

    def test_rejects_symlink_escape(self):
        project_dir = self._make_project("site", {"index.html": b"home"})
        outside = Path(self.storage_dir.name) / "outside.txt"
        outside.write_bytes(b"outside")
        try:
            os.symlink(outside, project_dir / "link.txt")
        except (OSError, NotImplementedError):
            self.skipTest("symlinks unavailable")
        with self.assertRaises(self.storage.PathTraversalError):
            self.storage.resolve_project_file("site", "link.txt")

    def test_hidden_and_missing_entries_not_found(self):
        self._make_project("site", {"index.html": b"home", ".project-info.json": b"{}"})
        resolve = self.storage.resolve_project_file
        for name, relative in [
            ("site", ".project-info.json"),
            ("site", "missing.png"),
            ("ghost", "index.html"),
            ("Site", "index.html"),
        ]:
            with self.assertRaises(self.storage.ProjectNotFoundError):
                resolve(name, relative)


class ProjectRecordTests(StorageTestCase):
    def test_main_url_only_with_index(self):
        record = self.storage.build_project_record(
            "site", "website", ["Index.HTML", "a.css"], "http://example.test/"
        )
        self.assertEqual(record["url"], "http://example.test/projects/site")
        self.assertEqual(record["mainUrl"], "http://example.test/projects/site/index.html")
        self.assertEqual(record["fileCount"], 2)
        self.assertEqual(record["createdAt"], record["updatedAt"])

        plain = self.storage.build_project_record(
            "pics", "images", ["a.png"], "http://example.test", created_at="2024-01-01T00:00:00Z"
        )
        self.assertNotIn("mainUrl", plain)
        self.assertEqual(plain["createdAt"], "2024-01-01T00:00:00Z")

    def test_metadata_round_trip_and_parse_errors(self):
        self._make_project("site", {})
        record = self.storage.build_project_record("site", "zip", ["a.zip"], "http://h")
        path = self.storage.write_project_metadata("site", record)
        self.assertEqual(path.name, ".project-info.json")
        self.assertEqual(self.storage.read_project_metadata("site"), record)
        self.assertEqual(list((self.public_dir / "site").glob("*.tmp")), [])

        path.write_text("{", encoding="utf-8")
        with self.assertRaises(self.storage.MetadataParseError):
            self.storage.read_project_metadata("site")
        self.assertIsNone(self.storage.previous_created_at("site"))

        with self.assertRaises(self.storage.ProjectNotFoundError):
            self.storage.read_project_metadata("absent")

    def test_list_project_files_excludes_hidden_and_directories(self):
        self._make_project(
            "site",
            {"index.html": b"12", ".project-info.json": b"{}", "nested/x.css": b"x"},
        )
        files = self.storage.list_project_files("site", "http://h")
        self.assertEqual(files, [{"name": "index.html", "url": "http://h/projects/site/index.html", "size": 2}])
        with self.assertRaises(self.storage.ProjectNotFoundError):
            self.storage.list_project_files("..", "http://h")


if __name__ == "__main__":
    unittest.main()
