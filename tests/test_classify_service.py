import tempfile
from pathlib import Path
from unittest import TestCase, mock

from picshelf.core.config import ScannerConfig
from picshelf.core.errors import ConfigError
from picshelf.services.classify_service import Classifier, sanitize_name


def _config(base: Path, **overrides) -> ScannerConfig:
    return ScannerConfig(
        scan_path=str(base / "incoming"),
        staging_path=str(base / "staging"),
        final_library_path=str(base / "library"),
        quarantine_path=str(base / "quarantine"),
        backup_path=str(base / "backups"),
        log_dir=str(base / "logs"),
        corruption_log_path=str(base / "logs" / "corrupted_files.log"),
        worker_count=2,
        **overrides,
    )


class SanitizeNameTests(TestCase):
    def test_replaces_illegal_characters_and_trims(self):
        self.assertEqual(sanitize_name('a<b>c:d"e'), "a b c d e")
        self.assertEqual(sanitize_name("  Series.. "), "Series")
        self.assertEqual(sanitize_name("what?*"), "what")
        self.assertEqual(sanitize_name("..."), "")


class ClassifierTests(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.src = self.base / "incoming"
        self.src.mkdir()

    def tearDown(self):
        self._tmp.cleanup()

    def test_first_matching_pattern_wins(self):
        classifier = Classifier(_config(self.base))
        self.assertEqual(classifier.extract_series_name("artist_123_p0_4.jpg"), "artist")
        self.assertEqual(classifier.extract_series_name("artist_123_p0.jpg"), "artist")
        self.assertEqual(classifier.extract_series_name("My Set_007.png"), "My Set")
        self.assertEqual(classifier.extract_series_name("a_1_p2x.jpg"), "a")
        self.assertEqual(classifier.extract_series_name("plain.jpg"), "")

    def test_custom_pattern_order(self):
        config = _config(self.base, file_patterns=[r"^(\w+)-", r"^(.*?)_(\d+)"])
        self.assertEqual(Classifier(config).extract_series_name("foo-bar_01.jpg"), "foo")

    def test_invalid_pattern_raises_config_error(self):
        with self.assertRaises(ConfigError):
            Classifier(_config(self.base, file_patterns=["(unclosed"]))
        with self.assertRaises(ConfigError):
            Classifier(_config(self.base, file_patterns=[r"^\w+$"]))

    def test_moves_files_into_series_folders(self):
        files = []
        for name in ["b_001.jpg", "b_002.jpg", "c_10.png", "loose.jpg"]:
            path = self.src / name
            path.write_bytes(b"x")
            files.append(path)

        result = Classifier(_config(self.base)).classify_and_move(files)

        staging = self.base / "staging"
        self.assertEqual(result.series_names, {"b", "c"})
        self.assertEqual(result.file_names, {"b_001.jpg", "b_002.jpg", "c_10.png"})
        self.assertEqual(result.skipped, 1)
        self.assertTrue((staging / "b" / "b_001.jpg").exists())
        self.assertTrue((staging / "c" / "c_10.png").exists())
        self.assertTrue((self.src / "loose.jpg").exists())

    def test_existing_staging_target_is_not_overwritten(self):
        staging_file = self.base / "staging" / "b" / "b_001.jpg"
        staging_file.parent.mkdir(parents=True)
        staging_file.write_bytes(b"old")
        incoming = self.src / "b_001.jpg"
        incoming.write_bytes(b"new")

        result = Classifier(_config(self.base)).classify_and_move([incoming])

        self.assertEqual(staging_file.read_bytes(), b"old")
        self.assertTrue(incoming.exists())
        self.assertEqual(result.file_names, set())

    def test_same_target_is_claimed_by_only_one_worker(self):
        files = []
        for folder in ("one", "two", "three", "four"):
            path = self.src / folder / "b_001.jpg"
            path.parent.mkdir()
            path.write_bytes(folder.encode())
            files.append(path)

        # hide the on-disk check so only the in-flight claim can stop a second move
        with mock.patch("os.path.lexists", return_value=False):
            result = Classifier(_config(self.base)).classify_and_move(files)

        left = [p for p in files if p.exists()]
        moved = [p for p in files if not p.exists()]
        self.assertEqual(len(moved), 1)
        self.assertEqual(len(left), 3)
        self.assertEqual(result.skipped, 3)
        staged = self.base / "staging" / "b" / "b_001.jpg"
        self.assertEqual(staged.read_bytes(), moved[0].parent.name.encode())
