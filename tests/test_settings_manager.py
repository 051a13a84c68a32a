import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from driveindex.core.settings_manager import SettingsManager, build_endpoint_configs


class TestSettingsManager(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        env = mock.patch.dict(os.environ, {})
        env.start()
        self.addCleanup(env.stop)
        os.environ.pop("DRIVEINDEX_ENDPOINTS", None)
        os.environ.pop("DRIVEINDEX_URL", None)

    def tearDown(self):
        self._tmp.cleanup()

    def test_defaults_and_persistence(self):
        settings = SettingsManager(self.data_dir)
        self.assertEqual(settings.get("circuit_error_threshold"), 3)
        self.assertEqual(settings.get("url_cache_ttl_seconds"), 1800)

        settings.update({"sync_batch_size": 50, "movies_path": "/2:/Movies/"})
        reloaded = SettingsManager(self.data_dir)
        self.assertEqual(reloaded.get("sync_batch_size"), 50)
        self.assertEqual(reloaded.get("movies_path"), "/2:/Movies/")
        self.assertEqual(reloaded.get("circuit_recovery_seconds"), 300.0)

        reloaded.reset()
        self.assertEqual(SettingsManager(self.data_dir).get("sync_batch_size"), 100)

    def test_corrupt_file_falls_back_to_defaults(self):
        (self.data_dir / "settings.json").write_text("[1, 2", encoding="utf-8")
        settings = SettingsManager(self.data_dir)
        self.assertEqual(settings.get("transport_retries"), 3)

    def test_endpoints_from_settings(self):
        settings = SettingsManager(self.data_dir)
        settings.set("endpoints", [
            "https://a.example/",
            {"id": "backup", "url": "https://b.example", "priority": 5},
            "https://a.example",
        ])
        configs = settings.get_endpoint_configs()
        self.assertEqual([(c.id, c.base_url, c.priority) for c in configs], [
            ("primary", "https://a.example", 1),
            ("backup", "https://b.example", 5),
        ])

    def test_single_url_plus_fallbacks(self):
        settings = SettingsManager(self.data_dir)
        settings.set("endpoint_fallbacks", ["https://b.example"])
        settings.set("endpoints", ["https://ignored.example"])
        os.environ["DRIVEINDEX_URL"] = "https://a.example"
        configs = settings.get_endpoint_configs()
        self.assertEqual([c.base_url for c in configs], ["https://a.example", "https://b.example"])
        self.assertEqual([c.id for c in configs], ["primary", "mirror_1"])

    def test_explicit_list_wins(self):
        settings = SettingsManager(self.data_dir)
        os.environ["DRIVEINDEX_URL"] = "https://ignored.example"
        os.environ["DRIVEINDEX_ENDPOINTS"] = "https://x.example, https://y.example"
        configs = settings.get_endpoint_configs()
        self.assertEqual([c.base_url for c in configs], ["https://x.example", "https://y.example"])
        self.assertEqual([c.priority for c in configs], [1, 2])

    def test_build_configs_skips_blanks(self):
        self.assertEqual(build_endpoint_configs(["", None, {"url": ""}]), [])

    def test_saved_file_is_json(self):
        settings = SettingsManager(self.data_dir)
        settings.set("request_base_delay_seconds", 3)
        with open(self.data_dir / "settings.json", encoding="utf-8") as f:
            self.assertEqual(json.load(f)["request_base_delay_seconds"], 3)


if __name__ == "__main__":
    unittest.main()
