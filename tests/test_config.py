import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillhub.config import (
    DEFAULT_API_URL,
    Config,
    ConfigError,
    ConfigNotLoadedError,
    ConfigStore,
    config_path,
    load_config,
    redact_token,
    save_config,
)


class TestConfigFile(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(Path(td) / "nope.json")
        self.assertEqual(cfg, Config())
        self.assertEqual(cfg.api_url, DEFAULT_API_URL)

    def test_save_then_load_ignores_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "sub" / "config.json"
            save_config(Config(github_token="tok", gist_id="g1"), path)
            raw = json.loads(path.read_text(encoding="utf-8"))
            raw["legacy_field"] = True
            path.write_text(json.dumps(raw), encoding="utf-8")

            cfg = load_config(path)

        self.assertEqual(cfg.github_token, "tok")
        self.assertEqual(cfg.gist_id, "g1")

    def test_non_object_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text("[1, 2]", encoding="utf-8")
            self.assertEqual(load_config(path), Config())

    def test_corrupt_file_raises_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError) as ctx:
                load_config(path)
        self.assertIn(str(path), str(ctx.exception))

    def test_env_override_path(self) -> None:
        with patch.dict(os.environ, {"SKILLHUB_CONFIG_PATH": "/tmp/skillhub-test/config.json"}):
            self.assertEqual(config_path(), Path("/tmp/skillhub-test/config.json"))

    def test_redact_token(self) -> None:
        self.assertIsNone(redact_token(None))
        self.assertEqual(redact_token("abcdefgh"), "ab...gh")
        self.assertEqual(redact_token("ghp_1234567890abcdef"), "ghp_12...cdef")


class TestConfigStore(unittest.TestCase):
    def test_requires_explicit_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td) / "config.json")
            with self.assertRaises(ConfigNotLoadedError):
                store.get_token()

    def test_setters_persist(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            store = ConfigStore(path).load()
            store.set_token("tok")
            store.set_gist_id("gist-1")
            store.set_last_sync_at("2026-01-01T00:00:00.000Z")

            reloaded = ConfigStore(path).load()

        self.assertEqual(reloaded.get_token(), "tok")
        self.assertEqual(reloaded.get_gist_id(), "gist-1")
        self.assertEqual(reloaded.get_last_sync_at(), "2026-01-01T00:00:00.000Z")

    def test_clear_session(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            store = ConfigStore(path).load()
            store.update(github_token="tok", gist_id="g", last_sync_at="x", timeout_s=5.0)

            removed = store.clear_session()
            reloaded = ConfigStore(path).load()

        self.assertEqual(removed, ["githubToken", "gistId", "lastSyncAt"])
        self.assertIsNone(reloaded.get_token())
        self.assertIsNone(reloaded.get_gist_id())
        self.assertIsNone(reloaded.get_last_sync_at())
        self.assertEqual(reloaded.config.timeout_s, 5.0)


if __name__ == "__main__":
    unittest.main()
