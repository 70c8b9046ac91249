import tempfile
import unittest
from pathlib import Path

from modellkoppler.config import RelayConfig, load_config
from modellkoppler.config_reload import ConfigReloadWatcher, event_touches_config


class ConfigPathMatchTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(event_touches_config("/tmp/work/config.yaml", "config.yaml"))

    def test_matches_same_filename_for_relative_path(self) -> None:
        self.assertTrue(event_touches_config("config.yaml", "config.yaml"))

    def test_matches_bytes_path(self) -> None:
        self.assertTrue(event_touches_config(b"/tmp/work/config.yaml", "config.yaml"))

    def test_does_not_match_different_filename(self) -> None:
        self.assertFalse(event_touches_config("/tmp/work/other.yaml", "config.yaml"))

    def test_does_not_match_none(self) -> None:
        self.assertFalse(event_touches_config(None, "config.yaml"))


class ReloadNowTests(unittest.TestCase):
    def test_reload_applies_new_config(self) -> None:
        applied: list[RelayConfig] = []
        with tempfile.TemporaryDirectory() as tmp:
            config_file = Path(tmp) / "config.yaml"
            config_file.write_text("deep_analysis: true\ntitle_model: custom-title\n", encoding="utf-8")

            watcher = ConfigReloadWatcher(config_file=config_file, apply=applied.append)
            new_cfg = watcher.reload_now()

        self.assertEqual(len(applied), 1)
        self.assertIs(applied[0], new_cfg)
        self.assertTrue(new_cfg.deep_analysis)
        self.assertEqual(new_cfg.title_model, "custom-title")

    def test_reload_failure_does_not_apply(self) -> None:
        applied: list[RelayConfig] = []

        def broken_loader(_path: str) -> RelayConfig:
            raise ValueError("bad yaml")

        watcher = ConfigReloadWatcher(config_file=Path("config.yaml"), apply=applied.append, loader=broken_loader)

        with self.assertRaises(ValueError):
            watcher.reload_now()
        self.assertEqual(applied, [])

    def test_default_loader_is_load_config(self) -> None:
        watcher = ConfigReloadWatcher(config_file=Path("config.yaml"), apply=lambda _cfg: None)
        self.assertIs(watcher._loader, load_config)


if __name__ == "__main__":
    unittest.main()
