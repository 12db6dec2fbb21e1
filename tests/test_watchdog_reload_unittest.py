import asyncio
import logging
import tempfile
import unittest
from pathlib import Path

from gatewaywarden.settings import GatewaySettings, SettingsStore
from gatewaywarden.settings_reload import SettingsReloadWatcher, watchdog_path_matches


class WatchdogPathMatchTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(watchdog_path_matches("/tmp/work/settings.yaml", "settings.yaml"))

    def test_matches_same_filename_for_relative_path(self) -> None:
        self.assertTrue(watchdog_path_matches("settings.yaml", "settings.yaml"))

    def test_does_not_match_different_filename(self) -> None:
        self.assertFalse(watchdog_path_matches("/tmp/work/settings.yaml.tmp", "settings.yaml"))

    def test_does_not_match_none(self) -> None:
        self.assertFalse(watchdog_path_matches(None, "settings.yaml"))


class ReloadIfChangedTests(unittest.TestCase):
    def test_reload_passes_loaded_settings(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = SettingsStore(Path(tmp) / "settings.yaml")
            seen: list[GatewaySettings] = []
            watcher = SettingsReloadWatcher(store=store, on_reload=seen.append, logger=logging.getLogger("test"))

            self.assertFalse(asyncio.run(watcher.reload_if_changed()))
            store.update(gateway_token="externalTOKEN123")
            self.assertTrue(asyncio.run(watcher.reload_if_changed(force=True)))
            self.assertEqual(seen[-1].gateway_token, "externalTOKEN123")


if __name__ == "__main__":
    unittest.main()
