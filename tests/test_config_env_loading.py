from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

import config
from config import ConfigError, Settings


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run(self, code: str, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", code],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        result = self._run("import config; print('ok')", "data/__definitely_missing_env_for_test__.env")
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            result = self._run("import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))", str(env_path))
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_trading_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "RPC_ENDPOINTS=main=https://rpc-a.example,https://rpc-b.example",
                        "POSITION_TAKE_PROFIT_TIERS=100:25,30:20,200:15,60:25",
                        "CONTROL_API_KEYS=k1, k2,",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            result = self._run(
                (
                    "import config; s = config.load_settings(); "
                    "print(s.rpc.endpoints); print(s.position.take_profit_tiers); print(s.api.api_keys)"
                ),
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        lines = result.stdout.strip().splitlines()
        self.assertEqual(lines[0], "(('main', 'https://rpc-a.example'), ('rpc2', 'https://rpc-b.example'))")
        self.assertEqual(lines[1], "((30.0, 20.0), (60.0, 25.0), (100.0, 25.0), (200.0, 15.0))")
        self.assertEqual(lines[2], "('k1', 'k2')")


class SettingsTests(unittest.TestCase):
    def test_pair_parsing_skips_garbage(self) -> None:
        self.assertEqual(config._parse_pairs("50:12, bad, 20:15,x:y"), ((20.0, 15.0), (50.0, 12.0)))

    def test_updated_returns_validated_copy(self) -> None:
        base = Settings()
        updated = base.updated("risk", {"max_daily_loss_percent": "6"})
        self.assertEqual(updated.risk.max_daily_loss_percent, 6.0)
        self.assertEqual(base.risk.max_daily_loss_percent, 8.0)

    def test_updated_rejects_unknown_and_invalid_fields(self) -> None:
        base = Settings()
        cases = [
            ("nope", {"x": 1}),
            ("entry", {"no_such_field": 1}),
            ("entry", {"min_dip_percent": "deep"}),
            ("entry", {"min_dip_percent": 90}),
        ]
        for section, fields in cases:
            with self.subTest(section=section, fields=fields):
                with self.assertRaises(ConfigError):
                    base.updated(section, fields)

    def test_defaults_validate(self) -> None:
        self.assertIsInstance(Settings().validate(), Settings)


if __name__ == "__main__":
    unittest.main()
