from __future__ import annotations

import unittest
from pathlib import Path

from voleveler.workers.__main__ import collect_inputs, main

from tests._helpers import temp_env


class TestCollectInputs(unittest.TestCase):
    def test_expands_directories_and_keeps_wav_only(self) -> None:
        with temp_env() as (td, _):
            root = Path(td.name)
            d = root / "takes"
            d.mkdir()
            for name in ("b.wav", "a.WAV", "notes.txt"):
                (d / name).write_bytes(b"x")
            single = root / "z.wav"
            single.write_bytes(b"x")

            got = collect_inputs([str(single), str(d), str(root / "missing.wav")])
            self.assertEqual([p.name for p in got], ["z.wav", "a.WAV", "b.wav"])


class TestMain(unittest.TestCase):
    def test_bad_settings_exit_code(self) -> None:
        with temp_env() as (td, _):
            cfg = Path(td.name) / "bad.yaml"
            cfg.write_text("settings:\n  leveler: extreme\n", encoding="utf-8")
            take = Path(td.name) / "a.wav"
            take.write_bytes(b"x")
            self.assertEqual(main([str(take), "--settings", str(cfg)]), 2)

    def test_no_inputs_exit_code(self) -> None:
        with temp_env() as (td, _):
            cfg = Path(td.name) / "ok.yaml"
            cfg.write_text("settings: {}\n", encoding="utf-8")
            self.assertEqual(main([str(Path(td.name) / "nothing.txt"), "--settings", str(cfg)]), 2)


if __name__ == "__main__":
    unittest.main()
