from __future__ import annotations

import json
import unittest
from pathlib import Path

from voleveler.common.config import LevelerSettings
from voleveler.common.engine import EngineInitError
from voleveler.common.paths import logs_path, outbox_dir
from voleveler.workers.batch import BatchRunner, write_manifest

from tests._helpers import FakeEngineFactory, f32, has_af, sine, temp_env


def _write_sources(root: str, names, seconds: float = 1.0):
    src_dir = Path(root) / "in"
    src_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        p = src_dir / name
        p.write_bytes(f32(sine(seconds)))
        paths.append(p)
    return paths


class TestBatchRunner(unittest.IsolatedAsyncioTestCase):
    async def test_end_to_end_with_outlier(self) -> None:
        def bands(src):
            if src.startswith("outlier_"):
                return {"low": -21.0, "mid": -20.0, "high": -24.0}
            return None

        with temp_env() as (td, env):
            sources = _write_sources(td.name, ["a.wav", "b.wav", "c.wav", "outlier.wav"])
            factory = FakeEngineFactory(band_rms_for=bands)
            runner = BatchRunner(env=env, settings=LevelerSettings(), batch_id="e2e", engine_factory=factory)
            result = await runner.run(sources)

            self.assertEqual(result.status, "Done")
            self.assertEqual(result.failures, [])
            self.assertEqual(result.reference.low_tilt, -10.0)
            self.assertEqual(result.reference.high_tilt, -13.0)
            self.assertEqual(result.reference.lra, 6.0)

            names = {o.name for o in result.outputs}
            for base in ("a", "b", "c", "outlier"):
                self.assertIn(f"{base}_mixready.wav", names)
                self.assertIn(f"{base}_A85.wav", names)
            for o in result.outputs:
                self.assertTrue(Path(o.path).is_file())
                self.assertEqual(Path(o.path).parent, outbox_dir(env, "e2e"))
                self.assertGreater(o.size, 0)

            # one linear second pass per loudness output
            loud_renders = [c for c in factory.calls if has_af(c, "measured_I=")]
            self.assertEqual(len(loud_renders), len([o for o in result.outputs if o.kind == "loudness"]))

            batch_log = logs_path(env, "e2e").read_text(encoding="utf-8")
            self.assertIn("Deep analysis started for 4 file(s)", batch_log)
            self.assertIn("[Adaptive] outlier:", batch_log)
            self.assertIn("Batch e2e: Done", batch_log)

            # engine released, temp artifacts gone
            self.assertTrue(factory.engines[-1].terminated)
            self.assertFalse(runner.handle.active)

            manifest = json.loads(write_manifest(env, result).read_text(encoding="utf-8"))
            self.assertEqual(manifest["status"], "Done")
            self.assertEqual(len(manifest["outputs"]), len(result.outputs))

    async def test_engine_init_failure_fails_batch(self) -> None:
        with temp_env() as (td, env):
            sources = _write_sources(td.name, ["a.wav"])
            factory = FakeEngineFactory(init_error=EngineInitError("ffmpeg not runnable (ffmpeg): not found"))
            result = await BatchRunner(env=env, settings=LevelerSettings(), batch_id="bad", engine_factory=factory).run(sources)
            self.assertEqual(result.status, "Failed")
            self.assertIn("ffmpeg not runnable", result.error)
            self.assertEqual(result.outputs, [])

    async def test_one_failing_file_gives_warnings(self) -> None:
        def hook(args):
            if args[-1] == "b_mixready.wav" and "-af" in args:
                return 1, "Error while filtering: Invalid argument"
            return None

        with temp_env() as (td, env):
            sources = _write_sources(td.name, ["a.wav", "b.wav", "c.wav"])
            factory = FakeEngineFactory(fail_hook=hook)
            result = await BatchRunner(env=env, settings=LevelerSettings(), batch_id="warn", engine_factory=factory).run(sources)

            self.assertEqual(result.status, "Done with warnings")
            self.assertEqual([f.base for f in result.failures], ["b"])
            self.assertEqual(result.failures[0].file_name, "b.wav")
            self.assertIn("Mix-ready render failed", result.failures[0].reason)
            self.assertTrue(result.failures[0].reason.startswith("Mix-ready render failed (exit 1)"))
            self.assertEqual(result.failures[0].reason.count("Mix-ready render failed"), 1)
            names = {o.name for o in result.outputs}
            self.assertIn("a_A85.wav", names)
            self.assertIn("c_A85.wav", names)
            self.assertFalse(any(n.startswith("b_") for n in names))
            self.assertIn("Re-submit only the failed files", logs_path(env, "warn").read_text(encoding="utf-8"))

    async def test_analysis_failure_substitutes_empty_record(self) -> None:
        def hook(args):
            if has_af(args, "astats") and any(a.startswith("a_input") for a in args):
                return 1, "Error while filtering: Invalid argument"
            return None

        with temp_env() as (td, env):
            sources = _write_sources(td.name, ["a.wav", "b.wav"])
            result = await BatchRunner(
                env=env, settings=LevelerSettings(), batch_id="ana", engine_factory=FakeEngineFactory(fail_hook=hook)
            ).run(sources)
            self.assertEqual(result.status, "Done")
            self.assertIn("Analysis fallback (a)", logs_path(env, "ana").read_text(encoding="utf-8"))

    async def test_engine_recycled_on_large_batches(self) -> None:
        with temp_env() as (td, env):
            sources = _write_sources(td.name, [f"f{i}.wav" for i in range(8)], seconds=0.5)
            factory = FakeEngineFactory()
            runner = BatchRunner(env=env, settings=LevelerSettings(), batch_id="big", engine_factory=factory)
            result = await runner.run(sources)

            self.assertEqual(result.status, "Done")
            # analysis and processing each recycle after files 3 and 6
            self.assertEqual(runner.handle.recycle_count, 4)
            self.assertEqual(len(factory.engines), 5)

    async def test_mix_ready_only(self) -> None:
        with temp_env() as (td, env):
            sources = _write_sources(td.name, ["a.wav"])
            settings = LevelerSettings(loudness_target="mix_ready_only", keep_mix_ready=False, scene_blend=False)
            result = await BatchRunner(env=env, settings=settings, batch_id="mro", engine_factory=FakeEngineFactory()).run(sources)
            self.assertEqual([o.name for o in result.outputs], ["a_mixready.wav"])


if __name__ == "__main__":
    unittest.main()
