from __future__ import annotations

import unittest

from voleveler.common.ffmpeg import (
    base_args,
    has_fatal_signal,
    looks_like_stage_incompatibility,
    parse_duration_seconds,
    parse_loudnorm_json,
    parse_rms_from_astats,
    summarize_failure_log,
    summarize_failure_reason,
)


LOUDNORM_LOG = """
[Parsed_loudnorm_0 @ 0x5581]
{
	"input_i" : "-27.61",
	"input_tp" : "-4.47",
	"input_lra" : "18.06",
	"input_thresh" : "-39.20",
	"target_offset" : "0.58"
}
"""


class TestParseLoudnorm(unittest.TestCase):
    def test_last_json_block(self) -> None:
        data = parse_loudnorm_json("noise {not json}\n" + LOUDNORM_LOG)
        self.assertIsNotNone(data)
        self.assertEqual(data["input_i"], "-27.61")
        self.assertEqual(data["target_offset"], "0.58")

    def test_missing_or_malformed(self) -> None:
        self.assertIsNone(parse_loudnorm_json(""))
        self.assertIsNone(parse_loudnorm_json("no braces here"))
        self.assertIsNone(parse_loudnorm_json('{"input_i": -27,'))


class TestParseRms(unittest.TestCase):
    def test_last_value_wins(self) -> None:
        text = "RMS level dB: -30.5\n...\n[Parsed_astats_2 @ 0x0] RMS level dB: -21.25\n"
        self.assertAlmostEqual(parse_rms_from_astats(text) or 0.0, -21.25)

    def test_inf_maps_to_floor(self) -> None:
        self.assertEqual(parse_rms_from_astats("RMS level dB: -inf"), -120.0)

    def test_missing(self) -> None:
        self.assertIsNone(parse_rms_from_astats("Peak level dB: -3.0"))


class TestParseDuration(unittest.TestCase):
    def test_duration_line(self) -> None:
        text = "  Duration: 01:02:03.50, start: 0.000000, bitrate: 768 kb/s"
        self.assertAlmostEqual(parse_duration_seconds(text) or 0.0, 3723.5)

    def test_duration_missing(self) -> None:
        self.assertIsNone(parse_duration_seconds("Duration: N/A"))


class TestFailureSummaries(unittest.TestCase):
    def test_prefers_error_lines(self) -> None:
        text = "\n".join([
            "Input #0, wav",
            "Error initializing filter 'afftdn'",
            "Stream mapping:",
            "Invalid argument",
            "Conversion failed!",
            "bye",
        ])
        self.assertEqual(
            summarize_failure_log(text),
            "Error initializing filter 'afftdn' | Invalid argument | Conversion failed!",
        )

    def test_falls_back_to_last_lines(self) -> None:
        self.assertEqual(summarize_failure_log("a\nb\nc\nd"), "b | c | d")

    def test_reason_is_compacted(self) -> None:
        reason = summarize_failure_reason("x  y\n\nz " + "w" * 400)
        self.assertTrue(reason.startswith("x y z "))
        self.assertEqual(len(reason), 180)
        self.assertTrue(reason.endswith("..."))


class TestSignatures(unittest.TestCase):
    def test_fatal_signal(self) -> None:
        self.assertTrue(has_fatal_signal("RuntimeError: memory access out of bounds"))
        self.assertTrue(has_fatal_signal("wasm: Memory access out of bounds"))
        self.assertFalse(has_fatal_signal("Invalid argument"))

    def test_stage_incompatibility(self) -> None:
        self.assertTrue(looks_like_stage_incompatibility("No such filter: 'afftdn'"))
        self.assertTrue(looks_like_stage_incompatibility("[AVFilterGraph @ 0x1] Error initializing filter 'agate'"))
        self.assertTrue(looks_like_stage_incompatibility("Option 'tn' not found."))
        self.assertFalse(looks_like_stage_incompatibility("Error while decoding stream #0:0"))

    def test_base_args(self) -> None:
        self.assertEqual(base_args(2), ["-hide_banner", "-nostdin", "-threads", "2", "-filter_threads", "2"])
        self.assertEqual(base_args(1, filter_threads=False), ["-hide_banner", "-nostdin", "-threads", "1"])


if __name__ == "__main__":
    unittest.main()
