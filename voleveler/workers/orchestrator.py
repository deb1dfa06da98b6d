from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from voleveler.adaptive.chain import ChainOptions, FilterChainCompiler, build_blend_graph, render_chain
from voleveler.adaptive.presets import LIMITER_FILTER
from voleveler.adaptive.profile import AdaptiveProfile
from voleveler.common.engine import EngineError, EngineFatalError, EngineHandle
from voleveler.common.env import Env
from voleveler.common.ffmpeg import (
    base_args,
    looks_like_stage_incompatibility,
    parse_duration_seconds,
    pcm_output_args,
    summarize_failure_reason,
)
from voleveler.common.logging_setup import append_batch_log, get_logger
from voleveler.common.utils import sanitize_base


log = get_logger("orchestrator")

MIN_SEGMENT_SPAN_SEC = 0.01


class SegmentedRenderSkipped(RuntimeError):
    pass


class SplitRenderUnavailable(RuntimeError):
    pass


class MixRenderFailed(RuntimeError):
    """Every strategy in the cascade failed; carries the last failure reason."""


class RenderState(str, Enum):
    IDLE = "idle"
    WRITING_INPUT = "writing_input"
    RENDERING = "rendering"
    RENDERED = "rendered"
    FAILED = "failed"


@dataclass(frozen=True)
class RenderStrategy:
    label: str
    options: ChainOptions = ChainOptions()


@dataclass
class RenderOutcome:
    state: RenderState
    fallback_applied: Optional[str] = None
    reason: Optional[str] = None
    attempts: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == RenderState.RENDERED


def build_strategies(compiler: FilterChainCompiler, profile: Optional[AdaptiveProfile]) -> List[RenderStrategy]:
    """Fallback cascade in precedence order; bypass steps only when there is something to bypass."""
    room = compiler.has_room_filters(profile)
    nr = compiler.has_noise_reduction(profile)

    strategies = [RenderStrategy("primary chain")]
    if room:
        strategies.append(RenderStrategy("room cleanup bypass", ChainOptions(disable_room_cleanup=True)))
    if nr:
        strategies.append(RenderStrategy("adaptive-NR bypass", ChainOptions(disable_noise_reduction=True)))
    if room and nr:
        strategies.append(RenderStrategy(
            "room cleanup + adaptive-NR bypass",
            ChainOptions(disable_room_cleanup=True, disable_noise_reduction=True),
        ))
    strategies.append(RenderStrategy(
        "stability-safe chain",
        ChainOptions(disable_room_cleanup=True, disable_noise_reduction=True, minimal_stability_chain=True),
    ))
    return strategies


def _variant_label(index: int, strategy: RenderStrategy, variant: str) -> str:
    base = "primary chain" if index == 0 else strategy.label
    return f"{base} ({variant})"


class RenderOrchestrator:
    """Drives one file's mix render through the fallback cascade.

    Every attempt runs against the shared EngineHandle. A fatal engine fault
    is never retried in place: the handle is refreshed and the input
    rewritten before the next attempt.
    """

    def __init__(self, *, env: Env, batch_id: str, handle: EngineHandle, compiler: FilterChainCompiler) -> None:
        self.env = env
        self.batch_id = batch_id
        self.handle = handle
        self.compiler = compiler
        self.state = RenderState.IDLE

    def _note(self, line: str) -> None:
        log.info(line)
        append_batch_log(self.env, self.batch_id, line)

    @property
    def _threads(self) -> int:
        return max(1, int(self.env.ffmpeg_threads))

    async def _render_af(self, input_name: str, output_name: str, af: str, context: str, *, pre_seek: Optional[List[str]] = None) -> None:
        args = base_args(self._threads) + ["-y"] + (pre_seek or []) + ["-i", input_name, "-af", af] + pcm_output_args(output_name)
        await self.handle.exec_checked(args, context)

    async def render_single(self, input_name: str, output_name: str, profile: Optional[AdaptiveProfile], options: ChainOptions) -> None:
        await self._render_af(input_name, output_name, self.compiler.render(profile, options), "Mix-ready render")

    async def render_split(self, input_name: str, output_name: str, profile: Optional[AdaptiveProfile], options: ChainOptions) -> None:
        """Pre pass without noise reduction and limiter, then NR + limiter alone."""
        nr = self.compiler.noise_reduction_stage(profile, options)
        if nr is None:
            raise SplitRenderUnavailable("Split adaptive-NR path unavailable.")

        pre_options = ChainOptions(
            disable_room_cleanup=options.disable_room_cleanup,
            disable_noise_reduction=True,
            minimal_stability_chain=options.minimal_stability_chain,
            disable_limiter=True,
        )
        temp_name = f"{sanitize_base(output_name)}_pre_nr.wav"
        try:
            await self._render_af(input_name, temp_name, self.compiler.render(profile, pre_options), "Mix-ready pre-NR render")
            await self._render_af(temp_name, output_name, f"{render_chain([nr])},{LIMITER_FILTER}", "Mix-ready adaptive-NR compatibility render")
        finally:
            await self.handle.delete_file(temp_name)

    async def probe_duration(self, input_name: str) -> Optional[float]:
        text = await self.handle.exec_checked(
            ["-hide_banner", "-nostdin", "-i", input_name, "-t", "0.1", "-f", "null", "-"],
            "Duration probe",
        )
        return parse_duration_seconds(text)

    async def render_segmented(
        self,
        input_name: str,
        output_name: str,
        profile: Optional[AdaptiveProfile],
        options: ChainOptions,
        duration_sec: float,
    ) -> None:
        """Render fixed-length chunks independently and stream-copy concat them."""
        seg_len = float(self.env.segment_seconds)
        if duration_sec < self.env.segment_min_duration_seconds:
            raise SegmentedRenderSkipped("Segmented render skipped (input too short).")
        count = int(math.ceil(duration_sec / seg_len))
        if count < 2:
            raise SegmentedRenderSkipped("Segmented render skipped (single segment).")

        af = self.compiler.render(profile, options)
        base = sanitize_base(output_name)
        list_name = f"{base}_segments.txt"
        names: List[str] = []
        try:
            for i in range(count):
                start = i * seg_len
                span = min(seg_len, max(duration_sec - start, 0.0))
                if span <= MIN_SEGMENT_SPAN_SEC:
                    break
                name = f"{base}_seg_{i + 1}.wav"
                names.append(name)
                await self._render_af(
                    input_name,
                    name,
                    af,
                    f"Segment mix-ready render {i + 1}/{count}",
                    pre_seek=["-ss", f"{start:.3f}", "-t", f"{span:.3f}"],
                )

            if len(names) < 2:
                raise SegmentedRenderSkipped("Segmented render produced insufficient segments.")

            listing = "".join(f"file '{n}'\n" for n in names)
            await self.handle.write_file(list_name, listing.encode("utf-8"))
            await self.handle.exec_checked(
                base_args(self._threads, filter_threads=False)
                + ["-y", "-f", "concat", "-safe", "0", "-i", list_name, "-c", "copy", output_name],
                "Segment concat render",
            )
        finally:
            await self.handle.delete_file(list_name)
            for n in names:
                await self.handle.delete_file(n)

    async def _recover(self, input_name: str, source: bytes, reason: str) -> None:
        await self.handle.refresh(reason)
        self.state = RenderState.WRITING_INPUT
        await self.handle.write_file(input_name, source)
        self.state = RenderState.RENDERING

    async def render_mix(
        self,
        *,
        base: str,
        input_name: str,
        output_name: str,
        source: bytes,
        profile: Optional[AdaptiveProfile],
    ) -> RenderOutcome:
        self.state = RenderState.WRITING_INPUT
        await self.handle.write_file(input_name, source)

        strategies = build_strategies(self.compiler, profile)
        attempts: List[str] = []
        last_error: Optional[BaseException] = None
        duration: Optional[float] = None
        duration_probed = False

        for index, strategy in enumerate(strategies):
            self.state = RenderState.RENDERING
            attempts.append(strategy.label)
            try:
                await self.render_single(input_name, output_name, profile, strategy.options)
                return self._rendered(base, None if index == 0 else strategy.label, attempts)
            except EngineError as e:
                last_error = e

            fatal = isinstance(last_error, EngineFatalError)
            failure = summarize_failure_reason(last_error)
            if fatal:
                await self._recover(input_name, source, f"mix fallback on {base}")

            compat = looks_like_stage_incompatibility(getattr(last_error, "log_text", ""))
            if compat and self.compiler.noise_reduction_stage(profile, strategy.options) is not None:
                self._note(f"[MixFallback] {base}: {strategy.label} failed ({failure}), trying {strategy.label} with adaptive-NR compatibility split.")
                attempts.append(_variant_label(index, strategy, "adaptive-NR compatibility"))
                try:
                    await self.render_split(input_name, output_name, profile, strategy.options)
                    return self._rendered(base, attempts[-1], attempts)
                except (EngineError, SplitRenderUnavailable) as e:
                    last_error = e
                    if isinstance(e, EngineFatalError):
                        fatal = True
                        await self._recover(input_name, source, f"adaptive-NR compatibility fallback on {base}")

            if not fatal:
                if not duration_probed:
                    duration_probed = True
                    try:
                        duration = await self.probe_duration(input_name)
                    except EngineFatalError as e:
                        log.warning("duration read fault base=%s err=%s", base, e)
                        duration = None
                        fatal = True
                        await self._recover(input_name, source, f"duration read fault on {base}")
                    except EngineError as e:
                        log.warning("duration probe failed base=%s err=%s", base, e)
                        duration = None
                if not fatal and duration is not None and duration >= self.env.segment_min_duration_seconds:
                    self._note(f"[MixFallback] {base}: {strategy.label} failed ({failure}), trying segmented {strategy.label}.")
                    attempts.append(_variant_label(index, strategy, "segmented"))
                    try:
                        await self.render_segmented(input_name, output_name, profile, strategy.options, duration)
                        return self._rendered(base, attempts[-1], attempts)
                    except SegmentedRenderSkipped as e:
                        log.info("%s: %s", base, e)
                    except EngineError as e:
                        last_error = e
                        if isinstance(e, EngineFatalError):
                            await self._recover(input_name, source, f"segmented mix fallback on {base}")

            if index < len(strategies) - 1:
                self._note(
                    f"[MixFallback] {base}: {strategy.label} failed ({summarize_failure_reason(last_error)}), "
                    f"trying {strategies[index + 1].label}."
                )

        self.state = RenderState.FAILED
        reason = summarize_failure_reason(last_error) if last_error is not None else "Mix-ready render failed."
        return RenderOutcome(RenderState.FAILED, None, reason, attempts)

    def _rendered(self, base: str, fallback: Optional[str], attempts: List[str]) -> RenderOutcome:
        self.state = RenderState.RENDERED
        if fallback:
            self._note(f"[MixFallback] {base}: rendered with {fallback}.")
        return RenderOutcome(RenderState.RENDERED, fallback, None, attempts)

    async def render_blend(self, mix_name: str, blend_name: str, profile: Optional[AdaptiveProfile]) -> None:
        args = (
            base_args(self._threads)
            + ["-y", "-i", mix_name, "-filter_complex", build_blend_graph(profile)]
            + pcm_output_args(blend_name)
        )
        await self.handle.exec_checked(args, "Blend mix-ready render")
