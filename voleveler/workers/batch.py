from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from voleveler.adaptive.chain import FilterChainCompiler
from voleveler.adaptive.profile import AdaptiveProfile, ProfileToggles, build_adaptive_profile
from voleveler.analysis import BatchReference, SignalMetrics, analyze_file, build_batch_reference
from voleveler.common.config import LevelerSettings, dump_json
from voleveler.common.engine import (
    EngineError,
    EngineFactory,
    EngineFatalError,
    EngineHandle,
    EngineInitError,
    LogBuffer,
    ffmpeg_engine_factory,
)
from voleveler.common.env import Env
from voleveler.common.ffmpeg import summarize_failure_reason
from voleveler.common.logging_setup import append_batch_log, get_logger
from voleveler.common.paths import manifest_path, outbox_dir
from voleveler.common.utils import format_signed, sanitize_base
from voleveler.workers.loudness import run_loudnorm
from voleveler.workers.orchestrator import MixRenderFailed, RenderOrchestrator


log = get_logger("batch")

STATUS_DONE = "Done"
STATUS_WARNINGS = "Done with warnings"
STATUS_FAILED = "Failed"

MIN_BLEND_GAIN = 0.0001


@dataclass(frozen=True)
class Job:
    source: Path
    base: str
    input_name: str
    mix_name: str
    blend_mix_name: str


def build_jobs(sources: Sequence[Path]) -> List[Job]:
    """One job per source; repeated base names get _2, _3, ... suffixes."""
    seen: Dict[str, int] = {}
    jobs: List[Job] = []
    for index, src in enumerate(sources):
        raw = sanitize_base(Path(src).name) or f"input_{index + 1}"
        count = seen.get(raw, 0)
        seen[raw] = count + 1
        base = raw if count == 0 else f"{raw}_{count + 1}"
        jobs.append(Job(
            source=Path(src),
            base=base,
            input_name=f"{base}_input.wav",
            mix_name=f"{base}_mixready.wav",
            blend_mix_name=f"{base}_blend_mixready.wav",
        ))
    return jobs


def should_recycle_engine(completed: int, total: int, *, threshold: int, interval: int) -> bool:
    if total < threshold or interval <= 0:
        return False
    return completed < total and completed % interval == 0


@dataclass(frozen=True)
class OutputEntry:
    name: str
    kind: str  # mixready | loudness
    variant: str  # clean | blend
    path: str
    size: int


@dataclass(frozen=True)
class FailedFile:
    base: str
    file_name: str
    reason: str


@dataclass
class BatchResult:
    batch_id: str
    outputs: List[OutputEntry] = field(default_factory=list)
    failures: List[FailedFile] = field(default_factory=list)
    reference: Optional[BatchReference] = None
    fallbacks: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return STATUS_FAILED
        return STATUS_WARNINGS if self.failures else STATUS_DONE

    def to_manifest(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "error": self.error,
            "reference": self.reference.as_dict() if self.reference else None,
            "outputs": [asdict(o) for o in self.outputs],
            "fallbacks": dict(self.fallbacks),
            "failures": [asdict(f) for f in self.failures],
        }


def describe_profile(base: str, profile: AdaptiveProfile, metrics: SignalMetrics, nr_label: str) -> str:
    return (
        f"[Adaptive] {base}: HPF {profile.highpass_hz} Hz, low-mid {format_signed(profile.low_mid_gain_db)} dB, "
        f"presence {format_signed(profile.presence_gain_db)} dB, room {profile.room_risk} ({metrics.room_score or 0:.2f}), "
        f"noise {profile.noise_risk} ({profile.noise_floor_db:.1f} dB; adaptive-NR {nr_label}), "
        f"instability {profile.instability_score * 100:.0f}%, clicks {profile.click_score * 100:.0f}%, "
        f"conf {metrics.analysis_confidence or 0:.2f}, tail-gate {'on' if profile.use_tail_gate else 'off'}, "
        f"echo {metrics.echo_delay_ms or 0:g} ms, "
        f"blend {profile.blend_indoor_gain * 100:.1f}/{profile.blend_outdoor_gain * 100:.1f}%."
    )


class BatchRunner:
    """Analysis phase, batch reference, then the per-file render phase.

    Files run strictly in submission order against one EngineHandle; a
    file's failure is recorded and the batch moves on.
    """

    def __init__(
        self,
        *,
        env: Env,
        settings: LevelerSettings,
        batch_id: str,
        engine_factory: Optional[EngineFactory] = None,
    ) -> None:
        self.env = env
        self.settings = settings
        self.batch_id = batch_id
        self.handle = EngineHandle(
            engine_factory or ffmpeg_engine_factory(env, batch_id),
            log_buffer=LogBuffer(max_lines=env.log_buffer_max_lines, keep_lines=env.log_buffer_keep_lines),
        )
        self.compiler = FilterChainCompiler(settings)
        self.orchestrator = RenderOrchestrator(env=env, batch_id=batch_id, handle=self.handle, compiler=self.compiler)
        self.toggles = ProfileToggles.from_settings(settings)

    def _note(self, line: str) -> None:
        log.info(line)
        append_batch_log(self.env, self.batch_id, line)

    async def _maybe_recycle(self, phase: str, completed: int, total: int) -> None:
        if should_recycle_engine(
            completed, total, threshold=self.env.recycle_file_threshold, interval=self.env.recycle_interval
        ):
            await self.handle.refresh(f"{phase} memory guard ({completed}/{total})")

    async def analyze_all(self, jobs: List[Job]) -> Dict[str, SignalMetrics]:
        self._note(f"Deep analysis started for {len(jobs)} file(s) (up to {self.env.analysis_sample_seconds}s each).")
        by_base: Dict[str, SignalMetrics] = {}
        for i, job in enumerate(jobs):
            try:
                await self.handle.write_file(job.input_name, job.source.read_bytes())
                by_base[job.base] = await analyze_file(self.handle, job.input_name, env=self.env)
            except (EngineError, OSError) as e:
                self._note(f"Analysis fallback ({job.base}): {e}")
                by_base[job.base] = SignalMetrics.empty()
                if isinstance(e, EngineFatalError):
                    await self.handle.refresh(f"analysis failure on {job.base}")
            finally:
                await self.handle.delete_file(job.input_name)
            await self._maybe_recycle("analysis", i + 1, len(jobs))
        return by_base

    def _publish(self, result: BatchResult, name: str, data: bytes, kind: str, variant: str) -> None:
        dst = outbox_dir(self.env, self.batch_id) / name
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_bytes(data)
        result.outputs.append(OutputEntry(name=name, kind=kind, variant=variant, path=str(dst), size=len(data)))

    async def process_job(self, job: Job, profile: Optional[AdaptiveProfile], result: BatchResult) -> None:
        loud = self.settings.loudness_preset
        keep_mix = self.settings.keep_mix_ready or loud is None
        temp_names = [job.input_name, job.mix_name, job.blend_mix_name]
        try:
            outcome = await self.orchestrator.render_mix(
                base=job.base,
                input_name=job.input_name,
                output_name=job.mix_name,
                source=job.source.read_bytes(),
                profile=profile,
            )
            if not outcome.ok:
                raise MixRenderFailed(outcome.reason or "Mix-ready render failed.")
            if outcome.fallback_applied:
                result.fallbacks[job.base] = outcome.fallback_applied

            mix_bytes = await self.handle.read_file(job.mix_name)
            if keep_mix:
                self._publish(result, job.mix_name, mix_bytes, "mixready", "clean")

            blend_rendered = False
            if self.settings.scene_blend:
                gain = (profile.blend_indoor_gain + profile.blend_outdoor_gain) if profile else 0.0
                if gain <= MIN_BLEND_GAIN:
                    self._note(f"[Blend] {job.base}: bypassed (adaptive blend gain near zero for room/noise safety).")
                else:
                    try:
                        await self.orchestrator.render_blend(job.mix_name, job.blend_mix_name, profile)
                        blend_bytes = await self.handle.read_file(job.blend_mix_name)
                        blend_rendered = True
                        if keep_mix:
                            self._publish(result, job.blend_mix_name, blend_bytes, "mixready", "blend")
                    except EngineError as e:
                        self._note(f"[Blend] {job.base}: bypassed ({e})")
                        if isinstance(e, EngineFatalError):
                            raise

            if loud is not None:
                variants = [("clean", job.mix_name, f"{job.base}_{loud.suffix}.wav")]
                if blend_rendered:
                    variants.append(("blend", job.blend_mix_name, f"{job.base}_blend_{loud.suffix}.wav"))
                for variant, src_name, out_name in variants:
                    temp_names.append(out_name)
                    await run_loudnorm(self.handle, src_name, out_name, loud, threads=max(1, self.env.ffmpeg_threads))
                    self._publish(result, out_name, await self.handle.read_file(out_name), "loudness", variant)
        except (EngineError, MixRenderFailed, OSError) as e:
            reason = summarize_failure_reason(e)
            result.failures.append(FailedFile(base=job.base, file_name=job.source.name, reason=reason))
            self._note(f"Error ({job.base}): {reason}")
            if isinstance(e, EngineFatalError):
                await self.handle.refresh(f"processing failure on {job.base}")
        finally:
            for name in temp_names:
                await self.handle.delete_file(name)

    async def run(self, sources: Sequence[Path]) -> BatchResult:
        result = BatchResult(batch_id=self.batch_id)
        jobs = build_jobs(sources)
        try:
            await self.handle.acquire()

            analyses: Dict[str, SignalMetrics] = {}
            if self.settings.needs_analysis:
                analyses = await self.analyze_all(jobs)

            if self.settings.smart_match_enabled:
                result.reference = build_batch_reference(analyses[j.base] for j in jobs)
                if result.reference is not None:
                    r = result.reference
                    self._note(
                        f"Reference tone low/mid {r.low_tilt:.1f} dB, high/mid {r.high_tilt:.1f} dB, LRA {r.lra:.1f}."
                    )
                else:
                    self._note("Reference analysis unavailable; using base processing chain.")

            for i, job in enumerate(jobs):
                profile = build_adaptive_profile(analyses.get(job.base), result.reference, self.toggles)
                if profile is not None:
                    nr_label = "on(spectral)" if self.compiler.has_noise_reduction(profile) else "off"
                    self._note(describe_profile(job.base, profile, analyses.get(job.base) or SignalMetrics.empty(), nr_label))
                await self.process_job(job, profile, result)
                await self._maybe_recycle("processing", i + 1, len(jobs))

            if result.failures:
                self._note(
                    f"[Warning] {len(result.failures)} file(s) failed to optimize. "
                    "Re-submit only the failed files and run again."
                )
        except EngineInitError as e:
            result.error = str(e)
            self._note(f"Error: {e}")
        finally:
            self.handle.release()

        self._note(f"Batch {self.batch_id}: {result.status}")
        return result


def write_manifest(env: Env, result: BatchResult) -> Path:
    p = manifest_path(env, result.batch_id)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(dump_json(result.to_manifest()), encoding="utf-8")
    return p
