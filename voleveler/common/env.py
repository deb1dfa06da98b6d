import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Env:
    storage_root: str
    settings_path: str

    # engine
    ffmpeg_bin: str
    ffmpeg_threads: int
    exec_timeout_sec: int

    # analysis window
    analysis_sample_seconds: int
    analysis_sample_rate: int

    # segmented fallback
    segment_seconds: float
    segment_min_duration_seconds: float

    # memory hygiene: recycle engine every N files once batch >= threshold
    recycle_file_threshold: int
    recycle_interval: int

    # rolling engine log buffer
    log_buffer_max_lines: int
    log_buffer_keep_lines: int

    @staticmethod
    def load() -> "Env":
        return Env(
            storage_root=os.environ.get("VOLEVELER_STORAGE_ROOT", "storage"),
            settings_path=os.environ.get("VOLEVELER_SETTINGS", "configs/leveler.yaml"),

            ffmpeg_bin=os.environ.get("VOLEVELER_FFMPEG_BIN", "ffmpeg"),
            ffmpeg_threads=int(os.environ.get("VOLEVELER_FFMPEG_THREADS", "1")),
            exec_timeout_sec=int(os.environ.get("VOLEVELER_EXEC_TIMEOUT_SEC", str(30 * 60))),

            analysis_sample_seconds=int(os.environ.get("VOLEVELER_ANALYSIS_SECONDS", "180")),
            analysis_sample_rate=int(os.environ.get("VOLEVELER_ANALYSIS_RATE", "16000")),

            segment_seconds=float(os.environ.get("VOLEVELER_SEGMENT_SECONDS", "75")),
            segment_min_duration_seconds=float(os.environ.get("VOLEVELER_SEGMENT_MIN_SECONDS", "105")),

            recycle_file_threshold=int(os.environ.get("VOLEVELER_RECYCLE_THRESHOLD", "8")),
            recycle_interval=int(os.environ.get("VOLEVELER_RECYCLE_INTERVAL", "3")),

            log_buffer_max_lines=int(os.environ.get("VOLEVELER_LOG_BUFFER_MAX", "2000")),
            log_buffer_keep_lines=int(os.environ.get("VOLEVELER_LOG_BUFFER_KEEP", "1200")),
        )
