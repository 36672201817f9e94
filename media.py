# media.py
import json
import re
import subprocess
import time
from datetime import datetime, timezone
from typing import List, Sequence

from intervals import Interval, derive_keep_segments
from models import ProcessingResult, VideoMetadata

SILENCE_START_RE = re.compile(r"silence_start:\s*(-?\d+(?:\.\d+)?)")
SILENCE_END_RE = re.compile(r"silence_end:\s*(-?\d+(?:\.\d+)?)")

# Fixed re-encode profile for cut output
ENCODE_ARGS = [
    "-c:v", "libx264",
    "-preset", "ultrafast",
    "-crf", "28",
    "-c:a", "aac",
    "-b:a", "128k",
]


class EngineError(Exception):
    """ffmpeg/ffprobe did not succeed. `stderr` holds the engine's diagnostic stream."""

    def __init__(self, message, stderr=""):
        super().__init__(message)
        self.stderr = stderr or ""

    def diagnostic(self) -> str:
        tail = self.stderr.strip()[-2000:]
        return f"{self}\n{tail}" if tail else str(self)


class EngineCancelled(EngineError):
    """The engine process was killed because its job was cancelled."""


def _log(msg):
    now = datetime.now(timezone.utc).isoformat()
    print(f"[{now}] [ffmpeg] {msg}")


def parse_silences(stderr: str) -> List[Interval]:
    """
    Pair the k-th silence_start with the k-th silence_end.
    A trailing start without an end (silent until end of stream) is dropped.
    """
    starts = [max(0.0, float(m)) for m in SILENCE_START_RE.findall(stderr)]
    ends = [float(m) for m in SILENCE_END_RE.findall(stderr)]

    silences = []
    for start, end in zip(starts, ends):
        if end <= start:
            _log(f"dropping degenerate silence [{start}, {end})")
            continue
        silences.append(Interval(start, end))
    return silences


def build_filter_complex(segments: Sequence[Interval]) -> str:
    if not segments:
        return ""
    filters = []
    for i, seg in enumerate(segments):
        filters.append(f"[0:v]trim=start={seg.start:.3f}:end={seg.end:.3f},setpts=PTS-STARTPTS[v{i}]")
        filters.append(f"[0:a]atrim=start={seg.start:.3f}:end={seg.end:.3f},asetpts=PTS-STARTPTS[a{i}]")
    n = len(segments)
    v_inputs = "".join(f"[v{i}]" for i in range(n))
    a_inputs = "".join(f"[a{i}]" for i in range(n))
    filters.append(f"{v_inputs}concat=n={n}:v=1:a=0[outv]")
    filters.append(f"{a_inputs}concat=n={n}:v=0:a=1[outa]")
    return ";".join(filters)


def parse_probe(data: dict) -> VideoMetadata:
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise EngineError("No video stream found")
    fmt = data.get("format") or {}
    return VideoMetadata(
        duration=float(fmt.get("duration") or 0),
        codec=video.get("codec_name") or "",
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        bitrate=int(fmt.get("bit_rate") or 0),
        size=int(fmt.get("size") or 0),
    )


class MediaEngine:
    def __init__(self, silence_threshold="-35dB", silence_duration=0.5, phase_timeout=None,
                 ffmpeg="ffmpeg", ffprobe="ffprobe", poll_interval=0.5):
        if not str(silence_threshold).endswith("dB"):
            silence_threshold = f"{silence_threshold}dB"
        self.silence_threshold = silence_threshold
        self.silence_duration = silence_duration
        self.phase_timeout = phase_timeout or None  # 0 disables
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.poll_interval = poll_interval

    # ---------------- Process handling ----------------
    def _run(self, label, cmd, cancel=None):
        """
        Run one engine process, polling so that a cancelled job or an
        overrunning phase can kill it. Returns (stdout, stderr).
        """
        try:
            # ffmpeg echoes container tags verbatim; they are not always UTF-8
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                    encoding="utf-8", errors="replace")
        except OSError as e:
            raise EngineError(f"{label}: could not start {cmd[0]} ({e})")

        started = time.monotonic()
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise EngineCancelled(f"{label} cancelled")
                if self.phase_timeout and time.monotonic() - started > self.phase_timeout:
                    proc.kill()
                    _, stderr = proc.communicate()
                    raise EngineError(f"{label} timed out after {self.phase_timeout}s and was killed", stderr)

        if proc.returncode < 0:
            raise EngineError(f"{label} was killed by signal {-proc.returncode}", stderr)
        if proc.returncode != 0:
            raise EngineError(f"{label} exited with code {proc.returncode}", stderr)
        return stdout, stderr

    # ---------------- Operations ----------------
    def detect_silences(self, input_path, cancel=None) -> List[Interval]:
        _log(f"Detecting silences in: {input_path}")
        cmd = [
            self.ffmpeg, "-hide_banner", "-nostats",
            "-i", input_path,
            "-af", f"silencedetect=noise={self.silence_threshold}:d={self.silence_duration}",
            "-f", "null", "-",
        ]
        _, stderr = self._run("silence detection", cmd, cancel)
        silences = parse_silences(stderr)
        _log(f"Detected {len(silences)} silence intervals")
        return silences

    def probe(self, path, cancel=None) -> VideoMetadata:
        cmd = [
            self.ffprobe, "-v", "quiet",
            "-print_format", "json",
            "-show_format", "-show_streams",
            path,
        ]
        stdout, _ = self._run("ffprobe", cmd, cancel)
        try:
            data = json.loads(stdout or "{}")
        except ValueError as e:
            raise EngineError(f"ffprobe returned unreadable output ({e})")
        return parse_probe(data)

    def copy(self, input_path, output_path, cancel=None):
        cmd = [self.ffmpeg, "-hide_banner", "-i", input_path, "-c", "copy", "-y", output_path]
        self._run("stream copy", cmd, cancel)

    def transform(self, input_path, output_path, segments: Sequence[Interval], cancel=None):
        cmd = [
            self.ffmpeg, "-hide_banner",
            "-i", input_path,
            "-filter_complex", build_filter_complex(segments),
            "-map", "[outv]",
            "-map", "[outa]",
            *ENCODE_ARGS,
            "-y", output_path,
        ]
        _log(f"Cutting {input_path} into {len(segments)} segments")
        self._run("silence removal", cmd, cancel)

    def remove_silences(self, input_path, output_path, silences: Sequence[Interval], cancel=None) -> ProcessingResult:
        metadata = self.probe(input_path, cancel)
        original = metadata.duration

        segments = derive_keep_segments(silences, original) if silences else []
        if not silences or not segments:
            if silences:
                _log("Entire video detected as silence. Keeping original.")
            self.copy(input_path, output_path, cancel)
            return ProcessingResult(
                output_path=output_path,
                original_duration=original,
                final_duration=original,
                time_saved=0.0,
                percentage_saved=0.0,
                silences_removed=len(silences),
            )

        self.transform(input_path, output_path, segments, cancel)
        final = self.probe(output_path, cancel).duration
        time_saved = original - final
        return ProcessingResult(
            output_path=output_path,
            original_duration=original,
            final_duration=final,
            time_saved=time_saved,
            percentage_saved=(time_saved / original * 100) if original > 0 else 0.0,
            silences_removed=len(silences),
        )

    def validate_video(self, path, max_duration=600) -> List[str]:
        """Return a list of problems; empty means the file can be processed."""
        errors = []
        try:
            metadata = self.probe(path)
        except EngineError as e:
            return [f"Failed to validate video: {e}"]
        if metadata.codec != "h264":
            errors.append(f"Invalid codec: {metadata.codec}. Expected H.264")
        if metadata.duration > max_duration:
            errors.append(f"Video duration ({metadata.duration}s) exceeds maximum ({max_duration}s)")
        return errors
