#!/usr/bin/env python3
"""
Audio assembler: sequences speech files with effect fillers and a music bed,
adds the opening/ending stingers, computes chapter marks and embeds metadata.

Chapters and the concatenation order are both derived from one timeline, so
every chapter boundary falls exactly on a file boundary of the main track.
"""

import math
import os
import subprocess
import time
from dataclasses import dataclass, field

from pydub import AudioSegment

from errors import AudioGenerationError, FileNotReadyError, ProgramBuildError
from models import Chapter

FILE_READY_POLL_SECONDS = 0.2
MIX_INPUTS = 2

DEFAULT_CHAPTER_TITLES = {
    "opening": "Opening",
    "introduction": "Introduction",
    "article": "Article {index}: {title}",
    "closing": "Ending",
}


@dataclass(frozen=True)
class Effects:
    short: str      # after the opening speech and between articles
    part: str       # between the parts of one article
    long: str       # before the ending speech


@dataclass(frozen=True)
class TimelineEntry:
    path: str
    chapter_index: int
    chapter_title: str


@dataclass
class AssemblyRequest:
    spoken: object
    workdir: str
    output_name: str
    metadata: dict = field(default_factory=dict)


@dataclass
class AssemblyResult:
    path: str
    duration_ms: int
    chapters: list


def build_timeline(spoken, effects, chapter_titles=None):
    """
    Order every file of the main track and tag it with its chapter.

    Chapter 0 is the opening stinger (not part of the main track), chapter 1
    the introduction, then one chapter per article, then the closing.
    """
    titles = dict(DEFAULT_CHAPTER_TITLES, **(chapter_titles or {}))
    timeline = []

    intro_title = titles["introduction"]
    if spoken.opening is not None:
        timeline.append(TimelineEntry(spoken.opening.path, 1, intro_title))
    timeline.append(TimelineEntry(effects.short, 1, intro_title))

    articles = spoken.articles
    for i, article in enumerate(articles, 1):
        chapter_index = i + 1
        title = titles["article"].format(index=i, title=article.title)
        for j, part in enumerate(article.parts):
            if j > 0:
                timeline.append(TimelineEntry(effects.part, chapter_index, title))
            timeline.append(TimelineEntry(part.path, chapter_index, title))
        # Inter-article filler belongs to the article it follows
        if i < len(articles):
            timeline.append(TimelineEntry(effects.short, chapter_index, title))

    closing_index = len(articles) + 2
    timeline.append(TimelineEntry(effects.long, closing_index, titles["closing"]))
    if spoken.ending is not None:
        timeline.append(TimelineEntry(spoken.ending.path, closing_index, titles["closing"]))
    return timeline


def compute_chapters(timeline, durations, intro_stinger_ms, outro_stinger_ms,
                     artifact_ms=None, opening_title="Opening", tolerance_ms=1000):
    """
    Compute contiguous chapters from measured durations.

    Args:
        timeline: Entries from build_timeline
        durations: Mapping of path -> measured duration in ms
        intro_stinger_ms: Opening stinger length (the opening chapter; none when 0)
        outro_stinger_ms: Ending stinger length (appended to the last chapter)
        artifact_ms: Measured duration of the final artifact; the last chapter
            end is snapped to it
        opening_title: Title of the stinger chapter
        tolerance_ms: Drift allowed before a snap is reported

    Returns:
        List of Chapter starting at 0 with no gaps or overlaps.
    """
    chapters = []
    if intro_stinger_ms > 0:
        chapters.append(Chapter(opening_title, 0, intro_stinger_ms))
    cursor = intro_stinger_ms
    current_index = None
    current_title = None
    current_start = cursor

    for entry in timeline:
        if entry.chapter_index != current_index:
            if current_index is not None:
                chapters.append(Chapter(current_title, current_start, cursor))
            current_index = entry.chapter_index
            current_title = entry.chapter_title
            current_start = cursor
        cursor += durations[entry.path]

    cursor += outro_stinger_ms
    if current_index is not None:
        chapters.append(Chapter(current_title, current_start, cursor))
    else:
        chapters = [Chapter(opening_title, 0, cursor)]

    if artifact_ms is not None and chapters[-1].end_ms != artifact_ms:
        drift = artifact_ms - chapters[-1].end_ms
        if abs(drift) > tolerance_ms:
            print(f"  ⚠️ Chapter total differs from artifact by {drift}ms")
        last = chapters[-1]
        if artifact_ms <= last.start_ms:
            raise AudioGenerationError(
                f"Artifact ({artifact_ms}ms) is shorter than its chapter starts",
                context={"artifact_ms": artifact_ms, "last_start_ms": last.start_ms},
            )
        chapters[-1] = Chapter(last.title, last.start_ms, artifact_ms)

    return chapters


def wait_for_stable_file(path, timeout=30.0, interval=FILE_READY_POLL_SECONDS):
    """Block until `path` exists, is non-empty and its size is unchanged across two checks."""
    deadline = time.monotonic() + timeout
    last_size = None
    while True:
        size = os.path.getsize(path) if os.path.exists(path) else 0
        if size > 0 and size == last_size:
            return path
        last_size = size if size > 0 else None
        if time.monotonic() >= deadline:
            raise FileNotReadyError(
                f"File not ready after {timeout}s: {path}",
                context={"path": str(path), "size": size},
            )
        time.sleep(interval)


def _gain_db(ratio):
    """Convert a linear volume ratio (ffmpeg volume=) to dB for pydub."""
    if ratio <= 0:
        return -120.0
    return 20 * math.log10(ratio)


def _escape_ffmetadata(value):
    value = str(value)
    for ch in ("\\", "=", ";", "#"):
        value = value.replace(ch, "\\" + ch)
    return value.replace("\n", "\\\n")


def write_ffmetadata(path, metadata, chapters):
    """Write an ffmpeg metadata file with global tags and chapter marks."""
    lines = [";FFMETADATA1"]
    for key, value in metadata.items():
        if value is not None and value != "":
            lines.append(f"{key}={_escape_ffmetadata(value)}")
    for chapter in chapters:
        lines.extend([
            "",
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            f"START={chapter.start_ms}",
            f"END={chapter.end_ms}",
            f"title={_escape_ffmetadata(chapter.title)}",
        ])
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return path


class FfmpegMediaTool:
    """Media operations backed by pydub (decode, mix, export) and the ffmpeg binary."""

    def __init__(self, timeout=600.0, ffmpeg_binary="ffmpeg", audio_format="mp3"):
        self.timeout = timeout
        self.ffmpeg_binary = ffmpeg_binary
        self.audio_format = audio_format

    def _load(self, path):
        try:
            return AudioSegment.from_file(str(path))
        except Exception as e:
            raise AudioGenerationError(f"Could not decode {path}: {e}") from e

    def _export(self, audio, output_path, **kwargs):
        try:
            audio.export(str(output_path), format=self.audio_format, **kwargs).close()
        except Exception as e:
            raise AudioGenerationError(f"Could not encode {output_path}: {e}") from e
        return output_path

    def measure_duration_ms(self, path):
        return len(self._load(path))

    def concat(self, paths, output_path):
        combined = AudioSegment.empty()
        for path in paths:
            combined += self._load(path)
        return self._export(combined, output_path)

    def loop_to_length(self, path, length_ms, output_path):
        bed = self._load(path)
        if len(bed) == 0:
            raise AudioGenerationError(f"Music bed is empty: {path}")
        looped = bed * math.ceil(length_ms / len(bed))
        return self._export(looped[:length_ms], output_path)

    def mix(self, main_path, bed_path, output_path, main_gain=2.0, bed_gain=0.05, volume_rate=2.5):
        # amix scales each of its inputs by 1/N
        main = self._load(main_path).apply_gain(_gain_db(main_gain / MIX_INPUTS))
        bed = self._load(bed_path).apply_gain(_gain_db(bed_gain / MIX_INPUTS))
        # overlay keeps the main track's length
        mixed = main.overlay(bed).apply_gain(_gain_db(volume_rate))
        return self._export(mixed, output_path)

    def join_with_stingers(self, intro_path, main_path, outro_path, output_path,
                           sample_rate=44100, channels=2, bitrate="192k"):
        parts = [p for p in (intro_path, main_path, outro_path) if p]
        combined = AudioSegment.empty()
        for path in parts:
            combined += self._load(path).set_frame_rate(sample_rate).set_channels(channels)
        return self._export(combined, output_path, bitrate=bitrate)

    def embed_metadata(self, input_path, output_path, metadata, chapters):
        metadata_path = f"{output_path}.ffmetadata"
        write_ffmetadata(metadata_path, metadata, chapters)
        cmd = [
            self.ffmpeg_binary, "-y",
            "-i", str(input_path),
            "-i", metadata_path,
            "-map", "0:a",
            "-map_metadata", "1",
            "-map_chapters", "1",
            "-codec", "copy",
            "-id3v2_version", "3",
            str(output_path),
        ]
        try:
            subprocess.run(cmd, check=True, capture_output=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", "replace")[-500:]
            raise AudioGenerationError(f"ffmpeg metadata embed failed: {stderr}") from e
        except subprocess.TimeoutExpired as e:
            raise AudioGenerationError(f"ffmpeg metadata embed timed out after {self.timeout}s") from e
        except OSError as e:
            raise AudioGenerationError(f"Could not run ffmpeg: {e}") from e
        finally:
            if os.path.exists(metadata_path):
                os.remove(metadata_path)
        return output_path


class AudioAssembler:
    def __init__(self, media_tool, assets, mix_config=None, chapter_config=None,
                 file_ready_timeout=30.0, poll_interval=FILE_READY_POLL_SECONDS):
        """
        Args:
            media_tool: FfmpegMediaTool or a compatible fake
            assets: Mapping with bgm, opening_stinger, ending_stinger,
                effect_short, effect_part and effect_long paths
            mix_config: Gains and output format (see config/program.json "mix")
            chapter_config: Chapter titles and tolerance_ms
        """
        self.media_tool = media_tool
        self.assets = {k: str(v) if v else v for k, v in assets.items()}
        self.mix_config = dict(mix_config or {})
        self.chapter_config = dict(chapter_config or {})
        self.file_ready_timeout = file_ready_timeout
        self.poll_interval = poll_interval

    @property
    def effects(self):
        return Effects(
            short=self.assets["effect_short"],
            part=self.assets["effect_part"],
            long=self.assets["effect_long"],
        )

    def _ready(self, path):
        return wait_for_stable_file(path, self.file_ready_timeout, self.poll_interval)

    def assemble(self, request, check_cancelled=None):
        """Produce the final artifact and its chapter list."""
        def checkpoint():
            if check_cancelled:
                check_cancelled()

        titles = {k: v for k, v in self.chapter_config.items() if k in DEFAULT_CHAPTER_TITLES}
        timeline = build_timeline(request.spoken, self.effects, titles)

        workdir = request.workdir
        main_path = os.path.join(workdir, "main.mp3")
        bed_path = os.path.join(workdir, "bed.mp3")
        mixed_path = os.path.join(workdir, "mixed.mp3")
        joined_path = os.path.join(workdir, "joined.mp3")
        final_path = os.path.join(workdir, request.output_name)
        outputs = [main_path, bed_path, mixed_path, joined_path, final_path]

        intro_stinger = self.assets.get("opening_stinger")
        outro_stinger = self.assets.get("ending_stinger")
        mix = self.mix_config

        print(f"🎚️  Assembling audio from {len(timeline)} files...")
        try:
            durations = {}
            for entry in timeline:
                if entry.path not in durations:
                    durations[entry.path] = self.media_tool.measure_duration_ms(entry.path)
            intro_ms = self.media_tool.measure_duration_ms(intro_stinger) if intro_stinger else 0
            outro_ms = self.media_tool.measure_duration_ms(outro_stinger) if outro_stinger else 0

            self.media_tool.concat([e.path for e in timeline], main_path)
            self._ready(main_path)
            main_ms = self.media_tool.measure_duration_ms(main_path)
            checkpoint()

            self.media_tool.loop_to_length(self.assets["bgm"], main_ms, bed_path)
            self._ready(bed_path)
            self.media_tool.mix(
                main_path, bed_path, mixed_path,
                main_gain=mix.get("main_gain", 2.0),
                bed_gain=mix.get("bgm_gain", 0.05),
                volume_rate=mix.get("volume_rate", 2.5),
            )
            self._ready(mixed_path)
            checkpoint()

            self.media_tool.join_with_stingers(
                intro_stinger, mixed_path, outro_stinger, joined_path,
                sample_rate=mix.get("sample_rate", 44100),
                channels=mix.get("channels", 2),
                bitrate=mix.get("bitrate", "192k"),
            )
            self._ready(joined_path)
            artifact_ms = self.media_tool.measure_duration_ms(joined_path)

            chapters = compute_chapters(
                timeline, durations, intro_ms, outro_ms,
                artifact_ms=artifact_ms,
                opening_title=self.chapter_config.get("opening", DEFAULT_CHAPTER_TITLES["opening"]),
                tolerance_ms=self.chapter_config.get("tolerance_ms", 1000),
            )
            checkpoint()

            self.media_tool.embed_metadata(joined_path, final_path, request.metadata, chapters)
            self._ready(final_path)
        except ProgramBuildError:
            _remove_files(outputs)
            raise
        except Exception as e:
            _remove_files(outputs)
            raise AudioGenerationError(f"Audio assembly failed: {e}") from e

        _remove_files(outputs[:-1])
        print(f"✅ Assembled {request.output_name}")
        print(f"   Duration: {artifact_ms / 1000 / 60:.1f} minutes, {len(chapters)} chapters")
        return AssemblyResult(path=final_path, duration_ms=artifact_ms, chapters=chapters)


def _remove_files(paths):
    for path in paths:
        if os.path.exists(path):
            os.remove(path)
