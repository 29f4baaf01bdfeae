#!/usr/bin/env python3
"""
Program builder: runs the full pipeline for one program.

    FETCH_CANDIDATES -> FILTER_NEW -> CHECK_THRESHOLD -> GENERATE_SCRIPT ->
    SYNTHESIZE_SEGMENTS -> ASSEMBLE_AUDIO -> UPLOAD -> PERSIST ->
    (VECTORIZE) -> DONE

FAILED is reachable from every stage. The same pipeline builds the shared
daily program and per-feed personalized programs; the differences live in
strategies.py.
"""

import argparse
import sys
import tempfile
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime

from audio_assembler import AssemblyRequest, AudioAssembler, FfmpegMediaTool
from article_source import ArticleSourceClient
from config_loader import (
    get_asset_path,
    get_program_now,
    get_settings,
    load_program_config,
    load_terms,
)
from errors import (
    ArticleSourceError,
    AudioGenerationError,
    BuildCancelledError,
    InsufficientArticlesError,
    PersistenceError,
    ProgramAlreadyExistsError,
    ProgramBuildError,
    ScriptGenerationError,
    UploadError,
    failure_reason_for,
)
from llm_client import ClaudeLanguageModel, OpenAIEmbedder
from models import (
    ATTEMPT_FAILED,
    ATTEMPT_SKIPPED,
    ATTEMPT_SUCCESS,
    KIND_DAILY,
    KIND_PERSONALIZED,
    GenerationAttempt,
    Program,
    Script,
    parse_script,
)
from program_store import JsonProgramStore
from script_generator import ScriptGenerator
from speech import OpenAISpeechClient, SegmentSynthesizer
from strategies import get_strategy
from uploader import R2Uploader

STAGE_FETCH_CANDIDATES = "FETCH_CANDIDATES"
STAGE_FILTER_NEW = "FILTER_NEW"
STAGE_CHECK_THRESHOLD = "CHECK_THRESHOLD"
STAGE_GENERATE_SCRIPT = "GENERATE_SCRIPT"
STAGE_SYNTHESIZE_SEGMENTS = "SYNTHESIZE_SEGMENTS"
STAGE_ASSEMBLE_AUDIO = "ASSEMBLE_AUDIO"
STAGE_UPLOAD = "UPLOAD"
STAGE_PERSIST = "PERSIST"
STAGE_VECTORIZE = "VECTORIZE"
STAGE_DONE = "DONE"
STAGE_FAILED = "FAILED"

REGENERATE_SCRIPT_AND_AUDIO = "SCRIPT_AND_AUDIO"
REGENERATE_AUDIO_ONLY = "AUDIO_ONLY"
REGENERATE_MODES = (REGENERATE_SCRIPT_AND_AUDIO, REGENERATE_AUDIO_ONLY)

# Error type each stage wraps unexpected failures in
STAGE_ERRORS = {
    STAGE_FETCH_CANDIDATES: ArticleSourceError,
    STAGE_FILTER_NEW: PersistenceError,
    STAGE_GENERATE_SCRIPT: ScriptGenerationError,
    STAGE_SYNTHESIZE_SEGMENTS: AudioGenerationError,
    STAGE_ASSEMBLE_AUDIO: AudioGenerationError,
    STAGE_UPLOAD: UploadError,
    STAGE_PERSIST: PersistenceError,
}


@dataclass
class BuildRun:
    """Progress record for one build."""
    kind: str
    source_key: str
    program_date: date
    stage: str = None
    started_at: datetime = None
    finished_at: datetime = None
    program_id: str = None
    error: str = None

    def advance(self, stage):
        self.stage = stage
        print(f"  ▶ [{self.source_key} {self.program_date}] {stage}")


class ProgramBuilder:
    def __init__(self, store, article_source, script_generator, synthesizer, assembler,
                 uploader, embedder=None, strategies=None, timezone="Asia/Tokyo",
                 embedding_model=None, clock=None):
        self.store = store
        self.article_source = article_source
        self.script_generator = script_generator
        self.synthesizer = synthesizer
        self.assembler = assembler
        self.uploader = uploader
        self.embedder = embedder
        self.strategies = strategies or {
            KIND_DAILY: get_strategy(KIND_DAILY),
            KIND_PERSONALIZED: get_strategy(KIND_PERSONALIZED),
        }
        self.timezone = timezone
        self.embedding_model = embedding_model
        self.clock = clock or (lambda: get_program_now(self.timezone))

    # Stage helpers

    def _check_cancelled(self, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelledError("Build cancelled")

    def _run_stage(self, run, stage, cancel_event, func, *args, **kwargs):
        """Advance to `stage`, run it and wrap untyped failures in the stage's error."""
        self._check_cancelled(cancel_event)
        run.advance(stage)
        try:
            return func(*args, **kwargs)
        except ProgramBuildError:
            raise
        except Exception as e:
            error_cls = STAGE_ERRORS.get(stage, ProgramBuildError)
            raise error_cls(f"{stage} failed: {e}", context={"stage": stage}) from e

    def _produce_audio(self, run, strategy, target, program_date, script, title, cancel_event):
        """Synthesize, assemble and upload. Returns (audio_url, AssemblyResult)."""
        def check():
            self._check_cancelled(cancel_event)

        with tempfile.TemporaryDirectory() as workdir:
            spoken = self._run_stage(
                run, STAGE_SYNTHESIZE_SEGMENTS, cancel_event,
                self.synthesizer.synthesize_script, script, workdir, strategy.voice,
                check_cancelled=check,
            )
            request = AssemblyRequest(
                spoken=spoken,
                workdir=workdir,
                output_name=strategy.artifact_name(target, program_date),
                metadata=strategy.metadata(target, program_date, title),
            )
            result = self._run_stage(
                run, STAGE_ASSEMBLE_AUDIO, cancel_event,
                self.assembler.assemble, request, check_cancelled=check,
            )
            audio_url = self._run_stage(
                run, STAGE_UPLOAD, cancel_event,
                self.uploader.upload, strategy.object_key(target, program_date), result.path,
                "audio/mpeg",
            )
        return audio_url, result

    def _record_attempt(self, target, program_date, status, reason=None,
                        article_count=0, program_id=None):
        """Append a generation attempt; a failed write is reported, never raised."""
        attempt = GenerationAttempt(
            id=uuid.uuid4().hex,
            feed_id=target.feed.id,
            user_id=target.user.id,
            program_date=program_date,
            status=status,
            reason=reason,
            article_count=article_count,
            program_id=program_id,
            created_at=self.clock(),
        )
        try:
            self.store.record_attempt(attempt)
        except Exception as e:
            print(f"  ⚠️ Could not record {status} attempt for feed {target.feed.id}: {e}")
        return attempt

    def _vectorize(self, run, program):
        run.advance(STAGE_VECTORIZE)
        try:
            vector = self.embedder.embed(program.script.full_text())
            self.store.save_vector(program.id, vector, self.embedding_model)
            print(f"  🧭 Vectorized script ({len(vector)} dims)")
        except Exception as e:
            print(f"  ⚠️ Vectorization failed for {program.id}: {e}")

    # Builds

    def build_program(self, kind, selector=None, program_date=None, cancel_event=None):
        """
        Build and persist one program.

        Args:
            kind: 'daily' or 'personalized'
            selector: Feed id for personalized programs (ignored for daily)
            program_date: Program date (defaults to today in the program timezone)
            cancel_event: Optional threading.Event checked between stages

        Returns:
            The persisted Program.
        """
        strategy = self.strategies[kind]
        program_date = program_date or self.clock().date()
        target = strategy.resolve(self.store, selector)
        run = BuildRun(kind=kind, source_key=target.source_key, program_date=program_date,
                       started_at=self.clock())

        print(f"🎙️ Building {kind} program {target.source_key} for {program_date}")

        existing = self.store.find_existing(target.source_key, program_date)
        if existing is not None:
            raise ProgramAlreadyExistsError(
                f"Program already exists for {target.source_key} on {program_date}",
                source_key=target.source_key,
                program_date=program_date,
            )

        selected = []
        try:
            candidates = self._run_stage(
                run, STAGE_FETCH_CANDIDATES, cancel_event,
                strategy.fetch_candidates, self.article_source, target, program_date,
            )
            selected = self._run_stage(
                run, STAGE_FILTER_NEW, cancel_event,
                strategy.filter_new, candidates, self.store, target,
            )

            self._check_cancelled(cancel_event)
            run.advance(STAGE_CHECK_THRESHOLD)
            if len(selected) < strategy.min_articles:
                raise InsufficientArticlesError(
                    f"Only {len(selected)} new articles for {target.source_key} "
                    f"(need {strategy.min_articles})",
                    found=len(selected),
                    required=strategy.min_articles,
                )

            title = strategy.program_title(target, program_date)
            context, note = strategy.build_context(self.store, target, selected)
            script = self._run_stage(
                run, STAGE_GENERATE_SCRIPT, cancel_event,
                self.script_generator.generate, program_date, selected,
                context=context, program_title=title,
            )

            audio_url, result = self._produce_audio(
                run, strategy, target, program_date, script, title, cancel_event
            )

            now = self.clock()
            program = Program(
                id=uuid.uuid4().hex,
                kind=kind,
                source_key=target.source_key,
                program_date=program_date,
                title=script.title or title,
                script=script,
                chapters=result.chapters,
                audio_url=audio_url,
                duration_ms=result.duration_ms,
                article_ids=[a.id for a in selected],
                created_at=now,
                updated_at=now,
                user_id=target.user.id if target.user else None,
                feed_id=target.feed.id if target.feed else None,
                expires_at=strategy.expires_at(program_date, self.timezone),
            )
            self._run_stage(run, STAGE_PERSIST, None, self.store.create, program, selected)
            run.program_id = program.id

        except InsufficientArticlesError as e:
            run.stage = STAGE_FAILED
            run.error = str(e)
            print(f"⏭️  Skipped {target.source_key}: {e}")
            if strategy.records_attempts:
                self._record_attempt(target, program_date, ATTEMPT_SKIPPED,
                                     reason=e.reason, article_count=e.found)
            raise
        except Exception as e:
            failed_stage = run.stage
            run.stage = STAGE_FAILED
            run.error = str(e)
            error = e
            if not isinstance(e, ProgramBuildError):
                error = ProgramBuildError(f"{failed_stage} failed: {e}", context={"stage": failed_stage})
            print(f"❌ {target.source_key} failed at {failed_stage} ({failure_reason_for(error)}): {e}")
            if strategy.records_attempts:
                self._record_attempt(target, program_date, ATTEMPT_FAILED,
                                     reason=failure_reason_for(error), article_count=len(selected))
            if error is e:
                raise
            raise error from e

        # The program is persisted; nothing below rolls it back
        if strategy.records_attempts:
            self._record_attempt(target, program_date, ATTEMPT_SUCCESS,
                                 article_count=len(selected), program_id=program.id)
        if note is not None:
            try:
                self.store.mark_note_introduced(note.id, program.id)
            except Exception as e:
                print(f"  ⚠️ Could not mark listener note {note.id} as introduced: {e}")
        if strategy.vectorize and self.embedder is not None:
            self._vectorize(run, program)

        run.advance(STAGE_DONE)
        run.finished_at = self.clock()
        print(f"✅ Program ready: {program.title}")
        print(f"   URL: {program.audio_url}")
        print(f"   Duration: {program.duration_ms / 1000 / 60:.1f} minutes, {len(program.chapters)} chapters")
        return program

    def build_daily(self, program_date=None, cancel_event=None):
        return self.build_program(KIND_DAILY, None, program_date, cancel_event)

    def build_personalized(self, feed_id, program_date=None, cancel_event=None):
        return self.build_program(KIND_PERSONALIZED, feed_id, program_date, cancel_event)

    def regenerate_program(self, program, mode=REGENERATE_AUDIO_ONLY, cancel_event=None):
        """
        Rebuild an existing program's audio, optionally with a fresh script.

        SCRIPT_AND_AUDIO regenerates the script from the program's stored
        articles; AUDIO_ONLY re-synthesizes the stored script. The program is
        updated in place.
        """
        if mode not in REGENERATE_MODES:
            raise ValueError(f"Unknown regeneration mode: {mode}")
        if isinstance(program, str):
            program_id = program
            program = self.store.get_program(program_id)
            if program is None:
                raise PersistenceError(f"Program not found: {program_id}")

        strategy = self.strategies[program.kind]
        target = strategy.resolve(self.store, program.feed_id)
        run = BuildRun(kind=program.kind, source_key=program.source_key,
                       program_date=program.program_date, started_at=self.clock(),
                       program_id=program.id)
        print(f"🔁 Regenerating {program.id} ({mode})")

        try:
            if mode == REGENERATE_SCRIPT_AND_AUDIO:
                articles = self.store.find_articles(program.article_ids)
                if not articles:
                    raise InsufficientArticlesError(
                        f"No stored articles for program {program.id}", found=0, required=1
                    )
                script = self._run_stage(
                    run, STAGE_GENERATE_SCRIPT, cancel_event,
                    self.script_generator.generate, program.program_date, articles,
                    program_title=program.title,
                )
            else:
                script = program.script if isinstance(program.script, Script) else parse_script(program.script)

            audio_url, result = self._produce_audio(
                run, strategy, target, program.program_date, script, program.title, cancel_event
            )

            program.script = script
            program.chapters = result.chapters
            program.audio_url = audio_url
            program.duration_ms = result.duration_ms
            program.updated_at = self.clock()
            self._run_stage(run, STAGE_PERSIST, None, self.store.update, program)
        except Exception as e:
            print(f"❌ Regeneration of {program.id} failed at {run.stage}: {e}")
            run.stage = STAGE_FAILED
            if isinstance(e, ProgramBuildError):
                raise
            raise ProgramBuildError(f"Regeneration failed: {e}") from e

        if mode == REGENERATE_SCRIPT_AND_AUDIO and strategy.vectorize and self.embedder is not None:
            self._vectorize(run, program)
        run.advance(STAGE_DONE)
        print(f"✅ Regenerated {program.title}")
        return program

    def build_active_feeds(self, program_date=None, max_workers=4, cancel_event=None):
        """
        Build every active personalized feed concurrently.

        Returns:
            Mapping of feed id -> {"status": ..., "program_id"/"error": ...}
        """
        program_date = program_date or self.clock().date()
        feeds = self.store.find_active_feeds()
        print(f"📡 Building {len(feeds)} personalized feeds for {program_date}")
        if not feeds:
            return {}

        outcomes = {}
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                feed.id: executor.submit(self.build_personalized, feed.id, program_date, cancel_event)
                for feed in feeds
            }
            for feed_id, future in futures.items():
                try:
                    program = future.result()
                    outcomes[feed_id] = {"status": ATTEMPT_SUCCESS, "program_id": program.id}
                except ProgramAlreadyExistsError as e:
                    outcomes[feed_id] = {"status": "EXISTS", "error": str(e)}
                except InsufficientArticlesError as e:
                    outcomes[feed_id] = {"status": ATTEMPT_SKIPPED, "error": str(e)}
                except Exception as e:
                    outcomes[feed_id] = {"status": ATTEMPT_FAILED, "error": str(e)}

        counts = {}
        for outcome in outcomes.values():
            counts[outcome["status"]] = counts.get(outcome["status"], 0) + 1
        print("📊 Feed results: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        return outcomes

    def invalidate_expired_programs(self, now=None):
        now = now or self.clock()
        changed = self.store.invalidate_expired_programs(now)
        print(f"🧹 Deactivated {changed} expired programs")
        return changed


def create_default_builder(settings=None):
    """Wire the builder to the real services configured in the environment."""
    settings = settings or get_settings()
    program_config = load_program_config()
    speech_config = program_config.get("speech", {})

    language_model = ClaudeLanguageModel(
        api_key=settings.anthropic_api_key,
        script_model=settings.script_model,
        summary_model=settings.summary_model,
        timeout=settings.llm_timeout_seconds,
    )
    speech_client = OpenAISpeechClient(
        api_key=settings.openai_api_key,
        model=settings.tts_model,
        timeout=settings.tts_timeout_seconds,
    )
    assets = {name: get_asset_path(name) for name in program_config["assets"]}

    return ProgramBuilder(
        store=JsonProgramStore(settings.store_path),
        article_source=ArticleSourceClient(
            base_url=settings.article_api_base_url,
            token=settings.article_api_token,
        ),
        script_generator=ScriptGenerator(
            language_model,
            summary_max_chars=speech_config.get("summary_max_chars", 800),
            summary_timeout=settings.llm_timeout_seconds * 2,
        ),
        synthesizer=SegmentSynthesizer(
            speech_client,
            terms=load_terms(),
            pause_marker=speech_config.get("pause_marker", " ..."),
        ),
        assembler=AudioAssembler(
            FfmpegMediaTool(timeout=settings.media_timeout_seconds),
            assets,
            mix_config=program_config.get("mix"),
            chapter_config=program_config.get("chapters"),
            file_ready_timeout=settings.file_ready_timeout_seconds,
        ),
        uploader=R2Uploader(
            bucket=settings.bucket_name,
            url_prefix=settings.audio_url_prefix,
            account_id=settings.r2_account_id,
            access_key=settings.r2_access_key_id,
            secret_key=settings.r2_secret_access_key,
            read_timeout=settings.upload_timeout_seconds,
        ),
        embedder=OpenAIEmbedder(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            timeout=settings.llm_timeout_seconds,
        ),
        timezone=settings.timezone,
        embedding_model=settings.embedding_model,
    )


def _parse_date(value):
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}")


def build_parser():
    parser = argparse.ArgumentParser(description="Build narrated tech-article programs")
    sub = parser.add_subparsers(dest="command", required=True)

    daily = sub.add_parser("daily", help="Build the shared daily program")
    daily.add_argument("--date", type=_parse_date, help="Program date (default: today)")

    feed = sub.add_parser("feed", help="Build one personalized feed's program")
    feed.add_argument("feed_id")
    feed.add_argument("--date", type=_parse_date, help="Program date (default: today)")

    all_feeds = sub.add_parser("all-feeds", help="Build every active personalized feed")
    all_feeds.add_argument("--date", type=_parse_date, help="Program date (default: today)")
    all_feeds.add_argument("--workers", type=int, default=4, help="Concurrent builds")

    regenerate = sub.add_parser("regenerate", help="Regenerate an existing program")
    regenerate.add_argument("program_id")
    regenerate.add_argument("--mode", choices=REGENERATE_MODES, default=REGENERATE_AUDIO_ONLY)

    sub.add_parser("expire", help="Deactivate expired personalized programs")
    return parser


def main(argv=None, builder=None):
    args = build_parser().parse_args(argv)
    builder = builder or create_default_builder()

    print("🎙️ Starting program builder...")
    print("=" * 60)
    try:
        if args.command == "daily":
            builder.build_daily(args.date)
        elif args.command == "feed":
            builder.build_personalized(args.feed_id, args.date)
        elif args.command == "all-feeds":
            outcomes = builder.build_active_feeds(args.date, max_workers=args.workers)
            if any(o["status"] == ATTEMPT_FAILED for o in outcomes.values()):
                return 1
        elif args.command == "regenerate":
            builder.regenerate_program(args.program_id, args.mode)
        elif args.command == "expire":
            builder.invalidate_expired_programs()
    except ProgramAlreadyExistsError as e:
        print(f"✅ {e}")
    except InsufficientArticlesError as e:
        print(f"⏭️  {e}")
    except ProgramBuildError as e:
        print(f"❌ {type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
