"""
Task execution bodies.

Each body takes ``(ctx, params)`` and returns a JSON serialisable dict that
becomes the task's result. Bodies check ``ctx.check_cancelled()`` between
units of work and run external tools through ``ctx.run_tool`` so that
cancellation and timeouts can kill the child process.
"""

import gzip
import json
import os
import shutil
import sqlite3
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import text

from subkeeper import extensions
from subkeeper.core.constants import (
    BACKUP_FILE_PREFIX,
    IMAGE_SUBTITLE_CODECS,
    SUBTITLE_EXTENSIONS,
    TEMP_FILE_MARKERS,
)
from subkeeper.core.exceptions import TaskCancelledError
from subkeeper.core.helpers import format_bytes
from subkeeper.core.logging import get_logger
from subkeeper.executor import ExecutionContext, TaskExecutor
from subkeeper.models.task import TaskLogLevel, TaskType
from subkeeper.schemas.parameters import (
    BackupDatabaseParameters,
    BatchProcessParameters,
    CleanupFilesParameters,
    ExtractSubtitlesParameters,
    GenerateSubtitlesParameters,
    HealthCheckParameters,
    OptimizeDatabaseParameters,
    ScanLibraryParameters,
    SyncSubtitlesParameters,
    TranslateSubtitlesParameters,
    UserExportParameters,
)
from subkeeper.services.translation import TranslationClient, split_cues

logger = get_logger("tasks")

Progress = Callable[[float, str], None]

# Output format -> ffmpeg subtitle encoder
SUBTITLE_ENCODERS = {"srt": "srt", "ass": "ass", "ssa": "ass", "vtt": "webvtt"}

# Tools probed by the health check and the flag that makes each print and exit
HEALTH_CHECK_TOOL_FLAGS = {
    "ffmpeg": "-version",
    "ffprobe": "-version",
    "ffsubsync": "--version",
    "whisper": "--help",
}


def _noop_progress(percentage: float, message: str) -> None:
    return None


def _require_file(path: str, what: str = "File") -> Path:
    file_path = Path(path)
    if not file_path.is_file():
        raise FileNotFoundError(f"{what} not found: {path}")
    return file_path


def _get_engine():
    if extensions.engine is None:
        raise RuntimeError("Database engine is not initialised")
    return extensions.engine


# ----------------------------------------------------------------------
# Library scan
# ----------------------------------------------------------------------


def _iter_files(root: Path, recursive: bool):
    if recursive:
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                yield Path(dirpath) / name
    else:
        for entry in root.iterdir():
            if entry.is_file():
                yield entry


def _sidecar_subtitles(video: Path) -> list[Path]:
    """Subtitle files next to a video whose name starts with the video stem."""
    try:
        siblings = list(video.parent.iterdir())
    except OSError:
        return []
    return sorted(
        sibling
        for sibling in siblings
        if sibling.is_file()
        and sibling.suffix.lower() in SUBTITLE_EXTENSIONS
        and sibling.name.startswith(video.stem + ".")
    )


def scan_library(ctx: ExecutionContext, params: ScanLibraryParameters) -> dict:
    """
    Walk the library paths and count videos and their sidecar subtitles.

    Returns:
        Dictionary with scanned_files, video_files, with_subtitles and
        missing_paths.
    """
    extensions_wanted = {ext.lower() for ext in params.extensions}
    missing = [path for path in params.paths if not Path(path).is_dir()]
    roots = [Path(path) for path in params.paths if Path(path).is_dir()]
    for path in missing:
        logger.warning("Library path does not exist, skipping: %s", path)

    ctx.report_progress(0, f"Scanning {len(roots)} path(s)")
    scanned = 0
    videos = 0
    with_subtitles = 0

    for index, root in enumerate(roots):
        for file_path in _iter_files(root, params.recursive):
            scanned += 1
            if scanned % 100 == 0:
                ctx.check_cancelled()
                ctx.heartbeat()

            if file_path.suffix.lower() not in extensions_wanted:
                continue
            videos += 1
            if _sidecar_subtitles(file_path):
                with_subtitles += 1

        ctx.report_progress(
            (index + 1) * 100 / len(roots), f"Scanned {root} ({videos} videos)"
        )

    ctx.report_progress(100, "Scan finished")
    if missing:
        ctx.log(f"Missing paths: {', '.join(missing)}", TaskLogLevel.WARNING)

    logger.info(
        "Scan finished: %d files, %d videos, %d with subtitles",
        scanned,
        videos,
        with_subtitles,
    )
    return {
        "scanned_files": scanned,
        "video_files": videos,
        "with_subtitles": with_subtitles,
        "missing_paths": missing,
        "update_existing": params.update_existing,
    }


# ----------------------------------------------------------------------
# Subtitle extraction
# ----------------------------------------------------------------------


def probe_subtitle_streams(ctx: ExecutionContext, video: Path) -> list[dict]:
    """List subtitle streams of a video with ffprobe."""
    result = ctx.run_tool(
        [
            ctx.config.ffprobe_path,
            "-v",
            "error",
            "-select_streams",
            "s",
            "-show_entries",
            "stream=index,codec_name:stream_tags=language,title",
            "-of",
            "json",
            str(video),
        ]
    )
    try:
        streams = json.loads(result.stdout or "{}").get("streams", [])
    except json.JSONDecodeError as e:
        raise ValueError(f"Could not parse ffprobe output for {video}") from e

    return [
        {
            "index": stream.get("index"),
            "codec": stream.get("codec_name", ""),
            "language": (stream.get("tags") or {}).get("language", "und"),
        }
        for stream in streams
    ]


def _extract(
    ctx: ExecutionContext,
    params: ExtractSubtitlesParameters,
    progress: Progress = _noop_progress,
) -> dict:
    video = _require_file(params.video_path, "Video")
    output_dir = Path(params.output_dir) if params.output_dir else video.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    wanted = {language.lower() for language in params.languages}
    encoder = SUBTITLE_ENCODERS.get(params.format, params.format)

    streams = probe_subtitle_streams(ctx, video)
    selected = [
        stream
        for stream in streams
        if not wanted or stream["language"].lower() in wanted
    ]

    extracted: list[str] = []
    skipped: list[dict] = []
    for position, stream in enumerate(selected, start=1):
        ctx.check_cancelled()
        if stream["codec"] in IMAGE_SUBTITLE_CODECS:
            skipped.append({"index": stream["index"], "reason": "image based"})
            continue

        output = output_dir / (
            f"{video.stem}.{stream['language']}.{stream['index']}.{params.format}"
        )
        ctx.run_tool(
            [
                ctx.config.ffmpeg_path,
                "-y",
                "-v",
                "error",
                "-i",
                str(video),
                "-map",
                f"0:{stream['index']}",
                "-c:s",
                encoder,
                str(output),
            ]
        )
        extracted.append(str(output))
        progress(position * 100 / len(selected), f"Extracted {output.name}")

    return {
        "video_path": str(video),
        "stream_count": len(streams),
        "extracted": extracted,
        "skipped": skipped,
    }


def extract_subtitles(
    ctx: ExecutionContext, params: ExtractSubtitlesParameters
) -> dict:
    ctx.report_progress(5, "Probing subtitle streams")
    result = _extract(ctx, params, ctx.report_progress)
    ctx.report_progress(100, f"Extracted {len(result['extracted'])} stream(s)")
    return result


# ----------------------------------------------------------------------
# Subtitle generation
# ----------------------------------------------------------------------


def generate_subtitles(
    ctx: ExecutionContext, params: GenerateSubtitlesParameters
) -> dict:
    """Transcribe a video's audio track with whisper."""
    video = _require_file(params.video_path, "Video")
    output_dir = Path(params.output_dir) if params.output_dir else video.parent
    output_dir.mkdir(parents=True, exist_ok=True)

    args = [
        ctx.config.whisper_path,
        str(video),
        "--model",
        params.model,
        "--output_format",
        "srt",
        "--output_dir",
        str(output_dir),
    ]
    if params.language != "auto":
        args += ["--language", params.language]

    ctx.report_progress(10, f"Transcribing with whisper ({params.model})")
    ctx.run_tool(args)

    output = output_dir / f"{video.stem}.srt"
    if not output.is_file():
        raise FileNotFoundError(f"whisper finished but {output} was not written")

    ctx.report_progress(100, f"Generated {output.name}")
    return {
        "subtitle_path": str(output),
        "model": params.model,
        "language": params.language,
    }


# ----------------------------------------------------------------------
# Translation
# ----------------------------------------------------------------------


def _translate(
    ctx: ExecutionContext,
    params: TranslateSubtitlesParameters,
    progress: Progress = _noop_progress,
) -> dict:
    source = _require_file(params.subtitle_path, "Subtitle")
    content = source.read_text(encoding="utf-8", errors="replace")
    client = TranslationClient.from_config(ctx.config, params.provider)

    def on_chunk(done: int, total: int) -> None:
        ctx.check_cancelled()
        progress(done * 100 / total, f"Translated chunk {done}/{total}")

    ctx.check_cancelled()
    translated = client.translate_subtitles(
        content,
        params.target_language,
        params.preserve_formatting,
        on_chunk=on_chunk,
    )

    output = source.with_name(f"{source.stem}.{params.target_language}{source.suffix}")
    output.write_text(translated, encoding="utf-8")
    return {
        "source_path": str(source),
        "output_path": str(output),
        "target_language": params.target_language,
        "provider": params.provider,
        "cues": len(split_cues(content)),
    }


def translate_subtitles(
    ctx: ExecutionContext, params: TranslateSubtitlesParameters
) -> dict:
    ctx.report_progress(0, f"Translating to {params.target_language}")
    result = _translate(ctx, params, ctx.report_progress)
    ctx.report_progress(100, f"Wrote {Path(result['output_path']).name}")
    return result


# ----------------------------------------------------------------------
# Synchronisation
# ----------------------------------------------------------------------


def _sync(
    ctx: ExecutionContext,
    params: SyncSubtitlesParameters,
    progress: Progress = _noop_progress,
) -> dict:
    video = _require_file(params.video_path, "Video")
    if params.subtitle_paths:
        subtitles = [_require_file(path, "Subtitle") for path in params.subtitle_paths]
    else:
        subtitles = [
            path
            for path in _sidecar_subtitles(video)
            if params.output_suffix not in path.name
        ]

    if not subtitles:
        raise FileNotFoundError(f"No subtitles found to sync for {video.name}")

    synced: list[str] = []
    for position, subtitle in enumerate(subtitles, start=1):
        ctx.check_cancelled()
        output = subtitle.with_name(
            f"{subtitle.stem}{params.output_suffix}{subtitle.suffix}"
        )
        ctx.run_tool(
            [
                ctx.config.ffsubsync_path,
                str(video),
                "-i",
                str(subtitle),
                "-o",
                str(output),
            ]
        )
        synced.append(str(output))
        progress(position * 100 / len(subtitles), f"Synced {subtitle.name}")

    return {"video_path": str(video), "synced": synced}


def sync_subtitles(ctx: ExecutionContext, params: SyncSubtitlesParameters) -> dict:
    ctx.report_progress(0, "Synchronising subtitles")
    result = _sync(ctx, params, ctx.report_progress)
    ctx.report_progress(100, f"Synced {len(result['synced'])} file(s)")
    return result


# ----------------------------------------------------------------------
# Batch processing
# ----------------------------------------------------------------------


def _batch_item(
    ctx: ExecutionContext, params: BatchProcessParameters, path: str
) -> dict:
    if params.operation == "extract_all":
        return _extract(ctx, ExtractSubtitlesParameters(video_path=path))
    if params.operation == "sync_all":
        return _sync(ctx, SyncSubtitlesParameters(video_path=path))
    return _translate(
        ctx,
        TranslateSubtitlesParameters(
            subtitle_path=path, target_language=params.target_language
        ),
    )


def batch_process(ctx: ExecutionContext, params: BatchProcessParameters) -> dict:
    """
    Run one operation over many files.

    Files are processed in batches of ``batch_size``; cancellation is
    checked before every file. A failing file is recorded and the batch
    moves on.
    """
    total = len(params.file_paths)
    succeeded = 0
    failed: list[dict] = []

    for start in range(0, total, params.batch_size):
        batch = params.file_paths[start : start + params.batch_size]
        for offset, path in enumerate(batch):
            ctx.check_cancelled()
            try:
                _batch_item(ctx, params, path)
                succeeded += 1
            except TaskCancelledError:
                raise
            except Exception as e:
                logger.warning("Batch %s failed for %s: %s", params.operation, path, e)
                failed.append({"path": path, "error": str(e)})

            done = start + offset + 1
            ctx.report_progress(done * 100 / total, f"Processed {done}/{total}")

        ctx.log(f"Finished files {start + 1}-{min(start + params.batch_size, total)}")

    return {
        "operation": params.operation,
        "processed": total,
        "succeeded": succeeded,
        "failed": failed,
    }


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------


def _is_cleanup_candidate(path: Path, params: CleanupFilesParameters) -> bool:
    name = path.name.lower()
    if params.include_temp_files and any(m in name for m in TEMP_FILE_MARKERS):
        return True
    return params.include_subtitles and path.suffix.lower() in SUBTITLE_EXTENSIONS


def cleanup_files(ctx: ExecutionContext, params: CleanupFilesParameters) -> dict:
    """Delete aged temporary files under the configured temp directories."""
    cutoff = time.time() - params.older_than_days * 86400
    deleted: list[str] = []
    freed = 0
    errors: list[dict] = []
    directories = [Path(d) for d in ctx.config.temp_dirs if Path(d).is_dir()]

    for index, directory in enumerate(directories, start=1):
        ctx.check_cancelled()
        for file_path in _iter_files(directory, recursive=True):
            if not _is_cleanup_candidate(file_path, params):
                continue
            try:
                stat = file_path.stat()
                if stat.st_mtime >= cutoff:
                    continue
                if not params.dry_run:
                    file_path.unlink()
            except OSError as e:
                errors.append({"path": str(file_path), "error": str(e)})
                continue
            deleted.append(str(file_path))
            freed += stat.st_size

        ctx.report_progress(index * 100 / len(directories), f"Cleaned {directory}")

    logger.info(
        "Cleanup %s %d files (%s)",
        "would delete" if params.dry_run else "deleted",
        len(deleted),
        format_bytes(freed),
    )
    return {
        "dry_run": params.dry_run,
        "deleted_files": len(deleted),
        "freed_bytes": freed,
        "files": deleted[:100],
        "errors": errors,
    }


def _sqlite_backup(db_path: str, output: Path, backup_type: str) -> None:
    source = sqlite3.connect(db_path)
    try:
        if backup_type == "full":
            target = sqlite3.connect(output)
            try:
                source.backup(target)
            finally:
                target.close()
            return

        with open(output, "w", encoding="utf-8") as f:
            for line in source.iterdump():
                is_insert = line.startswith("INSERT INTO")
                if (backup_type == "data") == is_insert:
                    f.write(f"{line}\n")
    finally:
        source.close()


def _gzip_file(path: Path) -> Path:
    compressed = path.with_name(path.name + ".gz")
    with open(path, "rb") as src, gzip.open(compressed, "wb") as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return compressed


def _prune_backups(directory: Path, retention_days: int) -> int:
    if retention_days <= 0:
        return 0
    cutoff = time.time() - retention_days * 86400
    pruned = 0
    for backup in directory.glob(f"{BACKUP_FILE_PREFIX}*"):
        if backup.is_file() and backup.stat().st_mtime < cutoff:
            backup.unlink()
            pruned += 1
    return pruned


def backup_database(ctx: ExecutionContext, params: BackupDatabaseParameters) -> dict:
    """Back up the database and prune old backups."""
    engine = _get_engine()
    directory = Path(params.backup_location or ctx.config.backup_dir)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    ctx.report_progress(5, f"Starting {params.backup_type} backup")

    if engine.dialect.name == "sqlite":
        suffix = "db" if params.backup_type == "full" else "sql"
        name = f"{BACKUP_FILE_PREFIX}{params.backup_type}_{stamp}"
        output = directory / f"{name}.{suffix}"
        _sqlite_backup(engine.url.database, output, params.backup_type)
    elif engine.dialect.name == "postgresql":
        output = directory / f"{BACKUP_FILE_PREFIX}{params.backup_type}_{stamp}.sql"
        args = ["pg_dump", "--no-owner", "-f", str(output)]
        if params.backup_type == "schema":
            args.append("--schema-only")
        elif params.backup_type == "data":
            args.append("--data-only")
        args.append(
            engine.url.set(drivername="postgresql").render_as_string(
                hide_password=False
            )
        )
        ctx.run_tool(args)
    else:
        raise ValueError(f"Backups are not supported for {engine.dialect.name}")

    ctx.check_cancelled()
    ctx.report_progress(70, "Backup written")
    if params.compression_enabled:
        output = _gzip_file(output)

    pruned = _prune_backups(directory, params.retention_days)
    size = output.stat().st_size
    ctx.report_progress(100, f"Backup complete ({format_bytes(size)})")
    return {
        "backup_path": str(output),
        "backup_type": params.backup_type,
        "size_bytes": size,
        "compressed": params.compression_enabled,
        "pruned_backups": pruned,
    }


def optimize_database(
    ctx: ExecutionContext, params: OptimizeDatabaseParameters
) -> dict:
    """Run VACUUM and/or ANALYZE."""
    engine = _get_engine()
    operations: list[str] = []
    size_before = size_after = None

    if engine.dialect.name == "sqlite":
        db_path = engine.url.database
        size_before = os.path.getsize(db_path) if os.path.exists(db_path) else None
        # VACUUM must run outside a transaction
        with engine.connect().execution_options(
            isolation_level="AUTOCOMMIT"
        ) as conn:
            if params.vacuum:
                ctx.report_progress(10, "Running VACUUM")
                conn.execute(text("VACUUM"))
                operations.append("vacuum")
            if params.analyze:
                ctx.report_progress(60, "Running ANALYZE")
                conn.execute(text("ANALYZE"))
                operations.append("analyze")
        size_after = os.path.getsize(db_path) if os.path.exists(db_path) else None
    else:
        # PostgreSQL accepts "VACUUM", "ANALYZE" or "VACUUM ANALYZE"
        steps = (("VACUUM", params.vacuum), ("ANALYZE", params.analyze))
        statement = " ".join(part for part, enabled in steps if enabled)
        if statement:
            ctx.report_progress(10, f"Running {statement}")
            with engine.connect().execution_options(
                isolation_level="AUTOCOMMIT"
            ) as conn:
                conn.execute(text(statement))
            operations = statement.lower().split()

    ctx.report_progress(100, "Optimisation complete")
    reclaimed = (
        size_before - size_after
        if size_before is not None and size_after is not None
        else None
    )
    return {
        "dialect": engine.dialect.name,
        "operations": operations,
        "size_before": size_before,
        "size_after": size_after,
        "space_reclaimed": reclaimed,
    }


def _check_database() -> dict:
    try:
        with _get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}


def _check_directory(path: str) -> dict:
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe = directory / ".subkeeper_write_test"
        probe.write_text("ok")
        probe.unlink()
        return {"healthy": True, "path": str(directory)}
    except OSError as e:
        return {"healthy": False, "path": str(directory), "error": str(e)}


def health_check(ctx: ExecutionContext, params: HealthCheckParameters) -> dict:
    """Check the database, writable directories, external tools and disk space."""
    checks: dict[str, dict] = {}

    ctx.report_progress(5, "Checking database")
    checks["database"] = _check_database()

    ctx.report_progress(25, "Checking filesystem")
    checks["filesystem"] = {
        "backup_dir": _check_directory(ctx.config.backup_dir),
        "export_dir": _check_directory(ctx.config.export_dir),
    }
    checks["filesystem"]["healthy"] = all(
        entry["healthy"] for entry in checks["filesystem"].values()
    )

    tools = params.tools or list(HEALTH_CHECK_TOOL_FLAGS)
    tool_results: dict[str, dict] = {}
    for position, tool in enumerate(tools, start=1):
        ctx.check_cancelled()
        path = ctx.config.tool_paths.get(tool)
        flag = HEALTH_CHECK_TOOL_FLAGS.get(tool)
        if path is None or flag is None:
            tool_results[tool] = {"healthy": False, "error": "unknown tool"}
            continue
        try:
            result = ctx.run_tool([path, flag], timeout=30, check=False)
        except TaskCancelledError:
            raise
        except Exception as e:
            tool_results[tool] = {"healthy": False, "error": str(e)}
            continue
        first_line = (result.stdout or result.stderr).strip().splitlines()[:1]
        tool_results[tool] = {
            "healthy": result.ok,
            "version": first_line[0] if first_line else None,
        }
        ctx.report_progress(25 + position * 60 / len(tools), f"Checked {tool}")
    checks["tools"] = tool_results

    usage = shutil.disk_usage(Path(ctx.config.backup_dir).resolve().anchor or "/")
    free_ratio = usage.free / usage.total if usage.total else 0
    checks["resources"] = {
        "healthy": free_ratio > 0.05,
        "disk_total_bytes": usage.total,
        "disk_free_bytes": usage.free,
    }

    healthy = (
        checks["database"]["healthy"]
        and checks["filesystem"]["healthy"]
        and all(entry["healthy"] for entry in tool_results.values())
        and checks["resources"]["healthy"]
    )
    ctx.report_progress(100, "Health check complete")
    if not healthy:
        ctx.log("Health check found problems", TaskLogLevel.WARNING)
    return {"healthy": healthy, "checks": checks}


def user_export(ctx: ExecutionContext, params: UserExportParameters) -> dict:
    """Write a JSON file describing a user's tasks."""
    directory = Path(params.output_dir or ctx.config.export_dir)
    directory.mkdir(parents=True, exist_ok=True)

    tasks = ctx.store.find_by_creator(params.user_id) if params.include_tasks else []
    ctx.report_progress(50, f"Collected {len(tasks)} task(s)")

    exported_at = datetime.now(UTC)
    output = directory / (
        f"user_{params.user_id}_{exported_at.strftime('%Y%m%d_%H%M%S')}.json"
    )
    payload = {
        "user_id": params.user_id,
        "exported_at": exported_at.isoformat(),
        "tasks": [task.to_dict() for task in tasks],
    }
    output.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    ctx.report_progress(100, f"Exported to {output.name}")
    return {"export_path": str(output), "task_count": len(tasks)}


HANDLERS = {
    TaskType.SCAN_LIBRARY: scan_library,
    TaskType.EXTRACT_SUBTITLES: extract_subtitles,
    TaskType.GENERATE_SUBTITLES: generate_subtitles,
    TaskType.TRANSLATE_SUBTITLES: translate_subtitles,
    TaskType.SYNC_SUBTITLES: sync_subtitles,
    TaskType.BATCH_PROCESS: batch_process,
    TaskType.CLEANUP_FILES: cleanup_files,
    TaskType.BACKUP_DATABASE: backup_database,
    TaskType.OPTIMIZE_DATABASE: optimize_database,
    TaskType.HEALTH_CHECK: health_check,
    TaskType.USER_EXPORT: user_export,
}


def register_handlers(executor: TaskExecutor) -> None:
    """Register every execution body with the executor."""
    for task_type, handler in HANDLERS.items():
        executor.register_handler(task_type, handler)
