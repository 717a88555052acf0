"""Reusable run context for structured analysis output.

Every pipeline phase (simulate, fit, LOO) uses RunContext to get:
  - Structured output directories: results/<study>/<analysis>/<date>/plots/ + data/
  - Automatic console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamp, package version, parameters
  - A `latest` symlink pointing to the most recent successful run

Run-directory mode (pipeline runs):
  When run_id is set, all phases write into a single grouped directory:
    results/<study>/<run_id>/<analysis>/plots/ + data/
  A study-level `latest` symlink points to the run directory.

Legacy mode (individual phase runs):
  When run_id is None, each phase writes to its own date directory:
    results/<study>/<analysis>/<date>/plots/ + data/
  A phase-level `latest` symlink points to the date directory.

Usage:
    with RunContext(
        study="sim",
        analysis_name="02_fit",
        params=vars(args),
        primer=FIT_PRIMER,        # Markdown primer written to results/<study>/02_fit/README.md
    ) as ctx:
        # ctx.plots_dir, ctx.data_dir, ctx.run_dir are ready
        df.write_parquet(ctx.data_dir / "summary.parquet")
        save_fig(fig, ctx.plots_dir / "plot.png")
"""

import io
import json
import re
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import TextIO
from zoneinfo import ZoneInfo

_TZ = ZoneInfo("UTC")

RESULTS_ROOT = Path("results")

_STUDY_RE = re.compile(r"[^A-Za-z0-9._-]+")


class _TeeStream:
    """Wraps a stream to duplicate output to both the original stream and a buffer.

    All print() output goes to both the console (so the user sees progress)
    and an internal StringIO buffer (captured for run_log.txt).
    """

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def _normalize_study(study: str) -> str:
    """Make a study name safe to use as a directory name.

    Examples:
        "sim"              -> "sim"
        "Lake Erie 2024"   -> "Lake_Erie_2024"
        "perch/walleye"    -> "perch_walleye"
    """
    cleaned = _STUDY_RE.sub("_", study.strip()).strip("_")
    if not cleaned:
        msg = f"Study name {study!r} has no usable characters"
        raise ValueError(msg)
    return cleaned


def _git_commit_hash() -> str:
    """Get the current git commit hash, or 'unknown' if not in a repo."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


def _package_version() -> str:
    try:
        from vbgrowth.config import _VERSION
    except ImportError:
        return "unknown"
    return _VERSION


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string.

    Examples: "3.2s", "1m 45s", "1h 12m 5s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"


def _next_run_label(analysis_dir: Path, today: str) -> str:
    """Return a unique run label for today, appending .1, .2, etc. if needed.

    First run of the day:  "261018"
    Second run:            "261018.1"
    Third run:             "261018.2"

    Checks for existing directories (not symlinks) under *analysis_dir*.
    """
    if not (analysis_dir / today).exists() or (analysis_dir / today).is_symlink():
        return today

    n = 1
    while (analysis_dir / f"{today}.{n}").exists():
        n += 1
    return f"{today}.{n}"


def generate_run_id(study: str, results_root: Path | None = None) -> str:
    """Generate a run ID for grouping pipeline phases.

    Format: {study}-{YYMMDD}. Same-day collisions get .1, .2, etc. suffixes
    when results_root is given.

    Examples:
        "sim"  -> "sim-261018"
        "sim" (second run same day) -> "sim-261018.1"
    """
    study = _normalize_study(study)
    base = f"{study}-{datetime.now(_TZ).strftime('%y%m%d')}"

    if results_root is None:
        return base

    study_root = results_root / study
    if not (study_root / base).exists() or (study_root / base).is_symlink():
        return base
    n = 1
    while (study_root / f"{base}.{n}").exists():
        n += 1
    return f"{base}.{n}"


def resolve_upstream_dir(
    phase: str,
    study_root: Path,
    run_id: str | None = None,
    override: Path | None = None,
) -> Path:
    """Resolve the output directory for an upstream phase.

    Precedence:
      1. Explicit CLI override (e.g. --sim-dir /some/path)
      2. Run-directory path: study_root/{run_id}/{phase}
      3. Legacy phase path: study_root/{phase}/latest
      4. New-layout fallback: study_root/latest/{phase}

    The caller should verify the returned path exists before reading from it.
    """
    if override is not None:
        return override
    if run_id is not None:
        return study_root / run_id / phase
    legacy = study_root / phase / "latest"
    if legacy.exists():
        return legacy
    return study_root / "latest" / phase


class RunContext:
    """Context manager that sets up structured output for an analysis run.

    Creates the directory tree, captures console output, and writes
    metadata on exit. A run that raises keeps its directory and log but
    does not move the `latest` symlink.

    Attributes:
        study: Normalized study name (e.g. "sim", "Lake_Erie_2024").
        analysis_name: Name of the pipeline phase (e.g. "01_simulate").
        params: Script parameters to record in run_info.json.
        run_dir: Root of this run's output.
        plots_dir: Directory for PNG plots.
        data_dir: Directory for parquet/NetCDF/JSON artefacts.
    """

    def __init__(
        self,
        study: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
        run_id: str | None = None,
    ) -> None:
        self.study = _normalize_study(study)
        self.analysis_name = analysis_name
        self.params = params or {}
        self.run_id = run_id

        root = results_root or RESULTS_ROOT
        today = datetime.now(_TZ).strftime("%y%m%d")
        self._study_root = root / self.study

        if run_id is not None:
            # Run-directory mode: results/{study}/{run_id}/{analysis}/
            self._analysis_dir = self._study_root / run_id / analysis_name
            self.run_dir = self._analysis_dir
            self._run_label = run_id
        else:
            # Legacy mode: results/{study}/{analysis}/{date}/
            self._analysis_dir = self._study_root / analysis_name
            run_label = _next_run_label(self._analysis_dir, today)
            self.run_dir = self._analysis_dir / run_label
            self._run_label = run_label

        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"

        self._today = today
        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: TextIO | None = None
        self._start_time: datetime | None = None

    @property
    def study_root(self) -> Path:
        return self._study_root

    def __enter__(self) -> "RunContext":
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        """Create directories, write primer, and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.plots_dir.mkdir(exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)

        if self._primer:
            (self._analysis_dir / "README.md").write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(_TZ)

    def finalize(self, *, failed: bool = False) -> None:
        """Write run_info.json, run_log.txt, and update latest symlink."""
        # Restore stdout before writing metadata (so our writes aren't captured)
        log_text = ""
        if self._tee is not None:
            log_text = self._tee.getvalue()
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]

        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        end_time = datetime.now(_TZ)
        elapsed_seconds = (end_time - self._start_time).total_seconds() if self._start_time else 0.0
        run_info = {
            "analysis": self.analysis_name,
            "study": self.study,
            "run_date": self._today,
            "run_label": self._run_label,
            "run_id": self.run_id,
            "status": "failed" if failed else "ok",
            "timestamp_start": (self._start_time.isoformat() if self._start_time else None),
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": round(elapsed_seconds, 1),
            "elapsed_display": _format_elapsed(elapsed_seconds),
            "git_commit": _git_commit_hash(),
            "vbgrowth_version": _package_version(),
            "python_version": sys.version,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        print(f"\n{self.analysis_name.upper()} completed in {run_info['elapsed_display']}")

        # Failed runs leave `latest` alone so downstream phases never read partial output
        if failed:
            return
        if self.run_id is not None:
            latest = self._study_root / "latest"
            target = self.run_id
        else:
            latest = self._analysis_dir / "latest"
            target = self._run_label
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(target)
