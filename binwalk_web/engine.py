"""Adapter around the external binwalk analysis engine.

The engine is a black box: it gets the uploaded bytes and a configuration,
returns a signature map, and may leave extracted files in per-extraction
output directories. ``BinwalkCli`` drives the ``binwalk`` executable and reads
its JSON log; anything else implementing ``Engine`` can be swapped in.
"""
import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .errors import EngineFailure, EngineTimeout
from .models import SignatureInfo, SignatureResult
from .settings import settings

logger = logging.getLogger("binwalk-web.engine")

# per-request work directories live here, apart from client chosen outputs
SCRATCH_DIRNAME = ".scratch"


@dataclass
class EngineConfig:
    filename: str = "upload.bin"
    output_directory: Optional[Path] = None  # None = engine picks a scratch dir
    include: Optional[List[str]] = None  # None = no filter, [] would match nothing
    exclude: Optional[List[str]] = None
    carve: bool = False
    matryoshka: bool = False
    threads: Optional[int] = None


@dataclass
class EngineResult:
    file_map: List[SignatureResult] = field(default_factory=list)
    extractions: Dict[str, str] = field(default_factory=dict)  # id -> output dir
    scratch_directory: Optional[str] = None  # owned by the caller once returned


class Engine(Protocol):
    def analyze(
        self, data: bytes, filename: str, config: EngineConfig, extract: bool
    ) -> EngineResult: ...

    def signatures(self) -> List[SignatureInfo]: ...


class BinwalkCli:
    """Runs ``binwalk --log`` on the upload and parses the JSON it writes."""

    def __init__(
        self,
        executable: str = settings.binwalk_path,
        scratch_root: Path = settings.output_root / SCRATCH_DIRNAME,
        timeout: Optional[float] = settings.analysis_timeout,
    ):
        self.executable = executable
        self.scratch_root = Path(scratch_root)
        self.timeout = timeout

    def command(
        self, target: Path, log_path: Path, output_dir: Path, config: EngineConfig, extract: bool
    ) -> List[str]:
        argv = [self.executable, "--quiet", "--log", str(log_path)]
        if extract:
            argv.append("--extract")
        if config.carve:
            argv.append("--carve")
        if config.matryoshka:
            argv.append("--matryoshka")
        if config.include is not None:
            argv.extend(["--include", ",".join(config.include)])
        if config.exclude is not None:
            argv.extend(["--exclude", ",".join(config.exclude)])
        if config.threads:
            argv.extend(["--threads", str(config.threads)])
        argv.extend(["--directory", str(output_dir), str(target)])
        return argv

    def analyze(
        self, data: bytes, filename: str, config: EngineConfig, extract: bool
    ) -> EngineResult:
        executable = shutil.which(self.executable)
        if executable is None:
            raise EngineFailure(f"binwalk executable not found: {self.executable!r}")

        self.scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="analysis-", dir=self.scratch_root))
        try:
            target = scratch / "input" / filename
            target.parent.mkdir()
            target.write_bytes(data)
            log_path = scratch / "results.json"
            output_dir = config.output_directory or scratch / "extractions"
            output_dir.mkdir(parents=True, exist_ok=True)

            argv = self.command(target, log_path, output_dir, config, extract)
            logger.debug("Running %s", argv)
            try:
                proc = subprocess.run(
                    argv,
                    cwd=scratch,
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise EngineTimeout(f"binwalk timed out after {self.timeout}s") from exc

            if proc.returncode != 0:
                stderr = (proc.stderr or "").strip().splitlines()
                reason = stderr[-1] if stderr else f"exit status {proc.returncode}"
                raise EngineFailure(f"binwalk failed: {reason}")

            result = parse_log(log_path, target)
            result.scratch_directory = str(scratch)
            return result
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise

    def signatures(self) -> List[SignatureInfo]:
        # binwalk --list only prints a human readable table
        return []


def parse_log(log_path: Path, target: Path) -> EngineResult:
    """Read a binwalk JSON log into an ``EngineResult``.

    The log is a list of ``{"Analysis": {...}}`` records, one per analysed
    file; with --matryoshka the extracted files get records of their own. The
    file map comes from the record for ``target``; extractions from all.
    """
    try:
        records = json.loads(Path(log_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise EngineFailure(f"could not read binwalk results: {exc}") from exc

    if isinstance(records, dict):
        records = [records]
    if not isinstance(records, list):
        raise EngineFailure("unexpected binwalk results layout")

    analyses = [r.get("Analysis", r) for r in records if isinstance(r, dict)]
    analyses = [a for a in analyses if isinstance(a, dict) and "file_map" in a]

    result = EngineResult()
    primary = _primary_analysis(analyses, target)
    try:
        if primary is not None:
            result.file_map = [
                SignatureResult.model_validate(entry) for entry in primary.get("file_map") or []
            ]
    except ValidationError as exc:
        raise EngineFailure(f"malformed signature entry in binwalk results: {exc}") from exc

    for analysis in analyses:
        for extraction_id, extraction in (analysis.get("extractions") or {}).items():
            if isinstance(extraction, dict):
                result.extractions[str(extraction_id)] = extraction.get("output_directory") or ""
    return result


def _primary_analysis(analyses: List[dict], target: Path) -> Optional[dict]:
    wanted = os.path.realpath(target)
    for analysis in analyses:
        path = analysis.get("file_path")
        if path and os.path.realpath(path) == wanted:
            return analysis
    return analyses[0] if analyses else None


_pool: Optional[ThreadPoolExecutor] = None


def get_pool() -> ThreadPoolExecutor:
    global _pool
    if _pool is None:
        _pool = ThreadPoolExecutor(
            max_workers=settings.engine_workers or os.cpu_count() or 1,
            thread_name_prefix="engine",
        )
    return _pool


def shutdown_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.shutdown(wait=False, cancel_futures=True)
        _pool = None


async def dispatch(
    engine: Engine,
    data: bytes,
    filename: str,
    config: EngineConfig,
    extract: bool,
    timeout: Optional[float] = None,
) -> EngineResult:
    """Run one engine call on the worker pool and wait for it.

    A call that outlives ``timeout``, or whose request is cancelled, keeps
    running in its worker; its result is dropped when it finishes.
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(get_pool(), engine.analyze, data, filename, config, extract)
    try:
        if timeout:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        future.add_done_callback(_discard)
        raise
    except asyncio.TimeoutError as exc:
        future.add_done_callback(_discard)
        raise EngineTimeout(f"analysis did not finish within {timeout}s") from exc
    except EngineFailure:
        raise
    except Exception as exc:
        logger.exception("Engine call crashed")
        raise EngineFailure(f"analysis failed: {exc}") from exc


def _discard(future: "asyncio.Future[EngineResult]") -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Abandoned analysis failed: %s", exc)
        return
    scratch = future.result().scratch_directory
    if scratch:
        shutil.rmtree(scratch, ignore_errors=True)
