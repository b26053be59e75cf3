"""Translate client ``AnalyzeOptions`` into an ``EngineConfig``."""
import logging
from pathlib import Path, PurePath
from typing import List, Optional

from .engine import SCRATCH_DIRNAME, EngineConfig
from .models import AnalyzeOptions
from .settings import settings

logger = logging.getLogger("binwalk-web.options")

DEFAULT_FILENAME = "upload.bin"


def split_names(raw: Optional[str]) -> Optional[List[str]]:
    """``"a, b,,c"`` -> ``["a", "b", "c"]``; absent or nameless -> ``None``."""
    if raw is None:
        return None
    names = [name.strip() for name in raw.split(",")]
    names = [name for name in names if name]
    return names or None


def safe_filename(filename: Optional[str]) -> str:
    if not filename:
        return DEFAULT_FILENAME
    name = PurePath(filename.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return DEFAULT_FILENAME
    return name


def resolve_directory(directory: Optional[str], root: Path) -> Optional[Path]:
    if directory is None:
        return None
    root = root.resolve()
    candidate = (root / directory.lstrip("/\\")).resolve()
    if candidate != root and root not in candidate.parents:
        logger.warning("Ignoring output directory outside %s: %r", root, directory)
        return None
    scratch = root / SCRATCH_DIRNAME
    if candidate == scratch or scratch in candidate.parents:
        logger.warning("Ignoring output directory inside the scratch area: %r", directory)
        return None
    return candidate


def translate(
    options: AnalyzeOptions, filename: Optional[str], output_root: Optional[Path] = None
) -> EngineConfig:
    # verbose / quiet only change how the request is logged
    return EngineConfig(
        filename=safe_filename(filename),
        output_directory=resolve_directory(
            options.directory, Path(output_root or settings.output_root)
        ),
        include=split_names(options.include),
        exclude=split_names(options.exclude),
        carve=options.carve,
        matryoshka=options.matryoshka,
        threads=options.threads,
    )
