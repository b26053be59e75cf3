"""Move engine output files into the blob store.

Each extraction id points at a directory the engine wrote. Every regular file
directly inside it is read, stored under a fresh token and listed in
``artifacts``. ``extractions`` keeps one URL per id, the last file in name
order, for clients that only understand a single download per extraction.
"""
import asyncio
import logging
import os
from typing import Dict, List, Tuple

from .errors import HarvestIOFailure
from .models import Artifact
from .storage import BlobStore

logger = logging.getLogger("binwalk-web.harvest")


def read_directory(directory: str) -> List[Tuple[str, bytes]]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as exc:
        raise HarvestIOFailure(f"cannot list {directory}: {exc}") from exc

    files = []
    for entry in entries:
        try:
            # symlinks inside extracted filesystems may point anywhere on the host
            if not entry.is_file(follow_symlinks=False):
                continue
            with open(entry.path, "rb") as f:
                files.append((entry.name, f.read()))
        except OSError as exc:
            logger.warning("Skipping unreadable file %s: %s", entry.path, exc)
    return files


async def harvest(
    extractions: Dict[str, str],
    store: BlobStore,
    prefix: str = "/api/download",
    log_level: int = logging.DEBUG,
) -> Tuple[Dict[str, str], Dict[str, List[Artifact]]]:
    loop = asyncio.get_running_loop()
    urls: Dict[str, str] = {}
    artifacts: Dict[str, List[Artifact]] = {}

    for extraction_id, directory in extractions.items():
        if not directory:
            continue
        try:
            files = await loop.run_in_executor(None, read_directory, directory)
        except HarvestIOFailure as exc:
            logger.warning("Skipping extraction %s: %s", extraction_id, exc.message)
            continue

        for name, payload in files:
            token = await store.put(payload)
            url = f"{prefix}/{token}"
            artifacts.setdefault(extraction_id, []).append(
                Artifact(name=name, size=len(payload), url=url)
            )
            urls[extraction_id] = url
            logger.log(log_level, "Stored %s/%s (%d bytes) as %s", extraction_id, name, len(payload), token)

    return urls, artifacts
