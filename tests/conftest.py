import tempfile
import threading
import time
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from binwalk_web.api import app, get_engine, get_store
from binwalk_web.engine import EngineResult
from binwalk_web.models import SignatureInfo, SignatureResult
from binwalk_web.storage import BlobStore


class FakeEngine:
    """Stands in for binwalk: reports one signature and writes canned outputs."""

    def __init__(self, root: Path):
        self.root = root
        self.calls = []
        self.outputs = {}  # extraction id -> {file name: bytes}
        self.extra_extractions = {}  # extraction id -> directory, used verbatim
        self.echo = False  # write the upload back out as one extraction
        self.error = None
        self.delay = 0.0
        self.catalog = []
        self.scratch_dirs = []
        self._lock = threading.Lock()

    def analyze(self, data, filename, config, extract):
        with self._lock:
            self.calls.append(
                {"data": data, "filename": filename, "config": config, "extract": extract}
            )
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error

        scratch = Path(tempfile.mkdtemp(dir=self.root))
        self.scratch_dirs.append(scratch)
        extractions = {}
        if extract:
            outputs = dict(self.outputs)
            if self.echo:
                outputs[f"echo-{filename}"] = {"carved.bin": data}
            for extraction_id, files in outputs.items():
                directory = scratch / extraction_id
                directory.mkdir()
                for name, payload in files.items():
                    (directory / name).write_bytes(payload)
                extractions[extraction_id] = str(directory)
            extractions.update(self.extra_extractions)

        return EngineResult(
            file_map=[
                SignatureResult(offset=0, description=f"{len(data)} bytes of test data", size=len(data))
            ],
            extractions=extractions,
            scratch_directory=str(scratch),
        )

    def signatures(self):
        return [SignatureInfo(**sig) for sig in self.catalog]


@pytest.fixture
def blob_store():
    return BlobStore()


@pytest.fixture
def fake_engine(tmp_path):
    root = tmp_path / "engine"
    root.mkdir()
    return FakeEngine(root)


@pytest_asyncio.fixture
async def client(fake_engine, blob_store):
    app.dependency_overrides[get_engine] = lambda: fake_engine
    app.dependency_overrides[get_store] = lambda: blob_store
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
