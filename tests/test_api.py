import asyncio
import json
import os

import pytest

from binwalk_web.errors import EngineFailure
from binwalk_web.settings import settings

SAMPLE = b"\x89PNG\r\n\x1a\n\x00\x00"  # 10 bytes


def upload(data=SAMPLE, name="sample.bin", options=None):
    kwargs = {"files": {"file": (name, data, "application/octet-stream")}}
    if options is not None:
        opts = options if isinstance(options, str) else json.dumps(options)
        kwargs["data"] = {"options": opts}
    return kwargs


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "artifacts": 0, "artifact_bytes": 0}


@pytest.mark.asyncio
async def test_index_page(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    assert "/api/analyze" in r.text


@pytest.mark.asyncio
async def test_list_signatures_uses_engine_catalog(client, fake_engine):
    r = await client.get("/api/list")
    assert r.json() == {"signatures": []}

    fake_engine.catalog = [{"name": "gzip", "description": "gzip compressed data"}]
    r = await client.get("/api/list")
    assert r.json()["signatures"] == fake_engine.catalog


@pytest.mark.asyncio
async def test_entropy_stub(client):
    r = await client.post("/api/entropy")
    assert r.status_code == 200
    assert r.json() == {"entropy": []}


@pytest.mark.asyncio
async def test_missing_file_part_never_reaches_engine(client, fake_engine):
    r = await client.post(
        "/api/analyze",
        files={"attachment": ("x.bin", b"data", "application/octet-stream")},
        data={"options": json.dumps({"extract": True})},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "MissingFile"
    assert fake_engine.calls == []


@pytest.mark.asyncio
async def test_non_form_body_is_missing_file(client, fake_engine):
    r = await client.post("/api/analyze", content=b"{}", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "MissingFile"
    assert fake_engine.calls == []


@pytest.mark.asyncio
async def test_multipart_without_boundary_is_rejected(client, fake_engine):
    r = await client.post(
        "/api/analyze", content=b"garbage", headers={"content-type": "multipart/form-data"}
    )
    assert r.status_code == 400
    assert fake_engine.calls == []


def raw_multipart(parts, boundary="----binwalkwebboundary"):
    body = b""
    for disposition, payload in parts:
        body += f"--{boundary}\r\nContent-Disposition: form-data; {disposition}\r\n\r\n".encode()
        body += payload + b"\r\n"
    body += f"--{boundary}--\r\n".encode()
    return body, {"content-type": f"multipart/form-data; boundary={boundary}"}


@pytest.mark.asyncio
async def test_file_part_without_filename_keeps_raw_bytes(client, fake_engine):
    payload = bytes.fromhex("1f8b0800fffe8000c328")
    body, headers = raw_multipart(
        [('name="file"', payload), ('name="options"', b'{"extract": true}')]
    )
    r = await client.post("/api/analyze", content=body, headers=headers)
    assert r.status_code == 200
    (call,) = fake_engine.calls
    assert call["data"] == payload
    assert call["filename"] == "upload.bin"
    assert call["extract"] is True


@pytest.mark.asyncio
async def test_binary_file_part_with_filename_keeps_raw_bytes(client, fake_engine):
    payload = bytes(range(256))
    body, headers = raw_multipart([('name="file"; filename="fw.bin"', payload)])
    r = await client.post("/api/analyze", content=body, headers=headers)
    assert r.status_code == 200
    assert fake_engine.calls[0]["data"] == payload
    assert fake_engine.calls[0]["filename"] == "fw.bin"


@pytest.mark.asyncio
async def test_missing_options_uses_defaults(client, fake_engine):
    r = await client.post("/api/analyze", **upload())
    assert r.status_code == 200

    (call,) = fake_engine.calls
    assert call["data"] == SAMPLE
    assert call["filename"] == "sample.bin"
    assert call["extract"] is False
    config = call["config"]
    assert config.include is None and config.exclude is None
    assert config.output_directory is None
    assert config.carve is False and config.matryoshka is False
    assert config.threads is None


@pytest.mark.asyncio
async def test_unparseable_options_fall_back_to_defaults(client, fake_engine):
    fake_engine.outputs = {"a": {"one.bin": b"1"}}
    r = await client.post("/api/analyze", **upload(options="{extract: yes"))
    assert r.status_code == 200
    assert fake_engine.calls[0]["extract"] is False
    assert r.json()["extractions"] == {}


@pytest.mark.asyncio
async def test_ten_bytes_without_extraction(client, fake_engine):
    fake_engine.outputs = {"a": {"one.bin": b"1"}}
    r = await client.post("/api/analyze", **upload(options={"extract": False}))
    assert r.status_code == 200
    body = r.json()
    assert body["extractions"] == {}
    assert body["artifacts"] == {}
    assert body["entropy"] is None
    assert [(s["offset"], s["description"], s["size"]) for s in body["file_map"]] == [
        (0, "10 bytes of test data", 10)
    ]


@pytest.mark.asyncio
async def test_entropy_request_returns_empty_series(client):
    r = await client.post("/api/analyze", **upload(options={"entropy": True}))
    assert r.json()["entropy"] == []


@pytest.mark.asyncio
async def test_form_style_options_are_translated(client, fake_engine):
    options = {
        "extract": True,
        "matryoshka": True,
        "include": " gzip, zip ,,",
        "exclude": "",
        "threads": "4",
        "directory": "",
        "verbose": True,
    }
    r = await client.post("/api/analyze", **upload(options=options))
    assert r.status_code == 200
    call = fake_engine.calls[0]
    assert call["extract"] is True
    assert call["config"].include == ["gzip", "zip"]
    assert call["config"].exclude is None
    assert call["config"].threads == 4
    assert call["config"].matryoshka is True
    assert call["config"].output_directory is None


@pytest.mark.asyncio
async def test_one_extraction_with_two_files(client, fake_engine, blob_store):
    fake_engine.outputs = {"ext-1": {"a.bin": b"first", "b.bin": b"second"}}
    r = await client.post("/api/analyze", **upload(options={"extract": True}))
    assert r.status_code == 200
    body = r.json()

    files = body["artifacts"]["ext-1"]
    assert [f["name"] for f in files] == ["a.bin", "b.bin"]
    assert [f["size"] for f in files] == [5, 6]
    assert files[0]["url"] != files[1]["url"]
    # the single-URL field keeps the last file
    assert body["extractions"] == {"ext-1": files[1]["url"]}

    for item, expected in zip(files, (b"first", b"second")):
        d = await client.get(item["url"])
        assert d.status_code == 200
        assert d.headers["content-type"] == "application/octet-stream"
        assert d.content == expected

    assert (await blob_store.stats()) == {"artifacts": 2, "artifact_bytes": 11}


@pytest.mark.asyncio
async def test_download_can_be_repeated(client, fake_engine):
    fake_engine.outputs = {"e": {"x": b"payload"}}
    body = (await client.post("/api/analyze", **upload(options={"extract": True}))).json()
    url = body["extractions"]["e"]
    for _ in range(3):
        r = await client.get(url)
        assert r.content == b"payload"


@pytest.mark.asyncio
async def test_download_unknown_token(client):
    r = await client.get("/api/download/does-not-exist")
    assert r.status_code == 404
    assert r.headers["content-type"].startswith("text/plain")
    assert r.text == "Not found"


@pytest.mark.asyncio
async def test_missing_extraction_directory_is_skipped(client, fake_engine, tmp_path):
    fake_engine.outputs = {"good": {"ok.bin": b"ok"}}
    fake_engine.extra_extractions = {"gone": str(tmp_path / "nope"), "blank": ""}
    r = await client.post("/api/analyze", **upload(options={"extract": True}))
    assert r.status_code == 200
    assert set(r.json()["extractions"]) == {"good"}


@pytest.mark.asyncio
async def test_scratch_directory_is_removed(client, fake_engine):
    fake_engine.outputs = {"e": {"x": b"1"}}
    r = await client.post("/api/analyze", **upload(options={"extract": True}))
    assert r.status_code == 200
    (scratch,) = fake_engine.scratch_dirs
    assert not os.path.exists(scratch)


@pytest.mark.asyncio
async def test_engine_failure_is_502(client, fake_engine):
    fake_engine.error = EngineFailure("binwalk failed: unsupported input")
    r = await client.post("/api/analyze", **upload())
    assert r.status_code == 502
    assert r.json() == {"detail": "binwalk failed: unsupported input", "error": "EngineFailure"}


@pytest.mark.asyncio
async def test_engine_crash_is_502(client, fake_engine):
    fake_engine.error = RuntimeError("boom")
    r = await client.post("/api/analyze", **upload())
    assert r.status_code == 502
    assert r.json()["error"] == "EngineFailure"

    # the server keeps serving
    assert (await client.get("/health")).status_code == 200


@pytest.mark.asyncio
async def test_analysis_timeout_is_504(client, fake_engine, monkeypatch):
    monkeypatch.setattr(settings, "analysis_timeout", 0.05)
    fake_engine.delay = 0.5
    r = await client.post("/api/analyze", **upload())
    assert r.status_code == 504
    assert r.json()["error"] == "EngineTimeout"


@pytest.mark.asyncio
async def test_concurrent_uploads_do_not_mix(client, fake_engine):
    fake_engine.echo = True
    first, second = b"A" * 64, b"B" * 32
    r1, r2 = await asyncio.gather(
        client.post("/api/analyze", **upload(first, "first.bin", {"extract": True})),
        client.post("/api/analyze", **upload(second, "second.bin", {"extract": True})),
    )
    urls1 = set(r1.json()["extractions"].values())
    urls2 = set(r2.json()["extractions"].values())
    assert urls1 and urls2
    assert urls1.isdisjoint(urls2)

    (u1,), (u2,) = urls1, urls2
    assert (await client.get(u1)).content == first
    assert (await client.get(u2)).content == second
