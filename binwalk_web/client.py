"""CLI that submits a file to a binwalk-web server and fetches the extractions."""
import argparse
import asyncio
import json
from pathlib import Path, PurePath
from typing import Dict, List, Optional

import aiohttp

FLAGS = ("extract", "carve", "entropy", "matryoshka", "verbose", "quiet")


def build_options(args: argparse.Namespace) -> Dict[str, object]:
    options: Dict[str, object] = {flag: bool(getattr(args, flag)) for flag in FLAGS}
    for key in ("include", "exclude", "threads", "directory"):
        value = getattr(args, key)
        if value is not None:
            options[key] = value
    return options


def format_file_map(file_map: List[dict]) -> List[str]:
    lines = [f"{'DECIMAL':<12}{'HEXADECIMAL':<14}{'SIZE':<12}DESCRIPTION"]
    for sig in file_map:
        offset = sig["offset"]
        lines.append(f"{offset:<12}{offset:<#14x}{sig.get('size', 0):<12}{sig['description']}")
    return lines


def error_detail(body: str) -> str:
    try:
        return json.loads(body)["detail"]
    except (ValueError, TypeError, KeyError):
        return body.strip() or "no details"


def artifact_path(out_dir: Path, extraction_id: str, name: str) -> Path:
    # names come from the server, keep them inside out_dir
    safe_id = PurePath(extraction_id).name or "extraction"
    safe_name = PurePath(name).name or "artifact.bin"
    return out_dir / safe_id / safe_name


async def download(session: aiohttp.ClientSession, base_url: str, url: str, dest: Path) -> int:
    async with session.get(f"{base_url}{url}") as r:
        r.raise_for_status()
        payload = await r.read()
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(payload)
    return len(payload)


async def run(file_path: Path, base_url: str, options: Dict[str, object], out_dir: Optional[Path]):
    async with aiohttp.ClientSession() as session:
        data = aiohttp.FormData()
        data.add_field("file", file_path.read_bytes(), filename=file_path.name)
        data.add_field("options", json.dumps(options), content_type="application/json")
        async with session.post(f"{base_url}/api/analyze", data=data) as r:
            if r.status != 200:
                raise SystemExit(f"Analysis failed ({r.status}): {error_detail(await r.text())}")
            result = await r.json()

        for line in format_file_map(result["file_map"]):
            print(line)

        artifacts = result.get("artifacts") or {}
        if not artifacts:
            return
        if out_dir is None:
            for extraction_id, files in artifacts.items():
                for item in files:
                    print(f"   • {extraction_id}/{item['name']}: {base_url}{item['url']}")
            return

        jobs = [
            download(session, base_url, item["url"], artifact_path(out_dir, extraction_id, item["name"]))
            for extraction_id, files in artifacts.items()
            for item in files
        ]
        sizes = await asyncio.gather(*jobs)
        print(f"Saved {len(sizes)} artifacts ({sum(sizes)} bytes) to {out_dir}")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("file", type=Path, help="File to analyze")
    parser.add_argument("--base-url", default="http://127.0.0.1:8080")
    parser.add_argument("--out", type=Path, help="Save extracted artifacts here")
    for flag in FLAGS:
        parser.add_argument(f"--{flag}", action="store_true")
    parser.add_argument("--include", help="Comma separated signatures to look for")
    parser.add_argument("--exclude", help="Comma separated signatures to skip")
    parser.add_argument("--threads", type=int)
    parser.add_argument("--directory", help="Server side output directory")
    args = parser.parse_args(argv)

    if not args.file.exists():
        raise SystemExit(f"File not found: {args.file}")
    asyncio.run(run(args.file, args.base_url.rstrip("/"), build_options(args), args.out))


if __name__ == "__main__":
    main()
