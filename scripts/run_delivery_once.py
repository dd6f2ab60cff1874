#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("LETTERS_API_BASE_URL", "").strip() or "http://localhost:8000"
    prefix = os.getenv("LETTERS_API_PREFIX", "/api/v1").strip() or "/api/v1"
    if candidate.rstrip("/").endswith(prefix.rstrip("/")):
        return candidate.rstrip("/")
    return f"{candidate.rstrip('/')}{prefix}"


def _request_json(method: str, base_url: str, path: str, *, timeout: int) -> dict[str, Any]:
    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        headers={"Accept": "application/json"},
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Trigger one letter delivery batch run on a running backend and print its summary."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1)."
        ),
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=600,
        help="Seconds to wait for the run to finish before giving up (default: 600).",
    )
    parser.add_argument(
        "--show-results",
        action="store_true",
        help="Print per-letter results in addition to the run counts.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    api_base_url = _resolve_api_base_url(args.api_base_url)
    summary = _request_json("POST", api_base_url, "delivery/run/once", timeout=args.timeout)

    output: dict[str, Any] = {
        "run_id": summary.get("run_id"),
        "status": summary.get("status"),
        "processed_count": summary.get("processed_count"),
        "sent_count": summary.get("sent_count"),
        "failed_count": summary.get("failed_count"),
    }
    if summary.get("error"):
        output["error"] = summary["error"]
    if args.show_results:
        output["results"] = summary.get("results", [])
    print(json.dumps(output, indent=2))

    if summary.get("status") == "aborted":
        return 2
    return 1 if summary.get("failed_count") else 0


if __name__ == "__main__":
    sys.exit(main())
