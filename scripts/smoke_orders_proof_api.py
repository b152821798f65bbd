#!/usr/bin/env python3
"""
Smoke test: payment proof hosting API.

Validates:
- GET /health answers ok
- a stored proof is served back byte-for-byte at its public URL path
- unknown or path-like names are 404

Run:
  python3 scripts/smoke_orders_proof_api.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(media_dir: Path) -> None:
    from aiohttp.test_utils import TestClient, TestServer  # noqa: WPS433

    from api_server import create_api_app  # noqa: WPS433
    from orders.storage import ProofStorage  # noqa: WPS433

    storage = ProofStorage(media_dir=str(media_dir), public_base_url="https://bot.example.com/")
    payload = b"\xff\xd8\xff\xe0smoke-proof"
    proof = await storage.save("abcdef0123456789", payload)
    _assert(proof["url"] == f"https://bot.example.com/proofs/{proof['file_name']}", f"url mismatch: {proof}")
    _assert(proof["file_name"].startswith("abcdef0123456789_"), f"file name must carry the order id: {proof}")

    client = TestClient(TestServer(create_api_app(storage)))
    await client.start_server()
    try:
        resp = await client.get("/health")
        _assert(resp.status == 200, f"health status: {resp.status}")
        body = await resp.json()
        _assert(body.get("status") == "ok", f"health body: {body}")

        resp = await client.get(f"/proofs/{proof['file_name']}")
        _assert(resp.status == 200, f"proof status: {resp.status}")
        _assert(await resp.read() == payload, "proof bytes mismatch")

        resp = await client.get("/proofs/missing.jpg")
        _assert(resp.status == 404, f"missing proof status: {resp.status}")

        resp = await client.get("/proofs/..%2Fstate.db")
        _assert(resp.status == 404, f"path-like name must be rejected: {resp.status}")
    finally:
        await client.close()

    _assert(storage.resolve("../state.db") is None, "resolve must reject traversal")
    _assert(storage.resolve(".hidden") is None, "resolve must reject dotfiles")

    await storage.discard(proof["file_name"])
    _assert(storage.resolve(proof["file_name"]) is None, "discarded proof must be gone")
    await storage.discard("../state.db")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="ordersbot-smoke-proof-api-"))
    try:
        os.environ["DB_PATH"] = str(tmpdir / "state.db")
        os.environ["MEDIA_DIR"] = str(tmpdir / "media")
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        os.environ["LOG_TO_FILE"] = "0"

        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(tmpdir / "media"))
        print("OK: orders proof API smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
