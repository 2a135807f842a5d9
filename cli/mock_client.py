"""Mock receiving app: verifies signed webhooks and mirrors files into a directory."""

from __future__ import annotations

import argparse
import base64
import binascii
import hashlib
import logging
import os
import sys
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import ValidationError

from gitrelay.exceptions import ChunkIntegrityError
from gitrelay.schemas.notification import FileNotificationPayload, SyncFailedPayload
from gitrelay.services.receiver_service import ChunkAssembler, verify_signature

logger = logging.getLogger(__name__)

SECRET_ENV_VAR = "GITRELAY_MOCK_SECRET"


def safe_target(root: Path, rel_path: str) -> Path:
    """Resolve a relative path inside root, rejecting traversal."""
    if not rel_path or rel_path.startswith("/") or "\\" in rel_path:
        msg = f"Invalid path: {rel_path!r}"
        raise ValueError(msg)
    target = (root / rel_path).resolve()
    if not target.is_relative_to(root.resolve()):
        msg = f"Path escapes mirror directory: {rel_path!r}"
        raise ValueError(msg)
    return target


def decode_content(payload: FileNotificationPayload) -> bytes:
    file = payload.file
    content = file.content or ""
    if file.content_encoding == "base64":
        try:
            return base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ChunkIntegrityError(f"Invalid base64 content for {file.path}") from exc
    return content.encode("utf-8")


def create_mock_app(
    mirror_dir: Path,
    secret: str,
    *,
    tolerance_seconds: float | None = 300.0,
) -> FastAPI:
    """Build the receiving app. Received events are kept on ``app.state`` for inspection."""
    app = FastAPI(title="gitrelay mock client")
    app.state.mirror_dir = mirror_dir
    app.state.assembler = ChunkAssembler()
    app.state.events = []
    app.state.sync_failures = []
    mirror_dir.mkdir(parents=True, exist_ok=True)

    async def verified_json(request: Request) -> bytes:
        body = await request.body()
        ok = verify_signature(
            secret,
            request.headers.get("X-Timestamp", ""),
            body,
            request.headers.get("X-Signature", ""),
            tolerance_seconds=tolerance_seconds,
        )
        if not ok:
            logger.warning("Rejected request to %s: bad signature", request.url.path)
            raise HTTPException(status_code=401, detail="Invalid signature")
        return body

    def parse_file_payload(body: bytes) -> FileNotificationPayload:
        try:
            return FileNotificationPayload.model_validate_json(body)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail="Invalid payload") from exc

    def write_file(payload: FileNotificationPayload) -> dict[str, Any]:
        file = payload.file
        try:
            target = safe_target(mirror_dir, file.path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        try:
            if file.chunk is not None:
                data = app.state.assembler.add_chunk(
                    file.chunk.id,
                    file.chunk.index,
                    file.chunk.total,
                    file.content or "",
                    expected_sha=file.sha,
                    path=file.path,
                )
                if data is None:
                    return {"status": "chunk_received", "index": file.chunk.index}
            else:
                data = decode_content(payload)
                if hashlib.sha256(data).hexdigest() != file.sha:
                    msg = f"Hash mismatch for {file.path}"
                    raise ChunkIntegrityError(msg)
        except ChunkIntegrityError as exc:
            logger.warning("Rejected %s: %s", file.path, exc)
            raise HTTPException(status_code=422, detail=str(exc)) from exc

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return {"status": "ok", "path": file.path}

    @app.post("/create")
    async def create_file(request: Request) -> dict[str, Any]:
        payload = parse_file_payload(await verified_json(request))
        result = write_file(payload)
        app.state.events.append(("create", payload.file.path, payload.file.chunk is not None))
        return result

    @app.post("/update")
    async def update_file(request: Request) -> dict[str, Any]:
        payload = parse_file_payload(await verified_json(request))
        result = write_file(payload)
        app.state.events.append(("update", payload.file.path, payload.file.chunk is not None))
        return result

    @app.post("/delete")
    async def delete_file(request: Request) -> dict[str, Any]:
        payload = parse_file_payload(await verified_json(request))
        try:
            target = safe_target(mirror_dir, payload.file.path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        target.unlink(missing_ok=True)
        app.state.events.append(("delete", payload.file.path, False))
        return {"status": "ok", "path": payload.file.path}

    @app.post("/sync_failed")
    async def sync_failed(request: Request) -> dict[str, str]:
        body = await verified_json(request)
        try:
            payload = SyncFailedPayload.model_validate_json(body)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail="Invalid payload") from exc
        logger.warning(
            "Sync failed for %s/%s: %s",
            payload.repository.owner,
            payload.repository.name,
            payload.error.message,
        )
        app.state.sync_failures.append(payload)
        return {"status": "ok"}

    return app


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="gitrelay-mock-client",
        description="Run a mock client app that mirrors gitrelay webhooks into a directory",
    )
    parser.add_argument("--dir", "-d", default="./mirror", help="Mirror directory")
    parser.add_argument("--secret", help=f"Shared secret (default: ${SECRET_ENV_VAR})")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=9000, help="Port")
    args = parser.parse_args()

    secret = args.secret or os.environ.get(SECRET_ENV_VAR)
    if not secret:
        print(f"Error: --secret or ${SECRET_ENV_VAR} is required")
        sys.exit(1)

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    app = create_mock_app(Path(args.dir).resolve(), secret)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
