"""Object storage for source uploads and generated portraits.

Objects live on local disk under ``STORAGE_ROOT/<bucket>/<path>`` and are
served from ``PUBLIC_MEDIA_BASE_URL/<bucket>/<path>``.
"""

from __future__ import annotations

import asyncio
import mimetypes
import os
from pathlib import Path
from typing import Optional, Tuple

import httpx

from config import settings


def _root() -> Path:
    return Path(settings.STORAGE_ROOT).resolve()


def _object_path(bucket: str, path: str) -> Path:
    root = _root()
    target = (root / bucket / path.lstrip("/")).resolve()
    if root not in target.parents:
        raise ValueError(f"Invalid storage path: {bucket}/{path}")
    return target


def public_url(bucket: str, path: str) -> str:
    base = settings.PUBLIC_MEDIA_BASE_URL.rstrip("/")
    return f"{base}/{bucket}/{path.lstrip('/')}"


def local_path_for_url(url: str) -> Optional[Path]:
    """Map one of our public URLs back onto disk; None for foreign URLs."""
    base = settings.PUBLIC_MEDIA_BASE_URL.rstrip("/") + "/"
    if not url.startswith(base):
        return None
    bucket, _, path = url[len(base):].partition("/")
    if not bucket or not path:
        return None
    return _object_path(bucket, path)


def _write(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "wb") as handle:
        handle.write(data)


def _read(target: Path) -> bytes:
    with open(target, "rb") as handle:
        return handle.read()


async def store(bucket: str, path: str, data: bytes, content_type: str) -> str:
    target = _object_path(bucket, path)
    await asyncio.to_thread(_write, target, data)
    return public_url(bucket, path)


async def fetch(url: str) -> Tuple[bytes, str]:
    local = local_path_for_url(url)
    if local is not None:
        if not local.exists():
            raise FileNotFoundError(f"Stored object not found: {url}")
        data = await asyncio.to_thread(_read, local)
        content_type = mimetypes.guess_type(str(local))[0] or "image/jpeg"
        return data, content_type

    async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return response.content, content_type


async def delete(url: Optional[str]) -> bool:
    if not url:
        return False
    local = local_path_for_url(url)
    if local is None or not local.exists():
        return False
    await asyncio.to_thread(os.remove, local)
    return True


def extension_for(content_type: str) -> str:
    ext = mimetypes.guess_extension(content_type or "") or ".jpg"
    return ".jpg" if ext in (".jpe", ".jpeg") else ext
