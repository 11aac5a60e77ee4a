"""
Portrait generation endpoints.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.errors import (
    DuplicateJobError,
    GenerationBusyError,
    GenerationNotFoundError,
    GuestAccountMergedError,
    InsufficientCreditsError,
)
from services.generations import (
    delete_generation,
    get_generation_status,
    get_most_used_styles,
    submit_batch,
    submit_generation,
)
from services.styles import list_styles

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_image(image: UploadFile) -> bytes:
    limit = int(settings.MAX_UPLOAD_BYTES)
    chunks = []
    total_size = 0
    try:
        while True:
            chunk = await image.read(1024 * 1024)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > limit:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large. Max upload size is {limit // (1024 * 1024)}MB.",
                )
            chunks.append(chunk)
    finally:
        await image.close()
    return b"".join(chunks)


def _raise_for_submission(exc: Exception) -> None:
    if isinstance(exc, InsufficientCreditsError):
        raise HTTPException(
            status_code=402,
            detail={
                "error": "Insufficient credits",
                "required": exc.required,
                "available": exc.available,
            },
        ) from exc
    if isinstance(exc, GuestAccountMergedError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, DuplicateJobError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise exc


@router.get("/styles")
async def get_styles():
    return {"styles": list_styles()}


@router.get("/most-used-styles")
async def most_used_styles(db: AsyncSession = Depends(get_db)):
    return {"most_used_styles": await get_most_used_styles(db)}


@router.post("", status_code=202)
async def create_generation(
    image: UploadFile = File(...),
    style_key: str = Form(...),
    custom_prompt: Optional[str] = Form(default=None),
    edit_prompt: Optional[str] = Form(default=None),
    original_style_key: Optional[str] = Form(default=None),
    _rate_limit: None = Depends(rate_limit("generate", limit=5, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Queue a single portrait generation; the client polls its status."""
    data = await _read_image(image)
    try:
        result = await submit_generation(
            db,
            auth.identity,
            image_bytes=data,
            content_type=image.content_type,
            style_key=style_key.strip(),
            custom_prompt=custom_prompt,
            edit_prompt=edit_prompt,
            original_style_key=original_style_key,
            device_id=auth.device_id,
        )
    except (InsufficientCreditsError, GuestAccountMergedError, DuplicateJobError, ValueError) as exc:
        logger.info("Generation rejected for %s: %s", auth.identity.key, exc)
        _raise_for_submission(exc)
    return JSONResponse(status_code=202, content=result)


@router.post("/batch", status_code=202)
async def create_batch(
    image: UploadFile = File(...),
    style_keys: List[str] = Form(...),
    custom_prompt: Optional[str] = Form(default=None),
    _rate_limit: None = Depends(rate_limit("generate_batch", limit=3, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Queue one generation per style from a single upload."""
    data = await _read_image(image)
    try:
        result = await submit_batch(
            db,
            auth.identity,
            image_bytes=data,
            content_type=image.content_type,
            style_keys=style_keys,
            custom_prompt=custom_prompt,
            device_id=auth.device_id,
        )
    except (InsufficientCreditsError, GuestAccountMergedError, DuplicateJobError, ValueError) as exc:
        logger.info("Batch rejected for %s: %s", auth.identity.key, exc)
        _raise_for_submission(exc)
    return JSONResponse(status_code=202, content=result)


@router.get("/{generation_id}/status")
async def generation_status(
    generation_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        generation = await get_generation_status(db, auth.identity, generation_id)
    except GenerationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Generation not found") from exc
    return {"generation": generation}


@router.delete("/{generation_id}")
async def remove_generation(
    generation_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await delete_generation(db, auth.identity, generation_id)
    except GenerationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Generation not found") from exc
    except GenerationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
