import logging
import os
import re
import secrets
from typing import Optional

from fastapi import HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile

import config

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = re.compile(r"\.(jpg|jpeg|png|gif|webp|mp4|mpeg|mov|quicktime|mkv|x-matroska|webm|pdf)$", re.I)
ALLOWED_MIME_TYPES = re.compile(r"/(jpg|jpeg|png|gif|webp|mp4|mpeg|quicktime|x-matroska|webm|pdf)$", re.I)


def is_allowed(filename: str, content_type: Optional[str]) -> bool:
    if content_type and ALLOWED_MIME_TYPES.search(content_type):
        return True
    return bool(filename and ALLOWED_EXTENSIONS.search(filename))


def save_upload(file: Optional[UploadFile]) -> Optional[str]:
    """Store an uploaded image/video/pdf and return its public ``/uploads/...`` path."""
    if file is None or not file.filename:
        return None
    filename = os.path.basename(file.filename)
    stem, ext = os.path.splitext(filename)
    if not is_allowed(filename, file.content_type):
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type {ext}. Only images, videos and PDFs are allowed.",
        )

    content = file.file.read(config.MAX_UPLOAD_SIZE + 1)
    if len(content) > config.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File size is too large. Maximum allowed size is 5MB.")

    name = f"{stem.split('.')[0]}-{secrets.token_hex(2)}{ext}"
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    with open(os.path.join(config.UPLOAD_DIR, name), "wb") as out:
        out.write(content)
    logger.info("Stored upload %s (%d bytes)", name, len(content))
    return f"/uploads/{name}"


def discard_upload(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(os.path.join(config.UPLOAD_DIR, os.path.basename(path)))
    except FileNotFoundError:
        return
    logger.info("Discarded upload %s", path)


def with_uploads(action, *args, files=()) -> dict:
    """Store ``files``, call ``action(*args, *paths)`` and drop the files again if it fails."""
    paths = []
    try:
        for file in files:
            paths.append(save_upload(file))
        result = action(*args, *paths)
    except Exception:
        for path in paths:
            discard_upload(path)
        raise
    if not result.get("success"):
        for path in paths:
            discard_upload(path)
    return result


async def form_or_json(request: Request) -> dict:
    """Request payload as a dict, from either a JSON body or a (multipart) form.

    Blank form values are dropped so optional fields fall back to defaults.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise RequestValidationError([{"loc": ("body",), "msg": "Invalid JSON body", "type": "json_invalid"}])
        if not isinstance(body, dict):
            raise RequestValidationError([{"loc": ("body",), "msg": "Expected a JSON object", "type": "dict_type"}])
        return body
    if not content_type:
        return {}
    form = await request.form()
    return {k: v for k, v in form.multi_items() if not (isinstance(v, str) and v == "")}


def pop_file(data: dict, name: str) -> Optional[StarletteUploadFile]:
    value = data.pop(name, None)
    return value if isinstance(value, StarletteUploadFile) else None
