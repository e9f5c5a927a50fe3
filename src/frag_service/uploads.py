"""Upload handling for `/api/convert`.

An uploaded IFC file is validated, streamed to a uniquely named file in the
upload directory, handed to the converter and removed again, whatever the
outcome of the request.
"""

import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import quote

from fastapi.responses import Response
from starlette.datastructures import FormData, UploadFile

from .conversion import ConversionOptions, ConversionResult
from .errors import PayloadTooLargeError, ValidationError

logger = logging.getLogger(__name__)

FILE_FIELD = "ifc"
IFC_EXTENSION = ".ifc"
IFC_MIME = "application/x-step"
MAX_UPLOAD_BYTES = 100 * 1024 * 1024
CHUNK = 1024 * 1024
STAGED_NAME_MAX = 100
METADATA_HEADER = "X-Fragments-Metadata"


def is_ifc(filename: str | None, content_type: str | None) -> bool:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    return mime == IFC_MIME or (filename or "").lower().endswith(IFC_EXTENSION)


def pick_upload(form: FormData) -> UploadFile:
    """Return the single IFC upload of `form` or raise ValidationError."""
    for key, value in form.multi_items():
        if isinstance(value, UploadFile) and key != FILE_FIELD:
            raise ValidationError(f"File upload error: Unexpected field '{key}'")
    uploads = [v for v in form.getlist(FILE_FIELD) if isinstance(v, UploadFile)]
    if not uploads:
        raise ValidationError(f"No IFC file uploaded. Please upload a file with field name '{FILE_FIELD}'")
    if len(uploads) > 1:
        raise ValidationError(f"File upload error: Unexpected field '{FILE_FIELD}'")
    upload = uploads[0]
    if not is_ifc(upload.filename, upload.content_type):
        raise ValidationError("Only IFC files are allowed")
    return upload


def staging_path(upload_dir: Path, filename: str) -> Path:
    original = Path(filename.replace("\\", "/")).name or "upload.ifc"
    # keep the tail so the extension survives and the name fits NAME_MAX
    original = original.encode("utf-8")[-STAGED_NAME_MAX:].decode("utf-8", errors="ignore")
    return upload_dir / f"{time.time_ns()}-{secrets.randbelow(10**9)}-{original}"


def discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Failed to delete temp file %s: %s", path, e)


@asynccontextmanager
async def staged_upload(upload: UploadFile, upload_dir: Path, max_bytes: int = MAX_UPLOAD_BYTES) -> AsyncIterator[Path]:
    """Stream `upload` to a fresh staging file and remove it on exit."""
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = staging_path(upload_dir, upload.filename or "")
    try:
        size_bytes = 0
        with path.open("wb") as f_out:
            while True:
                chunk = await upload.read(CHUNK)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if size_bytes > max_bytes:
                    raise PayloadTooLargeError("File upload error: File too large")
                f_out.write(chunk)
        logger.debug("Staged %s (%d bytes)", path.name, size_bytes)
        yield path
    finally:
        discard(path)


def _text_field(form: FormData, key: str) -> str | None:
    value = form.get(key)
    return value if isinstance(value, str) else None


def _parse_categories(values: list[str]) -> frozenset[int]:
    codes: set[int] = set()
    for value in values:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                codes.add(int(part))
            except ValueError:
                raise ValidationError(
                    "excludedCategories must be a comma-separated list of integer category codes"
                ) from None
    return frozenset(codes)


def options_from_form(form: FormData, filename: str | None) -> ConversionOptions:
    name = _text_field(form, "name")
    if not name:
        name = os.path.splitext(Path((filename or "").replace("\\", "/")).name)[0] or "model"

    # any value but the literal "false" keeps the flag on
    include_properties = _text_field(form, "includeProperties")
    excluded = [v for v in form.getlist("excludedCategories") if isinstance(v, str)]

    return ConversionOptions(
        coordinate_to_origin=_text_field(form, "coordinateToOrigin") != "false",
        name=name,
        excluded_categories=_parse_categories(excluded) if excluded else None,
        include_properties=None if include_properties is None else include_properties != "false",
    )


def _content_disposition(name: str) -> str:
    filename = f"{name}.frag".replace("\r", "").replace("\n", "").replace('"', "'")
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


def fragments_response(result: ConversionResult) -> Response:
    import json

    headers = {
        "Content-Disposition": _content_disposition(result.metadata.name or "model"),
        "Content-Length": str(len(result.data)),
        METADATA_HEADER: json.dumps(result.metadata.to_dict()),
    }
    return Response(content=result.data, media_type="application/octet-stream", headers=headers)
