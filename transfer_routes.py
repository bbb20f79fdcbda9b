# transfer_routes.py

import io
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse

from exceptions import ValidationError
from file_service import content_disposition, resolve_mime
from registry import ManifestDraft
from schemas import (
    FinalizeUploadRequest,
    FinalizeUploadResponse,
    RetrieveMetaResponse,
    RetrieveRequest,
    SignUploadRequest,
    SignUploadResponse,
    UploadResponse,
)
from security import validate_password
from storage import is_valid_folder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Transfers"])


def get_services(request: Request):
    return request.app.state.services


def _hex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise ValidationError(f"{what} must be hex encoded") from None


# ─── HEALTH ───────────────────────────────────────────

@router.get("/health")
def health(services=Depends(get_services)):
    return {
        "status": "alive",
        "storage": services.object_store.get_health(),
        "manifests": services.store.count(),
    }


# ─── SERVER RELAY ─────────────────────────────────────

@router.post("/upload", response_model=UploadResponse)
def upload_file(
    file: Optional[UploadFile] = File(None),
    password: str = Form(""),
    services=Depends(get_services),
):
    if file is None or not file.filename:
        raise ValidationError("Please select a file.")

    receipt = services.orchestrator.upload(
        file.file,
        password,
        original_name=file.filename,
        mime_type=resolve_mime(file.filename, file.content_type),
    )
    return UploadResponse(
        code=receipt.code,
        expires_at=receipt.expires_at.isoformat(),
        shards=receipt.shard_count,
        size=receipt.size,
    )


@router.post("/retrieve")
def retrieve_file(req: RetrieveRequest, services=Depends(get_services)):
    result = services.orchestrator.retrieve(req.code.strip(), req.password)
    return StreamingResponse(
        io.BytesIO(result.data),
        media_type=result.mime_type,
        headers={
            "Content-Disposition": content_disposition(result.original_name),
            "Cache-Control": "no-store",
        },
    )


# ─── DIRECT-TO-STORAGE ────────────────────────────────

@router.post("/sign-upload", response_model=SignUploadResponse)
def sign_upload(req: SignUploadRequest, services=Depends(get_services)):
    folder = req.folder or services.settings.storage_folder
    if not is_valid_folder(folder):
        raise ValidationError("Invalid folder name")
    upload_url, locator = services.object_store.presign_put(folder)
    return SignUploadResponse(upload_url=upload_url, locator=locator)


@router.post("/finalize-upload", response_model=FinalizeUploadResponse)
def finalize_upload(req: FinalizeUploadRequest, services=Depends(get_services)):
    validate_password(req.password, services.settings.min_password_length)
    foreign = [p for p in req.parts if not services.object_store.owns(p)]
    if foreign:
        raise ValidationError(f"{len(foreign)} parts do not belong to this storage")

    draft = ManifestDraft(
        key_salt=_hex(req.key_salt, "key_salt"),
        transfer_id=_hex(req.transfer_id, "transfer_id"),
        shard_locators=tuple(req.parts),
        shard_size=req.shard_size,
        size=req.size,
        original_name=req.original_name,
        mime_type=resolve_mime(req.original_name, req.mime_type),
    )
    committed = services.registry.commit(draft, req.password)
    return FinalizeUploadResponse(code=committed.code, expires_at=committed.expires_at.isoformat())


@router.post("/retrieve-meta", response_model=RetrieveMetaResponse)
def retrieve_meta(req: RetrieveRequest, services=Depends(get_services)):
    manifest = services.registry.open(req.code.strip(), req.password)
    parts = [services.object_store.presign_get(loc) for loc in manifest.shard_locators]
    return RetrieveMetaResponse(
        parts=parts,
        original_name=manifest.original_name,
        mime_type=manifest.mime_type,
        key_salt=manifest.key_salt.hex(),
        transfer_id=manifest.transfer_id.hex(),
        shard_size=manifest.shard_size,
        size=manifest.size,
    )


# Relay pair without the /api prefix, for clients that post to /upload and /retrieve.
relay_router = APIRouter(tags=["Transfers"])
relay_router.add_api_route("/upload", upload_file, methods=["POST"], response_model=UploadResponse)
relay_router.add_api_route("/retrieve", retrieve_file, methods=["POST"])
