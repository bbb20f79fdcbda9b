from pydantic import BaseModel, Field
from typing import List, Optional


class RetrieveRequest(BaseModel):
    code: str
    password: str


class UploadResponse(BaseModel):
    success: bool = True
    code: str
    expires_at: str
    shards: int
    size: int


class SignUploadRequest(BaseModel):
    folder: Optional[str] = None


class SignUploadResponse(BaseModel):
    upload_url: str
    locator: str
    method: str = "PUT"


class FinalizeUploadRequest(BaseModel):
    password: str
    original_name: str
    mime_type: Optional[str] = None
    parts: List[str] = Field(..., min_length=1)  # locators, in shard order
    key_salt: str                                # hex
    transfer_id: str                             # hex
    shard_size: int
    size: int


class FinalizeUploadResponse(BaseModel):
    success: bool = True
    code: str
    expires_at: str


class RetrieveMetaResponse(BaseModel):
    success: bool = True
    parts: List[str]            # pre-signed GET URLs, in shard order
    original_name: str
    mime_type: str
    key_salt: str
    transfer_id: str
    shard_size: int
    size: int


class ErrorResponse(BaseModel):
    success: bool = False
    code: str
    message: str
