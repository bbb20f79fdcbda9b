"""
file_service.py — File metadata helpers shared by the upload and download routes.

Names and MIME types are stored exactly as the uploader sent them; the only
place they are reshaped is the Content-Disposition header on the way out.
"""
from typing import Optional
from urllib.parse import quote

DEFAULT_MIME = "application/octet-stream"

# Extension → MIME type map (used when the browser sends no content type)
MIME_MAP = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "gif":  "image/gif",
    "webp": "image/webp",
    "txt":  "text/plain",
    "md":   "text/markdown",
    "csv":  "text/csv",
    "json": "application/json",
    "zip":  "application/zip",
    "7z":   "application/x-7z-compressed",
    "tar":  "application/x-tar",
    "gz":   "application/gzip",
    "mp4":  "video/mp4",
    "mp3":  "audio/mpeg",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


def detect_mime(filename: str) -> str:
    """Detect MIME type from file extension."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        return MIME_MAP.get(ext, DEFAULT_MIME)
    return DEFAULT_MIME


def resolve_mime(filename: str, content_type: Optional[str]) -> str:
    if content_type and content_type != DEFAULT_MIME:
        return content_type
    return detect_mime(filename or "")


def content_disposition(filename: str) -> str:
    """
    attachment header carrying the original name. The plain filename= part
    is an ASCII fallback with quotes and control characters removed; the
    exact name travels in filename*= (RFC 5987).
    """
    fallback = "".join(
        c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename
    ) or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
