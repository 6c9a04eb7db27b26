from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.storage.blob import BlobServiceClient, ContentSettings

from shared.config import get_storage_connection_string

logger = logging.getLogger(__name__)

_ATTACHMENTS_CONTAINER = os.getenv("TODO_ATTACHMENTS_CONTAINER", "todo-attachments")
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}

_BLOB_SERVICE: BlobServiceClient | None = None


class BlobConfigError(RuntimeError):
    pass


def _service() -> BlobServiceClient:
    global _BLOB_SERVICE
    if _BLOB_SERVICE is None:
        conn = get_storage_connection_string()
        if not conn:
            raise BlobConfigError("AZURE_STORAGE_CONNECTION_STRING (or AzureWebJobsStorage) is required")
        _BLOB_SERVICE = BlobServiceClient.from_connection_string(conn)
    return _BLOB_SERVICE


def _container_client(name: str):
    client = _service().get_container_client(name)
    try:
        client.create_container()
    except ResourceExistsError:
        pass
    return client


def _safe_filename(filename: Optional[str]) -> str:
    base = os.path.basename(str(filename or "").strip()) or "screenshot.png"
    return re.sub(r"[^A-Za-z0-9._-]+", "-", base)[:120]


def upload_task_attachment(
    *,
    tenant_id: str,
    todo_id: str,
    filename: Optional[str],
    data: bytes,
    content_type: Optional[str],
) -> Dict[str, Any]:
    """Upload a screenshot for a todo and return its attachment record."""
    if not data:
        raise ValueError("attachment is empty")
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise ValueError("attachment exceeds 10 MB")
    mime = str(content_type or "").split(";")[0].strip().lower()
    if mime not in ALLOWED_CONTENT_TYPES:
        raise ValueError("only image attachments are supported")
    container = _container_client(_ATTACHMENTS_CONTAINER)
    safe_name = _safe_filename(filename)
    blob_name = f"{tenant_id}/{todo_id}/{uuid.uuid4().hex}-{safe_name}"
    blob_client = container.upload_blob(
        name=blob_name,
        data=data,
        content_settings=ContentSettings(content_type=mime),
        overwrite=True,
    )
    logger.info("Uploaded attachment %s (%s bytes)", blob_name, len(data))
    return {"name": safe_name, "url": blob_client.url, "size": len(data), "blobName": blob_name}


def delete_task_attachment(blob_name: str) -> None:
    try:
        _service().get_blob_client(container=_ATTACHMENTS_CONTAINER, blob=blob_name).delete_blob()
    except (AzureError, BlobConfigError) as exc:
        logger.warning("delete_task_attachment failed for %s: %s", blob_name, exc)


def attachments_container_name() -> str:
    return _ATTACHMENTS_CONTAINER


def reset_blob_service_for_tests() -> None:
    global _BLOB_SERVICE
    _BLOB_SERVICE = None
