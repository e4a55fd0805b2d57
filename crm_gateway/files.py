"""File upload to ContentVersion and binary download."""

import base64
import binascii
import logging
from typing import Any, Dict

import httpx

from .errors import MalformedRequest
from .models import UploadRequest
from .record_client import RecordClient, RecordResponse

logger = logging.getLogger(__name__)


def download_url(version_id: str) -> str:
    return f"/file/{version_id}"


class FileService:
    """Uploads images as ContentVersion records and streams them back."""

    def __init__(self, records: RecordClient):
        self.records = records

    async def upload(self, token: str, request: UploadRequest) -> RecordResponse:
        """Create a ContentVersion from base64 data.

        On success the response data is replaced by ``{id, contentDocumentId,
        imageUrl}``. The ContentDocumentId lookup is best-effort.
        """
        try:
            size = len(base64.b64decode(request.image_base64, validate=True))
        except (binascii.Error, ValueError):
            raise MalformedRequest("imageBase64 is not valid base64")

        logger.info(f"Uploading {request.file_name} via ContentVersion ({size} bytes)")
        created = await self.records.create(
            token,
            "ContentVersion",
            {
                "Title": request.title or request.file_name,
                "PathOnClient": request.file_name,
                "Description": ", ".join(request.tags),
                "VersionData": request.image_base64,
            },
        )
        if created.status_code != 201 or not created.record_id:
            return created

        version_id = created.record_id
        result: Dict[str, Any] = {"id": version_id, "imageUrl": download_url(version_id)}
        try:
            lookup = await self.records.get_record(
                token, "ContentVersion", version_id, fields=["ContentDocumentId"]
            )
            if isinstance(lookup.data, dict) and lookup.data.get("ContentDocumentId"):
                result["contentDocumentId"] = lookup.data["ContentDocumentId"]
        except Exception as e:
            logger.warning(f"ContentDocumentId lookup for {version_id} failed: {e}")
        return RecordResponse(status_code=201, data=result)

    async def open_download(self, authorization: str, version_id: str) -> httpx.Response:
        """Open a streamed download of a ContentVersion's binary data."""
        path = self.records.config.sobject_path("ContentVersion", version_id) + "/VersionData"
        return await self.records.open_stream(authorization, path)
