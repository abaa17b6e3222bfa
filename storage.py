import logging
from typing import Optional, Tuple

import gridfs
from gridfs.errors import NoFile
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import NotFound, UploadFailure

logger = logging.getLogger(__name__)


class GridFSStorage:
    """
    Blob storage for invoice PDFs and project photos, kept in the same
    MongoDB database through GridFS. Files are served back by the API under
    `/files/{file_id}`.
    """

    def __init__(self, database: Database, public_base_url: str = ""):
        self.fs = gridfs.GridFS(database)
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, file_id: str) -> str:
        return f"{self.public_base_url}/files/{file_id}"

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        try:
            file_id = self.fs.put(data, filename=path, metadata={"content_type": content_type})
        except PyMongoError as exc:
            logger.error("Upload of %s failed: %s", path, exc)
            raise UploadFailure(f"Could not store {path}") from exc
        logger.info("Stored %s (%d bytes) as %s", path, len(data), file_id)
        return self.url_for(str(file_id))

    def open(self, file_id: str) -> Tuple[bytes, Optional[str], str]:
        """Return (content, content_type, filename)."""
        if not ObjectId.is_valid(file_id):
            raise NotFound("File", file_id)
        try:
            grid_out = self.fs.get(ObjectId(file_id))
        except NoFile:
            raise NotFound("File", file_id)
        metadata = grid_out.metadata or {}
        return grid_out.read(), metadata.get("content_type"), grid_out.filename
