"""
Local filesystem storage for uploaded post images.
"""
import logging
import os
import random
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile
from starlette.requests import HTTPConnection

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024  # 5MB limit


class UploadRejected(Exception):
    """Raised when an upload does not satisfy the image constraints."""


class ImageStore:
    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, filename: str) -> Path:
        # Stored names are generated by us; strip any directory part from lookups
        return self.directory / os.path.basename(filename)

    @staticmethod
    def unique_name(fieldname: str, original_name: Optional[str]) -> str:
        unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10 ** 9)}"
        return f"{fieldname}-{unique_suffix}{Path(original_name or '').suffix}"

    def read_image(self, upload: UploadFile) -> bytes:
        """Validate the MIME type and size of ``upload`` and return its bytes."""
        if not (upload.content_type or "").startswith("image/"):
            raise UploadRejected("Only image files are allowed!")
        contents = upload.file.read(MAX_IMAGE_BYTES + 1)
        if len(contents) > MAX_IMAGE_BYTES:
            raise UploadRejected("File too large")
        return contents

    def save(self, contents: bytes, original_name: Optional[str], fieldname: str = "image") -> str:
        filename = self.unique_name(fieldname, original_name)
        self.path_for(filename).write_bytes(contents)
        logger.info("Stored upload %s (%d bytes)", filename, len(contents))
        return filename

    def delete(self, filename: str) -> bool:
        """Remove a stored image. A file that is already gone is not an error."""
        path = self.path_for(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Image %s already missing from %s", filename, self.directory)
            return False
        return True


def get_image_store(conn: HTTPConnection) -> ImageStore:
    return conn.app.state.images
