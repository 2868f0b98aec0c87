# artifact_storage/local.py — Blobs on the local filesystem
# Layout: <root>/<org>/<project>/<location with '/' as '.'><filename>
#   location 'models/v1' + 'diagram.png' -> <root>/org/proj/models.v1.diagram.png

import os
import shutil
import logging
from typing import Dict, List, Optional

from errors import DataFormatError, NotFoundError, OperationError, ServerError
from identifiers import leaf_id
from artifact_storage.base import ArtifactStrategy, validate_blob_meta

logger = logging.getLogger("mbee.artifacts.local")


class LocalStrategy(ArtifactStrategy):
    name = "local"

    def __init__(self, root: Optional[str] = None):
        self.root = root or os.getenv("ARTIFACT_STORAGE_ROOT", os.path.join(os.getcwd(), "storage"))

    def _project_dir(self, org: str, project: str) -> str:
        org_id, project_id = self._scope(org, project)
        return os.path.join(self.root, org_id, project_id)

    def blob_path(self, org: str, project: str, location: str, filename: str) -> str:
        location = location.strip("/")
        prefix = location.replace("/", ".") + "." if location else ""
        project_dir = os.path.realpath(self._project_dir(org, project))
        path = os.path.realpath(os.path.join(project_dir, prefix + filename))
        if os.path.dirname(path) != project_dir:
            raise DataFormatError("Artifact blob path escapes the project storage.", "warn")
        return path

    async def list_blobs(self, org: str, project: str) -> List[Dict[str, str]]:
        project_dir = self._project_dir(org, project)
        if not os.path.isdir(project_dir):
            return []

        blobs = []
        for name in sorted(os.listdir(project_dir)):
            parts = name.split(".")
            blobs.append({
                "location": "/".join(parts[:-2]),
                "filename": ".".join(parts[-2:]),
            })
        return blobs

    async def get_blob(self, org: str, project: str, location: str, filename: str) -> bytes:
        validate_blob_meta(location, filename)
        try:
            with open(self.blob_path(org, project, location, filename), "rb") as f:
                return f.read()
        except OSError:
            raise NotFoundError("Artifact blob not found.", "warn")

    async def post_blob(self, org: str, project: str, location: str, filename: str, data: bytes) -> None:
        validate_blob_meta(location, filename)
        if os.path.exists(self.blob_path(org, project, location, filename)):
            raise DataFormatError("Artifact blob already exists.", "warn")
        await self.put_blob(org, project, location, filename, data)

    async def put_blob(self, org: str, project: str, location: str, filename: str, data: bytes) -> None:
        validate_blob_meta(location, filename)
        path = self.blob_path(org, project, location, filename)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.error("Could not write blob %s: %s", path, e)
            raise ServerError("Could not create Artifact blob.", "warn")
        logger.debug("Stored blob %s (%d bytes)", path, len(data))

    async def delete_blob(self, org: str, project: str, location: str, filename: str) -> None:
        validate_blob_meta(location, filename)
        path = self.blob_path(org, project, location, filename)
        try:
            os.remove(path)
        except FileNotFoundError:
            raise NotFoundError("Artifact blob not found.", "warn")
        except OSError:
            raise OperationError("Could not delete Blob.", "warn")

        # Drop the project directory with its last blob
        project_dir = os.path.dirname(path)
        if not os.listdir(project_dir):
            os.rmdir(project_dir)

    async def clear(self, org: str, project: Optional[str] = None) -> None:
        if project is None:
            target = os.path.join(self.root, leaf_id(org))
        else:
            target = self._project_dir(org, project)
        shutil.rmtree(target, ignore_errors=True)
