# artifact_storage/base.py — Interface shared by the blob storage strategies
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from identifiers import leaf_id
from validators import validate_artifact_filename, validate_artifact_location


def validate_blob_meta(location: str, filename: str) -> None:
    validate_artifact_location(location)
    validate_artifact_filename(filename)


class ArtifactStrategy(ABC):
    """A place to keep artifact blobs.

    Blobs are addressed by org + project + location + filename. The org and
    project may be given as full composite ids; only their leaf ids are used.
    """

    name = ""

    @staticmethod
    def _scope(org: str, project: str) -> tuple:
        return leaf_id(org), leaf_id(project)

    @abstractmethod
    async def list_blobs(self, org: str, project: str) -> List[Dict[str, str]]:
        """Every blob of a project as {'location', 'filename'} dicts."""

    @abstractmethod
    async def get_blob(self, org: str, project: str, location: str, filename: str) -> bytes:
        ...

    @abstractmethod
    async def post_blob(self, org: str, project: str, location: str, filename: str, data: bytes) -> None:
        """Store a new blob; fails if one already exists at that address."""

    @abstractmethod
    async def put_blob(self, org: str, project: str, location: str, filename: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def delete_blob(self, org: str, project: str, location: str, filename: str) -> None:
        ...

    @abstractmethod
    async def clear(self, org: str, project: Optional[str] = None) -> None:
        """Remove every blob of a project, or of a whole org."""
