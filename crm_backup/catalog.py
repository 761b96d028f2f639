import json
import os
import tempfile
from typing import List

from pydantic import TypeAdapter, ValidationError

from .errors import CatalogUnavailableError
from .logger import get_logger
from .schemas import BackupArtifact

logger = get_logger(__name__)

CATALOG_FILE = "metadata.json"

_artifact_list = TypeAdapter(List[BackupArtifact])


class CatalogStore:
    """
    The metadata catalog: a single JSON array of BackupArtifact records stored beside
    the artifact files. Every mutation reads the whole document and rewrites it.
    Only one writing process is supported.
    """

    def __init__(self, directory: str, filename: str = CATALOG_FILE):
        self.directory = directory
        self.path = os.path.join(directory, filename)

    def load(self) -> List[BackupArtifact]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "rb") as f:
                return _artifact_list.validate_json(f.read())
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to read backup catalog {self.path}: {e}")
            raise CatalogUnavailableError(f"Backup catalog is unreadable: {e}") from e

    def save(self, records: List[BackupArtifact]) -> None:
        payload = json.dumps(
            [record.model_dump(mode="json") for record in records], indent=2
        )
        try:
            os.makedirs(self.directory, exist_ok=True)
            # Write to a sibling temp file and swap it in, so readers never see half a document
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".metadata-", suffix=".json")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            logger.error(f"Failed to write backup catalog {self.path}: {e}")
            raise CatalogUnavailableError(f"Backup catalog is not writable: {e}") from e

    def append(self, record: BackupArtifact) -> None:
        records = self.load()
        records.append(record)
        self.save(records)

    def remove(self, backup_id: str) -> List[BackupArtifact]:
        """Rewrites the catalog without the given id and returns the remaining records."""
        records = [r for r in self.load() if r.id != backup_id]
        self.save(records)
        return records
