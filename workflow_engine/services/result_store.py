"""Result persistence: generated image bytes plus a result_assets row.

Bytes go to a storage backend (local directory in development, Azure Blob
Storage otherwise); metadata goes to the database. save() is idempotent per
item so a redelivered item never produces a second asset.
"""

import logging
import os
from typing import List, Optional

from azure.storage.blob import BlobServiceClient, ContentSettings
from sqlalchemy.exc import IntegrityError

from workflow_engine.config import settings
from workflow_engine.database import SessionLocal
from workflow_engine.exceptions import StorageError
from workflow_engine.models.result_asset import ResultAsset

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def build_storage_path(batch_id: str, item_index: int, item_id: str, content_type: str) -> str:
    ext = EXTENSIONS.get(content_type, "bin")
    return f"{batch_id}/{item_index}_{item_id}.{ext}"


class LocalResultBackend:
    """Writes results under a local directory for development."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or settings.RESULT_STORAGE_DIR
        if not os.path.exists(self.base_dir):
            os.makedirs(self.base_dir)
            logger.info(f"Created local result directory: {self.base_dir}")

    def _full_path(self, storage_path: str) -> str:
        return os.path.join(self.base_dir, *storage_path.split("/"))

    def write(self, storage_path: str, data: bytes, content_type: str):
        full_path = self._full_path(storage_path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as f:
            f.write(data)

    def read(self, storage_path: str) -> bytes:
        with open(self._full_path(storage_path), "rb") as f:
            return f.read()

    def delete(self, storage_path: str):
        full_path = self._full_path(storage_path)
        if os.path.exists(full_path):
            os.remove(full_path)


class AzureBlobResultBackend:
    """Stores results as blobs in one container."""

    def __init__(self, connection_string: Optional[str] = None, container_name: Optional[str] = None):
        self.container_name = container_name or settings.AZURE_STORAGE_CONTAINER
        self._blob_service_client = BlobServiceClient.from_connection_string(
            connection_string or settings.AZURE_STORAGE_CONNECTION_STRING
        )

    def _blob(self, storage_path: str):
        return self._blob_service_client.get_blob_client(container=self.container_name, blob=storage_path)

    def write(self, storage_path: str, data: bytes, content_type: str):
        self._blob(storage_path).upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type)
        )

    def read(self, storage_path: str) -> bytes:
        return self._blob(storage_path).download_blob().readall()

    def delete(self, storage_path: str):
        self._blob(storage_path).delete_blob(delete_snapshots="include")


def get_result_backend():
    """Get the configured result storage backend."""
    if settings.AZURE_STORAGE_CONNECTION_STRING:
        logger.info("Using Azure Blob Storage for results")
        return AzureBlobResultBackend()
    logger.info("Using local filesystem for results (Azure Storage not configured)")
    return LocalResultBackend()


class ResultStore:
    """Persists succeeded item outputs and looks them up by batch or item."""

    def __init__(self, session_factory=SessionLocal, backend=None):
        self.session_factory = session_factory
        self.backend = backend or get_result_backend()

    def save(self, batch_id: str, item_id: str, item_index: int, data: bytes,
             content_type: str = "image/png") -> int:
        """Store one result and return the result_assets id.

        Raises StorageError if either the bytes or the metadata row could
        not be written. If the item already has an asset, that asset's id is
        returned and nothing is written.
        """
        db = self.session_factory()
        try:
            existing = db.query(ResultAsset).filter(ResultAsset.item_id == item_id).first()
            if existing:
                logger.info(f"Result for item {item_id} already stored as asset {existing.id}")
                return existing.id

            storage_path = build_storage_path(batch_id, item_index, item_id, content_type)
            try:
                self.backend.write(storage_path, data, content_type)
            except Exception as e:
                raise StorageError(f"Failed to write result {storage_path}: {e}")

            asset = ResultAsset(
                item_id=item_id,
                batch_id=batch_id,
                storage_path=storage_path,
                content_type=content_type,
                size=len(data)
            )
            db.add(asset)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.query(ResultAsset).filter(ResultAsset.item_id == item_id).first()
                if existing:
                    return existing.id
                raise StorageError(f"Failed to record result for item {item_id}")

            logger.info(f"Stored result for item {item_id}: {storage_path} ({len(data)} bytes)")
            return asset.id
        except StorageError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            raise StorageError(f"Failed to record result for item {item_id}: {e}")
        finally:
            db.close()

    def list_for_batch(self, batch_id: str) -> List[ResultAsset]:
        db = self.session_factory()
        try:
            assets = (
                db.query(ResultAsset)
                .filter(ResultAsset.batch_id == batch_id)
                .order_by(ResultAsset.id.asc())
                .all()
            )
            db.expunge_all()
            return assets
        finally:
            db.close()

    def get_for_item(self, item_id: str) -> Optional[ResultAsset]:
        db = self.session_factory()
        try:
            asset = db.query(ResultAsset).filter(ResultAsset.item_id == item_id).first()
            if asset:
                db.expunge(asset)
            return asset
        finally:
            db.close()

    def read(self, asset: ResultAsset) -> bytes:
        try:
            return self.backend.read(asset.storage_path)
        except Exception as e:
            raise StorageError(f"Failed to read result {asset.storage_path}: {e}")

    def delete_for_batch(self, batch_id: str) -> int:
        """Remove stored bytes and asset rows for a batch (cleanup). Returns rows deleted."""
        db = self.session_factory()
        try:
            assets = db.query(ResultAsset).filter(ResultAsset.batch_id == batch_id).all()
            for asset in assets:
                try:
                    self.backend.delete(asset.storage_path)
                except Exception as e:
                    logger.warning(f"Failed to delete stored result {asset.storage_path}: {e}")
                db.delete(asset)
            db.commit()
            return len(assets)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
