"""
GCS bucket access for report persistence and generation leases.

Reports and leases are small JSON blobs, so everything goes through
string uploads and downloads. Leases rely on the generation-0
precondition to make creation atomic across instances.
"""

import logging
import os

from dotenv import load_dotenv
from google.api_core.exceptions import NotFound, PreconditionFailed
from google.cloud import storage

load_dotenv()

logger = logging.getLogger("consultpilot.gcs")


class BlobExistsError(Exception):
    """Raised when a create-only write finds the blob already present."""


class GenerationMismatchError(Exception):
    """Raised when a conditional delete finds a different object version."""


class GCSBucketManager:
    """Thin wrapper over one bucket. The client is built on first access."""

    # Per-request HTTP timeout, seconds
    GCS_TIMEOUT = 30

    def __init__(self, bucket_name, service_account_json_path=None):
        self.bucket_name = bucket_name
        # None falls back to GOOGLE_APPLICATION_CREDENTIALS / ambient auth
        self.service_account_json_path = service_account_json_path
        self._client = None
        self._bucket = None

    def _ensure_initialized(self):
        if self._client is not None:
            return
        project = os.getenv("PROJECT_ID")
        if self.service_account_json_path:
            client = storage.Client.from_service_account_json(
                self.service_account_json_path, project=project,
            )
        else:
            client = storage.Client(project=project)
        self._client = client
        self._bucket = client.bucket(self.bucket_name)
        logger.info("Connected to report bucket %s", self.bucket_name)

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    # CREATE / UPDATE
    def write_string(self, blob_name, content, content_type="application/json"):
        blob = self.bucket.blob(blob_name)
        blob.upload_from_string(content, content_type=content_type, timeout=self.GCS_TIMEOUT)

    def create_string(self, blob_name, content, content_type="application/json"):
        """
        Write only if the blob does not exist yet (generation 0 precondition).
        Returns the generation of the new blob.
        """
        blob = self.bucket.blob(blob_name)
        try:
            blob.upload_from_string(
                content,
                content_type=content_type,
                if_generation_match=0,
                timeout=self.GCS_TIMEOUT,
            )
        except PreconditionFailed as exc:
            raise BlobExistsError(blob_name) from exc
        return blob.generation

    # READ
    def read_string(self, blob_name):
        blob = self.bucket.blob(blob_name)
        try:
            return blob.download_as_text(timeout=self.GCS_TIMEOUT)
        except NotFound:
            return None

    def read_string_with_generation(self, blob_name):
        """
        Content and generation of the same object version, or (None, None)
        if the blob is missing or was replaced while reading.
        """
        blob = self.bucket.get_blob(blob_name, timeout=self.GCS_TIMEOUT)
        if blob is None:
            return None, None
        try:
            content = blob.download_as_text(
                if_generation_match=blob.generation, timeout=self.GCS_TIMEOUT,
            )
        except (NotFound, PreconditionFailed):
            return None, None
        return content, blob.generation

    # DELETE
    def delete_file(self, blob_name, if_generation_match=None):
        """
        Returns False if the blob is already gone.  With
        ``if_generation_match`` a newer version is left alone and
        GenerationMismatchError is raised.
        """
        blob = self.bucket.blob(blob_name)
        try:
            blob.delete(timeout=self.GCS_TIMEOUT, if_generation_match=if_generation_match)
            return True
        except NotFound:
            logger.debug("Blob %s not found on delete", blob_name)
            return False
        except PreconditionFailed as exc:
            raise GenerationMismatchError(blob_name) from exc
