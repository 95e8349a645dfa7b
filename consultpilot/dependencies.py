"""
Shared singletons that are only built when something asks for them.
"""

import logging

from consultpilot import settings

logger = logging.getLogger("consultpilot-server")

gcs = None


def get_gcs():
    """Return the report bucket manager, or None if it could not be built."""
    global gcs
    if gcs is None:
        try:
            from consultpilot.infrastructure.gcs import GCSBucketManager
            gcs = GCSBucketManager(
                bucket_name=settings.GCS_BUCKET_NAME,
                service_account_json_path=settings.GCS_SERVICE_ACCOUNT_JSON,
            )
            logger.info("Report bucket manager ready (bucket=%s)", settings.GCS_BUCKET_NAME)
        except Exception as e:
            logger.error(f"Report bucket manager unavailable: {e}")
    return gcs
