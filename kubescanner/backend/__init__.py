"""Backend package: batching, upload and failure metrics.

Submodules
----------
batching -- BatchingPipeline: size/interval triggered batches.
client   -- UploadClient: one POST per batch.
failures -- FailureTracker: per-object retry state and the backend metrics.
"""

from kubescanner.backend.batching import BatchingPipeline
from kubescanner.backend.client import UploadClient
from kubescanner.backend.failures import FailureRecord, FailureTracker

__all__ = ["BatchingPipeline", "FailureRecord", "FailureTracker", "UploadClient"]
