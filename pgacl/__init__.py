"""
pgacl - PostgreSQL storage backend for bucket-based ACL engines.

This package provides:
- PostgresBackend: the begin/end/get/union/add/remove/delete/clean/close API
- Batch: the work queue returned by begin()
- Exception classes: AclBackendError, BackendValidationError, BackendClosedError
"""

from pgacl.backend import PostgresBackend
from pgacl.batch import Batch
from pgacl.buckets import DEFAULT_BUCKETS, BucketResolver, BucketShape, ResolvedBucket
from pgacl.config import Settings, load_settings
from pgacl.errors import AclBackendError, BackendClosedError, BackendValidationError

__all__ = [
    "AclBackendError",
    "BackendClosedError",
    "BackendValidationError",
    "Batch",
    "BucketResolver",
    "BucketShape",
    "DEFAULT_BUCKETS",
    "PostgresBackend",
    "ResolvedBucket",
    "Settings",
    "load_settings",
]
