"""
Bucket addressing.

A bucket is a logical collection of keyed sets. Flat-set buckets map one to
one onto a table named ``<prefix><bucket>``. Every bucket whose name contains
``allows`` is a nested-map bucket: they all share the permissions table, and
the bucket name itself is the row key.
"""

from __future__ import annotations

import enum
import functools
from dataclasses import dataclass

# Bucket names used by the ACL engine unless it is configured otherwise.
DEFAULT_BUCKETS = {
    "meta": "meta",
    "parents": "parents",
    "permissions": "permissions",
    "resources": "resources",
    "roles": "roles",
    "users": "users",
}

NESTED_MAP_MARKER = "allows"


class BucketShape(enum.Enum):
    FLAT_SET = "flat_set"
    NESTED_MAP = "nested_map"


@dataclass(frozen=True)
class ResolvedBucket:
    """Physical location of a bucket."""

    name: str
    table: str
    shape: BucketShape

    @property
    def is_nested(self) -> bool:
        return self.shape is BucketShape.NESTED_MAP


class BucketResolver:
    """
    Resolve bucket names to tables.

    Recently used bucket names are cached, up to CACHE_SIZE of them.

    Example:
        resolver = BucketResolver(prefix="acl_")
        resolver.resolve("roles").table              # "acl_roles"
        resolver.resolve("allows_blogs@guest").table  # "acl_permissions"
    """

    CACHE_SIZE = 1024

    def __init__(self, prefix: str = "", buckets: dict[str, str] | None = None):
        self.prefix = prefix if prefix is not None else ""
        self.buckets = {**DEFAULT_BUCKETS, **(buckets or {})}
        self.resolve = functools.lru_cache(maxsize=self.CACHE_SIZE)(self._resolve)

    @property
    def permissions_table(self) -> str:
        return self.prefix + self.buckets["permissions"]

    @property
    def managed_tables(self) -> list[str]:
        """Every configured table, permissions table included, without repeats."""
        tables = [self.prefix + name for name in self.buckets.values()]
        return list(dict.fromkeys(tables))

    def _resolve(self, bucket: str) -> ResolvedBucket:
        if NESTED_MAP_MARKER in bucket:
            return ResolvedBucket(bucket, self.permissions_table, BucketShape.NESTED_MAP)
        return ResolvedBucket(bucket, self.prefix + bucket, BucketShape.FLAT_SET)
