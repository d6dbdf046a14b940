"""Argument checks run before any query is issued."""

from __future__ import annotations

from collections.abc import Sequence, Set

from pgacl.batch import Batch
from pgacl.errors import BackendValidationError
from pgacl.sets import as_list


def check_batch(batch) -> Batch:
    if not isinstance(batch, Batch):
        raise BackendValidationError(
            f"batch must be a Batch returned by begin(), got {type(batch).__name__}"
        )
    return batch


def check_name(value, what: str) -> str:
    if not isinstance(value, str):
        raise BackendValidationError(f"{what} must be a string, got {type(value).__name__}")
    return value


def check_names(values, what: str) -> list[str]:
    """Accept a sequence (or set) of strings and return it as a list."""
    if isinstance(values, str) or not isinstance(values, (Sequence, Set)):
        raise BackendValidationError(
            f"{what} must be a sequence of strings, got {type(values).__name__}"
        )
    items = list(values)
    for item in items:
        if not isinstance(item, str):
            raise BackendValidationError(
                f"{what} must contain only strings, got {type(item).__name__}"
            )
    return items


def check_members(values, what: str = "values") -> list[str]:
    """Accept a single string or a sequence of strings and return a list."""
    if not isinstance(values, str):
        check_names(values, what)
    return as_list(values)
