"""
Set algebra over stored values.

Flat-set rows store a list of members, nested-map rows store a dict of
sub-key -> list of members. Every list written back is sorted and free of
duplicates, so two equal sets always have the same stored form.
"""

from __future__ import annotations

from collections.abc import Iterable


def as_list(values: str | Iterable[str]) -> list[str]:
    """Normalize a single member or a sequence of members to a list."""
    if isinstance(values, str):
        return [values]
    return list(values)


def canonical(members: Iterable[str]) -> list[str]:
    return sorted(set(members))


def union(*groups: Iterable[str] | None) -> list[str]:
    """Union of any number of member groups; None counts as empty."""
    merged: set[str] = set()
    for group in groups:
        if group:
            merged.update(group)
    return sorted(merged)


def difference(members: Iterable[str] | None, removed: Iterable[str]) -> list[str]:
    return sorted(set(members or ()) - set(removed))


def document_add(document: dict | None, subkey: str, values: Iterable[str]) -> dict:
    """
    Return a copy of ``document`` with ``values`` merged into ``subkey``.

    A sub-key is never created without members.
    """
    updated = dict(document or {})
    merged = union(updated.get(subkey), values)
    if merged:
        updated[subkey] = merged
    return updated


def document_remove(document: dict | None, subkey: str, values: Iterable[str]) -> dict:
    """
    Return a copy of ``document`` with ``values`` removed from ``subkey``.

    A sub-key left without members is dropped instead of kept as [].
    """
    updated = dict(document or {})
    if subkey not in updated:
        return updated
    remaining = difference(updated[subkey], values)
    if remaining:
        updated[subkey] = remaining
    else:
        del updated[subkey]
    return updated


def document_omit(document: dict | None, subkeys: Iterable[str]) -> dict:
    dropped = set(subkeys)
    return {k: v for k, v in (document or {}).items() if k not in dropped}
