"""Utilities for deriving git-safe names from arbitrary text."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_LOWERCASE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_MIXED_CASE_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_DOT_COLLAPSE = re.compile(r"\.{2,}")
_SUBJECT_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_-]")

DIGEST_LENGTH = 8


def short_digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]


def ref_segment(value: str, *, lowercase: bool = False, fallback: str = "item") -> str:
    """Reduce ``value`` to one valid git ref-name component.

    When the reduction loses information a digest of the original value is
    appended, so two different inputs never produce the same segment.
    """

    source = value.lower() if lowercase else value
    pattern = _LOWERCASE_PATTERN if lowercase else _MIXED_CASE_PATTERN

    segment = _normalize(source, pattern)
    while segment.endswith(".lock"):
        segment = segment[: -len(".lock")].rstrip(".-")

    if segment == source and segment:
        return segment
    return f"{segment or fallback}-{short_digest(source)}"


def ref_path(value: str, *, fallback: str = "item") -> str:
    """Apply :func:`ref_segment` to every ``/``-separated part of ``value``."""

    return "/".join(ref_segment(part, fallback=fallback) for part in value.split("/"))


def normalize_subject(message: str, *, max_length: int = 64) -> str:
    """Turn a commit subject into a lowercase ``[a-z0-9_-]`` file stem."""

    subject = message.strip().splitlines()[0] if message.strip() else ""
    chars = []
    for char in subject.lower():
        if char.isspace():
            chars.append("_")
        else:
            chars.append(_SUBJECT_PATTERN.sub("-", char))
    stem = _HYPHEN_COLLAPSE.sub("-", "".join(chars)).strip("-_")
    if len(stem) > max_length:
        stem = stem[:max_length].rstrip("-_")
    return stem


def _normalize(value: str, pattern: Pattern[str]) -> str:
    slug = pattern.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    slug = _DOT_COLLAPSE.sub(".", slug)
    return slug.strip("-.")
