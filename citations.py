"""Citation markers in generated answers.

The generator is asked to cite the records it was given as [1], [2], ...
This module finds those markers, checks them against the number of records
that were actually offered (N), and can strip the ones pointing nowhere.
Positions are 1-based: [k] refers to the k-th record in the prompt.
"""
from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from typing import List

MARKER_RE = re.compile(r"\[([0-9]+)\]")
# longer digit runs are out of range for any record count; int() would refuse them
MAX_MARKER_DIGITS = 18
_HSPACE_RE = re.compile(r"[^\S\n]+")


# ---------------------------
# Data structures
# ---------------------------

@dataclass(frozen=True)
class CitationMarker:
    value: int
    offset: int
    text: str


@dataclass
class Classification:
    valid: List[CitationMarker] = field(default_factory=list)
    invalid: List[CitationMarker] = field(default_factory=list)


@dataclass
class ValidationReport:
    total: int
    valid_count: int
    invalid_count: int
    invalid_values: List[int]
    valid_ids: List[int]
    cleaned_text: str

    @property
    def has_out_of_range_references(self) -> bool:
        return self.invalid_count > 0

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "valid": self.valid_count,
            "invalid": self.invalid_count,
            "invalidValues": self.invalid_values,
            "validIds": self.valid_ids,
            "hasOutOfRangeReferences": self.has_out_of_range_references,
        }


# ---------------------------
# Argument checks
# ---------------------------

def _check_text(text: object) -> None:
    if not isinstance(text, str):
        raise TypeError(f"text must be a str, got {type(text).__name__}")


def _check_bound(upper_bound: object) -> None:
    # bool is an int subclass; True is not a record count
    if isinstance(upper_bound, bool) or not isinstance(upper_bound, int):
        raise TypeError(f"upper_bound must be an int, got {type(upper_bound).__name__}")
    if upper_bound <= 0:
        raise ValueError(f"upper_bound must be positive, got {upper_bound}")


# ---------------------------
# Operations
# ---------------------------

def _marker_value(digits: str) -> int:
    significant = digits.lstrip("0") or "0"
    if len(significant) > MAX_MARKER_DIGITS:
        return sys.maxsize
    return int(significant)


def extract_markers(text: str) -> List[CitationMarker]:
    """All [digits] markers in text order, duplicates included."""
    _check_text(text)
    return [
        CitationMarker(value=_marker_value(m.group(1)), offset=m.start(), text=m.group(0))
        for m in MARKER_RE.finditer(text)
    ]


def is_in_range(n: int, upper_bound: int) -> bool:
    return 1 <= n <= upper_bound


def classify(text: str, upper_bound: int) -> Classification:
    _check_text(text)
    _check_bound(upper_bound)
    result = Classification()
    for marker in extract_markers(text):
        if is_in_range(marker.value, upper_bound):
            result.valid.append(marker)
        else:
            result.invalid.append(marker)
    return result


def _remove_markers(text: str, markers: List[CitationMarker]) -> str:
    out = text
    # right to left so earlier offsets stay put
    for marker in sorted(markers, key=lambda m: m.offset, reverse=True):
        out = out[: marker.offset] + out[marker.offset + len(marker.text):]
    lines = [_HSPACE_RE.sub(" ", line).strip(" ") for line in out.split("\n")]
    return "\n".join(lines).strip()


def strip_invalid(text: str, upper_bound: int) -> str:
    """Remove out-of-range markers and tidy the whitespace they leave behind.

    Whitespace runs inside a line collapse to one space; line breaks are kept
    so paragraph structure of the answer survives. Text without any invalid
    marker is returned untouched.
    """
    invalid = classify(text, upper_bound).invalid
    if not invalid:
        return text
    return _remove_markers(text, invalid)


def distinct_valid_ids(text: str, upper_bound: int) -> List[int]:
    return sorted({m.value for m in classify(text, upper_bound).valid})


def report(text: str, upper_bound: int) -> ValidationReport:
    parts = classify(text, upper_bound)
    cleaned = _remove_markers(text, parts.invalid) if parts.invalid else text
    return ValidationReport(
        total=len(parts.valid) + len(parts.invalid),
        valid_count=len(parts.valid),
        invalid_count=len(parts.invalid),
        invalid_values=sorted({m.value for m in parts.invalid}),
        valid_ids=sorted({m.value for m in parts.valid}),
        cleaned_text=cleaned,
    )
