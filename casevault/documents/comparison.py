"""
Version comparison: line diffs and similarity scores.

Text content gets a line-oriented diff (difflib opcodes split into added,
removed and modified lines) and a similarity score of

    (len(longer) - levenshtein(a, b)) / len(longer)

over the full text. Binary content only compares checksums: similarity is
1.0 when identical, 0.0 otherwise, with a note about the size change.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/rtf",
    "application/x-yaml",
}

# Above this many DP cells the ratio falls back to difflib's matcher
DEFAULT_MAX_LEVENSHTEIN_CELLS = 4_000_000


def is_text_mime(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    return mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES


@dataclass
class ComparisonOptions:
    ignore_whitespace: bool = False
    ignore_case: bool = False
    max_levenshtein_cells: int = DEFAULT_MAX_LEVENSHTEIN_CELLS


@dataclass
class ComparisonResult:
    version1: int
    version2: int
    is_binary: bool
    similarity: float
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    summary: str = ""
    size_delta: int = 0
    notes: List[str] = field(default_factory=list)

    @property
    def differences(self) -> Dict[str, List[str]]:
        return {"added": self.added, "removed": self.removed, "modified": self.modified}

    @property
    def change_count(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version1": self.version1,
            "version2": self.version2,
            "is_binary": self.is_binary,
            "similarity": round(self.similarity, 6),
            "differences": self.differences,
            "summary": self.summary,
            "size_delta": self.size_delta,
            "notes": self.notes,
        }


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with two rolling rows, O(len(a) * len(b)) time."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i] + [0] * len(b)
        for j, cb in enumerate(b, 1):
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            )
        previous = current
    return previous[-1]


def similarity_ratio(
    a: str,
    b: str,
    max_cells: int = DEFAULT_MAX_LEVENSHTEIN_CELLS,
) -> float:
    """Normalised similarity in [0, 1]; two empty strings are identical."""
    longer = max(len(a), len(b))
    if longer == 0 or a == b:
        return 1.0
    if len(a) * len(b) > max_cells:
        return difflib.SequenceMatcher(None, a, b, autojunk=False).ratio()
    return (longer - levenshtein_distance(a, b)) / longer


def _normalize(line: str, options: ComparisonOptions) -> str:
    if options.ignore_whitespace:
        line = " ".join(line.split())
    if options.ignore_case:
        line = line.lower()
    return line


def diff_lines(
    text1: str,
    text2: str,
    options: Optional[ComparisonOptions] = None,
) -> Tuple[List[str], List[str], List[str]]:
    """
    Return (added, removed, modified) line descriptions.

    A replaced block pairs old and new lines one-to-one as modifications;
    any surplus on either side counts as removed or added.
    """
    options = options or ComparisonOptions()
    lines1 = text1.splitlines()
    lines2 = text2.splitlines()
    matcher = difflib.SequenceMatcher(
        None,
        [_normalize(l, options) for l in lines1],
        [_normalize(l, options) for l in lines2],
        autojunk=False,
    )

    added: List[str] = []
    removed: List[str] = []
    modified: List[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        if tag == "delete":
            removed.extend(f"Line {i + 1}: {lines1[i]}" for i in range(i1, i2))
        elif tag == "insert":
            added.extend(f"Line {j + 1}: {lines2[j]}" for j in range(j1, j2))
        else:
            paired = min(i2 - i1, j2 - j1)
            for k in range(paired):
                modified.append(f"Line {j1 + k + 1}: '{lines1[i1 + k]}' -> '{lines2[j1 + k]}'")
            removed.extend(f"Line {i + 1}: {lines1[i]}" for i in range(i1 + paired, i2))
            added.extend(f"Line {j + 1}: {lines2[j]}" for j in range(j1 + paired, j2))
    return added, removed, modified


def summarize(added: List[str], removed: List[str], modified: List[str]) -> str:
    total = len(added) + len(removed) + len(modified)
    if total == 0:
        return "No differences found"
    return (
        f"{total} changes: {len(added)} lines added, "
        f"{len(removed)} lines removed, {len(modified)} lines modified"
    )


def compare_content(
    data1: bytes,
    data2: bytes,
    mime_type: Optional[str],
    version1: int = 0,
    version2: int = 0,
    checksum1: Optional[str] = None,
    checksum2: Optional[str] = None,
    options: Optional[ComparisonOptions] = None,
) -> ComparisonResult:
    """Compare two payloads of the same document."""
    options = options or ComparisonOptions()
    binary = not is_text_mime(mime_type)
    size_delta = len(data2) - len(data1)

    identical = (checksum1 == checksum2) if (checksum1 and checksum2) else data1 == data2
    if identical:
        return ComparisonResult(
            version1=version1,
            version2=version2,
            is_binary=binary,
            similarity=1.0,
            summary="No differences found",
        )

    if binary:
        sign = "+" if size_delta >= 0 else ""
        return ComparisonResult(
            version1=version1,
            version2=version2,
            is_binary=True,
            similarity=0.0,
            summary="Binary content differs",
            size_delta=size_delta,
            notes=[f"File size changed by {sign}{size_delta} bytes"],
        )

    text1 = data1.decode("utf-8", errors="replace")
    text2 = data2.decode("utf-8", errors="replace")
    added, removed, modified = diff_lines(text1, text2, options)

    norm1 = "\n".join(_normalize(l, options) for l in text1.splitlines())
    norm2 = "\n".join(_normalize(l, options) for l in text2.splitlines())
    similarity = similarity_ratio(norm1, norm2, options.max_levenshtein_cells)

    notes = []
    if len(norm1) * len(norm2) > options.max_levenshtein_cells:
        notes.append("Similarity approximated for large content")

    return ComparisonResult(
        version1=version1,
        version2=version2,
        is_binary=False,
        similarity=similarity,
        added=added,
        removed=removed,
        modified=modified,
        summary=summarize(added, removed, modified),
        size_delta=size_delta,
        notes=notes,
    )
