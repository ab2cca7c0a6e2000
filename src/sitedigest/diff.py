from __future__ import annotations

import difflib
import hashlib
import math
import re
from dataclasses import dataclass
from typing import Callable

DEFAULT_SIMILARITY_THRESHOLD = 0.95

NEW_PAGE_REASON = "New page - first time crawled"
UNCHANGED_REASON = "Content unchanged - identical fingerprint"
PREVIOUS_UNAVAILABLE_REASON = "Previous content unavailable - treated as changed"


@dataclass(frozen=True)
class ChangeVerdict:
    fingerprint: str
    prev_fingerprint: str | None
    similarity: float
    changed_enough: bool
    reason: str
    lines_added: int = 0
    lines_removed: int = 0


@dataclass(frozen=True)
class ContentDiff:
    has_changes: bool
    additions: int
    deletions: int
    change_percentage: float
    diff_text: str


def normalize_content(content: str) -> str:
    text = content.lower().replace("\r\n", "\n")
    return re.sub(r"\s+", " ", text).strip()


def fingerprint(content: str) -> str:
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def similarity(first: str, second: str) -> float:
    """Score in [0, 1]: 0.3 * length ratio + 0.7 * token Jaccard index."""
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    norm_first = normalize_content(first)
    norm_second = normalize_content(second)
    if not norm_first or not norm_second:
        return 1.0 if norm_first == norm_second else 0.0
    longest = max(len(norm_first), len(norm_second))
    length_similarity = 1 - abs(len(norm_first) - len(norm_second)) / longest
    tokens_first = set(norm_first.split(" "))
    tokens_second = set(norm_second.split(" "))
    union = tokens_first | tokens_second
    jaccard = len(tokens_first & tokens_second) / len(union)
    return length_similarity * 0.3 + jaccard * 0.7


def has_changed_enough(
    score: float, threshold: float = DEFAULT_SIMILARITY_THRESHOLD
) -> tuple[bool, str]:
    if score < threshold:
        return True, f"Content changed by {_percent(1 - score)}%"
    return (
        False,
        f"Content similarity {_percent(score)}% (above {_percent(threshold)}% threshold)",
    )


def evaluate_change(
    content: str,
    previous_fingerprint: str | None,
    load_previous: Callable[[], str | None] | None = None,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> ChangeVerdict:
    """Decide whether cleaned ``content`` differs enough from the prior version.

    ``previous_fingerprint`` is None when the page was never crawled before.
    ``load_previous`` fetches the prior processed text lazily; it is only
    called when the fingerprints differ. If it fails or returns None the page
    is treated as changed.
    """
    current = fingerprint(content)
    if previous_fingerprint is None:
        return ChangeVerdict(current, None, 0.0, True, NEW_PAGE_REASON)
    if current == previous_fingerprint:
        return ChangeVerdict(current, previous_fingerprint, 1.0, False, UNCHANGED_REASON)
    previous = None
    if load_previous is not None:
        try:
            previous = load_previous()
        except (OSError, ValueError):
            previous = None
    if previous is None:
        return ChangeVerdict(
            current, previous_fingerprint, 0.0, True, PREVIOUS_UNAVAILABLE_REASON
        )
    score = similarity(content, previous)
    changed, reason = has_changed_enough(score, threshold)
    stats = content_diff(previous, content)
    return ChangeVerdict(
        current,
        previous_fingerprint,
        score,
        changed,
        reason,
        lines_added=stats.additions,
        lines_removed=stats.deletions,
    )


def content_diff(old: str, new: str) -> ContentDiff:
    old_lines = _normalize_for_diff(old).splitlines()
    new_lines = _normalize_for_diff(new).splitlines()
    additions = 0
    deletions = 0
    unchanged = 0
    out: list[str] = []
    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            unchanged += i2 - i1
            out.extend(f"  {line}" for line in old_lines[i1:i2])
            continue
        if tag in ("replace", "delete"):
            deletions += i2 - i1
            out.extend(f"- {line}" for line in old_lines[i1:i2])
        if tag in ("replace", "insert"):
            additions += j2 - j1
            out.extend(f"+ {line}" for line in new_lines[j1:j2])
    total = additions + deletions + unchanged
    percentage = (additions + deletions) / total * 100 if total else 0.0
    return ContentDiff(
        has_changes=bool(additions or deletions),
        additions=additions,
        deletions=deletions,
        change_percentage=percentage,
        diff_text="\n".join(out),
    )


def _normalize_for_diff(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\t", "  ").strip()


def _percent(value: float) -> int:
    return int(math.floor(value * 100 + 0.5))
