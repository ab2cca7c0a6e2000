from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit

from .utils import title_from_url


@dataclass(frozen=True)
class PageEntry:
    url: str
    title: str
    description: str
    summary: str
    content: str


def render_index(
    hostname: str,
    pages: Iterable[PageEntry],
    generated_at: str,
    *,
    description_chars: int = 200,
    include_summaries: bool = True,
) -> str:
    """Condensed ``llms.txt``: one entry per changed page."""
    pages = list(pages)
    lines = [
        f"# {hostname}",
        "",
        f"AI-readable content extracted from {hostname}",
        "",
        f"Generated: {generated_at}",
        f"Pages processed: {len(pages)}",
        "",
        "---",
        "",
    ]
    for page in pages:
        title = page.title or title_from_url(page.url)
        description = _truncate(page.description or f"Content from {hostname}", description_chars)
        lines.append(f"## {title}")
        lines.append(f"> {description}")
        lines.append("")
        lines.append(f"URL: {page.url}")
        if include_summaries and page.summary:
            lines.append("")
            lines.append(page.summary.strip())
        lines.append("")
    return "\n".join(lines)


def render_full_archive(
    hostname: str,
    pages: Iterable[PageEntry],
    generated_at: str,
    overview: str | None = None,
) -> str:
    """``llms-full.txt``: every changed page with its full processed text, grouped by section."""
    pages = list(pages)
    overview = overview or f"Comprehensive content archive from {hostname}"
    lines = [
        f"# {hostname} - Complete Documentation",
        "",
        f"> {overview}",
        "",
        f"Generated: {generated_at}",
        "",
        "---",
        "",
    ]
    groups = group_pages_by_path(pages)
    if len(groups) > 1:
        lines.append("## Table of Contents")
        lines.append("")
        for category, members in groups.items():
            lines.append(f"- [{category}](#{_anchor(category)}) ({len(members)} pages)")
        lines.extend(["", "---", ""])
    for category, members in groups.items():
        lines.append(f"## {category}")
        lines.append("")
        for page in members:
            lines.extend(_page_section(page))
    return "\n".join(lines)


def group_pages_by_path(pages: Iterable[PageEntry]) -> dict[str, list[PageEntry]]:
    groups: dict[str, list[PageEntry]] = {}
    for page in pages:
        groups.setdefault(_category_for(page.url), []).append(page)
    return groups


def _category_for(url: str) -> str:
    try:
        split = urlsplit(url)
    except ValueError:
        return "other"
    if not split.scheme or not split.netloc:
        return "other"
    segments = [segment for segment in split.path.split("/") if segment]
    return segments[0] if segments else "root"


def _page_section(page: PageEntry) -> list[str]:
    lines = [f"### {page.title or title_from_url(page.url)}", ""]
    if page.summary:
        lines.extend([page.summary.strip(), ""])
    elif page.description:
        lines.extend([f"> {page.description}", ""])
    lines.extend([f"Source: {page.url}", ""])
    if page.content.strip():
        lines.extend([page.content.strip(), ""])
    lines.extend(["---", ""])
    return lines


def _anchor(category: str) -> str:
    return re.sub(r"\s+", "-", category.lower())


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."
