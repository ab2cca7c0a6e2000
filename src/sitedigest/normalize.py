from __future__ import annotations

import re

from bs4 import BeautifulSoup

_HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_NAV_SECTION_RE = re.compile(
    r"#{1,3}\s*(Navigation|Menu|Sidebar|Footer|Header).*?(?=\n#{1,3}\s|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_NOTICE_LINE_RE = re.compile(r".*?(cookie|privacy|gdpr|consent).*?notice.*?\n", re.IGNORECASE)
_EXCESS_BLANKS_RE = re.compile(r"\n{4,}")
_LINKED_PIXEL_RE = re.compile(r"\[!\[\]\([^)]*\)\]\([^)]*\)")
_PIXEL_RE = re.compile(r"!\[\]\([^)]*\)")
_CTA_LINE_RE = re.compile(
    r".*?(Sign up|Subscribe|Newsletter|Get started for free).*?\n", re.IGNORECASE
)

_MAIN_MARKER_RE = re.compile(
    r"^#{1,2}\s*(Introduction|Overview|Getting Started|About|Content|Main|Article)",
    re.IGNORECASE,
)
_NON_CONTENT_RE = re.compile(
    r"^#{1,3}\s*(Navigation|Menu|Sidebar|Footer|Related|Share|Comments|Advertisement)",
    re.IGNORECASE,
)

_METADATA_PATTERNS = [
    re.compile(
        r"^(Author|By|Written by|Published|Updated|Modified|Tags|Categories|Filed under):.*$",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(
        r"^(Last (updated|modified|changed)|Updated on|Modified on):.*$",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(r"^\d+ (min|minute|minutes) read$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^Reading time:.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^Share (on|this):.*$", re.IGNORECASE | re.MULTILINE),
]

MIN_MAIN_CONTENT_LINES = 10


def clean_markdown(markdown: str) -> str:
    cleaned = _HTML_COMMENT_RE.sub("", markdown)
    cleaned = _SCRIPT_RE.sub("", cleaned)
    cleaned = _STYLE_RE.sub("", cleaned)
    cleaned = _NAV_SECTION_RE.sub("", cleaned)
    cleaned = _NOTICE_LINE_RE.sub("", cleaned)
    cleaned = _EXCESS_BLANKS_RE.sub("\n\n\n", cleaned)
    cleaned = _LINKED_PIXEL_RE.sub("", cleaned)
    cleaned = _PIXEL_RE.sub("", cleaned)
    cleaned = _CTA_LINE_RE.sub("", cleaned)
    cleaned = re.sub(r"\*{3,}", "**", cleaned)
    cleaned = re.sub(r"_{3,}", "__", cleaned)
    cleaned = re.sub(r"#{7,}", "######", cleaned)
    return _dedupe_headings(cleaned).strip()


def _dedupe_headings(text: str) -> str:
    seen: set[str] = set()
    lines = []
    for line in text.split("\n"):
        if line.startswith("#"):
            key = line.lower().strip()
            if key in seen:
                continue
            seen.add(key)
        lines.append(line)
    return "\n".join(lines)


def extract_main_content(markdown: str) -> str:
    """Keep the primary content area of a page.

    Lines after an introduction-style heading are kept until a navigation-like
    heading appears; long standalone paragraphs are always kept. When fewer
    than ten lines qualify the whole page is cleaned instead.
    """
    content_lines: list[str] = []
    in_main = False
    depth = 0
    for line in markdown.split("\n"):
        if _MAIN_MARKER_RE.match(line):
            in_main = True
            depth = 0
        if _NON_CONTENT_RE.match(line):
            in_main = False
            continue
        if in_main or depth > 0:
            if len(line.strip()) > 50:
                depth += 1
            content_lines.append(line)
        if not in_main and len(line.strip()) > 100:
            depth += 1
            content_lines.append(line)
    if len(content_lines) < MIN_MAIN_CONTENT_LINES:
        return clean_markdown(markdown)
    return "\n".join(content_lines)


def remove_redundant_metadata(content: str) -> str:
    cleaned = content
    for pattern in _METADATA_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned


def clean_content(markdown: str, *, extract_main: bool = False, remove_metadata: bool = True) -> str:
    cleaned = clean_markdown(markdown)
    if extract_main:
        cleaned = extract_main_content(cleaned)
    if remove_metadata:
        cleaned = remove_redundant_metadata(cleaned)
    return cleaned


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "noscript"]):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    blocks = []
    for element in root.find_all(["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre"]):
        text = element.get_text(" ", strip=True)
        if not text:
            continue
        if element.name and element.name.startswith("h") and len(element.name) == 2:
            text = "#" * int(element.name[1]) + " " + text
        elif element.name == "li":
            text = "- " + text
        blocks.append(text)
    if not blocks:
        return _normalize_text(root.get_text(" ", strip=True))
    return "\n\n".join(blocks)


def looks_like_html(content: str) -> bool:
    head = content.lstrip()[:512].lower()
    return head.startswith("<!doctype html") or head.startswith("<html") or "<body" in head


def extract_title(markdown: str) -> str | None:
    for line in markdown.split("\n"):
        match = re.match(r"^#\s+(.+)$", line.strip())
        if match:
            return match.group(1).strip()
    return None


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
