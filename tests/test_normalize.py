from sitedigest.normalize import (
    clean_content,
    clean_markdown,
    extract_main_content,
    extract_title,
    html_to_text,
    looks_like_html,
    remove_redundant_metadata,
)


def test_clean_markdown_strips_noise():
    markdown = (
        "# Title\n"
        "<!-- hidden -->\n"
        "<script>alert(1)</script>\n"
        "Body text\n"
        "![](https://example.com/pixel.gif)\n"
        "Subscribe to our newsletter today\n"
        "# Title\n"
    )
    cleaned = clean_markdown(markdown)
    assert "hidden" not in cleaned
    assert "alert" not in cleaned
    assert "pixel.gif" not in cleaned
    assert "newsletter" not in cleaned
    assert cleaned.count("# Title") == 1
    assert "Body text" in cleaned


def test_remove_redundant_metadata():
    content = "Author: Jane\nUpdated on: 2024-01-01\n5 min read\nReal content"
    cleaned = remove_redundant_metadata(content)
    assert "Author" not in cleaned
    assert "min read" not in cleaned
    assert "Real content" in cleaned


def test_extract_main_content_falls_back_for_short_pages():
    markdown = "# Overview\nshort page"
    assert extract_main_content(markdown) == clean_markdown(markdown)


def test_extract_main_content_drops_navigation():
    body = "\n".join(f"Line {index} " + "x" * 60 for index in range(12))
    markdown = f"## Introduction\n{body}\n## Navigation\n- Home\n- About"
    extracted = extract_main_content(markdown)
    assert "Line 0" in extracted
    assert "## Navigation" not in extracted


def test_clean_content_flags():
    markdown = "# Doc\nAuthor: Someone\ntext"
    assert "Author" in clean_content(markdown, remove_metadata=False)
    assert "Author" not in clean_content(markdown)


def test_html_to_text_keeps_main_blocks():
    html = (
        "<html><body><nav>menu</nav><main><h1>Guide</h1><p>Hello world</p>"
        "<ul><li>Item</li></ul></main><footer>foot</footer></body></html>"
    )
    assert looks_like_html(html)
    text = html_to_text(html)
    assert "# Guide" in text
    assert "Hello world" in text
    assert "- Item" in text
    assert "menu" not in text
    assert "foot" not in text


def test_extract_title():
    assert extract_title("intro\n# Main Title\n## Sub") == "Main Title"
    assert extract_title("no heading here") is None
