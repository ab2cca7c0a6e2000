from sitedigest.publish import PageEntry, group_pages_by_path, render_full_archive, render_index


def _page(url, title="", description="", summary="", content=""):
    return PageEntry(url=url, title=title, description=description, summary=summary, content=content)


def test_index_truncates_descriptions():
    index = render_index(
        "docs.example.com",
        [_page("https://docs.example.com/a", title="A", description="word " * 100)],
        "2026-01-01T00:00:00+00:00",
        description_chars=20,
    )
    assert "> word word word wo..." in index
    assert "Generated: 2026-01-01T00:00:00+00:00" in index


def test_index_falls_back_to_url_title_and_default_description():
    index = render_index("docs.example.com", [_page("https://docs.example.com/guide/setup")], "now")
    assert "## setup" in index
    assert "> Content from docs.example.com" in index


def test_index_summaries_can_be_disabled():
    pages = [_page("https://docs.example.com/a", title="A", summary="Short summary.")]
    assert "Short summary." in render_index("docs.example.com", pages, "now")
    assert "Short summary." not in render_index("docs.example.com", pages, "now", include_summaries=False)


def test_pages_group_by_first_path_segment():
    groups = group_pages_by_path(
        [
            _page("https://docs.example.com/"),
            _page("https://docs.example.com/api/users"),
            _page("https://docs.example.com/api/teams"),
            _page("not a url"),
        ]
    )
    assert {name: len(members) for name, members in groups.items()} == {"root": 1, "api": 2, "other": 1}


def test_single_section_archive_has_no_table_of_contents():
    archive = render_full_archive(
        "docs.example.com",
        [_page("https://docs.example.com/api/users", title="Users", description="User API", content="Body")],
        "now",
    )
    assert archive.startswith("# docs.example.com - Complete Documentation")
    assert "## Table of Contents" not in archive
    assert "### Users" in archive
    assert "> User API" in archive
    assert "Source: https://docs.example.com/api/users" in archive
