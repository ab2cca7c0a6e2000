from sitedigest.diff import (
    NEW_PAGE_REASON,
    PREVIOUS_UNAVAILABLE_REASON,
    UNCHANGED_REASON,
    content_diff,
    evaluate_change,
    fingerprint,
    has_changed_enough,
    similarity,
)


def test_fingerprint_ignores_case_and_whitespace():
    assert fingerprint("Hello   World\r\n") == fingerprint("hello world")
    assert fingerprint("hello world") != fingerprint("hello there")


def test_similarity_bounds():
    assert similarity("same text", "same text") == 1.0
    assert similarity("", "something") == 0.0
    score = similarity("alpha beta gamma", "alpha beta delta")
    assert 0.0 < score < 1.0


def test_has_changed_enough_reasons():
    changed, reason = has_changed_enough(0.5, 0.95)
    assert changed is True
    assert reason == "Content changed by 50%"
    changed, reason = has_changed_enough(0.97, 0.95)
    assert changed is False
    assert reason == "Content similarity 97% (above 95% threshold)"


def test_first_crawl_is_new_page():
    verdict = evaluate_change("# Page\n\nbody", None)
    assert verdict.changed_enough is True
    assert verdict.prev_fingerprint is None
    assert verdict.reason == NEW_PAGE_REASON


def test_identical_content_is_unchanged_without_loading_previous():
    content = "# Page\n\nsame body"

    def load_previous():
        raise AssertionError("previous content should not be loaded")

    verdict = evaluate_change(content, fingerprint(content), load_previous)
    assert verdict.changed_enough is False
    assert verdict.similarity == 1.0
    assert verdict.reason == UNCHANGED_REASON


def test_changed_content_records_line_stats():
    old = "# Page\n\nfirst line\nsecond line"
    new = "# Page\n\nfirst line\ncompletely different replacement text here"
    verdict = evaluate_change(new, fingerprint(old), lambda: old, 0.95)
    assert verdict.changed_enough is True
    assert verdict.lines_added == 1
    assert verdict.lines_removed == 1
    assert verdict.reason.startswith("Content changed by")


def test_unavailable_previous_is_treated_as_changed():
    verdict = evaluate_change("new body", fingerprint("old body"), lambda: None)
    assert verdict.changed_enough is True
    assert verdict.reason == PREVIOUS_UNAVAILABLE_REASON


def test_content_diff_counts():
    stats = content_diff("a\nb\nc", "a\nc\nd")
    assert stats.has_changes is True
    assert stats.additions == 1
    assert stats.deletions == 1
    assert "+ d" in stats.diff_text
    assert content_diff("same", "same").has_changes is False
