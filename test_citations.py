import pytest

import citations

SAMPLE = "Answer [1] and also [2][2] but see [9]."


def test_extract_markers_keeps_order_offsets_and_duplicates():
    markers = citations.extract_markers(SAMPLE)
    assert [m.value for m in markers] == [1, 2, 2, 9]
    assert [m.text for m in markers] == ["[1]", "[2]", "[2]", "[9]"]
    for m in markers:
        assert SAMPLE[m.offset:m.offset + len(m.text)] == m.text


def test_classify_partitions_markers():
    parts = citations.classify(SAMPLE, 3)
    assert [m.value for m in parts.valid] == [1, 2, 2]
    assert [m.value for m in parts.invalid] == [9]
    assert sorted(parts.valid + parts.invalid, key=lambda m: m.offset) == citations.extract_markers(SAMPLE)


def test_zero_is_out_of_range():
    parts = citations.classify("see [0] and [3]", 3)
    assert [m.value for m in parts.invalid] == [0]
    assert [m.value for m in parts.valid] == [3]


def test_strip_invalid_removes_marker_and_double_space():
    out = citations.strip_invalid("First [7] claim and [1] second.", 3)
    assert "[7]" not in out
    assert "  " not in out
    assert out == "First claim and [1] second."


def test_strip_invalid_on_sample():
    out = citations.strip_invalid(SAMPLE, 3)
    assert "[9]" not in out
    assert "[1]" in out and out.count("[2]") == 2


def test_strip_invalid_keeps_line_breaks():
    out = citations.strip_invalid("Line one [5]\n\nLine two [1]", 2)
    assert out == "Line one\n\nLine two [1]"


def test_text_with_only_valid_markers_is_unchanged():
    text = "Both  [1] and [3]\nare cited. "
    assert citations.strip_invalid(text, 3) == text
    assert citations.report(text, 3).cleaned_text == text


def test_no_citations():
    text = "No citations here."
    parts = citations.classify(text, 5)
    assert parts.valid == [] and parts.invalid == []
    assert citations.strip_invalid(text, 5) == text


def test_distinct_valid_ids_sorted_and_bounded():
    assert citations.distinct_valid_ids(SAMPLE, 3) == [1, 2]
    ids = citations.distinct_valid_ids("[4] [2] [4] [1] [30] [2]", 4)
    assert ids == [1, 2, 4]


def test_report():
    rep = citations.report(SAMPLE, 3)
    assert rep.total == 4
    assert rep.valid_count == 3
    assert rep.invalid_count == 1
    assert rep.invalid_values == [9]
    assert rep.valid_ids == [1, 2]
    assert rep.has_out_of_range_references
    assert "[9]" not in rep.cleaned_text
    assert rep.as_dict()["hasOutOfRangeReferences"] is True


def test_report_without_invalid_markers():
    rep = citations.report("Only [1].", 1)
    assert not rep.has_out_of_range_references
    assert rep.cleaned_text == "Only [1]."


def test_non_ascii_digits_are_not_markers():
    assert citations.extract_markers("[١]") == []


@pytest.mark.parametrize("bad", [None, 12, b"[1]"])
def test_rejects_non_string_text(bad):
    with pytest.raises(TypeError):
        citations.extract_markers(bad)


@pytest.mark.parametrize("bound", [0, -3])
def test_rejects_non_positive_bound(bound):
    with pytest.raises(ValueError):
        citations.classify("[1]", bound)


@pytest.mark.parametrize("bound", [2.0, "3", True])
def test_rejects_non_int_bound(bound):
    with pytest.raises(TypeError):
        citations.report("[1]", bound)


def test_is_in_range():
    assert citations.is_in_range(1, 1)
    assert not citations.is_in_range(0, 5)
    assert not citations.is_in_range(6, 5)


def test_very_long_digit_run_is_out_of_range():
    text = "See [" + "1" * 5000 + "] and [1]."
    rep = citations.report(text, 3)
    assert rep.total == 2
    assert rep.valid_ids == [1]
    assert rep.invalid_count == 1
    assert rep.cleaned_text == "See and [1]."


def test_leading_zeros_do_not_count_toward_length():
    markers = citations.extract_markers("[" + "0" * 5000 + "2]")
    assert [m.value for m in markers] == [2]
    assert citations.distinct_valid_ids("[" + "0" * 5000 + "2]", 3) == [2]


@pytest.mark.parametrize("text", [
    "[" + "9" * 19 + "]",
    "[" + "9" * 4301 + "][1]",
    "[[1]]" + "[" * 50,
    "[]" + "]" * 10,
    "\n\n[7]\t\t[2]\n",
])
def test_report_never_raises_on_odd_text(text):
    rep = citations.report(text, 2)
    assert rep.valid_count + rep.invalid_count == rep.total
    assert "[7]" not in rep.cleaned_text
