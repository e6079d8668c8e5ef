import pytest

from drilldown import available_keys, breadcrumbs, drill_down, filter_documents

DOCS = [
    {"id": 1, "branch": "computer-science", "semester": "3", "subject": "Data Structures"},
    {"id": 2, "branch": "computer-science", "semester": "3", "subject": "Discrete Maths"},
    {"id": 3, "branch": "computer-science", "semester": "3", "subject": "Data Structures"},
    {"id": 4, "branch": "computer-science", "semester": "5", "subject": "Operating Systems"},
    {"id": 5, "branch": "ece", "semester": 3, "subject": "Signals"},
    {"id": 6, "branch": "civil-engineering", "semester": "1", "subject": ""},
]


def test_branches_are_distinct_and_sorted():
    assert available_keys(DOCS, "branch") == ["civil-engineering", "computer-science", "ece"]


def test_semesters_under_branch():
    assert available_keys(DOCS, "semester", branch="computer-science") == ["3", "5"]


def test_subjects_have_no_duplicates():
    subjects = available_keys(DOCS, "subject", branch="computer-science", semester="3")
    assert subjects == ["Data Structures", "Discrete Maths"]


def test_number_and_string_keys_compare_equal():
    assert available_keys(DOCS, "subject", branch="ece", semester="3") == ["Signals"]
    assert [d["id"] for d in filter_documents(DOCS, branch="ece", semester=3)] == [5]


def test_branch_without_semesters_yields_empty_list():
    assert available_keys(DOCS, "semester", branch="chemical-engineering") == []


def test_empty_subject_values_are_not_offered():
    assert available_keys(DOCS, "subject", branch="civil-engineering", semester="1") == []


def test_unknown_level_raises():
    with pytest.raises(ValueError):
        available_keys(DOCS, "year")


def test_drill_down_first_level():
    view = drill_down(DOCS)
    assert view["level"] == "branch"
    assert view["options"] == ["civil-engineering", "computer-science", "ece"]
    assert view["documents"] == []
    assert view["is_empty"] is False


def test_drill_down_complete_selection_lists_documents():
    view = drill_down(DOCS, branch="computer-science", semester="3", subject="Data Structures")
    assert view["level"] is None
    assert view["options"] == []
    assert [d["id"] for d in view["documents"]] == [1, 3]


def test_drill_down_empty_branch_is_empty_state():
    view = drill_down(DOCS, branch="chemical-engineering")
    assert view["level"] == "semester"
    assert view["options"] == []
    assert view["is_empty"] is True


def test_options_match_documents_under_selection():
    for branch in available_keys(DOCS, "branch"):
        semesters = available_keys(DOCS, "semester", branch=branch)
        expected = {str(d["semester"]) for d in DOCS if d["branch"] == branch}
        assert set(semesters) == expected
        assert len(semesters) == len(set(semesters))


def test_blank_selection_values_are_ignored():
    view = drill_down(DOCS, branch=" computer-science ", semester="", subject=None)
    assert view["selection"] == {"branch": "computer-science", "semester": "", "subject": ""}
    assert view["level"] == "semester"


def test_breadcrumbs_stop_at_first_gap():
    assert breadcrumbs({"branch": "ece", "semester": "", "subject": "Signals"}) == [("branch", "ece")]
    assert breadcrumbs({"branch": "ece", "semester": "3", "subject": ""}) == [
        ("branch", "ece"),
        ("semester", "3"),
    ]
