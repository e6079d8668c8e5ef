from __future__ import annotations

from typing import Any, Iterable, Mapping

LEVELS = ("branch", "semester", "subject")


def key_of(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def field_of(document: Mapping[str, Any], level: str) -> str:
    # sqlite3.Row has keys() but no get()
    if level not in document.keys():
        return ""
    return key_of(document[level])


def normalize_selection(
    branch: Any = None,
    semester: Any = None,
    subject: Any = None,
) -> dict[str, str]:
    return {
        "branch": key_of(branch),
        "semester": key_of(semester),
        "subject": key_of(subject),
    }


def matches(document: Mapping[str, Any], selection: Mapping[str, Any]) -> bool:
    for level in LEVELS:
        wanted = key_of(selection.get(level))
        if wanted and field_of(document, level) != wanted:
            return False
    return True


def filter_documents(
    documents: Iterable[Mapping[str, Any]],
    branch: Any = None,
    semester: Any = None,
    subject: Any = None,
) -> list[Mapping[str, Any]]:
    selection = normalize_selection(branch, semester, subject)
    return [doc for doc in documents if matches(doc, selection)]


def available_keys(documents: Iterable[Mapping[str, Any]], level: str, **selection: Any) -> list[str]:
    if level not in LEVELS:
        raise ValueError(f"Unknown drill-down level: {level}")

    keys = set()
    for doc in filter_documents(documents, **selection):
        value = field_of(doc, level)
        if value:
            keys.add(value)
    return sorted(keys)


def next_level(selection: Mapping[str, str]) -> str | None:
    for level in LEVELS:
        if not selection.get(level):
            return level
    return None


def breadcrumbs(selection: Mapping[str, str]) -> list[tuple[str, str]]:
    trail: list[tuple[str, str]] = []
    for level in LEVELS:
        value = selection.get(level)
        if not value:
            break
        trail.append((level, value))
    return trail


def drill_down(
    documents: Iterable[Mapping[str, Any]],
    branch: Any = None,
    semester: Any = None,
    subject: Any = None,
) -> dict[str, Any]:
    """Next-level ``options`` for the selection, or the final ``documents`` once all three are chosen."""
    docs = list(documents)
    selection = normalize_selection(branch, semester, subject)
    level = next_level(selection)

    if level is None:
        options: list[str] = []
        final = filter_documents(docs, **selection)
    else:
        options = available_keys(docs, level, **selection)
        final = []

    return {
        "selection": selection,
        "level": level,
        "options": options,
        "documents": final,
        "is_empty": not options and not final,
    }
