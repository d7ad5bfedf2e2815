import re
from typing import Annotated

from pydantic import AfterValidator, BeforeValidator, Field

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RUN_RE = re.compile(r"\s+")


def _to_single_line_message(v: str) -> str:
    """
    Messages end up as one line each on the terminal (`Warning: ...`, `Error: ...`).
    Runs of whitespace, line breaks included, become a single space. Blank messages become empty.
    """
    if not isinstance(v, str):
        raise TypeError("Expected str")
    return _WHITESPACE_RUN_RE.sub(" ", v).strip()


ReportMessage = Annotated[
    str,
    BeforeValidator(_to_single_line_message),
    Field(min_length=1),
]


def _normalize_document_identity(v: str) -> str:
    """
    Turn a user or host supplied document path into the canonical identity.
    `./notes\\todo.md ` and `notes/todo.md` name the same document, and must map to the same patch.
    """
    if not isinstance(v, str):
        raise ValueError("DocumentIdentity must be a string")
    v = v.strip().replace("\\", "/")
    while v.startswith("./"):
        v = v[2:]
    v = v.lstrip("/")
    # Collapse `a//b` and `a/./b`
    parts = [p for p in v.split("/") if p not in ("", ".")]
    return "/".join(parts)


def _check_document_identity(v: str) -> str:
    if _CONTROL_CHARS_RE.search(v):
        raise ValueError("DocumentIdentity must not contain control characters")
    if ".." in v.split("/"):
        raise ValueError("DocumentIdentity must not point outside of the vault ('..')")
    return v


DocumentIdentity = Annotated[
    str,
    BeforeValidator(_normalize_document_identity),
    Field(min_length=1),
    AfterValidator(_check_document_identity),
]
