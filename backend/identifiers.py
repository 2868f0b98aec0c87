# identifiers.py — Colon-delimited composite ids (org:project:branch:element)
from typing import List

from errors import DataFormatError

ID_DELIMITER = ":"


def create_id(*segments) -> str:
    """Join id segments with the delimiter.

    Accepts either any number of strings or a single list of strings:
        create_id("org", "proj")      -> "org:proj"
        create_id(["org", "proj"])    -> "org:proj"
    """
    if len(segments) == 1 and isinstance(segments[0], (list, tuple)):
        segments = tuple(segments[0])

    for segment in segments:
        if not isinstance(segment, str):
            raise DataFormatError("Argument is not a string.", "warn")

    return ID_DELIMITER.join(segments)


def parse_id(uid: str) -> List[str]:
    """Split a composite id into its ordered segments; the last is the leaf."""
    if not isinstance(uid, str):
        raise DataFormatError("Invalid UID.", "warn")
    return uid.split(ID_DELIMITER)


def leaf_id(uid: str) -> str:
    return parse_id(uid)[-1]


def parent_id(uid: str) -> str:
    """Composite id of the owning scope, e.g. 'org:proj:master' for an element."""
    return ID_DELIMITER.join(parse_id(uid)[:-1])
