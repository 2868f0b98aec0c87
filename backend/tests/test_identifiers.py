# tests/test_identifiers.py — Composite id helpers
import pytest

from errors import DataFormatError
from identifiers import create_id, parse_id, leaf_id, parent_id


def test_create_id_from_segments():
    assert create_id("org", "proj", "master", "elem") == "org:proj:master:elem"


def test_create_id_from_list():
    assert create_id(["org", "proj"]) == "org:proj"


def test_create_id_rejects_non_strings():
    with pytest.raises(DataFormatError):
        create_id("org", 5)


def test_parse_id_returns_ordered_segments():
    assert parse_id("org:proj:master") == ["org", "proj", "master"]


def test_parse_id_rejects_non_string():
    with pytest.raises(DataFormatError):
        parse_id(None)


def test_leaf_and_parent():
    uid = "org:proj:master:model"
    assert leaf_id(uid) == "model"
    assert parent_id(uid) == "org:proj:master"
    assert leaf_id("org") == "org"
