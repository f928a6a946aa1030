import re
from pathlib import Path

import pytest

from transfer_api.errors import ValidationError
from transfer_api.keys import (
    derive_local_path,
    derive_storage_key,
    generate_transfer_id,
    parse_storage_key,
    sanitize_display_name,
    validate_owner_id,
)


def test_generated_transfer_ids_are_unique_and_well_formed():
    ids = {generate_transfer_id() for _ in range(500)}
    assert len(ids) == 500
    for transfer_id in ids:
        assert re.match(r"^\d{13}-[0-9a-f]{12}$", transfer_id)


@pytest.mark.parametrize("raw, expected", [
    ("photo.jpg", "photo.jpg"),
    ("  holiday photo.jpg  ", "holiday photo.jpg"),
    ("../../etc/passwd", "____etc_passwd"),
    ("...", "_"),
    ("dir/sub\\file.png", "dir_sub_file.png"),
    (".hidden", "hidden"),
    ("a..b.jpg", "a_b.jpg"),
])
def test_sanitize_display_name(raw, expected):
    assert sanitize_display_name(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", ".", "bad\x00name.jpg", "line\nbreak.jpg"])
def test_sanitize_display_name_rejects_unusable_names(raw):
    with pytest.raises(ValidationError):
        sanitize_display_name(raw)


def test_sanitize_display_name_truncates_but_keeps_extension():
    name = "x" * 400 + ".jpeg"
    cleaned = sanitize_display_name(name)
    assert len(cleaned.encode("utf-8")) <= 255
    assert cleaned.endswith(".jpeg")


def test_sanitize_display_name_truncates_multibyte_safely():
    cleaned = sanitize_display_name("é" * 300 + ".jpg")
    assert len(cleaned.encode("utf-8")) <= 255
    assert cleaned.endswith(".jpg")
    cleaned.encode("utf-8").decode("utf-8")


@pytest.mark.parametrize("owner_id", ["", ".", "..", "a/b", "has space"])
def test_validate_owner_id_rejects(owner_id):
    with pytest.raises(ValidationError):
        validate_owner_id(owner_id)


def test_storage_key_round_trip():
    transfer_id = generate_transfer_id()
    key = derive_storage_key("user@example.com", transfer_id, "photo.jpg")
    assert key == f"uploads/user@example.com/{transfer_id}/photo.jpg"
    assert parse_storage_key(key) == ("user@example.com", transfer_id, "photo.jpg")


@pytest.mark.parametrize("key", [
    "photo.jpg",
    "uploads/owner/photo.jpg",
    "other/owner/1700000000000-3f9c2a1b7d4e/photo.jpg",
    "uploads/owner/not-a-transfer-id/photo.jpg",
    "uploads/owner/1700000000000-3f9c2a1b7d4e/.hidden",
    "uploads/../1700000000000-3f9c2a1b7d4e/photo.jpg",
])
def test_parse_storage_key_rejects_foreign_keys(key):
    with pytest.raises(ValidationError):
        parse_storage_key(key)


def test_local_paths_are_distinct_for_same_display_name(tmp_path):
    first = derive_local_path(tmp_path, "owner", "1700000000000-aaaaaaaaaaaa", "photo.jpg")
    second = derive_local_path(tmp_path, "owner", "1700000000001-bbbbbbbbbbbb", "photo.jpg")
    assert first != second
    assert first == Path(tmp_path) / "owner" / "1700000000000-aaaaaaaaaaaa_photo.jpg"
    assert first.parent == second.parent


@pytest.mark.parametrize("stem_length", range(240, 262))
def test_truncated_names_with_dots_parse_back(stem_length):
    transfer_id = generate_transfer_id()
    name = sanitize_display_name("a" * stem_length + "." + "b" * 10 + ".jpg")

    assert sanitize_display_name(name) == name
    assert ".." not in name
    assert len(name.encode("utf-8")) <= 255
    assert name.endswith(".jpg")
    key = derive_storage_key("device-7f3a", transfer_id, name)
    assert parse_storage_key(key) == ("device-7f3a", transfer_id, name)


def test_truncation_at_a_dot_does_not_double_it():
    name = sanitize_display_name("a" * 250 + "." + "b" * 10 + ".jpg")
    assert name == "a" * 250 + ".jpg"
