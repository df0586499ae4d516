"""Tests for the repo content checksum."""

from __future__ import annotations

import hashlib

from starrecall.github.models import StarredRepo
from starrecall.sync.checksum import canonical_checksum_input, repo_checksum, sha256_hex


def _remote(**overrides) -> StarredRepo:
    fields = dict(
        id=7,
        full_name="octo/tool",
        name="tool",
        html_url="https://github.com/octo/tool",
        updated_at="2024-01-01T00:00:00Z",
        description="A tool",
        topics=["zeta", "alpha"],
        language="Rust",
    )
    fields.update(overrides)
    return StarredRepo(**fields)


def test_sha256_hex():
    assert sha256_hex("abc") == hashlib.sha256(b"abc").hexdigest()


def test_canonical_input_layout():
    text = canonical_checksum_input(_remote(), "R")
    assert text.split("\n") == [
        "id:7",
        "full_name:octo/tool",
        "description:A tool",
        "language:Rust",
        "topics:alpha,zeta",
        "updated_at:2024-01-01T00:00:00Z",
        "readme_sha256:R",
    ]


def test_canonical_input_nulls_are_empty():
    text = canonical_checksum_input(_remote(description=None, language=None, topics=[]), "R")
    assert "description:\n" in text
    assert "language:\n" in text
    assert "topics:\n" in text


def test_checksum_is_topic_order_independent():
    assert repo_checksum(_remote(topics=["a", "b"]), "x") == repo_checksum(_remote(topics=["b", "a"]), "x")


def test_checksum_changes_with_readme():
    assert repo_checksum(_remote(), "one") != repo_checksum(_remote(), "two")


def test_missing_readme_hashes_as_empty():
    assert repo_checksum(_remote(), None) == repo_checksum(_remote(), "")
    assert repo_checksum(_remote(), None) == sha256_hex(canonical_checksum_input(_remote(), sha256_hex("")))


def test_checksum_ignores_stars():
    assert repo_checksum(_remote(stars=1), "x") == repo_checksum(_remote(stars=999), "x")
