# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive engine tests.

Archives are forward-only streams: round trips keep content and permission
bits, and a consumed read handle must be reopened.
"""

import io
import tarfile
from pathlib import Path

import pytest

from pbagent.archive import (
    add_directory,
    compression_for,
    create_archive,
    create_from_paths,
    extract_archive,
    extract_entry,
    extract_one,
    list_entries,
    read_entries,
)
from pbagent.exceptions import ArchiveError, NotFoundError

from tests.conftest import random_bytes, snapshot


def make_tree(root: Path) -> Path:
    tree = root / "tree"
    (tree / "nested" / "deeper").mkdir(parents=True)
    (tree / "top.txt").write_text("top level")
    (tree / "nested" / "blob.bin").write_bytes(random_bytes(300_000))
    script = tree / "nested" / "deeper" / "run.sh"
    script.write_text("#!/bin/sh\necho ok\n")
    script.chmod(0o750)
    return tree


# ============================================================================
# Test 1: Round trip keeps bytes and mode bits
# ============================================================================

@pytest.mark.parametrize("name", ["bundle.tar", "bundle.tar.gz", "bundle.tar.zst"])
def test_round_trip_preserves_content_and_mode(temp_dir: Path, name: str):
    """Every compression variant restores identical bytes and permissions."""
    tree = make_tree(temp_dir)
    archive = temp_dir / name

    count = create_from_paths(archive, [(tree, "tree")])
    assert count == 6

    dest = temp_dir / "out"
    extract_archive(archive, dest)

    assert snapshot(dest / "tree") == snapshot(tree)
    restored_script = dest / "tree" / "nested" / "deeper" / "run.sh"
    assert restored_script.stat().st_mode & 0o777 == 0o750


def test_compression_follows_file_name():
    assert compression_for("a.tar.gz") == "gz"
    assert compression_for("a.tgz") == "gz"
    assert compression_for("a.tar.zst") == "zst"
    assert compression_for("a.tar") == "none"


# ============================================================================
# Test 2: Forward-only reads
# ============================================================================

def test_consumed_handle_must_be_reopened(temp_dir: Path):
    """Listing consumes the stream; extracting from the same handle fails."""
    tree = make_tree(temp_dir)
    archive = temp_dir / "bundle.tar.gz"
    create_from_paths(archive, [(tree, "tree")])

    with create_archive(archive, "r") as handle:
        entries = list_entries(handle)
        assert "tree/top.txt" in entries

        with pytest.raises(ArchiveError) as exc_info:
            extract_one(handle, "tree/top.txt", temp_dir / "out")
        assert exc_info.value.code == "ESPIPE"

    # A fresh handle works
    extracted = extract_entry(archive, "tree/top.txt", temp_dir / "out")
    assert extracted.read_text() == "top level"


def test_extract_one_missing_entry(temp_dir: Path):
    tree = make_tree(temp_dir)
    archive = temp_dir / "bundle.tar"
    create_from_paths(archive, [(tree, "tree")])

    with pytest.raises(NotFoundError):
        extract_entry(archive, "tree/missing.txt", temp_dir / "out")


def test_write_operations_need_write_handle(temp_dir: Path):
    tree = make_tree(temp_dir)
    archive = temp_dir / "bundle.tar"
    create_from_paths(archive, [(tree, "tree")])

    with create_archive(archive, "r") as handle:
        with pytest.raises(ArchiveError):
            add_directory(handle, tree)


def test_second_writer_is_refused(temp_dir: Path):
    archive = temp_dir / "bundle.tar.gz"
    with create_archive(archive, "w"):
        with pytest.raises(ArchiveError) as exc_info:
            create_archive(archive, "w")
        assert exc_info.value.code == "EBUSY"

    # Closing releases the path
    with create_archive(archive, "w"):
        pass


def test_missing_archive_reports_errno(temp_dir: Path):
    with pytest.raises(ArchiveError) as exc_info:
        read_entries(temp_dir / "absent.tar.gz")
    assert exc_info.value.code == 2


# ============================================================================
# Test 3: Unsafe member names
# ============================================================================

def test_path_traversal_is_refused(temp_dir: Path):
    """Members escaping the destination are never written."""
    archive = temp_dir / "evil.tar"
    payload = b"owned"
    with tarfile.open(archive, "w") as tar:
        info = tarfile.TarInfo("../escaped.txt")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))

    dest = temp_dir / "out"
    with pytest.raises(ArchiveError) as exc_info:
        extract_archive(archive, dest)

    assert exc_info.value.code == "EPERM"
    assert not (temp_dir / "escaped.txt").exists()
