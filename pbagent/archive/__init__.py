# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive module - forward-only tar archives with gzip/zstd filters.
"""

from pbagent.archive.engine import (
    CHUNK_SIZE,
    ArchiveHandle,
    add_directory,
    add_entry,
    close_archive,
    compression_for,
    create_archive,
    create_from_paths,
    extract_all,
    extract_archive,
    extract_entry,
    extract_one,
    list_entries,
    read_entries,
    run_blocking,
)

__all__ = [
    "CHUNK_SIZE",
    "ArchiveHandle",
    "add_directory",
    "add_entry",
    "close_archive",
    "compression_for",
    "create_archive",
    "create_from_paths",
    "extract_all",
    "extract_archive",
    "extract_entry",
    "extract_one",
    "list_entries",
    "read_entries",
    "run_blocking",
]
