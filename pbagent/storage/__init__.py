# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage module - S3-compatible object storage client and request signer.
"""

from pbagent.storage.s3 import (
    MAX_PARTS,
    PART_SIZE,
    MultipartUpload,
    S3Client,
    UploadState,
    UploadedPart,
    complete_upload_body,
    get_element_value,
)

__all__ = [
    "MAX_PARTS",
    "PART_SIZE",
    "MultipartUpload",
    "S3Client",
    "UploadState",
    "UploadedPart",
    "complete_upload_body",
    "get_element_value",
]
