# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Request signing for S3-compatible object storage.

Implements AWS Signature Version 4 with the fixed signed-header set
host;x-amz-content-sha256;x-amz-date, plus the legacy HMAC-SHA1 header form
used for small single-PUT uploads. Every function is pure: the same inputs
always give the same output, timestamps are passed in by the caller.
"""

import base64
import hashlib
import hmac
from datetime import datetime
from typing import Dict
from urllib.parse import quote

ALGORITHM = "AWS4-HMAC-SHA256"
SIGNED_HEADERS = "host;x-amz-content-sha256;x-amz-date"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def amz_date(now: datetime) -> str:
    """ISO 8601 basic timestamp, e.g. 20240101T000000Z."""
    return now.strftime("%Y%m%dT%H%M%SZ")


def datestamp(now: datetime) -> str:
    return now.strftime("%Y%m%d")


def credential_scope(date: str, region: str, service: str = "s3") -> str:
    return f"{date}/{region}/{service}/aws4_request"


def signing_key(secret_key: str, date: str, region: str, service: str = "s3") -> bytes:
    """Derive the signing key: HMAC chain date -> region -> service -> aws4_request."""
    k_date = _hmac_sha256(f"AWS4{secret_key}".encode("utf-8"), date)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """Percent-encode everything except unreserved characters."""
    return quote(value, safe="-_.~" if encode_slash else "-_.~/")


def canonical_query(params: Dict[str, str]) -> str:
    """Sorted, encoded query string. Valueless keys render as `key=`."""
    return "&".join(
        f"{uri_encode(key)}={uri_encode(str(value))}"
        for key, value in sorted(params.items())
    )


def canonical_request(
    method: str,
    path: str,
    query: str,
    host: str,
    payload_hash: str,
    timestamp: str,
) -> str:
    """
    Build the canonical request string.

    Args:
        method: HTTP method
        path: Already-encoded absolute path
        query: Already-canonical query string (see canonical_query)
        host: Host header value
        payload_hash: Hex sha256 of the request body
        timestamp: x-amz-date value
    """
    canonical_headers = (
        f"host:{host}\n"
        f"x-amz-content-sha256:{payload_hash}\n"
        f"x-amz-date:{timestamp}\n"
    )
    return "\n".join(
        [method, path, query, canonical_headers, SIGNED_HEADERS, payload_hash]
    )


def string_to_sign(timestamp: str, scope: str, canonical: str) -> str:
    return "\n".join(
        [ALGORITHM, timestamp, scope, sha256_hex(canonical.encode("utf-8"))]
    )


def authorization_header(
    access_key: str,
    secret_key: str,
    region: str,
    now: datetime,
    method: str,
    path: str,
    query: str,
    host: str,
    payload_hash: str,
    service: str = "s3",
) -> str:
    """
    Compute the SigV4 Authorization header value for one request.

    Returns:
        "AWS4-HMAC-SHA256 Credential=..., SignedHeaders=..., Signature=..."
    """
    timestamp = amz_date(now)
    date = datestamp(now)
    scope = credential_scope(date, region, service)
    canonical = canonical_request(method, path, query, host, payload_hash, timestamp)
    to_sign = string_to_sign(timestamp, scope, canonical)
    signature = hmac.new(
        signing_key(secret_key, date, region, service),
        to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return (
        f"{ALGORITHM} Credential={access_key}/{scope}, "
        f"SignedHeaders={SIGNED_HEADERS}, Signature={signature}"
    )


def sign_headers(
    access_key: str,
    secret_key: str,
    region: str,
    now: datetime,
    method: str,
    path: str,
    query: str,
    host: str,
    payload_hash: str,
) -> Dict[str, str]:
    """Headers carrying a SigV4 signature for one request."""
    return {
        "Host": host,
        "x-amz-date": amz_date(now),
        "x-amz-content-sha256": payload_hash,
        "Authorization": authorization_header(
            access_key, secret_key, region, now, method, path, query, host, payload_hash
        ),
    }


def legacy_authorization(
    access_key: str,
    secret_key: str,
    method: str,
    content_type: str,
    date: str,
    resource: str,
) -> str:
    """
    Legacy header auth: `AWS {key}:{base64(HMAC-SHA1(string_to_sign))}`.

    Args:
        date: RFC 1123 date sent in the Date header
        resource: "/{bucket}/{key}"
    """
    to_sign = f"{method}\n\n{content_type}\n{date}\n{resource}"
    digest = hmac.new(
        secret_key.encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha1
    ).digest()
    return f"AWS {access_key}:{base64.b64encode(digest).decode('ascii')}"
