# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 Client - signed uploads and downloads over plain HTTP.

Backups are uploaded with the multipart protocol, one 10 MiB part at a time
in increasing order. A session moves IDLE -> INITIATED -> PARTS_UPLOADING ->
COMPLETED; once initiated, any failure aborts the upload so the bucket is not
left holding billed incomplete parts.

Every request is signed on its own with a fresh timestamp and sent on its own
connection; the client keeps no state between calls.
"""

import asyncio
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, UTC
from email.utils import formatdate
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List
from urllib.parse import urlsplit

import aiofiles
import httpx
import structlog

from pbagent.exceptions import AgentError, ProtocolError, S3OperationError, TransportError
from pbagent.storage import sigv4

logger = structlog.get_logger()

# Thread pool for part hashing
_executor = ThreadPoolExecutor(max_workers=1)

PART_SIZE = 10 * 1024 * 1024
MAX_PARTS = 10_000
CONTENT_TYPE = "application/x-compressed-tar"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class UploadState(str, Enum):
    """Multipart upload session state."""

    IDLE = "idle"
    INITIATED = "initiated"
    PARTS_UPLOADING = "parts_uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class UploadedPart:
    part_number: int
    etag: str
    size: int


def get_element_value(document: str, element: str) -> str | None:
    """Text of the first <element> in an XML document, found by string search."""
    start_tag = f"<{element}>"
    start = document.find(start_tag)
    if start == -1:
        return None
    start += len(start_tag)
    end = document.find(f"</{element}>", start)
    if end == -1:
        return None
    return document[start:end]


def complete_upload_body(parts: List[UploadedPart]) -> str:
    """CompleteMultipartUpload XML listing parts in ascending order."""
    entries = "".join(
        f"<Part><PartNumber>{part.part_number}</PartNumber><ETag>{part.etag}</ETag></Part>"
        for part in sorted(parts, key=lambda p: p.part_number)
    )
    return f"<CompleteMultipartUpload>{entries}</CompleteMultipartUpload>"


def count_parts(size: int, part_size: int = PART_SIZE) -> int:
    return max(1, math.ceil(size / part_size))


class S3Client:
    """Signed S3 requests for one bucket."""

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key: str,
        secret_key: str,
        endpoint_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 120.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.bucket = bucket
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self._transport = transport
        self._timeout = httpx.Timeout(timeout, connect=30.0)
        self._clock = clock or (lambda: datetime.now(UTC))

        if self.endpoint_url:
            # Path-style addressing for S3-compatible services
            self.host = urlsplit(self.endpoint_url).netloc
            self._base_url = self.endpoint_url
            self._path_prefix = f"/{bucket}"
        else:
            self.host = f"{bucket}.s3.{region}.amazonaws.com"
            self._base_url = f"https://{self.host}"
            self._path_prefix = ""

    @classmethod
    def from_config(cls, config, transport: httpx.AsyncBaseTransport | None = None) -> "S3Client":
        return cls(
            bucket=config.bucket,
            region=config.region,
            access_key=config.access_key,
            secret_key=config.secret_key,
            endpoint_url=config.endpoint_url,
            transport=transport,
        )

    def object_path(self, key: str) -> str:
        return f"{self._path_prefix}/{sigv4.uri_encode(key, encode_slash=False)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def _prepare(
        self,
        method: str,
        key: str,
        params: Dict[str, str] | None,
        payload_hash: str,
    ) -> tuple:
        path = self.object_path(key)
        query = sigv4.canonical_query(params or {})
        headers = sigv4.sign_headers(
            self.access_key,
            self.secret_key,
            self.region,
            self._clock(),
            method,
            path,
            query,
            self.host,
            payload_hash,
        )
        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{query}"
        return url, headers

    async def request(
        self,
        method: str,
        key: str,
        params: Dict[str, str] | None = None,
        content: bytes = b"",
        payload_hash: str | None = None,
        headers: Dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Send one SigV4-signed request and return the fully read response.

        Raises:
            TransportError: On connection or timeout failures
        """
        if payload_hash is None:
            payload_hash = sigv4.sha256_hex(content)
        url, signed = self._prepare(method, key, params, payload_hash)
        if headers:
            signed.update(headers)
        try:
            async with self._client() as client:
                return await client.request(method, url, content=content, headers=signed)
        except httpx.TransportError as e:
            raise TransportError(
                f"S3 {method} failed: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

    def multipart_upload(self, source: Path | str, key: str | None = None) -> "MultipartUpload":
        source = Path(source)
        return MultipartUpload(self, source, key or source.name)

    async def upload(self, source: Path | str, key: str | None = None) -> bool:
        """
        Upload a file with the multipart protocol.

        Returns:
            True if the upload completed, False otherwise (after aborting)
        """
        return await self.multipart_upload(source, key).run()

    async def put_object_legacy(self, source: Path | str, key: str | None = None) -> bool:
        """
        Upload a small file with one PUT and legacy header auth.
        """
        source = Path(source)
        key = key or source.name
        date = formatdate(self._clock().timestamp(), usegmt=True)
        authorization = sigv4.legacy_authorization(
            self.access_key,
            self.secret_key,
            "PUT",
            CONTENT_TYPE,
            date,
            f"/{self.bucket}/{key}",
        )
        try:
            async with aiofiles.open(source, "rb") as f:
                body = await f.read()
            async with self._client() as client:
                response = await client.put(
                    f"{self._base_url}{self.object_path(key)}",
                    content=body,
                    headers={
                        "Date": date,
                        "Content-Type": CONTENT_TYPE,
                        "Authorization": authorization,
                    },
                )
        except (httpx.TransportError, OSError) as e:
            logger.error("s3_put_failed", key=key, error=str(e))
            return False

        if response.status_code != 200:
            logger.error("s3_put_failed", key=key, status_code=response.status_code)
            return False

        logger.info("s3_put_completed", key=key, size=len(body))
        return True

    async def download(self, key: str, dest: Path | str) -> bool:
        """
        Stream an object to `dest` without buffering it whole.

        Returns:
            True on success; a partial file is removed on failure
        """
        dest = Path(dest)
        url, headers = self._prepare("GET", key, None, sigv4.EMPTY_PAYLOAD_HASH)
        size = 0
        try:
            async with self._client() as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code != 200:
                        logger.error(
                            "s3_download_failed",
                            key=key,
                            status_code=response.status_code,
                        )
                        return False
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    async with aiofiles.open(dest, "wb") as f:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            await f.write(chunk)
                            size += len(chunk)
        except (httpx.TransportError, httpx.StreamError, OSError) as e:
            logger.error("s3_download_failed", key=key, error=str(e))
            dest.unlink(missing_ok=True)
            return False

        logger.info("s3_download_completed", key=key, size=size)
        return True


class MultipartUpload:
    """
    One multipart upload session.

    Parts are numbered contiguously from 1 and uploaded strictly in order.
    """

    def __init__(self, client: S3Client, source: Path, key: str, part_size: int = PART_SIZE):
        self.client = client
        self.source = source
        self.key = key
        self.part_size = part_size
        self.state = UploadState.IDLE
        self.upload_id: str | None = None
        self.parts: List[UploadedPart] = []

    async def initiate(self) -> str:
        """POST ?uploads and record the upload id."""
        self._expect_state(UploadState.IDLE)
        response = await self.client.request(
            "POST", self.key, {"uploads": ""}, headers={"Content-Type": CONTENT_TYPE}
        )
        _expect(response, 200, "initiate multipart upload")

        upload_id = get_element_value(response.text, "UploadId")
        if not upload_id:
            raise S3OperationError(
                "No UploadId in initiate response",
                details={"key": self.key},
            )
        self.upload_id = upload_id
        self.state = UploadState.INITIATED
        logger.info("multipart_upload_initiated", key=self.key, upload_id=upload_id)
        return upload_id

    async def upload_parts(self) -> List[UploadedPart]:
        """PUT every part in increasing order, recording ETags."""
        self._expect_state(UploadState.INITIATED)
        self.state = UploadState.PARTS_UPLOADING
        loop = asyncio.get_running_loop()

        part_number = 0
        async with aiofiles.open(self.source, "rb") as f:
            while True:
                chunk = await f.read(self.part_size)
                if not chunk and part_number > 0:
                    break
                part_number += 1
                if part_number > MAX_PARTS:
                    raise S3OperationError(
                        f"Upload exceeds {MAX_PARTS} parts",
                        details={"key": self.key},
                    )

                payload_hash = await loop.run_in_executor(_executor, sigv4.sha256_hex, chunk)
                response = await self.client.request(
                    "PUT",
                    self.key,
                    {"partNumber": str(part_number), "uploadId": self.upload_id},
                    content=chunk,
                    payload_hash=payload_hash,
                )
                _expect(response, 200, f"upload part {part_number}")

                etag = response.headers.get("ETag")
                if not etag:
                    raise S3OperationError(
                        f"No ETag for part {part_number}",
                        details={"key": self.key, "part_number": part_number},
                    )
                self.parts.append(UploadedPart(part_number, etag, len(chunk)))
                logger.debug(
                    "multipart_part_uploaded",
                    key=self.key,
                    part_number=part_number,
                    size=len(chunk),
                )
                if len(chunk) < self.part_size:
                    break

        return self.parts

    async def complete(self) -> None:
        """POST ?uploadId= with every recorded part."""
        self._expect_state(UploadState.PARTS_UPLOADING)
        body = complete_upload_body(self.parts).encode("utf-8")
        response = await self.client.request(
            "POST",
            self.key,
            {"uploadId": self.upload_id},
            content=body,
            headers={"Content-Type": "application/xml"},
        )
        _expect(response, 200, "complete multipart upload")

        # S3 can report a failed completion inside a 200 response
        if "<Error>" in response.text:
            raise S3OperationError(
                "Complete multipart upload returned an error",
                details={"key": self.key, "code": get_element_value(response.text, "Code")},
            )
        self.state = UploadState.COMPLETED
        logger.info(
            "multipart_upload_completed",
            key=self.key,
            parts=len(self.parts),
        )

    async def abort(self) -> bool:
        """DELETE ?uploadId= so the incomplete upload is discarded."""
        if self.upload_id is None or self.state in (UploadState.COMPLETED, UploadState.ABORTED):
            return False
        try:
            response = await self.client.request(
                "DELETE", self.key, {"uploadId": self.upload_id}
            )
            _expect(response, 204, "abort multipart upload")
        except AgentError as e:
            logger.error("multipart_abort_failed", key=self.key, error=str(e))
            return False
        finally:
            self.state = UploadState.ABORTED
        logger.warning("multipart_upload_aborted", key=self.key, upload_id=self.upload_id)
        return True

    async def run(self) -> bool:
        """Run the whole session. Returns False after aborting on any failure."""
        try:
            size = self.source.stat().st_size
        except OSError as e:
            logger.error("multipart_source_unreadable", source=str(self.source), error=str(e))
            return False

        if count_parts(size, self.part_size) > MAX_PARTS:
            logger.error(
                "multipart_upload_too_large",
                source=str(self.source),
                size=size,
                max_parts=MAX_PARTS,
            )
            return False

        try:
            await self.initiate()
            await self.upload_parts()
            await self.complete()
            return True
        except (AgentError, OSError) as e:
            logger.error(
                "multipart_upload_failed",
                key=self.key,
                state=self.state.value,
                error=str(e),
            )
            await self.abort()
            return False

    def _expect_state(self, state: UploadState) -> None:
        if self.state != state:
            raise S3OperationError(
                f"Invalid upload state {self.state.value}, expected {state.value}",
                details={"key": self.key},
            )


def _expect(response: httpx.Response, status_code: int, action: str) -> None:
    if response.status_code != status_code:
        raise ProtocolError(
            f"Failed to {action}: HTTP {response.status_code}",
            status_code=response.status_code,
            details={"body": response.text[:512]},
        )
