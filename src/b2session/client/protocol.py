"""Stateless mapping of protocol operations onto HTTP exchanges.

``ProtocolClient`` knows URLs, headers, bodies and response shapes. It keeps
no state between calls: authorizations and upload URLs are passed in by the
session layer, and every failure is raised as a classified exception.
"""

import base64
import logging
import time
from typing import Any, Callable, Optional, Sequence, TypeVar
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from b2session.client import endpoints
from b2session.client.classification import raise_for_response
from b2session.client.endpoints import Operation
from b2session.client.transport import Transport, TransportRequest, TransportResponse
from b2session.core.config import Settings
from b2session.core.exceptions import (
    CredentialsError,
    MissingCapabilityError,
    PermanentError,
    ProtocolViolationError,
)
from b2session.models.authorization import Authorization, AuthorizeAccountResponse
from b2session.models.files import (
    BucketList,
    CancelledFileInfo,
    DeletedFileVersion,
    DownloadedFile,
    FileHeaders,
    FileInfo,
    FileList,
    NewFileInfo,
    NewLargeFileInfo,
    NewPartInfo,
    PartInfo,
    PartList,
    ServerSideEncryption,
    UnfinishedFileList,
)
from b2session.models.upload import UploadUrl, UploadUrlResponse

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ByteRange = tuple[int, Optional[int]]


def _range_header(byte_range: ByteRange) -> str:
    start, end = byte_range
    return f"bytes={start}-" if end is None else f"bytes={start}-{end}"


class ProtocolClient:
    """Client for the native storage API."""

    def __init__(
        self,
        transport: Transport,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the protocol client.

        Args:
            transport: HTTP transport
            settings: Client settings (credentials, API version, timeouts)
            clock: Wall clock used to stamp authorizations
        """
        self._transport = transport
        self._settings = settings
        self._clock = clock

    def _api_url(self, auth: Authorization, operation: Operation) -> str:
        return f"{auth.api.api_url}/{self._settings.api_prefix}/{operation.name}"

    def _check_capability(self, auth: Authorization, operation: Operation) -> None:
        if not auth.allows(operation.capability):
            raise MissingCapabilityError(operation.capability.api_name, operation=operation.name)

    async def _call(self, operation: Operation, request: TransportRequest) -> TransportResponse:
        logger.debug(
            "Calling storage API",
            extra={"operation": operation.name, "method": request.method},
        )
        response = await self._transport.send(request, operation=operation.name)
        raise_for_response(response, operation.failures, operation.name)
        return response

    def _parse(self, operation: Operation, model: type[ModelT], response: TransportResponse) -> ModelT:
        try:
            return model.model_validate_json(response.content)
        except ValidationError as e:
            raise ProtocolViolationError(
                f"Unexpected response shape: {e.error_count()} validation error(s)",
                status=response.status_code,
                operation=operation.name,
            ) from e

    async def _api(
        self,
        auth: Authorization,
        operation: Operation,
        model: type[ModelT],
        *,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ModelT:
        self._check_capability(auth, operation)
        request = TransportRequest(
            method=operation.method,
            url=self._api_url(auth, operation),
            headers={"Authorization": auth.token},
            params=params,
            json=body,
            timeout=timeout if timeout is not None else self._settings.REQUEST_TIMEOUT_SECONDS,
        )
        response = await self._call(operation, request)
        return self._parse(operation, model, response)

    async def authorize_account(self, *, timeout: Optional[float] = None) -> Authorization:
        """Exchange the application key for an account authorization.

        Returns:
            A fresh authorization stamped with the current clock

        Raises:
            CredentialsError: If the key is not configured or was rejected
        """
        operation = endpoints.AUTHORIZE_ACCOUNT
        if not self._settings.has_credentials:
            raise CredentialsError("Application key is not configured", operation=operation.name)

        credentials = f"{self._settings.B2_APPLICATION_KEY_ID}:{self._settings.B2_APPLICATION_KEY}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        request = TransportRequest(
            method=operation.method,
            url=self._settings.authorize_endpoint,
            headers={"Authorization": f"Basic {encoded}"},
            timeout=timeout if timeout is not None else self._settings.REQUEST_TIMEOUT_SECONDS,
        )

        issued_at = self._clock()
        try:
            response = await self._call(operation, request)
        except PermanentError as e:
            if e.status in (401, 403):
                raise CredentialsError(
                    e.message, status=e.status, code=e.code, operation=operation.name
                ) from e
            raise

        payload = self._parse(operation, AuthorizeAccountResponse, response)
        return Authorization.from_response(
            payload, issued_at=issued_at, ttl=self._settings.AUTH_TOKEN_TTL_SECONDS
        )

    async def get_upload_url(
        self, auth: Authorization, bucket_id: str, *, timeout: Optional[float] = None
    ) -> UploadUrl:
        """Obtain an upload URL for whole-file uploads into ``bucket_id``."""
        response = await self._api(
            auth, endpoints.GET_UPLOAD_URL, UploadUrlResponse,
            params={"bucketId": bucket_id}, timeout=timeout,
        )
        return UploadUrl.from_response(bucket_id, response)

    async def get_upload_part_url(
        self, auth: Authorization, file_id: str, *, timeout: Optional[float] = None
    ) -> UploadUrl:
        """Obtain an upload URL for parts of the large file ``file_id``."""
        response = await self._api(
            auth, endpoints.GET_UPLOAD_PART_URL, UploadUrlResponse,
            params={"fileId": file_id}, timeout=timeout,
        )
        return UploadUrl.from_response(file_id, response)

    async def _upload(
        self,
        operation: Operation,
        url: UploadUrl,
        headers: dict[str, str],
        data: bytes,
        timeout: Optional[float],
    ) -> TransportResponse:
        request = TransportRequest(
            method=operation.method,
            url=url.upload_url,
            headers={"Authorization": url.authorization_token, **headers},
            content=data,
            timeout=timeout if timeout is not None else self._settings.UPLOAD_TIMEOUT_SECONDS,
        )
        return await self._call(operation, request)

    async def upload_file(
        self,
        url: UploadUrl,
        info: NewFileInfo,
        data: bytes,
        *,
        timeout: Optional[float] = None,
    ) -> FileInfo:
        """Upload a whole file through ``url``.

        Args:
            url: Leased upload URL for the target bucket
            info: File name, digest and metadata
            data: File content; its length must match ``info.content_length``
            timeout: Request timeout in seconds

        Returns:
            Metadata of the stored file version
        """
        if len(data) != info.content_length:
            raise ValueError("content_length does not match the data")
        operation = endpoints.UPLOAD_FILE
        response = await self._upload(operation, url, info.headers(), data, timeout)
        return self._parse(operation, FileInfo, response)

    async def upload_part(
        self,
        url: UploadUrl,
        info: NewPartInfo,
        data: bytes,
        *,
        timeout: Optional[float] = None,
    ) -> PartInfo:
        """Upload one part of a large file through ``url``."""
        if len(data) != info.content_length:
            raise ValueError("content_length does not match the data")
        operation = endpoints.UPLOAD_PART
        response = await self._upload(operation, url, info.headers(), data, timeout)
        return self._parse(operation, PartInfo, response)

    async def start_large_file(
        self,
        auth: Authorization,
        bucket_id: str,
        info: NewLargeFileInfo,
        *,
        timeout: Optional[float] = None,
    ) -> FileInfo:
        """Start a large file; the returned file id names the session."""
        return await self._api(
            auth, endpoints.START_LARGE_FILE, FileInfo,
            body=info.json_body(bucket_id), timeout=timeout,
        )

    async def finish_large_file(
        self,
        auth: Authorization,
        file_id: str,
        parts: Sequence[tuple[int, str]],
        *,
        timeout: Optional[float] = None,
    ) -> FileInfo:
        """Assemble uploaded parts into the final file.

        Args:
            auth: Account authorization
            file_id: Large file id
            parts: ``(part_number, sha1)`` pairs sorted by part number
            timeout: Request timeout in seconds

        Raises:
            PermanentError: If ``parts`` is empty or not strictly ascending
        """
        operation = endpoints.FINISH_LARGE_FILE
        if not parts:
            raise PermanentError("Cannot finish a large file without parts", operation=operation.name)
        numbers = [number for number, _ in parts]
        if any(a >= b for a, b in zip(numbers, numbers[1:])):
            raise PermanentError("Parts must be sorted by part number", operation=operation.name)
        return await self._api(
            auth, operation, FileInfo,
            body={"fileId": file_id, "partSha1Array": [sha1 for _, sha1 in parts]},
            timeout=timeout,
        )

    async def cancel_large_file(
        self, auth: Authorization, file_id: str, *, timeout: Optional[float] = None
    ) -> CancelledFileInfo:
        """Cancel a large file and discard its parts."""
        return await self._api(
            auth, endpoints.CANCEL_LARGE_FILE, CancelledFileInfo,
            body={"fileId": file_id}, timeout=timeout,
        )

    async def list_parts(
        self,
        auth: Authorization,
        file_id: str,
        *,
        start_part_number: Optional[int] = None,
        max_part_count: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> PartList:
        """List one page of the parts stored for an unfinished large file."""
        body: dict[str, Any] = {"fileId": file_id}
        if start_part_number is not None:
            body["startPartNumber"] = start_part_number
        if max_part_count is not None:
            body["maxPartCount"] = max_part_count
        return await self._api(auth, endpoints.LIST_PARTS, PartList, body=body, timeout=timeout)

    async def list_unfinished_large_files(
        self,
        auth: Authorization,
        bucket_id: str,
        *,
        name_prefix: Optional[str] = None,
        start_file_id: Optional[str] = None,
        max_file_count: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> UnfinishedFileList:
        """List one page of large files that were started but not finished."""
        body: dict[str, Any] = {"bucketId": bucket_id}
        if name_prefix is not None:
            body["namePrefix"] = name_prefix
        if start_file_id is not None:
            body["startFileId"] = start_file_id
        if max_file_count is not None:
            body["maxFileCount"] = max_file_count
        return await self._api(
            auth, endpoints.LIST_UNFINISHED_LARGE_FILES, UnfinishedFileList,
            body=body, timeout=timeout,
        )

    async def get_file_info(
        self, auth: Authorization, file_id: str, *, timeout: Optional[float] = None
    ) -> FileInfo:
        """Fetch metadata of one file version."""
        return await self._api(
            auth, endpoints.GET_FILE_INFO, FileInfo,
            params={"fileId": file_id}, timeout=timeout,
        )

    async def _download(
        self,
        auth: Authorization,
        operation: Operation,
        url: str,
        *,
        params: Optional[dict[str, Any]],
        byte_range: Optional[ByteRange],
        encryption: Optional[ServerSideEncryption],
        timeout: Optional[float],
    ) -> DownloadedFile:
        self._check_capability(auth, operation)
        headers = {"Authorization": auth.token}
        if byte_range is not None:
            headers["Range"] = _range_header(byte_range)
        if encryption is not None:
            headers.update(encryption.download_headers())
        request = TransportRequest(
            method=operation.method,
            url=url,
            headers=headers,
            params=params,
            timeout=timeout if timeout is not None else self._settings.REQUEST_TIMEOUT_SECONDS,
        )
        response = await self._call(operation, request)
        try:
            file_headers = FileHeaders.parse(response.headers)
        except ProtocolViolationError as e:
            e.operation = operation.name
            e.status = response.status_code
            raise
        return DownloadedFile(headers=file_headers, content=response.content)

    async def download_file_by_id(
        self,
        auth: Authorization,
        file_id: str,
        *,
        byte_range: Optional[ByteRange] = None,
        encryption: Optional[ServerSideEncryption] = None,
        timeout: Optional[float] = None,
    ) -> DownloadedFile:
        """Download a file version, or a byte range of it, by id.

        Args:
            auth: Account authorization
            file_id: File version id
            byte_range: Inclusive ``(start, end)`` offsets; ``end`` may be None
            encryption: SSE-C key the file was uploaded with
            timeout: Request timeout in seconds
        """
        operation = endpoints.DOWNLOAD_FILE_BY_ID
        url = f"{auth.api.download_url}/{self._settings.api_prefix}/{operation.name}"
        return await self._download(
            auth, operation, url,
            params={"fileId": file_id}, byte_range=byte_range,
            encryption=encryption, timeout=timeout,
        )

    async def download_file_by_name(
        self,
        auth: Authorization,
        bucket_name: str,
        file_name: str,
        *,
        byte_range: Optional[ByteRange] = None,
        encryption: Optional[ServerSideEncryption] = None,
        timeout: Optional[float] = None,
    ) -> DownloadedFile:
        """Download the latest version of ``file_name`` from ``bucket_name``."""
        url = f"{auth.api.download_url}/file/{quote(bucket_name, safe='')}/{quote(file_name, safe='/')}"
        return await self._download(
            auth, endpoints.DOWNLOAD_FILE_BY_NAME, url,
            params=None, byte_range=byte_range,
            encryption=encryption, timeout=timeout,
        )

    async def list_file_names(
        self,
        auth: Authorization,
        bucket_id: str,
        *,
        start_file_name: Optional[str] = None,
        max_file_count: Optional[int] = None,
        prefix: Optional[str] = None,
        delimiter: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FileList:
        """List one page of file names in a bucket."""
        body: dict[str, Any] = {"bucketId": bucket_id}
        if start_file_name is not None:
            body["startFileName"] = start_file_name
        if max_file_count is not None:
            body["maxFileCount"] = max_file_count
        if prefix is not None:
            body["prefix"] = prefix
        if delimiter is not None:
            body["delimiter"] = delimiter
        return await self._api(auth, endpoints.LIST_FILE_NAMES, FileList, body=body, timeout=timeout)

    async def list_file_versions(
        self,
        auth: Authorization,
        bucket_id: str,
        *,
        start_file_name: Optional[str] = None,
        start_file_id: Optional[str] = None,
        max_file_count: Optional[int] = None,
        prefix: Optional[str] = None,
        delimiter: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FileList:
        """List one page of file versions in a bucket."""
        body: dict[str, Any] = {"bucketId": bucket_id}
        if start_file_name is not None:
            body["startFileName"] = start_file_name
        if start_file_id is not None:
            body["startFileId"] = start_file_id
        if max_file_count is not None:
            body["maxFileCount"] = max_file_count
        if prefix is not None:
            body["prefix"] = prefix
        if delimiter is not None:
            body["delimiter"] = delimiter
        return await self._api(auth, endpoints.LIST_FILE_VERSIONS, FileList, body=body, timeout=timeout)

    async def hide_file(
        self, auth: Authorization, bucket_id: str, file_name: str, *, timeout: Optional[float] = None
    ) -> FileInfo:
        """Hide a file so that listing and download-by-name skip it."""
        return await self._api(
            auth, endpoints.HIDE_FILE, FileInfo,
            body={"bucketId": bucket_id, "fileName": file_name}, timeout=timeout,
        )

    async def delete_file_version(
        self,
        auth: Authorization,
        file_name: str,
        file_id: str,
        *,
        bypass_governance: bool = False,
        timeout: Optional[float] = None,
    ) -> DeletedFileVersion:
        """Delete one file version."""
        body: dict[str, Any] = {"fileName": file_name, "fileId": file_id}
        if bypass_governance:
            body["bypassGovernance"] = True
        return await self._api(
            auth, endpoints.DELETE_FILE_VERSION, DeletedFileVersion, body=body, timeout=timeout
        )

    async def list_buckets(
        self,
        auth: Authorization,
        *,
        bucket_id: Optional[str] = None,
        bucket_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BucketList:
        """List buckets visible to the authorization."""
        body: dict[str, Any] = {"accountId": auth.account_id}
        if bucket_id is not None:
            body["bucketId"] = bucket_id
        if bucket_name is not None:
            body["bucketName"] = bucket_name
        return await self._api(auth, endpoints.LIST_BUCKETS, BucketList, body=body, timeout=timeout)
