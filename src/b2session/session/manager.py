"""Session facade tying the client components together."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping, Optional

import httpx

from b2session.client import endpoints
from b2session.client.protocol import ByteRange, ProtocolClient
from b2session.client.transport import Transport
from b2session.core.config import Settings, settings as default_settings
from b2session.core.digest import DigestProvider, sha1_hex
from b2session.core.exceptions import MissingBucketIdError
from b2session.core.logging import bucket_id_context
from b2session.models.authorization import Authorization
from b2session.models.files import (
    DEFAULT_CONTENT_TYPE,
    BucketList,
    DeletedFileVersion,
    DownloadedFile,
    FileInfo,
    FileList,
    FileRetention,
    NewFileInfo,
    NewLargeFileInfo,
    PartList,
    ServerSideEncryption,
    UnfinishedFileList,
)
from b2session.models.upload import UploadUrl
from b2session.session.auth_cache import AuthorizationCache
from b2session.session.large_file import LargeFileSession
from b2session.session.resilience import ResiliencePolicy
from b2session.session.upload_pool import UploadUrlPool

logger = logging.getLogger(__name__)


class B2Session:
    """Client session for one application key.

    Owns the HTTP transport, the authorization cache, the resilience policy
    and the bucket-level upload URL pool. Every operation below runs under
    the resilience policy.

    Example::

        async with B2Session() as session:
            info = await session.upload_bytes(b"hello", "greeting.txt")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        digest: DigestProvider = sha1_hex,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the session.

        Args:
            settings: Client settings; the module singleton when omitted
            http_client: httpx client to send requests with
            digest: Digest provider for upload SHA-1s
            clock: Wall clock for authorization expiry
            monotonic: Monotonic clock for circuit breakers
            sleep: Coroutine used for backoff waits
        """
        self.settings = settings or default_settings
        self._digest = digest
        self.transport = Transport(
            http_client,
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
            user_agent=self.settings.B2_USER_AGENT,
        )
        self.client = ProtocolClient(self.transport, self.settings, clock=clock)
        self.policy = ResiliencePolicy.from_settings(
            self.settings, None, clock=monotonic, sleep=sleep
        )
        self.auth_cache = AuthorizationCache(
            self._authorize,
            clock=clock,
            refresh_margin=self.settings.AUTH_REFRESH_MARGIN_SECONDS,
        )
        self.policy.bind(self.auth_cache)
        self.upload_urls = UploadUrlPool(
            self._fetch_upload_url,
            max_per_key=self.settings.UPLOAD_URL_POOL_MAX_PER_BUCKET,
            pooling=self.settings.UPLOAD_URL_POOL_ENABLED,
        )

    async def __aenter__(self) -> "B2Session":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release the HTTP transport."""
        await self.transport.aclose()

    async def _authorize(self) -> Authorization:
        return await self.policy.execute(
            endpoints.AUTHORIZE_ACCOUNT,
            lambda _: self.client.authorize_account(),
        )

    async def _fetch_upload_url(self, bucket_id: str) -> UploadUrl:
        return await self.policy.execute(
            endpoints.GET_UPLOAD_URL,
            lambda auth: self.client.get_upload_url(auth, bucket_id),
        )

    async def authorization(self) -> Authorization:
        """Return a valid account authorization."""
        return await self.auth_cache.get_valid()

    async def _bucket_id(self, bucket_id: Optional[str]) -> str:
        if bucket_id:
            return bucket_id
        auth = await self.auth_cache.get_valid()
        if auth.default_bucket_id:
            return auth.default_bucket_id
        raise MissingBucketIdError()

    async def upload_bytes(
        self,
        data: bytes,
        file_name: str,
        *,
        bucket_id: Optional[str] = None,
        content_type: str = DEFAULT_CONTENT_TYPE,
        file_info: Optional[Mapping[str, str]] = None,
        encryption: Optional[ServerSideEncryption] = None,
        retention: Optional[FileRetention] = None,
        legal_hold: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> FileInfo:
        """Upload ``data`` as a single file.

        Args:
            data: File content
            file_name: Name of the file in the bucket
            bucket_id: Target bucket; defaults to the key's restricted bucket
            content_type: MIME type, or ``b2/x-auto``
            file_info: Custom ``X-Bz-Info-*`` metadata
            encryption: Server-side encryption settings
            retention: Object lock retention
            legal_hold: Object lock legal hold
            timeout: Request timeout in seconds

        Returns:
            Metadata of the stored file version

        Raises:
            MissingBucketIdError: If no bucket can be determined
            B2SessionError: If the upload failed after retries
        """
        bucket = await self._bucket_id(bucket_id)
        info = NewFileInfo(
            file_name=file_name,
            content_length=len(data),
            content_sha1=await asyncio.to_thread(self._digest, data),
            content_type=content_type,
            file_info=dict(file_info or {}),
            encryption=encryption,
            retention=retention,
            legal_hold=legal_hold,
        )

        async def attempt(auth):
            async with self.upload_urls.lease(bucket) as url:
                return await self.client.upload_file(url, info, data, timeout=timeout)

        token = bucket_id_context.set(bucket)
        try:
            file = await self.policy.execute(endpoints.UPLOAD_FILE, attempt)
        finally:
            bucket_id_context.reset(token)
        logger.info(
            "File uploaded",
            extra={"bucket_id": bucket, "file_id": file.file_id, "size_bytes": len(data)},
        )
        return file

    async def start_large_file(
        self,
        file_name: str,
        *,
        bucket_id: Optional[str] = None,
        content_type: str = DEFAULT_CONTENT_TYPE,
        file_info: Optional[Mapping[str, str]] = None,
        encryption: Optional[ServerSideEncryption] = None,
        retention: Optional[FileRetention] = None,
        legal_hold: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> LargeFileSession:
        """Start a large file and return its open session.

        ``timeout`` applies to the start call. Part uploads default to
        ``UPLOAD_TIMEOUT_SECONDS``.
        """
        bucket = await self._bucket_id(bucket_id)
        info = NewLargeFileInfo(
            file_name=file_name,
            content_type=content_type,
            file_info=dict(file_info or {}),
            encryption=encryption,
            retention=retention,
            legal_hold=legal_hold,
        )
        return await LargeFileSession.start(
            self.client,
            self.policy,
            bucket,
            info,
            request_timeout=timeout,
            digest=self._digest,
            verify_parts=self.settings.VERIFY_FINISHED_PARTS,
            max_part_urls=self.settings.PART_URL_POOL_MAX_PER_FILE,
            pooling=self.settings.UPLOAD_URL_POOL_ENABLED,
            timeout=self.settings.UPLOAD_TIMEOUT_SECONDS,
        )

    async def upload_from_path(self, path, **kwargs) -> FileInfo:
        """Upload a local file, as a large file when it exceeds the part size.

        See ``b2session.storage.files.upload_from_path`` for the arguments.
        """
        from b2session.storage.files import upload_from_path

        return await upload_from_path(self, path, **kwargs)

    async def get_file_info(self, file_id: str, *, timeout: Optional[float] = None) -> FileInfo:
        return await self.policy.execute(
            endpoints.GET_FILE_INFO,
            lambda auth: self.client.get_file_info(auth, file_id, timeout=timeout),
        )

    async def download_file_by_id(
        self,
        file_id: str,
        *,
        byte_range: Optional[ByteRange] = None,
        encryption: Optional[ServerSideEncryption] = None,
        timeout: Optional[float] = None,
    ) -> DownloadedFile:
        return await self.policy.execute(
            endpoints.DOWNLOAD_FILE_BY_ID,
            lambda auth: self.client.download_file_by_id(
                auth, file_id, byte_range=byte_range, encryption=encryption, timeout=timeout
            ),
        )

    async def download_file_by_name(
        self,
        bucket_name: str,
        file_name: str,
        *,
        byte_range: Optional[ByteRange] = None,
        encryption: Optional[ServerSideEncryption] = None,
        timeout: Optional[float] = None,
    ) -> DownloadedFile:
        return await self.policy.execute(
            endpoints.DOWNLOAD_FILE_BY_NAME,
            lambda auth: self.client.download_file_by_name(
                auth,
                bucket_name,
                file_name,
                byte_range=byte_range,
                encryption=encryption,
                timeout=timeout,
            ),
        )

    async def list_file_names(
        self,
        *,
        bucket_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> FileList:
        bucket = await self._bucket_id(bucket_id)
        return await self.policy.execute(
            endpoints.LIST_FILE_NAMES,
            lambda auth: self.client.list_file_names(auth, bucket, timeout=timeout, **kwargs),
        )

    async def list_file_versions(
        self,
        *,
        bucket_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> FileList:
        bucket = await self._bucket_id(bucket_id)
        return await self.policy.execute(
            endpoints.LIST_FILE_VERSIONS,
            lambda auth: self.client.list_file_versions(auth, bucket, timeout=timeout, **kwargs),
        )

    async def list_parts(
        self, file_id: str, *, timeout: Optional[float] = None, **kwargs
    ) -> PartList:
        return await self.policy.execute(
            endpoints.LIST_PARTS,
            lambda auth: self.client.list_parts(auth, file_id, timeout=timeout, **kwargs),
        )

    async def list_unfinished_large_files(
        self,
        *,
        bucket_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> UnfinishedFileList:
        bucket = await self._bucket_id(bucket_id)
        return await self.policy.execute(
            endpoints.LIST_UNFINISHED_LARGE_FILES,
            lambda auth: self.client.list_unfinished_large_files(
                auth, bucket, timeout=timeout, **kwargs
            ),
        )

    async def hide_file(
        self,
        file_name: str,
        *,
        bucket_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FileInfo:
        bucket = await self._bucket_id(bucket_id)
        return await self.policy.execute(
            endpoints.HIDE_FILE,
            lambda auth: self.client.hide_file(auth, bucket, file_name, timeout=timeout),
        )

    async def delete_file_version(
        self,
        file_name: str,
        file_id: str,
        *,
        bypass_governance: bool = False,
        timeout: Optional[float] = None,
    ) -> DeletedFileVersion:
        return await self.policy.execute(
            endpoints.DELETE_FILE_VERSION,
            lambda auth: self.client.delete_file_version(
                auth, file_name, file_id, bypass_governance=bypass_governance, timeout=timeout
            ),
        )

    async def list_buckets(
        self,
        *,
        bucket_id: Optional[str] = None,
        bucket_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BucketList:
        return await self.policy.execute(
            endpoints.LIST_BUCKETS,
            lambda auth: self.client.list_buckets(
                auth, bucket_id=bucket_id, bucket_name=bucket_name, timeout=timeout
            ),
        )
