"""Pytest configuration and shared fixtures."""

import asyncio
import base64
import hashlib
import json
from collections import defaultdict
from urllib.parse import unquote

import httpx
import pytest

from b2session.client.protocol import ProtocolClient
from b2session.client.transport import Transport
from b2session.core.config import Settings
from b2session.session.manager import B2Session

ALL_CAPABILITIES = [
    "listBuckets",
    "listFiles",
    "readFiles",
    "writeFiles",
    "deleteFiles",
]


class FakeB2:
    """In-memory stand-in for the storage service, served via httpx.MockTransport.

    ``calls`` records every operation name in arrival order. Failures are
    scripted per operation with ``fail``; each queued entry is consumed by
    one request and is either a ``(status, code)`` pair or an exception to
    raise from the transport. ``timeouts`` keeps the timeout of the latest
    request per operation.
    """

    API_URL = "https://api001.b2.test"
    DOWNLOAD_URL = "https://f001.b2.test"
    KEY_ID = "key-id"
    KEY = "secret-key"

    def __init__(self):
        self.calls: list[str] = []
        self.failures: dict[str, list] = defaultdict(list)
        self.delays: dict[str, float] = {}
        self.capabilities = list(ALL_CAPABILITIES)
        self.restricted_bucket_id: str | None = "bucket-1"
        self.recommended_part_size = 100
        self.minimum_part_size = 5
        self.key_expiration_ms: int | None = None

        self.valid_tokens: set[str] = set()
        self.valid_upload_tokens: set[str] = set()
        self.tokens_issued = 0
        self.upload_urls_issued = 0
        self.file_counter = 0

        self.files: dict[str, dict] = {}
        self.large_files: dict[str, dict] = {}
        self.part_numbers_seen: list[int] = []
        self.part_failures: dict[int, list] = defaultdict(list)
        self.timeouts: dict[str, dict] = {}

    # -- scripting -------------------------------------------------------

    def fail(self, operation: str, *outcomes) -> None:
        self.failures[operation].extend(outcomes)

    def fail_part(self, part_number: int, *outcomes) -> None:
        self.part_failures[part_number].extend(outcomes)

    def complete_large_file(self, file_id: str) -> None:
        """Finish a large file out of band, as if a timed-out finish had landed."""
        large = self.large_files.pop(file_id)
        data = b"".join(large["parts"][n]["data"] for n in sorted(large["parts"]))
        record = {**large, "action": "upload", "content_length": len(data), "data": data}
        del record["parts"]
        self.files[file_id] = record

    def expire_tokens(self) -> None:
        self.valid_tokens.clear()

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _json(status: int, body: dict, headers: dict | None = None) -> httpx.Response:
        return httpx.Response(status, json=body, headers=headers)

    @classmethod
    def _error(cls, status: int, code: str, message: str = "") -> httpx.Response:
        return cls._json(status, {"status": status, "code": code, "message": message or code})

    def _next_file_id(self, prefix: str) -> str:
        self.file_counter += 1
        return f"{prefix}_z{self.file_counter:04d}"

    def _file_json(self, record: dict) -> dict:
        return {
            "accountId": "account-1",
            "action": record["action"],
            "bucketId": record["bucket_id"],
            "contentLength": record["content_length"],
            "contentSha1": record["content_sha1"],
            "contentType": record["content_type"],
            "fileId": record["file_id"],
            "fileInfo": record.get("file_info", {}),
            "fileName": record["file_name"],
            "uploadTimestamp": 1700000000000,
        }

    # -- transport handler -----------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/upload_part/"):
            name = "b2_upload_part"
        elif path.startswith("/upload/"):
            name = "b2_upload_file"
        elif path.startswith("/file/"):
            name = "b2_download_file_by_name"
        else:
            name = path.rsplit("/", 1)[-1]
        self.calls.append(name)
        self.timeouts[name] = request.extensions.get("timeout")

        delay = self.delays.get(name)
        if callable(delay):
            delay = delay(request)
        if delay:
            await asyncio.sleep(delay)

        if self.failures.get(name):
            outcome = self.failures[name].pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            status, code = outcome
            headers = {"Retry-After": "0"} if status in (429, 503) else None
            return httpx.Response(
                status,
                json={"status": status, "code": code, "message": code},
                headers=headers,
            )

        if name == "b2_authorize_account":
            return self._authorize(request)
        if name in ("b2_upload_file", "b2_upload_part"):
            if request.headers.get("authorization") not in self.valid_upload_tokens:
                return self._error(401, "expired_auth_token")
        elif request.headers.get("authorization") not in self.valid_tokens:
            return self._error(401, "expired_auth_token")

        route = getattr(self, f"_{name.removeprefix('b2_')}", None)
        if route is None:
            return self._error(404, "not_found", f"unknown operation {name}")
        return route(request)

    def _body(self, request: httpx.Request) -> dict:
        return json.loads(request.content)

    def _authorize(self, request: httpx.Request) -> httpx.Response:
        expected = base64.b64encode(f"{self.KEY_ID}:{self.KEY}".encode()).decode()
        if request.headers.get("authorization") != f"Basic {expected}":
            return self._error(401, "unauthorized", "bad key")
        self.tokens_issued += 1
        token = f"account-token-{self.tokens_issued}"
        self.valid_tokens.add(token)
        body = {
            "accountId": "account-1",
            "authorizationToken": token,
            "apiInfo": {
                "storageApi": {
                    "apiUrl": self.API_URL,
                    "downloadUrl": self.DOWNLOAD_URL,
                    "recommendedPartSize": self.recommended_part_size,
                    "absoluteMinimumPartSize": self.minimum_part_size,
                    "s3ApiUrl": "https://s3.b2.test",
                    "capabilities": self.capabilities,
                    "bucketId": self.restricted_bucket_id,
                    "bucketName": "bucket-one" if self.restricted_bucket_id else None,
                    "namePrefix": None,
                }
            },
        }
        if self.key_expiration_ms is not None:
            body["applicationKeyExpirationTimestamp"] = self.key_expiration_ms
        return self._json(200, body)

    def _issue_upload_url(self, kind: str, key: str) -> dict:
        self.upload_urls_issued += 1
        token = f"upload-token-{self.upload_urls_issued}"
        self.valid_upload_tokens.add(token)
        return {
            "uploadUrl": f"{self.API_URL}/{kind}/{key}/{self.upload_urls_issued}",
            "authorizationToken": token,
        }

    def _get_upload_url(self, request: httpx.Request) -> httpx.Response:
        bucket_id = request.url.params["bucketId"]
        return self._json(200, {"bucketId": bucket_id, **self._issue_upload_url("upload", bucket_id)})

    def _get_upload_part_url(self, request: httpx.Request) -> httpx.Response:
        file_id = request.url.params["fileId"]
        if file_id not in self.large_files:
            return self._error(400, "bad_request", "no such large file")
        return self._json(200, {"fileId": file_id, **self._issue_upload_url("upload_part", file_id)})

    def _upload_file(self, request: httpx.Request) -> httpx.Response:
        data = request.content
        sha1 = hashlib.sha1(data).hexdigest()
        if request.headers["x-bz-content-sha1"] != sha1:
            return self._error(400, "bad_request", "sha1 did not match data received")
        bucket_id = request.url.path.split("/")[2]
        file_info = {
            key[len("x-bz-info-"):]: unquote(value)
            for key, value in request.headers.items()
            if key.startswith("x-bz-info-")
        }
        record = {
            "action": "upload",
            "bucket_id": bucket_id,
            "content_length": len(data),
            "content_sha1": sha1,
            "content_type": request.headers["content-type"],
            "file_id": self._next_file_id("4"),
            "file_name": unquote(request.headers["x-bz-file-name"]),
            "file_info": file_info,
            "data": data,
        }
        self.files[record["file_id"]] = record
        return self._json(200, self._file_json(record))

    def _upload_part(self, request: httpx.Request) -> httpx.Response:
        file_id = request.url.path.split("/")[2]
        large = self.large_files.get(file_id)
        if large is None:
            return self._error(400, "bad_request", "no such large file")
        data = request.content
        sha1 = hashlib.sha1(data).hexdigest()
        if request.headers["x-bz-content-sha1"] != sha1:
            return self._error(400, "bad_request", "sha1 did not match data received")
        part_number = int(request.headers["x-bz-part-number"])
        if self.part_failures.get(part_number):
            status, code = self.part_failures[part_number].pop(0)
            return self._error(status, code)
        self.part_numbers_seen.append(part_number)
        large["parts"][part_number] = {"sha1": sha1, "data": data}
        return self._json(200, {
            "fileId": file_id,
            "partNumber": part_number,
            "contentLength": len(data),
            "contentSha1": sha1,
            "uploadTimestamp": 1700000000000,
        })

    def _start_large_file(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        file_id = self._next_file_id("4")
        record = {
            "action": "start",
            "bucket_id": body["bucketId"],
            "content_length": 0,
            "content_sha1": "none",
            "content_type": body.get("contentType", "application/octet-stream"),
            "file_id": file_id,
            "file_name": body["fileName"],
            "file_info": body.get("fileInfo", {}),
            "parts": {},
        }
        self.large_files[file_id] = record
        return self._json(200, self._file_json(record))

    def _finish_large_file(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        large = self.large_files.get(body["fileId"])
        if large is None:
            return self._error(400, "bad_request", "no such large file")
        stored = [large["parts"][n]["sha1"] for n in sorted(large["parts"])]
        if stored != body["partSha1Array"]:
            return self._error(400, "bad_request", "part sha1s do not match")
        data = b"".join(large["parts"][n]["data"] for n in sorted(large["parts"]))
        record = {**large, "action": "upload", "content_length": len(data), "data": data}
        del record["parts"]
        del self.large_files[body["fileId"]]
        self.files[body["fileId"]] = record
        return self._json(200, self._file_json(record))

    def _cancel_large_file(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        large = self.large_files.pop(body["fileId"], None)
        if large is None:
            return self._error(400, "bad_request", "no such large file")
        return self._json(200, {
            "fileId": large["file_id"],
            "accountId": "account-1",
            "bucketId": large["bucket_id"],
            "fileName": large["file_name"],
        })

    def _list_parts(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        large = self.large_files.get(body["fileId"])
        if large is None:
            return self._error(400, "bad_request", "no such large file")
        parts = [
            {
                "fileId": body["fileId"],
                "partNumber": number,
                "contentLength": len(part["data"]),
                "contentSha1": part["sha1"],
            }
            for number, part in sorted(large["parts"].items())
            if number >= body.get("startPartNumber", 1)
        ]
        return self._json(200, {"parts": parts, "nextPartNumber": None})

    def _list_unfinished_large_files(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        files = [
            self._file_json(record)
            for record in self.large_files.values()
            if record["bucket_id"] == body["bucketId"]
        ]
        return self._json(200, {"files": files, "nextFileId": None})

    def _get_file_info(self, request: httpx.Request) -> httpx.Response:
        file_id = request.url.params["fileId"]
        record = self.files.get(file_id) or self.large_files.get(file_id)
        if record is None:
            return self._error(404, "not_found", "file not found")
        return self._json(200, self._file_json(record))

    def _download_headers(self, record: dict, data: bytes) -> dict:
        headers = {
            "x-bz-file-id": record["file_id"],
            "x-bz-file-name": record["file_name"],
            "x-bz-content-sha1": record["content_sha1"],
            "x-bz-upload-timestamp": "1700000000000",
            "content-type": record["content_type"],
            "content-length": str(len(data)),
        }
        for key, value in record.get("file_info", {}).items():
            headers[f"x-bz-info-{key}"] = value
        return headers

    def _ranged(self, request: httpx.Request, data: bytes) -> tuple[int, bytes]:
        header = request.headers.get("range")
        if not header:
            return 200, data
        start, _, end = header.removeprefix("bytes=").partition("-")
        stop = int(end) + 1 if end else len(data)
        return 206, data[int(start):stop]

    def _download_file_by_id(self, request: httpx.Request) -> httpx.Response:
        record = self.files.get(request.url.params["fileId"])
        if record is None:
            return self._error(404, "not_found", "file not found")
        status, data = self._ranged(request, record["data"])
        return httpx.Response(status, content=data, headers=self._download_headers(record, data))

    def _download_file_by_name(self, request: httpx.Request) -> httpx.Response:
        file_name = unquote(request.url.path.split("/", 3)[3])
        for record in self.files.values():
            if record["file_name"] == file_name and record["action"] == "upload":
                status, data = self._ranged(request, record["data"])
                return httpx.Response(status, content=data, headers=self._download_headers(record, data))
        return self._error(404, "not_found", "file not found")

    def _list_file_names(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        prefix = body.get("prefix", "")
        files = [
            self._file_json(record)
            for record in sorted(self.files.values(), key=lambda r: r["file_name"])
            if record["bucket_id"] == body["bucketId"]
            and record["file_name"].startswith(prefix)
            and record["action"] == "upload"
        ]
        return self._json(200, {"files": files, "nextFileName": None})

    def _list_file_versions(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        files = [
            self._file_json(record)
            for record in self.files.values()
            if record["bucket_id"] == body["bucketId"]
        ]
        return self._json(200, {"files": files, "nextFileName": None, "nextFileId": None})

    def _hide_file(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        record = {
            "action": "hide",
            "bucket_id": body["bucketId"],
            "content_length": 0,
            "content_sha1": "none",
            "content_type": "application/x-bz-hide-marker",
            "file_id": self._next_file_id("4"),
            "file_name": body["fileName"],
            "data": b"",
        }
        self.files[record["file_id"]] = record
        return self._json(200, self._file_json(record))

    def _delete_file_version(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        record = self.files.pop(body["fileId"], None)
        if record is None or record["file_name"] != body["fileName"]:
            return self._error(400, "file_not_present", "file not present")
        return self._json(200, {"fileId": body["fileId"], "fileName": body["fileName"]})

    def _list_buckets(self, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        return self._json(200, {"buckets": [{
            "accountId": body["accountId"],
            "bucketId": "bucket-1",
            "bucketName": "bucket-one",
            "bucketType": "allPrivate",
            "bucketInfo": {},
            "revision": 1,
            "options": [],
        }]})


@pytest.fixture
def fake_b2():
    """Create a fresh fake storage service for each test."""
    return FakeB2()


@pytest.fixture
def test_settings():
    """Settings with fake credentials, no backoff and a small breaker threshold."""
    return Settings(
        _env_file=None,
        B2_APPLICATION_KEY_ID=FakeB2.KEY_ID,
        B2_APPLICATION_KEY=FakeB2.KEY,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_INITIAL_BACKOFF_SECONDS=0,
        RETRY_MAX_BACKOFF_SECONDS=0,
        BREAKER_FAILURE_THRESHOLD=5,
        BREAKER_COOLDOWN_SECONDS=30,
        UPLOAD_URL_POOL_MAX_PER_BUCKET=2,
        PART_URL_POOL_MAX_PER_FILE=2,
    )


@pytest.fixture
def sleeps():
    """Record backoff waits instead of sleeping."""
    waits: list[float] = []

    async def sleep(seconds: float) -> None:
        waits.append(seconds)

    sleep.waits = waits
    return sleep


@pytest.fixture
def http_client(fake_b2):
    """httpx client routed to the fake service."""
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_b2.handler))


@pytest.fixture
def protocol_client(http_client, test_settings):
    """Protocol client talking to the fake service."""
    return ProtocolClient(Transport(http_client), test_settings)


@pytest.fixture
def session(http_client, test_settings, sleeps):
    """Full session talking to the fake service."""
    return B2Session(test_settings, http_client=http_client, sleep=sleeps)
