"""Protocol operation descriptors."""

from dataclasses import dataclass, field
from enum import Enum

from b2session.client.classification import (
    API_FAILURES,
    AUTHORIZE_FAILURES,
    UPLOAD_FAILURES,
    FailureTable,
)
from b2session.models.authorization import Capability


class EndpointClass(str, Enum):
    """Groups of endpoints that share a circuit breaker."""

    ACCOUNT = "account"
    API = "api"
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class Operation:
    """Static description of one protocol operation.

    Attributes:
        name: API call name, also the last URL path segment
        method: HTTP method
        endpoint_class: Breaker group the operation belongs to
        capability: Capability the authorization must grant
        failures: Error classification table
        authenticated: Whether the call needs an account authorization
    """

    name: str
    method: str
    endpoint_class: EndpointClass
    capability: Capability = Capability.NONE
    failures: FailureTable = field(default_factory=lambda: API_FAILURES, compare=False)
    authenticated: bool = True


AUTHORIZE_ACCOUNT = Operation(
    "b2_authorize_account", "GET", EndpointClass.ACCOUNT,
    failures=AUTHORIZE_FAILURES, authenticated=False,
)
GET_UPLOAD_URL = Operation("b2_get_upload_url", "GET", EndpointClass.API, Capability.WRITE_FILES)
GET_UPLOAD_PART_URL = Operation("b2_get_upload_part_url", "GET", EndpointClass.API, Capability.WRITE_FILES)
UPLOAD_FILE = Operation(
    "b2_upload_file", "POST", EndpointClass.UPLOAD, Capability.WRITE_FILES, UPLOAD_FAILURES
)
UPLOAD_PART = Operation(
    "b2_upload_part", "POST", EndpointClass.UPLOAD, Capability.WRITE_FILES, UPLOAD_FAILURES
)
START_LARGE_FILE = Operation("b2_start_large_file", "POST", EndpointClass.API, Capability.WRITE_FILES)
FINISH_LARGE_FILE = Operation("b2_finish_large_file", "POST", EndpointClass.API, Capability.WRITE_FILES)
CANCEL_LARGE_FILE = Operation("b2_cancel_large_file", "POST", EndpointClass.API, Capability.WRITE_FILES)
LIST_PARTS = Operation("b2_list_parts", "POST", EndpointClass.API, Capability.WRITE_FILES)
LIST_UNFINISHED_LARGE_FILES = Operation(
    "b2_list_unfinished_large_files", "POST", EndpointClass.API, Capability.LIST_FILES
)
GET_FILE_INFO = Operation("b2_get_file_info", "GET", EndpointClass.API, Capability.READ_FILES)
DOWNLOAD_FILE_BY_ID = Operation(
    "b2_download_file_by_id", "GET", EndpointClass.DOWNLOAD, Capability.READ_FILES
)
DOWNLOAD_FILE_BY_NAME = Operation(
    "b2_download_file_by_name", "GET", EndpointClass.DOWNLOAD, Capability.READ_FILES
)
LIST_FILE_NAMES = Operation("b2_list_file_names", "POST", EndpointClass.API, Capability.LIST_FILES)
LIST_FILE_VERSIONS = Operation("b2_list_file_versions", "POST", EndpointClass.API, Capability.LIST_FILES)
HIDE_FILE = Operation("b2_hide_file", "POST", EndpointClass.API, Capability.WRITE_FILES)
DELETE_FILE_VERSION = Operation("b2_delete_file_version", "POST", EndpointClass.API, Capability.DELETE_FILES)
LIST_BUCKETS = Operation("b2_list_buckets", "POST", EndpointClass.API, Capability.LIST_BUCKETS)
