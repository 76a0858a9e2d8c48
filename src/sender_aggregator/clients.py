# src/sender_aggregator/clients.py

"""
Client wrappers for the Gmail API (the paginated message source) and S3 (the
report projection).

These classes provide a clean, abstracted interface over the raw
googleapiclient and boto3 clients, and translate their errors into the
service's exception taxonomy so the scan driver can tell page-level failures
from everything else.
"""

import hashlib
import logging
import socket
from typing import Any, TYPE_CHECKING

import google_auth_httplib2
import httplib2
from aws_lambda_powertools.utilities import parameters
from aws_lambda_powertools.utilities.parameters.exceptions import (
    GetParameterError,
    TransformParameterError,
)
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .exceptions import (
    ConfigurationError,
    SourceAuthError,
    SourceFetchError,
    SourceThrottlingError,
    SourceTimeoutError,
    StoreThrottlingError,
    StoreWriteError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Headers the normalizer reads; everything else stays on Google's side.
METADATA_HEADERS = ["From", "Subject", "Date", "List-Unsubscribe"]

# threads.list accepts up to 500 ids per call and returns ids only.
LIST_PAGE_SIZE = 500


def load_gmail_credentials(secret_name: str) -> Credentials:
    """
    Builds OAuth user credentials from a JSON secret in AWS Secrets Manager.

    The secret holds ``client_id``, ``client_secret``, ``refresh_token`` and
    optionally ``token_uri``. The access token is minted on first use.
    """
    try:
        secret = parameters.get_secret(secret_name, transform="json", max_age=300)
    except (GetParameterError, TransformParameterError) as e:
        raise ConfigurationError(
            f"Could not load Gmail credentials secret: {e}",
            context={"secret_name": secret_name},
        ) from e

    try:
        return Credentials(
            None,
            refresh_token=secret["refresh_token"],
            token_uri=secret.get("token_uri", DEFAULT_TOKEN_URI),
            client_id=secret["client_id"],
            client_secret=secret["client_secret"],
            scopes=GMAIL_SCOPES,
        )
    except (KeyError, TypeError) as e:
        raise ConfigurationError(
            f"Gmail credentials secret is missing a field: {e}",
            context={"secret_name": secret_name},
        ) from e


def _translate_http_error(e: HttpError, operation: str, context: dict[str, Any]):
    status = getattr(e.resp, "status", None)
    reason = getattr(e, "reason", None) or str(e)
    context = {**context, "http_status": status}

    if status == 429 or (status == 403 and "rate" in str(reason).lower()):
        return SourceThrottlingError(operation, context=context)
    if status in (401, 403):
        return SourceAuthError(operation, context=context)
    return SourceFetchError(operation, str(reason), context=context)


class GmailSource:
    """
    Offset-addressable view over the threads matching a Gmail search query.

    The Gmail API pages with opaque tokens, not offsets. Thread ids are listed
    lazily and cached for the lifetime of the instance, so within one
    invocation ``search(query, offset, limit)`` only lists as far as
    ``offset + limit`` and never lists the same page twice.
    """

    def __init__(self, service: Any, num_retries: int = 3, timeout_seconds: float = 30):
        """
        Initializes the GmailSource.

        Args:
            service: A ``googleapiclient`` Gmail v1 resource.
            num_retries: Retries with exponential backoff on 429/5xx, done by
                googleapiclient itself.
            timeout_seconds: The per-call socket timeout, for error reporting.
        """
        self._service = service
        self._num_retries = num_retries
        self._timeout_seconds = timeout_seconds
        self._query: str | None = None
        self._thread_ids: list[str] = []
        self._next_page_token: str | None = None
        self._listing_complete = False

    @classmethod
    def from_credentials(
        cls, credentials: Credentials, timeout_seconds: float, num_retries: int
    ) -> "GmailSource":
        """Builds the Gmail service with a per-call socket timeout."""
        http = google_auth_httplib2.AuthorizedHttp(
            credentials, http=httplib2.Http(timeout=timeout_seconds)
        )
        service = build("gmail", "v1", http=http, cache_discovery=False)
        return cls(service, num_retries=num_retries, timeout_seconds=timeout_seconds)

    def _restart_listing(self, query: str) -> None:
        self._query = query
        self._thread_ids = []
        self._next_page_token = None
        self._listing_complete = False

    def _list_until(self, query: str, wanted: int) -> None:
        if query != self._query:
            self._restart_listing(query)

        while len(self._thread_ids) < wanted and not self._listing_complete:
            kwargs = {"userId": "me", "q": query, "maxResults": LIST_PAGE_SIZE}
            if self._next_page_token:
                kwargs["pageToken"] = self._next_page_token
            try:
                response = (
                    self._service.users()
                    .threads()
                    .list(**kwargs)
                    .execute(num_retries=self._num_retries)
                )
            except HttpError as e:
                raise _translate_http_error(
                    e, "threads.list", {"listed": len(self._thread_ids)}
                ) from e
            except RefreshError as e:
                raise SourceAuthError("threads.list", context={"reason": str(e)}) from e
            except (socket.timeout, TimeoutError) as e:
                raise SourceTimeoutError(
                    "threads.list", self._timeout_seconds, context={"listed": len(self._thread_ids)}
                ) from e

            self._thread_ids.extend(t["id"] for t in response.get("threads", []))
            self._next_page_token = response.get("nextPageToken")
            if not self._next_page_token:
                self._listing_complete = True

        logger.debug(
            "Thread listing extended.",
            extra={"listed": len(self._thread_ids), "complete": self._listing_complete},
        )

    def search(self, query: str, offset: int, limit: int) -> list[str]:
        """
        Returns up to *limit* thread ids starting at *offset*; an empty list
        means the source is exhausted at that offset.
        """
        if offset < 0 or limit <= 0:
            raise ValueError("offset must be >= 0 and limit must be > 0")
        self._list_until(query, offset + limit)
        return self._thread_ids[offset:offset + limit]

    def get_messages_for_threads(self, thread_ids: list[str]) -> list[list[dict]]:
        """
        Fetches the message metadata of every thread in one batch HTTP request.

        The result is aligned with *thread_ids*. A thread deleted since it was
        listed yields an empty list; any other failure fails the whole page.
        """
        if not thread_ids:
            return []

        results: dict[str, list[dict]] = {}
        failures: dict[str, Exception] = {}

        def _on_response(request_id: str, response: dict | None, exception: Exception | None):
            if exception is None:
                results[request_id] = (response or {}).get("messages", [])
            elif isinstance(exception, HttpError) and getattr(exception.resp, "status", None) == 404:
                results[request_id] = []
            else:
                failures[request_id] = exception

        batch = self._service.new_batch_http_request(callback=_on_response)
        for position, thread_id in enumerate(thread_ids):
            batch.add(
                self._service.users().threads().get(
                    userId="me",
                    id=thread_id,
                    format="metadata",
                    metadataHeaders=METADATA_HEADERS,
                ),
                request_id=str(position),
            )

        try:
            batch.execute()
        except HttpError as e:
            raise _translate_http_error(
                e, "threads.get[batch]", {"threads": len(thread_ids)}
            ) from e
        except RefreshError as e:
            raise SourceAuthError("threads.get[batch]", context={"reason": str(e)}) from e
        except (socket.timeout, TimeoutError) as e:
            raise SourceTimeoutError(
                "threads.get[batch]", self._timeout_seconds, context={"threads": len(thread_ids)}
            ) from e

        if failures:
            request_id, first = next(iter(failures.items()))
            context = {
                "threads": len(thread_ids),
                "failed": len(failures),
                "thread_id": thread_ids[int(request_id)],
            }
            if isinstance(first, HttpError):
                raise _translate_http_error(first, "threads.get", context) from first
            raise SourceFetchError("threads.get", str(first), context=context) from first

        return [results.get(str(position), []) for position in range(len(thread_ids))]


class S3Client:
    """
    A wrapper for S3 client operations used to publish the report projection.
    """

    def __init__(self, s3_client: "S3ClientType", kms_key_id: str | None = None):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
            kms_key_id: Optional KMS key ID for server-side encryption.
        """
        self._client = s3_client
        self._kms_key_id = kms_key_id
        if self._kms_key_id:
            logger.debug(
                "S3Client initialized with SSE-KMS enabled.",
                extra={"kms_key_id": self._kms_key_id},
            )

    def upload_report(self, bucket: str, key: str, body: bytes) -> str:
        """Uploads a CSV report and returns its SHA-256 content hash."""
        content_hash = hashlib.sha256(body).hexdigest()
        extra_args: dict[str, Any] = {
            "Metadata": {"content-sha256": content_hash},
            "ContentType": "text/csv; charset=utf-8",
        }
        if self._kms_key_id:
            extra_args.update(
                {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_id}
            )
        logger.info(
            "Uploading report",
            extra={"bucket": bucket, "key": key, "kms_enabled": bool(self._kms_key_id)},
        )

        try:
            self._client.put_object(Bucket=bucket, Key=key, Body=body, **extra_args)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            error_message = e.response["Error"]["Message"]
            context = {
                "bucket": bucket,
                "key": key,
                "aws_error_code": error_code,
                "aws_error_message": error_message,
            }
            if error_code in ["Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown"]:
                raise StoreThrottlingError("upload_report", context=context) from e
            raise StoreWriteError("upload_report", context=context) from e
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise StoreWriteError(
                "upload_report",
                context={"bucket": bucket, "key": key, "connection_error": str(e)},
            ) from e

        return content_hash
