import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from tenacity import RetryError, Retrying, retry_if_not_exception_type, stop_after_attempt, wait_none

from kobosync.config import RunConfig
from kobosync.errors import (
    AssetNotFoundError,
    DownloadError,
    KoboApiError,
    MalformedResponseError,
    RetriesExhaustedError,
)
from kobosync.models import Asset, AssetSummary, Record, parse_payload

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
CHUNK_SIZE = 64 * 1024

# Errors that retrying cannot fix.
NOT_RETRYABLE = (AssetNotFoundError, MalformedResponseError)


def get_headers(token: str) -> Dict[str, str]:
    """
    Return headers for authorized requests to the KoBo API.
    """
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Token {token}"
    return headers


def _raise_for_status(resp: requests.Response, url: str):
    if resp.status_code < 400:
        return
    message = f"HTTP {resp.status_code}"
    if resp.reason:
        message += f" {resp.reason}"
    raise KoboApiError(f"{message} at {url}", status=resp.status_code, url=url)


@dataclass
class DownloadResult:
    path: Path
    content_length: int
    content_type: Optional[str]


class KoboClient:
    """
    Thin client over the KoBo REST API. Every call is blocking and retried
    serially up to the configured budget, with no delay between attempts.
    """

    def __init__(self, config: RunConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(get_headers(config.token))

    # -----------------------------
    # Retry plumbing
    # -----------------------------

    def _call_with_retry(self, operation: str, func: Callable[[], Any], max_attempts: int) -> Any:
        def log_failure(retry_state):
            error = retry_state.outcome.exception()
            logger.warning("%s: attempt %d/%d failed: %s", operation, retry_state.attempt_number, max_attempts, error)

        retryer = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_none(),
            retry=retry_if_not_exception_type(NOT_RETRYABLE),
            after=log_failure,
        )
        try:
            return retryer(func)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise RetriesExhaustedError(operation, e.last_attempt.attempt_number, last_error) from last_error

    def _get_json(self, url: str) -> Any:
        logger.debug("GET %s", url)
        resp = self.session.get(url, timeout=self.config.request_timeouts)
        _raise_for_status(resp, url)
        try:
            return resp.json()
        except ValueError as e:
            raise KoboApiError(f"response is not JSON at {url}", status=resp.status_code, url=url) from e

    # -----------------------------
    # Endpoints
    # -----------------------------

    def list_assets(self) -> List[AssetSummary]:
        """
        List all assets visible to the token (paginated through 'next').
        """
        url = f"{self.config.api_server_url}/assets/?limit={PAGE_SIZE}&offset=0"
        assets: List[AssetSummary] = []

        while url:
            data = self._call_with_retry(
                f"list assets {url}", lambda: self._get_json(url), self.config.max_request_retries
            )
            if not isinstance(data, dict) or not isinstance(data.get("results"), list):
                raise MalformedResponseError(f"malformed assets page at {url}: expected object with 'results' list")
            for item in data["results"]:
                assets.append(parse_payload(AssetSummary, item, "asset summary"))
            logger.debug("fetched %d/%s assets", len(assets), data.get("count", "?"))

            next_url = data.get("next")
            if next_url is not None and not isinstance(next_url, str):
                raise MalformedResponseError(f"malformed assets page at {url}: 'next' is not a string")
            url = next_url

        return assets

    def get_asset(self, uid: str) -> Asset:
        """
        Retrieve a single asset including its form content. A 404 is not
        retried: it usually means the asset is not shared with this token.
        """
        url = f"{self.config.api_server_url}/assets/{uid}"

        def call():
            try:
                return self._get_json(url)
            except KoboApiError as e:
                if e.status == 404:
                    raise AssetNotFoundError(
                        f"asset {uid} not found (404), please make sure that this asset is publicly shared",
                        status=404,
                        url=url,
                    ) from e
                raise

        data = self._call_with_retry(f"get asset {uid}", call, self.config.max_request_retries)
        return Asset.from_api(data)

    def get_submissions(self, uid: str) -> List[Record]:
        url = f"{self.config.api_server_url}/assets/{uid}/submissions/"
        data = self._call_with_retry(
            f"get submissions {uid}", lambda: self._get_json(url), self.config.max_request_retries
        )
        if not isinstance(data, list):
            raise MalformedResponseError(f"malformed submissions of asset {uid}: expected a list")
        return [Record.from_api(item) for item in data]

    def resolve_download_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return urljoin(self.config.media_server_url + "/", url.lstrip("/"))

    def download(self, url: str, dest: Path, part: Optional[Path] = None) -> DownloadResult:
        """
        Stream an attachment into 'part' and rename it onto 'dest' once an
        attempt delivered exactly Content-Length bytes. Failed attempts only
        remove 'part', so a file already at 'dest' is never lost.
        """
        url = self.resolve_download_url(url)
        part = part or dest.with_name(dest.name + ".part")

        def download_once() -> DownloadResult:
            logger.debug("downloading %s -> %s", url, dest)
            bytes_read = 0
            try:
                with self.session.get(url, stream=True, timeout=self.config.download_timeouts) as resp:
                    _raise_for_status(resp, url)
                    length = resp.headers.get("Content-Length")
                    if not length:
                        raise DownloadError(f"download has no content-length: {url}")
                    content_length = int(length)

                    part.parent.mkdir(parents=True, exist_ok=True)
                    with open(part, "wb") as f:
                        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                            if chunk:
                                f.write(chunk)
                                bytes_read += len(chunk)

                    if bytes_read != content_length:
                        raise DownloadError(f"incomplete download: {bytes_read}/{content_length} bytes from {url}")
                    content_type = resp.headers.get("Content-Type")
            except Exception:
                if part.exists():
                    part.unlink()
                raise

            dest.parent.mkdir(parents=True, exist_ok=True)
            os.replace(part, dest)
            return DownloadResult(dest, content_length, content_type)

        try:
            return self._call_with_retry(f"download {url}", download_once, self.config.max_download_retries)
        except RetriesExhaustedError as e:
            raise DownloadError(f"saving image failed after {e.attempts} retries: {e.last_error}") from e
