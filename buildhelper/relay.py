"""Authenticated relay to the Jenkins build server.

Three operations are exposed, each turning one console call into exactly one
outbound request:

- ``trigger_build`` posts to ``buildWithParameters`` and returns the queue
  item URL from the ``Location`` header.
- ``fetch_queue_status`` reads the queue item's ``api/json`` document.
- ``fetch_build_log`` reads the progressive log text from offset 0.

Credentials travel with every call; the relay keeps no secrets and no state
between calls, and never retries.
"""

from __future__ import annotations

import base64
import http.client
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

from buildhelper.errors import UpstreamProtocolError, UpstreamUnreachableError
from buildhelper.models import TriggerRequest, require_fields

logger = logging.getLogger(__name__)

QUEUE_STATUS_SUFFIX = "/api/json"
LOG_START_OFFSET = 0

Opener = Callable[..., Any]


def basic_auth_header(username: str, api_token: str) -> str:
    token = base64.b64encode(f"{username}:{api_token}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _clean_host(host: str) -> str:
    return host.strip().strip("/")


def build_trigger_url(server_host: str, job_name: str, parameters: dict[str, str], scheme: str = "https") -> str:
    url = f"{scheme}://{_clean_host(server_host)}/job/{quote(job_name.strip(), safe='/')}/buildWithParameters"
    if parameters:
        url = f"{url}?{urlencode(list(parameters.items()))}"
    return url


def build_queue_status_url(queue_url: str) -> str:
    return queue_url.strip().rstrip("/") + QUEUE_STATUS_SUFFIX


def build_log_url(server_host: str, job_name: str, build_id: Any, scheme: str = "https") -> str:
    return (
        f"{scheme}://{_clean_host(server_host)}/job/{quote(job_name.strip(), safe='/')}"
        f"/{quote(str(build_id).strip(), safe='')}/logText/progressiveText?start={LOG_START_OFFSET}"
    )


class BuildServerRelay:
    """Stateless, per-call authenticated client for one Jenkins log job."""

    def __init__(
        self,
        log_server_host: str,
        log_job_name: str,
        timeout_seconds: float = 30,
        scheme: str = "https",
        opener: Optional[Opener] = None,
    ) -> None:
        self.log_server_host = log_server_host
        self.log_job_name = log_job_name
        self.timeout_seconds = timeout_seconds
        self.scheme = scheme
        self._opener = opener or urllib.request.urlopen

    @classmethod
    def from_config(cls, config: dict[str, Any], opener: Optional[Opener] = None) -> "BuildServerRelay":
        logs = config.get("logs", {})
        upstream = config.get("upstream", {})
        return cls(
            log_server_host=str(logs.get("server_host", "")),
            log_job_name=str(logs.get("job_name", "")),
            timeout_seconds=float(upstream.get("timeout_seconds", 30)),
            scheme=str(upstream.get("scheme", "https")),
            opener=opener,
        )

    def _send(self, url: str, method: str, username: str, api_token: str) -> tuple[int, Any, bytes]:
        try:
            # Request() rejects URLs without a scheme with ValueError.
            request = urllib.request.Request(
                url,
                data=None,
                headers={"Authorization": basic_auth_header(username, api_token)},
                method=method,
            )
            with self._opener(request, timeout=self.timeout_seconds) as response:
                return int(response.status), response.headers, response.read()
        except urllib.error.HTTPError as exc:
            # Error statuses still carry headers and a body worth passing through.
            try:
                body = exc.read() or b""
            except (OSError, http.client.HTTPException):
                body = b""
            return int(exc.code), exc.headers, body
        except (urllib.error.URLError, TimeoutError, OSError, ValueError, http.client.HTTPException) as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise UpstreamUnreachableError(str(exc)) from exc

    def trigger_build(self, request: TriggerRequest) -> str:
        """Enqueue a build and return its queue item URL."""
        request.validate()
        url = build_trigger_url(request.server_host, request.job_name, request.parameters, scheme=self.scheme)
        logger.info("Triggering job %s on %s", request.job_name, request.server_host)

        status, headers, _ = self._send(url, "POST", request.username, request.api_token)
        location = headers.get("Location") if headers is not None else None
        if not location:
            raise UpstreamProtocolError(
                f"No location header found in Jenkins response (HTTP {status})"
            )
        logger.info("Job %s queued at %s", request.job_name, location)
        return str(location)

    def fetch_queue_status(self, queue_url: str, username: str, api_token: str) -> Any:
        """Return the queue item JSON document exactly as the server sent it."""
        require_fields(
            {"queueUrl": queue_url, "username": username, "apiToken": api_token},
            message="Missing required query parameters",
        )
        url = build_queue_status_url(queue_url)
        status, _, body = self._send(url, "GET", username, api_token)
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamProtocolError(f"Queue item response is not valid JSON (HTTP {status}): {exc}") from exc
        logger.debug("Queue status from %s: HTTP %s", url, status)
        return data

    def fetch_build_log(self, build_id: Any, username: str, api_token: str) -> str:
        """Return the whole progressive log of a build, always from the start."""
        require_fields(
            {"buildId": build_id, "username": username, "apiToken": api_token},
            message="Missing credentials in query parameters",
        )
        url = build_log_url(self.log_server_host, self.log_job_name, build_id, scheme=self.scheme)
        status, _, body = self._send(url, "GET", username, api_token)
        logger.debug("Fetched %d bytes of log for build %s (HTTP %s)", len(body), build_id, status)
        return body.decode("utf-8", errors="replace")
