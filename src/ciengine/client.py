# client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlencode, urljoin

from .model import Job, JobStatus


class APIError(Exception):
    """Raised when API requests fail."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class APIClient:
    """HTTP client for the ciengine control plane."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "http://localhost:8000")
            timeout: Socket timeout in seconds for non-streaming requests
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, path: str, params: Optional[dict] = None) -> str:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        if params:
            query = {k: v for k, v in params.items() if v is not None}
            if query:
                url += "?" + urlencode(query)
        return url

    def _open(self, method: str, path: str, data: Optional[dict] = None, params: Optional[dict] = None, timeout=None):
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            self._url(path, params),
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            return urllib.request.urlopen(req, timeout=timeout)
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}", status_code=e.code)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """
        Make an HTTP request and decode the JSON response.

        Raises:
            APIError: If the request fails or the body is not JSON
        """
        with self._open(method, path, data, params, timeout=self.timeout) as response:
            body = response.read().decode("utf-8")
        if not body:
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def submit_job(self, job: Job) -> str:
        """Submit a job. Returns its id."""
        response = self._request("POST", "/jobs/submit", data=job.to_dict())
        return response["job_id"]

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        """Status record, or None if the job is unknown."""
        try:
            return JobStatus.from_dict(self._request("GET", "/jobs/status", params={"id": job_id}))
        except APIError as e:
            if e.status_code == 404:
                return None
            raise

    def list_jobs(self, status: Optional[str] = None) -> List[JobStatus]:
        response = self._request("GET", "/jobs", params={"status": status})
        return [JobStatus.from_dict(j) for j in response.get("jobs", [])]

    def cancel_job(self, job_id: str) -> bool:
        return bool(self._request("POST", "/jobs/cancel", data={"job_id": job_id}).get("cancelled"))

    def retry_job(self, job_id: str) -> bool:
        return bool(self._request("POST", "/jobs/retry", data={"job_id": job_id}).get("retried"))

    def stream_logs(self, job_id: str) -> Iterator[str]:
        """
        Yield log chunks for a job as the server emits them.

        Reads the text/event-stream from /jobs/logs; each event's data lines
        are joined back into one chunk.
        """
        response = self._open("GET", "/jobs/logs", params={"id": job_id})
        with response:
            data_lines: List[str] = []
            for raw in response:
                line = raw.decode("utf-8").rstrip("\r\n")
                if line.startswith("data:"):
                    value = line[5:]
                    data_lines.append(value[1:] if value.startswith(" ") else value)
                elif line == "" and data_lines:
                    yield "\n".join(data_lines)
                    data_lines = []
            if data_lines:
                yield "\n".join(data_lines)

    # ------------------------------------------------------------------
    # Cache / worker
    # ------------------------------------------------------------------

    def cache_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/cache/stats")

    def trigger_worker(self) -> Dict[str, Any]:
        """Ask the server to run one scheduler tick in the background."""
        return self._request("POST", "/worker")
