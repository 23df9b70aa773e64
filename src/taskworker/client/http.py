"""HTTP implementation of ``TaskServerClient``."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from pydantic import ValidationError

from ..models import Task, TaskResult
from ..exceptions import PermanentError, TransientServerError

logger = logging.getLogger(__name__)

# Treated as transient alongside every 5xx
RETRYABLE_STATUS = frozenset({408, 429})


class HttpTaskClient:
    """Talks to the server's REST task API.

    Endpoints:
        GET  {base_url}/tasks/poll/{taskType}?workerid=..&domain=..
        POST {base_url}/tasks
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if headers:
            self._session.headers.update(headers)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise TransientServerError(f"{method} {url} failed: {exc}") from exc

        status = response.status_code
        if status >= 500 or status in RETRYABLE_STATUS:
            raise TransientServerError(
                f"{method} {url} returned {status}: {response.text[:200]}"
            )
        if status >= 400:
            raise PermanentError(f"{method} {url} returned {status}: {response.text[:200]}")
        return response

    def poll_task(
        self,
        task_type: str,
        domain: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[Task]:
        params = {}
        if worker_id:
            params["workerid"] = worker_id
        if domain:
            params["domain"] = domain

        response = self._request("GET", f"/tasks/poll/{quote(task_type, safe='')}", params=params)
        if response.status_code == 204 or not response.content.strip():
            return None

        try:
            return Task.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TransientServerError(f"Malformed task payload for {task_type}: {exc}") from exc

    def report_result(self, result: TaskResult) -> Any:
        response = self._request("POST", "/tasks", json=result.to_wire())
        logger.debug(f"Reported task {result.task_id}: {response.status_code}")
        return response.text

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "HttpTaskClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
