import logging
import threading
from typing import Any

import requests
from pydantic import ValidationError as PydanticValidationError

from ..config import AgentConfig
from ..errors import TransportError
from ..sync.models import (
    BatchRequest,
    HistoryEntry,
    InitialImportRequest,
    StatusResult,
    SubmitResult,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


class SyncClient:
    """Blocking HTTP client for the ingest server.

    Stateless apart from a thread-local ``requests.Session``.  Every
    failure (connection error, timeout, non-2xx status, malformed body or
    a ``success: false`` envelope) is raised as ``TransportError``; there
    is no retry policy.
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.server_url.rstrip("/")
        self.timeout = (config.connect_timeout, config.read_timeout)

    @property
    def session(self) -> requests.Session:
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": "bookmark-sync-agent",
            }
        )
        return session

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """
        Send one request and return the ``data`` member of the envelope.
        """
        url = f"{self.base_url}{path}"
        try:
            response = self._get_session().request(
                method,
                url,
                json=json_body,
                headers=headers,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.ok:
            error = (payload or {}).get("error") if isinstance(payload, dict) else None
            code = error.get("code") if isinstance(error, dict) else None
            message = (
                error.get("message")
                if isinstance(error, dict)
                else response.reason
            )
            raise TransportError(
                f"{method} {path} returned {response.status_code}: {message}",
                status_code=response.status_code,
                code=code,
            )

        if not isinstance(payload, dict):
            raise TransportError(
                f"{method} {path} returned a non-JSON body",
                status_code=response.status_code,
            )
        if payload.get("success") is False:
            error = payload.get("error") or {}
            raise TransportError(
                f"{method} {path} failed: {error.get('message', 'unknown error')}",
                status_code=response.status_code,
                code=error.get("code"),
            )
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return payload.get("data", payload)

    def status(
        self,
        owner_id: str,
        instance_id: str | None = None,
        since: str | None = None,
    ) -> StatusResult:
        """
        Ask whether *owner_id* needs an initial import and how many remote
        changes are waiting.
        """
        headers = {"X-Owner-ID": owner_id}
        if instance_id:
            headers["X-Instance-ID"] = instance_id
        params = {"since": since} if since else None
        data = self._request(
            "GET", f"{API_PREFIX}/sync/status", headers=headers, params=params
        )
        return self._parse(StatusResult, data, "status")

    def submit(
        self, request: BatchRequest | InitialImportRequest
    ) -> SubmitResult:
        """
        Submit an incremental batch or a full initial import.

        Raises:
            TransportError: On any failure; the caller must not acknowledge
                anything in that case.
        """
        match request:
            case InitialImportRequest():
                path = f"{API_PREFIX}/sync/initial"
            case BatchRequest():
                path = f"{API_PREFIX}/sync"
            case _:
                raise TypeError(
                    f"Unsupported request type {type(request).__name__}"
                )
        data = self._request("POST", path, json_body=request.to_wire())
        return self._parse(SubmitResult, data, "submit")

    def history(self, owner_id: str, limit: int = 10) -> list[HistoryEntry]:
        data = self._request(
            "GET",
            f"{API_PREFIX}/sync/history",
            headers={"X-Owner-ID": owner_id},
            params={"limit": str(limit)},
        )
        if not isinstance(data, list):
            raise TransportError("history returned a malformed body")
        return [self._parse(HistoryEntry, item, "history") for item in data]

    def health(self) -> dict:
        return self._request("GET", "/health")

    @staticmethod
    def _parse(model, data: Any, operation: str):
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise TransportError(
                f"{operation} returned a malformed body: {exc}"
            ) from exc
