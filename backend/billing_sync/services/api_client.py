from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, TypeVar
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin
from urllib.request import Request, urlopen

from pydantic import BaseModel, TypeAdapter, ValidationError

from billing_sync.services.retry import RetryPolicy, call_with_retry

T = TypeVar("T")


class ApiError(RuntimeError):
    def __init__(self, *, service: str, status_code: int, detail: str):
        self.service = service
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{service} API error {status_code}: {detail}")


class ApiResponseValidationError(ApiError):
    def __init__(self, *, service: str, detail: str):
        super().__init__(service=service, status_code=502, detail=f"response validation failed: {detail}")


def is_retryable_error(exc: Exception) -> bool:
    if isinstance(exc, ApiResponseValidationError):
        return False
    if isinstance(exc, ApiError):
        return exc.status_code >= 500
    return isinstance(exc, (TimeoutError, ConnectionError))


class JsonApiClient:
    """urllib JSON client with transient-error retry and pydantic response validation."""

    service_name = "HTTP"

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 20.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._logger = logging.getLogger(f"billing_sync.{self.service_name.lower()}_client")

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _request_model(
        self,
        method: str,
        path: str,
        response_type: type[T] | Any,
        *,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
    ) -> T:
        def _attempt() -> T:
            data = self._request_json(method, path, query=query, payload=payload)
            return self._validate(response_type, data)

        return call_with_retry(
            action=f"{self.service_name} {method.upper()} {path}",
            call=_attempt,
            policy=self._retry_policy,
            is_retryable=is_retryable_error,
            sleep=self._sleep,
        )

    def _request_no_content(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
    ) -> None:
        call_with_retry(
            action=f"{self.service_name} {method.upper()} {path}",
            call=lambda: self._request_json(method, path, query=query, payload=payload),
            policy=self._retry_policy,
            is_retryable=is_retryable_error,
            sleep=self._sleep,
        )

    def _validate(self, response_type: type[T] | Any, data: Any) -> T:
        try:
            if isinstance(response_type, type) and issubclass(response_type, BaseModel):
                return response_type.model_validate(data)
            return TypeAdapter(response_type).validate_python(data)
        except ValidationError as exc:
            self._logger.error("response validation failed service=%s errors=%s", self.service_name, exc)
            raise ApiResponseValidationError(service=self.service_name, detail=str(exc)) from exc

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
    ) -> Any:
        status_code, content_type, body = self._request_raw(method, path, query=query, payload=payload)
        if status_code not in (200, 201, 202, 204):
            raise ApiError(
                service=self.service_name,
                status_code=status_code,
                detail=body or "Unexpected response",
            )
        if status_code == 204 or body.strip() == "":
            return {}
        if "json" not in content_type.lower():
            raise ApiResponseValidationError(
                service=self.service_name,
                detail=f"expected JSON, got content-type {content_type!r}",
            )
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ApiResponseValidationError(service=self.service_name, detail=f"invalid JSON: {exc}") from exc

    def _request_raw(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
    ) -> tuple[int, str, str]:
        url = urljoin(self._base_url, path.lstrip("/"))
        if query:
            filtered = {k: v for k, v in query.items() if v is not None}
            if filtered:
                url = f"{url}?{urlencode(filtered, doseq=True)}"

        data_bytes: bytes | None = None
        headers: dict[str, str] = {"Accept": "application/json", **self._auth_headers()}
        if payload is not None:
            data_bytes = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"

        self._logger.debug("%s %s", method.upper(), url)
        request = Request(url=url, method=method.upper(), data=data_bytes, headers=headers)
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
                return response.status, response.headers.get("content-type", ""), body
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            self._logger.error(
                "request failed service=%s method=%s path=%s status=%s",
                self.service_name,
                method.upper(),
                path,
                exc.code,
            )
            raise ApiError(service=self.service_name, status_code=exc.code, detail=detail)
        except URLError as exc:
            raise ApiError(service=self.service_name, status_code=503, detail=str(exc.reason))
        except TimeoutError as exc:
            raise ApiError(service=self.service_name, status_code=504, detail=str(exc) or "timed out")
