"""HTTP client for the ledger API and its privileged functions."""

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel, ValidationError

from lesson_ledger.api.v1.attendance.schemas import AttendanceRecordResponse
from lesson_ledger.api.v1.package_usage.schemas import PackageUsageRequest, PackageUsageResponse

from .controller import AttendanceGateway
from .credentials import TokenProvider
from .exceptions import ApiError, ConnectionFailure

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


def _parse(response: httpx.Response, model: Type[ModelT]) -> ModelT:
    """Decode a successful response; a body the client cannot read is an ApiError like any other."""
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        logger.warning("unexpected response body from %s: %s", response.request.url, e)
        raise ApiError(response.status_code, f"Unexpected response body: {e}") from e


class LedgerApiClient(AttendanceGateway):
    """
    Every request carries the caller's bearer token and the service API key.
    A 401 refreshes the token once and retries once; anything else is raised.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        tokens: TokenProvider,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._tokens = tokens
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "LedgerApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _send(self, method: str, path: str, token: str, json: Optional[Dict[str, Any]]) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                f"{self._base_url}{path}",
                json=json,
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": self._api_key,
                },
            )
        except httpx.HTTPError as e:
            raise ConnectionFailure(f"{method} {path} failed: {e}") from e

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        token = await self._tokens.get_token()
        response = await self._send(method, path, token, json)
        if response.status_code == 401:
            logger.info("%s %s: token rejected, refreshing and retrying once", method, path)
            token = await self._tokens.refresh()
            response = await self._send(method, path, token, json)
        if response.is_error:
            detail = _error_detail(response)
            logger.warning("%s %s failed: %s %s", method, path, response.status_code, detail)
            raise ApiError(response.status_code, detail)
        return response

    async def list_attendance(self, lesson_id: UUID) -> List[AttendanceRecordResponse]:
        response = await self._request("GET", f"/api/v1/lessons/{lesson_id}/attendance")
        try:
            items = response.json()
            return [AttendanceRecordResponse.model_validate(item) for item in items]
        except (ValueError, TypeError, ValidationError) as e:
            raise ApiError(response.status_code, f"Unexpected response body: {e}") from e

    async def save_attendance(
        self,
        lesson_id: UUID,
        student_id: UUID,
        attended: bool,
        comment: Optional[str] = None,
    ) -> AttendanceRecordResponse:
        body: Dict[str, Any] = {"attended": attended}
        if comment is not None:
            body["comment"] = comment
        response = await self._request("PUT", f"/api/v1/lessons/{lesson_id}/attendance/{student_id}", body)
        return _parse(response, AttendanceRecordResponse)

    async def apply_package_usage(
        self,
        lesson_id: UUID,
        student_id: UUID,
        attended: bool,
        attendance_record_id: Optional[UUID] = None,
    ) -> PackageUsageResponse:
        payload = PackageUsageRequest(
            lesson_id=lesson_id,
            student_id=student_id,
            attended=attended,
            attendance_record_id=attendance_record_id,
        )
        response = await self._request(
            "POST",
            "/api/v1/functions/apply-package-usage",
            payload.model_dump(mode="json", exclude_none=True),
        )
        return _parse(response, PackageUsageResponse)
