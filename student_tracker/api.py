"""Async REST client for the student risk backend."""

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import AuthorizationFailure, TransientNetworkFailure
from .models import Actor, UploadCategory
from .session import SessionGuard

logger = logging.getLogger(__name__)

NOTIFICATION_TIMEOUT = 30.0

CONTENT_TYPES = {
    '.xlsx': "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    '.xls': "application/vnd.ms-excel",
    '.csv': "text/csv",
}

PARTITION_PATHS = {
    Actor.EXAM_DEPARTMENT: "exam-data",
    Actor.FACULTY: "attendance-data",
    Actor.LOCAL_GUARDIAN: "fees-data",
}


def _error_detail(response: httpx.Response) -> str:
    """Pull a readable message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get('detail') or body.get('error') or body.get('message')
        if detail:
            return str(detail)
    return response.reason_phrase or f"HTTP {response.status_code}"


class ApiClient:
    """
    Thin wrapper over httpx.AsyncClient.

    Every request carries the session's bearer token. Without a token no
    request is built and AuthorizationFailure is raised immediately.
    401/403 responses raise AuthorizationFailure; any other failure raises
    TransientNetworkFailure. Nothing is retried.
    """

    def __init__(self, session: SessionGuard, base_url: str = "http://localhost:5000/api",
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.session = session
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        token = self.session.token
        if not token:
            raise AuthorizationFailure("Not signed in")

        headers = kwargs.pop('headers', {})
        headers['Authorization'] = f"Bearer {token}"

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise TransientNetworkFailure(f"Network error: {e}") from e

        if response.status_code in (401, 403):
            raise AuthorizationFailure(_error_detail(response), status_code=response.status_code)
        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error("%s %s -> %d: %s", method, path, response.status_code, detail)
            raise TransientNetworkFailure(detail, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise TransientNetworkFailure(f"Invalid JSON from {path}") from e

    async def get_students(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params = {k: v for k, v in (filters or {}).items() if v not in (None, '')}
        return await self._request('GET', '/students', params=params)

    async def get_student(self, student_id: str) -> Dict[str, Any]:
        return await self._request('GET', f'/students/{student_id}')

    async def get_summary(self) -> Dict[str, Any]:
        return await self._request('GET', '/students/dashboard/summary')

    async def upload(self, category: UploadCategory, filename: str, content: bytes) -> Dict[str, Any]:
        extension = filename[filename.rfind('.'):].lower() if '.' in filename else ''
        content_type = CONTENT_TYPES.get(extension, "application/octet-stream")
        files = {'file': (filename, content, content_type)}
        return await self._request('POST', f'/upload/{UploadCategory(category).value}', files=files)

    async def recalculate(self, student_id: str) -> Dict[str, Any]:
        return await self._request('POST', f'/students/{student_id}/recalculate')

    async def recalculate_all(self) -> Dict[str, Any]:
        return await self._request('POST', '/students/recalculate-all-risks')

    async def get_actions(self, student_id: str) -> Dict[str, Any]:
        return await self._request('GET', f'/students/{student_id}/actions')

    async def create_action(self, student_id: str, action: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request('POST', f'/students/{student_id}/actions', json=action)

    async def decide_action(self, student_id: str, action_id: str, status: str,
                            rejection_reason: str = '') -> Dict[str, Any]:
        body = {'status': status, 'rejection_reason': rejection_reason}
        return await self._request('PUT', f'/students/{student_id}/actions/{action_id}', json=body)

    async def delete_student(self, student_id: str) -> Dict[str, Any]:
        return await self._request('DELETE', f'/students/{student_id}')

    async def delete_all(self) -> Dict[str, Any]:
        return await self._request('DELETE', '/students')

    async def delete_partition(self, student_id: str, actor: Actor) -> Dict[str, Any]:
        return await self._request('DELETE', f'/students/{student_id}/{PARTITION_PATHS[Actor(actor)]}')

    async def cleanup_duplicates(self) -> Dict[str, Any]:
        return await self._request('POST', '/students/cleanup-duplicates')

    async def send_notifications(self) -> Dict[str, Any]:
        return await self._request('POST', '/notifications', json={}, timeout=NOTIFICATION_TIMEOUT)
