"""HTTP client the stores use to reach the proxy gateway."""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """A gateway call failed: non-2xx response or network error."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    return f"{fallback}: {response.reason_phrase or response.status_code}"


def _compact(**fields) -> dict:
    """Drop unset fields so the backend applies its own defaults."""
    return {k: v for k, v in fields.items() if v is not None}


class GatewayClient:
    """Async wrapper over the gateway's ``/api`` routes.

    Every method returns the decoded JSON body or raises ``ApiError``.
    """

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        error: str = "Request failed",
    ) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise ApiError(f"{error}: network error") from e

        if not response.is_success:
            raise ApiError(_error_message(response, error), status=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"{error}: invalid response body", status=response.status_code) from e

    # ── Chat sessions ────────────────────────────────────────────

    async def list_sessions(self, user_id: str) -> Any:
        return await self.request(
            "GET", "/api/chat/sessions", params={"user_id": user_id}, error="Failed to load sessions"
        )

    async def create_session(self, user_id: str, title: Optional[str], workspace_id: Optional[str]) -> Any:
        return await self.request(
            "POST",
            "/api/chat/sessions",
            params={"user_id": user_id},
            json=_compact(title=title, workspace_id=workspace_id),
            error="Failed to create session",
        )

    async def rename_session(self, user_id: str, session_id: str, title: str) -> Any:
        return await self.request(
            "PATCH",
            f"/api/chat/sessions/{session_id}",
            params={"user_id": user_id},
            json={"title": title},
            error="Failed to rename session",
        )

    async def delete_session(self, user_id: str, session_id: str) -> Any:
        return await self.request(
            "DELETE", f"/api/chat/sessions/{session_id}", params={"user_id": user_id},
            error="Failed to delete session",
        )

    async def list_session_messages(self, user_id: str, session_id: str) -> Any:
        return await self.request(
            "GET", f"/api/chat/sessions/{session_id}/messages", params={"user_id": user_id},
            error="Failed to load messages",
        )

    async def add_session_message(self, user_id: str, session_id: str, body: dict) -> Any:
        return await self.request(
            "POST",
            f"/api/chat/sessions/{session_id}/messages",
            params={"user_id": user_id},
            json=body,
            error="Failed to send message",
        )

    async def clear_session_messages(self, user_id: str, session_id: str) -> Any:
        return await self.request(
            "DELETE", f"/api/chat/sessions/{session_id}/messages", params={"user_id": user_id},
            error="Failed to clear messages",
        )

    async def share_session(self, user_id: str, session_id: str, participant_emails: list[str]) -> Any:
        return await self.request(
            "POST",
            f"/api/chat/sessions/{session_id}/share",
            params={"user_id": user_id},
            json={"participant_emails": participant_emails},
            error="Failed to enable sharing",
        )

    async def unshare_session(self, user_id: str, session_id: str) -> Any:
        return await self.request(
            "DELETE", f"/api/chat/sessions/{session_id}/share", params={"user_id": user_id},
            error="Failed to make session private",
        )

    async def list_session_participants(self, user_id: str, session_id: str) -> Any:
        return await self.request(
            "GET", f"/api/chat/sessions/{session_id}/participants", params={"user_id": user_id},
            error="Failed to load participants",
        )

    async def add_session_participant(self, user_id: str, session_id: str, email: str) -> Any:
        return await self.request(
            "POST",
            f"/api/chat/sessions/{session_id}/participants",
            params={"user_id": user_id},
            json={"email": email},
            error="Failed to add participant",
        )

    async def remove_session_participant(self, user_id: str, session_id: str, participant_id: str) -> Any:
        return await self.request(
            "DELETE",
            f"/api/chat/sessions/{session_id}/participants/{participant_id}",
            params={"user_id": user_id},
            error="Failed to remove participant",
        )

    # ── Workspaces ───────────────────────────────────────────────

    async def list_workspaces(self, user_id: str) -> Any:
        return await self.request(
            "GET", "/api/workspaces", params={"user_id": user_id}, error="Failed to list workspaces"
        )

    async def create_workspace(self, user_id: str, name: Optional[str]) -> Any:
        return await self.request(
            "POST", "/api/workspaces", params={"user_id": user_id}, json=_compact(name=name),
            error="Failed to create workspace",
        )

    async def get_workspace(self, user_id: str, workspace_id: str) -> Any:
        return await self.request(
            "GET", f"/api/workspaces/{workspace_id}", params={"user_id": user_id},
            error="Failed to get workspace",
        )

    async def delete_workspace(self, user_id: str, workspace_id: str) -> Any:
        return await self.request(
            "DELETE", f"/api/workspaces/{workspace_id}", params={"user_id": user_id},
            error="Failed to delete workspace",
        )

    async def list_workspace_messages(self, user_id: str, workspace_id: str) -> Any:
        return await self.request(
            "GET", f"/api/workspaces/{workspace_id}/messages", params={"user_id": user_id},
            error="Failed to get messages",
        )

    async def workspace_chat(self, user_id: str, workspace_id: str, message: str, schema_levels: Optional[dict]) -> Any:
        return await self.request(
            "POST",
            f"/api/workspaces/{workspace_id}/chat",
            params={"user_id": user_id},
            json=_compact(message=message, schemaLevels=schema_levels),
            error="Failed to send message",
        )

    async def clear_workspace(self, user_id: str, workspace_id: str) -> Any:
        return await self.request(
            "POST", f"/api/workspaces/{workspace_id}/clear", params={"user_id": user_id},
            error="Failed to clear messages",
        )

    async def list_documents(self, user_id: str, workspace_id: str) -> Any:
        return await self.request(
            "GET", f"/api/workspaces/{workspace_id}/documents", params={"user_id": user_id},
            error="Failed to get documents",
        )

    async def add_document(self, user_id: str, workspace_id: str, body: dict) -> Any:
        return await self.request(
            "POST", f"/api/workspaces/{workspace_id}/documents", params={"user_id": user_id}, json=body,
            error="Failed to add document",
        )

    async def set_active_document(self, user_id: str, workspace_id: str, file_id: str) -> Any:
        return await self.request(
            "PUT",
            f"/api/workspaces/{workspace_id}/documents/{file_id}/active",
            params={"user_id": user_id},
            error="Failed to set active document",
        )

    async def add_workspace_participant(self, added_by: str, workspace_id: str, user_id: str) -> Any:
        return await self.request(
            "POST",
            f"/api/workspaces/{workspace_id}/participants",
            params={"added_by": added_by},
            json={"user_id": user_id},
            error="Failed to add participant",
        )

    async def remove_workspace_participant(self, removed_by: str, workspace_id: str, user_id: str) -> Any:
        return await self.request(
            "DELETE",
            f"/api/workspaces/{workspace_id}/participants/{user_id}",
            params={"removed_by": removed_by},
            error="Failed to remove participant",
        )

    # ── Logs and exports ─────────────────────────────────────────

    async def get_logs(self, lines: int = 200, level: Optional[str] = None) -> Any:
        return await self.request(
            "GET", "/api/logs", params=_compact(lines=lines, level=level), error="Failed to fetch logs"
        )

    async def export_pass(self, job_id: str, file_id: str, pass_number: int, format: str = "same") -> Any:
        return await self.request(
            "GET",
            f"/api/jobs/{job_id}/export_pass",
            params={"file_id": file_id, "pass": pass_number, "format": format},
            error="Failed to export pass",
        )

    async def export_google_doc(self, job_id: str, folder_id: Optional[str] = None) -> Any:
        return await self.request(
            "POST",
            f"/api/jobs/{job_id}/export-google-doc",
            json=_compact(folder_id=folder_id),
            error="Failed to export to Google Docs",
        )
