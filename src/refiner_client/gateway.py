"""FastAPI proxy gateway in front of the refinement backend.

Every route validates its identifying query parameter, forwards the call to
the same path on the backend with the API key attached, and answers with the
upstream payload or an ``{"error": ...}`` envelope. The log and job export
routes keep the envelopes their callers expect (``logs``/``lines`` arrays,
export ``status``/``warnings``).
"""

import logging
from contextlib import asynccontextmanager
from urllib.parse import quote

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .config import get_backend_api_key, get_backend_url

logger = logging.getLogger(__name__)

# Upstream client cache (created on first request)
_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Lazily create and cache the upstream HTTP client."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=60.0)
    return _client


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _client
    try:
        yield
    finally:
        if _client is not None:
            await _client.aclose()
            _client = None


app = FastAPI(title="refiner-gateway", version="0.1.0", lifespan=lifespan)


def _seg(value: str) -> str:
    return quote(value, safe="")


def _error(message: str, status: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


def _missing(name: str, **extra) -> JSONResponse:
    return _error(f"{name} is required", 400, **extra)


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _upstream(
    method: str,
    url: str,
    params: dict,
    body: dict | None = None,
    timeout: float | None = None,
) -> tuple[httpx.Response, object]:
    """Call the backend; returns the response and its JSON body (None if not JSON)."""
    headers = {"Accept": "application/json", "X-API-Key": get_backend_api_key()}
    kwargs = {"timeout": timeout} if timeout is not None else {}
    response = await _get_client().request(method, url, params=params, json=body, headers=headers, **kwargs)
    try:
        payload = response.json()
    except ValueError:
        payload = None
    return response, payload


async def _forward(
    method: str,
    path: str,
    params: dict,
    fallback: str,
    body: dict | None = None,
    envelope: dict | None = None,
) -> JSONResponse:
    """Send one request upstream and map the outcome to a local response."""
    envelope = envelope or {}
    backend_url = get_backend_url()
    if not backend_url:
        logger.error("REFINER_BACKEND_URL not configured")
        return _error("Backend not configured", 503, **envelope)

    try:
        response, payload = await _upstream(method, f"{backend_url}{path}", params, body)
    except httpx.HTTPError as e:
        logger.error("%s: %s", fallback, e)
        return _error(fallback, 500, **envelope)

    if not response.is_success:
        logger.warning("%s %s -> %s", method, path, response.status_code)
        if not payload:
            payload = {"error": fallback, **envelope}
        return JSONResponse(payload, status_code=response.status_code)
    return JSONResponse(payload)


# ── Routes ───────────────────────────────────────────────────────


@app.get("/health")
async def health():
    """Report whether the backend is configured."""
    return {"status": "healthy", "backend_configured": get_backend_url() is not None}


# Chat sessions


@app.get("/api/chat/sessions")
async def list_sessions(user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward("GET", "/chat/sessions", {"user_id": user_id}, "Failed to list sessions")


@app.post("/api/chat/sessions")
async def create_session(request: Request, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward("POST", "/chat/sessions", {"user_id": user_id}, "Failed to create session", body)


@app.get("/api/chat/sessions/{session_id}")
async def get_session(session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "GET", f"/chat/sessions/{_seg(session_id)}", {"user_id": user_id}, "Failed to get session"
    )


@app.patch("/api/chat/sessions/{session_id}")
async def rename_session(request: Request, session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward(
        "PATCH", f"/chat/sessions/{_seg(session_id)}", {"user_id": user_id}, "Failed to rename session", body
    )


@app.delete("/api/chat/sessions/{session_id}")
async def delete_session(session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "DELETE", f"/chat/sessions/{_seg(session_id)}", {"user_id": user_id}, "Failed to delete session"
    )


@app.get("/api/chat/sessions/{session_id}/messages")
async def get_session_messages(session_id: str, user_id: str | None = None, limit: str = "100"):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "GET",
        f"/chat/sessions/{_seg(session_id)}/messages",
        {"user_id": user_id, "limit": limit},
        "Failed to get messages",
    )


@app.post("/api/chat/sessions/{session_id}/messages")
async def add_session_message(request: Request, session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward(
        "POST", f"/chat/sessions/{_seg(session_id)}/messages", {"user_id": user_id}, "Failed to add message", body
    )


@app.delete("/api/chat/sessions/{session_id}/messages")
async def clear_session_messages(session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "DELETE", f"/chat/sessions/{_seg(session_id)}/messages", {"user_id": user_id}, "Failed to clear messages"
    )


@app.get("/api/chat/sessions/{session_id}/participants")
async def get_session_participants(session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "GET", f"/chat/sessions/{_seg(session_id)}/participants", {"user_id": user_id}, "Failed to get participants"
    )


@app.post("/api/chat/sessions/{session_id}/participants")
async def add_session_participant(request: Request, session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward(
        "POST",
        f"/chat/sessions/{_seg(session_id)}/participants",
        {"user_id": user_id},
        "Failed to add participant",
        body,
    )


@app.delete("/api/chat/sessions/{session_id}/participants/{participant_id}")
async def remove_session_participant(session_id: str, participant_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "DELETE",
        f"/chat/sessions/{_seg(session_id)}/participants/{_seg(participant_id)}",
        {"user_id": user_id},
        "Failed to remove participant",
    )


@app.post("/api/chat/sessions/{session_id}/share")
async def share_session(request: Request, session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward(
        "POST", f"/chat/sessions/{_seg(session_id)}/share", {"user_id": user_id}, "Failed to share session", body
    )


@app.delete("/api/chat/sessions/{session_id}/share")
async def unshare_session(session_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "DELETE", f"/chat/sessions/{_seg(session_id)}/share", {"user_id": user_id}, "Failed to unshare session"
    )


# Workspaces


@app.get("/api/workspaces")
async def list_workspaces(user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward("GET", "/workspaces", {"user_id": user_id}, "Failed to list workspaces")


@app.post("/api/workspaces")
async def create_workspace(request: Request, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward("POST", "/workspaces", {"user_id": user_id}, "Failed to create workspace", body)


@app.get("/api/workspaces/{workspace_id}")
async def get_workspace(workspace_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward("GET", f"/workspaces/{_seg(workspace_id)}", {"user_id": user_id}, "Failed to get workspace")


@app.delete("/api/workspaces/{workspace_id}")
async def delete_workspace(workspace_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "DELETE", f"/workspaces/{_seg(workspace_id)}", {"user_id": user_id}, "Failed to delete workspace"
    )


@app.get("/api/workspaces/{workspace_id}/messages")
async def get_workspace_messages(workspace_id: str, user_id: str | None = None, limit: str | None = None):
    if not user_id:
        return _missing("user_id")
    params = {"user_id": user_id}
    if limit:
        params["limit"] = limit
    return await _forward("GET", f"/workspaces/{_seg(workspace_id)}/messages", params, "Failed to get messages")


@app.post("/api/workspaces/{workspace_id}/chat")
async def workspace_chat(request: Request, workspace_id: str, user_id: str | None = None):
    """Send a message to the workspace's AI chat and relay the reply."""
    if not user_id:
        return _missing("user_id", success=False)
    body = await _read_body(request)
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return _error("Message cannot be empty", 400, success=False)
    return await _forward(
        "POST",
        f"/workspaces/{_seg(workspace_id)}/chat",
        {"user_id": user_id},
        "Failed to process chat",
        body,
        envelope={"success": False, "reply": "I encountered an error. Please try again."},
    )


@app.post("/api/workspaces/{workspace_id}/clear")
async def clear_workspace(workspace_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward("POST", f"/workspaces/{_seg(workspace_id)}/clear", {"user_id": user_id}, "Failed to clear messages")


@app.get("/api/workspaces/{workspace_id}/documents")
async def get_workspace_documents(workspace_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "GET", f"/workspaces/{_seg(workspace_id)}/documents", {"user_id": user_id}, "Failed to get documents"
    )


@app.post("/api/workspaces/{workspace_id}/documents")
async def add_workspace_document(request: Request, workspace_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    body = await _read_body(request)
    return await _forward(
        "POST", f"/workspaces/{_seg(workspace_id)}/documents", {"user_id": user_id}, "Failed to add document", body
    )


@app.put("/api/workspaces/{workspace_id}/documents/{file_id}/active")
async def set_active_document(workspace_id: str, file_id: str, user_id: str | None = None):
    if not user_id:
        return _missing("user_id")
    return await _forward(
        "PUT",
        f"/workspaces/{_seg(workspace_id)}/documents/{_seg(file_id)}/active",
        {"user_id": user_id},
        "Failed to set active document",
    )


@app.post("/api/workspaces/{workspace_id}/participants")
async def add_workspace_participant(request: Request, workspace_id: str, added_by: str | None = None):
    if not added_by:
        return _missing("added_by")
    body = await _read_body(request)
    return await _forward(
        "POST", f"/workspaces/{_seg(workspace_id)}/participants", {"added_by": added_by}, "Failed to add participant", body
    )


@app.delete("/api/workspaces/{workspace_id}/participants/{target_user_id}")
async def remove_workspace_participant(workspace_id: str, target_user_id: str, removed_by: str | None = None):
    if not removed_by:
        return _missing("removed_by")
    return await _forward(
        "DELETE",
        f"/workspaces/{_seg(workspace_id)}/participants/{_seg(target_user_id)}",
        {"removed_by": removed_by},
        "Failed to remove participant",
    )


# Backend logs

LOGS_TIMEOUT = 10.0
DEFAULT_LOG_LINES = 200
MAX_LOG_LINES = 1000


def _logs_error(message: str, status: int) -> JSONResponse:
    return _error(message, status, logs=[], lines=[])


@app.get("/api/logs")
async def get_logs(lines: str = str(DEFAULT_LOG_LINES), level: str | None = None):
    """Tail the backend's log buffer; ``lines`` is clamped to 1..1000."""
    try:
        count = int(lines)
    except ValueError:
        count = DEFAULT_LOG_LINES
    count = max(1, min(MAX_LOG_LINES, count))

    backend_url = get_backend_url()
    if not backend_url:
        logger.error("/api/logs: REFINER_BACKEND_URL not configured")
        return _logs_error("Backend URL not configured", 503)

    params = {"lines": count}
    if level:
        params["level"] = level
    try:
        response, payload = await _upstream("GET", f"{backend_url}/logs", params, timeout=LOGS_TIMEOUT)
    except httpx.TimeoutException as e:
        logger.error("/api/logs timed out: %s", e)
        return _logs_error("Backend connection timeout", 504)
    except httpx.HTTPError as e:
        logger.error("/api/logs fetch error: %s", e)
        return _logs_error(f"Backend connection failed: {e}", 502)

    if not response.is_success:
        logger.error("/api/logs upstream error: %s", response.status_code)
        return _logs_error(f"Backend returned {response.status_code}", response.status_code)
    if not isinstance(payload, dict):
        return _logs_error("Internal server error", 500)
    return JSONResponse(payload)


# Job exports


def _export_error(warning: str, status: int) -> JSONResponse:
    body = {"status": "error", "format": None, "download_url": None, "warnings": [warning]}
    return JSONResponse(body, status_code=status)


def _google_doc_error(warning: str, message: str, status: int) -> JSONResponse:
    body = {
        "status": "error",
        "doc_id": None,
        "doc_url": None,
        "title": None,
        "warnings": [warning],
        "error": message,
    }
    return JSONResponse(body, status_code=status)


@app.get("/api/jobs/{job_id}/export_pass")
async def export_pass(
    job_id: str,
    file_id: str | None = None,
    pass_number: str | None = Query(None, alias="pass"),
    format: str = "same",
):
    """Ask the backend for a download link to one refinement pass."""
    if not file_id or not pass_number:
        return _export_error("missing_parameters", 400)

    backend_url = get_backend_url()
    if not backend_url:
        logger.error("REFINER_BACKEND_URL not configured")
        return _export_error("backend_not_configured", 500)

    params = {"file_id": file_id, "pass": pass_number, "format": format or "same"}
    try:
        response, payload = await _upstream("GET", f"{backend_url}/jobs/{_seg(job_id)}/export_pass", params)
    except httpx.HTTPError as e:
        logger.error("Export pass error: %s", e)
        return _export_error("unexpected_export_error", 500)

    if not response.is_success:
        if payload:
            return JSONResponse(payload, status_code=response.status_code)
        return _export_error("backend_export_failed", response.status_code)
    return JSONResponse(payload)


@app.post("/api/jobs/{job_id}/export-google-doc")
async def export_google_doc(request: Request, job_id: str):
    """Export a job's refined document to Google Docs, optionally into ``folder_id``."""
    body = await _read_body(request)
    folder_id = body.get("folder_id")

    backend_url = get_backend_url()
    if not backend_url:
        logger.error("REFINER_BACKEND_URL not configured")
        return _google_doc_error("backend_not_configured", "Backend is not configured", 500)

    params = {"folder_id": folder_id} if folder_id else {}
    logger.info("Exporting job %s to Google Docs", job_id)
    try:
        response, payload = await _upstream("POST", f"{backend_url}/jobs/{_seg(job_id)}/export/google-doc", params)
    except httpx.HTTPError as e:
        logger.error("Google Docs export failed for job %s: %s", job_id, e)
        return _google_doc_error("unexpected_export_error", str(e) or "Unknown error", 500)

    if not response.is_success:
        logger.error("Google Docs export for job %s returned %s", job_id, response.status_code)
        if payload:
            return JSONResponse(payload, status_code=response.status_code)
        return _google_doc_error("backend_export_failed", "Backend export failed", response.status_code)
    return JSONResponse(payload)
