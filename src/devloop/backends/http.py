"""HTTP backend for an opencode-compatible agent server."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import LoopConfig, ModelSpec
from ..errors import BackendError, BackendUnavailable, EmptyResponse, SessionNotFound
from .base import AgentBackend, SessionRef
from .events import BackendEvent
from .process import ManagedProcess

logger = logging.getLogger(__name__)

READY_POLL_INTERVAL = 0.5


def extract_text(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    texts = [
        part["text"]
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
    ]
    return "\n".join(texts)


class HttpAgentBackend(AgentBackend):
    def __init__(
        self,
        config: LoopConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.base_url = (
            config.server_url or f"http://{config.server_hostname}:{config.server_port}"
        ).rstrip("/")
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._server: Optional[ManagedProcess] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.config.request_timeout, connect=10.0),
                transport=self._transport,
            )
        return self._http_client

    async def start(self) -> None:
        if self.config.server_url is None and self._transport is None:
            await self._spawn_server()
        await self._wait_until_ready()

    async def _spawn_server(self) -> None:
        argv = [
            self.config.agent_command,
            "serve",
            "--hostname",
            self.config.server_hostname,
            "--port",
            str(self.config.server_port),
        ]
        self._server = ManagedProcess(
            argv,
            cwd=self.config.project_dir,
            on_stdout=lambda line: logger.debug("[server] %s", line),
            on_stderr=lambda line: logger.debug("[server:stderr] %s", line),
        )
        try:
            await self._server.start()
        except OSError as exc:
            self._server = None
            raise BackendUnavailable(f"Failed to start {self.config.agent_command} serve: {exc}") from exc

    async def _wait_until_ready(self) -> None:
        client = await self._get_client()
        deadline = time.monotonic() + self.config.server_start_timeout
        last_error: Optional[BaseException] = None
        while time.monotonic() < deadline:
            if self._server is not None and self._server.returncode is not None:
                tail = " | ".join(self._server.stderr_tail)
                raise BackendUnavailable(
                    f"Agent server exited with code {self._server.returncode} during startup: {tail}"
                )
            try:
                response = await client.get("/session", timeout=5.0)
                if response.status_code < 500:
                    logger.info("Agent server ready at %s", self.base_url)
                    return
                last_error = BackendError(f"HTTP {response.status_code}", status_code=response.status_code)
            except httpx.HTTPError as exc:
                last_error = exc
            await asyncio.sleep(READY_POLL_INTERVAL)
        raise BackendUnavailable(
            f"Agent server at {self.base_url} not ready after "
            f"{self.config.server_start_timeout:g}s: {last_error}"
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        session_id: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 404 and session_id is not None:
            raise SessionNotFound(session_id)
        if response.status_code >= 400:
            raise BackendError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"Invalid JSON from agent server: {exc}") from exc

    async def create_session(self, title: str) -> SessionRef:
        data = self._json(await self._request("POST", "/session", json={"title": title}))
        if not isinstance(data, dict) or not data.get("id"):
            raise BackendError("Failed to create session: response has no id")
        return SessionRef(id=str(data["id"]), title=data.get("title") or title)

    async def get_session(self, session_id: str) -> SessionRef:
        data = self._json(await self._request("GET", f"/session/{session_id}", session_id=session_id))
        title = data.get("title") if isinstance(data, dict) else None
        return SessionRef(id=session_id, title=title)

    async def send_prompt(self, session_id: str, text: str, model: ModelSpec) -> str:
        body = {
            "model": {"providerID": model.provider_id, "modelID": model.model_id},
            "parts": [{"type": "text", "text": text}],
        }
        response = await self._request(
            "POST",
            f"/session/{session_id}/message",
            session_id=session_id,
            json=body,
            timeout=self.config.request_timeout,
        )
        data = self._json(response)
        if not data:
            raise EmptyResponse("No response from agent server")
        result = extract_text(data.get("parts") if isinstance(data, dict) else None)
        if not result.strip():
            raise EmptyResponse()
        return result

    async def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        client = await self._get_client()
        async with client.stream("GET", "/event", timeout=httpx.Timeout(None, connect=10.0)) as response:
            if response.status_code >= 400:
                raise BackendError(
                    f"Event stream returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line.strip() or not data_lines:
                    continue
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    raw = json.loads(payload)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed event payload: %.200s", payload)
                    continue
                if isinstance(raw, dict):
                    yield BackendEvent.from_raw(raw)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/session/{session_id}", session_id=session_id)

    async def abort_session(self, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/abort", session_id=session_id)

    async def close(self) -> None:
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as exc:
                logger.debug("Failed to close HTTP client: %s", exc)
            self._http_client = None
        if self._server is not None:
            await self._server.terminate(self.config.shutdown_grace_seconds)
            logger.info("Agent server stopped")
            self._server = None

    def kill_now(self) -> None:
        if self._server is not None:
            self._server.kill_now()
