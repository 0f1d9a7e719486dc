import asyncio
from typing import Any, Dict, Optional, Protocol

import requests

from outreach.config import HTTP_CONNECT_TIMEOUT_S, HTTP_READ_TIMEOUT_S, VOICE_AGENT_API_KEY, VOICE_AGENT_URL
from outreach.errors import ErrorCode, VoiceAgentError, category_for
from outreach.logging_config import get_logger, mask_phone
from outreach.schemas.voice import AppointmentResult, CallMetrics, ConversationResult

logger = get_logger(__name__)


class VoiceAgent(Protocol):
    """
    Operations the call state machine needs from a voice agent.

    An agent may also offer ``detect_voicemail() -> bool``; the DIALING state
    uses it when present and otherwise assumes a live answer.
    """

    async def start_call(self, phone_number: str, contact: Dict[str, Any]) -> bool: ...

    async def handle_phone_tree(self) -> bool: ...

    async def conduct_conversation(self) -> ConversationResult: ...

    async def schedule_appointment(self, details: Dict[str, Any]) -> AppointmentResult: ...

    async def end_call(self) -> None: ...

    async def health_check(self) -> bool: ...

    async def get_call_metrics(self) -> CallMetrics: ...


def _error(code: ErrorCode, message: str, details: Optional[dict] = None) -> VoiceAgentError:
    return VoiceAgentError(code, message, category_for(code).retryable, details)


class HTTPVoiceAgentClient:
    """
    Voice agent spoken to over HTTP.

    Every endpoint answers with ``{"status": "SUCCESS", "data": {...}}`` or a
    ``{"status": "FAILED", "error": {...}}`` body. Requests are blocking, so
    each one runs in a worker thread to keep the event loop free.
    """

    def __init__(
        self,
        base_url: str = VOICE_AGENT_URL,
        api_key: str = VOICE_AGENT_API_KEY,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.call_id: Optional[str] = None

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            h["Idempotency-Key"] = idempotency_key
        return h

    def _parse_error(self, resp: requests.Response, default_code: ErrorCode) -> VoiceAgentError:
        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code in (401, 403):
            return _error(ErrorCode.AUTHENTICATION, f"Voice agent rejected credentials (HTTP {resp.status_code})")
        if resp.status_code == 429:
            return _error(ErrorCode.RATE_LIMITED, "Voice agent is throttling requests")

        if isinstance(body, dict) and body.get("status") == "FAILED" and isinstance(body.get("error"), dict):
            err = body["error"]
            try:
                code = ErrorCode(err.get("code"))
            except ValueError:
                code = default_code if resp.status_code >= 500 else ErrorCode.CONFIGURATION
            return _error(code, err.get("message", f"HTTP {resp.status_code}"), err)

        code = default_code if resp.status_code >= 500 else ErrorCode.CONFIGURATION
        return _error(
            code,
            f"Voice agent returned HTTP {resp.status_code}",
            body if isinstance(body, dict) else None,
        )

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        default_code: ErrorCode = ErrorCode.VOICE_PROCESSING,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = self.base_url + path
        timeout = (HTTP_CONNECT_TIMEOUT_S, HTTP_READ_TIMEOUT_S)

        try:
            resp = self.session.request(
                method, url, json=payload, headers=self._headers(idempotency_key), timeout=timeout
            )
        except requests.Timeout as e:
            raise _error(ErrorCode.API_TIMEOUT, str(e)) from e
        except requests.RequestException as e:
            raise _error(ErrorCode.NETWORK_FAILURE, str(e)) from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise self._parse_error(resp, default_code)

        try:
            out = resp.json()
        except ValueError:
            raise _error(default_code, "Voice agent returned non-JSON") from None

        if out.get("status") != "SUCCESS":
            err = out.get("error") or {}
            raise _error(default_code, err.get("message", f"{path} failed"), err)

        data = out.get("data", {})
        if not isinstance(data, dict):
            raise _error(default_code, "Missing data object")
        return data

    async def _call(self, method: str, path: str, payload: Optional[dict] = None, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, method, path, payload, **kwargs)

    def _call_path(self, suffix: str) -> str:
        if not self.call_id:
            raise _error(ErrorCode.INVALID_TRANSITION, "No active call")
        return f"/v1/calls/{self.call_id}{suffix}"

    async def start_call(self, phone_number: str, contact: Dict[str, Any]) -> bool:
        data = await self._call(
            "POST",
            "/v1/calls",
            {"phone_number": phone_number, "contact": contact},
            default_code=ErrorCode.NETWORK_FAILURE,
        )
        self.call_id = data.get("call_id")
        connected = bool(data.get("connected", False))
        logger.info("Call started", call_id=self.call_id, phone=mask_phone(phone_number), connected=connected)
        return connected

    async def detect_voicemail(self) -> bool:
        data = await self._call("POST", self._call_path("/voicemail-detection"))
        return bool(data.get("voicemail", False))

    async def handle_phone_tree(self) -> bool:
        data = await self._call("POST", self._call_path("/phone-tree"), default_code=ErrorCode.PHONE_TREE_NAV)
        return bool(data.get("success", False))

    async def conduct_conversation(self) -> ConversationResult:
        data = await self._call("POST", self._call_path("/conversation"))
        return ConversationResult(**data)

    async def schedule_appointment(self, details: Dict[str, Any]) -> AppointmentResult:
        data = await self._call(
            "POST",
            self._call_path("/appointments"),
            details,
            default_code=ErrorCode.CALENDAR_SYNC,
            idempotency_key=f"{self.call_id}:appointment",
        )
        return AppointmentResult(**data)

    async def end_call(self) -> None:
        if not self.call_id:
            return
        await self._call("POST", self._call_path("/end"))
        logger.info("Call ended", call_id=self.call_id)
        self.call_id = None

    async def get_call_metrics(self) -> CallMetrics:
        data = await self._call("GET", self._call_path("/metrics"))
        return CallMetrics(**data)

    async def health_check(self) -> bool:
        try:
            resp = await asyncio.to_thread(
                self.session.get, self.base_url + "/health", timeout=(HTTP_CONNECT_TIMEOUT_S, HTTP_CONNECT_TIMEOUT_S)
            )
        except requests.RequestException as e:
            logger.warning("Voice agent health check failed", error=str(e))
            return False
        return resp.status_code == 200

    def close(self) -> None:
        self.session.close()
