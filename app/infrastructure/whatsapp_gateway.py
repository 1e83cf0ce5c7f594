"""
WhatsApp Web client over a self-hosted HTTP gateway.

The gateway runs the headless browser that holds the WhatsApp Web session
and persists its credentials, so a paired session survives restarts of this
service. This module turns the gateway's session status into the events the
session manager listens to: "qr", "ready", "auth_failure", "disconnected".
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

# Gateway session states
GATEWAY_STARTING = "STARTING"
GATEWAY_SCAN_QR = "SCAN_QR_CODE"
GATEWAY_WORKING = "WORKING"
GATEWAY_FAILED = "FAILED"
GATEWAY_STOPPED = "STOPPED"

# Disconnect reasons that mean the phone unlinked this device
LOGOUT_REASONS = frozenset({"LOGOUT", "UNPAIRED", "UNPAIRED_IDLE"})


class ChatClientError(Exception):
    """Raised by chat clients; `permanent` marks failures a retry cannot fix."""

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class ChatClient(ABC):
    """
    A single-operator chat client with an event-driven lifecycle.

    Implementations emit "qr" (payload), "ready", "auth_failure" (message)
    and "disconnected" (reason). Commands must not be issued concurrently.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Chat client handler for '{event}' failed")

    @abstractmethod
    async def start(self) -> None:
        """Begin bringing the session up; returns once the runtime accepted it."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> None:
        """Send a text message; raises ChatClientError on failure."""

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device and purge persisted credentials."""

    @abstractmethod
    async def destroy(self) -> None:
        """Stop the client, keeping persisted credentials."""

    @abstractmethod
    async def has_stored_session(self) -> bool:
        """Whether credentials from an earlier pairing are available."""

    async def close(self) -> None:
        """Release local resources without touching the remote session."""


class GatewayChatClient(ChatClient):
    """ChatClient backed by a WhatsApp Web HTTP gateway."""

    def __init__(
        self,
        base_url: str,
        session_name: str = "default",
        api_key: Optional[str] = None,
        poll_interval: float = 2.0,
        max_poll_failures: int = 5,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        headers = {"X-Api-Key": api_key} if api_key else {}
        self.session_name = session_name
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._poll_task: Optional[asyncio.Task] = None
        self._last_status: Optional[str] = None
        self._last_qr: Optional[str] = None
        self._ready = False
        self._ended = False

    async def start(self) -> None:
        response = await self._http.post(f"/api/sessions/{self.session_name}/start")
        # 422 means the gateway already runs this session
        if response.status_code not in (200, 201, 422):
            raise ChatClientError(
                f"Gateway refused to start session: {response.status_code} {response.text}"
            )
        logger.info(f"WhatsApp gateway session '{self.session_name}' starting")
        await self.poll_once()
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def send_text(self, chat_id: str, text: str) -> None:
        try:
            response = await self._http.post(
                "/api/sendText",
                json={"session": self.session_name, "chatId": chat_id, "text": text},
            )
        except httpx.HTTPError as e:
            raise ChatClientError(f"Gateway unreachable: {e}") from e

        if response.status_code >= 500:
            raise ChatClientError(f"Gateway error {response.status_code}: {response.text}")
        if response.status_code >= 400:
            raise ChatClientError(
                f"Message rejected ({response.status_code}): {response.text}",
                permanent=True,
            )

    async def logout(self) -> None:
        response = await self._http.post(f"/api/sessions/{self.session_name}/logout")
        if response.status_code >= 400 and response.status_code != 404:
            raise ChatClientError(f"Gateway logout failed: {response.status_code}")
        logger.info(f"WhatsApp gateway session '{self.session_name}' logged out")

    async def destroy(self) -> None:
        await self._stop_polling()
        try:
            await self._http.post(f"/api/sessions/{self.session_name}/stop")
        except httpx.HTTPError as e:
            logger.warning(f"Gateway stop failed: {e}")
        finally:
            await self._http.aclose()

    async def has_stored_session(self) -> bool:
        try:
            response = await self._http.get(f"/api/sessions/{self.session_name}")
        except httpx.HTTPError as e:
            logger.warning(f"Gateway unreachable while checking stored session: {e}")
            return False
        if response.status_code != 200:
            return False
        return response.json().get("status") != GATEWAY_SCAN_QR

    async def close(self) -> None:
        await self._stop_polling()
        await self._http.aclose()

    async def poll_once(self) -> Optional[str]:
        """
        Fetch the gateway status once and emit any resulting events.

        Returns:
            The gateway status string
        """
        response = await self._http.get(f"/api/sessions/{self.session_name}")
        response.raise_for_status()
        status = response.json().get("status", GATEWAY_STARTING)

        if self._ready and status in (GATEWAY_SCAN_QR, GATEWAY_STARTING):
            # A paired session fell back to pairing or restarted under us
            self._ready = False
            self._last_qr = None
            self._ended = True
            self.emit("disconnected", "UNPAIRED" if status == GATEWAY_SCAN_QR else "RESTARTING")
        elif status == GATEWAY_SCAN_QR:
            qr = await self._fetch_qr()
            if qr and qr != self._last_qr:
                self._last_qr = qr
                self.emit("qr", qr)
        elif status == GATEWAY_WORKING:
            self._last_qr = None
            if not self._ready:
                self._ready = True
                self.emit("ready")
        elif status == GATEWAY_FAILED and self._last_status != GATEWAY_FAILED:
            self._ready = False
            self._ended = True
            self.emit("auth_failure", "Gateway reported session failure")
        elif status == GATEWAY_STOPPED and self._last_status != GATEWAY_STOPPED:
            self._ready = False
            self._last_qr = None
            self._ended = True
            self.emit("disconnected", "STOPPED")

        self._last_status = status
        return status

    async def _fetch_qr(self) -> Optional[str]:
        response = await self._http.get(
            f"/api/{self.session_name}/auth/qr",
            params={"format": "raw"},
        )
        if response.status_code != 200:
            return None
        return response.json().get("value")

    async def _poll_loop(self) -> None:
        failures = 0
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
                failures = 0
            except httpx.HTTPError as e:
                failures += 1
                logger.warning(f"Gateway poll failed ({failures}/{self.max_poll_failures}): {e}")
                if failures >= self.max_poll_failures:
                    self._ready = False
                    self._ended = True
                    self.emit("disconnected", "UNREACHABLE")
                    return
                continue

            if self._ended:
                return

    async def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
