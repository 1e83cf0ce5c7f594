"""
Messaging session manager.

Owns the one WhatsApp Web session of this deployment. The underlying client
models a single operator device: it can only hold one session and cannot
take overlapping commands. All state changes go through this object, and all
sends are serialized through its send lock.
"""

import asyncio
import logging
from typing import Callable, Optional

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult, FailureReason
from app.domain.messaging_session import (
    ACTIVE_SESSION_STATUSES,
    PAIRING_STATUSES,
    SessionSnapshot,
    SessionStatus,
)
from app.infrastructure.whatsapp_gateway import (
    LOGOUT_REASONS,
    ChatClient,
    ChatClientError,
    GatewayChatClient,
)
from app.utils.phone import InvalidDestinationError, to_chat_id
from app.utils.time import utc_now

logger = logging.getLogger(__name__)


class MessagingSessionManager:
    """Idempotent façade over the single stateful chat session."""

    def __init__(
        self,
        client_factory: Callable[[], ChatClient],
        init_timeout: float = 60.0,
        pairing_timeout: float = 180.0,
        send_timeout: float = 30.0,
        auto_reconnect: bool = True,
        reconnect_delay: float = 10.0,
        max_reconnect_attempts: int = 5,
    ):
        self._client_factory = client_factory
        self.init_timeout = init_timeout
        self.pairing_timeout = pairing_timeout
        self.send_timeout = send_timeout
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self._client: Optional[ChatClient] = None
        self._status = SessionStatus.DISCONNECTED
        self._qr: Optional[str] = None
        self._last_connected_at = None
        self._last_error: Optional[str] = None

        self._lifecycle_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._pairing_task: Optional[asyncio.Task] = None

    # Reads

    def get_status(self) -> SessionStatus:
        return self._status

    def get_qr(self) -> Optional[str]:
        """Current pairing payload; only present while waiting for a scan."""
        if self._status != SessionStatus.QR_PENDING:
            return None
        return self._qr

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            qr=self.get_qr(),
            last_connected_at=self._last_connected_at,
            last_error=self._last_error,
        )

    @property
    def is_connected(self) -> bool:
        return self._status == SessionStatus.CONNECTED

    # Lifecycle

    async def initialize(self) -> SessionSnapshot:
        """
        Bring the session up unless it is already coming up or connected.

        Failures are recorded in the snapshot and leave the session
        DISCONNECTED; they are never raised to the caller.
        """
        async with self._lifecycle_lock:
            if self._status in ACTIVE_SESSION_STATUSES:
                logger.info(f"WhatsApp session already active ({self._status.value})")
                return self.snapshot()

            await self._discard_client()

            logger.info("Initializing WhatsApp session...")
            self._set_status(SessionStatus.INITIALIZING)
            self._last_error = None

            try:
                client = self._client_factory()
                self._wire(client)
                self._client = client
                await asyncio.wait_for(client.start(), timeout=self.init_timeout)
                if self._status in PAIRING_STATUSES:
                    self._watch_pairing(client)
            except asyncio.TimeoutError:
                self._fail_initialization(
                    f"Session did not start within {self.init_timeout:.0f}s"
                )
                await self._discard_client()
            except Exception as e:
                logger.exception(f"WhatsApp initialization error: {e}")
                self._fail_initialization(str(e) or e.__class__.__name__)
                await self._discard_client()

            return self.snapshot()

    async def restore(self) -> SessionSnapshot:
        """Reconnect a previously paired session at process start."""
        lookup = self._client_factory()
        try:
            stored = await lookup.has_stored_session()
        finally:
            await lookup.close()

        if not stored:
            logger.info("No stored WhatsApp session; waiting for pairing")
            return self.snapshot()

        logger.info("Restoring stored WhatsApp session")
        return await self.initialize()

    async def logout(self) -> SessionSnapshot:
        """Tear the session down and purge its credentials. Safe from any state."""
        async with self._lifecycle_lock:
            self._cancel_reconnect()
            self._cancel_pairing_watch()

            if self._client is None and self._status == SessionStatus.DISCONNECTED:
                return self.snapshot()

            self._set_status(SessionStatus.LOGGED_OUT)
            client, self._client = self._client, None

            if client is not None:
                try:
                    await client.logout()
                except Exception as e:
                    logger.error(f"WhatsApp logout failed: {e}")
                    self._last_error = str(e)
                try:
                    await client.destroy()
                except Exception as e:
                    logger.warning(f"WhatsApp client cleanup failed: {e}")

            self._qr = None
            self._set_status(SessionStatus.DISCONNECTED)
            return self.snapshot()

    async def shutdown(self) -> None:
        """Stop the client at process exit, keeping credentials for restore()."""
        async with self._lifecycle_lock:
            self._cancel_reconnect()
            self._cancel_pairing_watch()
            await self._discard_client()
            self._qr = None
            self._set_status(SessionStatus.DISCONNECTED)

    # Sending

    async def send_message(self, destination: str, body: str) -> DeliveryResult:
        """
        Send a text message through the session.

        Sends are serialized: the client never sees two commands at once.
        A timed-out send counts as a failure.
        """
        try:
            chat_id = to_chat_id(destination)
        except InvalidDestinationError as e:
            return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, str(e))

        if not self.is_connected:
            return DeliveryResult.failure(
                FailureReason.CHANNEL_UNAVAILABLE,
                f"WhatsApp session is {self._status.value}",
            )

        async with self._send_lock:
            client = self._client
            if not self.is_connected or client is None:
                return DeliveryResult.failure(
                    FailureReason.CHANNEL_UNAVAILABLE,
                    f"WhatsApp session is {self._status.value}",
                )

            try:
                await asyncio.wait_for(client.send_text(chat_id, body), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"WhatsApp send to {chat_id} timed out")
                return DeliveryResult.failure(
                    FailureReason.TIMEOUT,
                    f"Send did not complete within {self.send_timeout:.0f}s",
                )
            except ChatClientError as e:
                logger.warning(f"WhatsApp send to {chat_id} failed: {e}")
                reason = FailureReason.REJECTED if e.permanent else FailureReason.NETWORK_ERROR
                return DeliveryResult.failure(reason, str(e))
            except Exception as e:
                logger.exception(f"WhatsApp send error: {e}")
                return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e))

        return DeliveryResult.success()

    # Client events

    def _wire(self, client: ChatClient) -> None:
        client.on("qr", lambda payload: self._on_qr(client, payload))
        client.on("ready", lambda: self._on_ready(client))
        client.on("auth_failure", lambda message=None: self._on_auth_failure(client, message))
        client.on("disconnected", lambda reason=None: self._on_disconnected(client, reason))

    def _on_qr(self, client: ChatClient, payload: str) -> None:
        if client is not self._client:
            return
        if self._status not in (SessionStatus.INITIALIZING, SessionStatus.QR_PENDING):
            return
        logger.info("WhatsApp QR code received")
        self._qr = payload
        self._set_status(SessionStatus.QR_PENDING)

    def _on_ready(self, client: ChatClient) -> None:
        if client is not self._client:
            return
        self._qr = None
        self._last_connected_at = utc_now()
        self._last_error = None
        self._reconnect_attempts = 0
        self._cancel_pairing_watch()
        self._set_status(SessionStatus.CONNECTED)

    def _on_auth_failure(self, client: ChatClient, message: Optional[str]) -> None:
        if client is not self._client:
            return
        logger.error(f"WhatsApp auth failure: {message}")
        self._qr = None
        self._last_error = message or "Authentication failed"
        self._set_status(SessionStatus.AUTH_FAILURE)

    def _on_disconnected(self, client: ChatClient, reason: Optional[str]) -> None:
        if client is not self._client:
            return
        reason = (reason or "UNKNOWN").upper()
        self._qr = None
        self._last_error = f"Disconnected: {reason}"

        if reason in LOGOUT_REASONS:
            self._set_status(SessionStatus.AUTH_FAILURE)
            return

        self._set_status(SessionStatus.DISCONNECTED)
        if self.auto_reconnect:
            self._schedule_reconnect()

    # Internals

    def _set_status(self, status: SessionStatus) -> None:
        if status != self._status:
            logger.info(f"WhatsApp session: {self._status.value} -> {status.value}")
        self._status = status

    def _fail_initialization(self, message: str) -> None:
        logger.error(f"WhatsApp initialization failed: {message}")
        self._last_error = message
        self._qr = None
        self._set_status(SessionStatus.DISCONNECTED)

    async def _discard_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.destroy()
        except Exception as e:
            logger.warning(f"WhatsApp client cleanup failed: {e}")

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            logger.error("WhatsApp reconnect attempts exhausted; re-initialize manually")
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        self._reconnect_attempts += 1
        delay = self.reconnect_delay * self._reconnect_attempts
        logger.info(
            f"Reconnecting WhatsApp in {delay:.0f}s "
            f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})"
        )
        await asyncio.sleep(delay)
        snapshot = await self.initialize()
        if snapshot.status == SessionStatus.DISCONNECTED:
            self._reconnect_task = None
            self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _watch_pairing(self, client: ChatClient) -> None:
        self._cancel_pairing_watch()
        self._pairing_task = asyncio.create_task(self._expire_pairing(client))

    async def _expire_pairing(self, client: ChatClient) -> None:
        """Give up on a pairing that has not reached CONNECTED in time."""
        await asyncio.sleep(self.pairing_timeout)
        async with self._lifecycle_lock:
            if client is not self._client or self._status not in PAIRING_STATUSES:
                return
            self._pairing_task = None
            self._fail_initialization(
                f"Pairing did not complete within {self.pairing_timeout:.0f}s"
            )
            await self._discard_client()

    def _cancel_pairing_watch(self) -> None:
        task, self._pairing_task = self._pairing_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


# Process-wide session manager instance
session_manager: Optional[MessagingSessionManager] = None


def build_gateway_client() -> ChatClient:
    """Create a gateway-backed chat client from settings."""
    settings = get_settings()
    return GatewayChatClient(
        base_url=settings.whatsapp_gateway_url,
        session_name=settings.whatsapp_session_name,
        api_key=settings.whatsapp_gateway_api_key,
        poll_interval=settings.whatsapp_poll_interval_seconds,
    )


def get_session_manager() -> MessagingSessionManager:
    """Get or create the session manager instance."""
    global session_manager

    if session_manager is None:
        settings = get_settings()
        session_manager = MessagingSessionManager(
            client_factory=build_gateway_client,
            init_timeout=settings.whatsapp_init_timeout_seconds,
            pairing_timeout=settings.whatsapp_pairing_timeout_seconds,
            send_timeout=settings.whatsapp_send_timeout_seconds,
            auto_reconnect=settings.whatsapp_auto_reconnect,
            reconnect_delay=settings.whatsapp_reconnect_delay_seconds,
            max_reconnect_attempts=settings.whatsapp_max_reconnect_attempts,
        )

    return session_manager
