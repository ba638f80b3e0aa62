"""Long-lived IDLE monitoring session built on imapclient.

The monitor never reads messages itself: an ``EXISTS`` push only wakes the
trigger, which re-synchronizes against its persisted watermark.
"""

from __future__ import annotations

import asyncio
import imaplib
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from imapclient import IMAPClient

from .config import ImapConfig, RetryConfig
from .imap_client import build_ssl_context
from .retry import with_retry

logger = structlog.get_logger()

ClientFactory = Callable[..., IMAPClient]


class IdleMonitor:
    """Keeps one IDLE session open on *mailbox* and reports new arrivals.

    The watch loop waits at most ``check_timeout`` seconds per round so that
    :meth:`stop` completes promptly. IDLE is re-issued every
    ``renew_seconds`` to stay under the server's 29 minute limit.
    """

    def __init__(
        self,
        config: ImapConfig,
        mailbox: str,
        on_new_message: Callable[[], Awaitable[Any]],
        *,
        check_timeout: float = 15.0,
        renew_seconds: float = 25 * 60.0,
        retry: RetryConfig | None = None,
        client_factory: ClientFactory = IMAPClient,
    ) -> None:
        self._config = config
        self._mailbox = mailbox
        self._on_new_message = on_new_message
        self._check_timeout = check_timeout
        self._renew_seconds = renew_seconds
        self._retry = retry or RetryConfig()
        self._client_factory = client_factory

        self._client: IMAPClient | None = None
        self._idle_since = 0.0
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.notifications = 0
        self.reconnects = 0

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the monitoring session and start the watch loop."""
        self._stopping = False
        await self._connect()
        self._task = asyncio.create_task(self._watch(), name=f"idle:{self._mailbox}")

    async def stop(self) -> None:
        """Let the watch loop finish its current round, then end IDLE and log out."""
        self._stopping = True
        if self._task is not None:
            # Not cancelled: a cancelled await would leave idle_check running in its thread
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await asyncio.to_thread(self._close_sync)
        logger.info("idle_monitor_stopped", mailbox=self._mailbox)

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    async def _watch(self) -> None:
        while not self._stopping:
            try:
                if self._client is None:
                    await self._connect()
                    self.reconnects += 1
                responses = await asyncio.to_thread(self._check_sync)
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.warning("idle_connection_lost", mailbox=self._mailbox, error=str(exc))
                await self._reset_after_failure()
                continue
            except Exception:
                logger.exception("idle_watch_failed", mailbox=self._mailbox)
                await self._reset_after_failure()
                continue

            if self._stopping:
                break
            if any(_is_new_message(response) for response in responses):
                self.notifications += 1
                logger.debug("idle_new_message", mailbox=self._mailbox)
                try:
                    await self._on_new_message()
                except Exception:
                    logger.exception("idle_callback_failed", mailbox=self._mailbox)

    async def _reset_after_failure(self) -> None:
        await asyncio.to_thread(self._close_sync)
        if not self._stopping:
            await asyncio.sleep(self._check_timeout)

    async def _connect(self) -> None:
        @with_retry(self._retry, operation="idle_connect")
        async def _attempt() -> None:
            await asyncio.to_thread(self._connect_sync)

        await _attempt()
        logger.info("idle_monitor_started", mailbox=self._mailbox, host=self._config.host)

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _connect_sync(self) -> None:
        kwargs: dict[str, Any] = {
            "port": self._config.port,
            "ssl": self._config.use_ssl,
            "timeout": self._config.timeout_seconds,
        }
        if self._config.use_ssl:
            kwargs["ssl_context"] = build_ssl_context(self._config.allow_unauthorized_certs)
        client = self._client_factory(self._config.host, **kwargs)
        try:
            client.login(self._config.username, self._config.password.get_secret_value())
            client.select_folder(self._mailbox, readonly=True)
            client.idle()
        except (imaplib.IMAP4.error, OSError):
            _quiet_logout(client)
            raise
        self._client = client
        self._idle_since = time.monotonic()

    def _check_sync(self) -> list[Any]:
        assert self._client is not None
        if time.monotonic() - self._idle_since >= self._renew_seconds:
            self._client.idle_done()
            self._client.idle()
            self._idle_since = time.monotonic()
            logger.debug("idle_renewed", mailbox=self._mailbox)
        return self._client.idle_check(timeout=self._check_timeout)

    def _close_sync(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.idle_done()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug("idle_done_failed", error=str(exc))
        _quiet_logout(client)


def _is_new_message(response: Any) -> bool:
    # idle_check yields tuples such as (5, b'EXISTS') or (b'OK', b'Still here')
    return isinstance(response, tuple) and len(response) >= 2 and response[1] == b"EXISTS"


def _quiet_logout(client: IMAPClient) -> None:
    try:
        client.logout()
    except (imaplib.IMAP4.error, OSError) as exc:
        logger.debug("idle_logout_failed", error=str(exc))
