"""
Telegram writer — delivers rendered messages through the Bot API sendMessage.

deliver() is the commit signal for the dedup engine: True only once Telegram
answered ok. Every error is logged and swallowed here; the engine keeps the
event uncommitted and retries it next cycle.

Retry inside one deliver() call:
- 429: waits parameters.retry_after (Telegram's flood control)
- 5xx / transport errors: exponential backoff 1s, 2s, 4s...
- 400 with HTML parse_mode: resent once as plain text, outside the retry
  budget (a bad entity in the markup would otherwise block the watermark forever)
- other 4xx: not retried in this call

Publishes MessagesSent / MessagesFailed to CloudWatch after each cycle when a
namespace is configured.
"""

import asyncio
import html
import logging
import re
from typing import Any, Optional

import aiohttp
import boto3
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError as AwsClientError

from position_relay.framework.events import RenderedMessage

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


def to_plain_text(text: str) -> str:
    """Strip HTML tags and unescape entities."""
    return html.unescape(_TAG_RE.sub("", text))


class TelegramWriter:
    """
    Async Telegram sink with bounded retry and optional CloudWatch metrics.

    Usage (RelayManager):
        writer = TelegramWriter(token, chat_id, session, cloudwatch_namespace="PositionRelay")
        ok = await writer.deliver(message)
        await writer.flush_metrics()
    """

    API_BASE = "https://api.telegram.org"
    MAX_RETRY_AFTER_SECONDS = 60.0

    def __init__(
        self,
        token: str,
        chat_id: str,
        session: aiohttp.ClientSession,
        parse_mode: Optional[str] = "HTML",
        disable_web_page_preview: bool = True,
        max_retries: int = 3,
        cloudwatch_namespace: str = "",
        region: str = "us-west-2",
    ) -> None:
        self._url = f"{self.API_BASE}/bot{token}/sendMessage"
        self._chat_id = chat_id
        self._session = session
        self._parse_mode = parse_mode
        self._disable_preview = disable_web_page_preview
        self._max_retries = max(1, max_retries)
        self._namespace = cloudwatch_namespace
        self._cw = boto3.client("cloudwatch", region_name=region) if cloudwatch_namespace else None
        self._sent = 0
        self._failed = 0

    @property
    def counts(self) -> tuple[int, int]:
        """(sent, failed) since the last flush_metrics()."""
        return self._sent, self._failed

    async def deliver(self, message: RenderedMessage) -> bool:
        """
        Send one message. Never raises for delivery problems.

        Returns:
            True once Telegram confirmed the message, False otherwise.
        """
        parse_mode = self._parse_mode
        text = message.text

        attempt = 0
        while attempt < self._max_retries:
            status, wait, description = await self._send_once(text, parse_mode, attempt)
            if status == 200:
                self._sent += 1
                return True

            if status == 400 and parse_mode:
                logger.warning(
                    "Telegram rejected markup — resending as plain text | id=%s | error=%s",
                    message.event_id,
                    description,
                )
                parse_mode = None
                text = to_plain_text(text)
                # the plain-text resend does not count against max_retries
                continue

            if wait is None:
                logger.error(
                    "Telegram sendMessage rejected (not retried) | id=%s | status=%s | error=%s",
                    message.event_id,
                    status,
                    description,
                )
                break

            if attempt < self._max_retries - 1:
                logger.warning(
                    "Telegram sendMessage retry %d/%d | id=%s | status=%s | waiting %.1fs",
                    attempt + 1,
                    self._max_retries,
                    message.event_id,
                    status,
                    wait,
                )
                await asyncio.sleep(wait)
            else:
                logger.error(
                    "Telegram sendMessage failed after %d attempts | id=%s | error=%s",
                    self._max_retries,
                    message.event_id,
                    description,
                )
            attempt += 1

        self._failed += 1
        return False

    async def _send_once(
        self, text: str, parse_mode: Optional[str], attempt: int = 0
    ) -> tuple[Optional[int], Optional[float], str]:
        """
        One sendMessage call.

        Returns:
            (status, wait, description). status is None for transport errors.
            wait is the delay before a retry, or None if retrying is pointless.
        """
        payload: dict[str, Any] = {
            "chat_id": self._chat_id,
            "text": text,
            "disable_web_page_preview": self._disable_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        backoff = float(2**attempt)
        try:
            async with self._session.post(self._url, json=payload) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return None, backoff, repr(exc)

        if not isinstance(body, dict):
            body = {}
        description = str(body.get("description", ""))

        if status == 200 and body.get("ok"):
            return 200, None, ""
        if status == 200:
            # HTTP ok but API said no; treat like a server error
            return 500, backoff, description or "ok=false"
        if status == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            try:
                wait = min(float(retry_after), self.MAX_RETRY_AFTER_SECONDS)
            except (TypeError, ValueError):
                wait = backoff
            return 429, wait, description
        if 400 <= status < 500:
            return status, None, description
        return status, backoff, description

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def flush_metrics(self) -> None:
        """Publish and reset the per-cycle counters. No-op without a namespace."""
        sent, failed = self._sent, self._failed
        self._sent = self._failed = 0
        if self._cw is None or (sent == 0 and failed == 0):
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._publish_metrics, sent, failed)

    def _publish_metrics(self, sent: int, failed: int) -> None:
        """
        Publish MessagesSent / MessagesFailed to CloudWatch.

        CloudWatch failures are logged as warnings but do not stop the relay.
        """
        try:
            self._cw.put_metric_data(
                Namespace=self._namespace,
                MetricData=[
                    {"MetricName": "MessagesSent", "Value": float(sent), "Unit": "Count"},
                    {"MetricName": "MessagesFailed", "Value": float(failed), "Unit": "Count"},
                ],
            )
        except (BotoCoreError, AwsClientError) as exc:
            logger.warning("CloudWatch put_metric_data failed (non-fatal): %s", exc)
