# faucet_bot/transport/telegram_sender.py
"""
Telegram Bot API client used by the faucet bot.

- sendMessage (plain text, optionally as a reply)
- getUpdates long-polling
- deleteWebhook before switching to polling

Error classification (TelegramSendError.retryable):
- 401 token invalid, 403 bot blocked/kicked, 400 bad request → NOT retryable
- 429 rate limit, 5xx, connection errors                      → retryable

HTTP session lifecycle:
- Uses the shared ``sender`` session from faucet_bot.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import aiohttp

from faucet_bot.config import settings
from faucet_bot.infra.http_client import get_sender_session
from faucet_bot.infra.logging_config import get_logger
from faucet_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Telegram rejects longer messages with 400
MAX_MESSAGE_LENGTH = 4096


def _bot_url(method: str, token: str | None = None) -> str:
    bot_token = token or settings.telegram_bot_token
    return f"{TELEGRAM_API_BASE}/bot{bot_token}/{method}"


class TelegramSendError(Exception):
    """Error returned by the Telegram Bot API.

    Attributes:
        status:      HTTP status code (0 for connection-level errors).
        error_code:  Telegram error code from the response body.
        retryable:   Whether a later retry may succeed.
        retry_after: Seconds Telegram asked us to wait (429 only).
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
        retry_after: int | None = None,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_text_message(
    chat_id: str,
    text: str,
    token: str | None = None,
    reply_to_message_id: str | None = None,
) -> dict:
    """
    Send a plain text message, threaded as a reply when ``reply_to_message_id`` is set.

    Raises:
        TelegramSendError: On API errors (check .retryable)
    """
    payload: dict = {
        "chat_id": chat_id,
        "text": text[:MAX_MESSAGE_LENGTH],
        "disable_web_page_preview": True,
    }
    if reply_to_message_id:
        payload["reply_parameters"] = {
            "message_id": int(reply_to_message_id),
            "allow_sending_without_reply": True,
        }

    body = await _send_request(_bot_url("sendMessage", token), payload)
    result = body.get("result", {})
    masked = chat_id[:4] + "***" if len(chat_id) > 4 else chat_id
    logger.info(f"Telegram message sent: to={masked}, msg_id={result.get('message_id', 'unknown')}")
    inc_counter("telegram_outbound_sent")
    return body


async def delete_webhook(token: str | None = None) -> dict:
    """Remove any configured webhook so getUpdates works."""
    return await _send_request(_bot_url("deleteWebhook", token), {})


async def get_updates(
    offset: int | None = None,
    timeout: int = 30,
    token: str | None = None,
) -> list[dict]:
    """Long-poll for updates. Only ``message`` updates are requested."""
    payload: dict = {"timeout": timeout, "allowed_updates": ["message"]}
    if offset is not None:
        payload["offset"] = offset

    body = await _send_request(
        _bot_url("getUpdates", token),
        payload,
        timeout=aiohttp.ClientTimeout(total=timeout + 10, connect=5),
    )
    return body.get("result", [])


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except Exception:
        logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
        return None


async def _send_request(
    url: str,
    payload: dict,
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> dict:
    """Execute a Bot API call and classify failures."""
    try:
        session = get_sender_session()
        kwargs = {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout

        async with session.post(url, **kwargs) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                return body

            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")

            if resp.status in (400, 401, 403):
                logger.warning(f"Telegram API rejected request: status={resp.status}, msg={error_desc}")
                inc_counter("telegram_api_errors", kind=str(resp.status))
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            if resp.status == 429:
                retry_after = (body or {}).get("parameters", {}).get("retry_after", 30)
                logger.warning(f"Telegram API rate limit, retry_after={retry_after}s")
                inc_counter("telegram_api_errors", kind="rate_limited")
                raise TelegramSendError(
                    resp.status, error_code, error_desc,
                    retryable=True, retry_after=retry_after,
                )

            logger.error(f"Telegram API error: status={resp.status}, code={error_code}, msg={error_desc}")
            inc_counter("telegram_api_errors", kind="server")
            raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

    except TelegramSendError:
        raise
    except (aiohttp.ClientError, TimeoutError) as exc:
        logger.error(f"Telegram API connection error: {exc.__class__.__name__}: {exc}")
        inc_counter("telegram_api_errors", kind="connection")
        raise TelegramSendError(0, None, str(exc) or exc.__class__.__name__, retryable=True)
