"""Telegram channel: Bot API transport for live replies and the bus-driven stream adapter."""

from __future__ import annotations

import asyncio
import html
import logging
import re
from typing import Any, Optional

import httpx

from livereply.config.loader import Config, StreamSettings
from livereply.core.bus import EventBus
from livereply.core.dispatcher import DeliveredKeys, ReplyDispatcher
from livereply.core.events import DeliveryResult, OutgoingReply, StreamTarget, StreamToken
from livereply.core.logging_config import setup_logging

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096
PARSE_MODE = "HTML"
STREAM_CURSOR = " ▌"

_FENCED_RE = re.compile(r"```[^\n`]*\n?(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*", re.DOTALL)
_ITALIC_RE = re.compile(r"(?<![\w*])\*(?!\s)([^*\n]+?)\*(?![\w*])|(?<!\w)_(?!\s)([^_\n]+?)_(?!\w)")
_PLACEHOLDER = "\x00{}\x00"


def _to_telegram_html(text: str) -> str:
    """Markdown subset (code, bold, italic) to Telegram HTML; everything else escaped."""
    if not text:
        return ""
    stash: list[str] = []

    def _keep(fragment: str) -> str:
        stash.append(fragment)
        return _PLACEHOLDER.format(len(stash) - 1)

    out = _FENCED_RE.sub(lambda m: _keep(f"<pre><code>{html.escape(m.group(1), quote=False)}</code></pre>"), text)
    out = _INLINE_CODE_RE.sub(lambda m: _keep(f"<code>{html.escape(m.group(1), quote=False)}</code>"), out)
    out = html.escape(out, quote=False)
    out = _BOLD_RE.sub(r"<b>\1</b>", out)
    out = _ITALIC_RE.sub(lambda m: f"<i>{m.group(1) or m.group(2)}</i>", out)
    for i, fragment in enumerate(stash):
        out = out.replace(_PLACEHOLDER.format(i), fragment)
    return out


def render_stream_text(content: str, streaming: bool) -> tuple[str, Optional[str]]:
    """Text and parse_mode for a streamed message; plain text if the HTML would not fit."""
    cursor = STREAM_CURSOR if streaming else ""
    rendered = _to_telegram_html(content) + cursor
    if len(rendered) <= MAX_MESSAGE_LENGTH:
        return rendered, PARSE_MODE
    return content[: MAX_MESSAGE_LENGTH - len(cursor)] + cursor, None


def _reply_params(target: StreamTarget) -> dict[str, Any]:
    mid = (target.reply_to_message_id or "").strip()
    if mid.isdigit() and int(mid) > 0:
        return {"reply_to_message_id": int(mid), "allow_sending_without_reply": True}
    return {}


def _is_not_modified(result: DeliveryResult) -> bool:
    return bool(result.error) and "message is not modified" in result.error.lower()


class TelegramTransport:
    """MessageTransport over the Telegram Bot API (sendMessage / editMessageText)."""

    def __init__(self, token: str, *, api_base: str = TELEGRAM_API, timeout: float = 15.0) -> None:
        self._base_url = f"{api_base.rstrip('/')}/bot{token}"
        self._timeout = timeout

    async def _post(self, method: str, payload: dict[str, Any], timeout: Optional[float] = None) -> DeliveryResult:
        try:
            async with httpx.AsyncClient() as client:
                r = await client.post(
                    f"{self._base_url}/{method}",
                    json=payload,
                    timeout=timeout or self._timeout,
                )
        except httpx.HTTPError as e:
            return DeliveryResult.failure(f"{method}: {type(e).__name__}")
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code != 200 or not body.get("ok"):
            return DeliveryResult.failure(f"{method} {r.status_code}: {body.get('description', r.text)}")
        result = body.get("result")
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return DeliveryResult.success(str(message_id) if message_id is not None else None)

    async def create_message(self, target: StreamTarget, content: str, *, streaming: bool) -> DeliveryResult:
        text, parse_mode = render_stream_text(content, streaming)
        payload: dict[str, Any] = {"chat_id": target.chat_id, "text": text, **_reply_params(target)}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self._post("sendMessage", payload)

    async def update_message(
        self,
        message_id: str,
        content: str,
        *,
        streaming: bool,
        target: StreamTarget,
    ) -> DeliveryResult:
        text, parse_mode = render_stream_text(content, streaming)
        payload: dict[str, Any] = {
            "chat_id": target.chat_id,
            "message_id": int(message_id) if message_id.isdigit() else message_id,
            "text": text,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        result = await self._post("editMessageText", payload, timeout=10.0)
        if _is_not_modified(result):
            return DeliveryResult.success(message_id)
        if result.ok and not result.message_id:
            return DeliveryResult.success(message_id)
        return result

    async def send_message(self, target: StreamTarget, text: str, *, rich: bool) -> DeliveryResult:
        payload: dict[str, Any] = {"chat_id": target.chat_id, **_reply_params(target)}
        rendered = _to_telegram_html(text) if rich else text
        if rich and len(rendered) <= MAX_MESSAGE_LENGTH:
            payload["text"] = rendered
            payload["parse_mode"] = PARSE_MODE
        else:
            payload["text"] = text[:MAX_MESSAGE_LENGTH]
        return await self._post("sendMessage", payload)

    async def send_typing(self, target: StreamTarget) -> None:
        result = await self._post("sendChatAction", {"chat_id": target.chat_id, "action": "typing"}, timeout=5.0)
        if not result.ok:
            logger.debug("sendChatAction failed: %s", result.error)


async def check_telegram(token: str, api_base: str = TELEGRAM_API) -> dict[str, Any]:
    """getMe: {"ok": True, "bot": {...}} or {"ok": False, "error": "..."}."""
    try:
        async with httpx.AsyncClient() as client:
            r = await client.get(f"{api_base.rstrip('/')}/bot{token}/getMe", timeout=10.0)
        data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        return {"ok": False, "error": type(e).__name__}
    if r.status_code == 200 and data.get("ok"):
        return {"ok": True, "bot": data.get("result", {})}
    return {"ok": False, "error": data.get("description", r.text)}


class TelegramStreamAdapter:
    """Turns bus events into live Telegram replies, one ReplyDispatcher per task.

    All dispatchers share one duplicate cache. Tasks closed by a ``done`` token
    are remembered, so the OutgoingReply that follows them is not sent again.
    """

    def __init__(self, transport: TelegramTransport, settings: Optional[StreamSettings] = None) -> None:
        self._transport = transport
        self._settings = settings or StreamSettings()
        self._dispatchers: dict[str, ReplyDispatcher] = {}
        self._texts: dict[str, str] = {}
        self._delivered = DeliveredKeys(self._settings.delivered_keys_max)
        self._streamed_tasks = DeliveredKeys(self._settings.delivered_keys_max)

    @property
    def active_tasks(self) -> list[str]:
        return list(self._dispatchers)

    def _new_dispatcher(self, chat_id: str, message_id: str) -> ReplyDispatcher:
        return ReplyDispatcher(
            self._transport,
            StreamTarget(chat_id=chat_id, reply_to_message_id=message_id or None),
            self._settings.to_options(),
            render_mode=self._settings.render_mode,
            delivered=self._delivered,
            typing_interval=self._settings.typing_interval,
        )

    async def on_stream(self, payload: StreamToken) -> None:
        dispatcher = self._dispatchers.get(payload.task_id)
        if dispatcher is None:
            dispatcher = self._new_dispatcher(payload.chat_id, payload.message_id)
            self._dispatchers[payload.task_id] = dispatcher
            await dispatcher.on_reply_start()
        text = self._texts.get(payload.task_id, "") + (payload.token or "")
        self._texts[payload.task_id] = text
        if not payload.done:
            await dispatcher.on_partial_reply(text)
            return
        self._dispatchers.pop(payload.task_id, None)
        self._texts.pop(payload.task_id, None)
        self._streamed_tasks.add(payload.task_id)
        if text.strip():
            await dispatcher.deliver(text)
        await dispatcher.close()

    async def on_outgoing(self, payload: OutgoingReply) -> None:
        dispatcher = self._dispatchers.pop(payload.task_id, None)
        self._texts.pop(payload.task_id, None)
        if dispatcher is None:
            if payload.task_id in self._streamed_tasks:
                logger.info("outgoing reply for streamed task %s, skipping", payload.task_id)
                return
            dispatcher = self._new_dispatcher(payload.chat_id, payload.message_id)
        await dispatcher.deliver(payload.text or "")
        await dispatcher.close()

    async def close(self) -> None:
        dispatchers = list(self._dispatchers.values())
        self._dispatchers.clear()
        self._texts.clear()
        for dispatcher in dispatchers:
            await dispatcher.close()


async def wait_for_token(config: Config, config_path: Optional[str] = None) -> Config:
    """Block until a bot token is configured. Only the token is re-read; other settings stay."""
    while not config.telegram.bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN not set (retry in 60s)")
        await asyncio.sleep(60)
        config.telegram.bot_token = Config.load(config_path).telegram.bot_token
    return config


async def run_telegram_adapter(config: Optional[Config] = None, config_path: Optional[str] = None) -> None:
    if config is None:
        from livereply.config import get_config

        config = get_config(config_path)
    setup_logging(config.logging.level, use_json=config.logging.use_json)
    config = await wait_for_token(config, config_path)
    me = await check_telegram(config.telegram.bot_token, config.telegram.api_base)
    if not me.get("ok"):
        logger.warning("getMe failed: %s", me.get("error"))

    transport = TelegramTransport(
        config.telegram.bot_token,
        api_base=config.telegram.api_base,
        timeout=config.telegram.request_timeout,
    )
    adapter = TelegramStreamAdapter(transport, config.stream)
    bus = EventBus(config.redis.url)
    await bus.connect()
    bus.subscribe_stream(adapter.on_stream)
    bus.subscribe_outgoing(adapter.on_outgoing)
    try:
        await bus.run_listener()
    finally:
        await adapter.close()
        await bus.disconnect()


def main() -> None:
    asyncio.run(run_telegram_adapter())


if __name__ == "__main__":
    main()
