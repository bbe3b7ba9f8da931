"""Entry point: stream stdin into a Telegram chat, or run the bus-driven adapter.

  python -m livereply.main --chat-id 12345 < answer.txt
  some-llm-cli | python -m livereply.main --chat-id 12345 --mode newline
  python -m livereply.main --adapter
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import IO, Optional

from livereply.config import get_config
from livereply.config.loader import Config
from livereply.core.dispatcher import ReplyDispatcher
from livereply.core.events import ChunkMode, StreamTarget
from livereply.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livereply", description="Live-updating Telegram replies")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--adapter", action="store_true", help="Run the Event Bus adapter")
    parser.add_argument("--chat-id", default="", help="Target chat id")
    parser.add_argument("--reply-to", default=None, help="Message id to reply to")
    parser.add_argument("--chunk-limit", type=int, default=None, help="Max chars per message (0 = no split)")
    parser.add_argument("--mode", choices=[m.value for m in ChunkMode], default=None)
    parser.add_argument("--read-size", type=int, default=64, help="Bytes read from stdin per step")
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    if args.chunk_limit is not None:
        config.stream.text_chunk_limit = args.chunk_limit
    if args.mode:
        config.stream.chunk_mode = ChunkMode(args.mode)
    return config


async def stream_file(dispatcher: ReplyDispatcher, source: IO[str], read_size: int = 64) -> str:
    """Feed ``source`` into the dispatcher as growing text; returns the full text."""
    loop = asyncio.get_running_loop()
    text = ""
    await dispatcher.on_reply_start()
    while True:
        piece = await loop.run_in_executor(None, source.read, read_size)
        if not piece:
            break
        text += piece
        await dispatcher.on_partial_reply(text)
    if text.strip():
        await dispatcher.deliver(text)
    await dispatcher.close()
    return text


async def run_stdin(config: Config, chat_id: str, reply_to: Optional[str], read_size: int) -> None:
    from livereply.channels.telegram import TelegramTransport

    transport = TelegramTransport(
        config.telegram.bot_token,
        api_base=config.telegram.api_base,
        timeout=config.telegram.request_timeout,
    )
    dispatcher = ReplyDispatcher(
        transport,
        StreamTarget(chat_id=chat_id, reply_to_message_id=reply_to),
        config.stream.to_options(),
        render_mode=config.stream.render_mode,
        delivered_keys_max=config.stream.delivered_keys_max,
        typing_interval=config.stream.typing_interval,
    )
    text = await stream_file(dispatcher, sys.stdin, read_size)
    logger.info("streamed %d chars to %s", len(text), chat_id)


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config = apply_overrides(get_config(args.config), args)
    setup_logging(config.logging.level, use_json=config.logging.use_json)
    if args.adapter:
        from livereply.channels.telegram import run_telegram_adapter

        asyncio.run(run_telegram_adapter(config, args.config))
        return
    if not config.telegram.bot_token:
        logger.error("TELEGRAM_BOT_TOKEN is required")
        sys.exit(1)
    if not args.chat_id:
        logger.error("--chat-id is required")
        sys.exit(2)
    asyncio.run(run_stdin(config, args.chat_id, args.reply_to, args.read_size))


if __name__ == "__main__":
    main()
