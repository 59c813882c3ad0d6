"""Entry point for the ``bbbab-tail`` diagnostic command."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

EXIT_OK = 0
EXIT_RECONNECT_FAILED = 1
EXIT_UNAUTHORIZED = 2


class _StaticToken:
    """Token provider for a token given on the command line."""

    def __init__(self, token: str) -> None:
        self._token: str | None = token

    def get_token(self) -> str | None:
        return self._token

    def clear_token(self) -> None:
        self._token = None


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bbbab-tail",
        description="Connect to one chat and print its live events",
    )
    parser.add_argument("chat_id", type=int, help="Chat to follow")
    parser.add_argument("--token", help="Bearer token (default: stored token)")
    parser.add_argument(
        "--server",
        help="REST API base URL, e.g. http://localhost:8080/api (default: configured URL)",
    )
    parser.add_argument("--config-dir", type=Path, help="Configuration directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


async def _tail(args: argparse.Namespace) -> int:
    from .api.client import ChatApiClient
    from .sync.service import ChatSyncService
    from .sync.supervisor import StatusKind
    from .utils.config import Config, ws_url_for

    config = Config(config_dir=args.config_dir)
    if args.server:
        api_url: str | None = args.server.rstrip("/")
        ws_url = ws_url_for(api_url)
    else:
        api_url, ws_url = config.api_base_url, config.ws_base_url
    if not api_url or not ws_url:
        print("No server configured; pass --server", file=sys.stderr)
        return EXIT_UNAUTHORIZED

    token = args.token or config.get_token()
    if not token:
        print("No token available; pass --token", file=sys.stderr)
        return EXIT_UNAUTHORIZED

    done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    def finish(code: int) -> None:
        if not done.done():
            done.set_result(code)

    def on_status(event: Any) -> None:
        line = f"[status] {event.kind.value}"
        if event.delay is not None:
            line += f" in {event.delay:.1f}s (attempt {event.attempt})"
        if event.code is not None and event.kind is StatusKind.DISCONNECTED:
            line += f" code={event.code} {event.reason}".rstrip()
        print(line)
        if event.kind is StatusKind.RECONNECT_FAILED:
            finish(EXIT_RECONNECT_FAILED)

    def on_message(message: Any) -> None:
        flag = " (deleted)" if message.is_deleted else " (edited)" if message.is_edited else ""
        print(f"[{message.created_dt:%H:%M:%S}] #{message.id} <{message.sender_id}> {message.text}{flag}")

    def on_history(messages: Any) -> None:
        for message in messages:
            on_message(message)

    def on_typing(users: Any) -> None:
        names = ", ".join(u.display_name for u in users)
        print(f"[typing] {names}" if names else "[typing] -")

    def on_server_event(frame: Any) -> None:
        print(f"[{frame.type}] {frame.model_dump(exclude={'type'})}")

    async with ChatApiClient(api_url, token_provider=_StaticToken(token)) as api:
        service = ChatSyncService(ws_url, api=api, settings=config.sync_settings)
        service.set_current_user(config.user_id)
        chat_id = args.chat_id
        service.on_status(chat_id, on_status)
        service.on_message(chat_id, on_message)
        service.on_history(chat_id, on_history)
        service.on_typing(chat_id, on_typing)
        service.on_server_event(chat_id, on_server_event)
        service.on_unauthorized(lambda _cid: finish(EXIT_UNAUTHORIZED))

        service.connect(chat_id, token)
        try:
            return await done
        finally:
            service.dispose()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for ``bbbab-tail``."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_tail(args))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
