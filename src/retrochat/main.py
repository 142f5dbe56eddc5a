"""
RetroChat - Main entry point for the command-line front end.

A line-mode client: every line read from stdin is sent as a chat
message, everything the session reports is printed. /quit leaves.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from . import __version__
from .config import Config
from .connection_fsm import SessionState
from .errors import ConfigError, TransportConnectError
from .message import Message
from .session import SessionController
from .transports import BACKENDS
from .utils import format_timestamp, setup_logging

QUIT_COMMAND = "/quit"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="retrochat",
        description="RetroChat - Ephemeral end-to-end encrypted chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  retrochat host                          # Open a channel and print its code
  retrochat host --link-base https://x.y  # Also print a share link
  retrochat join AB3DEF7xK2mQ             # Join with a code
  retrochat join "https://x.y/?join=AB3DEF7xK2mQ" --backend mesh

Type /quit to leave the channel.
        """,
    )

    parser.add_argument("--version", action="version", version=f"RetroChat {__version__}")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: ~/.retrochat/config.toml)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--name", type=str, default=None, help="Display name (default: random)")
    common.add_argument(
        "--backend",
        choices=sorted(BACKENDS),
        default=None,
        help="Transport backend (default: from configuration)",
    )
    common.add_argument(
        "--link-base",
        type=str,
        default=None,
        help="Base URL used to print a shareable join link",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("host", parents=[common], help="Host a new channel")
    join = subparsers.add_parser("join", parents=[common], help="Join a channel by code or link")
    join.add_argument("code", help="Session code or share link")

    return parser


def _print_message(message: Message) -> None:
    if message.is_system:
        print(f"*** {message.content}")
    else:
        print(f"[{format_timestamp(message.timestamp)}] <{message.sender}> {message.content}")


def _attach_printers(controller: SessionController) -> None:
    controller.on_message = _print_message
    controller.on_message_update = lambda m: print(f"    (read) {m.content}")
    controller.on_status = lambda text: print(f"-- {text}")
    controller.on_typing_change = lambda typing: print("-- peer is typing...") if typing else None
    controller.on_state_change = lambda old, new: print(f"-- [{new.name}]")


async def run_chat(args: argparse.Namespace, config: Config) -> int:
    """Run one session until /quit or end of input."""
    controller = SessionController(config, username=args.name, backend=args.backend)
    _attach_printers(controller)
    print(f"You are {controller.username}")

    try:
        if args.command == "host":
            code = await controller.create_session()
            print(f"Session code: {code}")
            if args.link_base:
                print(f"Share link:   {controller.share_link(args.link_base)}")
        elif not await controller.join_session(args.code):
            print(controller.status_text, file=sys.stderr)
            return 2
    except TransportConnectError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.rstrip("\n")
            if text.strip() == QUIT_COMMAND:
                break
            if controller.state == SessionState.OFFLINE:
                break
            await controller.send_chat_message(text)
    finally:
        await controller.leave()

    return 0


def main(argv=None) -> int:
    """Main entry point for the RetroChat command line."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 1

    setup_logging(config, debug=args.debug)

    try:
        return asyncio.run(run_chat(args, config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
