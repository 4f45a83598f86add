"""
Headless command-line client.

Connects to the relay, logs presence, chat and call activity, and can
place or auto-answer a call. Useful for exercising a relay deployment
without the web portal.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from telehealth_rtc.config import Config
from telehealth_rtc.core.call_state import CallSession, CallState
from telehealth_rtc.core.errors import AuthError, CallStateError, TransportError
from telehealth_rtc.core.hub import CommunicationHub
from telehealth_rtc.core.messaging import Message
from telehealth_rtc.core.signaling import DISCONNECTED, CallKind, Credentials
from telehealth_rtc.logging_config import setup_logging, get_logger, get_default_log_file

logger = get_logger("app")

EXIT_OK = 0
EXIT_TRANSPORT = 1
EXIT_AUTH = 2

TOKEN_ENV = "TELEHEALTH_TOKEN"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="telehealth-rtc",
        description="Telehealth chat and call client (headless)",
    )
    parser.add_argument(
        "--relay-url",
        type=str,
        default=None,
        help="Signaling relay URL (default: from config).",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=None,
        help=f"Session token. Falls back to ${TOKEN_ENV}.",
    )
    parser.add_argument("--user-id", type=str, default=None, help="Your user id.")
    parser.add_argument(
        "--user-type",
        type=str,
        default=None,
        choices=["patient", "doctor"],
        help="Your role on the portal.",
    )
    parser.add_argument("--name", type=str, default=None, help="Display name.")
    parser.add_argument(
        "--counterpart",
        type=str,
        default=None,
        help="User id to chat with.",
    )
    parser.add_argument(
        "--call",
        type=str,
        default=None,
        metavar="USER_ID",
        help="Place a call to USER_ID, exit when it ends.",
    )
    parser.add_argument(
        "--voice",
        action="store_true",
        help="Use a voice call instead of video.",
    )
    parser.add_argument(
        "--auto-answer",
        action="store_true",
        help="Answer incoming calls automatically.",
    )
    parser.add_argument(
        "--message",
        type=str,
        default=None,
        help="Send one chat message to the counterpart after connecting.",
    )
    parser.add_argument(
        "--ring-timeout",
        type=float,
        default=None,
        help="Seconds before an unanswered call is given up.",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Persist the relay/user options given on the command line.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Path to log file (default: ~/.telehealth_rtc/logs/telehealth_rtc.log).",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable logging to file.",
    )
    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Path to config directory (default: ~/.telehealth_rtc). Holds config.json and call_history.json.",
    )
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> None:
    """Copy command-line options over the loaded configuration."""
    if args.relay_url:
        config.relay_url = args.relay_url
    if args.user_id:
        config.user_id = args.user_id
    if args.user_type:
        config.user_type = args.user_type
    if args.name:
        config.display_name = args.name
    if args.ring_timeout is not None:
        config.ring_timeout = args.ring_timeout
        config.answer_timeout = args.ring_timeout
    if args.save:
        config.save()
        logger.info(f"Saved settings to {config.config_path}")


def run_app(argv: list[str] | None = None) -> int:
    """
    Entry point for the CLI.

    Returns:
        0 on a clean exit, 1 if the relay could not be reached or was lost,
        2 for authentication or usage errors.
    """
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    args = parser.parse_args(argv)

    log_file = None
    if not args.no_log_file:
        log_file = Path(args.log_file) if args.log_file else get_default_log_file()
    setup_logging(level=args.log_level, log_file=log_file, console=True)

    logger.info("telehealth-rtc starting")
    logger.debug(f"Command line arguments: {argv}")

    config_dir = (
        Path(args.config_dir) if args.config_dir else Path.home() / ".telehealth_rtc"
    )
    config = Config(config_path=config_dir / "config.json")
    try:
        apply_overrides(config, args)
    except ValueError as exc:
        logger.error(f"Invalid option: {exc}")
        return EXIT_AUTH

    token = args.token or os.environ.get(TOKEN_ENV, "")
    if not token:
        logger.error(f"No session token: pass --token or set {TOKEN_ENV}")
        return EXIT_AUTH
    if not config.user_id:
        logger.error("No user id: pass --user-id or set user.user_id in the config")
        return EXIT_AUTH

    credentials = Credentials(
        token=token,
        user_id=config.user_id,
        user_type=config.user_type,
        display_name=config.display_name or config.user_id,
    )
    hub = CommunicationHub(config, credentials, counterpart_id=args.counterpart or args.call)

    try:
        return asyncio.run(_run(hub, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK


async def _run(hub: CommunicationHub, args: argparse.Namespace) -> int:
    finished = asyncio.Event()
    lost = asyncio.Event()
    background: set[asyncio.Task] = set()

    def spawn(coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    def on_state(state: CallState, session: CallSession | None) -> None:
        if session is None:
            return
        if state is CallState.ENDED:
            print(f"[call] {session.call_id} ended: {session.end_reason.value}")
            if args.call and session.initiated_by_local:
                finished.set()
        else:
            print(f"[call] {session.call_id} {state.value} with {session.counterpart_id}")

    def on_incoming(session: CallSession) -> None:
        print(f"[call] incoming {session.kind.value} call from {session.counterpart_name or session.counterpart_id}")
        if args.auto_answer:
            spawn(_answer(hub))

    def on_message(message: Message) -> None:
        print(f"[chat] {message.sender_name or message.sender_id}: {message.content}")

    hub.calls.on_state_changed = on_state
    hub.calls.on_incoming_call = on_incoming
    hub.messaging.on_message = on_message
    hub.presence.on_presence_changed = lambda records: logger.info(
        f"{sum(1 for r in records.values() if r.status.value == 'online')} user(s) online"
    )
    hub.transport.subscribe(DISCONNECTED, lambda payload: lost.set())

    try:
        await hub.connect_with_backoff()
    except AuthError as exc:
        logger.error(f"Authentication failed: {exc}")
        await hub.close()
        return EXIT_AUTH
    except TransportError as exc:
        logger.error(f"Could not reach relay: {exc}")
        await hub.close()
        return EXIT_TRANSPORT

    try:
        if args.message:
            await hub.send_message(args.message)
        if args.call:
            kind = CallKind.VOICE if args.voice else CallKind.VIDEO
            try:
                session = await hub.calls.start_call(args.call, kind)
            except TransportError as exc:
                logger.error(f"Could not place call: {exc}")
                return EXIT_TRANSPORT
            if session.is_terminal:
                finished.set()

        while not finished.is_set():
            waiters = [
                asyncio.ensure_future(finished.wait()),
                asyncio.ensure_future(lost.wait()),
            ]
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in waiters:
                waiter.cancel()
            if lost.is_set() and not finished.is_set():
                lost.clear()
                try:
                    await hub.connect_with_backoff()
                except (AuthError, TransportError) as exc:
                    logger.error(f"Relay connection lost for good: {exc}")
                    return EXIT_TRANSPORT
        return EXIT_OK
    finally:
        await hub.close()


async def _answer(hub: CommunicationHub) -> None:
    try:
        await hub.answer_call()
    except CallStateError as exc:
        logger.warning(f"Auto-answer skipped: {exc}")


def main() -> None:
    sys.exit(run_app())


if __name__ == "__main__":
    main()
