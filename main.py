from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

import qasync
from PyQt6.QtCore import QCoreApplication, QTimer

from config import Config
from contracts import BackendName, GenerationResult, TokenEvent
from clipassist.clipboard import ClipboardMonitor
from clipassist.orchestrator import GenerationOrchestrator
from clipassist.vault import GEMINI_API_KEY, SecureVault

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="clipassist",
        description="Watch the clipboard and stream AI analysis of what you copy.",
    )
    parser.add_argument("--interval", type=int, help="Initial polling interval in ms")
    parser.add_argument(
        "--backend", choices=[b.value for b in BackendName], help="Backend to use"
    )
    parser.add_argument("--model", help="Model name for the selected backend")
    parser.add_argument("--ask", metavar="QUESTION", help="Ask one question and exit")
    parser.add_argument(
        "--set-gemini-key",
        action="store_true",
        help="Prompt for a Gemini API key, verify it and store it encrypted",
    )
    parser.add_argument("--export-key", metavar="FILE", help="Export the encrypted Gemini key")
    parser.add_argument("--import-key", metavar="FILE", help="Import an exported Gemini key")
    parser.add_argument("--status", action="store_true", help="Print status and exit")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _print_token(event: TokenEvent) -> None:
    print(event.token, end="", flush=True)


def _print_completed(result: GenerationResult) -> None:
    print(f"\n[{result.backend.value}/{result.model}] {result.finish_reason}", flush=True)


def _print_error(event: dict) -> None:
    print(f"\nError ({event.get('type')}): {event.get('error')}", file=sys.stderr)


async def _key_commands(args: argparse.Namespace, vault: SecureVault) -> int | None:
    if args.set_gemini_key:
        api_key = getpass.getpass("Gemini API key: ")
        result = await vault.store_gemini_api_key(api_key)
        if not result.success:
            print(f"Failed to store API key: {result.error}", file=sys.stderr)
            return 1
        print(f"API key stored ({vault.storage_backend})")
        return 0

    if args.export_key:
        exported = vault.export_key(GEMINI_API_KEY)
        if not exported.success:
            print(f"Export failed: {exported.error}", file=sys.stderr)
            return 1
        with open(args.export_key, "w", encoding="utf-8") as f:
            json.dump(exported.data, f, indent=2)
        print(f"Encrypted key exported to {args.export_key}")
        return 0

    if args.import_key:
        try:
            with open(args.import_key, "r", encoding="utf-8") as f:
                blob = json.load(f)
        except (OSError, ValueError) as e:
            print(f"Cannot read {args.import_key}: {e}", file=sys.stderr)
            return 1
        imported = vault.import_key(blob)
        if not imported.success:
            print(f"Import failed: {imported.error}", file=sys.stderr)
            return 1
        print("API key imported")
        return 0

    return None


async def run(args: argparse.Namespace, config: Config, stop_event: asyncio.Event) -> int:
    vault = SecureVault(config)
    vault.security_warning.connect(
        lambda w: print(f"Security warning: {w['message']}", file=sys.stderr)
    )
    vault.initialize()

    exit_code = await _key_commands(args, vault)
    if exit_code is not None:
        return exit_code

    orchestrator = GenerationOrchestrator(vault, config=config)
    orchestrator.token_received.connect(_print_token)
    orchestrator.generation_completed.connect(_print_completed)
    orchestrator.error_occurred.connect(_print_error)
    orchestrator.backend_fallback.connect(
        lambda e: print(f"Falling back to {e['to']}: {e['reason']}", file=sys.stderr)
    )

    monitor: ClipboardMonitor | None = None
    try:
        await orchestrator.initialize()
        if args.backend:
            await orchestrator.switch_backend(args.backend)
        if args.model and not orchestrator.set_model(args.model):
            return 1

        if args.status:
            print(json.dumps(orchestrator.get_status(), indent=2, default=str))
            return 0

        if args.ask:
            result = await orchestrator.submit_question(args.ask)
            return 0 if result is not None else 1

        monitor = ClipboardMonitor(config)
        monitor.clipboard_changed.connect(orchestrator.on_clipboard_changed)
        monitor.error_occurred.connect(_print_error)
        if not monitor.start(args.interval):
            return 1

        print("Watching the clipboard, press Ctrl+C to quit.", file=sys.stderr)
        await stop_event.wait()
        return 0
    finally:
        if monitor is not None and monitor.is_monitoring:
            monitor.stop()
        await orchestrator.shutdown()


def main() -> None:
    args = parse_args()
    config = Config.from_env()
    configure_logging(config.log_level)

    app = QCoreApplication(sys.argv)
    loop = qasync.QEventLoop(app)
    asyncio.set_event_loop(loop)

    stop_event = asyncio.Event()
    signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    # Python only sees SIGINT when the interpreter gets control back from Qt.
    wakeup = QTimer()
    wakeup.timeout.connect(lambda: None)
    wakeup.start(200)

    with loop:
        exit_code = loop.run_until_complete(run(args, config, stop_event))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
