"""Console entry point for screenpilot."""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from screenpilot.common import write_session
from screenpilot.src.agent.loop_runner import AgentCallbacks, AgentLoop
from screenpilot.src.agent.queue import QueueFailureMode
from screenpilot.src.llm.errors import LlmError, ProviderNotConfiguredError
from screenpilot.src.llm.factory import PROVIDER_NAMES, create_provider
from screenpilot.src.system.capture import DesktopScreenCapture
from screenpilot.src.system.input import DesktopInputController, InputInitError
from screenpilot.src.utils.config import AppConfig

YES_ANSWERS = ("y", "yes")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screenpilot", description="Screen-driving LLM agent")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_run_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--provider", choices=PROVIDER_NAMES, help="override SCREENPILOT_PROVIDER")
        p.add_argument("--max-iterations", type=int)
        p.add_argument("--speed", type=float, help="speed multiplier (0.25 - 3.0)")
        p.add_argument("--preview", action="store_true", help="show each action before executing it")
        p.add_argument("--no-confirm", action="store_true", help="do not ask before dangerous shortcuts")
        p.add_argument("--no-verify", action="store_true", help="disable screen-change verification")
        p.add_argument("--export-dir", type=Path, help="write session JSON into this directory")

    run = sub.add_parser("run", help="run one instruction")
    run.add_argument("instruction")
    add_run_options(run)

    queue = sub.add_parser("queue", help="run several instructions in order")
    queue.add_argument("instructions", nargs="+")
    queue.add_argument("--continue-on-failure", action="store_true")
    add_run_options(queue)

    providers = sub.add_parser("providers", help="check configured providers")
    providers.add_argument("--name", choices=PROVIDER_NAMES)
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    general = config.general
    if getattr(args, "provider", None):
        general.default_provider = args.provider
    if getattr(args, "max_iterations", None):
        general.max_iterations = max(1, args.max_iterations)
    if getattr(args, "speed", None):
        general.speed_multiplier = args.speed
    if getattr(args, "preview", False):
        general.preview_mode = True
    if getattr(args, "no_confirm", False):
        general.confirm_dangerous_actions = False
    if getattr(args, "no_verify", False):
        general.enable_self_correction = False
    if getattr(args, "continue_on_failure", False):
        general.queue_failure_mode = QueueFailureMode.CONTINUE.value
    return config


class _TerminalPresenter:
    """Streams model output to stdout and asks y/N for dangerous actions."""

    def __init__(self) -> None:
        self.agent: Optional[AgentLoop] = None
        self._prompts: List[asyncio.Task] = []

    def callbacks(self) -> AgentCallbacks:
        return AgentCallbacks(
            on_chunk=self.on_chunk,
            on_confirmation_required=self.on_confirmation_required,
            on_preview=lambda text: print(f"[Preview] {text}"),
        )

    def on_chunk(self, chunk: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    def on_confirmation_required(self, description: str) -> None:
        task = asyncio.get_running_loop().create_task(self._ask(description))
        self._prompts.append(task)

    async def _ask(self, description: str) -> None:
        loop = asyncio.get_running_loop()
        answer: asyncio.Future[str] = loop.create_future()

        def _deliver(text: str) -> None:
            if not answer.done():
                answer.set_result(text)

        def _read() -> None:
            try:
                text = input(f"\nAllow dangerous action '{description}'? [y/N] ")
            except EOFError:
                text = ""
            try:
                loop.call_soon_threadsafe(_deliver, text)
            except RuntimeError:
                # the run already ended and its loop is closed
                pass

        # daemon: an unanswered stdin read must not block interpreter exit
        threading.Thread(target=_read, name="screenpilot-confirm", daemon=True).start()
        text = await answer
        if self.agent is not None:
            self.agent.confirm(text.strip().lower() in YES_ANSWERS)

    def close(self) -> None:
        """Abandon prompts that are still waiting for an answer."""
        pending = [task for task in self._prompts if not task.done()]
        for task in pending:
            task.cancel()
        self._prompts.clear()
        if pending:
            print("\n[screenpilot] pending confirmation prompt discarded")


async def _run_agent(config: AppConfig, instructions: Sequence[str], queued: bool, export_dir: Optional[Path]) -> int:
    provider = create_provider(config)
    presenter = _TerminalPresenter()
    agent = AgentLoop(
        provider,
        DesktopScreenCapture(),
        DesktopInputController(),
        config.general,
        callbacks=presenter.callbacks(),
    )
    presenter.agent = agent

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.stop)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        if queued:
            await agent.queue.add_many(list(instructions))
            summary = await agent.run_queue()
            ok = summary.outcome == "completed" and summary.failed == 0
        else:
            result = await agent.run(instructions[0])
            print(f"\n[screenpilot] {result.outcome.value}: {result.message}")
            ok = result.success
    finally:
        presenter.close()

    if export_dir is not None:
        session = await agent.history.get_session()
        if session is not None:
            path = write_session(session, export_dir)
            print(f"[screenpilot] session written to {path}")
    return 0 if ok else 1


def _check_providers(config: AppConfig, only: Optional[str]) -> int:
    status = 0
    for name in [only] if only else PROVIDER_NAMES:
        try:
            provider = create_provider(config, name)
        except ProviderNotConfiguredError as exc:
            print(f"{name:18} not configured ({exc})")
            continue
        try:
            models = provider.list_models()
        except LlmError as exc:
            print(f"{name:18} unreachable: {exc}")
            status = 1
            continue
        print(f"{name:18} ok ({len(models)} models) {', '.join(models[:5])}")
    return status


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = _apply_overrides(AppConfig.from_env(), args)

    if args.command == "providers":
        return _check_providers(config, args.name)

    instructions = [args.instruction] if args.command == "run" else list(args.instructions)
    try:
        return asyncio.run(_run_agent(config, instructions, args.command == "queue", args.export_dir))
    except ProviderNotConfiguredError as exc:
        print(f"[screenpilot] {exc}", file=sys.stderr)
        return 2
    except InputInitError as exc:
        print(f"[screenpilot] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
