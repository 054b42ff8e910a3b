"""Console front-end and bootstrap helpers for the Partner agent."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, ClientSettings
from .ai.orchestration.approval import PendingApproval
from .ai.orchestration.controller import ControllerCallbacks, ControllerConfig, RunController
from .ai.orchestration.errors import OrchestrationError
from .ai.orchestration.tools.catalog import default_catalog
from .ai.orchestration.tools.registry import ToolRegistry
from .ai.orchestration.types import ConversationSnapshot, RunStatus, TodoItem, ToolCallEvent, ToolCallStatus
from .services.history import ConversationStore
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_APPROVE_WORDS = {"y", "yes", "approve"}
_DENY_WORDS = {"n", "no", "deny"}

LineReader = Callable[[str], Awaitable[Optional[str]]]

_HELP_TEXT = """Commands:
  /stop             cancel the current run
  /new              start a new conversation
  /approve, /deny   answer a pending approval (or type y / n)
  /auto on|off      toggle auto-approval of sensitive tools
  /todos            show the todo list
  /stats            show context usage
  /history          list saved conversations
  /resume ID        reopen a saved conversation
  /quit             exit
Anything else is sent to the assistant. Lines typed while it works are
queued and delivered at its next step."""


def configure_logging(level: int | str = logging.INFO, *, force: bool = False) -> None:
    """Configure logging for the console application."""

    path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s, path=%s)", level, path)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_client(settings: Settings) -> AIClient | None:
    """Construct the model client, or ``None`` when no endpoint is configured."""

    if not settings.is_configured:
        _LOGGER.warning("No model endpoint configured; sending messages is disabled")
        return None
    client_settings = ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        temperature=settings.temperature,
        default_headers=settings.default_headers,
        debug_logging=settings.debug_logging,
    )
    return AIClient(client_settings)


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_many(default_catalog())
    return registry


def build_controller(
    settings: Settings,
    *,
    client: AIClient | None = None,
    registry: ToolRegistry | None = None,
) -> RunController:
    """Wire a :class:`RunController` from settings."""

    return RunController(
        client,
        registry or build_registry(),
        config=ControllerConfig.from_settings(settings),
    )


# -----------------------------------------------------------------------------
# Console session
# -----------------------------------------------------------------------------


class ConsoleSession:
    """Line-oriented chat loop around one :class:`RunController`.

    Runs happen in a background task so the user can keep typing: plain lines
    typed mid-run become hot messages, ``y``/``n`` answer approvals and
    ``/stop`` cancels.
    """

    def __init__(
        self,
        controller: RunController,
        *,
        store: ConversationStore | None = None,
        stream: TextIO | None = None,
        reader: LineReader | None = None,
    ) -> None:
        self._controller = controller
        self._store = store
        self._stream = stream or sys.stdout
        self._reader = reader or _read_line
        self._run_task: asyncio.Task[None] | None = None
        self._answer: asyncio.Future[str] | None = None
        controller.callbacks = ControllerCallbacks(
            on_status_change=self._on_status,
            on_tool_call=self._on_tool_call,
            on_assistant_text=self._on_assistant_text,
            on_approval_request=self._on_approval_request,
            on_error=self._on_error,
            on_title_change=self._on_title,
            on_todo_update=self._on_todos,
            on_persist=self._persist,
        )
        controller.set_question_handler(self.ask_questions)

    @property
    def run_task(self) -> asyncio.Task[None] | None:
        return self._run_task

    async def run(self) -> None:
        self._write("Partner is ready. Type /help for commands.")
        while True:
            line = await self._reader("> ")
            if line is None:
                break
            if not await self.handle_line(line):
                break
        await self.shutdown()

    async def shutdown(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            self._controller.stop()
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task

    async def handle_line(self, line: str) -> bool:
        """Process one input line; returns ``False`` when the session should end."""

        text = line.strip()
        if not text:
            return True
        if text.startswith("/"):
            return self._handle_command(text)
        if self._answer is not None and not self._answer.done():
            self._answer.set_result(text)
            return True
        if self._controller.gate.pending is not None:
            lowered = text.lower()
            if lowered in _APPROVE_WORDS or lowered in _DENY_WORDS:
                self._controller.resolve_approval(lowered in _APPROVE_WORDS)
                return True
        if self._controller.is_running:
            if self._controller.inject_hot_message(text):
                self._write("(queued for the next step)")
            return True
        self._run_task = asyncio.create_task(self._send(text))
        return True

    async def ask_questions(self, questions: Sequence[Mapping[str, Any]]) -> list[dict[str, str]]:
        """Question handler for the ``ask_questions`` tool."""

        answers: list[dict[str, str]] = []
        for item in questions:
            question = str(item.get("question") or "").strip()
            options = item.get("options") or []
            self._write(f"? {question}")
            if options:
                self._write("  options: " + ", ".join(str(option) for option in options))
            self._answer = asyncio.get_running_loop().create_future()
            try:
                answer = await self._answer
            finally:
                self._answer = None
            answers.append({"question": question, "answer": answer})
        return answers

    async def _send(self, text: str) -> None:
        try:
            await asyncio.gather(
                self._controller.send_message(text),
                self._controller.ensure_title(text),
            )
        except OrchestrationError as exc:
            self._write(f"! {exc}")
            return
        self._persist(self._controller.snapshot())

    def _handle_command(self, text: str) -> bool:
        command, _, argument = text.partition(" ")
        command = command.lower()
        argument = argument.strip()
        controller = self._controller
        if command in {"/quit", "/exit"}:
            return False
        if command == "/help":
            self._write(_HELP_TEXT)
        elif command == "/stop":
            controller.stop()
            self._write("Stopped.")
        elif command == "/new":
            controller.new_conversation()
            self._write("Started a new conversation.")
        elif command in {"/approve", "/deny"}:
            if not controller.resolve_approval(command == "/approve"):
                self._write("Nothing is waiting for approval.")
        elif command == "/auto":
            enabled = _parse_bool(argument or "on")
            controller.set_auto_approve(enabled)
            self._write(f"Auto-approval {'enabled' if enabled else 'disabled'}.")
        elif command == "/todos":
            self._on_todos(list(controller.todos))
        elif command == "/stats":
            stats = controller.ledger.stats()
            self._write(
                f"{stats.estimated_tokens}/{stats.max_tokens} tokens "
                f"({stats.usage_percent:.1f}%), {stats.message_count} messages"
            )
        elif command == "/history":
            self._list_history()
        elif command == "/resume":
            self._resume(argument)
        else:
            self._write(f"Unknown command {command}; try /help.")
        return True

    def _list_history(self) -> None:
        if self._store is None:
            self._write("History is disabled.")
            return
        entries = self._store.list()
        if not entries:
            self._write("No saved conversations.")
        for entry in entries:
            self._write(f"{entry.id}  {entry.updated_at[:16]}  {entry.title} ({entry.message_count})")

    def _resume(self, conversation_id: str) -> None:
        if self._store is None or not conversation_id:
            self._write("Usage: /resume ID")
            return
        try:
            snapshot = self._store.load(conversation_id)
        except ValueError as exc:
            self._write(f"! {exc}")
            return
        if snapshot is None:
            self._write(f"No conversation {conversation_id}.")
            return
        try:
            self._controller.load_snapshot(snapshot)
        except OrchestrationError as exc:
            self._write(f"! Cannot resume {conversation_id}: {exc}")
            return
        self._write(f"Resumed {snapshot.title or conversation_id} ({len(snapshot.messages)} messages).")

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _on_status(self, status: RunStatus) -> None:
        _LOGGER.debug("Status changed to %s", status.value)

    def _on_tool_call(self, event: ToolCallEvent) -> None:
        if event.status is ToolCallStatus.CALLING:
            self._write(f"  -> {event.name}")
        elif event.status is ToolCallStatus.DENIED:
            self._write(f"  x {event.name} denied")

    def _on_assistant_text(self, text: str) -> None:
        self._write(text)

    def _on_approval_request(self, pending: PendingApproval) -> None:
        arguments = json.dumps(dict(pending.arguments), ensure_ascii=False)
        self._write(f"Approve {pending.tool_name} {arguments}? [y/n]")

    def _on_error(self, message: str) -> None:
        self._write(f"! {message}")

    def _on_title(self, title: str | None) -> None:
        if title:
            _LOGGER.debug("Conversation title: %s", title)

    def _on_todos(self, items: list[TodoItem]) -> None:
        if not items:
            self._write("Todo list is empty.")
            return
        for index, item in enumerate(items):
            self._write(f"  [{'x' if item.done else ' '}] {index}. {item.text}")

    def _persist(self, snapshot: ConversationSnapshot) -> None:
        if self._store is None or not snapshot.messages:
            return
        try:
            self._store.save(snapshot)
        except OSError as exc:
            _LOGGER.warning("Failed to save conversation %s: %s", snapshot.id, exc)

    def _write(self, text: str) -> None:
        self._stream.write(text + "\n")
        self._stream.flush()


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `partner` console script."""

    args = _parse_cli_args(argv)

    settings_path = args.settings_path or os.environ.get("PARTNER_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.auto_approve:
        cli_overrides["auto_approve_sensitive"] = True

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    level = args.log_level or ("DEBUG" if settings.debug_logging else settings.log_level)
    configure_logging(level)

    history_dir = args.history_dir or settings.history_dir
    store = ConversationStore(Path(history_dir).expanduser() if history_dir else None)
    client = build_client(settings)
    controller = build_controller(settings, client=client)
    session = ConsoleSession(controller, store=store)

    if args.resume:
        snapshot = store.load(args.resume)
        if snapshot is None:
            print(f"No saved conversation {args.resume}", file=sys.stderr)
            raise SystemExit(1)
        controller.load_snapshot(snapshot)

    try:
        asyncio.run(_run_session(session, client))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def _run_session(session: ConsoleSession, client: AIClient | None) -> None:
    try:
        await session.run()
    finally:
        if client is not None:
            await client.aclose()


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="partner",
        description="Chat with the Partner agent or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.partner/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this session (repeatable).",
    )
    parser.add_argument("--log-level", metavar="LEVEL", help="Logging level, e.g. DEBUG or INFO.")
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Run sensitive tools without asking (dangerous commands still ask).",
    )
    parser.add_argument("--history-dir", metavar="PATH", help="Directory for saved conversations.")
    parser.add_argument("--resume", metavar="ID", help="Reopen a saved conversation.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if is_dataclass(target):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dataclass overrides must be valid JSON") from exc
        if isinstance(target, type):
            return target(**payload)
        raise ValueError("Dataclass override target is not instantiable")
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("PARTNER_"))


if __name__ == "__main__":  # pragma: no cover
    main()
