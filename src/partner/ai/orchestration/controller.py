"""Run controller: the engine that drives one conversation.

One user message becomes a bounded sequence of model calls and tool
executions. The controller owns the conversation's ledger, run identity,
hot-message queue and approval gate. Cancellation is cooperative: ``stop()``
bumps the run id and every continuation checks for staleness when it resumes,
after the model call and after each tool call.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from ...services import telemetry as telemetry_service
from .approval import DENIED_RESULT, ApprovalDecision, ApprovalGate, DecisionChannel, PendingApproval, requires_approval
from .errors import ConfigurationError, ModelCallError, OrchestrationError
from .ledger import CompactionResult, CompactionStrategy, ContextLedger
from .prompts import (
    build_subagent_prompt,
    build_summary_messages,
    build_system_prompt,
    build_title_messages,
    clean_title,
    fallback_title,
    render_user_message,
)
from .selector import ToolSelector
from .subagent import SubAgentResult, SubAgentSpawner
from .tools.builtin import (
    AskQuestionsTool,
    AutoSummarizeTool,
    ManageContextTool,
    QuestionHandler,
    SubAgentTool,
    TodoList,
    TodoListTool,
)
from .tools.catalog import REOPTIMIZE_TOOL_NAME, reoptimize_descriptor
from .tools.executor import ExecutorConfig, ToolExecutor
from .tools.registry import ToolRegistry
from .tools.types import Tool, ToolDescriptor
from .types import (
    Attachment,
    ConversationSnapshot,
    ModelClient,
    RunOutcome,
    RunState,
    RunStatus,
    StopReason,
    TodoItem,
    ToolCall,
    ToolCallEvent,
    ToolCallStatus,
    ToolSelection,
)

if TYPE_CHECKING:
    from ...services.settings import Settings

__all__ = [
    "RunController",
    "ControllerConfig",
    "ControllerCallbacks",
    "CANCELLED_RESULT",
]

LOGGER = logging.getLogger(__name__)

CANCELLED_RESULT = json.dumps({"ok": False, "error": "Cancelled by the user before completion"})


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ControllerConfig:
    """Engine settings for one conversation.

    Attributes:
        max_iterations: Hard cap on model calls per send.
        max_context_tokens: Ledger budget used for usage percentages.
        tool_result_limit: Characters kept from a single tool result.
        tool_timeout: Default per-tool timeout in seconds.
        clear_tool_results_threshold: Usage percent above which old tool
            results are blanked.
        summarize_threshold: Usage percent above which older messages are
            summarized; both thresholds use the usage measured before compacting.
        summarize_keep_last: Messages kept verbatim when summarizing.
        clear_keep_last: Messages whose tool results survive clearing.
        auto_approve_sensitive: Skip approval for sensitive descriptors.
        optimize_tool_selection: Narrow the tool list per conversation.
        use_model_selection: Let the model refine the heuristic selection.
        selector_timeout: Bound on the selector's model call.
        enabled_tools: ``name -> flag`` map; tools mapped to ``False`` are hidden.
        assistant_name: Persona name used in the system prompt.
        personality: Persona description.
        custom_prompt: Extra instructions appended to the system prompt.
        workspace_path: Directory the assistant should work in.
        temperature: Sampling temperature for the main loop.
        generate_titles: Ask the model for conversation titles.
        summary_max_tokens: Completion limit for summaries.
    """

    max_iterations: int = 30
    max_context_tokens: int = 8192
    tool_result_limit: int = 3000
    tool_timeout: float = 60.0
    clear_tool_results_threshold: float = 70.0
    summarize_threshold: float = 85.0
    summarize_keep_last: int = 6
    clear_keep_last: int = 4
    auto_approve_sensitive: bool = False
    optimize_tool_selection: bool = False
    use_model_selection: bool = True
    selector_timeout: float = 8.0
    enabled_tools: Mapping[str, bool] = field(default_factory=dict)
    assistant_name: str = "Partner"
    personality: str = ""
    custom_prompt: str = ""
    workspace_path: str | None = None
    temperature: float | None = None
    generate_titles: bool = True
    summary_max_tokens: int = 1024

    @classmethod
    def from_settings(cls, settings: Settings) -> ControllerConfig:
        persona = settings.persona
        return cls(
            max_iterations=settings.max_tool_iterations,
            max_context_tokens=settings.max_context_tokens,
            tool_result_limit=settings.tool_result_limit,
            tool_timeout=settings.tool_timeout,
            clear_tool_results_threshold=settings.clear_tool_results_threshold,
            summarize_threshold=settings.summarize_threshold,
            summarize_keep_last=settings.summarize_keep_last,
            auto_approve_sensitive=settings.auto_approve_sensitive,
            optimize_tool_selection=settings.optimize_tool_selection,
            selector_timeout=settings.selector_timeout,
            enabled_tools=dict(settings.tools or {}),
            assistant_name=persona.name,
            personality=persona.personality,
            custom_prompt=persona.custom_prompt,
            workspace_path=settings.workspace_path,
            temperature=settings.temperature,
            generate_titles=settings.generate_titles,
        )


@dataclass(slots=True)
class ControllerCallbacks:
    """UI hooks fired synchronously from inside the loop.

    Exceptions raised by a hook are logged and ignored.
    """

    on_status_change: Callable[[RunStatus], None] | None = None
    on_tool_call: Callable[[ToolCallEvent], None] | None = None
    on_assistant_text: Callable[[str], None] | None = None
    on_approval_request: Callable[[PendingApproval], None] | None = None
    on_error: Callable[[str], None] | None = None
    on_title_change: Callable[[str | None], None] | None = None
    on_todo_update: Callable[[list[TodoItem]], None] | None = None
    on_persist: Callable[[ConversationSnapshot], None] | None = None
    on_subagent: Callable[[SubAgentResult], None] | None = None


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------


class RunController:
    """Drives the iterate, call, dispatch cycle for one conversation.

    Example:
        controller = RunController(client, registry, config=ControllerConfig())
        outcome = await controller.send_message("Summarize notes.md")
        print(outcome.stop_reason, outcome.reply)
    """

    def __init__(
        self,
        client: ModelClient | None,
        registry: ToolRegistry,
        *,
        executor: ToolExecutor | None = None,
        config: ControllerConfig | None = None,
        selector: ToolSelector | None = None,
        gate: ApprovalGate | None = None,
        channel: DecisionChannel | None = None,
        callbacks: ControllerCallbacks | None = None,
        question_handler: QuestionHandler | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._config = config or ControllerConfig()
        self._executor = executor or ToolExecutor(
            registry, ExecutorConfig(default_timeout=self._config.tool_timeout)
        )
        self._selector = selector or ToolSelector(client, timeout=self._config.selector_timeout)
        self._callbacks = callbacks or ControllerCallbacks()
        self._gate = gate or ApprovalGate()
        self._gate.set_request_listener(self._on_approval_request)
        self._channel = channel
        self._ledger = ContextLedger(
            self._config.max_context_tokens,
            tool_result_limit=self._config.tool_result_limit,
        )
        self._state = RunState()
        self._hot_messages: deque[str] = deque()
        self._selection: ToolSelection | None = None
        self._conversation_id = conversation_id or uuid.uuid4().hex
        self._title: str | None = None
        self._todos = TodoList(on_update=self._on_todo_update)
        self._subagents = SubAgentSpawner(self._new_subagent, on_finish=self._on_subagent_finished)
        self._questions = AskQuestionsTool(question_handler)
        self._local_tools: dict[str, Tool] = {
            tool.name: tool
            for tool in (
                ManageContextTool(self._ledger),
                AutoSummarizeTool(self._ledger, client, max_tokens=self._config.summary_max_tokens),
                TodoListTool(self._todos),
                self._questions,
                SubAgentTool(self._subagents.run_tool),
            )
        }

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def ledger(self) -> ContextLedger:
        return self._ledger

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def gate(self) -> ApprovalGate:
        return self._gate

    @property
    def callbacks(self) -> ControllerCallbacks:
        return self._callbacks

    @callbacks.setter
    def callbacks(self, value: ControllerCallbacks) -> None:
        self._callbacks = value

    @property
    def status(self) -> RunStatus:
        return self._state.status

    @property
    def run_id(self) -> int:
        return self._state.run_id

    @property
    def is_running(self) -> bool:
        return self._state.status is RunStatus.WORKING

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def title(self) -> str | None:
        return self._title

    @property
    def selection(self) -> ToolSelection | None:
        return self._selection

    @property
    def todos(self) -> tuple[TodoItem, ...]:
        return self._todos.items

    @property
    def hot_messages(self) -> tuple[str, ...]:
        return tuple(self._hot_messages)

    def set_auto_approve(self, enabled: bool) -> None:
        self._config = replace(self._config, auto_approve_sensitive=bool(enabled))

    def set_channel(self, channel: DecisionChannel | None) -> None:
        self._channel = channel

    def set_question_handler(self, handler: QuestionHandler | None) -> None:
        self._questions.set_handler(handler)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def send_message(self, text: str, attachments: Iterable[Attachment] = ()) -> RunOutcome:
        """Start a run for ``text`` and drive it until it settles.

        Raises:
            ConfigurationError: If no model client is configured. Nothing is
                appended and no run id is minted in that case.
            OrchestrationError: If a run is already in progress; use
                :meth:`inject_hot_message` instead.
        """
        if self._client is None:
            raise ConfigurationError("No model endpoint is configured")
        if self.is_running:
            raise OrchestrationError("A run is already in progress")

        run_id = self._state.begin()
        LOGGER.debug("Run %d started for conversation %s", run_id, self._conversation_id)
        telemetry_service.emit(telemetry_service.RUN_STARTED, {"run_id": run_id})
        self._notify(self._callbacks.on_status_change, RunStatus.WORKING)

        closed = self._ledger.close_dangling_tool_calls(CANCELLED_RESULT)
        if closed:
            LOGGER.debug("Closed %d tool call(s) left unanswered by a stop", closed)
        self.refresh_system_prompt()
        self._ledger.append_user(render_user_message(text, attachments))
        self._persist()

        outcome = await self._run_loop(run_id)

        LOGGER.debug(
            "Run %d finished: %s after %d iteration(s)",
            run_id,
            outcome.stop_reason.value,
            outcome.iterations,
        )
        telemetry_service.emit(
            telemetry_service.RUN_FINISHED,
            {"run_id": run_id, "stop_reason": outcome.stop_reason.value, "iterations": outcome.iterations},
        )
        self._persist()
        return outcome

    def stop(self) -> None:
        """Cancel the current run; in-flight results are discarded when they return."""
        self._state.invalidate()
        self._hot_messages.clear()
        self._gate.force_deny()
        LOGGER.debug("Conversation %s stopped (run id now %d)", self._conversation_id, self._state.run_id)
        self._notify(self._callbacks.on_status_change, RunStatus.IDLE)

    def inject_hot_message(self, text: str) -> bool:
        """Queue ``text`` for the next iteration; returns ``False`` when idle."""
        if not self.is_running or not text.strip():
            return False
        self._hot_messages.append(text)
        return True

    def resolve_approval(self, approved: bool) -> bool:
        return self._gate.resolve(approved)

    def new_conversation(self) -> None:
        """Reset every piece of per-conversation state."""
        self._state.invalidate()
        self._hot_messages.clear()
        self._gate.force_deny()
        self._ledger.clear()
        self._selection = None
        self._title = None
        self._conversation_id = uuid.uuid4().hex
        self._todos.clear()
        self.refresh_system_prompt()
        self._notify(self._callbacks.on_title_change, None)
        self._notify(self._callbacks.on_status_change, RunStatus.IDLE)

    def refresh_system_prompt(self) -> None:
        prompt = build_system_prompt(
            assistant_name=self._config.assistant_name,
            personality=self._config.personality,
            custom_prompt=self._config.custom_prompt,
            tools=self.active_descriptors(),
            workspace_path=self._config.workspace_path,
        )
        self._ledger.set_system_prompt(prompt)

    async def ensure_title(self, text: str) -> str:
        """Return the conversation title, generating one from ``text`` if needed."""
        if self._title:
            return self._title
        title = fallback_title(text)
        if self._client is not None and self._config.generate_titles:
            try:
                reply = await self._client.complete(build_title_messages(text), temperature=0.2, max_tokens=30)
            except Exception as exc:
                LOGGER.debug("Title generation failed: %s", exc)
            else:
                title = clean_title(reply.text, text)
        self._title = title
        self._notify(self._callbacks.on_title_change, title)
        return title

    def rename(self, title: str) -> None:
        self._title = title.strip() or None
        self._notify(self._callbacks.on_title_change, self._title)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            id=self._conversation_id,
            title=self._title,
            messages=self._ledger.entries,
            summaries=self._ledger.summaries,
            selection=self._selection,
            todos=tuple(TodoItem(text=item.text, done=item.done) for item in self._todos.items),
        )

    def load_snapshot(self, snapshot: ConversationSnapshot) -> None:
        """Resume a saved conversation.

        A saved selection is kept; without one, selection is recomputed on the
        next send when optimization is enabled.

        Raises:
            LedgerIntegrityError: If the saved messages violate pairing.
        """
        if self.is_running:
            self.stop()
        self._ledger.load(snapshot.messages, snapshot.summaries)
        self._state.invalidate()
        self._hot_messages.clear()
        self._conversation_id = snapshot.id or uuid.uuid4().hex
        self._title = snapshot.title
        self._selection = snapshot.selection
        self._todos.replace(snapshot.todos)
        self.refresh_system_prompt()
        self._notify(self._callbacks.on_title_change, self._title)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def enabled_descriptors(self) -> list[ToolDescriptor]:
        return self._registry.list_descriptors(enabled=self._config.enabled_tools)

    def active_descriptors(self) -> list[ToolDescriptor]:
        """Descriptors exposed to the model this turn."""
        descriptors = self.enabled_descriptors()
        if self._selection is None:
            return descriptors
        active = [descriptor for descriptor in descriptors if descriptor.name in self._selection]
        active.append(reoptimize_descriptor())
        return active

    async def reselect_tools(self, reason: str | None = None) -> ToolSelection:
        seed = self._ledger.latest_user_text()
        if reason:
            seed = f"{seed}\n{reason}".strip()
        selection = await self._selector.select(
            self.enabled_descriptors(),
            seed,
            use_model=self._config.use_model_selection,
            timeout=self._config.selector_timeout,
        )
        self._selection = selection
        self.refresh_system_prompt()
        return selection

    # ------------------------------------------------------------------
    # Sub-agents
    # ------------------------------------------------------------------

    async def run_single_shot(self, task: str, context: str | None = None) -> str:
        """One model call without tools; used when this controller is a sub-agent.

        Raises:
            ConfigurationError: If no model client is configured.
            ModelCallError: If the model call fails.
        """
        if self._client is None:
            raise ConfigurationError("No model endpoint is configured")
        run_id = self._state.begin()
        self._ledger.set_system_prompt(build_subagent_prompt(task, context))
        self._ledger.append_user(task)
        try:
            reply = await self._client.complete(self._ledger.to_chat_params(), temperature=self._config.temperature)
        finally:
            if self._state.run_id == run_id:
                self._state.status = RunStatus.IDLE
        if self._state.is_stale(run_id):
            return ""
        self._ledger.append_assistant(reply.text)
        return reply.text

    def _new_subagent(self) -> RunController:
        config = replace(self._config, optimize_tool_selection=False, generate_titles=False)
        return RunController(self._client, self._registry, config=config)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, run_id: int) -> RunOutcome:
        iterations = 0
        reply_text = ""
        stop_reason = StopReason.COMPLETED
        error: str | None = None

        try:
            while True:
                if self._state.is_stale(run_id):
                    stop_reason = StopReason.STOPPED
                    break
                if iterations >= self._config.max_iterations:
                    LOGGER.warning("Run %d reached max iterations (%d)", run_id, self._config.max_iterations)
                    stop_reason = StopReason.MAX_ITERATIONS
                    break
                iterations += 1
                LOGGER.debug("Run %d iteration %d", run_id, iterations)

                await self._maybe_compact(run_id)
                self._drain_hot_messages()
                if self._selection is None and self._config.optimize_tool_selection:
                    await self.reselect_tools()
                if self._state.is_stale(run_id):
                    stop_reason = StopReason.STOPPED
                    break

                tools = [descriptor.to_openai_tool() for descriptor in self.active_descriptors()]
                try:
                    reply = await self._client.complete(  # type: ignore[union-attr]
                        self._ledger.to_chat_params(),
                        tools=tools or None,
                        temperature=self._config.temperature,
                    )
                except Exception as exc:
                    if self._state.is_stale(run_id):
                        stop_reason = StopReason.STOPPED
                        break
                    error = str(exc) or exc.__class__.__name__
                    if isinstance(exc, ModelCallError):
                        LOGGER.warning("Run %d model call failed: %s", run_id, error)
                    else:
                        LOGGER.exception("Run %d model call raised unexpectedly", run_id)
                    self._notify(self._callbacks.on_error, error)
                    stop_reason = StopReason.ERROR
                    break

                if self._state.is_stale(run_id):
                    LOGGER.debug("Run %d discarded a stale model reply", run_id)
                    stop_reason = StopReason.STOPPED
                    break

                tool_calls = self._ledger.assign_unique_call_ids(reply.tool_calls)
                self._ledger.append_assistant(reply.text, tool_calls)
                if reply.text:
                    reply_text = reply.text
                    self._notify(self._callbacks.on_assistant_text, reply.text)

                if not tool_calls:
                    if self._hot_messages:
                        continue
                    break

                for call in tool_calls:
                    await self._dispatch(call, run_id)
                    if self._state.is_stale(run_id):
                        break
        finally:
            if self._state.run_id == run_id:
                self._state.status = RunStatus.IDLE
                self._notify(self._callbacks.on_status_change, RunStatus.IDLE)

        return RunOutcome(
            run_id=run_id,
            stop_reason=stop_reason,
            iterations=iterations,
            reply=reply_text,
            error=error,
        )

    async def _dispatch(self, call: ToolCall, run_id: int) -> None:
        arguments = call.parse_arguments()
        self._emit_tool_event(call, arguments, ToolCallStatus.CALLING)

        if call.name == REOPTIMIZE_TOOL_NAME:
            selection = await self.reselect_tools(str(arguments.get("reason") or ""))
            result: Mapping[str, Any] = {
                "ok": True,
                "selected_tools": sorted(selection.selected_names),
                "reason": selection.reason,
            }
            if not self._state.is_stale(run_id):
                self._append_result(call, result)
            return

        if not self._config.enabled_tools.get(call.name, True):
            result = {"ok": False, "error": f"Tool '{call.name}' is disabled"}
        else:
            descriptor = self._registry.get_descriptor(call.name)
            if requires_approval(
                descriptor,
                call.name,
                arguments,
                auto_approve=self._config.auto_approve_sensitive,
            ):
                decision = await self._gate.request_approval(call.name, arguments, channel=self._channel)
                if self._state.is_stale(run_id):
                    return
                if decision is ApprovalDecision.DENIED:
                    LOGGER.info("Tool %s denied by the user", call.name)
                    self._append_result(call, DENIED_RESULT, status=ToolCallStatus.DENIED)
                    return
            result = await self._execute(call, arguments)

        if self._state.is_stale(run_id):
            LOGGER.debug("Run %d discarded the result of %s", run_id, call.name)
            return
        self._append_result(call, result)

    async def _execute(self, call: ToolCall, arguments: Mapping[str, Any]) -> Mapping[str, Any]:
        local = self._local_tools.get(call.name)
        if local is not None:
            return await self._executor.run(
                local,
                arguments,
                call_id=call.id,
                timeout=getattr(local, "timeout", None),
            )
        return await self._executor.execute(call.name, arguments, call_id=call.id)

    def _append_result(
        self,
        call: ToolCall,
        result: Mapping[str, Any],
        *,
        status: ToolCallStatus = ToolCallStatus.DONE,
    ) -> None:
        body = json.dumps(result, ensure_ascii=False, default=str)
        self._ledger.append_tool_result(call.id, call.name, body)
        telemetry_service.emit(
            telemetry_service.TOOL_DISPATCHED,
            {"name": call.name, "call_id": call.id, "ok": bool(result.get("ok", True))},
        )
        self._emit_tool_event(call, call.parse_arguments(), status, result)

    def _drain_hot_messages(self) -> None:
        while self._hot_messages:
            self._ledger.append_user(self._hot_messages.popleft(), hot=True)

    async def _maybe_compact(self, run_id: int) -> None:
        usage = self._ledger.stats().usage_percent
        if usage <= self._config.clear_tool_results_threshold:
            return
        self._record_compaction(
            self._ledger.compact(CompactionStrategy.CLEAR_TOOL_RESULTS, keep_last=self._config.clear_keep_last)
        )
        if usage <= self._config.summarize_threshold:
            return
        keep_last = self._config.summarize_keep_last
        summary = await self._summarize_older(keep_last)
        if self._state.is_stale(run_id):
            return
        self._record_compaction(
            self._ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=keep_last, summary=summary)
        )

    async def _summarize_older(self, keep_last: int) -> str | None:
        older = self._ledger.summarizable_prefix(keep_last)
        if not older or self._client is None:
            return None
        try:
            reply = await self._client.complete(
                build_summary_messages(older),
                temperature=0.2,
                max_tokens=self._config.summary_max_tokens,
            )
        except Exception as exc:
            LOGGER.warning("Summary model call failed; using an extractive summary: %s", exc)
            return None
        return reply.text.strip() or None

    def _record_compaction(self, result: CompactionResult) -> None:
        if not result.changed:
            return
        LOGGER.info(
            "Context compacted via %s (removed=%d, cleared=%d)",
            result.strategy.value,
            result.removed,
            result.cleared,
        )
        telemetry_service.emit(
            telemetry_service.CONTEXT_COMPACTED,
            {"strategy": result.strategy.value, "removed": result.removed, "cleared": result.cleared},
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _emit_tool_event(
        self,
        call: ToolCall,
        arguments: Mapping[str, Any],
        status: ToolCallStatus,
        result: Any = None,
    ) -> None:
        event = ToolCallEvent(call_id=call.id, name=call.name, arguments=arguments, status=status, result=result)
        self._notify(self._callbacks.on_tool_call, event)

    def _on_approval_request(self, pending: PendingApproval) -> None:
        self._notify(self._callbacks.on_approval_request, pending)

    def _on_todo_update(self, items: list[TodoItem]) -> None:
        self._notify(self._callbacks.on_todo_update, items)

    def _on_subagent_finished(self, result: SubAgentResult) -> None:
        self._notify(self._callbacks.on_subagent, result)

    def _persist(self) -> None:
        if self._callbacks.on_persist is None:
            return
        self._notify(self._callbacks.on_persist, self.snapshot())

    @staticmethod
    def _notify(callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.debug("Controller callback raised exception", exc_info=True)
