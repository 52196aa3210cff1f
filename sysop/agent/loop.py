"""
sysop.agent.loop — The ReAct agent loop.

``AgentLoop.handle_input`` is the single entry point.  It drives one
conversational turn as far as it can go without the user:

1.  **Thinking** — send the recent history to the provider.
2.  **Review** — assess each requested invocation, in order.  Blocked ones
    are refused, confirmation-gated ones pause the turn until the user has
    acknowledged twice.
3.  **Executing** — run one invocation through the engine or the MCP
    supervisor; ``cancel()`` stops it.
4.  **Finalizing** — send the results back so the model can summarise or
    chain another action.

Each invocation is recorded as an assistant message carrying the call,
followed immediately by its tool result.  The user's message is only
recorded once the provider has answered.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from pathlib import Path
from typing import Any, Awaitable

from sysop.agent.commands import Command, missing_argument, parse_command
from sysop.agent.session import Session, SessionStore
from sysop.agent.state import (
    AgentState,
    AwaitingFirst,
    AwaitingSecond,
    PendingConfirmation,
    StateMachine,
)
from sysop.config import PROMPTS_DIR, SysopSettings
from sysop.errors import (
    ConfigError,
    McpError,
    OperationCancelled,
    PersistenceError,
    ProviderError,
    SysopError,
    ToolExecutionError,
)
from sysop.log import get_logger
from sysop.mcp.config import McpConfig
from sysop.mcp.supervisor import ConnectionStatus, McpSupervisor, McpTool
from sysop.models.base import (
    AbstractModel,
    AssistantMessage,
    ImageAttachment,
    Message,
    Role,
    ToolInvocation,
    new_call_id,
)
from sysop.models.media import load_image
from sysop.safety.policy import CONFIRMATION_PHRASE, DangerAssessment, SafetyPolicy
from sysop.tools.executor import ExecutionEngine
from sysop.tools.registry import get_tool, get_tool_schemas
from sysop.tools.types import ExecutionResult, ExecutionStatus, ToolKind

log = get_logger(__name__)

# Provider round trips allowed in one turn
MAX_STEPS = 15

_FIRST_ACK = frozenset({"y", "yes"})


class AgentUI:
    """Callbacks through which the loop talks to the user.

    The base class ignores everything; the terminal shell and the tests
    override what they need.
    """

    def reply(self, text: str) -> None: ...

    def notice(self, text: str) -> None: ...

    def error(self, text: str) -> None: ...

    def tool_request(self, invocation: ToolInvocation, assessment: DangerAssessment) -> None: ...

    def confirm_first(self, invocation: ToolInvocation, assessment: DangerAssessment) -> None: ...

    def confirm_second(self, invocation: ToolInvocation, phrase: str) -> None: ...

    def tool_result(self, invocation: ToolInvocation, result: ExecutionResult) -> None: ...

    def sessions(self, sessions: list[Session], current: str) -> None: ...

    def mcp_status(self, statuses: list[ConnectionStatus]) -> None: ...


class AgentLoop:
    """Conversation state plus the machinery that acts on it.

    Parameters
    ----------
    model : AbstractModel
        Provider backend.
    policy : SafetyPolicy
        Gate every invocation passes before it runs.
    engine : ExecutionEngine
        Local shell / code / file operations.
    supervisor : McpSupervisor
        External MCP servers.
    store : SessionStore
        Session persistence.
    settings : SysopSettings
        History window and safe mode.
    ui : AgentUI | None
        Output callbacks (silent when omitted).
    session : Session | None
        Conversation to continue; a new one is created when omitted.
    environment : str | None
        System-prompt block describing the host.  Probed lazily if omitted.
    """

    def __init__(
        self,
        model: AbstractModel,
        policy: SafetyPolicy,
        engine: ExecutionEngine,
        supervisor: McpSupervisor,
        store: SessionStore,
        settings: SysopSettings,
        ui: AgentUI | None = None,
        session: Session | None = None,
        environment: str | None = None,
    ) -> None:
        self.model = model
        self.policy = policy
        self.engine = engine
        self.supervisor = supervisor
        self.store = store
        self.settings = settings
        self.ui = ui or AgentUI()
        self.session = session or store.create()
        self.machine = StateMachine()
        self.pending: PendingConfirmation = None
        self.safe_mode = settings.execution.safe_mode

        self._environment = environment
        self._tools = get_tool_schemas()
        self._queue: list[ToolInvocation] = []
        self._lead = ""
        self._steps = 0
        self._image: ImageAttachment | None = None
        self._cancel = asyncio.Event()
        self._provider_task: asyncio.Task[AssistantMessage] | None = None

    @property
    def state(self) -> AgentState:
        return self.machine.state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bring up the configured MCP servers; failures are reported, not raised."""
        for name, error in (await self.supervisor.start_all()).items():
            if error:
                self.ui.error(f"MCP server '{name}' is unavailable: {error}")

    async def close(self) -> None:
        self._save()
        await self.supervisor.shutdown()
        await self.model.close()

    def _save(self) -> None:
        try:
            self.store.save(self.session)
        except PersistenceError as exc:
            self.ui.error(str(exc))

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------

    def _environment_section(self) -> str:
        if self._environment is None:
            from sysop.system.fingerprint import get_fingerprint

            self._environment = get_fingerprint().to_prompt_section()
        return self._environment

    @staticmethod
    def _mcp_section(servers: dict[str, list[McpTool]]) -> str:
        if not servers:
            return "## MCP servers\nNone are connected; do not use the `mcp` tool."
        lines = [
            "## MCP servers",
            'Call these through the `mcp` tool: {"server": ..., "tool": ..., "arguments": {...}}',
        ]
        for server, tools in servers.items():
            lines.append(f"\n### {server}")
            for item in tools:
                lines.append(f"- `{item.name}`: {item.description or '(no description)'}")
                props = item.input_schema.get("properties")
                if props:
                    lines.append(f"  arguments: {json.dumps(props, separators=(',', ':'))}")
        return "\n".join(lines)

    def _system_message(self) -> Message:
        base = (PROMPTS_DIR / "system.md").read_text(encoding="utf-8").strip()
        parts = [
            base,
            self._environment_section(),
            self._mcp_section(self.supervisor.available_tools()),
        ]
        if self.safe_mode:
            parts.append("SAFE MODE is on: tools are not executed, you only see what would run.")
        return Message(role=Role.SYSTEM, content="\n\n".join(parts))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_input(self, text: str) -> None:
        """Process one line typed by the user."""
        try:
            if self.pending is not None:
                await self._acknowledge(text)
                return

            stripped = text.strip()
            if not stripped:
                return
            self._cancel.clear()

            if stripped.startswith("!"):
                await self._shell_escape(stripped[1:].strip())
            elif command := parse_command(stripped):
                await self._run_command(command)
            else:
                await self._query(stripped)
        except SysopError as exc:
            log.error("turn_failed", error=str(exc), error_type=type(exc).__name__)
            self.ui.error(str(exc))
            self._abandon_turn()

    def cancel(self) -> None:
        """Abort whatever the loop is waiting on.

        A pending confirmation is discarded; a provider call is cancelled;
        a running execution is stopped by the engine or the MCP race.
        """
        if self.pending is not None:
            self.ui.notice("Cancelled. Nothing was run.")
            self._abandon_turn()
            return
        self._cancel.set()
        if self._provider_task is not None and not self._provider_task.done():
            self._provider_task.cancel()
        log.info("cancel_requested", state=self.state.value)

    def _abandon_turn(self) -> None:
        self.pending = None
        self._queue.clear()
        self._lead = ""
        self.machine.reset()

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def _acknowledge(self, text: str) -> None:
        pending = self.pending
        if isinstance(pending, AwaitingFirst) and text.strip().lower() in _FIRST_ACK:
            self.pending = AwaitingSecond(pending.invocation, pending.assessment)
            self.ui.confirm_second(pending.invocation, CONFIRMATION_PHRASE)
            return
        if isinstance(pending, AwaitingSecond) and text == CONFIRMATION_PHRASE:
            self.pending = None
            self._cancel.clear()
            log.info("confirmation_granted", tool=pending.invocation.name)
            await self._continue_turn(approved=pending.invocation)
            return

        log.info("confirmation_declined", tool=pending.invocation.name if pending else None)
        self.ui.notice("Not confirmed. The action and the rest of this turn were discarded.")
        self._abandon_turn()

    # ------------------------------------------------------------------
    # Model turns
    # ------------------------------------------------------------------

    async def _think(self, extra: list[Message]) -> AssistantMessage:
        """One provider round trip.

        Raises
        ------
        OperationCancelled
            ``cancel()`` was called before or during the call.
        ProviderError
            Passed through from the backend.
        """
        if self._cancel.is_set():
            raise OperationCancelled()
        messages = [
            self._system_message(),
            *self.session.window(self.settings.session.history_limit),
            *extra,
        ]
        self._provider_task = asyncio.create_task(self.model.complete(messages, self._tools))
        try:
            return await self._provider_task
        except asyncio.CancelledError:
            if self._cancel.is_set():
                raise OperationCancelled() from None
            raise
        finally:
            self._provider_task = None

    async def _query(self, text: str) -> None:
        user = Message(role=Role.USER, content=text, image=self._image)
        self.machine.move(AgentState.THINKING)
        try:
            reply = await self._think([user])
        except OperationCancelled:
            self.ui.notice("Cancelled.")
            self.machine.reset()
            return
        except ProviderError as exc:
            log.warning("provider_failed", kind=exc.kind, error=str(exc))
            self.ui.error(f"{exc} (your message was not sent; press ↑ to retry)")
            self.machine.reset()
            return

        self.session.append(user)
        self._image = None
        self._steps = 1
        if not reply.has_tool_calls:
            self._finish(reply)
            return
        self._begin_review(reply)
        await self._continue_turn()

    def _begin_review(self, reply: AssistantMessage) -> None:
        self.machine.move(AgentState.REVIEW_ACTION)
        self._queue = list(reply.tool_calls)
        self._lead = reply.content

    def _finish(self, reply: AssistantMessage) -> None:
        self.session.append(Message(role=Role.ASSISTANT, content=reply.content))
        self.ui.reply(reply.content)
        self.machine.reset()

    async def _continue_turn(self, approved: ToolInvocation | None = None) -> None:
        """Run the queued invocations, then loop through the model until it answers."""
        while True:
            if approved is not None:
                if not await self._execute(approved):
                    return
                approved = None

            while self._queue:
                if self._cancel.is_set():
                    self.ui.notice("Cancelled.")
                    self._abandon_turn()
                    return
                invocation = self._queue.pop(0)
                assessment = self.policy.assess(invocation)
                self.ui.tool_request(invocation, assessment)
                if assessment.blocked:
                    self._record(invocation, ExecutionResult.refused(assessment.reason))
                    continue
                if assessment.needs_confirmation:
                    self.pending = AwaitingFirst(invocation, assessment)
                    self.ui.confirm_first(invocation, assessment)
                    return
                if not await self._execute(invocation):
                    return

            self.machine.move(AgentState.FINALIZING)
            if self._steps >= MAX_STEPS:
                self.ui.error(
                    f"Stopped after {MAX_STEPS} model calls in one turn. "
                    "Ask again with a narrower request."
                )
                self.machine.reset()
                return
            self.machine.move(AgentState.THINKING)
            try:
                reply = await self._think([])
            except OperationCancelled:
                self.ui.notice("Cancelled.")
                self.machine.reset()
                return
            except ProviderError as exc:
                log.warning("provider_failed", kind=exc.kind, error=str(exc))
                self.ui.error(str(exc))
                self.machine.reset()
                return
            self._steps += 1
            if not reply.has_tool_calls:
                self._finish(reply)
                return
            self._begin_review(reply)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, invocation: ToolInvocation) -> bool:
        """Run one cleared invocation and record it.  False once cancelled."""
        self.machine.move(AgentState.EXECUTING)
        result = await self._dispatch(invocation)
        self._record(invocation, result)
        if result.status == ExecutionStatus.CANCELLED:
            self.ui.notice("Cancelled.")
            self._abandon_turn()
            return False
        self.machine.move(AgentState.REVIEW_ACTION)
        return True

    async def _dispatch(self, invocation: ToolInvocation) -> ExecutionResult:
        entry = get_tool(invocation.name)
        if entry is None:
            return ExecutionResult.refused(f"unknown tool '{invocation.name}'")
        if self.safe_mode:
            return ExecutionResult.dry_run(invocation.describe())
        try:
            if entry.kind == ToolKind.MCP:
                server, tool_name, arguments = entry.func(**invocation.arguments)
                return await self._race(self.supervisor.call(server, tool_name, arguments))
            return await self.engine.execute(entry.kind, dict(invocation.arguments), self._cancel)
        except (ToolExecutionError, McpError) as exc:
            log.warning("tool_failed", tool=invocation.name, error=str(exc))
            return ExecutionResult.failed(str(exc))

    async def _race(self, work: Awaitable[ExecutionResult]) -> ExecutionResult:
        """Await *work* unless ``cancel()`` fires first."""
        started = time.monotonic()
        task: asyncio.Task[ExecutionResult] = asyncio.ensure_future(work)
        waiter = asyncio.create_task(self._cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, McpError):
            await task
        return ExecutionResult(
            status=ExecutionStatus.CANCELLED, duration=time.monotonic() - started
        )

    def _record(self, invocation: ToolInvocation, result: ExecutionResult) -> None:
        self.session.append(
            Message(role=Role.ASSISTANT, content=self._lead, tool_call=invocation),
            Message(role=Role.TOOL, content=result.to_tool_content(), tool_call_id=invocation.id),
        )
        self._lead = ""
        self.ui.tool_result(invocation, result)

    async def _shell_escape(self, cmd: str) -> None:
        if not cmd:
            self.ui.error("Usage: !<command>")
            return
        invocation = ToolInvocation(id=new_call_id(), name="run_cmd", arguments={"cmd": cmd})
        assessment = self.policy.assess(invocation)
        if assessment.blocked:
            self.ui.error(f"Refused: {assessment.reason}")
            return

        self.machine.move(AgentState.REVIEW_ACTION)
        self.machine.move(AgentState.EXECUTING)
        result = await self._dispatch(invocation)
        self.machine.reset()
        self.ui.tool_result(invocation, result)
        self.session.append(Message(
            role=Role.USER,
            content=f"I ran `{cmd}` myself:\n{result.to_tool_content()}",
        ))

    # ------------------------------------------------------------------
    # Direct commands
    # ------------------------------------------------------------------

    async def _run_command(self, command: Command) -> None:
        if usage := missing_argument(command):
            self.ui.error(usage)
            return
        handler = getattr(self, f"_cmd_{command.name}")
        await handler(command.arg)

    async def _cmd_new(self, _arg: str) -> None:
        self._save()
        self.session = self.store.create()
        self.ui.notice(f"Started session {self.session.id}.")

    async def _cmd_sessions(self, _arg: str) -> None:
        self.ui.sessions(self.store.list_sessions(), self.session.id)

    async def _cmd_switch(self, arg: str) -> None:
        if arg == self.session.id:
            self.ui.notice(f"Already in session {arg}.")
            return
        target = self.store.load(arg)
        self._save()
        self.session = target
        self.ui.notice(f"Switched to session {target.id} ({len(target.messages)} messages).")

    async def _cmd_model(self, arg: str) -> None:
        if arg:
            previous, self.model.model = self.model.model, arg
            log.info("model_switched", previous=previous, model=arg)
            self.ui.notice(f"Model: {previous} → {arg}")
            return
        try:
            available = await self.model.list_models()
        except ProviderError as exc:
            self.ui.notice(f"Model: {self.model.model} (could not list others: {exc})")
            return
        listing = ", ".join(available) if available else "none reported"
        self.ui.notice(f"Model: {self.model.model}\nAvailable: {listing}")

    async def _cmd_mcp(self, arg: str) -> None:
        if not arg:
            self.ui.mcp_status(self.supervisor.status())
            return
        server = arg.partition(" ")[2].strip()
        conn = await self.supervisor.restart(server)
        self.ui.notice(f"MCP server '{server}' is ready with {len(conn.tools)} tools.")

    async def _cmd_reload(self, _arg: str) -> None:
        try:
            config = McpConfig.load()
        except (ConfigError, PersistenceError) as exc:
            self.ui.error(f"Reload aborted, keeping the current servers: {exc}")
            return
        outcome = await self.supervisor.reload_config(config)
        for name, error in outcome.items():
            if error:
                self.ui.error(f"MCP server '{name}' is unavailable: {error}")
        self.ui.notice(f"Reloaded MCP config: {len(config.servers)} servers, {len(outcome)} (re)started.")

    async def _cmd_image(self, arg: str) -> None:
        raw, _, question = arg.partition(" ")
        try:
            image = load_image(raw)
        except ProviderError as exc:
            self.ui.error(str(exc))
            return
        self._image = image
        if question.strip():
            await self._query(question.strip())
        else:
            self.ui.notice(f"Attached {Path(image.path).name}; it will be sent with your next message.")

    def describe(self) -> dict[str, Any]:
        """Summary for banners and ``sysop info``."""
        return {
            "session": self.session.id,
            "messages": len(self.session.messages),
            "model": self.model.model,
            "safe_mode": self.safe_mode,
            "mcp_servers": len(self.supervisor.connections),
        }
