"""
sysop.agent — Agent orchestration package.

Exports:
    create_agent()   — one-call setup for model + policy + engine + MCP + session
    AgentLoop        — the ReAct state machine
    AgentUI          — output callbacks to subclass
"""

from __future__ import annotations

from sysop.agent.loop import MAX_STEPS, AgentLoop, AgentUI
from sysop.agent.session import Session, SessionStore
from sysop.agent.state import AgentState, AwaitingFirst, AwaitingSecond
from sysop.config import get_settings
from sysop.log import get_logger
from sysop.mcp.config import McpConfig
from sysop.mcp.supervisor import McpSupervisor
from sysop.models import get_model
from sysop.safety.policy import SafetyPolicy
from sysop.tools.executor import ExecutionEngine

log = get_logger(__name__)


def create_agent(
    ui: AgentUI | None = None,
    *,
    provider: str | None = None,
    model: str | None = None,
    safe_mode: bool | None = None,
    new_session: bool = False,
) -> AgentLoop:
    """Wire every component from the current settings.

    Parameters
    ----------
    ui : AgentUI | None
        Output callbacks.
    provider, model : str | None
        Override the configured backend / model.
    safe_mode : bool | None
        Override ``execution.safe_mode``.
    new_session : bool
        Start a fresh session even when ``session.auto_resume`` is set.

    Raises
    ------
    ConfigError
        Invalid ``config.yaml`` or ``mcp.yaml``, or an unknown provider.
    """
    settings = get_settings()
    if safe_mode is not None:
        settings = settings.model_copy(
            update={"execution": settings.execution.model_copy(update={"safe_mode": safe_mode})}
        )

    engine = ExecutionEngine(settings.execution)
    supervisor = McpSupervisor(
        McpConfig.load(),
        max_failures=settings.mcp.max_failures,
        restart_delay=settings.mcp.restart_delay,
        limits=engine.limits,
    )
    store = SessionStore()

    session = store.latest() if settings.session.auto_resume and not new_session else None
    if session is not None:
        log.info("session_resumed", session=session.id)

    return AgentLoop(
        model=get_model(provider, model),
        policy=SafetyPolicy(settings.safety),
        engine=engine,
        supervisor=supervisor,
        store=store,
        settings=settings,
        ui=ui,
        session=session,
    )


__all__ = [
    "MAX_STEPS",
    "AgentLoop",
    "AgentState",
    "AgentUI",
    "AwaitingFirst",
    "AwaitingSecond",
    "Session",
    "SessionStore",
    "create_agent",
]
