"""
Per-session job contexts.

Each session owns one orchestrator, its persistence directory and the event
queues of any clients streaming its progress. Sessions are created lazily on
first use and restored from disk at that point.
"""

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List

from panelforge.core.config import PanelforgeConfig
from panelforge.core.exceptions import ValidationError
from panelforge.core.logging_config import get_logger
from panelforge.pipelines.executors import StageExecutors
from panelforge.pipelines.orchestrator import GenerationOrchestrator
from panelforge.storage.persistence import HybridPersistence

logger = get_logger("api.sessions")

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# Events after which a stream closes
TERMINAL_EVENTS = ("complete", "error")


@dataclass
class SessionEvent:
    """A progress event queued for streaming."""
    event: str
    data: Dict[str, Any]


@dataclass
class SessionContext:
    """Everything the API holds for one session."""
    session_id: str
    orchestrator: GenerationOrchestrator
    subscribers: List[asyncio.Queue] = field(default_factory=list)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)

    async def publish(self, event: str, data: Dict[str, Any]) -> None:
        for queue in list(self.subscribers):
            await queue.put(SessionEvent(event=event, data=data))


def validate_session_id(session_id: str) -> str:
    if not SESSION_ID_PATTERN.match(session_id or ""):
        raise ValidationError(
            "Session ID must be 1-64 letters, digits, '-' or '_'",
            {"session_id": session_id},
        )
    return session_id


class SessionRegistry:
    """
    Session contexts keyed by session ID.

    Args:
        config: Panelforge configuration (pipeline limits, storage location)
        executors_factory: Builds the stage executors for a new session
    """

    def __init__(self, config: PanelforgeConfig, executors_factory: Callable[[], StageExecutors]):
        self.config = config
        self.executors_factory = executors_factory
        self._sessions: Dict[str, SessionContext] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __getitem__(self, session_id: str) -> SessionContext:
        return self._sessions[session_id]

    def __len__(self) -> int:
        return len(self._sessions)

    def state_dir_for(self, session_id: str) -> Path:
        return Path(self.config.storage.state_dir) / session_id

    async def get(self, session_id: str) -> SessionContext:
        """Return the session's context, creating and restoring it on first use."""
        session_id = validate_session_id(session_id)
        async with self._lock:
            context = self._sessions.get(session_id)
            if context is not None:
                return context

            persistence = HybridPersistence.from_directory(
                self.state_dir_for(session_id), self.config.storage.record_capacity
            )
            orchestrator = GenerationOrchestrator(
                self.executors_factory(),
                persistence=persistence,
                config=self.config.pipeline,
            )
            context = SessionContext(session_id=session_id, orchestrator=orchestrator)
            orchestrator.set_event_callback(context.publish)

            if await orchestrator.restore():
                logger.info(f"Session '{session_id}' restored ({orchestrator.job.phase.value})")
            else:
                logger.debug(f"Session '{session_id}' started")

            self._sessions[session_id] = context
            return context

