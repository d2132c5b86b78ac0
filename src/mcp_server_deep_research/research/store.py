"""In-memory registry of running and finished research sessions."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from ..events import EventStream
from ..exceptions import ResearchEngineError
from .machine import new_research_id
from .models import ResearchRequest
from .runner import ResearchRunner

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ResearchSession:
    """A research request, its event stream and its outcome."""

    id: str
    request: ResearchRequest
    stream: EventStream
    state: SessionState = SessionState.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    _asyncio_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_summary(self) -> dict[str, Any]:
        return {
            "researchId": self.id,
            "kind": self.request.kind.value,
            "subject": self.request.subject,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


# Global session store
_sessions: dict[str, ResearchSession] = {}
_runners: dict[str, ResearchRunner] = {}


def create_session(request: ResearchRequest, keepalive_interval: float = 30.0) -> ResearchSession:
    """Create a new research session with its own event stream."""
    session = ResearchSession(id=new_research_id(), request=request, stream=EventStream(keepalive_interval=keepalive_interval))
    _sessions[session.id] = session
    logger.info(f"Created research session {session.id} ({request.kind.value}): {request.subject[:80]}")
    return session


def get_session(session_id: str) -> Optional[ResearchSession]:
    return _sessions.get(session_id)


def list_sessions() -> list[ResearchSession]:
    return list(_sessions.values())


def delete_session(session_id: str) -> bool:
    """Delete a session and cancel it if running."""
    session = _sessions.get(session_id)
    if not session:
        return False

    if session._asyncio_task and not session._asyncio_task.done():
        session._asyncio_task.cancel()

    _runners.pop(session_id, None)
    del _sessions[session_id]
    logger.info(f"Deleted research session {session_id}")
    return True


def start_session(session: ResearchSession, runner: ResearchRunner) -> asyncio.Task:
    """Start executing a session in the background. Events land on ``session.stream``."""
    if session.state != SessionState.PENDING:
        raise ValueError(f"Session {session.id} is not in PENDING state (current: {session.state.value})")

    _runners[session.id] = runner
    session.state = SessionState.RUNNING

    async def run_with_cleanup() -> Optional[dict[str, Any]]:
        try:
            session.result = await runner.run(session.request, session.stream, research_id=session.id)
            session.state = SessionState.COMPLETED
            return session.result
        except asyncio.CancelledError:
            session.state = SessionState.CANCELLED
            logger.info(f"Session {session.id} was cancelled")
            raise
        except ResearchEngineError as e:
            session.state = SessionState.CANCELLED if e.error_type == "cancellation" else SessionState.FAILED
            session.error = e.message
            logger.error(f"Session {session.id} failed: {e.message}")
            return None
        finally:
            session.completed_at = datetime.now(UTC)
            _runners.pop(session.id, None)

    session._asyncio_task = asyncio.create_task(run_with_cleanup())
    logger.info(f"Started research session {session.id}")
    return session._asyncio_task


async def cancel_session(session_id: str) -> bool:
    """Cancel a running session: abort its in-flight requests, then cancel its task."""
    session = _sessions.get(session_id)
    if not session:
        return False

    runner = _runners.get(session_id)
    if runner:
        await runner.cancel(session_id)

    if session._asyncio_task and not session._asyncio_task.done():
        session._asyncio_task.cancel()

    logger.info(f"Cancelled research session {session_id}")
    return True
