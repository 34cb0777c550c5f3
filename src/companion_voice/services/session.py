import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Protocol

if TYPE_CHECKING:
    from .ingestion import AudioBatcher
    from .segmentation import UtteranceSegmenter
    from .stt_service import RecognitionStream
    from .task_queue import SessionTaskQueue
    from .trial_meter import TrialMeter


logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RecognitionState:
    """The recognition attempt currently open for a session."""

    stream: Optional["RecognitionStream"] = None
    listener: Optional[asyncio.Task] = None
    interim_transcript: str = ""
    last_sent: str = ""
    started_at: Optional[float] = None

    def clear(self) -> None:
        self.stream = None
        self.listener = None
        self.interim_transcript = ""
        self.started_at = None


@dataclass
class Session:
    """Tracks the state of a single voice connection."""

    session_id: str
    connection: Connection
    voice: str
    language: str
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    queue: Optional["SessionTaskQueue"] = None
    batcher: Optional["AudioBatcher"] = None
    recognition: RecognitionState = field(default_factory=RecognitionState)
    segmenter: Optional["UtteranceSegmenter"] = None
    meter: Optional["TrialMeter"] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    silence_timer: Optional[asyncio.TimerHandle] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: float = field(default_factory=time.monotonic)
    closed: bool = False

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = time.monotonic()

    def remember(self, role: str, content: str, *, max_turns: int) -> None:
        """Append to the conversation history, keeping the last ``max_turns`` exchanges."""
        self.history.append({"role": role, "content": content})
        limit = max_turns * 2
        if limit <= 0:
            self.history.clear()
        elif len(self.history) > limit:
            del self.history[: len(self.history) - limit]

    async def send(self, message: dict) -> bool:
        """Send a JSON message to the client. Returns False if the socket is gone."""
        if self.closed:
            return False
        try:
            await self.connection.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Error sending {message.get('type')} to {self.session_id}: {e}")
            return False


class SessionRegistry:
    """Live sessions keyed by session id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} is already registered")
        self._sessions[session.session_id] = session
        logger.info(f"Session registered: {session.session_id} ({len(self._sessions)} active)")

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info(f"Session removed: {session_id} ({len(self._sessions)} active)")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))


__all__ = [
    "Connection",
    "RecognitionState",
    "Session",
    "SessionRegistry",
    "new_session_id",
]
