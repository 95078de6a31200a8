import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from services.errors import CapacityError, NotFoundError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StreamRecord:
    stream_id: str
    encrypted_url: str
    original_url: str = field(repr=False)
    created_at: datetime
    expires_at: datetime
    max_viewers: int
    generation_id: str
    viewer_count: int = 0
    is_active: bool = True
    stopped_at: Optional[datetime] = None

    def refresh(self, now: datetime):
        """Marks the record inactive once its expiry has passed."""
        if self.is_active and now >= self.expires_at:
            self.is_active = False

    def to_stats(self, now: datetime) -> dict:
        """Client-safe view of the record. Never includes the origin URL."""
        return {
            "streamId": self.stream_id,
            "isActive": self.is_active,
            "viewerCount": self.viewer_count,
            "maxViewers": self.max_viewers,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "uptimeMs": int((now - self.created_at).total_seconds() * 1000),
        }


@dataclass
class ViewerSession:
    session_id: str
    stream_id: str
    joined_at: datetime
    last_activity: datetime


class StreamRegistry:
    """In-memory store of stream records and viewer sessions.

    All mutations happen on the event loop thread, so no locking is needed.
    Records are only physically deleted by ``reap_expired``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.streams: Dict[str, StreamRecord] = {}
        self.sessions: Dict[str, ViewerSession] = {}

    def add(self, record: StreamRecord) -> StreamRecord:
        self.streams[record.stream_id] = record
        return record

    def get(self, stream_id: str) -> Optional[StreamRecord]:
        record = self.streams.get(stream_id)
        if record is not None:
            record.refresh(self.clock())
        return record

    def require(self, stream_id: str) -> StreamRecord:
        record = self.get(stream_id)
        if record is None:
            raise NotFoundError()
        return record

    def stop(self, stream_id: str, new_generation_id: str) -> StreamRecord:
        """Deactivates a stream and rotates its generation id. Idempotent."""
        record = self.require(stream_id)
        if record.stopped_at is None:
            record.stopped_at = self.clock()
        record.is_active = False
        record.generation_id = new_generation_id
        logger.info(f"⏹️ Stream stopped: {stream_id} (final viewers: {record.viewer_count})")
        return record

    def register_viewer(self, stream_id: str, session_id: str = None) -> ViewerSession:
        record = self.require(stream_id)
        session_id = session_id or str(uuid.uuid4())
        existing = self.sessions.get(session_id)
        if existing is not None and existing.stream_id == stream_id:
            existing.last_activity = self.clock()
            return existing

        if record.viewer_count >= record.max_viewers:
            logger.warning(f"🚫 Viewer rejected, stream {stream_id} at capacity ({record.max_viewers})")
            raise CapacityError()
        if existing is not None:
            # Session moves to another stream: release its old slot first
            self.remove_viewer(session_id)

        now = self.clock()
        session = ViewerSession(session_id=session_id, stream_id=stream_id, joined_at=now, last_activity=now)
        record.viewer_count += 1
        self.sessions[session_id] = session
        logger.info(f"👤 Viewer joined {stream_id}: {session_id} (viewers: {record.viewer_count})")
        return session

    def remove_viewer(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        record = self.streams.get(session.stream_id)
        if record is not None:
            record.viewer_count = max(0, record.viewer_count - 1)
            logger.info(f"👋 Viewer left {session.stream_id}: {session_id} (viewers: {record.viewer_count})")
        return True

    def reap_expired(self, now: datetime = None) -> int:
        """Deletes expired or stopped streams together with their sessions."""
        now = now or self.clock()
        doomed = [
            stream_id for stream_id, record in self.streams.items()
            if record.expires_at < now or not record.is_active
        ]
        if not doomed:
            return 0

        doomed_set = set(doomed)
        for session_id in [sid for sid, s in self.sessions.items() if s.stream_id in doomed_set]:
            del self.sessions[session_id]
        for stream_id in doomed:
            del self.streams[stream_id]

        logger.info(f"🧹 Reaped {len(doomed)} expired streams, {len(self.streams)} remaining")
        return len(doomed)

    def list_streams(self) -> List[dict]:
        now = self.clock()
        result = []
        for record in self.streams.values():
            record.refresh(now)
            result.append(record.to_stats(now))
        return result

    @property
    def active_stream_count(self) -> int:
        return len(self.streams)


async def reap_periodically(registry: StreamRegistry, interval: float):
    """Background task: reaps the registry every ``interval`` seconds until cancelled."""
    logger.info(f"🧹 Stream reaper started (every {interval:.0f}s)")
    while True:
        await asyncio.sleep(interval)
        try:
            registry.reap_expired()
        except Exception as e:
            logger.error(f"❌ Error while reaping streams: {e}")
