"""
Checkpoint store for interrupted automation sessions

Keeps the newest few named snapshots per session so the executor can pick up
where it stopped after a human clears a challenge. Payloads are stored as
given and never inspected.
"""
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..common.config import CheckpointConfig
from ..common.models import Checkpoint, utcnow

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Bounded per-session checkpoint history with optional JSON files on disk.
    """

    def __init__(self, config: CheckpointConfig, clock: Callable[[], datetime] = utcnow):
        self.max_per_session = config.max_per_session
        self.max_recovery_age = timedelta(minutes=config.max_recovery_minutes)
        self.directory = Path(config.directory) if config.directory else None
        self.clock = clock
        self._sessions: Dict[str, List[Checkpoint]] = {}

    def save(
        self,
        session_id: str,
        step_name: str,
        browser_state: Any = None,
        workflow_state: Any = None,
        provider_context: Any = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """Append a checkpoint, then drop the oldest beyond the retention limit"""
        checkpoint = Checkpoint(
            session_id=session_id,
            step_name=step_name,
            created_at=self.clock(),
            browser_state=browser_state,
            workflow_state=workflow_state,
            provider_context=provider_context,
            success=success,
            metadata=metadata,
        )

        history = self._load(session_id)
        history.append(checkpoint)
        history.sort(key=lambda c: c.created_at)
        if len(history) > self.max_per_session:
            pruned = len(history) - self.max_per_session
            del history[:pruned]
            logger.debug(f"Pruned {pruned} old checkpoints for session {session_id}")

        self._sessions[session_id] = history
        self._persist(session_id)
        self._evict_stale()

        logger.info(f"Checkpoint created: {session_id}/{step_name}")
        return checkpoint

    def restore(self, session_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        """
        Newest checkpoint (or the one with checkpoint_id) for the session.

        Returns None when there is nothing recoverable: no checkpoints, an
        unknown id, or a checkpoint older than the recovery age limit.
        """
        history = self._load(session_id)
        if not history:
            logger.info(f"No checkpoints for session {session_id}")
            return None

        if checkpoint_id:
            checkpoint = next((c for c in history if c.id == checkpoint_id), None)
            if checkpoint is None:
                logger.warning(f"Checkpoint {checkpoint_id} not found for session {session_id}")
                return None
        else:
            checkpoint = history[-1]

        if self.clock() - checkpoint.created_at > self.max_recovery_age:
            logger.warning(
                f"Checkpoint {checkpoint.step_name} for session {session_id} is too old to recover"
            )
            return None

        return checkpoint

    def history(self, session_id: str) -> List[Checkpoint]:
        return list(self._load(session_id))

    def discard(self, session_id: str):
        """Forget a session that will not be resumed"""
        self._sessions.pop(session_id, None)
        path = self._path(session_id)
        if path and path.exists():
            path.unlink()
        logger.debug(f"Discarded checkpoints for session {session_id}")

    def _evict_stale(self):
        # Sessions whose newest checkpoint can no longer be restored
        cutoff = self.clock() - self.max_recovery_age
        stale = [sid for sid, history in self._sessions.items() if not history or history[-1].created_at < cutoff]
        for session_id in stale:
            del self._sessions[session_id]
        if stale:
            logger.debug(f"Evicted {len(stale)} stale checkpoint sessions from memory")

    def _path(self, session_id: str) -> Optional[Path]:
        if not self.directory:
            return None
        return self.directory / f"{session_id}.json"

    def _load(self, session_id: str) -> List[Checkpoint]:
        if session_id in self._sessions:
            return self._sessions[session_id]

        history: List[Checkpoint] = []
        path = self._path(session_id)
        if path and path.exists():
            with open(path) as f:
                history = [Checkpoint(**raw) for raw in json.load(f)]
            logger.debug(f"Loaded {len(history)} checkpoints from {path}")

        self._sessions[session_id] = history
        return history

    def _persist(self, session_id: str):
        path = self._path(session_id)
        if not path:
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(
                [c.model_dump(mode="json") for c in self._sessions[session_id]],
                f,
                indent=2,
                default=str,
            )
