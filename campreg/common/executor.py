"""
Attempt executor interface

The executor drives the provider's booking flow in a headless browser. It is
owned elsewhere; the coordinator only starts it, resumes it after a challenge
and aborts it when a challenge ends badly.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional
import httpx

from .config import ExecutorConfig
from .models import Checkpoint

logger = logging.getLogger(__name__)


class AttemptExecutor(ABC):
    """Base class for executor transports"""

    @abstractmethod
    async def dispatch(self, plan_id: str, session_id: str) -> bool:
        """Start a registration attempt, return True if accepted"""
        pass

    @abstractmethod
    async def resume(self, session_id: str, checkpoint: Optional[Checkpoint]) -> bool:
        """Continue an interrupted attempt from a checkpoint"""
        pass

    @abstractmethod
    async def abort(self, session_id: str, reason: str) -> bool:
        """Stop an attempt for good"""
        pass

    async def aclose(self):
        pass


class HttpAttemptExecutor(AttemptExecutor):
    """Executor reached over HTTP"""

    def __init__(self, url: str, secret: Optional[str] = None, timeout: float = 10.0):
        self.url = url.rstrip("/")
        headers = {"X-Executor-Secret": secret} if secret else {}
        self.client = httpx.AsyncClient(headers=headers, timeout=timeout)

    async def _post(self, path: str, body: dict) -> bool:
        try:
            response = await self.client.post(f"{self.url}{path}", json=body)
            success = response.status_code in (200, 201, 202)
            if not success:
                logger.error(f"Executor {path} failed: {response.status_code} - {response.text}")
            return success
        except httpx.HTTPError as e:
            logger.error(f"Executor {path} error: {e}")
            return False

    async def dispatch(self, plan_id: str, session_id: str) -> bool:
        return await self._post("/attempts", {"plan_id": plan_id, "session_id": session_id})

    async def resume(self, session_id: str, checkpoint: Optional[Checkpoint]) -> bool:
        return await self._post(
            f"/attempts/{session_id}/resume",
            {
                "session_id": session_id,
                "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            },
        )

    async def abort(self, session_id: str, reason: str) -> bool:
        return await self._post(f"/attempts/{session_id}/abort", {"reason": reason})

    async def aclose(self):
        await self.client.aclose()


class LoggingExecutor(AttemptExecutor):
    """
    Used when no executor URL is configured.

    Logs each request and reports it as not accepted, so an open verdict is
    never recorded as dispatched.
    """

    async def dispatch(self, plan_id: str, session_id: str) -> bool:
        logger.warning(f"No executor configured; plan {plan_id} would start session {session_id}")
        return False

    async def resume(self, session_id: str, checkpoint: Optional[Checkpoint]) -> bool:
        step = checkpoint.step_name if checkpoint else "start"
        logger.warning(f"No executor configured; session {session_id} would resume at {step}")
        return False

    async def abort(self, session_id: str, reason: str) -> bool:
        logger.warning(f"No executor configured; session {session_id} would abort: {reason}")
        return False


def build_executor(config: ExecutorConfig) -> AttemptExecutor:
    if config.url:
        return HttpAttemptExecutor(config.url, config.secret, config.timeout)
    return LoggingExecutor()
