"""Shared memory store clients.

The store holds three kinds of state, all scoped by a run id:
- variables: small named values (API key, active server, personas)
- traces: input/outcome/action records used for recall
- threads: the persisted conversation thread per agent

Joining a shared workspace swaps the active run id so every read and write
goes to the team's run instead of the private one.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
from langchain_core.messages import BaseMessage, messages_from_dict, messages_to_dict

from memini.utils.error_handler import ConnectivityError, ProtocolError

LOGGER = logging.getLogger(__name__)

SHARED_WORKSPACE_VAR = "shared_workspace"


@dataclass(frozen=True)
class MemoryRecord:
    """One committed trace, as returned by recall."""

    input: str
    outcome: str
    action: str = "chat"
    agent_id: str = "memini"
    created_at: str = ""

    def render(self) -> str:
        return f"- [{self.action}] {self.input} => {self.outcome}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryRecord":
        return cls(
            input=str(data.get("input", "")),
            outcome=str(data.get("outcome", "")),
            action=str(data.get("action", "chat")),
            agent_id=str(data.get("agent_id", "memini")),
            created_at=str(data.get("created_at", "")),
        )


class MemoryStore(ABC):
    """Contract for the long-term memory collaborator."""

    def __init__(self, run_id: str = "memini"):
        self.base_run_id = run_id
        self.shared_run_id: Optional[str] = None

    @property
    def active_run_id(self) -> str:
        return self.shared_run_id or self.base_run_id

    @property
    def label(self) -> str:
        return self.__class__.__name__

    # ========== Variables ==========

    @abstractmethod
    async def get_variable(self, name: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set_variable(self, name: str, value: Any, source: str = "memini") -> None:
        pass

    @abstractmethod
    async def delete_variable(self, name: str) -> None:
        pass

    # ========== Recall ==========

    async def focus(self, text: str) -> None:
        """Hint the store about the current topic. Optional for adapters."""
        return None

    @abstractmethod
    async def reminisce(
        self, embedding: Sequence[float], limit: int, query: str
    ) -> List[MemoryRecord]:
        pass

    @abstractmethod
    async def commit_trace(
        self,
        input: str,
        outcome: str,
        action: str,
        embedding: Sequence[float],
        agent_id: str,
    ) -> None:
        pass

    # ========== Threads ==========

    @abstractmethod
    async def save_thread(self, thread_id: str, messages: Sequence[BaseMessage]) -> None:
        pass

    @abstractmethod
    async def load_thread(self, thread_id: str) -> List[BaseMessage]:
        pass

    @abstractmethod
    async def clear_thread(self, thread_id: str) -> None:
        pass

    # ========== Workspaces ==========

    def join_workspace(self, name: str) -> None:
        self.shared_run_id = name
        LOGGER.info(f"Joined shared workspace: {name}")

    def leave_workspace(self) -> Optional[str]:
        previous, self.shared_run_id = self.shared_run_id, None
        if previous:
            LOGGER.info(f"Left shared workspace: {previous}")
        return previous

    async def close(self) -> None:
        return None


class LocalMemoryStore(MemoryStore):
    """In-process store used when no remote instance is configured.

    Recall is a keyword-overlap ranking over committed traces; nothing
    survives a restart.
    """

    def __init__(self, run_id: str = "memini"):
        super().__init__(run_id)
        self._variables: Dict[str, Dict[str, Any]] = {}
        self._traces: Dict[str, List[MemoryRecord]] = {}
        self._threads: Dict[str, Dict[str, List[dict]]] = {}

    @property
    def label(self) -> str:
        return "local (in-memory)"

    async def get_variable(self, name: str) -> Optional[Any]:
        return self._variables.get(self.active_run_id, {}).get(name)

    async def set_variable(self, name: str, value: Any, source: str = "memini") -> None:
        self._variables.setdefault(self.active_run_id, {})[name] = value

    async def delete_variable(self, name: str) -> None:
        self._variables.get(self.active_run_id, {}).pop(name, None)

    async def reminisce(
        self, embedding: Sequence[float], limit: int, query: str
    ) -> List[MemoryRecord]:
        traces = self._traces.get(self.active_run_id, [])
        if limit <= 0 or not traces:
            return []
        words = {w for w in query.lower().split() if len(w) > 2}
        scored = []
        for position, record in enumerate(traces):
            haystack = f"{record.input} {record.outcome}".lower()
            score = sum(1 for w in words if w in haystack)
            scored.append((score, position, record))
        # Highest overlap first, newest first among ties.
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in scored[:limit]]

    async def commit_trace(
        self,
        input: str,
        outcome: str,
        action: str,
        embedding: Sequence[float],
        agent_id: str,
    ) -> None:
        record = MemoryRecord(
            input=input,
            outcome=outcome,
            action=action,
            agent_id=agent_id,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._traces.setdefault(self.active_run_id, []).append(record)

    async def save_thread(self, thread_id: str, messages: Sequence[BaseMessage]) -> None:
        self._threads.setdefault(self.active_run_id, {})[thread_id] = messages_to_dict(list(messages))

    async def load_thread(self, thread_id: str) -> List[BaseMessage]:
        stored = self._threads.get(self.active_run_id, {}).get(thread_id)
        return messages_from_dict(stored) if stored else []

    async def clear_thread(self, thread_id: str) -> None:
        self._threads.get(self.active_run_id, {}).pop(thread_id, None)

    def traces(self) -> List[MemoryRecord]:
        return list(self._traces.get(self.active_run_id, []))


class HttpMemoryStore(MemoryStore):
    """REST client for a remote state instance.

    Endpoints are rooted at {base_url}/v1/runs/{run_id}. Transport failures
    raise ConnectivityError; unexpected payloads raise ProtocolError.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        run_id: str = "memini",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(run_id)
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def label(self) -> str:
        return f"remote ({self._client.base_url})"

    def _path(self, suffix: str) -> str:
        return f"/v1/runs/{self.active_run_id}/{suffix}"

    async def _request(self, method: str, suffix: str, **kwargs) -> Optional[Any]:
        try:
            response = await self._client.request(method, self._path(suffix), **kwargs)
        except httpx.HTTPError as e:
            raise ConnectivityError(
                f"Memory store request failed: {method} {suffix}: {e}",
                "Memory store unreachable",
            ) from e
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ConnectivityError(
                f"Memory store returned {response.status_code} for {method} {suffix}: {response.text[:200]}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Memory store returned non-JSON body for {suffix}") from e

    async def get_variable(self, name: str) -> Optional[Any]:
        data = await self._request("GET", f"variables/{name}")
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected variable payload for {name}")
        return data.get("value")

    async def set_variable(self, name: str, value: Any, source: str = "memini") -> None:
        await self._request("PUT", f"variables/{name}", json={"value": value, "source": source})

    async def delete_variable(self, name: str) -> None:
        await self._request("DELETE", f"variables/{name}")

    async def focus(self, text: str) -> None:
        await self._request("POST", "focus", json={"text": text})

    async def reminisce(
        self, embedding: Sequence[float], limit: int, query: str
    ) -> List[MemoryRecord]:
        data = await self._request(
            "POST",
            "reminisce",
            json={"embedding": list(embedding), "limit": limit, "query": query},
        )
        if not data:
            return []
        items = data.get("traces", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ProtocolError("Unexpected recall payload")
        return [MemoryRecord.from_dict(item) for item in items if isinstance(item, dict)]

    async def commit_trace(
        self,
        input: str,
        outcome: str,
        action: str,
        embedding: Sequence[float],
        agent_id: str,
    ) -> None:
        await self._request(
            "POST",
            "traces",
            json={
                "input": input,
                "outcome": outcome,
                "action": action,
                "embedding": list(embedding),
                "agent_id": agent_id,
            },
        )

    async def save_thread(self, thread_id: str, messages: Sequence[BaseMessage]) -> None:
        await self._request(
            "PUT", f"threads/{thread_id}", json={"messages": messages_to_dict(list(messages))}
        )

    async def load_thread(self, thread_id: str) -> List[BaseMessage]:
        data = await self._request("GET", f"threads/{thread_id}")
        if not data:
            return []
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected thread payload for {thread_id}")
        try:
            return messages_from_dict(data.get("messages", []))
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Stored thread {thread_id} is malformed: {e}") from e

    async def clear_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"threads/{thread_id}")

    async def close(self) -> None:
        await self._client.aclose()


def create_memory_store(settings) -> MemoryStore:
    """Build the store described by MemorySettings."""
    if settings.instance_url:
        LOGGER.info(f"Using remote memory store: {settings.instance_url}")
        return HttpMemoryStore(
            base_url=settings.instance_url,
            auth_token=settings.auth_token,
            run_id=settings.run_id,
            timeout=settings.request_timeout,
        )
    LOGGER.info("STATE_INSTANCE_URL not set; using in-process memory store")
    return LocalMemoryStore(run_id=settings.run_id)
