"""
Directory Module

Role membership and relationship graph (e.g. "manager") lookups used to
resolve step approvers. The in-memory directory backs tests and single-node
deployments; HttpDirectoryClient talks to an external people directory.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set
from urllib.parse import quote

import httpx

from .errors import DirectoryUnavailableError
from .logging_config import get_logger

logger = get_logger("expense_workflow.directory")


class DirectoryInterface(ABC):
    """Lookups the target resolver depends on"""

    @abstractmethod
    def members_of_role(self, role: str) -> Set[str]:
        """Return ids of every actor holding the role"""
        pass

    @abstractmethod
    def relationship_target(self, actor_id: str, relationship: str) -> Optional[str]:
        """Return the actor reached from actor_id via the named relation, if any"""
        pass

    def close(self) -> None:
        pass


class InMemoryDirectory(DirectoryInterface):
    """Directory held in process memory"""

    def __init__(self):
        self._roles: Dict[str, Set[str]] = {}
        self._relationships: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def add_member(self, role: str, actor_id: str) -> None:
        with self._lock:
            self._roles.setdefault(role, set()).add(actor_id)

    def remove_member(self, role: str, actor_id: str) -> None:
        with self._lock:
            self._roles.get(role, set()).discard(actor_id)

    def set_relationship(self, actor_id: str, relationship: str, target_id: Optional[str]) -> None:
        with self._lock:
            relations = self._relationships.setdefault(actor_id, {})
            if target_id is None:
                relations.pop(relationship, None)
            else:
                relations[relationship] = target_id

    def members_of_role(self, role: str) -> Set[str]:
        with self._lock:
            return set(self._roles.get(role, set()))

    def relationship_target(self, actor_id: str, relationship: str) -> Optional[str]:
        with self._lock:
            return self._relationships.get(actor_id, {}).get(relationship)


class HttpDirectoryClient(DirectoryInterface):
    """REST client for an external people directory"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,  # Lookups run inside approval transitions
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _get(self, path: str) -> Optional[dict]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = self._client.get(f"{self.base_url}{path}", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Directory request {path} failed: {e}")
            raise DirectoryUnavailableError(f"Directory lookup failed: {path}") from e

        latency_ms = (time.time() - start) * 1000
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning(f"Directory returned {response.status_code} for {path} after {latency_ms:.0f}ms")
            raise DirectoryUnavailableError(
                f"Directory lookup failed: {path}",
                {"status_code": response.status_code}
            )
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"Directory returned a non-JSON body for {path}")
            raise DirectoryUnavailableError(f"Directory lookup failed: {path}") from e

    def members_of_role(self, role: str) -> Set[str]:
        data = self._get(f"/roles/{quote(role, safe='')}/members")
        if not data:
            return set()
        return set(data.get("members", []))

    def relationship_target(self, actor_id: str, relationship: str) -> Optional[str]:
        data = self._get(f"/actors/{quote(actor_id, safe='')}/relationships/{quote(relationship, safe='')}")
        if not data:
            return None
        return data.get("target")

    def health_check(self) -> bool:
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()
