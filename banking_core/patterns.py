"""
Pattern Validation Client Module

Biometric authentication patterns are owned by the patterns service. The
orchestrator only asks one question: do these presented factors satisfy
pattern X? This module provides the REST client for that service and an
in-memory validator for tests and local runs.

Unlike a scoring service, a pattern check never falls back to approving:
any transport failure is reported as CollaboratorUnavailable.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import httpx

from .errors import CollaboratorUnavailable, PatternNotFound
from .logging_config import get_logger

logger = get_logger("banking.patterns")


@dataclass
class PatternValidation:
    """Result from the patterns service"""
    valid: bool
    match_count: int
    latency_ms: float = 0.0


class PatternValidator(ABC):

    @abstractmethod
    def validate(self, pattern_id: str, factors: List[str]) -> PatternValidation:
        """
        Check presented factors against a registered pattern

        Raises:
            PatternNotFound: If the pattern does not exist
            CollaboratorUnavailable: If the patterns service cannot be reached in time
        """
        pass

    def close(self) -> None:
        pass


@dataclass
class _RegisteredPattern:
    factors: Set[str]
    required_matches: int
    active: bool = True
    account_id: Optional[str] = None


class InMemoryPatternValidator(PatternValidator):
    """Pattern registry held in memory"""

    def __init__(self):
        self._patterns: Dict[str, _RegisteredPattern] = {}
        self._lock = threading.Lock()

    def register(
        self,
        pattern_id: str,
        factors: Iterable[str],
        required_matches: Optional[int] = None,
        account_id: Optional[str] = None
    ) -> None:
        """Register a pattern; by default every factor must be presented"""
        factors = set(factors)
        with self._lock:
            self._patterns[pattern_id] = _RegisteredPattern(
                factors=factors,
                required_matches=required_matches if required_matches is not None else len(factors),
                account_id=account_id
            )

    def set_active(self, pattern_id: str, active: bool) -> None:
        with self._lock:
            if pattern_id not in self._patterns:
                raise PatternNotFound(f"Pattern {pattern_id} not found")
            self._patterns[pattern_id].active = active

    def validate(self, pattern_id: str, factors: List[str]) -> PatternValidation:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
        if pattern is None:
            raise PatternNotFound(f"Pattern {pattern_id} not found")

        match_count = len(pattern.factors.intersection(factors))
        valid = pattern.active and match_count >= pattern.required_matches
        return PatternValidation(valid=valid, match_count=match_count)


class PatternServiceClient(PatternValidator):
    """REST client for the patterns service"""

    def __init__(
        self,
        base_url: str = "http://localhost:3004",
        timeout: float = 2.0,  # Authorization waits on this call, keep it short
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def validate(self, pattern_id: str, factors: List[str]) -> PatternValidation:
        start = time.time()
        try:
            response = self._client.post(
                f"{self.base_url}/patterns/{pattern_id}/validate",
                json={"factors": list(factors)},
                headers=self._headers()
            )
        except httpx.TimeoutException:
            logger.warning(f"Patterns service timed out validating {pattern_id}")
            raise CollaboratorUnavailable(
                f"collaborator timeout: patterns service did not answer within {self.timeout}s"
            )
        except httpx.HTTPError as e:
            logger.error(f"Patterns service connection failed: {e}")
            raise CollaboratorUnavailable("Patterns service is unavailable")

        latency_ms = (time.time() - start) * 1000

        if response.status_code == 404:
            raise PatternNotFound(f"Pattern {pattern_id} not found")
        if response.status_code != 200:
            logger.warning(f"Patterns service returned {response.status_code}: {response.text}")
            raise CollaboratorUnavailable(f"Patterns service returned {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error(f"Patterns service sent an unreadable reply for {pattern_id}: {response.text[:200]}")
            raise CollaboratorUnavailable("Patterns service sent an unreadable reply")

        return PatternValidation(
            valid=bool(data.get("valid", False)),
            match_count=int(data.get("match_count", 0)),
            latency_ms=latency_ms
        )

    def health_check(self) -> bool:
        try:
            r = self._client.get(f"{self.base_url}/health", headers=self._headers())
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        self._client.close()
