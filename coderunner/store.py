"""
Collaborator interfaces consumed by the engine, with in-memory implementations.

The engine never persists anything itself: challenges, submissions, player
progress and notifications all go through these interfaces.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import Challenge, SubmissionStatus
from .progress import PlayerStats
from .submission import Submission


# ===== INTERFACES =====

class ChallengeRepository(ABC):
    @abstractmethod
    def get(self, challenge_id: str) -> Optional[Challenge]:
        ...

    @abstractmethod
    def set_success_rate(self, challenge_id: str, success_rate: int):
        ...


class SubmissionStore(ABC):
    @abstractmethod
    def save(self, submission: Submission):
        ...

    @abstractmethod
    def get(self, submission_id: str) -> Optional[Submission]:
        ...

    @abstractmethod
    def list_for_user(
        self,
        user_id: str,
        challenge_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Submission]:
        """A user's submissions, newest first."""

    @abstractmethod
    def success_rate(self, challenge_id: str) -> int:
        """Percent of terminal submissions for the challenge that completed with 100."""


class ProgressStore(ABC):
    @abstractmethod
    def record_score(self, user_id: str, challenge_id: str, score: int) -> Optional[int]:
        """
        Atomically read the user's best score for the challenge, store the new
        score if it is higher, and return the previous best (None if none).
        """

    @abstractmethod
    def best_score(self, user_id: str, challenge_id: str) -> Optional[int]:
        ...

    @abstractmethod
    def grant_rewards(self, user_id: str, challenge_id: str, xp: int, coins: int,
                      completed: bool) -> Tuple[PlayerStats, PlayerStats]:
        """Add rewards; returns (stats_before, stats_after)."""

    @abstractmethod
    def get_stats(self, user_id: str) -> PlayerStats:
        ...


@dataclass
class Notification:
    user_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)


class Notifier(ABC):
    @abstractmethod
    def notify(self, notification: Notification):
        ...


# ===== IN-MEMORY IMPLEMENTATIONS =====

class InMemoryChallengeRepository(ChallengeRepository):
    def __init__(self, challenges: Iterable[Challenge] = ()):
        self._challenges: Dict[str, Challenge] = {c.id: c for c in challenges}
        self._lock = threading.Lock()

    def add(self, challenge: Challenge):
        with self._lock:
            self._challenges[challenge.id] = challenge

    def get(self, challenge_id: str) -> Optional[Challenge]:
        return self._challenges.get(challenge_id)

    def all(self) -> List[Challenge]:
        return list(self._challenges.values())

    def set_success_rate(self, challenge_id: str, success_rate: int):
        # Challenges are frozen; swap in an updated copy.
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is not None:
                self._challenges[challenge_id] = replace(challenge, success_rate=success_rate)


class InMemorySubmissionStore(SubmissionStore):
    def __init__(self):
        self._submissions: Dict[str, Submission] = {}
        self._lock = threading.Lock()

    def save(self, submission: Submission):
        with self._lock:
            self._submissions[submission.id] = submission

    def get(self, submission_id: str) -> Optional[Submission]:
        return self._submissions.get(submission_id)

    def list_for_user(self, user_id, challenge_id=None, limit=20, offset=0) -> List[Submission]:
        with self._lock:
            matches = [
                s for s in self._submissions.values()
                if s.user_id == user_id and (challenge_id is None or s.challenge_id == challenge_id)
            ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return matches[offset:offset + limit]

    def success_rate(self, challenge_id: str) -> int:
        with self._lock:
            finished = [s for s in self._submissions.values()
                        if s.challenge_id == challenge_id and s.is_terminal]
        if not finished:
            return 0
        perfect = sum(1 for s in finished
                      if s.status == SubmissionStatus.COMPLETED and s.score == 100)
        return round(100 * perfect / len(finished))


class InMemoryProgressStore(ProgressStore):
    def __init__(self):
        self._best: Dict[Tuple[str, str], int] = {}
        self._stats: Dict[str, PlayerStats] = {}
        self._lock = threading.Lock()

    def record_score(self, user_id, challenge_id, score) -> Optional[int]:
        key = (user_id, challenge_id)
        with self._lock:
            previous = self._best.get(key)
            if previous is None or score > previous:
                self._best[key] = score
            return previous

    def best_score(self, user_id, challenge_id) -> Optional[int]:
        return self._best.get((user_id, challenge_id))

    def _stats_for(self, user_id: str) -> PlayerStats:
        if user_id not in self._stats:
            self._stats[user_id] = PlayerStats(user_id=user_id)
        return self._stats[user_id]

    def grant_rewards(self, user_id, challenge_id, xp, coins, completed):
        with self._lock:
            stats = self._stats_for(user_id)
            before = replace(stats, completed_challenges=set(stats.completed_challenges))
            stats.experience += xp
            stats.coins += coins
            if completed:
                stats.completed_challenges.add(challenge_id)
            after = replace(stats, completed_challenges=set(stats.completed_challenges))
        return before, after

    def get_stats(self, user_id) -> PlayerStats:
        with self._lock:
            stats = self._stats_for(user_id)
            return replace(stats, completed_challenges=set(stats.completed_challenges))


class InMemoryNotifier(Notifier):
    def __init__(self):
        self.sent: List[Notification] = []

    def notify(self, notification: Notification):
        self.sent.append(notification)
