"""
Tests for the in-memory collaborator implementations and the event log.
"""

import threading
from datetime import datetime, timedelta

from coderunner.event_log import EventLog
from coderunner.models import Language, SubmissionStatus
from coderunner.store import (
    InMemoryChallengeRepository,
    InMemoryProgressStore,
    InMemorySubmissionStore,
)
from coderunner.submission import Submission


def _finished(challenge_id, status, score, user="alice", created_at=None):
    submission = Submission(user, challenge_id, Language.PYTHON, "print(1)",
                            created_at=created_at or datetime.now())
    submission.start()
    submission.finalize(status, score=score)
    return submission


class TestChallengeRepository:
    def test_get_and_success_rate(self, make_challenge):
        repo = InMemoryChallengeRepository([make_challenge("sum")])
        assert repo.get("sum").success_rate is None
        repo.set_success_rate("sum", 40)
        assert repo.get("sum").success_rate == 40
        assert repo.get("missing") is None

    def test_unknown_challenge_ignored(self):
        repo = InMemoryChallengeRepository()
        repo.set_success_rate("missing", 10)
        assert repo.all() == []


class TestSubmissionStore:
    """Test listing and success-rate statistics."""

    def test_list_newest_first_with_paging(self):
        store = InMemorySubmissionStore()
        now = datetime.now()
        for minutes in (3, 1, 2):
            store.save(_finished("sum", SubmissionStatus.FAILED, minutes,
                                 created_at=now - timedelta(minutes=minutes)))
        store.save(_finished("sum", SubmissionStatus.FAILED, 0, user="bob"))

        listed = store.list_for_user("alice")
        assert [s.score for s in listed] == [1, 2, 3]
        assert [s.score for s in store.list_for_user("alice", limit=1, offset=1)] == [2]
        assert store.list_for_user("alice", challenge_id="other") == []

    def test_success_rate(self):
        store = InMemorySubmissionStore()
        store.save(_finished("sum", SubmissionStatus.COMPLETED, 100))
        store.save(_finished("sum", SubmissionStatus.FAILED, 67))
        store.save(_finished("sum", SubmissionStatus.TIMEOUT, 33))
        store.save(Submission("alice", "sum", Language.PYTHON, "x"))  # still pending
        store.save(_finished("other", SubmissionStatus.COMPLETED, 100))

        assert store.success_rate("sum") == 33
        assert store.success_rate("other") == 100
        assert store.success_rate("none") == 0


class TestProgressStore:
    """Test the best-score gate and rewards."""

    def test_record_score_returns_previous_best(self):
        store = InMemoryProgressStore()
        assert store.record_score("alice", "sum", 67) is None
        assert store.record_score("alice", "sum", 33) == 67
        assert store.best_score("alice", "sum") == 67
        assert store.record_score("alice", "sum", 100) == 67
        assert store.best_score("alice", "sum") == 100

    def test_concurrent_equal_scores_improve_once(self):
        """Of many racing submissions with the same score only one sees an improvement."""
        store = InMemoryProgressStore()
        previous = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            previous.append(store.record_score("alice", "sum", 100))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert previous.count(None) == 1
        assert previous.count(100) == 7

    def test_grant_rewards(self):
        store = InMemoryProgressStore()
        before, after = store.grant_rewards("alice", "sum", 120, 30, completed=True)
        assert (before.experience, before.level) == (0, 1)
        assert (after.experience, after.coins, after.level) == (120, 30, 2)
        assert "sum" not in before.completed_challenges
        assert after.completed_challenges == {"sum"}

    def test_stats_are_snapshots(self):
        store = InMemoryProgressStore()
        stats = store.get_stats("alice")
        stats.completed_challenges.add("sum")
        stats.experience = 999
        assert store.get_stats("alice").completed_challenges == set()
        assert store.get_stats("alice").experience == 0


class TestEventLog:
    """Test the operator event log."""

    def test_line_format(self):
        log = EventLog()
        log("SUBMISSION_CREATED", "abc user=alice")
        log("CLEANUP_SWEEP")
        assert log.entries[0].endswith("] - SUBMISSION_CREATED - abc user=alice")
        assert log.entries[1].endswith("] - CLEANUP_SWEEP")
        assert log.events() == ["SUBMISSION_CREATED", "CLEANUP_SWEEP"]

    def test_appends_to_file(self, tmp_path):
        path = tmp_path / "events.log"
        EventLog(path).log("A", "one")
        EventLog(path).log("B")
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert lines[0].endswith(" - A - one")
        assert lines[1].endswith(" - B")
