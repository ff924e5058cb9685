import pytest

from dichoptic.config import Game
from dichoptic.service.errors import ValidationError
from dichoptic.service.scores import ScoreService
from dichoptic.storage.errors import ConstraintViolation
from dichoptic.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def user(store):
    return store.create_user("scorer@example.com", "hash")


@pytest.fixture
def scores(store):
    return ScoreService(store)


def _record(scores, user, game, value):
    return scores.record(user.id, game, value, "2024-05-01", "12:00:00")


def test_top_scores_sorted_and_capped(scores, user):
    for value in [5, 120, 40, 7, 300, 15, 60, 80, 90, 1, 250, 33]:
        _record(scores, user, Game.TETRIS, value)

    top = scores.list_top(user.id, Game.TETRIS)

    assert len(top) == 10
    assert [s.score for s in top] == [300, 250, 120, 90, 80, 60, 40, 33, 15, 7]


def test_scores_are_isolated_by_game_and_user(scores, store, user):
    other = store.create_user("other@example.com", "hash")
    _record(scores, user, Game.TETRIS, 100)
    _record(scores, user, Game.SNAKE, 50)
    _record(scores, other, Game.TETRIS, 999)

    assert [s.score for s in scores.list_top(user.id, "tetris")] == [100]
    assert [s.score for s in scores.list_top(user.id, "snake")] == [50]
    assert scores.list_top(other.id, Game.SNAKE) == []


def test_ties_prefer_most_recent(scores, user):
    first = _record(scores, user, Game.SNAKE, 42)
    second = _record(scores, user, Game.SNAKE, 42)

    top = scores.list_top(user.id, Game.SNAKE)

    assert [s.id for s in top] == [second.id, first.id]


def test_zero_score_dropped_by_default(scores, user):
    assert _record(scores, user, Game.TETRIS, 0) is None
    assert scores.list_top(user.id, Game.TETRIS) == []


def test_zero_score_kept_when_policy_disabled(store, user):
    service = ScoreService(store, reject_zero=False)

    entry = _record(service, user, Game.TETRIS, 0)

    assert entry.score == 0
    assert [s.id for s in service.list_top(user.id, Game.TETRIS)] == [entry.id]


def test_negative_score_rejected(scores, user):
    with pytest.raises(ValidationError):
        _record(scores, user, Game.TETRIS, -1)


def test_unknown_game_rejected(scores, user):
    with pytest.raises(ValueError):
        _record(scores, user, "pong", 10)


def test_score_for_missing_user(scores):
    with pytest.raises(ConstraintViolation):
        scores.record("missing", Game.SNAKE, 10, "2024-05-01", "12:00:00")
