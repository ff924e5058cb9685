from __future__ import annotations

from typing import List, Optional, Protocol

from dichoptic.config import Game
from dichoptic.logging import get_logger
from dichoptic.service.errors import ValidationError
from dichoptic.storage.models import Score

logger = get_logger(__name__)

TOP_SCORES_LIMIT = 10


class ScoreStore(Protocol):
    def add_score(
        self, user_id: str, game: str, score: int, date: str, time: str
    ) -> Score: ...

    def list_scores(self, user_id: str, game: str, limit: int = 10) -> List[Score]: ...


class ScoreService:
    """Append-only per-user, per-game score ledger.

    ``reject_zero`` drops submissions of exactly 0 instead of storing them;
    a dropped submission returns None rather than raising.
    """

    def __init__(self, store: ScoreStore, *, reject_zero: bool = True) -> None:
        self.store = store
        self.reject_zero = reject_zero

    def list_top(
        self, user_id: str, game: Game | str, limit: int = TOP_SCORES_LIMIT
    ) -> List[Score]:
        game = Game(game)
        limit = max(1, min(limit, TOP_SCORES_LIMIT))
        return self.store.list_scores(user_id, game.value, limit)

    def record(
        self, user_id: str, game: Game | str, score: int, date: str, time: str
    ) -> Optional[Score]:
        game = Game(game)
        if score < 0:
            raise ValidationError("score must be non-negative", detail={"field": "score"})
        if score == 0 and self.reject_zero:
            logger.info("score_rejected_zero", user_id=user_id, game=game.value)
            return None
        entry = self.store.add_score(user_id, game.value, score, date, time)
        logger.info("score_recorded", user_id=user_id, game=game.value, score=score)
        return entry
