"""Weighted stochastic ticket building."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import random
import time
import uuid
from typing import Iterable, Sequence

from .candidates import CandidateSelection
from .errors import InsufficientCandidates
from .tickets import LegStatus, Ticket, TicketLeg, TicketStatus
from .utils import combined_odds, product_probability

logger = logging.getLogger(__name__)

EDGE_WEIGHT = 0.65
ODDS_WEIGHT = 0.25
RANDOM_WEIGHT = 0.10


def ticket_hash(legs: Iterable[CandidateSelection]) -> str:
    """Order-independent identity of a leg set."""

    return "|".join(sorted(leg.identity for leg in legs))


@dataclasses.dataclass(slots=True)
class TicketDraft:
    legs: list[CandidateSelection]
    seed: int
    ticket_hash: str
    pool_size: int
    locked_count: int = 0

    @property
    def total_odds(self) -> float:
        return combined_odds(leg.odds for leg in self.legs)

    @property
    def estimated_win_probability(self) -> float:
        return product_probability(leg.model_probability for leg in self.legs)

    @property
    def fixture_ids(self) -> list[int]:
        return [leg.fixture_id for leg in self.legs]

    def to_ticket(self, *, created_at: dt.datetime, ticket_id: str | None = None) -> Ticket:
        identifier = ticket_id or uuid.uuid4().hex
        return Ticket(
            ticket_id=identifier,
            created_at=created_at,
            seed=self.seed,
            ticket_hash=self.ticket_hash,
            status=TicketStatus.PENDING,
            total_odds=round(self.total_odds, 4),
            estimated_win_probability=round(self.estimated_win_probability, 6),
            legs=[
                TicketLeg(
                    leg_id=0,
                    ticket_id=identifier,
                    position=index,
                    fixture_id=leg.fixture_id,
                    league_id=leg.league_id,
                    kickoff_at=leg.kickoff_at,
                    market=leg.market.kind.value,
                    side=leg.market.side.value,
                    line=leg.market.line,
                    odds=leg.odds,
                    model_probability=leg.model_probability,
                    status=LegStatus.PENDING,
                )
                for index, leg in enumerate(self.legs)
            ],
        )


class SelectionOptimizer:
    """Draw unique-fixture legs by composite weight without replacement."""

    def __init__(
        self,
        *,
        edge_weight: float = EDGE_WEIGHT,
        odds_weight: float = ODDS_WEIGHT,
        random_weight: float = RANDOM_WEIGHT,
        odds_range: tuple[float, float] | None = None,
    ) -> None:
        self.edge_weight = edge_weight
        self.odds_weight = odds_weight
        self.random_weight = random_weight
        self.odds_range = odds_range

    def composite_weight(self, candidate: CandidateSelection, rng: random.Random) -> float:
        base = (
            self.edge_weight * max(0.0, candidate.edge)
            + self.odds_weight * (candidate.odds / 10.0)
            + self.random_weight * rng.random()
        )
        return base * max(0.0, candidate.performance_weight)

    def build_ticket(
        self,
        candidates: Sequence[CandidateSelection],
        locked_fixture_ids: Iterable[int] = (),
        target_leg_count: int = 3,
        rng_seed: int | None = None,
        *,
        locked_legs: Sequence[CandidateSelection] = (),
    ) -> TicketDraft:
        """Build a ticket of ``target_leg_count`` legs.

        ``locked_legs`` are kept verbatim at the front of the ticket; their
        fixtures, together with ``locked_fixture_ids``, are excluded from the
        draw and count toward the target.  Raises
        :class:`InsufficientCandidates` rather than returning a short ticket.
        """

        if target_leg_count <= 0:
            raise ValueError("target_leg_count must be positive")
        seed = rng_seed if rng_seed is not None else time.time_ns()
        rng = random.Random(seed)

        locked_ids = set(locked_fixture_ids)
        kept_locked: list[CandidateSelection] = []
        for leg in locked_legs:
            if leg.fixture_id in {existing.fixture_id for existing in kept_locked}:
                raise ValueError(f"fixture {leg.fixture_id} is locked twice")
            kept_locked.append(leg)
            locked_ids.add(leg.fixture_id)
        needed = target_leg_count - len(locked_ids)
        if needed < 0:
            raise ValueError("more locked fixtures than target legs")

        pool = [
            candidate
            for candidate in candidates
            if candidate.fixture_id not in locked_ids and self._in_range(candidate.odds)
        ]
        available = len({candidate.fixture_id for candidate in pool})
        if available < needed:
            raise InsufficientCandidates(available=available, required=needed)

        weighted = [(candidate, self.composite_weight(candidate, rng)) for candidate in pool]
        chosen: list[CandidateSelection] = []
        while len(chosen) < needed and weighted:
            total = sum(weight for _, weight in weighted)
            if total <= 0:
                index = rng.randrange(len(weighted))
            else:
                draw = rng.random() * total
                cumulative = 0.0
                index = len(weighted) - 1
                for position, (_, weight) in enumerate(weighted):
                    cumulative += weight
                    if draw < cumulative:
                        index = position
                        break
            picked = weighted[index][0]
            chosen.append(picked)
            weighted = [
                (candidate, weight)
                for candidate, weight in weighted
                if candidate.fixture_id != picked.fixture_id
            ]

        if len(chosen) < needed:
            raise InsufficientCandidates(available=len(chosen), required=needed)

        legs = [*kept_locked, *chosen]
        draft = TicketDraft(
            legs=legs,
            seed=seed,
            ticket_hash=ticket_hash(legs),
            pool_size=len(pool),
            locked_count=len(locked_ids),
        )
        logger.debug(
            "Built ticket %s from %d candidates (seed=%s)",
            draft.ticket_hash,
            len(pool),
            seed,
        )
        return draft

    def reshuffle(
        self,
        candidates: Sequence[CandidateSelection],
        previous_hash: str,
        locked_fixture_ids: Iterable[int] = (),
        target_leg_count: int = 3,
        rng_seed: int | None = None,
        *,
        locked_legs: Sequence[CandidateSelection] = (),
        max_attempts: int = 5,
    ) -> TicketDraft:
        """Redraw until the leg set differs from ``previous_hash``.

        Seeds advance deterministically from ``rng_seed``; after
        ``max_attempts`` the last draw is returned even if it repeats, since
        a tiny pool may only admit one ticket.
        """

        locked = list(locked_fixture_ids)
        base_seed = rng_seed if rng_seed is not None else time.time_ns()
        draft: TicketDraft | None = None
        for attempt in range(max(1, max_attempts)):
            draft = self.build_ticket(
                candidates,
                locked,
                target_leg_count,
                base_seed + attempt,
                locked_legs=locked_legs,
            )
            if draft.ticket_hash != previous_hash:
                return draft
        assert draft is not None
        logger.info("Reshuffle kept the same ticket after %d attempts", max_attempts)
        return draft

    def _in_range(self, odds: float) -> bool:
        if self.odds_range is None:
            return True
        low, high = self.odds_range
        return low <= odds <= high


__all__ = ["SelectionOptimizer", "TicketDraft", "ticket_hash"]
