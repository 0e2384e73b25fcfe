"""
Skill-based matchmaking queue

Holds the players currently waiting for a multiplayer race and groups them by
typing speed. Every waiting player has a personal tolerance (the effective
range) that starts at ``wpm_range`` and grows by ``expand_step`` for each full
``expand_after_ms`` spent waiting, capped at ``max_wpm_range``. Two players are
compatible when their WPM difference fits in the wider of their two
tolerances.

A match is the largest group of mutually compatible players (capped at
``max_players``). Ties go to the tightest group by WPM spread, then to the
group that has been waiting longest on average.

The queue is in-memory and per-process. It never touches the database: skill
lookup happens before ``add_player`` and race creation after ``try_match``.
"""

import asyncio
import inspect
import logging
import math
import threading
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from src.errors import InvalidIntervalError
from src.matchmaking.schemas.queue import MatchmakingConfig, MatchResult, QueueEntry

logger = logging.getLogger(__name__)

UserId = Union[int, str]
OnMatchCallback = Callable[[MatchResult], Optional[Awaitable[None]]]

DEFAULT_INTERVAL_MS = 3000


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class _PeriodicMatcher:
    """One run of the periodic matcher: its task, stop flag and tick state."""

    def __init__(self):
        self.stopped = False
        self.ticking = False
        self.task: Optional[asyncio.Task] = None


class MatchmakingQueue:
    """
    In-memory pool of waiting players keyed by user id.

    Pool mutations and reads are guarded by a re-entrant lock so the queue can
    be shared between request handlers running on a threadpool and the
    periodic matcher. The periodic matcher itself runs as an asyncio task and
    must be started and stopped from the event loop thread.
    """

    def __init__(
        self,
        config: Optional[MatchmakingConfig] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.config = config or MatchmakingConfig()
        self._clock = clock
        self._entries: Dict[UserId, QueueEntry] = {}
        self._lock = threading.RLock()
        self._on_match: Optional[OnMatchCallback] = None
        self._periodic: Optional[_PeriodicMatcher] = None

    def __len__(self) -> int:
        return self.get_queue_size()

    def __contains__(self, user_id: UserId) -> bool:
        return self.is_in_queue(user_id)

    # --- Pool management ---

    def add_player(
        self, user_id: UserId, user_name: str, average_wpm: float
    ) -> QueueEntry:
        """
        Add a player, replacing any entry they already have.

        A replaced entry gets a fresh ``joined_at`` and moves to the back of
        the insertion order.
        """
        with self._lock:
            entry = QueueEntry(
                user_id=user_id,
                user_name=user_name,
                average_wpm=average_wpm,
                joined_at=self._clock(),
            )
            self._entries.pop(user_id, None)
            self._entries[user_id] = entry
            logger.debug(
                f"Player {user_id} queued with {average_wpm} WPM "
                f"(queue size {len(self._entries)})"
            )
            return entry

    def remove_player(self, user_id: UserId) -> bool:
        with self._lock:
            removed = self._entries.pop(user_id, None) is not None
        if removed:
            logger.debug(f"Player {user_id} left the matchmaking queue")
        return removed

    def is_in_queue(self, user_id: UserId) -> bool:
        with self._lock:
            return user_id in self._entries

    def get_entry(self, user_id: UserId) -> Optional[QueueEntry]:
        with self._lock:
            return self._entries.get(user_id)

    def get_queue_snapshot(self) -> List[QueueEntry]:
        with self._lock:
            return list(self._entries.values())

    def get_queue_size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Empty the pool. The periodic matcher, if any, keeps running."""
        with self._lock:
            self._entries.clear()

    # --- Matching ---

    def effective_range(self, entry: QueueEntry, now: float) -> float:
        """WPM tolerance of a single player after waiting until ``now``."""
        elapsed = max(0.0, now - entry.joined_at)
        expansions = math.floor(elapsed / self.config.expand_after_ms)
        return min(
            self.config.wpm_range + expansions * self.config.expand_step,
            self.config.max_wpm_range,
        )

    def try_match(self) -> Optional[MatchResult]:
        """
        Pull the best group of compatible players out of the queue.

        Returns None and leaves the pool untouched when no group of at least
        ``min_players`` exists.
        """
        with self._lock:
            if len(self._entries) < self.config.min_players:
                return None

            group = self._find_best_group(list(self._entries.values()), self._clock())
            if group is None:
                return None

            for player in group:
                del self._entries[player.user_id]

            logger.info(
                f"Matched {len(group)} players "
                f"{[p.user_id for p in group]} "
                f"(WPM {group[0].average_wpm}-{group[-1].average_wpm}), "
                f"{len(self._entries)} still waiting"
            )
            return MatchResult(players=group)

    def _find_best_group(
        self, entries: Sequence[QueueEntry], now: float
    ) -> Optional[List[QueueEntry]]:
        n = len(entries)
        ranges = [self.effective_range(e, now) for e in entries]
        compatible = [
            [
                abs(entries[i].average_wpm - entries[j].average_wpm)
                <= max(ranges[i], ranges[j])
                for j in range(n)
            ]
            for i in range(n)
        ]

        best_key = None
        best_group: Optional[List[int]] = None

        for anchor in range(n):
            # Closest WPM first, then longest waiting, then insertion order
            candidates = sorted(
                (j for j in range(n) if j != anchor and compatible[anchor][j]),
                key=lambda j: (
                    abs(entries[j].average_wpm - entries[anchor].average_wpm),
                    entries[j].joined_at,
                    j,
                ),
            )

            members = [anchor]
            for j in candidates:
                if all(compatible[j][m] for m in members):
                    members.append(j)

            if len(members) < self.config.min_players:
                continue

            members = self._tightest_subset(entries, members)
            key = (
                -len(members),
                _spread(entries, members),
                _average_joined_at(entries, members),
                anchor,
            )
            if best_key is None or key < best_key:
                best_key = key
                best_group = members

        if best_group is None:
            return None
        return [entries[i] for i in best_group]

    def _tightest_subset(
        self, entries: Sequence[QueueEntry], members: List[int]
    ) -> List[int]:
        """
        Cut a mutually compatible group down to ``max_players``.

        Any subset of the group is still valid, and the subset with the
        smallest spread is always a contiguous run in WPM order.
        """
        ordered = sorted(
            members, key=lambda i: (entries[i].average_wpm, entries[i].joined_at, i)
        )
        limit = self.config.max_players
        if len(ordered) <= limit:
            return ordered

        windows = [ordered[k : k + limit] for k in range(len(ordered) - limit + 1)]
        return min(
            windows,
            key=lambda w: (_spread(entries, w), _average_joined_at(entries, w)),
        )

    # --- Periodic matching ---

    def set_on_match(self, callback: Optional[OnMatchCallback]) -> None:
        """
        Register the callback invoked with each match found by the periodic
        matcher. Coroutine callbacks are awaited. Direct ``try_match`` calls
        never invoke it.
        """
        self._on_match = callback

    @property
    def is_running(self) -> bool:
        return self._periodic is not None

    def start_periodic_matching(self, interval_ms: float = DEFAULT_INTERVAL_MS) -> None:
        if interval_ms <= 0:
            raise InvalidIntervalError(interval_ms)
        if self._periodic is not None:
            return

        periodic = _PeriodicMatcher()
        periodic.task = asyncio.get_running_loop().create_task(
            self._run_periodic(periodic, interval_ms / 1000)
        )
        self._periodic = periodic
        logger.info(f"Periodic matching started (every {interval_ms} ms)")

    def stop_periodic_matching(self) -> None:
        """
        Stop the periodic matcher. No tick starts after this returns; a tick
        already running its callback is left to finish.
        """
        periodic = self._periodic
        if periodic is None:
            return

        self._periodic = None
        periodic.stopped = True
        if not periodic.ticking:
            periodic.task.cancel()
        logger.info("Periodic matching stopped")

    async def _run_periodic(self, periodic: _PeriodicMatcher, interval: float) -> None:
        while not periodic.stopped:
            await asyncio.sleep(interval)
            if periodic.stopped:
                break

            periodic.ticking = True
            try:
                await self._tick()
            finally:
                periodic.ticking = False

    async def _tick(self) -> None:
        result = self.try_match()
        if result is None:
            return

        callback = self._on_match
        if callback is None:
            logger.warning(
                f"Periodic match of {[p.user_id for p in result.players]} "
                f"found but no match callback is registered"
            )
            return

        try:
            outcome = callback(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Error in match callback: {e}", exc_info=True)


def _spread(entries: Sequence[QueueEntry], members: Sequence[int]) -> float:
    wpms = [entries[i].average_wpm for i in members]
    return max(wpms) - min(wpms)


def _average_joined_at(entries: Sequence[QueueEntry], members: Sequence[int]) -> float:
    return sum(entries[i].joined_at for i in members) / len(members)
