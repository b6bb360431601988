"""
CycleScheduler — Decides which media are available today.

All media IDs are shuffled into one permutation (a cycle). Each day a
window of up to ``daily_limit`` items starting at ``pointer`` is offered.
Viewing an item bumps ``daily_index``; when the local day rolls over at
``day_start_hour`` the viewed items are consumed by moving ``pointer``
forward. A day with nothing viewed offers the same window again. When
the pointer reaches the end of the order a new cycle is shuffled.

Every transition reads the CycleState, computes the new one and writes
it back whole. Callers serialize access per vault.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..data import CycleState, MediaRecord
from ..storage import MediaStore
from .config import DEFAULT_DAILY_LIMIT, DEFAULT_DAY_START_HOUR

logger = logging.getLogger("drip_vault.vault")


def secure_shuffle(items: Iterable[str]) -> list[str]:
    """Return a uniformly random permutation (Fisher–Yates over ``secrets``)."""
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        result[i], result[j] = result[j], result[i]
    return result


def day_start(now: datetime, hour: int = DEFAULT_DAY_START_HOUR) -> datetime:
    """Start of the day window containing ``now``.

    Before ``hour`` o'clock the window still belongs to the previous
    calendar day.
    """
    anchor = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now.hour < hour:
        anchor -= timedelta(days=1)
    return anchor


class CycleScheduler:
    """State machine over the persisted :class:`CycleState`."""

    def __init__(
        self,
        store: MediaStore,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        day_start_hour: int = DEFAULT_DAY_START_HOUR,
        reshuffle_scope: str = "suffix",
    ):
        self._store = store
        self.daily_limit = daily_limit
        self.day_start_hour = day_start_hour
        self.reshuffle_scope = reshuffle_scope

    def _known_ids(self, known_ids: Optional[Iterable[str]]) -> list[str]:
        if known_ids is None:
            return self._store.list_all_media_ids()
        return list(known_ids)

    def _bootstrap(self, now: datetime, known_ids: list[str]) -> CycleState:
        state = CycleState(
            order=secure_shuffle(known_ids),
            pointer=0,
            daily_index=0,
            day_anchor=day_start(now, self.day_start_hour),
        )
        self._store.put_cycle_state(state)
        logger.info("Cycle started with %d item(s)", len(state.order))
        return state

    def state(self) -> Optional[CycleState]:
        """Current persisted state, or None before the first query."""
        return self._store.get_cycle_state()

    def roll_over(
        self,
        now: datetime,
        known_ids: Optional[Iterable[str]] = None,
    ) -> CycleState:
        """Load the state, creating it or crossing a day boundary as needed.

        Returns:
            The state in effect at ``now`` (already persisted).
        """
        state = self._store.get_cycle_state()
        if state is None:
            return self._bootstrap(now, self._known_ids(known_ids))

        today_anchor = day_start(now, self.day_start_hour)
        if state.day_anchor >= today_anchor:
            return state

        pointer = state.pointer
        daily_index = state.daily_index
        order = state.order
        if daily_index > 0:
            pointer += daily_index
            daily_index = 0
        if pointer >= len(order):
            order = secure_shuffle(self._known_ids(known_ids))
            pointer = 0
            logger.info("Cycle exhausted: new cycle with %d item(s)", len(order))
        updated = state.model_copy(update={
            "order": order,
            "pointer": pointer,
            "daily_index": daily_index,
            "day_anchor": today_anchor,
        })
        self._store.put_cycle_state(updated)
        logger.debug(
            "Day rolled over: pointer=%d remaining=%d",
            updated.pointer, updated.remaining,
        )
        return updated

    def resolve_today(
        self,
        now: datetime,
        known_ids: Optional[Iterable[str]] = None,
    ) -> tuple[list[MediaRecord], int]:
        """Return today's window of records and how many were already viewed.

        The first ``daily_index`` records of the window are the viewed ones.
        IDs whose record no longer exists are skipped.
        """
        state = self.roll_over(now, known_ids)
        window = state.window(self.daily_limit)
        records = self._store.get_media_by_ids(window) if window else []
        return records, state.daily_index

    def mark_viewed(self, media_id: str, now: datetime) -> Optional[CycleState]:
        """Stamp ``media_id`` as viewed and count it against today's window.

        ``daily_index`` stops at the window size, so repeated calls past
        the end of the window only refresh the viewed timestamp. A view
        after the day boundary counts against the new day's window.
        """
        self._store.update_viewed_at(media_id, now)
        if self._store.get_cycle_state() is None:
            return None
        state = self.roll_over(now)
        if state.daily_index >= state.window_size(self.daily_limit):
            logger.debug("Window already fully viewed; daily index unchanged")
            return state
        updated = state.model_copy(update={"daily_index": state.daily_index + 1})
        self._store.put_cycle_state(updated)
        return updated

    def reconcile(
        self,
        now: datetime,
        known_ids: Optional[Iterable[str]] = None,
    ) -> CycleState:
        """Add known IDs missing from the order and reshuffle.

        With ``reshuffle_scope == "suffix"`` the consumed prefix and the
        items already viewed today keep their positions; only the rest of
        the order is reshuffled together with the new IDs. With ``"full"``
        the whole order is reshuffled and the cursor keeps its numeric value.
        """
        ids = self._known_ids(known_ids)
        state = self._store.get_cycle_state()
        if state is None:
            return self._bootstrap(now, ids)

        present = set(state.order)
        missing = [media_id for media_id in ids if media_id not in present]
        if not missing:
            return state

        if self.reshuffle_scope == "full":
            order = secure_shuffle(state.order + missing)
        else:
            fixed = min(len(state.order), state.pointer + state.daily_index)
            order = state.order[:fixed] + secure_shuffle(state.order[fixed:] + missing)
        updated = state.model_copy(update={"order": order})
        self._store.put_cycle_state(updated)
        logger.info("Reconciled %d new item(s) into the cycle", len(missing))
        return updated

    def remove(self, media_id: str) -> Optional[CycleState]:
        """Drop ``media_id`` from the order, keeping the cursor aligned."""
        state = self._store.get_cycle_state()
        if state is None or media_id not in state.order:
            return state
        index = state.order.index(media_id)
        order = state.order[:index] + state.order[index + 1:]
        pointer = state.pointer
        daily_index = state.daily_index
        if index < state.pointer:
            pointer = max(0, pointer - 1)
        elif index < state.pointer + state.daily_index:
            daily_index = max(0, daily_index - 1)
        updated = state.model_copy(update={
            "order": order,
            "pointer": pointer,
            "daily_index": daily_index,
        })
        self._store.put_cycle_state(updated)
        return updated
