"""
Entity registry shared by the factorization engine and the dispatcher.

The registry owns every user and item record. Users and items are kept in
arrays sorted by their code, and each rating list is sorted by the partner's
code, so a partner's code order matches its registry index order.

Latent state lives on the records as typed fields. Items carry two named
buffers:

- ``live``: written only by the item factor update pass.
- ``committed``: the snapshot read by every pass and by prediction. It is
  refreshed from ``live`` by the commit pass.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class User:
    """A user and the items they rated, ordered by item code."""

    index: int
    code: Hashable
    item_codes: list = field(default_factory=list)
    item_indices: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.intp))
    ratings: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float64))

    # Latent state, allocated by the factorization model
    factors: np.ndarray | None = None
    bias: float | None = None

    @property
    def num_ratings(self) -> int:
        return len(self.ratings)


@dataclass
class Item:
    """An item and the users who rated it, ordered by user code."""

    index: int
    code: Hashable
    user_codes: list = field(default_factory=list)
    user_indices: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.intp))
    ratings: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float64))

    # Double-buffered latent state, allocated by the factorization model
    live: np.ndarray | None = None
    committed: np.ndarray | None = None
    bias: float | None = None

    @property
    def num_ratings(self) -> int:
        return len(self.ratings)


class RatingRegistry:
    """
    Explicit context object holding all users and items of a rating dataset.

    Build it with :meth:`from_ratings`; the engine and the dispatcher receive
    it by reference instead of reaching for process-wide state.
    """

    def __init__(self, users: list[User], items: list[Item], rating_average: float):
        self.users = users
        self.items = items
        self.rating_average = float(rating_average)
        self._user_lookup = {user.code: user.index for user in users}
        self._item_lookup = {item.code: item.index for item in items}

    @classmethod
    def from_ratings(cls, ratings: Iterable[tuple[Any, Any, float]]) -> "RatingRegistry":
        """
        Build a registry from ``(user_code, item_code, rating)`` triples.

        Codes must be mutually comparable within users and within items.
        """
        by_user: dict[Any, dict[Any, float]] = defaultdict(dict)
        by_item: dict[Any, dict[Any, float]] = defaultdict(dict)
        total = 0.0
        count = 0

        for user_code, item_code, rating in ratings:
            value = float(rating)
            if not math.isfinite(value):
                raise ValueError(f"Rating for ({user_code!r}, {item_code!r}) is not finite: {rating!r}")
            if item_code in by_user[user_code]:
                raise ValueError(f"Duplicate rating for user {user_code!r} and item {item_code!r}")
            by_user[user_code][item_code] = value
            by_item[item_code][user_code] = value
            total += value
            count += 1

        if count == 0:
            raise ValueError("Cannot build a rating registry because no ratings were provided.")

        user_codes = sorted(by_user)
        item_codes = sorted(by_item)
        user_position = {code: i for i, code in enumerate(user_codes)}
        item_position = {code: i for i, code in enumerate(item_codes)}

        users = []
        for index, code in enumerate(user_codes):
            rated = sorted(by_user[code].items())
            users.append(User(
                index=index,
                code=code,
                item_codes=[item_code for item_code, _ in rated],
                item_indices=np.array([item_position[item_code] for item_code, _ in rated], dtype=np.intp),
                ratings=np.array([value for _, value in rated], dtype=np.float64),
            ))

        items = []
        for index, code in enumerate(item_codes):
            raters = sorted(by_item[code].items())
            items.append(Item(
                index=index,
                code=code,
                user_codes=[user_code for user_code, _ in raters],
                user_indices=np.array([user_position[user_code] for user_code, _ in raters], dtype=np.intp),
                ratings=np.array([value for _, value in raters], dtype=np.float64),
            ))

        logger.info(f"Built registry with {len(users)} users × {len(items)} items ({count} ratings)")
        return cls(users, items, total / count)

    @property
    def num_users(self) -> int:
        return len(self.users)

    @property
    def num_items(self) -> int:
        return len(self.items)

    def user_by_code(self, code: Hashable) -> User | None:
        index = self._user_lookup.get(code)
        return None if index is None else self.users[index]

    def item_by_code(self, code: Hashable) -> Item | None:
        index = self._item_lookup.get(code)
        return None if index is None else self.items[index]
