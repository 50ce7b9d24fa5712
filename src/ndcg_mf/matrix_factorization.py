import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import partial

import numpy as np

from .config import INIT_HIGH, INIT_LOW, LOG_EVERY_ITERATIONS
from .dispatcher import Dispatcher
from .ndcg_config import NdcgConfig
from .ranking import LN2, ideal_dcg, rank_gradients, rank_probabilities, smoothed_positions
from .registry import Item, RatingRegistry, User

logger = logging.getLogger(__name__)


class FactorizationModel(ABC):
    """Operations every latent factor model variant supports."""

    @abstractmethod
    def train(self) -> None:
        ...

    @abstractmethod
    def predict(self, user_index: int, item_index: int) -> float:
        ...

    @abstractmethod
    def get_user_factors(self, user_index: int) -> np.ndarray:
        ...

    @abstractmethod
    def get_item_factors(self, item_index: int) -> np.ndarray:
        ...

    @abstractmethod
    def get_number_of_topics(self) -> int:
        ...

    @abstractmethod
    def get_lambda(self) -> float:
        ...

    @abstractmethod
    def get_gamma(self) -> float:
        ...


class TrainingState(Enum):
    IDLE = "idle"
    ITERATING = "iterating"
    DONE = "done"
    FAILED = "failed"


class TrainingPhase(Enum):
    """Barrier-separated phases of one training iteration, in order."""

    ITEM_UPDATE = "item_update"
    USER_UPDATE = "user_update"
    COMMIT = "commit"


# Entity state access --------------------------------------------------

def _user_factors(user: User, num_factors: int) -> np.ndarray:
    factors = user.factors
    if factors is None or factors.shape != (num_factors,):
        raise RuntimeError(f"User {user.index} (code {user.code!r}) has no initialized latent factors")
    return factors


def _item_buffer(item: Item, name: str, num_factors: int) -> np.ndarray:
    buffer = getattr(item, name)
    if buffer is None or buffer.shape != (num_factors,):
        raise RuntimeError(f"Item {item.index} (code {item.code!r}) has no initialized {name} factors")
    return buffer


def _bias(entity: User | Item, kind: str) -> float:
    if entity.bias is None:
        raise RuntimeError(f"{kind} {entity.index} (code {entity.code!r}) has no initialized bias")
    return entity.bias


def predict_rating(registry: RatingRegistry, config: NdcgConfig, user_index: int, item_index: int) -> float:
    """Rating prediction from the committed item buffer."""
    user = registry.users[user_index]
    item = registry.items[item_index]
    dot = float(np.dot(_user_factors(user, config.num_factors), _item_buffer(item, "committed", config.num_factors)))
    if config.biases:
        return registry.rating_average + _bias(user, "User") + _bias(item, "Item") + dot
    return dot


# Per-user rank statistics ---------------------------------------------

@dataclass
class UserRankState:
    """
    Rank statistics of one user's rated items, computed from committed factors.

    Arrays follow the user's rating order.
    """

    item_indices: np.ndarray
    ratings: np.ndarray
    committed: np.ndarray  # (n, num_factors) committed item factors
    probabilities: np.ndarray
    gradients: np.ndarray

    @property
    def size(self) -> int:
        return len(self.item_indices)

    def position_of(self, item_index: int) -> int:
        pos = int(np.searchsorted(self.item_indices, item_index))
        if pos >= self.size or self.item_indices[pos] != item_index:
            raise RuntimeError(f"Item {item_index} is missing from the user's rating list")
        return pos


def user_rank_state(registry: RatingRegistry, config: NdcgConfig, user_index: int) -> UserRankState | None:
    """Return rank statistics for a user, or ``None`` if the user has no ratings."""
    user = registry.users[user_index]
    if user.num_ratings == 0:
        return None

    p_u = _user_factors(user, config.num_factors)
    rated_items = [registry.items[j] for j in user.item_indices]
    committed = np.stack([_item_buffer(item, "committed", config.num_factors) for item in rated_items])

    scores = committed @ p_u
    if config.biases:
        item_biases = np.array([_bias(item, "Item") for item in rated_items])
        scores = registry.rating_average + _bias(user, "User") + item_biases + scores

    probabilities = rank_probabilities(scores, config.beta)
    return UserRankState(
        item_indices=user.item_indices,
        ratings=user.ratings,
        committed=committed,
        probabilities=probabilities,
        gradients=rank_gradients(user.ratings, probabilities, ideal_dcg(user.ratings)),
    )


# Pass units -----------------------------------------------------------
# Each unit writes only the entity at its own index. Every cross-entity read
# goes through the committed item buffer, which no unit writes during a pass.

def update_item_factors(
    item_index: int,
    registry: RatingRegistry,
    config: NdcgConfig,
    rank_states: list[UserRankState | None] | None = None,
) -> None:
    """
    Item factor update: gradient step on the live buffer of one item.

    ``rank_states`` holds every user's rank statistics for the current pass;
    without it they are computed on demand.
    """
    item = registry.items[item_index]
    if item.num_ratings == 0:
        logger.debug(f"Skipping item {item_index} without ratings")
        return

    q_live = _item_buffer(item, "live", config.num_factors)
    q_committed = _item_buffer(item, "committed", config.num_factors)

    for user_index in item.user_indices:
        if rank_states is None:
            state = user_rank_state(registry, config, user_index)
        else:
            state = rank_states[user_index]
        if state is None:
            continue
        pos = state.position_of(item_index)
        s_i = state.probabilities[pos]

        direct = state.gradients[pos] * (1.0 - s_i)
        cross = (state.gradients.sum() - state.gradients[pos]) * s_i

        scale = config.beta * LN2 * (state.size - 1) * config.gamma
        p_v = _user_factors(registry.users[user_index], config.num_factors)
        q_live -= scale * (direct - cross) * p_v

    q_live -= config.decay * q_committed


def update_user_factors(user_index: int, registry: RatingRegistry, config: NdcgConfig) -> None:
    """User factor update: gradient step on one user's latent vector."""
    state = user_rank_state(registry, config, user_index)
    if state is None:
        logger.debug(f"Skipping user {user_index} without ratings")
        return

    p_u = registry.users[user_index].factors

    # Row i holds sum over i' != i of softmax(u, i') * q_i'
    weighted = state.probabilities[:, np.newaxis] * state.committed
    cross = weighted.sum(axis=0) - weighted

    scale = config.gamma * config.beta * (state.size - 1) * LN2
    aux = -scale * (state.gradients[:, np.newaxis] * (state.committed - cross)).sum(axis=0)

    p_u -= aux + config.decay * p_u


def store_rank_state(
    user_index: int,
    registry: RatingRegistry,
    config: NdcgConfig,
    rank_states: list[UserRankState | None],
) -> None:
    rank_states[user_index] = user_rank_state(registry, config, user_index)


def commit_item_factors(item_index: int, registry: RatingRegistry, config: NdcgConfig) -> None:
    """Copy the live buffer of one item into its committed buffer, value by value."""
    item = registry.items[item_index]
    live = _item_buffer(item, "live", config.num_factors)
    committed = _item_buffer(item, "committed", config.num_factors)
    np.copyto(committed, live)


_PHASE_UNITS = {
    TrainingPhase.ITEM_UPDATE: update_item_factors,
    TrainingPhase.USER_UPDATE: update_user_factors,
    TrainingPhase.COMMIT: commit_item_factors,
}


class NdcgMatrixFactorization(FactorizationModel):
    """
    Matrix factorization trained on a smoothed NDCG objective.

    Predicts ``avg + b_u + b_i + p_u · q_i`` (or ``p_u · q_i`` without biases),
    where the factors are fitted so that the softmax rank probabilities of each
    user's rated items track the ideal ranking of their ratings.

    Each training iteration runs three barrier-separated passes:

    1. item factors, in parallel over items, writing each item's live buffer
    2. user factors, in parallel over users
    3. commit, copying every live item buffer into its committed buffer

    Biases are drawn once at initialization and are not updated by training.
    """

    def __init__(
        self,
        registry: RatingRegistry,
        num_factors: int,
        num_iters: int,
        lambda_: float | None = None,
        gamma: float | None = None,
        beta: float | None = None,
        biases: bool = True,
        *,
        dispatcher: Dispatcher | None = None,
        seed: int | None = None,
    ):
        overrides = {
            name: value
            for name, value in (("lambda_", lambda_), ("gamma", gamma), ("beta", beta))
            if value is not None
        }
        self.registry = registry
        self.config = NdcgConfig(num_factors=num_factors, num_iters=num_iters, biases=biases, **overrides)
        self.dispatcher = dispatcher or Dispatcher()
        self.rng = np.random.default_rng(seed)
        self.state = TrainingState.IDLE
        self.iterations_run = 0
        self.initialize()

    @classmethod
    def from_config(
        cls,
        registry: RatingRegistry,
        config: NdcgConfig,
        *,
        dispatcher: Dispatcher | None = None,
        seed: int | None = None,
    ) -> "NdcgMatrixFactorization":
        return cls(
            registry,
            config.num_factors,
            config.num_iters,
            lambda_=config.lambda_,
            gamma=config.gamma,
            beta=config.beta,
            biases=config.biases,
            dispatcher=dispatcher,
            seed=seed,
        )

    # Hyperparameters --------------------------------------------------

    @property
    def num_factors(self) -> int:
        return self.config.num_factors

    @property
    def num_iters(self) -> int:
        return self.config.num_iters

    def get_number_of_topics(self) -> int:
        return self.config.num_factors

    def get_lambda(self) -> float:
        return self.config.lambda_

    def get_gamma(self) -> float:
        return self.config.gamma

    def get_beta(self) -> float:
        return self.config.beta

    # Initialization ---------------------------------------------------

    def initialize(self) -> None:
        """
        Draw fresh random factors (and biases) for every user and item.

        Also clears a failed state, so this is how training is restarted
        from the beginning.
        """
        k = self.config.num_factors
        for user in self.registry.users:
            user.factors = self.rng.uniform(INIT_LOW, INIT_HIGH, size=k)
        for item in self.registry.items:
            item.live = self.rng.uniform(INIT_LOW, INIT_HIGH, size=k)
            item.committed = item.live.copy()

        if self.config.biases:
            for user in self.registry.users:
                user.bias = float(self.rng.uniform(INIT_LOW, INIT_HIGH))
            for item in self.registry.items:
                item.bias = float(self.rng.uniform(INIT_LOW, INIT_HIGH))

        self.state = TrainingState.IDLE
        self.iterations_run = 0

    def _check_initialized(self) -> None:
        k = self.config.num_factors
        for user in self.registry.users:
            _user_factors(user, k)
            if self.config.biases:
                _bias(user, "User")
        for item in self.registry.items:
            _item_buffer(item, "live", k)
            _item_buffer(item, "committed", k)
            if self.config.biases:
                _bias(item, "Item")

    def _check_usable(self) -> None:
        if self.state is TrainingState.FAILED:
            raise RuntimeError("Model was invalidated by a failed training run; call initialize() to restart")

    # Training ---------------------------------------------------------

    def train(self) -> None:
        """Estimate the latent factors, running ``num_iters`` iterations."""
        self._check_usable()
        self._check_initialized()

        logger.info(
            f"Training NDCG factorization on {self.registry.num_users} users × "
            f"{self.registry.num_items} items ({self.num_factors} factors, {self.num_iters} iterations)"
        )

        self.state = TrainingState.ITERATING
        try:
            for iteration in range(1, self.num_iters + 1):
                self.run_iteration()
                if iteration % LOG_EVERY_ITERATIONS == 0:
                    logger.debug(f"Completed iteration {iteration}/{self.num_iters}")
        except Exception:
            self.state = TrainingState.FAILED
            logger.error(f"Training failed during iteration {self.iterations_run + 1}")
            raise

        self.state = TrainingState.DONE
        logger.info(f"Finished NDCG factorization after {self.iterations_run} iterations")

    def run_iteration(self) -> None:
        for phase in TrainingPhase:
            self.run_phase(phase)
        self.iterations_run += 1

    def run_phase(self, phase: TrainingPhase) -> None:
        """Dispatch one pass over all items or users; returns after every unit finished."""
        count = self.registry.num_users if phase is TrainingPhase.USER_UPDATE else self.registry.num_items
        unit = partial(_PHASE_UNITS[phase], registry=self.registry, config=self.config)
        if phase is TrainingPhase.ITEM_UPDATE:
            unit = partial(unit, rank_states=self.collect_rank_states())
        self.dispatcher.run_over_range(range(count), unit)

    def collect_rank_states(self) -> list[UserRankState | None]:
        """Rank statistics of every user, computed once and shared read-only by the item pass."""
        rank_states: list[UserRankState | None] = [None] * self.registry.num_users
        unit = partial(store_rank_state, registry=self.registry, config=self.config, rank_states=rank_states)
        self.dispatcher.run_over_range(range(self.registry.num_users), unit)
        return rank_states

    def commit(self) -> None:
        self.run_phase(TrainingPhase.COMMIT)

    # Accessors --------------------------------------------------------

    def get_user_factors(self, user_index: int) -> np.ndarray:
        return _user_factors(self.registry.users[user_index], self.num_factors).copy()

    def get_item_factors(self, item_index: int) -> np.ndarray:
        """Committed item factors."""
        return _item_buffer(self.registry.items[item_index], "committed", self.num_factors).copy()

    def get_live_item_factors(self, item_index: int) -> np.ndarray:
        return _item_buffer(self.registry.items[item_index], "live", self.num_factors).copy()

    def get_user_bias(self, user_index: int) -> float | None:
        return self.registry.users[user_index].bias if self.config.biases else None

    def get_item_bias(self, item_index: int) -> float | None:
        return self.registry.items[item_index].bias if self.config.biases else None

    # Rank model -------------------------------------------------------

    def _rank_state(self, user_index: int) -> UserRankState:
        state = user_rank_state(self.registry, self.config, user_index)
        if state is None:
            raise ValueError(f"User {user_index} has no ratings")
        return state

    def softmax(self, user_index: int, item_index: int) -> float:
        """Probability that a rated item is ranked first among the user's rated items."""
        state = self._rank_state(user_index)
        return float(state.probabilities[state.position_of(item_index)])

    def position(self, user_index: int, item_index: int) -> float:
        """Smoothed rank position of a rated item, in ``[1, n_ratings]``."""
        state = self._rank_state(user_index)
        return float(smoothed_positions(state.probabilities)[state.position_of(item_index)])

    def ideal_dcg(self, user_index: int) -> float:
        return ideal_dcg(self.registry.users[user_index].ratings)

    # Prediction -------------------------------------------------------

    def predict(self, user_index: int, item_index: int) -> float:
        self._check_usable()
        return predict_rating(self.registry, self.config, user_index, item_index)

    def recommend(self, user_index: int, n: int = 10, exclude_rated: bool = True) -> list[tuple[int, float]]:
        """Top-N items for a user as ``(item_index, prediction)`` pairs, best first."""
        self._check_usable()
        if n <= 0:
            return []
        user = self.registry.users[user_index]
        p_u = _user_factors(user, self.num_factors)

        committed = np.stack([_item_buffer(item, "committed", self.num_factors) for item in self.registry.items])
        predictions = committed @ p_u
        if self.config.biases:
            item_biases = np.array([_bias(item, "Item") for item in self.registry.items])
            predictions = self.registry.rating_average + _bias(user, "User") + item_biases + predictions

        seen = set(user.item_indices.tolist()) if exclude_rated else set()
        results = []
        for idx in np.argsort(predictions)[::-1]:
            if int(idx) not in seen:
                results.append((int(idx), float(predictions[idx])))
                if len(results) >= n:
                    break
        return results
