import math
from dataclasses import asdict, dataclass

from .config import DEFAULT_BETA, DEFAULT_GAMMA, DEFAULT_LAMBDA


@dataclass(frozen=True)
class NdcgConfig:
    """
    Hyperparameters of the NDCG factorization engine.

    Instances are immutable and validated on construction so a bad value
    fails before any factor is allocated.
    """

    num_factors: int
    num_iters: int
    lambda_: float = DEFAULT_LAMBDA
    gamma: float = DEFAULT_GAMMA
    beta: float = DEFAULT_BETA
    biases: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.num_factors, int) or isinstance(self.num_factors, bool):
            raise ValueError("num_factors must be an integer")
        if not isinstance(self.num_iters, int) or isinstance(self.num_iters, bool):
            raise ValueError("num_iters must be an integer")
        if self.num_factors <= 0:
            raise ValueError("num_factors must be positive")
        if self.num_iters < 0:
            raise ValueError("num_iters must be non-negative")
        if not math.isfinite(self.beta) or self.beta <= 0:
            raise ValueError("beta must be a positive finite number")
        if not math.isfinite(self.gamma) or self.gamma <= 0:
            raise ValueError("gamma must be a positive finite number")
        if not math.isfinite(self.lambda_) or self.lambda_ < 0:
            raise ValueError("lambda_ must be a non-negative finite number")
        # Weight decay per step must stay below the factor itself
        if self.gamma * self.lambda_ >= 1:
            raise ValueError("gamma * lambda_ must be below 1")

    @property
    def decay(self) -> float:
        """Per-iteration weight decay applied to every latent vector."""
        return self.gamma * self.lambda_

    def to_dict(self) -> dict:
        return asdict(self)
