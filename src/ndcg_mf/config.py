"""
Configuration constants for the NDCG factorization engine.

This module centralizes default hyperparameters and execution settings.
Values can be overridden via environment variables.
"""
import os
import logging

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning(f"Invalid {key}='{raw}', using default {default}")
    return default


# Model hyperparameters
DEFAULT_BETA = _get_float_env("NDCG_MF_BETA", 2.0)  # Softmax temperature
DEFAULT_GAMMA = _get_float_env("NDCG_MF_GAMMA", 0.01)  # Step size
DEFAULT_LAMBDA = _get_float_env("NDCG_MF_LAMBDA", 0.1)  # Regularization weight

# Latent factor initialization range
INIT_LOW = -1.0
INIT_HIGH = 1.0

# Execution
DEFAULT_PARALLEL = _get_bool_env("NDCG_MF_PARALLEL", True)
DEFAULT_WORKERS = _get_int_env("NDCG_MF_WORKERS", os.cpu_count() or 1, min_val=1)

# Log a progress line every N iterations during training
LOG_EVERY_ITERATIONS = 10
