"""
epochsettle/protocol/apr.py

Target APR for a range: fixed, or derived from network utilization.

Utilization u = active workers / target capacity:
    u <= 0.1  ->  max(MIN, BASE * (1 - (0.1 - u) * 2))
    u <= 0.2  ->  BASE
    else      ->  min(MAX, BASE + (MAX - BASE) * (u - 0.2) / 0.8)
"""

import logging

from ..config import AprConfig

logger = logging.getLogger("epochsettle.protocol.apr")

LOW_UTILIZATION = 0.1
TARGET_UTILIZATION = 0.2


def utilization(active_workers: int, target_capacity: int) -> float:
    if target_capacity <= 0:
        return 0.0
    return active_workers / target_capacity


def dynamic_apr(util: float, config: AprConfig) -> float:
    """APR for a utilization ratio."""
    if util <= LOW_UTILIZATION:
        return max(config.min_apr, config.base_apr * (1 - (LOW_UTILIZATION - util) * 2))
    if util <= TARGET_UTILIZATION:
        return config.base_apr
    apr = config.base_apr + (config.max_apr - config.base_apr) * ((util - TARGET_UTILIZATION) / 0.8)
    return min(config.max_apr, apr)


def target_apr(config: AprConfig, active_workers: int) -> float:
    """APR to use for a range with active_workers workers."""
    if not config.dynamic:
        return config.base_apr
    util = utilization(active_workers, config.target_capacity)
    apr = dynamic_apr(util, config)
    logger.debug(f"Utilization {util:.3f} ({active_workers}/{config.target_capacity}) -> APR {apr:.4f}")
    return apr
