from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .utils.common import OptimizationMethod

if TYPE_CHECKING:
    from .parameter_space.parameter_space import SearchSpace

logger = logging.getLogger(__name__)

# Above this many parameters the space is searched with the narrowing strategy.
MAX_PARAMETERS_FOR_POPULATION_SEARCH = 10
# Below this many evaluations there is no room for a population to evolve.
MIN_BUDGET_FOR_POPULATION_SEARCH = 100


def select_strategy(
    search_space: SearchSpace,
    budget: int,
    requested: OptimizationMethod | str | None = None,
) -> OptimizationMethod:
    """Choose the hyperparameter search strategy.

    Rules, in order:
        1. An explicitly requested method wins.
        2. More than 10 parameters: bayesian.
        3. Budget below 100 evaluations: random.
        4. Otherwise: evolutionary.

    Args:
        search_space: Space to be searched.
        budget: Maximum number of evaluations.
        requested: Method asked for by the caller.

    Returns:
        The selected OptimizationMethod.
    """
    if requested is not None:
        return OptimizationMethod(requested) if isinstance(requested, str) else requested

    if len(search_space) > MAX_PARAMETERS_FOR_POPULATION_SEARCH:
        method = OptimizationMethod.BAYESIAN
    elif budget < MIN_BUDGET_FOR_POPULATION_SEARCH:
        method = OptimizationMethod.RANDOM
    else:
        method = OptimizationMethod.EVOLUTIONARY

    logger.debug(
        "Selected %s for %d parameters and budget %d", method.value, len(search_space), budget
    )
    return method
