import logging

import numpy as np
from sklearn.utils import check_random_state

from exactTSNE import utils

log = logging.getLogger(__name__)

# Initial embeddings much wider than this converge poorly
MAX_INITIAL_STD = 1e-2


def random(n_samples, n_components=2, std=1e-4, random_state=None, verbose=False):
    """Draw initial positions from an isotropic Gaussian with a tiny variance.

    Parameters
    ----------
    n_samples: int
        The number of points to place.

    n_components: int
        The dimension of the embedding space.

    std: float
        The standard deviation of every coordinate.

    random_state: Union[int, RandomState]
        If the value is an int, random_state is the seed used by the random
        number generator. If the value is a RandomState instance, then it will
        be used as the random number generator. If the value is None, the random
        number generator is the RandomState instance used by `np.random`.

    verbose: bool

    Returns
    -------
    initialization: np.ndarray

    """
    if n_components < 1:
        raise utils.InvalidInput(
            "The embedding needs at least one dimension. %d given" % n_components
        )
    random_state = check_random_state(random_state)

    with utils.Timer("Calculating random initialization...", verbose):
        embedding = random_state.normal(0, std, (n_samples, n_components))

    return np.ascontiguousarray(embedding)


def from_array(initialization, n_samples, n_components):
    """Validate user-provided initial positions and return a private copy.

    Raises
    ------
    InvalidInput
        If the number of points or dimensions does not match the embedding, or
        the positions are not finite.

    """
    embedding = np.array(initialization, dtype=np.float64, order="C")
    if embedding.ndim != 2:
        raise utils.InvalidInput(
            "The provided initialization must be a 2-dimensional matrix."
        )
    if embedding.shape[0] != n_samples:
        raise utils.InvalidInput(
            "The provided initialization contains a different number "
            "of points (%d) than the data provided (%d)."
            % (embedding.shape[0], n_samples)
        )
    if embedding.shape[1] != n_components:
        raise utils.InvalidInput(
            "The provided initialization contains a different number "
            "of components (%d) than the embedding (%d)."
            % (embedding.shape[1], n_components)
        )
    if not np.all(np.isfinite(embedding)):
        raise utils.InvalidInput("The provided initialization contains NaN or inf.")

    if np.any(np.std(embedding, axis=0) > MAX_INITIAL_STD):
        log.warning(
            "Standard deviation of the initial embedding is greater than %g. "
            "Initial embeddings with high variance may display poor convergence."
            % MAX_INITIAL_STD
        )

    return embedding
