import logging

import numpy as np

from exactTSNE import utils

log = logging.getLogger(__name__)


def squared_distances(X, n_jobs=1, block_size=1024, verbose=False):
    """Compute the matrix of pairwise squared Euclidean distances.

    Uses the identity :math:`\\|x - y\\|^2 = \\|x\\|^2 + \\|y\\|^2 - 2 x^T y`,
    so the bulk of the work is a single :math:`X X^T` product. Only the upper
    triangle is kept and mirrored, which makes the result exactly symmetric.

    Parameters
    ----------
    X: np.ndarray
        An :math:`N \\times D` data matrix. The matrix is not modified.

    n_jobs: int
        The number of threads used to fill row blocks of the distance matrix.
        This follows the scikit-learn convention, ``-1`` meaning all
        processors, ``-2`` meaning all but one, etc.

    block_size: int
        The number of rows computed by a single job.

    verbose: bool

    Returns
    -------
    np.ndarray
        An :math:`N \\times N` symmetric matrix with a zero diagonal.

    Raises
    ------
    InvalidInput
        If ``X`` is not a matrix, has fewer than 2 rows or contains
        non-finite values.

    NumericDegeneracy
        If the resulting distances are not finite e.g. due to overflow.

    """
    X = utils.check_points(X)
    n_samples = X.shape[0]
    n_jobs = utils.effective_n_jobs(n_jobs)

    with utils.Timer(
        "Computing squared distances between %d points..." % n_samples, verbose
    ):
        sum_X = np.einsum("ij,ij->i", X, X)
        D = np.empty((n_samples, n_samples), dtype=np.float64)

        def fill_block(start):
            stop = min(start + block_size, n_samples)
            D[start:stop] = sum_X[start:stop, np.newaxis] + sum_X[np.newaxis, :]
            D[start:stop] -= 2 * X[start:stop] @ X.T

        blocks = range(0, n_samples, block_size)
        if n_jobs == 1 or len(blocks) == 1:
            for start in blocks:
                fill_block(start)
        else:
            from joblib import Parallel, delayed

            Parallel(n_jobs=n_jobs, require="sharedmem")(
                delayed(fill_block)(start) for start in blocks
            )

        # Keep the upper triangle and mirror it
        D = np.triu(D, k=1)
        D += D.T

        # Cancellation can produce tiny negative values for near-duplicates
        np.maximum(D, 0, out=D)

    utils.check_finite(D, "the distance matrix")

    return D
