import logging
import multiprocessing
from time import time

import numpy as np

log = logging.getLogger(__name__)


class InvalidInput(ValueError):
    """The input matrices are malformed e.g. non-square, mismatched in
    dimension, non-finite, or contain fewer than two points."""


class NumericDegeneracy(FloatingPointError):
    """NaN or infinite values appeared in distances, affinities or gradients.

    The optimization has no way of recovering from poisoned state, so the
    whole run should be restarted, usually with a different initialization or
    a lower learning rate.

    """


class Timer:
    def __init__(self, message, verbose=False):
        self.message = message
        self.start_time = time()
        self.verbose = verbose

    def __enter__(self):
        self.start_time = time()
        if self.verbose:
            print("===>", self.message)

    def __exit__(self, *args):
        end_time = time()
        if self.verbose:
            print("   --> Time elapsed: %.2f seconds" % (end_time - self.start_time))


def check_points(X, name="X"):
    """Validate a data matrix and return it as a C-contiguous float64 array.

    Raises
    ------
    InvalidInput
        If the matrix is not 2-dimensional, contains fewer than two rows or
        has non-finite entries.

    """
    X = np.asarray(X, dtype=np.float64, order="C")
    if X.ndim != 2:
        raise InvalidInput(
            "`%s` must be a 2-dimensional matrix, but has %d dimension(s)."
            % (name, X.ndim)
        )
    if X.shape[0] < 2:
        raise InvalidInput(
            "`%s` must contain at least 2 points, but contains %d."
            % (name, X.shape[0])
        )
    if not np.all(np.isfinite(X)):
        raise InvalidInput("`%s` contains NaN or infinite values." % name)
    return X


def check_square(A, name="P"):
    """Validate a square pairwise matrix e.g. distances or affinities."""
    A = check_points(A, name=name)
    if A.shape[0] != A.shape[1]:
        raise InvalidInput(
            "`%s` must be a square matrix, but has shape %s." % (name, A.shape)
        )
    return A


def check_finite(x, what):
    """Raise a `NumericDegeneracy` if ``x`` contains NaN or inf values."""
    if not np.all(np.isfinite(x)):
        raise NumericDegeneracy(
            "Encountered NaN or infinite values in %s. The computation cannot "
            "continue." % what
        )


def effective_n_jobs(n_jobs):
    """Resolve the scikit-learn ``n_jobs`` convention to a thread count.

    ``-1`` means all processors, ``-2`` all but one, and so on. Values that
    end up non-positive fall back to a single job.

    """
    requested = n_jobs
    n_cores = multiprocessing.cpu_count()
    if n_jobs < 0:
        # -1 indicates using all cores, -2 all except one, and so on
        n_jobs = n_cores + n_jobs + 1

    # The user probably thought they had more cores
    if n_jobs <= 0:
        log.warning(
            "`n_jobs` receieved value %d but only %d cores are available. "
            "Defaulting to single job." % (requested, n_cores)
        )
        n_jobs = 1

    return n_jobs
