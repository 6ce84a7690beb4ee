import logging

import numpy as np

from exactTSNE import utils
from exactTSNE.distances import squared_distances

log = logging.getLogger(__name__)

# Lower bound on the joint probabilities so the KL divergence stays finite
EPSILON = 1e-12


class Affinities:
    """Compute the affinities between samples.

    t-SNE takes as input an affinity matrix :math:`P`, and does not really care
    about anything else from the data. This means we can use t-SNE for any data
    where we are able to express interactions between samples with an affinity
    matrix.

    Attributes
    ----------
    P: np.ndarray
        The :math:`N \\times N` affinity matrix expressing interactions between
        :math:`N` initial data samples.

    verbose: bool

    """

    def __init__(self, verbose=False):
        self.P = None
        self.verbose = verbose

    @property
    def n_samples(self):
        if self.P is None:
            raise RuntimeError("`P` is not set!")
        return self.P.shape[0]


class PerplexityBasedAffinities(Affinities):
    """Compute exact affinities with Gaussian kernels calibrated to a perplexity.

    Every data point gets its own Gaussian kernel whose bandwidth is found by
    binary search so the conditional distribution over all other points has
    the requested perplexity. The conditional distributions are then
    symmetrized into a single joint probability matrix.

    Parameters
    ----------
    data: np.ndarray
        The data matrix. If ``metric="precomputed"``, this should be a square
        matrix of squared distances instead.

    perplexity: float
        Perplexity can be thought of as the continuous :math:`k` number of
        nearest neighbors, for which t-SNE will attempt to preserve distances.

    tolerance: float
        The tolerance on the log-perplexity of each conditional distribution.

    max_iter: int
        The maximum number of binary search steps for each data point.

    metric: str
        Either ``euclidean`` or ``precomputed``.

    n_jobs: int
        The number of threads to use. This follows the scikit-learn convention,
        ``-1`` meaning all processors, ``-2`` meaning all but one, etc.

    verbose: bool

    Attributes
    ----------
    beta_: np.ndarray
        The calibrated inverse bandwidth of each data point.

    effective_perplexity_: float
        The perplexity actually used, which differs from ``perplexity`` when
        the requested value was too large for the number of samples.

    """

    def __init__(
        self,
        data,
        perplexity=30,
        tolerance=1e-5,
        max_iter=50,
        metric="euclidean",
        n_jobs=1,
        verbose=False,
    ):
        super().__init__(verbose=verbose)

        if metric == "euclidean":
            self.__distances = squared_distances(data, n_jobs=n_jobs, verbose=verbose)
        elif metric == "precomputed":
            self.__distances = check_distances(data)
        else:
            raise ValueError(
                "Unrecognized metric `%s`. Please choose one of `euclidean` or "
                "`precomputed`." % metric
            )

        self.perplexity = perplexity
        self.effective_perplexity_ = self.check_perplexity(
            perplexity, self.__distances.shape[0]
        )
        self.tolerance = tolerance
        self.max_iter = max_iter
        self.metric = metric
        self.n_jobs = n_jobs

        self.P, self.beta_ = self._compute()

    def _compute(self):
        conditional_P, beta = conditional_probabilities(
            self.__distances,
            self.effective_perplexity_,
            tolerance=self.tolerance,
            max_iter=self.max_iter,
            n_jobs=self.n_jobs,
            verbose=self.verbose,
        )
        with utils.Timer("Symmetrizing affinity matrix...", self.verbose):
            P = joint_probabilities(conditional_P)
        return P, beta

    def set_perplexity(self, new_perplexity):
        """Change the perplexity of the affinity matrix.

        The pairwise distances are kept around, so only the bandwidths and
        probabilities need to be recomputed.

        Parameters
        ----------
        new_perplexity: float
            The new perplexity.

        """
        # If the value hasn't changed, there's nothing to do
        if new_perplexity == self.perplexity:
            return

        self.perplexity = new_perplexity
        self.effective_perplexity_ = self.check_perplexity(
            new_perplexity, self.__distances.shape[0]
        )

        with utils.Timer(
            "Perplexity changed. Recomputing affinity matrix...", self.verbose
        ):
            self.P, self.beta_ = self._compute()

    @staticmethod
    def check_perplexity(perplexity, n_samples):
        if perplexity <= 0:
            raise utils.InvalidInput("Perplexity must be >0. %.2f given" % perplexity)

        # Each point has at most `n_samples - 1` neighbors
        max_perplexity = n_samples - 1
        if perplexity > max_perplexity:
            log.warning(
                "Perplexity value %.2f is too high for %d samples. Using "
                "perplexity %.2f instead" % (perplexity, n_samples, max_perplexity)
            )
            perplexity = max_perplexity

        return perplexity


def check_distances(D):
    """Validate a precomputed matrix of squared distances."""
    D = utils.check_square(D, name="D")
    if np.any(D < 0):
        raise utils.InvalidInput("Distances must be non-negative.")
    return D


def _entropy_and_probabilities(distances, beta, index):
    P = np.exp(-beta * distances)
    if index is not None:
        P[index] = 0
    sum_P = np.sum(P)
    H = np.log(sum_P) + beta * np.dot(distances, P) / sum_P
    P /= sum_P
    return H, P


def calibrate_row(
    distances,
    perplexity,
    tolerance=1e-5,
    max_iter=50,
    index=None,
    n_samples=None,
    return_entropy=False,
):
    """Find the Gaussian bandwidth of a single point matching a perplexity.

    The conditional probabilities are :math:`p_{j|i} \\propto \\exp(-\\beta
    d_{ij})` with :math:`p_{i|i} = 0`. Starting from :math:`\\beta = 1`, the
    bandwidth is doubled or halved until the log-perplexity target is
    bracketed, after which the bracket is bisected. The search stops once the
    entropy is within ``tolerance`` of the target or when ``max_iter`` steps
    have been taken, so the result is not guaranteed to have converged.

    Parameters
    ----------
    distances: np.ndarray
        The squared distances from point ``index`` to every point.

    perplexity: float
        The target perplexity.

    tolerance: float
        The allowed absolute difference between the entropy and the log of
        the target perplexity.

    max_iter: int
        The maximum number of search steps.

    index: Optional[int]
        The position of the point itself in ``distances``. Its probability is
        always exactly zero.

    n_samples: Optional[int]
        If given, the expected length of ``distances``.

    return_entropy: bool
        Whether to also return the entropy of the final distribution.

    Returns
    -------
    P: np.ndarray
        The conditional probabilities, summing to 1.

    beta: float
        The inverse bandwidth of the Gaussian kernel.

    entropy: float
        Returned if ``return_entropy=True``. The entropy (in nats) of ``P``.

    """
    distances = np.array(distances, dtype=np.float64)
    if distances.ndim != 1:
        raise utils.InvalidInput("`distances` must be a 1-dimensional vector.")
    if n_samples is not None and distances.shape[0] != n_samples:
        raise utils.InvalidInput(
            "`distances` contains %d entries, but there are %d samples."
            % (distances.shape[0], n_samples)
        )
    if not np.all(np.isfinite(distances)):
        raise utils.InvalidInput("`distances` contains NaN or infinite values.")
    if perplexity <= 0:
        raise utils.InvalidInput("Perplexity must be >0. %.2f given" % perplexity)

    others = np.ones_like(distances, dtype=bool)
    if index is not None:
        if not 0 <= index < distances.shape[0]:
            raise utils.InvalidInput("`index` %d is out of bounds." % index)
        others[index] = False
    if not np.any(others):
        raise utils.InvalidInput("At least one other point is required.")

    # Shifting all distances by a constant leaves P and H unchanged, and
    # guarantees at least one unit weight, so the normalization never underflows
    distances -= np.min(distances[others])
    distances[~others] = 0

    log_perplexity = np.log(perplexity)
    beta_min, beta_max = -np.inf, np.inf
    beta = 1.0

    H, P = _entropy_and_probabilities(distances, beta, index)

    for _ in range(max_iter):
        if abs(H - log_perplexity) <= tolerance:
            break

        # Distribution too flat, the kernel must be narrower
        if H > log_perplexity:
            beta_min = beta
            if np.isinf(beta_max):
                beta *= 2
            else:
                beta = (beta + beta_max) / 2
        else:
            beta_max = beta
            if np.isinf(beta_min):
                beta /= 2
            else:
                beta = (beta + beta_min) / 2

        H, P = _entropy_and_probabilities(distances, beta, index)

    if abs(H - log_perplexity) > tolerance:
        log.debug(
            "Binary search did not converge in %d steps (entropy %.6f, target "
            "%.6f)" % (max_iter, H, log_perplexity)
        )

    assert P.shape == distances.shape, "Conditional probabilities have wrong size"
    assert index is None or P[index] == 0, "Self-affinity must be zero"

    if return_entropy:
        return P, beta, H

    return P, beta


def conditional_probabilities(
    distances, perplexity, tolerance=1e-5, max_iter=50, n_jobs=1, verbose=False
):
    """Compute the conditional probability matrix :math:`P_{j|i}`.

    Rows are calibrated independently of each other, so with ``n_jobs != 1``
    they are distributed over threads, each writing only its own row.

    Parameters
    ----------
    distances: np.ndarray
        An :math:`N \\times N` matrix of squared distances.
    perplexity: float
        The desired perplexity of each conditional distribution.
    tolerance: float
    max_iter: int
    n_jobs: int
    verbose: bool

    Returns
    -------
    P: np.ndarray
        An :math:`N \\times N` matrix, where row :math:`i` holds
        :math:`P_{j|i}`.
    beta: np.ndarray
        The calibrated inverse bandwidths.

    """
    distances = utils.check_square(distances, name="distances")
    n_samples = distances.shape[0]
    n_jobs = utils.effective_n_jobs(n_jobs)

    P = np.zeros((n_samples, n_samples), dtype=np.float64)
    beta = np.ones(n_samples, dtype=np.float64)

    def calibrate(i):
        P[i], beta[i] = calibrate_row(
            distances[i],
            perplexity,
            tolerance=tolerance,
            max_iter=max_iter,
            index=i,
            n_samples=n_samples,
        )

    with utils.Timer(
        "Calibrating bandwidths for %d points with perplexity %.2f..."
        % (n_samples, perplexity),
        verbose,
    ):
        if n_jobs == 1:
            for i in range(n_samples):
                calibrate(i)
        else:
            from joblib import Parallel, delayed

            Parallel(n_jobs=n_jobs, require="sharedmem")(
                delayed(calibrate)(i) for i in range(n_samples)
            )

    mean_sigma = np.mean(np.sqrt(1 / beta))
    log.info("Mean sigma is %.4f" % mean_sigma)
    if verbose:
        print("   --> Mean sigma: %.4f" % mean_sigma)

    return P, beta


def joint_probabilities(conditional_P, epsilon=EPSILON):
    """Symmetrize conditional probabilities into a joint distribution.

    Computes :math:`p_{ij} = (p_{j|i} + p_{i|j}) / 2N` and floors every entry
    at ``epsilon``. If flooring changes the total noticeably, the remaining
    mass is rescaled so the matrix still sums to one.

    Parameters
    ----------
    conditional_P: np.ndarray
        An :math:`N \\times N` matrix of conditional probabilities, one
        distribution per row.
    epsilon: float
        The smallest allowed probability.

    Returns
    -------
    np.ndarray
        A symmetric :math:`N \\times N` matrix summing to one with no entry
        smaller than ``epsilon``.

    """
    conditional_P = utils.check_square(conditional_P, name="conditional_P")
    n_samples = conditional_P.shape[0]

    P = (conditional_P + conditional_P.T) / (2 * n_samples)
    np.maximum(P, epsilon, out=P)

    if abs(np.sum(P) - 1) > 1e-8:
        floored = P <= epsilon
        if np.all(floored):
            P[:] = 1 / n_samples ** 2
        else:
            free_mass = 1 - epsilon * np.count_nonzero(floored)
            P[~floored] *= free_mass / np.sum(P[~floored])

    utils.check_finite(P, "the joint probability matrix")

    return P


def compute_affinities(
    points,
    perplexity=30.0,
    tolerance=1e-5,
    max_iter=50,
    metric="euclidean",
    n_jobs=1,
    verbose=False,
):
    """Compute the joint probability matrix :math:`P` of a data set.

    Parameters
    ----------
    points: np.ndarray
        An :math:`N \\times D` data matrix, or a matrix of squared distances
        when ``metric="precomputed"``.
    perplexity: float
    tolerance: float
    max_iter: int
    metric: str
    n_jobs: int
    verbose: bool

    Returns
    -------
    np.ndarray
        The :math:`N \\times N` joint probability matrix.

    """
    affinities = PerplexityBasedAffinities(
        points,
        perplexity=perplexity,
        tolerance=tolerance,
        max_iter=max_iter,
        metric=metric,
        n_jobs=n_jobs,
        verbose=verbose,
    )
    return affinities.P
