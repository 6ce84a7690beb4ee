import logging
from collections.abc import Iterable
from types import SimpleNamespace
from time import time

import numpy as np
from sklearn.base import BaseEstimator

from exactTSNE import initialization as initialization_scheme
from exactTSNE import utils
from exactTSNE.affinity import EPSILON, Affinities, PerplexityBasedAffinities
from exactTSNE.distances import squared_distances

log = logging.getLogger(__name__)


def _check_callbacks(callbacks):
    if callbacks is not None:
        # If list was passed, make sure all of them are actually callable
        if isinstance(callbacks, Iterable):
            if any(not callable(c) for c in callbacks):
                raise ValueError("`callbacks` must contain callable objects!")
        # The gradient descent method deals with lists
        elif callable(callbacks):
            callbacks = (callbacks,)
        else:
            raise ValueError("`callbacks` must be a callable object!")

    return callbacks


def _handle_nice_params(embedding: np.ndarray, optim_params: dict) -> None:
    """Convert the user friendly params into something the optimizer can
    understand."""
    # Handle callbacks
    optim_params["callbacks"] = _check_callbacks(optim_params.get("callbacks"))
    optim_params["use_callbacks"] = optim_params["callbacks"] is not None

    objective_function = optim_params.get("objective_function", kl_divergence_exact)
    if not callable(objective_function):
        raise ValueError("`objective_function` must be a callable object!")
    optim_params["objective_function"] = objective_function

    # Handle number of jobs
    optim_params["n_jobs"] = utils.effective_n_jobs(optim_params.get("n_jobs", 1))

    # Determine learning rate if requested
    if optim_params.get("learning_rate", "auto") == "auto":
        optim_params["learning_rate"] = max(200, embedding.shape[0] / 12)


def __check_init_num_samples(num_samples, required_num_samples):
    if num_samples != required_num_samples:
        raise utils.InvalidInput(
            "The provided initialization contains a different number "
            "of points (%d) than the data provided (%d)."
            % (num_samples, required_num_samples)
        )


def __check_init_num_dimensions(num_dimensions, required_num_dimensions):
    if num_dimensions != required_num_dimensions:
        raise utils.InvalidInput(
            "The provided initialization contains a different number "
            "of components (%d) than the embedding (%d)."
            % (num_dimensions, required_num_dimensions)
        )


init_checks = SimpleNamespace(
    num_samples=__check_init_num_samples, num_dimensions=__check_init_num_dimensions,
)


def _as_affinities(affinities):
    """Validate the joint probability matrix once, before optimization."""
    if isinstance(affinities, Affinities):
        P = affinities.P
    else:
        P, affinities = affinities, Affinities()

    if P is None:
        raise utils.InvalidInput("The affinity matrix `P` has not been computed.")
    P = utils.check_square(P, name="P")
    if np.any(P < 0):
        raise utils.InvalidInput("The affinity matrix `P` contains negative values.")
    if abs(np.sum(P) - 1) > 1e-3:
        log.warning(
            "The affinity matrix sums to %.4f instead of 1. The KL divergence "
            "will not be meaningful." % np.sum(P)
        )

    affinities.P = P
    return affinities


def _initial_embedding(
    initialization, n_samples, n_components, random_state=None, verbose=False
):
    if isinstance(initialization, np.ndarray):
        return initialization_scheme.from_array(
            initialization, n_samples, n_components
        )
    elif initialization == "random":
        return initialization_scheme.random(
            n_samples, n_components, random_state=random_state, verbose=verbose
        )
    else:
        raise ValueError(f"Unrecognized initialization scheme `{initialization}`.")


class OptimizationInterrupt(InterruptedError):
    """Optimization was interrupted by a callback.

    Parameters
    ----------
    error: float
        The KL divergence of the embedding.

    final_embedding: TSNEEmbedding
        The embedding at the point of interruption.

    """

    def __init__(self, error, final_embedding):
        super().__init__()
        self.error = error
        self.final_embedding = final_embedding


class TSNEEmbedding(np.ndarray):
    """A t-SNE embedding.

    The embedding keeps a reference to its affinities and to the optimizer
    state (gains and velocities), so optimization can be continued with
    further calls to :meth:`optimize`.

    Parameters
    ----------
    embedding: np.ndarray
        Initial positions for each data point.

    affinities: Affinities
        The affinity object holding the joint probability matrix :math:`P`
        used during optimization.

    learning_rate: Union[str, float]
        The learning rate for t-SNE optimization. When ``learning_rate="auto"``
        the appropriate learning rate is selected according to max(200, N / 12),
        as determined in Belkina et al. "Automated optimized parameters for
        T-distributed stochastic neighbor embedding improve visualization and
        analysis of large datasets", 2019.

    momentum: float
        Momentum accounts for gradient directions from previous iterations,
        resulting in faster convergence.

    min_gain: float
        Minimum individual gain for each coordinate.

    max_grad_norm: float
        Maximum gradient norm of each point. If the norm exceeds this value,
        it will be clipped.

    max_step_norm: float
        Maximum update norm of each point. If the norm exceeds this value, it
        will be clipped. This prevents points from "shooting off" from the
        embedding.

    random_state: Union[int, RandomState]
        The random state parameter follows the convention used in scikit-learn.
        If the value is an int, random_state is the seed used by the random
        number generator. If the value is a RandomState instance, then it will
        be used as the random number generator. If the value is None, the random
        number generator is the RandomState instance used by `np.random`.

    n_jobs: int
        The number of threads to use while running t-SNE. This follows the
        scikit-learn convention, ``-1`` meaning all processors, ``-2`` meaning
        all but one, etc.

    callbacks: Callable[[int, float, np.ndarray] -> bool]
        Callbacks, which will be run every ``callbacks_every_iters`` iterations.

    callbacks_every_iters: int
        How many iterations should pass between each time the callbacks are
        invoked.

    optimizer: gradient_descent
        Optionally, an existing optimizer can be used for optimization. This is
        useful for keeping momentum gains between different calls to
        :func:`optimize`.

    Attributes
    ----------
    kl_divergence: float
        The KL divergence or error of the embedding.

    """

    def __new__(
        cls,
        embedding,
        affinities,
        random_state=None,
        optimizer=None,
        **gradient_descent_params,
    ):
        init_checks.num_samples(embedding.shape[0], affinities.P.shape[0])

        obj = np.asarray(embedding, dtype=np.float64, order="C").view(TSNEEmbedding)

        obj.affinities = affinities  # type: Affinities
        obj.gradient_descent_params = gradient_descent_params  # type: dict
        obj.random_state = random_state

        if optimizer is None:
            optimizer = gradient_descent()
        elif not isinstance(optimizer, gradient_descent):
            raise TypeError(
                "`optimizer` must be an instance of `%s`, but got `%s`."
                % (gradient_descent.__name__, type(optimizer))
            )
        obj.optimizer = optimizer

        obj.kl_divergence = None

        return obj

    def optimize(
        self,
        n_iter,
        inplace=False,
        propagate_exception=False,
        **gradient_descent_params,
    ):
        """Run optmization on the embedding for a given number of steps.

        Parameters
        ----------
        n_iter: int
            The number of optimization iterations.

        learning_rate: Union[str, float]
            The learning rate for t-SNE optimization.

        exaggeration: float
            The exaggeration factor is used to increase the attractive forces of
            nearby points, producing more compact clusters.

        momentum: float
            Momentum accounts for gradient directions from previous iterations,
            resulting in faster convergence.

        inplace: bool
            Whether or not to create a copy of the embedding or to perform
            updates inplace.

        propagate_exception: bool
            The optimization process can be interrupted using callbacks. This
            flag indicates whether we should propagate that exception or to
            simply stop optimization and return the resulting embedding.

        **gradient_descent_params: dict
            Any other parameter of :class:`gradient_descent`, overriding the
            values this embedding was created with.

        Returns
        -------
        TSNEEmbedding
            An optimized t-SNE embedding.

        Raises
        ------
        OptimizationInterrupt
            If a callback stops the optimization and the ``propagate_exception``
            flag is set, then an exception is raised.

        """
        # Typically we want to return a new embedding and keep the old one intact
        if inplace:
            embedding = self
        else:
            embedding = TSNEEmbedding(
                np.copy(self),
                self.affinities,
                random_state=self.random_state,
                optimizer=self.optimizer.copy(),
                **self.gradient_descent_params,
            )

        # If optimization parameters were passed to this funciton, prefer those
        # over the defaults specified in the TSNE object
        optim_params = dict(self.gradient_descent_params)
        optim_params.update(gradient_descent_params)
        optim_params["n_iter"] = n_iter
        _handle_nice_params(embedding, optim_params)

        try:
            # Run gradient descent with the embedding optimizer so gains are
            # properly updated and kept
            error, embedding = embedding.optimizer(
                embedding=embedding, P=self.affinities.P, **optim_params
            )

        except OptimizationInterrupt as ex:
            log.info("Optimization was interrupted with callback.")
            ex.final_embedding.kl_divergence = ex.error
            if propagate_exception:
                raise ex
            error, embedding = ex.error, ex.final_embedding

        embedding.kl_divergence = error

        return embedding

    def __reduce__(self):
        state = super().__reduce__()
        new_state = state[2] + (
            self.affinities,
            self.gradient_descent_params,
            self.random_state,
            self.optimizer,
            self.kl_divergence,
        )
        return state[0], state[1], new_state

    def __setstate__(self, state):
        self.kl_divergence = state[-1]
        self.optimizer = state[-2]
        self.random_state = state[-3]
        self.gradient_descent_params = state[-4]
        self.affinities = state[-5]
        super().__setstate__(state[0:-5])


def _optimization_phases(n_iter, momentum_switch_iter, exaggeration_release_iter):
    """Split the iterations into consecutive phases with constant momentum and
    exaggeration.

    Iteration ``t`` uses the initial momentum while ``t < momentum_switch_iter``.
    The affinities stay exaggerated up to and including iteration
    ``exaggeration_release_iter``, and are released after its update.

    Yields
    ------
    Tuple[int, bool, bool]
        The number of iterations in the phase, whether the initial momentum is
        used, and whether the affinities are exaggerated.

    """
    exaggeration_stop_iter = exaggeration_release_iter + 1

    boundaries = {0, n_iter}
    for boundary in (momentum_switch_iter, exaggeration_stop_iter):
        if 0 < boundary < n_iter:
            boundaries.add(boundary)
    boundaries = sorted(boundaries)

    for start, stop in zip(boundaries[:-1], boundaries[1:]):
        yield (
            stop - start,
            start < momentum_switch_iter,
            start < exaggeration_stop_iter,
        )


def _run_schedule(
    embedding,
    max_iter,
    early_exaggeration,
    exaggeration_release_iter,
    initial_momentum,
    final_momentum,
    momentum_switch_iter,
):
    if max_iter < 0:
        raise ValueError("`max_iter` must be non-negative. %d given" % max_iter)

    phases = _optimization_phases(
        max_iter, momentum_switch_iter, exaggeration_release_iter
    )
    try:
        for phase, (n_iter, initial_phase, exaggerated) in enumerate(phases):
            embedding.optimize(
                n_iter=n_iter,
                exaggeration=early_exaggeration if exaggerated else None,
                momentum=initial_momentum if initial_phase else final_momentum,
                # Callbacks see the whole schedule as a single run
                notify_callbacks=phase == 0,
                inplace=True,
                propagate_exception=True,
            )

    except OptimizationInterrupt as ex:
        log.info("Optimization was interrupted with callback.")
        embedding = ex.final_embedding

    return embedding


def embed(
    affinities,
    num_dims=2,
    max_iter=1000,
    learning_rate=500,
    initial_momentum=0.5,
    final_momentum=0.8,
    min_gain=0.01,
    early_exaggeration=4.0,
    exaggeration_release_iter=100,
    momentum_switch_iter=20,
    initialization="random",
    max_grad_norm=None,
    max_step_norm=None,
    callbacks=None,
    callbacks_every_iters=10,
    random_state=None,
    n_jobs=1,
    verbose=False,
):
    """Optimize a t-SNE embedding for a joint probability matrix.

    The optimization runs for exactly ``max_iter`` iterations of gradient
    descent with momentum and per-coordinate gains. Iterations before
    ``momentum_switch_iter`` use ``initial_momentum`` and iterations up to and
    including ``exaggeration_release_iter`` see :math:`P` multiplied by
    ``early_exaggeration``. The velocities and gains carry over between these
    phases.

    Parameters
    ----------
    affinities: Union[np.ndarray, Affinities]
        The :math:`N \\times N` joint probability matrix, or an affinity object
        holding it.

    num_dims: int
        The dimension of the embedding space.

    max_iter: int
        The total number of iterations.

    learning_rate: Union[str, float]

    initial_momentum: float

    final_momentum: float

    min_gain: float

    early_exaggeration: float

    exaggeration_release_iter: int
        The last exaggerated iteration. :math:`P` is returned to its true
        values after the update of this iteration.

    momentum_switch_iter: int
        The iteration at which ``final_momentum`` starts being used.

    initialization: Union[np.ndarray, str]
        Either ``random`` or an array of initial positions.

    max_grad_norm: float

    max_step_norm: float

    callbacks: Union[Callable, List[Callable]]
        Callbacks, which will be run every ``callbacks_every_iters`` iterations.
        A callback returning ``True`` stops the optimization.

    callbacks_every_iters: int

    random_state: Union[int, RandomState]

    n_jobs: int

    verbose: bool

    Returns
    -------
    TSNEEmbedding
        The optimized, zero-centered embedding.

    Raises
    ------
    InvalidInput
        If the affinity matrix is not square, contains fewer than 2 points, or
        the initialization does not match it.

    NumericDegeneracy
        If the optimization produces NaN or infinite values.

    """
    affinities = _as_affinities(affinities)
    n_samples = affinities.P.shape[0]

    if num_dims < 1:
        raise utils.InvalidInput("`num_dims` must be positive. %d given" % num_dims)

    embedding = _initial_embedding(
        initialization, n_samples, num_dims, random_state=random_state,
        verbose=verbose,
    )

    embedding = TSNEEmbedding(
        embedding,
        affinities,
        random_state=random_state,
        learning_rate=learning_rate,
        momentum=final_momentum,
        min_gain=min_gain,
        max_grad_norm=max_grad_norm,
        max_step_norm=max_step_norm,
        n_jobs=n_jobs,
        verbose=verbose,
        callbacks=callbacks,
        callbacks_every_iters=callbacks_every_iters,
    )

    return _run_schedule(
        embedding,
        max_iter,
        early_exaggeration=early_exaggeration,
        exaggeration_release_iter=exaggeration_release_iter,
        initial_momentum=initial_momentum,
        final_momentum=final_momentum,
        momentum_switch_iter=momentum_switch_iter,
    )


class TSNE(BaseEstimator):
    """Exact t-Distributed Stochastic Neighbor Embedding.

    Parameters
    ----------
    n_components: int
        The dimension of the embedding space.

    perplexity: float
        Perplexity can be thought of as the continuous :math:`k` number of
        nearest neighbors, for which t-SNE will attempt to preserve distances.

    tolerance: float
        The tolerance of the perplexity binary search.

    learning_rate: Union[str, float]
        The learning rate for t-SNE optimization. When ``learning_rate="auto"``
        the appropriate learning rate is selected according to max(200, N / 12).

    max_iter: int
        The total number of optimization iterations.

    early_exaggeration: float
        The exaggeration factor to use during the *early exaggeration* phase.

    exaggeration_release_iter: int
        The last iteration of the *early exaggeration* phase. Iterations
        ``0..exaggeration_release_iter`` see the exaggerated affinities.

    momentum_switch_iter: int
        The number of iterations to run with ``initial_momentum``.

    initial_momentum: float

    final_momentum: float

    min_gain: float

    initialization: Union[np.ndarray, str]
        The initial point positions to be used in the embedding space. Can be a
        precomputed numpy array or ``random``. Please note that when passing in
        precomputed positions, it is highly recommended that the point
        positions have small variance (std(Y) < 0.0001), otherwise you may get
        poor embeddings.

    metric: str
        Either ``euclidean`` or ``precomputed``, in which case ``fit`` expects
        a matrix of squared distances.

    max_grad_norm: float

    max_step_norm: float

    n_jobs: int
        The number of threads to use while running t-SNE. This follows the
        scikit-learn convention, ``-1`` meaning all processors, ``-2`` meaning
        all but one, etc.

    affinities: exactTSNE.affinity.Affinities
        A precomputed affinity object. If specified, ``perplexity``,
        ``tolerance`` and ``metric`` are ignored.

    callbacks: Union[Callable, List[Callable]]
        Callbacks, which will be run every ``callbacks_every_iters`` iterations.

    callbacks_every_iters: int
        How many iterations should pass between each time the callbacks are
        invoked.

    random_state: Union[int, RandomState]
        If the value is an int, random_state is the seed used by the random
        number generator. If the value is a RandomState instance, then it will
        be used as the random number generator. If the value is None, the random
        number generator is the RandomState instance used by `np.random`.

    verbose: bool

    """

    def __init__(
        self,
        n_components=2,
        perplexity=30,
        tolerance=1e-5,
        learning_rate=500,
        max_iter=1000,
        early_exaggeration=4,
        exaggeration_release_iter=100,
        momentum_switch_iter=20,
        initial_momentum=0.5,
        final_momentum=0.8,
        min_gain=0.01,
        initialization="random",
        metric="euclidean",
        max_grad_norm=None,
        max_step_norm=None,
        n_jobs=1,
        affinities=None,
        callbacks=None,
        callbacks_every_iters=10,
        random_state=None,
        verbose=False,
    ):
        self.n_components = n_components
        self.perplexity = perplexity
        self.tolerance = tolerance
        self.learning_rate = learning_rate
        self.max_iter = max_iter
        self.early_exaggeration = early_exaggeration
        self.exaggeration_release_iter = exaggeration_release_iter
        self.momentum_switch_iter = momentum_switch_iter
        self.initial_momentum = initial_momentum
        self.final_momentum = final_momentum
        self.min_gain = min_gain

        # Check if the number of components match the initialization dimension
        if isinstance(initialization, np.ndarray):
            init_checks.num_dimensions(initialization.shape[1], n_components)
        self.initialization = initialization

        self.metric = metric
        self.max_grad_norm = max_grad_norm
        self.max_step_norm = max_step_norm
        self.n_jobs = n_jobs

        if affinities is not None and not isinstance(affinities, Affinities):
            raise ValueError(
                "`affinities` must be an instance of `exactTSNE.affinity.Affinities`"
            )
        self.affinities = affinities

        self.callbacks = callbacks
        self.callbacks_every_iters = callbacks_every_iters

        self.random_state = random_state
        self.verbose = verbose

    def fit(self, X):
        """Fit a t-SNE embedding for a given data set.

        Runs the standard t-SNE optimization, consisting of the early
        exaggeration phase and a normal optimization phase.

        Parameters
        ----------
        X: np.ndarray
            The data matrix to be embedded.

        Returns
        -------
        TSNEEmbedding
            A fully optimized t-SNE embedding.

        """
        if self.verbose:
            print("-" * 80, repr(self), "-" * 80, sep="\n")

        embedding = self.prepare_initial(X)

        return _run_schedule(
            embedding,
            self.max_iter,
            early_exaggeration=self.early_exaggeration,
            exaggeration_release_iter=self.exaggeration_release_iter,
            initial_momentum=self.initial_momentum,
            final_momentum=self.final_momentum,
            momentum_switch_iter=self.momentum_switch_iter,
        )

    def prepare_initial(self, X):
        """Prepare the initial embedding which can be optimized as needed.

        Parameters
        ----------
        X: np.ndarray
            The data matrix to be embedded.

        Returns
        -------
        TSNEEmbedding
            An unoptimized :class:`TSNEEmbedding` object, prepared for
            optimization.

        """
        if self.affinities is None:
            affinities = PerplexityBasedAffinities(
                X,
                self.perplexity,
                tolerance=self.tolerance,
                metric=self.metric,
                n_jobs=self.n_jobs,
                verbose=self.verbose,
            )
        else:
            log.info(
                "Precomputed affinities provided. Ignoring perplexity-related "
                "parameters."
            )
            affinities = self.affinities
        affinities = _as_affinities(affinities)
        n_samples = affinities.P.shape[0]

        embedding = _initial_embedding(
            self.initialization,
            n_samples,
            self.n_components,
            random_state=self.random_state,
            verbose=self.verbose,
        )

        gradient_descent_params = {
            "learning_rate": self.learning_rate,
            # By default, use the momentum used in unexaggerated phase
            "momentum": self.final_momentum,
            "min_gain": self.min_gain,
            "max_grad_norm": self.max_grad_norm,
            "max_step_norm": self.max_step_norm,
            "n_jobs": self.n_jobs,
            "verbose": self.verbose,
            # Callback params
            "callbacks": self.callbacks,
            "callbacks_every_iters": self.callbacks_every_iters,
        }

        return TSNEEmbedding(
            embedding,
            affinities=affinities,
            random_state=self.random_state,
            **gradient_descent_params,
        )


def kl_divergence_exact(embedding, P, should_eval_error=False, n_jobs=1, **_):
    """Evaluate the exact t-SNE gradient, and optionally the KL divergence.

    The low-dimensional affinities use the Student-t kernel
    :math:`w_{ij} = (1 + \\|y_i - y_j\\|^2)^{-1}` and
    :math:`q_{ij} = w_{ij} / \\sum_{k \\neq l} w_{kl}`. The gradient is

    .. math::

        \\frac{\\partial C}{\\partial y_i} = 4 \\sum_j (p_{ij} - q_{ij}) w_{ij} (y_i - y_j)

    Parameters
    ----------
    embedding: np.ndarray
    P: np.ndarray
        The (possibly exaggerated) joint probability matrix.
    should_eval_error: bool
        The KL divergence is only computed when requested. Otherwise NaN is
        returned in its place.
    n_jobs: int

    Returns
    -------
    float
        The KL divergence.
    np.ndarray
        The gradient, with the same shape as the embedding.

    """
    Y = np.asarray(embedding)

    num = squared_distances(Y, n_jobs=n_jobs)
    num += 1
    np.reciprocal(num, out=num)
    np.fill_diagonal(num, 0)

    Q = np.maximum(num / np.sum(num), EPSILON)

    # Each row of the gradient only depends on its own row of PQ
    PQ = (P - Q) * num
    gradient = 4 * (np.sum(PQ, axis=1)[:, np.newaxis] * Y - PQ @ Y)
    utils.check_finite(gradient, "the gradient")

    if should_eval_error:
        kl_divergence_ = np.sum(P * np.log(np.maximum(P, EPSILON) / Q))
    else:
        kl_divergence_ = np.nan

    return kl_divergence_, np.ascontiguousarray(gradient)


class gradient_descent:
    def __init__(self):
        self.gains = None
        self.update = None
        self.iteration = 0

    def copy(self):
        optimizer = self.__class__()
        if self.gains is not None:
            optimizer.gains = np.copy(self.gains)
        if self.update is not None:
            optimizer.update = np.copy(self.update)
        optimizer.iteration = self.iteration
        return optimizer

    def __call__(
        self,
        embedding,
        P,
        n_iter,
        objective_function=kl_divergence_exact,
        learning_rate=500,
        momentum=0.5,
        exaggeration=None,
        min_gain=0.01,
        max_grad_norm=None,
        max_step_norm=None,
        n_jobs=1,
        use_callbacks=False,
        callbacks=None,
        callbacks_every_iters=10,
        notify_callbacks=True,
        verbose=False,
    ):
        """Perform batch gradient descent with momentum and gains.

        The gains and the update (velocity) are kept on the optimizer, so
        consecutive calls continue where the previous one stopped.

        Parameters
        ----------
        embedding: np.ndarray
            The embedding :math:`Y`, updated in place.

        P: np.ndarray
            Joint probability matrix :math:`P`. It is never modified.

        n_iter: int
            The number of iterations to run for.

        objective_function: Callable[..., Tuple[float, np.ndarray]]
            A callable that evaluates the error and gradient for the current
            embedding.

        learning_rate: float
            The learning rate for t-SNE optimization.

        momentum: float
            Momentum accounts for gradient directions from previous iterations,
            resulting in faster convergence.

        exaggeration: float
            The exaggeration factor is used to increase the attractive forces of
            nearby points, producing more compact clusters.

        min_gain: float
            Minimum individual gain for each parameter.

        max_grad_norm: float
            Maximum gradient norm. If the norm exceeds this value, it will be
            clipped.

        max_step_norm: float
            Maximum update norm. If the norm exceeds this value, it will be
            clipped. This prevents points from "shooting off" from
            the embedding.

        n_jobs: int
            The number of threads to use while running t-SNE. This follows the
            scikit-learn convention, ``-1`` meaning all processors, ``-2``
            meaning all but one, etc.

        use_callbacks: bool

        callbacks: Callable[[int, float, np.ndarray] -> bool]
            Callbacks, which will be run every ``callbacks_every_iters``
            iterations.

        callbacks_every_iters: int
            How many iterations should pass between each time the callbacks are
            invoked. Progress is printed at the same rate when ``verbose``.

        notify_callbacks: bool
            Whether to call ``optimization_about_to_start`` on the callbacks.
            Later phases of a single run leave it off, so callbacks keep their
            state across phase boundaries.

        verbose: bool

        Returns
        -------
        float
            The KL divergence of the optimized embedding.
        np.ndarray
            The optimized embedding Y.

        Raises
        ------
        OptimizationInterrupt
            If the provided callback interrupts the optimization, this is raised.

        NumericDegeneracy
            If the gradient or the embedding stop being finite.

        """
        assert isinstance(embedding, np.ndarray), (
            "`embedding` must be an instance of `np.ndarray`. Got `%s` instead"
            % type(embedding)
        )
        if P.shape != (embedding.shape[0], embedding.shape[0]):
            raise utils.InvalidInput(
                "`P` has shape %s, but the embedding contains %d points."
                % (P.shape, embedding.shape[0])
            )

        if self.update is None:
            self.update = np.zeros(embedding.shape, dtype=np.float64)
        if self.gains is None:
            self.gains = np.ones(embedding.shape, dtype=np.float64)

        # Lie about the P values for bigger attraction forces. The affinity
        # matrix is shared with the embedding, so scale a copy
        if exaggeration is None:
            exaggeration = 1

        P_true = P
        if exaggeration != 1:
            P = P * exaggeration

        # Notify the callbacks that the optimization is about to start
        if notify_callbacks and isinstance(callbacks, Iterable):
            for callback in callbacks:
                # Only call function if present on object
                getattr(callback, "optimization_about_to_start", lambda: ...)()

        timer = utils.Timer(
            "Running optimization with exaggeration=%.2f, lr=%.2f, momentum=%.2f "
            "for %d iterations..." % (exaggeration, learning_rate, momentum, n_iter),
            verbose=verbose,
        )
        timer.__enter__()

        if verbose:
            start_time = time()

        for _ in range(n_iter):
            self.iteration += 1
            should_report = self.iteration % callbacks_every_iters == 0
            should_call_callback = use_callbacks and should_report
            should_eval_error = should_call_callback or (verbose and should_report)

            error, gradient = objective_function(
                embedding,
                P,
                should_eval_error=should_eval_error,
                n_jobs=n_jobs,
            )

            # Clip gradients to avoid points shooting off
            if max_grad_norm is not None:
                norm = np.linalg.norm(gradient, axis=1)
                coeff = max_grad_norm / (norm + 1e-6)
                mask = coeff < 1
                gradient[mask] *= coeff[mask, None]

            # Correct the KL divergence w.r.t. the exaggeration if needed
            if should_eval_error and exaggeration != 1:
                error = error / exaggeration - np.log(exaggeration)

            if should_call_callback:
                # Continue only if all the callbacks say so
                should_stop = any(
                    (bool(c(self.iteration, error, embedding)) for c in callbacks)
                )
                if should_stop:
                    raise OptimizationInterrupt(error=error, final_embedding=embedding)

            # Speed up coordinates that keep moving in the same direction and
            # slow down the ones that oscillate
            grad_direction_flipped = np.sign(self.update) != np.sign(gradient)
            grad_direction_same = np.invert(grad_direction_flipped)
            self.gains[grad_direction_flipped] += 0.2
            self.gains[grad_direction_same] *= 0.8
            np.maximum(self.gains, min_gain, out=self.gains)

            self.update = momentum * self.update - learning_rate * self.gains * gradient

            # Clip the update sizes
            if max_step_norm is not None:
                update_norms = np.linalg.norm(self.update, axis=1, keepdims=True)
                mask = update_norms.squeeze(axis=1) > max_step_norm
                self.update[mask] /= update_norms[mask]
                self.update[mask] *= max_step_norm

            embedding += self.update

            # Translation does not change the cost, so keep the embedding centered
            embedding -= np.mean(embedding, axis=0)

            utils.check_finite(embedding, "the embedding")

            if verbose and should_report:
                stop_time = time()
                print("Iteration %4d, KL divergence %6.4f, %d iterations in %.4f sec" % (
                    self.iteration, error, callbacks_every_iters, stop_time - start_time))
                start_time = time()

        timer.__exit__()

        # The error from the loop is the one for the previous, non-updated
        # embedding. We need to return the error for the actual final embedding, so
        # compute that at the end before returning
        error, _ = objective_function(
            embedding, P_true, should_eval_error=True, n_jobs=n_jobs
        )

        return error, embedding
