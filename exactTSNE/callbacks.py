import logging
import time

import numpy as np

from exactTSNE.tsne import TSNEEmbedding, kl_divergence_exact

log = logging.getLogger(__name__)


class Callback:
    def optimization_about_to_start(self):
        """This is called at the beginning of the optimization procedure."""

    def __call__(self, iteration, error, embedding):
        """This is the main method called from the optimization.

        Parameters
        ----------
        iteration: int
            The current iteration number.

        error: float
            The current KL divergence of the given embedding.

        embedding: TSNEEmbedding
            The current t-SNE embedding.

        Returns
        -------
        stop_optimization: bool
            If this value is set to ``True``, the optimization will be
            interrupted.

        """


class ErrorLogger(Callback):
    """Basic error logger.

    This logger prints out basic information about the optimization. These
    include the iteration number, error and how much time has elapsed from the
    previous callback invocation.

    """

    def __init__(self):
        self.iter_count = 0
        self.last_log_time = None

    def optimization_about_to_start(self):
        self.last_log_time = time.time()

    def __call__(self, iteration, error, embedding):
        now = time.time()
        duration = now - self.last_log_time
        self.last_log_time = now

        n_iters = iteration - self.iter_count
        self.iter_count = iteration

        print("Iteration % 4d, KL divergence % 6.4f, %d iterations in %.4f sec" % (
            iteration, error, n_iters, duration))


class StopOnConvergence(Callback):
    """Stop the optimization once the KL divergence stops improving.

    The optimizer itself always runs for its full iteration budget; this
    callback layers convergence-based stopping on top of it.

    Parameters
    ----------
    min_improvement: float
        The smallest decrease in KL divergence between two consecutive
        invocations that still counts as progress.

    patience: int
        The number of consecutive invocations without progress after which
        the optimization is stopped.

    """

    def __init__(self, min_improvement=1e-4, patience=1):
        self.min_improvement = min_improvement
        self.patience = patience
        self.best_error = np.inf
        self.n_stalled = 0
        self.errors = []

    def optimization_about_to_start(self):
        self.best_error = np.inf
        self.n_stalled = 0

    def __call__(self, iteration, error, embedding):
        self.errors.append(error)

        if self.best_error - error < self.min_improvement:
            self.n_stalled += 1
        else:
            self.n_stalled = 0
        self.best_error = min(self.best_error, error)

        if self.n_stalled >= self.patience:
            log.info(
                "KL divergence converged to %.4f at iteration %d." % (error, iteration)
            )
            return True

        return False


class VerifyExaggerationError(Callback):
    """Used to verify that the exaggeration correction implemented in
    `gradient_descent` is correct."""
    def __init__(self, embedding: TSNEEmbedding) -> None:
        self.embedding = embedding
        # Keep a copy of the unexaggerated affinity matrix
        self.P = self.embedding.affinities.P.copy()

    def __call__(self, iteration: int, corrected_error: float, embedding: TSNEEmbedding):
        true_error, _ = kl_divergence_exact(embedding, self.P, should_eval_error=True)
        if abs(true_error - corrected_error) > 1e-8:
            raise RuntimeError("Correction term is wrong.")
        else:
            log.info("Corrected: %.4f - True %.4f [eps %.4f]" % (
                corrected_error, true_error, abs(true_error - corrected_error)))
