import logging
import unittest

import numpy as np
from scipy.spatial.distance import pdist, squareform

from exactTSNE import affinity
from exactTSNE.affinity import (
    PerplexityBasedAffinities,
    calibrate_row,
    compute_affinities,
    conditional_probabilities,
    joint_probabilities,
)
from exactTSNE.distances import squared_distances
from exactTSNE.utils import InvalidInput

affinity.log.setLevel(logging.ERROR)


class TestCalibrateRow(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(42)
        # Two well separated clusters
        cls.x = np.vstack((
            random_state.normal(0, 1, (25, 5)),
            random_state.normal(50, 1, (25, 5)),
        ))
        cls.D = squared_distances(cls.x)

    def test_row_is_a_distribution_with_zero_self_affinity(self):
        for i in (0, 13, 49):
            P, beta = calibrate_row(self.D[i], 10, index=i)
            self.assertAlmostEqual(np.sum(P), 1, delta=1e-12)
            self.assertEqual(P[i], 0)
            self.assertTrue(np.all(P >= 0))
            self.assertGreater(beta, 0)

    def test_converges_within_tolerance(self):
        tolerance = 1e-5
        for perplexity in (2, 5, 10, 20):
            P, beta, H = calibrate_row(
                self.D[0], perplexity, tolerance=tolerance, index=0,
                return_entropy=True,
            )
            self.assertLessEqual(abs(H - np.log(perplexity)), tolerance)

            # The reported entropy is the entropy of the returned distribution
            nonzero = P[P > 0]
            self.assertAlmostEqual(-np.sum(nonzero * np.log(nonzero)), H, delta=1e-8)

    def test_exhausts_iteration_budget_on_equal_distances(self):
        # When all distances are equal, the distribution is uniform regardless
        # of the bandwidth, so the target perplexity can never be reached
        D = np.ones(10)
        D[0] = 0
        P, beta, H = calibrate_row(D, 3, index=0, return_entropy=True)

        self.assertGreater(abs(H - np.log(3)), 1e-5)
        self.assertAlmostEqual(H, np.log(9))
        # Each of the 50 steps doubled the bandwidth
        self.assertEqual(beta, 2.0 ** 50)
        np.testing.assert_allclose(P[1:], 1 / 9)
        self.assertEqual(P[0], 0)

    def test_max_iter_limits_search(self):
        D = np.ones(10)
        D[0] = 0
        _, beta = calibrate_row(D, 3, index=0, max_iter=5)
        self.assertEqual(beta, 2.0 ** 5)

    def test_beta_decreases_with_perplexity(self):
        betas = [
            calibrate_row(self.D[7], perplexity, index=7)[1]
            for perplexity in (2, 5, 10, 20, 40)
        ]
        self.assertTrue(np.all(np.diff(betas) <= 0), betas)

    def test_large_distances_do_not_underflow(self):
        D = self.D[0] * 1e6
        P, _ = calibrate_row(D, 10, index=0)
        self.assertTrue(np.all(np.isfinite(P)))
        self.assertAlmostEqual(np.sum(P), 1, delta=1e-12)

    def test_without_index(self):
        P, _ = calibrate_row(self.D[0, 1:], 5)
        self.assertEqual(P.shape, (49,))
        self.assertAlmostEqual(np.sum(P), 1, delta=1e-12)

    def test_wrong_row_length_raises(self):
        with self.assertRaises(InvalidInput):
            calibrate_row(self.D[0], 10, index=0, n_samples=self.D.shape[0] + 1)

    def test_invalid_perplexity_raises(self):
        with self.assertRaises(InvalidInput):
            calibrate_row(self.D[0], 0, index=0)
        with self.assertRaises(InvalidInput):
            calibrate_row(self.D[0], -5, index=0)

    def test_non_finite_distances_raise(self):
        D = self.D[0].copy()
        D[4] = np.inf
        with self.assertRaises(InvalidInput):
            calibrate_row(D, 10, index=0)

    def test_does_not_modify_input(self):
        D = self.D[3].copy()
        calibrate_row(D, 10, index=3)
        np.testing.assert_array_equal(D, self.D[3])


class TestConditionalProbabilities(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(0)
        cls.x = random_state.normal(100, 50, (91, 4))
        cls.D = squared_distances(cls.x)

    def test_rows_sum_to_one(self):
        P, beta = conditional_probabilities(self.D, 30)
        np.testing.assert_allclose(np.sum(P, axis=1), 1)
        np.testing.assert_array_equal(np.diag(P), 0)
        self.assertEqual(beta.shape, (91,))

    def test_parallel_matches_serial(self):
        P1, beta1 = conditional_probabilities(self.D, 30, n_jobs=1)
        P2, beta2 = conditional_probabilities(self.D, 30, n_jobs=2)
        np.testing.assert_array_equal(P1, P2)
        np.testing.assert_array_equal(beta1, beta2)

    def test_non_square_raises(self):
        with self.assertRaises(InvalidInput):
            conditional_probabilities(self.D[:10], 5)


class TestJointProbabilities(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(0)
        cls.x = random_state.normal(100, 50, (91, 4))
        cls.conditional_P, _ = conditional_probabilities(squared_distances(cls.x), 30)

    def test_symmetric(self):
        P = joint_probabilities(self.conditional_P)
        np.testing.assert_array_equal(P, P.T)

    def test_sums_to_one(self):
        P = joint_probabilities(self.conditional_P)
        self.assertAlmostEqual(np.sum(P), 1, delta=1e-8)

    def test_floored_at_epsilon(self):
        P = joint_probabilities(self.conditional_P)
        self.assertGreaterEqual(np.min(P), affinity.EPSILON)

    def test_renormalizes_when_floor_perturbs_total(self):
        # Every point puts all its mass onto the next point
        n = 10
        conditional_P = np.zeros((n, n))
        conditional_P[np.arange(n), (np.arange(n) + 1) % n] = 1

        P = joint_probabilities(conditional_P, epsilon=1e-3)

        self.assertAlmostEqual(np.sum(P), 1, delta=1e-12)
        self.assertGreaterEqual(np.min(P), 1e-3)
        np.testing.assert_array_equal(P, P.T)
        self.assertAlmostEqual(P[0, 1], (1 - 80 * 1e-3) / 20)


class TestPerplexityBasedAffinities(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(0)
        cls.x = random_state.normal(100, 50, (91, 4))

    def test_compute_affinities_matches_class(self):
        P = compute_affinities(self.x, perplexity=20)
        aff = PerplexityBasedAffinities(self.x, perplexity=20)
        np.testing.assert_array_equal(P, aff.P)

    def test_precomputed_distances(self):
        D = squareform(pdist(self.x, "sqeuclidean"))
        aff1 = PerplexityBasedAffinities(self.x, perplexity=20)
        aff2 = PerplexityBasedAffinities(D, perplexity=20, metric="precomputed")
        np.testing.assert_allclose(aff1.P, aff2.P, rtol=1e-3, atol=1e-7)

    def test_negative_precomputed_distances_raise(self):
        D = squareform(pdist(self.x, "sqeuclidean"))
        D[0, 1] = -1
        with self.assertRaises(InvalidInput):
            PerplexityBasedAffinities(D, metric="precomputed")

    def test_unrecognized_metric_raises(self):
        with self.assertRaises(ValueError):
            PerplexityBasedAffinities(self.x, metric="imaginary")

    def test_doesnt_change_perplexity_parameter_value(self):
        with self.assertLogs(affinity.log, level="WARNING"):
            aff = PerplexityBasedAffinities(self.x, perplexity=140)
        self.assertEqual(aff.perplexity, 140)
        self.assertEqual(aff.effective_perplexity_, 90)

    def test_set_perplexity(self):
        aff = PerplexityBasedAffinities(self.x, perplexity=30)
        original_P = aff.P.copy()
        original_beta = aff.beta_.copy()

        aff.set_perplexity(10)
        self.assertEqual(aff.perplexity, 10)
        self.assertEqual(aff.effective_perplexity_, 10)
        np.testing.assert_array_equal(aff.P, aff.P.T)
        self.assertFalse(np.allclose(original_P, aff.P))
        # Fewer effective neighbors means narrower kernels
        self.assertTrue(np.all(aff.beta_ >= original_beta))

        np.testing.assert_array_equal(
            aff.P, PerplexityBasedAffinities(self.x, perplexity=10).P
        )

    def test_single_point_raises(self):
        with self.assertRaises(InvalidInput):
            compute_affinities(self.x[:1])

    def test_invalid_perplexity_raises(self):
        with self.assertRaises(InvalidInput):
            compute_affinities(self.x, perplexity=0)
