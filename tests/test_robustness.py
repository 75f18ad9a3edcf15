"""
Tests for the loss robustness policies, the statistics registers and
the runtime configuration.

Run with:
    python -m pytest tests/test_robustness.py -v
"""

import math
import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))


def ones_diff(num_sequence, frames_per_sequence, num_classes=3):
    return np.ones((num_sequence * frames_per_sequence, num_classes))


class TestStatOnly(unittest.TestCase):
    def test_accepts_everything(self):
        from ctc_objective.robustness import StatOnly
        from ctc_objective.statistics import CtcStats

        stats = CtcStats()
        diff = ones_diff(3, 2)
        accepted = StatOnly().check(
            ["a", "b", "c"], [2, 1, 2], np.array([5.0, 4000.0, -1.0]), diff, stats
        )
        self.assertTrue(accepted.all())
        np.testing.assert_array_equal(diff, 1.0)
        self.assertAlmostEqual(stats.obj, 4004.0)
        self.assertAlmostEqual(stats.obj_progress, 4004.0)
        self.assertEqual(stats.frames, 5)
        self.assertEqual(stats.sequences, 3)


class TestSumLossCheck(unittest.TestCase):
    def test_drops_implausible_sequences(self):
        from ctc_objective.robustness import SumLossCheck
        from ctc_objective.statistics import CtcStats

        stats = CtcStats()
        # 4 sequences padded to 3 frames, row t * 4 + s
        diff = ones_diff(4, 3)
        frame_counts = [2, 3, 1, 3]
        losses = np.array([5.0, 4000.0, -1.0, np.nan])

        with self.assertLogs("ctc_objective.robustness", level="WARNING") as logs:
            accepted = SumLossCheck().check(["a", "b", "c", "d"], frame_counts, losses, diff, stats)

        np.testing.assert_array_equal(accepted, [True, False, False, False])
        self.assertEqual(len(logs.output), 3)
        self.assertIn("Sequence b", logs.output[0])

        # sequence 0 untouched
        np.testing.assert_array_equal(diff[[0, 4]], 1.0)
        # valid frames of rejected sequences are zeroed
        np.testing.assert_array_equal(diff[[1, 5, 9]], 0.0)
        np.testing.assert_array_equal(diff[[2]], 0.0)
        np.testing.assert_array_equal(diff[[3, 7, 11]], 0.0)
        # padded frame of sequence 2 is left alone
        np.testing.assert_array_equal(diff[[6, 10]], 1.0)

        self.assertAlmostEqual(stats.obj, 5.0)
        self.assertEqual(stats.frames, 9)
        self.assertEqual(stats.sequences, 4)

    def test_bounds_inclusive(self):
        from ctc_objective.robustness import is_plausible_loss

        self.assertTrue(is_plausible_loss(0.0))
        self.assertTrue(is_plausible_loss(3000.0))
        self.assertFalse(is_plausible_loss(3000.5))
        self.assertFalse(is_plausible_loss(float("inf")))


class TestAverageLossCheck(unittest.TestCase):
    def _baseline(self, policy, stats, per_frame_losses, frames=10):
        n = len(per_frame_losses)
        diff = ones_diff(n, frames)
        losses = np.array(per_frame_losses) * frames
        return policy.check([f"base{i}" for i in range(n)], [frames] * n, losses, diff, stats)

    def test_outlier_rows_zeroed_others_untouched(self):
        from ctc_objective.robustness import AverageLossCheck
        from ctc_objective.statistics import CtcStats

        policy = AverageLossCheck(window=10)
        stats = CtcStats()
        accepted = self._baseline(policy, stats, [1.0, 1.1, 0.9, 1.05, 0.95])
        self.assertTrue(accepted.all())
        self.assertFalse(policy.in_baseline)

        mean, sigma = policy.mean_sigma()
        self.assertAlmostEqual(mean, 1.0)
        outlier = (mean + 100 * sigma) * 10
        normal = 1.02 * 10

        diff = ones_diff(2, 10)
        with self.assertLogs("ctc_objective.robustness", level="WARNING") as logs:
            accepted = policy.check(["bad", "good"], [10, 10], np.array([outlier, normal]), diff, stats)

        np.testing.assert_array_equal(accepted, [False, True])
        self.assertIn("Sequence bad", logs.output[0])
        np.testing.assert_array_equal(diff[0::2], 0.0)
        np.testing.assert_array_equal(diff[1::2], 1.0)
        self.assertAlmostEqual(stats.obj, 50.0 + normal)
        self.assertEqual(stats.sequences, 7)
        self.assertEqual(policy.normal_num, 6)

    def test_low_and_moderate_losses_accepted(self):
        from ctc_objective.robustness import AverageLossCheck
        from ctc_objective.statistics import CtcStats

        policy = AverageLossCheck(window=10)
        stats = CtcStats()
        self._baseline(policy, stats, [1.0, 1.1, 0.9, 1.05, 0.95])
        mean, sigma = policy.mean_sigma()
        self.assertAlmostEqual(sigma, math.sqrt(1.005))

        # per-frame 1.5 and 0.01 lie inside mean +/- 6 sigma, 8.0 does not
        diff = ones_diff(3, 10)
        with self.assertLogs("ctc_objective.robustness", level="WARNING") as logs:
            accepted = policy.check(
                ["mid", "low", "high"], [10, 10, 10], np.array([15.0, 0.1, 80.0]), diff, stats
            )
        np.testing.assert_array_equal(accepted, [True, True, False])
        self.assertEqual(len(logs.output), 1)
        self.assertIn("Sequence high", logs.output[0])
        np.testing.assert_array_equal(diff[0::3], 1.0)
        np.testing.assert_array_equal(diff[1::3], 1.0)
        np.testing.assert_array_equal(diff[2::3], 0.0)
        self.assertEqual(policy.normal_num, 7)

    def test_baseline_drops_implausible(self):
        from ctc_objective.robustness import AverageLossCheck
        from ctc_objective.statistics import CtcStats

        policy = AverageLossCheck(window=10)
        stats = CtcStats()
        diff = ones_diff(2, 4)
        accepted = policy.check(["a", "b"], [4, 4], np.array([5000.0, 8.0]), diff, stats)
        np.testing.assert_array_equal(accepted, [False, True])
        self.assertEqual(policy.normal_num, 1)
        np.testing.assert_array_equal(diff[0::2], 0.0)
        self.assertAlmostEqual(stats.obj, 8.0)

    def test_window_halving(self):
        from ctc_objective.robustness import AverageLossCheck
        from ctc_objective.statistics import CtcStats

        policy = AverageLossCheck(window=4)
        stats = CtcStats()
        diff = ones_diff(4, 1)
        accepted = policy.check(
            ["a", "b", "c", "d"], [1, 1, 1, 1], np.array([1.0, 2.0, 3.0, 4.0]), diff, stats
        )
        self.assertTrue(accepted.all())
        # the first two (baseline) samples were dropped from the window
        self.assertEqual(policy.normal_num, 2)
        self.assertAlmostEqual(policy.loss_sum, 7.0)
        self.assertAlmostEqual(policy.loss_square_sum, 25.0)
        self.assertAlmostEqual(policy.loss_sum_bak, 7.0)
        self.assertAlmostEqual(policy.loss_square_sum_bak, 25.0)
        self.assertAlmostEqual(stats.obj, 10.0)

    def test_window_must_be_even(self):
        from ctc_objective.robustness import AverageLossCheck

        with self.assertRaises(ValueError):
            AverageLossCheck(window=1)
        with self.assertRaises(ValueError):
            AverageLossCheck(window=5)

    def test_window_halves_to_same_size(self):
        from ctc_objective.robustness import AverageLossCheck
        from ctc_objective.statistics import CtcStats

        policy = AverageLossCheck(window=6)
        stats = CtcStats()
        diff = ones_diff(12, 1)
        policy.check([str(i) for i in range(12)], [1] * 12, np.full(12, 2.0), diff, stats)
        self.assertEqual(policy.normal_num, 3)
        self.assertEqual(policy.backup_num, 3)
        self.assertAlmostEqual(policy.loss_sum, 6.0)


class TestPolicyRegistry(unittest.TestCase):
    def test_build_by_name(self):
        from ctc_objective.robustness import (
            AverageLossCheck,
            StatOnly,
            SumLossCheck,
            build_policy,
        )

        self.assertIsInstance(build_policy("stat_only"), StatOnly)
        self.assertIsInstance(build_policy("sum_loss_check"), SumLossCheck)
        policy = build_policy("average_loss_check", window=64)
        self.assertIsInstance(policy, AverageLossCheck)
        self.assertEqual(policy.window, 64)

    def test_unknown_policy(self):
        from ctc_objective.robustness import build_policy

        with self.assertRaises(ValueError):
            build_policy("median_loss_check")


class TestZeroNonfinite(unittest.TestCase):
    def test_nan_zeroes_everything(self):
        from ctc_objective.robustness import zero_nonfinite

        diff = np.ones((6, 3))
        diff[4, 1] = np.nan
        with self.assertLogs("ctc_objective.robustness", level="WARNING"):
            self.assertTrue(zero_nonfinite(diff))
        np.testing.assert_array_equal(diff, 0.0)

    def test_inf_zeroes_everything(self):
        from ctc_objective.robustness import zero_nonfinite

        diff = np.ones((2, 2))
        diff[0, 0] = -np.inf
        with self.assertLogs("ctc_objective.robustness", level="WARNING"):
            self.assertTrue(zero_nonfinite(diff))
        np.testing.assert_array_equal(diff, 0.0)

    def test_finite_untouched(self):
        from ctc_objective.robustness import zero_nonfinite

        diff = np.full((2, 2), 0.5)
        self.assertFalse(zero_nonfinite(diff))
        np.testing.assert_array_equal(diff, 0.5)


class TestCtcStats(unittest.TestCase):
    def test_reset_progress_keeps_totals(self):
        from ctc_objective.statistics import CtcStats

        stats = CtcStats()
        stats.add_objective(12.0)
        stats.count_batch([10, 20])
        stats.add_errors(3, 10)
        self.assertTrue(stats.progress_due(2))
        self.assertFalse(stats.progress_due(3))

        stats.reset_progress()
        self.assertEqual(stats.obj_progress, 0.0)
        self.assertEqual(stats.frames_progress, 0)
        self.assertEqual(stats.sequences_progress, 0)
        self.assertEqual(stats.error_num_progress, 0)
        self.assertEqual(stats.ref_num_progress, 0)
        self.assertEqual(stats.obj, 12.0)
        self.assertEqual(stats.frames, 30)
        self.assertEqual(stats.sequences, 2)
        self.assertEqual(stats.error_num, 3)
        self.assertEqual(stats.ref_num, 10)

    def test_progress_metrics(self):
        from ctc_objective.statistics import CtcStats

        stats = CtcStats()
        stats.add_objective(12.0)
        stats.count_batch([10, 20])
        stats.add_errors(3, 10)
        metrics = stats.progress_metrics()
        self.assertAlmostEqual(metrics["ctc/obj_per_sequence"], 6.0)
        self.assertAlmostEqual(metrics["ctc/obj_per_frame"], 0.4)
        self.assertAlmostEqual(metrics["ctc/token_accuracy"], 70.0)
        self.assertIn("TokenAcc = 70 %", stats.progress_summary())

    def test_empty_report_does_not_raise(self):
        from ctc_objective.statistics import CtcStats

        stats = CtcStats()
        self.assertIn("nan", stats.report())
        self.assertTrue(math.isnan(stats.progress_metrics()["ctc/token_accuracy"]))

    def test_report_values(self):
        from ctc_objective.statistics import CtcStats

        stats = CtcStats()
        stats.add_objective(8.0)
        stats.count_batch([4])
        stats.add_errors(1, 4)
        self.assertEqual(
            stats.report(), " Obj(log[Pzx]) = 8 Obj(frame) = 2 TOKEN_ACCURACY >> 75 % <<"
        )


class TestCtcConfig(unittest.TestCase):
    def test_defaults(self):
        from ctc_objective.config import CtcConfig

        config = CtcConfig()
        self.assertEqual(config.report_interval, 100)
        self.assertEqual(config.check_window, 1000)
        self.assertEqual(config.policy, "stat_only")
        self.assertFalse(config.log_to_wandb)

    def test_from_dict(self):
        from ctc_objective.config import CtcConfig

        config = CtcConfig.from_dict({"policy": "sum_loss_check", "report_interval": 7})
        self.assertEqual(config.policy, "sum_loss_check")
        self.assertEqual(config.report_interval, 7)

    def test_from_omegaconf(self):
        from omegaconf import OmegaConf

        from ctc_objective.config import CtcConfig

        node = OmegaConf.create({"policy": "average_loss_check", "check_window": 20})
        config = CtcConfig.from_dict(node)
        self.assertEqual(config.policy, "average_loss_check")
        self.assertEqual(config.check_window, 20)

    def test_invalid(self):
        from ctc_objective.config import CtcConfig

        with self.assertRaises(ValueError):
            CtcConfig(policy="nope")
        with self.assertRaises(ValueError):
            CtcConfig(report_interval=0)
        with self.assertRaises(ValueError):
            CtcConfig.from_dict({"reportInterval": 5})
        with self.assertRaises(ValueError):
            CtcConfig(policy="average_loss_check", check_window=7)

    def test_ctc_uses_configured_policy(self):
        from ctc_objective.config import CtcConfig
        from ctc_objective.ctc import Ctc
        from ctc_objective.robustness import AverageLossCheck

        ctc = Ctc(CtcConfig(policy="average_loss_check", check_window=50))
        self.assertIsInstance(ctc.policy, AverageLossCheck)
        self.assertEqual(ctc.policy.window, 50)


if __name__ == "__main__":
    unittest.main()
