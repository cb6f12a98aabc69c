"""Unit tests for rotation and Sim(3) alignment.

Authors: Ayush Baid
"""

import copy
import unittest
from typing import List, Sequence
from unittest.mock import patch

import numpy as np
from gtsam import Pose3, Rot3, Similarity3  # type: ignore

import tests.data.sample_poses as sample_poses
import reconcompare.utils.geometry_comparisons as comp_utils
from reconcompare.common.exceptions import DegenerateInputError, NoConsensusError
from reconcompare.utils import align, transform

POINT3_ABS_ERROR_THRESH = 1e-6
ROTATION_ERROR_THRESH_DEG = 1e-4

CORRUPTED_IDXS = (2, 5, 8)
CORRUPTION_OFFSETS = (np.array([30.0, 0.0, 0.0]), np.array([0.0, -40.0, 0.0]), np.array([0.0, 0.0, 50.0]))


def corrupt_poses(bTi_list: Sequence[Pose3]) -> List[Pose3]:
    """Moves the camera centers of the corrupted indices far away from where they should be."""
    corrupted = list(bTi_list)
    for i, offset in zip(CORRUPTED_IDXS, CORRUPTION_OFFSETS):
        corrupted[i] = Pose3(bTi_list[i].rotation(), bTi_list[i].translation() + offset)
    return corrupted


class TestRotationAlignment(unittest.TestCase):
    """Unit tests for rotation-only alignment."""

    def test_align_rotations(self) -> None:
        """Tests that a constant offset between rotations is removed."""
        # Rotations about the Y-axis only, so that angles can be linearly added.
        aRi_list = [Rot3.RzRyRx(0, np.deg2rad(-10), 0), Rot3.RzRyRx(0, np.deg2rad(30), 0)]
        bRi_list = [Rot3.RzRyRx(0, np.deg2rad(-10 + 90), 0), Rot3.RzRyRx(0, np.deg2rad(30 + 90), 0)]

        computed = align.align_rotations(aRi_list, bRi_list)

        for aRi, aRi_ in zip(aRi_list, computed):
            self.assertLess(comp_utils.compute_relative_rotation_angle(aRi, aRi_), ROTATION_ERROR_THRESH_DEG)

    def test_align_rotations_with_no_relative_rotations(self) -> None:
        aRi_list = [Rot3.RzRyRx(0, np.deg2rad(-10), 0), Rot3.RzRyRx(0, np.deg2rad(30), 0)]
        bRi_list = copy.deepcopy(aRi_list)

        aRb = align.so3_from_Rot3s(aRi_list, bRi_list)

        self.assertTrue(aRb.equals(Rot3(), 1e-9))

    def test_so3_recovers_global_rotation(self) -> None:
        """Tests that the rotation between two frames is recovered from rotations of many cameras."""
        aRi_list = [pose.rotation() for pose in sample_poses.poses_of(sample_poses.circle_cameras(8))]
        bRa = Rot3.RzRyRx(np.deg2rad(5), np.deg2rad(-40), np.deg2rad(100))
        bRi_list = transform.Rot3s_with_so3(aRi_list, bRa)

        aRb = align.so3_from_Rot3s(aRi_list, bRi_list)

        self.assertTrue(aRb.equals(bRa.inverse(), 1e-6))

    def test_align_rotations_is_idempotent(self) -> None:
        """Re-aligning already aligned rotations leaves the total angular error unchanged."""
        rng = np.random.default_rng(7)
        aRi_list = [pose.rotation() for pose in sample_poses.poses_of(sample_poses.circle_cameras(6))]
        noisy_bRi_list = [
            Rot3.RzRyRx(*rng.normal(scale=0.05, size=3)).compose(sample_poses.ROTATION_SHIFT).compose(aRi)
            for aRi in aRi_list
        ]

        aligned_once = align.align_rotations(aRi_list, noisy_bRi_list)
        aligned_twice = align.align_rotations(aRi_list, aligned_once)

        error_once = sum(comp_utils.compute_rotation_errors(aRi_list, aligned_once))
        error_twice = sum(comp_utils.compute_rotation_errors(aRi_list, aligned_twice))
        self.assertAlmostEqual(error_once, error_twice, places=6)

    def test_so3_from_empty_lists_is_degenerate(self) -> None:
        with self.assertRaises(DegenerateInputError):
            align.so3_from_Rot3s([], [])

    def test_so3_from_mismatched_lists(self) -> None:
        with self.assertRaises(ValueError):
            align.so3_from_Rot3s([Rot3()], [Rot3(), Rot3()])


class TestSim3FromPoints(unittest.TestCase):
    """Unit tests for the least squares Sim(3) estimate between point sets."""

    def test_recovers_exact_similarity(self) -> None:
        rng = np.random.default_rng(0)
        b_points = rng.uniform(-5, 5, size=(10, 3))
        aRb = Rot3.RzRyRx(np.deg2rad(30), np.deg2rad(-60), np.deg2rad(15))
        atb = np.array([1.0, -2.0, 3.0])
        scale = 2.5
        a_points = align.transform_points(Similarity3(aRb, atb, scale), b_points)

        aSb = align.sim3_from_points(a_points, b_points)

        np.testing.assert_allclose(aSb.rotation().matrix(), aRb.matrix(), atol=1e-9)
        np.testing.assert_allclose(aSb.translation(), atb, atol=1e-9)
        self.assertAlmostEqual(aSb.scale(), scale, places=9)

    def test_recovers_rotation_from_three_points(self) -> None:
        """Three non-collinear points determine the transform; no reflection is returned."""
        b_points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
        aRb = Rot3.RzRyRx(np.deg2rad(90), 0, 0)
        a_points = align.transform_points(Similarity3(aRb, np.zeros(3), 1.0), b_points)

        aSb = align.sim3_from_points(a_points, b_points)

        self.assertAlmostEqual(np.linalg.det(aSb.rotation().matrix()), 1.0, places=9)
        np.testing.assert_allclose(aSb.rotation().matrix(), aRb.matrix(), atol=1e-9)

    def test_too_few_points_is_degenerate(self) -> None:
        points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        with self.assertRaises(DegenerateInputError):
            align.sim3_from_points(points, points)

    def test_coincident_points_are_degenerate(self) -> None:
        points = np.ones((4, 3))
        with self.assertRaises(DegenerateInputError):
            align.sim3_from_points(points, points)


class TestSim3Alignment(unittest.TestCase):
    """Unit tests for least squares and robust Sim(3) alignment of poses."""

    def setUp(self) -> None:
        super().setUp()
        self.aTi_list = sample_poses.poses_of(sample_poses.circle_cameras(10))
        self.bTi_list = transform.Pose3s_with_sim3(self.aTi_list, sample_poses.bSa)

    def assert_poses_equal(self, computed: Sequence[Pose3], expected: Sequence[Pose3]) -> None:
        self.assertEqual(len(computed), len(expected))
        for wTi, wTi_ in zip(computed, expected):
            np.testing.assert_allclose(wTi.translation(), wTi_.translation(), atol=POINT3_ABS_ERROR_THRESH)
            self.assertLess(
                comp_utils.compute_relative_rotation_angle(wTi.rotation(), wTi_.rotation()), ROTATION_ERROR_THRESH_DEG
            )

    def test_sim3_recovers_exact_transform(self) -> None:
        aSb = align.sim3_from_Pose3s(self.aTi_list, self.bTi_list)

        aSb_expected = sample_poses.bSa.inverse()
        np.testing.assert_allclose(aSb.rotation().matrix(), aSb_expected.rotation().matrix(), atol=1e-9)
        np.testing.assert_allclose(aSb.translation(), aSb_expected.translation(), atol=1e-6)
        self.assertAlmostEqual(aSb.scale(), aSb_expected.scale(), places=9)
        self.assert_poses_equal(transform.Pose3s_with_sim3(self.bTi_list, aSb), self.aTi_list)

    def test_sim3_panorama_falls_back_to_rotation_alignment(self) -> None:
        """Cameras sharing one center: orientations are aligned and centroids matched, with unit scale."""
        center = np.array([1.0, 2.0, 3.0])
        aTi_list = [Pose3(pose.rotation(), center) for pose in self.aTi_list[:4]]
        bTa = Pose3(Rot3.RzRyRx(0, 0, np.deg2rad(45)), np.array([0.0, 1.0, 0.0]))
        bTi_list = [bTa.compose(aTi) for aTi in aTi_list]

        aSb = align.sim3_from_Pose3s(aTi_list, bTi_list)

        self.assertAlmostEqual(aSb.scale(), 1.0)
        self.assert_poses_equal(transform.Pose3s_with_sim3(bTi_list, aSb), aTi_list)

    def test_robust_panorama_falls_back_to_rotation_alignment(self) -> None:
        """Robust alignment of cameras sharing one center matches the least squares fallback."""
        center = np.array([1.0, 2.0, 3.0])
        aTi_list = [Pose3(pose.rotation(), center) for pose in self.aTi_list[:5]]
        bTa = Pose3(Rot3.RzRyRx(0, 0, np.deg2rad(45)), np.array([0.0, 1.0, 0.0]))
        bTi_list = [bTa.compose(aTi) for aTi in aTi_list]

        result = align.sim3_from_Pose3s_robust(aTi_list, bTi_list, inlier_threshold=0.5)

        self.assertEqual(result.num_hypotheses, 0)
        np.testing.assert_array_equal(result.inlier_idxs, np.arange(5))
        self.assertTrue(result.aSb.equals(align.sim3_from_Pose3s(aTi_list, bTi_list), 1e-9))
        self.assert_poses_equal(transform.Pose3s_with_sim3(bTi_list, result.aSb), aTi_list)

    def test_sim3_too_few_correspondences(self) -> None:
        with self.assertRaises(DegenerateInputError):
            align.sim3_from_Pose3s(self.aTi_list[:2], self.bTi_list[:2])

    def test_robust_ignores_corrupted_correspondences(self) -> None:
        """Corrupted cameras are rejected, and the refit on the inliers matches the uncorrupted fit."""
        corrupted_bTi_list = corrupt_poses(self.bTi_list)

        result = align.sim3_from_Pose3s_robust(
            self.aTi_list, corrupted_bTi_list, inlier_threshold=0.5, rng=np.random.default_rng(0)
        )

        expected_inliers = [i for i in range(10) if i not in CORRUPTED_IDXS]
        self.assertEqual(result.num_inliers, len(expected_inliers))
        np.testing.assert_array_equal(result.inlier_idxs, expected_inliers)
        aligned = transform.Pose3s_with_sim3(corrupted_bTi_list, result.aSb)
        self.assert_poses_equal(
            [aligned[i] for i in expected_inliers], [self.aTi_list[i] for i in expected_inliers]
        )

    def test_robust_with_explicit_samples(self) -> None:
        """The consensus over a fixed sample sequence: the sample with a corrupted camera loses."""
        corrupted_bTi_list = corrupt_poses(self.bTi_list)

        result = align.sim3_from_Pose3s_robust(
            self.aTi_list, corrupted_bTi_list, inlier_threshold=0.5, samples=[[0, 2, 5], [0, 1, 3]]
        )

        self.assertEqual(result.num_hypotheses, 2)
        np.testing.assert_array_equal(result.inlier_idxs, [0, 1, 3, 4, 6, 7, 9])

    def test_robust_stops_once_confident(self) -> None:
        """Without outliers the first hypothesis explains every camera and no further sample is needed."""
        result = align.sim3_from_Pose3s_robust(
            self.aTi_list, self.bTi_list, inlier_threshold=0.1, samples=[[0, 3, 6], [1, 4, 7], [2, 5, 8]]
        )

        self.assertEqual(result.num_hypotheses, 1)
        self.assertEqual(result.num_inliers, 10)

    def test_robust_skips_degenerate_samples(self) -> None:
        result = align.sim3_from_Pose3s_robust(
            self.aTi_list, self.bTi_list, inlier_threshold=0.1, samples=[[0, 0, 1], [0, 3, 6]]
        )

        self.assertEqual(result.num_hypotheses, 2)
        self.assertEqual(result.num_inliers, 10)

    def test_robust_no_consensus(self) -> None:
        rng = np.random.default_rng(3)
        aTi_list = [Pose3(Rot3(), t) for t in rng.uniform(-10, 10, size=(8, 3))]
        bTi_list = [Pose3(Rot3(), t) for t in rng.uniform(-10, 10, size=(8, 3))]

        with self.assertRaises(NoConsensusError):
            align.sim3_from_Pose3s_robust(
                aTi_list, bTi_list, inlier_threshold=1e-6, rng=np.random.default_rng(0), max_num_hypotheses=50
            )

    def test_robust_too_few_correspondences(self) -> None:
        with self.assertRaises(DegenerateInputError):
            align.sim3_from_Pose3s_robust(self.aTi_list[:2], self.bTi_list[:2], inlier_threshold=1.0)

    def test_robust_is_reproducible(self) -> None:
        corrupted_bTi_list = corrupt_poses(self.bTi_list)

        result_1 = align.sim3_from_Pose3s_robust(
            self.aTi_list, corrupted_bTi_list, inlier_threshold=0.5, rng=np.random.default_rng(11)
        )
        result_2 = align.sim3_from_Pose3s_robust(
            self.aTi_list, corrupted_bTi_list, inlier_threshold=0.5, rng=np.random.default_rng(11)
        )

        self.assertEqual(result_1.num_hypotheses, result_2.num_hypotheses)
        self.assertTrue(result_1.aSb.equals(result_2.aSb, 1e-12))

    def test_robust_with_dask_matches_sequential(self) -> None:
        corrupted_bTi_list = corrupt_poses(self.bTi_list)
        samples = [[0, 2, 5], [1, 4, 8], [0, 1, 3], [4, 6, 9]]

        sequential = align.sim3_from_Pose3s_robust(
            self.aTi_list, corrupted_bTi_list, inlier_threshold=0.5, samples=samples
        )
        parallel = align.sim3_from_Pose3s_robust(
            self.aTi_list, corrupted_bTi_list, inlier_threshold=0.5, samples=samples, num_workers=2
        )

        self.assertEqual(sequential.num_hypotheses, parallel.num_hypotheses)
        np.testing.assert_array_equal(sequential.inlier_idxs, parallel.inlier_idxs)
        self.assertTrue(sequential.aSb.equals(parallel.aSb, 1e-12))


class TestPoseAligner(unittest.TestCase):
    """Unit tests for the mode selection of PoseAligner."""

    def setUp(self) -> None:
        super().setUp()
        self.aTi_list = sample_poses.poses_of(sample_poses.circle_cameras(6))
        self.bTi_list = transform.Pose3s_with_sim3(self.aTi_list, sample_poses.bSa)

    def test_zero_threshold_selects_least_squares(self) -> None:
        aligner = align.PoseAligner(robust_alignment_threshold=0.0)
        self.assertFalse(aligner.is_robust)

        with patch("reconcompare.utils.align.sim3_from_Pose3s_robust") as mock_robust:
            result = aligner.align(self.aTi_list, self.bTi_list)
            mock_robust.assert_not_called()

        self.assertEqual(result.num_hypotheses, 0)
        np.testing.assert_array_equal(result.inlier_idxs, np.arange(6))

    def test_positive_threshold_selects_robust(self) -> None:
        aligner = align.PoseAligner(robust_alignment_threshold=0.25, seed=4)
        self.assertTrue(aligner.is_robust)

        result = aligner.align(self.aTi_list, self.bTi_list)

        self.assertGreater(result.num_hypotheses, 0)
        self.assertEqual(result.num_inliers, 6)

    def test_repeated_calls_give_identical_results(self) -> None:
        """Every call of the same aligner draws the samples of a generator freshly seeded with `seed`."""
        aTi_list = sample_poses.poses_of(sample_poses.circle_cameras(10))
        bTi_list = corrupt_poses(transform.Pose3s_with_sim3(aTi_list, sample_poses.bSa))
        aligner = align.PoseAligner(robust_alignment_threshold=0.5, seed=0)

        results = [aligner.align(aTi_list, bTi_list) for _ in range(3)]

        expected = align.sim3_from_Pose3s_robust(
            aTi_list, bTi_list, inlier_threshold=0.5, rng=np.random.default_rng(0)
        )
        for result in results:
            self.assertEqual(result.num_hypotheses, expected.num_hypotheses)
            np.testing.assert_array_equal(result.inlier_idxs, expected.inlier_idxs)
            self.assertTrue(result.aSb.equals(expected.aSb, 1e-12))

    def test_injected_generator_is_used(self) -> None:
        rng = np.random.default_rng(9)
        aligner = align.PoseAligner(robust_alignment_threshold=0.25, rng=rng)

        with patch("reconcompare.utils.align.sim3_from_Pose3s_robust") as mock_robust:
            aligner.align(self.aTi_list, self.bTi_list)

        self.assertIs(mock_robust.call_args.kwargs["rng"], rng)

    def test_invalid_options(self) -> None:
        with self.assertRaises(ValueError):
            align.PoseAligner(max_num_hypotheses=0)
        with self.assertRaises(ValueError):
            align.PoseAligner(confidence=1.0)


if __name__ == "__main__":
    unittest.main()
