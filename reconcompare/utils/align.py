"""Utility functions for aligning the camera poses of two reconstructions.

Frame "a" is always the reference frame and frame "b" the frame to be aligned onto it, so the estimated transforms
are `aRb` (SO(3)) and `aSb` (Sim(3)).

Authors: Ayush Baid, John Lambert
"""

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import dask
import gtsam  # type: ignore
import numpy as np
from dask import delayed
from gtsam import Point3Pairs, Pose3, Rot3, Similarity3  # type: ignore

import reconcompare.utils.logger as logger_utils
from reconcompare.common.exceptions import DegenerateInputError, NoConsensusError
from reconcompare.utils import transform

logger = logger_utils.get_logger()

EPSILON = 1e-12

# A similarity transform in 3d is determined by 3 non-collinear point correspondences.
MIN_NUM_CORRESPONDENCES_FOR_SIM3 = 3
MINIMAL_SAMPLE_SIZE = 3

DEFAULT_MAX_NUM_HYPOTHESES = 1000
DEFAULT_CONFIDENCE = 0.99


@dataclass(frozen=True)
class AlignmentResult:
    """Output of a Sim(3) alignment.

    Attributes:
        aSb: Transform taking poses from frame "b" to frame "a".
        inlier_idxs: Indices of the correspondences used for the final fit, in ascending order.
        num_hypotheses: Number of RANSAC hypotheses evaluated; 0 for non-robust alignment.
    """

    aSb: Similarity3
    inlier_idxs: np.ndarray
    num_hypotheses: int = 0

    @property
    def num_inliers(self) -> int:
        return int(self.inlier_idxs.size)


@dataclass(frozen=True)
class _HypothesisScore:
    aSb: Similarity3
    inlier_mask: np.ndarray
    residual_sum: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))


def log_sim3_transform(sim3: Similarity3, label: str = "Sim(3)") -> None:
    """Log rotation, translation, and scale components of a Similarity3."""
    aRb = sim3.rotation()
    atb = sim3.translation()
    rx, ry, rz = aRb.xyz()
    logger.debug(
        "%s Rotation `aRb`: rz=%.2f deg., ry=%.2f deg., rx=%.2f deg.",
        label,
        np.degrees(rz),
        np.degrees(ry),
        np.degrees(rx),
    )
    logger.debug("%s Translation `atb`: [%.2f, %.2f, %.2f]", label, atb[0], atb[1], atb[2])
    logger.debug("%s Scale `asb`: %.2f", label, float(sim3.scale()))


def so3_from_Rot3s(aRi_list: Sequence[Rot3], bRi_list: Sequence[Rot3]) -> Rot3:
    """Estimate the rotation `aRb` which best aligns the rotations in frame "b" to those in frame "a".

    The relative rotations `aRi * bRi^-1` are averaged with the Karcher (geodesic L2) mean on SO(3). Rotations are
    handled as matrices, so every rotation has a single representative and no sign has to be chosen.

    Args:
        aRi_list: Reference rotations in frame "a".
        bRi_list: Corresponding rotations in frame "b".

    Raises:
        ValueError: If the lists have different lengths.
        DegenerateInputError: If the lists are empty.

    Returns:
        aRb: Rotation taking frame "b" to frame "a".
    """
    if len(aRi_list) != len(bRi_list):
        raise ValueError(f"Cannot align {len(bRi_list)} rotations to {len(aRi_list)} reference rotations.")
    if len(aRi_list) == 0:
        raise DegenerateInputError("Rotation alignment requires at least 1 correspondence.")

    aRb_list = [aRi.compose(bRi.inverse()) for aRi, bRi in zip(aRi_list, bRi_list)]
    return gtsam.FindKarcherMeanRot3(aRb_list)


def align_rotations(aRi_list: Sequence[Rot3], bRi_list: Sequence[Rot3]) -> List[Rot3]:
    """Aligns the list of rotations to the reference list by using the Karcher mean.

    Args:
        aRi_list: Reference rotations in frame "a" which are the targets for alignment.
        bRi_list: Input rotations which need to be aligned to frame "a".

    Returns:
        aRi_list_: Transformed input rotations previously "bRi_list" but now which have the same origin as the
            reference (now living in "a" frame).
    """
    aRb = so3_from_Rot3s(aRi_list, bRi_list)
    return transform.Rot3s_with_so3(bRi_list, aRb)


def transform_points(aSb: Similarity3, points_b: np.ndarray) -> np.ndarray:
    """Applies `aSb` to an (N, 3) array of points in frame "b".

    GTSAM defines the action of Similarity3(R, t, s) on a point p as s * (R * p + t).
    """
    aRb = aSb.rotation().matrix()
    return aSb.scale() * (points_b @ aRb.T + np.asarray(aSb.translation()))


def _has_spread(points: np.ndarray) -> bool:
    """Whether the points are not all (numerically) at one location."""
    return float(np.sum((points - points.mean(axis=0)) ** 2)) / points.shape[0] >= EPSILON


def sim3_from_points(a_points: np.ndarray, b_points: np.ndarray) -> Similarity3:
    """Least squares Sim(3) between two corresponding point sets, estimated by `Similarity3.Align`.

    Args:
        a_points: Array of shape (N, 3), target points in frame "a".
        b_points: Array of shape (N, 3), source points in frame "b".

    Raises:
        DegenerateInputError: For fewer than 3 points, if the points in frame "b" coincide, or if GTSAM returns an
            invalid scale.

    Returns:
        aSb: Transform minimizing sum_i || a_i - aSb * b_i ||^2.
    """
    if a_points.shape != b_points.shape:
        raise ValueError(f"Point sets have mismatched shapes {a_points.shape} and {b_points.shape}.")
    num_points = a_points.shape[0]
    if num_points < MIN_NUM_CORRESPONDENCES_FOR_SIM3:
        raise DegenerateInputError(
            f"Sim(3) alignment requires at least {MIN_NUM_CORRESPONDENCES_FOR_SIM3} correspondences, got {num_points}."
        )
    if not _has_spread(b_points):
        raise DegenerateInputError("Sim(3) alignment is undefined for coincident points.")

    ab_pairs = Point3Pairs([(a_point, b_point) for a_point, b_point in zip(a_points, b_points)])
    aSb = Similarity3.Align(ab_pairs)
    if np.isnan(aSb.scale()) or aSb.scale() < EPSILON:
        raise DegenerateInputError(f"GTSAM Sim3.Align failed with scale {aSb.scale()}.")
    return aSb


def _is_degenerate_sample(b_points: np.ndarray) -> bool:
    """Whether the points of a minimal sample are (nearly) collinear, leaving the rotation undetermined."""
    b_centered = b_points - b_points.mean(axis=0)
    singular_values = np.linalg.svd(b_centered, compute_uv=False)
    return singular_values[1] <= 1e-9 * max(singular_values[0], EPSILON)


def _camera_centers(wTi_list: Sequence[Pose3]) -> np.ndarray:
    return np.array([np.asarray(wTi.translation()) for wTi in wTi_list], dtype=np.float64).reshape(-1, 3)


def sim3_from_Pose3s(aTi_list: Sequence[Pose3], bTi_list: Sequence[Pose3]) -> Similarity3:
    """Estimate Sim(3) alignment between two pose graphs from all camera centers.

    Poses cannot be missing or invalid and the two lists must correspond index-for-index.

    Args:
        aTi_list: Reference poses in frame "a" which are the targets for alignment.
        bTi_list: Input poses which need to be aligned to frame "a".

    Raises:
        DegenerateInputError: For fewer than 3 correspondences.

    Returns:
        aSb: Similarity(3) object that aligns the two pose graphs.
    """
    if len(aTi_list) != len(bTi_list):
        raise ValueError(f"Cannot align {len(bTi_list)} poses to {len(aTi_list)} reference poses.")
    a_centers = _camera_centers(aTi_list)
    b_centers = _camera_centers(bTi_list)

    try:
        aSb = sim3_from_points(a_centers, b_centers)
    except DegenerateInputError:
        if len(aTi_list) < MIN_NUM_CORRESPONDENCES_FOR_SIM3:
            raise
        logger.debug("Camera centers have no spread; aligning rotations and centroids instead.")
        aSb = _sim3_from_rotations_and_centroids(aTi_list, bTi_list)

    log_sim3_transform(aSb)
    return aSb


def _sim3_from_rotations_and_centroids(aTi_list: Sequence[Pose3], bTi_list: Sequence[Pose3]) -> Similarity3:
    """Unit-scale alignment for cameras sharing one center (e.g. a panorama): align orientations, then centroids."""
    aRb = so3_from_Rot3s([aTi.rotation() for aTi in aTi_list], [bTi.rotation() for bTi in bTi_list])
    atb = _camera_centers(aTi_list).mean(axis=0) - aRb.matrix() @ _camera_centers(bTi_list).mean(axis=0)
    return Similarity3(aRb, atb, 1.0)


def _score_hypothesis(
    a_centers: np.ndarray, b_centers: np.ndarray, sample_idxs: np.ndarray, inlier_threshold: float
) -> Optional[_HypothesisScore]:
    """Fits a Sim(3) to one minimal sample and scores it on all correspondences; None for degenerate samples."""
    b_sample = b_centers[sample_idxs]
    if len(set(sample_idxs.tolist())) < MINIMAL_SAMPLE_SIZE or _is_degenerate_sample(b_sample):
        return None
    try:
        aSb = sim3_from_points(a_centers[sample_idxs], b_sample)
    except DegenerateInputError:
        return None

    residuals = np.linalg.norm(a_centers - transform_points(aSb, b_centers), axis=1)
    inlier_mask = residuals < inlier_threshold
    return _HypothesisScore(aSb=aSb, inlier_mask=inlier_mask, residual_sum=float(residuals[inlier_mask].sum()))


def _num_required_hypotheses(inlier_ratio: float, confidence: float) -> float:
    """Standard RANSAC bound on the number of minimal samples needed to draw an all-inlier sample."""
    if inlier_ratio >= 1.0:
        return 0
    all_inlier_sample_prob = inlier_ratio**MINIMAL_SAMPLE_SIZE
    if all_inlier_sample_prob <= 0.0:
        return math.inf
    return math.log(1.0 - confidence) / math.log(1.0 - all_inlier_sample_prob)


def _select_best_hypothesis(
    scores: Iterable[Optional[_HypothesisScore]], num_correspondences: int, confidence: float
) -> Tuple[Optional[_HypothesisScore], int]:
    """Walks the hypotheses in sampling order, keeping the best one until the confidence bound is met.

    The best hypothesis has the most inliers; ties go to the lower inlier residual sum, then to the earlier sample.

    Returns:
        The best hypothesis (None if every sample was degenerate) and the number of hypotheses consumed.
    """
    best: Optional[_HypothesisScore] = None
    num_evaluated = 0
    for score in scores:
        num_evaluated += 1
        if score is not None and (
            best is None
            or score.num_inliers > best.num_inliers
            or (score.num_inliers == best.num_inliers and score.residual_sum < best.residual_sum)
        ):
            best = score
        if best is not None and best.num_inliers > 0:
            inlier_ratio = best.num_inliers / num_correspondences
            if num_evaluated >= _num_required_hypotheses(inlier_ratio, confidence):
                break
    return best, num_evaluated


def sim3_from_Pose3s_robust(
    aTi_list: Sequence[Pose3],
    bTi_list: Sequence[Pose3],
    inlier_threshold: float,
    rng: Optional[np.random.Generator] = None,
    max_num_hypotheses: int = DEFAULT_MAX_NUM_HYPOTHESES,
    confidence: float = DEFAULT_CONFIDENCE,
    samples: Optional[Sequence[Sequence[int]]] = None,
    num_workers: int = 1,
) -> AlignmentResult:
    """Estimate Sim(3) alignment with RANSAC over minimal samples of camera centers, then refit on the inliers.

    Args:
        aTi_list: Reference poses in frame "a" which are the targets for alignment.
        bTi_list: Input poses which need to be aligned to frame "a".
        inlier_threshold: A correspondence is an inlier if its aligned camera center is closer than this to the
            reference camera center.
        rng: Random generator to draw minimal samples from. Defaults to a generator seeded with 0.
        max_num_hypotheses: Upper bound on the number of hypotheses.
        confidence: Stop once an all-inlier sample has been drawn with this probability.
        samples: Explicit minimal samples (index triplets) to use instead of random ones.
        num_workers: Score hypotheses on this many threads with dask when greater than 1.

    Raises:
        DegenerateInputError: For fewer than 3 correspondences.
        NoConsensusError: If no hypothesis has at least 3 inliers.

    Returns:
        The refit transform, the inlier indices, and the number of hypotheses evaluated.
    """
    if len(aTi_list) != len(bTi_list):
        raise ValueError(f"Cannot align {len(bTi_list)} poses to {len(aTi_list)} reference poses.")
    if inlier_threshold <= 0:
        raise ValueError(f"Inlier threshold must be positive, got {inlier_threshold}.")
    num_correspondences = len(aTi_list)
    if num_correspondences < MIN_NUM_CORRESPONDENCES_FOR_SIM3:
        raise DegenerateInputError(
            f"Robust Sim(3) alignment requires at least {MIN_NUM_CORRESPONDENCES_FOR_SIM3} correspondences, "
            f"got {num_correspondences}."
        )

    a_centers = _camera_centers(aTi_list)
    b_centers = _camera_centers(bTi_list)
    if not _has_spread(b_centers):
        # Every minimal sample would be degenerate; use the same fallback as least squares alignment.
        logger.info("Robust Sim(3): camera centers have no spread; aligning rotations and centroids instead.")
        aSb = _sim3_from_rotations_and_centroids(aTi_list, bTi_list)
        log_sim3_transform(aSb)
        return AlignmentResult(aSb=aSb, inlier_idxs=np.arange(num_correspondences), num_hypotheses=0)

    if samples is None:
        if rng is None:
            rng = np.random.default_rng(0)
        sample_array = np.array(
            [
                rng.choice(num_correspondences, size=MINIMAL_SAMPLE_SIZE, replace=False)
                for _ in range(max_num_hypotheses)
            ]
        )
    else:
        sample_array = np.asarray(samples, dtype=np.int64).reshape(-1, MINIMAL_SAMPLE_SIZE)

    if num_workers > 1:
        tasks = [delayed(_score_hypothesis)(a_centers, b_centers, idxs, inlier_threshold) for idxs in sample_array]
        scores: Iterator[Optional[_HypothesisScore]] = iter(
            dask.compute(*tasks, scheduler="threads", num_workers=num_workers)
        )
    else:
        scores = (_score_hypothesis(a_centers, b_centers, idxs, inlier_threshold) for idxs in sample_array)

    best, num_evaluated = _select_best_hypothesis(scores, num_correspondences, confidence)

    if best is None or best.num_inliers < MIN_NUM_CORRESPONDENCES_FOR_SIM3:
        raise NoConsensusError(
            f"No Sim(3) hypothesis out of {num_evaluated} has at least {MIN_NUM_CORRESPONDENCES_FOR_SIM3} inliers "
            f"within {inlier_threshold}."
        )

    inlier_idxs = np.flatnonzero(best.inlier_mask)
    aSb = sim3_from_Pose3s([aTi_list[i] for i in inlier_idxs], [bTi_list[i] for i in inlier_idxs])
    logger.info(
        "Robust Sim(3): inliers=%d/%d after %d hypotheses, thresh=%.3f",
        inlier_idxs.size,
        num_correspondences,
        num_evaluated,
        inlier_threshold,
    )
    return AlignmentResult(aSb=aSb, inlier_idxs=inlier_idxs, num_hypotheses=num_evaluated)


class PoseAligner:
    """Estimates the Sim(3) transform from a reconstruction's frame to the reference frame.

    A positive `robust_alignment_threshold` selects RANSAC alignment with that inlier threshold; otherwise all
    correspondences are used in a single least squares fit.
    """

    def __init__(
        self,
        robust_alignment_threshold: float = 0.0,
        max_num_hypotheses: int = DEFAULT_MAX_NUM_HYPOTHESES,
        confidence: float = DEFAULT_CONFIDENCE,
        seed: int = 0,
        num_workers: int = 1,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if max_num_hypotheses < 1:
            raise ValueError(f"max_num_hypotheses must be positive, got {max_num_hypotheses}.")
        if not 0.0 < confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {confidence}.")
        self._robust_alignment_threshold = robust_alignment_threshold
        self._max_num_hypotheses = max_num_hypotheses
        self._confidence = confidence
        self._num_workers = num_workers
        self._seed = seed
        self._rng = rng

    @property
    def is_robust(self) -> bool:
        return self._robust_alignment_threshold > 0.0

    @property
    def robust_alignment_threshold(self) -> float:
        return self._robust_alignment_threshold

    def align(
        self,
        aTi_list: Sequence[Pose3],
        bTi_list: Sequence[Pose3],
        samples: Optional[Sequence[Sequence[int]]] = None,
    ) -> AlignmentResult:
        """Aligns the poses in frame "b" to the corresponding poses in frame "a".

        Args:
            aTi_list: Reference poses.
            bTi_list: Poses to align, corresponding index-for-index to `aTi_list`.
            samples: Explicit minimal samples for robust alignment; ignored otherwise.

        Without an injected generator, every call draws its samples from a fresh generator seeded with `seed`, so
        repeated calls on the same input give the same result.

        Raises:
            DegenerateInputError: For fewer than 3 correspondences.
            NoConsensusError: If robust alignment finds no consensus.
        """
        if self.is_robust:
            rng = self._rng if self._rng is not None else np.random.default_rng(self._seed)
            return sim3_from_Pose3s_robust(
                aTi_list,
                bTi_list,
                inlier_threshold=self._robust_alignment_threshold,
                rng=rng,
                max_num_hypotheses=self._max_num_hypotheses,
                confidence=self._confidence,
                samples=samples,
                num_workers=self._num_workers,
            )
        aSb = sim3_from_Pose3s(aTi_list, bTi_list)
        return AlignmentResult(aSb=aSb, inlier_idxs=np.arange(len(aTi_list)), num_hypotheses=0)
