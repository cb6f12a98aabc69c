"""Compare two reconstructions of the same scene.

The reconstructions live in independent, arbitrary coordinate frames, so the cameras they have in common (by view
name) are first aligned, and only then compared:
1. rotation-only alignment, and the resulting camera rotation errors;
2. Sim(3) alignment of a working copy of reconstruction 2 (optionally robust), and the resulting rotation, position
   and focal length errors;
3. the distribution of track lengths of both reconstructions, which needs no alignment.

A metric which cannot be computed (too few common views, no consensus) is reported with the reason instead of a
value, and does not prevent the other metrics from being reported.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from gtsam import Pose3  # type: ignore

import reconcompare.utils.align as align_utils
import reconcompare.utils.geometry_comparisons as comp_utils
import reconcompare.utils.io as io_utils
import reconcompare.utils.logger as logger_utils
from reconcompare.common.exceptions import DegenerateInputError, EmptyCorrespondenceSetError, NoConsensusError
from reconcompare.common.reconstruction import ReconstructionBase, validate_camera
from reconcompare.common.types import CAMERA_TYPE
from reconcompare.evaluation.metrics import Distribution1D, ErrorMetric, MetricsGroup
from reconcompare.utils import transform
from reconcompare.utils.align import AlignmentResult, PoseAligner
from reconcompare.utils.correspondence import find_common_view_names

logger = logger_utils.get_logger()

DEFAULT_ROTATION_BUCKET_EDGES_DEG = (1, 2, 5, 10, 15, 20, 45)
DEFAULT_POSITION_BUCKET_EDGES = (1, 5, 10, 50, 100, 1000)
DEFAULT_FOCAL_LENGTH_BUCKET_EDGES = (0.01, 0.05, 0.2, 0.5, 1, 10, 100)
DEFAULT_TRACK_LENGTH_BUCKET_EDGES = (2, 3, 4, 5, 6, 7, 8, 9, 10, 15, 20, 25, 50)

ROTATION_ALIGNED_ROTATION_ERROR = "rotation_error_deg_after_rotation_alignment"
SIM3_ALIGNED_ROTATION_ERROR = "rotation_error_deg_after_sim3_alignment"
SIM3_ALIGNED_POSITION_ERROR = "position_error_after_sim3_alignment"
FOCAL_LENGTH_ERROR = "relative_focal_length_error"
TRACK_LENGTHS_1 = "track_lengths_reconstruction_1"
TRACK_LENGTHS_2 = "track_lengths_reconstruction_2"

METRICS_GROUP_NAME = "metrics"

METRIC_DESCRIPTIONS = {
    ROTATION_ALIGNED_ROTATION_ERROR: "Rotation difference when aligning orientations",
    SIM3_ALIGNED_ROTATION_ERROR: "Rotation difference when aligning positions",
    SIM3_ALIGNED_POSITION_ERROR: "Position difference",
    FOCAL_LENGTH_ERROR: "Focal length errors",
    TRACK_LENGTHS_1: "Track lengths of reconstruction 1",
    TRACK_LENGTHS_2: "Track lengths of reconstruction 2",
}


@dataclass
class MetricEntry:
    """A metric of the comparison report: either the summarized errors, or why they could not be computed."""

    name: str
    metric: Optional[ErrorMetric] = None
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.metric is not None

    @property
    def description(self) -> str:
        return METRIC_DESCRIPTIONS.get(self.name, self.name)

    def to_string(self) -> str:
        if self.metric is None:
            return f"{self.description}:\n{self.failure_reason}"
        return f"{self.description}:\n{self.metric.to_string()}"

    def get_metric_as_dict(self) -> Dict[str, Any]:
        if self.metric is None:
            return {self.name: {"failure_reason": self.failure_reason}}
        return self.metric.get_metric_as_dict()


@dataclass
class ComparisonReport:
    """Everything measured when comparing two reconstructions."""

    num_views_1: int
    num_views_2: int
    num_tracks_1: int
    num_tracks_2: int
    common_view_names: List[str]
    alignment: Optional[AlignmentResult] = None
    alignment_failure_reason: Optional[str] = None
    inlier_view_names: List[str] = field(default_factory=list)
    entries: Dict[str, MetricEntry] = field(default_factory=dict)

    @property
    def num_common_views(self) -> int:
        return len(self.common_view_names)

    def add_entry(self, entry: MetricEntry) -> None:
        self.entries[entry.name] = entry

    def metric(self, name: str) -> Optional[ErrorMetric]:
        """Returns the named metric, or None if it could not be computed."""
        entry = self.entries.get(name)
        return entry.metric if entry is not None else None

    def metrics_group(self) -> MetricsGroup:
        """Groups the metrics which could be computed."""
        return MetricsGroup(METRICS_GROUP_NAME, [entry.metric for entry in self.entries.values() if entry.succeeded])

    def counts_string(self) -> str:
        return (
            "Number of cameras:\n"
            f"\tReconstruction 1: {self.num_views_1}\n"
            f"\tReconstruction 2: {self.num_views_2}\n"
            f"\tNumber of Common cameras: {self.num_common_views}\n"
            "Number of 3d points:\n"
            f"\tReconstruction 1: {self.num_tracks_1}\n"
            f"\tReconstruction 2: {self.num_tracks_2}"
        )

    def to_string(self) -> str:
        sections = [self.counts_string()]
        sections.extend(entry.to_string() for entry in self.entries.values())
        return "\n\n".join(sections)

    def get_metrics_as_dict(self) -> Dict[str, Any]:
        """Dictionary representation of the report, which can be serialized to JSON."""
        alignment_dict: Dict[str, Any] = {"failure_reason": self.alignment_failure_reason}
        if self.alignment is not None:
            aSb = self.alignment.aSb
            alignment_dict = {
                "rotation": aSb.rotation().matrix().tolist(),
                # Offset of the map p -> scale * rotation * p + translation.
                "translation": (aSb.scale() * np.asarray(aSb.translation())).tolist(),
                "scale": float(aSb.scale()),
                "num_inliers": self.alignment.num_inliers,
                "num_hypotheses": self.alignment.num_hypotheses,
            }
        metrics_group = self.metrics_group()
        metrics_dict: Dict[str, Any] = metrics_group.get_metrics_as_dict()[metrics_group.name]
        for entry in self.entries.values():
            if not entry.succeeded:
                metrics_dict.update(entry.get_metric_as_dict())
        return {
            "reconstruction_comparison": {
                "num_views_1": self.num_views_1,
                "num_views_2": self.num_views_2,
                "num_common_views": self.num_common_views,
                "num_tracks_1": self.num_tracks_1,
                "num_tracks_2": self.num_tracks_2,
                "sim3_alignment": alignment_dict,
                "metrics": metrics_dict,
            }
        }

    def save_to_json(self, path: str) -> None:
        io_utils.save_json_file(path, self.get_metrics_as_dict())


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, NoConsensusError):
        return f"no consensus: {exc}"
    return f"insufficient data: {exc}"


def _check_correspondences(common_view_names: Sequence[str]) -> None:
    if len(common_view_names) == 0:
        raise EmptyCorrespondenceSetError("The reconstructions have no common views.")


def _gather_cameras(reconstruction: ReconstructionBase, view_names: Sequence[str]) -> Dict[str, CAMERA_TYPE]:
    """Reads the cameras of the given views, failing immediately on corrupt cameras."""
    cameras: Dict[str, CAMERA_TYPE] = {}
    for name in view_names:
        camera = reconstruction.camera(name)
        validate_camera(name, camera)
        cameras[name] = camera
    return cameras


class ReconstructionComparator:
    """Aligns two reconstructions and summarizes how much their cameras and tracks differ."""

    def __init__(
        self,
        pose_aligner: Optional[PoseAligner] = None,
        rotation_bucket_edges_deg: Sequence[float] = DEFAULT_ROTATION_BUCKET_EDGES_DEG,
        position_bucket_edges: Sequence[float] = DEFAULT_POSITION_BUCKET_EDGES,
        focal_length_bucket_edges: Sequence[float] = DEFAULT_FOCAL_LENGTH_BUCKET_EDGES,
        track_length_bucket_edges: Sequence[float] = DEFAULT_TRACK_LENGTH_BUCKET_EDGES,
        store_full_data: bool = False,
    ) -> None:
        """Initializes the comparator.

        Args:
            pose_aligner: Sim(3) aligner; defaults to non-robust alignment.
            rotation_bucket_edges_deg: Histogram bucket edges for rotation errors, in degrees.
            position_bucket_edges: Histogram bucket edges for camera position errors.
            focal_length_bucket_edges: Histogram bucket edges for relative focal length errors.
            track_length_bucket_edges: Histogram bucket edges for track lengths.
            store_full_data: Whether reports keep every error value, or only the summaries.
        """
        self._pose_aligner = pose_aligner if pose_aligner is not None else PoseAligner()
        self._rotation_bucket_edges_deg = list(rotation_bucket_edges_deg)
        self._position_bucket_edges = list(position_bucket_edges)
        self._focal_length_bucket_edges = list(focal_length_bucket_edges)
        self._track_length_bucket_edges = list(track_length_bucket_edges)
        self._store_full_data = store_full_data

    @property
    def pose_aligner(self) -> PoseAligner:
        return self._pose_aligner

    def _summarize(self, name: str, errors: Distribution1D, bucket_edges: Sequence[float]) -> MetricEntry:
        """Summarizes one error vector, turning degenerate input into a failed entry."""
        try:
            metric = ErrorMetric(name, errors, bucket_edges, store_full_data=self._store_full_data)
        except DegenerateInputError as exc:
            entry = MetricEntry(name, failure_reason=_failure_reason(exc))
            logger.warning("%s:\n%s", entry.description, entry.failure_reason)
            return entry
        entry = MetricEntry(name, metric=metric)
        logger.info("%s:\n%s", entry.description, metric.to_string())
        return entry

    def _failed_entry(self, name: str, exc: Exception) -> MetricEntry:
        entry = MetricEntry(name, failure_reason=_failure_reason(exc))
        logger.warning("%s:\n%s", entry.description, entry.failure_reason)
        return entry

    def evaluate_rotations(
        self,
        common_view_names: Sequence[str],
        cameras_1: Dict[str, CAMERA_TYPE],
        cameras_2: Dict[str, CAMERA_TYPE],
    ) -> MetricEntry:
        """Aligns the orientations of the common cameras, ignoring positions, and summarizes the rotation errors."""
        try:
            _check_correspondences(common_view_names)
            wRi_list_1 = [cameras_1[name].pose().rotation() for name in common_view_names]
            wRi_list_2 = [cameras_2[name].pose().rotation() for name in common_view_names]
            wRi_list_2 = align_utils.align_rotations(wRi_list_1, wRi_list_2)
        except DegenerateInputError as exc:
            return self._failed_entry(ROTATION_ALIGNED_ROTATION_ERROR, exc)

        rotation_errors_deg = comp_utils.compute_rotation_errors(wRi_list_1, wRi_list_2)
        return self._summarize(ROTATION_ALIGNED_ROTATION_ERROR, rotation_errors_deg, self._rotation_bucket_edges_deg)

    def evaluate_aligned_poses(
        self,
        common_view_names: Sequence[str],
        cameras_1: Dict[str, CAMERA_TYPE],
        cameras_2: Dict[str, CAMERA_TYPE],
        report: ComparisonReport,
        samples: Optional[Sequence[Sequence[int]]] = None,
    ) -> Dict[str, CAMERA_TYPE]:
        """Aligns the working copy of reconstruction 2 to reconstruction 1 and summarizes the per-camera errors.

        Args:
            common_view_names: Names of the common views.
            cameras_1: Cameras of reconstruction 1, for at least the common views.
            cameras_2: Working copy of the cameras of reconstruction 2.
            report: Report to which the alignment and the metric entries are added.
            samples: Explicit minimal samples for robust alignment.

        Returns:
            The working copy of reconstruction 2 after alignment; unchanged if alignment failed.
        """
        metric_names = (SIM3_ALIGNED_ROTATION_ERROR, SIM3_ALIGNED_POSITION_ERROR, FOCAL_LENGTH_ERROR)
        try:
            _check_correspondences(common_view_names)
            wTi_list_1: List[Pose3] = [cameras_1[name].pose() for name in common_view_names]
            wTi_list_2: List[Pose3] = [cameras_2[name].pose() for name in common_view_names]
            alignment = self._pose_aligner.align(wTi_list_1, wTi_list_2, samples=samples)
        except (DegenerateInputError, NoConsensusError) as exc:
            report.alignment_failure_reason = _failure_reason(exc)
            for name in metric_names:
                report.add_entry(self._failed_entry(name, exc))
            return cameras_2

        report.alignment = alignment
        report.inlier_view_names = [common_view_names[i] for i in alignment.inlier_idxs]
        align_utils.log_sim3_transform(alignment.aSb, label="Reconstruction Sim(3)")
        aligned_cameras_2 = transform.camera_map_with_sim3(cameras_2, alignment.aSb)

        rotation_errors_deg = []
        position_errors = []
        focal_length_errors = []
        for name in common_view_names:
            rotation_error, position_error, focal_length_error = comp_utils.compute_camera_errors(
                cameras_1[name], aligned_cameras_2[name]
            )
            rotation_errors_deg.append(rotation_error)
            position_errors.append(position_error)
            focal_length_errors.append(focal_length_error)

        report.add_entry(
            self._summarize(SIM3_ALIGNED_ROTATION_ERROR, rotation_errors_deg, self._rotation_bucket_edges_deg)
        )
        report.add_entry(self._summarize(SIM3_ALIGNED_POSITION_ERROR, position_errors, self._position_bucket_edges))
        report.add_entry(self._summarize(FOCAL_LENGTH_ERROR, focal_length_errors, self._focal_length_bucket_edges))
        return aligned_cameras_2

    def evaluate_track_lengths(self, name: str, reconstruction: ReconstructionBase) -> MetricEntry:
        """Summarizes the number of views observing each track."""
        return self._summarize(name, reconstruction.track_lengths(), self._track_length_bucket_edges)

    def compare(
        self,
        reconstruction_1: ReconstructionBase,
        reconstruction_2: ReconstructionBase,
        samples: Optional[Sequence[Sequence[int]]] = None,
    ) -> ComparisonReport:
        """Compares reconstruction 2 against the reference reconstruction 1.

        Neither reconstruction is modified; alignment acts on a working copy of reconstruction 2's cameras.

        Args:
            reconstruction_1: Reference reconstruction.
            reconstruction_2: Reconstruction to evaluate.
            samples: Explicit minimal samples (indices into the sorted common view names) for robust alignment.

        Raises:
            InvalidReconstructionError: If either reconstruction holds a corrupt camera.

        Returns:
            Report with view and track counts, alignment, and all error summaries.
        """
        common_view_names = find_common_view_names(reconstruction_1, reconstruction_2)
        report = ComparisonReport(
            num_views_1=reconstruction_1.num_views(),
            num_views_2=reconstruction_2.num_views(),
            num_tracks_1=reconstruction_1.num_tracks(),
            num_tracks_2=reconstruction_2.num_tracks(),
            common_view_names=common_view_names,
        )
        logger.info(report.counts_string())

        cameras_1 = _gather_cameras(reconstruction_1, reconstruction_1.view_names())
        cameras_2 = _gather_cameras(reconstruction_2, reconstruction_2.view_names())

        report.add_entry(self.evaluate_rotations(common_view_names, cameras_1, cameras_2))
        self.evaluate_aligned_poses(common_view_names, cameras_1, cameras_2, report, samples=samples)
        report.add_entry(self.evaluate_track_lengths(TRACK_LENGTHS_1, reconstruction_1))
        report.add_entry(self.evaluate_track_lengths(TRACK_LENGTHS_2, reconstruction_2))
        return report


def compare(
    reconstruction_1: ReconstructionBase,
    reconstruction_2: ReconstructionBase,
    robust_threshold: float = 0.0,
    **kwargs: Any,
) -> ComparisonReport:
    """Compares two reconstructions with default histogram buckets.

    Args:
        reconstruction_1: Reference reconstruction.
        reconstruction_2: Reconstruction to evaluate.
        robust_threshold: Inlier threshold for robust Sim(3) alignment; 0 selects least squares alignment.
        kwargs: Further options for the PoseAligner, e.g. `max_num_hypotheses` or `seed`.

    Returns:
        The comparison report.
    """
    pose_aligner = PoseAligner(robust_alignment_threshold=robust_threshold, **kwargs)
    comparator = ReconstructionComparator(pose_aligner=pose_aligner)
    return comparator.compare(reconstruction_1, reconstruction_2)
