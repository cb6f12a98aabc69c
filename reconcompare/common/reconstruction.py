"""Read-only view of a reconstruction: named cameras and the tracks observing them.

Reconstructions are produced elsewhere (e.g. by an SfM pipeline) and only read here. A camera's pose is the
camera-to-world transform `wTi`, so `wTi.rotation()` is the camera orientation and `wTi.translation()` its center.
"""

import abc
from typing import Dict, Hashable, List, Mapping, NamedTuple, Optional, Sequence

import numpy as np
from gtsam import Pose3  # type: ignore

import reconcompare.utils.logger as logger_utils
from reconcompare.common.exceptions import InvalidReconstructionError
from reconcompare.common.types import CAMERA_TYPE

logger = logger_utils.get_logger()

TrackId = Hashable


class Track(NamedTuple):
    """A 3d landmark, represented by the names of the views observing it."""

    view_names: Sequence[str]

    def number_views(self) -> int:
        """Returns the number of distinct observing views, i.e. the track length."""
        return len(set(self.view_names))


def validate_camera(name: str, camera: CAMERA_TYPE) -> None:
    """Checks that a camera has a finite pose and a positive, finite focal length.

    Raises:
        InvalidReconstructionError: If the camera is corrupt.
    """
    wTi = camera.pose()
    if not np.all(np.isfinite(wTi.matrix())):
        raise InvalidReconstructionError(f"Camera {name} has a non-finite pose.")
    focal_length = camera.calibration().fx()
    if not np.isfinite(focal_length) or focal_length <= 0:
        raise InvalidReconstructionError(f"Camera {name} has an invalid focal length {focal_length}.")


class ReconstructionBase(metaclass=abc.ABCMeta):
    """Interface to a reconstruction which is compared against another one."""

    @abc.abstractmethod
    def view_names(self) -> List[str]:
        """Names of all views with an estimated camera."""

    @abc.abstractmethod
    def camera(self, name: str) -> CAMERA_TYPE:
        """Get the camera of a view.

        Args:
            name: Name of the view.

        Raises:
            KeyError: If the reconstruction has no view with that name.

        Returns:
            Camera (pose and calibration) of the view.
        """

    @abc.abstractmethod
    def track_ids(self) -> List[TrackId]:
        """Ids of all tracks in the reconstruction."""

    @abc.abstractmethod
    def track_view_count(self, track_id: TrackId) -> int:
        """Number of views observing a track."""

    def num_views(self) -> int:
        return len(self.view_names())

    def num_tracks(self) -> int:
        return len(self.track_ids())

    def get_pose(self, name: str) -> Pose3:
        """Camera-to-world pose of a view."""
        return self.camera(name).pose()

    def get_focal_length(self, name: str) -> float:
        return float(self.camera(name).calibration().fx())

    def track_lengths(self) -> np.ndarray:
        """Returns the number of observing views for every track, in track id order."""
        return np.array([self.track_view_count(track_id) for track_id in self.track_ids()], dtype=np.int64)


class Reconstruction(ReconstructionBase):
    """In-memory reconstruction holding cameras keyed by view name and tracks keyed by id."""

    def __init__(
        self,
        cameras: Optional[Mapping[str, CAMERA_TYPE]] = None,
        tracks: Optional[Mapping[TrackId, Track]] = None,
    ) -> None:
        """Initializes the reconstruction.

        Args:
            cameras: Cameras in the scene, keyed by view name.
            tracks: Tracks in the scene, keyed by track id.

        Raises:
            InvalidReconstructionError: If a camera is corrupt.
        """
        self._cameras: Dict[str, CAMERA_TYPE] = {}
        self._tracks: Dict[TrackId, Track] = {}

        if cameras is not None:
            for name, camera in cameras.items():
                self.add_camera(name, camera)
        if tracks is not None:
            for track_id, track in tracks.items():
                self.add_track(track_id, track)

    def __repr__(self) -> str:
        return f"Reconstruction(num_views={len(self._cameras)}, num_tracks={len(self._tracks)})"

    def add_camera(self, name: str, camera: CAMERA_TYPE) -> None:
        """Adds a camera, replacing any camera previously stored under the same view name."""
        validate_camera(name, camera)
        self._cameras[name] = camera

    def add_track(self, track_id: TrackId, track: Track) -> None:
        """Adds a track. Observations by views without a camera are kept but logged."""
        unknown_views = [name for name in track.view_names if name not in self._cameras]
        if unknown_views:
            logger.debug("Track %s is observed by %d views without a camera.", track_id, len(unknown_views))
        self._tracks[track_id] = track

    def view_names(self) -> List[str]:
        return list(self._cameras.keys())

    def camera(self, name: str) -> CAMERA_TYPE:
        return self._cameras[name]

    def track_ids(self) -> List[TrackId]:
        return list(self._tracks.keys())

    def track_view_count(self, track_id: TrackId) -> int:
        return self._tracks[track_id].number_views()
