"""Utility functions for comparing geometry between two reconstructions.

Authors: Ayush Baid, John Lambert
"""

from typing import List, Optional, Sequence

import numpy as np
from gtsam import Rot3  # type: ignore
from scipy.spatial.transform import Rotation

from reconcompare.common.types import CAMERA_TYPE


def compute_relative_rotation_angle(R_1: Optional[Rot3], R_2: Optional[Rot3]) -> Optional[float]:
    """Compute the angle between two rotations.

    Note: the angle is the norm of the angle-axis representation.

    Args:
        R_1: The first rotation.
        R_2: The second rotation.

    Returns:
        The angle between two rotations, in degrees.
    """
    if R_1 is None or R_2 is None:
        return None

    relative_rot = R_1.between(R_2)
    # scipy is more stable than Rot3.axisAngle() for angles close to 180 degrees.
    scaled_axis = Rotation.from_matrix(relative_rot.matrix()).as_rotvec()
    return float(np.rad2deg(np.linalg.norm(scaled_axis)))


def compute_points_distance_l2(wti1: Optional[np.ndarray], wti2: Optional[np.ndarray]) -> Optional[float]:
    """Computes the L2 distance between the two input 3D points.

    Assumes the points are in the same coordinate frame. Returns None if either point is None.
    """
    if wti1 is None or wti2 is None:
        return None
    return float(np.linalg.norm(np.asarray(wti1) - np.asarray(wti2)))


def compute_relative_focal_length_error(focal_length_1: float, focal_length_2: float) -> float:
    """Returns |f1 - f2| / f1, the focal length error relative to the reference focal length."""
    return abs(focal_length_1 - focal_length_2) / focal_length_1


def compute_rotation_errors(aRi_list: Sequence[Rot3], aRi_list_: Sequence[Rot3]) -> List[float]:
    """Angular error in degrees between corresponding rotations of two equal-length lists."""
    if len(aRi_list) != len(aRi_list_):
        raise ValueError(f"Cannot compare {len(aRi_list)} rotations against {len(aRi_list_)}.")
    return [compute_relative_rotation_angle(aRi, aRi_) for aRi, aRi_ in zip(aRi_list, aRi_list_)]


def compute_camera_errors(camera_a: CAMERA_TYPE, camera_b: CAMERA_TYPE) -> tuple[float, float, float]:
    """Compares two cameras expressed in the same world frame.

    Args:
        camera_a: Reference camera.
        camera_b: Camera to evaluate, already aligned to the reference frame.

    Returns:
        Rotation error in degrees, camera center distance, and relative focal length error.
    """
    wTa = camera_a.pose()
    wTb = camera_b.pose()
    rotation_error = compute_relative_rotation_angle(wTa.rotation(), wTb.rotation())
    position_error = compute_points_distance_l2(wTa.translation(), wTb.translation())
    focal_length_error = compute_relative_focal_length_error(
        camera_a.calibration().fx(), camera_b.calibration().fx()
    )
    return rotation_error, position_error, focal_length_error
