"""Utility functions for transporting geometry between coordinate frames.

Authors: Ayush Baid, John Lambert, Frank Dellaert
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Sequence

from gtsam import Pose3, Rot3, Similarity3  # type: ignore

from reconcompare.common.types import CAMERA_TYPE, create_camera


def Rot3s_with_so3(rotations_b: Sequence[Rot3], aRb: Rot3) -> List[Rot3]:
    """Transport a list of Rot3s from frame ``b`` to frame ``a`` using an SO(3) transform."""
    return [aRb.compose(rotation_b) for rotation_b in rotations_b]


def Pose3s_with_sim3(poses_b: Sequence[Pose3], aSb: Similarity3) -> List[Pose3]:
    """Transport a list of Pose3s from frame ``b`` to frame ``a`` using a Sim(3) transform.

    Each camera center becomes ``s * (aRb * center + atb)`` and each orientation ``aRb * bRi``.
    """
    return [aSb.transformFrom(pose_b) for pose_b in poses_b]


def camera_map_with_sim3(cameras_b: Mapping[str, CAMERA_TYPE], aSb: Similarity3) -> Dict[str, CAMERA_TYPE]:
    """Transport a name-keyed camera dictionary from frame ``b`` to frame ``a`` using a Sim(3) transform.

    Calibrations are frame-invariant and are carried over unchanged.
    """
    names = list(cameras_b.keys())
    poses_a = Pose3s_with_sim3([cameras_b[name].pose() for name in names], aSb)
    return {name: create_camera(pose_a, cameras_b[name].calibration()) for name, pose_a in zip(names, poses_a)}
