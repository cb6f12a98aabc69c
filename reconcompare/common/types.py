"""Common definitions and helper functions for calibration and camera types.

Authors: Ayush Baid, Travis Driver
"""

from typing import Union

import gtsam  # type: ignore

CALIBRATION_TYPE = Union[gtsam.Cal3Bundler, gtsam.Cal3_S2, gtsam.Cal3DS2, gtsam.Cal3Fisheye]
CAMERA_TYPE = Union[
    gtsam.PinholeCameraCal3Bundler,
    gtsam.PinholeCameraCal3_S2,
    gtsam.PinholeCameraCal3DS2,
    gtsam.PinholeCameraCal3Fisheye,
]


def get_camera_class_for_calibration(calibration: CALIBRATION_TYPE) -> type:
    """Get the camera class corresponding to the calibration.

    Args:
        calibration: the calibration object for which the camera class is required.

    Returns:
        Camera class needed for the calibration object.
    """
    if isinstance(calibration, gtsam.Cal3Bundler):
        return gtsam.PinholeCameraCal3Bundler
    if isinstance(calibration, gtsam.Cal3_S2):
        return gtsam.PinholeCameraCal3_S2
    if isinstance(calibration, gtsam.Cal3DS2):
        return gtsam.PinholeCameraCal3DS2
    if isinstance(calibration, gtsam.Cal3Fisheye):
        return gtsam.PinholeCameraCal3Fisheye
    raise ValueError(f"Unsupported calibration type: {type(calibration)}. Supported types are {CALIBRATION_TYPE}.")


def create_camera(pose: gtsam.Pose3, calibration: CALIBRATION_TYPE) -> CAMERA_TYPE:
    """Creates a camera of the class matching the calibration."""
    camera_class = get_camera_class_for_calibration(calibration)
    return camera_class(pose, calibration)
