"""Utility functions for finding views shared by two reconstructions."""

from typing import Iterable, List

import reconcompare.utils.logger as logger_utils
from reconcompare.common.reconstruction import ReconstructionBase

logger = logger_utils.get_logger()

NUM_MISSING_NAMES_TO_LOG = 5


def common_names(names_a: Iterable[str], names_b: Iterable[str]) -> List[str]:
    """Returns the names present in both collections, sorted lexicographically."""
    return sorted(set(names_a) & set(names_b))


def find_common_view_names(reconstruction_a: ReconstructionBase, reconstruction_b: ReconstructionBase) -> List[str]:
    """Find the views present (by name) in both reconstructions.

    The order only depends on the names, so every per-view error vector computed over the result lines up
    index-for-index, independent of how either reconstruction stores its views.

    Args:
        reconstruction_a: Reference reconstruction.
        reconstruction_b: Reconstruction to compare against the reference.

    Returns:
        Lexicographically sorted names of the common views; possibly empty.
    """
    names_a = set(reconstruction_a.view_names())
    names_b = set(reconstruction_b.view_names())
    common = common_names(names_a, names_b)

    if not common:
        missing_in_a = sorted(names_b - names_a)
        missing_in_b = sorted(names_a - names_b)
        logger.warning(
            "No common views; missing in reconstruction 1 (sample): %s; missing in reconstruction 2 (sample): %s",
            ", ".join(missing_in_a[:NUM_MISSING_NAMES_TO_LOG]),
            ", ".join(missing_in_b[:NUM_MISSING_NAMES_TO_LOG]),
        )
    else:
        logger.debug("Found %d common views.", len(common))
    return common
