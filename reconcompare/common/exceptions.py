"""Typed failures raised while comparing reconstructions."""


class DegenerateInputError(ValueError):
    """Raised when there are fewer correspondences or samples than an estimate requires."""


class EmptyCorrespondenceSetError(DegenerateInputError):
    """Raised when two reconstructions have no view in common."""


class NoConsensusError(RuntimeError):
    """Raised when robust alignment finds no hypothesis supported by enough inliers."""


class InvalidReconstructionError(ValueError):
    """Raised when a reconstruction holds corrupt data, e.g. a non-finite pose."""
