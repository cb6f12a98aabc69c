"""Builds the reconstruction comparator from its hydra config.

Configs live in the `reconcompare.configs` module; overrides use hydra's syntax, e.g.
"ReconstructionComparator.pose_aligner.robust_alignment_threshold=0.5".
"""

from typing import Optional, Sequence

import hydra
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf

import reconcompare.utils.logger as logger_utils
from reconcompare.evaluation.compare_reconstructions import ReconstructionComparator

logger = logger_utils.get_logger()

CONFIG_MODULE = "reconcompare.configs"
DEFAULT_CONFIG_NAME = "compare_reconstructions"


def compose_config(config_name: str = DEFAULT_CONFIG_NAME, overrides: Optional[Sequence[str]] = None) -> DictConfig:
    """Composes the named config from the `reconcompare.configs` module, applying the overrides."""
    with hydra.initialize_config_module(config_module=CONFIG_MODULE, version_base=None):
        return hydra.compose(config_name=config_name, overrides=list(overrides) if overrides is not None else [])


def log_configuration_summary(cfg: DictConfig) -> None:
    """Logs the key alignment parameters, then the full config."""
    pose_aligner_cfg = cfg.ReconstructionComparator.pose_aligner
    threshold = pose_aligner_cfg.robust_alignment_threshold
    if threshold > 0:
        logger.info(
            "Sim(3) alignment: robust, inlier threshold %.3f, at most %d hypotheses",
            threshold,
            pose_aligner_cfg.max_num_hypotheses,
        )
    else:
        logger.info("Sim(3) alignment: least squares over all common cameras")
    logger.debug("Full configuration:\n%s", OmegaConf.to_yaml(cfg))


def construct_comparator(
    config_name: str = DEFAULT_CONFIG_NAME, overrides: Optional[Sequence[str]] = None
) -> ReconstructionComparator:
    """Instantiates the ReconstructionComparator described by the config.

    Args:
        config_name: Name of the config in the `reconcompare.configs` module.
        overrides: Hydra overrides applied on top of the config.

    Returns:
        The configured comparator.
    """
    cfg = compose_config(config_name, overrides)
    log_configuration_summary(cfg)
    return instantiate(cfg.ReconstructionComparator)
