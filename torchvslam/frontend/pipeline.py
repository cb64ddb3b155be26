import logging
from typing import Dict, List, Optional, Union

import numpy as np
import torch

from ..config import DEFAULT_CONFIG, merge_config, validate_config
from .feature_extraction import (
    BaseFeatureExtractor,
    FeatureMatcher,
    FeatureSet,
    FeatureType,
    Match,
    ORBFeatureExtractor,
    SamplingPattern,
    SIFTFeatureExtractor,
)

logger = logging.getLogger(__name__)


def create_feature_extractor(
    config: Dict = None, sampling_pattern: Optional[SamplingPattern] = None
) -> BaseFeatureExtractor:
    """
    Build the extractor selected by `config["feature_type"]`.

    Args:
        config: Full configuration dictionary (missing keys take defaults)
        sampling_pattern: Pattern shared with other ORB extractors

    Returns:
        ORBFeatureExtractor or SIFTFeatureExtractor
    """
    config = merge_config(DEFAULT_CONFIG, config or {})
    validate_config(config)
    feature_type = FeatureType.from_name(config["feature_type"])

    if feature_type == FeatureType.ORB:
        return ORBFeatureExtractor(config["orb"], sampling_pattern=sampling_pattern)
    return SIFTFeatureExtractor(config["sift"])


def _check_matchable(features_a: FeatureSet, features_b: FeatureSet) -> None:
    for name, features in (("features_a", features_a), ("features_b", features_b)):
        if not features.has_descriptors:
            raise ValueError(
                f"{name} ({features.feature_type.name}) carries no descriptors and cannot be matched"
            )

    if features_a.feature_type != features_b.feature_type:
        raise ValueError(
            f"Cannot match {features_a.feature_type.name} features against "
            f"{features_b.feature_type.name} features"
        )

    pattern_a = features_a.sampling_pattern
    pattern_b = features_b.sampling_pattern
    if pattern_a is not None and pattern_b is not None and pattern_a != pattern_b:
        raise ValueError(
            "Feature sets were described with different sampling patterns; "
            "extract both images with the same pattern"
        )


def match(
    features_a: FeatureSet,
    features_b: FeatureSet,
    ratio_threshold: float = 0.8,
    ignore_undescribed: bool = False,
) -> List[Match]:
    """
    Match the descriptors of two feature sets with the ratio test.

    Args:
        features_a: Query features
        features_b: Train features
        ratio_threshold: Ratio test threshold
        ignore_undescribed: Leave out keypoints whose patch did not fit in the
            image (their descriptors are all-zero sentinels)

    Returns:
        List of Match objects, at most one per element of features_a
    """
    _check_matchable(features_a, features_b)

    query_mask = train_mask = None
    if ignore_undescribed:
        query_mask = features_a.described
        train_mask = features_b.described
        if not bool(query_mask.any()) or not bool(train_mask.any()):
            logger.warning("No described features to match")

    matcher = FeatureMatcher({"ratio_threshold": ratio_threshold})
    matches = matcher.match(
        features_a.descriptors,
        features_b.descriptors,
        query_mask=query_mask,
        train_mask=train_mask,
    )
    logger.info(
        f"Matched {len(matches)} of {len(features_a)} features against {len(features_b)}"
    )
    return matches


def extract(image: Union[torch.Tensor, np.ndarray], config: Dict = None) -> FeatureSet:
    """
    Extract features from one raster.

    ORB extractors built from equal configurations draw the same sampling
    pattern, so sets extracted by separate calls remain comparable.

    Args:
        image: Grayscale raster, or anything accepted by `to_raster`
        config: Full configuration dictionary

    Returns:
        FeatureSet in detector scan order
    """
    extractor = create_feature_extractor(config)
    features = extractor.detect_and_compute(image)
    logger.info(f"Extracted {len(features)} {features.feature_type.name} features")
    return features


class FeatureFrontend:
    """One extraction and matching session.

    The frontend owns a single extractor, and therefore a single sampling
    pattern, which every image it extracts is described with."""

    def __init__(self, config: Dict = None, sampling_pattern: Optional[SamplingPattern] = None):
        """
        Initialize the frontend.

        Args:
            config: Full configuration dictionary
            sampling_pattern: Pattern to use instead of the seeded one
        """
        self.config = merge_config(DEFAULT_CONFIG, config or {})
        validate_config(self.config)

        self.extractor = create_feature_extractor(self.config, sampling_pattern)
        self.feature_type = self.extractor.feature_type

        matching_config = self.config["matching"]
        self.ratio_threshold = matching_config["ratio_threshold"]
        self.ignore_undescribed = matching_config["ignore_undescribed"]

        # Initialize logger
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info(f"Initialized {self.feature_type.name} feature frontend")

    @property
    def sampling_pattern(self) -> Optional[SamplingPattern]:
        return getattr(self.extractor, "sampling_pattern", None)

    def extract(self, image: Union[torch.Tensor, np.ndarray]) -> FeatureSet:
        """Extract features from one raster."""
        features = self.extractor.detect_and_compute(image)
        self.logger.debug(f"Extracted {len(features)} features")
        return features

    def match(self, features_a: FeatureSet, features_b: FeatureSet) -> List[Match]:
        """Match two feature sets with the configured ratio threshold."""
        return match(
            features_a,
            features_b,
            ratio_threshold=self.ratio_threshold,
            ignore_undescribed=self.ignore_undescribed,
        )
