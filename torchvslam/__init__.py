"""
torchvslam

A PyTorch-based visual SLAM feature frontend. It detects keypoints in 8-bit
grayscale rasters and matches them between images.

Major Components:
- ORB: FAST corners described by a seeded BRIEF binary descriptor
- SIFT: Difference-of-Gaussians keypoints refined to sub-pixel precision
- Matching: Hamming nearest neighbour with a ratio test
- Config: Dictionary / YAML configuration with defaults and validation
"""
from torchvslam.config import DEFAULT_CONFIG, load_config, merge_config, validate_config

# Import frontend components
from torchvslam.frontend import FeatureFrontend, create_feature_extractor, extract, match

# Import frontend/feature_extraction components
from torchvslam.frontend.feature_extraction import (
    BaseFeatureExtractor,
    FeatureMatcher,
    FeatureRecord,
    FeatureSet,
    FeatureType,
    KeyPoint,
    Match,
    ORBFeatureExtractor,
    SamplingPattern,
    SIFTFeatureExtractor,
    to_raster,
)

# Version information
from torchvslam.version import __version__

# Define the public API
__all__ = [
    # Version
    "__version__",
    # Config
    "DEFAULT_CONFIG",
    "load_config",
    "merge_config",
    "validate_config",
    # Frontend
    "FeatureFrontend",
    "create_feature_extractor",
    "extract",
    "match",
    # Feature Extraction
    "FeatureType",
    "KeyPoint",
    "FeatureRecord",
    "FeatureSet",
    "to_raster",
    "BaseFeatureExtractor",
    "ORBFeatureExtractor",
    "SamplingPattern",
    "SIFTFeatureExtractor",
    "FeatureMatcher",
    "Match",
]
