"""
Feature extraction module for the torchvslam library.

This module contains classes and functions for detecting, describing and
matching features in grayscale images.
"""

from .base import (
    BaseFeatureExtractor,
    FeatureRecord,
    FeatureSet,
    FeatureType,
    KeyPoint,
    to_raster,
)
from .feature_matcher import FeatureMatcher, Match, hamming_distance
from .orb import ORBFeatureExtractor, SamplingPattern, descriptor_words
from .sift import SIFTFeatureExtractor

__all__ = [
    "FeatureType",
    "KeyPoint",
    "FeatureRecord",
    "FeatureSet",
    "to_raster",
    "BaseFeatureExtractor",
    "SIFTFeatureExtractor",
    "ORBFeatureExtractor",
    "SamplingPattern",
    "descriptor_words",
    "FeatureMatcher",
    "Match",
    "hamming_distance",
]
