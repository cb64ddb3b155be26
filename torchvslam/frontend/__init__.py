"""
Frontend module for the torchvslam library.

This module contains the image feature frontend: keypoint detection,
binary description and descriptor matching.
"""

from .pipeline import FeatureFrontend, create_feature_extractor, extract, match

__all__ = [
    "FeatureFrontend",
    "create_feature_extractor",
    "extract",
    "match",
]
