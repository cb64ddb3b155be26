import logging
import math
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F


class FeatureType(Enum):
    """Enum for different feature types."""

    SIFT = 1
    ORB = 2

    @staticmethod
    def from_name(name: Union[str, "FeatureType"]) -> "FeatureType":
        """Resolve a feature type from its (case-insensitive) name."""
        if isinstance(name, FeatureType):
            return name
        try:
            return FeatureType[str(name).upper()]
        except KeyError:
            raise ValueError(
                f"Unknown feature type '{name}', expected one of "
                f"{[t.name.lower() for t in FeatureType]}"
            )


def to_raster(image: Union[torch.Tensor, np.ndarray]) -> torch.Tensor:
    """
    Convert an image into an 8-bit single-channel raster.

    Args:
        image: Tensor or array with shape (H, W), (1, H, W) or (C, H, W)

    Returns:
        Tensor of shape (H, W) with dtype torch.uint8
    """
    if isinstance(image, np.ndarray):
        image = torch.from_numpy(np.ascontiguousarray(image))

    # Convert to grayscale if color
    if image.dim() == 3 and image.shape[0] > 1:
        gray = image.float().mean(dim=0)
    elif image.dim() == 3 and image.shape[0] == 1:
        gray = image[0]
    elif image.dim() == 2:
        gray = image
    else:
        raise ValueError(f"Unsupported image format with shape {tuple(image.shape)}")

    if gray.dtype == torch.uint8:
        return gray.contiguous()

    # Only float input in [0, 1] is rescaled; integer input is raw intensity
    is_unit_float = gray.is_floating_point() and gray.numel() > 0 and gray.max() <= 1.0
    gray = gray.float()
    if is_unit_float:
        gray = gray * 255.0

    return torch.clamp(torch.round(gray), 0, 255).to(torch.uint8)


class KeyPoint:
    """Class representing a keypoint."""

    def __init__(
        self,
        x: float,
        y: float,
        response: float = 0.0,
        size: float = 1.0,
        octave: int = 0,
        interval: float = 0.0,
    ):
        self.x = float(x)
        self.y = float(y)
        self.response = response  # Strength of the keypoint
        self.size = size  # Blur parameter of the level the keypoint was found in
        self.octave = octave  # Octave (pyramid layer) from which the keypoint was extracted
        self.interval = interval  # Refined intra-octave scale coordinate

    def pt(self) -> Tuple[float, float]:
        """Get point coordinates."""
        return (self.x, self.y)

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "x": self.x,
            "y": self.y,
            "response": self.response,
            "size": self.size,
            "octave": self.octave,
            "interval": self.interval,
        }

    @staticmethod
    def from_dict(data: Dict) -> "KeyPoint":
        """Create from dictionary."""
        return KeyPoint(
            x=data["x"],
            y=data["y"],
            response=data.get("response", 0.0),
            size=data.get("size", 1.0),
            octave=data.get("octave", 0),
            interval=data.get("interval", 0.0),
        )

    def __repr__(self) -> str:
        return f"KeyPoint(x={self.x:.2f}, y={self.y:.2f}, octave={self.octave})"


class FeatureRecord:
    """A keypoint together with its (optional) descriptor."""

    def __init__(self, keypoint: KeyPoint, descriptor: Optional[torch.Tensor] = None):
        self.keypoint = keypoint
        self.descriptor = descriptor

    def __repr__(self) -> str:
        described = self.descriptor is not None
        return f"FeatureRecord({self.keypoint!r}, described={described})"


class FeatureSet:
    """Ordered features extracted from one raster by one algorithm.

    Keypoints are kept in detector scan order. Descriptors, when the algorithm
    produces them, are stored as a single (N, n_bytes) uint8 tensor rather than
    per keypoint, and `described` flags which rows hold a real descriptor as
    opposed to the all-zero sentinel given to keypoints near the border."""

    def __init__(
        self,
        feature_type: FeatureType,
        keypoints: List[KeyPoint],
        image_size: Tuple[int, int],
        descriptors: Optional[torch.Tensor] = None,
        described: Optional[torch.Tensor] = None,
        sampling_pattern=None,
    ):
        """
        Initialize a feature set.

        Args:
            feature_type: Algorithm that produced the features
            keypoints: Keypoints in scan order
            image_size: (width, height) of the source raster
            descriptors: Packed descriptors (N, n_bytes), or None
            described: Boolean mask (N,) of keypoints with a real descriptor
            sampling_pattern: Sampling table used to compute the descriptors
        """
        if descriptors is not None and descriptors.shape[0] != len(keypoints):
            raise ValueError(
                f"Got {descriptors.shape[0]} descriptors for {len(keypoints)} keypoints"
            )
        if descriptors is not None and described is None:
            described = torch.ones(len(keypoints), dtype=torch.bool)

        self.feature_type = feature_type
        self.keypoints = keypoints
        self.image_size = image_size
        self.descriptors = descriptors
        self.described = described
        self.sampling_pattern = sampling_pattern

    @property
    def has_descriptors(self) -> bool:
        return self.descriptors is not None

    def __len__(self) -> int:
        return len(self.keypoints)

    def __getitem__(self, idx: int) -> FeatureRecord:
        descriptor = None
        if self.descriptors is not None:
            descriptor = self.descriptors[idx]
        return FeatureRecord(self.keypoints[idx], descriptor)

    def __iter__(self) -> Iterator[FeatureRecord]:
        for idx in range(len(self)):
            yield self[idx]

    def points(self) -> torch.Tensor:
        """Keypoint locations as a float tensor of shape (N, 2)."""
        if not self.keypoints:
            return torch.zeros((0, 2), dtype=torch.float32)
        return torch.tensor([kp.pt() for kp in self.keypoints], dtype=torch.float32)

    def __repr__(self) -> str:
        return (
            f"FeatureSet(type={self.feature_type.name}, n={len(self)}, "
            f"image_size={self.image_size})"
        )


class BaseFeatureExtractor:
    """Base class for feature extraction.

    This class defines the interface for feature extraction and provides common
    utility functions used by different feature extractors."""

    feature_type: FeatureType = None

    def __init__(self, config: Dict = None):
        """
        Initialize extractor.

        Args:
            config: Algorithm-specific configuration dictionary
        """
        self.config = config if config is not None else {}

        # Initialize logger
        self.logger = logging.getLogger(self.__class__.__name__)

    def extract(self, image: Union[torch.Tensor, np.ndarray]) -> List[KeyPoint]:
        """
        Extract keypoints from image.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            List of KeyPoint objects in scan order
        """
        raise NotImplementedError("Subclasses must implement extract method")

    def compute_descriptors(
        self, image: Union[torch.Tensor, np.ndarray], keypoints: List[KeyPoint]
    ) -> torch.Tensor:
        """
        Compute descriptors for keypoints.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`
            keypoints: List of KeyPoint objects

        Returns:
            Tensor of descriptors
        """
        raise NotImplementedError(
            "Subclasses must implement compute_descriptors method"
        )

    def detect_and_compute(self, image: Union[torch.Tensor, np.ndarray]) -> FeatureSet:
        """
        Extract features and compute descriptors.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            FeatureSet tied to the input raster
        """
        raster = to_raster(image)
        keypoints = self.extract(raster)
        descriptors = self.compute_descriptors(raster, keypoints)
        return FeatureSet(
            self.feature_type,
            keypoints,
            image_size=(raster.shape[1], raster.shape[0]),
            descriptors=descriptors,
        )

    def _gaussian_kernel_2d(self, sigma: float, device: torch.device) -> torch.Tensor:
        """Create a normalized 2D Gaussian kernel with radius ceil(3 * sigma)."""
        radius = max(1, int(math.ceil(3.0 * sigma)))
        kernel_size = 2 * radius + 1

        # Create 1D coordinates
        coords = torch.arange(kernel_size, device=device, dtype=torch.float32) - radius
        x = coords.repeat(kernel_size, 1)
        y = x.t()

        # Create 2D Gaussian
        kernel = torch.exp(-(x.pow(2) + y.pow(2)) / (2 * sigma * sigma))
        kernel = kernel / kernel.sum()  # Normalize

        return kernel

    def _gaussian_blur(self, raster: torch.Tensor, sigma: float) -> torch.Tensor:
        """
        Blur an 8-bit raster and quantize the result back to 8 bits.

        Args:
            raster: Tensor (H, W) uint8
            sigma: Standard deviation of the Gaussian

        Returns:
            Blurred tensor (H, W) uint8
        """
        if raster.numel() == 0:
            return raster.clone()

        kernel = self._gaussian_kernel_2d(sigma, raster.device)
        pad = kernel.shape[0] // 2

        # Replicate padding works for any raster size, unlike reflect
        padded = F.pad(
            raster.float()[None, None], (pad, pad, pad, pad), mode="replicate"
        )
        blurred = F.conv2d(padded, kernel[None, None])[0, 0]

        return torch.clamp(torch.round(blurred), 0, 255).to(torch.uint8)
