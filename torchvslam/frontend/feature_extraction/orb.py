from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import torch

from .base import BaseFeatureExtractor, FeatureSet, FeatureType, KeyPoint, to_raster

# 16-point Bresenham circle of radius 3, as (dx, dy)
CIRCLE_OFFSETS = (
    (0, 3),
    (1, 3),
    (2, 2),
    (3, 1),
    (3, 0),
    (3, -1),
    (2, -2),
    (1, -3),
    (0, -3),
    (-1, -3),
    (-2, -2),
    (-3, -1),
    (-3, 0),
    (-3, 1),
    (-2, 2),
    (-1, 3),
)


class SamplingPattern:
    """Point-pair offsets compared by the binary descriptor.

    Bit i of a descriptor compares the intensity at keypoint + offsets[i] with
    the intensity at keypoint - offsets[i]. Descriptors are only comparable bit
    by bit when they were computed with the same pattern, so one pattern must
    be shared by every extraction that is later matched."""

    def __init__(self, offsets: torch.Tensor, patch_size: int, seed: Optional[int] = None):
        """
        Initialize a sampling pattern.

        Args:
            offsets: Integer tensor (n_points, 2) of (dx, dy) offsets
            patch_size: Side of the square patch the offsets lie in (odd)
            seed: Seed the offsets were drawn with, if any
        """
        half_patch_size = patch_size // 2
        if offsets.dim() != 2 or offsets.shape[1] != 2:
            raise ValueError(f"Offsets must have shape (n, 2), got {tuple(offsets.shape)}")
        if offsets.numel() > 0 and offsets.abs().max().item() > half_patch_size:
            raise ValueError(f"Offsets exceed the half patch size {half_patch_size}")

        self.offsets = offsets.to(torch.long)
        self.patch_size = patch_size
        self.half_patch_size = half_patch_size
        self.seed = seed

    @classmethod
    def generate(
        cls, n_points: int = 256, patch_size: int = 31, seed: int = 1234
    ) -> "SamplingPattern":
        """
        Draw offsets uniformly from [-patch_size // 2, patch_size // 2].

        Args:
            n_points: Number of binary tests in the descriptor
            patch_size: Size of the patch around each keypoint
            seed: Seed of the random generator

        Returns:
            SamplingPattern
        """
        half_patch_size = patch_size // 2
        rng = np.random.default_rng(seed)
        offsets = rng.integers(
            -half_patch_size, half_patch_size, size=(n_points, 2), endpoint=True
        )
        return cls(torch.from_numpy(offsets), patch_size, seed=seed)

    @property
    def n_points(self) -> int:
        return self.offsets.shape[0]

    def __eq__(self, other) -> bool:
        if not isinstance(other, SamplingPattern):
            return NotImplemented
        return self.patch_size == other.patch_size and torch.equal(
            self.offsets, other.offsets
        )

    def __hash__(self) -> int:
        return hash((self.patch_size, tuple(self.offsets.flatten().tolist())))

    def __repr__(self) -> str:
        return (
            f"SamplingPattern(n_points={self.n_points}, "
            f"patch_size={self.patch_size}, seed={self.seed})"
        )


def descriptor_words(descriptor: torch.Tensor) -> Tuple[int, ...]:
    """
    View a packed descriptor as 64-bit words.

    Bit i of the descriptor is bit (i % 64) of word (i // 64).

    Args:
        descriptor: uint8 tensor (n_bytes,)

    Returns:
        Tuple of non-negative integers, one per 64 bits
    """
    data = bytes(descriptor.to(torch.uint8).tolist())
    return tuple(
        int.from_bytes(data[i : i + 8], "little") for i in range(0, len(data), 8)
    )


class ORBFeatureExtractor(BaseFeatureExtractor):
    """FAST corner detector with a BRIEF binary descriptor.

    Corners are detected at full resolution only, without orientation and
    without non-maximum suppression: every pixel passing the segment test is
    reported, in row-major order."""

    feature_type = FeatureType.ORB

    def __init__(
        self, config: Dict = None, sampling_pattern: Optional[SamplingPattern] = None
    ):
        """
        Initialize ORB detector.

        Args:
            config: Configuration dictionary with the following keys:
                - fast_threshold: Intensity threshold of the segment test
                - border: Margin of pixels never tested for corners (>= 3)
                - n_consecutive: Arc length needed to accept a corner
                - n_points: Number of binary tests in the descriptor
                - patch_size: Size of patch to sample around each keypoint
                - seed: Seed of the sampling pattern
            sampling_pattern: Pattern to reuse instead of generating one
        """
        super().__init__(config)
        self.fast_threshold = self.config.get("fast_threshold", 20)
        self.border = max(self.config.get("border", 3), 3)
        self.n_consecutive = self.config.get("n_consecutive", 9)

        if sampling_pattern is None:
            sampling_pattern = SamplingPattern.generate(
                n_points=self.config.get("n_points", 256),
                patch_size=self.config.get("patch_size", 31),
                seed=self.config.get("seed", 1234),
            )
        self.sampling_pattern = sampling_pattern
        self.n_points = sampling_pattern.n_points
        self.patch_size = sampling_pattern.patch_size
        self.half_patch_size = sampling_pattern.half_patch_size

        if self.n_points % 8 != 0:
            raise ValueError(f"n_points must be a multiple of 8, got {self.n_points}")

    def extract(self, image: Union[torch.Tensor, np.ndarray]) -> List[KeyPoint]:
        """
        Extract FAST keypoints from image.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            List of KeyPoint objects in row-major order
        """
        raster = to_raster(image)
        keypoints = self._extract_fast(raster)
        self.logger.debug(
            f"FAST found {len(keypoints)} corners in {raster.shape[1]}x{raster.shape[0]} raster"
        )
        return keypoints

    def compute_descriptors(
        self, image: Union[torch.Tensor, np.ndarray], keypoints: List[KeyPoint]
    ) -> torch.Tensor:
        """
        Compute BRIEF descriptors for keypoints.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`
            keypoints: List of KeyPoint objects

        Returns:
            Tensor of descriptors (num_keypoints, n_points // 8) dtype=torch.uint8.
            Keypoints whose patch does not fit in the image get an all-zero row.
        """
        descriptors, _ = self._compute_brief(to_raster(image), keypoints)
        return descriptors

    def detect_and_compute(self, image: Union[torch.Tensor, np.ndarray]) -> FeatureSet:
        """
        Detect corners and describe them with the shared sampling pattern.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            FeatureSet carrying descriptors and the `described` mask
        """
        raster = to_raster(image)
        keypoints = self.extract(raster)
        descriptors, described = self._compute_brief(raster, keypoints)

        n_described = int(described.sum().item())
        if n_described < len(keypoints):
            self.logger.debug(
                f"{len(keypoints) - n_described} keypoints too close to the border "
                f"for a {self.patch_size}x{self.patch_size} patch"
            )

        return FeatureSet(
            self.feature_type,
            keypoints,
            image_size=(raster.shape[1], raster.shape[0]),
            descriptors=descriptors,
            described=described,
            sampling_pattern=self.sampling_pattern,
        )

    def _compute_brief(
        self, raster: torch.Tensor, keypoints: List[KeyPoint]
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Vectorized BRIEF over all keypoints whose patch fits in the raster.

        Args:
            raster: Tensor (H, W) uint8
            keypoints: List of KeyPoint objects

        Returns:
            Tuple of (descriptors (N, n_points // 8) uint8, described mask (N,))
        """
        device = raster.device
        height, width = raster.shape
        border = self.half_patch_size

        all_descriptors = torch.zeros(
            (len(keypoints), self.n_points // 8), dtype=torch.uint8, device=device
        )
        described = torch.zeros(len(keypoints), dtype=torch.bool, device=device)
        if not keypoints:
            return all_descriptors, described

        # Integer keypoint locations, truncated like the detector grid
        kp_xy = torch.tensor(
            [(int(kp.x), int(kp.y)) for kp in keypoints], dtype=torch.long, device=device
        )
        kp_x = kp_xy[:, 0]
        kp_y = kp_xy[:, 1]

        # --- Identify keypoints whose whole patch is inside the image ---
        valid_mask = (
            (kp_x - border >= 0)
            & (kp_x + border < width)
            & (kp_y - border >= 0)
            & (kp_y + border < height)
        )
        valid_indices = torch.where(valid_mask)[0]
        num_valid_kp = len(valid_indices)

        if num_valid_kp == 0:
            return all_descriptors, described

        offsets = self.sampling_pattern.offsets.to(device)
        dx = offsets[None, :, 0]
        dy = offsets[None, :, 1]
        valid_x = kp_x[valid_indices, None]
        valid_y = kp_y[valid_indices, None]

        # --- Batch Sample Pixel Values, shape (N, n_points) ---
        vals1 = raster[valid_y + dy, valid_x + dx]
        vals2 = raster[valid_y - dy, valid_x - dx]

        descriptor_bits = vals1 < vals2

        # --- Batch Pack Bits into Bytes, bit i -> byte i // 8, bit i % 8 ---
        desc_bits_reshaped = descriptor_bits.view(num_valid_kp, self.n_points // 8, 8)
        powers = 2 ** torch.arange(8, dtype=torch.uint8, device=device)
        valid_descriptors = torch.sum(
            desc_bits_reshaped.to(torch.uint8) * powers, dim=2, dtype=torch.uint8
        )

        all_descriptors[valid_indices] = valid_descriptors
        described[valid_indices] = True

        return all_descriptors, described

    def _extract_fast(self, raster: torch.Tensor) -> List[KeyPoint]:
        """
        Vectorized FAST (Features from Accelerated Segment Test) corner detector.

        Args:
            raster: Tensor (H, W) uint8

        Returns:
            List of KeyPoint objects in row-major order
        """
        height, width = raster.shape
        border = self.border
        if height <= 2 * border or width <= 2 * border:
            return []

        img = raster.to(torch.int16)
        center = img[border : height - border, border : width - border]

        # Shape: (16, H - 2 * border, W - 2 * border)
        neighbors = torch.stack(
            [
                img[border + dy : height - border + dy, border + dx : width - border + dx]
                for dx, dy in CIRCLE_OFFSETS
            ]
        )

        threshold = self.fast_threshold
        is_darker = (neighbors < center) & (center - neighbors > threshold)
        is_brighter = (neighbors > center) & (neighbors - center > threshold)

        # --- Check for n_consecutive pixels, doubling the circle for wrap-around ---
        n = self.n_consecutive
        darker_runs = torch.cat([is_darker, is_darker]).unfold(0, n, 1).all(dim=-1)
        brighter_runs = torch.cat([is_brighter, is_brighter]).unfold(0, n, 1).all(dim=-1)
        is_corner = darker_runs.any(dim=0) | brighter_runs.any(dim=0)

        # Corner score: sum of absolute differences around the circle
        scores = (neighbors - center).abs().sum(dim=0)

        ys, xs = torch.nonzero(is_corner, as_tuple=True)
        return [
            KeyPoint(x=x + border, y=y + border, response=float(s))
            for x, y, s in zip(xs.tolist(), ys.tolist(), scores[ys, xs].tolist())
        ]
