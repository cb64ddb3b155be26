from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F

from .base import BaseFeatureExtractor, FeatureSet, FeatureType, KeyPoint, to_raster

DOG_BIAS = 128


def get_sigma(octave: int, interval: float, sigma: float = 1.6, n_intervals: int = 3) -> float:
    """Blur parameter sigma * k^(octave + interval), with k = 2^(1 / n_intervals)."""
    k = 2.0 ** (1.0 / n_intervals)
    return sigma * k ** (octave + interval)


def downsample(raster: torch.Tensor) -> torch.Tensor:
    """
    Halve a raster in each dimension by 2x2 area averaging.

    Args:
        raster: Tensor (H, W) uint8

    Returns:
        Tensor (H // 2, W // 2) uint8
    """
    height, width = raster.shape
    if height < 2 or width < 2:
        return torch.zeros((height // 2, width // 2), dtype=torch.uint8, device=raster.device)

    pooled = F.avg_pool2d(raster.float()[None, None], kernel_size=2, stride=2)[0, 0]
    return torch.clamp(torch.round(pooled), 0, 255).to(torch.uint8)


def difference_of_gaussians(
    upper: torch.Tensor, lower: torch.Tensor, overflow: str = "wrap"
) -> torch.Tensor:
    """
    Per-pixel (upper - lower) + 128 as an 8-bit raster.

    Args:
        upper: Less blurred level (H, W) uint8
        lower: More blurred level (H, W) uint8
        overflow: "wrap" keeps the low 8 bits of out-of-range values,
            "saturate" clamps them to [0, 255]

    Returns:
        Tensor (H, W) uint8
    """
    diff = upper.to(torch.int32) - lower.to(torch.int32) + DOG_BIAS
    if overflow == "saturate":
        diff = torch.clamp(diff, 0, 255)
    elif overflow == "wrap":
        diff = torch.remainder(diff, 256)
    else:
        raise ValueError(f"Unknown DoG overflow mode '{overflow}'")
    return diff.to(torch.uint8)


def is_local_maximum(dog_octave: torch.Tensor, interval: int, x: int, y: int) -> bool:
    """
    Check whether a DoG sample is strictly greater than its 26 neighbours.

    Args:
        dog_octave: DoG levels of one octave (L - 1, H, W)
        interval: Level index, 1 <= interval <= L - 3
        x: Column, 1 <= x <= W - 2
        y: Row, 1 <= y <= H - 2

    Returns:
        True if the sample is a strict local maximum
    """
    cube = dog_octave[interval - 1 : interval + 2, y - 1 : y + 2, x - 1 : x + 2]
    center = cube[1, 1, 1]
    # Only the center itself may reach the center value
    return int((cube >= center).sum().item()) == 1


def detect_local_maxima(dog_octave: torch.Tensor, interval: int) -> torch.Tensor:
    """
    Vectorized `is_local_maximum` over every interior pixel of one level.

    Args:
        dog_octave: DoG levels of one octave (L - 1, H, W)
        interval: Level index, 1 <= interval <= L - 3

    Returns:
        Boolean mask (H, W); the one pixel border is always False
    """
    _, height, width = dog_octave.shape
    mask = torch.zeros((height, width), dtype=torch.bool, device=dog_octave.device)
    if height < 3 or width < 3:
        return mask

    center = dog_octave[interval, 1 : height - 1, 1 : width - 1]
    is_max = torch.ones_like(center, dtype=torch.bool)
    for ds in (-1, 0, 1):
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if ds == 0 and dy == 0 and dx == 0:
                    continue
                neighbor = dog_octave[
                    interval + ds, 1 + dy : height - 1 + dy, 1 + dx : width - 1 + dx
                ]
                is_max &= center > neighbor

    mask[1 : height - 1, 1 : width - 1] = is_max
    return mask


def finite_difference_gradient(cube: torch.Tensor) -> torch.Tensor:
    """
    Central-difference gradient at the center of a 3x3x3 cube.

    Args:
        cube: Samples indexed [interval, y, x], shape (3, 3, 3)

    Returns:
        Tensor (3,) float64 as (dx, dy, ds)
    """
    cube = cube.to(torch.float64)
    dx = (cube[1, 1, 2] - cube[1, 1, 0]) / 2.0
    dy = (cube[1, 2, 1] - cube[1, 0, 1]) / 2.0
    ds = (cube[2, 1, 1] - cube[0, 1, 1]) / 2.0
    return torch.stack([dx, dy, ds])


def finite_difference_hessian(cube: torch.Tensor) -> torch.Tensor:
    """
    Second-derivative matrix at the center of a 3x3x3 cube.

    Args:
        cube: Samples indexed [interval, y, x], shape (3, 3, 3)

    Returns:
        Symmetric tensor (3, 3) float64 over (x, y, s)
    """
    cube = cube.to(torch.float64)
    center = cube[1, 1, 1]

    dxx = cube[1, 1, 2] - 2.0 * center + cube[1, 1, 0]
    dyy = cube[1, 2, 1] - 2.0 * center + cube[1, 0, 1]
    dss = cube[2, 1, 1] - 2.0 * center + cube[0, 1, 1]

    dxy = ((cube[1, 2, 2] - cube[1, 2, 0]) - (cube[1, 0, 2] - cube[1, 0, 0])) / 4.0
    dxs = ((cube[2, 1, 2] - cube[0, 1, 2]) - (cube[2, 1, 0] - cube[0, 1, 0])) / 4.0
    dys = ((cube[2, 2, 1] - cube[0, 2, 1]) - (cube[2, 0, 1] - cube[0, 0, 1])) / 4.0

    return torch.stack(
        [
            torch.stack([dxx, dxy, dxs]),
            torch.stack([dxy, dyy, dys]),
            torch.stack([dxs, dys, dss]),
        ]
    )


def _newton_offset(hessian: torch.Tensor, gradient: torch.Tensor) -> Optional[torch.Tensor]:
    """Solve offset = -H^-1 * gradient, or None if H cannot be inverted."""
    try:
        if abs(torch.linalg.det(hessian).item()) < 1e-10:
            return None
        offset = -torch.linalg.inv(hessian) @ gradient
    except RuntimeError:
        return None

    if not torch.isfinite(offset).all():
        return None
    return offset


def refine_keypoint(
    dog_octave: torch.Tensor,
    interval: int,
    x: int,
    y: int,
    n_intervals: int = 3,
    contrast_threshold: float = 0.03,
    edge_threshold: float = 10.0,
    max_iterations: int = 5,
) -> Optional[Tuple[float, float, float, float]]:
    """
    Localize a DoG maximum to sub-pixel, sub-interval precision.

    Fits a quadratic at the current sample by Newton steps. Derivatives are
    read at the integer part of the current position. A step of norm at most
    0.5 means convergence, after which low-contrast and edge-like candidates
    are rejected. If the iteration cap is reached first, the last position is
    returned as is.

    Args:
        dog_octave: DoG levels of one octave (L - 1, H, W)
        interval: Level of the candidate
        x: Column of the candidate
        y: Row of the candidate
        n_intervals: Highest valid interval
        contrast_threshold: Minimum |D + 0.5 * g . offset|, D scaled to [0, 1]
        edge_threshold: Maximum principal curvature ratio r
        max_iterations: Maximum number of Newton steps

    Returns:
        (x, y, interval, contrast) in octave coordinates, or None if rejected
    """
    _, height, width = dog_octave.shape
    max_curvature = (edge_threshold + 1.0) ** 2 / edge_threshold

    x, y, s = float(x), float(y), float(interval)
    for _ in range(max_iterations):
        xi, yi, si = int(x), int(y), int(s)
        cube = dog_octave[si - 1 : si + 2, yi - 1 : yi + 2, xi - 1 : xi + 2].to(
            torch.float64
        )
        gradient = finite_difference_gradient(cube)
        hessian = finite_difference_hessian(cube)

        offset = _newton_offset(hessian, gradient)
        if offset is None:
            return None

        if torch.linalg.norm(offset).item() <= 0.5:
            value = cube[1, 1, 1].item() / 255.0
            contrast = value + 0.5 * torch.dot(gradient, offset).item()
            if abs(contrast) < contrast_threshold:
                return None

            h = hessian.tolist()
            trace = h[0][0] + h[1][1]
            determinant = h[0][0] * h[1][1] - h[0][1] * h[1][0]
            if determinant <= 0.0 or trace * trace / determinant > max_curvature:
                return None

            return (x, y, s, abs(contrast))

        dx, dy, ds = offset.tolist()
        x += dx
        y += dy
        s += ds

        if (
            x < 1.0
            or x > width - 2.0
            or y < 1.0
            or y > height - 2.0
            or s < 1.0
            or s > n_intervals
        ):
            return None

    return (x, y, s, 0.0)


class SIFTFeatureExtractor(BaseFeatureExtractor):
    """Difference-of-Gaussians keypoint detector.

    Builds a Gaussian scale space, subtracts adjacent levels, and refines the
    DoG maxima. Orientation assignment and descriptors are not implemented, so
    the resulting features can be located but not matched."""

    feature_type = FeatureType.SIFT

    def __init__(self, config: Dict = None):
        """
        Initialize SIFT detector.

        Args:
            config: Configuration dictionary with the following keys:
                - n_octaves: Number of octaves in the scale space
                - n_intervals: Intervals per octave (levels = n_intervals + 3)
                - sigma: Base scale for Gaussian blur
                - contrast_threshold: Threshold for contrast filtering
                - edge_threshold: Threshold for edge filtering
                - max_iterations: Newton steps allowed during refinement
                - dog_overflow: "wrap" or "saturate"
        """
        super().__init__(config)
        self.n_octaves = self.config.get("n_octaves", 4)
        self.n_intervals = self.config.get("n_intervals", 3)
        self.sigma = self.config.get("sigma", 1.6)
        self.contrast_threshold = self.config.get("contrast_threshold", 0.03)
        self.edge_threshold = self.config.get("edge_threshold", 10.0)
        self.max_iterations = self.config.get("max_iterations", 5)
        self.dog_overflow = self.config.get("dog_overflow", "wrap")

    @property
    def n_levels(self) -> int:
        return self.n_intervals + 3

    def extract(self, image: Union[torch.Tensor, np.ndarray]) -> List[KeyPoint]:
        """
        Extract DoG keypoints from image.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            List of KeyPoint objects in input image coordinates, ordered by
            octave, interval, then row-major position
        """
        raster = to_raster(image)
        gaussian_pyramid = self.build_scale_space(raster)
        dog_pyramid = self.build_difference_of_gaussians(gaussian_pyramid)

        keypoints = []
        for octave, dog_octave in enumerate(dog_pyramid):
            scale = 2**octave
            n_candidates = 0
            n_refined = 0
            for interval in range(1, self.n_intervals + 1):
                extrema = detect_local_maxima(dog_octave, interval)
                ys, xs = torch.nonzero(extrema, as_tuple=True)
                n_candidates += len(xs)

                for x, y in zip(xs.tolist(), ys.tolist()):
                    refined = refine_keypoint(
                        dog_octave,
                        interval,
                        x,
                        y,
                        n_intervals=self.n_intervals,
                        contrast_threshold=self.contrast_threshold,
                        edge_threshold=self.edge_threshold,
                        max_iterations=self.max_iterations,
                    )
                    if refined is None:
                        continue

                    kp_x, kp_y, kp_interval, contrast = refined
                    keypoints.append(
                        KeyPoint(
                            x=kp_x * scale,  # Scale back to original image coordinates
                            y=kp_y * scale,
                            response=contrast,
                            size=get_sigma(
                                octave, kp_interval, self.sigma, self.n_intervals
                            ),
                            octave=octave,
                            interval=kp_interval,
                        )
                    )
                    n_refined += 1

            self.logger.debug(
                f"Octave {octave}: {n_candidates} DoG maxima, {n_refined} kept after refinement"
            )

        return keypoints

    def compute_descriptors(
        self, image: Union[torch.Tensor, np.ndarray], keypoints: List[KeyPoint]
    ) -> torch.Tensor:
        raise NotImplementedError("SIFT descriptors are not implemented")

    def detect_and_compute(self, image: Union[torch.Tensor, np.ndarray]) -> FeatureSet:
        """
        Extract keypoints; the returned set carries no descriptors.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            FeatureSet without descriptors
        """
        raster = to_raster(image)
        return FeatureSet(
            self.feature_type,
            self.extract(raster),
            image_size=(raster.shape[1], raster.shape[0]),
        )

    def build_scale_space(self, image: Union[torch.Tensor, np.ndarray]) -> List[List[torch.Tensor]]:
        """
        Build the Gaussian pyramid.

        Level 0 of octave 0 is the input; level 0 of every later octave is the
        previous octave's level 0 halved; every other level blurs the level
        below it with `get_sigma(octave, interval)`.

        Args:
            image: Grayscale raster, or anything accepted by `to_raster`

        Returns:
            n_octaves lists of n_intervals + 3 rasters (H / 2^o, W / 2^o) uint8
        """
        raster = to_raster(image)
        gaussian_pyramid = []

        for octave in range(self.n_octaves):
            if octave == 0:
                levels = [raster]
            else:
                levels = [downsample(gaussian_pyramid[octave - 1][0])]

            for interval in range(1, self.n_levels):
                sigma = get_sigma(octave, interval, self.sigma, self.n_intervals)
                levels.append(self._gaussian_blur(levels[-1], sigma))

            gaussian_pyramid.append(levels)

        return gaussian_pyramid

    def build_difference_of_gaussians(
        self, gaussian_pyramid: List[List[torch.Tensor]]
    ) -> List[torch.Tensor]:
        """
        Subtract adjacent scale-space levels.

        Args:
            gaussian_pyramid: Output of `build_scale_space`

        Returns:
            One tensor (n_levels - 1, H / 2^o, W / 2^o) uint8 per octave
        """
        dog_pyramid = []
        for levels in gaussian_pyramid:
            dog_pyramid.append(
                torch.stack(
                    [
                        difference_of_gaussians(levels[i], levels[i + 1], self.dog_overflow)
                        for i in range(len(levels) - 1)
                    ]
                )
            )
        return dog_pyramid
