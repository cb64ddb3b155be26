import pytest
import torch

from torchvslam.frontend.feature_extraction.base import FeatureSet, KeyPoint
from torchvslam.frontend.feature_extraction.sift import (
    SIFTFeatureExtractor,
    detect_local_maxima,
    difference_of_gaussians,
    downsample,
    finite_difference_gradient,
    finite_difference_hessian,
    get_sigma,
    is_local_maximum,
    refine_keypoint,
)


def quadratic_volume(shape, center, coefficients, base, linear=(0.0, 0.0, 0.0)):
    """
    Sample base + linear . d - sum(c_i * d_i^2) on a (levels, H, W) grid.

    `center` and the coefficient tuples are ordered (x, y, s).
    """
    levels, height, width = shape
    s, y, x = torch.meshgrid(
        torch.arange(levels, dtype=torch.float64),
        torch.arange(height, dtype=torch.float64),
        torch.arange(width, dtype=torch.float64),
        indexing="ij",
    )
    dx, dy, ds = x - center[0], y - center[1], s - center[2]
    values = (
        base
        + linear[0] * dx
        + linear[1] * dy
        + linear[2] * ds
        - coefficients[0] * dx**2
        - coefficients[1] * dy**2
        - coefficients[2] * ds**2
    )
    assert values.min() >= 0 and values.max() <= 255
    return values.round().to(torch.uint8)


@pytest.fixture(scope="module")
def sift_extractor():
    return SIFTFeatureExtractor()


@pytest.fixture(scope="module")
def blob_image():
    y, x = torch.meshgrid(
        torch.arange(45, dtype=torch.float32),
        torch.arange(67, dtype=torch.float32),
        indexing="ij",
    )
    blob = 30 + 200 * torch.exp(-((x - 30) ** 2 + (y - 22) ** 2) / (2 * 4.0**2))
    return blob.round().to(torch.uint8)


# --- Scale space ---


def test_sigma_grows_geometrically():
    k = 2 ** (1 / 3)
    assert get_sigma(0, 0) == pytest.approx(1.6)
    assert get_sigma(0, 2) == pytest.approx(1.6 * k**2)
    # The octave index enters the exponent directly
    assert get_sigma(1, 2) == pytest.approx(1.6 * k**3)
    assert get_sigma(2, 3) == pytest.approx(1.6 * 2 ** (5 / 3))


def test_downsample_halves_dimensions():
    raster = torch.tensor([[0, 2, 9], [4, 6, 9], [9, 9, 9]], dtype=torch.uint8)
    assert downsample(raster).tolist() == [[3]]
    assert downsample(torch.zeros((1, 5), dtype=torch.uint8)).shape == (0, 2)


def test_scale_space_dimensions(sift_extractor, blob_image):
    pyramid = sift_extractor.build_scale_space(blob_image)

    assert len(pyramid) == 4
    for octave, levels in enumerate(pyramid):
        assert len(levels) == 6
        for level in levels:
            assert level.dtype == torch.uint8
            assert level.shape == (45 // 2**octave, 67 // 2**octave)


def test_scale_space_levels(sift_extractor, blob_image):
    pyramid = sift_extractor.build_scale_space(blob_image)

    assert torch.equal(pyramid[0][0], blob_image)
    for octave in range(1, 4):
        assert torch.equal(pyramid[octave][0], downsample(pyramid[octave - 1][0]))

    # Blurring flattens the peak
    peaks = [level.max().item() for level in pyramid[0]]
    assert peaks == sorted(peaks, reverse=True)
    assert peaks[-1] < peaks[0]


def test_blur_preserves_flat_image(sift_extractor):
    flat = torch.full((20, 20), 77, dtype=torch.uint8)
    for levels in sift_extractor.build_scale_space(flat):
        for level in levels:
            assert (level == 77).all()


# --- Difference of Gaussians ---


def test_dog_bias_and_overflow():
    high = torch.tensor([[255, 100, 0]], dtype=torch.uint8)
    low = torch.tensor([[0, 100, 255]], dtype=torch.uint8)

    assert difference_of_gaussians(high, low).tolist() == [[127, 128, 129]]
    assert difference_of_gaussians(high, low, overflow="saturate").tolist() == [[255, 128, 0]]

    with pytest.raises(ValueError):
        difference_of_gaussians(high, low, overflow="clip")


def test_dog_pyramid_shape(sift_extractor, blob_image):
    dog = sift_extractor.build_difference_of_gaussians(
        sift_extractor.build_scale_space(blob_image)
    )

    assert len(dog) == 4
    for octave, dog_octave in enumerate(dog):
        assert dog_octave.shape == (5, 45 // 2**octave, 67 // 2**octave)
        assert dog_octave.dtype == torch.uint8


def test_dog_of_flat_image_is_bias(sift_extractor):
    flat = torch.full((16, 16), 200, dtype=torch.uint8)
    dog = sift_extractor.build_difference_of_gaussians(sift_extractor.build_scale_space(flat))
    for dog_octave in dog:
        assert (dog_octave == 128).all()


# --- Extrema ---


def test_strict_maximum_cube():
    cube = torch.full((3, 3, 3), 5, dtype=torch.uint8)
    cube[1, 1, 1] = 10
    assert is_local_maximum(cube, 1, 1, 1)

    for s, y, x in [(0, 0, 0), (1, 1, 2), (2, 1, 1), (0, 2, 1)]:
        tied = cube.clone()
        tied[s, y, x] = 10
        assert not is_local_maximum(tied, 1, 1, 1)


def test_minimum_is_not_reported():
    cube = torch.full((3, 3, 3), 50, dtype=torch.uint8)
    cube[1, 1, 1] = 10
    assert not is_local_maximum(cube, 1, 1, 1)
    assert not detect_local_maxima(cube, 1).any()


def test_detect_local_maxima_agrees_with_pointwise():
    generator = torch.Generator().manual_seed(3)
    dog_octave = torch.randint(0, 256, (5, 12, 14), dtype=torch.uint8, generator=generator)

    for interval in (1, 2, 3):
        mask = detect_local_maxima(dog_octave, interval)
        assert not mask[0].any() and not mask[-1].any()
        assert not mask[:, 0].any() and not mask[:, -1].any()
        for y in range(1, 11):
            for x in range(1, 13):
                assert mask[y, x].item() == is_local_maximum(dog_octave, interval, x, y)


def test_detect_local_maxima_on_tiny_octave():
    assert not detect_local_maxima(torch.zeros((5, 2, 2), dtype=torch.uint8), 1).any()


# --- Finite differences ---


def test_gradient_of_linear_cube():
    cube = quadratic_volume((3, 3, 3), (1, 1, 1), (0, 0, 0), 100, linear=(5, 2, -1))
    assert finite_difference_gradient(cube).tolist() == [5.0, 2.0, -1.0]


def test_hessian_of_quadratic_cube():
    s, y, x = torch.meshgrid(
        torch.arange(-1.0, 2.0), torch.arange(-1.0, 2.0), torch.arange(-1.0, 2.0), indexing="ij"
    )
    cube = 100 + 2 * x**2 + 3 * y**2 + s**2 + x * y - 2 * x * s + 0.5 * y * s
    hessian = finite_difference_hessian(cube)

    expected = torch.tensor(
        [[4.0, 1.0, -2.0], [1.0, 6.0, 0.5], [-2.0, 0.5, 2.0]], dtype=torch.float64
    )
    assert torch.allclose(hessian, expected)
    assert torch.equal(hessian, hessian.t())


# --- Refinement ---


def test_refine_accepts_peak():
    dog_octave = quadratic_volume((5, 7, 7), (3, 3, 2), (5, 5, 5), 200)
    refined = refine_keypoint(dog_octave, 2, 3, 3)

    assert refined is not None
    x, y, s, contrast = refined
    assert (x, y, s) == (3.0, 3.0, 2.0)
    assert contrast == pytest.approx(200 / 255)


def test_refine_rejects_singular_hessian():
    dog_octave = torch.full((5, 7, 7), 128, dtype=torch.uint8)
    assert refine_keypoint(dog_octave, 2, 3, 3) is None


def test_refine_rejects_low_contrast():
    dog_octave = quadratic_volume((3, 3, 3), (1, 1, 1), (1, 1, 1), 5)
    assert refine_keypoint(dog_octave, 1, 1, 1) is None
    assert refine_keypoint(dog_octave, 1, 1, 1, contrast_threshold=0.01) is not None


def test_refine_rejects_edge_response():
    # Curvature ratio (40 + 2)^2 / (40 * 2) = 22.05 > 12.1
    dog_octave = quadratic_volume((5, 5, 5), (2, 2, 2), (20, 1, 5), 200)
    assert refine_keypoint(dog_octave, 2, 2, 2) is None
    assert refine_keypoint(dog_octave, 2, 2, 2, edge_threshold=25.0) is not None


def test_refine_rejects_step_outside_octave():
    # Newton step in x is 20 / 2 = 10 pixels
    dog_octave = quadratic_volume((3, 3, 3), (1, 1, 1), (1, 5, 5), 100, linear=(20, 0, 0))
    assert refine_keypoint(dog_octave, 1, 1, 1) is None


def test_refine_reports_sample_of_converged_step():
    # Step of 2 / 8 = 0.25 in x converges at once; contrast includes the step
    dog_octave = quadratic_volume((5, 5, 5), (2, 2, 2), (4, 4, 4), 150, linear=(2, 0, 0))
    refined = refine_keypoint(dog_octave, 2, 2, 2)

    assert refined is not None
    x, y, s, contrast = refined
    assert (x, y, s) == (2.0, 2.0, 2.0)
    assert contrast == pytest.approx(150 / 255 + 0.5 * 2 * 0.25)


def test_refine_stops_at_iteration_cap():
    # Every sample sees a step of 3 / 4 = 0.75 in x, so the position drifts
    dog_octave = quadratic_volume((5, 5, 9), (4, 2, 2), (2, 1, 1), 150, linear=(3, 0, 0))
    refined = refine_keypoint(dog_octave, 2, 4, 2, max_iterations=2)

    assert refined is not None
    x, y, s, contrast = refined
    assert x == pytest.approx(5.5)
    assert (y, s) == (2.0, 2.0)
    assert contrast == 0.0


# --- Extractor ---


def test_flat_image_has_no_keypoints(sift_extractor):
    assert sift_extractor.extract(torch.full((32, 32), 90, dtype=torch.uint8)) == []


@pytest.mark.parametrize("radius", [0, 1])
def test_bright_dot_is_detected(sift_extractor, radius):
    image = torch.zeros((64, 64), dtype=torch.uint8)
    image[30 - radius : 31 + radius, 30 - radius : 31 + radius] = 255

    keypoints = sift_extractor.extract(image)
    assert len(keypoints) >= 1
    assert any(max(abs(kp.x - 30), abs(kp.y - 30)) <= 1 for kp in keypoints)

    for kp in keypoints:
        assert isinstance(kp, KeyPoint)
        assert 0 <= kp.octave < 4
        assert 1 <= kp.interval <= 3
        assert 0 <= kp.x < 64 and 0 <= kp.y < 64
        assert kp.response >= 0.03
        assert kp.size == pytest.approx(get_sigma(kp.octave, kp.interval))


def test_keypoints_are_scaled_to_input_coordinates(monkeypatch):
    extractor = SIFTFeatureExtractor({"n_octaves": 2})
    flat = torch.full((5, 7, 7), 128, dtype=torch.uint8)
    peak = quadratic_volume((5, 7, 7), (3, 2, 2), (5, 5, 5), 200)
    monkeypatch.setattr(extractor, "build_difference_of_gaussians", lambda pyramid: [flat, peak])

    keypoints = extractor.extract(torch.zeros((14, 14), dtype=torch.uint8))

    assert len(keypoints) == 1
    kp = keypoints[0]
    assert kp.octave == 1
    assert kp.pt() == (6.0, 4.0)
    assert kp.interval == 2.0
    assert kp.size == pytest.approx(get_sigma(1, 2))
    assert kp.response == pytest.approx(200 / 255)


def test_extract_on_tiny_image(sift_extractor):
    assert sift_extractor.extract(torch.zeros((5, 9), dtype=torch.uint8)) == []


def test_detect_and_compute_has_no_descriptors(sift_extractor, blob_image):
    features = sift_extractor.detect_and_compute(blob_image)

    assert isinstance(features, FeatureSet)
    assert not features.has_descriptors
    assert features.image_size == (67, 45)
    for record in features:
        assert record.descriptor is None


def test_descriptors_are_not_implemented(sift_extractor, blob_image):
    with pytest.raises(NotImplementedError):
        sift_extractor.compute_descriptors(blob_image, [KeyPoint(10, 10)])


def test_saturating_dog_config(blob_image):
    extractor = SIFTFeatureExtractor({"dog_overflow": "saturate", "n_octaves": 2})
    dog = extractor.build_difference_of_gaussians(extractor.build_scale_space(blob_image))
    assert len(dog) == 2
