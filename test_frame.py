import numpy as np
import pytest

import frame
from conftest import draw_frame
from models import InputError, PixelBuffer


def test_grayscale_uses_bt709_weights():
    img = np.zeros((20, 20, 3), dtype=np.uint8)
    img[:, :, 0] = 100
    img[:, :, 1] = 50
    img[:, :, 2] = 200
    gray = frame.to_grayscale(PixelBuffer(img))
    expected = 0.2126 * 100 + 0.7152 * 50 + 0.0722 * 200
    assert gray.shape == (20, 20)
    assert np.allclose(gray, expected)


def test_grayscale_ignores_alpha_and_passes_single_channel():
    rgba = np.full((16, 16, 4), 80, dtype=np.uint8)
    rgba[:, :, 3] = 0
    assert np.allclose(frame.to_grayscale(PixelBuffer(rgba)), 80.0)

    mono = np.full((16, 16), 42, dtype=np.uint8)
    assert np.allclose(frame.to_grayscale(PixelBuffer(mono)), 42.0)


@pytest.mark.parametrize("sigma,size", [(1.0, 7), (1.4, 9), (2.0, 13), (0.5, 3)])
def test_kernel_size_is_odd_and_normalized(sigma, size):
    k = frame.gaussian_kernel(sigma)
    assert len(k) == size
    assert len(k) % 2 == 1
    assert k.sum() == pytest.approx(1.0)
    assert np.allclose(k, k[::-1])


def test_kernel_is_bounded_for_large_sigma():
    assert len(frame.gaussian_kernel(500.0)) == len(frame.gaussian_kernel(frame.MAX_SIGMA))


def test_zero_sigma_is_identity():
    gray = np.arange(256, dtype=np.float64).reshape(16, 16)
    assert np.array_equal(frame.gaussian_blur(gray, 0), gray)


def test_blur_keeps_constant_image_and_border():
    gray = np.full((30, 40), 77.0)
    blurred = frame.gaussian_blur(gray, 1.4)
    assert np.allclose(blurred, 77.0)


def test_blur_softens_step_without_touching_input():
    gray = np.zeros((32, 32))
    gray[:, 16:] = 255.0
    before = gray.copy()
    blurred = frame.gaussian_blur(gray, 1.4)
    assert np.array_equal(gray, before)
    assert 0 < blurred[10, 15] < 255
    assert 0 < blurred[10, 16] < 255
    assert blurred[10, 0] == pytest.approx(0.0)
    assert blurred[10, 31] == pytest.approx(255.0)


def test_equalize_spreads_narrow_histogram():
    gray = np.tile(np.linspace(100, 110, 64), (64, 1))
    eq = frame.equalize_tiles(gray)
    assert eq.max() == pytest.approx(255.0)
    assert eq.max() - eq.min() > 200


def test_buffer_is_read_only(circle_frame):
    with pytest.raises(ValueError):
        circle_frame.data[0, 0, 0] = 1


@pytest.mark.parametrize("bad", [
    np.zeros((8, 8, 3), dtype=np.uint8),
    np.zeros((32, 32, 3), dtype=np.float32),
    np.zeros((32, 32, 2), dtype=np.uint8),
    [[0, 0], [0, 0]],
])
def test_malformed_buffers_raise_input_error(bad):
    with pytest.raises(InputError):
        PixelBuffer(bad)


def test_from_bytes_rejects_garbage():
    with pytest.raises(InputError):
        PixelBuffer.from_bytes(b"not an image")
    with pytest.raises(InputError):
        PixelBuffer.from_bytes(b"")


def test_from_bytes_decodes_png_as_rgb():
    import cv2
    img = draw_frame(64, 48)
    img[:, :, 0] = 200  # red channel in RGB
    ok, png = cv2.imencode(".png", cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
    assert ok
    buf = PixelBuffer.from_bytes(png.tobytes())
    assert (buf.width, buf.height, buf.channels) == (64, 48, 3)
    assert buf.data[0, 0, 0] == 200
