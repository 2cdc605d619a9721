import numpy as np
import pytest

from rmbg_pipeline.postprocessing import dump_debug_mask, keep_largest_component, refine, resize_mask
from rmbg_pipeline.preprocessing import resize_geometry


def test_resize_mask_matches_target_dimensions():
    mask = np.random.default_rng(0).random((64, 64), dtype=np.float32)
    assert resize_mask(mask, 300, 17).shape == (17, 300)
    assert resize_mask(mask, 8, 8).shape == (8, 8)
    assert resize_mask(mask, 1, 1).shape == (1, 1)


def test_resize_mask_same_size_is_identity():
    mask = np.linspace(0, 1, 16, dtype=np.float32).reshape(4, 4)
    np.testing.assert_array_equal(resize_mask(mask, 4, 4), mask)


def test_resize_mask_crops_letterbox_padding():
    geometry = resize_geometry(200, 100, 64, "letterbox")
    model_space = np.zeros((64, 64), dtype=np.float32)
    model_space[16:48, :] = 1.0
    restored = resize_mask(model_space, 200, 100, geometry)
    assert restored.shape == (100, 200)
    np.testing.assert_allclose(restored, 1.0)


def test_resize_mask_letterbox_with_smaller_output_resolution():
    geometry = resize_geometry(100, 200, 64, "letterbox")
    model_space = np.zeros((32, 32), dtype=np.float32)
    model_space[:, 8:24] = 1.0
    restored = resize_mask(model_space, 100, 200, geometry)
    assert restored.shape == (200, 100)
    np.testing.assert_allclose(restored, 1.0)


def test_resize_mask_keeps_left_right_alignment():
    mask = np.zeros((32, 32), dtype=np.float32)
    mask[:, :16] = 1.0
    restored = resize_mask(mask, 320, 50)
    assert restored[:, :150].min() > 0.99
    assert restored[:, 170:].max() < 0.01


def test_refine_radius_zero_is_noop():
    mask = np.array([[0.0, 0.2], [0.7, 1.0]], dtype=np.float32)
    out = refine(mask, 0)
    np.testing.assert_array_equal(out, mask)
    assert out is not mask


def test_refine_clamps_out_of_range_values():
    mask = np.array([[-0.5, 0.2], [0.7, 1.8]], dtype=np.float32)
    out = refine(mask, 0)
    assert out.min() >= 0.0 and out.max() <= 1.0


def test_refine_softens_only_the_transition_band():
    mask = np.zeros((40, 40), dtype=np.float32)
    mask[:, 20:] = 1.0
    out = refine(mask, 3)

    assert out.min() >= 0.0 and out.max() <= 1.0
    # Far from the edge nothing changes.
    np.testing.assert_array_equal(out[:, :14], 0.0)
    np.testing.assert_array_equal(out[:, 26:], 1.0)
    # At the edge the step becomes a ramp.
    assert 0.0 < out[10, 19] < 0.5
    assert 0.5 < out[10, 20] < 1.0


def test_refine_without_edges_is_unchanged():
    solid = np.ones((10, 10), dtype=np.float32)
    np.testing.assert_array_equal(refine(solid, 4), solid)


def test_refine_rejects_negative_radius():
    with pytest.raises(ValueError):
        refine(np.zeros((2, 2), dtype=np.float32), -1)


def test_keep_largest_component():
    alpha = np.zeros((20, 20), dtype=np.float32)
    alpha[2:10, 2:10] = 1.0
    alpha[15:17, 15:17] = 0.8
    out = keep_largest_component(alpha)
    assert out[5, 5] == 1.0
    assert out[16, 16] == 0.0


def test_dump_debug_mask_writes_png(tmp_path):
    dump_debug_mask(np.full((4, 4), 0.5, dtype=np.float32), tmp_path / "dbg")
    assert (tmp_path / "dbg" / "mask.png").exists()
