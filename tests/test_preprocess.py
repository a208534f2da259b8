from __future__ import annotations

import numpy as np
import pytest

from media_ocr.config import OriPreprocessMode
from media_ocr.errors import PreprocessError
from media_ocr.preprocess import (
    NormalizeParams,
    det_operators,
    get_padded_size,
    preprocess_batch_for_rec,
    preprocess_for_ori,
    preprocess_for_rec,
    resize_to_height,
    resize_to_max_side,
    split_into_blocks,
    threshold_mask,
    transform,
)


def _image(height: int, width: int, value: int = 255) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, 0), (1, 32), (32, 32), (33, 64), (480, 480), (961, 992)],
)
def test_get_padded_size_rounds_up_to_stride(size: int, expected: int) -> None:
    assert get_padded_size(size) == expected


def test_resize_to_max_side_keeps_small_images() -> None:
    image = _image(100, 200)

    assert resize_to_max_side(image, 960) is image


def test_resize_to_max_side_scales_longer_side() -> None:
    resized = resize_to_max_side(_image(1000, 2000), 960)

    assert resized.shape == (480, 960, 3)


def test_resize_to_height_keeps_aspect_ratio() -> None:
    resized = resize_to_height(_image(20, 100), 48)

    assert resized.shape == (48, 240, 3)


def test_resize_to_height_never_returns_zero_width() -> None:
    resized = resize_to_height(_image(400, 1), 48)

    assert resized.shape[1] == 1


def test_det_operator_chain_pads_and_reports_valid_region() -> None:
    ops = det_operators(960, NormalizeParams.paddle_det())

    tensor, shape = transform({"image": _image(1000, 2000)}, ops)

    assert tensor.shape == (3, 480, 960)
    assert list(shape) == [1000, 2000, 480, 960]


def _det_tensor(image: np.ndarray) -> np.ndarray:
    tensor, _ = transform({"image": image}, det_operators(960, NormalizeParams.paddle_det()))
    return tensor


def test_det_padding_cells_are_zero() -> None:
    tensor = _det_tensor(_image(50, 70))

    assert tensor.shape == (3, 64, 96)
    assert np.all(tensor[:, 50:, :] == 0.0)
    assert np.all(tensor[:, :, 70:] == 0.0)


def test_det_normalization_uses_per_channel_mean_and_std() -> None:
    tensor = _det_tensor(_image(32, 32))

    expected = [(1.0 - 0.485) / 0.229, (1.0 - 0.456) / 0.224, (1.0 - 0.406) / 0.225]
    assert tensor[:, 0, 0] == pytest.approx(expected, rel=1e-5)


def test_rec_tensor_has_target_height() -> None:
    tensor = preprocess_for_rec(_image(24, 60, 0), 48, NormalizeParams.paddle_rec())

    assert tensor.shape == (1, 3, 48, 120)
    assert tensor.dtype == np.float32
    assert np.allclose(tensor, -1.0)


def test_rec_batch_pads_to_widest_in_order() -> None:
    wide = _image(48, 96, 0)
    narrow = _image(48, 48, 255)

    batch = preprocess_batch_for_rec([wide, narrow], 48, NormalizeParams.paddle_rec())

    assert batch.shape == (2, 3, 48, 96)
    assert np.allclose(batch[0], -1.0)
    assert np.allclose(batch[1, :, :, :48], 1.0)
    assert np.all(batch[1, :, :, 48:] == 0.0)


def test_rec_batch_of_nothing_is_empty() -> None:
    batch = preprocess_batch_for_rec([], 48, NormalizeParams.paddle_rec())

    assert batch.shape[0] == 0


def test_ori_doc_mode_center_crops_to_target() -> None:
    tensor = preprocess_for_ori(
        _image(300, 600), 224, 224, 256, OriPreprocessMode.DOC, NormalizeParams.paddle_det()
    )

    assert tensor.shape == (1, 3, 224, 224)


def test_ori_doc_mode_handles_tiny_images() -> None:
    tensor = preprocess_for_ori(
        _image(20, 20), 224, 224, 256, OriPreprocessMode.DOC, NormalizeParams.paddle_det()
    )

    assert tensor.shape == (1, 3, 224, 224)
    assert np.all(tensor != 0.0)


def test_ori_textline_mode_clips_width() -> None:
    tensor = preprocess_for_ori(
        _image(48, 500), 48, 192, 256, OriPreprocessMode.TEXTLINE, NormalizeParams.paddle_rec()
    )

    assert tensor.shape == (1, 3, 48, 192)
    assert np.allclose(tensor, 1.0)


def test_ori_textline_mode_zero_pads_short_lines() -> None:
    tensor = preprocess_for_ori(
        _image(48, 60), 48, 192, 256, OriPreprocessMode.TEXTLINE, NormalizeParams.paddle_rec()
    )

    assert np.allclose(tensor[:, :, :, :60], 1.0)
    assert np.all(tensor[:, :, :, 60:] == 0.0)


def test_ori_rejects_empty_target() -> None:
    with pytest.raises(PreprocessError):
        preprocess_for_ori(
            _image(10, 10), 0, 192, 256, OriPreprocessMode.TEXTLINE, NormalizeParams.paddle_rec()
        )


def test_threshold_mask_is_strict() -> None:
    mask = np.array([[0.2, 0.3, 0.31]], dtype=np.float32)

    assert threshold_mask(mask, 0.3).tolist() == [[0, 0, 255]]


def test_split_into_blocks_covers_image_with_overlap() -> None:
    blocks = split_into_blocks(_image(100, 100), 64, 16)

    assert [(x, y) for _, x, y in blocks] == [(0, 0), (48, 0), (0, 48), (48, 48)]
    assert blocks[-1][0].shape == (52, 52, 3)


def test_split_into_blocks_requires_block_larger_than_overlap() -> None:
    with pytest.raises(PreprocessError):
        split_into_blocks(_image(10, 10), 8, 8)
