import numpy as np
import pytest
import torch

from samseg.errors import (
    DecodeFailure,
    InferenceFailure,
    ModelNotBound,
    NoPrediction,
    NotEncoded,
    StateError,
)
from samseg.sam_image_predictor import SegmentationSession, SessionState

from conftest import (
    PIXEL_MEAN,
    PIXEL_STD,
    decode_png,
    mobile_sam_decoder,
    mobile_sam_encoder,
    mobile_sam_pipeline,
    png_bytes,
)


def test_calls_out_of_order_without_models():
    session = SegmentationSession(mobile_sam_pipeline())
    assert session.state is SessionState.EMPTY
    with pytest.raises(ModelNotBound):
        session.predict(10, 10)
    with pytest.raises(ModelNotBound):
        session.get_mask_image(0)
    with pytest.raises(ModelNotBound):
        session.encode_image(png_bytes(8, 8))


def test_predict_before_encode_raises_not_encoded(mobile_session):
    assert mobile_session.state is SessionState.MODELS_BOUND
    with pytest.raises(NotEncoded):
        mobile_session.predict(10, 10)
    with pytest.raises(StateError):
        mobile_session.get_mask_image(0)


def test_get_mask_image_before_predict_raises(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    assert mobile_session.state is SessionState.ENCODED
    with pytest.raises(NoPrediction):
        mobile_session.get_mask_image(0)
    with pytest.raises(NoPrediction):
        mobile_session.ranked_candidates()


def test_state_errors_are_runtime_errors(mobile_session):
    with pytest.raises(RuntimeError):
        mobile_session.predict(0, 0)


def test_mobile_sam_click_end_to_end(image_800x600):
    encoder, decoder = mobile_sam_encoder(), mobile_sam_decoder()
    session = SegmentationSession(mobile_sam_pipeline())
    session.bind_backends(encoder, decoder)
    session.encode_image(image_800x600)

    hwc = encoder.calls[0]["images"]
    assert hwc.shape == (1024, 1024, 3)
    # Letterbox padding is black, which normalises to -mean/std
    expected_pad = -np.array(PIXEL_MEAN, dtype=np.float32) / np.array(PIXEL_STD, dtype=np.float32)
    assert np.allclose(hwc[1000, 10], expected_pad)
    assert not np.allclose(hwc[10, 10], expected_pad)

    result = session.predict(400, 300)
    feeds = decoder.calls[0]
    assert feeds["point_coords"][0, 0].tolist() == pytest.approx([512.0, 384.0])
    assert feeds["point_coords"][0, 1].tolist() == [0.0, 0.0]
    assert feeds["point_labels"].tolist() == [[1.0, -1.0]]
    assert feeds["orig_im_size"].tolist() == [1024.0, 1024.0]
    assert feeds["image_embeddings"].shape == (1, 256, 64, 64)

    assert result.scores == pytest.approx([0.5, 1.0, 0.0])
    assert result.best_index == 1
    assert [c.index for c in result.ranked] == [1, 0, 2]

    best = decode_png(result.best_mask_bytes)
    assert best.size == (800, 600)
    assert best.mode == "L"
    # Padding rows were negative; nothing of them may leak into the resized mask
    assert np.all(np.asarray(best) == 255)
    assert session.state is SessionState.PREDICTED


def test_get_mask_image_is_lazy_and_deterministic(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    result = mobile_session.predict(400, 300)

    first = mobile_session.get_mask_image(2)
    second = mobile_session.get_mask_image(2)
    assert first == second
    assert np.all(np.asarray(decode_png(first)) == 0)

    assert mobile_session.get_mask_image(result.best_index) == result.best_mask_bytes
    assert [c.index for c in mobile_session.ranked_candidates()] == [1, 0, 2]


@pytest.mark.parametrize("index", [-1, 3, 100])
def test_get_mask_image_out_of_range_is_empty(mobile_session, image_800x600, index):
    mobile_session.encode_image(image_800x600)
    mobile_session.predict(1, 1)
    assert mobile_session.get_mask_image(index) == b""


def test_clicks_reuse_one_embedding(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    for x, y in [(1, 1), (799, 599), (400, 300)]:
        mobile_session.predict(x, y)
    assert len(mobile_session._encoder.calls) == 1
    assert len(mobile_session._decoder.calls) == 3
    assert mobile_session._decoder.calls[1]["point_coords"][0, 0].tolist() == pytest.approx(
        [799 * 1.28, 599 * 1.28]
    )


def test_encode_discards_previous_candidates(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    mobile_session.predict(10, 10)
    mobile_session.encode_image(png_bytes(1024, 1024))
    assert mobile_session.state is SessionState.ENCODED
    with pytest.raises(NoPrediction):
        mobile_session.get_mask_image(0)

    result = mobile_session.predict(10, 10)
    # Identity transform: the click goes through unscaled
    assert mobile_session._decoder.calls[-1]["point_coords"][0, 0].tolist() == [10.0, 10.0]
    assert decode_png(result.best_mask_bytes).size == (1024, 1024)


def test_failed_decode_keeps_previous_state(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    before = mobile_session.predict(400, 300)

    with pytest.raises(DecodeFailure):
        mobile_session.encode_image(b"not an image")
    with pytest.raises(DecodeFailure):
        mobile_session.encode_image(b"")

    assert mobile_session.state is SessionState.PREDICTED
    assert mobile_session.get_mask_image(before.best_index) == before.best_mask_bytes


def test_failed_encoder_run_keeps_previous_embedding(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    embedding = mobile_session.get_image_embedding()

    mobile_session._encoder.error = InferenceFailure("encoder exploded")
    with pytest.raises(InferenceFailure, match="encoder exploded"):
        mobile_session.encode_image(png_bytes(64, 64))

    assert mobile_session.get_image_embedding() is embedding
    mobile_session.predict(400, 300)
    assert mobile_session._decoder.calls[-1]["point_coords"][0, 0].tolist() == pytest.approx(
        [512.0, 384.0]
    )


def test_failed_predict_keeps_previous_candidates(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    before = mobile_session.predict(400, 300)

    mobile_session._decoder.error = InferenceFailure("decoder exploded")
    with pytest.raises(InferenceFailure):
        mobile_session.predict(5, 5)

    assert mobile_session.get_mask_image(before.best_index) == before.best_mask_bytes


def test_no_candidates_gives_empty_result(image_800x600):
    session = SegmentationSession(mobile_sam_pipeline())
    session.bind_backends(
        mobile_sam_encoder(),
        mobile_sam_decoder(
            masks=np.zeros((1, 0, 256, 256), dtype=np.float32),
            scores=np.zeros((1, 0), dtype=np.float32),
        ),
    )
    session.encode_image(image_800x600)
    result = session.predict(10, 10)
    assert result.scores == []
    assert result.best_index == -1
    assert result.best_mask_bytes == b""
    assert result.ranked == []
    assert session.get_mask_image(0) == b""


def test_sam2_session_feeds_every_encoder_output(sam2_session):
    sam2_session.encode_image(png_bytes(600, 800))
    result = sam2_session.predict(300, 400)

    encoder_feeds = sam2_session._encoder.calls[0]
    assert encoder_feeds["image"].shape == (1, 3, 1024, 1024)

    feeds = sam2_session._decoder.calls[0]
    assert set(feeds) == {
        "image_embed",
        "high_res_feats_0",
        "high_res_feats_1",
        "point_coords",
        "point_labels",
        "mask_input",
        "has_mask_input",
    }
    assert feeds["high_res_feats_0"].shape == (1, 32, 256, 256)
    assert feeds["point_coords"][0, 0].tolist() == pytest.approx([384.0, 512.0])

    # Ties resolve to the first maximal candidate
    assert result.best_index == 1
    assert result.scores == pytest.approx([0.2, 0.7, 0.7])

    mask = np.asarray(decode_png(result.best_mask_bytes)).astype(int)
    assert mask.shape == (800, 600)
    assert np.all(np.abs(mask - 127) <= 1)

    assert tuple(sam2_session.get_image_embedding().shape) == (1, 256, 64, 64)


def test_set_image_accepts_arrays(mobile_session):
    mobile_session.set_image(np.zeros((600, 800, 3), dtype=np.uint8))
    assert mobile_session.state is SessionState.ENCODED
    assert mobile_session.get_image_embedding().shape == torch.Size([1, 256, 64, 64])


def test_reset_predictor_keeps_models(mobile_session, image_800x600):
    mobile_session.encode_image(image_800x600)
    mobile_session.predict(1, 1)
    mobile_session.reset_predictor()
    assert mobile_session.state is SessionState.MODELS_BOUND
    with pytest.raises(NotEncoded):
        mobile_session.get_image_embedding()
    mobile_session.encode_image(image_800x600)
    assert mobile_session.state is SessionState.ENCODED


def test_rebinding_models_releases_previous_pair(mobile_session):
    old_encoder, old_decoder = mobile_session._encoder, mobile_session._decoder
    mobile_session.bind_backends(mobile_sam_encoder(), mobile_sam_decoder())
    assert old_encoder.closed and old_decoder.closed
    assert mobile_session.device_mode == "CPU"


def test_close_and_context_manager(image_800x600):
    encoder, decoder = mobile_sam_encoder(), mobile_sam_decoder()
    with SegmentationSession(mobile_sam_pipeline()) as session:
        session.bind_backends(encoder, decoder)
        session.encode_image(image_800x600)
    assert encoder.closed and decoder.closed
    assert session.state is SessionState.EMPTY
    assert session.device_report is None
