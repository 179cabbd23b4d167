import io

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from PIL import Image

from samseg.debug_utils import disable_debug_mode
from samseg.modeling.backbones.image_encoder import ImageEncoder
from samseg.modeling.inference import InferenceBackend
from samseg.modeling.sam.mask_decoder import MaskDecoder
from samseg.modeling.sam.mask_renderer import MaskRenderer
from samseg.modeling.sam.prompt_encoder import PromptEncoder
from samseg.modeling.sam_base import SamBase

PIXEL_MEAN = [123.675, 116.28, 103.53]
PIXEL_STD = [58.395, 57.12, 57.375]

MOBILE_SAM_DECODER_INPUTS = [
    "image_embeddings",
    "point_coords",
    "point_labels",
    "mask_input",
    "has_mask_input",
    "orig_im_size",
]
SAM2_DECODER_INPUTS = [
    "image_embed",
    "high_res_feats_0",
    "high_res_feats_1",
    "point_coords",
    "point_labels",
    "mask_input",
    "has_mask_input",
]


class FakeBackend(InferenceBackend):
    """Stands in for an ONNX session: records feeds and returns canned outputs."""

    def __init__(self, input_names, outputs, error=None):
        self._input_names = list(input_names)
        self.outputs = dict(outputs)
        self.error = error
        self.calls = []
        self.closed = False

    @property
    def input_names(self):
        return list(self._input_names)

    @property
    def output_names(self):
        return list(self.outputs)

    def run(self, feeds):
        self.calls.append(dict(feeds))
        if self.error is not None:
            raise self.error
        return {name: np.array(value, copy=True) for name, value in self.outputs.items()}

    def close(self):
        self.closed = True


def png_bytes(width, height, color=(200, 30, 30)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def decode_png(data):
    return Image.open(io.BytesIO(data))


def mobile_sam_pipeline():
    return SamBase(
        image_encoder=ImageEncoder(
            target_size=1024,
            pixel_mean=PIXEL_MEAN,
            pixel_std=PIXEL_STD,
            input_layout="HWC",
            multi_tensor=False,
        ),
        prompt_encoder=PromptEncoder(pass_orig_im_size=True),
        mask_decoder=MaskDecoder(),
        mask_renderer=MaskRenderer(mask_mode="threshold"),
        family="mobile_sam",
    )


def sam2_pipeline():
    return SamBase(
        image_encoder=ImageEncoder(
            target_size=1024,
            pixel_mean=PIXEL_MEAN,
            pixel_std=PIXEL_STD,
            input_layout="NCHW",
            multi_tensor=True,
        ),
        prompt_encoder=PromptEncoder(pass_orig_im_size=False),
        mask_decoder=MaskDecoder(),
        mask_renderer=MaskRenderer(mask_mode="sigmoid"),
        family="sam2",
    )


def mobile_sam_encoder(embedding=None):
    if embedding is None:
        rng = np.random.default_rng(0)
        embedding = rng.normal(size=(1, 256, 64, 64)).astype(np.float32)
    return FakeBackend(["images"], {"image_embeddings": embedding})


def letterboxed_logits(num_candidates=3, size=256, valid_rows=192):
    """Positive logits over the image area, negative over the bottom padding."""
    logits = np.full((1, num_candidates, size, size), -5.0, dtype=np.float32)
    logits[:, :, :valid_rows, :] = 5.0
    return logits


def mobile_sam_decoder(masks=None, scores=None):
    if masks is None:
        masks = letterboxed_logits()
        # Last candidate is empty everywhere
        masks[:, 2] = -5.0
    if scores is None:
        scores = np.array([[0.5, 1.4, -0.2]], dtype=np.float32)
    return FakeBackend(
        MOBILE_SAM_DECODER_INPUTS, {"masks": masks, "iou_predictions": scores}
    )


def sam2_encoder():
    return FakeBackend(
        ["image"],
        {
            "high_res_feats_0": np.zeros((1, 32, 256, 256), dtype=np.float32),
            "high_res_feats_1": np.zeros((1, 64, 128, 128), dtype=np.float32),
            "image_embed": np.ones((1, 256, 64, 64), dtype=np.float32),
        },
    )


def sam2_decoder():
    return FakeBackend(
        SAM2_DECODER_INPUTS,
        {
            "masks": np.zeros((1, 3, 256, 256), dtype=np.float32),
            "iou_predictions": np.array([[0.2, 0.7, 0.7]], dtype=np.float32),
        },
    )


@pytest.fixture(autouse=True)
def _reset_debug_capture():
    yield
    disable_debug_mode()


@pytest.fixture
def image_800x600():
    return png_bytes(800, 600)


@pytest.fixture
def mobile_session():
    from samseg.sam_image_predictor import SegmentationSession

    session = SegmentationSession(mobile_sam_pipeline())
    session.bind_backends(mobile_sam_encoder(), mobile_sam_decoder())
    return session


@pytest.fixture
def sam2_session():
    from samseg.sam_image_predictor import SegmentationSession

    session = SegmentationSession(sam2_pipeline())
    session.bind_backends(sam2_encoder(), sam2_decoder())
    return session
