# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
SamBase - One Model Family's Encoder/Decoder Pipeline

A model family (MobileSAM, SAM 2, ...) is a fixed combination of stage
constants: input size and normalisation, embedding layout, decoder inputs and
the mask rendering mode. ``SamBase`` bundles the four stages and is built from a
Hydra config (see ``samseg/configs``). It holds no image state and no runtimes.
Those belong to the ``SegmentationSession``.
"""

from typing import Optional, Tuple

from PIL import Image

from samseg.modeling.backbones.image_encoder import ImageEncoder
from samseg.modeling.embedding import EmbeddingStore
from samseg.modeling.inference import InferenceBackend
from samseg.modeling.sam.mask_decoder import MaskCandidateSet, MaskDecoder
from samseg.modeling.sam.mask_renderer import MaskRenderer
from samseg.modeling.sam.prompt_encoder import PointPrompt, PromptEncoder


class SamBase:
    def __init__(
        self,
        image_encoder: ImageEncoder,
        prompt_encoder: PromptEncoder,
        mask_decoder: MaskDecoder,
        mask_renderer: MaskRenderer,
        family: str = "sam",
    ) -> None:
        self.image_encoder = image_encoder
        self.prompt_encoder = prompt_encoder
        self.mask_decoder = mask_decoder
        self.mask_renderer = mask_renderer
        self.family = family

    @property
    def image_size(self) -> int:
        return self.image_encoder.target_size

    def encode(
        self,
        image: Image.Image,
        backend: InferenceBackend,
        debug_name: Optional[str] = None,
    ) -> EmbeddingStore:
        return self.image_encoder(image, backend, debug_name=debug_name)

    def decode(
        self,
        prompt: PointPrompt,
        store: EmbeddingStore,
        backend: InferenceBackend,
        debug_name: Optional[str] = None,
    ) -> Tuple[MaskCandidateSet, Optional[Image.Image]]:
        """
        Decode one point prompt and render the best candidate right away.

        The remaining candidates stay as raw logits in the returned set and are
        only rendered if the caller asks for them.

        Returns:
            Tuple of the candidate set and the best candidate's raster, or
            ``None`` for the raster when the decoder returned no candidates.
        """
        prompt_feeds = self.prompt_encoder(prompt, store, debug_name=debug_name)
        candidates = self.mask_decoder(prompt_feeds, store, backend, debug_name=debug_name)
        if len(candidates) == 0:
            return candidates, None
        return candidates, self.mask_renderer(candidates, candidates.best_index)

    def render(self, candidates: MaskCandidateSet, index: int) -> Image.Image:
        return self.mask_renderer(candidates, index)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(family={self.family!r}, image_size={self.image_size}, "
            f"multi_tensor={self.image_encoder.multi_tensor}, "
            f"mask_mode={self.mask_renderer.mask_mode!r})"
        )
