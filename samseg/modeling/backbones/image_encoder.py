# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Image Encoder Stage - Letterboxing, Normalisation and Embedding Capture

This module drives the expensive half of a SAM export: it turns one decoded
image into an ``EmbeddingStore`` that every later click reuses.

Pipeline:

1. **Letterbox**: compute the ``LetterboxTransform`` for the image, resize with
   the aspect ratio preserved and paste at the top-left of a black square canvas.
2. **Normalise**: per-channel mean/std (SAM families) or plain 0-1 scaling,
   arranged in the layout the exported graph expects (HWC for MobileSAM, NCHW
   for SAM 2).
3. **Infer**: feed the canvas tensor to the graph's first declared input.
4. **Canonicalise**: exports disagree on whether the embedding is channel-first
   or channel-last. The single embedding (or the primary ``image_embed`` of a
   multi-tensor export) is searched for the axis equal to the known channel
   count and transposed so downstream code only ever sees ``(1, C, H, W)``. Shapes it cannot recognise fall back to a reshape guess and
   a warning rather than an exception.
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import torch
from PIL import Image

from samseg.modeling.embedding import (
    EmbeddingStore,
    MultiTensorEmbedding,
    SingleTensorEmbedding,
)
from samseg.modeling.inference import InferenceBackend
from samseg.utils.transforms import LetterboxTransform, image_to_tensor, letterbox_image


def canonicalize_embedding(
    output: torch.Tensor,
    embed_dim: int,
    embedding_size: Optional[Tuple[int, int]] = None,
) -> torch.Tensor:
    """
    Bring an encoder output into the canonical ``(1, C, H, W)`` layout.

    Args:
        output (torch.Tensor): Raw encoder output.
        embed_dim (int): Known channel count of the embedding (256 for SAM).
        embedding_size (Tuple[int, int], optional): Expected spatial size, used
            only by the reshape fallback.

    Returns:
        torch.Tensor: Contiguous float32 tensor, channel-first with a batch axis.
    """
    output = output.float()

    if output.dim() == 4:
        if output.shape[1] == embed_dim:
            return output.contiguous()
        if output.shape[3] == embed_dim:
            # NHWC -> NCHW
            return output.permute(0, 3, 1, 2).contiguous()
    elif output.dim() == 3:
        if output.shape[0] == embed_dim:
            return output.unsqueeze(0).contiguous()
        if output.shape[2] == embed_dim:
            return output.permute(2, 0, 1).unsqueeze(0).contiguous()

    if embedding_size is not None:
        h, w = embedding_size
        if output.numel() == embed_dim * h * w:
            logging.warning(
                f"Unexpected embedding shape {tuple(output.shape)}, "
                f"reshaping to (1, {embed_dim}, {h}, {w})"
            )
            return output.reshape(1, embed_dim, h, w).contiguous()

    logging.warning(
        f"Unexpected embedding shape {tuple(output.shape)}, keeping the layout as-is"
    )
    while output.dim() < 4:
        output = output.unsqueeze(0)
    return output.contiguous()


class ImageEncoder:
    """
    Encoder stage for one model family.

    The stage is stateless: it holds only family constants (input size,
    normalisation, layouts). Each call produces a brand new ``EmbeddingStore``.
    """

    def __init__(
        self,
        target_size: int = 1024,
        pixel_mean: Optional[Sequence[float]] = None,
        pixel_std: Optional[Sequence[float]] = None,
        input_layout: str = "NCHW",
        embed_dim: int = 256,
        embedding_size: Sequence[int] = (64, 64),
        multi_tensor: bool = False,
        embedding_input_name: str = "image_embeddings",
        primary_output_name: str = "image_embed",
    ) -> None:
        """
        Args:
            target_size (int): Side of the square model input.
            pixel_mean (Sequence[float], optional): Per-channel mean, 0-255 units.
            pixel_std (Sequence[float], optional): Per-channel std, 0-255 units.
                Without mean/std the pixels are scaled to [0, 1].
            input_layout (str): Tensor layout of the encoder input (HWC, CHW, NCHW).
            embed_dim (int): Channel count of the image embedding.
            embedding_size (Sequence[int]): Spatial (H, W) of the image embedding.
            multi_tensor (bool): Keep every encoder output (SAM 2) instead of a
                single embedding tensor (SAM / MobileSAM).
            embedding_input_name (str): Decoder input receiving a single-tensor embedding.
            primary_output_name (str): Encoder output holding the image embedding
                in multi-tensor exports.
        """
        self.target_size = int(target_size)
        self.pixel_mean = tuple(pixel_mean) if pixel_mean is not None else None
        self.pixel_std = tuple(pixel_std) if pixel_std is not None else None
        self.input_layout = input_layout
        self.embed_dim = int(embed_dim)
        self.embedding_size = tuple(int(s) for s in embedding_size)
        self.multi_tensor = multi_tensor
        self.embedding_input_name = embedding_input_name
        self.primary_output_name = primary_output_name

    def preprocess(self, image: Image.Image) -> Tuple[torch.Tensor, LetterboxTransform]:
        """Letterbox and normalise ``image``; return the model tensor and its transform."""
        transform = LetterboxTransform.from_image_size(
            image.width, image.height, self.target_size
        )
        canvas = letterbox_image(image, transform)
        tensor = image_to_tensor(
            canvas,
            pixel_mean=self.pixel_mean,
            pixel_std=self.pixel_std,
            input_layout=self.input_layout,
        )
        return tensor, transform

    def __call__(
        self,
        image: Image.Image,
        backend: InferenceBackend,
        debug_name: Optional[str] = None,
    ) -> EmbeddingStore:
        """
        Encode ``image`` and return a fresh embedding store.

        Args:
            image (PIL.Image): Decoded RGB image.
            backend (InferenceBackend): Bound encoder runtime.
            debug_name (str, optional): Component name for debug capture.

        Returns:
            EmbeddingStore: Single- or multi-tensor store depending on the family.
        """
        orig_hw = (image.height, image.width)
        input_tensor, transform = self.preprocess(image)

        if debug_name:
            from samseg.debug_utils import capture_debug_state, is_debug_enabled
            if is_debug_enabled():
                capture_debug_state(
                    component_name=debug_name,
                    state_name="input_image",
                    data=input_tensor,
                    metadata={'component_type': 'image_encoder', 'stage': 'input',
                              'layout': self.input_layout, 'scale': transform.scale},
                )

        input_name = backend.input_names[0]
        outputs = backend.run({input_name: input_tensor.numpy()})

        if self.multi_tensor:
            tensors = self._collect_outputs(outputs)
            store = MultiTensorEmbedding(
                tensors=tensors,
                transform=transform,
                orig_hw=orig_hw,
                primary_name=self.primary_output_name,
            )
        else:
            first = next(iter(outputs.values()))
            raw = torch.from_numpy(np.array(first, dtype=np.float32, copy=True))
            embedding = canonicalize_embedding(raw, self.embed_dim, self.embedding_size)
            store = SingleTensorEmbedding(
                embedding=embedding,
                transform=transform,
                orig_hw=orig_hw,
                input_name=self.embedding_input_name,
            )

        if debug_name:
            from samseg.debug_utils import capture_debug_state, is_debug_enabled
            if is_debug_enabled():
                capture_debug_state(
                    component_name=debug_name,
                    state_name="image_embedding",
                    data=store.image_embed,
                    metadata={'component_type': 'image_encoder', 'stage': 'final_output'},
                )

        return store

    def _collect_outputs(self, outputs: Dict[str, np.ndarray]) -> Dict[str, torch.Tensor]:
        # Copies detach the store from runtime-owned buffers
        tensors = {}
        for name, value in outputs.items():
            tensors[name] = torch.from_numpy(np.array(value, dtype=np.float32, copy=True))

        # Only the primary embedding has a known channel count
        primary = self.primary_output_name
        if primary not in tensors and tensors:
            primary = list(tensors)[-1]
        if primary in tensors:
            tensors[primary] = canonicalize_embedding(
                tensors[primary], self.embed_dim, self.embedding_size
            )
        return tensors
