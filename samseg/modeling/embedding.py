# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Cached image embeddings.

An embedding store is the encoder's output for exactly one image together with
the geometry needed to interpret prompts and masks against it. Two families of
exports are supported behind one interface:

- **SingleTensorEmbedding** (SAM / MobileSAM): one ``(1, C, H, W)`` tensor fed
  to the decoder as ``image_embeddings``.
- **MultiTensorEmbedding** (SAM 2): several named encoder outputs
  (``image_embed`` plus high-resolution feature maps), each fed to the decoder
  under its own name.

Stores are immutable. A new encode builds a new store and the session swaps the
reference, so a decoder never observes a half-written embedding. The arrays
returned by ``decoder_inputs`` are copies; a runtime writing into its inputs
cannot reach the cached tensors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np
import torch

from samseg.utils.transforms import LetterboxTransform


class EmbeddingStore(ABC):
    """Encoder output plus the letterbox geometry that produced it."""

    transform: LetterboxTransform
    orig_hw: Tuple[int, int]

    @property
    def orig_width(self) -> int:
        return self.orig_hw[1]

    @property
    def orig_height(self) -> int:
        return self.orig_hw[0]

    @property
    @abstractmethod
    def image_embed(self) -> torch.Tensor:
        """The lowest-resolution, channel-first image embedding ``(1, C, H, W)``."""

    @abstractmethod
    def decoder_inputs(self) -> Dict[str, np.ndarray]:
        """Named float32 arrays this embedding contributes to a decoder run."""


@dataclass(frozen=True, eq=False)
class SingleTensorEmbedding(EmbeddingStore):
    """
    Embedding consisting of a single canonical ``(1, C, H, W)`` tensor.

    Attributes:
        embedding (torch.Tensor): Canonical channel-first embedding.
        transform (LetterboxTransform): Geometry of the encoded image.
        orig_hw (Tuple[int, int]): Original image (height, width).
        input_name (str): Decoder input that receives the embedding.
    """

    embedding: torch.Tensor
    transform: LetterboxTransform
    orig_hw: Tuple[int, int]
    input_name: str = "image_embeddings"

    @property
    def image_embed(self) -> torch.Tensor:
        return self.embedding

    def decoder_inputs(self) -> Dict[str, np.ndarray]:
        return {self.input_name: self.embedding.numpy().copy()}


@dataclass(frozen=True, eq=False)
class MultiTensorEmbedding(EmbeddingStore):
    """
    Embedding made of several named encoder outputs, passed to the decoder by name.

    Attributes:
        tensors (Dict[str, torch.Tensor]): Encoder outputs keyed by output name.
        transform (LetterboxTransform): Geometry of the encoded image.
        orig_hw (Tuple[int, int]): Original image (height, width).
        primary_name (str): Output holding the lowest-resolution image embedding.
    """

    tensors: Dict[str, torch.Tensor]
    transform: LetterboxTransform
    orig_hw: Tuple[int, int]
    primary_name: str = "image_embed"

    @property
    def image_embed(self) -> torch.Tensor:
        if self.primary_name in self.tensors:
            return self.tensors[self.primary_name]
        # Exports that rename the primary output still list it last
        return list(self.tensors.values())[-1]

    def decoder_inputs(self) -> Dict[str, np.ndarray]:
        return {name: tensor.numpy().copy() for name, tensor in self.tensors.items()}
