# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Prompt Encoder - Point Prompt to Decoder Tensors

Exported SAM decoders take the prompt as a fixed set of named tensors rather
than learned embeddings. This module builds them for a single click:

- ``point_coords`` ``(1, 2, 2)``: the click mapped into the letterboxed model
  frame, followed by a padding point at the origin.
- ``point_labels`` ``(1, 2)``: ``1`` for the click (foreground), ``-1`` for the
  padding point. The decoder always expects at least two labelled points when no
  box is given; the ``-1`` label marks the second as non-contributing.
- ``mask_input`` ``(1, 1, 256, 256)`` of zeros and ``has_mask_input`` ``[0]``:
  no prior mask is supplied.
- ``orig_im_size`` ``[target, target]``: only for exports that upscale masks
  inside the graph. Passing the square model size (not the original size) keeps
  the decoder output in the letterboxed frame so padding can be cropped later.

The click is mapped with the transform stored on the embedding, never with a
freshly computed one.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
import torch

from samseg.modeling.embedding import EmbeddingStore

POSITIVE_LABEL = 1.0
PADDING_LABEL = -1.0


@dataclass(frozen=True)
class PointPrompt:
    """A single foreground click in original-image pixel coordinates."""

    x: float
    y: float


class PromptEncoder:
    """Builds the decoder's prompt tensors for one point prompt."""

    def __init__(
        self,
        mask_input_size: Sequence[int] = (256, 256),
        pass_orig_im_size: bool = False,
    ) -> None:
        """
        Args:
            mask_input_size (Sequence[int]): (H, W) of the zeroed mask prior.
            pass_orig_im_size (bool): Feed ``orig_im_size`` (SAM / MobileSAM exports).
        """
        self.mask_input_size = tuple(int(s) for s in mask_input_size)
        self.pass_orig_im_size = pass_orig_im_size

    def __call__(
        self,
        prompt: PointPrompt,
        store: EmbeddingStore,
        debug_name: Optional[str] = None,
    ) -> Dict[str, np.ndarray]:
        model_x, model_y = store.transform.apply_coords(prompt.x, prompt.y)

        point_coords = np.zeros((1, 2, 2), dtype=np.float32)
        point_coords[0, 0] = (model_x, model_y)
        # point_coords[0, 1] stays at the origin: padding point

        point_labels = np.array([[POSITIVE_LABEL, PADDING_LABEL]], dtype=np.float32)

        mask_h, mask_w = self.mask_input_size
        feeds = {
            "point_coords": point_coords,
            "point_labels": point_labels,
            "mask_input": np.zeros((1, 1, mask_h, mask_w), dtype=np.float32),
            "has_mask_input": np.zeros((1,), dtype=np.float32),
        }
        if self.pass_orig_im_size:
            target = float(store.transform.target_size)
            feeds["orig_im_size"] = np.array([target, target], dtype=np.float32)

        if debug_name:
            from samseg.debug_utils import capture_debug_state, is_debug_enabled
            if is_debug_enabled():
                capture_debug_state(
                    component_name=debug_name,
                    state_name="point_coords",
                    data=torch.from_numpy(point_coords),
                    metadata={'component_type': 'prompt_encoder',
                              'original_point': (prompt.x, prompt.y),
                              'target_size': store.transform.target_size},
                )

        return feeds
