# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Mask Renderer - Candidate Logits to Original-Resolution Rasters

Rendering one candidate:

1. Slice the candidate's ``(H, W)`` logits out of the cached set.
2. Convert to 8-bit opacity, either a hard threshold (``logit > threshold``
   is opaque) or a soft sigmoid mask (``255 * sigmoid(logit)``). The mode is a
   constant of the model family: MobileSAM exports render hard masks, SAM 2
   exports render soft ones.
3. Crop away the letterbox padding in proportion to the mask resolution.
4. Resize the crop to the original image size.

Rendering never writes to the candidate set, so rendering the same candidate
twice gives byte-identical output.
"""

from PIL import Image
import torch

from samseg.modeling.sam.mask_decoder import MaskCandidateSet
from samseg.utils.transforms import RESAMPLE_MODES, crop_and_resize_mask

MASK_MODES = ("threshold", "sigmoid")


class MaskRenderer:
    def __init__(
        self,
        mask_mode: str = "threshold",
        mask_threshold: float = 0.0,
        resample: str = "bicubic",
    ) -> None:
        """
        Args:
            mask_mode (str): ``threshold`` for hard masks or ``sigmoid`` for soft masks.
            mask_threshold (float): Logit above which a pixel is opaque in
                threshold mode. 0.0 is the natural decision boundary.
            resample (str): Pillow filter used to restore the original size.
        """
        if mask_mode not in MASK_MODES:
            raise ValueError(f"Unknown mask mode {mask_mode!r}, expected one of {MASK_MODES}")
        if resample not in RESAMPLE_MODES:
            raise ValueError(
                f"Unknown resample filter {resample!r}, expected one of {tuple(RESAMPLE_MODES)}"
            )
        self.mask_mode = mask_mode
        self.mask_threshold = mask_threshold
        self.resample = resample

    def to_opacity(self, logits: torch.Tensor) -> torch.Tensor:
        """Convert ``(H, W)`` logits into a uint8 opacity tensor."""
        if self.mask_mode == "sigmoid":
            return (torch.sigmoid(logits) * 255.0).to(torch.uint8)
        return (logits > self.mask_threshold).to(torch.uint8) * 255

    def __call__(self, candidates: MaskCandidateSet, index: int) -> Image.Image:
        """
        Render candidate ``index`` at the original image resolution.

        Raises:
            IndexError: If ``index`` is not a candidate of ``candidates``.
        """
        if not 0 <= index < len(candidates):
            raise IndexError(
                f"Mask index {index} out of range for {len(candidates)} candidates"
            )
        store = candidates.embedding
        opacity = self.to_opacity(candidates.masks[index])
        return crop_and_resize_mask(
            opacity, store.transform, store.orig_hw, resample=self.resample
        )
