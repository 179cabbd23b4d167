# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Mask Decoder Stage - Candidate Masks and Quality Scores

The cheap half of a SAM export runs once per click. Given the cached embedding
and the prompt tensors it returns several alternative masks for the same click
(the multi-mask output that handles ambiguous prompts: part, object, group)
plus a predicted IoU per mask.

This module reads those outputs back into a ``MaskCandidateSet``:

- Mask logits are canonicalised to ``(num_candidates, H, W)`` whatever rank the
  export uses (``(1, N, H, W)``, ``(N, H, W)`` or a lone ``(H, W)``).
- IoU predictions are clamped to ``[0, 1]``. Exports without a score output get
  a score of ``0.0`` per candidate so ranking still works.
- The best candidate is the first one with the maximal score.

The set keeps a reference to the embedding store that produced it, so a mask is
always rendered with the geometry of its own image.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import torch

from samseg.modeling.embedding import EmbeddingStore
from samseg.modeling.inference import InferenceBackend


@dataclass(frozen=True)
class RankedCandidate:
    """Read-only view of one candidate's position in the score ranking."""

    index: int
    score: float


@dataclass(frozen=True, eq=False)
class MaskCandidateSet:
    """
    Raw decoder output for one prompt.

    Attributes:
        masks (torch.Tensor): Mask logits of shape ``(num_candidates, H, W)``.
        scores (Tuple[float, ...]): One clamped score per candidate, in candidate order.
        embedding (EmbeddingStore): Store the prediction was made against.
    """

    masks: torch.Tensor
    scores: Tuple[float, ...]
    embedding: EmbeddingStore

    def __len__(self) -> int:
        return int(self.masks.shape[0])

    @property
    def mask_size(self) -> Tuple[int, int]:
        """(H, W) of the raw candidate masks."""
        return int(self.masks.shape[-2]), int(self.masks.shape[-1])

    @property
    def best_index(self) -> int:
        best = 0
        for i, score in enumerate(self.scores):
            if score > self.scores[best]:
                best = i
        return best

    def ranked(self) -> List[RankedCandidate]:
        """Candidates sorted by score, highest first; ties keep candidate order."""
        order = sorted(range(len(self.scores)), key=lambda i: -self.scores[i])
        return [RankedCandidate(index=i, score=self.scores[i]) for i in order]


def canonicalize_masks(masks: torch.Tensor) -> torch.Tensor:
    """Bring decoder mask logits to ``(num_candidates, H, W)``."""
    masks = masks.float()
    if masks.dim() == 4:
        return masks[0].contiguous()
    if masks.dim() == 3:
        return masks.contiguous()
    if masks.dim() == 2:
        return masks.unsqueeze(0).contiguous()
    logging.warning(
        f"Unexpected mask output shape {tuple(masks.shape)}, "
        "flattening leading dimensions into candidates"
    )
    return masks.reshape(-1, masks.shape[-2], masks.shape[-1]).contiguous()


def clamp_scores(raw: Optional[torch.Tensor], num_candidates: int) -> Tuple[float, ...]:
    """
    Clamp predicted IoUs into ``[0, 1]``, one per candidate.

    Missing or short score outputs are padded with ``0.0``.
    """
    if raw is None:
        return tuple(0.0 for _ in range(num_candidates))
    flat = torch.clamp(raw.float().flatten(), 0.0, 1.0)[:num_candidates].tolist()
    flat.extend(0.0 for _ in range(num_candidates - len(flat)))
    return tuple(float(s) for s in flat)


class MaskDecoder:
    """Runs the decoder graph and reads back the candidate set."""

    def __init__(
        self,
        masks_output_name: str = "masks",
        scores_output_name: str = "iou_predictions",
    ) -> None:
        self.masks_output_name = masks_output_name
        self.scores_output_name = scores_output_name

    def __call__(
        self,
        prompt_feeds: Dict[str, np.ndarray],
        store: EmbeddingStore,
        backend: InferenceBackend,
        debug_name: Optional[str] = None,
    ) -> MaskCandidateSet:
        """
        Decode masks for one prompt against ``store``.

        Args:
            prompt_feeds (Dict[str, np.ndarray]): Tensors from the ``PromptEncoder``.
            store (EmbeddingStore): Cached embedding of the current image.
            backend (InferenceBackend): Bound decoder runtime.
            debug_name (str, optional): Component name for debug capture.

        Returns:
            MaskCandidateSet: Canonical masks, clamped scores and the originating store.
        """
        feeds = dict(store.decoder_inputs())
        feeds.update(prompt_feeds)

        # Graphs reject unknown inputs, so only feed what the decoder declares
        declared = backend.input_names
        if declared:
            missing = [name for name in declared if name not in feeds]
            if missing:
                logging.warning(f"Decoder inputs without a value: {missing}")
            feeds = {name: value for name, value in feeds.items() if name in declared}

        outputs = backend.run(feeds)

        if self.masks_output_name in outputs:
            raw_masks = outputs[self.masks_output_name]
        else:
            raw_masks = next(iter(outputs.values()))
        masks = canonicalize_masks(
            torch.from_numpy(np.array(raw_masks, dtype=np.float32, copy=True))
        )

        raw_scores = outputs.get(self.scores_output_name)
        scores = clamp_scores(
            torch.from_numpy(np.array(raw_scores, dtype=np.float32, copy=True))
            if raw_scores is not None
            else None,
            int(masks.shape[0]),
        )

        if debug_name:
            from samseg.debug_utils import capture_debug_state, is_debug_enabled
            if is_debug_enabled():
                capture_debug_state(
                    component_name=debug_name,
                    state_name="mask_logits",
                    data=masks,
                    metadata={'component_type': 'mask_decoder', 'stage': 'prediction'},
                )
                capture_debug_state(
                    component_name=debug_name,
                    state_name="iou_scores",
                    data=torch.tensor(scores),
                    metadata={'component_type': 'mask_decoder', 'stage': 'prediction'},
                )

        return MaskCandidateSet(masks=masks, scores=scores, embedding=store)
