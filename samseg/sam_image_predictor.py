# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Segmentation Session - Interactive Point Segmentation Interface

This module provides the SegmentationSession class, the public entry point for
click-to-mask segmentation with exported SAM models. It owns the two model
runtimes, the cached image embedding and the most recent candidate set, and
enforces the order in which they may be used.

Key Features:
- Encoder runs once per image; the decoder runs once per click
- Aspect-preserving letterbox with all coordinate remapping handled internally
- Several ranked mask candidates per click from a single decoder run
- Best candidate rendered eagerly, the others lazily on request
- Transparent CPU fallback when an accelerator cannot be initialised

Workflow:
1. Bind the encoder/decoder models with ``load_models``
2. Encode an image once with ``encode_image``
3. Call ``predict`` for every click (original-image pixel coordinates)
4. Render any other candidate with ``get_mask_image``

State machine:

    EMPTY --load_models--> MODELS_BOUND --encode_image--> ENCODED --predict--> PREDICTED
                                               ^                 ^   |            |
                                               |                 +---+ predict    | get_mask_image
                                               +------ encode_image -------------+

``predict`` and ``get_mask_image`` raise a ``StateError`` subclass when called out
of order. Every stage computes its result into locals and only then replaces the
session's reference, so a failed ``encode_image`` or ``predict`` leaves the
previous state intact.

The session is synchronous and performs no locking. Long-running calls
(``encode_image``, ``predict``) are expected to be dispatched onto a worker by the
caller, one call at a time.

Example Usage:
    session = build_session("configs/mobile_sam.yaml")
    session.load_models("mobile_sam.encoder.onnx", "mobile_sam.decoder.onnx")
    session.encode_image(open("photo.jpg", "rb").read())
    result = session.predict(400, 300)
    other_mask_png = session.get_mask_image(result.ranked[1].index)
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

import numpy as np
import torch
from PIL import Image

from samseg.errors import ModelNotBound, NoPrediction, NotEncoded
from samseg.modeling.embedding import EmbeddingStore
from samseg.modeling.inference import DeviceReport, InferenceBackend
from samseg.modeling.sam.mask_decoder import MaskCandidateSet, RankedCandidate
from samseg.modeling.sam.prompt_encoder import PointPrompt
from samseg.modeling.sam_base import SamBase
from samseg.utils.transforms import as_pil_image, decode_image, encode_png


class SessionState(enum.Enum):
    EMPTY = "empty"
    MODELS_BOUND = "models_bound"
    ENCODED = "encoded"
    PREDICTED = "predicted"


@dataclass
class PredictionResult:
    """
    Result of one click.

    Attributes:
        scores (List[float]): Clamped score per candidate, in candidate order.
        best_mask_bytes (bytes): PNG of the best candidate at original resolution.
        best_index (int): Candidate index of the best mask, -1 if there are none.
        ranked (List[RankedCandidate]): Candidates sorted by score, highest first.
    """

    scores: List[float]
    best_mask_bytes: bytes
    best_index: int
    ranked: List[RankedCandidate] = field(default_factory=list)


class SegmentationSession:
    """
    Interactive point segmentation over one encoder/decoder model pair.

    The session holds at most one image embedding and one candidate set at a
    time. Encoding a new image replaces the embedding and discards the
    candidates; predicting again replaces the candidates.
    """

    def __init__(self, sam_model: SamBase, debug_mode: bool = False) -> None:
        """
        Args:
            sam_model (SamBase): Model family pipeline, usually from ``build_sam``.
            debug_mode (bool): Enable global debug capture of stage tensors
                (see ``samseg.debug_utils``).
        """
        self.model = sam_model
        self.debug_mode = debug_mode
        if debug_mode:
            from samseg.debug_utils import enable_debug_mode
            enable_debug_mode()

        self._encoder: Optional[InferenceBackend] = None
        self._decoder: Optional[InferenceBackend] = None
        self._device_report: Optional[DeviceReport] = None

        self._store: Optional[EmbeddingStore] = None
        self._candidates: Optional[MaskCandidateSet] = None

    # ------------------------------------------------------------------
    # Model binding

    def load_models(
        self,
        encoder_path: str,
        decoder_path: Optional[str] = None,
        use_accelerator: bool = False,
    ) -> DeviceReport:
        """
        Load the encoder and decoder ONNX models and bind them to the session.

        An accelerator that cannot be initialised falls back to CPU; the
        effective device is reported rather than raised. Image state is not
        touched.

        Args:
            encoder_path (str): Encoder ``.onnx`` file.
            decoder_path (str, optional): Decoder ``.onnx`` file. Discovered next
                to the encoder when omitted.
            use_accelerator (bool): Try DirectML/CUDA execution first.

        Returns:
            DeviceReport: Device the encoder runs on.

        Raises:
            FileNotFoundError: If a model file is missing or no decoder is found.
        """
        from samseg.build_sam import find_decoder_path, load_backends

        if decoder_path is None:
            decoder_path = find_decoder_path(encoder_path, self.model.family)
            if decoder_path is None:
                raise FileNotFoundError(
                    f"No {self.model.family} decoder found next to {encoder_path}"
                )
            logging.info(f"Using decoder: {decoder_path}")

        encoder, decoder, report = load_backends(encoder_path, decoder_path, use_accelerator)
        self.bind_backends(encoder, decoder, report)
        return report

    def bind_backends(
        self,
        encoder: InferenceBackend,
        decoder: InferenceBackend,
        device_report: Optional[DeviceReport] = None,
    ) -> None:
        """Bind already-constructed runtimes, replacing any previous pair."""
        self._release_backends()
        self._encoder = encoder
        self._decoder = decoder
        self._device_report = device_report or DeviceReport(
            requested_accelerator=False, device_mode="CPU"
        )

    @property
    def device_report(self) -> Optional[DeviceReport]:
        return self._device_report

    @property
    def device_mode(self) -> str:
        return self._device_report.device_mode if self._device_report else "CPU"

    @property
    def state(self) -> SessionState:
        if self._encoder is None or self._decoder is None:
            return SessionState.EMPTY
        if self._store is None:
            return SessionState.MODELS_BOUND
        if self._candidates is None:
            return SessionState.ENCODED
        return SessionState.PREDICTED

    # ------------------------------------------------------------------
    # Encoding

    def encode_image(self, image_bytes: bytes) -> None:
        """
        Decode ``image_bytes`` and compute the embedding for it.

        Raises:
            ModelNotBound: If no encoder is bound.
            DecodeFailure: If the bytes are not a decodable image.
            InferenceFailure: If the encoder run fails.
        """
        if self._encoder is None:
            raise ModelNotBound("Encoder not loaded. Call load_models(...) first.")
        self.set_image(decode_image(image_bytes))

    @torch.no_grad()
    def set_image(self, image: Union[np.ndarray, Image.Image]) -> None:
        """
        Compute and cache the embedding of an already decoded image.

        Args:
            image (np.ndarray or PIL.Image): RGB image; arrays are HxWxC uint8.
        """
        if self._encoder is None:
            raise ModelNotBound("Encoder not loaded. Call load_models(...) first.")
        image = as_pil_image(image)

        logging.info("Computing image embeddings for the provided image...")
        store = self.model.encode(
            image, self._encoder, debug_name="image_encoder" if self.debug_mode else None
        )

        # Candidates belong to the previous store
        self._candidates = None
        self._store = store
        logging.info("Image embeddings computed.")

    # ------------------------------------------------------------------
    # Prediction

    def _require_store(self) -> EmbeddingStore:
        if self._encoder is None or self._decoder is None:
            raise ModelNotBound("Models not loaded. Call load_models(...) first.")
        if self._store is None:
            raise NotEncoded(
                "An image must be set with .encode_image(...) before mask prediction."
            )
        return self._store

    @torch.no_grad()
    def predict(self, x: float, y: float) -> PredictionResult:
        """
        Predict masks for a click at ``(x, y)`` in original-image pixels.

        Returns:
            PredictionResult: Clamped scores, the best mask as PNG, its index and
            the ranked candidates.

        Raises:
            ModelNotBound: If the models are not loaded.
            NotEncoded: If no image has been encoded.
            InferenceFailure: If the decoder run fails.
        """
        store = self._require_store()
        prompt = PointPrompt(float(x), float(y))

        candidates, best_raster = self.model.decode(
            prompt, store, self._decoder,
            debug_name="mask_decoder" if self.debug_mode else None,
        )
        best_mask_bytes = encode_png(best_raster) if best_raster is not None else b""

        self._candidates = candidates
        return PredictionResult(
            scores=list(candidates.scores),
            best_mask_bytes=best_mask_bytes,
            best_index=candidates.best_index if len(candidates) else -1,
            ranked=candidates.ranked(),
        )

    def get_mask_image(self, index: int) -> bytes:
        """
        Render candidate ``index`` of the latest prediction as a PNG.

        Returns:
            bytes: Single-channel PNG at original resolution, or ``b""`` if
            ``index`` is not a candidate of the latest prediction.

        Raises:
            ModelNotBound / NotEncoded / NoPrediction: When called out of order.
        """
        self._require_store()
        if self._candidates is None:
            raise NoPrediction("Call .predict(...) before requesting a mask image.")
        if not 0 <= index < len(self._candidates):
            return b""
        return encode_png(self.model.render(self._candidates, index))

    def ranked_candidates(self) -> List[RankedCandidate]:
        """Ranking of the latest prediction's candidates, highest score first."""
        self._require_store()
        if self._candidates is None:
            raise NoPrediction("Call .predict(...) before ranking candidates.")
        return self._candidates.ranked()

    def get_image_embedding(self) -> torch.Tensor:
        """Cached ``(1, C, H, W)`` embedding of the current image."""
        if self._store is None:
            raise NotEncoded(
                "An image must be set with .encode_image(...) to generate an embedding."
            )
        return self._store.image_embed

    # ------------------------------------------------------------------
    # Lifecycle

    def reset_predictor(self) -> None:
        """Discard the cached embedding and candidates; keep the bound models."""
        self._candidates = None
        self._store = None

    def _release_backends(self) -> None:
        for backend in (self._encoder, self._decoder):
            if backend is not None:
                backend.close()
        self._encoder = None
        self._decoder = None

    def close(self) -> None:
        """Release both runtimes and all cached state."""
        self.reset_predictor()
        self._release_backends()
        self._device_report = None

    def __enter__(self) -> "SegmentationSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
