# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Model Family Builder and Factory Functions

This module provides factory functions to construct the per-family SAM pipeline
(``SamBase``) from Hydra configs, to load the exported encoder/decoder ONNX
models, and to wire both into a ready ``SegmentationSession``.

Key Functions:
- build_sam(): Creates the family pipeline from a YAML config
- build_session(): Creates a session, optionally loading the ONNX models
- build_session_from_family(): Same, selecting the config by family name
- find_decoder_path(): Finds the decoder export that belongs to an encoder
- load_backends(): Loads both ONNX models with accelerator fallback

The module supports two exported model families:
- MobileSAM: single embedding tensor, HWC input, hard threshold masks
- SAM 2 (Hiera tiny/small/base_plus/large): multi-tensor embedding, NCHW input,
  soft sigmoid masks

Configuration is managed through YAML files that specify:
- Encoder input size, normalisation and tensor layout
- Embedding layout and the decoder inputs it feeds
- Prompt tensors and the mask rendering mode
"""

import glob
import logging
import os

from hydra import compose
from hydra.utils import instantiate
from omegaconf import OmegaConf

from samseg.modeling.inference import load_onnx_session
from samseg.sam_image_predictor import SegmentationSession

# Mapping of model family names to their config files
MODEL_FAMILY_TO_CONFIG = {
    "mobile_sam": "configs/mobile_sam.yaml",
    "sam2": "configs/sam2/sam2_hiera.yaml",
}

# Size variants of SAM 2 exports, as they appear in file names
SAM2_VARIANTS = ("tiny", "small", "base_plus", "large")


def build_sam(config_file, hydra_overrides_extra=[], **kwargs):
    """
    Build the encoder/decoder pipeline of one model family.

    Args:
        config_file (str): Path to YAML configuration file (relative to the package),
                          e.g. "configs/mobile_sam.yaml".
        hydra_overrides_extra (list): Additional Hydra configuration overrides,
                          e.g. ["++model.mask_renderer.mask_mode=sigmoid"].
        **kwargs: Additional arguments (currently unused).

    Returns:
        SamBase: Configured pipeline holding the family constants.
    """
    # Load configuration using Hydra and resolve any variable references
    cfg = compose(config_name=config_file, overrides=hydra_overrides_extra)
    OmegaConf.resolve(cfg)

    model = instantiate(cfg.model, _recursive_=True)
    logging.info(f"Built model pipeline: {model}")
    return model


def load_backends(encoder_path, decoder_path, use_accelerator=False):
    """
    Load the encoder and decoder ONNX models.

    Both models get the same device request. The encoder's device is the one
    reported, since it dominates the run time.

    Returns:
        tuple: (encoder_backend, decoder_backend, device_report)

    Raises:
        FileNotFoundError: If either model file does not exist.
        InferenceFailure: If a model cannot be loaded even on CPU.
    """
    # Both files must exist before either is loaded
    for path in (encoder_path, decoder_path):
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Model file not found: {path}")

    encoder, report = load_onnx_session(encoder_path, use_accelerator=use_accelerator)
    try:
        decoder, decoder_report = load_onnx_session(decoder_path, use_accelerator=use_accelerator)
    except Exception:
        encoder.close()
        raise

    if decoder_report.device_mode != report.device_mode:
        logging.warning(
            f"Encoder runs on {report.device_mode} but decoder runs on {decoder_report.device_mode}"
        )
    logging.info(f"Models loaded. Device: {report.device_mode}")
    return encoder, decoder, report


def build_session(
    config_file,
    encoder_path=None,
    decoder_path=None,
    use_accelerator=False,
    debug_mode=False,
    hydra_overrides_extra=[],
    **kwargs,
):
    """
    Build a segmentation session for one model family.

    Args:
        config_file (str): Family config, see ``MODEL_FAMILY_TO_CONFIG``.
        encoder_path (str, optional): Encoder ``.onnx`` file. When given, the models
                          are loaded right away; otherwise call ``load_models`` later.
        decoder_path (str, optional): Decoder ``.onnx`` file. Discovered next to the
                          encoder if omitted.
        use_accelerator (bool): Try DirectML/CUDA before CPU.
        debug_mode (bool): Enable capture of intermediate tensors.
        hydra_overrides_extra (list): Additional Hydra configuration overrides.
        **kwargs: Additional arguments passed to build_sam().

    Returns:
        SegmentationSession: Session in the EMPTY state, or MODELS_BOUND if an
        encoder path was given.
    """
    model = build_sam(config_file, hydra_overrides_extra=hydra_overrides_extra, **kwargs)
    session = SegmentationSession(model, debug_mode=debug_mode)
    if encoder_path is not None:
        session.load_models(encoder_path, decoder_path, use_accelerator=use_accelerator)
    return session


def build_session_from_family(family, **kwargs):
    """
    Build a session by family name ("mobile_sam" or "sam2").

    Example:
        >>> session = build_session_from_family("sam2", encoder_path="sam2_hiera_small.encoder.onnx")
        >>> session.encode_image(image_bytes)
    """
    if family not in MODEL_FAMILY_TO_CONFIG:
        raise ValueError(
            f"Unknown model family {family!r}, expected one of {sorted(MODEL_FAMILY_TO_CONFIG)}"
        )
    return build_session(MODEL_FAMILY_TO_CONFIG[family], **kwargs)


def find_decoder_path(encoder_path, family):
    """
    Find the decoder export that belongs to ``encoder_path``.

    Candidates are the ``*decoder*.onnx`` files in the encoder's directory.
    For SAM 2 a decoder with the encoder's size variant and ``sam2`` in its name
    wins, then any ``sam2``/``hiera`` decoder. For MobileSAM a decoder with
    ``mobile`` in its name wins, then any decoder that is not a SAM 2 one.

    Args:
        encoder_path (str): Path of the encoder model.
        family (str): Model family of the encoder ("mobile_sam" or "sam2").

    Returns:
        str or None: Path of the decoder, or None if nothing matches.
    """
    folder = os.path.dirname(os.path.abspath(encoder_path))
    encoder_name = os.path.basename(encoder_path).lower()
    decoders = sorted(glob.glob(os.path.join(folder, "*decoder*.onnx")))
    names = [os.path.basename(path).lower() for path in decoders]

    def first(predicate):
        for path, name in zip(decoders, names):
            if predicate(name):
                return path
        return None

    if family == "sam2":
        variant = next((v for v in SAM2_VARIANTS if v in encoder_name), None)
        found = None
        if variant is not None:
            found = first(lambda name: variant in name and "sam2" in name)
        return found or first(lambda name: "sam2" in name or "hiera" in name)

    found = first(lambda name: "mobile" in name)
    return found or first(lambda name: "sam2" not in name and "hiera" not in name)
