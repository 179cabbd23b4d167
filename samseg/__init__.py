# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
samseg - Promptable Point Segmentation over Exported SAM Models

samseg runs exported Segment Anything encoder/decoder pairs (MobileSAM and
SAM 2) through ONNX Runtime for interactive click-to-mask segmentation. The
expensive image encoder runs once per image; every click after that only runs
the lightweight mask decoder against the cached embedding.

Key Features:
- Aspect-preserving letterbox with automatic coordinate remapping
- Single- and multi-tensor image embeddings behind one interface
- Several ranked mask candidates per click with clamped quality scores
- Lazy rendering of non-best candidates at the original resolution
- DirectML/CUDA acceleration with transparent CPU fallback

The library uses Hydra for configuration management: each model family is a
YAML file under samseg/configs describing its input size, normalisation,
embedding layout and mask rendering mode.

Main Components:
- SamBase: One model family's encoder/decoder pipeline
- SegmentationSession: Stateful interface for encode-once, predict-many use
- OnnxBackend: ONNX Runtime session behind the InferenceBackend contract

Usage:
    from samseg.build_sam import build_session

    session = build_session("configs/mobile_sam.yaml")
    session.load_models("mobile_sam.encoder.onnx", "mobile_sam.decoder.onnx")
    session.encode_image(image_bytes)
    result = session.predict(400, 300)
"""

from hydra import initialize_config_module
from hydra.core.global_hydra import GlobalHydra

# Initialize Hydra with samseg's configuration module so that model family
# configs under samseg/configs can be composed by relative path
if not GlobalHydra.instance().is_initialized():
    initialize_config_module("samseg", version_base="1.2")
