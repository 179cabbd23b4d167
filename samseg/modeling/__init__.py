# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
samseg Modeling Package - Encoder/Decoder Pipeline Stages

Package Organization:

**Pipeline (sam_base.py)**:
- SamBase: Bundles the four stages of one model family

**Runtime Boundary (inference.py)**:
- InferenceBackend: Named numpy inputs in, named numpy outputs out
- OnnxBackend / load_onnx_session: ONNX Runtime sessions with device fallback

**Embeddings (embedding.py)**:
- EmbeddingStore: Cached encoder output plus the letterbox geometry
- SingleTensorEmbedding / MultiTensorEmbedding: SAM and SAM 2 layouts

**Backbone (backbones/ directory)**:
- image_encoder.py: Letterboxing, normalisation and embedding canonicalisation

**SAM Components (sam/ directory)**:
- prompt_encoder.py: Point prompt to decoder tensors
- mask_decoder.py: Candidate masks and clamped quality scores
- mask_renderer.py: Candidate logits to original-resolution rasters
"""
