# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
SAM Decoder-Side Components

**prompt_encoder.py** - builds the point, label and mask-prior tensors for one
click, mapped into the letterboxed model frame.

**mask_decoder.py** - runs the decoder graph and reads back several candidate
masks per click with one predicted IoU each.

**mask_renderer.py** - turns one candidate's logits into an 8-bit mask at the
original image resolution, cropping away the letterbox padding.
"""
