# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Error taxonomy for the segmentation engine.

State-ordering violations derive from ``StateError``, a ``RuntimeError`` like the
one raised by image predictors when ``predict`` runs before ``set_image``.
``AcceleratorInitFailure`` never leaves ``load_models``: it is raised while
probing execution providers and converted into a CPU fallback.
"""


class SegmentationError(Exception):
    """Base class for every error raised by samseg."""


class StateError(SegmentationError, RuntimeError):
    """An operation was attempted in a session state that does not allow it."""


class ModelNotBound(StateError):
    """Encoder or decoder backends have not been bound with ``load_models``."""


# Alias used by the encoder stage
NotLoaded = ModelNotBound


class NotEncoded(StateError):
    """A prediction was requested before an image was encoded."""


class NoPrediction(StateError):
    """A mask was requested before ``predict`` produced a candidate set."""


class DecodeFailure(SegmentationError, ValueError):
    """The input bytes could not be decoded into an image."""


class InferenceFailure(SegmentationError, RuntimeError):
    """The inference runtime raised while running a model.

    The runtime's exception is chained as ``__cause__`` and its message is
    carried unchanged.
    """


class AcceleratorInitFailure(SegmentationError, RuntimeError):
    """An accelerated execution provider could not be initialised."""
