# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Inference boundary between samseg and the model runtime.

The encoder and decoder graphs are opaque: the engine only knows their declared
input/output names and hands them dictionaries of numpy arrays. ``InferenceBackend``
is that contract; ``OnnxBackend`` fulfils it with an ONNX Runtime session.

Loading a session is where device selection happens. When an accelerator is
requested the loader probes the available execution providers (DirectML first,
then CUDA). A missing provider, a provider that raises while the session is being
created, or a provider that ONNX Runtime silently demotes to CPU all end in the
same place: a CPU session and a ``DeviceReport`` with ``fell_back=True``. Only a
failure to load the model on CPU is fatal.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from samseg.errors import AcceleratorInitFailure, InferenceFailure

CPU_PROVIDER = "CPUExecutionProvider"

# Accelerated providers in order of preference, with the device label reported for each
ACCELERATOR_PROVIDERS = (
    ("DmlExecutionProvider", "GPU (DirectML)"),
    ("CUDAExecutionProvider", "GPU (CUDA)"),
)


@dataclass
class DeviceReport:
    """
    Effective execution device after model binding.

    Attributes:
        requested_accelerator (bool): Whether the caller asked for an accelerator.
        device_mode (str): Human-readable label, e.g. ``"GPU (CUDA)"`` or
            ``"CPU (accelerator init failed)"``.
        providers (List[str]): Providers the runtime actually uses, highest priority first.
        fell_back (bool): True when an accelerator was requested but CPU is used.
    """

    requested_accelerator: bool
    device_mode: str
    providers: List[str] = field(default_factory=list)
    fell_back: bool = False

    @property
    def uses_accelerator(self) -> bool:
        return not self.device_mode.startswith("CPU")


class InferenceBackend(ABC):
    """Black-box model execution: named numpy inputs in, named numpy outputs out."""

    @property
    @abstractmethod
    def input_names(self) -> List[str]:
        """Input names declared by the model graph, in declaration order."""

    @property
    @abstractmethod
    def output_names(self) -> List[str]:
        """Output names declared by the model graph, in declaration order."""

    @abstractmethod
    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run the model and return every output keyed by name, in declaration order."""

    def close(self) -> None:
        """Release runtime resources. Backends without any may keep the default."""


class OnnxBackend(InferenceBackend):
    """``InferenceBackend`` over an ``onnxruntime.InferenceSession``."""

    def __init__(self, session: ort.InferenceSession, model_path: Optional[str] = None):
        self.session = session
        self.model_path = model_path
        self._input_names = [meta.name for meta in session.get_inputs()]
        self._output_names = [meta.name for meta in session.get_outputs()]

    @property
    def input_names(self) -> List[str]:
        return list(self._input_names)

    @property
    def output_names(self) -> List[str]:
        return list(self._output_names)

    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        try:
            outputs = self.session.run(None, feeds)
        except Exception as exc:
            raise InferenceFailure(str(exc)) from exc
        return dict(zip(self._output_names, outputs))

    def close(self) -> None:
        self.session = None


def _session_options() -> ort.SessionOptions:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
    return options


def select_accelerator_provider(
    available: Sequence[str],
) -> Tuple[Optional[str], Optional[str]]:
    """
    Pick the preferred accelerated provider out of the runtime's available ones.

    Returns:
        Tuple of ``(provider_name, device_mode)``, or ``(None, None)`` when the
        runtime offers no accelerator.
    """
    for provider, device_mode in ACCELERATOR_PROVIDERS:
        if provider in available:
            return provider, device_mode
    return None, None


def _create_accelerated_session(model_path: str, provider: str) -> ort.InferenceSession:
    try:
        session = ort.InferenceSession(
            model_path,
            sess_options=_session_options(),
            providers=[provider, CPU_PROVIDER],
        )
    except Exception as exc:
        raise AcceleratorInitFailure(f"{provider}: {exc}") from exc

    # ONNX Runtime drops a provider that fails to initialise instead of raising
    active = session.get_providers()
    if not active or active[0] != provider:
        raise AcceleratorInitFailure(
            f"{provider} was requested but the session runs on {active}"
        )
    return session


def load_onnx_session(
    model_path: str, use_accelerator: bool = False
) -> Tuple[OnnxBackend, DeviceReport]:
    """
    Load one ONNX model, falling back to CPU if an accelerator cannot be used.

    Args:
        model_path (str): Path to the ``.onnx`` file.
        use_accelerator (bool): Try DirectML/CUDA before CPU.

    Returns:
        Tuple[OnnxBackend, DeviceReport]: The loaded backend and the device it runs on.

    Raises:
        FileNotFoundError: If ``model_path`` does not exist.
        InferenceFailure: If the model cannot be loaded even on CPU.
    """
    logging.info(f"Loading ONNX model: {model_path} (accelerator requested: {use_accelerator})")
    logging.info(f"ONNX Runtime version: {ort.__version__}")

    if not os.path.isfile(model_path):
        raise FileNotFoundError(f"Model file not found: {model_path}")
    logging.info(f"Model file size: {os.path.getsize(model_path) / 1024 / 1024:.1f} MB")

    session = None
    device_mode = "CPU"
    fell_back = False

    if use_accelerator:
        available = ort.get_available_providers()
        logging.info(f"Available providers: {', '.join(available)}")
        provider, accelerated_mode = select_accelerator_provider(available)
        if provider is None:
            logging.warning("No accelerated execution provider available, falling back to CPU")
            device_mode = "CPU (no accelerator provider)"
            fell_back = True
        else:
            try:
                session = _create_accelerated_session(model_path, provider)
                device_mode = accelerated_mode
            except AcceleratorInitFailure as exc:
                logging.warning(f"Accelerator initialisation failed, falling back to CPU: {exc}")
                device_mode = "CPU (accelerator init failed)"
                fell_back = True

    if session is None:
        try:
            session = ort.InferenceSession(
                model_path, sess_options=_session_options(), providers=[CPU_PROVIDER]
            )
        except Exception as exc:
            logging.error(f"Failed to load model {model_path}: {exc}")
            raise InferenceFailure(f"Failed to load model {model_path}: {exc}") from exc

    backend = OnnxBackend(session, model_path=model_path)
    logging.info(f"Model loaded on {device_mode}")
    logging.info(f"Inputs: {', '.join(backend.input_names)}")
    logging.info(f"Outputs: {', '.join(backend.output_names)}")

    report = DeviceReport(
        requested_accelerator=use_accelerator,
        device_mode=device_mode,
        providers=list(session.get_providers()),
        fell_back=fell_back,
    )
    return backend, report
