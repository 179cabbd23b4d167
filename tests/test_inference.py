from types import SimpleNamespace

import numpy as np
import onnxruntime as ort
import pytest

from samseg.errors import InferenceFailure
from samseg.modeling import inference
from samseg.modeling.inference import (
    CPU_PROVIDER,
    DeviceReport,
    OnnxBackend,
    load_onnx_session,
    select_accelerator_provider,
)


class FakeOrtSession:
    """Mimics the parts of onnxruntime.InferenceSession the loader touches."""

    fail_providers = ()
    demote_to_cpu = False
    created = []

    def __init__(self, path, sess_options=None, providers=None):
        if providers[0] in self.fail_providers:
            raise RuntimeError(f"{providers[0]} could not be created")
        self.path = path
        self.sess_options = sess_options
        self.providers = [CPU_PROVIDER] if self.demote_to_cpu else list(providers)
        FakeOrtSession.created.append(self)

    def get_providers(self):
        return self.providers

    def get_inputs(self):
        return [SimpleNamespace(name="images")]

    def get_outputs(self):
        return [SimpleNamespace(name="image_embeddings"), SimpleNamespace(name="extra")]

    def run(self, output_names, feeds):
        if "images" not in feeds:
            raise ValueError("missing input images")
        return [np.ones((1, 2)), np.zeros(3)]


@pytest.fixture
def fake_ort(monkeypatch):
    FakeOrtSession.fail_providers = ()
    FakeOrtSession.demote_to_cpu = False
    FakeOrtSession.created = []
    monkeypatch.setattr(ort, "InferenceSession", FakeOrtSession)
    return FakeOrtSession


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "mobile_sam.encoder.onnx"
    path.write_bytes(b"\x08\x07onnx")
    return str(path)


def test_select_accelerator_provider_prefers_directml():
    available = ["CUDAExecutionProvider", "DmlExecutionProvider", CPU_PROVIDER]
    assert select_accelerator_provider(available) == ("DmlExecutionProvider", "GPU (DirectML)")
    assert select_accelerator_provider(["CUDAExecutionProvider", CPU_PROVIDER]) == (
        "CUDAExecutionProvider",
        "GPU (CUDA)",
    )
    assert select_accelerator_provider([CPU_PROVIDER]) == (None, None)


def test_missing_model_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_onnx_session(str(tmp_path / "missing.onnx"))


def test_cpu_load(fake_ort, model_file):
    backend, report = load_onnx_session(model_file)
    assert report == DeviceReport(
        requested_accelerator=False, device_mode="CPU", providers=[CPU_PROVIDER], fell_back=False
    )
    assert backend.input_names == ["images"]
    assert backend.output_names == ["image_embeddings", "extra"]
    options = fake_ort.created[0].sess_options
    assert options.graph_optimization_level == ort.GraphOptimizationLevel.ORT_ENABLE_BASIC


def test_accelerator_used_when_available(fake_ort, model_file, monkeypatch):
    monkeypatch.setattr(
        inference.ort, "get_available_providers", lambda: ["CUDAExecutionProvider", CPU_PROVIDER]
    )
    backend, report = load_onnx_session(model_file, use_accelerator=True)
    assert report.device_mode == "GPU (CUDA)"
    assert report.uses_accelerator
    assert not report.fell_back
    assert fake_ort.created[0].providers == ["CUDAExecutionProvider", CPU_PROVIDER]


def test_no_accelerator_provider_falls_back(fake_ort, model_file, monkeypatch):
    monkeypatch.setattr(inference.ort, "get_available_providers", lambda: [CPU_PROVIDER])
    _, report = load_onnx_session(model_file, use_accelerator=True)
    assert report.device_mode == "CPU (no accelerator provider)"
    assert report.fell_back
    assert not report.uses_accelerator


def test_accelerator_init_error_falls_back(fake_ort, model_file, monkeypatch):
    monkeypatch.setattr(
        inference.ort, "get_available_providers", lambda: ["DmlExecutionProvider", CPU_PROVIDER]
    )
    fake_ort.fail_providers = ("DmlExecutionProvider",)
    backend, report = load_onnx_session(model_file, use_accelerator=True)
    assert report.device_mode == "CPU (accelerator init failed)"
    assert report.fell_back
    assert report.providers == [CPU_PROVIDER]
    assert backend.input_names == ["images"]


def test_silently_demoted_accelerator_counts_as_failure(fake_ort, model_file, monkeypatch):
    monkeypatch.setattr(
        inference.ort, "get_available_providers", lambda: ["CUDAExecutionProvider", CPU_PROVIDER]
    )
    fake_ort.demote_to_cpu = True
    _, report = load_onnx_session(model_file, use_accelerator=True)
    assert report.device_mode == "CPU (accelerator init failed)"
    assert report.fell_back


def test_cpu_failure_is_fatal(fake_ort, model_file):
    fake_ort.fail_providers = (CPU_PROVIDER,)
    with pytest.raises(InferenceFailure):
        load_onnx_session(model_file)


def test_backend_run_maps_outputs_by_name(fake_ort, model_file):
    backend, _ = load_onnx_session(model_file)
    outputs = backend.run({"images": np.zeros((1, 1), dtype=np.float32)})
    assert list(outputs) == ["image_embeddings", "extra"]
    assert outputs["image_embeddings"].shape == (1, 2)


def test_backend_run_wraps_runtime_errors(fake_ort, model_file):
    backend, _ = load_onnx_session(model_file)
    with pytest.raises(InferenceFailure, match="missing input images") as excinfo:
        backend.run({})
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_backend_close_releases_session(fake_ort, model_file):
    backend, _ = load_onnx_session(model_file)
    assert isinstance(backend, OnnxBackend)
    backend.close()
    assert backend.session is None
