"""Tests for the model readiness oracle."""

import time

import pytest

from app.adapters.control_plane import InMemoryControlPlane
from app.adapters.model_oracle import (
    KServeModelOracle,
    StaticModelOracle,
    describe_inference_service,
    protocol_hint_for,
)
from app.runtime.errors import ControlPlaneError, NotFoundError, ValidationError
from app.runtime.models import ModelFramework, ProtocolHint


def inference_service(name="sklearn-iris", namespace="tenant-a", predictor=None, annotations=None, ready=True):
    return {
        "apiVersion": "serving.kserve.io/v1beta1",
        "kind": "InferenceService",
        "metadata": {"name": name, "namespace": namespace, "annotations": annotations or {}},
        "spec": {"predictor": predictor or {
            "model": {
                "modelFormat": {"name": "sklearn"},
                "storageUri": "gs://kfserving-examples/models/sklearn/1.0/model",
            }
        }},
        "status": {
            "url": f"http://{name}.{namespace}.example.com",
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


def test_describe_traditional_model():
    descriptor = describe_inference_service(inference_service())
    assert descriptor.ready
    assert descriptor.internal_url == "http://sklearn-iris.tenant-a.example.com"
    assert descriptor.declared_framework == ModelFramework.SKLEARN
    assert descriptor.protocol_hint == ProtocolHint.TRADITIONAL


def test_not_ready_is_data_not_error():
    descriptor = describe_inference_service(inference_service(ready=False))
    assert not descriptor.ready


def test_legacy_framework_key():
    isvc = inference_service(predictor={"xgboost": {"storageUri": "gs://bucket/xgb"}})
    assert describe_inference_service(isvc).declared_framework == ModelFramework.XGBOOST


def test_custom_container_framework():
    isvc = inference_service(predictor={"containers": [{"image": "registry.local/scorer:1.2"}]})
    descriptor = describe_inference_service(isvc)
    assert descriptor.declared_framework == ModelFramework.CUSTOM
    assert descriptor.protocol_hint == ProtocolHint.TRADITIONAL


def test_unknown_framework_is_rejected():
    isvc = inference_service(predictor={"model": {"modelFormat": {"name": "paddle"}}})
    with pytest.raises(ValidationError):
        describe_inference_service(isvc)


def test_framework_aliases():
    assert ModelFramework.parse("scikit-learn") == ModelFramework.SKLEARN
    assert ModelFramework.parse("TF") == ModelFramework.TENSORFLOW
    assert ModelFramework.parse("torch") == ModelFramework.PYTORCH


@pytest.mark.parametrize("annotations,expected", [
    ({"serving.kserve.io/api-type": "openai"}, ProtocolHint.OPENAI),
    ({"model.type": "OpenAI"}, ProtocolHint.OPENAI),
    ({"serving.kserve.io/api-type": "traditional"}, ProtocolHint.TRADITIONAL),
])
def test_protocol_hint_from_annotations(annotations, expected):
    assert protocol_hint_for(inference_service(annotations=annotations)) == expected


def test_protocol_hint_from_runtime_image():
    isvc = inference_service(predictor={"containers": [{"image": "vllm/vllm-openai:latest"}]})
    assert protocol_hint_for(isvc) == ProtocolHint.OPENAI


def test_protocol_hint_from_huggingface_task():
    isvc = inference_service(predictor={
        "model": {
            "modelFormat": {"name": "huggingface"},
            "args": ["--model_name=qwen", "--task=text-generation"],
        }
    })
    assert protocol_hint_for(isvc) == ProtocolHint.OPENAI

    classifier = inference_service(predictor={
        "model": {"modelFormat": {"name": "huggingface"}, "args": ["--task=sequence_classification"]}
    })
    assert protocol_hint_for(classifier) == ProtocolHint.TRADITIONAL


def test_protocol_hint_from_model_uri():
    isvc = inference_service(predictor={
        "model": {"modelFormat": {"name": "huggingface"}, "storageUri": "hf://meta-llama/Llama-3-8B"}
    })
    assert protocol_hint_for(isvc) == ProtocolHint.OPENAI


@pytest.mark.asyncio
async def test_kserve_oracle_reads_through_control_plane():
    control_plane = InMemoryControlPlane()
    control_plane.apply(inference_service())
    oracle = KServeModelOracle(control_plane, timeout=1.0)

    descriptor = await oracle.describe_model("tenant-a", "sklearn-iris")
    assert descriptor.declared_framework == ModelFramework.SKLEARN

    with pytest.raises(NotFoundError):
        await oracle.describe_model("tenant-b", "sklearn-iris")


@pytest.mark.asyncio
async def test_kserve_oracle_times_out():
    control_plane = InMemoryControlPlane()
    control_plane.get = lambda ref: time.sleep(0.2)
    oracle = KServeModelOracle(control_plane, timeout=0.05)

    with pytest.raises(ControlPlaneError):
        await oracle.describe_model("tenant-a", "sklearn-iris")


@pytest.mark.asyncio
async def test_static_oracle():
    oracle = StaticModelOracle()
    oracle.register("tenant-a", "m", describe_inference_service(inference_service(name="m")))
    assert (await oracle.describe_model("tenant-a", "m")).ready
    with pytest.raises(NotFoundError):
        await oracle.describe_model("tenant-a", "other")
