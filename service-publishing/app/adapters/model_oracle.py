"""Model readiness oracle.

Reads what the serving runtime knows about a model: readiness, internal
address, framework and a protocol hint used to resolve ``modelType: auto``.
Readiness is reported as data; only a missing model is an error.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Tuple

import structlog

from ..runtime.errors import ControlPlaneError, NotFoundError
from ..runtime.models import ModelDescriptor, ModelFramework, ObjectRef, ProtocolHint
from .control_plane import ControlPlane, ControlPlaneCallError

logger = structlog.get_logger("publishing.model_oracle")

INFERENCE_SERVICE_API_VERSION = "serving.kserve.io/v1beta1"
INFERENCE_SERVICE_KIND = "InferenceService"

OPENAI_ANNOTATIONS = ("serving.kserve.io/api-type", "model.type")

OPENAI_RUNTIME_IMAGES = (
    "vllm",
    "text-generation-inference",
    "tritonserver",
    "triton-inference-server",
)

LLM_NAME_INDICATORS = (
    "transformer",
    "llama",
    "mistral",
    "falcon",
    "vicuna",
    "alpaca",
    "gpt",
    "bert",
    "t5",
    "bloom",
    "opt",
)

OPENAI_HF_TASKS = (
    "text-generation",
    "text2text-generation",
    "conversational",
    "feature-extraction",
)

# Pre-modelFormat predictor specs name the framework with a dedicated key
_LEGACY_FRAMEWORK_KEYS = (
    "sklearn",
    "xgboost",
    "lightgbm",
    "tensorflow",
    "pytorch",
    "onnx",
    "triton",
    "huggingface",
)


class ModelReadinessOracle(ABC):
    """Abstract model readiness oracle."""

    @abstractmethod
    async def describe_model(self, tenant_id: str, model_name: str) -> ModelDescriptor:
        """Describe a model, raising ``NotFoundError`` when it does not exist."""
        pass


def _is_ready(status: Dict[str, Any]) -> bool:
    for condition in status.get("conditions") or []:
        if condition.get("type") == "Ready":
            return str(condition.get("status")).lower() == "true"
    return False


def _declared_framework(predictor: Dict[str, Any]) -> ModelFramework:
    model = predictor.get("model")
    if isinstance(model, dict):
        model_format = model.get("modelFormat") or {}
        if model_format.get("name"):
            return ModelFramework.parse(model_format["name"])

    for key in _LEGACY_FRAMEWORK_KEYS:
        if isinstance(predictor.get(key), dict):
            return ModelFramework.parse(key)

    # Custom containers declare no framework
    return ModelFramework.CUSTOM


def _mentions(value: Any, indicators: Iterable[str]) -> bool:
    if not isinstance(value, str):
        return False
    lowered = value.lower()
    return any(indicator in lowered for indicator in indicators)


def _model_uris(predictor: Dict[str, Any]) -> Iterable[str]:
    model = predictor.get("model")
    if isinstance(model, dict) and model.get("storageUri"):
        yield model["storageUri"]
    for key in ("huggingface", "pytorch"):
        section = predictor.get(key)
        if isinstance(section, dict):
            for field in ("modelUri", "storageUri"):
                if section.get(field):
                    yield section[field]


def _hf_task(predictor: Dict[str, Any]) -> Optional[str]:
    section = predictor.get("huggingface")
    if isinstance(section, dict) and section.get("task"):
        return section["task"]
    model = predictor.get("model")
    if isinstance(model, dict):
        for arg in model.get("args") or []:
            if isinstance(arg, str) and arg.startswith("--task="):
                return arg.split("=", 1)[1]
    return None


def protocol_hint_for(inference_service: Dict[str, Any]) -> ProtocolHint:
    """Infer the protocol shape of an ``InferenceService``.

    Explicit annotations win; then runtime images, LLM names in images or
    model URIs, and HuggingFace text-generation/embedding tasks.
    """
    annotations = (inference_service.get("metadata") or {}).get("annotations") or {}
    for annotation in OPENAI_ANNOTATIONS:
        value = str(annotations.get(annotation, "")).lower()
        if value == "openai":
            return ProtocolHint.OPENAI
        if value == "traditional":
            return ProtocolHint.TRADITIONAL

    predictor = (inference_service.get("spec") or {}).get("predictor") or {}

    for container in predictor.get("containers") or []:
        image = container.get("image")
        if _mentions(image, OPENAI_RUNTIME_IMAGES) or _mentions(image, LLM_NAME_INDICATORS):
            return ProtocolHint.OPENAI

    task = _hf_task(predictor)
    if task and _mentions(task, OPENAI_HF_TASKS):
        return ProtocolHint.OPENAI

    if any(_mentions(uri, LLM_NAME_INDICATORS) for uri in _model_uris(predictor)):
        return ProtocolHint.OPENAI

    return ProtocolHint.TRADITIONAL


def describe_inference_service(inference_service: Dict[str, Any]) -> ModelDescriptor:
    """Build a descriptor from an ``InferenceService`` document."""
    status = inference_service.get("status") or {}
    predictor = (inference_service.get("spec") or {}).get("predictor") or {}
    return ModelDescriptor(
        ready=_is_ready(status),
        internal_url=status.get("url") or None,
        declared_framework=_declared_framework(predictor),
        protocol_hint=protocol_hint_for(inference_service),
    )


class KServeModelOracle(ModelReadinessOracle):
    """Oracle reading KServe ``InferenceService`` objects.

    Parameters
    - control_plane: Client used to fetch the object
    - timeout: Seconds allowed for the lookup
    """

    def __init__(self, control_plane: ControlPlane, timeout: float = 15.0):
        self.control_plane = control_plane
        self.timeout = timeout

    async def describe_model(self, tenant_id: str, model_name: str) -> ModelDescriptor:
        ref = ObjectRef(
            api_version=INFERENCE_SERVICE_API_VERSION,
            kind=INFERENCE_SERVICE_KIND,
            namespace=tenant_id,
            name=model_name,
        )
        try:
            obj = await asyncio.wait_for(asyncio.to_thread(self.control_plane.get, ref), self.timeout)
        except asyncio.TimeoutError:
            raise ControlPlaneError("Timed out reading model from the serving runtime")
        except ControlPlaneCallError as e:
            logger.error("Model lookup failed", tenant_id=tenant_id, model_name=model_name, error=str(e))
            raise ControlPlaneError("Failed to read model from the serving runtime")

        if obj is None:
            raise NotFoundError(f"Model {model_name} not found in tenant {tenant_id}")

        descriptor = describe_inference_service(obj)
        logger.debug(
            "Described model",
            tenant_id=tenant_id,
            model_name=model_name,
            ready=descriptor.ready,
            framework=descriptor.declared_framework.value,
            protocol_hint=descriptor.protocol_hint.value,
        )
        return descriptor


class StaticModelOracle(ModelReadinessOracle):
    """Oracle answering from a fixed table of descriptors."""

    def __init__(self, models: Optional[Dict[Tuple[str, str], ModelDescriptor]] = None):
        self.models: Dict[Tuple[str, str], ModelDescriptor] = dict(models or {})

    def register(self, tenant_id: str, model_name: str, descriptor: ModelDescriptor) -> None:
        self.models[(tenant_id, model_name)] = descriptor

    async def describe_model(self, tenant_id: str, model_name: str) -> ModelDescriptor:
        try:
            return self.models[(tenant_id, model_name)]
        except KeyError:
            raise NotFoundError(f"Model {model_name} not found in tenant {tenant_id}")
