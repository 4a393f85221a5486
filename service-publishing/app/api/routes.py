"""API routes for the model publishing service."""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import Field

from libs.common.auth import CallerIdentity, security

from ..runtime.documentation import ApiDocumentation, DocumentationGenerator
from ..runtime.models import CamelModel, PublishRequest, PublishedModel, UsageStats
from ..runtime.reconciler import PublicationReconciler

logger = structlog.get_logger("publishing.api")

router = APIRouter()

# The gateway forwards the original request method to the authorization hook
EXT_AUTH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class PublishResponse(CamelModel):
    """Response model for publish and update calls."""
    message: str = Field(..., description="Outcome summary")
    published_model: PublishedModel = Field(..., description="The publication record")
    api_key: Optional[str] = Field(None, description="Plaintext API key, returned once when minted")


class PublicationResponse(CamelModel):
    published_model: PublishedModel


class RotateKeyResponse(CamelModel):
    """Response model for key rotation."""
    message: str = Field(..., description="Outcome summary")
    new_api_key: str = Field(..., description="The new plaintext API key, returned once")
    updated_at: str = Field(..., description="Rotation timestamp")


class PublishedModelsResponse(CamelModel):
    published_models: List[PublishedModel] = Field(default_factory=list)
    total: int = 0


class UsageResponse(CamelModel):
    usage: UsageStats


class DocumentationResponse(CamelModel):
    documentation: ApiDocumentation


class UsageReport(CamelModel):
    """One external call, reported by the data path."""
    tenant_id: str = Field(..., description="Tenant owning the publication")
    model_name: str = Field(..., description="Published model name")
    tokens: int = Field(0, ge=0, description="Tokens consumed by the call")
    success: bool = Field(True, description="Whether the call succeeded")


def get_reconciler(request: Request) -> PublicationReconciler:
    """Get the publication reconciler from application state."""
    return request.app.state.reconciler


def get_documentation_generator(request: Request) -> DocumentationGenerator:
    return request.app.state.documentation_generator


def get_metrics(request: Request):
    """Get metrics collector from application state."""
    return request.app.state.metrics_collector


async def get_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CallerIdentity:
    """Decode the bearer token into the calling tenant."""
    return request.app.state.auth_manager.identify(credentials.credentials)


async def require_internal_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """Only service tokens may report usage."""
    return request.app.state.internal_auth_manager.verify_internal_token(credentials.credentials)


@router.post("/models/{model_name}/publish", response_model=PublishResponse)
async def publish_model(
    model_name: str,
    body: PublishRequest,
    response: Response,
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """Publish a model for external access.

    Returns 201 with the plaintext API key when a key was minted, and 200
    when an identical publication was re-applied.
    """
    outcome = await reconciler.publish(caller, model_name, body.config)
    if outcome.created:
        response.status_code = status.HTTP_201_CREATED
        message = "Model published successfully"
    else:
        response.status_code = status.HTTP_200_OK
        message = "Model publication re-applied"
    return PublishResponse(
        message=message,
        published_model=outcome.published_model,
        api_key=outcome.api_key,
    )


@router.put("/models/{model_name}/publish", response_model=PublishResponse)
async def update_published_model(
    model_name: str,
    body: PublishRequest,
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """Update an existing publication. Only fields present in the body change."""
    published = await reconciler.update(caller, model_name, body.config)
    return PublishResponse(message="Model publication updated successfully", published_model=published)


@router.delete("/models/{model_name}/publish")
async def unpublish_model(
    model_name: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """Remove a publication and revoke its API key."""
    await reconciler.unpublish(caller, model_name, tenant_id)
    return {"message": "Model unpublished successfully"}


@router.post("/models/{model_name}/publish/rotate-key", response_model=RotateKeyResponse)
async def rotate_api_key(
    model_name: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """Issue a new API key; the previous key stops working immediately."""
    outcome = await reconciler.rotate_key(caller, model_name, tenant_id)
    return RotateKeyResponse(
        message="API key rotated successfully",
        new_api_key=outcome.issued.api_key,
        updated_at=outcome.published_model.updated_at.isoformat(),
    )


@router.get("/models/{model_name}/publish", response_model=PublicationResponse)
async def get_published_model(
    model_name: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    published = await reconciler.get_publication(caller, model_name, tenant_id)
    return PublicationResponse(published_model=published)


@router.get("/models/{model_name}/publish/usage", response_model=UsageResponse)
async def get_usage(
    model_name: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """Usage counters of a publication."""
    published = await reconciler.get_publication(caller, model_name, tenant_id)
    return UsageResponse(usage=published.usage)


@router.get("/models/{model_name}/publish/docs", response_model=DocumentationResponse)
async def get_documentation(
    model_name: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
    generator: DocumentationGenerator = Depends(get_documentation_generator),
):
    """Endpoint documentation with example requests for a publication."""
    published = await reconciler.get_publication(caller, model_name, tenant_id)
    return DocumentationResponse(documentation=generator.generate(published))


@router.get("/published-models", response_model=PublishedModelsResponse)
async def list_published_models(
    caller: CallerIdentity = Depends(get_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """List publications: the caller's tenant, or every tenant for admins."""
    published = await reconciler.list_publications(caller)
    return PublishedModelsResponse(published_models=published, total=len(published))


async def _authorize_api_key(
    reconciler: PublicationReconciler,
    metrics_collector,
    api_key: Optional[str],
    tenant_id: Optional[str],
    model_name: Optional[str],
) -> JSONResponse:
    valid = False
    if api_key and tenant_id and model_name:
        valid = await reconciler.api_keys.validate(tenant_id, model_name, api_key)

    metrics_collector.record_api_key_validation(valid)
    if not valid:
        logger.info("API key rejected", tenant_id=tenant_id, model_name=model_name)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "unauthorized", "detail": "Invalid or missing API key"},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"valid": True, "tenantId": tenant_id, "modelName": model_name},
        headers={"x-tenant-id": tenant_id, "x-model-name": model_name},
    )


@router.api_route("/validate-api-key/{tenant_id}/{model_name}", methods=EXT_AUTH_METHODS)
@router.api_route("/validate-api-key/{tenant_id}/{model_name}/{forwarded_path:path}", methods=EXT_AUTH_METHODS)
async def authorize_publication_request(
    tenant_id: str,
    model_name: str,
    forwarded_path: str = "",
    api_key: Optional[str] = Header(None, alias="x-api-key"),
    reconciler: PublicationReconciler = Depends(get_reconciler),
    metrics_collector=Depends(get_metrics),
):
    """External authorization hook for one publication.

    Each publication's security policy points the gateway at its own path,
    so a key is only accepted on the publication it was minted for.
    """
    return await _authorize_api_key(reconciler, metrics_collector, api_key, tenant_id, model_name)


@router.post("/validate-api-key")
async def validate_api_key(
    api_key: Optional[str] = Header(None, alias="x-api-key"),
    tenant_id: Optional[str] = Header(None, alias="x-tenant-id"),
    model_name: Optional[str] = Header(None, alias="x-model-name"),
    reconciler: PublicationReconciler = Depends(get_reconciler),
    metrics_collector=Depends(get_metrics),
):
    """Check a key against the publication named by the tenant and model headers."""
    return await _authorize_api_key(reconciler, metrics_collector, api_key, tenant_id, model_name)


@router.post("/usage/report", status_code=status.HTTP_202_ACCEPTED)
async def report_usage(
    report: UsageReport,
    _service: Dict[str, Any] = Depends(require_internal_caller),
    reconciler: PublicationReconciler = Depends(get_reconciler),
):
    """Account one external call against a publication's counters."""
    accepted = reconciler.usage.record_call(
        report.tenant_id,
        report.model_name,
        tokens_consumed=report.tokens,
        success=report.success,
    )
    return {"accepted": accepted}
