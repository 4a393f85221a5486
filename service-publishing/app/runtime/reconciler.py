"""Publication reconciler.

Orchestrates every publishing operation:

    validating -> synthesizing -> applying -> persisting -> active

with ``error`` reachable from any stage and ``unpublished`` only from
``active`` or ``error``.

Design notes
- Operations are serialized per ``(tenant_id, model_name)``: a second
  operation on a busy key fails with ``ConflictError`` instead of queueing
- Each pipeline runs as its own task and the caller awaits it through
  ``asyncio.shield``; a disconnected caller never aborts a half-applied set
- Control-plane calls are blocking; they run in worker threads under a
  timeout and a small retry budget
- Store writes get a larger retry budget because by the time a record is
  persisted its policy objects are already live
- The store is the only copy of publication state; policy sets are always
  regenerated from records, which is what lets ``reconcile_all`` heal
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import structlog

from libs.common.auth import CallerIdentity
from libs.common.events import EventPublisher, EventType
from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from libs.common.security import InputSanitizer
from libs.publishing_store.base import PublishingStore, PublishingStoreError

from ..adapters.control_plane import ControlPlane, ControlPlaneCallError, TransientControlPlaneError
from ..adapters.model_oracle import ModelReadinessOracle
from ..pipelines.retry_handler import (
    RetryHandler,
    create_control_plane_retry_handler,
    create_store_retry_handler,
)
from .api_keys import ApiKeyManager, IssuedKey
from .errors import ConflictError, ControlPlaneError, NotFoundError, PublishingError, StoreError, ValidationError
from .models import (
    AuthenticationConfig,
    ModelDescriptor,
    ModelType,
    ObjectRef,
    ProtocolHint,
    PublicationStatus,
    PublishConfig,
    PublishedModel,
    RateLimitConfig,
    default_external_path,
    external_url_for,
    utcnow,
    validate_resolved,
)
from .synthesizer import ExternalPolicySet, PolicySynthesizer
from .tenants import TenantResolver
from .usage import UsageTracker

logger = structlog.get_logger("publishing.reconciler")

Key = Tuple[str, str]

NOT_READY_WARNING = "Model is not ready yet; the endpoint will serve traffic once it becomes ready"
TOKENS_IGNORED_WARNING = "tokensPerHour is ignored for traditional models"
SUPERSEDED_WARNING = "Some superseded gateway objects could not be removed"


@dataclass(frozen=True)
class PublishOutcome:
    """Result of a publish call. ``api_key`` is set only when one was minted."""
    published_model: PublishedModel
    api_key: Optional[str]
    created: bool


@dataclass(frozen=True)
class RotateOutcome:
    published_model: PublishedModel
    issued: IssuedKey


class _SwapFailed(Exception):
    """An update's new set failed to apply; ``restored`` tells if the old set is back."""

    def __init__(self, cause: ControlPlaneCallError, restored: bool):
        super().__init__(str(cause))
        self.cause = cause
        self.restored = restored


def descriptor_from_record(record: PublishedModel) -> ModelDescriptor:
    """Descriptor equivalent to what the record was resolved from."""
    return ModelDescriptor(
        ready=True,
        internal_url=None,
        declared_framework=record.declared_framework,
        protocol_hint=ProtocolHint(record.model_type.value),
    )


class PublicationReconciler:
    """Runs publish, update, unpublish and rotate pipelines.

    Parameters
    - store: Durable publication records and credentials
    - control_plane: Where policy objects are applied
    - oracle: Serving-runtime view of models
    - resolver: Tenant authorization
    - api_keys: Credential lifecycle
    - usage: Usage counters
    - synthesizer: Policy object generation
    - default_hostname: Public hostname when the caller gives none
    - cluster_domain: Used to derive a predictor hostname when the model
      does not report its URL yet
    - apply_timeout: Seconds allowed per control-plane call
    - control_plane_retry / store_retry: Retry policies (defaults 3 / 6 attempts)
    - event_publisher / metrics: Optional observability sinks
    """

    def __init__(
        self,
        store: PublishingStore,
        control_plane: ControlPlane,
        oracle: ModelReadinessOracle,
        resolver: TenantResolver,
        api_keys: ApiKeyManager,
        usage: UsageTracker,
        synthesizer: PolicySynthesizer,
        default_hostname: str = "api.router.inference-in-a-box",
        cluster_domain: str = "svc.cluster.local",
        apply_timeout: float = 15.0,
        control_plane_retry: Optional[RetryHandler] = None,
        store_retry: Optional[RetryHandler] = None,
        event_publisher: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.control_plane = control_plane
        self.oracle = oracle
        self.resolver = resolver
        self.api_keys = api_keys
        self.usage = usage
        self.synthesizer = synthesizer
        self.default_hostname = default_hostname
        self.cluster_domain = cluster_domain
        self.apply_timeout = apply_timeout
        self.control_plane_retry = control_plane_retry or create_control_plane_retry_handler()
        self.store_retry = store_retry or create_store_retry_handler()
        self.event_publisher = event_publisher
        self.metrics = metrics
        self.sanitizer = InputSanitizer()

        self._in_flight: Set[Key] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def publish(self, caller: CallerIdentity, model_name: str, config: PublishConfig) -> PublishOutcome:
        """Publish a model, or re-apply an identical/failed publication."""
        self._validate_model_name(model_name)
        tenant_id = self.resolver.resolve_tenant(caller, config.tenant_id)
        return await self._run_exclusive(
            (tenant_id, model_name),
            "publish",
            lambda: self._publish(tenant_id, model_name, config, caller.actor),
        )

    async def update(self, caller: CallerIdentity, model_name: str, config: PublishConfig) -> PublishedModel:
        """Merge the fields the caller set into the existing publication."""
        self._validate_model_name(model_name)
        tenant_id = self.resolver.resolve_tenant(caller, config.tenant_id)
        return await self._run_exclusive(
            (tenant_id, model_name),
            "update",
            lambda: self._update(tenant_id, model_name, config, caller.actor),
        )

    async def unpublish(self, caller: CallerIdentity, model_name: str, tenant_id: Optional[str]) -> None:
        """Remove a publication's objects, credential and record."""
        self._validate_model_name(model_name)
        tenant_id = self.resolver.resolve_tenant(caller, tenant_id)
        await self._run_exclusive(
            (tenant_id, model_name),
            "unpublish",
            lambda: self._unpublish(tenant_id, model_name, caller.actor),
        )

    async def rotate_key(self, caller: CallerIdentity, model_name: str, tenant_id: Optional[str]) -> RotateOutcome:
        """Issue a new API key; the previous one stops validating immediately."""
        self._validate_model_name(model_name)
        tenant_id = self.resolver.resolve_tenant(caller, tenant_id)
        return await self._run_exclusive(
            (tenant_id, model_name),
            "rotate_key",
            lambda: self._rotate_key(tenant_id, model_name, caller.actor),
        )

    async def get_publication(self, caller: CallerIdentity, model_name: str, tenant_id: Optional[str]) -> PublishedModel:
        self._validate_model_name(model_name)
        tenant_id = self.resolver.resolve_tenant(caller, tenant_id)
        record = await self._load(tenant_id, model_name)
        if record is None:
            raise NotFoundError(f"Model {model_name} is not published in tenant {tenant_id}")
        return self._with_usage(record)

    async def list_publications(self, caller: CallerIdentity) -> List[PublishedModel]:
        """Publications visible to the caller: own tenant, or all for admins."""
        documents = await self._store_call(
            "list_records", self.store.list_records, self.resolver.visible_tenant(caller)
        )
        return [self._with_usage(PublishedModel.from_document(doc)) for doc in documents]

    async def initialize(self) -> None:
        """Seed usage counters and gauges from the store."""
        documents = await self._store_call("list_records", self.store.list_records, None)
        for document in documents:
            record = PublishedModel.from_document(document)
            self.usage.register(record.tenant_id, record.model_name, seed=record.usage)
        self._update_gauges(documents)
        logger.info("Reconciler initialized", publications=len(documents))

    async def aclose(self) -> None:
        """Wait for running pipelines, then flush usage counters."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.flush_usage()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def is_busy(self, tenant_id: str, model_name: str) -> bool:
        return (tenant_id, model_name) in self._in_flight

    async def _run_exclusive(self, key: Key, operation: str, pipeline: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._in_flight:
            raise ConflictError(
                f"Another operation is in progress for model {key[1]} in tenant {key[0]}"
            )
        self._in_flight.add(key)
        task = asyncio.create_task(self._guarded(key, operation, pipeline))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return await asyncio.shield(task)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # Retrieve the exception so an abandoned (shielded) task is not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def _guarded(self, key: Key, operation: str, pipeline: Callable[[], Awaitable[Any]]) -> Any:
        structlog.contextvars.bind_contextvars(tenant_id=key[0], model_name=key[1], operation=operation)
        started = time.perf_counter()
        outcome = "success"
        try:
            return await pipeline()
        except PublishingError as e:
            outcome = e.kind
            raise
        except Exception:
            outcome = "internal"
            logger.exception("Pipeline failed unexpectedly")
            raise
        finally:
            self._in_flight.discard(key)
            duration = time.perf_counter() - started
            if self.metrics is not None:
                self.metrics.record_operation(operation, outcome, duration)
            log_performance(operation, duration * 1000, outcome=outcome)

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _publish(self, tenant_id: str, model_name: str, config: PublishConfig, actor: str) -> PublishOutcome:
        existing = await self._load(tenant_id, model_name)

        descriptor = await self.oracle.describe_model(tenant_id, model_name)
        candidate = self._resolve(tenant_id, model_name, config, descriptor)
        validate_resolved(candidate)
        policy_set = self.synthesizer.synthesize(candidate, descriptor)

        if existing is not None:
            if existing.pending_unpublish:
                raise ConflictError("An unpublish is pending for this model; retry the unpublish first")
            if existing.status in (PublicationStatus.ERROR, PublicationStatus.PENDING):
                logger.info("Retrying failed publication")
                candidate = candidate.model_copy(update={"created_at": existing.created_at, "usage": existing.usage})
                return await self._heal(existing, candidate, policy_set, actor, EventType.MODEL_PUBLISHED)
            if existing.resolved_config() == candidate.resolved_config():
                logger.info("Republish with identical configuration, re-applying")
                candidate = candidate.model_copy(update={"created_at": existing.created_at, "usage": existing.usage})
                return await self._heal(existing, candidate, policy_set, actor, None)
            raise ConflictError("Model is already published with a different configuration; use update instead")

        logger.info(
            "Publishing model",
            model_type=candidate.model_type.value,
            external_url=candidate.external_url,
            ready=descriptor.ready,
        )
        await self._apply_new(policy_set)

        try:
            issued = await self._store_call("issue_key", self.api_keys.issue, tenant_id, model_name)
        except PublishingError:
            await self._delete_quietly(reversed(policy_set.refs()))
            raise

        record = candidate.model_copy(update={
            "api_key_id": issued.key_id,
            "policy_objects": [ref.to_dict() for ref in policy_set.refs()],
            "status": PublicationStatus.ACTIVE,
        })
        try:
            await self._persist(record)
        except StoreError:
            logger.error("Persisting new publication failed, rolling back")
            await self._delete_quietly(reversed(policy_set.refs()))
            await self._revoke_quietly(tenant_id, model_name)
            raise

        self.usage.register(tenant_id, model_name)
        self._emit(EventType.MODEL_PUBLISHED, record, actor)
        logger.info("Model published", external_url=record.external_url)
        return PublishOutcome(published_model=self._with_usage(record), api_key=issued.api_key, created=True)

    async def _heal(
        self,
        existing: PublishedModel,
        record: PublishedModel,
        policy_set: ExternalPolicySet,
        actor: Optional[str],
        event: Optional[EventType],
    ) -> PublishOutcome:
        """Apply a full policy set over whatever is live and mark the record active.

        Used for identical republishes, retries of failed publications and
        periodic reconciliation. A key is minted only if no credential exists.
        """
        tenant_id, model_name = record.tenant_id, record.model_name
        try:
            for obj in policy_set.objects:
                await self._apply(obj.manifest, obj.ref)
        except ControlPlaneCallError as e:
            await self._mark_error(existing, f"Gateway configuration could not be applied: {e}")
            raise ControlPlaneError("Failed to apply gateway configuration") from e

        new_refs = policy_set.refs()
        stale = [ref for ref in existing.object_refs() if ref not in new_refs]
        leftover = await self._delete_quietly(stale)

        issued = None
        credential = await self._store_call("get_credential", self.store.get_credential, tenant_id, model_name)
        if credential is None:
            issued = await self._store_call("issue_key", self.api_keys.issue, tenant_id, model_name)
        # The credential is authoritative for which key is live
        api_key_id = issued.key_id if issued else credential.get("key_id")

        warnings = [warning for warning in record.warnings if warning != SUPERSEDED_WARNING]
        if leftover:
            warnings.append(SUPERSEDED_WARNING)
        policy_objects = [ref.to_dict() for ref in new_refs]

        unchanged = (
            record is existing
            and issued is None
            and existing.api_key_id == api_key_id
            and existing.status == PublicationStatus.ACTIVE
            and existing.last_error is None
            and existing.policy_objects == policy_objects
            and existing.warnings == warnings
        )
        if unchanged:
            return PublishOutcome(published_model=self._with_usage(existing), api_key=None, created=False)

        healed = record.model_copy(update={
            "api_key_id": api_key_id,
            "policy_objects": policy_objects,
            "status": PublicationStatus.ACTIVE,
            "last_error": None,
            "warnings": warnings,
            "updated_at": utcnow(),
        })
        await self._persist(healed)

        self.usage.register(tenant_id, model_name, seed=existing.usage)
        if event is not None and actor is not None:
            self._emit(event, healed, actor)
        return PublishOutcome(
            published_model=self._with_usage(healed),
            api_key=issued.api_key if issued else None,
            created=issued is not None,
        )

    async def _update(self, tenant_id: str, model_name: str, config: PublishConfig, actor: str) -> PublishedModel:
        existing = await self._load(tenant_id, model_name)
        if existing is None:
            raise NotFoundError(f"Model {model_name} is not published in tenant {tenant_id}")
        if existing.pending_unpublish:
            raise ConflictError("An unpublish is pending for this model; retry the unpublish first")

        merged = self._merge(existing, config)
        validate_resolved(merged)
        descriptor = descriptor_from_record(existing)
        previous_set = self.synthesizer.synthesize(existing, descriptor)
        new_set = self.synthesizer.synthesize(merged, descriptor)

        try:
            leftover = await self._swap(existing, previous_set, new_set)
        except _SwapFailed as e:
            if not e.restored:
                await self._mark_error(existing, f"Update failed and the previous configuration could not be restored: {e.cause}")
            raise ControlPlaneError("Failed to apply updated gateway configuration") from e.cause

        warnings = list(merged.warnings)
        if leftover:
            warnings.append(SUPERSEDED_WARNING)
        record = merged.model_copy(update={
            "policy_objects": [ref.to_dict() for ref in new_set.refs()],
            "status": PublicationStatus.ACTIVE,
            "last_error": None,
            "warnings": warnings,
            "updated_at": utcnow(),
        })
        try:
            await self._persist(record)
        except StoreError:
            logger.error("Persisting update failed, restoring previous configuration")
            await self._restore(previous_set)
            raise

        self._emit(EventType.MODEL_UPDATED, record, actor)
        logger.info("Publication updated", external_url=record.external_url)
        return self._with_usage(record)

    async def _unpublish(self, tenant_id: str, model_name: str, actor: str) -> None:
        existing = await self._load(tenant_id, model_name)
        if existing is None:
            raise NotFoundError(f"Model {model_name} is not published in tenant {tenant_id}")
        await self._teardown(existing)
        self._emit(EventType.MODEL_UNPUBLISHED, existing, actor)
        logger.info("Model unpublished")

    async def _teardown(self, record: PublishedModel) -> None:
        """Delete objects, then the credential, then the record.

        The record is only deleted once nothing external can still be live;
        any failure leaves it in ``error`` with ``pending_unpublish`` set.
        """
        tenant_id, model_name = record.tenant_id, record.model_name
        refs = self._teardown_refs(record)
        failed = await self._delete_quietly(refs)
        if failed:
            await self._mark_error(
                record,
                f"Unpublish incomplete: {len(failed)} gateway object(s) could not be removed",
                pending_unpublish=True,
            )
            raise ControlPlaneError("Failed to remove gateway configuration; unpublish will be retried")

        try:
            await self._store_call("revoke_key", self.api_keys.revoke, tenant_id, model_name)
        except StoreError:
            await self._mark_error(record, "Unpublish incomplete: credential could not be revoked", pending_unpublish=True)
            raise

        try:
            await self._store_call("delete_record", self.store.delete_record, tenant_id, model_name)
        except StoreError:
            await self._mark_error(record, "Unpublish incomplete: record could not be deleted", pending_unpublish=True)
            raise
        self.usage.forget(tenant_id, model_name)

    async def _rotate_key(self, tenant_id: str, model_name: str, actor: str) -> RotateOutcome:
        existing = await self._load(tenant_id, model_name)
        if existing is None:
            raise NotFoundError(f"Model {model_name} is not published in tenant {tenant_id}")
        if existing.pending_unpublish:
            raise ConflictError("An unpublish is pending for this model")

        issued = await self._store_call("rotate_key", self.api_keys.rotate, tenant_id, model_name)
        record = existing.model_copy(update={"api_key_id": issued.key_id, "updated_at": utcnow()})
        try:
            await self._persist(record)
        except StoreError:
            # The caller never sees the new key, so the old one must keep working
            logger.error("Persisting rotated key failed, restoring previous credential")
            await self._restore_credential(tenant_id, model_name, issued.replaced)
            raise

        self._emit(EventType.API_KEY_ROTATED, record, actor)
        return RotateOutcome(published_model=self._with_usage(record), issued=issued)

    # ------------------------------------------------------------------
    # Periodic reconciliation
    # ------------------------------------------------------------------

    async def reconcile_all(self) -> Dict[str, int]:
        """Bring every stored publication back in line with its record.

        Re-applies regenerated policy sets (healing drift and ``error``
        records), retries pending unpublishes and flushes usage counters.
        Keys with an operation in flight are skipped.
        """
        summary = {"healed": 0, "failed": 0, "unpublished": 0, "skipped": 0}
        documents = await self._store_call("list_records", self.store.list_records, None)

        for document in documents:
            key = (document["tenantId"], document["modelName"])
            if key in self._in_flight:
                summary["skipped"] += 1
                continue
            try:
                outcome = await self._run_exclusive(key, "reconcile", lambda k=key: self._reconcile_one(*k))
                summary[outcome] += 1
            except ConflictError:
                summary["skipped"] += 1
            except PublishingError as e:
                logger.warning("Reconciliation failed", tenant_id=key[0], model_name=key[1], error=e.reason)
                summary["failed"] += 1

        await self.flush_usage()
        self._update_gauges(await self._store_call("list_records", self.store.list_records, None))
        logger.info("Reconciliation pass complete", **summary)
        return summary

    async def _reconcile_one(self, tenant_id: str, model_name: str) -> str:
        record = await self._load(tenant_id, model_name)
        if record is None:
            return "skipped"
        if record.pending_unpublish:
            await self._teardown(record)
            self._emit(EventType.MODEL_UNPUBLISHED, record, "reconciler")
            return "unpublished"
        policy_set = self.synthesizer.synthesize(record, descriptor_from_record(record))
        await self._heal(record, record, policy_set, None, None)
        return "healed"

    async def flush_usage(self) -> int:
        """Write changed usage counters into their records.

        Keys with an operation in flight are deferred to the next flush so a
        stale record never overwrites a concurrent update.
        """
        drained = self.usage.drain_dirty()
        deferred = []
        for key, stats in drained.items():
            if key in self._in_flight:
                deferred.append(key)
                continue
            self._in_flight.add(key)
            try:
                record = await self._load(*key)
                if record is not None:
                    await self._persist(record.model_copy(update={"usage": stats}))
            except StoreError:
                deferred.append(key)
            finally:
                self._in_flight.discard(key)
        if deferred:
            self.usage.mark_dirty(deferred)
        return len(drained) - len(deferred)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _validate_model_name(self, model_name: str) -> None:
        try:
            self.sanitizer.validate_resource_name(model_name, field="modelName")
        except ValueError as e:
            raise ValidationError(str(e))

    def _backend_hostname(self, tenant_id: str, model_name: str, descriptor: ModelDescriptor) -> str:
        if descriptor.internal_url:
            hostname = urlsplit(descriptor.internal_url).hostname
            if hostname:
                return hostname
        return f"{model_name}-predictor.{tenant_id}.{self.cluster_domain}"

    def _sanitize_metadata(self, metadata: Dict[str, str]) -> Dict[str, str]:
        try:
            return self.sanitizer.sanitize_metadata(metadata)
        except ValueError as e:
            raise ValidationError(str(e))

    def _resolve(
        self,
        tenant_id: str,
        model_name: str,
        config: PublishConfig,
        descriptor: ModelDescriptor,
    ) -> PublishedModel:
        """Turn a request into a fully resolved record (no ``auto``, no blanks)."""
        if config.model_type == ModelType.AUTO:
            model_type = ModelType.OPENAI if descriptor.protocol_hint == ProtocolHint.OPENAI else ModelType.TRADITIONAL
        else:
            model_type = config.model_type

        external_path = config.external_path or default_external_path(model_type, model_name)
        public_hostname = config.public_hostname or self.default_hostname

        warnings = []
        if not descriptor.ready:
            warnings.append(NOT_READY_WARNING)
        if model_type == ModelType.TRADITIONAL and config.rate_limiting.tokens_per_hour > 0:
            warnings.append(TOKENS_IGNORED_WARNING)

        now = utcnow()
        return PublishedModel(
            tenant_id=tenant_id,
            model_name=model_name,
            model_type=model_type,
            external_path=external_path,
            public_hostname=public_hostname,
            external_url=external_url_for(public_hostname, external_path),
            rate_limiting=config.rate_limiting.model_copy(),
            authentication=config.authentication.model_copy(),
            metadata=self._sanitize_metadata(config.metadata),
            status=PublicationStatus.PENDING,
            backend_hostname=self._backend_hostname(tenant_id, model_name, descriptor),
            declared_framework=descriptor.declared_framework,
            warnings=warnings,
            created_at=now,
            updated_at=now,
        )

    def _merge(self, existing: PublishedModel, config: PublishConfig) -> PublishedModel:
        """Overlay the fields the caller explicitly set onto the record."""
        fields = config.model_fields_set
        update: Dict[str, Any] = {}

        if "model_type" in fields and config.model_type not in (ModelType.AUTO, existing.model_type):
            raise ValidationError("modelType cannot be changed on update; unpublish and publish again")

        external_path = existing.external_path
        if "external_path" in fields:
            external_path = config.external_path or default_external_path(existing.model_type, existing.model_name)
        public_hostname = existing.public_hostname
        if "public_hostname" in fields:
            public_hostname = config.public_hostname or self.default_hostname
        update["external_path"] = external_path
        update["public_hostname"] = public_hostname
        update["external_url"] = external_url_for(public_hostname, external_path)

        if "rate_limiting" in fields:
            delta = config.rate_limiting
            update["rate_limiting"] = RateLimitConfig.model_validate({
                **existing.rate_limiting.model_dump(),
                **delta.model_dump(include=delta.model_fields_set),
            })
        if "authentication" in fields:
            delta = config.authentication
            update["authentication"] = AuthenticationConfig.model_validate({
                **existing.authentication.model_dump(),
                **delta.model_dump(include=delta.model_fields_set),
            })
        if "metadata" in fields:
            update["metadata"] = self._sanitize_metadata(config.metadata)

        limits = update.get("rate_limiting", existing.rate_limiting)
        # Readiness warnings describe the original publish; only config warnings carry over
        update["warnings"] = []
        if existing.model_type == ModelType.TRADITIONAL and limits.tokens_per_hour > 0:
            update["warnings"].append(TOKENS_IGNORED_WARNING)

        return existing.model_copy(update=update)

    # ------------------------------------------------------------------
    # Control plane
    # ------------------------------------------------------------------

    async def _call_control_plane(self, verb: str, func: Callable, arg: Any, ref: ObjectRef) -> Any:
        async def attempt():
            try:
                return await asyncio.wait_for(asyncio.to_thread(func, arg), self.apply_timeout)
            except asyncio.TimeoutError:
                raise TransientControlPlaneError(f"{verb} {ref} timed out after {self.apply_timeout}s")

        try:
            result = await self.control_plane_retry.execute_with_retry(
                attempt, operation_name=f"{verb}_{ref.kind}"
            )
        except ControlPlaneCallError as e:
            if self.metrics is not None:
                self.metrics.record_control_plane_call(verb, ref.kind, "failure")
            logger.error("Control-plane call failed", verb=verb, object=str(ref), error=str(e))
            raise
        if self.metrics is not None:
            self.metrics.record_control_plane_call(verb, ref.kind, "success")
        return result

    async def _apply(self, manifest: Dict[str, Any], ref: ObjectRef) -> None:
        await self._call_control_plane("apply", self.control_plane.apply, manifest, ref)

    async def _delete(self, ref: ObjectRef) -> bool:
        return await self._call_control_plane("delete", self.control_plane.delete, ref, ref)

    async def _delete_quietly(self, refs: Iterable[ObjectRef]) -> List[ObjectRef]:
        """Delete every ref, continuing past failures. Returns the failed refs."""
        failed = []
        for ref in refs:
            try:
                await self._delete(ref)
            except ControlPlaneCallError:
                failed.append(ref)
        return failed

    async def _apply_new(self, policy_set: ExternalPolicySet) -> None:
        """Apply a new publication's set, removing everything on partial failure."""
        attempted: List[ObjectRef] = []
        for obj in policy_set.objects:
            attempted.append(obj.ref)
            try:
                await self._apply(obj.manifest, obj.ref)
            except ControlPlaneCallError as e:
                logger.error("Applying policy set failed, rolling back", failed_object=str(obj.ref))
                # The failed object is included: a timed-out apply may still have landed
                leftover = await self._delete_quietly(reversed(attempted))
                if leftover:
                    logger.error("Rollback left objects behind", objects=[str(ref) for ref in leftover])
                raise ControlPlaneError("Failed to apply gateway configuration") from e

    async def _restore(self, policy_set: ExternalPolicySet) -> bool:
        """Re-apply a previous set. Returns ``True`` if every object applied."""
        restored = True
        for obj in policy_set.objects:
            try:
                await self._apply(obj.manifest, obj.ref)
            except ControlPlaneCallError:
                restored = False
        return restored

    async def _swap(
        self,
        existing: PublishedModel,
        previous_set: ExternalPolicySet,
        new_set: ExternalPolicySet,
    ) -> List[ObjectRef]:
        """Apply-then-swap for updates.

        The previous set stays authoritative until the new set has fully
        applied; only then are objects that no longer belong removed.
        Returns stale refs that could not be deleted.
        """
        previous_refs = set(existing.object_refs()) | set(previous_set.refs())
        attempted: List[ObjectRef] = []
        for obj in new_set.objects:
            attempted.append(obj.ref)
            try:
                await self._apply(obj.manifest, obj.ref)
            except ControlPlaneCallError as e:
                logger.error("Applying updated policy set failed, restoring previous set", failed_object=str(obj.ref))
                restored = await self._restore(previous_set)
                await self._delete_quietly(reversed([ref for ref in attempted if ref not in previous_refs]))
                raise _SwapFailed(e, restored)

        new_refs = new_set.refs()
        stale = [ref for ref in existing.object_refs() if ref not in new_refs]
        return await self._delete_quietly(stale)

    def _teardown_refs(self, record: PublishedModel) -> List[ObjectRef]:
        refs = list(record.object_refs())
        try:
            for ref in self.synthesizer.synthesize(record, descriptor_from_record(record)).refs():
                if ref not in refs:
                    refs.append(ref)
        except ValidationError:
            pass
        # Policies first, the route last
        return list(reversed(refs))

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def _store_call(self, operation: str, func: Callable, *args) -> Any:
        try:
            return await self.store_retry.execute_with_retry(func, *args, operation_name=operation)
        except PublishingStoreError as e:
            logger.error("Publishing store call failed", operation=operation, error=str(e))
            raise StoreError("Publishing store unavailable") from e

    async def _load(self, tenant_id: str, model_name: str) -> Optional[PublishedModel]:
        document = await self._store_call("get_record", self.store.get_record, tenant_id, model_name)
        return PublishedModel.from_document(document) if document is not None else None

    async def _persist(self, record: PublishedModel) -> None:
        tracked = self.usage.get_usage(record.tenant_id, record.model_name)
        if tracked is not None:
            record = record.model_copy(update={"usage": tracked})
        await self._store_call(
            "put_record", self.store.put_record, record.tenant_id, record.model_name, record.to_document()
        )

    async def _mark_error(self, record: PublishedModel, reason: str, pending_unpublish: bool = False) -> None:
        """Persist ``error`` status; a failure to do so is logged, not raised."""
        failed = record.model_copy(update={
            "status": PublicationStatus.ERROR,
            "last_error": reason,
            "pending_unpublish": pending_unpublish or record.pending_unpublish,
            "updated_at": utcnow(),
        })
        try:
            await self._persist(failed)
        except StoreError:
            logger.error("Could not record error status", reason=reason)

    async def _restore_credential(
        self, tenant_id: str, model_name: str, credential: Optional[Dict[str, Any]]
    ) -> None:
        if credential is None:
            return
        try:
            await self._store_call("restore_key", self.api_keys.restore, tenant_id, model_name, credential)
        except StoreError:
            logger.error("Previous credential could not be restored", key_id=credential.get("key_id"))

    async def _revoke_quietly(self, tenant_id: str, model_name: str) -> None:
        try:
            await self._store_call("revoke_key", self.api_keys.revoke, tenant_id, model_name)
        except StoreError:
            logger.error("Credential left behind after rollback")

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _with_usage(self, record: PublishedModel) -> PublishedModel:
        tracked = self.usage.get_usage(record.tenant_id, record.model_name)
        if tracked is None:
            return record
        return record.model_copy(update={"usage": tracked})

    def _emit(self, event_type: EventType, record: PublishedModel, actor: str) -> None:
        if self.event_publisher is None:
            return
        task = asyncio.create_task(
            self.event_publisher.publish_lifecycle(
                event_type,
                tenant_id=record.tenant_id,
                model_name=record.model_name,
                actor=actor,
                external_url=record.external_url,
                model_type=record.model_type.value,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _update_gauges(self, documents: List[Dict[str, Any]]) -> None:
        if self.metrics is None:
            return
        counts = {status.value: 0 for status in PublicationStatus}
        for document in documents:
            status = document.get("status")
            if status in counts:
                counts[status] += 1
        for status, count in counts.items():
            self.metrics.set_published_models(status, count)
