"""
Kubernetes provider.

Manages Deployments, Services, PersistentVolumes and PersistentVolumeClaims
through the official client. Objects are declared as ``metadata`` plus
``spec`` mappings written the way they appear in manifests.

Connection settings (provider ``kubernetes`` block):
    host: API server URL, usually built from a cluster's endpoint
    token: Bearer token
    cluster_ca_certificate: Base64-encoded PEM bundle
    kubeconfig / context: Used when ``host`` is not set
"""

from __future__ import annotations

import asyncio
import base64
import tempfile
from functools import partial
from typing import Any, Dict, List, Tuple

import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from driftwood.clients.base import is_retryable_status
from driftwood.config.settings import Settings, get_settings
from driftwood.core.errors import ConfigurationError, ProviderCallError
from driftwood.providers.base import (
    BaseProvider,
    ProviderSession,
    ResourceObservation,
    ResourceSchema,
)
from driftwood.providers.registry import register_provider

logger = structlog.get_logger()

_METADATA_FIELDS = ("name", "namespace", "labels", "annotations")


def _object_schema(
    name: str,
    description: str,
    *,
    computed: Dict[str, str],
    namespaced: bool = True,
    immutable: Tuple[str, ...] = (),
    eventual: Tuple[str, ...] = (),
) -> ResourceSchema:
    base_immutable = ("metadata.name", "metadata.namespace") if namespaced else ("metadata.name",)
    return ResourceSchema(
        name=name,
        description=description,
        attributes={
            "metadata": "name, namespace, labels, annotations",
            "spec": "Object spec as written in a manifest",
        },
        computed=computed,
        eventual=eventual,
        immutable=base_immutable + immutable,
        defaults={"metadata": {"namespace": "default"}} if namespaced else {},
        required=("metadata", "spec"),
    )


class KubernetesHandler:
    """One Kubernetes kind. Subclasses name the client methods to call."""

    schema: ResourceSchema
    api_version = "v1"
    kind = ""
    api_class = "CoreV1Api"
    # Suffix of the generated client methods, e.g. ``namespaced_service``
    method = ""
    namespaced = True

    def __init__(self, provider: "KubernetesProvider") -> None:
        self.provider = provider

    def _call(self, verb: str) -> str:
        return f"{verb}_{self.method}"

    def _scope(self, identity: Dict[str, Any]) -> Dict[str, Any]:
        return {"namespace": identity["namespace"]} if self.namespaced else {}

    def _body(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": dict(attributes.get("metadata") or {}),
            "spec": attributes.get("spec") or {},
        }

    def _identity(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        metadata = attributes.get("metadata") or {}
        identity = {"name": metadata.get("name")}
        if self.namespaced:
            identity["namespace"] = metadata.get("namespace") or "default"
        return identity

    def computed(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata") or {}
        return {"uid": metadata.get("uid"), "resource_version": metadata.get("resourceVersion")}

    def _observe(self, identity: Dict[str, Any], obj: Dict[str, Any]) -> ResourceObservation:
        metadata = obj.get("metadata") or {}
        return ResourceObservation(
            identity=dict(identity),
            computed=self.computed(obj),
            observed={
                "metadata": {key: metadata[key] for key in _METADATA_FIELDS if key in metadata},
                "spec": obj.get("spec") or {},
            },
        )

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        identity = self._identity(attributes)
        api = self.provider.api(self.api_class, session)
        obj = await self.provider.run(
            api, self._call("create"), body=self._body(attributes), **self._scope(identity)
        )
        return self._observe(identity, obj)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.provider.api(self.api_class, session)
        try:
            obj = await self.provider.run(
                api, self._call("read"), name=identity["name"], **self._scope(identity)
            )
        except ProviderCallError as exc:
            if exc.status == 404:
                return None
            raise
        return self._observe(identity, obj)

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.provider.api(self.api_class, session)
        obj = await self.provider.run(
            api,
            self._call("patch"),
            name=identity["name"],
            body=self._body(attributes),
            _content_type="application/merge-patch+json",
            **self._scope(identity),
        )
        return self._observe(identity, obj)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.provider.api(self.api_class, session)
        try:
            await self.provider.run(
                api,
                self._call("delete"),
                name=identity["name"],
                propagation_policy="Foreground",
                **self._scope(identity),
            )
        except ProviderCallError as exc:
            if exc.status == 404:
                return
            raise
        await self._wait_gone(identity, session)

    async def _wait_gone(self, identity: Dict[str, Any], session: ProviderSession) -> None:
        settings = self.provider.settings
        retrying = AsyncRetrying(
            retry=retry_if_result(lambda observation: observation is not None),
            stop=stop_after_delay(settings.operation_timeout),
            wait=wait_fixed(settings.poll_interval),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    observation = await self.read(identity, session=session)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(observation)
        except RetryError:
            raise ProviderCallError(
                f"{self.kind} {identity['name']} still exists after delete",
                provider="kubernetes",
            ) from None

    async def lookup(
        self, attributes: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation:
        raise ProviderCallError(f"{self.schema.name} is not a data source", provider="kubernetes")


class DeploymentHandler(KubernetesHandler):
    schema = _object_schema(
        "k8s_deployment",
        "Deployment",
        computed={
            "uid": "Object uid",
            "resource_version": "Resource version",
            "generation": "Spec generation",
        },
        immutable=("spec.selector",),
    )
    api_version = "apps/v1"
    kind = "Deployment"
    api_class = "AppsV1Api"
    method = "namespaced_deployment"

    def computed(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        computed = super().computed(obj)
        computed["generation"] = (obj.get("metadata") or {}).get("generation")
        return computed


class ServiceHandler(KubernetesHandler):
    schema = _object_schema(
        "k8s_service",
        "Service",
        computed={
            "uid": "Object uid",
            "resource_version": "Resource version",
            "cluster_ip": "Allocated cluster IP",
            "load_balancer_ingress": "External IP or hostname of a LoadBalancer service",
        },
        eventual=("load_balancer_ingress",),
        immutable=("spec.clusterIP",),
    )
    kind = "Service"
    method = "namespaced_service"

    def computed(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        computed = super().computed(obj)
        computed["cluster_ip"] = (obj.get("spec") or {}).get("clusterIP")
        ingress = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        if ingress:
            computed["load_balancer_ingress"] = ingress[0].get("ip") or ingress[0].get("hostname")
        return computed


class PersistentVolumeHandler(KubernetesHandler):
    schema = _object_schema(
        "k8s_persistent_volume",
        "PersistentVolume",
        computed={"uid": "Object uid", "resource_version": "Resource version", "phase": "Phase"},
        namespaced=False,
        immutable=("spec",),
    )
    kind = "PersistentVolume"
    method = "persistent_volume"
    namespaced = False

    def computed(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        computed = super().computed(obj)
        computed["phase"] = (obj.get("status") or {}).get("phase")
        return computed


class PersistentVolumeClaimHandler(KubernetesHandler):
    schema = _object_schema(
        "k8s_persistent_volume_claim",
        "PersistentVolumeClaim",
        computed={
            "uid": "Object uid",
            "resource_version": "Resource version",
            "phase": "Phase",
            "volume_name": "Bound volume",
        },
        immutable=("spec",),
    )
    kind = "PersistentVolumeClaim"
    method = "namespaced_persistent_volume_claim"

    def computed(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        computed = super().computed(obj)
        computed["phase"] = (obj.get("status") or {}).get("phase")
        computed["volume_name"] = (obj.get("spec") or {}).get("volumeName")
        return computed


HANDLERS = (
    DeploymentHandler,
    ServiceHandler,
    PersistentVolumeHandler,
    PersistentVolumeClaimHandler,
)


class KubernetesProvider(BaseProvider):
    """Provider backed by the official kubernetes client.

    Clients are built per session, so a provider block that references a
    cluster created in the same run connects once that cluster exists.
    """

    name = "kubernetes"

    def __init__(self, settings: Settings | None = None, **_: Any) -> None:
        super().__init__()
        self.settings = settings or get_settings()
        self._clients: Dict[str, Any] = {}
        self._ca_files: List[Any] = []
        for handler in HANDLERS:
            self.register(handler(self))

    def api_client(self, session: ProviderSession) -> Any:
        key = session.fingerprint
        if key not in self._clients:
            self._clients[key] = self._build_client(session)
        return self._clients[key]

    def api(self, api_class: str, session: ProviderSession) -> Any:
        from kubernetes import client

        return getattr(client, api_class)(self.api_client(session))

    def _build_client(self, session: ProviderSession) -> Any:
        from kubernetes import client, config

        host = session.get("host")
        if host:
            configuration = client.Configuration()
            configuration.host = host
            token = session.get("token")
            if token:
                configuration.api_key = {"authorization": f"Bearer {token}"}
            certificate = session.get("cluster_ca_certificate")
            if certificate:
                configuration.ssl_ca_cert = self._write_ca(certificate)
            logger.debug("kubernetes_client_configured", host=host)
            return client.ApiClient(configuration)

        try:
            return config.new_client_from_config(
                config_file=session.get("kubeconfig"), context=session.get("context")
            )
        except config.ConfigException as exc:
            raise ConfigurationError(f"Failed to load Kubernetes config: {exc}") from exc

    def _write_ca(self, certificate: str) -> str:
        try:
            pem = base64.b64decode(certificate, validate=True)
        except ValueError:
            pem = certificate.encode()
        handle = tempfile.NamedTemporaryFile(prefix="driftwood-ca-", suffix=".pem")
        handle.write(pem)
        handle.flush()
        self._ca_files.append(handle)
        return handle.name

    async def run(self, api: Any, method: str, **kwargs: Any) -> Dict[str, Any]:
        """Run a blocking client call in the executor and serialise its result."""
        from kubernetes.client.exceptions import ApiException
        from urllib3.exceptions import HTTPError

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, partial(getattr(api, method), **kwargs))
        except ApiException as exc:
            raise ProviderCallError(
                f"Kubernetes API {exc.status}: {exc.reason}",
                provider=self.name,
                status=exc.status,
                retryable=is_retryable_status(exc.status or 0),
                details={"body": (exc.body or "")[:200]} if exc.body else None,
            ) from exc
        except HTTPError as exc:
            raise ProviderCallError(
                f"Kubernetes API unreachable: {exc}", provider=self.name, retryable=True
            ) from exc
        if result is None:
            return {}
        serialised = api.api_client.sanitize_for_serialization(result)
        return serialised if isinstance(serialised, dict) else {}

    async def aclose(self) -> None:
        for api_client in self._clients.values():
            api_client.close()
        self._clients.clear()
        for handle in self._ca_files:
            handle.close()
        self._ca_files.clear()


register_provider(
    "kubernetes",
    KubernetesProvider,
    description="Deployments, Services and persistent volumes",
)
