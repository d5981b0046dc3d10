"""
Google Cloud provider.

Talks to the Compute, Kubernetes Engine, Cloud Storage, IAM and Resource
Manager REST APIs over httpx. Long-running operations are polled until done
within ``operation_timeout``. Compute calls carry a ``requestId`` so retried
creates and deletes never duplicate work.
"""

from __future__ import annotations

import hashlib
import uuid
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from driftwood.clients.base import BaseHTTPClient
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

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class GcpClient(BaseHTTPClient):
    provider = "gcp"


def _request_id(key: str | None) -> Dict[str, str] | None:
    return {"requestId": key} if key else None


def _object_name(attributes: Dict[str, Any], idempotency_key: str | None = None) -> str:
    """The configured ``name``, or ``name_prefix`` plus a generated suffix.

    The suffix derives from the idempotency key when there is one, so a
    retried create asks for the same name.
    """
    if attributes.get("name"):
        return attributes["name"]
    seed = idempotency_key or uuid.uuid4().hex
    return attributes["name_prefix"] + hashlib.sha256(seed.encode()).hexdigest()[:8]


def _last_segment(link: Any) -> Any:
    if isinstance(link, str) and "/" in link:
        return link.rstrip("/").rsplit("/", 1)[-1]
    return link


def _echo(configured: Any, actual: Any) -> Any:
    """Report ``configured`` when it names the same object as ``actual``.

    The APIs return full self links where a name or a partial path was
    configured; echoing avoids reporting that as drift.
    """
    if configured is not None and _last_segment(configured) == _last_segment(actual):
        return configured
    return actual


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _operation_error(operation: Dict[str, Any]) -> Optional[str]:
    error = operation.get("error")
    if not error:
        return None
    if isinstance(error, dict) and error.get("errors"):
        return "; ".join(e.get("message", str(e)) for e in error["errors"])
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class GcpApi:
    """Authenticated calls on behalf of one provider session."""

    def __init__(self, client: GcpClient, settings: Settings, session: ProviderSession) -> None:
        self.client = client
        self.settings = settings
        self.session = session
        token = session.get("access_token") or settings.gcp_access_token
        if not token:
            raise ConfigurationError(
                "No GCP access token: set provider gcp.access_token or DRIFTWOOD_GCP_ACCESS_TOKEN"
            )
        self._headers = {"Authorization": f"Bearer {token}"}

    @property
    def project(self) -> str:
        return self.session.require("project")

    @property
    def region(self) -> str:
        return self.session.require("region")

    async def call(
        self,
        method: str,
        url: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        return await self.client.request(
            method, url, json=json, params=params, headers=self._headers
        )

    async def get_or_none(self, url: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.call("GET", url)
        except ProviderCallError as exc:
            if exc.status == 404:
                return None
            raise

    async def delete_if_exists(
        self, url: str, *, params: Dict[str, Any] | None = None
    ) -> Optional[Dict[str, Any]]:
        try:
            return await self.call("DELETE", url, params=params)
        except ProviderCallError as exc:
            if exc.status == 404:
                return None
            raise

    async def wait(self, operation: Optional[Dict[str, Any]], *, label: str) -> Dict[str, Any]:
        """Poll a long-running operation until it is DONE."""
        if not operation:
            return {}
        current = operation
        if current.get("status") != "DONE":
            link = current.get("selfLink")
            if not link:
                raise ProviderCallError(f"{label}: operation has no selfLink", provider="gcp")
            retrying = AsyncRetrying(
                retry=retry_if_result(lambda op: op.get("status") != "DONE"),
                stop=stop_after_delay(self.settings.operation_timeout),
                wait=wait_fixed(self.settings.poll_interval),
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        current = await self.call("GET", link)
                    if not attempt.retry_state.outcome.failed:
                        attempt.retry_state.set_result(current)
            except RetryError:
                raise ProviderCallError(
                    f"{label}: operation did not finish within "
                    f"{self.settings.operation_timeout:.0f}s",
                    provider="gcp",
                ) from None

        message = _operation_error(current)
        if message:
            raise ProviderCallError(f"{label}: {message}", provider="gcp")
        logger.debug("gcp_operation_done", label=label, operation=current.get("name"))
        return current


class GcpHandler:
    """Shared plumbing for GCP resource handlers."""

    schema: ResourceSchema

    def __init__(self, provider: "GcpProvider") -> None:
        self.provider = provider

    def api(self, session: ProviderSession) -> GcpApi:
        return GcpApi(self.provider.client, self.provider.settings, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        raise NotImplementedError

    async def _observed(
        self, identity: Dict[str, Any], session: ProviderSession
    ) -> ResourceObservation:
        observation = await self.read(identity, session=session)
        if observation is None:
            raise ProviderCallError(
                f"{self.schema.name} {identity} disappeared right after it was written",
                provider="gcp",
                status=404,
            )
        return observation

    async def lookup(
        self, attributes: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation:
        raise ProviderCallError(f"{self.schema.name} is not a data source", provider="gcp")


# Compute Engine


class NetworkHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_network",
        description="VPC network",
        attributes={
            "name": "Network name",
            "auto_create_subnetworks": "Create one subnetwork per region",
            "routing_mode": "REGIONAL or GLOBAL",
            "description": "Free-form description",
        },
        computed={"id": "Numeric id", "self_link": "Resource URL"},
        immutable=("name", "auto_create_subnetworks", "description"),
        defaults={"auto_create_subnetworks": False, "routing_mode": "REGIONAL"},
        required=("name",),
    )

    def _url(self, api: GcpApi, project: str, name: str = "") -> str:
        base = f"{api.settings.gcp_compute_url}/projects/{project}/global/networks"
        return f"{base}/{name}" if name else base

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        body = _compact(
            {
                "name": attributes["name"],
                "autoCreateSubnetworks": attributes.get("auto_create_subnetworks", False),
                "routingConfig": {"routingMode": attributes.get("routing_mode", "REGIONAL")},
                "description": attributes.get("description"),
            }
        )
        operation = await api.call(
            "POST", self._url(api, api.project), json=body, params=_request_id(idempotency_key)
        )
        await api.wait(operation, label=f"create network {attributes['name']}")
        return await self._observed({"project": api.project, "name": attributes["name"]}, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(self._url(api, identity["project"], identity["name"]))
        if body is None:
            return None
        return ResourceObservation(
            identity=dict(identity),
            computed={"id": body.get("id"), "self_link": body.get("selfLink")},
            observed=_compact(
                {
                    "name": body.get("name"),
                    "auto_create_subnetworks": body.get("autoCreateSubnetworks", False),
                    "routing_mode": (body.get("routingConfig") or {}).get("routingMode"),
                    "description": body.get("description"),
                }
            ),
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        if ("routing_mode",) in changed:
            operation = await api.call(
                "PATCH",
                self._url(api, identity["project"], identity["name"]),
                json={"routingConfig": {"routingMode": attributes["routing_mode"]}},
            )
            await api.wait(operation, label=f"update network {identity['name']}")
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        operation = await api.delete_if_exists(
            self._url(api, identity["project"], identity["name"]),
            params=_request_id(idempotency_key),
        )
        await api.wait(operation, label=f"delete network {identity['name']}")


class SubnetworkHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_subnetwork",
        description="Regional subnetwork of a VPC network",
        attributes={
            "name": "Subnetwork name",
            "network": "Network name or self link",
            "region": "Region, defaults to the provider region",
            "ip_cidr_range": "Primary range",
            "private_ip_google_access": "Reach Google APIs without external IPs",
            "secondary_ip_ranges": "List of {range_name, ip_cidr_range}",
        },
        computed={
            "id": "Numeric id",
            "self_link": "Resource URL",
            "gateway_address": "Gateway IP",
        },
        immutable=("name", "network", "region", "ip_cidr_range", "secondary_ip_ranges"),
        defaults={"private_ip_google_access": False},
        required=("name", "network", "ip_cidr_range"),
    )

    def _url(self, api: GcpApi, project: str, region: str, name: str = "") -> str:
        base = f"{api.settings.gcp_compute_url}/projects/{project}/regions/{region}/subnetworks"
        return f"{base}/{name}" if name else base

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        region = attributes.get("region") or api.region
        network = attributes["network"]
        body = {
            "name": attributes["name"],
            "network": network if "/" in network else f"global/networks/{network}",
            "ipCidrRange": attributes["ip_cidr_range"],
            "privateIpGoogleAccess": attributes.get("private_ip_google_access", False),
            "secondaryIpRanges": [
                {"rangeName": r["range_name"], "ipCidrRange": r["ip_cidr_range"]}
                for r in attributes.get("secondary_ip_ranges") or []
            ],
        }
        operation = await api.call(
            "POST",
            self._url(api, api.project, region),
            json=body,
            params=_request_id(idempotency_key),
        )
        await api.wait(operation, label=f"create subnetwork {attributes['name']}")
        identity = {
            "project": api.project,
            "region": region,
            "name": attributes["name"],
            "network": network,
        }
        return await self._observed(identity, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(
            self._url(api, identity["project"], identity["region"], identity["name"])
        )
        if body is None:
            return None
        return ResourceObservation(
            identity=dict(identity),
            computed={
                "id": body.get("id"),
                "self_link": body.get("selfLink"),
                "gateway_address": body.get("gatewayAddress"),
            },
            observed={
                "name": body.get("name"),
                "network": _echo(identity.get("network"), body.get("network")),
                "ip_cidr_range": body.get("ipCidrRange"),
                "private_ip_google_access": body.get("privateIpGoogleAccess", False),
                "secondary_ip_ranges": [
                    {"range_name": r.get("rangeName"), "ip_cidr_range": r.get("ipCidrRange")}
                    for r in body.get("secondaryIpRanges") or []
                ],
            },
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        if ("private_ip_google_access",) in changed:
            url = self._url(api, identity["project"], identity["region"], identity["name"])
            operation = await api.call(
                "POST",
                f"{url}/setPrivateIpGoogleAccess",
                json={"privateIpGoogleAccess": attributes["private_ip_google_access"]},
            )
            await api.wait(operation, label=f"update subnetwork {identity['name']}")
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        operation = await api.delete_if_exists(
            self._url(api, identity["project"], identity["region"], identity["name"]),
            params=_request_id(idempotency_key),
        )
        await api.wait(operation, label=f"delete subnetwork {identity['name']}")


class RegionDiskHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_region_disk",
        description="Persistent disk replicated across two zones",
        attributes={
            "name": "Disk name",
            "name_prefix": "Generate the name from this prefix instead of setting it",
            "region": "Region, defaults to the provider region",
            "size_gb": "Size in GB, can only grow",
            "type": "Disk type such as pd-balanced or pd-ssd",
            "replica_zones": "The two zones holding replicas",
            "labels": "Key/value labels",
        },
        computed={
            "id": "Numeric id",
            "self_link": "Resource URL",
            "users": "Attached instances",
            "disk_name": "Name the disk was created with",
        },
        immutable=("name", "name_prefix", "region", "type", "replica_zones"),
        defaults={"type": "pd-balanced", "labels": {}},
        required=("size_gb", "replica_zones"),
        required_any=("name", "name_prefix"),
        supports_create_before_destroy=True,
        unique_name="name",
    )

    def _url(self, api: GcpApi, project: str, region: str, name: str = "") -> str:
        base = f"{api.settings.gcp_compute_url}/projects/{project}/regions/{region}/disks"
        return f"{base}/{name}" if name else base

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        project = api.project
        region = attributes.get("region") or api.region
        disk_type = attributes.get("type", "pd-balanced")
        name = _object_name(attributes, idempotency_key)
        body = {
            "name": name,
            "sizeGb": str(attributes["size_gb"]),
            "type": f"projects/{project}/regions/{region}/diskTypes/{disk_type}",
            "replicaZones": [
                f"projects/{project}/zones/{zone}" for zone in attributes["replica_zones"]
            ],
            "labels": attributes.get("labels") or {},
        }
        operation = await api.call(
            "POST", self._url(api, project, region), json=body, params=_request_id(idempotency_key)
        )
        await api.wait(operation, label=f"create disk {name}")
        return await self._observed({"project": project, "region": region, "name": name}, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(
            self._url(api, identity["project"], identity["region"], identity["name"])
        )
        if body is None:
            return None
        return ResourceObservation(
            identity=dict(identity),
            computed={
                "id": body.get("id"),
                "self_link": body.get("selfLink"),
                "users": body.get("users") or [],
                "disk_name": body.get("name"),
            },
            observed={
                "name": body.get("name"),
                "size_gb": int(body.get("sizeGb", 0)),
                "type": _last_segment(body.get("type")),
                "replica_zones": [_last_segment(z) for z in body.get("replicaZones") or []],
                "labels": body.get("labels") or {},
            },
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        url = self._url(api, identity["project"], identity["region"], identity["name"])
        if ("size_gb",) in changed:
            operation = await api.call(
                "POST", f"{url}/resize", json={"sizeGb": str(attributes["size_gb"])}
            )
            await api.wait(operation, label=f"resize disk {identity['name']}")
        if any(path[0] == "labels" for path in changed):
            current = await api.call("GET", url)
            operation = await api.call(
                "POST",
                f"{url}/setLabels",
                json={
                    "labels": attributes.get("labels") or {},
                    "labelFingerprint": current.get("labelFingerprint"),
                },
            )
            await api.wait(operation, label=f"label disk {identity['name']}")
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        operation = await api.delete_if_exists(
            self._url(api, identity["project"], identity["region"], identity["name"]),
            params=_request_id(idempotency_key),
        )
        await api.wait(operation, label=f"delete disk {identity['name']}")


# Kubernetes Engine


class ClusterHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_cluster",
        description="GKE cluster",
        attributes={
            "name": "Cluster name",
            "location": "Region or zone, defaults to the provider region",
            "network": "Network name or self link",
            "subnetwork": "Subnetwork name or self link",
            "initial_node_count": "Nodes in the default pool",
            "remove_default_node_pool": "Delete the default pool once the cluster exists",
            "release_channel": "RAPID, REGULAR or STABLE",
            "ip_allocation_policy": "{cluster_secondary_range_name, services_secondary_range_name}",
        },
        computed={
            "endpoint": "Control plane IP, assigned once the cluster is running",
            "master_auth": "{cluster_ca_certificate}",
            "self_link": "Resource URL",
            "status": "Cluster status",
        },
        eventual=("endpoint", "master_auth"),
        immutable=(
            "name",
            "location",
            "network",
            "subnetwork",
            "initial_node_count",
            "remove_default_node_pool",
            "ip_allocation_policy",
        ),
        defaults={
            "initial_node_count": 1,
            "remove_default_node_pool": True,
            "release_channel": "REGULAR",
        },
        required=("name",),
    )

    def _url(self, api: GcpApi, project: str, location: str, name: str = "") -> str:
        base = f"{api.settings.gcp_container_url}/projects/{project}/locations/{location}/clusters"
        return f"{base}/{name}" if name else base

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        project = api.project
        location = attributes.get("location") or api.region
        name = attributes["name"]
        cluster: Dict[str, Any] = _compact(
            {
                "name": name,
                "network": attributes.get("network"),
                "subnetwork": attributes.get("subnetwork"),
                "initialNodeCount": attributes.get("initial_node_count", 1),
                "releaseChannel": {"channel": attributes.get("release_channel", "REGULAR")},
            }
        )
        policy = attributes.get("ip_allocation_policy")
        if policy:
            cluster["ipAllocationPolicy"] = _compact(
                {
                    "useIpAliases": True,
                    "clusterSecondaryRangeName": policy.get("cluster_secondary_range_name"),
                    "servicesSecondaryRangeName": policy.get("services_secondary_range_name"),
                }
            )
        operation = await api.call(
            "POST", self._url(api, project, location), json={"cluster": cluster}
        )
        await api.wait(operation, label=f"create cluster {name}")

        if attributes.get("remove_default_node_pool", True):
            operation = await api.delete_if_exists(
                f"{self._url(api, project, location, name)}/nodePools/default-pool"
            )
            await api.wait(operation, label=f"remove default node pool of {name}")

        identity = {
            "project": project,
            "location": location,
            "name": name,
            "network": attributes.get("network"),
            "subnetwork": attributes.get("subnetwork"),
        }
        return await self._observed(identity, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(
            self._url(api, identity["project"], identity["location"], identity["name"])
        )
        if body is None:
            return None

        computed: Dict[str, Any] = {
            "self_link": body.get("selfLink"),
            "status": body.get("status"),
        }
        if body.get("endpoint"):
            computed["endpoint"] = body["endpoint"]
        certificate = (body.get("masterAuth") or {}).get("clusterCaCertificate")
        if certificate:
            computed["master_auth"] = {"cluster_ca_certificate": certificate}

        observed: Dict[str, Any] = {
            "name": body.get("name"),
            "network": _echo(identity.get("network"), body.get("network")),
            "subnetwork": _echo(identity.get("subnetwork"), body.get("subnetwork")),
            "initial_node_count": body.get("initialNodeCount"),
            "release_channel": (body.get("releaseChannel") or {}).get("channel"),
        }
        policy = body.get("ipAllocationPolicy") or {}
        if policy.get("clusterSecondaryRangeName") or policy.get("servicesSecondaryRangeName"):
            observed["ip_allocation_policy"] = _compact(
                {
                    "cluster_secondary_range_name": policy.get("clusterSecondaryRangeName"),
                    "services_secondary_range_name": policy.get("servicesSecondaryRangeName"),
                }
            )
        return ResourceObservation(
            identity=dict(identity), computed=computed, observed=_compact(observed)
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        if ("release_channel",) in changed:
            operation = await api.call(
                "PUT",
                self._url(api, identity["project"], identity["location"], identity["name"]),
                json={
                    "update": {"desiredReleaseChannel": {"channel": attributes["release_channel"]}}
                },
            )
            await api.wait(operation, label=f"update cluster {identity['name']}")
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        operation = await api.delete_if_exists(
            self._url(api, identity["project"], identity["location"], identity["name"])
        )
        await api.wait(operation, label=f"delete cluster {identity['name']}")


class NodePoolHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_node_pool",
        description="Node pool of a GKE cluster",
        attributes={
            "name": "Pool name",
            "name_prefix": "Generate the name from this prefix instead of setting it",
            "cluster": "Cluster name",
            "location": "Cluster location, defaults to the provider region",
            "node_count": "Nodes per zone",
            "machine_type": "Compute machine type",
            "disk_size_gb": "Boot disk size",
            "service_account": "Service account email for the nodes",
            "oauth_scopes": "OAuth scopes granted to the nodes",
            "labels": "Kubernetes node labels",
            "guest_accelerators": "List of {type, count}",
            "autoscaling": "{min_node_count, max_node_count}",
        },
        computed={
            "self_link": "Resource URL",
            "status": "Pool status",
            "instance_group_urls": "Managed instance groups backing the pool",
            "pool_name": "Name the pool was created with",
        },
        immutable=(
            "name",
            "name_prefix",
            "cluster",
            "location",
            "machine_type",
            "disk_size_gb",
            "service_account",
            "oauth_scopes",
            "labels",
            "guest_accelerators",
        ),
        defaults={
            "node_count": 1,
            "machine_type": "e2-medium",
            "disk_size_gb": 100,
            "oauth_scopes": [CLOUD_PLATFORM_SCOPE],
        },
        required=("cluster",),
        required_any=("name", "name_prefix"),
        supports_create_before_destroy=True,
        unique_name="name",
    )

    def _url(
        self, api: GcpApi, project: str, location: str, cluster: str, name: str = ""
    ) -> str:
        base = (
            f"{api.settings.gcp_container_url}/projects/{project}/locations/{location}"
            f"/clusters/{cluster}/nodePools"
        )
        return f"{base}/{name}" if name else base

    def _identity_url(self, api: GcpApi, identity: Dict[str, Any]) -> str:
        return self._url(
            api, identity["project"], identity["location"], identity["cluster"], identity["name"]
        )

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        project = api.project
        location = attributes.get("location") or api.region
        cluster = _last_segment(attributes["cluster"])
        config = _compact(
            {
                "machineType": attributes.get("machine_type", "e2-medium"),
                "diskSizeGb": attributes.get("disk_size_gb", 100),
                "serviceAccount": attributes.get("service_account"),
                "oauthScopes": attributes.get("oauth_scopes") or [CLOUD_PLATFORM_SCOPE],
                "labels": attributes.get("labels"),
            }
        )
        accelerators = attributes.get("guest_accelerators")
        if accelerators:
            config["accelerators"] = [
                {"acceleratorType": a["type"], "acceleratorCount": str(a["count"])}
                for a in accelerators
            ]
        name = _object_name(attributes, idempotency_key)
        pool: Dict[str, Any] = {
            "name": name,
            "initialNodeCount": attributes.get("node_count", 1),
            "config": config,
        }
        if attributes.get("autoscaling"):
            pool["autoscaling"] = self._autoscaling(attributes["autoscaling"])

        operation = await api.call(
            "POST", self._url(api, project, location, cluster), json={"nodePool": pool}
        )
        await api.wait(operation, label=f"create node pool {name}")
        identity = {"project": project, "location": location, "cluster": cluster, "name": name}
        return await self._observed(identity, session)

    @staticmethod
    def _autoscaling(autoscaling: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not autoscaling:
            return {"enabled": False}
        return {
            "enabled": True,
            "minNodeCount": autoscaling.get("min_node_count", 0),
            "maxNodeCount": autoscaling.get("max_node_count", 1),
        }

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(self._identity_url(api, identity))
        if body is None:
            return None
        config = body.get("config") or {}
        observed: Dict[str, Any] = {
            "name": body.get("name"),
            "machine_type": config.get("machineType"),
            "disk_size_gb": config.get("diskSizeGb"),
            "service_account": config.get("serviceAccount"),
            "oauth_scopes": config.get("oauthScopes"),
            "labels": config.get("labels"),
        }
        if config.get("accelerators"):
            observed["guest_accelerators"] = [
                {"type": a.get("acceleratorType"), "count": int(a.get("acceleratorCount", 0))}
                for a in config["accelerators"]
            ]
        autoscaling = body.get("autoscaling") or {}
        if autoscaling.get("enabled"):
            observed["autoscaling"] = {
                "min_node_count": autoscaling.get("minNodeCount", 0),
                "max_node_count": autoscaling.get("maxNodeCount", 0),
            }
        return ResourceObservation(
            identity=dict(identity),
            computed={
                "self_link": body.get("selfLink"),
                "status": body.get("status"),
                "instance_group_urls": body.get("instanceGroupUrls") or [],
                "pool_name": body.get("name"),
            },
            observed=_compact(observed),
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        url = self._identity_url(api, identity)
        if ("node_count",) in changed:
            operation = await api.call(
                "POST", f"{url}:setSize", json={"nodeCount": attributes["node_count"]}
            )
            await api.wait(operation, label=f"resize node pool {identity['name']}")
        if any(path[0] == "autoscaling" for path in changed):
            operation = await api.call(
                "POST",
                f"{url}:setAutoscaling",
                json={"autoscaling": self._autoscaling(attributes.get("autoscaling"))},
            )
            await api.wait(operation, label=f"autoscale node pool {identity['name']}")
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        operation = await api.delete_if_exists(self._identity_url(api, identity))
        await api.wait(operation, label=f"delete node pool {identity['name']}")


# Cloud Storage


class BucketHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_bucket",
        description="Cloud Storage bucket",
        attributes={
            "name": "Globally unique bucket name",
            "location": "Region or multi-region",
            "storage_class": "STANDARD, NEARLINE, COLDLINE or ARCHIVE",
            "uniform_bucket_level_access": "Disable object ACLs",
            "versioning": "Keep noncurrent object versions",
            "labels": "Key/value labels",
            "force_destroy": "Delete contained objects on destroy",
        },
        computed={"self_link": "Resource URL", "url": "gs:// URL"},
        immutable=("name", "location"),
        defaults={
            "storage_class": "STANDARD",
            "uniform_bucket_level_access": True,
            "versioning": False,
            "labels": {},
            "force_destroy": False,
        },
        required=("name", "location"),
    )

    def _url(self, api: GcpApi, name: str = "") -> str:
        base = f"{api.settings.gcp_storage_url}/b"
        return f"{base}/{name}" if name else base

    @staticmethod
    def _body(attributes: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "storageClass": attributes.get("storage_class", "STANDARD"),
            "iamConfiguration": {
                "uniformBucketLevelAccess": {
                    "enabled": attributes.get("uniform_bucket_level_access", True)
                }
            },
            "versioning": {"enabled": attributes.get("versioning", False)},
            "labels": attributes.get("labels") or {},
        }

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        body = self._body(attributes)
        body.update({"name": attributes["name"], "location": attributes["location"]})
        await api.call("POST", self._url(api), json=body, params={"project": api.project})
        identity = {
            "name": attributes["name"],
            "location": attributes["location"],
            "force_destroy": attributes.get("force_destroy", False),
        }
        return await self._observed(identity, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(self._url(api, identity["name"]))
        if body is None:
            return None
        location = body.get("location")
        if str(location).upper() == str(identity.get("location")).upper():
            location = identity["location"]
        uniform = ((body.get("iamConfiguration") or {}).get("uniformBucketLevelAccess") or {})
        return ResourceObservation(
            identity=dict(identity),
            computed={"self_link": body.get("selfLink"), "url": f"gs://{body.get('name')}"},
            observed={
                "name": body.get("name"),
                "location": location,
                "storage_class": body.get("storageClass"),
                "uniform_bucket_level_access": bool(uniform.get("enabled", False)),
                "versioning": bool((body.get("versioning") or {}).get("enabled", False)),
                "labels": body.get("labels") or {},
            },
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        url = self._url(api, identity["name"])
        body = self._body(attributes)
        current = await api.call("GET", url)
        # PATCH merges labels; removed keys have to be sent as null
        for key in current.get("labels") or {}:
            body["labels"].setdefault(key, None)
        await api.call("PATCH", url, json=body)
        identity = dict(identity, force_destroy=attributes.get("force_destroy", False))
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        url = self._url(api, identity["name"])
        if identity.get("force_destroy"):
            await self._empty(api, url)
        await api.delete_if_exists(url)

    async def _empty(self, api: GcpApi, url: str) -> None:
        page_token: Optional[str] = None
        while True:
            params = {"versions": "true"}
            if page_token:
                params["pageToken"] = page_token
            try:
                listing = await api.call("GET", f"{url}/o", params=params)
            except ProviderCallError as exc:
                if exc.status == 404:
                    return
                raise
            for item in listing.get("items") or []:
                await api.delete_if_exists(
                    f"{url}/o/{quote(item['name'], safe='')}",
                    params={"generation": item["generation"]} if item.get("generation") else None,
                )
            page_token = listing.get("nextPageToken")
            if not page_token:
                return


# IAM


def _has_member(policy: Dict[str, Any], role: str, member: str) -> bool:
    return any(
        binding.get("role") == role and member in binding.get("members", [])
        for binding in policy.get("bindings") or []
    )


def _add_member(policy: Dict[str, Any], role: str, member: str) -> bool:
    if _has_member(policy, role, member):
        return False
    bindings = policy.setdefault("bindings", [])
    for binding in bindings:
        if binding.get("role") == role and not binding.get("condition"):
            binding.setdefault("members", []).append(member)
            return True
    bindings.append({"role": role, "members": [member]})
    return True


def _remove_member(policy: Dict[str, Any], role: str, member: str) -> bool:
    changed = False
    kept = []
    for binding in policy.get("bindings") or []:
        if binding.get("role") == role and member in binding.get("members", []):
            binding["members"] = [m for m in binding["members"] if m != member]
            changed = True
        if binding.get("members"):
            kept.append(binding)
    policy["bindings"] = kept
    return changed


class IamMemberHandler(GcpHandler):
    """Read-modify-write of one member in an IAM policy.

    Policies carry an etag; a concurrent writer makes the write fail with
    409 or 412, which is retried since the modification is idempotent.
    """

    async def _get_policy(self, api: GcpApi, identity: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _set_policy(
        self, api: GcpApi, identity: Dict[str, Any], policy: Dict[str, Any]
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def _identity(self, api: GcpApi, attributes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _modify(self, api: GcpApi, identity: Dict[str, Any], add: bool) -> None:
        policy = await self._get_policy(api, identity)
        if policy is None:
            if add:
                raise ProviderCallError(
                    f"IAM policy for {identity} not found", provider="gcp", status=404
                )
            return
        modify = _add_member if add else _remove_member
        if not modify(policy, identity["role"], identity["member"]):
            return
        try:
            await self._set_policy(api, identity, policy)
        except ProviderCallError as exc:
            if exc.status in (409, 412):
                raise ProviderCallError(
                    exc.message, provider="gcp", status=exc.status, retryable=True
                ) from exc
            raise

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        identity = self._identity(api, attributes)
        await self._modify(api, identity, add=True)
        return await self._observed(identity, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        policy = await self._get_policy(api, identity)
        if policy is None or not _has_member(policy, identity["role"], identity["member"]):
            return None
        return ResourceObservation(
            identity=dict(identity),
            computed={"etag": policy.get("etag")},
            observed={key: identity[key] for key in self.schema.attributes if key in identity},
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        # every attribute is immutable, so updates only happen for no-op diffs
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        await self._modify(self.api(session), identity, add=False)


class BucketIamMemberHandler(IamMemberHandler):
    schema = ResourceSchema(
        name="gcp_bucket_iam_member",
        description="Grants one role on a bucket to one member",
        attributes={
            "bucket": "Bucket name",
            "role": "Role name",
            "member": "Member, e.g. serviceAccount:x",
        },
        computed={"etag": "Policy etag after the change"},
        immutable=("bucket", "role", "member"),
        required=("bucket", "role", "member"),
    )

    def _identity(self, api: GcpApi, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "bucket": attributes["bucket"],
            "role": attributes["role"],
            "member": attributes["member"],
        }

    async def _get_policy(self, api: GcpApi, identity: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await api.get_or_none(f"{api.settings.gcp_storage_url}/b/{identity['bucket']}/iam")

    async def _set_policy(
        self, api: GcpApi, identity: Dict[str, Any], policy: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await api.call(
            "PUT", f"{api.settings.gcp_storage_url}/b/{identity['bucket']}/iam", json=policy
        )


class ProjectIamMemberHandler(IamMemberHandler):
    schema = ResourceSchema(
        name="gcp_project_iam_member",
        description="Grants one project-level role to one member",
        attributes={
            "project": "Project id, defaults to the provider project",
            "role": "Role name",
            "member": "Member, e.g. serviceAccount:x",
        },
        computed={"etag": "Policy etag after the change"},
        immutable=("project", "role", "member"),
        required=("role", "member"),
    )

    def _policy_url(self, api: GcpApi, identity: Dict[str, Any], verb: str) -> str:
        return f"{api.settings.gcp_resource_manager_url}/projects/{identity['project']}:{verb}"

    def _identity(self, api: GcpApi, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "project": attributes.get("project") or api.project,
            "role": attributes["role"],
            "member": attributes["member"],
        }

    async def _get_policy(self, api: GcpApi, identity: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return await api.call(
                "POST",
                self._policy_url(api, identity, "getIamPolicy"),
                json={},
            )
        except ProviderCallError as exc:
            if exc.status == 404:
                return None
            raise

    async def _set_policy(
        self, api: GcpApi, identity: Dict[str, Any], policy: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await api.call(
            "POST",
            self._policy_url(api, identity, "setIamPolicy"),
            json={"policy": policy},
        )


class ServiceAccountHandler(GcpHandler):
    schema = ResourceSchema(
        name="gcp_service_account",
        description="IAM service account",
        attributes={
            "account_id": "Local part of the email",
            "display_name": "Display name",
            "description": "Free-form description",
        },
        computed={
            "email": "Account email",
            "unique_id": "Numeric id",
            "name": "Resource name",
            "member": "serviceAccount:<email>, for IAM bindings",
        },
        immutable=("account_id",),
        required=("account_id",),
    )

    def _url(self, api: GcpApi, project: str, email: str = "") -> str:
        base = f"{api.settings.gcp_iam_url}/projects/{project}/serviceAccounts"
        return f"{base}/{email}" if email else base

    async def create(
        self,
        attributes: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> ResourceObservation:
        api = self.api(session)
        body = await api.call(
            "POST",
            self._url(api, api.project),
            json={
                "accountId": attributes["account_id"],
                "serviceAccount": _compact(
                    {
                        "displayName": attributes.get("display_name"),
                        "description": attributes.get("description"),
                    }
                ),
            },
        )
        email = body.get("email") or (
            f"{attributes['account_id']}@{api.project}.iam.gserviceaccount.com"
        )
        return await self._observed({"project": api.project, "email": email}, session)

    async def read(
        self, identity: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation | None:
        api = self.api(session)
        body = await api.get_or_none(self._url(api, identity["project"], identity["email"]))
        if body is None:
            return None
        email = body.get("email", identity["email"])
        return ResourceObservation(
            identity=dict(identity),
            computed={
                "email": email,
                "unique_id": body.get("uniqueId"),
                "name": body.get("name"),
                "member": f"serviceAccount:{email}",
            },
            observed=_compact(
                {
                    "account_id": email.split("@", 1)[0],
                    "display_name": body.get("displayName"),
                    "description": body.get("description"),
                }
            ),
        )

    async def update(
        self,
        identity: Dict[str, Any],
        attributes: Dict[str, Any],
        *,
        changed: List[Tuple[str, ...]],
        session: ProviderSession,
    ) -> ResourceObservation:
        api = self.api(session)
        await api.call(
            "PATCH",
            self._url(api, identity["project"], identity["email"]),
            json={
                "serviceAccount": {
                    "displayName": attributes.get("display_name", ""),
                    "description": attributes.get("description", ""),
                },
                "updateMask": "displayName,description",
            },
        )
        return await self._observed(identity, session)

    async def delete(
        self,
        identity: Dict[str, Any],
        *,
        session: ProviderSession,
        idempotency_key: str | None = None,
    ) -> None:
        api = self.api(session)
        await api.delete_if_exists(self._url(api, identity["project"], identity["email"]))


class ClientConfigHandler(GcpHandler):
    """Data lookup exposing the session's project, region and access token."""

    schema = ResourceSchema(
        name="gcp_client_config",
        description="Credentials and defaults of the configured GCP session",
        attributes={},
        computed={
            "project": "Provider project",
            "region": "Provider region",
            "access_token": "OAuth2 access token, never persisted",
        },
        ephemeral=("access_token",),
        kind="data",
    )

    async def lookup(
        self, attributes: Dict[str, Any], *, session: ProviderSession
    ) -> ResourceObservation:
        api = self.api(session)
        token = session.get("access_token") or api.settings.gcp_access_token
        return ResourceObservation(
            identity={"project": api.project},
            computed={
                "project": api.project,
                "region": session.get("region"),
                "access_token": token,
            },
        )


HANDLERS = (
    NetworkHandler,
    SubnetworkHandler,
    RegionDiskHandler,
    ClusterHandler,
    NodePoolHandler,
    BucketHandler,
    BucketIamMemberHandler,
    ProjectIamMemberHandler,
    ServiceAccountHandler,
    ClientConfigHandler,
)


class GcpProvider(BaseProvider):
    name = "gcp"
    IDEMPOTENT_TYPES = frozenset(
        {
            "gcp_network",
            "gcp_subnetwork",
            "gcp_region_disk",
            "gcp_bucket_iam_member",
            "gcp_project_iam_member",
        }
    )

    def __init__(self, settings: Settings | None = None, **_: Any) -> None:
        super().__init__()
        self.settings = settings or get_settings()
        self.client = GcpClient(timeout=self.settings.http_timeout)
        for handler in HANDLERS:
            self.register(handler(self))

    async def aclose(self) -> None:
        await self.client.aclose()


register_provider(
    "gcp",
    GcpProvider,
    description="Google Cloud networks, storage, IAM and GKE",
)
