"""
Service-mesh sidecar client.

Sidecars expose a fixed HTTP API on a local port. MeshClient turns logical
operations (invoke a method on a named service, read state, publish an event)
into that URL scheme and sends them through the shared ProbeClient:

    /v1.0/invoke/{service}/method/{path}
    /v1.0/metadata, /v1.0/components, /v1.0/healthz
    /v1.0/state/{store}[/{key}]
    /v1.0/publish/{pubsub}/{topic}
    /v1.0/secrets/{store}/{name}
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote

from .probe import ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

API_VERSION = "v1.0"
APP_ID_HEADER = "dapr-app-id"


class MeshError(Exception):
    """Raised when a sidecar management endpoint returns an unusable answer."""

    def __init__(self, message: str, result: Optional[ProbeResult] = None):
        super().__init__(message)
        self.result = result


@dataclass(frozen=True)
class SidecarConfig:
    """Where one application's sidecar listens."""

    name: str
    app_id: str
    http_port: int
    grpc_port: int
    app_port: int
    health_path: str = f"/{API_VERSION}/healthz"

    @property
    def container(self) -> str:
        return f"{self.name}-sidecar"


def standard_sidecars() -> List[SidecarConfig]:
    """Sidecar layout of the platform's standard deployment."""
    return [
        SidecarConfig("content-api", "content-api", 3502, 50002, 8082),
        SidecarConfig("public-gateway", "public-gateway", 3503, 50003, 8081),
        SidecarConfig("inquiries-api", "inquiries-api", 3504, 50004, 8083),
        SidecarConfig("admin-gateway", "admin-gateway", 3506, 50006, 8092),
        SidecarConfig("services-api", "services-api", 3507, 50007, 8093),
        SidecarConfig("notification-api", "notification-api", 3508, 50008, 8094),
    ]


class MeshClient:
    """
    Client for one sidecar.

    Args:
        app_id: Identity of the caller, sent as the app id header on invokes
        host: Sidecar host
        port: Sidecar HTTP port
        probe_client: Shared probe client; a private one is created if omitted
    """

    def __init__(
        self,
        app_id: str,
        host: str = "localhost",
        port: int = 3500,
        probe_client: Optional[ProbeClient] = None,
    ):
        self.app_id = app_id
        self.host = host
        self.port = port
        self.probe_client = probe_client or ProbeClient()

    @classmethod
    def for_sidecar(cls, sidecar: SidecarConfig, host: str = "localhost",
                    probe_client: Optional[ProbeClient] = None) -> "MeshClient":
        return cls(sidecar.app_id, host=host, port=sidecar.http_port, probe_client=probe_client)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/{API_VERSION}"

    def invoke_url(self, service: str, path: str) -> str:
        """URL for invoking ``path`` on ``service``; a leading slash on ``path`` is optional."""
        return f"{self.base_url}/invoke/{quote(service, safe='')}/method/{path.lstrip('/')}"

    def invoke(
        self,
        service: str,
        method: str,
        path: str,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> ProbeResult:
        merged = {"Content-Type": "application/json", APP_ID_HEADER: self.app_id}
        merged.update(headers or {})
        return self.probe_client.request(method, self.invoke_url(service, path), body=body, headers=merged)

    def healthz(self) -> ProbeResult:
        return self.probe_client.get(f"{self.base_url}/healthz")

    def get_metadata(self) -> Dict[str, Any]:
        result = self.probe_client.get(f"{self.base_url}/metadata")
        payload = self._require_json(result, "metadata")
        if not isinstance(payload, dict):
            raise MeshError(f"Sidecar metadata is not a JSON object: {result.excerpt()}", result)
        return payload

    def get_components(self) -> List[Dict[str, Any]]:
        result = self.probe_client.get(f"{self.base_url}/components")
        payload = self._require_json(result, "components")
        if not isinstance(payload, list):
            raise MeshError(f"Sidecar components is not a JSON array: {result.excerpt()}", result)
        return payload

    def _require_json(self, result: ProbeResult, what: str) -> Any:
        if not result.reachable:
            raise MeshError(f"Cannot fetch sidecar {what}: {result.error}", result)
        if result.status_code != 200:
            raise MeshError(
                f"Sidecar {what} returned {result.status_code}, expected 200: {result.excerpt()}",
                result,
            )
        if result.json_error:
            raise MeshError(f"Sidecar {what} is not valid JSON: {result.json_error}", result)
        return result.json

    def state_url(self, store: str, key: Optional[str] = None) -> str:
        url = f"{self.base_url}/state/{quote(store, safe='')}"
        if key is not None:
            url += f"/{quote(key, safe='')}"
        return url

    def get_state(self, store: str, key: str) -> ProbeResult:
        return self.probe_client.get(self.state_url(store, key))

    def save_state(self, store: str, key: str, value: Any) -> ProbeResult:
        return self.probe_client.post(self.state_url(store), body=[{"key": key, "value": value}])

    def delete_state(self, store: str, key: str) -> ProbeResult:
        return self.probe_client.delete(self.state_url(store, key))

    def publish(self, pubsub: str, topic: str, event: Any) -> ProbeResult:
        url = f"{self.base_url}/publish/{quote(pubsub, safe='')}/{quote(topic, safe='')}"
        return self.probe_client.post(url, body=event)

    def get_secret(self, store: str, name: str) -> ProbeResult:
        return self.probe_client.get(f"{self.base_url}/secrets/{quote(store, safe='')}/{quote(name, safe='')}")

    def validate_state_store_access(self, store: str, probe_key: str = "meshcheck-access-probe") -> Optional[str]:
        """None when the store answers; any status below 500 counts (a missing key is fine)."""
        result = self.get_state(store, probe_key)
        if not result.reachable:
            return f"state store {store} unreachable: {result.error}"
        if result.status_code >= 500:
            return f"state store {store} returned {result.status_code}: {result.excerpt(200)}"
        return None

    def validate_pubsub_access(self, pubsub: str, topic: str = "meshcheck-access-probe") -> Optional[str]:
        """None when a probe event is accepted."""
        result = self.publish(pubsub, topic, {"probe": True, "source": self.app_id})
        if not result.reachable:
            return f"pubsub {pubsub} unreachable: {result.error}"
        if result.status_code >= 400:
            return f"pubsub {pubsub}/{topic} returned {result.status_code}: {result.excerpt(200)}"
        return None

    def __repr__(self) -> str:
        return f"MeshClient(app_id={self.app_id!r}, base_url={self.base_url!r})"


@dataclass(frozen=True)
class MeshCommunicationCheck:
    """One caller -> callee invocation that must be routable through the mesh."""

    caller: str
    callee: str
    path: str
    method: str = "GET"
    body: Any = None


def standard_communication_checks() -> List[MeshCommunicationCheck]:
    return [
        MeshCommunicationCheck("content-api", "inquiries-api", "/api/inquiries/content-related", "POST", {}),
        MeshCommunicationCheck("content-api", "notification-api", "/api/notifications/send", "POST", {}),
        MeshCommunicationCheck("inquiries-api", "content-api", "/api/content/inquiry-context"),
        MeshCommunicationCheck("inquiries-api", "notification-api", "/api/notifications/inquiry-submitted", "POST", {}),
        MeshCommunicationCheck("notification-api", "content-api", "/api/content/notification-context"),
    ]


def validate_mesh_communication(
    clients: Mapping[str, MeshClient],
    checks: Sequence[MeshCommunicationCheck],
) -> List[str]:
    """
    Invoke each callee through its caller's sidecar.

    A status below 500 means the mesh routed the call; the callee rejecting
    the payload is not a mesh problem.

    Returns:
        List of error messages, empty when every route works
    """
    errors = []
    for check in checks:
        client = clients.get(check.caller)
        if client is None:
            errors.append(f"no sidecar client configured for {check.caller}")
            continue

        result = client.invoke(check.callee, check.method, check.path, body=check.body)
        route = f"{check.caller} -> {check.callee} {check.method} {check.path}"
        if not result.reachable:
            errors.append(f"{route}: {result.error}")
        elif result.status_code >= 500:
            errors.append(f"{route}: status {result.status_code}")
        else:
            logger.info(f"{route}: routed ({result.status_code})")
    return errors
