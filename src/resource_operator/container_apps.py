"""Azure Container Apps adapter.

Creates and updates are full PUTs of the app definition; partial patches are
never sent, so any drifted tracked field converges by replacing the whole
revision template and ingress configuration. Access for invoke members is
granted as RBAC role assignments on the app after it has converged.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from azure.mgmt.appcontainers import ContainerAppsAPIClient
from azure.mgmt.appcontainers.models import (
    Configuration,
    Container,
    ContainerApp,
    ContainerAppProbe,
    ContainerAppProbeHttpGet,
    ContainerAppProbeTcpSocket,
    Ingress,
    Template,
    TrafficWeight,
)
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from .config import KIND_CONTAINER_APP, Config
from .diff_policy import DiffPolicy, FieldPolicy
from .models import (
    ContainerAppObject,
    ContainerAppSpec,
    ContainerProbe,
    OperationRecord,
    ProbeType,
)
from .reconciler import ResourceKind
from .remote import (
    OperationHandle,
    PollResult,
    RemoteAlreadyExists,
    RemoteNotFound,
    RemoteResourceClient,
    TerminalRemoteError,
    azure_errors,
    operation_name,
    split_operation_name,
    wait_for_operation,
)

logger = logging.getLogger(__name__)

ACTION_APP_CREATE = "app-create"
ACTION_APP_UPDATE = "app-update"
ACTION_APP_DELETE = "app-delete"

PROVISIONING_SUCCEEDED = "Succeeded"

PROBE_LIVENESS = "Liveness"
PROBE_STARTUP = "Startup"

# Without explicit traffic, ingress routes everything to the latest revision
LATEST_ONLY_TRAFFIC: tuple[tuple[str | None, int, bool], ...] = ((None, 100, True),)

# (container, probe kind, handler, port, path, delay, timeout, period, failures)
ProbeKey = tuple[str, str, str, int, str | None, int, int, int, int]


@dataclass(frozen=True)
class ObservedContainerApp:
    """Normalized view of a remote container app."""

    name: str
    resource_id: str | None = None
    provisioning_state: str | None = None
    uri: str | None = None
    latest_revision: str | None = None
    latest_ready_revision: str | None = None
    images: tuple[tuple[str, str], ...] = ()
    traffic: tuple[tuple[str | None, int, bool], ...] = ()
    ingress_external: bool | None = None
    target_port: int | None = None
    probes: tuple[ProbeKey, ...] = ()


# =============================================================================
# Desired side
# =============================================================================


def desired_images(spec: ContainerAppSpec) -> tuple[tuple[str, str], ...]:
    return tuple((c.name, c.image) for c in spec.containers)


def desired_traffic(spec: ContainerAppSpec) -> tuple[tuple[str | None, int, bool], ...]:
    if spec.target_port is None:
        return ()
    if not spec.traffic:
        return LATEST_ONLY_TRAFFIC
    return tuple(
        (None if t.latest_revision else t.revision, t.percent, t.latest_revision)
        for t in spec.traffic
    )


def desired_ingress_external(spec: ContainerAppSpec) -> bool | None:
    return spec.ingress_external if spec.target_port is not None else None


def _probe_key(container: str, probe_kind: str, probe: ContainerProbe) -> ProbeKey:
    handler = probe.probe_spec
    return (
        container,
        probe_kind,
        handler.probe_type.value,
        handler.port,
        handler.path if handler.probe_type == ProbeType.HTTP_GET else None,
        probe.initial_delay_seconds,
        probe.timeout_seconds,
        probe.period_seconds,
        probe.failure_threshold,
    )


def desired_probes(spec: ContainerAppSpec) -> tuple[ProbeKey, ...]:
    keys = []
    for container in spec.containers:
        if container.liveness_probe is not None:
            keys.append(_probe_key(container.name, PROBE_LIVENESS, container.liveness_probe))
        if container.startup_probe is not None:
            keys.append(_probe_key(container.name, PROBE_STARTUP, container.startup_probe))
    return tuple(sorted(keys, key=lambda k: (k[0], k[1])))


def build_probe(probe_kind: str, probe: ContainerProbe) -> ContainerAppProbe:
    handler = probe.probe_spec
    http_get = None
    tcp_socket = None
    if handler.probe_type == ProbeType.HTTP_GET:
        http_get = ContainerAppProbeHttpGet(path=handler.path, port=handler.port)
    else:
        tcp_socket = ContainerAppProbeTcpSocket(port=handler.port)

    return ContainerAppProbe(
        type=probe_kind,
        http_get=http_get,
        tcp_socket=tcp_socket,
        # The service rejects an explicit zero delay
        initial_delay_seconds=probe.initial_delay_seconds or None,
        timeout_seconds=probe.timeout_seconds,
        period_seconds=probe.period_seconds,
        failure_threshold=probe.failure_threshold,
    )


def build_container_app(obj: ContainerAppObject, environment_id: str) -> ContainerApp:
    """Build the full app definition sent on create and update."""
    spec = obj.spec

    containers = []
    for container in spec.containers:
        probes = []
        if container.liveness_probe is not None:
            probes.append(build_probe(PROBE_LIVENESS, container.liveness_probe))
        if container.startup_probe is not None:
            probes.append(build_probe(PROBE_STARTUP, container.startup_probe))
        containers.append(
            Container(name=container.name, image=container.image, probes=probes or None)
        )

    ingress = None
    if spec.target_port is not None:
        ingress = Ingress(
            external=spec.ingress_external,
            target_port=spec.target_port,
            traffic=[
                TrafficWeight(revision_name=revision, weight=weight, latest_revision=latest)
                for revision, weight, latest in desired_traffic(spec)
            ],
        )

    return ContainerApp(
        location=spec.location,
        tags=dict(spec.tags) or None,
        managed_environment_id=environment_id,
        configuration=Configuration(ingress=ingress),
        template=Template(containers=containers),
    )


# =============================================================================
# Observed side
# =============================================================================


def _observe_probe(container: str, probe: ContainerAppProbe) -> ProbeKey | None:
    if probe.http_get is not None:
        handler, port, path = ProbeType.HTTP_GET.value, probe.http_get.port, probe.http_get.path
    elif probe.tcp_socket is not None:
        handler, port, path = ProbeType.TCP_SOCKET.value, probe.tcp_socket.port, None
    else:
        return None
    probe_kind = getattr(probe.type, "value", probe.type) or ""
    return (
        container,
        probe_kind,
        handler,
        port,
        path,
        probe.initial_delay_seconds or 0,
        probe.timeout_seconds or 1,
        probe.period_seconds or 10,
        probe.failure_threshold or 3,
    )


def observe_container_app(app: ContainerApp) -> ObservedContainerApp:
    """Normalize an SDK container app into the fields the diff policy tracks."""
    containers = (app.template.containers or []) if app.template else []
    ingress = app.configuration.ingress if app.configuration else None

    probes = []
    for container in containers:
        for probe in container.probes or []:
            key = _observe_probe(container.name, probe)
            if key is not None:
                probes.append(key)

    traffic: tuple[tuple[str | None, int, bool], ...] = ()
    uri = None
    if ingress is not None:
        traffic = tuple(
            (
                None if t.latest_revision else t.revision_name,
                t.weight or 0,
                bool(t.latest_revision),
            )
            for t in ingress.traffic or []
        )
        if ingress.fqdn:
            uri = f"https://{ingress.fqdn}"

    provisioning_state = app.provisioning_state
    return ObservedContainerApp(
        name=app.name or "",
        resource_id=app.id,
        provisioning_state=getattr(provisioning_state, "value", provisioning_state),
        uri=uri,
        latest_revision=app.latest_revision_name,
        latest_ready_revision=app.latest_ready_revision_name,
        images=tuple((c.name, c.image) for c in containers),
        traffic=traffic,
        ingress_external=ingress.external if ingress is not None else None,
        target_port=ingress.target_port if ingress is not None else None,
        probes=tuple(sorted(probes, key=lambda k: (k[0], k[1]))),
    )


# =============================================================================
# Remote client
# =============================================================================


class AzureContainerAppClient(RemoteResourceClient[ContainerAppObject, ObservedContainerApp]):
    """Remote API for ContainerApp objects backed by azure-mgmt-appcontainers."""

    def __init__(
        self,
        client: ContainerAppsAPIClient,
        authorization_client: AuthorizationManagementClient | None,
        subscription_id: str,
        resource_group_name: str,
        environment_id: str | None = None,
        access_role_definition_id: str = "",
        poll_wait_seconds: float = 1.0,
    ) -> None:
        self._client = client
        self._authorization = authorization_client
        self._subscription_id = subscription_id
        self._resource_group_name = resource_group_name
        self._environment_id = environment_id
        self._role_definition_id = self._qualify_role(access_role_definition_id)
        self._poll_wait_seconds = poll_wait_seconds

    def _qualify_role(self, role_definition_id: str) -> str:
        if not role_definition_id or role_definition_id.startswith("/"):
            return role_definition_id
        return (
            f"/subscriptions/{self._subscription_id}/providers/"
            f"Microsoft.Authorization/roleDefinitions/{role_definition_id}"
        )

    def _group(self, obj: ContainerAppObject) -> str:
        return obj.spec.resource_group_name or self._resource_group_name

    def _envelope(self, obj: ContainerAppObject) -> ContainerApp:
        environment_id = obj.spec.environment_id or self._environment_id
        if not environment_id:
            raise TerminalRemoteError(
                f"No managed environment for {obj.key}: set spec.environmentId "
                "or CONTAINER_APP_ENVIRONMENT_ID",
                operation="build app",
            )
        return build_container_app(obj, environment_id)

    def get(self, obj: ContainerAppObject) -> ObservedContainerApp:
        with azure_errors("get container app"):
            app = self._client.container_apps.get(self._group(obj), obj.remote_name)
        return observe_container_app(app)

    def _put(self, obj: ContainerAppObject, action: str) -> OperationHandle:
        envelope = self._envelope(obj)
        with azure_errors(action):
            poller = self._client.container_apps.begin_create_or_update(
                self._group(obj), obj.remote_name, envelope
            )
        logger.info(
            "Container app write started",
            extra={"app": obj.remote_name, "action": action, "images": desired_images(obj.spec)},
        )
        return OperationHandle(name=operation_name(action, poller.continuation_token()))

    def create(self, obj: ContainerAppObject) -> OperationHandle:
        return self._put(obj, ACTION_APP_CREATE)

    def update(self, obj: ContainerAppObject, resource: ObservedContainerApp) -> OperationHandle:
        return self._put(obj, ACTION_APP_UPDATE)

    def delete(self, obj: ContainerAppObject) -> OperationHandle:
        with azure_errors("delete container app"):
            poller = self._client.container_apps.begin_delete(self._group(obj), obj.remote_name)
        logger.info("Container app deletion started", extra={"app": obj.remote_name})
        return OperationHandle(name=operation_name(ACTION_APP_DELETE, poller.continuation_token()))

    def poll(self, obj: ContainerAppObject, record: OperationRecord) -> PollResult:
        action, token = split_operation_name(record.name, "poll")
        group = self._group(obj)

        if action in (ACTION_APP_CREATE, ACTION_APP_UPDATE):
            envelope = self._envelope(obj)
            with azure_errors(f"resume {action}"):
                poller = self._client.container_apps.begin_create_or_update(
                    group, obj.remote_name, envelope, continuation_token=token
                )
        elif action == ACTION_APP_DELETE:
            with azure_errors(f"resume {action}"):
                poller = self._client.container_apps.begin_delete(
                    group, obj.remote_name, continuation_token=token
                )
        else:
            raise RemoteNotFound(f"Unknown container app action '{action}'", operation="poll")

        result = wait_for_operation(poller, action, self._poll_wait_seconds)
        if result.done and result.resource is not None:
            return PollResult(done=True, resource=observe_container_app(result.resource))
        return result

    def ensure_access(self, obj: ContainerAppObject, resource: ObservedContainerApp) -> None:
        """Grant invoke members the access role; revoke members no longer listed.

        Only assignments whose name this client derives are ever removed.
        """
        scope = resource.resource_id
        if self._authorization is None or not scope or not self._role_definition_id:
            return

        members = set(obj.spec.invoke_members)
        with azure_errors("list role assignments"):
            existing = {
                assignment.name: assignment
                for assignment in self._authorization.role_assignments.list_for_scope(
                    scope, filter="atScope()"
                )
            }

        for principal_id in sorted(members):
            assignment_name = self.assignment_name(scope, principal_id)
            if assignment_name in existing:
                continue
            try:
                with azure_errors("create role assignment"):
                    self._authorization.role_assignments.create(
                        scope,
                        assignment_name,
                        RoleAssignmentCreateParameters(
                            role_definition_id=self._role_definition_id,
                            principal_id=principal_id,
                        ),
                    )
            except RemoteAlreadyExists:
                # Same principal and role already assigned under another name
                continue
            logger.info(
                "Access granted",
                extra={"app": obj.remote_name, "principal_id": principal_id},
            )

        for assignment_name, assignment in existing.items():
            principal_id = assignment.principal_id
            if principal_id in members or assignment_name != self.assignment_name(scope, principal_id):
                continue
            with azure_errors("delete role assignment"):
                self._authorization.role_assignments.delete(scope, assignment_name)
            logger.info(
                "Access revoked",
                extra={"app": obj.remote_name, "principal_id": principal_id},
            )

    def assignment_name(self, scope: str, principal_id: str | None) -> str:
        """Deterministic role assignment name for a principal on a scope."""
        key = f"{scope.lower()}|{self._role_definition_id.lower()}|{principal_id}"
        return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


def publish_container_app(obj: ContainerAppObject, resource: ObservedContainerApp) -> None:
    """Copy the serving URI and latest ready revision into status."""
    status = obj.status
    if resource.uri:
        status.uri = resource.uri
    if resource.latest_ready_revision:
        status.latest_ready_revision = resource.latest_ready_revision
        if resource.latest_ready_revision not in status.revisions:
            status.revisions.append(resource.latest_ready_revision)


def container_app_ready(resource: ObservedContainerApp) -> bool:
    return resource.provisioning_state == PROVISIONING_SUCCEEDED


CONTAINER_APP_DIFF_POLICY = DiffPolicy(
    (
        FieldPolicy("images", desired=desired_images, observed=lambda r: r.images),
        FieldPolicy("traffic", desired=desired_traffic, observed=lambda r: r.traffic),
        FieldPolicy(
            "ingressExternal",
            desired=desired_ingress_external,
            observed=lambda r: r.ingress_external,
        ),
        FieldPolicy(
            "targetPort",
            desired=lambda spec: spec.target_port,
            observed=lambda r: r.target_port,
        ),
        FieldPolicy("probes", desired=desired_probes, observed=lambda r: r.probes),
    )
)


def build_container_app_kind(
    config: Config,
    credential: Any,
    client: Any = None,
    authorization_client: Any = None,
) -> ResourceKind:
    """Assemble the ContainerApp kind.

    Args:
        config: Operator configuration.
        credential: Azure credential for the management clients.
        client: Preconstructed Container Apps client, mainly for tests.
        authorization_client: Preconstructed authorization client, mainly for tests.
    """
    if client is None:
        client = ContainerAppsAPIClient(
            credential=credential, subscription_id=config.subscription_id
        )
    if authorization_client is None:
        authorization_client = AuthorizationManagementClient(
            credential=credential, subscription_id=config.subscription_id
        )

    return ResourceKind(
        name=KIND_CONTAINER_APP,
        client=AzureContainerAppClient(
            client,
            authorization_client,
            subscription_id=config.subscription_id,
            resource_group_name=config.resource_group_name,
            environment_id=config.container_app_environment_id,
            access_role_definition_id=config.access_role_definition_id,
            poll_wait_seconds=config.operation_poll_wait_seconds,
        ),
        diff_policy=CONTAINER_APP_DIFF_POLICY.ignoring(
            config.ignored_fields_for(KIND_CONTAINER_APP)
        ),
        publish=publish_container_app,
        is_ready=container_app_ready,
    )
