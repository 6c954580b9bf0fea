"""Mocks of ContainerAppsAPIClient and AuthorizationManagementClient.

Each completed create or update of an app produces a new revision, which
becomes the latest ready revision; ingress gets a stable FQDN.
"""

from __future__ import annotations

import copy
from typing import Any

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.mgmt.appcontainers.models import ContainerApp

from .state import MockAzureState, MockRoleAssignment

APP_DOMAIN = "blue-sea-1234.westeurope.azurecontainerapps.io"


class _MockContainerAppsOperations:
    def __init__(self, state: MockAzureState) -> None:
        self._state = state
        self._revision_counter: dict[tuple[str, str], int] = {}

    def app_id(self, resource_group_name: str, name: str) -> str:
        return (
            f"/subscriptions/{self._state.subscription_id}/resourceGroups/{resource_group_name}"
            f"/providers/Microsoft.App/containerApps/{name}"
        )

    def get(self, resource_group_name: str, container_app_name: str, **kwargs: Any) -> ContainerApp:
        self._state.record_call("container_apps.get")
        app = self._state.apps.get((resource_group_name.lower(), container_app_name))
        if app is None:
            raise ResourceNotFoundError(message=f"Container app {container_app_name} not found")
        return copy.deepcopy(app)

    def begin_create_or_update(
        self,
        resource_group_name: str,
        container_app_name: str,
        container_app_envelope: ContainerApp,
        **kwargs: Any,
    ) -> Any:
        token = kwargs.get("continuation_token")
        if token:
            self._state.record_call("container_apps.begin_create_or_update(resume)")
            return self._state.resume(token)

        self._state.record_call("container_apps.begin_create_or_update", mutating=True)
        envelope = copy.deepcopy(container_app_envelope)

        def apply() -> ContainerApp:
            return self.put_app(resource_group_name, container_app_name, envelope)

        return self._state.start_operation("container_apps.begin_create_or_update", apply)

    def begin_delete(self, resource_group_name: str, container_app_name: str, **kwargs: Any) -> Any:
        token = kwargs.get("continuation_token")
        if token:
            self._state.record_call("container_apps.begin_delete(resume)")
            return self._state.resume(token)

        self._state.record_call("container_apps.begin_delete", mutating=True)
        key = (resource_group_name.lower(), container_app_name)
        if key not in self._state.apps:
            raise ResourceNotFoundError(message=f"Container app {container_app_name} not found")

        def apply() -> None:
            self._state.apps.pop(key, None)

        return self._state.start_operation("container_apps.begin_delete", apply)

    def put_app(self, resource_group_name: str, name: str, envelope: ContainerApp) -> ContainerApp:
        """Store an app as the provider would after a successful write."""
        key = (resource_group_name.lower(), name)
        counter = self._revision_counter.get(key, 0) + 1
        self._revision_counter[key] = counter
        revision = f"{name}--{counter:07d}"

        app = copy.deepcopy(envelope)
        app.name = name
        app.id = self.app_id(resource_group_name, name)
        app.provisioning_state = "Succeeded"
        app.latest_revision_name = revision
        app.latest_ready_revision_name = revision
        if app.configuration is not None and app.configuration.ingress is not None:
            app.configuration.ingress.fqdn = f"{name}.{APP_DOMAIN}"
        self._state.apps[key] = app
        return copy.deepcopy(app)


class MockContainerAppsAPIClient:
    """In-memory stand-in for ContainerAppsAPIClient."""

    def __init__(self, state: MockAzureState, credential: Any = None, subscription_id: str = "") -> None:
        self.state = state
        self.credential = credential
        self.subscription_id = subscription_id or state.subscription_id
        self.container_apps = _MockContainerAppsOperations(state)


class _MockRoleAssignmentsOperations:
    def __init__(self, state: MockAzureState) -> None:
        self._state = state

    def list_for_scope(self, scope: str, filter: str | None = None, **kwargs: Any) -> list[MockRoleAssignment]:
        self._state.record_call("role_assignments.list_for_scope")
        return list(self._state.role_assignments.get(scope.lower(), {}).values())

    def create(self, scope: str, role_assignment_name: str, parameters: Any, **kwargs: Any) -> MockRoleAssignment:
        self._state.record_call("role_assignments.create", mutating=True)
        assignments = self._state.role_assignments.setdefault(scope.lower(), {})
        for existing in assignments.values():
            if (
                existing.principal_id == parameters.principal_id
                and existing.role_definition_id == parameters.role_definition_id
            ):
                raise ResourceExistsError(message="The role assignment already exists.")

        assignment = MockRoleAssignment(
            name=role_assignment_name,
            scope=scope,
            principal_id=parameters.principal_id,
            role_definition_id=parameters.role_definition_id,
        )
        assignments[role_assignment_name] = assignment
        return assignment

    def delete(self, scope: str, role_assignment_name: str, **kwargs: Any) -> MockRoleAssignment | None:
        self._state.record_call("role_assignments.delete", mutating=True)
        return self._state.role_assignments.get(scope.lower(), {}).pop(role_assignment_name, None)


class MockAuthorizationManagementClient:
    """In-memory stand-in for AuthorizationManagementClient."""

    def __init__(self, state: MockAzureState, credential: Any = None, subscription_id: str = "") -> None:
        self.state = state
        self.credential = credential
        self.subscription_id = subscription_id or state.subscription_id
        self.role_assignments = _MockRoleAssignmentsOperations(state)

    def principals(self, scope: str) -> set[str]:
        """Principal IDs holding any assignment on scope."""
        return {a.principal_id for a in self.state.role_assignments.get(scope.lower(), {}).values()}
