"""
Platform Adapter Abstraction Layer.

Provides a vendor-agnostic interface over the application lifecycle API the
engine drives. MendixDeployClient talks to the Mendix Deploy API v1 over
httpx; MockPlatformAdapter keeps everything in memory for tests and CI.

Every failure surfaces as PlatformError so the step executor can classify it
as fatal or retryable.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel

from backend.app.core.config import Settings, get_settings
from backend.app.core.logging import get_logger

logger = get_logger(__name__)

FATAL_STATUS_CODES = frozenset({401, 403, 404})
FATAL_BODY_MARKERS = ("APP_NOT_FOUND", "INVALID_CREDENTIALS")


class PlatformError(Exception):
    """A failed platform call. ``status_code`` is None for transport errors and timeouts."""

    def __init__(self, status_code: Optional[int], body: str = "", operation: str = ""):
        self.status_code = status_code
        self.body = body or ""
        self.operation = operation
        super().__init__(self._describe())

    def _describe(self) -> str:
        where = f"{self.operation}: " if self.operation else ""
        if self.status_code is None:
            return f"{where}{self.body or 'request failed'}"
        return f"{where}HTTP {self.status_code} {self.body[:200]}".rstrip()

    @property
    def fatal(self) -> bool:
        if self.status_code in FATAL_STATUS_CODES:
            return True
        return any(marker in self.body for marker in FATAL_BODY_MARKERS)


@dataclass(frozen=True)
class PlatformCredentials:
    username: str
    api_key: Optional[str] = None
    pat: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        headers = {"Mendix-Username": self.username}
        if self.api_key:
            headers["Mendix-ApiKey"] = self.api_key
        if self.pat:
            headers["Authorization"] = f"MxToken {self.pat}"
        return headers


class EnvironmentInfo(BaseModel):
    """Standardised environment status response."""
    status: str
    package_id: Optional[str] = None


class PackageInfo(BaseModel):
    package_id: str
    status: str
    error_message: Optional[str] = None


class SnapshotInfo(BaseModel):
    snapshot_id: str
    state: str


def normalize_environment_name(name: str) -> str:
    """Platform form of an environment name: ``acceptance`` -> ``Acceptance``."""
    return name.strip().capitalize()


class PlatformAdapter(ABC):
    """Abstract lifecycle-management adapter."""

    @abstractmethod
    async def get_environment(self, app_id: str, environment: str, credentials: PlatformCredentials) -> EnvironmentInfo:
        ...

    @abstractmethod
    async def start_environment(self, app_id: str, environment: str, credentials: PlatformCredentials) -> None:
        ...

    @abstractmethod
    async def stop_environment(self, app_id: str, environment: str, credentials: PlatformCredentials) -> None:
        ...

    @abstractmethod
    async def create_package(
        self,
        app_id: str,
        credentials: PlatformCredentials,
        branch: str,
        revision: str,
        version: str,
        description: str,
    ) -> str:
        """Start a package build and return its package id."""
        ...

    @abstractmethod
    async def get_package(self, app_id: str, package_id: str, credentials: PlatformCredentials) -> PackageInfo:
        ...

    @abstractmethod
    async def transport_package(
        self, app_id: str, environment: str, package_id: str, credentials: PlatformCredentials
    ) -> None:
        ...

    @abstractmethod
    async def create_snapshot(
        self, app_id: str, environment: str, comment: str, credentials: PlatformCredentials
    ) -> str:
        """Start a backup of the environment and return its snapshot id."""
        ...

    @abstractmethod
    async def get_snapshot(self, app_id: str, snapshot_id: str, credentials: PlatformCredentials) -> SnapshotInfo:
        ...


class MendixDeployClient(PlatformAdapter):
    """
    Mendix Deploy API v1 client.

    A transport can be injected (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        credentials: PlatformCredentials,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        operation = f"{method} {path}"
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.request(method, path, headers=credentials.headers(), json=json)
        except httpx.HTTPError as e:
            logger.warning(f"Platform call failed: {operation}: {e}")
            raise PlatformError(None, str(e) or type(e).__name__, operation) from e

        if resp.status_code >= 400:
            logger.warning(f"Platform call rejected: {operation} -> HTTP {resp.status_code}")
            raise PlatformError(resp.status_code, resp.text, operation)

        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"items": data}

    async def get_environment(self, app_id, environment, credentials) -> EnvironmentInfo:
        data = await self._request("GET", f"apps/{app_id}/environments/{environment}", credentials)
        return EnvironmentInfo(status=data.get("Status") or "Unknown", package_id=data.get("PackageId") or None)

    async def start_environment(self, app_id, environment, credentials) -> None:
        await self._request(
            "POST", f"apps/{app_id}/environments/{environment}/start", credentials, json={"AutoSyncDb": True}
        )

    async def stop_environment(self, app_id, environment, credentials) -> None:
        await self._request("POST", f"apps/{app_id}/environments/{environment}/stop", credentials)

    async def create_package(self, app_id, credentials, branch, revision, version, description) -> str:
        data = await self._request(
            "POST",
            f"apps/{app_id}/packages",
            credentials,
            json={"Branch": branch, "Revision": revision, "Version": version, "Description": description},
        )
        package_id = data.get("PackageId")
        if not package_id:
            raise PlatformError(None, "Package build response carried no PackageId", f"POST apps/{app_id}/packages")
        return package_id

    async def get_package(self, app_id, package_id, credentials) -> PackageInfo:
        data = await self._request("GET", f"apps/{app_id}/packages/{package_id}", credentials)
        return PackageInfo(
            package_id=package_id,
            status=data.get("Status") or "Unknown",
            error_message=data.get("ErrorMessage"),
        )

    async def transport_package(self, app_id, environment, package_id, credentials) -> None:
        await self._request(
            "POST",
            f"apps/{app_id}/environments/{environment}/transport",
            credentials,
            json={"PackageId": package_id},
        )

    async def create_snapshot(self, app_id, environment, comment, credentials) -> str:
        path = f"apps/{app_id}/environments/{environment}/snapshots"
        data = await self._request("POST", path, credentials, json={"Comment": comment})
        snapshot_id = data.get("SnapshotId")
        if not snapshot_id:
            raise PlatformError(None, "Snapshot response carried no SnapshotId", f"POST {path}")
        return snapshot_id

    async def get_snapshot(self, app_id, snapshot_id, credentials) -> SnapshotInfo:
        data = await self._request("GET", f"apps/{app_id}/snapshots/{snapshot_id}", credentials)
        return SnapshotInfo(snapshot_id=snapshot_id, state=data.get("State") or "Unknown")


class MockPlatformAdapter(PlatformAdapter):
    """
    Lightweight in-memory mock adapter for testing and CI where the real platform is unavailable.

    Start/stop commands, package builds and snapshots settle after
    ``settle_after`` status reads, so pollers see one intermediate state first.
    """

    def __init__(self, settle_after: int = 1):
        self.settle_after = settle_after
        self.environments: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.packages: Dict[str, Dict[str, Any]] = {}
        self.snapshots: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, ...]] = []
        self._failures: Dict[str, List[Exception]] = {}
        self._counter = 0

    # -- test helpers -----------------------------------------------------

    def add_environment(self, app_id: str, environment: str, status: str = "Stopped", package_id: Optional[str] = None):
        self.environments[(app_id, normalize_environment_name(environment))] = {
            "status": status,
            "package_id": package_id,
            "pending": None,
        }

    def environment_status(self, app_id: str, environment: str) -> str:
        return self.environments[(app_id, normalize_environment_name(environment))]["status"]

    def fail_next(self, operation: str, error: Exception):
        """Queue ``error`` to be raised by the next call to ``operation``."""
        self._failures.setdefault(operation, []).append(error)

    def calls_to(self, operation: str) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] == operation]

    # -- internals --------------------------------------------------------

    def _record(self, operation: str, *args: str):
        self.calls.append((operation, *args))
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def _environment(self, app_id: str, environment: str, operation: str) -> Dict[str, Any]:
        env = self.environments.get((app_id, environment))
        if env is None:
            raise PlatformError(404, f"Environment {environment} of app {app_id} not found", operation)
        return env

    @staticmethod
    def _settle(record: Dict[str, Any], field_name: str):
        pending = record.get("pending")
        if pending is None:
            return
        target, remaining = pending
        if remaining > 0:
            record["pending"] = (target, remaining - 1)
        else:
            record[field_name] = target
            record["pending"] = None

    # -- adapter ----------------------------------------------------------

    async def get_environment(self, app_id, environment, credentials) -> EnvironmentInfo:
        self._record("get_environment", app_id, environment)
        env = self._environment(app_id, environment, "get_environment")
        self._settle(env, "status")
        return EnvironmentInfo(status=env["status"], package_id=env["package_id"])

    async def start_environment(self, app_id, environment, credentials) -> None:
        self._record("start_environment", app_id, environment)
        env = self._environment(app_id, environment, "start_environment")
        env["status"] = "Starting"
        env["pending"] = ("Running", self.settle_after)

    async def stop_environment(self, app_id, environment, credentials) -> None:
        self._record("stop_environment", app_id, environment)
        env = self._environment(app_id, environment, "stop_environment")
        env["status"] = "Stopping"
        env["pending"] = ("Stopped", self.settle_after)

    async def create_package(self, app_id, credentials, branch, revision, version, description) -> str:
        self._record("create_package", app_id, branch, revision, version)
        package_id = self._next_id("pkg")
        self.packages[package_id] = {
            "app_id": app_id,
            "status": "Queued",
            "pending": ("Succeeded", self.settle_after),
            "error_message": None,
        }
        return package_id

    async def get_package(self, app_id, package_id, credentials) -> PackageInfo:
        self._record("get_package", app_id, package_id)
        package = self.packages.get(package_id)
        if package is None:
            raise PlatformError(404, f"Package {package_id} not found", "get_package")
        self._settle(package, "status")
        return PackageInfo(package_id=package_id, status=package["status"], error_message=package["error_message"])

    async def transport_package(self, app_id, environment, package_id, credentials) -> None:
        self._record("transport_package", app_id, environment, package_id)
        env = self._environment(app_id, environment, "transport_package")
        env["package_id"] = package_id

    async def create_snapshot(self, app_id, environment, comment, credentials) -> str:
        self._record("create_snapshot", app_id, environment, comment)
        self._environment(app_id, environment, "create_snapshot")
        snapshot_id = self._next_id("snap")
        self.snapshots[snapshot_id] = {"state": "Queued", "pending": ("Completed", self.settle_after)}
        return snapshot_id

    async def get_snapshot(self, app_id, snapshot_id, credentials) -> SnapshotInfo:
        self._record("get_snapshot", app_id, snapshot_id)
        snapshot = self.snapshots.get(snapshot_id)
        if snapshot is None:
            raise PlatformError(404, f"Snapshot {snapshot_id} not found", "get_snapshot")
        self._settle(snapshot, "state")
        return SnapshotInfo(snapshot_id=snapshot_id, state=snapshot["state"])


def get_platform_adapter(settings: Optional[Settings] = None) -> PlatformAdapter:
    """Factory for the production adapter."""
    settings = settings or get_settings()
    return MendixDeployClient(
        base_url=settings.platform_api_base_url,
        timeout=settings.platform_request_timeout_seconds,
    )
