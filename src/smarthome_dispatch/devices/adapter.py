"""Device adapter: routes a validated action to the device-control HTTP API.

The HTTP API follows the Home Assistant REST shape (``/api/states``,
``/api/services/{domain}/{service}``, bearer token).
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any, cast

import aiohttp

from smarthome_dispatch.config import DispatchConfig
from smarthome_dispatch.const import DEVICE_API_TIMEOUT
from smarthome_dispatch.devices.backends import (
    SIMULATED_ENTITIES,
    Backend,
    ConnectionState,
    LiveBackend,
    SimulatedBackend,
)
from smarthome_dispatch.devices.validation import ServiceCall, resolve_service
from smarthome_dispatch.exceptions import DispatchTimeout, TransportError
from smarthome_dispatch.instrumentation import measure_time, timed_async
from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.metrics import record_adapter_state, record_device_api_request
from smarthome_dispatch.models import DeviceSnapshot, TransportResult

__all__ = ["DeviceAdapter", "normalize_entity"]

logger = get_logger(__name__)


def normalize_entity(entity: Mapping[str, Any]) -> DeviceSnapshot:
    """Map a raw ``/api/states`` entity onto the normalized device record."""
    entity_id = str(entity.get("entity_id", ""))
    attributes_obj = entity.get("attributes")
    attributes = dict(cast("Mapping[str, Any]", attributes_obj)) if isinstance(attributes_obj, Mapping) else {}
    friendly_name = attributes.get("friendly_name")
    state = entity.get("state")
    return DeviceSnapshot(
        id=entity_id,
        name=friendly_name if isinstance(friendly_name, str) and friendly_name else entity_id,
        type=entity_id.split(".", 1)[0],
        state=None if state is None else str(state),
        attributes=attributes,
    )


class DeviceAdapter:
    """Device-control client over a live HTTP backend or a deterministic simulation.

    Build with ``from_config`` so the backend choice follows configuration; the
    choice is fixed for the adapter's lifetime.
    """

    lp: str = "DeviceAdapter:"

    def __init__(
        self,
        backend: Backend,
        timeout: float = DEVICE_API_TIMEOUT,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.backend: Backend = backend
        self.timeout: float = timeout
        self.http_session: aiohttp.ClientSession | None = http_session
        self._state: ConnectionState = (
            ConnectionState.SIMULATED if isinstance(backend, SimulatedBackend) else ConnectionState.DISCONNECTED
        )
        record_adapter_state(self._state)

    @classmethod
    def from_config(cls, config: DispatchConfig) -> DeviceAdapter:
        """Live backend only when both a URL and a real token are configured."""
        backend: Backend
        if config.simulated:
            logger.warning(
                "%s no usable device API token, running in simulation mode",
                cls.lp,
                extra={"device_api_url": config.device_api_url},
            )
            backend = SimulatedBackend()
        else:
            backend = LiveBackend(base_url=cast("str", config.device_api_url), token=cast("str", config.device_api_token))
            logger.info("%s using live device API", cls.lp, extra={"device_api_url": backend.base_url})
        return cls(backend, timeout=config.device_api_timeout)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def simulated(self) -> bool:
        return isinstance(self.backend, SimulatedBackend)

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.info("%s connection state %s -> %s", self.lp, self._state, state)
            self._state = state
            record_adapter_state(state)

    async def close(self) -> None:
        """Close the aiohttp session if it exists and is not closed."""
        lp = f"{self.lp}close:"
        if self.http_session and not self.http_session.closed:
            logger.debug("%s Closing aiohttp ClientSession", lp)
            await self.http_session.close()
        self.http_session = None

    async def _check_session(self) -> aiohttp.ClientSession:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s_check_session: Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession()
            _ = await self.http_session.__aenter__()
        return self.http_session

    async def _request(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> tuple[int, Any]:
        """Perform one request against the live backend.

        Raises:
            DispatchTimeout: No response within ``self.timeout``
            TransportError: Connection failure or non-2xx status

        """
        lp = f"{self.lp}_request:"
        backend = cast("LiveBackend", self.backend)
        sesh = await self._check_session()
        url = f"{backend.base_url}{path}"
        headers = {"Authorization": f"Bearer {backend.token}", "Content-Type": "application/json"}

        logger.debug("%s %s %s", lp, method, path)
        try:
            r = await sesh.request(
                method,
                url,
                headers=headers,
                json=dict(body) if body is not None else None,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            r.raise_for_status()
            try:
                data: Any = await r.json(content_type=None)
            except ValueError:
                data = None
        except TimeoutError as e:
            record_device_api_request(method, "timeout")
            logger.warning("%s %s %s timed out after %ss", lp, method, path, self.timeout)
            raise DispatchTimeout(self.timeout, f"{method} {path}") from e
        except aiohttp.ClientResponseError as e:
            record_device_api_request(method, "http_error")
            logger.warning("%s %s %s failed with HTTP %s", lp, method, path, e.status)
            raise TransportError(f"{method} {path} returned HTTP {e.status}: {e.message}", http_status=e.status) from e
        except aiohttp.ClientError as e:
            record_device_api_request(method, "error")
            logger.warning("%s %s %s failed: %s", lp, method, path, e)
            raise TransportError(f"{method} {path} failed: {e}") from e

        record_device_api_request(method, "success")
        return r.status, data

    async def list_devices(self) -> list[DeviceSnapshot]:
        """Return every entity the backend knows about, normalized.

        Raises:
            TransportError: Live backend unreachable or returned an error

        """
        if self.simulated:
            logger.debug("%s list_devices: returning simulated fixtures", self.lp)
            return [normalize_entity(e) for e in SIMULATED_ENTITIES]

        _, data = await self._request("GET", "/api/states")
        if not isinstance(data, list):
            msg = "GET /api/states did not return a list"
            raise TransportError(msg)
        entities = cast("list[object]", data)
        return [normalize_entity(cast("Mapping[str, Any]", e)) for e in entities if isinstance(e, Mapping)]

    async def get_entities_by_domain(self, domain: str) -> list[DeviceSnapshot]:
        prefix = f"{domain}."
        return [d for d in await self.list_devices() if d.id.startswith(prefix)]

    def resolve_service(
        self,
        domain: str,
        action: str,
        entity_id: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> ServiceCall:
        """Validate without calling the backend (see ``validation.resolve_service``)."""
        return resolve_service(domain, action, entity_id, parameters)

    @timed_async("device_api_invoke")
    async def invoke(
        self,
        domain: str,
        action: str,
        entity_id: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> TransportResult:
        """Validate and perform one control call.

        Raises:
            UnsupportedAction: Action not allowed for the domain
            MissingParameter: Climate request without exactly one setting
            TransportError: The live call failed (DispatchTimeout on timeout)

        """
        lp = f"{self.lp}invoke:"
        call = resolve_service(domain, action, entity_id, parameters)

        if self.simulated:
            logger.info(
                "%s simulating %s.%s",
                lp,
                call.domain,
                call.service,
                extra={"entity_id": entity_id, "data": call.data},
            )
            return TransportResult(
                success=True,
                message=f"Command '{call.service}' sent to '{entity_id}' (simulated)",
                data={"domain": call.domain, "service": call.service, "service_data": call.data},
                simulated=True,
            )

        start = time.perf_counter()
        status, data = await self._request("POST", call.path, call.data)
        elapsed_ms = measure_time(start)
        self._set_state(ConnectionState.CONNECTED)
        logger.info(
            "%s called %s.%s",
            lp,
            call.domain,
            call.service,
            extra={"entity_id": entity_id, "http_status": status, "response_time_ms": round(elapsed_ms, 1)},
        )
        return TransportResult(
            success=True,
            message=f"Service {call.domain}.{call.service} called for '{entity_id}'",
            data=data,
            http_status=status,
            response_time_ms=elapsed_ms,
        )

    async def test_connectivity(self) -> bool:
        """Probe the backend; never raises. A failure marks the adapter disconnected."""
        lp = f"{self.lp}test_connectivity:"
        if self.simulated:
            logger.info("%s simulation mode, connectivity assumed", lp)
            self._set_state(ConnectionState.SIMULATED)
            return True
        try:
            _ = await self._request("GET", "/api/")
        except TransportError as e:
            logger.error("%s device API unreachable: %s", lp, e)
            self._set_state(ConnectionState.DISCONNECTED)
            return False
        except Exception as e:
            logger.exception("%s unexpected error probing device API", lp, extra={"error": str(e)})
            self._set_state(ConnectionState.DISCONNECTED)
            return False
        self._set_state(ConnectionState.CONNECTED)
        return True
