"""
Host port allocation for app containers.

Each app publishes its container port on a unique host port taken from a
bounded, inclusive range. Persisted app records are the reservation intent;
a live TCP bind probe is the ground truth, since an unmanaged process may hold
a port that no record mentions.
"""

import asyncio
import logging
import socket
import time

from nas_common.errors import NoPortsAvailableError
from nas_common.repository import AppRepository

logger = logging.getLogger(__name__)

PORT_RANGE_START = 13001
PORT_RANGE_END = 13999

# Seconds a handed-out port stays reserved if the caller never releases it
RESERVATION_TTL = 60.0


class PortAllocator:
    """
    Allocates host ports from a managed range.

    All operations hold a single lock: the used-port query and the bind probe
    form a check-then-act sequence that must not interleave with another
    allocation.

    Ports returned by allocate_port() and find_next_available() are also
    reserved in memory until release() is called (after the caller has
    persisted the port on its app record) or the reservation expires. This
    closes the window in which two callers could be handed the same port
    before either one persisted it.
    """

    def __init__(
        self,
        repository: AppRepository,
        range_start: int = PORT_RANGE_START,
        range_end: int = PORT_RANGE_END,
        probe_host: str = "127.0.0.1",
        reservation_ttl: float = RESERVATION_TTL,
    ):
        """
        Initialize the port allocator.

        Args:
            repository: Source of the ports recorded on apps
            range_start: First port of the managed range (inclusive)
            range_end: Last port of the managed range (inclusive)
            probe_host: Address the bind probe listens on
            reservation_ttl: Seconds before an unreleased reservation lapses
        """
        if range_start > range_end:
            raise ValueError(f"invalid port range {range_start}-{range_end}")

        self.repository = repository
        self.range_start = range_start
        self.range_end = range_end
        self.probe_host = probe_host
        self.reservation_ttl = reservation_ttl

        self._lock = asyncio.Lock()
        self._reserved: dict[int, float] = {}  # port -> expiry (monotonic)

    def in_range(self, port: int) -> bool:
        return self.range_start <= port <= self.range_end

    def _is_port_bindable(self, port: int) -> bool:
        """Try to listen on the port and close immediately."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.probe_host, port))
            sock.listen(1)
        except OSError:
            return False
        finally:
            sock.close()
        return True

    def _active_reservations(self) -> set[int]:
        now = time.monotonic()
        self._reserved = {p: exp for p, exp in self._reserved.items() if exp > now}
        return set(self._reserved)

    def _reserve(self, port: int) -> int:
        self._reserved[port] = time.monotonic() + self.reservation_ttl
        return port

    def _scan(self, skip: set[int]) -> int:
        for port in range(self.range_start, self.range_end + 1):
            if port in skip:
                continue
            if self._is_port_bindable(port):
                return port
        raise NoPortsAvailableError(self.range_start, self.range_end)

    async def allocate_port(self) -> int:
        """
        Allocate the lowest free port in the range.

        Returns:
            A port that no app records, nobody holds a reservation on, and
            that is currently bindable

        Raises:
            NoPortsAvailableError: If the whole range is exhausted
        """
        async with self._lock:
            used = set(await self.repository.get_used_ports())
            port = self._scan(used | self._active_reservations())
            logger.debug(f"Allocated port {port}")
            return self._reserve(port)

    async def is_port_available(
        self,
        port: int,
        exclude_app_id: str | None = None,
        include_reservations: bool = False,
    ) -> bool:
        """
        Check whether a port is free in the records and currently bindable.

        In-memory reservations are only consulted with include_reservations,
        which callers claiming an operator-chosen port pass so they cannot
        take a port handed out to a concurrent allocation.

        Args:
            port: Port to check
            exclude_app_id: App whose own recorded port does not count as used
            include_reservations: Also treat reserved ports as used

        Returns:
            True if no (other) app records the port and it can be bound
        """
        async with self._lock:
            used = await self.repository.get_used_ports(exclude_app_id=exclude_app_id)
            if port in used:
                return False
            if include_reservations and port in self._active_reservations():
                return False
            return self._is_port_bindable(port)

    async def find_next_available(
        self, preferred_port: int, exclude_app_id: str | None = None
    ) -> int:
        """
        Try the preferred port first, then fall back to an ascending scan.

        Args:
            preferred_port: Port to try first (only if inside the range)
            exclude_app_id: App whose own recorded port does not count as used

        Returns:
            The chosen port (reserved until released)

        Raises:
            NoPortsAvailableError: If the whole range is exhausted
        """
        async with self._lock:
            used = set(await self.repository.get_used_ports(exclude_app_id=exclude_app_id))
            skip = used | self._active_reservations()

            if (
                self.in_range(preferred_port)
                and preferred_port not in skip
                and self._is_port_bindable(preferred_port)
            ):
                return self._reserve(preferred_port)

            port = self._scan(skip)
            logger.debug(f"Preferred port {preferred_port} unavailable, using {port}")
            return self._reserve(port)

    def release(self, port: int) -> None:
        """Drop the in-memory reservation once the port has been persisted."""
        self._reserved.pop(port, None)

    async def get_used_ports(self) -> list[int]:
        return sorted(await self.repository.get_used_ports())
