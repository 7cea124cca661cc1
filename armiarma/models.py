"""Data models describing peers, connections, connection attempts and IP info."""

from __future__ import annotations

import enum
import ipaddress
import logging
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

DEPRECABLE_TIME = timedelta(hours=24)
# Two months without a connection means the peer left the network.
LEFT_NETWORK_TIME = timedelta(days=60)
IP_INFO_TTL = timedelta(days=30)


# ---------------------------------------------------------------- attempts

class AttemptStatus(str, enum.Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


@dataclass
class ConnectionAttempt:
    """Outcome of a proactive attempt to connect a peer."""

    remote_peer: str
    timestamp: datetime
    status: AttemptStatus
    error: str = ""
    deprecable: bool = False
    left_network: bool = False


def new_conn_attempt(
    remote_peer: str,
    status: AttemptStatus,
    error: str,
    deprecable: bool,
    left_network: bool,
) -> ConnectionAttempt:
    """Build a connection attempt stamped with the current time."""
    return ConnectionAttempt(
        remote_peer=remote_peer,
        timestamp=datetime.now(timezone.utc),
        status=status,
        error=error,
        deprecable=deprecable,
        left_network=left_network,
    )


# ---------------------------------------------------------------- conn events

class ConnDirection(enum.IntEnum):
    UNSET = 0
    INBOUND = 1
    OUTBOUND = 2


def direction_to_string(direction: ConnDirection) -> str:
    """Return 'inbound', 'outbound' or 'unset' for a connection direction."""
    if direction == ConnDirection.INBOUND:
        return "inbound"
    if direction == ConnDirection.OUTBOUND:
        return "outbound"
    return "unset"


@dataclass
class EventTrace:
    peer_id: str
    event: Any


@dataclass
class ConnInfo:
    direction: ConnDirection = ConnDirection.UNSET
    conn_time: Optional[datetime] = None
    latency: timedelta = timedelta(0)
    identified: bool = False
    att: dict[str, Any] = field(default_factory=dict)
    error: str = ""


@dataclass
class EndConnInfo:
    disc_time: Optional[datetime] = None
    conn_duration: timedelta = timedelta(0)


@dataclass
class ConnEvent:
    """Summary of one connection with a peer, from connection to disconnection."""

    peer_id: str
    direction: ConnDirection = ConnDirection.UNSET
    conn_time: Optional[datetime] = None
    latency: timedelta = timedelta(0)
    identified: bool = False
    att: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    disc_time: Optional[datetime] = None
    conn_duration: timedelta = timedelta(0)

    def add_conn_info(self, conn_info: ConnInfo) -> None:
        """Merge the connection details; compute the duration if already disconnected."""
        self.direction = conn_info.direction
        self.conn_time = conn_info.conn_time
        self.latency = conn_info.latency
        self.identified = conn_info.identified
        self.error = conn_info.error
        self.att.update(conn_info.att)
        if self.disc_time is not None and self.conn_time is not None:
            self.conn_duration = self.disc_time - self.conn_time

    def add_disconn(self, disc_info: EndConnInfo) -> None:
        """Record the disconnection time and compute the duration when possible."""
        if self.conn_time is not None and disc_info.disc_time is not None:
            self.conn_duration = disc_info.disc_time - self.conn_time
        self.disc_time = disc_info.disc_time

    def is_ready_to_persist(self) -> bool:
        return (
            self.conn_time is not None
            and self.disc_time is not None
            and self.conn_duration != timedelta(0)
        )


# ---------------------------------------------------------------- ip info

_IP_API_FIELD_NAMES = {
    "ip": "query",
    "continent_code": "continentCode",
    "country_code": "countryCode",
    "region_name": "regionName",
    "as_": "as",
    "as_name": "asname",
}


@dataclass
class IpApiMsg:
    """Reply of the IP geolocation API."""

    ip: str = ""
    status: str = ""
    continent: str = ""
    continent_code: str = ""
    country: str = ""
    country_code: str = ""
    region: str = ""
    region_name: str = ""
    city: str = ""
    zip: str = ""
    lat: float = 0.0
    lon: float = 0.0
    isp: str = ""
    org: str = ""
    as_: str = ""
    as_name: str = ""
    mobile: bool = False
    proxy: bool = False
    hosting: bool = False

    def is_empty(self) -> bool:
        return self.country == "" and self.city == ""

    @classmethod
    def from_json(cls, data: dict[str, Any], **extra: Any):
        """Build from the API's JSON field names."""
        values = {}
        for f in fields(IpApiMsg):
            name = _IP_API_FIELD_NAMES.get(f.name, f.name)
            if name in data:
                values[f.name] = data[name]
        return cls(**values, **extra)


@dataclass
class IpInfo(IpApiMsg):
    expiration_time: Optional[datetime] = None


@dataclass
class ApiResp:
    ip_info: IpInfo
    delay_time: timedelta = timedelta(0)
    attempts_left: int = 0
    err: Optional[Exception] = None


def is_ip_public(ip) -> bool:
    """Return True for a routable address; invalid or missing input is not public."""
    if ip is None:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_unspecified
        or addr.is_reserved
    )


# ---------------------------------------------------------------- multiaddrs

_NO_VALUE_PROTOCOLS = frozenset(
    {"quic", "quic-v1", "p2p-circuit", "ws", "wss", "tls", "noise", "webtransport",
     "http", "https", "webrtc", "webrtc-direct", "udt", "utp"}
)


def _maddr_components(maddr: str) -> dict[str, str]:
    parts = maddr.split("/")
    if not maddr.startswith("/") or len(parts) < 2:
        raise ValueError(f"invalid multiaddr {maddr!r}")
    components: dict[str, str] = {}
    items = iter(parts[1:])
    for proto in items:
        if not proto:
            raise ValueError(f"invalid multiaddr {maddr!r}")
        if proto in _NO_VALUE_PROTOCOLS:
            components.setdefault(proto, "")
            continue
        value = next(items, None)
        if value is None:
            raise ValueError(f"multiaddr {maddr!r}: missing value for {proto}")
        components.setdefault(proto, value)
    return components


def _ip_from_maddr(maddr: str) -> Optional[str]:
    try:
        comps = _maddr_components(maddr)
    except ValueError:
        return None
    return comps.get("ip4") or comps.get("ip6")


def _port_from_maddr(maddr: str) -> int:
    try:
        comps = _maddr_components(maddr)
    except ValueError:
        return 0
    raw = comps.get("tcp") or comps.get("udp")
    return int(raw) if raw and raw.isdigit() else 0


# ---------------------------------------------------------------- peers

@dataclass(frozen=True)
class AddrInfo:
    id: str = ""
    addrs: tuple[str, ...] = ()


@dataclass
class RemoteConnectablePeer:
    id: str
    addrs: list[str]
    network: str


@dataclass
class PeerInfo:
    """Identification data obtained from the identify protocol."""

    remote_peer: str = ""
    user_agent: str = ""
    protocol_version: str = ""
    protocols: list[str] = field(default_factory=list)
    latency: timedelta = timedelta(0)

    def __post_init__(self) -> None:
        self.protocols = list(self.protocols)

    def is_peer_identified(self) -> bool:
        return bool(self.user_agent or self.protocol_version or self.protocols)


@dataclass
class ControlInfo:
    remote_peer: str = ""
    deprecated: bool = False
    left_network: bool = False
    attempted: bool = False
    last_activity: Optional[datetime] = None
    last_conn_attempt: Optional[datetime] = None
    last_error: str = ""


HostOption = Callable[["HostInfo"], None]


@dataclass
class HostInfo:
    """Everything needed to connect, identify and monitor a peer."""

    id: str
    network: str
    ip: str = ""
    port: int = 0
    maddrs: list[str] = field(default_factory=list)
    peer_info: PeerInfo = field(default_factory=PeerInfo)
    control_info: ControlInfo = field(default_factory=ControlInfo)
    attr: dict[str, Any] = field(default_factory=dict)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    def compose_addrs_info(self) -> AddrInfo:
        with self._lock:
            return AddrInfo(id=self.id, addrs=tuple(self.maddrs))

    def compose_persistable(self) -> RemoteConnectablePeer:
        with self._lock:
            return RemoteConnectablePeer(id=self.id, addrs=list(self.maddrs), network=self.network)

    def add_att(self, key: str, value: Any) -> None:
        with self._lock:
            self.attr[key] = value

    def identify_host(self, peer_info: PeerInfo) -> None:
        with self._lock:
            self.peer_info = peer_info

    def is_host_identified(self) -> bool:
        return self.peer_info.is_peer_identified()


def with_ip_and_ports(ip: str, port: int) -> HostOption:
    """Option setting the IP and port and adding the matching tcp multiaddr."""

    def apply(host: HostInfo) -> None:
        with host._lock:
            host.ip = ip
            host.port = port
            try:
                ipaddress.IPv4Address(ip)
            except ValueError as exc:
                raise ValueError(f"invalid ip4 address {ip!r}") from exc
            if not 0 <= int(port) <= 65535:
                raise ValueError(f"invalid tcp port {port}")
            host.maddrs.append(f"/ip4/{ip}/tcp/{port}")

    return apply


def with_multiaddress(maddrs) -> HostOption:
    """Option adding multiaddrs and taking IP and port from the first public one."""
    maddrs = list(maddrs)

    def apply(host: HostInfo) -> None:
        with host._lock:
            host.maddrs.extend(maddrs)
            public_ip, port = "", 0
            for addr in maddrs:
                ip = _ip_from_maddr(addr)
                if is_ip_public(ip):
                    public_ip = str(ipaddress.ip_address(ip))
                    port = _port_from_maddr(addr)
                    break
            host.ip = public_ip
            host.port = port

    return apply


def new_host_info(peer_id: str, network: str, *args: HostOption) -> HostInfo:
    """Create a HostInfo and apply the options; failing options are logged."""
    host = HostInfo(id=peer_id, network=network)
    for option in args:
        try:
            option(host)
        except ValueError as exc:
            log.error("unable to init HostInfo with option: %s", exc)
    return host