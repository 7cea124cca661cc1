"""SQL statements and argument lists for every table the crawler writes to.

Each builder returns a ``(query, args)`` pair whose placeholders are ``$1``,
``$2``... so it can be queued in a batch or run on its own.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence

from armiarma.models import (
    AttemptStatus,
    ConnectionAttempt,
    ConnEvent,
    HostInfo,
    IpInfo,
    PeerInfo,
    direction_to_string,
)

Query = tuple[str, list[Any]]
ClientParser = Callable[[str], tuple[str, str, str, str]]

# Unix seconds of an unset timestamp (0001-01-01T00:00:00Z).
ZERO_TIME_UNIX = -62135596800

_MILLISECOND = timedelta(milliseconds=1)


def unix_seconds(moment: Optional[datetime]) -> int:
    """Whole seconds since the epoch; an unset time maps to ZERO_TIME_UNIX."""
    if moment is None:
        return ZERO_TIME_UNIX
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return math.floor(moment.timestamp())


def milliseconds(duration: timedelta) -> int:
    """Whole milliseconds in a duration, truncated toward zero."""
    return int(duration / _MILLISECOND)


# ---------------------------------------------------------------- statement builders

def _placeholders(count: int, start: int = 1) -> str:
    return ",".join(f"${n}" for n in range(start, start + count))


def _create_table(name: str, columns: Sequence[tuple[str, str]], *constraints: str) -> str:
    body = [f"{col} {kind}" for col, kind in columns]
    body.extend(constraints)
    return f"CREATE TABLE IF NOT EXISTS {name}(\n    " + ",\n    ".join(body) + "\n);"


def _insert(
    table: str,
    columns: Sequence[str],
    conflict: Optional[str] = None,
    update: Iterable[str] = (),
    do_nothing: bool = False,
) -> str:
    statement = (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({_placeholders(len(columns))})"
    )
    if conflict is not None:
        statement += f" ON CONFLICT ({conflict})"
        if do_nothing:
            statement += " DO NOTHING"
        else:
            sets = ", ".join(f"{col} = excluded.{col}" for col in update)
            statement += f" DO UPDATE SET {sets}"
    return statement + ";"


def _update_by_peer(table: str, columns: Sequence[str]) -> str:
    sets = ", ".join(f"{col}=${n}" for n, col in enumerate(columns, start=2))
    return f"UPDATE {table} SET {sets} WHERE peer_id=$1;"


def _drop(table: str) -> str:
    return f"DROP TABLE {table};"


# ---------------------------------------------------------------- tables

_NOT_NULL_TEXT = "TEXT NOT NULL"

CREATE_PEER_INFO_TABLE = _create_table(
    "peer_info",
    [
        ("id", "SERIAL"),
        ("peer_id", _NOT_NULL_TEXT),
        ("network", _NOT_NULL_TEXT),
        ("multi_addrs", "TEXT[] NOT NULL"),
        ("ip", _NOT_NULL_TEXT),
        ("port", "INT"),
        ("user_agent", "TEXT"),
        ("client_name", "TEXT"),
        ("client_version", "TEXT"),
        ("client_os", "TEXT"),
        ("client_arch", "TEXT"),
        ("protocol_version", "TEXT"),
        ("sup_protocols", "TEXT[]"),
        ("latency", "INT"),
        ("deprecated", "BOOL"),
        ("attempted", "BOOL"),
        ("last_activity", "BIGINT"),
        ("last_conn_attempt", "BIGINT"),
        ("last_error", "TEXT"),
    ],
    "PRIMARY KEY (peer_id)",
)

CREATE_CONN_EVENTS_TABLE = _create_table(
    "conn_events",
    [
        ("id", "SERIAL"),
        ("peer_id", _NOT_NULL_TEXT),
        ("direction", _NOT_NULL_TEXT),
        ("conn_time", "BIGINT NOT NULL"),
        ("latency", "BIGINT"),
        ("disconn_time", "BIGINT NOT NULL"),
        ("identified", "BOOL"),
        ("error", _NOT_NULL_TEXT),
    ],
    "PRIMARY KEY (id)",
)

_IP_TEXT_COLUMNS = (
    "continent", "continent_code", "country", "country_code", "region",
    "region_name", "city", "zip",
)

CREATE_IPS_TABLE = _create_table(
    "ips",
    [
        ("id", "SERIAL"),
        ("ip", _NOT_NULL_TEXT),
        ("expiration_time", "TIMESTAMP NOT NULL"),
        *((col, _NOT_NULL_TEXT) for col in _IP_TEXT_COLUMNS),
        ("lat", "REAL NOT NULL"),
        ("lon", "REAL NOT NULL"),
        *((col, _NOT_NULL_TEXT) for col in ("isp", "org", "as_raw", "asname")),
        *((col, "BOOL NOT NULL") for col in ("mobile", "proxy", "hosting")),
    ],
    "PRIMARY KEY (ip)",
)

CREATE_ETH_NODES_TABLE = _create_table(
    "eth_nodes",
    [
        ("id", "SERIAL"),
        ("timestamp", "BIGINT NOT NULL"),
        ("peer_id", "TEXT"),
        ("node_id", _NOT_NULL_TEXT),
        ("seq", "BIGINT NOT NULL"),
        ("ip", _NOT_NULL_TEXT),
        ("tcp", "INT"),
        ("udp", "INT"),
        ("pubkey", _NOT_NULL_TEXT),
        ("fork_digest", "TEXT"),
        ("next_fork_version", "TEXT"),
        ("attnets", "TEXT"),
        ("attnets_number", "INT"),
    ],
    "PRIMARY KEY(node_id)",
    "UNIQUE(peer_id, pubkey)",
)

CREATE_ETH_STATUS_TABLE = _create_table(
    "eth_status",
    [
        ("id", "SERIAL"),
        ("peer_id", "TEXT"),
        ("timestamp", "BIGINT"),
        ("fork_digest", "TEXT"),
        ("finalized_root", "TEXT"),
        ("finalized_epoch", "BIGINT"),
        ("head_root", "TEXT"),
        ("head_slot", "BIGINT"),
        ("seq_number", "BIGINT"),
        ("attnets", "TEXT"),
        ("syncnets", "TEXT"),
    ],
    "PRIMARY KEY (peer_id)",
)

_GOSSIP_COMMON = [
    ("id", "SERIAL"),
    ("msg_id", _NOT_NULL_TEXT),
    ("sender", _NOT_NULL_TEXT),
]

CREATE_ETH_ATTESTATIONS_TABLE = _create_table(
    "eth_attestations",
    [
        *_GOSSIP_COMMON,
        ("subnet", "INT NOT NULL"),
        ("slot", "BIGINT NOT NULL"),
        ("arrival_time", "TIME NOT NULL"),
        ("time_in_slot", "REAL NOT NULL"),
        ("val_pubkey", "TEXT"),
    ],
    "PRIMARY KEY(msg_id)",
)

CREATE_ETH_BLOCKS_TABLE = _create_table(
    "eth_blocks",
    [
        *_GOSSIP_COMMON,
        ("slot", "BIGINT NOT NULL"),
        ("arrival_time", "TIME NOT NULL"),
        ("time_in_slot", "REAL NOT NULL"),
        ("val_idx", "BIGINT"),
    ],
    "PRIMARY KEY(msg_id)",
)

DROP_ETH_NODES_TABLE = _drop("eth_nodes")
DROP_ETH_STATUS_TABLE = _drop("eth_status")
DROP_ETH_ATTESTATIONS_TABLE = _drop("eth_attestations")
DROP_ETH_BLOCKS_TABLE = _drop("eth_blocks")


# ---------------------------------------------------------------- statements

_INSERT_CONN_EVENT = _insert(
    "conn_events",
    ["peer_id", "direction", "conn_time", "latency", "disconn_time", "identified", "error"],
)

_ENR_COLUMNS = [
    "timestamp", "peer_id", "node_id", "seq", "ip", "tcp", "udp", "pubkey",
    "fork_digest", "next_fork_version", "attnets", "attnets_number",
]
_UPSERT_ENR = _insert(
    "eth_nodes",
    _ENR_COLUMNS,
    conflict="node_id",
    update=[c for c in _ENR_COLUMNS if c not in ("peer_id", "node_id", "pubkey")],
)

_STATUS_COLUMNS = [
    "peer_id", "timestamp", "fork_digest", "finalized_root",
    "finalized_epoch", "head_root", "head_slot",
]
_UPSERT_STATUS = _insert("eth_status", _STATUS_COLUMNS, conflict="peer_id", update=_STATUS_COLUMNS)

_METADATA_COLUMNS = ["peer_id", "timestamp", "seq_number", "attnets", "syncnets"]
_UPSERT_METADATA = _insert(
    "eth_status", _METADATA_COLUMNS, conflict="peer_id", update=_METADATA_COLUMNS
)

_INSERT_ATTESTATION = _insert(
    "eth_attestations",
    ["msg_id", "sender", "subnet", "slot", "arrival_time", "time_in_slot", "val_pubkey"],
    conflict="msg_id",
    do_nothing=True,
)

_INSERT_BLOCK = _insert(
    "eth_blocks",
    ["msg_id", "sender", "slot", "arrival_time", "time_in_slot", "val_idx"],
    conflict="msg_id",
    do_nothing=True,
)

_IP_COLUMNS = [
    "ip", "expiration_time", *_IP_TEXT_COLUMNS, "lat", "lon", "isp", "org",
    "as_raw", "asname", "mobile", "proxy", "hosting",
]
_UPSERT_IP = _insert("ips", _IP_COLUMNS, conflict="ip", update=_IP_COLUMNS[1:])

_UPSERT_HOST = _insert(
    "peer_info",
    ["peer_id", "network", "multi_addrs", "ip", "port", "deprecated"],
    conflict="peer_id",
    update=["multi_addrs", "ip", "port", "deprecated"],
)

_UPDATE_PEER_INFO = _update_by_peer(
    "peer_info",
    ["user_agent", "client_name", "client_version", "client_os", "client_arch",
     "protocol_version", "sup_protocols", "latency"],
)

_UPDATE_POSITIVE_ATTEMPT = _update_by_peer(
    "peer_info",
    ["deprecated", "attempted", "last_activity", "last_conn_attempt", "last_error"],
)

_UPDATE_NEGATIVE_ATTEMPT = _update_by_peer(
    "peer_info",
    ["deprecated", "attempted", "last_conn_attempt", "last_error"],
)

_UPDATE_LAST_ACTIVITY = _update_by_peer("peer_info", ["last_activity"])


# ---------------------------------------------------------------- conn events

def insert_new_conn_event(conn_event: ConnEvent) -> Query:
    """Insert one finished connection into conn_events."""
    args = [
        str(conn_event.peer_id),
        direction_to_string(conn_event.direction),
        unix_seconds(conn_event.conn_time),
        milliseconds(conn_event.latency),
        unix_seconds(conn_event.disc_time),
        conn_event.identified,
        conn_event.error,
    ]
    return _INSERT_CONN_EVENT, args


# ---------------------------------------------------------------- ethereum nodes

def upsert_enr_info(enr: Any) -> Query:
    """Insert an ENR, or update the stored one for the same node id.

    ``enr`` needs: ``timestamp``, ``get_peer_id()``, ``id``, ``seq``, ``ip``,
    ``tcp``, ``udp``, ``get_pubkey_string()``, ``eth2_data.fork_digest``,
    ``eth2_data.next_fork_version``, ``get_attnets_string()`` and
    ``attnets.net_number``.
    """
    try:
        peer_id = str(enr.get_peer_id())
    except Exception:
        peer_id = ""
    args = [
        unix_seconds(enr.timestamp),
        peer_id,
        str(enr.id),
        enr.seq,
        str(enr.ip),
        enr.tcp,
        enr.udp,
        enr.get_pubkey_string(),
        str(enr.eth2_data.fork_digest),
        str(enr.eth2_data.next_fork_version),
        enr.get_attnets_string(),
        enr.attnets.net_number,
    ]
    return _UPSERT_ENR, args


def upsert_ethereum_node_status(status: Any) -> Query:
    """Store a timestamped beacon status (``peer_id``, ``timestamp``, ``status``)."""
    beacon = status.status
    args = [
        str(status.peer_id),
        unix_seconds(status.timestamp),
        str(beacon.fork_digest),
        str(beacon.finalized_root),
        beacon.finalized_epoch,
        str(beacon.head_root),
        beacon.head_slot,
    ]
    return _UPSERT_STATUS, args


def upsert_ethereum_node_metadata(metadata: Any) -> Query:
    """Store timestamped beacon metadata (``peer_id``, ``timestamp``, ``metadata``)."""
    meta = metadata.metadata
    args = [
        str(metadata.peer_id),
        unix_seconds(metadata.timestamp),
        meta.seq_number,
        str(meta.attnets),
        str(meta.syncnets),
    ]
    return _UPSERT_METADATA, args


# ---------------------------------------------------------------- gossip messages

def insert_new_ethereum_attestation(attestation: Any) -> Query:
    """Insert a tracked attestation; duplicates by message id are ignored."""
    args = [
        attestation.msg_id,
        str(attestation.sender),
        attestation.subnet,
        attestation.slot,
        attestation.arrival_time,
        attestation.time_in_slot.total_seconds(),
        attestation.val_pubkey,
    ]
    return _INSERT_ATTESTATION, args


def insert_new_ethereum_beacon_block(block: Any) -> Query:
    """Insert a tracked beacon block; duplicates by message id are ignored."""
    args = [
        block.msg_id,
        str(block.sender),
        block.slot,
        block.arrival_time,
        block.time_in_slot.total_seconds(),
        block.val_index,
    ]
    return _INSERT_BLOCK, args


# ---------------------------------------------------------------- ips

def upsert_ip_info(ip_info: IpInfo) -> Query:
    """Insert the location data of an IP, or refresh it if already stored."""
    args = [
        ip_info.ip,
        ip_info.expiration_time,
        ip_info.continent,
        ip_info.continent_code,
        ip_info.country,
        ip_info.country_code,
        ip_info.region,
        ip_info.region_name,
        ip_info.city,
        ip_info.zip,
        ip_info.lat,
        ip_info.lon,
        ip_info.isp,
        ip_info.org,
        ip_info.as_,
        ip_info.as_name,
        ip_info.mobile,
        ip_info.proxy,
        ip_info.hosting,
    ]
    return _UPSERT_IP, args


# ---------------------------------------------------------------- peer info

def upsert_host_info(host_info: HostInfo) -> Query:
    """Insert a host's addresses, or refresh them; the host is un-deprecated."""
    args = [
        str(host_info.id),
        str(host_info.network),
        list(host_info.maddrs),
        host_info.ip,
        host_info.port,
        False,
    ]
    return _UPSERT_HOST, args


def update_peer_info(peer_info: PeerInfo, parse_client: ClientParser) -> Query:
    """Update identification fields; ``parse_client`` splits the user agent
    into (client name, version, os, arch)."""
    name, version, client_os, arch = parse_client(peer_info.user_agent)
    args = [
        str(peer_info.remote_peer),
        peer_info.user_agent,
        name,
        version,
        client_os,
        arch,
        peer_info.protocol_version,
        list(peer_info.protocols),
        milliseconds(peer_info.latency),
    ]
    return _UPDATE_PEER_INFO, args


def update_conn_attempt(conn_attempt: ConnectionAttempt) -> Query:
    """Record a connection attempt; a positive one also refreshes last activity
    and un-deprecates the peer."""
    stamp = unix_seconds(conn_attempt.timestamp)
    peer_id = str(conn_attempt.remote_peer)
    if conn_attempt.status == AttemptStatus.POSITIVE:
        return _UPDATE_POSITIVE_ATTEMPT, [peer_id, False, True, stamp, stamp, conn_attempt.error]
    return _UPDATE_NEGATIVE_ATTEMPT, [
        peer_id, conn_attempt.deprecable, True, stamp, conn_attempt.error,
    ]


def update_last_activity_timestamp(peer_id: str, timestamp: Optional[datetime]) -> Query:
    """Set the last time the peer was seen active."""
    return _UPDATE_LAST_ACTIVITY, [str(peer_id), unix_seconds(timestamp)]