"""Database client that batches the crawler's writes and answers its reads."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from armiarma.db import queries
from armiarma.db.batch import Pool, QueryBatch
from armiarma.models import (
    ConnectionAttempt,
    ConnEvent,
    ControlInfo,
    HostInfo,
    IpInfo,
    PeerInfo,
    RemoteConnectablePeer,
)

log = logging.getLogger(__name__)

BATCH_FLUSHING_TIMEOUT = 1.0
BATCH_SIZE = 512
MAX_PERSISTERS = 2
LAST_ACTIVITY_VALID_RANGE = 180  # days, about six months
ETHEREUM_NETWORK = "ethereum"

_POLL_INTERVAL = 0.05

DBOption = Callable[["DBClient"], None]

CREATE_ACTIVE_PEERS_TABLE = """
    CREATE TABLE IF NOT EXISTS active_peers(
        id SERIAL,
        timestamp TIMESTAMP,
        peers BIGINT[],

        PRIMARY KEY(timestamp)
    );
"""

DROP_ACTIVE_PEERS_TABLE = "DROP TABLE active_peers;"

SELECT_ACTIVE_PEERS = """
    SELECT
        id,
        peer_id
    FROM peer_info
    WHERE deprecated = 'false' and attempted = 'true' and client_name IS NOT NULL and to_timestamp(last_activity) > CURRENT_TIMESTAMP - ($1 * INTERVAL '1 DAY')
"""

INSERT_ACTIVE_PEERS = """
    INSERT INTO active_peers(
        timestamp,
        peers)
    VALUES ($1,$2)
"""

SELECT_IP_INFO = """
    SELECT
        ip,
        expiration_time,
        continent,
        continent_code,
        country,
        country_code,
        region,
        region_name,
        city,
        zip,
        lat,
        lon,
        isp,
        org,
        as_raw,
        asname,
        mobile,
        proxy,
        hosting
    FROM ips
    WHERE ip=$1
"""

SELECT_EXPIRED_IPS = """
    SELECT ip
    FROM ips
    WHERE expiration_time < NOW();
"""

SELECT_IP_RECORD = """
    SELECT
        ip,
        expiration_time
    FROM ips
    WHERE ip=$1;
"""

SELECT_FULL_HOST_INFO = """
    SELECT
        network,
        multi_addrs,
        ip,
        port,
        user_agent,
        protocol_version,
        sup_protocols,
        latency,
        deprecated,
        attempted,
        last_activity,
        last_conn_attempt,
        last_error
    FROM peer_info
    WHERE peer_id=$1;
"""

SELECT_PERSISTABLE = """
    SELECT
        network,
        multi_addrs
    FROM peer_info
    WHERE peer_id=$1;
"""

SELECT_PEER_EXISTS = """
    SELECT
        peer_id
    FROM peer_info
    WHERE peer_id=$1;
"""

SELECT_NON_DEPRECATED_PEERS = """
    SELECT
        peer_id,
        network,
        multi_addrs
    FROM peer_info
    WHERE deprecated='false';
"""


# ---------------------------------------------------------------- options

def initialize_tables(init: bool) -> DBOption:
    """Option that creates every table the crawler needs when ``init`` is true."""

    def apply(client: "DBClient") -> None:
        if not init:
            return
        try:
            client.init_tables()
        except Exception as exc:
            raise RuntimeError(
                f"unable to initialize the SQL tables at {client.login_str}"
            ) from exc

    return apply


def with_connection_events_persist(persist: bool) -> DBOption:
    """Option deciding whether connection events are written to conn_events."""

    def apply(client: "DBClient") -> None:
        client.persist_conn_events = persist

    return apply


# ---------------------------------------------------------------- helpers

def _unparsed_client(user_agent: str) -> tuple[str, str, str, str]:
    return "", "", "", ""


def _from_unix(value: Optional[int]) -> Optional[datetime]:
    if value is None or value == queries.ZERO_TIME_UNIX:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _parse_maddr(raw: str) -> str:
    parts = raw.split("/") if isinstance(raw, str) else []
    if len(parts) < 3 or parts[0] != "" or any(p == "" for p in parts[1:]):
        raise ValueError(f"invalid multiaddr {raw!r}")
    return raw


_IP_INFO_FIELDS = [f.name for f in fields(IpInfo) if f.name != "expiration_time"]
_IP_INFO_COLUMNS = ["ip", "expiration_time"] + [n for n in _IP_INFO_FIELDS if n != "ip"]


# ---------------------------------------------------------------- client

class DBClient:
    """Queues items for background persisters and serves the crawler's reads."""

    def __init__(
        self,
        pool: Pool,
        network: str,
        login_str: str,
        backup_interval: Union[timedelta, float],
        *args: DBOption,
    ) -> None:
        if not login_str:
            raise ValueError("empty db-endpoint provided")
        self.pool = pool
        self.network = network
        self.login_str = login_str
        if isinstance(backup_interval, timedelta):
            backup_interval = backup_interval.total_seconds()
        self.backup_interval = float(backup_interval)
        self.persist_conn_events = True
        self.client_parser: Callable[[str], tuple[str, str, str, str]] = _unparsed_client

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._done = threading.Event()
        self._closed = False

        for option in args:
            option(self)

        self._persisters = [
            threading.Thread(target=self._run_persister, name=f"db-persister-{i}", daemon=True)
            for i in range(MAX_PERSISTERS)
        ]
        for worker in self._persisters:
            worker.start()
        self._heartbeat = threading.Thread(
            target=self._backup_heartbeat, name="db-backup", daemon=True
        )
        self._heartbeat.start()

    # ------------------------------------------------------------ tables

    def init_tables(self) -> None:
        """Create the general tables, and the Ethereum ones on that network."""
        statements = [
            ("peer_info", queries.CREATE_PEER_INFO_TABLE),
            ("conn_events", queries.CREATE_CONN_EVENTS_TABLE),
            ("ips", queries.CREATE_IPS_TABLE),
            ("active_peers", CREATE_ACTIVE_PEERS_TABLE),
        ]
        if self.network == ETHEREUM_NETWORK:
            statements += [
                ("eth_nodes", queries.CREATE_ETH_NODES_TABLE),
                ("eth_status", queries.CREATE_ETH_STATUS_TABLE),
                ("eth_attestations", queries.CREATE_ETH_ATTESTATIONS_TABLE),
                ("eth_blocks", queries.CREATE_ETH_BLOCKS_TABLE),
            ]
        for table, statement in statements:
            log.debug("init %s table in psql-db", table)
            try:
                self.pool.execute(statement)
            except Exception as exc:
                raise RuntimeError(f"initializing {table} table") from exc

    def drop_active_peers_table(self) -> None:
        log.info("dropping table active_peers")
        self.pool.execute(DROP_ACTIVE_PEERS_TABLE)

    # ------------------------------------------------------------ writes

    def persist_to_db(self, item: Any) -> None:
        """Queue an item to be written by the background persisters."""
        if self._closed:
            raise RuntimeError("database client is closed")
        self._queue.put(item)

    def single_query(self, query: str, *args: Any) -> Any:
        return self.pool.execute(query, *args)

    def close(self) -> None:
        """Drain the queue, back up the active peers and close the pool."""
        if self._closed:
            return
        self._closed = True
        self._done.set()
        for worker in self._persisters:
            worker.join()
        self._heartbeat.join()
        try:
            self.active_peers_backup()
        except Exception as exc:
            log.error("%s", exc)
        self.pool.close()

    def _run_persister(self) -> None:
        batch = QueryBatch(self.pool, BATCH_SIZE)
        last_flush = time.monotonic()
        while True:
            if self._done.is_set() and self._queue.empty():
                log.info("closed detected, closing persister")
                self._flush(batch)
                return
            try:
                item = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                item = None
            if item is not None:
                self._queue_item(batch, item)
                if batch.is_ready_to_persist():
                    log.debug("batch-query full, ready to persist")
                    self._flush(batch)
                    last_flush = time.monotonic()
            if time.monotonic() - last_flush >= BATCH_FLUSHING_TIMEOUT:
                self._flush(batch)
                last_flush = time.monotonic()

    @staticmethod
    def _flush(batch: QueryBatch) -> None:
        try:
            batch.persist_batch()
        except Exception as exc:
            log.error("%s", exc)

    def _queue_item(self, batch: QueryBatch, item: Any) -> None:
        for query, args in self._queries_for(item):
            batch.add_query(query, *args)

    def _queries_for(self, item: Any) -> list[queries.Query]:
        if isinstance(item, HostInfo):
            result = [queries.upsert_host_info(item)]
            if item.is_host_identified():
                result.append(queries.update_peer_info(item.peer_info, self.client_parser))
            for name, att in item.attr.items():
                query = self._attribute_query(att)
                if query is None:
                    log.warning("not yet recognized type for attr %s - %s", name, type(att).__name__)
                else:
                    result.append(query)
            return result
        if isinstance(item, PeerInfo):
            return [queries.update_peer_info(item, self.client_parser)]
        if isinstance(item, ConnectionAttempt):
            return [queries.update_conn_attempt(item)]
        if isinstance(item, ConnEvent):
            result = []
            if self.persist_conn_events:
                result.append(queries.insert_new_conn_event(item))
            result.append(queries.update_last_activity_timestamp(item.peer_id, item.disc_time))
            return result
        if isinstance(item, IpInfo):
            return [queries.upsert_ip_info(item)]
        if hasattr(item, "msg_id") and hasattr(item, "val_pubkey"):
            return [queries.insert_new_ethereum_attestation(item)]
        if hasattr(item, "msg_id") and hasattr(item, "val_index"):
            return [queries.insert_new_ethereum_beacon_block(item)]
        log.error("unrecognized type of object received to persist into DB %s", type(item).__name__)
        return []

    @staticmethod
    def _attribute_query(att: Any) -> Optional[queries.Query]:
        if hasattr(att, "get_attnets_string"):
            return queries.upsert_enr_info(att)
        if hasattr(att, "status") and hasattr(att, "peer_id"):
            return queries.upsert_ethereum_node_status(att)
        if hasattr(att, "metadata") and hasattr(att, "peer_id"):
            return queries.upsert_ethereum_node_metadata(att)
        return None

    # ------------------------------------------------------------ backups

    def _backup_heartbeat(self) -> None:
        while True:
            try:
                self.active_peers_backup()
            except Exception as exc:
                log.error("%s", exc)
            if self._done.wait(self.backup_interval):
                return

    def _get_active_peers(self) -> list[int]:
        rows = self.pool.fetch(SELECT_ACTIVE_PEERS, LAST_ACTIVITY_VALID_RANGE)
        return [row[0] for row in rows]

    def active_peers_backup(self) -> bool:
        """Store the ids of the active peers; return False if there were none."""
        log.debug("making backup in DB of the actual active peers")
        try:
            active = self._get_active_peers()
        except Exception as exc:
            raise RuntimeError("unable to backup active peers") from exc
        if not active:
            log.info("tried to persist %d active peers (skipped)", len(active))
            return False
        self.pool.execute(INSERT_ACTIVE_PEERS, datetime.now(timezone.utc), active)
        return True

    # ------------------------------------------------------------ ips

    def read_ip_info(self, ip: str) -> IpInfo:
        """Return the stored location data of an IP; LookupError if unknown."""
        row = self.pool.fetchrow(SELECT_IP_INFO, ip)
        if row is None:
            raise LookupError(f"no ip info for {ip}")
        return IpInfo(**dict(zip(_IP_INFO_COLUMNS, row)))

    def get_expired_ip_info(self) -> list[str]:
        """Return every IP whose location data has expired."""
        return [row[0] for row in self.pool.fetch(SELECT_EXPIRED_IPS)]

    def check_ip_records(self, ip: str) -> tuple[bool, bool]:
        """Return (exists, expired) for an IP."""
        row = self.pool.fetchrow(SELECT_IP_RECORD, ip)
        if row is None:
            return False, False
        read_ip, exp_time = row
        exists = read_ip == ip
        expired = exp_time is not None and _as_utc(exp_time) < datetime.now(timezone.utc)
        return exists, expired

    # ------------------------------------------------------------ peers

    def get_full_host_info(self, peer_id: str) -> HostInfo:
        """Read everything stored about a peer; LookupError if it is unknown."""
        row = self.pool.fetchrow(SELECT_FULL_HOST_INFO, str(peer_id))
        if row is None:
            raise LookupError("unable to retrieve full peer_info")
        (
            network, maddrs, ip, port, user_agent, protocol_version, protocols,
            latency_ms, deprecated, attempted, last_activity, last_conn_attempt,
            last_error,
        ) = row
        try:
            addrs = [_parse_maddr(m) for m in maddrs or ()]
        except ValueError as exc:
            raise ValueError("unable to parse mAddrs reading full peer_info") from exc
        peer_info = PeerInfo(
            remote_peer=str(peer_id),
            user_agent=user_agent or "",
            protocol_version=protocol_version or "",
            protocols=list(protocols or ()),
            latency=timedelta(milliseconds=latency_ms or 0),
        )
        control = ControlInfo(
            deprecated=bool(deprecated),
            attempted=bool(attempted),
            last_activity=_from_unix(last_activity),
            last_conn_attempt=_from_unix(last_conn_attempt),
            last_error=last_error or "",
        )
        return HostInfo(
            id=str(peer_id),
            network=network,
            ip=ip or "",
            port=port or 0,
            maddrs=addrs,
            peer_info=peer_info,
            control_info=control,
        )

    def get_persistable(self, peer_id: str) -> RemoteConnectablePeer:
        """Read the addresses of a peer; an unknown peer has none."""
        if not peer_id:
            raise ValueError("empty peer id")
        row = self.pool.fetchrow(SELECT_PERSISTABLE, peer_id)
        network, maddrs = row if row is not None else ("", [])
        try:
            addrs = [_parse_maddr(m) for m in maddrs or ()]
        except ValueError as exc:
            raise ValueError("unable to parse mAddrs reading full peer_info") from exc
        return RemoteConnectablePeer(id=peer_id, addrs=addrs, network=network or "")

    def peer_info_exists(self, peer_id: str) -> bool:
        try:
            row = self.pool.fetchrow(SELECT_PEER_EXISTS, str(peer_id))
        except Exception as exc:
            log.debug("unable to check peer %s: %s", peer_id, exc)
            return False
        return row is not None

    def get_non_deprecated_peers(self) -> list[RemoteConnectablePeer]:
        """Return every non-deprecated peer, skipping unreadable entries."""
        peers = []
        for peer_id, network, maddrs in self.pool.fetch(SELECT_NON_DEPRECATED_PEERS):
            if not peer_id:
                log.error("unable to get peerID from DB %r", peer_id)
                continue
            addrs = []
            for raw in maddrs or ():
                try:
                    addrs.append(_parse_maddr(raw))
                except ValueError as exc:
                    log.error("unable to parse mAddrs reading full peer_info: %s", exc)
            peers.append(RemoteConnectablePeer(id=peer_id, addrs=addrs, network=network))
        return peers