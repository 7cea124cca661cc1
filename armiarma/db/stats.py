"""Aggregated network statistics read from the crawler's database."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from armiarma.db.batch import Pool
from armiarma.db.client import LAST_ACTIVITY_VALID_RANGE

log = logging.getLogger(__name__)

_RECENT_ACTIVITY = (
    "to_timestamp(last_activity) > CURRENT_TIMESTAMP - ($1 * INTERVAL '1 DAY')"
)
_ACTIVE_PEER_FILTER = (
    "deprecated = 'false' AND attempted = 'true' "
    f"AND client_name IS NOT NULL AND {_RECENT_ACTIVITY}"
)
_SEEN_PEER_FILTER = f"deprecated = false AND client_name IS NOT NULL AND {_RECENT_ACTIVITY}"
_RECENT_ENR_FILTER = (
    "fork_digest IS NOT NULL "
    "AND to_timestamp(timestamp) > CURRENT_TIMESTAMP - INTERVAL '1 DAY'"
)


def _count_by(column: str, alias: str) -> str:
    """Count active peers grouped by one peer_info column, largest group first."""
    return (
        f"SELECT {column}, count({column}) AS {alias} FROM peer_info "
        f"WHERE {_ACTIVE_PEER_FILTER} GROUP BY {column} ORDER BY {alias} DESC;"
    )


CLIENT_DISTRIBUTION_QUERY = _count_by("client_name", "count")
OS_DISTRIBUTION_QUERY = _count_by("client_os", "nodes")
ARCH_DISTRIBUTION_QUERY = _count_by("client_arch", "nodes")

VERSION_DISTRIBUTION_QUERY = (
    "SELECT client_name, client_version, count(client_version) AS cnt FROM peer_info "
    f"WHERE {_ACTIVE_PEER_FILTER} GROUP BY client_name, client_version "
    "ORDER BY client_name DESC, cnt DESC;"
)

GEO_DISTRIBUTION_QUERY = (
    "SELECT ips.country_code, count(ips.country_code) AS cnt "
    "FROM peer_info RIGHT JOIN ips ON peer_info.ip = ips.ip "
    f"WHERE {_ACTIVE_PEER_FILTER} GROUP BY ips.country_code ORDER BY cnt DESC;"
)


def _hosting_query(flag: str) -> str:
    """Count active peers whose IP record has the given boolean flag set."""
    return (
        f"SELECT count(ips.{flag}) FROM peer_info AS pi "
        "INNER JOIN ips ON pi.ip = ips.ip "
        "WHERE pi.deprecated = 'false' AND pi.attempted = 'true' "
        f"AND pi.client_name IS NOT NULL AND ips.{flag} = 'true' "
        f"AND to_timestamp(pi.last_activity) > CURRENT_TIMESTAMP - ($1 * INTERVAL '1 DAY');"
    )


MOBILE_HOSTS_QUERY = _hosting_query("mobile")
PROXY_HOSTS_QUERY = _hosting_query("proxy")
HOSTED_HOSTS_QUERY = _hosting_query("hosting")


def _latency_buckets() -> str:
    """CASE expression labelling latencies in 100 ms buckets up to one second."""
    whens = []
    for upper in range(100, 1001, 100):
        lower = upper - 100 + (1 if upper > 100 else 0)
        # The first label is padded so it sorts alongside the three-digit ones.
        label = f"{lower:>2}-{upper}ms"
        whens.append(f"WHEN latency BETWEEN {lower} AND {upper} THEN '{label}'")
    return "CASE " + " ".join(whens) + " ELSE '+1s' END"


RTT_DISTRIBUTION_QUERY = (
    "SELECT t.latency AS latency_range, count(*) AS nodes FROM ("
    f"SELECT {_latency_buckets()} AS latency FROM peer_info WHERE {_SEEN_PEER_FILTER}"
    ") AS t GROUP BY t.latency ORDER BY nodes DESC;"
)

IP_DISTRIBUTION_QUERY = (
    "SELECT t.nodes AS nodes_per_ip, count(t.nodes) AS number_of_ips FROM ("
    f"SELECT ip, count(ip) AS nodes FROM peer_info WHERE {_SEEN_PEER_FILTER} GROUP BY ip"
    ") AS t GROUP BY t.nodes ORDER BY number_of_ips DESC;"
)

NODE_PER_FORK_QUERY = (
    "SELECT fork_digest, count(fork_digest) AS cnt FROM eth_nodes "
    f"WHERE {_RECENT_ENR_FILTER} GROUP BY fork_digest ORDER BY cnt DESC;"
)

ATTNETS_DISTRIBUTION_QUERY = (
    "SELECT attnets_number AS attnets, count(attnets_number) AS cnt FROM eth_nodes "
    f"WHERE {_RECENT_ENR_FILTER} GROUP BY attnets_number ORDER BY cnt DESC;"
)

DEPRECATED_NODES_QUERY = "SELECT count(deprecated) FROM peer_info WHERE deprecated = 'true';"


def _fetch(pool: Pool, what: str, query: str, *args: Any) -> list[tuple]:
    try:
        return pool.fetch(query, *args)
    except Exception as exc:
        raise RuntimeError(f"unable to fetch {what}") from exc


def _pairs(rows: Iterable[tuple]) -> dict[str, Any]:
    return {("" if key is None else str(key)): count for key, count in rows}


def get_client_distribution(pool: Pool) -> dict[str, int]:
    """Active peers per client name."""
    log.debug("fetching client distribution metrics")
    rows = _fetch(pool, "client distribution", CLIENT_DISTRIBUTION_QUERY, LAST_ACTIVITY_VALID_RANGE)
    return _pairs(rows)


def get_version_distribution(pool: Pool) -> dict[str, int]:
    """Active peers per ``<client>_<version>``."""
    log.debug("fetching client version distribution metrics")
    rows = _fetch(pool, "client version distribution", VERSION_DISTRIBUTION_QUERY,
                  LAST_ACTIVITY_VALID_RANGE)
    return {f"{name or ''}_{version or ''}": count for name, version, count in rows}


def get_geo_distribution(pool: Pool) -> dict[str, int]:
    """Active peers per country code."""
    log.debug("fetching geographical distribution metrics")
    rows = _fetch(pool, "geographical distribution", GEO_DISTRIBUTION_QUERY,
                  LAST_ACTIVITY_VALID_RANGE)
    return _pairs(rows)


def get_os_distribution(pool: Pool) -> dict[str, int]:
    """Active peers per operating system."""
    return _pairs(pool.fetch(OS_DISTRIBUTION_QUERY, LAST_ACTIVITY_VALID_RANGE))


def get_arch_distribution(pool: Pool) -> dict[str, int]:
    """Active peers per architecture."""
    return _pairs(pool.fetch(ARCH_DISTRIBUTION_QUERY, LAST_ACTIVITY_VALID_RANGE))


def get_hosting_distribution(pool: Pool) -> dict[str, int]:
    """Active peers on mobile, proxied and hosted IPs."""
    summary: dict[str, int] = {}
    for key, query in (
        ("mobile_ips", MOBILE_HOSTS_QUERY),
        ("under_proxy", PROXY_HOSTS_QUERY),
        ("hosted_ips", HOSTED_HOSTS_QUERY),
    ):
        row = pool.fetchrow(query, LAST_ACTIVITY_VALID_RANGE)
        summary[key] = row[0] if row is not None else 0
    return summary


def get_rtt_distribution(pool: Pool) -> dict[str, int]:
    """Peers per latency range."""
    return _pairs(pool.fetch(RTT_DISTRIBUTION_QUERY, LAST_ACTIVITY_VALID_RANGE))


def get_ip_distribution(pool: Pool) -> dict[str, int]:
    """Number of IPs per count of nodes behind one IP."""
    return _pairs(pool.fetch(IP_DISTRIBUTION_QUERY, LAST_ACTIVITY_VALID_RANGE))


def get_node_per_fork_distribution(pool: Pool) -> dict[str, int]:
    """Nodes seen in the last day per fork digest."""
    log.debug("fetching node per fork distribution")
    return _pairs(_fetch(pool, "node per fork distribution", NODE_PER_FORK_QUERY))


def get_attnets_distribution(pool: Pool) -> dict[str, int]:
    """Nodes seen in the last day per number of subscribed attestation subnets."""
    log.debug("fetching attnets distribution")
    return _pairs(_fetch(pool, "attnet distribution", ATTNETS_DISTRIBUTION_QUERY))


def get_deprecated_nodes(pool: Pool) -> int:
    """Total number of deprecated peers."""
    log.debug("fetching deprecated node count")
    try:
        row = pool.fetchrow(DEPRECATED_NODES_QUERY)
    except Exception as exc:
        raise RuntimeError("unable to fetch deprecated node count") from exc
    return row[0] if row is not None else 0