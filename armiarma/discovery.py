"""Peer discovery: feeds newly found hosts to the database and the IP locator."""

from __future__ import annotations

import json
import logging
import queue
import random
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Hashable, Optional, Protocol, Union

from armiarma.models import HostInfo, is_ip_public

log = logging.getLogger(__name__)

MODULE_NAME = "DISC"
_POLL_INTERVAL = 0.1


class PeerDiscovery(Protocol):
    """A source of discovered hosts.

    ``start`` returns the queue the hosts are delivered on; putting ``None``
    on it signals that no more hosts will come.
    """

    def start(self) -> "queue.Queue[Optional[HostInfo]]": ...

    def stop(self) -> None: ...


@dataclass
class BootNodeList:
    """The JSON document that lists bootnodes under ``bootNodes``."""

    boot_nodes: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, text: str) -> "BootNodeList":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("bootnodes document must be a JSON object")
        nodes = data.get("bootNodes") or []
        if not isinstance(nodes, list) or not all(isinstance(n, str) for n in nodes):
            raise ValueError("bootNodes must be a list of strings")
        return cls(boot_nodes=list(nodes))

    def to_json(self) -> str:
        return json.dumps({"bootNodes": self.boot_nodes})


def read_bootnode_file(path: Union[str, Path]) -> list[str]:
    """Read the bootnode strings stored in a JSON file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError("Bootnodes file does not exist")
    try:
        text = path.read_text()
    except OSError as exc:
        raise OSError(f"Could not read BootNodes file: {path}") from exc
    try:
        return BootNodeList.from_json(text).boot_nodes
    except (ValueError, json.JSONDecodeError) as exc:
        raise ValueError(f"Could not Unmarshal BootNodes file: {path}") from exc


class Discovery:
    """Runs a discovery service and handles every host it reports.

    ``db`` provides ``persist_to_db(item)``; ``ip_locator`` provides
    ``locate_ip(ip)``.
    """

    def __init__(self, disc_service: PeerDiscovery, db: Any, ip_locator: Any) -> None:
        self.disc_service = disc_service
        self.db = db
        self.ip_locator = ip_locator
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the discovery service and handle its hosts in a background thread."""
        notifications = self.disc_service.start()
        self._done.clear()
        self._thread = threading.Thread(
            target=self._run, args=(notifications,), name="discovery", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self.disc_service.stop()
        self._done.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self, notifications: "queue.Queue[Optional[HostInfo]]") -> None:
        while not self._done.is_set():
            try:
                host_info = notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if host_info is None:
                break
            try:
                self._handle_peer(host_info)
            except Exception:
                log.exception("unable to handle discovered peer")
        log.info("shutdown detected in discovery service, shutting down")

    def _handle_peer(self, host_info: HostInfo) -> None:
        log.debug(
            "discovered new peer %s ip=%s attrs=%s",
            host_info.id, host_info.ip, list(host_info.attr),
        )
        self.db.persist_to_db(host_info)
        if host_info.ip and is_ip_public(host_info.ip):
            self.ip_locator.locate_ip(host_info.ip)
        else:
            log.warning("new peer %s had a non-public IP %s", host_info.id, host_info.ip)


class DiscoveredPeers:
    """Ordered, de-duplicated set of known peers with a read cursor.

    Peers are any objects with an ``id`` attribute; two peers with the same
    id (compared as strings) are the same peer.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._lock = threading.Lock()
        self._known: set[Hashable] = set()
        self._peers: list[Any] = []
        self._read = 0
        self._bootstrap = 0
        self._rng = rng or random.Random()

    def add_peer(self, peer: Any) -> bool:
        """Add a peer; return False if it was already known."""
        key = str(peer.id)
        with self._lock:
            if key in self._known:
                log.debug("peer %s already in peer list", key)
                return False
            self._known.add(key)
            self._peers.append(peer)
            return True

    def has_next(self) -> bool:
        """True if a peer was added that next_peer has not returned yet."""
        with self._lock:
            return len(self._peers) > self._read

    def next_peer(self) -> Optional[Any]:
        """The oldest peer not yet read, or None when every peer was read."""
        with self._lock:
            if self._read >= len(self._peers):
                return None
            peer = self._peers[self._read]
            self._read += 1
            return peer

    def bootstrap_peer(self) -> Optional[Any]:
        """Peers in turn, starting over after the last; None when empty."""
        with self._lock:
            if not self._peers:
                return None
            if self._bootstrap >= len(self._peers):
                self._bootstrap = 0
            peer = self._peers[self._bootstrap]
            self._bootstrap += 1
            return peer

    def random_peer(self) -> Optional[Any]:
        """Any known peer chosen at random; None when empty."""
        with self._lock:
            if not self._peers:
                return None
            return self._peers[self._rng.randrange(len(self._peers))]

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)