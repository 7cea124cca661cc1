import pytest

from armiarma.db import stats
from armiarma.db.client import LAST_ACTIVITY_VALID_RANGE


class FakePool:
    def __init__(self, rows=(), rowfn=None, error=None):
        self.rows = list(rows)
        self.rowfn = rowfn
        self.error = error
        self.calls = []

    def fetch(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return self.rows

    def fetchrow(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return self.rowfn(query)


def test_client_distribution_keeps_row_order_and_range():
    pool = FakePool([("lighthouse", 10), ("prysm", 5)])
    result = stats.get_client_distribution(pool)
    assert result == {"lighthouse": 10, "prysm": 5}
    assert list(result) == ["lighthouse", "prysm"]
    assert pool.calls[0][1] == (LAST_ACTIVITY_VALID_RANGE,)
    assert LAST_ACTIVITY_VALID_RANGE == 180


def test_version_distribution_joins_name_and_version():
    pool = FakePool([("lighthouse", "v4.5.0", 3), ("teku", "v23.1", 1)])
    assert stats.get_version_distribution(pool) == {"lighthouse_v4.5.0": 3, "teku_v23.1": 1}


@pytest.mark.parametrize(
    "func",
    [
        stats.get_geo_distribution,
        stats.get_os_distribution,
        stats.get_arch_distribution,
        stats.get_rtt_distribution,
        stats.get_node_per_fork_distribution,
    ],
)
def test_pair_distributions(func):
    rows = [(" 0-100ms", 40), ("+1s", 2)]
    assert func(FakePool(rows)) == dict(rows)


def test_ip_distribution_uses_string_keys():
    pool = FakePool([(1, 300), (2, 20)])
    assert stats.get_ip_distribution(pool) == {"1": 300, "2": 20}


def test_attnets_distribution_has_no_args():
    pool = FakePool([(64, 12)])
    assert stats.get_attnets_distribution(pool) == {"64": 12}
    assert pool.calls[0][1] == ()


def test_deprecated_nodes():
    pool = FakePool(rowfn=lambda q: (7,))
    assert stats.get_deprecated_nodes(pool) == 7


def test_errors_are_wrapped():
    pool = FakePool(error=ConnectionError("down"))
    with pytest.raises(RuntimeError, match="client distribution") as info:
        stats.get_client_distribution(pool)
    assert isinstance(info.value.__cause__, ConnectionError)
    with pytest.raises(RuntimeError, match="deprecated node count"):
        stats.get_deprecated_nodes(pool)


def test_os_distribution_propagates_errors():
    with pytest.raises(ConnectionError):
        stats.get_os_distribution(FakePool(error=ConnectionError("down")))