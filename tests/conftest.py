import pytest

from cloning.models import ConnectionProfile, Role
from fakes import FakeConnection, FakeServer


@pytest.fixture
def source_server():
    server = FakeServer()
    server.database("shop")
    return server


@pytest.fixture
def target_server(source_server):
    server = FakeServer(templates=source_server.database("shop").tables)
    return server


@pytest.fixture
def source_profile():
    return ConnectionProfile(host="source-db", user="reader", password="s3cret", port=3306,
                             database="shop", role=Role.SOURCE)


@pytest.fixture
def target_profile():
    return ConnectionProfile(host="target-db", user="writer", password="t0psecret", port=3307,
                             database="shop_copy", role=Role.TARGET)


@pytest.fixture
def connection_factory(source_server, target_server):
    servers = {"source-db": source_server, "target-db": target_server}

    def factory(profile):
        return FakeConnection(profile, servers[profile.host])

    return factory


@pytest.fixture
def events():
    return []
