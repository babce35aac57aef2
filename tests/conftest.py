"""Shared fixtures: an in-memory CouchDB server and clients wired to it."""

from collections.abc import Iterator
from typing import Any

import pytest

from cloudant_connector.config import CloudantConnectionConfig
from cloudant_connector.connector import CloudantConnector
from cloudant_connector.session import CloudantSession
from cloudant_connector.testing import FakeCouchServer
from cloudant_connector.transport import CloudantClient

TEST_HOST = "cloudant.test"

CONNECTION_PROPERTIES: dict[str, Any] = {
    "cloudant.protocol": "https",
    "cloudant.host": TEST_HOST,
    "cloudant.username": "admin",
    "cloudant.password": "secret",
    "cloudant.backoffFactor": 0,
}

AIRPORTS = [
    ("BOM", "Mumbai"),
    ("CDG", "Paris"),
    ("DEL", "Delhi"),
    ("FRA", "Frankfurt"),
    ("HKG", "Hong Kong"),
    ("LHR", "London"),
    ("MOW", "Moscow"),
    ("NRT", "Tokyo"),
    ("SVO", "Moscow"),
    ("SYD", "Sydney"),
]


def flight_document(number: int) -> dict[str, Any]:
    """Build a flight segment document; every tenth flight has no base cost."""
    origin = AIRPORTS[number % len(AIRPORTS)][0]
    destination = AIRPORTS[(number * 3 + 1) % len(AIRPORTS)][0]
    document: dict[str, Any] = {
        "_id": f"AA{number:03d}",
        "flightSegmentId": f"AA{number:03d}",
        "originPort": origin,
        "destPort": destination,
        "numFirstClassSeats": 10 + number % 5,
        "scheduledDepartureTime": f"2014-12-{1 + number % 28:02d}T10:00:00.000Z",
        "aircraftType": "747" if number % 2 else "777",
    }
    if number % 10:
        document["economyClassBaseCost"] = 200 + number * 5
    return document


@pytest.fixture
def server() -> FakeCouchServer:
    """Provide an empty in-memory CouchDB server."""
    return FakeCouchServer()


@pytest.fixture
def flights(server: FakeCouchServer) -> FakeCouchServer:
    """Provide a server whose ``n_flight`` database holds 100 flight documents."""
    server.create_database("n_flight")
    server.put_many("n_flight", (flight_document(n) for n in range(100)))
    return server


@pytest.fixture
def airports(server: FakeCouchServer) -> FakeCouchServer:
    """Provide a server whose ``n_airportcodemapping`` database holds airport documents."""
    server.create_database("n_airportcodemapping")
    server.put_many(
        "n_airportcodemapping",
        ({"_id": code, "airportName": name} for code, name in AIRPORTS),
    )
    return server


@pytest.fixture
def connection_config() -> CloudantConnectionConfig:
    """Provide a connection configuration pointing at the fake server."""
    return CloudantConnectionConfig.from_properties(CONNECTION_PROPERTIES)


@pytest.fixture
def client(
    server: FakeCouchServer, connection_config: CloudantConnectionConfig
) -> Iterator[CloudantClient]:
    """Provide a transport client routed to the fake server."""
    with CloudantClient(connection_config, transport=server.transport()) as client:
        yield client


@pytest.fixture
def connector(
    connection_config: CloudantConnectionConfig, client: CloudantClient
) -> CloudantConnector:
    """Provide a connector sharing the fake-server client."""
    return CloudantConnector(connection_config, client)


@pytest.fixture
def session(server: FakeCouchServer) -> Iterator[CloudantSession]:
    """Provide a session routed to the fake server."""
    with CloudantSession(CONNECTION_PROPERTIES, transport=server.transport()) as session:
        yield session


@pytest.fixture
def make_flight() -> Any:
    """Provide the flight document builder."""
    return flight_document


@pytest.fixture
def connection_properties() -> dict[str, Any]:
    """Provide raw connection properties pointing at the fake server."""
    return dict(CONNECTION_PROPERTIES)
