"""Tests for the HTTP transport client."""

import json
from unittest.mock import patch

import httpx
import pytest

from cloudant_connector.config import CloudantConnectionConfig
from cloudant_connector.errors import CloudantConnectionError, CloudantRequestError
from cloudant_connector.testing import FakeCouchServer
from cloudant_connector.transport import CloudantClient


class TestDatabaseOperations:
    """Test database-level calls."""

    def test_database_exists(self, server: FakeCouchServer, client: CloudantClient) -> None:
        """Test HEAD answers for present and absent databases."""
        server.create_database("n_flight")

        assert client.database_exists("n_flight") is True
        assert client.database_exists("missing") is False

    def test_create_database_tolerates_existing(
        self, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test creating an existing database reports False instead of failing."""
        assert client.create_database("n_flight") is True
        assert client.create_database("n_flight") is False
        assert server.has_database("n_flight")

    def test_delete_database(self, server: FakeCouchServer, client: CloudantClient) -> None:
        """Test deleting present and absent databases."""
        server.create_database("n_flight")

        assert client.delete_database("n_flight") is True
        assert client.delete_database("n_flight") is False

    def test_database_info(self, flights: FakeCouchServer, client: CloudantClient) -> None:
        """Test database info is parsed into a model."""
        flights.delete("n_flight", "AA000")

        info = client.database_info("n_flight")

        assert info.db_name == "n_flight"
        assert info.doc_count == 99
        assert info.doc_del_count == 1

    def test_missing_database_raises_request_error(self, client: CloudantClient) -> None:
        """Test a 404 carries the CouchDB error and reason."""
        with pytest.raises(CloudantRequestError) as exc_info:
            client.database_info("missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error == "not_found"
        assert exc_info.value.reason == "Database does not exist."


class TestDocumentOperations:
    """Test document-level calls."""

    def test_get_document(self, flights: FakeCouchServer, client: CloudantClient) -> None:
        """Test an existing document is returned with its revision."""
        document = client.get_document("n_flight", "AA001")

        assert document is not None
        assert document["flightSegmentId"] == "AA001"
        assert document["_rev"].startswith("1-")

    def test_get_missing_document_returns_none(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a missing document yields None."""
        assert client.get_document("n_flight", "ZZ999") is None

    def test_delete_document_leaves_tombstone(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test deleting a document makes it unreadable."""
        current = client.get_document("n_flight", "AA002")
        assert current is not None

        rev = client.delete_document("n_flight", "AA002", current["_rev"])

        assert rev.startswith("2-")
        assert client.get_document("n_flight", "AA002") is None

    def test_design_document_id_is_not_escaped(
        self, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test the _design/ prefix stays a path segment."""
        server.create_database("n_flight")
        server.add_view("n_flight", "view", "by_origin", lambda doc: [])

        document = client.get_document("n_flight", "_design/view")

        assert document is not None
        assert "by_origin" in document["views"]
        assert server.requests[-1].url.raw_path == b"/n_flight/_design/view"

    def test_document_id_is_escaped(
        self, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test identifiers with reserved characters are percent-encoded."""
        server.create_database("n_flight")
        server.put("n_flight", {"_id": "a/b c"})

        assert client.get_document("n_flight", "a/b c") is not None
        assert server.requests[-1].url.raw_path == b"/n_flight/a%2Fb%20c"

    def test_bulk_docs_reports_per_document_outcomes(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a conflict is reported for one document without failing the call."""
        results = client.bulk_docs(
            "n_flight", [{"_id": "AA001", "stale": True}, {"_id": "NEW1"}]
        )

        assert results[0].error == "conflict"
        assert not results[0].succeeded
        assert results[1].succeeded
        assert results[1].id == "NEW1"


class TestRequests:
    """Test request rendering, authentication and retries."""

    def test_basic_auth_header_is_sent(
        self, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test credentials are sent as HTTP basic auth."""
        client.database_exists("n_flight")

        assert server.requests[-1].headers["Authorization"].startswith("Basic ")

    def test_no_auth_header_without_credentials(self, server: FakeCouchServer) -> None:
        """Test anonymous access sends no Authorization header."""
        config = CloudantConnectionConfig(host="localhost:5984", protocol="http")
        with CloudantClient(config, transport=server.transport()) as client:
            client.database_exists("n_flight")

        assert "Authorization" not in server.requests[-1].headers
        assert str(server.requests[-1].url).startswith("http://localhost:5984/")

    def test_boolean_params_are_rendered_lowercase(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test booleans become true/false and None values are dropped."""
        client.all_docs("n_flight", {"include_docs": True, "limit": 1, "skip": None})

        params = flights.requests[-1].url.params
        assert params["include_docs"] == "true"
        assert params["limit"] == "1"
        assert "skip" not in params

    def test_find_posts_json_body(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test Mango queries are POSTed as JSON."""
        payload = client.find("n_flight", {"selector": {"originPort": "BOM"}, "limit": 3})

        request = flights.requests[-1]
        assert request.method == "POST"
        assert json.loads(request.content)["selector"] == {"originPort": "BOM"}
        assert len(payload["docs"]) == 3

    def test_changes_with_body_uses_post(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a filtered changes request is POSTed."""
        client.changes(
            "n_flight",
            {"filter": "_selector"},
            {"selector": {"originPort": "BOM"}},
        )

        assert flights.requests[-1].method == "POST"

    @patch("cloudant_connector.transport.time.sleep")
    def test_transient_status_is_retried_with_backoff(
        self, mock_sleep, flights: FakeCouchServer, connection_config: CloudantConnectionConfig
    ) -> None:
        """Test 503 responses are retried with exponential delays."""
        config = connection_config.model_copy(update={"backoff_factor": 0.5})
        flights.inject(503, times=2)

        with CloudantClient(config, transport=flights.transport()) as client:
            info = client.database_info("n_flight")

        assert info.doc_count == 100
        assert len(flights.requests) == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [0.5, 1.0]

    @patch("cloudant_connector.transport.time.sleep")
    def test_exhausted_status_retries_raise_request_error(
        self, mock_sleep, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a persistent 503 surfaces as a request error after all retries."""
        flights.inject(503, times=10)

        with pytest.raises(CloudantRequestError) as exc_info:
            client.database_info("n_flight")

        assert exc_info.value.status_code == 503
        assert len(flights.requests) == 4  # 1 attempt + 3 retries

    @patch("cloudant_connector.transport.time.sleep")
    def test_network_errors_are_retried(
        self, mock_sleep, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test transport exceptions are retried before succeeding."""
        flights.inject(httpx.ConnectError("connection refused"), times=1)

        assert client.database_exists("n_flight") is True
        assert mock_sleep.call_count == 1

    @patch("cloudant_connector.transport.time.sleep")
    def test_exhausted_network_retries_raise_connection_error(
        self, mock_sleep, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a server that never answers raises CloudantConnectionError."""
        server.inject(httpx.ConnectError("connection refused"), times=10)

        with pytest.raises(CloudantConnectionError, match="after 4 attempt"):
            client.database_exists("n_flight")

    @patch("cloudant_connector.transport.time.sleep")
    def test_bulk_write_is_not_repeated_after_read_timeout(
        self, mock_sleep, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a bulk write that may have been applied is not sent twice."""
        server.create_database("n_flight2")
        server.inject(httpx.ReadTimeout("timed out"), times=10, path="_bulk_docs")

        with pytest.raises(CloudantConnectionError, match="after 1 attempt"):
            client.bulk_docs("n_flight2", [{"flightSegmentId": "AA1"}])

        assert len(server.requests) == 1
        mock_sleep.assert_not_called()

    @patch("cloudant_connector.transport.time.sleep")
    def test_bulk_write_is_retried_when_connection_failed(
        self, mock_sleep, server: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a bulk write that never reached the server is retried."""
        server.create_database("n_flight2")
        server.inject(httpx.ConnectError("connection refused"), times=1, path="_bulk_docs")

        results = client.bulk_docs("n_flight2", [{"flightSegmentId": "AA1"}])

        assert [r.succeeded for r in results] == [True]
        assert len(server.documents("n_flight2")) == 1

    @pytest.mark.parametrize(("status", "requests"), [(500, 1), (503, 4)])
    @patch("cloudant_connector.transport.time.sleep")
    def test_bulk_write_retries_only_unprocessed_status(
        self, mock_sleep, server: FakeCouchServer, client: CloudantClient, status, requests
    ) -> None:
        """Test only answers proving the batch was not applied are retried."""
        server.create_database("n_flight2")
        server.inject(status, times=10, path="_bulk_docs")

        with pytest.raises(CloudantRequestError):
            client.bulk_docs("n_flight2", [{"flightSegmentId": "AA1"}])

        assert len(server.requests) == requests

    def test_client_errors_are_not_retried(
        self, flights: FakeCouchServer, client: CloudantClient
    ) -> None:
        """Test a 400 fails immediately."""
        with pytest.raises(CloudantRequestError) as exc_info:
            client.find("n_flight", {"selector": "not an object"})

        assert exc_info.value.status_code == 400
        assert len(flights.requests) == 1
