"""Factory for creating CloudantConnector instances."""

from typing import Any, TypeAlias

import httpx

from cloudant_connector.config import CloudantConnectionConfig
from cloudant_connector.connector import CloudantConnector
from cloudant_connector.errors import ConnectorConfigError
from cloudant_connector.transport import CloudantClient

ComponentConfig: TypeAlias = dict[str, Any]


class CloudantConnectorFactory:
    """Factory for creating CloudantConnector instances.

    The factory is long-lived; each connector it creates owns its own
    connection pool. A transport can be injected so every created connector
    talks to the same test double.
    """

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        """Initialise the factory.

        Args:
            transport: Optional httpx transport handed to every created client

        """
        self._transport = transport

    def create(self, config: ComponentConfig) -> CloudantConnector:
        """Create a CloudantConnector instance from connection properties.

        Args:
            config: Connection properties, e.g. ``{"cloudant.host": ...}``

        Returns:
            Configured CloudantConnector instance

        Raises:
            ConnectorConfigError: If configuration is invalid

        """
        connection_config = CloudantConnectionConfig.from_properties(config)
        client = CloudantClient(connection_config, transport=self._transport)
        return CloudantConnector(connection_config, client)

    def can_create(self, config: ComponentConfig) -> bool:
        """Check if this factory can create a connector with the given config.

        Args:
            config: Connection properties to validate

        Returns:
            True if factory can create connector, False otherwise

        """
        try:
            CloudantConnectionConfig.from_properties(config)
        except ConnectorConfigError:
            return False

        return True

    def get_component_name(self) -> str:
        """Get the component type name for connector registration."""
        return CloudantConnector.get_name()
