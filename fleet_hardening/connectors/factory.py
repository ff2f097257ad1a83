"""
Connector factory for creating transport-specific sessions.

Provides a unified interface for opening sessions to local, SSH and
WinRM hosts.
"""

import threading
from typing import Dict, Optional, Sequence, Type

from ..core.models import ConnectionType, HostDescriptor, OSFamily
from .base import Connector, Session
from .posix import LocalConnector, SSHConnector
from .windows import WinRMConnector


DEFAULT_CONNECTION: Dict[OSFamily, ConnectionType] = {
    OSFamily.LINUX: ConnectionType.SSH,
    OSFamily.WINDOWS: ConnectionType.WINRM,
    OSFamily.OTHER: ConnectionType.SSH,
}


class ConnectorFactory:
    """
    Factory for transport connectors.

    Holds one connector per connection type and dispatches ``connect``
    calls to the right one based on the host descriptor.
    """

    _connectors: Dict[ConnectionType, Type[Connector]] = {
        ConnectionType.LOCAL: LocalConnector,
        ConnectionType.SSH: SSHConnector,
        ConnectionType.WINRM: WinRMConnector,
    }

    def __init__(self, command_timeout: Optional[float] = None,
                 ssh_options: Sequence[str] = ()):
        """
        Initialize the factory.

        Args:
            command_timeout: Default per-command timeout for new sessions
            ssh_options: Extra ``-o`` style options for every ssh invocation
        """
        self.command_timeout = command_timeout
        self.ssh_options = list(ssh_options)
        self._instances: Dict[ConnectionType, Connector] = {}
        self._lock = threading.Lock()

    def get_connector(self, connection_type: ConnectionType) -> Connector:
        """
        Get the connector for a connection type.

        Raises:
            ValueError: If no connector is registered for the type
        """
        with self._lock:
            if connection_type not in self._instances:
                if connection_type not in self._connectors:
                    raise ValueError(f"Unsupported connection type: {connection_type}")
                connector_class = self._connectors[connection_type]
                if connector_class is SSHConnector:
                    connector = SSHConnector(self.command_timeout, self.ssh_options)
                else:
                    connector = connector_class(self.command_timeout)
                self._instances[connection_type] = connector
            return self._instances[connection_type]

    def connect(self, host: HostDescriptor) -> Session:
        """Open a session to ``host`` with the connector matching its transport."""
        return self.get_connector(host.connection.type).connect(host)

    @classmethod
    def get_supported_connections(cls) -> list:
        return list(cls._connectors.keys())

    @classmethod
    def register_connector(cls, connection_type: ConnectionType,
                           connector_class: Type[Connector]) -> None:
        """
        Register a new connector class.

        Args:
            connection_type: Connection type to register for
            connector_class: Connector implementation
        """
        cls._connectors[connection_type] = connector_class
