"""
pytest support for ldapunit.

Mark a test, or a whole class or module, with ``directory_server`` to say how
the embedded directory server should be configured, and ask for the
``directory_server`` or ``directory_tester`` fixtures::

    @pytest.mark.directory_server(ldif_files="people.ldif")
    def test_people_exist(directory_tester):
        directory_tester.assert_dn_exists("ou=People,dc=example,dc=com")

The marker takes either a :py:class:`ldapunit.config.DirectoryServerConfiguration`
or its fields as keyword arguments.  The marker closest to the test wins, so
a marker on a test method overrides one on its class.  Unmarked tests get the
default configuration.  Relative LDIF and schema paths are looked for first
in the folder holding the test module.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from .config import DirectoryServerConfiguration, find_configuration
from .server import DirectoryServer, start_server
from .tester import DirectoryTester

MARKER = "directory_server"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        f"{MARKER}(config=None, **fields): configure the embedded LDAP directory "
        "server started by the directory_server fixture",
    )


def configuration_for(request: pytest.FixtureRequest) -> DirectoryServerConfiguration:
    """
    Work out the configuration for the test behind ``request``: the closest
    ``directory_server`` marker, then a
    :py:func:`ldapunit.config.directory_server_configuration` decorator on
    the test function or class, then the default configuration.

    Raises:
        TypeError: the marker was given something other than a single
            configuration or keyword arguments

    """
    marker = request.node.get_closest_marker(MARKER)
    if marker is not None:
        if not marker.args:
            return DirectoryServerConfiguration(**marker.kwargs)
        if (
            len(marker.args) == 1
            and not marker.kwargs
            and isinstance(marker.args[0], DirectoryServerConfiguration)
        ):
            return marker.args[0]
        msg = (
            f"@pytest.mark.{MARKER} takes a single DirectoryServerConfiguration "
            "or its fields as keyword arguments"
        )
        raise TypeError(msg)
    function = getattr(request, "function", None)
    return find_configuration(request.cls, function) or DirectoryServerConfiguration()


@pytest.fixture
def directory_server(request: pytest.FixtureRequest) -> Iterator[DirectoryServer]:
    """
    A running embedded directory server, stopped after the test.
    """
    server = start_server(configuration_for(request), relative_to=request.path.parent)
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def directory_tester(directory_server: DirectoryServer) -> Iterator[DirectoryTester]:
    """
    A :py:class:`DirectoryTester` bound to :py:func:`directory_server` as the
    configured administrator, disconnected after the test.
    """
    config = directory_server.config
    with DirectoryTester.connect(
        host=directory_server.host,
        port=directory_server.port,
        bind_dn=config.auth_dn,
        password=config.auth_password,
    ) as tester:
        yield tester
