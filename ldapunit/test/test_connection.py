import socket
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import ldap
from ldaptor.protocols.ldap import ldaperrors

from ldapunit.config import DEFAULT_AUTH_DN, DEFAULT_AUTH_PASSWORD, DirectoryServerConfiguration
from ldapunit.exceptions import (
    DirectoryAuthenticationError,
    DirectoryConnectionError,
    DirectoryTesterError,
)
from ldapunit.server import LISTEN_INTERFACE, DirectoryServerProtocol, start_server, stop_server
from ldapunit.tester import DirectoryTester, bind, close_connection, open_connection

HERE = Path(__file__).parent


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LISTEN_INTERFACE, 0))
        return sock.getsockname()[1]


class Test_open_connection_arguments(unittest.TestCase):
    def test_empty_host_raises_ValueError(self):
        with self.assertRaises(ValueError):
            open_connection(host="", port=10389)

    def test_bad_port_raises_ValueError(self):
        with self.assertRaises(ValueError):
            open_connection(port=0)
        with self.assertRaises(ValueError):
            open_connection(port=65536)

    def test_negative_retries_raises_ValueError(self):
        with self.assertRaises(ValueError):
            open_connection(port=10389, retries=-1)

    def test_non_positive_timeout_raises_ValueError(self):
        with self.assertRaises(ValueError):
            open_connection(port=10389, timeout=0)


class Test_open_connection_retries(unittest.TestCase):
    def test_gives_up_after_retries(self):
        port = free_port()
        with patch("ldapunit.tester.ldap.initialize", wraps=ldap.initialize) as initialize:
            started = time.monotonic()
            with self.assertRaises(DirectoryConnectionError) as cm:
                open_connection(host=LISTEN_INTERFACE, port=port, retries=2, timeout=200)
            elapsed = time.monotonic() - started
        self.assertEqual(initialize.call_count, 3)
        self.assertGreaterEqual(elapsed, 0.4)
        self.assertIn("after 3 attempts", str(cm.exception))
        self.assertIsInstance(cm.exception, DirectoryTesterError)

    def test_no_retries_makes_one_attempt(self):
        port = free_port()
        with patch("ldapunit.tester.ldap.initialize", wraps=ldap.initialize) as initialize:
            with self.assertRaises(DirectoryConnectionError):
                open_connection(host=LISTEN_INTERFACE, port=port, retries=0, timeout=200)
        self.assertEqual(initialize.call_count, 1)

    def test_interrupt_aborts_the_wait(self):
        port = free_port()
        interrupt = threading.Event()
        interrupt.set()
        started = time.monotonic()
        with self.assertRaises(DirectoryConnectionError) as cm:
            open_connection(
                host=LISTEN_INTERFACE,
                port=port,
                retries=5,
                timeout=2000,
                interrupt=interrupt,
            )
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertIn("Interrupted", str(cm.exception))

    def test_connects_to_a_server_that_starts_late(self):
        port = free_port()
        config = DirectoryServerConfiguration(port=port)
        servers = []

        def launch():
            servers.append(start_server(config))

        timer = threading.Timer(0.3, launch)
        timer.start()
        try:
            tester = DirectoryTester.connect(
                host=LISTEN_INTERFACE, port=port, retries=10, timeout=200
            )
            with tester:
                self.assertTrue(tester.verify_dn_exists("dc=example,dc=com"))
        finally:
            timer.join()
            for server in servers:
                stop_server(server)


class TestDirectoryTester_connect(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.server = start_server(
            DirectoryServerConfiguration(port=0, ldif_files="initial.ldif"),
            relative_to=HERE,
        )
        cls.addClassCleanup(stop_server, cls.server)

    def test_admin_bind(self):
        with DirectoryTester.connect(
            host=self.server.host,
            port=self.server.port,
            bind_dn=DEFAULT_AUTH_DN,
            password="secret",
        ) as tester:
            self.assertTrue(tester.connected)

    def test_admin_dn_is_compared_as_a_dn(self):
        with DirectoryTester.connect(
            host=self.server.host,
            port=self.server.port,
            bind_dn="UID=admin,OU=system",
            password="secret",
        ) as tester:
            self.assertTrue(tester.connected)

    def test_bad_admin_password_raises_DirectoryAuthenticationError(self):
        with self.assertRaises(DirectoryAuthenticationError):
            DirectoryTester.connect(
                host=self.server.host,
                port=self.server.port,
                bind_dn=DEFAULT_AUTH_DN,
                password="wrong",
            )

    def test_seeded_user_can_bind(self):
        with DirectoryTester.connect(
            host=self.server.host,
            port=self.server.port,
            bind_dn="uid=jsmith,ou=People,dc=example,dc=com",
            password="changeit",
        ) as tester:
            self.assertTrue(tester.verify_dn_exists("uid=jsmith,ou=People,dc=example,dc=com"))

    def test_seeded_user_with_wrong_password(self):
        with self.assertRaises(DirectoryAuthenticationError):
            DirectoryTester.connect(
                host=self.server.host,
                port=self.server.port,
                bind_dn="uid=jsmith,ou=People,dc=example,dc=com",
                password="wrong",
            )

    def test_unknown_user_raises_DirectoryAuthenticationError(self):
        with self.assertRaises(DirectoryAuthenticationError):
            DirectoryTester.connect(
                host=self.server.host,
                port=self.server.port,
                bind_dn="uid=nobody,ou=People,dc=example,dc=com",
                password="secret",
            )


class NoAnonymousBindProtocol(DirectoryServerProtocol):
    def handle_LDAPBindRequest(self, request, controls, reply):  # noqa: N802
        if not request.dn:
            msg = "Anonymous binds are disabled"
            raise ldaperrors.LDAPInappropriateAuthentication(msg)
        return super().handle_LDAPBindRequest(request, controls, reply)


class TestDirectoryTester_connect_without_anonymous_binds(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.server = start_server(DirectoryServerConfiguration(port=0))
        cls.addClassCleanup(stop_server, cls.server)
        cls.server.factory.protocol = NoAnonymousBindProtocol

    def test_open_connection_does_not_retry_a_refused_bind(self):
        with patch("ldapunit.tester.ldap.initialize", wraps=ldap.initialize) as initialize:
            connection = open_connection(
                host=self.server.host, port=self.server.port, retries=5, timeout=1000
            )
        self.addCleanup(close_connection, connection)
        self.assertEqual(initialize.call_count, 1)
        bind(connection, DEFAULT_AUTH_DN, DEFAULT_AUTH_PASSWORD)

    def test_admin_bind(self):
        with DirectoryTester.connect(
            host=self.server.host,
            port=self.server.port,
            bind_dn=DEFAULT_AUTH_DN,
            password=DEFAULT_AUTH_PASSWORD,
            retries=5,
            timeout=1000,
        ) as tester:
            self.assertTrue(tester.verify_dn_exists("dc=example,dc=com"))

    def test_anonymous_connect_fails_at_once(self):
        started = time.monotonic()
        with self.assertRaises(DirectoryAuthenticationError) as cm:
            DirectoryTester.connect(
                host=self.server.host, port=self.server.port, retries=5, timeout=1000
            )
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertIn("anonymous", str(cm.exception))
