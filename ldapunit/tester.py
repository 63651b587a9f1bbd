from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any

import ldap
import ldap.dn

from .config import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_RETRIES, DEFAULT_TIMEOUT
from .exceptions import (
    DirectoryAuthenticationError,
    DirectoryConnectionError,
    InvalidDNError,
)
from .logging import logger
from .types import CILDAPData

if TYPE_CHECKING:
    from ldap.ldapobject import LDAPObject


#: The search filter that matches any entry
MATCH_ANY_FILTER: str = "(objectClass=*)"

#: The ``python-ldap`` errors that mean we never reached the server
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (
    ldap.SERVER_DOWN,  # type: ignore[attr-defined]
    ldap.TIMEOUT,  # type: ignore[attr-defined]
    ldap.CONNECT_ERROR,  # type: ignore[attr-defined]
)


def _wait(seconds: float, interrupt: threading.Event | None) -> None:
    if interrupt is None:
        time.sleep(seconds)
    elif interrupt.wait(seconds):
        msg = "Interrupted while waiting to retry connection to LDAP directory server"
        raise DirectoryConnectionError(msg)


def close_connection(connection: LDAPObject) -> None:
    """
    Unbind ``connection``, logging rather than raising if that fails.
    """
    try:
        connection.unbind_s()
    except ldap.LDAPError as exc:  # type: ignore[attr-defined]
        logger.debug("unbind failed: %s", exc)


def open_connection(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    retries: int = DEFAULT_RETRIES,
    timeout: int = DEFAULT_TIMEOUT,
    interrupt: threading.Event | None = None,
) -> LDAPObject:
    """
    Open a connection to the directory server at ``host``:``port``.

    We make at most ``retries + 1`` attempts.  Each attempt gets ``timeout``
    milliseconds; when an attempt fails early we wait out the rest of its
    window before trying again, so a server that never comes up costs at
    least ``retries * timeout`` milliseconds before we give up.

    Only transport failures (:py:data:`TRANSPORT_ERRORS`) are retried.  If
    the server answers our anonymous bind with an error, it is up, so we
    return the connection and leave authentication to :py:func:`bind`.

    Args:
        host: the directory server host
        port: the directory server port

    Keyword Args:
        retries: how many times to retry after the first attempt fails
        timeout: the per-attempt timeout in milliseconds
        interrupt: if given, setting this event while we wait between attempts
            aborts the connection

    Raises:
        ValueError: one of our arguments was out of range
        DirectoryConnectionError: every attempt failed, or we were interrupted

    Returns:
        An open ``python-ldap`` connection.

    """
    if not host:
        msg = "host must not be empty"
        raise ValueError(msg)
    if not 1 <= port <= 65535:  # noqa: PLR2004
        msg = f"port must be between 1 and 65535, not {port}"
        raise ValueError(msg)
    if retries < 0:
        msg = f"retries must not be negative, not {retries}"
        raise ValueError(msg)
    if timeout <= 0:
        msg = f"timeout must be positive, not {timeout}"
        raise ValueError(msg)
    uri = f"ldap://{host}:{port}"
    seconds = timeout / 1000.0
    attempt = 0
    while True:
        attempt += 1
        started = time.monotonic()
        try:
            connection = ldap.initialize(uri)
            connection.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)  # type: ignore[attr-defined]
            connection.set_option(ldap.OPT_NETWORK_TIMEOUT, seconds)  # type: ignore[attr-defined]
            connection.set_option(ldap.OPT_TIMEOUT, seconds)  # type: ignore[attr-defined]
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            msg = f"Could not set up a connection to LDAP directory server at {uri}"
            raise DirectoryConnectionError(msg) from exc
        try:
            connection.simple_bind_s("", "")
        except TRANSPORT_ERRORS as exc:
            logger.debug("open_connection uri=%s attempt=%d failed: %s", uri, attempt, exc)
            if attempt > retries:
                msg = (
                    f"Could not connect to LDAP directory server at {uri} "
                    f"after {attempt} attempts"
                )
                raise DirectoryConnectionError(msg) from exc
            remaining = seconds - (time.monotonic() - started)
            if remaining > 0:
                _wait(remaining, interrupt)
            logger.info(
                "Retrying connection to LDAP directory server at %s (%d of %d)",
                uri,
                attempt,
                retries,
            )
            continue
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            # The server answered, so the session is open; authentication is
            # left to bind()
            logger.debug("open_connection uri=%s anonymous bind refused: %s", uri, exc)
        logger.debug("open_connection uri=%s attempt=%d connected", uri, attempt)
        return connection


def bind(connection: LDAPObject, bind_dn: str, password: str) -> None:
    """
    Authenticate ``connection`` with a simple bind.  A failed bind is never
    retried.

    Args:
        connection: an open ``python-ldap`` connection
        bind_dn: the DN to bind as
        password: the password for ``bind_dn``

    Raises:
        DirectoryAuthenticationError: the directory server rejected the bind

    """
    who = bind_dn or "anonymous"
    try:
        connection.simple_bind_s(bind_dn, password)
    except ldap.INVALID_CREDENTIALS as exc:  # type: ignore[attr-defined]
        msg = f"Could not bind to LDAP directory server as {who}: invalid credentials"
        raise DirectoryAuthenticationError(msg) from exc
    except ldap.LDAPError as exc:  # type: ignore[attr-defined]
        msg = f"Could not bind to LDAP directory server as {who}"
        raise DirectoryAuthenticationError(msg) from exc


class DirectoryTester:
    """
    Verify and assert facts about the entries in an LDAP directory.

    Each ``verify_*`` method makes exactly one search against the directory
    and returns a boolean; the matching ``assert_*`` method raises
    :py:exc:`AssertionError` when that boolean is ``False``.  A malformed DN
    raises :py:exc:`ldapunit.exceptions.InvalidDNError` rather than
    returning ``False``.

    Use :py:meth:`connect` to build one, and close it when you're done,
    either by calling :py:meth:`disconnect` or by using it as a context
    manager::

        with DirectoryTester.connect(port=10389, bind_dn="uid=admin,ou=system",
                                     password="secret") as tester:
            tester.assert_dn_exists("dc=example,dc=com")

    Args:
        connection: an open ``python-ldap`` connection.  The tester takes
            ownership of it.
    """

    def __init__(self, connection: LDAPObject) -> None:
        self.connection: LDAPObject | None = connection

    @classmethod
    def connect(
        cls,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        bind_dn: str | None = None,
        password: str | None = None,
        retries: int = DEFAULT_RETRIES,
        timeout: int = DEFAULT_TIMEOUT,
        interrupt: threading.Event | None = None,
    ) -> DirectoryTester:
        """
        Connect to the directory server at ``host``:``port`` with
        :py:func:`open_connection`, then bind as ``bind_dn``, or anonymously
        if it was not given.

        Keyword Args:
            host: the directory server host
            port: the directory server port
            bind_dn: the DN to bind as
            password: the password for ``bind_dn``
            retries: how many times to retry a failed connection attempt
            timeout: the per-attempt timeout in milliseconds
            interrupt: an event that aborts the retry wait when set

        Raises:
            DirectoryConnectionError: we could not connect
            DirectoryAuthenticationError: the bind was rejected

        Returns:
            A connected :py:class:`DirectoryTester`.

        """
        connection = open_connection(
            host=host, port=port, retries=retries, timeout=timeout, interrupt=interrupt
        )
        try:
            bind(connection, bind_dn or "", password or "")
        except DirectoryAuthenticationError:
            close_connection(connection)
            raise
        return cls(connection)

    @property
    def connected(self) -> bool:
        return self.connection is not None

    def disconnect(self) -> None:
        """
        Close our connection.  Calling this more than once does nothing.
        """
        if self.connection is None:
            return
        connection, self.connection = self.connection, None
        close_connection(connection)

    close = disconnect

    def __enter__(self) -> DirectoryTester:
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()

    # Lookups

    def get_entry(self, dn: str) -> CILDAPData | None:
        """
        Fetch all the attributes of the entry at ``dn``.

        Args:
            dn: the distinguished name of the entry

        Raises:
            InvalidDNError: ``dn`` is malformed
            DirectoryConnectionError: we are disconnected, or the search failed
                for a reason other than the entry not existing

        Returns:
            The entry's attributes with their values decoded, or ``None`` if
            there is no such entry.

        """
        if self.connection is None:
            msg = "Not connected to LDAP directory server"
            raise DirectoryConnectionError(msg)
        if not ldap.dn.is_dn(dn):  # type: ignore[attr-defined]
            raise InvalidDNError(dn)
        try:
            results = self.connection.search_s(dn, ldap.SCOPE_BASE, MATCH_ANY_FILTER)  # type: ignore[attr-defined]
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            return None
        except ldap.INVALID_DN_SYNTAX as exc:  # type: ignore[attr-defined]
            raise InvalidDNError(dn) from exc
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            msg = "Error communicating with LDAP directory server"
            raise DirectoryConnectionError(msg) from exc
        for result_dn, attributes in results:
            # Skip search continuation references
            if result_dn is None:
                continue
            return CILDAPData(
                {
                    name: [value.decode("utf-8", errors="replace") for value in values]
                    for name, values in attributes.items()
                }
            )
        return None

    # Verifiers

    def verify_dn_exists(self, dn: str) -> bool:
        """
        Return ``True`` if there is an entry at ``dn``.
        """
        return self.get_entry(dn) is not None

    def verify_dn_is_a(self, dn: str, object_class: str) -> bool:
        """
        Return ``True`` if the entry at ``dn`` exists and ``object_class`` is
        one of its object classes.  Object class names are compared
        case-insensitively.
        """
        entry = self.get_entry(dn)
        if entry is None:
            return False
        object_classes = {value.lower() for value in entry.get("objectClass", [])}
        return object_class.lower() in object_classes

    def verify_dn_has_attribute(self, dn: str, attribute_name: str) -> bool:
        """
        Return ``True`` if the entry at ``dn`` exists and has at least one
        value for ``attribute_name``.
        """
        entry = self.get_entry(dn)
        return entry is not None and attribute_name in entry

    def verify_dn_has_attribute_value(
        self, dn: str, attribute_name: str, *values: str
    ) -> bool:
        """
        Return ``True`` if the entry at ``dn`` exists and the values of
        ``attribute_name`` are exactly ``values``, in any order.  Having extra
        values, or missing some, is a mismatch.

        Args:
            dn: the distinguished name of the entry
            attribute_name: the attribute to check
            *values: the values we expect

        """
        entry = self.get_entry(dn)
        if entry is None or attribute_name not in entry:
            return False
        return set(entry[attribute_name]) == set(values)

    # Asserts

    def assert_dn_exists(self, dn: str) -> None:
        if not self.verify_dn_exists(dn):
            msg = f"Entry for DN: {dn} does not exist"
            raise AssertionError(msg)

    def assert_dn_is_a(self, dn: str, object_class: str) -> None:
        if not self.verify_dn_is_a(dn, object_class):
            msg = f"Entry for DN: {dn} is not of type: {object_class}"
            raise AssertionError(msg)

    def assert_dn_has_attribute(self, dn: str, attribute_name: str) -> None:
        if not self.verify_dn_has_attribute(dn, attribute_name):
            msg = f"Entry for DN: {dn} does not have attribute: {attribute_name}"
            raise AssertionError(msg)

    def assert_dn_has_attribute_value(
        self, dn: str, attribute_name: str, *values: str
    ) -> None:
        if not self.verify_dn_has_attribute_value(dn, attribute_name, *values):
            expected = ",".join(values)
            msg = (
                f"Attribute named: {attribute_name} for entry for DN: {dn} "
                f"does not match: [{expected}]"
            )
            raise AssertionError(msg)
