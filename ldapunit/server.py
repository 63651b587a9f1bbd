from __future__ import annotations

import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import ldap
from ldaptor import interfaces
from ldaptor.inmemory import ReadOnlyInMemoryLDAPEntry
from ldaptor.protocols import pureldap
from ldaptor.protocols.ldap import distinguishedname, ldaperrors
from ldaptor.protocols.ldap.ldapserver import LDAPServer
from twisted.internet import defer, protocol, reactor, threads
from twisted.internet.error import CannotListenError
from twisted.python import components, log

from .changes import ChangeRecord, apply_change_records, read_change_records
from .config import DEFAULT_TIMEOUT, DirectoryServerConfiguration
from .exceptions import (
    DirectoryServerError,
    DirectoryTesterError,
    ObjectClassViolationError,
    UndefinedAttributeTypeError,
)
from .logging import logger
from .resources import resolve_resource
from .schema import DirectorySchema, complete_rdn
from .tester import bind, close_connection, open_connection

#: The address the embedded directory server listens on
LISTEN_INTERFACE: str = "127.0.0.1"

_reactor_lock = threading.Lock()
_reactor_thread: threading.Thread | None = None


def _text(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _encode_attributes(attributes: dict[str, list[str]]) -> dict[bytes, list[bytes]]:
    """
    Convert ``attributes`` to the bytes keys and values that ldaptor's
    request handlers store, so that later modifications line up with them.
    """
    return {
        name.encode("utf-8"): [value.encode("utf-8") for value in values]
        for name, values in attributes.items()
    }


def _decode_attributes(
    pairs: Iterable[tuple[bytes | str, Iterable[bytes | str]]],
) -> dict[str, list[str]]:
    attributes: dict[str, list[str]] = {}
    for name, values in pairs:
        attributes.setdefault(_text(name), []).extend(_text(value) for value in values)
    return attributes


def _exists(root: Any, dn: distinguishedname.DistinguishedName) -> defer.Deferred:
    d = root.lookup(dn)
    d.addCallback(lambda _entry: True)

    def _no_entry(failure):
        failure.trap(ldaperrors.LDAPNoSuchObject)
        return False

    d.addErrback(_no_entry)
    return d


def start_reactor() -> None:
    """
    Run the Twisted reactor in a daemon thread, unless we already are.  The
    reactor cannot be restarted, so this thread lives for the rest of the
    process and is shared by every :py:class:`DirectoryServer`.  Twisted's
    log events are routed to the ``ldapunit.twisted`` logger.
    """
    global _reactor_thread  # noqa: PLW0603
    with _reactor_lock:
        if _reactor_thread is not None:
            return
        log.PythonLoggingObserver(loggerName=f"{logger.name}.twisted").start()
        _reactor_thread = threading.Thread(
            target=reactor.run,
            kwargs={"installSignalHandlers": False},
            name="ldapunit-reactor",
            daemon=True,
        )
        _reactor_thread.start()
        logger.debug("start_reactor thread=%s", _reactor_thread.name)


class DirectoryServerProtocol(LDAPServer):
    """
    An :py:class:`ldaptor.protocols.ldap.ldapserver.LDAPServer` that

    * accepts the configured administrator credentials even though there is no
      entry for the administrator in the tree,
    * checks added and renamed entries against our
      :py:class:`ldapunit.schema.DirectorySchema`, and
    * keeps track of its connections so :py:meth:`DirectoryServer.stop` can
      drop them.
    """

    def connectionMade(self):
        super().connectionMade()
        self.factory.connections.add(self)

    def connectionLost(self, reason=protocol.connectionDone):
        super().connectionLost(reason)
        self.factory.connections.discard(self)

    def handle_LDAPBindRequest(self, request, controls, reply):  # noqa: N802
        if request.dn and (
            distinguishedname.DistinguishedName(request.dn) == self.factory.auth_dn
        ):
            if request.version != 3:  # noqa: PLR2004
                msg = f"Version {request.version} not supported"
                raise ldaperrors.LDAPProtocolError(msg)
            self.checkControls(controls)
            if _text(request.auth) != self.factory.auth_password:
                raise ldaperrors.LDAPInvalidCredentials()
            self.boundUser = None
            return pureldap.LDAPBindResponse(
                resultCode=ldaperrors.Success.resultCode,
                matchedDN=request.dn,
            )
        return super().handle_LDAPBindRequest(request, controls, reply)

    def prepare_entry(self, dn: str, attributes: dict[str, list[str]]) -> dict[bytes, list[bytes]]:
        """
        Add the RDN values to ``attributes``, check the entry against our
        schema, and return the attributes in the form we store them.

        Raises:
            ldaptor.protocols.ldap.ldaperrors.LDAPObjectClassViolation: the
                entry breaks an object class rule
            ldaptor.protocols.ldap.ldaperrors.LDAPUndefinedAttributeType: the
                entry has an attribute the schema does not define

        """
        complete_rdn(dn, attributes)
        try:
            self.factory.schema.validate(dn, attributes)
        except ObjectClassViolationError as exc:
            raise ldaperrors.LDAPObjectClassViolation(str(exc)) from exc
        except UndefinedAttributeTypeError as exc:
            raise ldaperrors.LDAPUndefinedAttributeType(str(exc)) from exc
        return _encode_attributes(attributes)

    def handle_LDAPAddRequest(self, request, controls, reply):  # noqa: N802
        self.checkControls(controls)
        attributes = _decode_attributes(
            (name.value, [value.value for value in values])
            for name, values in request.attributes
        )
        dn = distinguishedname.DistinguishedName(request.entry)
        stored = self.prepare_entry(dn.getText(), attributes)
        d = self.add_entry(dn, stored)
        d.addCallback(
            lambda _entry: pureldap.LDAPAddResponse(
                resultCode=ldaperrors.Success.resultCode
            )
        )
        return d

    @defer.inlineCallbacks
    def add_entry(self, dn, stored: dict[bytes, list[bytes]]):
        """
        Add an entry at ``dn`` with the attributes ``stored``.  DNs compare
        case-insensitively, so an existing entry whose DN differs from ``dn``
        only in case is a duplicate.
        """
        root = interfaces.IConnectedLDAPEntry(self.factory)
        parent = yield root.lookup(dn.up())
        exists = yield _exists(root, dn)
        if exists:
            raise ldaperrors.LDAPEntryAlreadyExists(dn.getText())
        return parent.addChild(dn.split()[0], stored)

    def handle_LDAPModifyDNRequest(self, request, controls, reply):  # noqa: N802
        self.checkControls(controls)
        dn = distinguishedname.DistinguishedName(request.entry)
        new_rdn = distinguishedname.RelativeDistinguishedName(request.newrdn)
        if request.newSuperior is None:
            new_superior = dn.up()
        else:
            new_superior = distinguishedname.DistinguishedName(request.newSuperior)
        new_dn = distinguishedname.DistinguishedName(
            listOfRDNs=(new_rdn, *new_superior.split())
        )
        d = self.rename_entry(dn, new_dn, bool(request.deleteoldrdn))
        d.addCallback(
            lambda _entry: pureldap.LDAPModifyDNResponse(
                resultCode=ldaperrors.Success.resultCode
            )
        )
        return d

    @defer.inlineCallbacks
    def rename_entry(self, dn, new_dn, delete_old_rdn: bool):
        """
        Move the leaf entry at ``dn`` to ``new_dn``, optionally dropping the
        values of its old RDN.  The renamed entry is checked against our
        schema before the old one is removed.
        """
        root = interfaces.IConnectedLDAPEntry(self.factory)
        entry = yield root.lookup(dn)
        parent = yield root.lookup(new_dn.up())
        if new_dn != dn:
            exists = yield _exists(root, new_dn)
            if exists:
                raise ldaperrors.LDAPEntryAlreadyExists(new_dn.getText())
        attributes = _decode_attributes(entry.items())
        if delete_old_rdn:
            for ava in dn.split()[0].split():
                for name, values in attributes.items():
                    if name.lower() == ava.attributeType.lower():
                        attributes[name] = [
                            v for v in values if v.lower() != ava.value.lower()
                        ]
            attributes = {name: values for name, values in attributes.items() if values}
        stored = self.prepare_entry(new_dn.getText(), attributes)
        yield entry.delete()
        return parent.addChild(new_dn.split()[0], stored)


class DirectoryServerFactory(protocol.ServerFactory):
    """
    Builds a :py:class:`DirectoryServerProtocol` for each client connection.
    Everything the protocol needs to know about the directory lives here.

    Args:
        root: the root entry of the directory tree
        schema: the schema to check new entries against
        config: the configuration the server was started with
    """

    protocol = DirectoryServerProtocol

    def __init__(
        self,
        root: ReadOnlyInMemoryLDAPEntry,
        schema: DirectorySchema,
        config: DirectoryServerConfiguration,
    ) -> None:
        self.root = root
        self.schema = schema
        self.auth_dn = distinguishedname.DistinguishedName(config.auth_dn)
        self.auth_password = config.auth_password
        self.debug = config.debug
        self.connections: set[DirectoryServerProtocol] = set()

    def buildProtocol(self, addr):  # noqa: N802
        proto = super().buildProtocol(addr)
        proto.debug = self.debug
        return proto


components.registerAdapter(
    lambda factory: factory.root,
    DirectoryServerFactory,
    interfaces.IConnectedLDAPEntry,
)


def build_root_entry(
    config: DirectoryServerConfiguration, schema: DirectorySchema
) -> ReadOnlyInMemoryLDAPEntry:
    """
    Build the root entry of the directory from :py:attr:`base_dn
    <DirectoryServerConfiguration.base_dn>`, :py:attr:`base_object_classes
    <DirectoryServerConfiguration.base_object_classes>` and
    :py:attr:`base_attributes <DirectoryServerConfiguration.base_attributes>`.
    The root entry always carries the values of its own RDN.

    Args:
        config: the server configuration
        schema: the schema to check the root entry against

    Raises:
        SchemaViolationError: the root entry does not conform to ``schema``

    Returns:
        The root entry.

    """
    attributes = {
        name: values
        for name, values in config.base_attribute_map.items()
        if name.lower() != "objectclass"
    }
    object_classes = list(config.base_object_classes)
    for name, values in config.base_attribute_map.items():
        if name.lower() == "objectclass":
            object_classes.extend(v for v in values if v not in object_classes)
    attributes["objectClass"] = object_classes
    complete_rdn(config.base_dn, attributes)
    schema.validate(config.base_dn, attributes)
    return ReadOnlyInMemoryLDAPEntry(
        dn=config.base_dn, attributes=_encode_attributes(attributes)
    )


class DirectoryServer:
    """
    An embedded, in-memory LDAP directory server.

    :py:meth:`start` loads the schema, builds the root entry, starts
    listening, and then binds as the administrator and applies each of the
    configured LDIF files in order.  :py:meth:`stop` drops every client
    connection and stops listening; calling it again does nothing.  Use it
    as a context manager to make sure it is stopped::

        with DirectoryServer(DirectoryServerConfiguration(port=0)) as server:
            tester = DirectoryTester.connect(host=server.host, port=server.port)

    Args:
        config: what to serve

    Keyword Args:
        relative_to: the folder relative LDIF and schema paths are looked
            for in first
    """

    #: The address we listen on
    host: str = LISTEN_INTERFACE

    def __init__(
        self,
        config: DirectoryServerConfiguration | None = None,
        relative_to: str | Path | None = None,
    ) -> None:
        self.config = config or DirectoryServerConfiguration()
        self.relative_to = relative_to
        self.schema: DirectorySchema | None = None
        self.factory: DirectoryServerFactory | None = None
        self.listening_port: Any = None

    @property
    def running(self) -> bool:
        return self.listening_port is not None

    @property
    def port(self) -> int:
        """
        The port we are actually listening on, which differs from
        :py:attr:`DirectoryServerConfiguration.port` when that is ``0``.

        Raises:
            DirectoryServerError: we are not running

        """
        if self.listening_port is None:
            msg = "The embedded directory server is not running"
            raise DirectoryServerError(msg)
        return self.listening_port.getHost().port

    def load_change_records(self) -> list[tuple[Path, list[ChangeRecord]]]:
        return [
            (path, read_change_records(path))
            for path in (
                resolve_resource(name, relative_to=self.relative_to)
                for name in self.config.ldif_files
            )
        ]

    def start(self) -> DirectoryServer:
        """
        Start serving.  Does nothing if we are already running.

        Raises:
            DirectoryServerError: the schema, root entry or LDIF files were
                invalid, a file was missing, the port was in use, or seeding
                the directory failed

        Returns:
            ``self``

        """
        if self.running:
            return self
        config = self.config
        try:
            self.schema = DirectorySchema.load(
                config.schema_files, relative_to=self.relative_to
            )
            sources = self.load_change_records()
            root = build_root_entry(config, self.schema)
        except (FileNotFoundError, ldap.LDAPError) as exc:  # type: ignore[attr-defined]
            msg = f"Failed to launch embedded directory server: {exc}"
            raise DirectoryServerError(msg) from exc
        self.factory = DirectoryServerFactory(root, self.schema, config)
        start_reactor()
        try:
            self.listening_port = threads.blockingCallFromThread(
                reactor,
                reactor.listenTCP,
                config.port,
                self.factory,
                interface=self.host,
            )
        except CannotListenError as exc:
            msg = f"Failed to launch embedded directory server on port {config.port}: {exc}"
            raise DirectoryServerError(msg) from exc
        logger.info(
            "Embedded directory server listening on %s:%d base_dn=%s",
            self.host,
            self.port,
            config.base_dn,
        )
        try:
            self.seed(sources)
        except BaseException:
            self.stop()
            raise
        return self

    def seed(self, sources: list[tuple[Path, list[ChangeRecord]]]) -> None:
        """
        Bind as the administrator and apply the change records in
        ``sources``, in order.

        Args:
            sources: ``(path, records)`` pairs as returned by
                :py:meth:`load_change_records`

        Raises:
            DirectoryServerError: a change could not be applied

        """
        if not sources:
            return
        try:
            connection = open_connection(
                host=self.host, port=self.port, retries=0, timeout=DEFAULT_TIMEOUT
            )
        except DirectoryTesterError as exc:
            msg = f"Failed to seed embedded directory server: {exc}"
            raise DirectoryServerError(msg) from exc
        try:
            bind(connection, self.config.auth_dn, self.config.auth_password)
            for path, records in sources:
                logger.debug("seed path=%s records=%d", path, len(records))
                try:
                    apply_change_records(connection, records)
                except ldap.LDAPError as exc:  # type: ignore[attr-defined]
                    msg = f"Failed to apply {path}: {exc}"
                    raise DirectoryServerError(msg) from exc
        except DirectoryTesterError as exc:
            msg = f"Failed to seed embedded directory server: {exc}"
            raise DirectoryServerError(msg) from exc
        finally:
            close_connection(connection)

    def _shutdown(self, listening_port: Any) -> defer.Deferred:
        # Runs in the reactor thread
        if self.factory is not None:
            for proto in list(self.factory.connections):
                proto.transport.abortConnection()
        return listening_port.stopListening()

    def stop(self) -> None:
        """
        Drop every client connection and stop listening.  Calling this when
        we are not running does nothing.
        """
        if self.listening_port is None:
            return
        listening_port, self.listening_port = self.listening_port, None
        threads.blockingCallFromThread(reactor, self._shutdown, listening_port)
        logger.info("Embedded directory server stopped")

    def __enter__(self) -> DirectoryServer:
        return self.start()

    def __exit__(self, *args: Any) -> None:
        self.stop()


def start_server(
    config: DirectoryServerConfiguration | None = None,
    relative_to: str | Path | None = None,
) -> DirectoryServer:
    """
    Build and start a :py:class:`DirectoryServer`.

    Args:
        config: what to serve; the default configuration if not given

    Keyword Args:
        relative_to: the folder relative LDIF and schema paths are looked
            for in first

    Raises:
        DirectoryServerError: the server could not be started

    Returns:
        The running server.

    """
    return DirectoryServer(config, relative_to=relative_to).start()


def stop_server(server: DirectoryServer | None) -> None:
    """
    Stop ``server`` if there is one.  Safe to call more than once.
    """
    if server is not None:
        server.stop()
