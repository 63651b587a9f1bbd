from __future__ import annotations

import sys
from pathlib import Path
from typing import ClassVar, cast

from .config import DirectoryServerConfiguration, find_configuration
from .resources import resolve_resource
from .server import DirectoryServer, start_server, stop_server
from .tester import DirectoryTester

#: The values :py:attr:`DirectoryServerMixin.directory_server_scope` may take
SCOPES: tuple[str, ...] = ("method", "class")


class DirectoryServerMixin:
    """
    A mixin for use with :py:class:`unittest.TestCase`.  It launches an
    embedded LDAP directory server before each test and shuts it down
    afterwards, whether the test passed or not.

    Configure the server by setting :py:attr:`directory_server_config`
    on your test class::

        class TestPeople(DirectoryServerMixin, unittest.TestCase):

            directory_server_config = DirectoryServerConfiguration(
                ldif_files="people.ldif"
            )

            def test_people_exist(self):
                self.assertDNExists("ou=People,dc=example,dc=com")

    or by decorating the class with
    :py:func:`ldapunit.config.directory_server_configuration`.  A test method
    decorated with :py:func:`ldapunit.config.directory_server_configuration`
    gets its own configuration instead of the class-level one.  Relative LDIF
    and schema paths are looked for first in the folder holding your test
    module.

    Starting a server for every test keeps tests independent of each other.
    If your tests only read from the directory, set
    :py:attr:`directory_server_scope` to ``"class"`` to start one server in
    :py:meth:`setUpClass` and share it between all the tests in the class.
    Method-level configuration is not allowed in that case.

    .. note::
        Every server listens on the configured port, so two classes using the
        default configuration cannot run in parallel.  Use ``port=0`` to have
        the server pick a free port; :py:attr:`directory_server` knows which
        one it picked.
    """

    #: The class-level configuration; if ``None`` we look for a decorator,
    #: then fall back to the default configuration
    directory_server_config: ClassVar[DirectoryServerConfiguration | None] = None
    #: ``"method"`` for a server per test, ``"class"`` for one per class
    directory_server_scope: ClassVar[str] = "method"

    #: The running server
    directory_server: DirectoryServer | None = None

    def __init__(self, *args, **kwargs) -> None:
        self.check()
        super().__init__(*args, **kwargs)

    def check(self):
        """
        Run some sanity checks on how the user has configured us.

        :meta private:
        """
        if self.directory_server_scope not in SCOPES:
            msg = (
                f'directory_server_scope must be one of {", ".join(SCOPES)}, '
                f'not "{self.directory_server_scope}"'
            )
            raise ValueError(msg)

    @classmethod
    def module_dir(cls) -> Path:
        """
        Return the folder in which our subclass' file resides.
        """
        return Path(cast("str", sys.modules[cls.__module__].__file__)).parent

    @classmethod
    def resolve_file(cls, filename: str) -> str:
        """
        Find an LDIF or schema file the way our server will when it starts:
        an absolute ``filename`` is used as is, and a relative one is looked
        for beside this test module, then under each :py:data:`sys.path`
        entry, then in the current working directory.

        Args:
            filename: the LDIF or schema file to find

        Raises:
            FileNotFoundError: the file did not exist

        Returns:
            The absolute path to the file.

        """
        return str(resolve_resource(filename, relative_to=cls.module_dir()))

    @classmethod
    def class_configuration(cls) -> DirectoryServerConfiguration:
        """
        Return the class-level configuration: :py:attr:`directory_server_config`
        if set, else the one from a class decorator, else the default.
        """
        if cls.directory_server_config is not None:
            return cls.directory_server_config
        return find_configuration(cls) or DirectoryServerConfiguration()

    def method_configuration(self) -> DirectoryServerConfiguration | None:
        """
        Return the configuration the current test method was decorated with,
        if any.
        """
        method = getattr(self, self._testMethodName, None)  # type: ignore[attr-defined]
        return find_configuration(None, method)

    @classmethod
    def setUpClass(cls):
        """
        When :py:attr:`directory_server_scope` is ``"class"``, start the
        server our tests will share, and arrange for it to be stopped once
        they have all run.
        """
        super().setUpClass()  # type: ignore[misc]
        if cls.directory_server_scope == "class":
            cls.directory_server = start_server(
                cls.class_configuration(), relative_to=cls.module_dir()
            )
            cls.addClassCleanup(stop_server, cls.directory_server)  # type: ignore[attr-defined]

    def setUp(self) -> None:
        """
        When :py:attr:`directory_server_scope` is ``"method"``, start a server
        for this test, preferring the method-level configuration over the
        class-level one, and arrange for it to be stopped after the test.

        Raises:
            ValueError: a test method has its own configuration but our
                server is shared by the whole class

        """
        super().setUp()  # type: ignore[misc]
        method_config = self.method_configuration()
        if self.directory_server_scope == "class":
            if method_config is not None:
                msg = (
                    f"{self._testMethodName} has its own directory server "  # type: ignore[attr-defined]
                    'configuration, but directory_server_scope is "class"'
                )
                raise ValueError(msg)
            return
        config = method_config or self.class_configuration()
        self.directory_server = start_server(config, relative_to=self.module_dir())
        self.addCleanup(stop_server, self.directory_server)  # type: ignore[attr-defined]

    # Helpers

    def directory_tester(
        self, bind_dn: str | None = None, password: str | None = None
    ) -> DirectoryTester:
        """
        Return a :py:class:`DirectoryTester` connected to our server.  Close it
        when you are done with it.

        Keyword Args:
            bind_dn: the DN to bind as; the configured administrator if not
                given
            password: the password for ``bind_dn``

        Raises:
            RuntimeError: our server is not running

        """
        server = self.directory_server
        if server is None or not server.running:
            msg = "The embedded directory server is not running"
            raise RuntimeError(msg)
        if bind_dn is None:
            bind_dn = server.config.auth_dn
            password = server.config.auth_password
        return DirectoryTester.connect(
            host=server.host, port=server.port, bind_dn=bind_dn, password=password
        )

    def verify_dn_exists(self, dn: str) -> bool:
        with self.directory_tester() as tester:
            return tester.verify_dn_exists(dn)

    def verify_dn_is_a(self, dn: str, object_class: str) -> bool:
        with self.directory_tester() as tester:
            return tester.verify_dn_is_a(dn, object_class)

    def verify_dn_has_attribute(self, dn: str, attribute_name: str) -> bool:
        with self.directory_tester() as tester:
            return tester.verify_dn_has_attribute(dn, attribute_name)

    def verify_dn_has_attribute_value(
        self, dn: str, attribute_name: str, *values: str
    ) -> bool:
        with self.directory_tester() as tester:
            return tester.verify_dn_has_attribute_value(dn, attribute_name, *values)

    # Asserts

    def assertDNExists(self, dn: str) -> None:  # noqa: N802
        """
        Assert that there is an entry at ``dn``.

        Args:
            dn: the distinguished name of the entry

        """
        with self.directory_tester() as tester:
            tester.assert_dn_exists(dn)

    def assertDNIsA(self, dn: str, object_class: str) -> None:  # noqa: N802
        """
        Assert that the entry at ``dn`` has ``object_class`` among its object
        classes.

        Args:
            dn: the distinguished name of the entry
            object_class: the object class we expect

        """
        with self.directory_tester() as tester:
            tester.assert_dn_is_a(dn, object_class)

    def assertDNHasAttribute(self, dn: str, attribute_name: str) -> None:  # noqa: N802
        """
        Assert that the entry at ``dn`` has a value for ``attribute_name``.

        Args:
            dn: the distinguished name of the entry
            attribute_name: the attribute we expect

        """
        with self.directory_tester() as tester:
            tester.assert_dn_has_attribute(dn, attribute_name)

    def assertDNHasAttributeValue(  # noqa: N802
        self, dn: str, attribute_name: str, *values: str
    ) -> None:
        """
        Assert that the values of ``attribute_name`` on the entry at ``dn`` are
        exactly ``values``, in any order.

        Args:
            dn: the distinguished name of the entry
            attribute_name: the attribute to check
            *values: the values we expect

        """
        with self.directory_tester() as tester:
            tester.assert_dn_has_attribute_value(dn, attribute_name, *values)
