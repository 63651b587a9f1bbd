from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from .types import StrSequence

#: The port the embedded directory server listens on unless told otherwise
DEFAULT_PORT: int = 10389
#: The host :py:class:`ldapunit.tester.DirectoryTester` connects to by default
DEFAULT_HOST: str = "localhost"
#: How many times to retry a failed connection attempt
DEFAULT_RETRIES: int = 3
#: The per-attempt connection timeout, in milliseconds
DEFAULT_TIMEOUT: int = 5000
#: The reserved schema name that selects the bundled standard schema
DEFAULT_SCHEMA: str = "default"

DEFAULT_BASE_DN: str = "dc=example,dc=com"
DEFAULT_BASE_OBJECT_CLASSES: tuple[str, ...] = ("domain", "top")
DEFAULT_AUTH_DN: str = "uid=admin,ou=system"
DEFAULT_AUTH_PASSWORD: str = "secret"  # noqa: S105

#: The attribute the configuration decorator stores its value under
CONFIGURATION_ATTRIBUTE: str = "_ldapunit_configuration"

T = TypeVar("T")


def _as_tuple(value: StrSequence | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class DirectoryServerConfiguration:
    """
    Everything we need to know to launch and seed an embedded directory
    server.

    Sequence fields accept a single string, a list or a tuple; they are
    always stored as tuples.  :py:attr:`base_attributes` items have the form
    ``name=value``; an item with no ``=`` gives the attribute an empty
    value.  :py:attr:`ldif_files` and :py:attr:`schema_files` are resolved
    with :py:func:`ldapunit.resources.resolve_resource`, and the schema name
    ``default`` selects the bundled standard schema.

    Example:
        Build a configuration for a directory rooted at ``dc=acme,dc=org``
        seeded from ``people.ldif``::

            config = DirectoryServerConfiguration(
                base_dn="dc=acme,dc=org",
                ldif_files="people.ldif",
            )
    """

    #: The TCP port to listen on; ``0`` picks a free port
    port: int = DEFAULT_PORT
    #: The DN of the root entry of the directory
    base_dn: str = DEFAULT_BASE_DN
    #: The object classes of the root entry
    base_object_classes: tuple[str, ...] = DEFAULT_BASE_OBJECT_CLASSES
    #: Extra ``name=value`` attributes for the root entry
    base_attributes: tuple[str, ...] = ()
    #: The DN the administrator binds with
    auth_dn: str = DEFAULT_AUTH_DN
    #: The administrator's password
    auth_password: str = DEFAULT_AUTH_PASSWORD
    #: LDIF change record files applied, in order, after startup
    ldif_files: tuple[str, ...] = ()
    #: Schema LDIF files; empty means the standard schema
    schema_files: tuple[str, ...] = ()
    #: Log every LDAP message the server sends and receives
    debug: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        for name in (
            "base_object_classes",
            "base_attributes",
            "ldif_files",
            "schema_files",
        ):
            object.__setattr__(self, name, _as_tuple(getattr(self, name)))
        if not 0 <= self.port <= 65535:  # noqa: PLR2004
            msg = f"port must be between 0 and 65535, not {self.port}"
            raise ValueError(msg)
        if not self.base_object_classes:
            msg = "base_object_classes must name at least one object class"
            raise ValueError(msg)

    @property
    def base_attribute_map(self) -> dict[str, list[str]]:
        """
        :py:attr:`base_attributes` parsed with :py:func:`parse_base_attributes`.
        """
        return parse_base_attributes(self.base_attributes)


def parse_base_attributes(items: StrSequence) -> dict[str, list[str]]:
    """
    Parse ``name=value`` strings into an attribute dict.  Repeated names
    collect multiple values, and an item with no ``=`` yields an empty value.

    Args:
        items: the ``name=value`` strings

    Returns:
        A dict mapping attribute names to their list of values.

    """
    attributes: dict[str, list[str]] = {}
    for item in _as_tuple(items):
        name, _, value = item.partition("=")
        attributes.setdefault(name.strip(), []).append(value)
    return attributes


def directory_server_configuration(
    config: DirectoryServerConfiguration | None = None, **kwargs: Any
) -> Callable[[T], T]:
    """
    Decorate a test class or test method with the
    :py:class:`DirectoryServerConfiguration` to launch the embedded directory
    server with.  Pass either a ready-made configuration or its fields as
    keyword arguments.  A method-level configuration wins over a class-level
    one.

    Example:
        ::

            @directory_server_configuration(ldif_files="initial.ldif")
            class TestPeople(DirectoryServerMixin, unittest.TestCase):

                @directory_server_configuration(base_dn="dc=other,dc=com")
                def test_other_base(self):
                    ...

    Keyword Args:
        config: a complete configuration

    Raises:
        ValueError: both ``config`` and keyword arguments were given

    Returns:
        The decorator.

    """
    if config is not None and kwargs:
        msg = "Pass either a DirectoryServerConfiguration or its fields, not both"
        raise ValueError(msg)
    resolved = config if config is not None else DirectoryServerConfiguration(**kwargs)

    def decorator(obj: T) -> T:
        setattr(obj, CONFIGURATION_ATTRIBUTE, resolved)
        return obj

    return decorator


def find_configuration(
    test_class: type | None, test_method: Callable | None = None
) -> DirectoryServerConfiguration | None:
    """
    Look up the configuration for a test, method first, then class.

    Args:
        test_class: the test class, searched through its MRO
        test_method: the test method, if there is one

    Returns:
        The configuration, or ``None`` if neither was decorated.

    """
    if test_method is not None:
        config = getattr(test_method, CONFIGURATION_ATTRIBUTE, None)
        if config is not None:
            return config
    if test_class is not None:
        return getattr(test_class, CONFIGURATION_ATTRIBUTE, None)
    return None
