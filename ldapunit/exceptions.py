from __future__ import annotations


class DirectoryTesterError(Exception):
    """
    Base class for errors raised by :py:class:`ldapunit.tester.DirectoryTester`.
    """


class DirectoryConnectionError(DirectoryTesterError, ConnectionError):
    """
    We could not open a connection to the directory server, the connection
    was interrupted while waiting to retry, or a query failed because of a
    protocol or transport problem.  Also raised when a closed
    :py:class:`ldapunit.tester.DirectoryTester` is used.
    """


class DirectoryAuthenticationError(DirectoryTesterError):
    """
    The directory server rejected our bind credentials.
    """


class InvalidDNError(DirectoryTesterError, ValueError):
    """
    A distinguished name passed to one of the verification methods was
    syntactically malformed.

    Args:
        dn: the offending distinguished name
    """

    def __init__(self, dn: str, msg: str | None = None) -> None:
        self.dn = dn
        super().__init__(msg or f"Invalid DN syntax: {dn}")


class DirectoryServerError(Exception):
    """
    The embedded directory server could not be started or seeded.
    """


class SchemaViolationError(DirectoryServerError):
    """
    An entry does not conform to the directory schema.
    """


class ObjectClassViolationError(SchemaViolationError):
    """
    An entry has no object class, names an unknown object class, lacks a
    required attribute, or carries an attribute its object classes do not
    allow.
    """


class UndefinedAttributeTypeError(SchemaViolationError):
    """
    An entry carries an attribute type that the schema does not define.
    """


class LDIFError(DirectoryServerError, ValueError):
    """
    An LDIF file could not be parsed.
    """
