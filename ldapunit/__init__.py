__version__ = "1.0.0"

from .config import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_RETRIES,
    DEFAULT_SCHEMA,
    DEFAULT_TIMEOUT,
    DirectoryServerConfiguration,
    directory_server_configuration,
)
from .exceptions import (
    DirectoryAuthenticationError,
    DirectoryConnectionError,
    DirectoryServerError,
    DirectoryTesterError,
    InvalidDNError,
    LDIFError,
    ObjectClassViolationError,
    SchemaViolationError,
    UndefinedAttributeTypeError,
)
from .server import DirectoryServer, start_server, stop_server
from .tester import DirectoryTester
from .types import CILDAPData, LDAPData
from .unittest import DirectoryServerMixin
