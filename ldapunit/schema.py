from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path

import ldap.dn
import ldap.schema
import ldif
from case_insensitive_dict import CaseInsensitiveDict

from .config import DEFAULT_SCHEMA
from .exceptions import (
    DirectoryServerError,
    LDIFError,
    ObjectClassViolationError,
    UndefinedAttributeTypeError,
)
from .logging import logger
from .resources import RESOURCE_DIR, resolve_resource
from .types import LDAPData, StrSequence

#: The bundled schema selected by :py:data:`ldapunit.config.DEFAULT_SCHEMA`
STANDARD_SCHEMA_FILE: Path = RESOURCE_DIR / "standard-schema.ldif"

#: The subschema attributes we merge out of schema LDIF files
SCHEMA_ATTRIBUTES: tuple[str, ...] = (
    "attributeTypes",
    "objectClasses",
    "ldapSyntaxes",
    "matchingRules",
    "matchingRuleUse",
    "dITContentRules",
    "dITStructureRules",
    "nameForms",
)


def read_schema_entry(path: str | Path) -> LDAPData:
    """
    Read the schema definitions out of an LDIF file.  Every record in the
    file contributes whatever :py:data:`SCHEMA_ATTRIBUTES` it carries; all
    other attributes are ignored.

    Args:
        path: the LDIF file to read

    Raises:
        LDIFError: the file is not valid LDIF

    Returns:
        A subschema entry dict.

    """
    with Path(path).open(encoding="utf-8") as fh:
        parser = ldif.LDIFRecordList(fh)
        try:
            parser.parse_entry_records()
        except ValueError as exc:
            msg = f"{path}: {exc}"
            raise LDIFError(msg) from exc
    canonical = CaseInsensitiveDict({name: name for name in SCHEMA_ATTRIBUTES})
    entry: LDAPData = {}
    for _dn, record in parser.all_records:
        for name, values in record.items():
            if name in canonical:
                entry.setdefault(canonical[name], []).extend(values)
    return entry


def complete_rdn(dn: str, attributes: dict[str, list[str]]) -> dict[str, list[str]]:
    """
    Make sure ``attributes`` carries the attribute values named in the RDN of
    ``dn``, adding any that are missing.  Attribute names are matched
    case-insensitively.

    Args:
        dn: the distinguished name of the entry
        attributes: the entry's attributes; updated in place

    Returns:
        ``attributes``

    """
    names = CaseInsensitiveDict({name: name for name in attributes})
    for attr, value, _flags in ldap.dn.str2dn(dn)[0]:
        name = names.get(attr)
        if name is None:
            attributes[attr] = [value]
            names[attr] = attr
        elif value.lower() not in {v.lower() for v in attributes[name]}:
            attributes[name].append(value)
    return attributes


class DirectorySchema:
    """
    The schema the embedded directory server checks entries against.

    Build one with :py:meth:`load`.  Object classes and attribute types are
    looked up with :py:class:`ldap.schema.SubSchema`, so names, aliases and
    OIDs are all understood.

    Args:
        subschema: the parsed schema
        sources: the files the schema was loaded from
    """

    def __init__(self, subschema: ldap.schema.SubSchema, sources: list[Path]) -> None:
        self.subschema = subschema
        self.sources = sources

    @classmethod
    def load(
        cls,
        schema_files: StrSequence | None = None,
        relative_to: str | Path | None = None,
    ) -> DirectorySchema:
        """
        Load and merge the schema LDIF files named in ``schema_files``.  The
        reserved name ``default`` selects the bundled standard schema, which
        is also what we use when ``schema_files`` is empty.

        Args:
            schema_files: the schema files to load, in order

        Keyword Args:
            relative_to: resolve relative paths against this folder first

        Raises:
            FileNotFoundError: a schema file does not exist
            LDIFError: a schema file is not valid LDIF
            DirectoryServerError: a schema definition could not be parsed

        Returns:
            The merged schema.

        """
        if isinstance(schema_files, str):
            schema_files = [schema_files]
        names = list(schema_files or [DEFAULT_SCHEMA])
        sources: list[Path] = []
        for name in names:
            if name == DEFAULT_SCHEMA:
                path = STANDARD_SCHEMA_FILE
            else:
                path = resolve_resource(name, relative_to=relative_to)
            if path not in sources:
                sources.append(path)
        entry: LDAPData = {}
        for path in sources:
            logger.debug("schema.load path=%s", path)
            for name, values in read_schema_entry(path).items():
                entry.setdefault(name, []).extend(values)
        try:
            subschema = ldap.schema.SubSchema(entry)
        except (ValueError, KeyError) as exc:
            msg = f"Could not parse schema definitions: {exc}"
            raise DirectoryServerError(msg) from exc
        return cls(subschema, sources)

    def has_object_class(self, name: str) -> bool:
        return self.subschema.get_obj(ldap.schema.ObjectClass, name) is not None

    def has_attribute_type(self, name: str) -> bool:
        return self.subschema.get_obj(ldap.schema.AttributeType, name) is not None

    def attribute_name(self, oid: str) -> str:
        """
        Return the primary name of the attribute type ``oid``, or ``oid``
        itself if the schema does not define it.
        """
        attribute_type = self.subschema.get_obj(ldap.schema.AttributeType, oid)
        if attribute_type is not None and attribute_type.names:
            return attribute_type.names[0]
        return oid

    def validate(self, dn: str, attributes: Mapping[str, Iterable[str]]) -> None:
        """
        Check that the entry ``dn`` with ``attributes`` conforms to our schema.

        ``objectClass`` itself is always allowed, even when a custom schema
        does not define it.

        Args:
            dn: the distinguished name of the entry
            attributes: the entry's attributes

        Raises:
            ObjectClassViolationError: the entry has no object class, names an
                undefined object class, lacks an attribute its object classes
                require, or carries an attribute they do not allow
            UndefinedAttributeTypeError: the entry carries an attribute type
                the schema does not define

        """
        object_classes = [
            value
            for name, values in attributes.items()
            if name.lower() == "objectclass"
            for value in values
        ]
        if not object_classes:
            msg = f"Entry {dn} has no object class"
            raise ObjectClassViolationError(msg)
        for object_class in object_classes:
            if not self.has_object_class(object_class):
                msg = f"Entry {dn} has undefined object class: {object_class}"
                raise ObjectClassViolationError(msg)
        present: dict[str, str] = {}
        for name in attributes:
            if name.lower() != "objectclass" and not self.has_attribute_type(name):
                msg = f"Entry {dn} has undefined attribute type: {name}"
                raise UndefinedAttributeTypeError(msg)
            oid = self.subschema.getoid(ldap.schema.AttributeType, name)
            present[oid.lower()] = name
        must, may = self.subschema.attribute_types(object_classes, raise_keyerror=0)
        required = {oid.lower(): oid for oid in must.keys()}
        allowed = set(required) | {oid.lower() for oid in may.keys()}
        for oid_key, oid in required.items():
            if oid_key not in present:
                msg = (
                    f"Entry {dn} is missing required attribute: "
                    f"{self.attribute_name(oid)}"
                )
                raise ObjectClassViolationError(msg)
        for oid_key, name in present.items():
            if name.lower() != "objectclass" and oid_key not in allowed:
                msg = f"Entry {dn} attribute {name} is not allowed by its object classes"
                raise ObjectClassViolationError(msg)
