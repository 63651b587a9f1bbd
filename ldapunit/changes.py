from __future__ import annotations

import re
from dataclasses import dataclass, field
from io import StringIO
from pathlib import Path
from typing import TYPE_CHECKING

import ldap.modlist
import ldif

from .exceptions import LDIFError
from .logging import logger
from .types import LDAPData, ModList

if TYPE_CHECKING:
    from ldap.ldapobject import LDAPObject


CHANGETYPE_RE = re.compile(r"^changetype:\s*(\S+)\s*$", re.IGNORECASE | re.MULTILINE)
DN_RE = re.compile(r"^dn:", re.IGNORECASE | re.MULTILINE)


def _text(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


@dataclass
class ChangeRecord:
    """
    One record from an LDIF file, ready to be applied to a directory with
    :py:meth:`process`.
    """

    #: The distinguished name of the entry the record changes
    dn: str

    def process(self, connection: LDAPObject) -> None:
        """
        Apply this change to the directory behind ``connection``.

        Args:
            connection: a bound ``python-ldap`` connection

        """
        raise NotImplementedError


@dataclass
class AddRecord(ChangeRecord):
    #: The attributes of the new entry
    attributes: LDAPData = field(default_factory=dict)

    def process(self, connection: LDAPObject) -> None:
        connection.add_s(self.dn, ldap.modlist.addModlist(self.attributes))


@dataclass
class DeleteRecord(ChangeRecord):
    def process(self, connection: LDAPObject) -> None:
        connection.delete_s(self.dn)


@dataclass
class ModifyRecord(ChangeRecord):
    #: ``(operation, attribute, values)`` tuples, as ``modify_s`` takes them
    modifications: ModList = field(default_factory=list)

    def process(self, connection: LDAPObject) -> None:
        connection.modify_s(self.dn, self.modifications)


@dataclass
class ModDNRecord(ChangeRecord):
    #: The new RDN of the entry
    new_rdn: str = ""
    #: Whether to remove the old RDN values from the entry
    delete_old_rdn: bool = True
    #: The new parent of the entry, if it is moving
    new_superior: str | None = None

    def process(self, connection: LDAPObject) -> None:
        connection.rename_s(
            self.dn,
            self.new_rdn,
            self.new_superior,
            delold=int(self.delete_old_rdn),
        )


def split_records(text: str) -> list[str]:
    """
    Split LDIF text into one chunk per record.  Chunks that hold no ``dn:``
    line, such as a lone ``version: 1`` line or comments, are dropped.

    Args:
        text: the LDIF text

    Returns:
        The record chunks, in order.

    """
    chunks: list[str] = []
    lines: list[str] = []
    for line in [*text.splitlines(), ""]:
        if line.strip():
            lines.append(line)
            continue
        if lines:
            chunk = "\n".join(lines) + "\n"
            if DN_RE.search(chunk):
                chunks.append(chunk)
            lines = []
    return chunks


def parse_record(chunk: str) -> ChangeRecord:
    """
    Parse a single LDIF record.  A record with no ``changetype`` line is
    treated as an add.

    Args:
        chunk: the text of one record

    Raises:
        ValueError: the record could not be parsed

    Returns:
        The parsed change record.

    """
    match = CHANGETYPE_RE.search(chunk)
    changetype = match.group(1).lower() if match else "add"
    parser = ldif.LDIFRecordList(StringIO(chunk))
    if changetype == "modify":
        parser.parse_change_records()
        if not parser.all_modify_changes:
            msg = "modify record has no modifications"
            raise ValueError(msg)
        dn, modops, _controls = parser.all_modify_changes[0]
        return ModifyRecord(
            dn=dn,
            modifications=[(op, _text(attr), values) for op, attr, values in modops],
        )
    parser.parse_entry_records()
    if not parser.all_records:
        msg = "record has no dn"
        raise ValueError(msg)
    dn, entry = parser.all_records[0]
    attributes = {k: v for k, v in entry.items() if k.lower() != "changetype"}
    if changetype == "add":
        return AddRecord(dn=dn, attributes=attributes)
    fields = {k.lower(): v for k, v in attributes.items()}
    if changetype == "delete":
        return DeleteRecord(dn=dn)
    if changetype in ("modrdn", "moddn"):
        if "newrdn" not in fields:
            msg = f"{changetype} record for {dn} has no newrdn"
            raise ValueError(msg)
        new_superior = fields.get("newsuperior")
        return ModDNRecord(
            dn=dn,
            new_rdn=_text(fields["newrdn"][0]),
            delete_old_rdn=_text(fields.get("deleteoldrdn", [b"1"])[0]) != "0",
            new_superior=_text(new_superior[0]) if new_superior else None,
        )
    msg = f"unsupported changetype: {changetype}"
    raise ValueError(msg)


def parse_change_records(text: str, source: str = "<string>") -> list[ChangeRecord]:
    """
    Parse LDIF text into a list of :py:class:`ChangeRecord` objects.

    Args:
        text: the LDIF text

    Keyword Args:
        source: where the text came from, for error messages

    Raises:
        LDIFError: a record could not be parsed

    Returns:
        The change records, in file order.

    """
    records: list[ChangeRecord] = []
    for index, chunk in enumerate(split_records(text), start=1):
        try:
            records.append(parse_record(chunk))
        except ValueError as exc:
            msg = f"{source}: record {index}: {exc}"
            raise LDIFError(msg) from exc
    return records


def read_change_records(path: str | Path) -> list[ChangeRecord]:
    """
    Read the LDIF file at ``path`` into a list of :py:class:`ChangeRecord`
    objects.

    Args:
        path: the LDIF file to read

    Raises:
        LDIFError: the file is not UTF-8, or a record could not be parsed

    Returns:
        The change records, in file order.

    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        msg = f"{path}: not valid UTF-8: {exc}"
        raise LDIFError(msg) from exc
    return parse_change_records(text, source=str(path))


def apply_change_records(connection: LDAPObject, records: list[ChangeRecord]) -> None:
    """
    Apply ``records`` in order over ``connection``.

    Args:
        connection: a bound ``python-ldap`` connection
        records: the change records to apply

    """
    for record in records:
        logger.debug("changes.apply type=%s dn=%s", type(record).__name__, record.dn)
        record.process(connection)
