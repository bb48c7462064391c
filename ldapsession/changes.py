"""
Attribute changes for add and modify requests.

Callers describe a write either as an explicit list of :py:class:`Change`
entries or as a plain mapping that uses the prefix convention:

* ``"-mail": ...`` or ``"mail": None`` / ``"mail": []`` removes ``mail``
* ``"+mail": [...]`` or ``"mail": [...]`` replaces ``mail`` with the values

Either form is normalized into :py:class:`Change` entries here, and turned
into python-ldap modlists by :py:class:`Modlist`.
"""

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ldapsession import ldap

from .typing import AddModlist, InputValue, ModifyModlist, WireValue

#: Attribute name prefixes understood by :py:func:`changes_from_mapping`.
DELETE_PREFIX = "-"
REPLACE_PREFIX = "+"


class Operation(enum.Enum):
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class Change:
    """
    One per-attribute operation of a write.

    Args:
        attribute: the attribute name, without any prefix
        operation: what to do to the attribute

    Keyword Args:
        values: the new values for :py:attr:`Operation.REPLACE`

    """

    attribute: str
    operation: Operation = Operation.REPLACE
    values: tuple[InputValue, ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.attribute:
            msg = "A change needs an attribute name"
            raise ValueError(msg)
        if self.operation is Operation.DELETE:
            # Deletes always remove the whole attribute
            object.__setattr__(self, "values", ())
        else:
            object.__setattr__(self, "values", normalize_values(self.values))

    @classmethod
    def replace(cls, attribute: str, values: Any) -> "Change":
        return cls(attribute, Operation.REPLACE, values)

    @classmethod
    def delete(cls, attribute: str) -> "Change":
        return cls(attribute, Operation.DELETE)


def normalize_values(values: Any) -> tuple[InputValue, ...]:
    """
    Normalize a caller supplied value into a tuple of values.  A scalar becomes
    a one element tuple; ``None`` becomes an empty tuple.
    """
    if values is None:
        return ()
    if isinstance(values, (str, bytes)):
        return (values,)
    if isinstance(values, Iterable) and not isinstance(values, Mapping):
        return tuple(values)
    return (str(values),)


def changes_from_mapping(data: Mapping[str, Any]) -> list[Change]:
    """
    Translate a prefix-convention mapping into :py:class:`Change` entries.

    Args:
        data: attribute name (optionally prefixed with ``-`` or ``+``) to values

    Returns:
        The changes, in the mapping's order.

    """
    changes: list[Change] = []
    for name, value in data.items():
        op = name[:1]
        attribute = name[1:] if op in (DELETE_PREFIX, REPLACE_PREFIX) else name
        values = normalize_values(value)
        if op == DELETE_PREFIX or not values:
            changes.append(Change.delete(attribute))
        else:
            changes.append(Change(attribute, Operation.REPLACE, values))
    return changes


def as_changes(changes: Mapping[str, Any] | Iterable[Change]) -> list[Change]:
    """
    Accept either input form and return a list of :py:class:`Change`.

    Raises:
        TypeError: ``changes`` holds something other than :py:class:`Change`

    """
    if isinstance(changes, Mapping):
        return changes_from_mapping(changes)
    result = list(changes)
    for change in result:
        if not isinstance(change, Change):
            msg = f"Expected Change entries, got {type(change).__name__}"
            raise TypeError(msg)
    return result


def encode_value(value: InputValue) -> WireValue:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class Modlist:
    """
    Helper for constructing python-ldap modlists from :py:class:`Change` lists.

    Args:
        changes: the changes to apply

    """

    def __init__(self, changes: Iterable[Change]) -> None:
        self.changes = list(changes)

    def add(self) -> AddModlist:
        """
        Build the modlist for ``add_ext``.  Delete changes are dropped: a new
        entry simply does not get the attribute.
        """
        return [
            (change.attribute, [encode_value(v) for v in change.values])
            for change in self.changes
            if change.operation is Operation.REPLACE and change.values
        ]

    def modify(self) -> ModifyModlist:
        """
        Build the modlist for ``modify_ext``.

        Every change is a ``MOD_REPLACE``; a delete is a replace with no values,
        which removes the attribute whether or not it is present.
        """
        _modlist: ModifyModlist = []
        for change in self.changes:
            if change.operation is Operation.DELETE or not change.values:
                _modlist.append((ldap.MOD_REPLACE, change.attribute, None))  # type: ignore[attr-defined]
            else:
                _modlist.append(
                    (
                        ldap.MOD_REPLACE,  # type: ignore[attr-defined]
                        change.attribute,
                        [encode_value(v) for v in change.values],
                    )
                )
        return _modlist
